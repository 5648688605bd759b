"""Backend session records as returned by ``/session``."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any


@dataclass
class PermissionRule:
    """A per-session permission rule sent on session creation."""
    permission: str
    pattern: str
    action: str  # "allow", "deny" or "ask"

    def to_dict(self) -> dict[str, str]:
        return {
            "permission": self.permission,
            "pattern": self.pattern,
            "action": self.action,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> PermissionRule:
        return cls(
            permission=str(data.get("permission", "")),
            pattern=str(data.get("pattern", "")),
            action=str(data.get("action", "ask")),
        )


@dataclass
class Session:
    id: str
    title: str | None = None
    slug: str | None = None
    parent_id: str | None = None
    created: float | None = None
    updated: float | None = None
    version: int | None = None
    permission: list[PermissionRule] = field(default_factory=list)
    raw: dict[str, Any] = field(default_factory=dict, repr=False)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Session:
        time_info = data.get("time") or {}
        return cls(
            id=str(data.get("id", "")),
            title=data.get("title"),
            slug=data.get("slug"),
            parent_id=data.get("parentID"),
            created=time_info.get("created"),
            updated=time_info.get("updated"),
            version=data.get("version"),
            permission=[
                PermissionRule.from_dict(rule)
                for rule in data.get("permission") or []
                if isinstance(rule, dict)
            ],
            raw=dict(data),
        )


@dataclass
class SessionStatus:
    """Busy/idle/retry state of a session.

    ``attempt``, ``message`` and ``next`` are only set for ``retry``.
    """
    type: str
    attempt: int | None = None
    message: str | None = None
    next: float | None = None

    @property
    def busy(self) -> bool:
        return self.type in ("busy", "retry")

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> SessionStatus:
        data = data or {}
        return cls(
            type=str(data.get("type", "idle")),
            attempt=data.get("attempt"),
            message=data.get("message"),
            next=data.get("next"),
        )
