"""Workspace change records: file diffs and todo lists."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any


@dataclass
class FileDiff:
    file: str
    before: str = ""
    after: str = ""
    additions: int = 0
    deletions: int = 0
    status: str | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> FileDiff:
        return cls(
            file=str(data.get("file", "")),
            before=str(data.get("before") or ""),
            after=str(data.get("after") or ""),
            additions=int(data.get("additions") or 0),
            deletions=int(data.get("deletions") or 0),
            status=data.get("status"),
        )


@dataclass
class Todo:
    id: str
    content: str
    status: str = "pending"
    priority: str = "medium"

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Todo:
        return cls(
            id=str(data.get("id", "")),
            content=str(data.get("content", "")),
            status=str(data.get("status", "pending")),
            priority=str(data.get("priority", "medium")),
        )
