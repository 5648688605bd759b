"""Permission and question requests raised by the backend mid-turn."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any


class PermissionResponse:
    ONCE = "once"
    ALWAYS = "always"
    REJECT = "reject"

    ALL = frozenset({ONCE, ALWAYS, REJECT})


@dataclass
class PermissionRequest:
    id: str
    session_id: str
    permission: str
    patterns: list[str] = field(default_factory=list)
    always: list[str] = field(default_factory=list)
    metadata: dict[str, Any] = field(default_factory=dict)
    tool_message_id: str | None = None
    tool_call_id: str | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> PermissionRequest:
        tool = data.get("tool") or {}
        return cls(
            id=str(data.get("id", "")),
            session_id=str(data.get("sessionID", "")),
            permission=str(data.get("permission", "")),
            patterns=list(data.get("patterns") or []),
            always=list(data.get("always") or []),
            metadata=dict(data.get("metadata") or {}),
            tool_message_id=tool.get("messageID"),
            tool_call_id=tool.get("callID"),
        )


@dataclass
class QuestionOption:
    label: str
    description: str = ""


@dataclass
class QuestionInfo:
    question: str
    header: str = ""
    options: list[QuestionOption] = field(default_factory=list)
    multiple: bool = False
    custom: bool = False

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> QuestionInfo:
        return cls(
            question=str(data.get("question", "")),
            header=str(data.get("header", "")),
            options=[
                QuestionOption(
                    label=str(opt.get("label", "")),
                    description=str(opt.get("description", "")),
                )
                for opt in data.get("options") or []
                if isinstance(opt, dict)
            ],
            multiple=bool(data.get("multiple", False)),
            custom=bool(data.get("custom", False)),
        )


@dataclass
class QuestionRequest:
    id: str
    session_id: str
    questions: list[QuestionInfo] = field(default_factory=list)
    tool_message_id: str | None = None
    tool_call_id: str | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> QuestionRequest:
        tool = data.get("tool") or {}
        return cls(
            id=str(data.get("id", "")),
            session_id=str(data.get("sessionID", "")),
            questions=[
                QuestionInfo.from_dict(q)
                for q in data.get("questions") or []
                if isinstance(q, dict)
            ],
            tool_message_id=tool.get("messageID"),
            tool_call_id=tool.get("callID"),
        )
