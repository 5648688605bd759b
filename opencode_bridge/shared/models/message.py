"""Message and part models carried by the event stream."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class MessageRole(Enum):
    USER = "user"
    ASSISTANT = "assistant"


class PartType:
    TEXT = "text"
    TOOL = "tool"
    STEP_START = "step-start"
    STEP_FINISH = "step-finish"
    REASONING = "reasoning"


@dataclass
class MessageInfo:
    id: str
    session_id: str
    role: str | None = None
    created: float | None = None
    model_id: str | None = None
    provider_id: str | None = None
    parts: list[Part] = field(default_factory=list)
    raw: dict[str, Any] = field(default_factory=dict, repr=False)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> MessageInfo:
        # GET /session/{id}/message wraps each entry as {"info": ..., "parts": [...]}
        info = data.get("info") if isinstance(data.get("info"), dict) else data
        time_info = info.get("time") or {}
        return cls(
            id=str(info.get("id", "")),
            session_id=str(info.get("sessionID", "")),
            role=info.get("role"),
            created=time_info.get("created"),
            model_id=info.get("modelID"),
            provider_id=info.get("providerID"),
            parts=[
                Part.from_dict(p)
                for p in (data.get("parts") or info.get("parts") or [])
                if isinstance(p, dict)
            ],
            raw=dict(data),
        )


@dataclass
class Part:
    """A unit of streamed output inside a message.

    Only the fields the bridge routes on are lifted out; everything else
    (tool state, token counts, step reasons) stays in ``raw``.
    """
    id: str
    session_id: str
    message_id: str
    type: str
    text: str | None = None
    time_start: float | None = None
    time_end: float | None = None
    raw: dict[str, Any] = field(default_factory=dict, repr=False)

    @property
    def ended(self) -> bool:
        return self.time_end is not None

    @property
    def tool(self) -> str | None:
        return self.raw.get("tool")

    @property
    def state(self) -> dict[str, Any]:
        return self.raw.get("state") or {}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Part:
        time_info = data.get("time") or {}
        text = data.get("text")
        return cls(
            id=str(data.get("id", "")),
            session_id=str(data.get("sessionID", "")),
            message_id=str(data.get("messageID", "")),
            type=str(data.get("type", "")),
            text=text if isinstance(text, str) else None,
            time_start=time_info.get("start"),
            time_end=time_info.get("end"),
            raw=dict(data),
        )
