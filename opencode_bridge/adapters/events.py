"""Event types published by the bridge.

Each backend stream record is decoded into one of these dataclasses
before it reaches subscribers. ``event_type`` is the subscription key.
"""
from __future__ import annotations

from dataclasses import asdict, dataclass, field, is_dataclass
from typing import Any

from opencode_bridge.shared.models.changes import FileDiff, Todo
from opencode_bridge.shared.models.interaction import PermissionRequest, QuestionRequest
from opencode_bridge.shared.models.message import MessageInfo, Part
from opencode_bridge.shared.models.session import SessionStatus


@dataclass
class BridgeEvent:
    """Base event."""
    event_type: str = ""


# ── Connectivity ──


@dataclass
class Connected(BridgeEvent):
    event_type: str = "connected"


@dataclass
class Disconnected(BridgeEvent):
    event_type: str = "disconnected"


@dataclass
class StreamErrorEvent(BridgeEvent):
    """Recoverable stream problem: a dropped connection or a malformed record."""
    event_type: str = "error"
    error: Exception | None = None


@dataclass
class ServerConnected(BridgeEvent):
    """The backend's own ``server.connected`` hello on the stream."""
    event_type: str = "server.connected"


# ── Session lifecycle ──


@dataclass
class SessionStatusChanged(BridgeEvent):
    event_type: str = "session.status"
    session_id: str = ""
    status: SessionStatus = field(default_factory=lambda: SessionStatus(type="idle"))


@dataclass
class SessionIdle(BridgeEvent):
    event_type: str = "session.idle"
    session_id: str = ""


@dataclass
class SessionErrored(BridgeEvent):
    event_type: str = "session.error"
    session_id: str | None = None
    error: dict[str, Any] | None = None

    @property
    def message(self) -> str:
        if not self.error:
            return ""
        return str(self.error.get("message") or (self.error.get("data") or {}).get("message", ""))


@dataclass
class DiffUpdated(BridgeEvent):
    event_type: str = "diff.updated"
    session_id: str = ""
    diffs: list[FileDiff] = field(default_factory=list)


@dataclass
class TodoUpdated(BridgeEvent):
    event_type: str = "todo.updated"
    session_id: str = ""
    todos: list[Todo] = field(default_factory=list)


# ── Messages and parts ──


@dataclass
class MessageUpdated(BridgeEvent):
    event_type: str = "message.updated"
    message: MessageInfo | None = None


@dataclass
class TextDelta(BridgeEvent):
    event_type: str = "text.delta"
    session_id: str = ""
    part_id: str = ""
    message_id: str = ""
    delta: str = ""
    full_text: str = ""


@dataclass
class TextDone(BridgeEvent):
    event_type: str = "text.done"
    session_id: str = ""
    part_id: str = ""
    message_id: str = ""
    text: str = ""


@dataclass
class ToolUpdated(BridgeEvent):
    event_type: str = "tool.updated"
    session_id: str = ""
    part: Part | None = None


@dataclass
class StepStarted(BridgeEvent):
    event_type: str = "step.start"
    session_id: str = ""
    part: Part | None = None


@dataclass
class StepFinished(BridgeEvent):
    event_type: str = "step.finish"
    session_id: str = ""
    part: Part | None = None


# ── Interaction ──


@dataclass
class PermissionAsked(BridgeEvent):
    event_type: str = "permission.asked"
    request: PermissionRequest | None = None


@dataclass
class QuestionAsked(BridgeEvent):
    event_type: str = "question.asked"
    request: QuestionRequest | None = None


EVENT_TYPES: dict[str, type[BridgeEvent]] = {
    "connected": Connected,
    "disconnected": Disconnected,
    "error": StreamErrorEvent,
    "server.connected": ServerConnected,
    "session.status": SessionStatusChanged,
    "session.idle": SessionIdle,
    "session.error": SessionErrored,
    "diff.updated": DiffUpdated,
    "todo.updated": TodoUpdated,
    "message.updated": MessageUpdated,
    "text.delta": TextDelta,
    "text.done": TextDone,
    "tool.updated": ToolUpdated,
    "step.start": StepStarted,
    "step.finish": StepFinished,
    "permission.asked": PermissionAsked,
    "question.asked": QuestionAsked,
}


def event_to_dict(event: BridgeEvent) -> dict[str, Any]:
    """Flatten an event into a JSON-friendly dict (used by ``--watch``)."""
    d: dict[str, Any] = {"event": event.event_type}
    for name in event.__dataclass_fields__:
        if name == "event_type":
            continue
        val = getattr(event, name)
        if val is None:
            continue
        if isinstance(val, Exception):
            d[name] = f"{type(val).__name__}: {val}"
        elif getattr(val, "raw", None):
            d[name] = val.raw
        elif is_dataclass(val):
            d[name] = asdict(val)
        elif isinstance(val, list):
            d[name] = [asdict(v) if is_dataclass(v) else v for v in val]
        else:
            d[name] = val
    return d
