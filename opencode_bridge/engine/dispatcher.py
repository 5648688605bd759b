"""Decode backend stream payloads into typed events.

The dispatcher is a routing step plus two pieces of per-connection state:
the accumulated text of every streaming text part and the role of every
message seen so far. Text parts of user messages are echoes of the
caller's own prompt and are never republished.
"""
from __future__ import annotations

import json
import logging
from collections.abc import Callable
from typing import Any

from opencode_bridge.adapters.event_bus import EventBus
from opencode_bridge.adapters.events import (
    DiffUpdated,
    MessageUpdated,
    PermissionAsked,
    QuestionAsked,
    ServerConnected,
    SessionErrored,
    SessionIdle,
    SessionStatusChanged,
    StepFinished,
    StepStarted,
    StreamErrorEvent,
    TextDelta,
    TextDone,
    TodoUpdated,
    ToolUpdated,
)
from opencode_bridge.engine.errors import PayloadParseError
from opencode_bridge.shared.models.changes import FileDiff, Todo
from opencode_bridge.shared.models.interaction import PermissionRequest, QuestionRequest
from opencode_bridge.shared.models.message import MessageInfo, MessageRole, Part, PartType
from opencode_bridge.shared.models.session import SessionStatus

logger = logging.getLogger(__name__)


class PartAccumulator:
    """Running text per part id.

    A delta is appended. A full text that extends the stored text yields
    the new suffix as its delta; any other full text (a rewrite, or a
    shorter retraction) replaces the stored text and is itself the delta.
    """

    def __init__(self) -> None:
        self._texts: dict[str, str] = {}

    def get(self, part_id: str) -> str:
        return self._texts.get(part_id, "")

    def apply(
        self,
        part_id: str,
        *,
        delta: str | None = None,
        text: str | None = None,
    ) -> tuple[str, str]:
        """Return ``(delta, full_text)`` after applying one update."""
        previous = self._texts.get(part_id, "")
        if delta is not None:
            full = previous + delta
            emitted = delta
        elif text is not None:
            full = text
            if text.startswith(previous):
                emitted = text[len(previous):]
            else:
                emitted = text
        else:
            full = previous
            emitted = ""
        self._texts[part_id] = full
        return emitted, full

    def clear(self) -> None:
        self._texts.clear()

    def __len__(self) -> int:
        return len(self._texts)

    def __contains__(self, part_id: object) -> bool:
        return part_id in self._texts


class EventDispatcher:
    """Routes decoded backend events onto an ``EventBus``."""

    def __init__(self, bus: EventBus) -> None:
        self._bus = bus
        self.parts = PartAccumulator()
        self.message_roles: dict[str, str] = {}
        self.on_server_connected: Callable[[], None] | None = None

    def dispatch_payload(self, payload: str) -> None:
        """Parse one stream record body and dispatch it.

        A body that is not a JSON object is reported as an ``error`` event
        and otherwise skipped.
        """
        try:
            event = json.loads(payload)
        except ValueError as exc:
            logger.warning("Dropping malformed event payload: %s", exc)
            self._bus.publish(StreamErrorEvent(error=PayloadParseError(payload, str(exc))))
            return
        if not isinstance(event, dict):
            self._bus.publish(StreamErrorEvent(
                error=PayloadParseError(payload, "expected a JSON object"),
            ))
            return
        # Global endpoint wraps events as {"directory": ..., "payload": {...}}.
        if "type" not in event and isinstance(event.get("payload"), dict):
            event = event["payload"]
        try:
            self.dispatch(event)
        except (TypeError, ValueError, AttributeError) as exc:
            logger.warning(
                "Dropping undecodable %s event: %s", event.get("type"), exc,
                exc_info=True,
            )
            self._bus.publish(StreamErrorEvent(error=PayloadParseError(payload, str(exc))))

    def dispatch(self, event: dict[str, Any]) -> None:
        event_type = event.get("type")
        props = event.get("properties")
        if not isinstance(props, dict):
            props = {}

        if event_type == "session.status":
            self._bus.publish(SessionStatusChanged(
                session_id=str(props.get("sessionID", "")),
                status=SessionStatus.from_dict(props.get("status")),
            ))
        elif event_type == "session.idle":
            self._bus.publish(SessionIdle(session_id=str(props.get("sessionID", ""))))
        elif event_type == "session.error":
            self._bus.publish(SessionErrored(
                session_id=props.get("sessionID"),
                error=props.get("error"),
            ))
        elif event_type == "session.diff":
            self._bus.publish(DiffUpdated(
                session_id=str(props.get("sessionID", "")),
                diffs=[FileDiff.from_dict(d) for d in props.get("diff") or [] if isinstance(d, dict)],
            ))
        elif event_type == "message.updated":
            info = props.get("info")
            if isinstance(info, dict):
                message = MessageInfo.from_dict(info)
                if message.role:
                    self.message_roles[message.id] = message.role
                self._bus.publish(MessageUpdated(message=message))
        elif event_type == "message.part.updated":
            part = props.get("part")
            if isinstance(part, dict):
                delta = props.get("delta")
                self._handle_part(Part.from_dict(part), delta if isinstance(delta, str) else None)
        elif event_type == "permission.asked":
            self._bus.publish(PermissionAsked(request=PermissionRequest.from_dict(props)))
        elif event_type == "question.asked":
            self._bus.publish(QuestionAsked(request=QuestionRequest.from_dict(props)))
        elif event_type == "todo.updated":
            self._bus.publish(TodoUpdated(
                session_id=str(props.get("sessionID", "")),
                todos=[Todo.from_dict(t) for t in props.get("todos") or [] if isinstance(t, dict)],
            ))
        elif event_type == "server.connected":
            if self.on_server_connected is not None:
                self.on_server_connected()
            self._bus.publish(ServerConnected())
        else:
            logger.debug("Ignoring event type %r", event_type)

    def _handle_part(self, part: Part, delta: str | None) -> None:
        if part.type == PartType.TEXT:
            if self.message_roles.get(part.message_id) == MessageRole.USER.value:
                return
            emitted, full = self.parts.apply(part.id, delta=delta, text=part.text)
            if emitted:
                self._bus.publish(TextDelta(
                    session_id=part.session_id,
                    part_id=part.id,
                    message_id=part.message_id,
                    delta=emitted,
                    full_text=full,
                ))
            if part.ended:
                self._bus.publish(TextDone(
                    session_id=part.session_id,
                    part_id=part.id,
                    message_id=part.message_id,
                    text=full,
                ))
        elif part.type == PartType.TOOL:
            self._bus.publish(ToolUpdated(session_id=part.session_id, part=part))
        elif part.type == PartType.STEP_START:
            self._bus.publish(StepStarted(session_id=part.session_id, part=part))
        elif part.type == PartType.STEP_FINISH:
            self._bus.publish(StepFinished(session_id=part.session_id, part=part))

    def reset(self) -> None:
        """Forget accumulated part text and cached message roles."""
        self.parts.clear()
        self.message_roles.clear()
