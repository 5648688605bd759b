"""Composition root: one backend, one stream, one subscriber registry.

``OpenCodeServer`` wires the pieces together and exposes the surface the
UI and workflow layers talk to. Construct one per project root and own it
from the application's top level; there is no global accessor.

Usage:
    async with OpenCodeServer(BridgeConfig(project_root="~/notes")) as server:
        server.subscribe("text.delta", lambda e: print(e.delta, end=""))
        session = await server.create_session()
        await server.send_message(session.id, "Summarise today's note")
"""
from __future__ import annotations

import logging

from opencode_bridge.adapters.event_bus import EventBus, EventCallback, EventChannel, Subscription
from opencode_bridge.engine.config import BridgeConfig
from opencode_bridge.engine.dispatcher import EventDispatcher
from opencode_bridge.engine.event_stream import ConnectionState
from opencode_bridge.engine.http_client import BackendClient
from opencode_bridge.engine.supervisor import ProcessSupervisor
from opencode_bridge.shared.models.message import MessageInfo
from opencode_bridge.shared.models.session import PermissionRule, Session

logger = logging.getLogger(__name__)


class OpenCodeServer:
    """Backend supervisor plus request and subscription surface."""

    def __init__(self, config: BridgeConfig | None = None) -> None:
        self.config = config or BridgeConfig.from_env()
        self.bus = EventBus()
        self.dispatcher = EventDispatcher(self.bus)
        self.client = BackendClient(timeout=self.config.request_timeout_seconds)
        self.supervisor = ProcessSupervisor(self.config, self.client, self.dispatcher, self.bus)

    # ── Lifecycle ──

    async def start(self) -> None:
        await self.supervisor.start()

    async def stop(self) -> None:
        await self.supervisor.stop()

    async def restart(self) -> None:
        await self.supervisor.restart()

    async def aclose(self) -> None:
        """Stop the backend and release the request session."""
        await self.supervisor.stop()
        await self.client.close()

    async def __aenter__(self) -> OpenCodeServer:
        try:
            await self.start()
        except BaseException:
            await self.aclose()
            raise
        return self

    async def __aexit__(self, *exc: object) -> None:
        await self.aclose()

    @property
    def connected(self) -> bool:
        return self.supervisor.stream.connected

    @property
    def connection_state(self) -> ConnectionState:
        return self.supervisor.stream.state

    @property
    def stream_lost(self) -> bool:
        """Disconnected with no reconnect attempt pending or in flight."""
        stream = self.supervisor.stream
        return stream.state is ConnectionState.DISCONNECTED and not stream.reconnect_pending

    @property
    def running(self) -> bool:
        return self.supervisor.running

    @property
    def port(self) -> int:
        return self.supervisor.port

    @property
    def base_url(self) -> str:
        return self.supervisor.base_url

    # ── Subscriptions ──

    def subscribe(self, event_type: str, callback: EventCallback) -> Subscription:
        return self.bus.subscribe(event_type, callback)

    def unsubscribe(self, event_type: str, callback: EventCallback) -> None:
        self.bus.unsubscribe(event_type, callback)

    def channel(self, *event_types: str, maxsize: int = 5000) -> EventChannel:
        return self.bus.channel(*event_types, maxsize=maxsize)

    # ── Requests ──

    async def create_session(self, permissions: list[PermissionRule] | None = None) -> Session:
        return await self.client.create_session(permissions)

    async def list_sessions(self) -> list[Session]:
        return await self.client.list_sessions()

    async def send_message(self, session_id: str, text: str) -> None:
        await self.client.send_message(session_id, text)

    async def get_messages(self, session_id: str) -> list[MessageInfo]:
        return await self.client.get_messages(session_id)

    async def abort_session(self, session_id: str) -> None:
        await self.client.abort_session(session_id)

    async def approve_permission(self, session_id: str, permission_id: str, response: str) -> None:
        await self.client.approve_permission(session_id, permission_id, response)

    async def reply_to_question(self, request_id: str, answers: list[list[str]]) -> None:
        await self.client.reply_to_question(request_id, answers)

    async def reject_question(self, request_id: str) -> None:
        await self.client.reject_question(request_id)

    async def list_models(self) -> list[str]:
        return await self.supervisor.list_models()
