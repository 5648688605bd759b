"""Long-lived Server-Sent Events connection to the backend.

The client owns the connection state, the framing buffer and the
reconnect counter. Bytes are framed into records as they arrive and
handed to the dispatcher in wire order. End of stream, read errors and
explicit closes all funnel through one disconnect handler, which decides
whether to schedule a reconnect.
"""
from __future__ import annotations

import asyncio
import codecs
import logging
import re
from collections.abc import Callable
from enum import Enum

import aiohttp

from opencode_bridge.adapters.event_bus import EventBus
from opencode_bridge.adapters.events import Connected, Disconnected, StreamErrorEvent
from opencode_bridge.engine.config import BridgeConfig
from opencode_bridge.engine.dispatcher import EventDispatcher
from opencode_bridge.engine.errors import StreamError

logger = logging.getLogger(__name__)


class ConnectionState(Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"


class SSEFrameParser:
    """Incremental ``text/event-stream`` framer.

    ``feed()`` accepts arbitrarily split chunks and returns the data payload
    of every record completed so far. Records are separated by a blank line;
    only ``data:`` lines are kept and multiple data lines are joined with
    ``\\n``. Records without data (comments, keepalives) are skipped.
    """

    _RECORD_BOUNDARY = re.compile(r"\r?\n\r?\n")
    _LINE_BOUNDARY = re.compile(r"\r?\n")

    def __init__(self) -> None:
        self._buffer = ""
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")

    @property
    def pending(self) -> str:
        return self._buffer

    def feed(self, chunk: bytes | str) -> list[str]:
        if isinstance(chunk, bytes):
            chunk = self._decoder.decode(chunk)
        self._buffer += chunk
        records = self._RECORD_BOUNDARY.split(self._buffer)
        self._buffer = records.pop()
        payloads: list[str] = []
        for record in records:
            data_lines = [
                _strip_field(line)
                for line in self._LINE_BOUNDARY.split(record)
                if line.startswith("data:")
            ]
            if data_lines:
                payloads.append("\n".join(data_lines))
        return payloads

    def reset(self) -> None:
        self._buffer = ""
        self._decoder.reset()


def _strip_field(line: str) -> str:
    value = line[len("data:"):]
    if value[:1].isspace():
        value = value[1:]
    return value


class EventStreamClient:
    """Keeps one ``GET /event`` stream open and reconnects when it drops.

    ``base_url`` returns the backend URL (empty when no backend is bound).
    ``can_reconnect`` is asked before every scheduled reconnect; the
    supervisor answers False while stopping or when its process is gone.
    """

    def __init__(
        self,
        config: BridgeConfig,
        dispatcher: EventDispatcher,
        bus: EventBus,
        *,
        base_url: Callable[[], str],
        can_reconnect: Callable[[], bool] = lambda: True,
    ) -> None:
        self._config = config
        self._dispatcher = dispatcher
        self._bus = bus
        self._base_url = base_url
        self._can_reconnect = can_reconnect

        self.state = ConnectionState.DISCONNECTED
        self.reconnect_attempts = 0
        self._parser = SSEFrameParser()
        self._session: aiohttp.ClientSession | None = None
        self._response: aiohttp.ClientResponse | None = None
        self._reader_task: asyncio.Task | None = None
        self._reconnect_task: asyncio.Task | None = None
        self._stopping = False

        dispatcher.on_server_connected = self._mark_connected

    # ── State ──

    @property
    def connected(self) -> bool:
        return self.state is ConnectionState.CONNECTED

    @property
    def reconnect_pending(self) -> bool:
        return self._reconnect_task is not None and not self._reconnect_task.done()

    @property
    def stopping(self) -> bool:
        return self._stopping

    def _mark_connected(self) -> None:
        if self.state is not ConnectionState.CONNECTED:
            self.state = ConnectionState.CONNECTED
            self._bus.publish(Connected())

    # ── Connect ──

    async def connect(self) -> None:
        """Open the stream; returns once response headers are in.

        Raises:
            StreamError: the request failed, timed out or got a non-2xx
                status. The disconnect handler has already run.
        """
        await self._teardown()
        base = self._base_url()
        if not base:
            raise StreamError("Backend server is not started")
        url = f"{base}{self._config.event_path}"
        self.state = ConnectionState.CONNECTING
        session = aiohttp.ClientSession(
            timeout=aiohttp.ClientTimeout(total=None, sock_read=None),
        )
        self._session = session

        try:
            response = await asyncio.wait_for(
                self._open(session, url),
                timeout=self._config.connect_timeout_seconds,
            )
        except asyncio.TimeoutError:
            error = StreamError(
                f"SSE connection timeout after {self._config.connect_timeout_seconds}s"
            )
            await self._fail_connect(session, error)
            raise error from None
        except (aiohttp.ClientError, OSError) as exc:
            error = StreamError(f"SSE connection failed: {exc}")
            await self._fail_connect(session, error)
            raise error from exc

        if self._stopping or self._session is not session:
            # shutdown() or a newer connect() ran while the request was in flight.
            response.close()
            await session.close()
            raise StreamError("SSE connection abandoned: superseded or shutting down")

        self._response = response
        if response.status >= 400:
            error = StreamError(f"SSE connection failed with status {response.status}")
            await self._handle_disconnect(error)
            raise error

        logger.info("SSE connected to %s", url)
        self.reconnect_attempts = 0
        self._mark_connected()
        self._reader_task = asyncio.create_task(self._read_loop(response))

    async def _fail_connect(self, session: aiohttp.ClientSession, error: StreamError) -> None:
        if self._session is not session:
            # Superseded attempt; the current connection is not ours to release.
            if not session.closed:
                await session.close()
            return
        await self._handle_disconnect(error)

    @staticmethod
    async def _open(session: aiohttp.ClientSession, url: str) -> aiohttp.ClientResponse:
        return await session.get(url, headers={"Accept": "text/event-stream"})

    async def _read_loop(self, response: aiohttp.ClientResponse) -> None:
        try:
            async for chunk in response.content.iter_any():
                if self._stopping:
                    return
                for payload in self._parser.feed(chunk):
                    if self._stopping:
                        return
                    self._dispatcher.dispatch_payload(payload)
            error = StreamError("SSE connection ended")
        except (aiohttp.ClientError, OSError, asyncio.TimeoutError) as exc:
            error = StreamError(f"SSE connection closed: {exc}")
        if self._response is response:
            await self._handle_disconnect(error)

    # ── Disconnect ──

    async def _teardown(self) -> None:
        """Cancel the reconnect timer, release the connection, reset framing."""
        await self._cancel_reconnect()
        await self._release()
        self._parser.reset()
        if self.state is ConnectionState.CONNECTED:
            self.state = ConnectionState.DISCONNECTED
            self._bus.publish(Disconnected())
        else:
            self.state = ConnectionState.DISCONNECTED

    async def _release(self) -> None:
        reader, self._reader_task = self._reader_task, None
        if reader is not None and reader is not asyncio.current_task() and not reader.done():
            reader.cancel()
            await asyncio.wait({reader})
        response, self._response = self._response, None
        if response is not None:
            response.close()
        session, self._session = self._session, None
        if session is not None and not session.closed:
            await session.close()

    async def _handle_disconnect(self, error: Exception | None = None) -> None:
        await self._teardown()
        if self._stopping:
            return
        if error is not None:
            logger.warning("SSE disconnected: %s", error)
            self._bus.publish(StreamErrorEvent(error=error))
        else:
            logger.info("SSE disconnected")
        self._schedule_reconnect()

    # ── Reconnect ──

    def _schedule_reconnect(self) -> None:
        if self._stopping or not self._can_reconnect():
            return
        if self.reconnect_attempts >= self._config.max_reconnect_attempts:
            logger.warning(
                "SSE reconnect gave up after %d attempts", self.reconnect_attempts,
            )
            return
        if self.reconnect_pending and self._reconnect_task is not asyncio.current_task():
            return
        self.reconnect_attempts += 1
        logger.info(
            "SSE reconnect %d/%d in %.1fs",
            self.reconnect_attempts,
            self._config.max_reconnect_attempts,
            self._config.reconnect_delay_seconds,
        )
        self._reconnect_task = asyncio.create_task(self._reconnect_later())

    async def _reconnect_later(self) -> None:
        # The handle stays set until the attempt finishes, connect included.
        try:
            await asyncio.sleep(self._config.reconnect_delay_seconds)
            if self._stopping or not self._can_reconnect():
                return
            try:
                await self.connect()
            except StreamError as exc:
                # connect() already ran the disconnect handler, which rescheduled.
                logger.debug("SSE reconnect attempt %d failed: %s", self.reconnect_attempts, exc)
        finally:
            if self._reconnect_task is asyncio.current_task():
                self._reconnect_task = None

    async def _cancel_reconnect(self) -> None:
        task = self._reconnect_task
        if task is None or task is asyncio.current_task():
            return
        self._reconnect_task = None
        if not task.done():
            task.cancel()
            await asyncio.wait({task})

    # ── Lifecycle ──

    async def shutdown(self) -> None:
        """Close the stream for good and clear all per-connection state.

        Leaves no pending timer or reader. ``resume()`` re-arms the client.
        """
        self._stopping = True
        await self._teardown()
        self._dispatcher.reset()
        self.reconnect_attempts = 0

    def resume(self) -> None:
        self._stopping = False
