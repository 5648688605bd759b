"""Request/response client for the backend's local HTTP API.

Thin wrapper: one ``aiohttp.ClientSession`` for short calls, JSON in and
out, non-2xx mapped to ``RequestError``. No retries. The long-lived event
stream uses its own session so it never competes with these calls.
"""
from __future__ import annotations

import asyncio
import json
import logging
from typing import Any
from urllib.parse import quote

import aiohttp

from opencode_bridge.engine.errors import NotStartedError, RequestError
from opencode_bridge.shared.models.interaction import PermissionResponse
from opencode_bridge.shared.models.message import MessageInfo
from opencode_bridge.shared.models.session import PermissionRule, Session

logger = logging.getLogger(__name__)


def _seg(value: str) -> str:
    return quote(str(value), safe="")


class BackendClient:
    """HTTP client for one backend instance.

    Usage:
        client = BackendClient("http://127.0.0.1:14000")
        session = await client.create_session()
        await client.send_message(session.id, "hello")
    """

    def __init__(self, base_url: str | None = None, timeout: float = 30.0) -> None:
        self._base_url = base_url.rstrip("/") if base_url else ""
        self.timeout = timeout
        self._session: aiohttp.ClientSession | None = None

    # ── Binding ──

    @property
    def base_url(self) -> str:
        return self._base_url

    def bind(self, base_url: str) -> None:
        self._base_url = base_url.rstrip("/")

    def unbind(self) -> None:
        self._base_url = ""

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.timeout),
            )
        return self._session

    async def close(self) -> None:
        if self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None

    # ── Transport ──

    async def request(self, method: str, path: str, json_body: Any | None = None) -> Any:
        """Send one request and return the decoded JSON body.

        Returns None for 204 or an empty body.

        Raises:
            NotStartedError: no backend is bound.
            RequestError: transport failure, non-2xx status, or a success
                body that is not JSON.
        """
        if not self._base_url:
            raise NotStartedError()
        session = await self._get_session()
        url = f"{self._base_url}{path}"
        data = json.dumps(json_body) if json_body is not None else None
        logger.debug("Backend request %s %s", method, path)
        try:
            async with session.request(
                method,
                url,
                data=data,
                headers={"Content-Type": "application/json"},
            ) as resp:
                text = await resp.text()
                status = resp.status
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            logger.warning("Backend request %s %s failed: %s", method, path, exc)
            raise RequestError(
                method, path, f"{type(exc).__name__}: {exc}",
            ) from exc

        if status >= 400:
            logger.warning("Backend request %s %s -> HTTP %d", method, path, status)
            raise RequestError(
                method,
                path,
                f"HTTP {status}: {text or 'Request failed'}",
                status=status,
                body=text,
            )
        if status == 204 or not text.strip():
            return None
        try:
            return json.loads(text)
        except ValueError as exc:
            raise RequestError(
                method,
                path,
                f"Failed to parse JSON response: {exc}",
                status=status,
                body=text,
            ) from exc

    async def probe(self, path: str = "/session") -> bool:
        """True when the backend answers ``GET path`` with a 2xx."""
        try:
            await self.request("GET", path)
        except (RequestError, NotStartedError):
            return False
        return True

    # ── Domain requests ──

    async def create_session(self, permissions: list[PermissionRule] | None = None) -> Session:
        body: dict[str, Any] = {}
        if permissions:
            body["permission"] = [rule.to_dict() for rule in permissions]
        data = await self.request("POST", "/session", body)
        return Session.from_dict(data or {})

    async def list_sessions(self) -> list[Session]:
        data = await self.request("GET", "/session")
        return [Session.from_dict(item) for item in data or [] if isinstance(item, dict)]

    async def send_message(self, session_id: str, text: str) -> None:
        """Queue a prompt; the reply arrives on the event stream."""
        body = {"parts": [{"type": "text", "text": text}]}
        await self.request("POST", f"/session/{_seg(session_id)}/prompt_async", body)

    async def get_messages(self, session_id: str) -> list[MessageInfo]:
        data = await self.request("GET", f"/session/{_seg(session_id)}/message")
        return [MessageInfo.from_dict(item) for item in data or [] if isinstance(item, dict)]

    async def abort_session(self, session_id: str) -> None:
        await self.request("POST", f"/session/{_seg(session_id)}/abort")

    async def approve_permission(self, session_id: str, permission_id: str, response: str) -> None:
        if response not in PermissionResponse.ALL:
            raise ValueError(
                f"Invalid permission response {response!r}; "
                f"expected one of {sorted(PermissionResponse.ALL)}"
            )
        await self.request(
            "POST",
            f"/session/{_seg(session_id)}/permissions/{_seg(permission_id)}",
            {"response": response},
        )

    async def reply_to_question(self, request_id: str, answers: list[list[str]]) -> None:
        await self.request(
            "POST",
            f"/question/{_seg(request_id)}/reply",
            {"answers": [list(a) for a in answers]},
        )

    async def reject_question(self, request_id: str) -> None:
        await self.request("POST", f"/question/{_seg(request_id)}/reject")
