"""Exception hierarchy for the backend bridge.

Launch errors are fatal to a single ``start()`` call. Request errors are
raised to the caller of the failed request. Stream errors never propagate
to callers; they are published as ``error`` events.
"""
from __future__ import annotations

from typing import Any


class BridgeError(Exception):
    """Base exception for all bridge errors."""


# ── Launch ──


class LaunchError(BridgeError):
    """``start()`` could not bring the backend up."""

    reason = "launch failed"


class BinaryNotFoundError(LaunchError):
    """The backend executable is not on the search path."""

    reason = "binary not found"

    def __init__(self, command: str):
        self.command = command
        super().__init__(
            f"'{command}' CLI not found. "
            f"Install it first: curl -fsSL https://opencode.ai/install | bash"
        )


class SpawnFailedError(LaunchError):
    """The backend process failed to spawn or exited before it was ready."""

    reason = "spawn failed"

    def __init__(
        self,
        port: int,
        detail: str,
        *,
        exit_code: int | None = None,
        stderr: str = "",
    ):
        self.port = port
        self.exit_code = exit_code
        self.stderr = stderr
        msg = f"Backend on port {port} failed: {detail}"
        if stderr:
            msg += f" (stderr: {stderr.strip()})"
        super().__init__(msg)


class ReadyTimeoutError(LaunchError):
    """The backend never answered its liveness endpoint."""

    reason = "timeout"

    def __init__(self, port: int, timeout_seconds: float):
        self.port = port
        self.timeout_seconds = timeout_seconds
        super().__init__(
            f"Backend on port {port} did not become ready "
            f"within {timeout_seconds}s"
        )


class StartAbortedError(LaunchError):
    """``stop()`` was called while ``start()`` was still in flight."""

    reason = "aborted"

    def __init__(self) -> None:
        super().__init__("Backend start aborted by stop()")


# ── Transport ──


class NotStartedError(BridgeError):
    """A request was issued before the backend was started."""

    def __init__(self) -> None:
        super().__init__("Backend server is not started")


class RequestError(BridgeError):
    """An HTTP request to the backend failed."""

    def __init__(
        self,
        method: str,
        path: str,
        message: str,
        *,
        status: int | None = None,
        body: Any | None = None,
    ):
        self.method = method
        self.path = path
        self.status = status
        self.body = body
        super().__init__(message)


# ── Stream ──


class StreamError(BridgeError):
    """The event stream failed or dropped."""


class PayloadParseError(StreamError):
    """An event stream record did not contain a valid JSON document."""

    def __init__(self, payload: str, detail: str):
        self.payload = payload
        super().__init__(f"Failed to parse event payload: {detail}")
