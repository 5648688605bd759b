"""Backend supervision, event streaming and dispatch."""
from .config import BridgeConfig
from .errors import (
    BinaryNotFoundError,
    BridgeError,
    LaunchError,
    NotStartedError,
    PayloadParseError,
    ReadyTimeoutError,
    RequestError,
    SpawnFailedError,
    StartAbortedError,
    StreamError,
)

__all__ = [
    # Composition root (lazy import)
    "OpenCodeServer",
    # Components (lazy import)
    "BackendClient",
    "ProcessSupervisor",
    "EventStreamClient",
    "ConnectionState",
    "SSEFrameParser",
    "EventDispatcher",
    "PartAccumulator",
    # Config
    "BridgeConfig",
    "load_yaml_config",
    # Errors
    "BridgeError",
    "LaunchError",
    "BinaryNotFoundError",
    "SpawnFailedError",
    "ReadyTimeoutError",
    "StartAbortedError",
    "NotStartedError",
    "RequestError",
    "StreamError",
    "PayloadParseError",
]


def __getattr__(name: str):
    if name == "OpenCodeServer":
        from .server import OpenCodeServer
        return OpenCodeServer
    if name == "BackendClient":
        from .http_client import BackendClient
        return BackendClient
    if name == "ProcessSupervisor":
        from .supervisor import ProcessSupervisor
        return ProcessSupervisor
    if name in {"EventStreamClient", "ConnectionState", "SSEFrameParser"}:
        from . import event_stream
        return getattr(event_stream, name)
    if name in {"EventDispatcher", "PartAccumulator"}:
        from . import dispatcher
        return getattr(dispatcher, name)
    if name == "load_yaml_config":
        from .yaml_config import load_yaml_config
        return load_yaml_config
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
