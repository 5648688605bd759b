"""opencode-bridge: supervise a local OpenCode backend and stream its events."""
from __future__ import annotations

__version__ = "0.1.0"

__all__ = ["OpenCodeServer", "BridgeConfig", "__version__"]


def __getattr__(name: str):
    if name == "OpenCodeServer":
        from .engine.server import OpenCodeServer
        return OpenCodeServer
    if name == "BridgeConfig":
        from .engine.config import BridgeConfig
        return BridgeConfig
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
