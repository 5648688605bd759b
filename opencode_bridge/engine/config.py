"""Configuration loaded from environment variables.

All settings have sensible defaults. Override via OPENCODE_BRIDGE_* env vars
or a YAML file (see ``yaml_config``).
"""
from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path

logger = logging.getLogger(__name__)

ENV_PREFIX = "OPENCODE_BRIDGE_"


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    return raw.lower() in {"1", "true", "yes"}


@dataclass
class BridgeConfig:
    """Supervisor, stream and request settings for one backend instance."""

    # Working directory for the spawned backend.
    project_root: str = "."
    # Backend executable, resolved on PATH (augmented with user_bin_dir).
    command: str = "opencode"
    host: str = "127.0.0.1"

    # Launch: ports base_port .. base_port + max_start_attempts - 1.
    base_port: int = 14000
    max_start_attempts: int = 3
    ready_timeout_seconds: float = 10.0
    ready_poll_interval_seconds: float = 0.5
    ready_path: str = "/session"
    # Grace period between SIGTERM and SIGKILL on stop.
    stop_grace_seconds: float = 3.0
    # Pause between stop() and start() in restart(), for port release.
    restart_delay_seconds: float = 3.0

    # Event stream
    event_path: str = "/event"
    connect_timeout_seconds: float = 5.0
    reconnect_delay_seconds: float = 2.0
    max_reconnect_attempts: int = 5

    # Request/response calls
    request_timeout_seconds: float = 30.0

    # Prepended to PATH for the child when not already present.
    user_bin_dir: str | None = "~/.opencode/bin"

    # Exported to the backend as OPENCODE_MODEL / OH_MY_OPENCODE_MODEL.
    model: str = ""
    plugin_model: str = ""
    enable_plugins: bool = True
    # Write <project_root>/.opencode/opencode.json before each launch.
    write_local_config: bool = True

    log_level: str = "INFO"

    @property
    def project_path(self) -> Path:
        return Path(self.project_root).expanduser().resolve()

    def port_candidates(self) -> list[int]:
        return [self.base_port + i for i in range(max(1, self.max_start_attempts))]

    @classmethod
    def from_env(cls, project_root: str | None = None) -> BridgeConfig:
        """Load configuration from OPENCODE_BRIDGE_* environment variables."""
        bridge_vars = {
            k: v for k, v in os.environ.items() if k.startswith(ENV_PREFIX)
        }
        if bridge_vars:
            logger.info(
                "BridgeConfig.from_env: env overrides: %s",
                ", ".join(f"{k}={v}" for k, v in sorted(bridge_vars.items())),
            )
        else:
            logger.debug("BridgeConfig.from_env: no %s* env vars set, using defaults", ENV_PREFIX)

        def env(name: str, default: object) -> str:
            return os.getenv(ENV_PREFIX + name, str(default))

        config = cls(
            project_root=project_root or env("PROJECT_ROOT", cls.project_root),
            command=env("COMMAND", cls.command),
            host=env("HOST", cls.host),
            base_port=int(env("BASE_PORT", cls.base_port)),
            max_start_attempts=int(env("START_ATTEMPTS", cls.max_start_attempts)),
            ready_timeout_seconds=float(env("READY_TIMEOUT", cls.ready_timeout_seconds)),
            ready_poll_interval_seconds=float(env(
                "READY_POLL_INTERVAL", cls.ready_poll_interval_seconds,
            )),
            ready_path=env("READY_PATH", cls.ready_path),
            stop_grace_seconds=float(env("STOP_GRACE", cls.stop_grace_seconds)),
            restart_delay_seconds=float(env("RESTART_DELAY", cls.restart_delay_seconds)),
            event_path=env("EVENT_PATH", cls.event_path),
            connect_timeout_seconds=float(env("CONNECT_TIMEOUT", cls.connect_timeout_seconds)),
            reconnect_delay_seconds=float(env("RECONNECT_DELAY", cls.reconnect_delay_seconds)),
            max_reconnect_attempts=int(env("RECONNECT_ATTEMPTS", cls.max_reconnect_attempts)),
            request_timeout_seconds=float(env("REQUEST_TIMEOUT", cls.request_timeout_seconds)),
            user_bin_dir=os.getenv(ENV_PREFIX + "USER_BIN_DIR", cls.user_bin_dir or "") or None,
            model=os.getenv("OPENCODE_MODEL", "") or env("MODEL", cls.model),
            plugin_model=env("PLUGIN_MODEL", cls.plugin_model),
            enable_plugins=_env_bool(ENV_PREFIX + "ENABLE_PLUGINS", cls.enable_plugins),
            write_local_config=_env_bool(ENV_PREFIX + "WRITE_LOCAL_CONFIG", cls.write_local_config),
            log_level=env("LOG_LEVEL", cls.log_level).upper(),
        )
        logger.info(
            "BridgeConfig.from_env: command=%s root=%s ports=%s",
            config.command, config.project_root, config.port_candidates(),
        )
        return config
