"""YAML configuration loader.

Env vars provide the base; a YAML file overrides them field by field.

Example YAML:
    bridge:
      command: opencode
      base_port: 14000
      max_start_attempts: 3
      ready_timeout_seconds: 10
      reconnect_delay_seconds: 2
      max_reconnect_attempts: 5

    models:
      model: anthropic/claude-sonnet-4-5
      plugin_model: openai/gpt-5
      enable_plugins: true
"""
from __future__ import annotations

import logging
from dataclasses import fields, replace
from pathlib import Path
from typing import Any

import yaml

from .config import BridgeConfig

logger = logging.getLogger(__name__)

CONFIG_CANDIDATES = (
    Path(".opencode") / "bridge.yaml",
    Path("opencode-bridge.yaml"),
)

_MODEL_KEYS = {"model", "plugin_model", "enable_plugins"}


def discover_config(cwd: str | Path) -> Path | None:
    """Return the first existing config candidate under *cwd*."""
    root = Path(cwd)
    for candidate in CONFIG_CANDIDATES:
        path = root / candidate
        if path.is_file():
            logger.info("Auto-discovered config: %s", path)
            return path
    logger.debug(
        "No config file found under %s (tried %s)",
        root, ", ".join(str(c) for c in CONFIG_CANDIDATES),
    )
    return None


def _coerce(value: Any, current: Any) -> Any:
    if isinstance(current, bool):
        if isinstance(value, str):
            return value.lower() in {"1", "true", "yes"}
        return bool(value)
    if isinstance(current, int):
        return int(value)
    if isinstance(current, float):
        return float(value)
    return str(value)


def load_yaml_config(
    path: str | Path,
    base: BridgeConfig | None = None,
) -> BridgeConfig:
    """Load a YAML file on top of *base* (default: ``BridgeConfig.from_env()``).

    Unknown keys are logged and ignored. A relative ``project_root`` is
    resolved against the config file's directory.
    """
    path = Path(path)
    logger.info(
        "load_yaml_config: loading %s (exists=%s)", path, path.exists(),
    )
    try:
        with open(path, encoding="utf-8") as f:
            raw = yaml.safe_load(f) or {}
    except FileNotFoundError:
        logger.error("load_yaml_config: config file not found at %s", path.absolute())
        raise
    except yaml.YAMLError as exc:
        logger.error("load_yaml_config: YAML parse error in %s: %s", path, exc)
        raise

    if not isinstance(raw, dict):
        raise ValueError(f"{path}: top level must be a mapping")

    config = base or BridgeConfig.from_env()
    known = {f.name for f in fields(BridgeConfig)}
    overrides: dict[str, Any] = {}

    sections = [("bridge", raw.get("bridge") or {}), ("models", raw.get("models") or {})]
    for section, values in sections:
        if not isinstance(values, dict):
            raise ValueError(f"{path}: '{section}' must be a mapping")
        for key, value in values.items():
            if key not in known or (section == "models" and key not in _MODEL_KEYS):
                logger.warning("load_yaml_config: ignoring unknown key %s.%s", section, key)
                continue
            if value is None:
                continue
            overrides[key] = _coerce(value, getattr(config, key))

    root = overrides.get("project_root")
    if root and not Path(root).expanduser().is_absolute():
        overrides["project_root"] = str((path.parent / root).resolve())

    logger.info(
        "Parsed YAML config %s: overrides %s",
        path.name, ", ".join(sorted(overrides)) if overrides else "(none)",
    )
    return replace(config, **overrides)
