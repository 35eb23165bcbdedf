"""YAML configuration loader for the bridge.

Reads an ``agui-bridge.yaml`` file with a single ``bridge:`` section
whose keys mirror the BridgeConfig fields. Values in the file override
the environment-derived defaults from BridgeConfig.from_env().

Example::

    bridge:
      host: 127.0.0.1
      http_port: 3000
      agent_id: default
      cli_path: /usr/local/bin/claude
      control_request_timeout_seconds: 10
      auto_initialize: true
      cors_origins:
        - http://localhost:5173
"""
from __future__ import annotations

import logging
from dataclasses import fields
from pathlib import Path
from typing import Any

import yaml

from .config import BridgeConfig

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_FILENAME = "agui-bridge.yaml"

_FLOAT_FIELDS = {
    "control_request_timeout_seconds",
    "connect_timeout_seconds",
    "kill_grace_seconds",
    "discovery_interval_seconds",
    "sse_keepalive_seconds",
    "disconnect_poll_seconds",
}
_INT_FIELDS = {"ws_port", "http_port", "discovery_attempts", "run_queue_size"}
_BOOL_FIELDS = {"auto_initialize"}


def _coerce(name: str, value: Any) -> Any:
    if name in _FLOAT_FIELDS:
        return float(value)
    if name in _INT_FIELDS:
        return int(value)
    if name in _BOOL_FIELDS:
        if isinstance(value, str):
            return value.strip().lower() in {"1", "true", "yes", "on"}
        return bool(value)
    if name == "cors_origins":
        if isinstance(value, str):
            return [item.strip() for item in value.split(",") if item.strip()]
        return [str(item) for item in value]
    return str(value)


def apply_overrides(config: BridgeConfig, section: dict[str, Any]) -> BridgeConfig:
    """Apply a ``bridge:`` mapping onto *config* in place and return it."""
    known = {f.name for f in fields(BridgeConfig)}
    for key, value in section.items():
        if key not in known:
            logger.warning("Ignoring unknown bridge config key: %s", key)
            continue
        if value is None:
            continue
        try:
            setattr(config, key, _coerce(key, value))
        except (TypeError, ValueError) as exc:
            raise ValueError(f"Invalid value for bridge.{key}: {value!r} ({exc})") from exc
    return config


def load_yaml_config(path: str | Path) -> BridgeConfig:
    """Load a YAML config file over the environment defaults."""
    path = Path(path)
    logger.info(
        "load_yaml_config: attempting to load config from %s (exists=%s)",
        path, path.exists(),
    )
    try:
        with open(path) as f:
            raw = yaml.safe_load(f) or {}
    except FileNotFoundError:
        logger.error(
            "load_yaml_config: config file not found at %s (absolute path: %s)",
            path, path.absolute(),
        )
        raise
    except yaml.YAMLError as exc:
        logger.error("load_yaml_config: YAML parse error in %s: %s", path, exc)
        raise

    if not isinstance(raw, dict):
        raise ValueError(f"{path}: top level must be a mapping")

    config = BridgeConfig.from_env()
    section = raw.get("bridge") or {}
    if not isinstance(section, dict):
        raise ValueError(f"{path}: 'bridge' section must be a mapping")

    apply_overrides(config, section)
    logger.info(
        "Parsed YAML config %s: %d bridge key(s) applied",
        path.name, len(section),
    )
    return config


def find_default_config(cwd: str | Path | None = None) -> Path | None:
    """Return ./agui-bridge.yaml if it exists."""
    candidate = Path(cwd or Path.cwd()) / DEFAULT_CONFIG_FILENAME
    return candidate if candidate.is_file() else None
