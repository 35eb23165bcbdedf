"""Configuration loaded from environment variables.

All settings have sensible defaults. Override via AGUI_BRIDGE_* env vars
or a YAML file (see yaml_config.py).
"""
from __future__ import annotations

import inspect
import logging
import os
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

logger = logging.getLogger(__name__)

ENV_PREFIX = "AGUI_BRIDGE_"

# Signature: callback(session_id, status_label) -> None | Awaitable[None]
StatusCallback = Callable[[str, str], Any]

# Signature: callback(session_id, message_dict) -> None | Awaitable[None]
MessageCallback = Callable[[str, dict[str, Any]], Any]


async def fire_event(callback: Callable[..., Any] | None, *args: Any) -> None:
    """Invoke an observer callback, sync or async, logging its errors."""
    if callback is None:
        return
    try:
        result = callback(*args)
        if inspect.isawaitable(result):
            await result
    except Exception:
        logger.exception("Observer callback %r failed", callback)


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def _env_list(name: str, default: list[str]) -> list[str]:
    raw = os.getenv(name)
    if raw is None:
        return list(default)
    return [item.strip() for item in raw.split(",") if item.strip()]


@dataclass
class BridgeConfig:
    """Bridge server configuration."""

    # Network
    host: str = "127.0.0.1"
    # 0 binds a random free port.
    ws_port: int = 0
    http_port: int = 0
    cors_origins: list[str] = field(default_factory=lambda: ["*"])

    # Agent discovery (/info)
    agent_id: str = "default"
    agent_description: str = "Claude Code AI agent"
    protocol_version: str = "1.0.0"

    # Agent binary
    cli_path: str = "claude"

    # Control requests
    control_request_timeout_seconds: float = 30.0
    auto_initialize: bool = False
    system_prompt: str = ""
    append_system_prompt: str = ""

    # Process supervision
    connect_timeout_seconds: float = 30.0
    kill_grace_seconds: float = 5.0

    # Run dispatch: poll every interval, give up after attempts.
    discovery_interval_seconds: float = 0.5
    discovery_attempts: int = 30
    # Silence on an open SSE run before a keepalive comment is written.
    sse_keepalive_seconds: float = 15.0
    # How often an open run checks whether its client is still connected.
    disconnect_poll_seconds: float = 0.25
    # Agent messages buffered per run before the run is aborted.
    run_queue_size: int = 5000

    # Logging
    log_level: str = "INFO"

    @property
    def discovery_window_seconds(self) -> float:
        return self.discovery_interval_seconds * self.discovery_attempts

    @classmethod
    def from_env(cls) -> BridgeConfig:
        """Load configuration from AGUI_BRIDGE_* environment variables."""
        bridge_vars = {
            k: v for k, v in os.environ.items() if k.startswith(ENV_PREFIX)
        }
        if bridge_vars:
            logger.info(
                "BridgeConfig.from_env: env overrides: %s",
                ", ".join(sorted(bridge_vars)),
            )
        else:
            logger.debug("BridgeConfig.from_env: no %s* env vars set, using defaults", ENV_PREFIX)

        defaults = cls()
        p = ENV_PREFIX
        config = cls(
            host=os.getenv(f"{p}HOST", defaults.host),
            ws_port=int(os.getenv(f"{p}WS_PORT", str(defaults.ws_port))),
            http_port=int(os.getenv(f"{p}HTTP_PORT", str(defaults.http_port))),
            cors_origins=_env_list(f"{p}CORS_ORIGINS", defaults.cors_origins),
            agent_id=os.getenv(f"{p}AGENT_ID", defaults.agent_id),
            agent_description=os.getenv(
                f"{p}AGENT_DESCRIPTION", defaults.agent_description,
            ),
            cli_path=os.getenv(f"{p}CLI_PATH", defaults.cli_path),
            control_request_timeout_seconds=float(os.getenv(
                f"{p}CONTROL_TIMEOUT", str(defaults.control_request_timeout_seconds),
            )),
            auto_initialize=_env_bool(f"{p}AUTO_INITIALIZE", defaults.auto_initialize),
            system_prompt=os.getenv(f"{p}SYSTEM_PROMPT", defaults.system_prompt),
            append_system_prompt=os.getenv(
                f"{p}APPEND_SYSTEM_PROMPT", defaults.append_system_prompt,
            ),
            connect_timeout_seconds=float(os.getenv(
                f"{p}CONNECT_TIMEOUT", str(defaults.connect_timeout_seconds),
            )),
            kill_grace_seconds=float(os.getenv(
                f"{p}KILL_GRACE", str(defaults.kill_grace_seconds),
            )),
            discovery_interval_seconds=float(os.getenv(
                f"{p}DISCOVERY_INTERVAL", str(defaults.discovery_interval_seconds),
            )),
            discovery_attempts=int(os.getenv(
                f"{p}DISCOVERY_ATTEMPTS", str(defaults.discovery_attempts),
            )),
            sse_keepalive_seconds=float(os.getenv(
                f"{p}SSE_KEEPALIVE", str(defaults.sse_keepalive_seconds),
            )),
            disconnect_poll_seconds=float(os.getenv(
                f"{p}DISCONNECT_POLL", str(defaults.disconnect_poll_seconds),
            )),
            run_queue_size=int(os.getenv(
                f"{p}RUN_QUEUE_SIZE", str(defaults.run_queue_size),
            )),
            log_level=os.getenv(f"{p}LOG_LEVEL", defaults.log_level),
        )
        logger.info(
            "BridgeConfig.from_env: host=%s ws_port=%d http_port=%d agent_id=%s cli=%s",
            config.host, config.ws_port, config.http_port,
            config.agent_id, config.cli_path,
        )
        return config
