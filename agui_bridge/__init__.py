"""agui-bridge: serve agent CLI sessions to AG-UI clients over SSE."""
from __future__ import annotations

__version__ = "0.1.0"

__all__ = [
    "AgentBridge",
    "BridgeConfig",
    "load_yaml_config",
    "translate",
    "TranslatorState",
    "BridgeError",
    "SessionNotFoundError",
    "NoChannelError",
    "AlreadyInitializedError",
    "ControlTimeoutError",
    "RemoteControlError",
    "ProcessSpawnError",
    "SessionTerminatedError",
]

from agui_bridge.adapters.translator import TranslatorState, translate
from agui_bridge.bridge import AgentBridge
from agui_bridge.engine.config import BridgeConfig
from agui_bridge.engine.errors import (
    AlreadyInitializedError,
    BridgeError,
    ControlTimeoutError,
    NoChannelError,
    ProcessSpawnError,
    RemoteControlError,
    SessionNotFoundError,
    SessionTerminatedError,
)
from agui_bridge.engine.yaml_config import load_yaml_config
