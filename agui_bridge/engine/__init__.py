"""Session engine: models, registry, process supervision and control requests."""
from .models import (
    CHANNELLESS_STATUSES,
    PendingControlRequest,
    PermissionMode,
    ProcessState,
    Session,
    SessionCapabilities,
    SessionInitData,
    SessionStatus,
)
from .config import BridgeConfig
from .errors import (
    AlreadyInitializedError,
    BridgeError,
    ControlTimeoutError,
    FrameParseError,
    NoChannelError,
    ProcessSpawnError,
    RemoteControlError,
    SessionNotFoundError,
    SessionTerminatedError,
)
from .registry import SessionRegistry

__all__ = [
    "CHANNELLESS_STATUSES",
    "PendingControlRequest",
    "PermissionMode",
    "ProcessState",
    "Session",
    "SessionCapabilities",
    "SessionInitData",
    "SessionStatus",
    "BridgeConfig",
    "AlreadyInitializedError",
    "BridgeError",
    "ControlTimeoutError",
    "FrameParseError",
    "NoChannelError",
    "ProcessSpawnError",
    "RemoteControlError",
    "SessionNotFoundError",
    "SessionTerminatedError",
    "SessionRegistry",
]
