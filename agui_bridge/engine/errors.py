"""Exception hierarchy for the bridge engine.

One exception per failure mode. Parse failures are recovered where
they happen (ingress logs and drops the frame); everything else
propagates to the caller of the operation that failed.
"""
from __future__ import annotations


class BridgeError(Exception):
    """Base exception for all bridge errors."""


class SessionNotFoundError(BridgeError):
    """No session is registered under the given id."""
    def __init__(self, session_id: str):
        self.session_id = session_id
        super().__init__(f"Session {session_id} not found")


class NoChannelError(BridgeError):
    """The session has no live socket to write to."""
    def __init__(self, session_id: str):
        self.session_id = session_id
        super().__init__(f"No active socket for session {session_id}")


class AlreadyInitializedError(BridgeError):
    """initialize was already sent for this session."""
    def __init__(self, session_id: str):
        self.session_id = session_id
        super().__init__(f"Session {session_id} already initialized")


class ControlTimeoutError(BridgeError):
    """A control request got no response before its deadline."""
    def __init__(self, subtype: str, timeout_seconds: float):
        self.subtype = subtype
        self.timeout_seconds = timeout_seconds
        super().__init__(
            f'Control request "{subtype}" timed out after '
            f"{timeout_seconds * 1000:.0f}ms"
        )


class RemoteControlError(BridgeError):
    """The agent answered a control request with an error subtype."""
    def __init__(self, subtype: str, message: str | None):
        self.subtype = subtype
        self.remote_message = message or "Control request failed"
        super().__init__(self.remote_message)


class ProcessSpawnError(BridgeError):
    """The agent binary could not be started or exited before connecting."""
    def __init__(self, session_id: str, reason: str):
        self.session_id = session_id
        self.reason = reason
        super().__init__(f"Failed to start agent for session {session_id}: {reason}")


class FrameParseError(BridgeError):
    """An inbound NDJSON line is not a JSON object with a string `type`."""
    def __init__(self, line: str, reason: str):
        self.line = line
        self.reason = reason
        super().__init__(f"Unparseable frame ({reason}): {line[:200]}")


class SessionTerminatedError(BridgeError):
    """Pending work was cancelled because the session or its socket went away."""
    def __init__(self, session_id: str, reason: str = "Session terminated"):
        self.session_id = session_id
        self.reason = reason
        super().__init__(reason)
