"""In-memory session table.

The registry is the single owner of every Session. Other components
hold session ids, not references they mutate freely: status changes,
channel binding and active-session routing all go through the narrow
operation set below, serialized by one lock guarding the whole table.
"""
from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from typing import TYPE_CHECKING

from .errors import SessionNotFoundError
from .models import CHANNELLESS_STATUSES, Session, SessionStatus

if TYPE_CHECKING:
    from ..server.ingress import OutboundChannel

logger = logging.getLogger(__name__)

# listener(session_id, status_label)
StatusListener = Callable[[str, str], None]


class SessionRegistry:
    """Owned store of sessions plus the active-session pointer."""

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._sessions: dict[str, Session] = {}
        self._active_id: str | None = None
        self._status_listeners: list[StatusListener] = []

    # ── Table ──

    def create(self, session_id: str, working_dir: str) -> Session:
        with self._lock:
            if session_id in self._sessions:
                raise ValueError(f"Session {session_id} already exists")
            session = Session(session_id=session_id, working_dir=working_dir)
            self._sessions[session_id] = session
            logger.info(
                "Session created id=%s cwd=%s total=%d",
                session_id[:8], working_dir, len(self._sessions),
            )
            return session

    def get(self, session_id: str | None) -> Session | None:
        if not session_id:
            return None
        with self._lock:
            return self._sessions.get(session_id)

    def require(self, session_id: str) -> Session:
        session = self.get(session_id)
        if session is None:
            raise SessionNotFoundError(session_id)
        return session

    def list(self) -> list[Session]:
        with self._lock:
            return list(self._sessions.values())

    def ids(self) -> list[str]:
        with self._lock:
            return list(self._sessions.keys())

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)

    def __contains__(self, session_id: object) -> bool:
        with self._lock:
            return session_id in self._sessions

    def remove(self, session_id: str) -> Session | None:
        """Drop a session. Idempotent; promotes another session if it was active."""
        with self._lock:
            session = self._sessions.pop(session_id, None)
            if session is None:
                return None
            if self._active_id == session_id:
                self._active_id = next(iter(self._sessions), None)
                logger.info(
                    "Active session %s removed, promoted %s",
                    session_id[:8], self._active_id[:8] if self._active_id else None,
                )
            logger.info("Session removed id=%s remaining=%d", session_id[:8], len(self._sessions))
            return session

    # ── Active session ──

    @property
    def active_id(self) -> str | None:
        with self._lock:
            return self._active_id

    def set_active(self, session_id: str) -> None:
        with self._lock:
            if session_id not in self._sessions:
                raise SessionNotFoundError(session_id)
            self._active_id = session_id
        logger.info("Active session set to %s", session_id[:8])

    def active(self) -> Session | None:
        with self._lock:
            if self._active_id is None:
                return None
            return self._sessions.get(self._active_id)

    def find_routable(self) -> Session | None:
        """The active session if it has a live channel, else any session that has one."""
        with self._lock:
            active = self._sessions.get(self._active_id) if self._active_id else None
            if active is not None and active.has_channel:
                return active
            for session in self._sessions.values():
                if session.has_channel:
                    return session
            return None

    # ── Status ──

    def add_status_listener(self, listener: StatusListener) -> None:
        self._status_listeners.append(listener)

    def remove_status_listener(self, listener: StatusListener) -> None:
        try:
            self._status_listeners.remove(listener)
        except ValueError:
            pass

    def set_status(
        self,
        session_id: str,
        status: SessionStatus,
        detail: str | None = None,
        notify: bool = True,
    ) -> bool:
        """Set a session's status. Returns False if the session is gone.

        Moving into a channel-less status drops the outbound channel so
        the channel/status invariant holds for every caller.
        """
        with self._lock:
            session = self._sessions.get(session_id)
            if session is None:
                return False
            previous = session.status
            session.status = status
            session.error_detail = detail if status is SessionStatus.ERROR else None
            if status in CHANNELLESS_STATUSES:
                session.outbound_channel = None
        if previous is not status:
            logger.info(
                "Session %s status %s -> %s%s",
                session_id[:8], previous.value, status.value,
                f" ({detail})" if detail else "",
            )
        if notify:
            self.notify_status(session_id, status.value)
        return True

    def notify_status(self, session_id: str, label: str) -> None:
        for listener in list(self._status_listeners):
            try:
                listener(session_id, label)
            except Exception:
                logger.exception("Status listener failed for session %s", session_id[:8])

    # ── Outbound channel ──

    def bind_channel(
        self, session_id: str, channel: OutboundChannel,
    ) -> OutboundChannel | None:
        """Associate a live socket with a session.

        Returns the channel it replaced, if any. The caller is
        responsible for closing it.
        """
        with self._lock:
            session = self._sessions.get(session_id)
            if session is None:
                raise SessionNotFoundError(session_id)
            previous = session.outbound_channel
            session.channel_generation += 1
            channel.generation = session.channel_generation
            session.outbound_channel = channel
        if previous is not None and previous is not channel:
            previous.superseded = True
            logger.info(
                "Session %s socket replaced (generation %d)",
                session_id[:8], channel.generation,
            )
            return previous
        return None

    def clear_channel(
        self, session_id: str, channel: OutboundChannel | None = None,
    ) -> bool:
        """Detach the outbound channel.

        With *channel* given, only detaches if it is still the current
        one. Returns True if a channel was detached.
        """
        with self._lock:
            session = self._sessions.get(session_id)
            if session is None or session.outbound_channel is None:
                return False
            if channel is not None and session.outbound_channel is not channel:
                return False
            session.outbound_channel = None
            return True

    def is_current_channel(self, session_id: str, channel: OutboundChannel) -> bool:
        with self._lock:
            session = self._sessions.get(session_id)
            return session is not None and session.outbound_channel is channel
