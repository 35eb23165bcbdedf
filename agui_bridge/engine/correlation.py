"""Request/response correlation for server-issued control requests.

Each request gets a fresh id and a PendingControlRequest entry (future
plus timeout handle) in the session's table. The entry is registered
before the frame is written so a fast reply can never miss it. Every
way an entry ends (response, timeout, teardown, caller cancellation)
pops it from the table and settles it at most once.
"""
from __future__ import annotations

import asyncio
import logging
import uuid
from typing import Any

from ..adapters.protocol import control_request_frame
from .errors import (
    ControlTimeoutError,
    NoChannelError,
    RemoteControlError,
    SessionTerminatedError,
)
from .models import PendingControlRequest, Session
from .registry import SessionRegistry

logger = logging.getLogger(__name__)

DEFAULT_CONTROL_TIMEOUT_SECONDS = 30.0


class ControlCorrelator:
    """Issues control requests and routes their responses back."""

    def __init__(
        self,
        registry: SessionRegistry,
        default_timeout: float = DEFAULT_CONTROL_TIMEOUT_SECONDS,
    ) -> None:
        self._registry = registry
        self._default_timeout = default_timeout

    @property
    def default_timeout(self) -> float:
        return self._default_timeout

    async def issue(
        self,
        session_id: str,
        request: dict[str, Any],
        timeout: float | None = None,
    ) -> dict[str, Any]:
        """Send ``request`` and wait for the agent's reply payload.

        Raises NoChannelError, ControlTimeoutError, RemoteControlError,
        or SessionTerminatedError if the session goes away first.
        """
        session = self._registry.require(session_id)
        channel = session.outbound_channel
        if channel is None:
            raise NoChannelError(session_id)

        timeout = self._default_timeout if timeout is None else timeout
        subtype = str(request.get("subtype", ""))
        request_id = str(uuid.uuid4())
        loop = asyncio.get_running_loop()
        pending = PendingControlRequest(
            request_id=request_id,
            subtype=subtype,
            future=loop.create_future(),
        )
        pending.timer = loop.call_later(
            timeout, self._expire, session, request_id, timeout,
        )
        session.pending_control_requests[request_id] = pending
        logger.debug(
            "Control request %s subtype=%s session=%s timeout=%.1fs",
            request_id[:8], subtype, session_id[:8], timeout,
        )

        try:
            sent = await channel.send(control_request_frame(request_id, request))
        except BaseException:
            self._discard(session, request_id)
            raise
        if not sent:
            self._discard(session, request_id)
            raise NoChannelError(session_id)

        try:
            return await pending.future
        except asyncio.CancelledError:
            self._discard(session, request_id)
            raise

    def _expire(self, session: Session, request_id: str, timeout: float) -> None:
        pending = session.pending_control_requests.pop(request_id, None)
        if pending is None:
            return
        logger.warning(
            "Control request %s (%s) for session %s timed out after %.1fs",
            request_id[:8], pending.subtype, session.session_id[:8], timeout,
        )
        pending.timer = None
        pending.settle(error=ControlTimeoutError(pending.subtype, timeout))

    @staticmethod
    def _discard(session: Session, request_id: str) -> None:
        pending = session.pending_control_requests.pop(request_id, None)
        if pending is None:
            return
        if pending.timer is not None:
            pending.timer.cancel()
            pending.timer = None
        if not pending.future.done():
            pending.future.cancel()

    def resolve(self, session: Session, message: dict[str, Any]) -> bool:
        """Settle the pending entry a control_response refers to.

        Returns False for unknown or late responses, which are ignored.
        """
        response = message.get("response") or {}
        request_id = response.get("request_id")
        if not request_id:
            logger.debug("control_response without request_id on session %s", session.session_id[:8])
            return False
        pending = session.pending_control_requests.pop(request_id, None)
        if pending is None:
            logger.debug(
                "Ignoring late or unknown control_response %s on session %s",
                str(request_id)[:8], session.session_id[:8],
            )
            return False
        if response.get("subtype") == "error":
            logger.info(
                "Control request %s (%s) failed: %s",
                request_id[:8], pending.subtype, response.get("error"),
            )
            return pending.settle(error=RemoteControlError(pending.subtype, response.get("error")))
        return pending.settle(result=response.get("response") or {})

    def reject_all(self, session: Session, reason: str = "Session terminated") -> int:
        """Fail every pending request with SessionTerminatedError. Returns the count."""
        count = 0
        while session.pending_control_requests:
            _, pending = session.pending_control_requests.popitem()
            if pending.settle(error=SessionTerminatedError(session.session_id, reason)):
                count += 1
        if count:
            logger.info(
                "Rejected %d pending control request(s) for session %s: %s",
                count, session.session_id[:8], reason,
            )
        return count
