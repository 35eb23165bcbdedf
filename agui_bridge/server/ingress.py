"""Websocket ingress for agent processes.

Agents connect back to ``ws://host:port/ws/cli/{session_id}`` (the URL
passed via --sdk-url). A connection without an id in its path is
associated on its first ``system/init`` message, using the agent's own
session id.

Every transport message may carry several newline-joined JSON frames.
Each frame is parsed on its own; a bad frame is logged and dropped
without closing the connection. Parsed messages update the owning
session and are then published on the broadcast bus, the single
fan-out point for per-run translators.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any

from aiohttp import WSMsgType, web

from ..adapters.event_bus import BroadcastBus
from ..adapters.protocol import (
    HISTORY_SKIP_TYPES,
    AgentMessage,
    BusEvent,
    encode_frame,
    parse_agent_message,
    split_frames,
)
from ..engine.correlation import ControlCorrelator
from ..engine.errors import FrameParseError
from ..engine.models import (
    CHANNELLESS_STATUSES,
    Session,
    SessionCapabilities,
    SessionStatus,
)
from ..engine.registry import SessionRegistry
from .sites import start_site

logger = logging.getLogger(__name__)

CONNECTION_CLOSED_REASON = "WebSocket connection closed"


class OutboundChannel:
    """Write side of one agent connection.

    ``generation`` is assigned by the registry on association. Once a
    newer connection replaces this one the channel is marked superseded
    and every later write is dropped.
    """

    def __init__(self, ws: web.WebSocketResponse, session_id: str) -> None:
        self._ws = ws
        self.session_id = session_id
        self.generation = 0
        self.superseded = False

    @property
    def is_open(self) -> bool:
        return not self.superseded and not self._ws.closed

    async def send(self, frame: dict[str, Any] | str) -> bool:
        """Write one frame. Returns False if the write was dropped."""
        if not self.is_open:
            logger.debug(
                "Dropping write to %s channel for session %s (generation %d)",
                "superseded" if self.superseded else "closed",
                self.session_id[:8], self.generation,
            )
            return False
        data = frame if isinstance(frame, str) else encode_frame(frame)
        try:
            await self._ws.send_str(data)
        except (ConnectionResetError, RuntimeError) as exc:
            logger.debug("Write to session %s failed: %s", self.session_id[:8], exc)
            return False
        return True

    async def close(self, message: str = "superseded") -> None:
        if not self._ws.closed:
            await self._ws.close(message=message.encode())


@dataclass
class _Connection:
    ws: web.WebSocketResponse
    session_id: str | None = None
    channel: OutboundChannel | None = None


class SocketIngress:
    """aiohttp websocket server the agent processes connect to."""

    def __init__(
        self,
        registry: SessionRegistry,
        bus: BroadcastBus,
        correlator: ControlCorrelator,
    ) -> None:
        self._registry = registry
        self._bus = bus
        self._correlator = correlator
        self._app = web.Application()
        self._app.router.add_get("/ws/cli/{session_id}", self._handle_socket)
        self._app.router.add_get("/ws/cli", self._handle_socket)
        self._runner: web.AppRunner | None = None
        self._connections: set[web.WebSocketResponse] = set()
        self._close_tasks: set[asyncio.Task] = set()
        self.port = 0

    @property
    def app(self) -> web.Application:
        return self._app

    # ── Lifecycle ──

    async def start(self, host: str, port: int) -> int:
        self._runner, self.port = await start_site(self._app, host, port, "Agent socket server")
        return self.port

    async def stop(self) -> None:
        for ws in list(self._connections):
            await ws.close(message=b"bridge shutting down")
        if self._runner is not None:
            await self._runner.cleanup()
            self._runner = None
        logger.info("Agent socket server stopped")

    # ── Connection handling ──

    async def _handle_socket(self, request: web.Request) -> web.WebSocketResponse:
        ws = web.WebSocketResponse(max_msg_size=0)
        await ws.prepare(request)
        conn = _Connection(ws=ws, session_id=request.match_info.get("session_id") or None)
        self._connections.add(ws)
        logger.info(
            "Agent socket connected from %s path=%s", request.remote, request.path,
        )
        if conn.session_id:
            self._associate(conn)

        try:
            async for msg in ws:
                if msg.type == WSMsgType.TEXT:
                    self.handle_payload(conn, msg.data)
                elif msg.type == WSMsgType.BINARY:
                    self.handle_payload(conn, msg.data.decode("utf-8", errors="replace"))
                elif msg.type == WSMsgType.ERROR:
                    logger.warning(
                        "Agent socket error for session %s: %s",
                        conn.session_id, ws.exception(),
                    )
        finally:
            self._connections.discard(ws)
            self._on_close(conn)
        return ws

    def _associate(self, conn: _Connection) -> bool:
        """Make this connection the session's outbound channel."""
        sid = conn.session_id
        session = self._registry.get(sid)
        if session is None:
            logger.error("Agent socket for unknown session %s", sid)
            return False
        if session.status is SessionStatus.TERMINATED:
            logger.warning("Ignoring socket for terminated session %s", sid[:8])
            return False
        if conn.channel is not None:
            if conn.channel.superseded:
                logger.warning("Ignoring re-association from stale socket for session %s", sid[:8])
                return False
            if self._registry.is_current_channel(sid, conn.channel):
                return True

        if session.status in CHANNELLESS_STATUSES:
            self._registry.set_status(sid, SessionStatus.CONNECTED)
        conn.channel = OutboundChannel(conn.ws, sid)
        previous = self._registry.bind_channel(sid, conn.channel)
        if previous is not None:
            task = asyncio.create_task(previous.close())
            self._close_tasks.add(task)
            task.add_done_callback(self._close_tasks.discard)
        logger.info(
            "Session %s agent connected (generation %d)", sid[:8], conn.channel.generation,
        )
        return True

    def _on_close(self, conn: _Connection) -> None:
        sid = conn.session_id
        logger.info("Agent socket closed for session %s", sid)
        if not sid or conn.channel is None:
            return
        # A superseded connection closing must not disturb its replacement.
        if not self._registry.clear_channel(sid, conn.channel):
            return
        self._registry.set_status(sid, SessionStatus.DISCONNECTED)
        session = self._registry.get(sid)
        if session is not None:
            self._correlator.reject_all(session, CONNECTION_CLOSED_REASON)

    # ── Frame handling ──

    def handle_payload(self, conn: _Connection, payload: str) -> None:
        for line in split_frames(payload):
            try:
                message = parse_agent_message(line)
            except FrameParseError as exc:
                logger.warning("Dropping frame from session %s: %s", conn.session_id, exc)
                continue
            self.handle_message(conn, message)

    def handle_message(self, conn: _Connection, message: AgentMessage) -> None:
        if message.type == "system":
            self._handle_system(conn, message)

        session = self._registry.get(conn.session_id)

        if message.type == "control_response" and session is not None:
            self._correlator.resolve(session, message.data)

        if session is not None:
            sid = session.session_id
            if message.type in ("assistant", "stream_event"):
                if session.status in (SessionStatus.CONNECTED, SessionStatus.IDLE):
                    self._registry.set_status(sid, SessionStatus.ACTIVE)
            elif message.type == "result":
                self._handle_result(session, message)

            if message.type not in HISTORY_SKIP_TYPES:
                session.record(message.to_dict())

        self._bus.publish(BusEvent(session_id=conn.session_id or "unknown", message=message))

    def _handle_system(self, conn: _Connection, message: AgentMessage) -> None:
        subtype = message.subtype
        if subtype == "init":
            self._handle_init(conn, message)
            return

        session = self._registry.get(conn.session_id)
        tag = (conn.session_id or "unknown")[:8]
        if subtype == "status":
            if session is not None:
                session.is_compacting = message.get("status") == "compacting"
                mode = message.get("permissionMode")
                if mode and session.capabilities is not None:
                    session.capabilities.permission_mode = mode
            logger.info("Session %s: status=%s", tag, message.get("status") or "idle")
        elif subtype == "task_notification":
            logger.info(
                "Session %s: task %s %s", tag, message.get("task_id"), message.get("task_status"),
            )
        elif subtype in ("hook_started", "hook_progress", "hook_response"):
            logger.info("Session %s: %s hook=%s", tag, subtype, message.get("hook_name"))
        elif subtype == "compact_boundary":
            trigger = (message.get("compact_metadata") or {}).get("trigger")
            logger.info("Session %s: compact_boundary trigger=%s", tag, trigger)
        elif subtype == "files_persisted":
            logger.info(
                "Session %s: files_persisted count=%d", tag, len(message.get("files") or []),
            )
        else:
            logger.info("Session %s: unknown system subtype %r", tag, subtype)

    def _handle_init(self, conn: _Connection, message: AgentMessage) -> None:
        agent_session_id = message.get("session_id")
        if not conn.session_id:
            conn.session_id = agent_session_id or "unknown"

        session = self._registry.get(conn.session_id)
        if session is None:
            logger.error("system/init: no session found for %s", conn.session_id)
            return
        if not self._associate(conn):
            return

        if agent_session_id:
            if session.agent_conversation_id is None:
                session.agent_conversation_id = agent_session_id
            elif session.agent_conversation_id != agent_session_id:
                logger.info(
                    "Session %s: agent reported new conversation id %s (keeping %s)",
                    session.session_id[:8], agent_session_id, session.agent_conversation_id,
                )
        caps = SessionCapabilities.from_init(message.data, session.working_dir)
        session.capabilities = caps
        logger.info(
            "Session %s system/init received (agent session_id: %s)",
            session.session_id[:8], agent_session_id,
        )
        logger.info(
            "Capabilities: model=%s, tools=%d, commands=%d, agents=%d, skills=%d, mcp=%d",
            caps.model, len(caps.tools), len(caps.slash_commands),
            len(caps.agents), len(caps.skills), len(caps.mcp_servers),
        )
        self._registry.set_status(session.session_id, SessionStatus.CONNECTED)

    def _handle_result(self, session: Session, message: AgentMessage) -> None:
        cost = message.get("total_cost_usd")
        if isinstance(cost, (int, float)) and not isinstance(cost, bool):
            session.total_cost_usd = float(cost)
        turns = message.get("num_turns")
        if isinstance(turns, int) and not isinstance(turns, bool):
            session.num_turns = turns
        # Terminated, errored and channel-less sessions keep their status.
        if session.status in CHANNELLESS_STATUSES or session.status is SessionStatus.ERROR:
            logger.debug(
                "Session %s: result while %s, status unchanged",
                session.session_id[:8], session.status_label,
            )
            return
        self._registry.set_status(session.session_id, SessionStatus.IDLE)
