"""AgentBridge: public entry point tying the bridge together.

Usage::

    bridge = AgentBridge(BridgeConfig(http_port=3000))
    ws_port, http_port = await bridge.start()
    session_id = await bridge.spawn_session("./my-project")
    ...
    await bridge.stop()
"""
from __future__ import annotations

import asyncio
import logging
import uuid
from typing import Any

from aiohttp import web

from .adapters.event_bus import BroadcastBus
from .adapters.protocol import (
    BusEvent,
    control_response_frame,
    env_update_frame,
    user_frame,
)
from .engine.config import BridgeConfig, MessageCallback, StatusCallback, fire_event
from .engine.control import SessionControls
from .engine.correlation import ControlCorrelator
from .engine.errors import AlreadyInitializedError, NoChannelError, ProcessSpawnError
from .engine.lifecycle import SupervisedProcess
from .engine.models import (
    Session,
    SessionCapabilities,
    SessionInitData,
    SessionStatus,
)
from .engine.registry import SessionRegistry
from .engine.supervisor import LaunchOptions, ProcessSupervisor
from .server.gateway import AguiGateway
from .server.ingress import SocketIngress

logger = logging.getLogger(__name__)

_CONNECT_POLL_SECONDS = 0.2


class AgentBridge:
    """Owns the servers, the session table and every agent process."""

    def __init__(self, config: BridgeConfig | None = None) -> None:
        self.config = config or BridgeConfig()
        self.registry = SessionRegistry()
        self.bus = BroadcastBus()
        self.correlator = ControlCorrelator(
            self.registry, default_timeout=self.config.control_request_timeout_seconds,
        )
        self.controls = SessionControls(
            self.registry,
            self.correlator,
            system_prompt=self.config.system_prompt,
            append_system_prompt=self.config.append_system_prompt,
        )
        self.supervisor = ProcessSupervisor(
            self.registry, kill_grace_seconds=self.config.kill_grace_seconds,
        )
        self.ingress = SocketIngress(self.registry, self.bus, self.correlator)
        self.gateway = AguiGateway(self.registry, self.bus, self.config)

        self._status_callbacks: list[StatusCallback] = []
        self._message_callbacks: list[MessageCallback] = []
        self._background: set[asyncio.Task] = set()
        self._initializing: set[str] = set()
        self._started = False

        self.registry.add_status_listener(self._on_status_changed)
        self.bus.subscribe(self._on_bus_event)

    # ── Lifecycle ──

    async def start(self) -> tuple[int, int]:
        """Start the agent socket server and the UI server. Returns (ws_port, http_port)."""
        if self._started:
            return self.ws_port, self.http_port
        host = self.config.host
        await self.ingress.start(host, self.config.ws_port)
        try:
            await self.gateway.start(host, self.config.http_port)
        except Exception:
            await self.ingress.stop()
            raise
        self._started = True
        logger.info(
            "Bridge started ws_port=%d http_port=%d runtime_url=%s",
            self.ws_port, self.http_port, self.runtime_url,
        )
        return self.ws_port, self.http_port

    async def stop(self) -> None:
        """Kill every session and close both servers."""
        for session_id in self.registry.ids():
            await self.kill_session(session_id)
        for task in list(self._background):
            task.cancel()
        await self.gateway.stop()
        await self.ingress.stop()
        self._started = False
        logger.info("All servers stopped")

    @property
    def ws_port(self) -> int:
        return self.ingress.port

    @property
    def http_port(self) -> int:
        return self.gateway.port

    @property
    def runtime_url(self) -> str:
        """Base URL a UI client should use."""
        return f"http://{self.config.host}:{self.http_port}"

    @property
    def gateway_app(self) -> web.Application:
        """The UI aiohttp application, for mounting in another server."""
        return self.gateway.app

    # ── Observers ──

    def on_status(self, callback: StatusCallback) -> None:
        """callback(session_id, status_label); sync or async."""
        self._status_callbacks.append(callback)

    def on_message(self, callback: MessageCallback) -> None:
        """callback(session_id, message_dict) for every inbound agent message."""
        self._message_callbacks.append(callback)

    def _spawn_background(self, coro) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    def _on_status_changed(self, session_id: str, label: str) -> None:
        for callback in list(self._status_callbacks):
            self._spawn_background(fire_event(callback, session_id, label))
        if label == SessionStatus.CONNECTED.value and self.config.auto_initialize:
            self._maybe_auto_initialize(session_id)

    def _on_bus_event(self, event: BusEvent) -> None:
        if not self._message_callbacks:
            return
        data = event.message.to_dict()
        for callback in list(self._message_callbacks):
            self._spawn_background(fire_event(callback, event.session_id, data))

    def _maybe_auto_initialize(self, session_id: str) -> None:
        session = self.registry.get(session_id)
        # Wait for system/init so the agent is ready to take control requests.
        if session is None or session.initialized or session.capabilities is None:
            return
        if session_id in self._initializing:
            return
        self._initializing.add(session_id)
        self._spawn_background(self._auto_initialize(session_id))

    async def _auto_initialize(self, session_id: str) -> None:
        try:
            await self.controls.initialize(session_id)
        except AlreadyInitializedError:
            logger.info("Auto-initialize skipped for session %s: already initialized", session_id[:8])
        except Exception as exc:
            logger.error("Auto-initialize failed for session %s: %s", session_id[:8], exc)
        finally:
            self._initializing.discard(session_id)

    # ── Sessions ──

    async def spawn_session(self, working_dir: str, initial_prompt: str | None = None) -> str:
        """Spawn an agent in *working_dir* and wait for it to connect.

        The new session becomes the active one. Raises ProcessSpawnError
        if the binary is missing or exits before connecting.
        """
        session_id = str(uuid.uuid4())
        session = self.registry.create(session_id, working_dir)
        options = LaunchOptions(
            ws_port=self.ws_port,
            ws_host=self.config.host,
            initial_prompt=initial_prompt,
            cli_path=self.config.cli_path,
        )
        try:
            handle = await self.supervisor.spawn(session, options)
        except ProcessSpawnError:
            self.registry.remove(session_id)
            raise
        self.supervisor.monitor(session, handle, on_exit=self._on_process_exit)

        await self._wait_for_connection(session, handle)
        self.registry.set_active(session_id)
        return session_id

    async def _wait_for_connection(self, session: Session, handle: SupervisedProcess) -> None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.config.connect_timeout_seconds
        while loop.time() < deadline:
            if session.has_channel:
                return
            if handle.exited.is_set():
                self.registry.remove(session.session_id)
                raise ProcessSpawnError(
                    session.session_id,
                    f"agent exited immediately with code {handle.returncode}. "
                    f"Check that '{self.config.cli_path}' is on PATH and supports --sdk-url.",
                )
            await asyncio.sleep(_CONNECT_POLL_SECONDS)
        logger.warning(
            "Session %s agent did not connect within %.0fs, continuing anyway",
            session.session_id[:8], self.config.connect_timeout_seconds,
        )

    def _on_process_exit(self, session: Session, handle: SupervisedProcess) -> None:
        self.correlator.reject_all(session, "Agent process exited")

    async def kill_session(self, session_id: str) -> None:
        """Tear a session down and drop it from the registry.

        Pending control requests are rejected before the process is
        signalled; the registry entry goes only after exit is observed.
        """
        session = self.registry.get(session_id)
        if session is None:
            return
        channel = session.outbound_channel
        self.registry.clear_channel(session_id)
        # Observers hear about it once, after removal.
        self.registry.set_status(session_id, SessionStatus.TERMINATED, notify=False)
        self.correlator.reject_all(session, "Session terminated")
        if channel is not None:
            await channel.close(message="session terminated")

        await self.supervisor.kill(session)
        if session.process is not None:
            await self.supervisor.shutdown(session.process)

        self.registry.remove(session_id)
        self._initializing.discard(session_id)
        self.registry.notify_status(session_id, SessionStatus.TERMINATED.value)
        logger.info("Session %s killed", session_id[:8])

    def set_active_session(self, session_id: str) -> None:
        self.registry.set_active(session_id)

    @property
    def active_session_id(self) -> str | None:
        return self.registry.active_id

    def session_ids(self) -> list[str]:
        return self.registry.ids()

    def get_capabilities(self, session_id: str) -> SessionCapabilities | None:
        session = self.registry.get(session_id)
        return session.capabilities if session else None

    def get_init_data(self, session_id: str) -> SessionInitData | None:
        session = self.registry.get(session_id)
        return session.init_data if session else None

    def session_info(self, session_id: str) -> dict[str, Any] | None:
        """JSON-ready snapshot of one session."""
        session = self.registry.get(session_id)
        if session is None:
            return None
        return {
            "id": session.session_id,
            "status": session.status_label,
            "error": session.error_detail,
            "workingDir": session.working_dir,
            "active": self.registry.active_id == session_id,
            "connected": session.has_channel,
            "agentSessionId": session.agent_conversation_id,
            "capabilities": session.capabilities.to_dict() if session.capabilities else None,
            "initData": session.init_data.to_dict() if session.init_data else None,
            "initialized": session.initialized,
            "isCompacting": session.is_compacting,
            "totalCostUsd": session.total_cost_usd,
            "numTurns": session.num_turns,
            "pid": session.process.pid if session.process else None,
            "createdAt": session.created_at,
        }

    # ── Messaging ──

    async def _write(self, session_id: str, frame: dict[str, Any]) -> None:
        session = self.registry.require(session_id)
        channel = session.outbound_channel
        if channel is None or not await channel.send(frame):
            raise NoChannelError(session_id)

    async def send_message(self, session_id: str, content: str) -> None:
        """Send a user turn to the agent."""
        session = self.registry.require(session_id)
        await self._write(session_id, user_frame(content, session.agent_conversation_id))

    async def approve_tool(self, session_id: str, request_id: str, response: dict[str, Any]) -> None:
        """Answer a can_use_tool request with an explicit response body."""
        await self._write(session_id, control_response_frame(request_id, response))

    async def approve_tool_simple(self, session_id: str, request_id: str, original_input: Any) -> None:
        await self.approve_tool(session_id, request_id, {
            "behavior": "allow",
            "updatedInput": original_input,
        })

    async def deny_tool(
        self,
        session_id: str,
        request_id: str,
        message: str = "Tool use denied by user",
        interrupt: bool = False,
    ) -> None:
        await self.approve_tool(session_id, request_id, {
            "behavior": "deny",
            "message": message,
            "interrupt": interrupt,
        })

    async def update_environment_variables(self, session_id: str, variables: dict[str, str]) -> None:
        await self._write(session_id, env_update_frame(variables))

    # ── Control requests ──

    async def send_control_request(
        self,
        session_id: str,
        request: dict[str, Any],
        timeout: float | None = None,
    ) -> dict[str, Any]:
        return await self.controls.send(session_id, request, timeout)

    async def initialize(self, session_id: str, **options: Any) -> dict[str, Any]:
        return await self.controls.initialize(session_id, **options)

    async def interrupt(self, session_id: str) -> None:
        await self.controls.interrupt(session_id)

    async def set_model(self, session_id: str, model: str) -> None:
        await self.controls.set_model(session_id, model)

    async def set_permission_mode(self, session_id: str, mode: str) -> dict[str, Any]:
        return await self.controls.set_permission_mode(session_id, mode)

    async def set_max_thinking_tokens(self, session_id: str, max_thinking_tokens: int | None) -> None:
        await self.controls.set_max_thinking_tokens(session_id, max_thinking_tokens)

    async def mcp_status(self, session_id: str) -> dict[str, Any]:
        return await self.controls.mcp_status(session_id)

    async def mcp_reconnect(self, session_id: str, server_name: str) -> None:
        await self.controls.mcp_reconnect(session_id, server_name)

    async def mcp_toggle(self, session_id: str, server_name: str, enabled: bool) -> None:
        await self.controls.mcp_toggle(session_id, server_name, enabled)

    async def mcp_set_servers(self, session_id: str, servers: dict[str, Any]) -> None:
        await self.controls.mcp_set_servers(session_id, servers)

    async def mcp_message(self, session_id: str, server_name: str, message: Any) -> dict[str, Any]:
        return await self.controls.mcp_message(session_id, server_name, message)

    async def rewind_files(
        self, session_id: str, user_message_id: str, dry_run: bool = False,
    ) -> dict[str, Any]:
        return await self.controls.rewind_files(session_id, user_message_id, dry_run)
