"""HTTP/SSE gateway for UI clients.

Routes:
    GET/POST /info, /api/copilotkit/info   agent discovery
    POST /agent/{id}/connect               handshake + history replay
    POST /agent/{id}/run, /api/copilotkit  one conversational run (SSE)
    POST anything else                     single-transport envelope
                                           {"method": ..., "body": {...}}

Every response carries CORS headers; OPTIONS preflight is answered with
204 before routing. A run request answers with an SSE stream in every
case except malformed JSON, which is a plain 400 because no stream has
been opened yet.
"""
from __future__ import annotations

import asyncio
import json
import logging
import time
import uuid
from typing import Any

from aiohttp import web

from ..adapters.event_bus import BroadcastBus, BusStream
from ..adapters.events import (
    SSE_KEEPALIVE,
    RunError,
    RunFinished,
    RunStarted,
    StateSnapshot,
    TextMessageContent,
    TextMessageEnd,
    TextMessageStart,
    UIEvent,
    encode_sse,
)
from ..adapters.protocol import user_frame
from ..adapters.translator import TranslatorState, translate
from ..engine.config import BridgeConfig
from ..engine.models import Session
from ..engine.registry import SessionRegistry
from .sites import start_site

logger = logging.getLogger(__name__)

NO_SESSION_MESSAGE = "No active agent session. Start a session first."
OVERFLOW_MESSAGE = "Agent output arrived faster than it could be streamed; run aborted."

CONTEXT_HEADER = (
    "[CURRENT WORKSPACE STATE — the user can edit these fields directly. "
    "Always read the latest values from here before responding:]"
)
TOOLS_HEADER = (
    "[AVAILABLE UI ACTIONS - You can call these as tool_use to render rich "
    "UI components in the chat for the user:]"
)
TOOLS_FOOTER = "To use an action, output a tool_use block with the action name and parameters."

REQUEST_ID_KEY = web.RequestKey("req_id", str)

SSE_HEADERS = {
    "Content-Type": "text/event-stream",
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
}


class InvalidRunBody(ValueError):
    """Run request body is not valid JSON."""


# ── Run input helpers ──


def extract_user_message(run_input: dict[str, Any]) -> str | None:
    """Most recent message with role ``user`` and string content."""
    messages = run_input.get("messages")
    if not isinstance(messages, list):
        return None
    for msg in reversed(messages):
        if isinstance(msg, dict) and msg.get("role") == "user" and isinstance(msg.get("content"), str):
            return msg["content"]
    return None


def build_readable_context(context: Any) -> str:
    """Render the UI's readable-context entries as a text block."""
    if not isinstance(context, list) or not context:
        return ""
    parts: list[str] = []
    for entry in context:
        if not isinstance(entry, dict):
            continue
        description = entry.get("description")
        description = description if isinstance(description, str) else ""
        value = entry.get("value")
        if value is None:
            continue
        text = value if isinstance(value, str) else json.dumps(value, indent=2, ensure_ascii=False)
        if not text or text == "null":
            continue
        parts.append(f"[{description}]\n{text}")
    if not parts:
        return ""
    return "\n\n" + CONTEXT_HEADER + "\n" + "\n\n".join(parts) + "\n\n"


def build_tools_context(tools: Any) -> str:
    """List the frontend actions the agent may call as tool_use."""
    if not isinstance(tools, list) or not tools:
        return ""
    lines: list[str] = []
    for tool in tools:
        if not isinstance(tool, dict):
            continue
        name = tool.get("name")
        if not isinstance(name, str) or not name:
            continue
        description = tool.get("description")
        description = description if isinstance(description, str) else "No description"
        schema = tool.get("jsonSchema") or tool.get("parameters")
        schema_text = json.dumps(schema, ensure_ascii=False) if schema else "none"
        lines.append(f"- **{name}**: {description}\n  Parameters: {schema_text}")
    if not lines:
        return ""
    return "\n\n" + TOOLS_HEADER + "\n" + "\n".join(lines) + "\n\n" + TOOLS_FOOTER + "\n\n"


def compose_message(run_input: dict[str, Any], user_message: str) -> str:
    return (
        build_readable_context(run_input.get("context"))
        + build_tools_context(run_input.get("tools"))
        + user_message
    )


def build_capabilities_snapshot(agent_id: str, session: Session | None) -> dict[str, Any]:
    """STATE_SNAPSHOT payload describing the active session."""
    snapshot: dict[str, Any] = {
        "agentId": agent_id,
        "status": "connected" if session is not None else "disconnected",
    }
    if session is None:
        return snapshot
    caps = session.capabilities
    if caps is not None:
        snapshot.update({
            "model": caps.model,
            "permissionMode": caps.permission_mode,
            "tools": caps.tools,
            "cwd": caps.cwd,
            "claudeCodeVersion": caps.agent_version,
            "slashCommands": caps.slash_commands,
            "agents": caps.agents,
            "skills": caps.skills,
            "mcpServers": caps.mcp_servers,
            "plugins": caps.plugins,
            "apiKeySource": caps.api_key_source,
        })
    init = session.init_data
    if init is not None:
        snapshot.update({
            "commands": init.commands,
            "models": init.models,
            "account": init.account,
            "fastMode": init.fast_mode,
        })
    snapshot.update({
        "isCompacting": session.is_compacting,
        "totalCostUsd": session.total_cost_usd,
        "numTurns": session.num_turns,
        "sessionId": session.agent_conversation_id,
    })
    return snapshot


def replay_history(history: list[dict[str, Any]], run_id: str) -> list[UIEvent]:
    """Re-express stored user messages and assistant text as text messages.

    Tool calls are left out of the replay.
    """
    events: list[UIEvent] = []
    counter = 0

    def emit(role: str, text: str) -> None:
        nonlocal counter
        message_id = f"{run_id}-replay-{counter}"
        counter += 1
        events.extend([
            TextMessageStart(message_id=message_id, role=role),
            TextMessageContent(message_id=message_id, delta=text),
            TextMessageEnd(message_id=message_id),
        ])

    for entry in history:
        if not isinstance(entry, dict):
            continue
        if entry.get("type") == "user_message" and isinstance(entry.get("content"), str):
            emit("user", entry["content"])
        elif entry.get("type") == "assistant":
            content = (entry.get("message") or {}).get("content")
            if not isinstance(content, list):
                continue
            for block in content:
                if isinstance(block, dict) and block.get("type") == "text" and isinstance(block.get("text"), str):
                    emit("assistant", block["text"])
    return events


def _ids(run_input: dict[str, Any]) -> tuple[str, str]:
    thread_id = run_input.get("threadId")
    run_id = run_input.get("runId")
    return (
        thread_id if isinstance(thread_id, str) and thread_id else str(uuid.uuid4()),
        run_id if isinstance(run_id, str) and run_id else str(uuid.uuid4()),
    )


class AguiGateway:
    """aiohttp application serving UI runs against the live sessions."""

    def __init__(
        self,
        registry: SessionRegistry,
        bus: BroadcastBus,
        config: BridgeConfig | None = None,
    ) -> None:
        self._registry = registry
        self._bus = bus
        self._config = config or BridgeConfig()
        self._app = web.Application(middlewares=[
            self._request_logging_middleware,
            self._cors_middleware,
        ])
        self._app.on_response_prepare.append(self._apply_cors_headers)
        self._runner: web.AppRunner | None = None
        self._active_runs = 0
        self.port = 0
        self._setup_routes()

    @property
    def app(self) -> web.Application:
        return self._app

    @property
    def active_runs(self) -> int:
        return self._active_runs

    # ── Middleware ──

    @web.middleware
    async def _request_logging_middleware(self, request: web.Request, handler) -> web.StreamResponse:
        req_id = request.headers.get("x-request-id", str(uuid.uuid4())[:8])
        request[REQUEST_ID_KEY] = req_id
        start = time.monotonic()
        logger.info("HTTP %s %s req=%s from=%s", request.method, request.path_qs, req_id, request.remote)
        try:
            response = await handler(request)
            elapsed_ms = (time.monotonic() - start) * 1000
            logger.info(
                "HTTP %s %s req=%s status=%s duration_ms=%.1f",
                request.method, request.path_qs, req_id,
                getattr(response, "status", "?"), elapsed_ms,
            )
            return response
        except web.HTTPException:
            raise
        except Exception:
            elapsed_ms = (time.monotonic() - start) * 1000
            logger.exception("HTTP %s %s req=%s failed duration_ms=%.1f", request.method, request.path_qs, req_id, elapsed_ms)
            raise

    @web.middleware
    async def _cors_middleware(self, request: web.Request, handler) -> web.StreamResponse:
        if request.method == "OPTIONS":
            return web.Response(status=204)
        return await handler(request)

    async def _apply_cors_headers(self, request: web.Request, response: web.StreamResponse) -> None:
        response.headers["Access-Control-Allow-Origin"] = ", ".join(self._config.cors_origins)
        response.headers["Access-Control-Allow-Methods"] = "GET, POST, OPTIONS"
        response.headers["Access-Control-Allow-Headers"] = "Content-Type, Authorization"
        response.headers["Access-Control-Max-Age"] = "86400"

    # ── Route setup ──

    def _setup_routes(self) -> None:
        r = self._app.router
        for path in ("/info", "/api/copilotkit/info"):
            r.add_route("*", path, self._handle_info)
        r.add_route("*", "/agent/{agent_id}/connect", self._handle_connect)
        r.add_route("*", "/agent/{agent_id}/run", self._handle_run)
        r.add_route("*", "/api/copilotkit", self._handle_run)
        r.add_route("*", "/{tail:.*}", self._handle_fallback)

    # ── Lifecycle ──

    async def start(self, host: str, port: int) -> int:
        self._runner, self.port = await start_site(self._app, host, port, "AG-UI server")
        return self.port

    async def stop(self) -> None:
        if self._runner is not None:
            await self._runner.cleanup()
            self._runner = None
        logger.info("AG-UI server stopped")

    # ── Handlers ──

    def _info_body(self) -> dict[str, Any]:
        return {
            "agents": {
                self._config.agent_id: {"description": self._config.agent_description},
            },
            "version": self._config.protocol_version,
        }

    async def _handle_info(self, request: web.Request) -> web.Response:
        if request.method not in ("GET", "POST"):
            return _method_not_allowed()
        return web.json_response(self._info_body())

    async def _handle_connect(self, request: web.Request) -> web.StreamResponse:
        if request.method != "POST":
            return _method_not_allowed()
        raw = await request.text()
        run_input: dict[str, Any] = {}
        if raw:
            try:
                parsed = json.loads(raw)
            except json.JSONDecodeError:
                # Connect is a handshake; a bad body is not worth failing it.
                logger.debug("Ignoring invalid JSON on connect req=%s", request.get(REQUEST_ID_KEY))
            else:
                if isinstance(parsed, dict):
                    run_input = parsed
        return self._connect_response(run_input)

    async def _handle_run(self, request: web.Request) -> web.StreamResponse:
        if request.method != "POST":
            return _method_not_allowed()
        try:
            run_input = await _read_json(request)
        except InvalidRunBody:
            return web.Response(status=400, text="Invalid JSON")
        return await self.stream_run(request, run_input)

    async def _handle_fallback(self, request: web.Request) -> web.StreamResponse:
        if request.method != "POST":
            logger.info("Unmatched request: %s %s", request.method, request.path)
            return web.Response(status=404, text="Not Found")
        try:
            envelope = await _read_json(request, allow_empty=True)
        except InvalidRunBody:
            return web.Response(status=400, text="Invalid JSON")

        method = envelope.get("method")
        method = method if isinstance(method, str) else ""
        body = envelope.get("body")
        inner = body if isinstance(body, dict) else envelope
        logger.info(
            "Single transport %s: method=%r keys=%s",
            request.path, method, ",".join(sorted(envelope)),
        )

        if method == "info":
            return web.json_response(self._info_body())
        if method == "agent/connect":
            return self._connect_response(inner)
        if method == "agent/stop":
            return web.json_response({"ok": True})
        if method not in ("agent/run", ""):
            logger.info("Unknown single transport method %r, treating as run", method)
        return await self.stream_run(request, inner)

    def _connect_response(self, run_input: dict[str, Any]) -> web.Response:
        thread_id, run_id = _ids(run_input)
        session = self._registry.active()
        events: list[UIEvent] = [
            RunStarted(thread_id=thread_id, run_id=run_id),
            StateSnapshot(snapshot=build_capabilities_snapshot(self._config.agent_id, session)),
        ]
        if session is not None and session.message_history:
            events.extend(replay_history(session.message_history, run_id))
        events.append(RunFinished(thread_id=thread_id, run_id=run_id))
        body = b"".join(encode_sse(e) for e in events)
        logger.info(
            "Connect handshake run=%s session=%s replayed=%d event(s)",
            run_id[:8], session.session_id[:8] if session else None, len(events) - 3,
        )
        return web.Response(
            body=body,
            headers={"Content-Type": "text/event-stream", "Cache-Control": "no-cache"},
        )

    # ── Run streaming ──

    async def stream_run(self, request: web.Request, run_input: dict[str, Any]) -> web.StreamResponse:
        """Serve one run as an SSE stream.

        The run is raced against the client connection. When the client
        goes away the run task is cancelled, which closes its bus stream
        and abandons any dispatch still waiting on session discovery.
        """
        thread_id, run_id = _ids(run_input)
        response = web.StreamResponse(status=200, headers=SSE_HEADERS)
        await response.prepare(request)
        self._active_runs += 1
        run_task = asyncio.ensure_future(
            self._run(request, response, run_input, thread_id, run_id)
        )
        gone = asyncio.ensure_future(
            wait_for_disconnect(request, self._config.disconnect_poll_seconds)
        )
        try:
            await asyncio.wait({run_task, gone}, return_when=asyncio.FIRST_COMPLETED)
            if not run_task.done():
                await _cancel(run_task)
                logger.info("Run %s: client disconnected", run_id[:8])
                return response
            run_task.result()
        except ConnectionResetError:
            logger.info("Run %s: client disconnected", run_id[:8])
            return response
        except asyncio.CancelledError:
            await _cancel(run_task)
            logger.info("Run %s: cancelled", run_id[:8])
            raise
        finally:
            gone.cancel()
            self._active_runs -= 1
        try:
            await response.write_eof()
        except ConnectionResetError:
            pass
        return response

    async def _run(
        self,
        request: web.Request,
        response: web.StreamResponse,
        run_input: dict[str, Any],
        thread_id: str,
        run_id: str,
    ) -> None:
        await response.write(encode_sse(RunStarted(thread_id=thread_id, run_id=run_id)))

        user_message = extract_user_message(run_input)
        if user_message is None:
            logger.info("Run %s: no user message, finishing", run_id[:8])
            await response.write(encode_sse(RunFinished(thread_id=thread_id, run_id=run_id)))
            return

        full_message = compose_message(run_input, user_message)
        session = await self._find_session(run_id)
        if session is None:
            logger.warning(
                "Run %s: no session with a live socket after %.1fs",
                run_id[:8], self._config.discovery_window_seconds,
            )
            await response.write(encode_sse(RunError(
                thread_id=thread_id, run_id=run_id, message=NO_SESSION_MESSAGE,
            )))
            return

        if is_disconnected(request):
            logger.info("Run %s: client left before dispatch", run_id[:8])
            return

        stream = self._bus.stream(
            session_id=session.session_id, maxsize=self._config.run_queue_size,
        )
        try:
            if not await self._dispatch(session, user_message, full_message):
                await response.write(encode_sse(RunError(
                    thread_id=thread_id, run_id=run_id, message=NO_SESSION_MESSAGE,
                )))
                return
            await self._pump_events(response, stream, thread_id, run_id)
        finally:
            stream.close()

    async def _find_session(self, run_id: str) -> Session | None:
        """Poll for a routable session within the discovery window."""
        sessions = self._registry.list()
        logger.info(
            "Run %s looking for active session. %d session(s): [%s]",
            run_id[:8], len(sessions),
            ", ".join(
                f"{s.session_id[:8]}(ws={s.has_channel}, status={s.status_label})"
                for s in sessions
            ),
        )
        attempts = max(1, self._config.discovery_attempts)
        for attempt in range(attempts):
            session = self._registry.find_routable()
            if session is not None:
                if attempt:
                    logger.info(
                        "Run %s found session %s after %.1fs wait",
                        run_id[:8], session.session_id[:8],
                        attempt * self._config.discovery_interval_seconds,
                    )
                return session
            if attempt < attempts - 1:
                await asyncio.sleep(self._config.discovery_interval_seconds)
        return None

    async def _dispatch(self, session: Session, user_message: str, full_message: str) -> bool:
        channel = session.outbound_channel
        if channel is None:
            return False
        now_ms = int(time.time() * 1000)
        session.record({
            "type": "user_message",
            "content": user_message,
            "timestamp": now_ms,
            "id": f"user-{now_ms}",
        })
        sent = await channel.send(user_frame(full_message, session.agent_conversation_id))
        if sent:
            logger.info(
                "Dispatched user message to session %s (%d chars)",
                session.session_id[:8], len(full_message),
            )
        return sent

    async def _pump_events(
        self,
        response: web.StreamResponse,
        stream: BusStream,
        thread_id: str,
        run_id: str,
    ) -> None:
        state = TranslatorState()
        keepalive = self._config.sse_keepalive_seconds
        while True:
            try:
                bus_event = await stream.get(timeout=keepalive)
            except asyncio.TimeoutError:
                # Also surfaces a vanished client as ConnectionResetError.
                await response.write(SSE_KEEPALIVE)
                continue

            if bus_event is None:
                logger.warning("Run %s: agent output overflowed the run queue", run_id[:8])
                await response.write(encode_sse(RunError(
                    thread_id=thread_id, run_id=run_id, message=OVERFLOW_MESSAGE,
                )))
                return

            message = bus_event.message
            finished = False
            for event in translate(message, thread_id, run_id, state):
                await response.write(encode_sse(event))
                if isinstance(event, RunFinished):
                    finished = True
            if finished or message.type == "result":
                logger.info("Run %s finished", run_id[:8])
                return


def is_disconnected(request: web.Request) -> bool:
    """True once the client connection is closed or closing."""
    transport = request.transport
    return transport is None or transport.is_closing()


async def wait_for_disconnect(request: web.Request, interval: float) -> None:
    """Return once the client connection is gone."""
    while not is_disconnected(request):
        await asyncio.sleep(interval)


async def _cancel(task: asyncio.Future) -> None:
    task.cancel()
    try:
        await task
    except (asyncio.CancelledError, ConnectionResetError):
        pass


async def _read_json(request: web.Request, allow_empty: bool = False) -> dict[str, Any]:
    raw = await request.text()
    if not raw and allow_empty:
        return {}
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise InvalidRunBody(str(exc)) from exc
    return parsed if isinstance(parsed, dict) else {}


def _method_not_allowed() -> web.Response:
    return web.Response(status=405, text="Method Not Allowed")
