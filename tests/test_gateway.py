"""HTTP/SSE gateway: routes, CORS, runs, connect replay, single transport."""

from __future__ import annotations

import asyncio
import json
import warnings
from unittest.mock import MagicMock

import pytest
from aiohttp import web
from aiohttp.test_utils import AioHTTPTestCase, make_mocked_request

from agui_bridge.adapters.event_bus import BroadcastBus
from agui_bridge.adapters.protocol import AgentMessage, BusEvent
from agui_bridge.engine.config import BridgeConfig
from agui_bridge.engine.models import SessionCapabilities, SessionStatus
from agui_bridge.engine.registry import SessionRegistry
from agui_bridge.server.gateway import (
    CONTEXT_HEADER,
    NO_SESSION_MESSAGE,
    OVERFLOW_MESSAGE,
    AguiGateway,
    build_readable_context,
    build_tools_context,
    extract_user_message,
)


def _bus_event(session_id: str, data: dict) -> BusEvent:
    return BusEvent(session_id=session_id, message=AgentMessage(type=data["type"], data=data))


class ScriptedChannel:
    """Outbound channel that answers every write with canned bus events."""

    def __init__(self, bus: BroadcastBus, replies: list[BusEvent] | None = None) -> None:
        self.generation = 0
        self.superseded = False
        self.bus = bus
        self.replies = replies or []
        self.frames: list[dict] = []

    async def send(self, frame: dict) -> bool:
        self.frames.append(frame)
        loop = asyncio.get_running_loop()
        for event in self.replies:
            loop.call_soon(self.bus.publish, event)
        return True


def parse_sse(text: str) -> list[dict]:
    return [
        json.loads(line[len("data: "):])
        for line in text.splitlines()
        if line.startswith("data: ")
    ]


async def wait_until(predicate, timeout: float = 2.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.01)


def _run_body(content: str | None = "hello", **extra) -> str:
    messages = [{"id": "1", "role": "user", "content": content}] if content is not None else []
    return json.dumps({"threadId": "thread-1", "runId": "run-1", "messages": messages, **extra})


def _reply(session_id: str, text: str) -> list[BusEvent]:
    return [
        _bus_event(session_id, {
            "type": "assistant",
            "message": {"id": f"{session_id}-m", "content": [{"type": "text", "text": text}]},
        }),
        _bus_event(session_id, {"type": "result", "subtype": "success", "num_turns": 1}),
    ]


class TestGatewayRoutes(AioHTTPTestCase):
    async def get_application(self):
        self.registry = SessionRegistry()
        self.bus = BroadcastBus()
        self.config = BridgeConfig(
            discovery_interval_seconds=0.01,
            discovery_attempts=3,
            sse_keepalive_seconds=5.0,
            disconnect_poll_seconds=0.01,
        )
        self.gateway = AguiGateway(self.registry, self.bus, self.config)
        return self.gateway.app

    def _live_session(self, session_id: str, replies: list[BusEvent] | None = None):
        session = self.registry.create(session_id, f"/work/{session_id}")
        channel = ScriptedChannel(self.bus, replies)
        self.registry.bind_channel(session_id, channel)
        self.registry.set_status(session_id, SessionStatus.CONNECTED)
        return session, channel

    # ── Discovery and plumbing ──

    async def test_info_describes_agent_with_cors(self):
        for method in ("get", "post"):
            resp = await getattr(self.client, method)("/info")
            assert resp.status == 200
            assert resp.headers["Access-Control-Allow-Origin"] == "*"
            assert await resp.json() == {
                "agents": {"default": {"description": "Claude Code AI agent"}},
                "version": "1.0.0",
            }
        resp = await self.client.get("/api/copilotkit/info")
        assert resp.status == 200

    async def test_request_id_stored_under_typed_key(self):
        with warnings.catch_warnings():
            warnings.simplefilter("error", web.NotAppKeyWarning)
            resp = await self.client.get("/info", headers={"x-request-id": "abc123"})
        assert resp.status == 200

    async def test_options_preflight_is_204_everywhere(self):
        for path in ("/info", "/agent/default/run", "/nowhere"):
            resp = await self.client.options(path)
            assert resp.status == 204
            assert resp.headers["Access-Control-Allow-Methods"] == "GET, POST, OPTIONS"
            assert resp.headers["Access-Control-Allow-Headers"] == "Content-Type, Authorization"
            assert await resp.read() == b""

    async def test_wrong_method_and_unknown_route(self):
        assert (await self.client.put("/info")).status == 405
        assert (await self.client.get("/agent/default/run")).status == 405
        assert (await self.client.get("/agent/default/connect")).status == 405
        resp = await self.client.get("/no/such/route")
        assert resp.status == 404
        assert resp.headers["Access-Control-Allow-Origin"] == "*"

    async def test_invalid_json_run_is_400(self):
        resp = await self.client.post("/agent/default/run", data="{oops")
        assert resp.status == 400

    # ── Runs ──

    async def test_run_without_user_message_finishes_immediately(self):
        resp = await self.client.post("/agent/default/run", data=_run_body(content=None))
        assert resp.status == 200
        assert resp.headers["Content-Type"].startswith("text/event-stream")
        events = parse_sse(await resp.text())
        assert [e["type"] for e in events] == ["RUN_STARTED", "RUN_FINISHED"]
        assert events[0] == {"type": "RUN_STARTED", "threadId": "thread-1", "runId": "run-1"}

    async def test_run_without_any_session_reports_run_error(self):
        resp = await self.client.post("/agent/default/run", data=_run_body())
        events = parse_sse(await resp.text())
        assert [e["type"] for e in events] == ["RUN_STARTED", "RUN_ERROR"]
        assert events[1]["message"] == NO_SESSION_MESSAGE

    async def test_session_without_socket_is_not_routable(self):
        self.registry.create("idle-1", "/work")
        resp = await self.client.post("/agent/default/run", data=_run_body())
        events = parse_sse(await resp.text())
        assert events[-1]["type"] == "RUN_ERROR"

    async def test_run_streams_translated_reply_from_active_session(self):
        first, first_channel = self._live_session("s1", _reply("s1", "from first"))
        second, second_channel = self._live_session("s2", _reply("s2", "from second"))
        second.agent_conversation_id = "agent-2"
        self.registry.set_active("s2")

        resp = await self.client.post("/api/copilotkit", data=_run_body("hello"))
        events = parse_sse(await resp.text())

        assert [e["type"] for e in events] == [
            "RUN_STARTED",
            "TEXT_MESSAGE_START", "TEXT_MESSAGE_CONTENT", "TEXT_MESSAGE_END",
            "CUSTOM",
            "RUN_FINISHED",
        ]
        assert events[2]["delta"] == "from second"
        assert events[4]["name"] == "result_stats"
        assert first_channel.frames == []
        assert second_channel.frames == [{
            "type": "user",
            "message": {"role": "user", "content": "hello"},
            "parent_tool_use_id": None,
            "session_id": "agent-2",
        }]
        entry = second.message_history[0]
        assert entry["type"] == "user_message"
        assert entry["content"] == "hello"
        assert entry["id"].startswith("user-")
        assert self.gateway.active_runs == 0

    async def test_run_ignores_concurrent_output_of_other_sessions(self):
        self._live_session("s1")
        other_output = [_bus_event("s1", {
            "type": "assistant",
            "message": {"id": "x", "content": [{"type": "text", "text": "wrong session"}]},
        })]
        _, channel = self._live_session("s2", other_output + _reply("s2", "right session"))
        self.registry.set_active("s2")

        resp = await self.client.post("/agent/default/run", data=_run_body())
        body = await resp.text()
        assert "right session" in body
        assert "wrong session" not in body
        assert len(channel.frames) == 1

    async def test_run_finds_session_that_connects_during_discovery(self):
        self.config.discovery_attempts = 200
        loop = asyncio.get_running_loop()
        channels = []

        def connect_late():
            _, channel = self._live_session("late", _reply("late", "worth the wait"))
            channels.append(channel)

        loop.call_later(0.1, connect_late)
        resp = await self.client.post("/agent/default/run", data=_run_body())
        events = parse_sse(await resp.text())

        assert events[0]["type"] == "RUN_STARTED"
        assert events[-1]["type"] == "RUN_FINISHED"
        assert any(e.get("delta") == "worth the wait" for e in events)
        assert len(channels[0].frames) == 1

    async def test_client_disconnect_unsubscribes_run_promptly(self):
        self._live_session("s1")
        self.registry.set_active("s1")
        baseline = self.bus.subscriber_count

        resp = await self.client.post("/agent/default/run", data=_run_body())
        first = await resp.content.readline()
        assert first.startswith(b"data: ")
        await wait_until(lambda: self.bus.subscriber_count == baseline + 1)

        resp.close()
        # Well inside the keepalive interval, so no write has to fail first.
        await wait_until(lambda: self.gateway.active_runs == 0, timeout=1.0)
        assert self.bus.subscriber_count == baseline

    async def test_client_leaving_during_discovery_is_never_dispatched(self):
        self.config.discovery_attempts = 200
        baseline = self.bus.subscriber_count

        resp = await self.client.post("/agent/default/run", data=_run_body())
        await resp.content.readline()
        resp.close()
        await wait_until(lambda: self.gateway.active_runs == 0, timeout=1.0)

        _, channel = self._live_session("s1")
        await asyncio.sleep(0.1)
        assert channel.frames == []
        assert self.registry.get("s1").message_history == []
        assert self.bus.subscriber_count == baseline

    async def test_overflowing_run_ends_with_run_error(self):
        self.config.run_queue_size = 2
        flood = [
            _bus_event("s1", {"type": "stream_event", "event": {"type": "message_start"}})
            for _ in range(5)
        ]
        self._live_session("s1", flood + _reply("s1", "lost"))
        self.registry.set_active("s1")

        resp = await self.client.post("/agent/default/run", data=_run_body())
        events = parse_sse(await resp.text())

        assert events[-1]["type"] == "RUN_ERROR"
        assert events[-1]["message"] == OVERFLOW_MESSAGE
        assert "RUN_FINISHED" not in [e["type"] for e in events]
        assert self.gateway.active_runs == 0

    async def test_run_prepends_readable_context_and_frontend_tools(self):
        _, channel = self._live_session("s1", _reply("s1", "ok"))
        self.registry.set_active("s1")

        body = _run_body(
            "what now?",
            context=[{"description": "Draft", "value": {"title": "Plan"}}],
            tools=[{"name": "showCard", "description": "Render a card", "parameters": {"type": "object"}}],
        )
        resp = await self.client.post("/agent/default/run", data=body)
        await resp.text()

        content = channel.frames[0]["message"]["content"]
        assert CONTEXT_HEADER in content
        assert "- **showCard**: Render a card" in content
        assert content.endswith("what now?")
        # History keeps what the user typed, not the composed prompt.
        assert self.registry.get("s1").message_history[0]["content"] == "what now?"

    # ── Connect ──

    async def test_connect_emits_snapshot_and_replays_history(self):
        session, _ = self._live_session("s1")
        self.registry.set_active("s1")
        session.capabilities = SessionCapabilities(model="sonnet", tools=["Read"])
        session.record({"type": "user_message", "content": "hi", "timestamp": 1, "id": "user-1"})
        session.record({"type": "assistant", "message": {"content": [
            {"type": "text", "text": "hello back"},
            {"type": "tool_use", "id": "t1", "name": "Read", "input": {}},
        ]}})
        session.record({"type": "result", "subtype": "success"})

        resp = await self.client.post("/agent/default/connect", data=json.dumps({"runId": "c1", "threadId": "t"}))
        events = parse_sse(await resp.text())

        assert [e["type"] for e in events] == [
            "RUN_STARTED",
            "STATE_SNAPSHOT",
            "TEXT_MESSAGE_START", "TEXT_MESSAGE_CONTENT", "TEXT_MESSAGE_END",
            "TEXT_MESSAGE_START", "TEXT_MESSAGE_CONTENT", "TEXT_MESSAGE_END",
            "RUN_FINISHED",
        ]
        snapshot = events[1]["snapshot"]
        assert snapshot["agentId"] == "default"
        assert snapshot["status"] == "connected"
        assert snapshot["model"] == "sonnet"
        assert events[2] == {"type": "TEXT_MESSAGE_START", "messageId": "c1-replay-0", "role": "user"}
        assert events[6]["delta"] == "hello back"

    async def test_connect_without_session_reports_disconnected(self):
        resp = await self.client.post("/agent/default/connect", data="not json at all")
        events = parse_sse(await resp.text())
        assert [e["type"] for e in events] == ["RUN_STARTED", "STATE_SNAPSHOT", "RUN_FINISHED"]
        assert events[1]["snapshot"] == {"agentId": "default", "status": "disconnected"}

    # ── Single transport ──

    async def test_single_transport_dispatches_by_method(self):
        resp = await self.client.post("/", data=json.dumps({"method": "info"}))
        assert (await resp.json())["version"] == "1.0.0"

        resp = await self.client.post("/", data=json.dumps({"method": "agent/stop"}))
        assert await resp.json() == {"ok": True}

        resp = await self.client.post("/api/copilotkit/anything", data=json.dumps({
            "method": "agent/connect", "body": {"runId": "c2"},
        }))
        events = parse_sse(await resp.text())
        assert events[0]["runId"] == "c2"
        assert events[-1]["type"] == "RUN_FINISHED"

    async def test_single_transport_defaults_to_run(self):
        resp = await self.client.post("/", data=json.dumps({
            "method": "something/new",
            "body": {"runId": "r9", "messages": []},
        }))
        events = parse_sse(await resp.text())
        assert [e["type"] for e in events] == ["RUN_STARTED", "RUN_FINISHED"]
        assert events[0]["runId"] == "r9"

        resp = await self.client.post("/", data="")
        assert [e["type"] for e in parse_sse(await resp.text())] == ["RUN_STARTED", "RUN_FINISHED"]


# ── Helpers ──


def test_extract_user_message_picks_latest_user_string():
    run_input = {"messages": [
        {"role": "user", "content": "first"},
        {"role": "assistant", "content": "reply"},
        {"role": "user", "content": [{"type": "image"}]},
        {"role": "user", "content": "second"},
        {"role": "assistant", "content": "later"},
    ]}
    assert extract_user_message(run_input) == "second"
    assert extract_user_message({"messages": "nope"}) is None


def test_readable_context_skips_empty_values():
    text = build_readable_context([
        {"description": "Name", "value": "Ada"},
        {"description": "Empty", "value": ""},
        {"description": "Missing", "value": None},
        {"description": "Obj", "value": {"a": 1}},
    ])
    assert text == (
        "\n\n" + CONTEXT_HEADER + "\n"
        "[Name]\nAda\n\n[Obj]\n{\n  \"a\": 1\n}\n\n"
    )
    assert build_readable_context([]) == ""


def test_tools_context_lists_named_tools_only():
    text = build_tools_context([
        {"name": "greet", "description": "Say hi"},
        {"description": "nameless"},
    ])
    assert "- **greet**: Say hi\n  Parameters: none" in text
    assert "nameless" not in text
    assert build_tools_context(None) == ""


@pytest.mark.asyncio
async def test_cancelled_run_propagates_cancellation():
    transport = MagicMock()
    transport.is_closing.return_value = False
    request = make_mocked_request("POST", "/agent/default/run", transport=transport)
    gateway = AguiGateway(
        SessionRegistry(),
        BroadcastBus(),
        BridgeConfig(discovery_interval_seconds=0.01, discovery_attempts=1000),
    )

    task = asyncio.create_task(gateway.stream_run(request, json.loads(_run_body())))
    await wait_until(lambda: gateway.active_runs == 1)
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task
    assert gateway.active_runs == 0
