"""Named control operations built on the correlator."""

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from agui_bridge.engine.control import SessionControls
from agui_bridge.engine.errors import AlreadyInitializedError
from agui_bridge.engine.models import SessionCapabilities
from agui_bridge.engine.registry import SessionRegistry


def _controls(reply: dict | None = None, **kwargs):
    registry = SessionRegistry()
    session = registry.create("s1", "/work")
    correlator = MagicMock()
    correlator.issue = AsyncMock(return_value=reply if reply is not None else {})
    return session, correlator, SessionControls(registry, correlator, **kwargs)


@pytest.mark.asyncio
async def test_initialize_sends_configured_prompts_and_stores_reply():
    session, correlator, controls = _controls(
        reply={"commands": [{"name": "help"}], "models": [{"value": "sonnet"}], "fast_mode": False},
        system_prompt="Be terse.",
    )

    await controls.initialize("s1", hooks={"PreToolUse": []})

    correlator.issue.assert_awaited_once_with(
        "s1",
        {"subtype": "initialize", "hooks": {"PreToolUse": []}, "systemPrompt": "Be terse."},
        None,
    )
    assert session.initialized is True
    assert session.init_data.commands == [{"name": "help"}]
    assert session.init_data.fast_mode is False


@pytest.mark.asyncio
async def test_initialize_twice_is_rejected():
    _, correlator, controls = _controls()
    await controls.initialize("s1")
    with pytest.raises(AlreadyInitializedError):
        await controls.initialize("s1")
    assert correlator.issue.await_count == 1


@pytest.mark.asyncio
async def test_failed_initialize_leaves_session_uninitialized():
    session, correlator, controls = _controls()
    correlator.issue.side_effect = RuntimeError("socket gone")
    with pytest.raises(RuntimeError):
        await controls.initialize("s1")
    assert session.initialized is False
    assert session.init_data is None


@pytest.mark.asyncio
async def test_set_model_updates_cached_capabilities():
    session, correlator, controls = _controls()
    session.capabilities = SessionCapabilities(model="sonnet")
    await controls.set_model("s1", "opus")
    correlator.issue.assert_awaited_once_with("s1", {"subtype": "set_model", "model": "opus"}, None)
    assert session.capabilities.model == "opus"


@pytest.mark.asyncio
async def test_set_permission_mode_prefers_agent_reported_mode():
    session, _, controls = _controls(reply={"mode": "acceptEdits"})
    session.capabilities = SessionCapabilities()
    result = await controls.set_permission_mode("s1", "plan")
    assert result == {"mode": "acceptEdits"}
    assert session.capabilities.permission_mode == "acceptEdits"


@pytest.mark.asyncio
async def test_mcp_and_rewind_payloads():
    _, correlator, controls = _controls()
    await controls.mcp_toggle("s1", "github", False)
    await controls.rewind_files("s1", "user-1", dry_run=True)
    await controls.set_max_thinking_tokens("s1", None)

    requests = [c.args[1] for c in correlator.issue.await_args_list]
    assert requests == [
        {"subtype": "mcp_toggle", "serverName": "github", "enabled": False},
        {"subtype": "rewind_files", "user_message_id": "user-1", "dry_run": True},
        {"subtype": "set_max_thinking_tokens", "max_thinking_tokens": None},
    ]


@pytest.mark.asyncio
async def test_send_requires_subtype():
    _, _, controls = _controls()
    with pytest.raises(ValueError):
        await controls.send("s1", {"model": "x"})


@pytest.mark.asyncio
async def test_concurrent_initialize_sends_once():
    session, correlator, controls = _controls()
    release = asyncio.Event()

    async def slow_issue(session_id, request, timeout):
        await release.wait()
        return {"commands": []}

    correlator.issue = AsyncMock(side_effect=slow_issue)

    first = asyncio.create_task(controls.initialize("s1"))
    await asyncio.sleep(0)
    with pytest.raises(AlreadyInitializedError):
        await controls.initialize("s1")
    release.set()
    await first

    assert correlator.issue.await_count == 1
    assert session.initialized is True


@pytest.mark.asyncio
async def test_initialize_can_retry_after_failure():
    session, correlator, controls = _controls()
    correlator.issue.side_effect = [RuntimeError("socket gone"), {}]
    with pytest.raises(RuntimeError):
        await controls.initialize("s1")
    await controls.initialize("s1")
    assert session.initialized is True
    assert correlator.issue.await_count == 2
