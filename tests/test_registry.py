"""SessionRegistry table, active routing and channel bookkeeping."""

from __future__ import annotations

import pytest

from agui_bridge.engine.errors import SessionNotFoundError
from agui_bridge.engine.models import SessionStatus
from agui_bridge.engine.registry import SessionRegistry


class FakeChannel:
    def __init__(self) -> None:
        self.generation = 0
        self.superseded = False


def _registry(*ids: str) -> SessionRegistry:
    registry = SessionRegistry()
    for sid in ids:
        registry.create(sid, f"/work/{sid}")
    return registry


def test_create_rejects_duplicate_ids():
    registry = _registry("a")
    with pytest.raises(ValueError):
        registry.create("a", "/elsewhere")
    assert len(registry) == 1


def test_new_session_starts_without_channel():
    session = _registry("a").require("a")
    assert session.status is SessionStatus.STARTING
    assert session.has_channel is False
    assert session.message_history == []


def test_set_active_unknown_session_raises():
    registry = _registry("a")
    with pytest.raises(SessionNotFoundError):
        registry.set_active("missing")
    assert registry.active_id is None


def test_removing_active_session_promotes_another():
    registry = _registry("a", "b")
    registry.set_active("a")
    registry.remove("a")
    assert registry.active_id == "b"
    registry.remove("b")
    assert registry.active_id is None


def test_remove_is_idempotent():
    registry = _registry("a")
    assert registry.remove("a") is not None
    assert registry.remove("a") is None
    assert "a" not in registry


def test_channelless_status_clears_channel():
    registry = _registry("a")
    registry.bind_channel("a", FakeChannel())
    registry.set_status("a", SessionStatus.CONNECTED)
    assert registry.require("a").has_channel

    registry.set_status("a", SessionStatus.DISCONNECTED)
    assert registry.require("a").has_channel is False


def test_error_status_records_detail_and_other_statuses_clear_it():
    registry = _registry("a")
    registry.set_status("a", SessionStatus.ERROR, "Process exited with code 2")
    assert registry.require("a").error_detail == "Process exited with code 2"
    registry.set_status("a", SessionStatus.TERMINATED)
    assert registry.require("a").error_detail is None


def test_status_listeners_are_notified_and_isolated():
    registry = _registry("a")
    seen: list[tuple[str, str]] = []

    def broken(session_id: str, label: str) -> None:
        raise RuntimeError("boom")

    registry.add_status_listener(broken)
    registry.add_status_listener(lambda sid, label: seen.append((sid, label)))

    assert registry.set_status("a", SessionStatus.CONNECTED) is True
    assert registry.set_status("missing", SessionStatus.CONNECTED) is False
    registry.set_status("a", SessionStatus.IDLE, notify=False)
    assert seen == [("a", "connected")]


def test_find_routable_prefers_active_session_with_channel():
    registry = _registry("a", "b")
    registry.bind_channel("a", FakeChannel())
    registry.bind_channel("b", FakeChannel())
    registry.set_active("b")
    assert registry.find_routable().session_id == "b"

    registry.clear_channel("b")
    assert registry.find_routable().session_id == "a"

    registry.clear_channel("a")
    assert registry.find_routable() is None


def test_rebinding_supersedes_previous_channel():
    registry = _registry("a")
    first, second = FakeChannel(), FakeChannel()

    assert registry.bind_channel("a", first) is None
    assert registry.bind_channel("a", second) is first
    assert first.superseded is True
    assert (first.generation, second.generation) == (1, 2)

    # The stale channel cannot detach its replacement.
    assert registry.clear_channel("a", first) is False
    assert registry.is_current_channel("a", second)
    assert registry.clear_channel("a", second) is True
    assert registry.require("a").has_channel is False


def test_bind_channel_unknown_session_raises():
    with pytest.raises(SessionNotFoundError):
        SessionRegistry().bind_channel("missing", FakeChannel())
