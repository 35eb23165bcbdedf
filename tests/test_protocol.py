"""NDJSON frame parsing and outbound frame builders."""

from __future__ import annotations

import json

import pytest

from agui_bridge.adapters.protocol import (
    control_request_frame,
    control_response_frame,
    encode_frame,
    env_update_frame,
    parse_agent_message,
    split_frames,
    user_frame,
)
from agui_bridge.engine.errors import FrameParseError


def test_user_frame_round_trips_through_the_codec():
    line = encode_frame(user_frame("hello", "S1"))
    assert line.endswith("\n")
    msg = parse_agent_message(line.strip())
    assert msg.type == "user"
    assert msg.get("message") == {"role": "user", "content": "hello"}
    assert msg.get("session_id") == "S1"
    assert msg.get("parent_tool_use_id") is None


def test_user_frame_without_conversation_id_sends_empty_string():
    assert user_frame("hi", None)["session_id"] == ""


@pytest.mark.parametrize("line", [
    "{not json",
    "[1, 2, 3]",
    '"just a string"',
    '{"no_type": true}',
    '{"type": 5}',
])
def test_malformed_frames_raise_parse_error(line):
    with pytest.raises(FrameParseError):
        parse_agent_message(line)


def test_split_frames_skips_blank_lines_and_keeps_order():
    payload = '{"type": "a"}\n\n  \n{"type": "b"}\n'
    assert list(split_frames(payload)) == ['{"type": "a"}', '{"type": "b"}']


def test_subtype_is_only_read_when_it_is_a_string():
    assert parse_agent_message('{"type": "system", "subtype": "init"}').subtype == "init"
    assert parse_agent_message('{"type": "system", "subtype": 3}').subtype is None


def test_control_request_frame_shape():
    frame = control_request_frame("req-1", {"subtype": "interrupt"})
    assert frame == {
        "type": "control_request",
        "request_id": "req-1",
        "request": {"subtype": "interrupt"},
    }


def test_control_response_frames():
    ok = control_response_frame("req-2", {"behavior": "allow"})
    assert ok["response"] == {
        "request_id": "req-2", "subtype": "success", "response": {"behavior": "allow"},
    }
    failed = control_response_frame("req-3", error="nope")
    assert failed["response"] == {"request_id": "req-3", "subtype": "error", "error": "nope"}


def test_env_update_frame_copies_variables():
    variables = {"API_TOKEN": "x"}
    frame = env_update_frame(variables)
    variables["OTHER"] = "y"
    assert json.loads(encode_frame(frame)) == {
        "type": "update_environment_variables",
        "variables": {"API_TOKEN": "x"},
    }
