"""Agent socket protocol: NDJSON parsing and outbound frame builders.

Inbound, every line on the agent socket is one JSON object with a
string ``type``. Outbound, the bridge writes four frame shapes:

    {"type": "user", "message": {"role": "user", "content": ...},
     "parent_tool_use_id": null, "session_id": ...}
    {"type": "control_request", "request_id": ..., "request": {"subtype": ..., ...}}
    {"type": "control_response", "response": {"subtype": "success"|"error",
     "request_id": ..., "response"|"error": ...}}
    {"type": "update_environment_variables", "variables": {...}}

Each frame is newline-terminated.
"""
from __future__ import annotations

import json
from collections.abc import Iterator
from dataclasses import dataclass, field
from typing import Any

from ..engine.errors import FrameParseError

# Message types the ingress understands. Anything else still parses and
# is broadcast, but no session bookkeeping happens for it.
KNOWN_TYPES = frozenset({
    "system",
    "assistant",
    "result",
    "stream_event",
    "control_request",
    "control_response",
    "tool_progress",
    "tool_use_summary",
    "keep_alive",
    "user",
    "auth_status",
})

# Never recorded into replay history.
HISTORY_SKIP_TYPES = frozenset({"user", "system", "keep_alive", "auth_status"})


@dataclass
class AgentMessage:
    """One parsed inbound frame. ``data`` is the full decoded object."""
    type: str
    data: dict[str, Any] = field(default_factory=dict)

    @property
    def subtype(self) -> str | None:
        value = self.data.get("subtype")
        return value if isinstance(value, str) else None

    def get(self, key: str, default: Any = None) -> Any:
        return self.data.get(key, default)

    def to_dict(self) -> dict[str, Any]:
        return dict(self.data)


@dataclass
class BusEvent:
    """An inbound message tagged with the session it arrived on."""
    session_id: str
    message: AgentMessage


def parse_agent_message(line: str) -> AgentMessage:
    """Parse one NDJSON line. Raises FrameParseError."""
    try:
        data = json.loads(line)
    except json.JSONDecodeError as exc:
        raise FrameParseError(line, f"invalid JSON: {exc.msg}") from exc
    if not isinstance(data, dict):
        raise FrameParseError(line, "not a JSON object")
    msg_type = data.get("type")
    if not isinstance(msg_type, str) or not msg_type:
        raise FrameParseError(line, "missing string 'type'")
    return AgentMessage(type=msg_type, data=data)


def split_frames(payload: str) -> Iterator[str]:
    """Split one transport message into its non-empty NDJSON lines, in order."""
    for line in payload.split("\n"):
        line = line.strip()
        if line:
            yield line


# ── Outbound frames ──


def encode_frame(frame: dict[str, Any]) -> str:
    return json.dumps(frame, ensure_ascii=False) + "\n"


def user_frame(content: str, session_id: str | None) -> dict[str, Any]:
    return {
        "type": "user",
        "message": {"role": "user", "content": content},
        "parent_tool_use_id": None,
        "session_id": session_id or "",
    }


def control_request_frame(request_id: str, request: dict[str, Any]) -> dict[str, Any]:
    return {
        "type": "control_request",
        "request_id": request_id,
        "request": request,
    }


def control_response_frame(
    request_id: str,
    response: dict[str, Any] | None = None,
    error: str | None = None,
) -> dict[str, Any]:
    """Reply to an agent-issued control request (tool approval, hooks)."""
    body: dict[str, Any] = {"request_id": request_id}
    if error is not None:
        body["subtype"] = "error"
        body["error"] = error
    else:
        body["subtype"] = "success"
        body["response"] = response if response is not None else {}
    return {"type": "control_response", "response": body}


def env_update_frame(variables: dict[str, str]) -> dict[str, Any]:
    return {"type": "update_environment_variables", "variables": dict(variables)}
