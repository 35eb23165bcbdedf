"""UI-facing events streamed to the client over SSE.

Each event is a typed dataclass. On the wire the discriminator is the
SCREAMING_SNAKE_CASE ``type`` and field names are camelCase, one JSON
object per ``data:`` line.
"""
from __future__ import annotations

import json
from dataclasses import dataclass, field, fields
from typing import Any


@dataclass
class UIEvent:
    """Base UI event."""
    event_type: str = ""


@dataclass
class RunStarted(UIEvent):
    event_type: str = "RUN_STARTED"
    thread_id: str = ""
    run_id: str = ""


@dataclass
class RunFinished(UIEvent):
    event_type: str = "RUN_FINISHED"
    thread_id: str = ""
    run_id: str = ""


@dataclass
class RunError(UIEvent):
    event_type: str = "RUN_ERROR"
    thread_id: str = ""
    run_id: str = ""
    message: str = ""


@dataclass
class TextMessageStart(UIEvent):
    event_type: str = "TEXT_MESSAGE_START"
    message_id: str = ""
    role: str = "assistant"


@dataclass
class TextMessageContent(UIEvent):
    event_type: str = "TEXT_MESSAGE_CONTENT"
    message_id: str = ""
    delta: str = ""


@dataclass
class TextMessageEnd(UIEvent):
    event_type: str = "TEXT_MESSAGE_END"
    message_id: str = ""


@dataclass
class ToolCallStart(UIEvent):
    event_type: str = "TOOL_CALL_START"
    tool_call_id: str = ""
    tool_call_name: str = ""
    parent_message_id: str | None = None


@dataclass
class ToolCallArgs(UIEvent):
    event_type: str = "TOOL_CALL_ARGS"
    tool_call_id: str = ""
    delta: str = ""


@dataclass
class ToolCallEnd(UIEvent):
    event_type: str = "TOOL_CALL_END"
    tool_call_id: str = ""


@dataclass
class StateSnapshot(UIEvent):
    event_type: str = "STATE_SNAPSHOT"
    snapshot: dict[str, Any] = field(default_factory=dict)


@dataclass
class Custom(UIEvent):
    event_type: str = "CUSTOM"
    name: str = ""
    value: Any = None


TERMINAL_EVENT_TYPES = frozenset({"RUN_FINISHED", "RUN_ERROR"})


def _camel(name: str) -> str:
    head, *rest = name.split("_")
    return head + "".join(part.title() for part in rest)


def event_to_dict(event: UIEvent) -> dict[str, Any]:
    """Wire form: ``type`` plus camelCase fields, optional Nones dropped."""
    d: dict[str, Any] = {"type": event.event_type}
    for f in fields(event):
        if f.name == "event_type":
            continue
        val = getattr(event, f.name)
        if val is None and f.name != "value":
            continue
        d[_camel(f.name)] = val
    return d


def encode_sse(event: UIEvent | dict[str, Any]) -> bytes:
    """One SSE frame: ``data: {json}`` followed by a blank line."""
    payload = event if isinstance(event, dict) else event_to_dict(event)
    return f"data: {json.dumps(payload, ensure_ascii=False)}\n\n".encode()


SSE_KEEPALIVE = b": keepalive\n\n"


def compact(values: dict[str, Any]) -> dict[str, Any]:
    """Drop keys whose value is None (absent on the agent side)."""
    return {k: v for k, v in values.items() if v is not None}
