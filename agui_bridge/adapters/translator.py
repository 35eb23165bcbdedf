"""Agent message -> UI event translation.

One TranslatorState is created per UI run and threaded through every
call to translate(). The function never touches session state: its
output depends only on (message, thread_id, run_id, state).

Message lifecycle from the agent within one turn:

    1. stream_event(content_block_start)  new text or tool_use block
    2. stream_event(content_block_delta)  text tokens or partial tool JSON
    3. stream_event(content_block_stop)   block finished
    4. assistant                          final assembled message
    5. result                             turn complete

Streaming events drive the live UI. The final ``assistant`` message only
fills in what was not already streamed, so a client never renders the
same text or tool call twice.
"""
from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any

from .events import (
    Custom,
    RunFinished,
    StateSnapshot,
    TextMessageContent,
    TextMessageEnd,
    TextMessageStart,
    ToolCallArgs,
    ToolCallEnd,
    ToolCallStart,
    UIEvent,
    compact,
)
from .protocol import AgentMessage

logger = logging.getLogger(__name__)

BLOCK_TEXT = "text"
BLOCK_TOOL = "tool_use"

HOOK_SUBTYPES = frozenset({"hook_started", "hook_progress", "hook_response"})


@dataclass
class TranslatorState:
    """Per-run streaming bookkeeping."""
    # content block index -> block kind ("text" | "tool_use" | other)
    open_blocks: dict[int, str] = field(default_factory=dict)
    # content block index -> tool call id assigned by the agent
    tool_call_id_by_block: dict[int, str] = field(default_factory=dict)
    has_streamed_text: bool = False
    streamed_tool_call_ids: set[str] = field(default_factory=set)


def _text_message_id(run_id: str, index: int) -> str:
    return f"{run_id}-msg-{index}"


def _fallback_tool_id(run_id: str, index: int) -> str:
    return f"{run_id}-tool-{index}"


def translate(
    message: AgentMessage,
    thread_id: str,
    run_id: str,
    state: TranslatorState,
) -> list[UIEvent]:
    """Translate one agent message into zero or more UI events."""
    handler = _HANDLERS.get(message.type)
    if handler is None:
        # keep_alive, user echoes, control_response, unknown types
        return []
    return handler(message, thread_id, run_id, state)


# ── system ──


def _system(message: AgentMessage, thread_id: str, run_id: str, state: TranslatorState) -> list[UIEvent]:
    d = message.data
    subtype = message.subtype
    if subtype == "init":
        return [StateSnapshot(snapshot=compact({
            "model": d.get("model"),
            "tools": d.get("tools"),
            "sessionId": d.get("session_id"),
            "cwd": d.get("cwd"),
            "permissionMode": d.get("permissionMode"),
            "claudeCodeVersion": d.get("claude_code_version"),
            "slashCommands": d.get("slash_commands"),
            "agents": d.get("agents"),
            "skills": d.get("skills"),
            "mcpServers": d.get("mcp_servers"),
        }))]
    if subtype == "status":
        return [Custom(name="system_status", value=compact({
            "status": d.get("status"),
            "permissionMode": d.get("permissionMode"),
        }))]
    if subtype == "task_notification":
        return [Custom(name="task_notification", value=compact({
            "taskId": d.get("task_id"),
            "status": d.get("task_status"),
            "outputFile": d.get("output_file"),
            "summary": d.get("summary"),
        }))]
    if subtype == "compact_boundary":
        meta = d.get("compact_metadata") or {}
        return [Custom(name="compact_boundary", value=compact({
            "trigger": meta.get("trigger"),
            "preTokens": meta.get("pre_tokens"),
        }))]
    if subtype in HOOK_SUBTYPES:
        return [Custom(name=subtype, value=compact({
            "hookId": d.get("hook_id"),
            "hookName": d.get("hook_name"),
            "hookEvent": d.get("hook_event"),
            "output": d.get("output"),
            "stdout": d.get("stdout"),
            "stderr": d.get("stderr"),
            "exitCode": d.get("exit_code"),
            "outcome": d.get("outcome"),
        }))]
    if subtype == "files_persisted":
        return [Custom(name="files_persisted", value=compact({
            "files": d.get("files"),
            "failed": d.get("failed"),
        }))]
    return []


# ── stream_event ──


def _stream_event(message: AgentMessage, thread_id: str, run_id: str, state: TranslatorState) -> list[UIEvent]:
    event = message.get("event") or {}
    index = event.get("index")
    if not isinstance(index, int):
        index = 0
    kind = event.get("type")

    if kind == "content_block_start":
        block = event.get("content_block") or {}
        block_type = block.get("type") or BLOCK_TEXT
        state.open_blocks[index] = block_type
        if block_type == BLOCK_TEXT:
            state.has_streamed_text = True
            return [TextMessageStart(message_id=_text_message_id(run_id, index), role="assistant")]
        if block_type == BLOCK_TOOL:
            tool_id = block.get("id") or "unknown"
            state.tool_call_id_by_block[index] = tool_id
            state.streamed_tool_call_ids.add(tool_id)
            return [ToolCallStart(
                tool_call_id=tool_id,
                tool_call_name=block.get("name") or "unknown",
            )]
        # thinking and other block kinds are recorded but not forwarded
        return []

    if kind == "content_block_delta":
        delta = event.get("delta") or {}
        delta_type = delta.get("type")
        if delta_type == "text_delta" and delta.get("text") is not None:
            return [TextMessageContent(
                message_id=_text_message_id(run_id, index),
                delta=delta["text"],
            )]
        if delta_type == "input_json_delta" and delta.get("partial_json") is not None:
            tool_id = state.tool_call_id_by_block.get(index) or _fallback_tool_id(run_id, index)
            return [ToolCallArgs(tool_call_id=tool_id, delta=delta["partial_json"])]
        return []

    if kind == "content_block_stop":
        block_type = state.open_blocks.pop(index, None)
        if block_type == BLOCK_TOOL:
            tool_id = state.tool_call_id_by_block.get(index) or _fallback_tool_id(run_id, index)
            return [ToolCallEnd(tool_call_id=tool_id)]
        # Text, or a block whose start we never saw: close as text.
        return [TextMessageEnd(message_id=_text_message_id(run_id, index))]

    # message_start, message_delta, message_stop
    return []


# ── assistant ──


def _assistant(message: AgentMessage, thread_id: str, run_id: str, state: TranslatorState) -> list[UIEvent]:
    body = message.get("message") or {}
    message_id = body.get("id") or f"{run_id}-assistant"
    events: list[UIEvent] = []
    for block in body.get("content") or []:
        if not isinstance(block, dict):
            continue
        block_type = block.get("type")
        if block_type == BLOCK_TEXT:
            if state.has_streamed_text:
                continue
            events.extend([
                TextMessageStart(message_id=message_id, role="assistant"),
                TextMessageContent(message_id=message_id, delta=block.get("text") or ""),
                TextMessageEnd(message_id=message_id),
            ])
        elif block_type == BLOCK_TOOL:
            tool_id = block.get("id") or "unknown"
            if tool_id in state.streamed_tool_call_ids:
                continue
            events.extend([
                ToolCallStart(
                    tool_call_id=tool_id,
                    tool_call_name=block.get("name") or "unknown",
                    parent_message_id=message_id,
                ),
                ToolCallArgs(tool_call_id=tool_id, delta=json.dumps(block.get("input") or {})),
                ToolCallEnd(tool_call_id=tool_id),
            ])
        # tool_result and thinking blocks stay agent-internal
    return events


# ── control_request (agent -> bridge) ──


def _control_request(message: AgentMessage, thread_id: str, run_id: str, state: TranslatorState) -> list[UIEvent]:
    request = message.get("request") or {}
    subtype = request.get("subtype")
    request_id = request.get("request_id") or message.get("request_id")
    if subtype == "can_use_tool":
        return [Custom(name="tool_approval_request", value=compact({
            "requestId": request_id,
            "toolName": request.get("tool_name"),
            "toolInput": request.get("input"),
            "toolUseId": request.get("tool_use_id"),
            "description": request.get("description"),
            "permissionSuggestions": request.get("permission_suggestions"),
            "agentId": request.get("agent_id"),
        }))]
    if subtype == "hook_callback":
        return [Custom(name="hook_callback", value=compact({
            "requestId": request_id,
            "callbackId": request.get("callback_id"),
            "input": request.get("input"),
            "toolUseId": request.get("tool_use_id"),
        }))]
    logger.debug("Ignoring agent control_request subtype=%s", subtype)
    return []


# ── direct projections ──


def _tool_progress(message: AgentMessage, thread_id: str, run_id: str, state: TranslatorState) -> list[UIEvent]:
    d = message.data
    return [Custom(name="tool_progress", value=compact({
        "toolUseId": d.get("tool_use_id"),
        "toolName": d.get("tool_name"),
        "elapsedTimeSeconds": d.get("elapsed_time_seconds"),
        "parentToolUseId": d.get("parent_tool_use_id"),
    }))]


def _tool_use_summary(message: AgentMessage, thread_id: str, run_id: str, state: TranslatorState) -> list[UIEvent]:
    d = message.data
    return [Custom(name="tool_use_summary", value=compact({
        "summary": d.get("summary"),
        "precedingToolUseIds": d.get("preceding_tool_use_ids"),
    }))]


def _auth_status(message: AgentMessage, thread_id: str, run_id: str, state: TranslatorState) -> list[UIEvent]:
    d = message.data
    return [Custom(name="auth_status", value=compact({
        "isAuthenticating": d.get("isAuthenticating"),
        "output": d.get("output"),
        "error": d.get("error"),
    }))]


def _result(message: AgentMessage, thread_id: str, run_id: str, state: TranslatorState) -> list[UIEvent]:
    d = message.data
    return [
        Custom(name="result_stats", value=compact({
            "subtype": d.get("subtype"),
            "isError": d.get("is_error"),
            "durationMs": d.get("duration_ms"),
            "numTurns": d.get("num_turns"),
            "totalCostUsd": d.get("total_cost_usd"),
            "usage": d.get("usage"),
            "errors": d.get("errors"),
            "totalLinesAdded": d.get("total_lines_added"),
            "totalLinesRemoved": d.get("total_lines_removed"),
        })),
        RunFinished(thread_id=thread_id, run_id=run_id),
    ]


_HANDLERS = {
    "system": _system,
    "stream_event": _stream_event,
    "assistant": _assistant,
    "control_request": _control_request,
    "tool_progress": _tool_progress,
    "tool_use_summary": _tool_use_summary,
    "auth_status": _auth_status,
    "result": _result,
}
