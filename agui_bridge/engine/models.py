"""Core data models for the bridge engine.

Session state, process states and the control-request table entry.
Single source of truth to avoid circular imports.
"""
from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from ..server.ingress import OutboundChannel
    from .lifecycle import SupervisedProcess


class SessionStatus(str, Enum):
    """Session states as seen by the UI and the gateway."""
    STARTING = "starting"
    CONNECTED = "connected"
    ACTIVE = "active"
    IDLE = "idle"
    DISCONNECTED = "disconnected"
    TERMINATED = "terminated"
    ERROR = "error"


# Statuses in which a session must not hold an outbound channel.
CHANNELLESS_STATUSES = frozenset({
    SessionStatus.STARTING,
    SessionStatus.DISCONNECTED,
    SessionStatus.TERMINATED,
})


class ProcessState(str, Enum):
    """Supervised agent process states. See lifecycle.py for transitions."""
    SPAWNED = "spawned"
    RUNNING = "running"
    EXITING = "exiting"
    EXITED = "exited"
    KILLED = "killed"


class PermissionMode(str, Enum):
    """Permission modes understood by the agent CLI."""
    DEFAULT = "default"
    ACCEPT_EDITS = "acceptEdits"
    BYPASS = "bypassPermissions"
    PLAN = "plan"
    DELEGATE = "delegate"
    DONT_ASK = "dontAsk"


@dataclass
class SessionCapabilities:
    """Metadata advertised by the agent in its system/init message."""
    tools: list[str] = field(default_factory=list)
    model: str = "unknown"
    permission_mode: str = PermissionMode.DEFAULT.value
    cwd: str = ""
    agent_version: str = ""
    slash_commands: list[str] = field(default_factory=list)
    agents: list[str] = field(default_factory=list)
    skills: list[str] = field(default_factory=list)
    mcp_servers: list[dict[str, Any]] = field(default_factory=list)
    plugins: list[dict[str, Any]] = field(default_factory=list)
    output_style: str = ""
    api_key_source: str = ""

    @classmethod
    def from_init(cls, data: dict[str, Any], working_dir: str) -> SessionCapabilities:
        return cls(
            tools=list(data.get("tools") or []),
            model=data.get("model") or "unknown",
            permission_mode=data.get("permissionMode") or PermissionMode.DEFAULT.value,
            cwd=data.get("cwd") or working_dir,
            agent_version=data.get("claude_code_version") or "",
            slash_commands=list(data.get("slash_commands") or []),
            agents=list(data.get("agents") or []),
            skills=list(data.get("skills") or []),
            mcp_servers=list(data.get("mcp_servers") or []),
            plugins=list(data.get("plugins") or []),
            output_style=data.get("output_style") or "",
            api_key_source=data.get("apiKeySource") or "",
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "model": self.model,
            "permissionMode": self.permission_mode,
            "tools": self.tools,
            "cwd": self.cwd,
            "claudeCodeVersion": self.agent_version,
            "slashCommands": self.slash_commands,
            "agents": self.agents,
            "skills": self.skills,
            "mcpServers": self.mcp_servers,
            "plugins": self.plugins,
            "outputStyle": self.output_style,
            "apiKeySource": self.api_key_source,
        }


@dataclass
class SessionInitData:
    """Reply payload of the initialize control request."""
    commands: list[dict[str, Any]] = field(default_factory=list)
    models: list[dict[str, Any]] = field(default_factory=list)
    account: dict[str, Any] = field(default_factory=dict)
    output_style: str = ""
    available_output_styles: list[str] = field(default_factory=list)
    fast_mode: bool | None = None

    @classmethod
    def from_response(cls, data: dict[str, Any]) -> SessionInitData:
        return cls(
            commands=list(data.get("commands") or []),
            models=list(data.get("models") or []),
            account=dict(data.get("account") or {}),
            output_style=data.get("output_style") or "",
            available_output_styles=list(data.get("available_output_styles") or []),
            fast_mode=data.get("fast_mode"),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "commands": self.commands,
            "models": self.models,
            "account": self.account,
            "outputStyle": self.output_style,
            "availableOutputStyles": self.available_output_styles,
            "fastMode": self.fast_mode,
        }


@dataclass
class PendingControlRequest:
    """A server-issued control request awaiting its control_response."""
    request_id: str
    subtype: str
    future: asyncio.Future
    timer: asyncio.TimerHandle | None = None

    def settle(
        self,
        result: dict[str, Any] | None = None,
        error: BaseException | None = None,
    ) -> bool:
        """Resolve or reject once. Returns False if already settled."""
        if self.timer is not None:
            self.timer.cancel()
            self.timer = None
        if self.future.done():
            return False
        if error is not None:
            self.future.set_exception(error)
        else:
            self.future.set_result(result if result is not None else {})
        return True


def _now() -> float:
    return time.time()


@dataclass
class Session:
    """All bridge-side state for one agent process."""

    session_id: str
    working_dir: str
    status: SessionStatus = SessionStatus.STARTING
    error_detail: str | None = None
    outbound_channel: OutboundChannel | None = field(default=None, repr=False)
    # Bumped on every socket association; see OutboundChannel.generation.
    channel_generation: int = 0
    agent_conversation_id: str | None = None
    capabilities: SessionCapabilities | None = None
    init_data: SessionInitData | None = None
    initialized: bool = False
    pending_control_requests: dict[str, PendingControlRequest] = field(
        default_factory=dict, repr=False,
    )
    message_history: list[dict[str, Any]] = field(default_factory=list, repr=False)
    process: SupervisedProcess | None = field(default=None, repr=False)
    is_compacting: bool = False
    total_cost_usd: float = 0.0
    num_turns: int = 0
    created_at: float = field(default_factory=_now)

    @property
    def has_channel(self) -> bool:
        return self.outbound_channel is not None

    @property
    def status_label(self) -> str:
        return self.status.value

    def record(self, entry: dict[str, Any]) -> None:
        """Append to the replay history."""
        self.message_history.append(entry)
