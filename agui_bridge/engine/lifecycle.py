"""Supervised agent process state machine.

Defines valid transitions and enforces them. Invalid transitions
raise ValueError rather than silently proceeding.

State Diagram:

    SPAWNED ──> RUNNING ──┬──> EXITING ──┬──> EXITED(code)
                          │              │
                          │              └──> KILLED  (forced after grace period)
                          │
                          └──> EXITED(code)  (agent exited on its own)

    SPAWNED ──> EXITED(code)  (exited before it was observed running)

The session status shown to the UI is a pure projection of this
state (see project_status).
"""
from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Any

from .models import ProcessState, SessionStatus

VALID_TRANSITIONS: dict[ProcessState, set[ProcessState]] = {
    ProcessState.SPAWNED: {
        ProcessState.RUNNING,
        ProcessState.EXITING,
        ProcessState.EXITED,
    },
    ProcessState.RUNNING: {
        ProcessState.EXITING,
        ProcessState.EXITED,
    },
    ProcessState.EXITING: {
        ProcessState.EXITED,
        ProcessState.KILLED,
    },
    ProcessState.EXITED: set(),
    ProcessState.KILLED: set(),
}

TERMINAL_STATES = frozenset({ProcessState.EXITED, ProcessState.KILLED})


def validate_transition(current: ProcessState, target: ProcessState) -> None:
    """Validate a state transition. Raises ValueError if invalid."""
    allowed = VALID_TRANSITIONS.get(current, set())
    if target not in allowed:
        allowed_str = ", ".join(s.value for s in allowed) or "none (terminal)"
        raise ValueError(
            f"Invalid process transition: {current.value} -> {target.value}. "
            f"Allowed from {current.value}: {allowed_str}"
        )


@dataclass
class SupervisedProcess:
    """An agent child process owned by the supervisor."""

    session_id: str
    process: Any  # asyncio.subprocess.Process or a compatible object
    state: ProcessState = ProcessState.SPAWNED
    returncode: int | None = None
    exited: asyncio.Event = field(default_factory=asyncio.Event, repr=False)
    _tasks: list[asyncio.Task] = field(default_factory=list, repr=False)
    _stopped_by_us: bool = field(default=False, repr=False)

    @property
    def pid(self) -> int | None:
        return getattr(self.process, "pid", None)

    @property
    def is_alive(self) -> bool:
        return self.state not in TERMINAL_STATES

    @property
    def stop_requested(self) -> bool:
        return self._stopped_by_us or self.state in (
            ProcessState.EXITING, ProcessState.KILLED,
        )

    def transition(self, target: ProcessState) -> None:
        validate_transition(self.state, target)
        if target is ProcessState.EXITING:
            self._stopped_by_us = True
        self.state = target


def project_status(
    handle: SupervisedProcess,
) -> tuple[SessionStatus, str | None] | None:
    """Map a process state to the session status it implies.

    Returns None while the process is alive: in that window the
    session status is driven by the socket, not the process.
    """
    if handle.state is ProcessState.KILLED:
        return SessionStatus.TERMINATED, None
    if handle.state is not ProcessState.EXITED:
        return None
    if handle.returncode == 0 or handle.stop_requested:
        return SessionStatus.TERMINATED, None
    return (
        SessionStatus.ERROR,
        f"Process exited with code {handle.returncode}",
    )
