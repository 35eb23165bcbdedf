"""Agent process supervision.

Spawns one agent CLI per session with the callback socket URL embedded
in its arguments, forwards the child's stdout/stderr into our log, and
projects process exit into session status.

Uses asyncio.create_subprocess_exec (array-based, no shell) for safe
argument passing.
"""
from __future__ import annotations

import asyncio
import inspect
import logging
import os
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field

from .errors import ProcessSpawnError
from .lifecycle import SupervisedProcess, project_status
from .models import ProcessState, Session
from .registry import SessionRegistry

logger = logging.getLogger(__name__)

# Called after exit has been projected into session status.
ExitCallback = Callable[[Session, SupervisedProcess], Awaitable[None] | None]


@dataclass
class LaunchOptions:
    """Per-spawn parameters."""
    ws_port: int
    ws_host: str = "127.0.0.1"
    initial_prompt: str | None = None
    cli_path: str = "claude"
    env: dict[str, str] = field(default_factory=dict)

    def sdk_url(self, session_id: str) -> str:
        return f"ws://{self.ws_host}:{self.ws_port}/ws/cli/{session_id}"


def build_launch_args(session_id: str, options: LaunchOptions) -> list[str]:
    """Argument vector for one agent process (binary first)."""
    return [
        options.cli_path,
        "--sdk-url", options.sdk_url(session_id),
        "--print",
        "--output-format", "stream-json",
        "--input-format", "stream-json",
        "--verbose",
        # -p is required in headless mode; an empty prompt waits for the socket.
        "-p", options.initial_prompt if options.initial_prompt is not None else "",
    ]


class ProcessSupervisor:
    """Owns the agent child processes. Nothing else signals them."""

    def __init__(
        self,
        registry: SessionRegistry,
        kill_grace_seconds: float = 5.0,
    ) -> None:
        self._registry = registry
        self._kill_grace_seconds = kill_grace_seconds

    async def spawn(self, session: Session, options: LaunchOptions) -> SupervisedProcess:
        args = build_launch_args(session.session_id, options)
        logger.info(
            "Spawning agent for session %s: %s (cwd=%s)",
            session.session_id[:8], " ".join(args), session.working_dir,
        )
        env = None
        if options.env:
            env = {**os.environ, **options.env}
        try:
            proc = await asyncio.create_subprocess_exec(
                *args,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=session.working_dir,
                env=env,
            )
        except FileNotFoundError as exc:
            raise ProcessSpawnError(
                session.session_id,
                f"'{options.cli_path}' not found on PATH. Install the agent CLI "
                f"or point cli_path at it ({exc})",
            ) from exc
        except PermissionError as exc:
            raise ProcessSpawnError(
                session.session_id,
                f"'{options.cli_path}' is not executable ({exc})",
            ) from exc

        handle = SupervisedProcess(session_id=session.session_id, process=proc)
        prefix = session.session_id[:8]
        if proc.stdout is not None:
            handle._tasks.append(asyncio.create_task(
                self._pump(proc.stdout, f"stdout:{prefix}", logging.INFO)
            ))
        if proc.stderr is not None:
            handle._tasks.append(asyncio.create_task(
                self._pump(proc.stderr, f"stderr:{prefix}", logging.WARNING)
            ))
        session.process = handle
        logger.info("Spawned agent pid=%s for session %s", handle.pid, prefix)
        return handle

    @staticmethod
    async def _pump(stream: asyncio.StreamReader, tag: str, level: int) -> None:
        """Forward child output to our log, line by line."""
        while True:
            line = await stream.readline()
            if not line:
                break
            text = line.decode("utf-8", errors="replace").rstrip()
            if text:
                logger.log(level, "[%s] %s", tag, text)

    def monitor(
        self,
        session: Session,
        handle: SupervisedProcess,
        on_exit: ExitCallback | None = None,
    ) -> asyncio.Task:
        """Watch for exit in the background and project it into status."""
        task = asyncio.create_task(self._watch(session, handle, on_exit))
        handle._tasks.append(task)
        return task

    async def _watch(
        self,
        session: Session,
        handle: SupervisedProcess,
        on_exit: ExitCallback | None,
    ) -> None:
        if handle.state is ProcessState.SPAWNED:
            handle.transition(ProcessState.RUNNING)
        returncode = await handle.process.wait()
        self._record_exit(handle, returncode)
        logger.info(
            "Agent for session %s exited: code=%s state=%s",
            session.session_id[:8], returncode, handle.state.value,
        )

        projected = project_status(handle)
        if projected is not None and session.session_id in self._registry:
            status, detail = projected
            self._registry.clear_channel(session.session_id)
            if session.status is not status or session.error_detail != detail:
                self._registry.set_status(session.session_id, status, detail)

        if on_exit is not None:
            result = on_exit(session, handle)
            if inspect.isawaitable(result):
                await result

    @staticmethod
    def _record_exit(handle: SupervisedProcess, returncode: int | None) -> None:
        if handle.returncode is None:
            handle.returncode = returncode
        if handle.is_alive:
            handle.transition(ProcessState.EXITED)
        handle.exited.set()

    async def kill(self, session: Session) -> None:
        """SIGTERM, wait out the grace period, then SIGKILL.

        Returns once the exit has been observed.
        """
        handle = session.process
        if handle is None or not handle.is_alive:
            return
        if handle.state is ProcessState.EXITING:
            # Another caller is already stopping it.
            await handle.exited.wait()
            return
        prefix = session.session_id[:8]
        handle.transition(ProcessState.EXITING)
        try:
            handle.process.terminate()
        except ProcessLookupError:
            pass
        logger.info(
            "Sent SIGTERM to agent pid=%s (session %s), grace %.1fs",
            handle.pid, prefix, self._kill_grace_seconds,
        )

        try:
            returncode = await asyncio.wait_for(
                handle.process.wait(), timeout=self._kill_grace_seconds,
            )
        except asyncio.TimeoutError:
            logger.warning(
                "Agent pid=%s (session %s) ignored SIGTERM for %.1fs, sending SIGKILL",
                handle.pid, prefix, self._kill_grace_seconds,
            )
            try:
                handle.process.kill()
            except ProcessLookupError:
                pass
            if handle.is_alive:
                handle.transition(ProcessState.KILLED)
            returncode = await handle.process.wait()

        self._record_exit(handle, returncode)
        logger.info("Agent for session %s stopped (code=%s)", prefix, returncode)

    async def shutdown(self, handle: SupervisedProcess) -> None:
        """Cancel the output pumps and the exit watcher."""
        for task in handle._tasks:
            if not task.done():
                task.cancel()
        for task in handle._tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
            except Exception:
                logger.debug("Supervisor task failed during shutdown", exc_info=True)
        handle._tasks.clear()


async def check_available(cli_path: str = "claude", timeout: float = 10.0) -> bool:
    """Best-effort probe: does the binary run and advertise --sdk-url?"""
    try:
        proc = await asyncio.create_subprocess_exec(
            cli_path, "--help",
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.STDOUT,
        )
    except OSError as exc:
        logger.info("check_available: cannot run %s: %s", cli_path, exc)
        return False
    try:
        stdout, _ = await asyncio.wait_for(proc.communicate(), timeout=timeout)
    except asyncio.TimeoutError:
        logger.warning("check_available: %s --help timed out after %.0fs", cli_path, timeout)
        try:
            proc.kill()
        except ProcessLookupError:
            pass
        await proc.wait()
        return False
    output = (stdout or b"").decode("utf-8", errors="replace")
    supported = "sdk-url" in output
    logger.info("check_available: %s supports --sdk-url=%s", cli_path, supported)
    return supported
