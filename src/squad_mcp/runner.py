"""Child process supervision for squad members.

Every command is launched as ``sh -c <command>`` in its own session, with
stdin closed straight away, stdout/stderr collected as they arrive and a
per-invocation timeout. A timed out child walks an explicit state machine:

    RUNNING -> TERMINATION_REQUESTED (SIGTERM) -> FORCE_KILL_REQUESTED (SIGKILL) -> EXITED

The runner never raises for process failures; everything is reported through
:class:`ProcessResult`.
"""

from __future__ import annotations

import asyncio
import atexit
import codecs
import logging
import os
import signal
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Protocol

from squad_mcp.exceptions import ProcessSpawnError

logger = logging.getLogger(__name__)

# Seconds between SIGTERM and SIGKILL for a timed out child.
TERMINATION_GRACE_SECONDS = 1.0

_READ_CHUNK = 65536

# pid -> process for every child that has not been reaped yet.
_ACTIVE_CHILDREN: dict[int, Any] = {}


class ChildProcess(Protocol):
    """Capability interface the runner needs from a spawned child.

    ``asyncio.subprocess.Process`` satisfies it; tests use fakes.
    """

    pid: int | None
    returncode: int | None
    stdin: Any
    stdout: asyncio.StreamReader | None
    stderr: asyncio.StreamReader | None

    async def wait(self) -> int: ...

    def send_signal(self, sig: int) -> None: ...


SpawnFn = Callable[[str, str], Awaitable[ChildProcess]]


class ProcessState(str, Enum):
    """Lifecycle of one supervised child."""

    RUNNING = "running"
    TERMINATION_REQUESTED = "termination_requested"
    FORCE_KILL_REQUESTED = "force_kill_requested"
    EXITED = "exited"


@dataclass
class ProcessResult:
    """Outcome of one command execution."""

    exit_code: int | None
    stdout: str
    stderr: str
    timed_out: bool
    duration_ms: float = 0.0
    spawn_error: str | None = None


@dataclass
class ProcessExecution:
    """Mutable state owned by a single :meth:`ProcessRunner.run` call."""

    command: str
    cwd: str
    child: ChildProcess | None = None
    state: ProcessState = ProcessState.RUNNING
    stdout_chunks: list[str] = field(default_factory=list)
    stderr_chunks: list[str] = field(default_factory=list)
    started_at: float = field(default_factory=time.monotonic)

    @property
    def pid(self) -> int | None:
        return self.child.pid if self.child is not None else None

    def result(self, exit_code: int | None, *, timed_out: bool, spawn_error: str | None = None) -> ProcessResult:
        return ProcessResult(
            exit_code=exit_code,
            stdout="".join(self.stdout_chunks),
            stderr="".join(self.stderr_chunks),
            timed_out=timed_out,
            duration_ms=(time.monotonic() - self.started_at) * 1000,
            spawn_error=spawn_error,
        )


async def _spawn_shell(command: str, cwd: str) -> asyncio.subprocess.Process:
    return await asyncio.create_subprocess_exec(
        "sh",
        "-c",
        command,
        cwd=cwd,
        stdin=asyncio.subprocess.PIPE,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
        start_new_session=True,
    )


def kill_all_children() -> int:
    """Force-kill every tracked child. Returns how many were signalled."""
    killed = 0
    for pid, child in list(_ACTIVE_CHILDREN.items()):
        _ACTIVE_CHILDREN.pop(pid, None)
        if child.returncode is not None:
            continue
        try:
            os.killpg(pid, signal.SIGKILL)
            killed += 1
        except (ProcessLookupError, PermissionError):
            pass
    if killed:
        logger.warning(f"Force-killed {killed} orphaned child process(es) on shutdown")
    return killed


atexit.register(kill_all_children)


class ProcessRunner:
    """Run shell commands with timeout enforcement and output capture.

    Usage:
        runner = ProcessRunner()
        result = await runner.run("echo hello", cwd="/tmp", timeout_ms=5000)
        assert result.exit_code == 0 and result.stdout == "hello\\n"

    Args:
        debug: Log spawn details at INFO instead of DEBUG.
        spawn: Coroutine ``(command, cwd) -> child``; defaults to ``sh -c``.
        process_group: Signal the child's whole process group rather than
            only the shell. Requires the child to lead its own session.
        grace_seconds: Wait between SIGTERM and SIGKILL.
    """

    def __init__(
        self,
        *,
        debug: bool = False,
        spawn: SpawnFn | None = None,
        process_group: bool | None = None,
        grace_seconds: float = TERMINATION_GRACE_SECONDS,
    ) -> None:
        self._debug = debug
        self._spawn = spawn or _spawn_shell
        if process_group is None:
            process_group = spawn is None and hasattr(os, "killpg")
        self._process_group = process_group
        self._grace_seconds = grace_seconds

    async def run(self, command: str, cwd: str, timeout_ms: int) -> ProcessResult:
        """Run one command line through ``sh -c``.

        Resolves once the child has exited, or once a timed out child has been
        terminated. Never raises for spawn or process failures. If the caller
        is cancelled the child's process group gets SIGKILL before the
        cancellation propagates.
        """
        execution = ProcessExecution(command=command, cwd=cwd)
        log = logger.info if self._debug else logger.debug
        log(f'spawn command="{command}" cwd="{cwd}"')

        try:
            execution.child = await self._spawn(command, cwd)
        except (OSError, ValueError) as e:
            error = ProcessSpawnError(f"Failed to spawn command: {e}", command=command, cwd=cwd)
            logger.warning(str(error))
            execution.state = ProcessState.EXITED
            return execution.result(None, timed_out=False, spawn_error=error.message)

        child = execution.child
        if child.pid is not None:
            _ACTIVE_CHILDREN[child.pid] = child

        try:
            self._close_stdin(child)
            readers = [
                asyncio.create_task(self._pump(child.stdout, execution.stdout_chunks)),
                asyncio.create_task(self._pump(child.stderr, execution.stderr_chunks)),
            ]

            try:
                exit_code: int | None = await asyncio.wait_for(child.wait(), timeout_ms / 1000)
            except asyncio.CancelledError:
                # No time for the grace window; the caller is going away.
                execution.state = ProcessState.FORCE_KILL_REQUESTED
                self._signal(child, signal.SIGKILL)
                for task in readers:
                    task.cancel()
                log(f"cancelled pid={execution.pid}, sent SIGKILL")
                raise
            except asyncio.TimeoutError:
                await self._escalate(execution)
                await self._drain(readers, timeout=self._grace_seconds)
                log(f"timeout pid={execution.pid} after {timeout_ms}ms state={execution.state.value}")
                return execution.result(None, timed_out=True)

            execution.state = ProcessState.EXITED
            await self._drain(readers, timeout=None)
            log(f"exit pid={execution.pid} code={exit_code}")
            return execution.result(exit_code, timed_out=False)
        finally:
            # Unreaped children stay tracked for kill_all_children().
            if child.pid is not None and child.returncode is not None:
                _ACTIVE_CHILDREN.pop(child.pid, None)

    # ------------------------------------------------------------------
    # Timeout state machine
    # ------------------------------------------------------------------

    async def _escalate(self, execution: ProcessExecution) -> None:
        child = execution.child
        assert child is not None
        if child.pid is None:
            # Never started at the OS level; nothing to signal.
            execution.state = ProcessState.EXITED
            return

        execution.state = ProcessState.TERMINATION_REQUESTED
        self._signal(child, signal.SIGTERM)
        if await self._wait_exit(child, self._grace_seconds):
            execution.state = ProcessState.EXITED
            return

        execution.state = ProcessState.FORCE_KILL_REQUESTED
        self._signal(child, signal.SIGKILL)
        await self._wait_exit(child, self._grace_seconds)
        execution.state = ProcessState.EXITED

    @staticmethod
    async def _wait_exit(child: ChildProcess, timeout: float) -> bool:
        try:
            await asyncio.wait_for(child.wait(), timeout)
            return True
        except asyncio.TimeoutError:
            return False

    def _signal(self, child: ChildProcess, sig: int) -> bool:
        if child.pid is None or child.returncode is not None:
            return False
        try:
            if self._process_group:
                os.killpg(child.pid, sig)
            else:
                child.send_signal(sig)
        except (ProcessLookupError, PermissionError):
            return False
        return True

    # ------------------------------------------------------------------
    # IO
    # ------------------------------------------------------------------

    @staticmethod
    def _close_stdin(child: ChildProcess) -> None:
        stdin = child.stdin
        if stdin is None:
            return
        try:
            stdin.close()
        except (BrokenPipeError, ConnectionResetError):
            pass

    @staticmethod
    async def _pump(stream: asyncio.StreamReader | None, sink: list[str]) -> None:
        if stream is None:
            return
        # A multibyte character may straddle two reads.
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        while True:
            chunk = await stream.read(_READ_CHUNK)
            if not chunk:
                tail = decoder.decode(b"", final=True)
                if tail:
                    sink.append(tail)
                return
            text = decoder.decode(chunk)
            if text:
                sink.append(text)

    @staticmethod
    async def _drain(readers: list[asyncio.Task[None]], timeout: float | None) -> None:
        """Wait for output readers; cancel them if the pipes stay open."""
        done, pending = await asyncio.wait(readers, timeout=timeout)
        for task in pending:
            task.cancel()
        for task in pending:
            try:
                await task
            except asyncio.CancelledError:
                pass
        for task in done:
            exc = task.exception()
            if exc is not None:
                logger.debug(f"output reader failed: {exc}")
