from __future__ import annotations

import asyncio
import logging
import os
import signal
import time

import pytest

from squad_mcp import runner as runner_module
from squad_mcp.runner import ProcessRunner, ProcessState, kill_all_children


def run(coro):
    return asyncio.run(coro)


class FakeStream:
    """Minimal StreamReader stand-in returning queued chunks then EOF."""

    def __init__(self, chunks: list[bytes] | None = None) -> None:
        self._chunks = list(chunks or [])

    async def read(self, n: int = -1) -> bytes:
        if self._chunks:
            return self._chunks.pop(0)
        return b""


class FakeStdin:
    def __init__(self) -> None:
        self.closed = False

    def close(self) -> None:
        self.closed = True


class FakeChild:
    """Child that only exits when told to, or when a signal it obeys arrives."""

    def __init__(self, pid: int | None = 4242, *, obey: tuple[int, ...] = (signal.SIGTERM, signal.SIGKILL)):
        self.pid = pid
        self.returncode: int | None = None
        self.stdin = FakeStdin()
        self.stdout = FakeStream([b"partial output\n"])
        self.stderr = FakeStream()
        self.signals: list[int] = []
        self._obey = obey
        self._exited = asyncio.Event()

    def exit(self, code: int) -> None:
        self.returncode = code
        self._exited.set()

    async def wait(self) -> int:
        await self._exited.wait()
        return self.returncode

    def send_signal(self, sig: int) -> None:
        self.signals.append(sig)
        if sig in self._obey:
            self.exit(-sig)


def spawn_returning(child):
    async def spawn(command: str, cwd: str):
        spawn.calls.append((command, cwd))
        return child

    spawn.calls = []
    return spawn


# ---------------------------------------------------------------------------
# Real processes
# ---------------------------------------------------------------------------


class TestProcessRunnerShell:
    def test_captures_stdout_and_exit_code(self, tmp_path):
        result = run(ProcessRunner().run("echo hello", str(tmp_path), 5000))
        assert result.exit_code == 0
        assert result.stdout == "hello\n"
        assert result.stderr == ""
        assert result.timed_out is False
        assert result.spawn_error is None

    def test_nonzero_exit_and_stderr(self, tmp_path):
        result = run(ProcessRunner().run("echo oops >&2; exit 3", str(tmp_path), 5000))
        assert result.exit_code == 3
        assert result.stderr == "oops\n"
        assert result.timed_out is False

    def test_runs_in_cwd(self, tmp_path):
        result = run(ProcessRunner().run("pwd", str(tmp_path), 5000))
        assert os.path.realpath(result.stdout.strip()) == os.path.realpath(str(tmp_path))

    def test_stdin_is_closed(self, tmp_path):
        start = time.monotonic()
        result = run(ProcessRunner().run("cat", str(tmp_path), 5000))
        assert result.exit_code == 0
        assert result.stdout == ""
        assert time.monotonic() - start < 3

    def test_shell_features(self, tmp_path):
        result = run(ProcessRunner().run("printf 'a\\n'; printf b | tr b c", str(tmp_path), 5000))
        assert result.stdout == "a\nc"

    def test_timeout_keeps_partial_output(self, tmp_path):
        start = time.monotonic()
        result = run(ProcessRunner().run("echo before; sleep 5; echo after", str(tmp_path), 200))
        elapsed = time.monotonic() - start
        assert result.timed_out is True
        assert result.exit_code is None
        assert result.stdout == "before\n"
        assert elapsed < 3

    def test_timeout_escalates_past_ignored_sigterm(self, tmp_path):
        start = time.monotonic()
        runner = ProcessRunner(grace_seconds=0.2)
        result = run(runner.run("trap '' TERM; sleep 5", str(tmp_path), 200))
        assert result.timed_out is True
        assert result.exit_code is None
        assert time.monotonic() - start < 3

    def test_background_grandchild_does_not_hang(self, tmp_path):
        start = time.monotonic()
        result = run(ProcessRunner().run("sleep 5 & echo started; wait", str(tmp_path), 300))
        assert result.timed_out is True
        assert "started" in result.stdout
        assert time.monotonic() - start < 4

    def test_missing_cwd_reports_spawn_error(self, tmp_path):
        result = run(ProcessRunner().run("echo hi", str(tmp_path / "missing"), 5000))
        assert result.exit_code is None
        assert result.timed_out is False
        assert result.spawn_error
        assert "Failed to spawn command" in result.spawn_error

    def test_non_ascii_output(self, tmp_path):
        result = run(ProcessRunner().run("printf 'caf\\303\\251 \\342\\234\\223\\n'", str(tmp_path), 5000))
        assert result.stdout == "café ✓\n"

    def test_concurrent_runs_are_independent(self, tmp_path):
        async def main():
            runner = ProcessRunner()
            return await asyncio.gather(
                runner.run("echo first", str(tmp_path), 5000),
                runner.run("echo second >&2", str(tmp_path), 5000),
            )

        first, second = run(main())
        assert first.stdout == "first\n" and first.stderr == ""
        assert second.stdout == "" and second.stderr == "second\n"

    def test_registry_is_empty_after_run(self, tmp_path):
        run(ProcessRunner().run("true", str(tmp_path), 5000))
        assert runner_module._ACTIVE_CHILDREN == {}

    def test_debug_logs_spawn_at_info(self, tmp_path, caplog):
        caplog.set_level(logging.INFO, logger="squad_mcp.runner")
        run(ProcessRunner(debug=True).run("echo hi", str(tmp_path), 5000))
        assert f'spawn command="echo hi" cwd="{tmp_path}"' in caplog.text


class TestKillAllChildren:
    def test_kills_running_children(self, tmp_path):
        async def main():
            task = asyncio.create_task(ProcessRunner().run("sleep 30", str(tmp_path), 20000))
            for _ in range(50):
                if runner_module._ACTIVE_CHILDREN:
                    break
                await asyncio.sleep(0.05)
            killed = kill_all_children()
            result = await asyncio.wait_for(task, 5)
            return killed, result

        killed, result = run(main())
        assert killed == 1
        assert result.timed_out is False
        assert result.exit_code == -signal.SIGKILL

    def test_cancelled_run_kills_child(self, tmp_path):
        pid_file = tmp_path / "pid"

        async def main():
            command = f"echo $$ > '{pid_file}'; exec sleep 30"
            task = asyncio.create_task(ProcessRunner().run(command, str(tmp_path), 20000))
            for _ in range(100):
                if pid_file.exists() and pid_file.read_text().strip():
                    break
                await asyncio.sleep(0.05)
            task.cancel()
            with pytest.raises(asyncio.CancelledError):
                await task

            pid = int(pid_file.read_text())
            for _ in range(100):
                try:
                    os.kill(pid, 0)
                except ProcessLookupError:
                    return True
                await asyncio.sleep(0.05)
            return False

        try:
            assert run(main()) is True
        finally:
            kill_all_children()

    def test_nothing_to_kill(self):
        assert kill_all_children() == 0


# ---------------------------------------------------------------------------
# Fake children
# ---------------------------------------------------------------------------


class TestProcessRunnerStateMachine:
    def test_clean_exit(self):
        async def main():
            child = FakeChild()
            runner = ProcessRunner(spawn=spawn_returning(child))
            task = asyncio.create_task(runner.run("agent", "/tmp", 5000))
            await asyncio.sleep(0.05)
            child.exit(0)
            return child, await task

        child, result = run(main())
        assert result.exit_code == 0
        assert result.stdout == "partial output\n"
        assert child.stdin.closed is True
        assert child.signals == []

    def test_sigterm_is_enough(self):
        child_holder = {}

        async def main():
            child = FakeChild()
            child_holder["child"] = child
            runner = ProcessRunner(spawn=spawn_returning(child), grace_seconds=0.2)
            return await runner.run("agent", "/tmp", 50)

        result = run(main())
        assert result.timed_out is True
        assert result.exit_code is None
        assert result.stdout == "partial output\n"
        assert child_holder["child"].signals == [signal.SIGTERM]

    def test_escalates_to_sigkill(self):
        child_holder = {}

        async def main():
            child = FakeChild(obey=(signal.SIGKILL,))
            child_holder["child"] = child
            runner = ProcessRunner(spawn=spawn_returning(child), grace_seconds=0.1)
            return await runner.run("agent", "/tmp", 50)

        result = run(main())
        assert result.timed_out is True
        assert result.exit_code is None
        assert child_holder["child"].signals == [signal.SIGTERM, signal.SIGKILL]

    def test_no_pid_means_no_signals(self):
        child_holder = {}

        async def main():
            child = FakeChild(pid=None)
            child_holder["child"] = child
            runner = ProcessRunner(spawn=spawn_returning(child), grace_seconds=0.1)
            return await runner.run("agent", "/tmp", 50)

        result = run(main())
        assert result.timed_out is True
        assert result.exit_code is None
        assert child_holder["child"].signals == []

    def test_spawn_failure_is_reported(self):
        async def spawn(command, cwd):
            raise FileNotFoundError("sh not found")

        result = run(ProcessRunner(spawn=spawn).run("agent", "/tmp", 1000))
        assert result.exit_code is None
        assert result.timed_out is False
        assert result.stdout == ""
        assert "sh not found" in result.spawn_error

    def test_spawn_receives_command_and_cwd(self):
        async def main():
            child = FakeChild()
            spawn = spawn_returning(child)
            runner = ProcessRunner(spawn=spawn)
            task = asyncio.create_task(runner.run("agent --flag", "/work", 5000))
            await asyncio.sleep(0)
            child.exit(0)
            await task
            return spawn.calls

        assert run(main()) == [("agent --flag", "/work")]

    def test_multibyte_character_split_across_reads(self):
        async def main():
            child = FakeChild()
            child.stdout = FakeStream([b"caf\xc3", b"\xa9\n"])
            child.stderr = FakeStream([b"\xe2\x9c", b"\x93"])
            runner = ProcessRunner(spawn=spawn_returning(child))
            task = asyncio.create_task(runner.run("agent", "/tmp", 5000))
            await asyncio.sleep(0.05)
            child.exit(0)
            return await task

        result = run(main())
        assert result.stdout == "café\n"
        assert result.stderr == "✓"

    def test_truncated_character_at_eof_is_replaced(self):
        async def main():
            child = FakeChild()
            child.stdout = FakeStream([b"ok\xc3"])
            runner = ProcessRunner(spawn=spawn_returning(child))
            task = asyncio.create_task(runner.run("agent", "/tmp", 5000))
            await asyncio.sleep(0.05)
            child.exit(0)
            return await task

        assert run(main()).stdout == "ok�"


def test_process_states_are_strings():
    assert ProcessState.TERMINATION_REQUESTED.value == "termination_requested"
    assert [s.name for s in ProcessState] == [
        "RUNNING",
        "TERMINATION_REQUESTED",
        "FORCE_KILL_REQUESTED",
        "EXITED",
    ]
