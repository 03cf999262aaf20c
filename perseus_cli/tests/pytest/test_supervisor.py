"""
Tests for process supervision: spawning by role, waiting, termination
escalation, and shutdown leaving no live process groups.
"""

from __future__ import annotations

import asyncio
import os
import sys
import time
from pathlib import Path

import pytest

from conftest import python_command
from perseus_cli.core.errors import NotFound, SpawnError
from perseus_cli.process import supervisor as supervisor_module
from perseus_cli.process.backends import PosixBackend
from perseus_cli.process.supervisor import CommandSpec, ProcessSupervisor

posix_only = pytest.mark.skipif(sys.platform == "win32", reason="POSIX process groups")

SLEEPER = "import time; time.sleep(60)"

# Parent that forks a grandchild, records its pid, then sleeps
FORKING_PARENT = """
import subprocess, sys, time
child = subprocess.Popen([sys.executable, "-c", "import time; time.sleep(60)"])
with open(sys.argv[1], "w") as f:
    f.write(str(child.pid))
time.sleep(60)
"""

IGNORES_SIGTERM = """
import signal, sys, time
signal.signal(signal.SIGTERM, signal.SIG_IGN)
print("ready", flush=True)
time.sleep(60)
"""


def _pid_running(pid: int) -> bool:
    """True if ``pid`` exists and is not a zombie."""
    stat = Path(f"/proc/{pid}/stat")
    if stat.exists():
        try:
            state = stat.read_text().rsplit(")", 1)[1].split()[0]
        except (OSError, IndexError):
            return False
        return state not in ("Z", "X")
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True


async def _wait_until(predicate, timeout: float = 5.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        await asyncio.sleep(0.05)
    return predicate()


class SlowSpawnBackend(PosixBackend):
    """Starts the child, then takes a while to hand it back."""

    def __init__(self, delay: float):
        self.delay = delay
        self.pids: list[int] = []

    async def spawn(self, argv, cwd, env, stdout, stderr):
        process = await super().spawn(argv, cwd, env, stdout, stderr)
        self.pids.append(process.pid)
        await asyncio.sleep(self.delay)
        return process


# =============================================================================
# Spawn / Wait
# =============================================================================


@pytest.mark.evergreen
class TestSpawnAndWait:
    """Processes are tracked by role and their output is captured."""

    @pytest.mark.asyncio
    async def test_wait_returns_exit_code_and_output(self) -> None:
        """A captured process reports its exit code, stdout, and stderr."""
        supervisor = ProcessSupervisor()
        code = "import sys; print('hello'); print('oops', file=sys.stderr); sys.exit(4)"
        await supervisor.spawn("job", python_command(code))

        outcome = await supervisor.wait("job")

        assert outcome.returncode == 4
        assert outcome.stdout.strip() == "hello"
        assert outcome.stderr.strip() == "oops"
        assert not outcome.succeeded
        assert "hello" in outcome.diagnostics and "oops" in outcome.diagnostics

    @pytest.mark.asyncio
    async def test_role_is_released_after_exit(self) -> None:
        """The role can be reused once the previous holder has exited."""
        supervisor = ProcessSupervisor()
        await supervisor.spawn("job", python_command("pass"))
        await supervisor.wait("job")

        assert supervisor.get("job") is None
        handle = await supervisor.spawn("job", python_command("pass"))
        outcome = await handle.wait()
        assert outcome.succeeded

    @pytest.mark.asyncio
    async def test_environment_overrides_are_applied(self) -> None:
        """CommandSpec env entries reach the child on top of os.environ."""
        supervisor = ProcessSupervisor()
        command = python_command("import os; print(os.environ['PERSEUS_TEST_VALUE'])", PERSEUS_TEST_VALUE="42")
        handle = await supervisor.spawn("env", command)
        outcome = await handle.wait()
        assert outcome.stdout.strip() == "42"

    @pytest.mark.asyncio
    async def test_several_waiters_see_the_same_outcome(self) -> None:
        """Concurrent waits on one handle all resolve."""
        supervisor = ProcessSupervisor()
        handle = await supervisor.spawn("job", python_command("import time; time.sleep(0.2)"))

        first, second = await asyncio.gather(handle.wait(), handle.wait())

        assert first == second
        assert first.returncode == 0


# =============================================================================
# Spawn Errors
# =============================================================================


@pytest.mark.evergreen
class TestSpawnErrors:
    """Invalid spawns and lookups raise typed errors."""

    @pytest.mark.asyncio
    async def test_duplicate_role_is_rejected(self) -> None:
        """A live role cannot be spawned twice."""
        supervisor = ProcessSupervisor()
        await supervisor.spawn("engine", python_command(SLEEPER))
        try:
            with pytest.raises(SpawnError) as excinfo:
                await supervisor.spawn("engine", python_command(SLEEPER))
            assert excinfo.value.role == "engine"
        finally:
            await supervisor.terminate_all()

    @pytest.mark.asyncio
    async def test_missing_executable(self, tmp_path: Path) -> None:
        """A missing program raises SpawnError and leaves the role free."""
        supervisor = ProcessSupervisor()
        command = CommandSpec(program=str(tmp_path / "does-not-exist"))

        with pytest.raises(SpawnError, match="not found"):
            await supervisor.spawn("tool", command)

        assert supervisor.roles() == []

    @pytest.mark.asyncio
    async def test_unknown_role_raises_not_found(self) -> None:
        """wait and terminate on an unknown role raise NotFound."""
        supervisor = ProcessSupervisor()
        with pytest.raises(NotFound):
            await supervisor.wait("ghost")
        with pytest.raises(NotFound):
            await supervisor.terminate("ghost")

    @pytest.mark.asyncio
    async def test_spawn_refused_after_shutdown(self) -> None:
        """Once terminate_all has run, new spawns are refused."""
        supervisor = ProcessSupervisor()
        await supervisor.terminate_all()

        assert supervisor.closing
        with pytest.raises(SpawnError, match="shutting down"):
            await supervisor.spawn("late", python_command("pass"))


# =============================================================================
# Termination
# =============================================================================


@pytest.mark.evergreen
@posix_only
class TestTermination:
    """Graceful stop escalates to a forceful kill of the whole group."""

    @pytest.mark.asyncio
    async def test_terminate_marks_outcome(self) -> None:
        """A terminated process reports terminated=True and is not a success."""
        supervisor = ProcessSupervisor()
        await supervisor.spawn("engine", python_command(SLEEPER))

        outcome = await supervisor.terminate("engine")

        assert outcome.terminated
        assert not outcome.succeeded
        assert not supervisor.is_alive("engine")

    @pytest.mark.asyncio
    async def test_terminate_escalates_after_grace_period(self, monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
        """A child ignoring SIGTERM is killed once the grace period passes."""
        monkeypatch.setattr(supervisor_module, "GRACE_PERIOD", 0.5)
        supervisor = ProcessSupervisor()
        handle = await supervisor.spawn("stubborn", python_command(IGNORES_SIGTERM), capture=False)
        # Give the child time to install its handler
        await asyncio.sleep(0.5)

        start = time.monotonic()
        outcome = await supervisor.terminate("stubborn")
        elapsed = time.monotonic() - start

        assert outcome.terminated
        assert outcome.returncode is not None and outcome.returncode < 0
        assert elapsed >= 0.4
        assert not handle.alive

    @pytest.mark.asyncio
    async def test_terminate_all_kills_grandchildren(self, tmp_path: Path) -> None:
        """No process from a terminated group is left running."""
        supervisor = ProcessSupervisor()
        pid_file = tmp_path / "grandchild.pid"
        command = python_command(FORKING_PARENT).with_args(str(pid_file))
        handle = await supervisor.spawn("parent", command)

        assert await _wait_until(lambda: pid_file.exists() and pid_file.read_text().strip() != "")
        grandchild = int(pid_file.read_text())
        assert _pid_running(grandchild)

        await supervisor.terminate_all()

        assert not handle.alive
        assert await _wait_until(lambda: not _pid_running(grandchild))
        assert supervisor.roles() == []

    @pytest.mark.asyncio
    async def test_terminate_all_is_idempotent(self) -> None:
        """Concurrent and repeated terminate_all calls all complete."""
        supervisor = ProcessSupervisor()
        for role in ("a", "b", "c"):
            await supervisor.spawn(role, python_command(SLEEPER))

        await asyncio.gather(supervisor.terminate_all(), supervisor.terminate_all())
        await supervisor.terminate_all()

        assert not any(supervisor.is_alive(r) for r in ("a", "b", "c"))

    @pytest.mark.asyncio
    async def test_cancelled_caller_still_shuts_down(self) -> None:
        """Cancelling the task that owns a child does not leak it past terminate_all."""
        supervisor = ProcessSupervisor()

        async def body() -> None:
            handle = await supervisor.spawn("engine", python_command(SLEEPER))
            await handle.wait()

        task = asyncio.ensure_future(body())
        assert await _wait_until(lambda: supervisor.is_alive("engine"))
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        await supervisor.terminate_all()
        assert not supervisor.is_alive("engine")

    @pytest.mark.asyncio
    async def test_kill_all_now(self) -> None:
        """The synchronous last-resort kill stops every group."""
        supervisor = ProcessSupervisor()
        handle = await supervisor.spawn("engine", python_command(SLEEPER))

        supervisor.kill_all_now()
        outcome = await asyncio.wait_for(handle.wait(), 5)

        assert outcome.terminated
        assert supervisor.closing

    @posix_only
    @pytest.mark.asyncio
    async def test_terminate_all_during_spawn(self) -> None:
        """Shutdown racing an in-flight spawn finishes and leaves no child behind."""
        backend = SlowSpawnBackend(delay=0.5)
        supervisor = ProcessSupervisor(backend)
        spawning = asyncio.ensure_future(supervisor.spawn("engine", python_command(SLEEPER)))
        assert await _wait_until(lambda: backend.pids)

        await asyncio.wait_for(supervisor.terminate_all(), 5)
        with pytest.raises(SpawnError, match="shutting down"):
            await asyncio.wait_for(spawning, 5)

        assert await _wait_until(lambda: not _pid_running(backend.pids[0]))
        assert supervisor.roles() == []
