"""
Process supervision for the perseus CLI.

Spawns, tracks, and terminates child processes (compiler invocations, the
engine binary, helper tools) by logical role. Every child runs in its own
process group so that killing the group also kills anything it forked.
"""

from __future__ import annotations

import asyncio
import logging
import os
import shlex
import tempfile
import threading
import time
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import IO, Any, Mapping, Optional

from perseus_cli.core.errors import NotFound, SpawnError
from perseus_cli.process.backends import ProcessBackend, default_backend

logger = logging.getLogger(__name__)

# Seconds between the graceful signal and the forceful kill. Fixed so that
# shutdown latency is bounded.
GRACE_PERIOD = 5.0


# =============================================================================
# Data Classes
# =============================================================================


@dataclass(frozen=True)
class CommandSpec:
    """Program, arguments, working directory, and environment overrides."""

    program: str
    args: tuple[str, ...] = ()
    cwd: Optional[Path] = None
    env: Mapping[str, str] = field(default_factory=dict)

    def argv(self) -> list[str]:
        return [self.program, *self.args]

    def merged_env(self) -> dict[str, str]:
        env = os.environ.copy()
        env.update(self.env)
        return env

    def with_env(self, **overrides: str) -> "CommandSpec":
        return replace(self, env={**self.env, **overrides})

    def with_args(self, *extra: str) -> "CommandSpec":
        return replace(self, args=(*self.args, *extra))

    def display(self) -> str:
        return shlex.join(self.argv())


@dataclass(frozen=True)
class ExitOutcome:
    """How a managed process ended."""

    role: str
    returncode: Optional[int]
    stdout: str = ""
    stderr: str = ""
    terminated: bool = False  # True when the supervisor stopped it
    duration: float = 0.0

    @property
    def succeeded(self) -> bool:
        return self.returncode == 0 and not self.terminated

    @property
    def diagnostics(self) -> str:
        parts = [p.rstrip() for p in (self.stdout, self.stderr) if p and p.strip()]
        return "\n".join(parts)


@dataclass
class ManagedProcess:
    """Handle binding a process group to a logical role.

    Owned by ``ProcessSupervisor``; other components refer to it by role.
    """

    role: str
    command: CommandSpec
    pid: int
    pgid: int
    started_at: float
    terminated: bool = False
    _process: Any = field(default=None, repr=False)
    _exit: Optional[asyncio.Future] = field(default=None, repr=False)

    @property
    def alive(self) -> bool:
        return self._process is not None and self._process.returncode is None

    async def wait(self) -> ExitOutcome:
        """Wait for exit. Safe to call from several tasks."""
        assert self._exit is not None
        return await asyncio.shield(self._exit)


# =============================================================================
# Supervisor
# =============================================================================


class ProcessSupervisor:
    """Spawns and terminates child process groups by role.

    The lock guards only the role table; it is never held across the
    spawn or wait system calls.
    """

    def __init__(self, backend: Optional[ProcessBackend] = None):
        self._backend = backend or default_backend()
        self._lock = threading.RLock()
        self._handles: dict[str, ManagedProcess] = {}
        self._reserved: set[str] = set()
        self._closing = False
        self._shutdown: Optional[asyncio.Future] = None

    @property
    def backend(self) -> ProcessBackend:
        return self._backend

    @property
    def closing(self) -> bool:
        return self._closing

    def roles(self) -> list[str]:
        with self._lock:
            return sorted(self._handles)

    def get(self, role: str) -> Optional[ManagedProcess]:
        with self._lock:
            return self._handles.get(role)

    def is_alive(self, role: str) -> bool:
        handle = self.get(role)
        return handle is not None and handle.alive

    # -------------------------------------------------------------------------
    # Spawn
    # -------------------------------------------------------------------------

    async def spawn(self, role: str, command: CommandSpec, capture: bool = True) -> ManagedProcess:
        """Start ``command`` under ``role``.

        With ``capture`` the process output is collected for diagnostics;
        otherwise it is inherited and streams live to the console.
        """
        with self._lock:
            if self._closing:
                raise SpawnError(role, "supervisor is shutting down")
            if role in self._handles or role in self._reserved:
                raise SpawnError(role, "a process with this role is already running")
            self._reserved.add(role)

        stdout_file: Optional[IO[bytes]] = None
        stderr_file: Optional[IO[bytes]] = None
        try:
            if capture:
                # Files rather than pipes: a straggler holding the write end
                # cannot stall the reaper.
                stdout_file = tempfile.TemporaryFile()
                stderr_file = tempfile.TemporaryFile()
            try:
                process = await self._backend.spawn(
                    command.argv(),
                    command.cwd,
                    command.merged_env(),
                    stdout_file,
                    stderr_file,
                )
            except FileNotFoundError as e:
                raise SpawnError(role, f"executable not found: {command.program}") from e
            except PermissionError as e:
                raise SpawnError(role, f"permission denied: {command.program}") from e
            except OSError as e:
                raise SpawnError(role, f"could not start {command.program}: {e}") from e
        except BaseException:
            _close(stdout_file, stderr_file)
            with self._lock:
                self._reserved.discard(role)
            raise

        handle = ManagedProcess(
            role=role,
            command=command,
            pid=process.pid,
            pgid=process.pid,
            started_at=time.monotonic(),
            _process=process,
        )

        with self._lock:
            self._reserved.discard(role)
            closing = self._closing
            if not closing:
                self._handles[role] = handle

        if closing:
            # terminate_all ran while we were spawning
            self._backend.signal_forceful(process)
            await self._backend.wait(process)
            self._backend.reap_group(process)
            _close(stdout_file, stderr_file)
            raise SpawnError(role, "supervisor is shutting down")

        handle._exit = asyncio.ensure_future(self._reap(handle, stdout_file, stderr_file))
        logger.debug("spawned %s (pid %s): %s", role, process.pid, command.display())
        return handle

    async def _reap(
        self,
        handle: ManagedProcess,
        stdout_file: Optional[IO[bytes]],
        stderr_file: Optional[IO[bytes]],
    ) -> ExitOutcome:
        try:
            returncode = await self._backend.wait(handle._process)
        finally:
            self._backend.reap_group(handle._process)
            with self._lock:
                if self._handles.get(handle.role) is handle:
                    del self._handles[handle.role]

        try:
            stdout = _read_capture(stdout_file)
            stderr = _read_capture(stderr_file)
        finally:
            _close(stdout_file, stderr_file)

        outcome = ExitOutcome(
            role=handle.role,
            returncode=returncode,
            stdout=stdout,
            stderr=stderr,
            terminated=handle.terminated,
            duration=round(time.monotonic() - handle.started_at, 3),
        )
        logger.debug("%s exited with %s after %.2fs", handle.role, returncode, outcome.duration)
        return outcome

    # -------------------------------------------------------------------------
    # Wait / Terminate
    # -------------------------------------------------------------------------

    async def wait(self, role: str) -> ExitOutcome:
        """Wait for the process registered under ``role`` to exit."""
        handle = self.get(role)
        if handle is None:
            raise NotFound(role)
        return await handle.wait()

    async def terminate(self, role: str) -> ExitOutcome:
        """Gracefully stop ``role``, escalating to a kill after GRACE_PERIOD."""
        handle = self.get(role)
        if handle is None:
            raise NotFound(role)
        return await self._terminate_handle(handle)

    async def _terminate_handle(self, handle: ManagedProcess) -> ExitOutcome:
        assert handle._exit is not None
        if handle._exit.done():
            return handle._exit.result()

        handle.terminated = True
        self._backend.signal_graceful(handle._process)
        try:
            return await asyncio.wait_for(asyncio.shield(handle._exit), GRACE_PERIOD)
        except asyncio.TimeoutError:
            logger.warning("%s ignored graceful stop, killing process group %s", handle.role, handle.pgid)
            self._backend.signal_forceful(handle._process)
            return await asyncio.shield(handle._exit)

    async def terminate_all(self) -> None:
        """Stop every managed process. Idempotent; later spawns are refused."""
        with self._lock:
            self._closing = True
            if self._shutdown is None:
                handles = list(self._handles.values())
                self._shutdown = asyncio.ensure_future(self._terminate_handles(handles))
            shutdown = self._shutdown
        await asyncio.shield(shutdown)

    async def _terminate_handles(self, handles: list[ManagedProcess]) -> None:
        if handles:
            logger.debug("terminating %s", ", ".join(h.role for h in handles))
        await asyncio.gather(
            *(self._terminate_handle(h) for h in handles),
            return_exceptions=True,
        )

    def kill_all_now(self) -> None:
        """Synchronously kill every process group.

        Last resort for interpreter exit (``atexit``), where awaiting is not
        possible.
        """
        with self._lock:
            self._closing = True
            handles = list(self._handles.values())
        for handle in handles:
            handle.terminated = True
            self._backend.signal_forceful(handle._process)


# =============================================================================
# Helpers
# =============================================================================


def _read_capture(f: Optional[IO[bytes]]) -> str:
    if f is None:
        return ""
    f.seek(0)
    return f.read().decode("utf-8", errors="replace")


def _close(*files: Optional[IO[bytes]]) -> None:
    for f in files:
        if f is not None:
            f.close()
