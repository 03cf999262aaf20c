"""
Platform backends for process-group management.

The supervisor only talks to the ``ProcessBackend`` interface
(spawn / signal_graceful / signal_forceful / wait); everything OS specific
about process groups lives here.
"""

from __future__ import annotations

import asyncio
import os
import signal
import subprocess
import sys
from pathlib import Path
from typing import IO, Any, Optional, Protocol


class ProcessBackend(Protocol):
    """Capability interface the supervisor is written against."""

    async def spawn(
        self,
        argv: list[str],
        cwd: Optional[Path],
        env: dict[str, str],
        stdout: Optional[IO[Any]],
        stderr: Optional[IO[Any]],
    ) -> asyncio.subprocess.Process:
        ...

    def signal_graceful(self, process: asyncio.subprocess.Process) -> None:
        ...

    def signal_forceful(self, process: asyncio.subprocess.Process) -> None:
        ...

    async def wait(self, process: asyncio.subprocess.Process) -> int:
        ...

    def reap_group(self, process: asyncio.subprocess.Process) -> None:
        ...


# =============================================================================
# POSIX
# =============================================================================


class PosixBackend:
    """Runs each child as the leader of a new session, so pgid == pid."""

    async def spawn(self, argv, cwd, env, stdout, stderr):
        return await asyncio.create_subprocess_exec(
            *argv,
            cwd=str(cwd) if cwd else None,
            env=env,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=stdout,
            stderr=stderr,
            start_new_session=True,
        )

    def signal_graceful(self, process):
        self._killpg(process.pid, signal.SIGTERM)

    def signal_forceful(self, process):
        self._killpg(process.pid, signal.SIGKILL)

    async def wait(self, process):
        return await process.wait()

    def reap_group(self, process):
        # Helpers forked by the leader share its group and die with it.
        self._killpg(process.pid, signal.SIGKILL)

    @staticmethod
    def group_alive(pgid: int) -> bool:
        try:
            os.killpg(pgid, 0)
        except ProcessLookupError:
            return False
        except PermissionError:
            return True
        return True

    @staticmethod
    def _killpg(pgid: int, sig: int) -> None:
        try:
            os.killpg(pgid, sig)
        except (ProcessLookupError, PermissionError):
            pass


# =============================================================================
# Windows
# =============================================================================


class WindowsBackend:
    """Uses CREATE_NEW_PROCESS_GROUP plus ``taskkill /T`` for tree kills."""

    async def spawn(self, argv, cwd, env, stdout, stderr):
        return await asyncio.create_subprocess_exec(
            *argv,
            cwd=str(cwd) if cwd else None,
            env=env,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=stdout,
            stderr=stderr,
            creationflags=subprocess.CREATE_NEW_PROCESS_GROUP,  # type: ignore[attr-defined]
        )

    def signal_graceful(self, process):
        if process.returncode is not None:
            return
        try:
            process.send_signal(signal.CTRL_BREAK_EVENT)  # type: ignore[attr-defined]
        except (ProcessLookupError, OSError):
            pass

    def signal_forceful(self, process):
        if process.returncode is not None:
            return
        result = subprocess.run(
            ["taskkill", "/F", "/T", "/PID", str(process.pid)],
            capture_output=True,
            check=False,
        )
        if result.returncode != 0:
            try:
                process.kill()
            except ProcessLookupError:
                pass

    async def wait(self, process):
        return await process.wait()

    def reap_group(self, process):
        pass


def default_backend() -> ProcessBackend:
    """Pick the backend for the running platform."""
    if sys.platform == "win32":
        return WindowsBackend()
    return PosixBackend()
