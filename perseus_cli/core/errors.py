"""Error taxonomy for the perseus CLI.

Stage and route failures are normally captured in ``BuildRun`` / ``Package``
values; these exceptions cover the cases that escalate to the caller.
"""

from __future__ import annotations

from typing import Optional


class PerseusError(Exception):
    """Base class for all orchestration errors."""


class ConfigError(PerseusError):
    """Project manifest missing or configuration invalid."""


class SpawnError(PerseusError):
    """A child process could not be started (missing executable, permissions, shutdown)."""

    def __init__(self, role: str, message: str):
        super().__init__(f"{role}: {message}")
        self.role = role


class NotFound(PerseusError):
    """No managed process is registered under the requested role."""

    def __init__(self, role: str):
        super().__init__(f"No managed process for role {role!r}")
        self.role = role


class StageFailure(PerseusError):
    """A build stage exited non-zero."""

    def __init__(self, stage: str, exit_code: Optional[int], diagnostics: str = ""):
        super().__init__(f"Stage {stage!r} failed (exit code {exit_code})")
        self.stage = stage
        self.exit_code = exit_code
        self.diagnostics = diagnostics


class WatchError(PerseusError):
    """A watch root is missing or inaccessible, or the watcher was reused."""


class ExportError(PerseusError):
    """A required route failed or the export tree could not be written."""

    def __init__(
        self,
        message: str,
        failed_routes: Optional[list[str]] = None,
        errors: Optional[dict[str, str]] = None,
    ):
        super().__init__(message)
        self.failed_routes = failed_routes or []
        # route -> error for every failed route, required or not
        self.errors = errors or {}


class FetchError(PerseusError):
    """Network failure, timeout, or bad HTTP status while downloading an artifact."""


class IntegrityError(PerseusError):
    """Downloaded artifact has the wrong size or could not be extracted."""


class PortInUseError(PerseusError):
    """The dev server port is already bound."""

    def __init__(self, host: str, port: int):
        super().__init__(f"Port {port} on {host or '0.0.0.0'} is already in use")
        self.host = host
        self.port = port
