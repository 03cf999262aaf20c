"""
perseus_cli.process - Process-group supervision.

Spawns build tools and the engine binary by role and guarantees no child
outlives the orchestrator.
"""

from perseus_cli.process.backends import (
    PosixBackend,
    ProcessBackend,
    WindowsBackend,
    default_backend,
)
from perseus_cli.process.supervisor import (
    GRACE_PERIOD,
    CommandSpec,
    ExitOutcome,
    ManagedProcess,
    ProcessSupervisor,
)

__all__ = [
    "GRACE_PERIOD",
    "CommandSpec",
    "ExitOutcome",
    "ManagedProcess",
    "PosixBackend",
    "ProcessBackend",
    "ProcessSupervisor",
    "WindowsBackend",
    "default_backend",
]
