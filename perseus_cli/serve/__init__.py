"""
perseus_cli.serve - Development server with live reload.
"""

from perseus_cli.serve.reload import LIVE_RELOAD_SCRIPT, ReloadBroadcaster, inject_script
from perseus_cli.serve.server import (
    ENGINE_ROLE,
    STATUS_PATH,
    DevRequestHandler,
    DevServer,
    resolve_static,
)
from perseus_cli.serve.state import (
    DevServerPhase,
    FailureReport,
    ServingSnapshot,
    ServingState,
)

__all__ = [
    "ENGINE_ROLE",
    "LIVE_RELOAD_SCRIPT",
    "STATUS_PATH",
    "DevRequestHandler",
    "DevServer",
    "DevServerPhase",
    "FailureReport",
    "ReloadBroadcaster",
    "ServingSnapshot",
    "ServingState",
    "inject_script",
    "resolve_static",
]
