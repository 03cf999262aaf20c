"""
perseus_cli.core - Foundation layer for the perseus CLI.

Exports the console logger, shared constants, and the error taxonomy.
"""

# Utils
from perseus_cli.core.utils import (
    # Logging
    log,
    Logger,
    # Constants
    CACHE_DIR,
    DIST_DIR_NAME,
    TARGET_DIR_NAME,
    DEPLOY_DIR_NAME,
    EXPORT_DIR_NAME,
    ENGINE_OPERATION_VAR,
    # Helpers
    format_duration,
    get_project_root,
    find_free_port,
    port_in_use,
    wait_for_port,
)

# Errors
from perseus_cli.core.errors import (
    PerseusError,
    ConfigError,
    SpawnError,
    NotFound,
    StageFailure,
    WatchError,
    ExportError,
    FetchError,
    IntegrityError,
    PortInUseError,
)

__all__ = [
    "log",
    "Logger",
    "CACHE_DIR",
    "DIST_DIR_NAME",
    "TARGET_DIR_NAME",
    "DEPLOY_DIR_NAME",
    "EXPORT_DIR_NAME",
    "ENGINE_OPERATION_VAR",
    "format_duration",
    "get_project_root",
    "find_free_port",
    "port_in_use",
    "wait_for_port",
    "PerseusError",
    "ConfigError",
    "SpawnError",
    "NotFound",
    "StageFailure",
    "WatchError",
    "ExportError",
    "FetchError",
    "IntegrityError",
    "PortInUseError",
]
