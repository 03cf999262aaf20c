"""
perseus_cli.watch - Filesystem watching with debounced rebuild triggers.
"""

from perseus_cli.watch.debounce import (
    DEBOUNCE_SECONDS,
    DebounceState,
    Debouncer,
    WatchEvent,
)
from perseus_cli.watch.watcher import (
    DEFAULT_IGNORE,
    ChangeHandler,
    IgnoreFilter,
    Watcher,
    watch,
)

__all__ = [
    "DEBOUNCE_SECONDS",
    "DEFAULT_IGNORE",
    "ChangeHandler",
    "DebounceState",
    "Debouncer",
    "IgnoreFilter",
    "WatchEvent",
    "Watcher",
    "watch",
]
