"""
Watch mode for perseus projects.

Monitors source roots and turns bursts of file changes into debounced
WatchEvents that drive rebuilds.
"""

from __future__ import annotations

import asyncio
import fnmatch
import logging
from pathlib import Path
from typing import AsyncIterator, Callable, Iterable, Optional

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

from perseus_cli.core.errors import WatchError
from perseus_cli.core.utils import DEPLOY_DIR_NAME, DIST_DIR_NAME, TARGET_DIR_NAME
from perseus_cli.watch.debounce import DEBOUNCE_SECONDS, Debouncer, WatchEvent

logger = logging.getLogger(__name__)


# =============================================================================
# Constants
# =============================================================================

# Build output, VCS metadata, and editor droppings never trigger rebuilds
DEFAULT_IGNORE: tuple[str, ...] = (
    f"{DIST_DIR_NAME}/",
    f"{TARGET_DIR_NAME}/",
    f"{DEPLOY_DIR_NAME}/",
    ".git",
    ".hg",
    ".perseus",
    "__pycache__",
    "*.swp",
    "*.swx",
    "*~",
    ".#*",
    "4913",
)


# =============================================================================
# Ignore Filter
# =============================================================================


class IgnoreFilter:
    """Decides which changed paths are irrelevant.

    Patterns come in three forms:
      /abs/path   everything beneath an absolute path
      dist/       a directory anchored at a watch root
      *.swp       a glob matched against any single path component
    """

    def __init__(self, roots: Iterable[Path], patterns: Iterable[str | Path] = ()):
        self.roots = [Path(r).resolve() for r in roots]
        self.prefixes: list[Path] = []
        self.anchored: list[str] = []
        self.components: list[str] = []
        for pattern in patterns:
            if Path(pattern).is_absolute():
                self.prefixes.append(Path(pattern).resolve())
                continue
            text = str(pattern).replace("\\", "/")
            if text.endswith("/") or "/" in text:
                self.anchored.append(text.rstrip("/"))
            else:
                self.components.append(text)

    def ignored(self, path: Path) -> bool:
        path = Path(path).resolve()

        for prefix in self.prefixes:
            if path == prefix or prefix in path.parents:
                return True

        rel = self._relative(path)
        rel_str = rel.as_posix()
        for glob in self.anchored:
            if fnmatch.fnmatch(rel_str, glob) or fnmatch.fnmatch(rel_str, glob + "/*"):
                return True
        for glob in self.components:
            if any(fnmatch.fnmatch(part, glob) for part in rel.parts):
                return True
        return False

    def _relative(self, path: Path) -> Path:
        for root in self.roots:
            if path == root:
                return Path(path.name)
            if root in path.parents:
                return path.relative_to(root)
        return path


# =============================================================================
# File System Event Handler
# =============================================================================


class ChangeHandler(FileSystemEventHandler):
    """Filters watchdog events and forwards them to the debouncer.

    Runs on the watchdog observer thread, so forwarding hops onto the event
    loop with ``call_soon_threadsafe``.
    """

    def __init__(
        self,
        loop: asyncio.AbstractEventLoop,
        debouncer: Debouncer,
        accepts: Callable[[Path], bool],
    ):
        super().__init__()
        self.loop = loop
        self.debouncer = debouncer
        self.accepts = accepts

    def on_modified(self, event: FileSystemEvent) -> None:
        if event.is_directory:
            return
        self._handle(event.src_path)

    def on_created(self, event: FileSystemEvent) -> None:
        if event.is_directory:
            return
        self._handle(event.src_path)

    def on_deleted(self, event: FileSystemEvent) -> None:
        self._handle(event.src_path)

    def on_moved(self, event: FileSystemEvent) -> None:
        self._handle(event.src_path)
        dest = getattr(event, "dest_path", "")
        if dest:
            self._handle(dest)

    def _handle(self, raw_path: str | bytes) -> None:
        if isinstance(raw_path, bytes):
            raw_path = raw_path.decode("utf-8", errors="replace")
        path = Path(raw_path)
        if not self.accepts(path):
            return
        logger.debug("change detected: %s", path)
        try:
            self.loop.call_soon_threadsafe(self.debouncer.trigger, path)
        except RuntimeError:
            # Loop already closed during shutdown
            pass


# =============================================================================
# Watcher
# =============================================================================


class Watcher:
    """Produces debounced WatchEvents for a set of roots.

    Roots may be directories (watched recursively) or single files (their
    parent is watched and everything else in it is dropped). Once stopped a
    Watcher cannot be started again.
    """

    def __init__(
        self,
        roots: Iterable[Path],
        ignore: Iterable[str | Path] = DEFAULT_IGNORE,
        debounce: float = DEBOUNCE_SECONDS,
    ):
        self.roots = [Path(r).resolve() for r in roots]
        self.filter = IgnoreFilter(self.roots, ignore)
        self.debounce = debounce
        self._debouncer: Optional[Debouncer] = None
        self._observer = None
        self._started = False
        self._stopped = False

    @property
    def debouncer(self) -> Optional[Debouncer]:
        return self._debouncer

    def accepts(self, path: Path) -> bool:
        """True if a change to ``path`` should count towards a rebuild."""
        resolved = Path(path).resolve()
        for root in self.roots:
            if root.is_dir():
                if resolved == root or root in resolved.parents:
                    break
            elif resolved == root:
                break
        else:
            return False
        return not self.filter.ignored(resolved)

    def start(self) -> None:
        """Validate roots and start the observer thread."""
        if self._stopped:
            raise WatchError("Watcher was stopped and cannot be restarted")
        if self._started:
            return

        for root in self.roots:
            if not root.exists():
                raise WatchError(f"Watch root not found: {root}")

        loop = asyncio.get_running_loop()
        self._debouncer = Debouncer(self.debounce)
        handler = ChangeHandler(loop, self._debouncer, self.accepts)

        observer = Observer()
        scheduled: set[tuple[Path, bool]] = set()
        for root in self.roots:
            target, recursive = (root, True) if root.is_dir() else (root.parent, False)
            if (target, recursive) in scheduled:
                continue
            try:
                observer.schedule(handler, str(target), recursive=recursive)
            except OSError as e:
                raise WatchError(f"Could not watch {root}: {e}") from e
            scheduled.add((target, recursive))
            logger.debug("watching %s (recursive=%s)", target, recursive)

        observer.start()
        self._observer = observer
        self._started = True

    async def events(self) -> AsyncIterator[WatchEvent]:
        """Yield WatchEvents until ``stop()`` is called."""
        self.start()
        assert self._debouncer is not None
        while not self._stopped:
            event = await self._debouncer.get()
            if event is None:
                return
            yield event

    def stop(self) -> None:
        """Stop the observer and release any waiting consumer."""
        if self._stopped:
            return
        self._stopped = True
        if self._debouncer is not None:
            self._debouncer.close()
        if self._observer is not None:
            self._observer.stop()
            self._observer.join(timeout=5)


def watch(
    roots: Iterable[Path],
    ignore: Iterable[str | Path] = DEFAULT_IGNORE,
    debounce: float = DEBOUNCE_SECONDS,
) -> AsyncIterator[WatchEvent]:
    """Shorthand for ``Watcher(roots, ignore, debounce).events()``."""
    return Watcher(roots, ignore, debounce).events()
