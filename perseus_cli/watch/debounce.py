"""
Debouncing of raw filesystem notifications.

States: Idle -> Pending(deadline) -> Flushed -> Idle. A single timer is
re-armed on every raw event; the batch flushes only once the window passes
with no further activity.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from enum import Enum, auto
from pathlib import Path
from typing import Optional

DEBOUNCE_SECONDS = 0.3


@dataclass(frozen=True)
class WatchEvent:
    """A coalesced batch of changes."""

    generation: int
    paths: frozenset[Path]


class DebounceState(Enum):
    IDLE = auto()
    PENDING = auto()
    FLUSHED = auto()


class Debouncer:
    """Batches rapid change notifications into single WatchEvents.

    Must be driven from the event loop thread; the watchdog handler hops
    over with ``call_soon_threadsafe``.
    """

    def __init__(self, delay: float = DEBOUNCE_SECONDS):
        self.delay = delay
        self.state = DebounceState.IDLE
        self.deadline: Optional[float] = None
        self._timer: Optional[asyncio.TimerHandle] = None
        self._pending: set[Path] = set()
        self._generation = 0
        self._events: asyncio.Queue[Optional[WatchEvent]] = asyncio.Queue()
        self._closed = False

    @property
    def generation(self) -> int:
        """Generation of the most recently flushed event (0 before any)."""
        return self._generation

    def trigger(self, path: Path) -> None:
        """Register a change event. Resets the debounce timer."""
        if self._closed:
            return
        loop = asyncio.get_running_loop()
        self._pending.add(path)

        if self._timer is not None:
            self._timer.cancel()

        self.deadline = loop.time() + self.delay
        self._timer = loop.call_at(self.deadline, self._fire)
        self.state = DebounceState.PENDING

    def _fire(self) -> None:
        self._timer = None
        self.deadline = None
        if not self._pending:
            self.state = DebounceState.IDLE
            return

        self.state = DebounceState.FLUSHED
        self._generation += 1
        event = WatchEvent(generation=self._generation, paths=frozenset(self._pending))
        self._pending = set()
        self._events.put_nowait(event)
        self.state = DebounceState.IDLE

    async def get(self) -> Optional[WatchEvent]:
        """Wait for the next flushed event; None once closed."""
        if self._closed and self._events.empty():
            return None
        return await self._events.get()

    def cancel(self) -> None:
        """Drop any pending batch without flushing it."""
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        self._pending.clear()
        self.deadline = None
        self.state = DebounceState.IDLE

    def close(self) -> None:
        """Cancel pending work and wake any waiter with None."""
        self.cancel()
        if not self._closed:
            self._closed = True
            self._events.put_nowait(None)
