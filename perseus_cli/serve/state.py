"""
Serving state shared between the event loop and the HTTP server threads.

The (output tree, engine address) pair is published as an immutable
ServingSnapshot. The event loop is the only writer; request threads take a
snapshot under the condition lock and register themselves as in-flight so a
reload can wait for them to drain before the old engine is stopped.
"""

from __future__ import annotations

import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Iterator, Optional


class DevServerPhase(str, Enum):
    STARTING = "starting"
    SERVING = "serving"
    RELOADING = "reloading"
    STOPPED = "stopped"


@dataclass(frozen=True)
class ServingSnapshot:
    """What requests are served from, tagged with the build it came from."""

    sequence: int
    static_root: Path
    bundle_root: Optional[Path] = None
    assets_root: Optional[Path] = None
    engine_host: Optional[str] = None
    engine_port: Optional[int] = None
    # Engine binary published with this tree; None runs the configured command as is
    engine_program: Optional[str] = None

    @property
    def engine_url(self) -> Optional[str]:
        if self.engine_host is None or self.engine_port is None:
            return None
        return f"http://{self.engine_host}:{self.engine_port}"


@dataclass(frozen=True)
class FailureReport:
    sequence: int
    stage: str
    diagnostics: str

    def to_dict(self) -> dict:
        return {"sequence": self.sequence, "stage": self.stage, "diagnostics": self.diagnostics}


class ServingState:
    """Lock-protected cell holding the current ServingSnapshot."""

    def __init__(self) -> None:
        self._cond = threading.Condition()
        self._phase = DevServerPhase.STARTING
        self._snapshot: Optional[ServingSnapshot] = None
        self._in_flight = 0
        self._last_failure: Optional[FailureReport] = None

    @property
    def phase(self) -> DevServerPhase:
        with self._cond:
            return self._phase

    @property
    def snapshot(self) -> Optional[ServingSnapshot]:
        with self._cond:
            return self._snapshot

    @property
    def in_flight(self) -> int:
        with self._cond:
            return self._in_flight

    @property
    def last_failure(self) -> Optional[FailureReport]:
        with self._cond:
            return self._last_failure

    # -------------------------------------------------------------------------
    # Readers (request threads)
    # -------------------------------------------------------------------------

    def acquire(self, timeout: float) -> Optional[ServingSnapshot]:
        """Wait up to ``timeout`` for a servable snapshot and mark a request in flight.

        Returns None if the server is stopped or still starting/reloading
        when the timeout elapses; the caller answers 503.
        """
        deadline = time.monotonic() + timeout
        with self._cond:
            while self._phase in (DevServerPhase.STARTING, DevServerPhase.RELOADING):
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    return None
                self._cond.wait(remaining)
            if self._phase is DevServerPhase.STOPPED or self._snapshot is None:
                return None
            self._in_flight += 1
            return self._snapshot

    def release(self) -> None:
        with self._cond:
            self._in_flight -= 1
            self._cond.notify_all()

    @contextmanager
    def request(self, timeout: float) -> Iterator[Optional[ServingSnapshot]]:
        snapshot = self.acquire(timeout)
        try:
            yield snapshot
        finally:
            if snapshot is not None:
                self.release()

    # -------------------------------------------------------------------------
    # Writer (event loop)
    # -------------------------------------------------------------------------

    def begin_reload(self) -> None:
        """Stop admitting new requests; they queue until ``swap`` or ``resume``."""
        with self._cond:
            if self._phase is not DevServerPhase.STOPPED:
                self._phase = DevServerPhase.RELOADING

    def wait_for_drain(self, timeout: float) -> bool:
        """Block until no request is in flight. False if ``timeout`` elapsed first."""
        with self._cond:
            return self._cond.wait_for(lambda: self._in_flight == 0, timeout)

    def swap(self, snapshot: ServingSnapshot) -> None:
        """Install ``snapshot`` and resume serving, in one critical section."""
        with self._cond:
            if self._phase is DevServerPhase.STOPPED:
                return
            self._snapshot = snapshot
            self._phase = DevServerPhase.SERVING
            self._cond.notify_all()

    def resume(self) -> None:
        """Leave Reloading without changing the snapshot."""
        with self._cond:
            if self._phase is DevServerPhase.RELOADING and self._snapshot is not None:
                self._phase = DevServerPhase.SERVING
                self._cond.notify_all()

    def stop(self) -> None:
        with self._cond:
            self._phase = DevServerPhase.STOPPED
            self._cond.notify_all()

    def record_failure(self, report: Optional[FailureReport]) -> None:
        with self._cond:
            self._last_failure = report

    def status(self) -> dict:
        with self._cond:
            snapshot = self._snapshot
            return {
                "phase": self._phase.value,
                "sequence": snapshot.sequence if snapshot else None,
                "engine": snapshot.engine_url if snapshot else None,
                "in_flight": self._in_flight,
                "last_failure": self._last_failure.to_dict() if self._last_failure else None,
            }
