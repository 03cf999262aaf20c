"""
Build pipeline execution.

Runs stages in order under the process supervisor, records per-stage timing
and diagnostics, and decides which results are fresh enough to publish.
"""

from __future__ import annotations

import asyncio
import logging
import os
import time
from dataclasses import dataclass, replace
from enum import Enum
from pathlib import Path
from typing import Awaitable, Callable, Iterable, Optional

from perseus_cli.build.stages import BuildStage
from perseus_cli.core.errors import SpawnError, StageFailure
from perseus_cli.core.utils import log
from perseus_cli.process.supervisor import ProcessSupervisor

logger = logging.getLogger(__name__)


# =============================================================================
# Results
# =============================================================================


class StageStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"


class RunOutcome(str, Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"


@dataclass(frozen=True)
class StageResult:
    name: str
    status: StageStatus
    exit_code: Optional[int] = None
    diagnostics: str = ""
    duration: float = 0.0


@dataclass(frozen=True)
class BuildRun:
    """Resolved result of one pipeline execution."""

    sequence: int
    generation: int
    started_at: float
    stages: tuple[StageResult, ...]
    outcome: RunOutcome
    failed_stage: Optional[str] = None
    diagnostics: str = ""
    changed: frozenset[str] = frozenset()
    superseded: bool = False

    @property
    def succeeded(self) -> bool:
        return self.outcome is RunOutcome.SUCCEEDED

    @property
    def duration(self) -> float:
        return round(sum(s.duration for s in self.stages), 3)

    def stage(self, name: str) -> Optional[StageResult]:
        for result in self.stages:
            if result.name == name:
                return result
        return None

    def raise_for_failure(self) -> None:
        """Raise StageFailure if the run failed."""
        if self.succeeded:
            return
        failed = self.stage(self.failed_stage or "")
        raise StageFailure(
            self.failed_stage or "unknown",
            failed.exit_code if failed else None,
            self.diagnostics,
        )


Publisher = Callable[[BuildRun], Awaitable[None]]


# =============================================================================
# Run Queue
# =============================================================================


class RunQueue:
    """Single-slot queue that keeps only the newest pending generation."""

    def __init__(self) -> None:
        self._pending: Optional[int] = None
        self._event = asyncio.Event()
        self._closed = False
        self.dropped = 0

    @property
    def pending(self) -> Optional[int]:
        return self._pending

    def put(self, generation: int) -> None:
        if self._closed:
            return
        if self._pending is not None:
            if generation <= self._pending:
                return
            logger.debug("dropping pending generation %s for %s", self._pending, generation)
            self.dropped += 1
        self._pending = generation
        self._event.set()

    async def get(self) -> Optional[int]:
        """Wait for a pending generation; None once closed."""
        while self._pending is None:
            if self._closed:
                return None
            self._event.clear()
            await self._event.wait()
        generation, self._pending = self._pending, None
        return generation

    def close(self) -> None:
        self._closed = True
        self._event.set()


# =============================================================================
# Pipeline
# =============================================================================


class BuildPipeline:
    """Sequences build stages with one run in flight at a time."""

    def __init__(self, stages: Iterable[BuildStage], supervisor: ProcessSupervisor):
        self.stages = list(stages)
        self.supervisor = supervisor
        self.queue = RunQueue()
        self.last_published: Optional[BuildRun] = None
        self._sequence = 0
        self._latest_requested = -1
        self._published_sequence = 0
        self._published_generation = -1
        self._run_lock = asyncio.Lock()
        self._fingerprints: dict[str, tuple] = {}

    @property
    def sequence(self) -> int:
        """Sequence number of the most recently started run."""
        return self._sequence

    def relevant(self, paths: Iterable[Path]) -> bool:
        """True if a change to ``paths`` touches any stage's inputs."""
        paths = list(paths)
        return any(stage.relevant(paths) for stage in self.stages)

    # -------------------------------------------------------------------------
    # Execution
    # -------------------------------------------------------------------------

    async def run(self, generation: int = 0) -> BuildRun:
        """Execute every stage in order and return the resolved BuildRun."""
        self._latest_requested = max(self._latest_requested, generation)
        async with self._run_lock:
            self._sequence += 1
            return await self._execute(self._sequence, generation)

    async def _execute(self, sequence: int, generation: int) -> BuildRun:
        started_at = time.time()
        results: list[StageResult] = []
        failed: Optional[StageResult] = None
        logger.debug("run #%s started for generation %s", sequence, generation)

        for stage in self.stages:
            if failed is not None:
                results.append(StageResult(stage.name, StageStatus.CANCELLED))
                continue
            result = await self._run_stage(stage)
            results.append(result)
            if result.status is StageStatus.FAILED:
                failed = result

        if failed is not None:
            return BuildRun(
                sequence=sequence,
                generation=generation,
                started_at=started_at,
                stages=tuple(results),
                outcome=RunOutcome.FAILED,
                failed_stage=failed.name,
                diagnostics=failed.diagnostics,
            )

        return BuildRun(
            sequence=sequence,
            generation=generation,
            started_at=started_at,
            stages=tuple(results),
            outcome=RunOutcome.SUCCEEDED,
            changed=self._detect_changes(),
        )

    async def _run_stage(self, stage: BuildStage) -> StageResult:
        role = f"stage:{stage.name}"
        start = time.monotonic()
        try:
            handle = await self.supervisor.spawn(role, stage.command, capture=True)
        except SpawnError as e:
            return StageResult(
                stage.name,
                StageStatus.FAILED,
                diagnostics=str(e),
                duration=round(time.monotonic() - start, 3),
            )

        outcome = await handle.wait()
        status = StageStatus.SUCCEEDED if outcome.succeeded else StageStatus.FAILED
        return StageResult(
            stage.name,
            status,
            exit_code=outcome.returncode,
            diagnostics=outcome.diagnostics,
            duration=outcome.duration,
        )

    def _detect_changes(self) -> frozenset[str]:
        """Output kinds whose artifacts differ from the previous successful run."""
        current: dict[str, list] = {}
        for stage in self.stages:
            for kind in stage.affects:
                current.setdefault(kind, []).extend(_fingerprint(p) for p in stage.outputs)

        changed = set()
        for kind, prints in current.items():
            snapshot = tuple(prints)
            if self._fingerprints.get(kind) != snapshot:
                changed.add(kind)
            self._fingerprints[kind] = snapshot
        return frozenset(changed)

    # -------------------------------------------------------------------------
    # Watch Mode
    # -------------------------------------------------------------------------

    def submit(self, generation: int) -> None:
        """Request a run for ``generation``; replaces any older pending request."""
        self._latest_requested = max(self._latest_requested, generation)
        self.queue.put(generation)

    def is_stale(self, run: BuildRun) -> bool:
        return (
            run.generation < self._latest_requested
            or run.generation <= self._published_generation
            or run.sequence <= self._published_sequence
        )

    async def publish_if_fresh(self, run: BuildRun, publish: Publisher) -> BuildRun:
        """Publish ``run`` unless something newer is pending or already out.

        Returns the run as resolved, with ``superseded`` set when discarded.
        """
        if self.is_stale(run):
            logger.debug(
                "run #%s (generation %s) superseded; latest requested %s",
                run.sequence, run.generation, self._latest_requested,
            )
            return replace(run, superseded=True)

        self._published_sequence = run.sequence
        self._published_generation = run.generation
        self.last_published = run
        await publish(run)
        return run

    async def serve_forever(self, publish: Publisher) -> None:
        """Drain the run queue until closed, publishing fresh results."""
        while True:
            generation = await self.queue.get()
            if generation is None:
                return
            run = await self.run(generation)
            resolved = await self.publish_if_fresh(run, publish)
            if resolved.superseded:
                log.dim(f"Build #{run.sequence} superseded by newer changes")

    def close(self) -> None:
        self.queue.close()


# =============================================================================
# Helpers
# =============================================================================


def _fingerprint(path: Path) -> tuple:
    """Cheap content proxy: (path, size, mtime_ns) for each file."""
    if path.is_file():
        st = path.stat()
        return ((str(path), st.st_size, st.st_mtime_ns),)
    if path.is_dir():
        entries = []
        for dirpath, _, filenames in os.walk(path):
            for name in filenames:
                full = Path(dirpath) / name
                try:
                    st = full.stat()
                except OSError:
                    continue
                entries.append((str(full), st.st_size, st.st_mtime_ns))
        return tuple(sorted(entries))
    return ((str(path), None, None),)


def report(run: BuildRun, verbose: bool = False) -> None:
    """Print a per-stage summary of ``run``."""
    for result in run.stages:
        if result.status is StageStatus.CANCELLED and not verbose:
            continue
        log.stage(result.name, result.status.value, result.duration or None)

    if run.succeeded:
        log.success(f"Build #{run.sequence} completed in {run.duration:.1f}s")
    else:
        log.error(f"Build #{run.sequence} failed at stage '{run.failed_stage}'")
        log.diagnostics(run.diagnostics)
