"""
Published build trees.

Stages write into the fixed working directories under dist/. Before the
dev server switches to a successful build, its output is copied into
dist/builds/<sequence>/ so requests never read a tree that a later run is
still writing.
"""

from __future__ import annotations

import logging
import os
import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, Optional

logger = logging.getLogger(__name__)

STAGING_PREFIX = ".tmp-"


@dataclass(frozen=True)
class BuildTree:
    """One published copy of a build's output."""

    sequence: int
    root: Path
    static_root: Path
    bundle_root: Optional[Path] = None
    engine_binary: Optional[Path] = None


class BuildTrees:
    """Copies working build output into per-sequence directories."""

    def __init__(
        self,
        root: Path,
        static_dir: Path,
        bundle_dir: Optional[Path] = None,
        engine_binary: Optional[Path] = None,
    ):
        self.root = root
        self.static_dir = static_dir
        self.bundle_dir = bundle_dir
        self.engine_binary = engine_binary

    def path(self, sequence: int) -> Path:
        return self.root / str(sequence)

    def publish(self, sequence: int) -> BuildTree:
        """Copy the working output for ``sequence`` into place atomically."""
        final = self.path(sequence)
        staging = self.root / f"{STAGING_PREFIX}{sequence}-{os.getpid()}"
        shutil.rmtree(staging, ignore_errors=True)
        staging.mkdir(parents=True)
        try:
            _copy_dir(self.static_dir, staging / "static")
            if self.bundle_dir is not None:
                _copy_dir(self.bundle_dir, staging / "pkg")
            if self.engine_binary is not None and self.engine_binary.is_file():
                shutil.copy2(self.engine_binary, staging / self.engine_binary.name)
            # Left over from an earlier session; sequences restart at 1
            if final.exists():
                shutil.rmtree(final)
            os.replace(staging, final)
        except BaseException:
            shutil.rmtree(staging, ignore_errors=True)
            raise
        logger.debug("published build #%s to %s", sequence, final)
        return self.tree(sequence)

    def tree(self, sequence: int) -> BuildTree:
        root = self.path(sequence)
        binary = None
        if self.engine_binary is not None and (root / self.engine_binary.name).is_file():
            binary = root / self.engine_binary.name
        return BuildTree(
            sequence=sequence,
            root=root,
            static_root=root / "static",
            bundle_root=root / "pkg" if self.bundle_dir is not None else None,
            engine_binary=binary,
        )

    def prune(self, keep: Iterable[int]) -> list[Path]:
        """Remove every published tree except ``keep``. Returns what was removed."""
        if not self.root.is_dir():
            return []
        keep_names = {str(s) for s in keep}
        removed = []
        for entry in sorted(self.root.iterdir()):
            if entry.name in keep_names:
                continue
            try:
                if entry.is_dir():
                    shutil.rmtree(entry)
                else:
                    entry.unlink()
            except OSError as e:
                # A running engine binary cannot be removed on Windows
                logger.warning("could not remove %s: %s", entry, e)
                continue
            removed.append(entry)
        return removed


def _copy_dir(source: Path, dest: Path) -> None:
    if source.is_dir():
        shutil.copytree(source, dest, symlinks=True)
    else:
        dest.mkdir(parents=True)
