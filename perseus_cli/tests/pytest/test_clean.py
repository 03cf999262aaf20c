"""
Tests for perseus clean command: target collection and removal.

Validates that _collect_clean_targets identifies the correct paths
and clean_project removes them (or preserves them in dry-run mode).
"""

from __future__ import annotations

from pathlib import Path

import pytest

from perseus_cli.build.config import ProjectConfig
from perseus_cli.commands.clean import _collect_clean_targets, _format_size, clean_project


def populate(config: ProjectConfig) -> tuple[Path, Path]:
    dist = config.dist_dir
    (dist / "static").mkdir(parents=True)
    (dist / "static" / "index.html").write_bytes(b"\x00" * 100)
    target = config.project_root / "target"
    (target / "debug").mkdir(parents=True)
    (target / "debug" / "app").write_bytes(b"\x00" * 50)
    return dist, target


# =============================================================================
# Target Collection Tests
# =============================================================================


@pytest.mark.evergreen
class TestCleanTargetCollection:
    """_collect_clean_targets returns correct paths for various configurations."""

    def test_collect_targets_includes_dist_and_target(self, config: ProjectConfig) -> None:
        """dist/ and target/ are both included by default."""
        dist, target = populate(config)
        paths = [p for p, _ in _collect_clean_targets(config)]
        assert paths == [dist, target]

    def test_collect_targets_dist_only(self, config: ProjectConfig) -> None:
        """dist_only leaves cargo's target directory alone."""
        dist, _ = populate(config)
        paths = [p for p, _ in _collect_clean_targets(config, dist_only=True)]
        assert paths == [dist]

    def test_collect_targets_reports_sizes(self, config: ProjectConfig) -> None:
        populate(config)
        sizes = dict(_collect_clean_targets(config))
        assert sizes[config.dist_dir] == 100

    def test_collect_targets_empty_project(self, config: ProjectConfig) -> None:
        """Nothing is collected when no build output exists."""
        assert _collect_clean_targets(config) == []


# =============================================================================
# Clean Tests
# =============================================================================


@pytest.mark.evergreen
class TestCleanProject:
    """clean_project removes or previews build output."""

    def test_clean_removes_targets(self, config: ProjectConfig) -> None:
        dist, target = populate(config)
        removed = clean_project(config)
        assert removed == [str(dist), str(target)]
        assert not dist.exists()
        assert not target.exists()
        assert (config.project_root / "src").exists()

    def test_dry_run_preserves_files(self, config: ProjectConfig) -> None:
        dist, target = populate(config)
        removed = clean_project(config, dry_run=True)
        assert len(removed) == 2
        assert dist.exists()
        assert target.exists()


@pytest.mark.evergreen
class TestFormatSize:
    @pytest.mark.parametrize(
        "size, expected",
        [(0, "0 B"), (512, "512 B"), (2048, "2.0 KB"), (5 * 1024 * 1024, "5.0 MB")],
    )
    def test_format(self, size: int, expected: str) -> None:
        assert _format_size(size) == expected
