"""perseus clean -- Remove build output."""

from __future__ import annotations

import argparse
import shutil
from pathlib import Path

from perseus_cli.build.config import ProjectConfig
from perseus_cli.commands.common import resolve_config
from perseus_cli.core.utils import TARGET_DIR_NAME, log


# =============================================================================
# Utilities
# =============================================================================


def _get_dir_size(path: Path) -> int:
    """Get total size of a directory in bytes."""
    if not path.exists():
        return 0
    if path.is_file():
        return path.stat().st_size
    total = 0
    for entry in path.rglob("*"):
        if entry.is_file():
            try:
                total += entry.stat().st_size
            except OSError:
                pass
    return total


def _format_size(size_bytes: float) -> str:
    """Format bytes as human-readable string."""
    if size_bytes == 0:
        return "0 B"
    for unit in ("B", "KB", "MB", "GB"):
        if size_bytes < 1024:
            if unit == "B":
                return f"{int(size_bytes)} {unit}"
            return f"{size_bytes:.1f} {unit}"
        size_bytes /= 1024
    return f"{size_bytes:.1f} TB"


def _collect_clean_targets(config: ProjectConfig, dist_only: bool = False) -> list[tuple[Path, int]]:
    """Collect existing paths to remove as (path, size_in_bytes)."""
    candidates = [config.dist_dir]
    if not dist_only:
        candidates.append(config.project_root / TARGET_DIR_NAME)
    return [(p, _get_dir_size(p)) for p in candidates if p.exists()]


# =============================================================================
# Core Clean Logic
# =============================================================================


def clean_project(config: ProjectConfig, dist_only: bool = False, dry_run: bool = False) -> list[str]:
    """Remove build output. Returns removed (or would-remove) paths."""
    removed: list[str] = []
    for path, size in _collect_clean_targets(config, dist_only):
        size_str = _format_size(size)
        if dry_run:
            log.info(f"[DRY-RUN] Would remove {path} ({size_str})")
        else:
            shutil.rmtree(path)
            log.info(f"Removed {path} ({size_str})")
        removed.append(str(path))
    return removed


def cmd_clean(args: argparse.Namespace) -> int:
    """Handle 'perseus clean'."""
    config = resolve_config(args)
    log.header(f"Cleaning {config.package_name}")
    removed = clean_project(config, dist_only=args.dist_only, dry_run=args.dry_run)
    if not removed:
        log.info("Nothing to clean")
    elif not args.dry_run:
        log.success(f"Removed {len(removed)} director{'ies' if len(removed) != 1 else 'y'}")
    return 0
