"""
Shared utilities for the perseus CLI.
"""

from __future__ import annotations

import asyncio
import os
import socket
import sys
import time
from pathlib import Path
from typing import Optional

# =============================================================================
# Constants
# =============================================================================

CACHE_DIR = Path(os.environ.get("PERSEUS_CACHE_DIR", Path.home() / ".perseus-cache"))

# Directory names relative to the project root
DIST_DIR_NAME = "dist"
TARGET_DIR_NAME = "target"
DEPLOY_DIR_NAME = "pkg"
EXPORT_DIR_NAME = "exported"

# Environment variable the engine binary reads to pick its operation
ENGINE_OPERATION_VAR = "PERSEUS_ENGINE_OPERATION"


# =============================================================================
# Logging
# =============================================================================


class Logger:
    """Simple colored logger with --no-color support."""

    COLORS = {
        "reset": "\033[0m",
        "red": "\033[91m",
        "green": "\033[92m",
        "yellow": "\033[93m",
        "blue": "\033[94m",
        "magenta": "\033[95m",
        "cyan": "\033[96m",
        "bold": "\033[1m",
        "dim": "\033[2m",
    }

    def __init__(self, use_color: Optional[bool] = None):
        if use_color is None:
            self._use_color = sys.stdout.isatty()
        else:
            self._use_color = use_color

    def set_color(self, use_color: bool) -> None:
        """Set whether to use color output."""
        self._use_color = use_color

    def _color(self, text: str, color: str) -> str:
        if not self._use_color:
            return text
        return f"{self.COLORS.get(color, '')}{text}{self.COLORS['reset']}"

    def header(self, message: str) -> None:
        """Print a section header."""
        print(f"\n{self._color('===', 'cyan')} {self._color(message, 'bold')} {self._color('===', 'cyan')}")

    def info(self, message: str) -> None:
        """Print an info message."""
        print(f"  {message}")

    def success(self, message: str) -> None:
        """Print a success message."""
        print(f"  {self._color('[OK]', 'green')} {message}")

    def warning(self, message: str) -> None:
        """Print a warning message."""
        print(f"  {self._color('[WARN]', 'yellow')} {message}")

    def error(self, message: str) -> None:
        """Print an error message."""
        print(f"  {self._color('[ERROR]', 'red')} {message}", file=sys.stderr)

    def dim(self, message: str) -> None:
        """Print a dim/secondary message."""
        print(f"  {self._color(message, 'dim')}")

    def stage(self, name: str, status: str, duration: Optional[float] = None) -> None:
        """Print a one-line stage status, e.g. ``[engine] succeeded (3.2s)``."""
        color = {"succeeded": "green", "failed": "red", "cancelled": "yellow"}.get(status, "blue")
        suffix = f" ({format_duration(duration)})" if duration is not None else ""
        print(f"  {self._color(f'[{name}]', 'magenta')} {self._color(status, color)}{suffix}")

    def diagnostics(self, text: str, limit: int = 2000) -> None:
        """Print captured process output, keeping only the tail past ``limit`` chars."""
        if not text:
            return
        if len(text) > limit:
            text = "...\n" + text[-limit:]
        for line in text.rstrip().splitlines():
            print(f"    {self._color('|', 'dim')} {line}")


# Global logger instance
log = Logger()


# =============================================================================
# Formatting
# =============================================================================


def format_duration(seconds: float) -> str:
    """Format seconds as human-readable duration.

    Examples:
        0.5 -> "0.5s"
        65.3 -> "1m 5.3s"
    """
    if seconds < 60:
        return f"{seconds:.1f}s"
    minutes = int(seconds // 60)
    return f"{minutes}m {seconds % 60:.1f}s"


# =============================================================================
# Path Utilities
# =============================================================================


def get_project_root(start_dir: Optional[Path] = None) -> Optional[Path]:
    """Find project root (directory containing Cargo.toml).

    Searches from start_dir (or cwd) upward to the filesystem root.
    """
    if start_dir is None:
        start_dir = Path.cwd()

    current = start_dir.resolve()
    while True:
        if (current / "Cargo.toml").exists():
            return current
        if current == current.parent:
            return None
        current = current.parent


# =============================================================================
# Socket Utilities
# =============================================================================


def find_free_port(host: str = "127.0.0.1") -> int:
    """Ask the OS for an unused TCP port on ``host``."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind((host, 0))
        return s.getsockname()[1]


def port_in_use(host: str, port: int) -> bool:
    """Check whether something is already listening on host:port."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.settimeout(0.5)
        return s.connect_ex((host, port)) == 0


async def wait_for_port(host: str, port: int, timeout: float = 30.0, interval: float = 0.05) -> bool:
    """Wait until a TCP connection to host:port succeeds.

    Returns False if ``timeout`` elapses first.
    """
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        try:
            _, writer = await asyncio.open_connection(host, port)
        except OSError:
            await asyncio.sleep(interval)
            continue
        writer.close()
        try:
            await writer.wait_closed()
        except OSError:
            pass
        return True
    return False
