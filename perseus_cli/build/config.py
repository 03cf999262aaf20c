"""
Build configuration for perseus projects.

Constants, the ProjectConfig dataclass, and project detection from the
Cargo manifest and lockfile.
"""

from __future__ import annotations

import os
import shlex
import sys
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

from perseus_cli.core.errors import ConfigError
from perseus_cli.core.utils import (
    CACHE_DIR,
    DEPLOY_DIR_NAME,
    DIST_DIR_NAME,
    EXPORT_DIR_NAME,
    TARGET_DIR_NAME,
)
from perseus_cli.watch.debounce import DEBOUNCE_SECONDS
from perseus_cli.watch.watcher import DEFAULT_IGNORE

# =============================================================================
# Constants
# =============================================================================

DEFAULT_HOST = "127.0.0.1"
DEFAULT_PORT = 8080

WASM_TARGET = "wasm32-unknown-unknown"

# Used when neither the environment nor Cargo.lock pins a version
DEFAULT_WASM_BINDGEN_VERSION = "0.2.87"
DEFAULT_WASM_OPT_VERSION = "version_113"

# Name the browser bundle is emitted under inside dist/pkg
BUNDLE_NAME = "perseus_engine"


# =============================================================================
# Data Classes
# =============================================================================


@dataclass
class ProjectConfig:
    """Configuration for one project on one host."""

    project_root: Path
    package_name: str
    release: bool = False
    compress: bool = False
    host: str = DEFAULT_HOST
    port: int = DEFAULT_PORT
    debounce: float = DEBOUNCE_SECONDS
    cache_dir: Path = field(default_factory=lambda: CACHE_DIR)
    custom_watch: list[Path] = field(default_factory=list)
    cargo_path: str = "cargo"
    cargo_engine_args: list[str] = field(default_factory=list)
    cargo_browser_args: list[str] = field(default_factory=list)
    wasm_bindgen_args: list[str] = field(default_factory=list)
    wasm_opt_args: list[str] = field(default_factory=lambda: ["-Oz"])
    wasm_bindgen_version: str = DEFAULT_WASM_BINDGEN_VERSION
    wasm_opt_version: str = DEFAULT_WASM_OPT_VERSION
    wasm_bindgen_path: Optional[str] = None  # system binary, skips the fetcher
    wasm_opt_path: Optional[str] = None
    verbose: bool = False

    # --- Paths ---

    @property
    def profile(self) -> str:
        return "release" if self.release else "debug"

    @property
    def dist_dir(self) -> Path:
        return self.project_root / DIST_DIR_NAME

    @property
    def static_dir(self) -> Path:
        """Pages rendered at build time by the engine."""
        return self.dist_dir / "static"

    @property
    def pkg_dir(self) -> Path:
        """Browser bundle output (wasm + JS glue)."""
        return self.dist_dir / "pkg"

    @property
    def builds_dir(self) -> Path:
        """Published copies of successful builds served by the dev server."""
        return self.dist_dir / "builds"

    @property
    def export_dir(self) -> Path:
        return self.dist_dir / EXPORT_DIR_NAME

    @property
    def deploy_dir(self) -> Path:
        return self.project_root / DEPLOY_DIR_NAME

    @property
    def engine_target_dir(self) -> Path:
        return self.dist_dir / "target_engine"

    @property
    def browser_target_dir(self) -> Path:
        return self.dist_dir / "target_wasm"

    @property
    def engine_binary(self) -> Path:
        suffix = ".exe" if sys.platform == "win32" else ""
        return self.engine_target_dir / self.profile / f"{self.package_name}{suffix}"

    @property
    def browser_wasm(self) -> Path:
        crate = self.package_name.replace("-", "_")
        return self.browser_target_dir / WASM_TARGET / self.profile / f"{crate}.wasm"

    @property
    def bundle_wasm(self) -> Path:
        return self.pkg_dir / f"{BUNDLE_NAME}_bg.wasm"

    def source_inputs(self) -> list[Path]:
        """Paths whose changes matter to the Rust compilers."""
        root = self.project_root
        return [root / "src", root / "Cargo.toml", root / "Cargo.lock"]

    def custom_watch_paths(self) -> list[Path]:
        """Custom watch paths resolved against the project root."""
        return [p if p.is_absolute() else self.project_root / p for p in map(Path, self.custom_watch)]

    def watch_roots(self) -> list[Path]:
        """Source roots for watch mode, plus any custom paths that exist."""
        candidates = [
            self.project_root / "src",
            self.project_root / "static",
            self.project_root / "translations",
            self.project_root / "Cargo.toml",
            *self.custom_watch_paths(),
        ]
        roots: list[Path] = []
        for path in candidates:
            if path.exists() and path not in roots:
                roots.append(path)
        return roots

    def ignore_patterns(self) -> list[str | Path]:
        """Watch ignore set: defaults plus absolute output and cache dirs."""
        return [
            *DEFAULT_IGNORE,
            self.dist_dir,
            self.deploy_dir,
            self.project_root / TARGET_DIR_NAME,
            self.cache_dir,
        ]


# =============================================================================
# Project Detection
# =============================================================================


def _read_toml(path: Path) -> dict[str, Any]:
    try:
        with path.open("rb") as f:
            return tomllib.load(f)
    except tomllib.TOMLDecodeError as e:
        raise ConfigError(f"{path.name} is not valid TOML: {e}") from e


def locked_version(lockfile: Path, package: str) -> Optional[str]:
    """Return the version of ``package`` pinned in Cargo.lock, if any."""
    if not lockfile.exists():
        return None
    data = _read_toml(lockfile)
    for entry in data.get("package", []):
        if entry.get("name") == package:
            return entry.get("version")
    return None


def detect_project(project_root: Path) -> tuple[str, Optional[str]]:
    """Detect package name and the locked wasm-bindgen version.

    Returns (package_name, wasm_bindgen_version or None).
    """
    manifest = project_root / "Cargo.toml"
    if not manifest.exists():
        raise ConfigError(f"Cargo.toml not found in {project_root}")

    data = _read_toml(manifest)
    package_name = data.get("package", {}).get("name")
    if not package_name:
        raise ConfigError("Could not extract [package].name from Cargo.toml")

    bindgen = locked_version(project_root / "Cargo.lock", "wasm-bindgen")
    return package_name, bindgen


def _env_args(name: str) -> Optional[list[str]]:
    value = os.environ.get(name)
    return shlex.split(value) if value else None


def load_config(project_root: Path, **overrides: Any) -> ProjectConfig:
    """Build a ProjectConfig.

    Precedence: dataclass defaults < Cargo.lock < environment < overrides.
    Overrides whose value is None are ignored so argparse defaults can be
    passed straight through.
    """
    project_root = project_root.resolve()
    package_name, bindgen_version = detect_project(project_root)

    values: dict[str, Any] = {}
    if bindgen_version:
        values["wasm_bindgen_version"] = bindgen_version

    env = os.environ
    if env.get("PERSEUS_HOST"):
        values["host"] = env["PERSEUS_HOST"]
    if env.get("PERSEUS_PORT"):
        try:
            values["port"] = int(env["PERSEUS_PORT"])
        except ValueError as e:
            raise ConfigError(f"PERSEUS_PORT must be an integer, got {env['PERSEUS_PORT']!r}") from e
    if env.get("PERSEUS_CACHE_DIR"):
        values["cache_dir"] = Path(env["PERSEUS_CACHE_DIR"])
    if env.get("PERSEUS_WASM_BINDGEN_VERSION"):
        values["wasm_bindgen_version"] = env["PERSEUS_WASM_BINDGEN_VERSION"]
    if env.get("PERSEUS_WASM_OPT_VERSION"):
        values["wasm_opt_version"] = env["PERSEUS_WASM_OPT_VERSION"]
    if env.get("PERSEUS_WASM_BINDGEN_PATH"):
        values["wasm_bindgen_path"] = env["PERSEUS_WASM_BINDGEN_PATH"]
    if env.get("PERSEUS_WASM_OPT_PATH"):
        values["wasm_opt_path"] = env["PERSEUS_WASM_OPT_PATH"]
    for var, key in (
        ("PERSEUS_CARGO_ENGINE_ARGS", "cargo_engine_args"),
        ("PERSEUS_CARGO_BROWSER_ARGS", "cargo_browser_args"),
        ("PERSEUS_WASM_BINDGEN_ARGS", "wasm_bindgen_args"),
        ("PERSEUS_WASM_OPT_ARGS", "wasm_opt_args"),
    ):
        args = _env_args(var)
        if args is not None:
            values[key] = args

    values.update({k: v for k, v in overrides.items() if v is not None})

    if "port" in values and not 0 < int(values["port"]) < 65536:
        raise ConfigError(f"Port out of range: {values['port']}")

    return ProjectConfig(project_root=project_root, package_name=package_name, **values)
