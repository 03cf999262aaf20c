"""
Shared pytest fixtures for perseus CLI tests.

Provides throwaway projects, a scripted stand-in for the compiled engine
binary, and an in-process CLI runner.

Test Tier Markers:
  @pytest.mark.evergreen - Tests that always run, never skip (production tests)
  @pytest.mark.slow      - Tests that spawn real processes or sockets
"""

from __future__ import annotations

import io
import sys
from contextlib import redirect_stderr, redirect_stdout
from pathlib import Path
from typing import Optional

import pytest

from perseus_cli.build.config import ProjectConfig
from perseus_cli.process.supervisor import CommandSpec

FAKE_ENGINE = Path(__file__).parent / "fake_engine.py"

CARGO_TOML = """\
[package]
name = "{name}"
version = "0.1.0"
edition = "2021"

[dependencies]
perseus = "0.4"
"""

CARGO_LOCK = """\
version = 3

[[package]]
name = "wasm-bindgen"
version = "{bindgen}"
source = "registry+https://github.com/rust-lang/crates.io-index"

[[package]]
name = "perseus"
version = "0.4.3"
source = "registry+https://github.com/rust-lang/crates.io-index"
"""


def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line("markers", "evergreen: Tests that always run, never skip (production tests)")
    config.addinivalue_line("markers", "slow: Tests that spawn real processes or sockets")


# =============================================================================
# Project Fixtures
# =============================================================================


def make_project(root: Path, name: str = "my-app", bindgen: Optional[str] = None) -> Path:
    """Create a minimal perseus project layout under ``root``."""
    root.mkdir(parents=True, exist_ok=True)
    (root / "Cargo.toml").write_text(CARGO_TOML.format(name=name))
    if bindgen:
        (root / "Cargo.lock").write_text(CARGO_LOCK.format(bindgen=bindgen))
    (root / "src").mkdir(exist_ok=True)
    (root / "src" / "lib.rs").write_text("// app\n")
    (root / "static").mkdir(exist_ok=True)
    (root / "static" / "style.css").write_text("body { margin: 0; }\n")
    return root


@pytest.fixture
def project(tmp_path: Path) -> Path:
    """An isolated project directory with Cargo.toml, src/ and static/."""
    return make_project(tmp_path / "app")


@pytest.fixture
def config(project: Path, tmp_path: Path) -> ProjectConfig:
    """ProjectConfig for ``project`` with the cache kept inside tmp_path."""
    return ProjectConfig(
        project_root=project,
        package_name="my-app",
        cache_dir=tmp_path / "cache",
    )


@pytest.fixture(autouse=True)
def _isolate_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """Keep the developer's PERSEUS_* settings out of the tests."""
    for var in (
        "PERSEUS_HOST",
        "PERSEUS_PORT",
        "PERSEUS_CACHE_DIR",
        "PERSEUS_WASM_BINDGEN_VERSION",
        "PERSEUS_WASM_OPT_VERSION",
        "PERSEUS_WASM_BINDGEN_PATH",
        "PERSEUS_WASM_OPT_PATH",
        "PERSEUS_CARGO_ENGINE_ARGS",
        "PERSEUS_CARGO_BROWSER_ARGS",
        "PERSEUS_WASM_BINDGEN_ARGS",
        "PERSEUS_WASM_OPT_ARGS",
        "PERSEUS_ENGINE_OPERATION",
    ):
        monkeypatch.delenv(var, raising=False)


# =============================================================================
# Process Fixtures
# =============================================================================


def python_command(code: str, cwd: Optional[Path] = None, **env: str) -> CommandSpec:
    """A CommandSpec running ``code`` with the current interpreter."""
    return CommandSpec(program=sys.executable, args=("-c", code), cwd=cwd, env=env)


def engine_spec(**env: str) -> CommandSpec:
    """A CommandSpec for the scripted engine stand-in."""
    return CommandSpec(program=sys.executable, args=(str(FAKE_ENGINE),), env=env)


# =============================================================================
# CLI Runner
# =============================================================================


class CLIRunner:
    """Run ``perseus`` commands in-process and capture stdout and stderr together."""

    def run(self, args: list[str]) -> tuple[int, str]:
        from perseus_cli.cli import main

        buf = io.StringIO()
        with redirect_stdout(buf), redirect_stderr(buf):
            code = main(args)
        return code, buf.getvalue()


@pytest.fixture
def cli() -> CLIRunner:
    return CLIRunner()
