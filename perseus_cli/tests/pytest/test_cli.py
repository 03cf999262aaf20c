"""
Tests for the perseus command line: argument parsing, dispatch, and exit
codes.
"""

from __future__ import annotations

from pathlib import Path

import pytest

from perseus_cli import __version__
from perseus_cli.cli import create_parser, main


# =============================================================================
# Parser
# =============================================================================


@pytest.mark.evergreen
class TestParser:
    """Subcommands and their flags."""

    def test_serve_flags(self) -> None:
        args = create_parser().parse_args(
            ["serve", "-w", "--port", "9000", "--custom-watch", "content", "--custom-watch", "i18n"]
        )
        assert args.command == "serve"
        assert args.watch
        assert args.port == 9000
        assert args.host is None
        assert args.custom_watch == ["content", "i18n"]
        assert not args.no_build

    def test_export_flags(self) -> None:
        args = create_parser().parse_args(["export", "--release", "--archive", "site.tar.gz", "-s"])
        assert args.release and args.serve
        assert args.archive == "site.tar.gz"

    def test_deploy_flags(self) -> None:
        args = create_parser().parse_args(["deploy", "-e", "-o", "out"])
        assert args.export
        assert args.output == "out"

    def test_global_flags(self) -> None:
        args = create_parser().parse_args(["-v", "--no-color", "--project", "/srv/app", "build", "--release"])
        assert args.verbose and args.no_color
        assert args.project == "/srv/app"
        assert args.release and not args.compress

    def test_version(self, capsys: pytest.CaptureFixture) -> None:
        with pytest.raises(SystemExit) as excinfo:
            create_parser().parse_args(["--version"])
        assert excinfo.value.code == 0
        assert __version__ in capsys.readouterr().out

    def test_unknown_command_exits(self) -> None:
        with pytest.raises(SystemExit):
            create_parser().parse_args(["launch"])


# =============================================================================
# Dispatch
# =============================================================================


@pytest.mark.evergreen
class TestMain:
    """Exit codes from main()."""

    def test_no_command_prints_help(self, capsys: pytest.CaptureFixture) -> None:
        assert main([]) == 0
        assert "Commands:" in capsys.readouterr().out

    def test_missing_project_fails(self, tmp_path: Path, cli) -> None:
        code, output = cli.run(["--no-color", "--project", str(tmp_path), "clean"])
        assert code == 1
        assert "Cargo.toml" in output

    def test_clean_dry_run(self, project: Path, cli) -> None:
        (project / "dist").mkdir()
        code, output = cli.run(["--no-color", "--project", str(project), "clean", "--dry-run"])
        assert code == 0
        assert "Would remove" in output
        assert (project / "dist").exists()

    def test_serve_without_engine_binary(self, project: Path, cli) -> None:
        code, output = cli.run(["--no-color", "--project", str(project), "serve", "--no-build"])
        assert code == 1
        assert "No engine binary" in output

    def test_install_with_system_tools(self, project: Path, cli, monkeypatch: pytest.MonkeyPatch) -> None:
        """System tool overrides need no download."""
        monkeypatch.setenv("PERSEUS_WASM_BINDGEN_PATH", "/usr/bin/wasm-bindgen")
        monkeypatch.setenv("PERSEUS_WASM_OPT_PATH", "/usr/bin/wasm-opt")
        code, output = cli.run(["--no-color", "--project", str(project), "install"])
        assert code == 0
        assert "using system binary /usr/bin/wasm-bindgen" in output

    def test_invalid_port_environment(self, project: Path, cli, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("PERSEUS_PORT", "eighty")
        code, _ = cli.run(["--no-color", "--project", str(project), "clean"])
        assert code == 1
