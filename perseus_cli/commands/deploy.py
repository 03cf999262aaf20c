"""perseus deploy -- Release build assembled into a deployable directory."""

from __future__ import annotations

import argparse
import shutil
from pathlib import Path
from typing import Optional

from perseus_cli.build.config import ProjectConfig
from perseus_cli.commands.common import build_once, resolve_config, run_supervised
from perseus_cli.commands.export import export_site
from perseus_cli.core.errors import ExportError
from perseus_cli.core.utils import log
from perseus_cli.export.archive import create_archive
from perseus_cli.process.supervisor import ProcessSupervisor


def assemble_server(config: ProjectConfig, output: Path) -> None:
    """Lay out engine binary, rendered output, bundle, and static assets.

        pkg/
            server          engine binary
            dist/static/    rendered pages
            dist/pkg/       client bundle
            static/         project static assets
    """
    _reset(output)
    binary_name = "server.exe" if config.engine_binary.suffix == ".exe" else "server"
    shutil.copy2(config.engine_binary, output / binary_name)
    for source, dest in (
        (config.static_dir, output / "dist" / "static"),
        (config.pkg_dir, output / "dist" / "pkg"),
        (config.project_root / "static", output / "static"),
    ):
        if source.is_dir():
            shutil.copytree(source, dest)


def assemble_exported(root: Path, output: Path) -> None:
    _reset(output)
    shutil.copytree(root, output, dirs_exist_ok=True)


def _reset(output: Path) -> None:
    if output.exists():
        shutil.rmtree(output)
    output.mkdir(parents=True)


async def deploy(
    config: ProjectConfig,
    supervisor: ProcessSupervisor,
    output: Path,
    *,
    export: bool = False,
    archive: Optional[Path] = None,
) -> Path:
    if export:
        package = await export_site(config, supervisor)
        assemble_exported(package.root, output)
    else:
        run = await build_once(config, supervisor)
        run.raise_for_failure()
        try:
            assemble_server(config, output)
        except OSError as e:
            raise ExportError(f"Could not assemble {output}: {e}") from e

    log.success(f"Deployable output in {output}")
    if archive is not None:
        create_archive(output, archive, prefix=output.name)
        log.success(f"Archive: {archive}")
    return output


def cmd_deploy(args: argparse.Namespace) -> int:
    """Handle 'perseus deploy'."""
    config = resolve_config(args, release=True)
    output = Path(args.output).resolve() if args.output else config.deploy_dir
    archive = Path(args.archive).resolve() if args.archive else None
    log.header(f"Deploying {config.package_name}")
    return run_supervised(
        lambda supervisor: _deploy_body(config, supervisor, output, args.export, archive)
    )


async def _deploy_body(config, supervisor, output, export, archive) -> int:
    await deploy(config, supervisor, output, export=export, archive=archive)
    return 0
