"""perseus export -- Crawl every route into a static site."""

from __future__ import annotations

import argparse
import asyncio
from pathlib import Path
from typing import Optional

from perseus_cli.build.config import ProjectConfig
from perseus_cli.build.stages import engine_command
from perseus_cli.commands.common import build_once, resolve_config, run_supervised
from perseus_cli.core.errors import ExportError
from perseus_cli.core.utils import log
from perseus_cli.export.exporter import ExportStatus, Exporter, Package
from perseus_cli.process.supervisor import ProcessSupervisor
from perseus_cli.serve.server import DevServer


async def export_site(
    config: ProjectConfig,
    supervisor: ProcessSupervisor,
    archive: Optional[Path] = None,
) -> Package:
    """Build, then export into ``dist/exported``."""
    run = await build_once(config, supervisor)
    run.raise_for_failure()

    exporter = Exporter(
        supervisor,
        engine_command(config, "serve"),
        static_dirs=[
            (config.pkg_dir, ".perseus"),
            (config.project_root / "static", ".perseus/static"),
        ],
        host=config.host,
    )
    log.info("Exporting routes...")
    try:
        package = await exporter.export(config.export_dir, archive)
    except ExportError as e:
        # Required failures are in the message; report the rest before it
        for route, error in e.errors.items():
            if route not in e.failed_routes:
                log.warning(f"{route}: {error}")
        raise

    for failure in package.failures:
        log.warning(f"{failure.route}: {failure.error}")
    if package.status is ExportStatus.COMPLETED:
        log.success(f"Exported {len(package.files)} page(s) to {package.root}")
    else:
        log.warning(
            f"Exported {len(package.files)} page(s) to {package.root} "
            f"({package.status.value}: {len(package.failures)} route(s) failed)"
        )
    if package.archive:
        log.success(f"Archive: {package.archive}")
    return package


async def serve_exported(root: Path, supervisor: ProcessSupervisor, host: str, port: int) -> None:
    """Serve an exported tree as plain files until interrupted."""
    server = DevServer(supervisor, root, host=host, port=port, live_reload=False)
    await server.start()
    log.success(f"Serving exported site at {server.url}")
    try:
        await asyncio.Event().wait()
    finally:
        await server.stop()


def cmd_export(args: argparse.Namespace) -> int:
    """Handle 'perseus export'."""
    config = resolve_config(args, release=args.release, host=args.host, port=args.port)
    archive = Path(args.archive).resolve() if args.archive else None
    log.header(f"Exporting {config.package_name}")

    async def body(supervisor) -> int:
        package = await export_site(config, supervisor, archive)
        if args.serve:
            await serve_exported(package.root, supervisor, config.host, config.port)
        return 0

    return run_supervised(body)
