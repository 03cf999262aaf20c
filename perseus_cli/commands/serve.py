"""perseus serve -- Build, run the dev server, and optionally watch for changes."""

from __future__ import annotations

import argparse
import asyncio
import logging
from pathlib import Path

from perseus_cli.build.config import ProjectConfig
from perseus_cli.build.pipeline import BuildPipeline, BuildRun, report
from perseus_cli.build.stages import engine_command, engine_stages, standard_stages
from perseus_cli.commands.common import resolve_config, run_supervised
from perseus_cli.core.errors import ConfigError
from perseus_cli.core.utils import log
from perseus_cli.plugins.fetcher import PluginFetcher
from perseus_cli.plugins.tools import resolve_tools
from perseus_cli.process.supervisor import ProcessSupervisor
from perseus_cli.serve.server import DevServer
from perseus_cli.watch.watcher import Watcher

logger = logging.getLogger(__name__)


def make_dev_server(config: ProjectConfig, supervisor: ProcessSupervisor) -> DevServer:
    return DevServer(
        supervisor,
        config.static_dir,
        bundle_root=config.pkg_dir,
        assets_root=config.project_root / "static",
        builds_root=config.builds_dir,
        engine_binary=config.engine_binary,
        engine_command=engine_command(config, "serve"),
        host=config.host,
        port=config.port,
    )


async def watch_loop(config: ProjectConfig, pipeline: BuildPipeline, server: DevServer) -> None:
    """Rebuild on relevant changes and publish fresh runs to the server."""
    watcher = Watcher(config.watch_roots(), config.ignore_patterns(), config.debounce)

    async def publish(run: BuildRun) -> None:
        report(run, config.verbose)
        await server.apply(run)

    worker = asyncio.ensure_future(pipeline.serve_forever(publish))
    log.info("Watching for changes... (Ctrl+C to stop)")
    for root in watcher.roots:
        log.dim(f"  {root}")

    try:
        async for event in watcher.events():
            if not pipeline.relevant(event.paths):
                logger.debug("ignoring generation %s: no stage inputs changed", event.generation)
                continue
            count = len(event.paths)
            log.info(f"Change detected ({count} file{'s' if count != 1 else ''}), rebuilding")
            pipeline.submit(event.generation)
    finally:
        watcher.stop()
        pipeline.close()
        worker.cancel()


async def serve(
    config: ProjectConfig,
    supervisor: ProcessSupervisor,
    *,
    watch: bool = False,
    build: bool = True,
    run_server: bool = True,
) -> int:
    if build:
        tools = await resolve_tools(config, PluginFetcher(config.cache_dir))
        stages = standard_stages(config, tools)
    else:
        if not config.engine_binary.exists():
            raise ConfigError(f"No engine binary at {config.engine_binary}; run without --no-build first")
        stages = engine_stages(config)
    pipeline = BuildPipeline(stages, supervisor)

    first: BuildRun | None = None
    if build:
        first = await pipeline.run(0)
        report(first, config.verbose)
        if not first.succeeded and not watch:
            first.raise_for_failure()

    if not run_server:
        log.success("Build finished; not starting the server (--no-run)")
        return 0

    server = make_dev_server(config, supervisor)
    healthy = first is None or first.succeeded
    await server.start(sequence=first.sequence if first and healthy else 0, start_engine=healthy)
    if first is not None and not healthy:
        await server.apply(first)

    log.success(f"Serving at {server.url}")
    try:
        if watch:
            await watch_loop(config, pipeline, server)
        else:
            await asyncio.Event().wait()
    finally:
        await server.stop()
    return 0


def cmd_serve(args: argparse.Namespace) -> int:
    """Handle 'perseus serve'."""
    config = resolve_config(
        args,
        host=args.host,
        port=args.port,
        custom_watch=[Path(p) for p in args.custom_watch] or None,
    )
    log.header(f"Serving {config.package_name}")
    return run_supervised(
        lambda supervisor: serve(
            config,
            supervisor,
            watch=args.watch,
            build=not args.no_build,
            run_server=not args.no_run,
        )
    )
