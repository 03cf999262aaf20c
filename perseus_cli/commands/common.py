"""
Helpers shared by the command handlers.
"""

from __future__ import annotations

import argparse
import asyncio
import atexit
import logging
import signal
import sys
from pathlib import Path
from typing import Any, Awaitable, Callable

from perseus_cli.build.config import ProjectConfig, load_config
from perseus_cli.build.pipeline import BuildPipeline, BuildRun, report
from perseus_cli.build.stages import standard_stages
from perseus_cli.core.errors import ConfigError
from perseus_cli.core.utils import get_project_root
from perseus_cli.plugins.fetcher import PluginFetcher
from perseus_cli.plugins.tools import resolve_tools
from perseus_cli.process.supervisor import ProcessSupervisor

logger = logging.getLogger(__name__)


def resolve_config(args: argparse.Namespace, **overrides: Any) -> ProjectConfig:
    """Locate the project from ``--project`` (or cwd) and load its config."""
    start = Path(args.project) if getattr(args, "project", None) else None
    root = get_project_root(start)
    if root is None:
        raise ConfigError("No Cargo.toml found in this directory or any parent")
    return load_config(root, verbose=getattr(args, "verbose", False), **overrides)


def run_supervised(body: Callable[[ProcessSupervisor], Awaitable[int]]) -> int:
    """Run ``body`` on a fresh event loop with a supervisor that outlives it.

    Every child is terminated before returning, including on Ctrl+C (the
    KeyboardInterrupt is re-raised afterwards) and SIGTERM. ``atexit``
    covers anything that escapes.
    """
    supervisor = ProcessSupervisor()
    atexit.register(supervisor.kill_all_now)

    async def main() -> int:
        task = asyncio.current_task()
        loop = asyncio.get_running_loop()
        if sys.platform != "win32" and task is not None:
            loop.add_signal_handler(signal.SIGTERM, task.cancel)
        try:
            return await body(supervisor)
        finally:
            await supervisor.terminate_all()

    try:
        return asyncio.run(main())
    except asyncio.CancelledError:
        raise KeyboardInterrupt from None
    finally:
        atexit.unregister(supervisor.kill_all_now)


async def build_once(config: ProjectConfig, supervisor: ProcessSupervisor) -> BuildRun:
    """Resolve tools, run the full pipeline once, and print the summary."""
    tools = await resolve_tools(config, PluginFetcher(config.cache_dir))
    pipeline = BuildPipeline(standard_stages(config, tools), supervisor)
    run = await pipeline.run()
    report(run, config.verbose)
    return run
