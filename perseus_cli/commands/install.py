"""perseus install -- Fetch the wasm toolchain into the local cache."""

from __future__ import annotations

import argparse
import asyncio
import shutil

from perseus_cli.build.config import ProjectConfig
from perseus_cli.commands.common import resolve_config
from perseus_cli.core.utils import log
from perseus_cli.plugins.fetcher import PluginFetcher
from perseus_cli.plugins.tools import fetch_tool


async def install_tools(config: ProjectConfig, fetcher: PluginFetcher, force: bool = False) -> dict[str, str]:
    """Ensure every tool the build needs is available.

    Returns a mapping of tool name to executable path. System overrides are
    reported as-is and never downloaded.
    """
    wanted = (
        ("wasm-bindgen", config.wasm_bindgen_version, config.wasm_bindgen_path),
        ("wasm-opt", config.wasm_opt_version, config.wasm_opt_path),
    )
    installed: dict[str, str] = {}
    for artifact_id, version, override in wanted:
        if override:
            log.info(f"{artifact_id}: using system binary {override}")
            installed[artifact_id] = override
            continue
        entry = fetcher.lookup(artifact_id, version)
        if entry is not None and force:
            shutil.rmtree(entry)
        installed[artifact_id] = await fetch_tool(fetcher, artifact_id, version)
        log.success(f"{artifact_id} {version}: {installed[artifact_id]}")
    return installed


def cmd_install(args: argparse.Namespace) -> int:
    """Handle 'perseus install'."""
    config = resolve_config(args)
    log.header("Installing toolchain")
    log.dim(f"Cache: {config.cache_dir}")
    asyncio.run(install_tools(config, PluginFetcher(config.cache_dir), force=args.force))
    return 0
