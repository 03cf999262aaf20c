"""
Toolchain resolution.

System binaries named by PERSEUS_WASM_BINDGEN_PATH / PERSEUS_WASM_OPT_PATH
win; otherwise the pinned versions are fetched into the cache.
"""

from __future__ import annotations

from perseus_cli.build.config import ProjectConfig
from perseus_cli.build.stages import ToolPaths
from perseus_cli.core.errors import IntegrityError
from perseus_cli.core.utils import log
from perseus_cli.plugins.fetcher import PluginFetcher


async def fetch_tool(fetcher: PluginFetcher, artifact_id: str, version: str) -> str:
    """Ensure ``artifact_id`` is cached and return its executable path."""
    if fetcher.lookup(artifact_id, version) is None:
        log.info(f"Downloading {artifact_id} {version}...")
    entry = await fetcher.ensure(artifact_id, version)
    spec = fetcher.registry[artifact_id]
    binary = fetcher.binary(artifact_id, version)
    if binary is None:
        raise IntegrityError(f"{spec.binary} missing from cache entry {entry}")
    return str(binary)


async def resolve_tools(config: ProjectConfig, fetcher: PluginFetcher) -> ToolPaths:
    """Locate wasm-bindgen, and wasm-opt for release builds."""
    bindgen = config.wasm_bindgen_path or await fetch_tool(
        fetcher, "wasm-bindgen", config.wasm_bindgen_version
    )
    wasm_opt = None
    if config.release:
        wasm_opt = config.wasm_opt_path or await fetch_tool(
            fetcher, "wasm-opt", config.wasm_opt_version
        )
    return ToolPaths(wasm_bindgen=bindgen, wasm_opt=wasm_opt)
