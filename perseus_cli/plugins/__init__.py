"""
perseus_cli.plugins - Prebuilt toolchain downloads and resolution.
"""

from perseus_cli.plugins.fetcher import (
    ARTIFACTS,
    ArtifactSpec,
    PluginFetcher,
    TransientFetchError,
    current_platform,
    find_binary,
)
from perseus_cli.plugins.tools import fetch_tool, resolve_tools

__all__ = [
    "ARTIFACTS",
    "ArtifactSpec",
    "PluginFetcher",
    "TransientFetchError",
    "current_platform",
    "fetch_tool",
    "find_binary",
    "resolve_tools",
]
