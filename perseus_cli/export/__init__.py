"""
perseus_cli.export - Static export and deterministic archives.
"""

from perseus_cli.export.archive import collect_files, create_archive
from perseus_cli.export.exporter import (
    ExportStatus,
    Exporter,
    Package,
    Route,
    RouteResult,
    crawl,
    mirror_path,
    parse_routes,
)

__all__ = [
    "ExportStatus",
    "Exporter",
    "Package",
    "Route",
    "RouteResult",
    "collect_files",
    "crawl",
    "create_archive",
    "mirror_path",
    "parse_routes",
]
