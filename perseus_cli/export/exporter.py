"""
Static export.

Asks the engine for its route list, starts it in serve mode on a private
port, requests every route with bounded concurrency, and mirrors the
responses to disk:

    /            -> index.html
    /about       -> about/index.html
    /feed.xml    -> feed.xml
"""

from __future__ import annotations

import asyncio
import json
import logging
import shutil
from dataclasses import dataclass
from enum import Enum
from pathlib import Path, PurePosixPath
from typing import Iterable, Optional
from urllib.parse import unquote, urlsplit

import httpx

from perseus_cli.core.errors import ExportError, SpawnError
from perseus_cli.core.utils import ENGINE_OPERATION_VAR, find_free_port, wait_for_port
from perseus_cli.export.archive import create_archive
from perseus_cli.process.supervisor import CommandSpec, ProcessSupervisor

logger = logging.getLogger(__name__)

ROUTES_ROLE = "export:routes"
ENGINE_ROLE = "export:engine"

DEFAULT_CONCURRENCY = 8
REQUEST_TIMEOUT = 30.0
STARTUP_TIMEOUT = 30.0


# =============================================================================
# Data Classes
# =============================================================================


class ExportStatus(str, Enum):
    COMPLETED = "completed"
    COMPLETED_WITH_WARNINGS = "completed with warnings"


@dataclass(frozen=True)
class Route:
    path: str
    required: bool = True


@dataclass(frozen=True)
class RouteResult:
    route: str
    required: bool
    output: Optional[Path] = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass(frozen=True)
class Package:
    """Result of an export."""

    root: Path
    archive: Optional[Path]
    files: tuple[Path, ...]
    failures: tuple[RouteResult, ...]
    status: ExportStatus

    @property
    def failed_routes(self) -> list[str]:
        return [f.route for f in self.failures]


# =============================================================================
# Route Handling
# =============================================================================


def parse_routes(text: str) -> list[Route]:
    """Parse the engine's route list.

    Accepts a JSON array whose items are either path strings (required) or
    ``{"path": ..., "required": bool}`` objects, optionally wrapped as
    ``{"routes": [...]}``.
    """
    try:
        data = json.loads(text)
    except json.JSONDecodeError as e:
        raise ExportError(f"Engine returned invalid route JSON: {e}") from e

    if isinstance(data, dict):
        data = data.get("routes")
    if not isinstance(data, list):
        raise ExportError("Engine route list must be a JSON array")

    routes: list[Route] = []
    seen: set[str] = set()
    for item in data:
        if isinstance(item, str):
            route = Route(item)
        elif isinstance(item, dict) and isinstance(item.get("path"), str):
            route = Route(item["path"], bool(item.get("required", True)))
        else:
            raise ExportError(f"Invalid route entry: {item!r}")
        if not route.path.startswith("/"):
            route = Route("/" + route.path, route.required)
        if route.path not in seen:
            seen.add(route.path)
            routes.append(route)
    return routes


def mirror_path(route: str) -> PurePosixPath:
    """Relative output path for ``route``. Raises ValueError on traversal."""
    path = unquote(urlsplit(route).path)
    parts = [p for p in path.split("/") if p]
    if any(p in (".", "..") for p in parts):
        raise ValueError(f"Route escapes the export root: {route}")
    if not parts:
        return PurePosixPath("index.html")
    rel = PurePosixPath(*parts)
    if path.endswith("/") or not rel.suffix:
        return rel / "index.html"
    return rel


async def crawl(
    client: httpx.AsyncClient,
    routes: Iterable[Route],
    output_root: Path,
    concurrency: int = DEFAULT_CONCURRENCY,
) -> list[RouteResult]:
    """Request each route and write successful bodies under ``output_root``.

    Route failures are returned as results; a filesystem write failure
    raises ExportError.
    """
    semaphore = asyncio.Semaphore(concurrency)

    async def fetch(route: Route) -> RouteResult:
        async with semaphore:
            try:
                target = output_root / mirror_path(route.path)
            except ValueError as e:
                return RouteResult(route.path, route.required, error=str(e))

            try:
                response = await client.get(route.path)
            except httpx.HTTPError as e:
                return RouteResult(route.path, route.required, error=f"request failed: {e}")
            if response.is_error:
                return RouteResult(route.path, route.required, error=f"HTTP {response.status_code}")

            try:
                target.parent.mkdir(parents=True, exist_ok=True)
                target.write_bytes(response.content)
            except OSError as e:
                raise ExportError(f"Could not write {target}: {e}") from e
            logger.debug("exported %s -> %s", route.path, target)
            return RouteResult(route.path, route.required, output=target)

    return list(await asyncio.gather(*(fetch(r) for r in routes)))


# =============================================================================
# Exporter
# =============================================================================


class Exporter:
    """Drives an engine binary through route enumeration and crawling."""

    def __init__(
        self,
        supervisor: ProcessSupervisor,
        engine: CommandSpec,
        *,
        static_dirs: Iterable[tuple[Path, str]] = (),
        host: str = "127.0.0.1",
        concurrency: int = DEFAULT_CONCURRENCY,
        request_timeout: float = REQUEST_TIMEOUT,
        startup_timeout: float = STARTUP_TIMEOUT,
    ):
        self.supervisor = supervisor
        self.engine = engine
        self.static_dirs = list(static_dirs)
        self.host = host
        self.concurrency = concurrency
        self.request_timeout = request_timeout
        self.startup_timeout = startup_timeout

    async def enumerate_routes(self) -> list[Route]:
        command = self.engine.with_env(**{ENGINE_OPERATION_VAR: "routes"})
        try:
            handle = await self.supervisor.spawn(ROUTES_ROLE, command, capture=True)
        except SpawnError as e:
            raise ExportError(f"Could not run engine: {e}") from e
        outcome = await handle.wait()
        if not outcome.succeeded:
            raise ExportError(
                f"Route enumeration failed (exit code {outcome.returncode}):\n{outcome.diagnostics}"
            )
        return parse_routes(outcome.stdout)

    async def export(self, output_root: Path, archive: Optional[Path] = None) -> Package:
        """Export every route to ``output_root``; optionally archive the tree."""
        routes = await self.enumerate_routes()
        logger.debug("engine reported %s route(s)", len(routes))

        try:
            if output_root.exists():
                shutil.rmtree(output_root)
            output_root.mkdir(parents=True)
        except OSError as e:
            raise ExportError(f"Could not prepare {output_root}: {e}") from e

        port = await self._start_engine()
        try:
            async with httpx.AsyncClient(
                base_url=f"http://{self.host}:{port}",
                timeout=self.request_timeout,
                trust_env=False,
            ) as client:
                results = await crawl(client, routes, output_root, self.concurrency)
        finally:
            if self.supervisor.get(ENGINE_ROLE) is not None:
                await self.supervisor.terminate(ENGINE_ROLE)

        self._copy_static(output_root)

        failures = tuple(r for r in results if not r.ok)
        required = [r for r in failures if r.required]
        if required:
            details = "\n".join(f"  {r.route}: {r.error}" for r in required)
            raise ExportError(
                f"Required route(s) failed:\n{details}",
                [r.route for r in required],
                {r.route: r.error or "" for r in failures},
            )

        files = tuple(r.output for r in results if r.output is not None)
        archive_path = create_archive(output_root, archive) if archive else None
        status = ExportStatus.COMPLETED_WITH_WARNINGS if failures else ExportStatus.COMPLETED
        return Package(output_root, archive_path, files, failures, status)

    async def _start_engine(self) -> int:
        port = find_free_port(self.host)
        command = self.engine.with_env(
            **{ENGINE_OPERATION_VAR: "serve"},
            PERSEUS_HOST=self.host,
            PERSEUS_PORT=str(port),
        )
        try:
            handle = await self.supervisor.spawn(ENGINE_ROLE, command, capture=True)
        except SpawnError as e:
            raise ExportError(f"Could not start engine: {e}") from e

        ready = asyncio.ensure_future(wait_for_port(self.host, port, self.startup_timeout))
        exited = asyncio.ensure_future(handle.wait())
        done, _ = await asyncio.wait({ready, exited}, return_when=asyncio.FIRST_COMPLETED)
        if exited in done:
            ready.cancel()
            outcome = exited.result()
            raise ExportError(
                f"Engine exited with code {outcome.returncode} before serving:\n{outcome.diagnostics}"
            )
        exited.cancel()
        if not ready.result():
            await self.supervisor.terminate(ENGINE_ROLE)
            raise ExportError(f"Engine did not listen on port {port} within {self.startup_timeout:.0f}s")
        return port

    def _copy_static(self, output_root: Path) -> None:
        for source, dest in self.static_dirs:
            if not source.is_dir():
                continue
            try:
                shutil.copytree(source, output_root / dest, dirs_exist_ok=True)
            except (OSError, shutil.Error) as e:
                raise ExportError(f"Could not copy {source}: {e}") from e
