"""
Tests for static export: route parsing, path mirroring, crawling with
partial failure, and a full export against a scripted engine.
"""

from __future__ import annotations

import json
from pathlib import Path, PurePosixPath

import httpx
import pytest

from conftest import engine_spec
from perseus_cli.core.errors import ExportError
from perseus_cli.export.exporter import (
    ExportStatus,
    Exporter,
    Route,
    crawl,
    mirror_path,
    parse_routes,
)
from perseus_cli.process.supervisor import ProcessSupervisor

TEN_ROUTES = [Route(f"/page{i}") for i in range(9)] + [Route("/broken", required=False)]


def site_transport() -> httpx.MockTransport:
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/broken":
            return httpx.Response(500, text="boom")
        return httpx.Response(200, html=f"<html><body>{request.url.path}</body></html>")

    return httpx.MockTransport(handler)


# =============================================================================
# Route Handling
# =============================================================================


@pytest.mark.evergreen
class TestMirrorPath:
    """Routes map onto relative output files."""

    @pytest.mark.parametrize(
        "route, expected",
        [
            ("/", "index.html"),
            ("", "index.html"),
            ("/about", "about/index.html"),
            ("/about/", "about/index.html"),
            ("/blog/first-post", "blog/first-post/index.html"),
            ("/feed.xml", "feed.xml"),
            ("/docs/intro?lang=en", "docs/intro/index.html"),
            ("/caf%C3%A9", "café/index.html"),
        ],
    )
    def test_mapping(self, route: str, expected: str) -> None:
        assert mirror_path(route) == PurePosixPath(expected)

    def test_traversal_is_rejected(self) -> None:
        with pytest.raises(ValueError):
            mirror_path("/../../etc/passwd")


@pytest.mark.evergreen
class TestParseRoutes:
    """The engine's route list format."""

    def test_plain_strings_are_required(self) -> None:
        routes = parse_routes('["/", "/about"]')
        assert routes == [Route("/"), Route("/about")]

    def test_objects_and_wrapper(self) -> None:
        text = json.dumps({"routes": ["/", {"path": "/drafts", "required": False}]})
        routes = parse_routes(text)
        assert routes[1] == Route("/drafts", required=False)

    def test_leading_slash_added_and_duplicates_dropped(self) -> None:
        routes = parse_routes('["about", "/about", "/"]')
        assert [r.path for r in routes] == ["/about", "/"]

    def test_invalid_json(self) -> None:
        with pytest.raises(ExportError, match="invalid route JSON"):
            parse_routes("not json")

    def test_invalid_entry(self) -> None:
        with pytest.raises(ExportError, match="Invalid route entry"):
            parse_routes("[42]")

    def test_not_a_list(self) -> None:
        with pytest.raises(ExportError, match="array"):
            parse_routes('{"pages": []}')


# =============================================================================
# Crawl
# =============================================================================


@pytest.mark.evergreen
class TestCrawl:
    """Crawling writes successes and reports failures per route."""

    @pytest.mark.asyncio
    async def test_partial_failure(self, tmp_path: Path) -> None:
        """Ten routes with one failing yields nine files and one failure."""
        async with httpx.AsyncClient(transport=site_transport(), base_url="http://engine") as client:
            results = await crawl(client, TEN_ROUTES, tmp_path, concurrency=3)

        written = [r for r in results if r.ok]
        failed = [r for r in results if not r.ok]
        assert len(written) == 9
        assert [r.route for r in failed] == ["/broken"]
        assert failed[0].error == "HTTP 500"
        assert not failed[0].required
        assert (tmp_path / "page3" / "index.html").read_text() == "<html><body>/page3</body></html>"
        assert sorted(p.name for p in tmp_path.iterdir()) == [f"page{i}" for i in range(9)]

    @pytest.mark.asyncio
    async def test_transport_errors_become_failures(self, tmp_path: Path) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler), base_url="http://engine") as client:
            results = await crawl(client, [Route("/")], tmp_path)

        assert not results[0].ok
        assert "request failed" in results[0].error

    @pytest.mark.asyncio
    async def test_traversing_route_is_a_failure(self, tmp_path: Path) -> None:
        async with httpx.AsyncClient(transport=site_transport(), base_url="http://engine") as client:
            results = await crawl(client, [Route("/../x")], tmp_path / "out")
        assert not results[0].ok


# =============================================================================
# Full Export
# =============================================================================


@pytest.mark.evergreen
@pytest.mark.slow
class TestExporter:
    """End-to-end export driving the scripted engine."""

    @pytest.mark.asyncio
    async def test_export_with_optional_failure(self, tmp_path: Path) -> None:
        bundle = tmp_path / "pkg"
        bundle.mkdir()
        (bundle / "perseus_engine.js").write_text("init();\n")
        supervisor = ProcessSupervisor()
        exporter = Exporter(supervisor, engine_spec(), static_dirs=[(bundle, ".perseus")])
        output = tmp_path / "exported"

        package = await exporter.export(output, archive=tmp_path / "site.tar.gz")

        assert package.status is ExportStatus.COMPLETED_WITH_WARNINGS
        assert package.status.value == "completed with warnings"
        assert len(package.files) == 9
        assert package.failed_routes == ["/broken"]
        assert (output / "index.html").is_file()
        assert (output / "blog" / "first" / "index.html").is_file()
        assert (output / "feed.xml").read_text() == "<rss></rss>"
        assert (output / ".perseus" / "perseus_engine.js").is_file()
        assert package.archive is not None and package.archive.is_file()
        assert supervisor.roles() == []

    @pytest.mark.asyncio
    async def test_required_failure_raises(self, tmp_path: Path) -> None:
        routes = json.dumps(["/", "/broken"])
        supervisor = ProcessSupervisor()
        exporter = Exporter(supervisor, engine_spec(FAKE_ROUTES=routes))

        with pytest.raises(ExportError) as excinfo:
            await exporter.export(tmp_path / "exported")

        assert excinfo.value.failed_routes == ["/broken"]
        assert excinfo.value.errors == {"/broken": "HTTP 500"}
        assert "/broken: HTTP 500" in str(excinfo.value)
        assert supervisor.roles() == []

    @pytest.mark.asyncio
    async def test_all_routes_succeed(self, tmp_path: Path) -> None:
        exporter = Exporter(ProcessSupervisor(), engine_spec(FAKE_ROUTES='["/", "/about"]'))
        package = await exporter.export(tmp_path / "exported")
        assert package.status is ExportStatus.COMPLETED
        assert package.failures == ()
        assert package.archive is None

    @pytest.mark.asyncio
    async def test_export_archive_is_reproducible(self, tmp_path: Path) -> None:
        """Re-exporting unchanged input gives a byte-identical archive."""
        exporter = Exporter(ProcessSupervisor(), engine_spec(FAKE_ROUTES='["/", "/about", "/feed.xml"]'))

        first = await exporter.export(tmp_path / "exported", archive=tmp_path / "one.tar.gz")
        second = await exporter.export(tmp_path / "exported", archive=tmp_path / "two.tar.gz")

        assert first.archive.read_bytes() == second.archive.read_bytes()

    @pytest.mark.asyncio
    async def test_engine_that_cannot_serve(self, tmp_path: Path) -> None:
        exporter = Exporter(ProcessSupervisor(), engine_spec(FAKE_FAIL_START="1"))
        with pytest.raises(ExportError, match="refused to start"):
            await exporter.export(tmp_path / "exported")
