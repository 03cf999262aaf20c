"""
Development server.

Serves the latest successful build: rendered pages and the client bundle
straight from disk, everything else proxied to the running engine. Reloads
swap the (output tree, engine) pair atomically after in-flight requests
drain, then notify browsers over the live reload channel.
"""

from __future__ import annotations

import asyncio
import errno
import functools
import json
import logging
import threading
from dataclasses import replace
from http import HTTPStatus
from http.server import SimpleHTTPRequestHandler, ThreadingHTTPServer
from pathlib import Path
from typing import Optional
from urllib.parse import unquote, urlsplit

import httpx
from websockets.asyncio.server import serve as ws_serve

from perseus_cli.build.pipeline import BuildRun
from perseus_cli.build.stages import SERVER
from perseus_cli.core.errors import PortInUseError, SpawnError
from perseus_cli.core.utils import find_free_port, log, wait_for_port
from perseus_cli.process.supervisor import CommandSpec, ManagedProcess, ProcessSupervisor
from perseus_cli.serve.reload import ReloadBroadcaster, inject_script, ws_process_request
from perseus_cli.serve.state import (
    DevServerPhase,
    FailureReport,
    ServingSnapshot,
    ServingState,
)
from perseus_cli.serve.trees import BuildTrees

logger = logging.getLogger(__name__)

# =============================================================================
# Constants
# =============================================================================

ENGINE_ROLE = "engine"

STATUS_PATH = "/__perseus/status"
BUNDLE_PREFIX = "/.perseus/"
ASSETS_PREFIX = "/.perseus/static/"

# Seconds a request waits out a reload before getting 503
REQUEST_QUEUE_TIMEOUT = 10.0
# Seconds a reload waits for in-flight requests before stopping the engine
DRAIN_TIMEOUT = 5.0
ENGINE_STARTUP_TIMEOUT = 30.0
MAX_ENGINE_RESTARTS = 3
RETRY_AFTER_SECONDS = 1

HOP_BY_HOP = frozenset({
    "connection", "keep-alive", "proxy-authenticate", "proxy-authorization",
    "te", "trailers", "transfer-encoding", "upgrade", "host", "content-length",
    "content-encoding",
})


# =============================================================================
# HTTP Handler
# =============================================================================


class DevRequestHandler(SimpleHTTPRequestHandler):
    """Serves files from the current snapshot and proxies the rest."""

    protocol_version = "HTTP/1.1"

    def __init__(self, *args, dev_server: "DevServer", **kwargs):
        self.dev = dev_server
        super().__init__(*args, **kwargs)

    def log_message(self, format, *args):
        logger.debug("%s - %s", self.address_string(), format % args)

    def do_GET(self):
        self._dispatch()

    def do_HEAD(self):
        self._dispatch()

    def do_POST(self):
        self._dispatch()

    def do_PUT(self):
        self._dispatch()

    def do_PATCH(self):
        self._dispatch()

    def do_DELETE(self):
        self._dispatch()

    def _dispatch(self) -> None:
        path = unquote(urlsplit(self.path).path)
        if path == STATUS_PATH:
            self._send_body(HTTPStatus.OK, json.dumps(self.dev.status()).encode(), "application/json")
            return

        with self.dev.state.request(self.dev.request_timeout) as snapshot:
            if snapshot is None:
                self._unavailable("Server is reloading")
                return

            if self.command in ("GET", "HEAD"):
                target = resolve_static(snapshot, path)
                if target is not None:
                    self._send_file(target, snapshot)
                    return

            if snapshot.engine_url is None:
                self._send_body(HTTPStatus.NOT_FOUND, b"Not found\n", "text/plain")
                return
            self._proxy(snapshot)

    # --- Responses ---

    def _send_body(
        self,
        status: int,
        body: bytes,
        content_type: str,
        headers: Optional[list[tuple[str, str]]] = None,
    ) -> None:
        self.send_response(status)
        self.send_header("Content-Type", content_type)
        self.send_header("Content-Length", str(len(body)))
        self.send_header("Cache-Control", "no-cache, no-store, must-revalidate")
        for key, value in headers or ():
            self.send_header(key, value)
        self.end_headers()
        if self.command != "HEAD":
            self.wfile.write(body)

    def _unavailable(self, reason: str) -> None:
        self._send_body(
            HTTPStatus.SERVICE_UNAVAILABLE,
            f"{reason}, retry shortly\n".encode(),
            "text/plain",
            [("Retry-After", str(RETRY_AFTER_SECONDS))],
        )

    def _send_file(self, target: Path, snapshot: ServingSnapshot) -> None:
        content_type = self.guess_type(str(target))
        if target.suffix in (".html", ".htm"):
            html = target.read_text(encoding="utf-8", errors="replace")
            body = self.dev.decorate_html(html, snapshot).encode("utf-8")
            self._send_body(HTTPStatus.OK, body, "text/html; charset=utf-8")
            return

        gz = target.with_name(target.name + ".gz")
        if "gzip" in self.headers.get("Accept-Encoding", "") and gz.is_file():
            self._send_body(
                HTTPStatus.OK,
                gz.read_bytes(),
                content_type,
                [("Content-Encoding", "gzip"), ("Vary", "Accept-Encoding")],
            )
            return
        self._send_body(HTTPStatus.OK, target.read_bytes(), content_type)

    def _proxy(self, snapshot: ServingSnapshot) -> None:
        length = int(self.headers.get("Content-Length") or 0)
        body = self.rfile.read(length) if length else None
        headers = {k: v for k, v in self.headers.items() if k.lower() not in HOP_BY_HOP}
        headers.pop("Accept-Encoding", None)

        try:
            response = self.dev.client.request(
                self.command,
                f"{snapshot.engine_url}{self.path}",
                headers=headers,
                content=body,
            )
        except httpx.TransportError as e:
            logger.debug("proxy to %s failed: %s", snapshot.engine_url, e)
            self._unavailable("Engine unavailable")
            return

        content = response.content
        content_type = response.headers.get("content-type", "application/octet-stream")
        if content_type.startswith("text/html"):
            html = content.decode(response.encoding or "utf-8", errors="replace")
            content = self.dev.decorate_html(html, snapshot).encode("utf-8")
            content_type = "text/html; charset=utf-8"

        passthrough = [
            (k, v) for k, v in response.headers.multi_items()
            if k.lower() not in HOP_BY_HOP and k.lower() not in ("content-type", "cache-control")
        ]
        self._send_body(response.status_code, content, content_type, passthrough)


def resolve_static(snapshot: ServingSnapshot, url_path: str) -> Optional[Path]:
    """Map a URL path onto a file in the snapshot, or None to proxy it."""
    if url_path.startswith(ASSETS_PREFIX) and snapshot.assets_root is not None:
        return _within(snapshot.assets_root, url_path[len(ASSETS_PREFIX):])
    if url_path.startswith(BUNDLE_PREFIX) and snapshot.bundle_root is not None:
        return _within(snapshot.bundle_root, url_path[len(BUNDLE_PREFIX):])

    rel = url_path.lstrip("/")
    candidate = _within(snapshot.static_root, rel or "index.html")
    if candidate is None and not Path(rel).suffix:
        candidate = _within(snapshot.static_root, f"{rel}/index.html" if rel else "index.html")
    return candidate


def _within(root: Path, rel: str) -> Optional[Path]:
    root = root.resolve()
    target = (root / rel).resolve()
    if target != root and root not in target.parents:
        return None
    if target.is_dir():
        target = target / "index.html"
    return target if target.is_file() else None


# =============================================================================
# Dev Server
# =============================================================================


class DevServer:
    """HTTP server, live reload channel, and dev engine lifecycle.

    ``start``/``apply``/``stop`` run on the event loop; request handling
    runs on the HTTP server's threads and only reads ``state``.

    With ``builds_root`` set, every published build is copied out of the
    working directories (``static_root``, ``bundle_root`` and
    ``engine_binary``) into its own tree first, and requests are served
    from that copy. Without it the working directories are served directly.
    """

    def __init__(
        self,
        supervisor: ProcessSupervisor,
        static_root: Path,
        *,
        bundle_root: Optional[Path] = None,
        assets_root: Optional[Path] = None,
        builds_root: Optional[Path] = None,
        engine_binary: Optional[Path] = None,
        engine_command: Optional[CommandSpec] = None,
        host: str = "127.0.0.1",
        port: int = 8080,
        ws_port: Optional[int] = None,
        engine_host: str = "127.0.0.1",
        live_reload: bool = True,
        request_timeout: float = REQUEST_QUEUE_TIMEOUT,
        drain_timeout: float = DRAIN_TIMEOUT,
        startup_timeout: float = ENGINE_STARTUP_TIMEOUT,
        max_restarts: int = MAX_ENGINE_RESTARTS,
    ):
        self.supervisor = supervisor
        self.static_root = static_root
        self.bundle_root = bundle_root
        self.assets_root = assets_root
        self.engine_command = engine_command
        self.host = host
        self.port = port
        self.ws_port = ws_port if ws_port is not None else (port + 1 if port else 0)
        self.engine_host = engine_host
        self.live_reload = live_reload
        self.request_timeout = request_timeout
        self.drain_timeout = drain_timeout
        self.startup_timeout = startup_timeout
        self.max_restarts = max_restarts
        self.trees = (
            BuildTrees(builds_root, static_root, bundle_root, engine_binary)
            if builds_root is not None else None
        )

        self.state = ServingState()
        self.broadcaster = ReloadBroadcaster()
        self.client = httpx.Client(
            timeout=httpx.Timeout(30.0, connect=2.0),
            follow_redirects=False,
            trust_env=False,
        )

        self._httpd: Optional[ThreadingHTTPServer] = None
        self._http_thread: Optional[threading.Thread] = None
        self._ws_server = None
        self._monitor: Optional[asyncio.Task] = None
        self._reload_lock = asyncio.Lock()
        self._restarts = 0
        self._stopping = False

    @property
    def url(self) -> str:
        return f"http://{self.host or 'localhost'}:{self.port}"

    @property
    def phase(self) -> DevServerPhase:
        return self.state.phase

    def status(self) -> dict:
        status = self.state.status()
        status["clients"] = self.broadcaster.client_count
        return status

    def decorate_html(self, html: str, snapshot: ServingSnapshot) -> str:
        if not self.live_reload:
            return html
        return inject_script(html, self.ws_port, snapshot.sequence)

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def start(self, sequence: int = 0, start_engine: bool = True) -> None:
        """Bind both ports, start the engine, and begin serving ``sequence``.

        With ``start_engine`` False (no usable engine yet) only files are
        served until a successful build is applied.
        """
        handler = functools.partial(DevRequestHandler, dev_server=self, directory=str(self.static_root))
        try:
            self._httpd = ThreadingHTTPServer((self.host, self.port), handler)
        except OSError as e:
            if e.errno == errno.EADDRINUSE:
                raise PortInUseError(self.host, self.port) from e
            raise
        self._httpd.daemon_threads = True
        self.port = self._httpd.server_address[1]

        if self.live_reload:
            self.broadcaster.set_loop(asyncio.get_running_loop())
            self.broadcaster.sequence = sequence
            try:
                self._ws_server = await ws_serve(
                    self.broadcaster.handler,
                    self.host,
                    self.ws_port,
                    process_request=ws_process_request,
                )
            except OSError as e:
                self._httpd.server_close()
                if e.errno == errno.EADDRINUSE:
                    raise PortInUseError(self.host, self.ws_port) from e
                raise
            self.ws_port = next(iter(self._ws_server.sockets)).getsockname()[1]

        self._http_thread = threading.Thread(target=self._httpd.serve_forever, daemon=True)
        self._http_thread.start()

        try:
            snapshot = await self._publish(sequence)
            if self.engine_command is not None and start_engine:
                snapshot = await self._start_engine(snapshot)
        except (SpawnError, OSError):
            await self.stop()
            raise
        self.state.swap(snapshot)
        logger.debug("serving build #%s at %s", sequence, self.url)

    async def stop(self) -> None:
        """Stop serving, terminate the engine, and close both servers."""
        self._stopping = True
        self.state.stop()
        if self._monitor is not None:
            self._monitor.cancel()
        if self.supervisor.get(ENGINE_ROLE) is not None:
            await self.supervisor.terminate(ENGINE_ROLE)
        if self._ws_server is not None:
            self._ws_server.close()
            await self._ws_server.wait_closed()
            self._ws_server = None
        if self._httpd is not None:
            await asyncio.to_thread(self._httpd.shutdown)
            self._httpd.server_close()
            self._httpd = None
        self.client.close()

    # -------------------------------------------------------------------------
    # Publication
    # -------------------------------------------------------------------------

    async def apply(self, run: BuildRun) -> None:
        """Publish a resolved build run: reload on success, report on failure."""
        if not run.succeeded:
            report = FailureReport(run.sequence, run.failed_stage or "unknown", run.diagnostics)
            self.state.record_failure(report)
            self.broadcaster.notify_failure(run.sequence, report.stage, report.diagnostics)
            return

        self.state.record_failure(None)
        async with self._reload_lock:
            current = self.state.snapshot
            if self._stopping or (current is not None and run.sequence <= current.sequence):
                return
            snapshot = await self._publish(run.sequence)
            if self.engine_command is not None and (SERVER in run.changed or not self._engine_alive()):
                await self._reload_engine(snapshot)
            elif current is not None:
                self.state.swap(replace(snapshot, engine_host=current.engine_host, engine_port=current.engine_port))
            else:
                self.state.swap(snapshot)
            await self._prune(snapshot, current)
        self._restarts = 0
        self.broadcaster.notify_reload(run.sequence)

    # -------------------------------------------------------------------------
    # Build Trees
    # -------------------------------------------------------------------------

    async def _publish(self, sequence: int) -> ServingSnapshot:
        """Snapshot for ``sequence``, copying its output into its own tree first."""
        if self.trees is None:
            return ServingSnapshot(
                sequence=sequence,
                static_root=self.static_root,
                bundle_root=self.bundle_root,
                assets_root=self.assets_root,
            )
        tree = await asyncio.to_thread(self.trees.publish, sequence)
        return ServingSnapshot(
            sequence=sequence,
            static_root=tree.static_root,
            bundle_root=tree.bundle_root,
            assets_root=self.assets_root,
            engine_program=str(tree.engine_binary) if tree.engine_binary else None,
        )

    async def _prune(self, snapshot: ServingSnapshot, previous: Optional[ServingSnapshot]) -> None:
        # Requests that took the previous snapshot may still be reading its tree
        if self.trees is None:
            return
        keep = {snapshot.sequence}
        if previous is not None:
            keep.add(previous.sequence)
        await asyncio.to_thread(self.trees.prune, keep)

    # -------------------------------------------------------------------------
    # Engine
    # -------------------------------------------------------------------------

    def _engine_alive(self) -> bool:
        return self.supervisor.is_alive(ENGINE_ROLE)

    async def _reload_engine(self, snapshot: ServingSnapshot) -> None:
        """Drain, stop the old engine, start one for ``snapshot``, then swap."""
        self.state.begin_reload()
        drained = await asyncio.to_thread(self.state.wait_for_drain, self.drain_timeout)
        if not drained:
            logger.warning("%s request(s) still in flight after %.1fs", self.state.in_flight, self.drain_timeout)

        if self._monitor is not None:
            self._monitor.cancel()
            self._monitor = None
        if self.supervisor.get(ENGINE_ROLE) is not None:
            await self.supervisor.terminate(ENGINE_ROLE)
        if self._stopping:
            return

        snapshot = replace(snapshot, engine_host=None, engine_port=None)
        try:
            snapshot = await self._start_engine(snapshot)
        except SpawnError as e:
            if self._stopping:
                return
            log.error(f"Engine failed to start: {e}")
            self.state.record_failure(FailureReport(snapshot.sequence, ENGINE_ROLE, str(e)))
            # Serve files without an engine; proxied routes get 404 until the next build
        self.state.swap(snapshot)

    async def _start_engine(self, snapshot: ServingSnapshot) -> ServingSnapshot:
        assert self.engine_command is not None
        port = find_free_port(self.engine_host)
        command = self.engine_command
        if snapshot.engine_program is not None:
            command = replace(command, program=snapshot.engine_program)
        command = command.with_env(
            PERSEUS_HOST=self.engine_host,
            PERSEUS_PORT=str(port),
        )
        handle = await self.supervisor.spawn(ENGINE_ROLE, command, capture=False)

        ready = asyncio.ensure_future(wait_for_port(self.engine_host, port, self.startup_timeout))
        exited = asyncio.ensure_future(handle.wait())
        done, _ = await asyncio.wait({ready, exited}, return_when=asyncio.FIRST_COMPLETED)

        if exited in done:
            ready.cancel()
            outcome = exited.result()
            raise SpawnError(ENGINE_ROLE, f"exited with code {outcome.returncode} during startup")
        exited.cancel()
        if not ready.result():
            await self.supervisor.terminate(ENGINE_ROLE)
            raise SpawnError(ENGINE_ROLE, f"not listening on port {port} after {self.startup_timeout:.0f}s")
        if self._stopping:
            # stop() ran while this engine was starting
            await self.supervisor.terminate(ENGINE_ROLE)
            return snapshot

        logger.debug("engine ready on %s:%s (pid %s)", self.engine_host, port, handle.pid)
        self._monitor = asyncio.ensure_future(self._watch_engine(handle))
        return replace(snapshot, engine_host=self.engine_host, engine_port=port)

    async def _watch_engine(self, handle: ManagedProcess) -> None:
        """Restart the engine if it crashes while serving."""
        outcome = await handle.wait()
        if outcome.terminated or self._stopping or self.supervisor.closing:
            return

        self._restarts += 1
        if self._restarts > self.max_restarts:
            log.error(f"Engine crashed {self._restarts} times in a row; not restarting until the next build")
            self.state.record_failure(
                FailureReport(self.state.snapshot.sequence if self.state.snapshot else 0, ENGINE_ROLE,
                              f"exited with code {outcome.returncode}")
            )
            return

        log.warning(f"Engine exited with code {outcome.returncode}, restarting ({self._restarts}/{self.max_restarts})")
        self._monitor = None  # this task; _reload_engine must not cancel it
        async with self._reload_lock:
            # stop() may have run while we waited for the lock
            current = self.state.snapshot
            if self._stopping or current is None:
                return
            await self._reload_engine(current)
