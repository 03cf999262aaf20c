"""
Live reload channel.

A websocket endpoint (``/ws`` on the HTTP port + 1) that tells browsers when
a new build has been published. Messages carry the BuildRun sequence so a
page only reloads for builds newer than the one it was served from.
"""

from __future__ import annotations

import asyncio
import json
import logging
import threading
from http import HTTPStatus
from typing import Optional

import websockets
from websockets.asyncio.server import ServerConnection

from perseus_cli.core.utils import log

logger = logging.getLogger(__name__)

WS_PATH = "/ws"


# =============================================================================
# Injected Client Script
# =============================================================================

# Placeholders are replaced per response via str.replace().
LIVE_RELOAD_SCRIPT = """
<script>
(function() {
  var wsPort = __PERSEUS_WS_PORT__;
  var pageSequence = __PERSEUS_SEQUENCE__;
  var reconnectDelay = 500;
  var maxReconnectDelay = 5000;
  var overlay = null;

  function showOverlay(title, body) {
    if (!overlay) {
      overlay = document.createElement('div');
      overlay.id = 'perseus-error-overlay';
      overlay.style.cssText = [
        'position: fixed',
        'inset: 0',
        'background: rgba(20,0,0,0.92)',
        'color: #fdd',
        'padding: 24px',
        'font: 13px/1.5 ui-monospace, monospace',
        'white-space: pre-wrap',
        'overflow: auto',
        'z-index: 999999'
      ].join(';');
      document.body.appendChild(overlay);
    }
    overlay.textContent = title + '\\n\\n' + body;
  }

  function reload() {
    setTimeout(function() { location.reload(); }, 100);
  }

  function connect() {
    var ws;
    try {
      ws = new WebSocket('ws://' + location.hostname + ':' + wsPort + '/ws');
    } catch (e) {
      scheduleReconnect();
      return;
    }

    ws.onopen = function() {
      reconnectDelay = 500;
      console.log('[perseus] Live reload connected');
    };

    ws.onmessage = function(event) {
      var msg;
      try {
        msg = JSON.parse(event.data);
      } catch (e) {
        return;
      }
      if (typeof msg.sequence !== 'number' || msg.sequence <= pageSequence) return;

      if (msg.type === 'reload' || msg.type === 'hello') {
        reload();
      } else if (msg.type === 'build-failed') {
        showOverlay('Build failed at stage "' + msg.stage + '"', msg.diagnostics || '');
      }
    };

    ws.onclose = function() {
      scheduleReconnect();
    };

    ws.onerror = function() {
      ws.close();
    };
  }

  function scheduleReconnect() {
    setTimeout(function() {
      reconnectDelay = Math.min(reconnectDelay * 1.5, maxReconnectDelay);
      connect();
    }, reconnectDelay);
  }

  if (document.readyState === 'loading') {
    document.addEventListener('DOMContentLoaded', connect);
  } else {
    connect();
  }
})();
</script>
"""


def inject_script(html: str, ws_port: int, sequence: int) -> str:
    """Insert the live reload script before </body> (or </html>, or at the end)."""
    script = (
        LIVE_RELOAD_SCRIPT
        .replace("__PERSEUS_WS_PORT__", str(ws_port))
        .replace("__PERSEUS_SEQUENCE__", str(sequence))
    )
    if "</body>" in html:
        return html.replace("</body>", script + "\n</body>", 1)
    if "</html>" in html:
        return html.replace("</html>", script + "\n</html>", 1)
    return html + script


# =============================================================================
# WebSocket Broadcast Server
# =============================================================================


class ReloadBroadcaster:
    """Manages websocket clients and broadcasts build notifications."""

    def __init__(self) -> None:
        self._clients: set[ServerConnection] = set()
        self._lock = threading.Lock()
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self.sequence = 0
        self.failure: Optional[dict] = None

    @property
    def client_count(self) -> int:
        with self._lock:
            return len(self._clients)

    def set_loop(self, loop: asyncio.AbstractEventLoop) -> None:
        self._loop = loop

    async def handler(self, websocket: ServerConnection) -> None:
        """Handle one browser connection."""
        with self._lock:
            self._clients.add(websocket)
        logger.debug("browser connected (%s clients)", self.client_count)

        # Late joiners learn the current sequence, and any failure newer than it
        await self._safe_send(websocket, json.dumps({"type": "hello", "sequence": self.sequence}))
        if self.failure is not None:
            await self._safe_send(websocket, json.dumps(self.failure))

        try:
            async for _ in websocket:
                pass  # clients do not send anything meaningful
        except websockets.exceptions.ConnectionClosed:
            pass
        finally:
            with self._lock:
                self._clients.discard(websocket)
            logger.debug("browser disconnected (%s clients)", self.client_count)

    def broadcast(self, message: dict) -> None:
        """Send ``message`` to every client. Thread-safe."""
        if self._loop is None:
            return

        with self._lock:
            clients = set(self._clients)
        if not clients:
            return

        data = json.dumps(message)

        async def _send_all():
            await asyncio.gather(*(self._safe_send(c, data) for c in clients))

        asyncio.run_coroutine_threadsafe(_send_all(), self._loop)

    @staticmethod
    async def _safe_send(client: ServerConnection, data: str) -> None:
        try:
            await client.send(data)
        except websockets.exceptions.ConnectionClosed:
            pass  # cleaned up by handler

    def notify_reload(self, sequence: int) -> None:
        if sequence <= self.sequence:
            return
        self.sequence = sequence
        self.failure = None
        count = self.client_count
        if count:
            log.info(f"Reloading {count} browser{'s' if count != 1 else ''} (build #{sequence})")
        self.broadcast({"type": "reload", "sequence": sequence})

    def notify_failure(self, sequence: int, stage: str, diagnostics: str) -> None:
        self.failure = {
            "type": "build-failed",
            "sequence": sequence,
            "stage": stage,
            "diagnostics": diagnostics,
        }
        self.broadcast(self.failure)


async def ws_process_request(connection, request):
    """Only accept websocket connections on the reload path."""
    if request.path != WS_PATH:
        return connection.respond(HTTPStatus.NOT_FOUND, "Not found\n")
    return None
