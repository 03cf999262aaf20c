"""
Tests for live reload script injection and broadcast bookkeeping.
"""

from __future__ import annotations

import pytest

from perseus_cli.serve.reload import ReloadBroadcaster, inject_script


@pytest.mark.evergreen
class TestInjectScript:
    """The client script lands inside the page with the right values."""

    def test_inserted_before_body_close(self) -> None:
        html = "<html><body><h1>Hi</h1></body></html>"
        result = inject_script(html, ws_port=8081, sequence=7)
        assert result.index("<script>") < result.index("</body>")
        assert "var wsPort = 8081;" in result
        assert "var pageSequence = 7;" in result
        assert "__PERSEUS_" not in result

    def test_falls_back_to_html_close(self) -> None:
        result = inject_script("<html><p>x</p></html>", 8081, 1)
        assert result.index("<script>") < result.index("</html>")

    def test_appends_to_fragment(self) -> None:
        result = inject_script("<p>fragment</p>", 8081, 1)
        assert result.startswith("<p>fragment</p>")
        assert result.rstrip().endswith("</script>")

    def test_injects_once(self) -> None:
        result = inject_script("<body></body><body></body>", 8081, 1)
        assert result.count("<script>") == 1


@pytest.mark.evergreen
class TestReloadBroadcaster:
    """Sequence tracking without any connected browsers."""

    def test_reload_only_moves_forward(self) -> None:
        broadcaster = ReloadBroadcaster()
        broadcaster.notify_reload(3)
        broadcaster.notify_reload(2)
        assert broadcaster.sequence == 3

    def test_failure_is_cleared_by_newer_reload(self) -> None:
        broadcaster = ReloadBroadcaster()
        broadcaster.notify_failure(4, "engine", "error[E0308]")
        assert broadcaster.failure["stage"] == "engine"

        broadcaster.notify_reload(5)
        assert broadcaster.failure is None

    def test_no_clients(self) -> None:
        assert ReloadBroadcaster().client_count == 0
