from __future__ import annotations

import threading
import urllib.error
import urllib.request

from jenkins_operator.src.health import start_health_server


def _get(url: str, timeout: float = 2) -> tuple[int, str]:
    """Helper to make a GET request and return (status_code, body)."""
    try:
        with urllib.request.urlopen(url, timeout=timeout) as response:  # noqa: S310
            return response.status, response.read().decode()
    except urllib.error.HTTPError as exc:
        return exc.code, exc.read().decode()


class TestHealthServer:
    """Readiness reflects both the synced controller and the notification listener."""

    def setup_method(self) -> None:
        self.ready = threading.Event()
        self.listener = threading.Event()
        self.server = start_health_server(ready=self.ready, port=0, listener=self.listener)
        self.base_url = f"http://127.0.0.1:{self.server.server_address[1]}"

    def teardown_method(self) -> None:
        self.server.shutdown()

    def test_healthz_always_returns_200(self) -> None:
        status, body = _get(f"{self.base_url}/healthz")
        assert status == 200
        assert body == "ok"

    def test_readyz_returns_503_until_synced(self) -> None:
        self.listener.set()
        status, body = _get(f"{self.base_url}/readyz")
        assert status == 503
        assert "ready=false" in body

    def test_readyz_returns_503_without_listener(self) -> None:
        self.ready.set()
        status, body = _get(f"{self.base_url}/readyz")
        assert status == 503
        assert "notifications=false" in body

    def test_readyz_returns_200_when_synced_and_listening(self) -> None:
        self.ready.set()
        self.listener.set()
        status, body = _get(f"{self.base_url}/readyz")
        assert status == 200
        assert body == "ready=true notifications=true"

    def test_metrics_exposes_operator_counters(self) -> None:
        status, body = _get(f"{self.base_url}/metrics")
        assert status == 200
        assert "jenkins_operator_reconcile_total" in body

    def test_unknown_path_returns_404(self) -> None:
        status, _ = _get(f"{self.base_url}/nope")
        assert status == 404


def test_readyz_without_listener_event_uses_controller_only() -> None:
    ready = threading.Event()
    server = start_health_server(ready=ready, port=0)
    try:
        ready.set()
        status, _ = _get(f"http://127.0.0.1:{server.server_address[1]}/readyz")
        assert status == 200
    finally:
        server.shutdown()
