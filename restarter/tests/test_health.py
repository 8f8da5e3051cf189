from __future__ import annotations

import threading
import urllib.error
import urllib.request

from restarter.src.health import start_health_server
from restarter.src.metrics import METRICS


def _get(url: str, timeout: float = 2) -> tuple[int, str]:
    """Helper to make a GET request and return (status_code, body)."""
    try:
        with urllib.request.urlopen(url, timeout=timeout) as response:  # noqa: S310
            return response.status, response.read().decode()
    except urllib.error.HTTPError as exc:
        return exc.code, exc.read().decode()


class TestHealthServer:
    """Tests for liveness, readiness and metrics endpoints."""

    def setup_method(self) -> None:
        self.ready = threading.Event()
        self.alive = True
        self.server = start_health_server(ready=self.ready, port=0, live=lambda: self.alive)
        self.base_url = f"http://127.0.0.1:{self.server.server_address[1]}"

    def teardown_method(self) -> None:
        self.server.shutdown()

    def test_healthz_returns_200_while_threads_run(self) -> None:
        status, body = _get(f"{self.base_url}/healthz")
        assert status == 200
        assert body == "ok"

    def test_healthz_returns_503_when_threads_died(self) -> None:
        self.alive = False
        status, _ = _get(f"{self.base_url}/healthz")
        assert status == 503

    def test_readyz_follows_ready_event(self) -> None:
        status, body = _get(f"{self.base_url}/readyz")
        assert status == 503
        assert body == "ready=false"

        self.ready.set()
        status, body = _get(f"{self.base_url}/readyz")
        assert status == 200
        assert body == "ready=true"

    def test_metrics_exposes_restarter_series(self) -> None:
        METRICS.patch_conflicts_total.inc()
        status, body = _get(f"{self.base_url}/metrics")
        assert status == 200
        assert "sidecar_restarter_patch_conflicts_total" in body

    def test_unknown_path_returns_404(self) -> None:
        status, _ = _get(f"{self.base_url}/nope")
        assert status == 404


def test_healthz_without_live_check_is_always_ok() -> None:
    server = start_health_server(ready=threading.Event(), port=0)
    try:
        status, _ = _get(f"http://127.0.0.1:{server.server_address[1]}/healthz")
    finally:
        server.shutdown()
    assert status == 200
