from __future__ import annotations

import json
import logging
import signal
import sys
import threading
from types import SimpleNamespace
from unittest.mock import MagicMock, patch

import pytest

from restarter.src.__main__ import JSONFormatter, build_controller, main, redact_sensitive_text
from restarter.src.config import RestarterConfig
from restarter.src.webhook import InjectorEndpointResolver, StaticEndpoint

PEM = "-----BEGIN CERTIFICATE-----\nMIIBszCCAVmgAwIBAgIU\n-----END CERTIFICATE-----"


class TestJSONFormatter:
    """Tests for the structured JSON log formatter."""

    def _make_record(
        self,
        msg: str = "test message",
        level: int = logging.INFO,
        exc_info: object = None,
    ) -> logging.LogRecord:
        return logging.LogRecord(
            name="test.logger",
            level=level,
            pathname="test.py",
            lineno=1,
            msg=msg,
            args=(),
            exc_info=exc_info,  # type: ignore[arg-type]
        )

    def test_format_produces_valid_json(self) -> None:
        parsed = json.loads(JSONFormatter().format(self._make_record()))

        assert parsed["msg"] == "test message"
        assert parsed["level"] == "INFO"
        assert parsed["logger"] == "test.logger"
        assert "ts" in parsed
        assert "thread" in parsed

    def test_format_includes_error_on_exception(self) -> None:
        try:
            raise ValueError("boom")
        except ValueError:
            record = self._make_record(exc_info=sys.exc_info())

        parsed = json.loads(JSONFormatter().format(record))

        assert "ValueError" in parsed["error"]
        assert "boom" in parsed["error"]

    def test_format_is_single_line(self) -> None:
        output = JSONFormatter().format(self._make_record(msg="line one\nline two"))

        assert output.count("\n") == 0

    def test_format_redacts_sensitive_values(self) -> None:
        record = self._make_record(
            msg="token=abc123 Authorization: Bearer abc.def.ghi caBundle=LS0tLS1CRUdJTg== url=/x?access_token=qwerty"
        )

        message = json.loads(JSONFormatter().format(record))["msg"]

        assert "[REDACTED]" in message
        for secret in ("abc123", "abc.def.ghi", "LS0tLS1CRUdJTg==", "qwerty"):
            assert secret not in message


def test_redact_removes_pem_blocks() -> None:
    redacted = redact_sensitive_text(f"trust root:\n{PEM}\nend")

    assert "MIIBszCCAVmgAwIBAgIU" not in redacted
    assert "[REDACTED PEM]" in redacted
    assert redacted.endswith("end")


# ---------------------------------------------------------------------------
# Wiring
# ---------------------------------------------------------------------------


def _clients() -> SimpleNamespace:
    return SimpleNamespace(core=MagicMock(), apps=MagicMock(), admission=MagicMock())


def test_build_controller_uses_static_endpoint_when_url_given() -> None:
    config = RestarterConfig(webhook_url="http://istiod.istio-system:15017/inject", workers=2)

    controller = build_controller(config, _clients())  # type: ignore[arg-type]

    assert isinstance(controller.reconciler.webhook.endpoint, StaticEndpoint)
    assert controller.queue.max_delay == config.requeue_max_seconds


def test_build_controller_discovers_endpoint_by_default() -> None:
    clients = _clients()

    controller = build_controller(RestarterConfig(namespaces=("a", "b")), clients)  # type: ignore[arg-type]

    endpoint = controller.reconciler.webhook.endpoint
    assert isinstance(endpoint, InjectorEndpointResolver)
    assert endpoint.admission_api is clients.admission
    # Three workload kinds plus pods, per namespace.
    assert len(controller.sources) == 8


class TestMainEntrypoint:
    """Integration-style tests for the main() function wiring."""

    def _run_main(self, registered: list[int] | None = None) -> tuple[MagicMock, MagicMock]:
        mock_controller = MagicMock()
        mock_controller.ready = threading.Event()

        def fake_run_forever(shutdown_event: threading.Event | None = None) -> None:
            if shutdown_event is not None:
                shutdown_event.set()

        mock_controller.run_forever.side_effect = fake_run_forever
        original_signal = signal.signal

        def tracking_signal(signum: int, handler: object) -> object:
            if registered is not None:
                registered.append(signum)
            return original_signal(signum, signal.SIG_DFL)

        with (
            patch("restarter.src.__main__.load_kube_configuration"),
            patch("restarter.src.__main__.build_clients", return_value=_clients()),
            patch("restarter.src.__main__.build_controller", return_value=mock_controller),
            patch("restarter.src.__main__.start_health_server") as mock_health,
            patch("restarter.src.__main__.signal.signal", side_effect=tracking_signal),
        ):
            mock_health.return_value = MagicMock()
            main()
        return mock_controller, mock_health

    def test_main_runs_controller_and_stops_health_server(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("LOG_LEVEL", "WARNING")
        monkeypatch.setenv("HEALTH_PORT", "9090")

        mock_controller, mock_health = self._run_main()

        mock_controller.run_forever.assert_called_once()
        assert mock_health.call_args.kwargs["port"] == 9090
        assert mock_health.call_args.kwargs["live"] is mock_controller.is_alive
        mock_health.return_value.shutdown.assert_called_once()

    def test_main_registers_signal_handlers(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("LOG_LEVEL", "WARNING")
        registered: list[int] = []

        self._run_main(registered)

        assert signal.SIGTERM in registered
        assert signal.SIGINT in registered

    def test_main_rejects_invalid_health_port(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("HEALTH_PORT", "70000")

        with (
            patch("restarter.src.__main__.load_kube_configuration") as mock_load,
            pytest.raises(ValueError, match="HEALTH_PORT must be <= 65535, got: 70000"),
        ):
            main()

        mock_load.assert_not_called()
