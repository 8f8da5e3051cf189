from __future__ import annotations

import json
import logging
import os
import re
import signal
import threading

from restarter.src.annotator import Annotator
from restarter.src.cache import WorkloadCache
from restarter.src.config import RestarterConfig, load_config
from restarter.src.controller import SidecarRestartController
from restarter.src.health import start_health_server
from restarter.src.kube import KubeClients, build_clients, load_kube_configuration
from restarter.src.metrics import METRICS
from restarter.src.reconciler import Reconciler
from restarter.src.scanner import PodScanner
from restarter.src.webhook import InjectorEndpointResolver, StaticEndpoint, WebhookClient
from restarter.src.workqueue import WorkQueue

RUNTIME_VERSION = "0.1.0"
_REDACTION_RULES: tuple[tuple[re.Pattern[str], str], ...] = (
    (
        re.compile(r"(?i)(bearer\s+)([A-Za-z0-9._~+/=-]+)"),
        r"\1[REDACTED]",
    ),
    (
        re.compile(
            r"(?i)(\b(?:authorization|token|password|passwd|secret|api[_-]?key|ca[_-]?bundle)\b\s*[:=]\s*)([^\s,;]+)"
        ),
        r"\1[REDACTED]",
    ),
    (
        re.compile(r"(?i)([?&](?:token|access_token|api_key|password)=)([^&\s]+)"),
        r"\1[REDACTED]",
    ),
    (
        re.compile(r"-----BEGIN [A-Z ]+-----.*?-----END [A-Z ]+-----", re.DOTALL),
        "[REDACTED PEM]",
    ),
)


def redact_sensitive_text(value: str) -> str:
    redacted = value
    for pattern, replacement in _REDACTION_RULES:
        redacted = pattern.sub(replacement, redacted)
    return redacted


class JSONFormatter(logging.Formatter):
    """Emit logs as single-line JSON objects for structured log aggregation."""

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            "ts": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "thread": record.threadName,
            "msg": redact_sensitive_text(record.getMessage()),
        }
        if record.exc_info and record.exc_info[0] is not None:
            log_entry["error"] = redact_sensitive_text(self.formatException(record.exc_info))
        return json.dumps(log_entry)


def build_controller(config: RestarterConfig, clients: KubeClients) -> SidecarRestartController:
    """Wire every component from *config* around the given API clients."""
    if config.webhook_url:
        endpoint: StaticEndpoint | InjectorEndpointResolver = StaticEndpoint(
            config.webhook_url,
            ca_file=config.webhook_ca_file or None,
            insecure_skip_verify=config.webhook_insecure_skip_verify,
        )
    else:
        endpoint = InjectorEndpointResolver(
            clients.admission,
            config.webhook_configuration_name,
            insecure_skip_verify=config.webhook_insecure_skip_verify,
        )

    cache = WorkloadCache()
    scanner = PodScanner(
        clients.core,
        clients.apps,
        config.sidecar_container_name,
        api_timeout_seconds=config.api_timeout_seconds,
    )
    webhook = WebhookClient(
        endpoint,
        config.sidecar_container_name,
        timeout_seconds=config.webhook_timeout_seconds,
        slow_seconds=config.webhook_slow_seconds,
    )
    annotator = Annotator(
        clients.apps,
        config.restart_annotation_key,
        config.cooldown_seconds,
        conflict_retries=config.patch_conflict_retries,
        api_timeout_seconds=config.api_timeout_seconds,
    )
    reconciler = Reconciler(config, clients.apps, cache, scanner, webhook, annotator)
    return SidecarRestartController(
        reconciler,
        config,
        clients.core,
        clients.apps,
        cache,
        queue=WorkQueue(base_delay=config.requeue_base_seconds, max_delay=config.requeue_max_seconds),
    )


def main() -> None:
    """Restarter entrypoint: configure logging, wire components, and run until signalled."""
    log_level = os.getenv("LOG_LEVEL", "INFO").upper()
    log_handler = logging.StreamHandler()
    log_handler.setFormatter(JSONFormatter())
    logging.root.addHandler(log_handler)
    logging.root.setLevel(getattr(logging, log_level, logging.INFO))
    METRICS.build_info.info(
        {
            "version": os.getenv("APP_VERSION", RUNTIME_VERSION),
            "revision": os.getenv("GIT_SHA", "unknown"),
        }
    )

    config = load_config()
    load_kube_configuration()
    controller = build_controller(config, build_clients())
    logging.getLogger(__name__).info(
        "Watching %s for %s drift (hub_aware=%s, cooldown=%ss)",
        ",".join(config.namespaces) or "all namespaces",
        config.sidecar_container_name,
        config.hub_aware,
        config.cooldown_seconds,
    )

    health_server = start_health_server(
        ready=controller.ready,
        port=config.health_port,
        live=controller.is_alive,
    )

    shutdown_event = threading.Event()

    def _handle_signal(signum: int, frame: object) -> None:
        logging.getLogger(__name__).info("Received signal %d, shutting down", signum)
        shutdown_event.set()

    signal.signal(signal.SIGTERM, _handle_signal)
    signal.signal(signal.SIGINT, _handle_signal)

    try:
        controller.run_forever(shutdown_event=shutdown_event)
    finally:
        health_server.shutdown()


if __name__ == "__main__":
    main()
