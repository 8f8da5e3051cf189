from __future__ import annotations

import os
import re
from collections.abc import Mapping
from dataclasses import dataclass

_QUALIFIED_NAME = re.compile(r"^[A-Za-z0-9]([-A-Za-z0-9_.]*[A-Za-z0-9])?$")
_DNS_SUBDOMAIN = re.compile(r"^[a-z0-9]([-a-z0-9]*[a-z0-9])?(\.[a-z0-9]([-a-z0-9]*[a-z0-9])?)*$")


class ConfigError(RuntimeError):
    """Raised when the restarter configuration is invalid."""


@dataclass(frozen=True)
class RestarterConfig:
    """Immutable configuration handed to every component at construction.

    Attributes:
        namespaces:       Namespaces to watch; empty means cluster-wide.
        sidecar_container_name: Name of the injected proxy container.
        restart_annotation_key: Pod-template annotation carrying the last
                          restart trigger time; the only persisted state.
        skip_annotation_key: Workload annotation that opts a workload out.
        hub_aware:        Compare image tags/digests only, ignoring the hub.
        cooldown_seconds: Minimum interval between restarts of one workload.
        webhook_url:      Explicit injector URL; empty means discovery.
    """

    namespaces: tuple[str, ...] = ()
    sidecar_container_name: str = "istio-proxy"
    restart_annotation_key: str = "sidecar-restarter.io/restartedAt"
    skip_annotation_key: str = "sidecar-restarter.io/skip"
    hub_aware: bool = False
    cooldown_seconds: int = 600
    webhook_url: str = ""
    webhook_configuration_name: str = "istio-sidecar-injector"
    webhook_ca_file: str = ""
    webhook_insecure_skip_verify: bool = False
    webhook_timeout_seconds: float = 10.0
    webhook_slow_seconds: float = 2.0
    webhook_cache_ttl_seconds: int = 300
    api_timeout_seconds: float = 15.0
    pass_deadline_seconds: float = 60.0
    patch_conflict_retries: int = 3
    requeue_base_seconds: float = 1.0
    requeue_max_seconds: float = 300.0
    resync_seconds: int = 600
    workers: int = 4
    health_port: int = 8080


def parse_bool(value: str | None, default: bool = False) -> bool:
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def env_int(
    name: str,
    default: int,
    *,
    minimum: int | None = None,
    maximum: int | None = None,
    env: Mapping[str, str] | None = None,
) -> int:
    values = env if env is not None else os.environ
    raw = values.get(name)
    if raw is None:
        value = default
    else:
        try:
            value = int(raw)
        except ValueError as exc:
            raise ValueError(f"{name} must be an integer") from exc

    if minimum is not None and value < minimum:
        raise ValueError(f"{name} must be >= {minimum}, got: {value}")
    if maximum is not None and value > maximum:
        raise ValueError(f"{name} must be <= {maximum}, got: {value}")
    return value


def env_float(
    name: str,
    default: float,
    *,
    exclusive_minimum: float | None = None,
    env: Mapping[str, str] | None = None,
) -> float:
    values = env if env is not None else os.environ
    raw = values.get(name)
    if raw is None:
        return default
    try:
        value = float(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be a number") from exc
    if exclusive_minimum is not None and value <= exclusive_minimum:
        raise ValueError(f"{name} must be > {exclusive_minimum}, got: {value}")
    return value


def validate_annotation_key(name: str, key: str) -> str:
    """Check *key* is a Kubernetes qualified name (``[prefix/]name``)."""
    prefix, separator, local = key.rpartition("/")
    if separator and (not prefix or len(prefix) > 253 or not _DNS_SUBDOMAIN.match(prefix)):
        raise ConfigError(f"{name} has an invalid prefix: {key!r}")
    if not local or len(local) > 63 or not _QUALIFIED_NAME.match(local):
        raise ConfigError(f"{name} must be a qualified name (<=63 chars), got: {key!r}")
    return key


def load_config(env: Mapping[str, str] | None = None) -> RestarterConfig:
    """Load and validate the restarter configuration from the environment.

    Numeric variables raise ``ValueError`` naming the variable; cross-field
    and format violations raise :class:`ConfigError`.
    """
    values = env if env is not None else os.environ

    namespaces = tuple(
        part.strip() for part in values.get("WATCH_NAMESPACES", "").split(",") if part.strip()
    )
    sidecar = values.get("SIDECAR_CONTAINER_NAME", "istio-proxy").strip()
    if not sidecar:
        raise ConfigError("SIDECAR_CONTAINER_NAME must be a non-empty string")

    restart_key = validate_annotation_key(
        "RESTART_ANNOTATION_KEY",
        values.get("RESTART_ANNOTATION_KEY", "sidecar-restarter.io/restartedAt").strip(),
    )
    skip_key = validate_annotation_key(
        "SKIP_ANNOTATION_KEY",
        values.get("SKIP_ANNOTATION_KEY", "sidecar-restarter.io/skip").strip(),
    )

    config = RestarterConfig(
        namespaces=namespaces,
        sidecar_container_name=sidecar,
        restart_annotation_key=restart_key,
        skip_annotation_key=skip_key,
        hub_aware=parse_bool(values.get("HUB_AWARE_COMPARISON")),
        cooldown_seconds=env_int("RESTART_COOLDOWN_SECONDS", 600, minimum=0, env=values),
        webhook_url=values.get("WEBHOOK_URL", "").strip(),
        webhook_configuration_name=values.get(
            "WEBHOOK_CONFIGURATION_NAME", "istio-sidecar-injector"
        ).strip(),
        webhook_ca_file=values.get("WEBHOOK_CA_FILE", "").strip(),
        webhook_insecure_skip_verify=parse_bool(values.get("WEBHOOK_INSECURE_SKIP_VERIFY")),
        webhook_timeout_seconds=env_float("WEBHOOK_TIMEOUT_SECONDS", 10.0, exclusive_minimum=0, env=values),
        webhook_slow_seconds=env_float("WEBHOOK_SLOW_SECONDS", 2.0, exclusive_minimum=0, env=values),
        webhook_cache_ttl_seconds=env_int("WEBHOOK_CACHE_TTL_SECONDS", 300, minimum=0, env=values),
        api_timeout_seconds=env_float("API_TIMEOUT_SECONDS", 15.0, exclusive_minimum=0, env=values),
        pass_deadline_seconds=env_float("PASS_DEADLINE_SECONDS", 60.0, exclusive_minimum=0, env=values),
        patch_conflict_retries=env_int("PATCH_CONFLICT_RETRIES", 3, minimum=0, maximum=10, env=values),
        requeue_base_seconds=env_float("REQUEUE_BASE_SECONDS", 1.0, exclusive_minimum=0, env=values),
        requeue_max_seconds=env_float("REQUEUE_MAX_SECONDS", 300.0, exclusive_minimum=0, env=values),
        resync_seconds=env_int("RESYNC_SECONDS", 600, minimum=1, env=values),
        workers=env_int("WORKERS", 4, minimum=1, maximum=64, env=values),
        health_port=env_int("HEALTH_PORT", 8080, minimum=1, maximum=65535, env=values),
    )

    if config.webhook_url and not config.webhook_url.startswith(("https://", "http://")):
        raise ConfigError(f"WEBHOOK_URL must be an http(s) URL, got: {config.webhook_url!r}")
    if not config.webhook_url and not config.webhook_configuration_name:
        raise ConfigError("WEBHOOK_CONFIGURATION_NAME is required when WEBHOOK_URL is empty")
    if config.requeue_base_seconds > config.requeue_max_seconds:
        raise ConfigError("REQUEUE_BASE_SECONDS must not exceed REQUEUE_MAX_SECONDS")
    if config.webhook_slow_seconds > config.webhook_timeout_seconds:
        raise ConfigError("WEBHOOK_SLOW_SECONDS must not exceed WEBHOOK_TIMEOUT_SECONDS")
    if config.restart_annotation_key == config.skip_annotation_key:
        raise ConfigError("RESTART_ANNOTATION_KEY and SKIP_ANNOTATION_KEY must differ")
    return config
