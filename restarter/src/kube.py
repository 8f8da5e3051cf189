from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

import urllib3
from kubernetes import client, config
from kubernetes.client import AdmissionregistrationV1Api, ApiException, AppsV1Api, CoreV1Api
from kubernetes.config.config_exception import ConfigException

from restarter.src.errors import TransientError, classify_api_exception
from restarter.src.models import WorkloadKey, WorkloadKind

LOGGER = logging.getLogger(__name__)

# AppsV1Api method suffix per workload kind.
_WORKLOAD_RESOURCES: dict[WorkloadKind, str] = {
    WorkloadKind.DEPLOYMENT: "deployment",
    WorkloadKind.STATEFUL_SET: "stateful_set",
    WorkloadKind.DAEMON_SET: "daemon_set",
}


@dataclass(frozen=True)
class KubeClients:
    core: CoreV1Api
    apps: AppsV1Api
    admission: AdmissionregistrationV1Api


def load_kube_configuration() -> None:
    """Load Kubernetes client configuration.

    Attempts in-cluster config first (running inside a pod), falling back
    to the local kubeconfig for development.
    """
    try:
        config.load_incluster_config()
        LOGGER.info("Loaded in-cluster Kubernetes configuration")
    except ConfigException:
        config.load_kube_config()
        LOGGER.info("Loaded local kubeconfig")


def build_clients() -> KubeClients:
    """Return the API clients the restarter needs, using the active kube configuration."""
    return KubeClients(
        core=client.CoreV1Api(),
        apps=client.AppsV1Api(),
        admission=client.AdmissionregistrationV1Api(),
    )


def call_api(fn: Callable[..., Any], *args: Any, key: Any = None, step: str, **kwargs: Any) -> Any:
    """Invoke a client method, translating transport failures into restarter errors.

    ``ApiException`` is classified by status code; connection-level failures
    from urllib3 or the socket layer become :class:`TransientError`.
    """
    try:
        return fn(*args, **kwargs)
    except ApiException as exc:
        raise classify_api_exception(exc, key=key, step=step) from exc
    except (urllib3.exceptions.HTTPError, OSError) as exc:
        raise TransientError(f"Kubernetes API unreachable: {exc}", key=key, step=step) from exc


def _apps_method(apps_api: AppsV1Api, verb: str, kind: WorkloadKind) -> Callable[..., Any]:
    return getattr(apps_api, f"{verb}_namespaced_{_WORKLOAD_RESOURCES[kind]}")


def read_workload(apps_api: AppsV1Api, key: WorkloadKey, *, timeout: float, step: str = "read") -> Any:
    """Live GET of a workload. Never served from an informer cache."""
    return call_api(
        _apps_method(apps_api, "read", key.kind),
        name=key.name,
        namespace=key.namespace,
        key=key,
        step=step,
        _request_timeout=timeout,
    )


def patch_workload(
    apps_api: AppsV1Api,
    key: WorkloadKey,
    body: dict[str, Any],
    *,
    timeout: float,
) -> Any:
    """Send a merge-style patch to a workload.

    Changing a pod template annotation is the same mechanism ``kubectl rollout
    restart`` uses: the workload controller rolls new pods for the changed
    template.
    """
    return call_api(
        _apps_method(apps_api, "patch", key.kind),
        name=key.name,
        namespace=key.namespace,
        body=body,
        key=key,
        step="patch",
        _request_timeout=timeout,
    )


def workload_list_call(
    apps_api: AppsV1Api, kind: WorkloadKind, namespace: str | None
) -> tuple[Callable[..., Any], dict[str, Any]]:
    """Return ``(list_fn, kwargs)`` for listing/watching one workload kind."""
    resource = _WORKLOAD_RESOURCES[kind]
    if namespace:
        return getattr(apps_api, f"list_namespaced_{resource}"), {"namespace": namespace}
    return getattr(apps_api, f"list_{resource}_for_all_namespaces"), {}


def pod_list_call(
    core_api: CoreV1Api, namespace: str | None
) -> tuple[Callable[..., Any], dict[str, Any]]:
    """Return ``(list_fn, kwargs)`` for listing/watching pods."""
    if namespace:
        return core_api.list_namespaced_pod, {"namespace": namespace}
    return core_api.list_pod_for_all_namespaces, {}
