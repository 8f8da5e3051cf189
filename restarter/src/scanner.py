from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import UTC, datetime
from typing import Any

from kubernetes.client import AppsV1Api, CoreV1Api

from restarter.src.errors import WorkloadNotFoundError
from restarter.src.kube import call_api
from restarter.src.models import (
    PASS_THROUGH_KINDS,
    Deadline,
    OwnerChainNode,
    OwnerLink,
    SidecarImageObservation,
    WorkloadRef,
)

# Pod -> ReplicaSet -> Deployment is the longest legitimate chain.
DEFAULT_MAX_HOPS = 2
_FINISHED_PHASES = frozenset({"Succeeded", "Failed"})


def _utc_now() -> datetime:
    return datetime.now(UTC)


def selector_to_string(selector: Any) -> str:
    """Render a ``LabelSelector`` as a list-call ``label_selector`` string.

    Supports ``matchLabels`` and the ``In``/``NotIn``/``Exists``/
    ``DoesNotExist`` expression operators.
    """
    if selector is None:
        return ""
    clauses: list[str] = []
    match_labels = getattr(selector, "match_labels", None) or {}
    for key in sorted(match_labels):
        clauses.append(f"{key}={match_labels[key]}")
    for expression in getattr(selector, "match_expressions", None) or []:
        key = expression.key
        operator = expression.operator
        values = ",".join(sorted(expression.values or []))
        if operator == "In":
            clauses.append(f"{key} in ({values})")
        elif operator == "NotIn":
            clauses.append(f"{key} notin ({values})")
        elif operator == "Exists":
            clauses.append(key)
        elif operator == "DoesNotExist":
            clauses.append(f"!{key}")
        else:
            raise ValueError(f"unsupported label selector operator: {operator!r}")
    return ",".join(clauses)


def controller_link(metadata: Any) -> OwnerLink | None:
    """Return the managing-controller owner reference of an object, if any."""
    for owner in getattr(metadata, "owner_references", None) or []:
        if getattr(owner, "controller", False):
            return OwnerLink(kind=owner.kind, name=owner.name, uid=getattr(owner, "uid", None))
    return None


class PodScanner:
    """Resolves the live pods of a workload and the sidecar image each one runs.

    Read-only. Candidate pods come from the workload's label selector and are
    then confirmed through a bounded walk up their owner references, so pods
    of an unrelated workload with overlapping labels are excluded.
    """

    def __init__(
        self,
        core_api: CoreV1Api,
        apps_api: AppsV1Api,
        sidecar_container_name: str,
        *,
        api_timeout_seconds: float = 15.0,
        max_hops: int = DEFAULT_MAX_HOPS,
        logger: logging.Logger | None = None,
        now_fn: Callable[[], datetime] = _utc_now,
    ) -> None:
        self.core_api = core_api
        self.apps_api = apps_api
        self.sidecar_container_name = sidecar_container_name
        self.api_timeout_seconds = api_timeout_seconds
        self.max_hops = max_hops
        self.logger = logger or logging.getLogger(__name__)
        self.now_fn = now_fn

    def scan(self, ref: WorkloadRef, deadline: Deadline | None = None) -> list[SidecarImageObservation]:
        """Return one observation per live pod of *ref* that runs the sidecar.

        An empty list is a valid answer (zero replicas, or no pod carries the
        sidecar). A failed API read raises :class:`TransientError`.
        """
        selector = selector_to_string(ref.selector)
        if not selector:
            self.logger.warning("%s has an empty pod selector; not scanning pods", ref.key)
            return []

        if deadline is not None:
            deadline.check("scan", ref.key)
        pods = call_api(
            self.core_api.list_namespaced_pod,
            namespace=ref.namespace,
            label_selector=selector,
            key=ref.key,
            step="scan",
            _request_timeout=self._timeout(deadline),
        )

        # Owner chain nodes resolved during this scan, keyed by UID (or name).
        arena: dict[str, OwnerChainNode | None] = {}
        observations: list[SidecarImageObservation] = []
        for pod in getattr(pods, "items", None) or []:
            metadata = getattr(pod, "metadata", None)
            pod_name = getattr(metadata, "name", None) or "<unknown>"
            phase = getattr(getattr(pod, "status", None), "phase", None)
            if phase in _FINISHED_PHASES:
                continue
            if not self._owned_by(pod, ref, arena, deadline):
                self.logger.debug(
                    "Excluding pod %s/%s: owner chain does not resolve to %s",
                    ref.namespace,
                    pod_name,
                    ref.key,
                )
                continue
            image = self.sidecar_image(pod)
            if image is None:
                self.logger.debug("Pod %s/%s has no %s container", ref.namespace, pod_name, self.sidecar_container_name)
                continue
            observations.append(
                SidecarImageObservation(pod_name=pod_name, actual_image=image, observed_at=self.now_fn())
            )
        return observations

    def sidecar_image(self, pod: Any) -> str | None:
        """Return the sidecar image a pod runs.

        The container status image wins; the pod spec image is the fallback for
        pods whose status is not populated yet (e.g. not scheduled). Native
        sidecars (init containers) are considered too.
        """
        status = getattr(pod, "status", None)
        for statuses in (
            getattr(status, "container_statuses", None),
            getattr(status, "init_container_statuses", None),
        ):
            for container_status in statuses or []:
                if container_status.name == self.sidecar_container_name and container_status.image:
                    return container_status.image

        spec = getattr(pod, "spec", None)
        for containers in (getattr(spec, "containers", None), getattr(spec, "init_containers", None)):
            for container in containers or []:
                if container.name == self.sidecar_container_name and container.image:
                    return container.image
        return None

    def _timeout(self, deadline: Deadline | None) -> float:
        if deadline is None:
            return self.api_timeout_seconds
        return deadline.timeout(self.api_timeout_seconds)

    def _owned_by(
        self,
        pod: Any,
        ref: WorkloadRef,
        arena: dict[str, OwnerChainNode | None],
        deadline: Deadline | None,
    ) -> bool:
        link = controller_link(getattr(pod, "metadata", None))
        hops = 0
        while link is not None:
            if link.kind == ref.kind:
                if ref.uid and link.uid:
                    return link.uid == ref.uid
                return link.name == ref.name
            if link.kind not in PASS_THROUGH_KINDS or hops >= self.max_hops:
                return False
            node = self._resolve(link, ref, arena, deadline)
            if node is None:
                return False
            link = node.parent_ref
            hops += 1
        return False

    def _resolve(
        self,
        link: OwnerLink,
        ref: WorkloadRef,
        arena: dict[str, OwnerChainNode | None],
        deadline: Deadline | None,
    ) -> OwnerChainNode | None:
        arena_key = link.uid or f"{link.kind}/{link.name}"
        if arena_key in arena:
            return arena[arena_key]

        if link.kind == "ReplicaSet":
            read = self.apps_api.read_namespaced_replica_set
        else:
            read = self.apps_api.read_namespaced_controller_revision
        if deadline is not None:
            deadline.check("scan", ref.key)
        try:
            obj = call_api(
                read,
                name=link.name,
                namespace=ref.namespace,
                key=ref.key,
                step="scan",
                _request_timeout=self._timeout(deadline),
            )
        except WorkloadNotFoundError:
            self.logger.debug("%s %s/%s vanished during scan", link.kind, ref.namespace, link.name)
            arena[arena_key] = None
            return None

        metadata = getattr(obj, "metadata", None)
        node = OwnerChainNode(
            kind=link.kind,
            namespace=ref.namespace,
            name=link.name,
            parent_ref=controller_link(metadata),
        )
        arena[arena_key] = node
        return node
