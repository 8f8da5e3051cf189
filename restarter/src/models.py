from __future__ import annotations

import json
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum
from hashlib import sha256
from typing import Any

from restarter.src.errors import PassCancelled

# Annotations and labels whose key domain ends with this suffix are read by the
# injection webhook; only they take part in the template fingerprint.
INJECTION_KEY_DOMAIN = "istio.io"


class WorkloadKind(StrEnum):
    DEPLOYMENT = "Deployment"
    STATEFUL_SET = "StatefulSet"
    DAEMON_SET = "DaemonSet"


# Pass-through links between a pod and its workload. Never reconciled.
PASS_THROUGH_KINDS = frozenset({"ReplicaSet", "ControllerRevision"})


class RestartDecision(StrEnum):
    """Terminal output of one reconcile pass."""

    NO_DRIFT_NO_OP = "NoDriftNoOp"
    DRIFT_DETECTED_PATCH_APPLIED = "DriftDetectedPatchApplied"
    DRIFT_DETECTED_COOLDOWN_SKIPPED = "DriftDetectedCooldownSkipped"
    INCONCLUSIVE_SKIPPED = "InconclusiveSkipped"


@dataclass(frozen=True, order=True)
class WorkloadKey:
    """Identity used for queueing and caching: ``(kind, namespace, name)``."""

    kind: WorkloadKind
    namespace: str
    name: str

    def __str__(self) -> str:
        return f"{self.kind} {self.namespace}/{self.name}"


@dataclass(frozen=True)
class ReconcileRequest:
    """Opaque trigger to re-evaluate one workload. Carries no authoritative state."""

    key: WorkloadKey


@dataclass(frozen=True)
class WorkloadRef:
    """A workload as read live at the start of one reconcile pass.

    ``resource_version`` is informational only; correctness relies on
    ``fingerprint`` and on the annotation read from the live object.
    """

    key: WorkloadKey
    uid: str | None
    resource_version: str | None
    fingerprint: str
    template: Any = field(repr=False, compare=False)
    selector: Any = field(repr=False, compare=False)
    annotations: dict[str, str] = field(default_factory=dict, repr=False, compare=False)
    template_annotations: dict[str, str] = field(default_factory=dict, repr=False, compare=False)

    @property
    def kind(self) -> WorkloadKind:
        return self.key.kind

    @property
    def namespace(self) -> str:
        return self.key.namespace

    @property
    def name(self) -> str:
        return self.key.name

    @classmethod
    def from_object(cls, kind: WorkloadKind, obj: Any) -> WorkloadRef:
        metadata = getattr(obj, "metadata", None)
        spec = getattr(obj, "spec", None)
        template = getattr(spec, "template", None)
        key = WorkloadKey(
            kind=kind,
            namespace=getattr(metadata, "namespace", None) or "",
            name=getattr(metadata, "name", None) or "",
        )
        return cls(
            key=key,
            uid=getattr(metadata, "uid", None),
            resource_version=getattr(metadata, "resource_version", None),
            fingerprint=template_fingerprint(template),
            template=template,
            selector=getattr(spec, "selector", None),
            annotations=string_map(getattr(metadata, "annotations", None)),
            template_annotations=string_map(
                getattr(getattr(template, "metadata", None), "annotations", None)
            ),
        )


@dataclass(frozen=True)
class OwnerLink:
    """A controller owner reference: the parent pointer of one chain node."""

    kind: str
    name: str
    uid: str | None


@dataclass(frozen=True)
class OwnerChainNode:
    """An intermediate ReplicaSet/ControllerRevision on a pod's owner chain."""

    kind: str
    namespace: str
    name: str
    parent_ref: OwnerLink | None


@dataclass(frozen=True)
class SidecarImageObservation:
    pod_name: str
    actual_image: str
    observed_at: datetime


@dataclass(frozen=True)
class DesiredInjectionResult:
    """What the injection webhook would inject for a template today.

    Only ever constructed from a response that passed validation, so
    ``raw_patch_validated`` is always ``True`` on instances that reach the
    comparator.
    """

    template_fingerprint: str
    desired_image: str
    webhook_latency_ok: bool
    raw_patch_validated: bool = True


class Deadline:
    """Cancellable deadline bounding every blocking call of one pass."""

    def __init__(
        self,
        expires_at: float,
        cancel_event: threading.Event | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.expires_at = expires_at
        self.cancel_event = cancel_event
        self.clock = clock

    @classmethod
    def after(
        cls,
        seconds: float,
        cancel_event: threading.Event | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> Deadline:
        return cls(expires_at=clock() + seconds, cancel_event=cancel_event, clock=clock)

    def remaining(self) -> float:
        return max(0.0, self.expires_at - self.clock())

    def cancelled(self) -> bool:
        return self.cancel_event is not None and self.cancel_event.is_set()

    def check(self, step: str, key: Any = None) -> None:
        """Raise :class:`PassCancelled` if the pass must stop before *step*."""
        if self.cancelled():
            raise PassCancelled("pass cancelled by shutdown", key=key, step=step)
        if self.remaining() <= 0:
            raise PassCancelled("pass deadline exceeded", key=key, step=step)

    def timeout(self, cap: float) -> float:
        """Return the per-call timeout: *cap* shortened to the remaining budget."""
        return max(0.001, min(cap, self.remaining()))


def string_map(raw: Any) -> dict[str, str]:
    """Coerce a Kubernetes label/annotation map into a stable ``dict[str, str]``."""
    if not isinstance(raw, dict):
        return {}
    return {k: ("" if v is None else str(v)) for k, v in raw.items() if isinstance(k, str)}


def _is_injection_key(key: str) -> bool:
    domain, separator, _ = key.partition("/")
    return bool(separator) and (domain == INJECTION_KEY_DOMAIN or domain.endswith("." + INJECTION_KEY_DOMAIN))


def _container_images(containers: Any) -> list[list[str]]:
    images = []
    for container in containers or []:
        images.append([getattr(container, "name", None) or "", getattr(container, "image", None) or ""])
    return images


def template_fingerprint(template: Any) -> str:
    """Return a SHA-256 digest of the pod-template fields the webhook consumes.

    Covers container names and images plus injection-related annotations and
    labels. The restart annotation is not part of this set, so writing it
    leaves the cached desired image valid.
    """
    metadata = getattr(template, "metadata", None)
    spec = getattr(template, "spec", None)
    payload = {
        "containers": _container_images(getattr(spec, "containers", None)),
        "initContainers": _container_images(getattr(spec, "init_containers", None)),
        "annotations": {
            k: v
            for k, v in string_map(getattr(metadata, "annotations", None)).items()
            if _is_injection_key(k)
        },
        "labels": {
            k: v
            for k, v in string_map(getattr(metadata, "labels", None)).items()
            if _is_injection_key(k)
        },
    }
    stable_payload = json.dumps(payload, sort_keys=True, separators=(",", ":"))
    return sha256(stable_payload.encode("utf-8")).hexdigest()
