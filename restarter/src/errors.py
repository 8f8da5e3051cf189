from __future__ import annotations

from typing import Any

from kubernetes.client import ApiException


class RestarterError(Exception):
    """Base class for failures raised inside one reconcile pass.

    Every error carries the workload identity and the pipeline step it was
    raised from so the reconciler can attribute it in logs and metrics.
    ``kind`` is the stable label used for classification.
    """

    kind = "error"

    def __init__(self, message: str, *, key: Any = None, step: str | None = None) -> None:
        super().__init__(message)
        self.key = key
        self.step = step

    def __str__(self) -> str:
        message = super().__str__()
        context = []
        if self.key is not None:
            context.append(str(self.key))
        if self.step:
            context.append(f"step={self.step}")
        if not context:
            return message
        return f"{message} ({', '.join(context)})"


class TransientError(RestarterError):
    """API unavailability, webhook timeout or connection failure; retried with backoff."""

    kind = "transient"


class ConflictError(TransientError):
    """Optimistic-concurrency conflict (HTTP 409) on a workload write."""

    kind = "conflict"


class PassCancelled(TransientError):
    """The pass deadline expired or shutdown was requested before completion."""

    kind = "cancelled"


class WorkloadNotFoundError(RestarterError):
    """The workload (or an object on its owner chain) no longer exists."""

    kind = "not_found"


class ValidationFailure(RestarterError):
    """Malformed or untrusted webhook response. Never retried in a tight loop."""

    kind = "validation"


class AccessDeniedError(RestarterError):
    """Kubernetes API rejected the credentials (401/403); an RBAC problem."""

    kind = "access_denied"


class InvariantViolation(RestarterError):
    """A programming invariant was violated; the pass aborts without mutation."""

    kind = "invariant"


def classify_api_exception(exc: ApiException, *, key: Any = None, step: str | None = None) -> RestarterError:
    """Translate a Kubernetes ``ApiException`` into the restarter error taxonomy."""
    status = exc.status
    reason = exc.reason or "unknown"
    if status == 404:
        return WorkloadNotFoundError(f"object not found: {reason}", key=key, step=step)
    if status == 409:
        return ConflictError(f"write conflict: {reason}", key=key, step=step)
    if status in {401, 403}:
        return AccessDeniedError(
            f"Kubernetes API access denied (status={status}); check RBAC",
            key=key,
            step=step,
        )
    return TransientError(f"Kubernetes API error (status={status}): {reason}", key=key, step=step)
