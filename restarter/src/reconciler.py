from __future__ import annotations

import logging
import random
import threading
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from enum import StrEnum

from kubernetes.client import AppsV1Api

from restarter.src.annotator import REASON_COOLDOWN, Annotator, utc_now
from restarter.src.cache import WorkloadCache
from restarter.src.comparator import REASON_NO_PODS, DriftVerdict, compare
from restarter.src.config import RestarterConfig
from restarter.src.errors import (
    AccessDeniedError,
    InvariantViolation,
    RestarterError,
    TransientError,
    ValidationFailure,
    WorkloadNotFoundError,
)
from restarter.src.kube import read_workload
from restarter.src.metrics import METRICS
from restarter.src.models import (
    Deadline,
    ReconcileRequest,
    RestartDecision,
    WorkloadRef,
)
from restarter.src.scanner import PodScanner
from restarter.src.webhook import WebhookClient


class Outcome(StrEnum):
    SUCCESS = "success"
    RETRYABLE = "retryable"
    FATAL = "fatal"


@dataclass(frozen=True)
class ReconcileResult:
    """Result of one pass, translated by the worker loop into queue operations.

    ``RETRYABLE`` asks for a backoff-based requeue. ``requeue_after`` (only
    set on success) asks for one bounded, jittered delayed re-evaluation.
    Everything else ends observation until the next watch event.
    """

    decision: RestartDecision
    outcome: Outcome
    reason: str
    requeue_after: float | None = None
    step: str | None = None

    @property
    def requeue(self) -> bool:
        return self.outcome is Outcome.RETRYABLE


class Reconciler:
    """Drives one reconcile pass: scan, resolve desired, compare, decide, patch.

    Passes are stateless with respect to each other apart from the advisory
    :class:`WorkloadCache`. At most one write happens per pass, and only when
    every pod uniformly runs a sidecar image other than the one the webhook
    injects today and the live cooldown allows it.
    """

    def __init__(
        self,
        config: RestarterConfig,
        apps_api: AppsV1Api,
        cache: WorkloadCache,
        scanner: PodScanner,
        webhook: WebhookClient,
        annotator: Annotator,
        *,
        now_fn: Callable[[], datetime] = utc_now,
        logger: logging.Logger | None = None,
    ) -> None:
        self.config = config
        self.apps_api = apps_api
        self.cache = cache
        self.scanner = scanner
        self.webhook = webhook
        self.annotator = annotator
        self.now_fn = now_fn
        self.logger = logger or logging.getLogger(__name__)

    def reconcile(
        self,
        request: ReconcileRequest,
        cancel_event: threading.Event | None = None,
    ) -> ReconcileResult:
        key = request.key
        deadline = Deadline.after(self.config.pass_deadline_seconds, cancel_event)
        try:
            result = self._run(request, deadline)
        except WorkloadNotFoundError:
            self.cache.forget(key)
            self.logger.info("%s no longer exists; nothing to reconcile", key)
            result = ReconcileResult(
                decision=RestartDecision.NO_DRIFT_NO_OP,
                outcome=Outcome.SUCCESS,
                reason="workload not found",
            )
        except ValidationFailure as exc:
            self.logger.error(
                "Untrusted webhook response for %s at step %s: %s; skipping until the next event",
                key,
                exc.step,
                exc,
            )
            result = self._failed(exc, Outcome.FATAL)
        except (AccessDeniedError, InvariantViolation) as exc:
            self.logger.error("Reconcile of %s aborted at step %s without mutation: %s", key, exc.step, exc)
            result = self._failed(exc, Outcome.FATAL)
        except TransientError as exc:
            self.logger.warning("Transient failure reconciling %s at step %s: %s", key, exc.step, exc)
            result = self._failed(exc, Outcome.RETRYABLE)

        METRICS.reconcile_total.labels(decision=result.decision, outcome=result.outcome).inc()
        return result

    @staticmethod
    def _failed(exc: RestarterError, outcome: Outcome) -> ReconcileResult:
        METRICS.step_errors_total.labels(step=exc.step or "unknown", kind=exc.kind).inc()
        return ReconcileResult(
            decision=RestartDecision.INCONCLUSIVE_SKIPPED,
            outcome=outcome,
            reason=str(exc),
            step=exc.step,
        )

    def _requeue_delay(self, remaining: float) -> float:
        """Delay for re-checking after cooldown: jittered upwards, bounded."""
        jittered = remaining * (1.0 + 0.1 * random.random())  # noqa: S311
        return max(1.0, min(self.config.requeue_max_seconds, jittered))

    def _read(self, request: ReconcileRequest, deadline: Deadline) -> WorkloadRef:
        deadline.check("read", request.key)
        live = read_workload(
            self.apps_api,
            request.key,
            timeout=deadline.timeout(self.config.api_timeout_seconds),
        )
        return WorkloadRef.from_object(request.key.kind, live)

    def _resolve_desired(self, ref: WorkloadRef, deadline: Deadline) -> str:
        cached = self.cache.fresh_desired_image(
            ref.key,
            ref.fingerprint,
            self.now_fn(),
            self.config.webhook_cache_ttl_seconds,
        )
        if cached is not None:
            METRICS.webhook_cache_total.labels(result="hit").inc()
            self.logger.debug("Reusing cached desired image %s for %s", cached, ref.key)
            return cached

        METRICS.webhook_cache_total.labels(result="miss").inc()
        result = self.webhook.desired_injection(ref, deadline)
        self.cache.record_desired(ref.key, ref.fingerprint, result.desired_image, self.now_fn())
        return result.desired_image

    def _no_drift(self, ref: WorkloadRef, verdict: DriftVerdict) -> ReconcileResult:
        self.cache.record_decision(ref.key, ref.fingerprint, RestartDecision.NO_DRIFT_NO_OP)
        self.logger.info("%s: no drift (%s)", ref.key, verdict.reason)
        return ReconcileResult(
            decision=RestartDecision.NO_DRIFT_NO_OP,
            outcome=Outcome.SUCCESS,
            reason=verdict.reason,
        )

    def _cooldown_skipped(self, ref: WorkloadRef, verdict: DriftVerdict, remaining: float) -> ReconcileResult:
        self.cache.record_decision(ref.key, ref.fingerprint, RestartDecision.DRIFT_DETECTED_COOLDOWN_SKIPPED)
        delay = self._requeue_delay(remaining)
        self.logger.info(
            "%s: drift detected (%s) but cooldown active for %.0fs more; re-checking in %.0fs",
            ref.key,
            verdict.reason,
            remaining,
            delay,
        )
        return ReconcileResult(
            decision=RestartDecision.DRIFT_DETECTED_COOLDOWN_SKIPPED,
            outcome=Outcome.SUCCESS,
            reason=REASON_COOLDOWN,
            requeue_after=delay,
        )

    def _run(self, request: ReconcileRequest, deadline: Deadline) -> ReconcileResult:
        ref = self._read(request, deadline)

        skip_value = ref.annotations.get(self.config.skip_annotation_key) or ref.template_annotations.get(
            self.config.skip_annotation_key
        )
        if skip_value is not None and skip_value.strip().lower() == "true":
            self.logger.debug("%s opted out via %s", ref.key, self.config.skip_annotation_key)
            return ReconcileResult(
                decision=RestartDecision.NO_DRIFT_NO_OP,
                outcome=Outcome.SUCCESS,
                reason="opted out",
            )

        observations = self.scanner.scan(ref, deadline)
        if not observations:
            # Nothing runs the sidecar, so no injection is expected from the webhook.
            return self._no_drift(ref, DriftVerdict(has_drift=False, reason=REASON_NO_PODS))

        desired = self._resolve_desired(ref, deadline)
        verdict = compare(desired, observations, hub_aware=self.config.hub_aware)
        if not verdict.has_drift:
            return self._no_drift(ref, verdict)

        remaining = self.annotator.cooldown_remaining(ref)
        if remaining > 0:
            return self._cooldown_skipped(ref, verdict, remaining)

        deadline.check("patch", ref.key)
        outcome = self.annotator.apply_restart(ref, verdict, deadline)
        if outcome.applied:
            self.cache.record_decision(
                ref.key,
                ref.fingerprint,
                RestartDecision.DRIFT_DETECTED_PATCH_APPLIED,
                restarted_at=outcome.restarted_at,
            )
            METRICS.restarts_total.labels(kind=ref.kind).inc()
            self.logger.info("%s: drift detected (%s); rolling restart triggered", ref.key, verdict.reason)
            return ReconcileResult(
                decision=RestartDecision.DRIFT_DETECTED_PATCH_APPLIED,
                outcome=Outcome.SUCCESS,
                reason=verdict.reason,
            )
        if outcome.reason == REASON_COOLDOWN:
            return self._cooldown_skipped(ref, verdict, outcome.cooldown_remaining)

        self.logger.info("%s: restart not applied (%s)", ref.key, outcome.reason)
        return ReconcileResult(
            decision=RestartDecision.INCONCLUSIVE_SKIPPED,
            outcome=Outcome.SUCCESS,
            reason=outcome.reason,
        )
