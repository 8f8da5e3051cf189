from __future__ import annotations

import logging
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Any

from kubernetes.client import AppsV1Api

from restarter.src.comparator import DriftVerdict
from restarter.src.errors import ConflictError, InvariantViolation, TransientError, WorkloadNotFoundError
from restarter.src.kube import patch_workload, read_workload
from restarter.src.metrics import METRICS
from restarter.src.models import Deadline, WorkloadRef, string_map, template_fingerprint

REASON_APPLIED = "restart triggered"
REASON_COOLDOWN = "cooldown active"
REASON_ALREADY_RECORDED = "restart already recorded"
REASON_TEMPLATE_CHANGED = "template changed since evaluation"


def utc_now() -> datetime:
    return datetime.now(UTC)


def round_up_to_second(moment: datetime) -> datetime:
    """Return *moment* in UTC, rounded up to the next whole second."""
    moment = moment.astimezone(UTC)
    if moment.microsecond:
        moment = moment.replace(microsecond=0) + timedelta(seconds=1)
    return moment


def format_restart_timestamp(moment: datetime) -> str:
    """Return *moment* as a compact RFC 3339 UTC string (e.g. ``2024-01-15T08:30:00Z``).

    Sub-second moments round up so the recorded restart is never earlier
    than the patch itself.
    """
    return round_up_to_second(moment).isoformat().replace("+00:00", "Z")


def parse_restart_timestamp(value: Any) -> datetime | None:
    """Parse a restart annotation value written by this or an older controller.

    Accepts RFC 3339 / ISO 8601 with ``Z`` or numeric offsets, fractional
    seconds, naive timestamps (taken as UTC) and integer Unix epochs. Any
    other value yields ``None``: no cooldown is recorded.
    """
    if not isinstance(value, str):
        return None
    text = value.strip()
    if not text:
        return None
    if text.isdigit():
        try:
            return datetime.fromtimestamp(int(text), tz=UTC)
        except (OverflowError, OSError, ValueError):
            return None
    try:
        parsed = datetime.fromisoformat(text.replace("z", "Z"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed.astimezone(UTC)


@dataclass(frozen=True)
class PatchOutcome:
    applied: bool
    reason: str
    restarted_at: datetime | None = None
    cooldown_remaining: float = 0.0


class Annotator:
    """Triggers a rolling restart by setting one pod-template annotation.

    The patch carries nothing but the restart annotation and the observed
    ``metadata.resourceVersion``; the latter turns a concurrent write into a
    ``409 Conflict``, which is retried against a freshly read object a
    bounded number of times.

    Cooldown is derived from the annotation on the live object, so it
    survives process restarts. The in-memory cache never overrides it.
    """

    def __init__(
        self,
        apps_api: AppsV1Api,
        annotation_key: str,
        cooldown_seconds: float,
        *,
        conflict_retries: int = 3,
        api_timeout_seconds: float = 15.0,
        now_fn: Callable[[], datetime] = utc_now,
        logger: logging.Logger | None = None,
    ) -> None:
        self.apps_api = apps_api
        self.annotation_key = annotation_key
        self.cooldown_seconds = cooldown_seconds
        self.conflict_retries = conflict_retries
        self.api_timeout_seconds = api_timeout_seconds
        self.now_fn = now_fn
        self.logger = logger or logging.getLogger(__name__)

    def last_restarted_at(self, template_annotations: Mapping[str, str]) -> datetime | None:
        raw = template_annotations.get(self.annotation_key)
        parsed = parse_restart_timestamp(raw)
        if raw is not None and parsed is None:
            self.logger.info(
                "Ignoring unparsable %s value %r; treating as no recorded restart",
                self.annotation_key,
                raw,
            )
        return parsed

    def _remaining(self, template_annotations: Mapping[str, str]) -> float:
        if self.cooldown_seconds <= 0:
            return 0.0
        last = self.last_restarted_at(template_annotations)
        if last is None:
            return 0.0
        elapsed = (self.now_fn() - last).total_seconds()
        # A timestamp in the future (clock skew) counts as "just restarted".
        return min(float(self.cooldown_seconds), max(0.0, self.cooldown_seconds - elapsed))

    def cooldown_remaining(self, ref: WorkloadRef) -> float:
        """Seconds left in the cooldown window, read from the live object in *ref*."""
        return self._remaining(ref.template_annotations)

    def restart_patch(self, resource_version: str | None, timestamp: str) -> dict[str, Any]:
        body: dict[str, Any] = {
            "spec": {"template": {"metadata": {"annotations": {self.annotation_key: timestamp}}}}
        }
        if resource_version:
            body["metadata"] = {"resourceVersion": resource_version}
        return body

    def _check_patch(self, body: dict[str, Any], ref: WorkloadRef) -> None:
        """Refuse to send anything but the restart annotation and the precondition."""
        allowed_top = {"spec", "metadata"}
        metadata = body.get("metadata", {})
        template = body.get("spec", {}).get("template", {})
        annotations = template.get("metadata", {}).get("annotations", {})
        if (
            set(body) - allowed_top
            or set(metadata) - {"resourceVersion"}
            or set(body.get("spec", {})) != {"template"}
            or set(template) != {"metadata"}
            or set(template.get("metadata", {})) != {"annotations"}
            or set(annotations) != {self.annotation_key}
        ):
            raise InvariantViolation("restart patch touches fields outside the restart annotation", key=ref.key, step="patch")

    def apply_restart(
        self,
        ref: WorkloadRef,
        verdict: DriftVerdict,
        deadline: Deadline | None = None,
    ) -> PatchOutcome:
        """Read, re-check cooldown and template, then patch; retry on conflict.

        Returns ``applied=False`` for cooldown and for a template that changed
        since the pass evaluated it. Raises :class:`TransientError` once the
        conflict budget is exhausted and :class:`WorkloadNotFoundError` if the
        object is gone or was recreated under the same name.
        """
        attempts = self.conflict_retries + 1
        for attempt in range(1, attempts + 1):
            if deadline is not None:
                deadline.check("patch", ref.key)
            timeout = deadline.timeout(self.api_timeout_seconds) if deadline else self.api_timeout_seconds
            live = read_workload(self.apps_api, ref.key, timeout=timeout, step="patch")
            metadata = getattr(live, "metadata", None)
            live_uid = getattr(metadata, "uid", None)
            if ref.uid and live_uid and live_uid != ref.uid:
                raise WorkloadNotFoundError("workload was recreated", key=ref.key, step="patch")

            template = getattr(getattr(live, "spec", None), "template", None)
            if template_fingerprint(template) != ref.fingerprint:
                return PatchOutcome(applied=False, reason=REASON_TEMPLATE_CHANGED)

            annotations = string_map(getattr(getattr(template, "metadata", None), "annotations", None))
            remaining = self._remaining(annotations)
            if remaining > 0:
                return PatchOutcome(applied=False, reason=REASON_COOLDOWN, cooldown_remaining=remaining)

            now = round_up_to_second(self.now_fn())
            timestamp = format_restart_timestamp(now)
            if annotations.get(self.annotation_key) == timestamp:
                return PatchOutcome(applied=False, reason=REASON_ALREADY_RECORDED)

            body = self.restart_patch(getattr(metadata, "resource_version", None), timestamp)
            self._check_patch(body, ref)
            if deadline is not None:
                deadline.check("patch", ref.key)
            try:
                patch_workload(self.apps_api, ref.key, body, timeout=timeout)
            except ConflictError:
                METRICS.patch_conflicts_total.inc()
                self.logger.info(
                    "Restart patch for %s conflicted (attempt %d/%d); re-reading",
                    ref.key,
                    attempt,
                    attempts,
                )
                continue

            self.logger.info("Patched %s=%s on %s (%s)", self.annotation_key, timestamp, ref.key, verdict.reason)
            return PatchOutcome(applied=True, reason=REASON_APPLIED, restarted_at=now)

        raise TransientError(
            f"restart patch still conflicting after {attempts} attempt(s)",
            key=ref.key,
            step="patch",
        )
