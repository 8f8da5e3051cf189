from __future__ import annotations

import threading
from collections.abc import Iterable
from dataclasses import dataclass, replace
from datetime import datetime

from restarter.src.models import RestartDecision, WorkloadKey


@dataclass(frozen=True)
class CacheEntry:
    """Last evaluated state of one workload.

    Valid only while ``template_fingerprint`` matches the live template; the
    desired image and the restart clock are invalidated together.
    """

    template_fingerprint: str
    desired_image: str | None = None
    last_webhook_call_at: datetime | None = None
    last_restarted_at: datetime | None = None
    last_decision: RestartDecision | None = None


class WorkloadCache:
    """Process-local, lock-guarded map from workload identity to :class:`CacheEntry`.

    The lock only guards dictionary access and is never held across an API or
    webhook call. Entries are immutable; callers receive snapshots and cannot
    mutate shared state through them.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._entries: dict[WorkloadKey, CacheEntry] = {}

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def get(self, key: WorkloadKey, fingerprint: str) -> CacheEntry | None:
        """Return the entry for *key* if it was recorded for *fingerprint*.

        A fingerprint mismatch drops the whole entry.
        """
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            if entry.template_fingerprint != fingerprint:
                del self._entries[key]
                return None
            return entry

    def fresh_desired_image(
        self,
        key: WorkloadKey,
        fingerprint: str,
        now: datetime,
        ttl_seconds: float,
    ) -> str | None:
        """Return the cached desired image when the last webhook call is recent enough."""
        entry = self.get(key, fingerprint)
        if entry is None or entry.desired_image is None or entry.last_webhook_call_at is None:
            return None
        age = (now - entry.last_webhook_call_at).total_seconds()
        if age < 0 or age >= ttl_seconds:
            return None
        return entry.desired_image

    def _current(self, key: WorkloadKey, fingerprint: str) -> CacheEntry:
        # Caller holds the lock.
        entry = self._entries.get(key)
        if entry is None or entry.template_fingerprint != fingerprint:
            return CacheEntry(template_fingerprint=fingerprint)
        return entry

    def record_desired(
        self,
        key: WorkloadKey,
        fingerprint: str,
        desired_image: str,
        called_at: datetime,
    ) -> None:
        with self._lock:
            entry = self._current(key, fingerprint)
            self._entries[key] = replace(
                entry,
                desired_image=desired_image,
                last_webhook_call_at=called_at,
            )

    def record_decision(
        self,
        key: WorkloadKey,
        fingerprint: str,
        decision: RestartDecision,
        *,
        restarted_at: datetime | None = None,
    ) -> None:
        with self._lock:
            entry = self._current(key, fingerprint)
            if restarted_at is not None:
                entry = replace(entry, last_restarted_at=restarted_at)
            self._entries[key] = replace(entry, last_decision=decision)

    def forget(self, key: WorkloadKey) -> None:
        with self._lock:
            self._entries.pop(key, None)

    def retain(
        self,
        keys: Iterable[WorkloadKey],
        *,
        kind: str | None = None,
        namespace: str | None = None,
    ) -> int:
        """Drop entries whose key is not in *keys*; return how many were dropped.

        *kind* and *namespace* restrict eviction to the scope a relist
        covered, so one listing never evicts entries it could not have seen.
        """
        live = set(keys)
        with self._lock:
            stale = [
                key
                for key in self._entries
                if key not in live
                and (kind is None or key.kind == kind)
                and (namespace is None or key.namespace == namespace)
            ]
            for key in stale:
                del self._entries[key]
        return len(stale)
