from __future__ import annotations

import logging
import random
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from functools import partial
from typing import Any

from kubernetes import watch
from kubernetes.client import ApiException, AppsV1Api, CoreV1Api

from restarter.src.cache import WorkloadCache
from restarter.src.config import RestarterConfig
from restarter.src.kube import pod_list_call, workload_list_call
from restarter.src.metrics import METRICS
from restarter.src.models import ReconcileRequest, WorkloadKey, WorkloadKind
from restarter.src.reconciler import Reconciler, ReconcileResult
from restarter.src.scanner import controller_link
from restarter.src.workqueue import WorkQueue

WATCH_TIMEOUT_SECONDS = 30
MAX_WATCH_BACKOFF_SECONDS = 30
POD_TEMPLATE_HASH_LABEL = "pod-template-hash"

_MISSING = object()


@dataclass(frozen=True)
class WatchSource:
    """One list-then-watch stream: a resource type in one namespace (or all)."""

    resource: str
    namespace: str | None
    list_fn: Callable[..., Any]
    list_kwargs: dict[str, Any]
    on_event: Callable[[str, Any], WorkloadKey | None]
    on_list: Callable[[list[Any]], None]

    @property
    def name(self) -> str:
        return f"{self.resource}@{self.namespace or '*'}"


class SidecarRestartController:
    """Turns workload and pod watch events into reconcile passes.

    Watch events are hints only: each one is reduced to a :class:`WorkloadKey`
    and put on a deduplicating :class:`WorkQueue`. Worker threads pop keys and
    run :meth:`Reconciler.reconcile`, which re-reads everything it needs from
    the API server. The queue guarantees a key is never processed by two
    workers at once.
    """

    def __init__(
        self,
        reconciler: Reconciler,
        config: RestarterConfig,
        core_api: CoreV1Api,
        apps_api: AppsV1Api,
        cache: WorkloadCache,
        *,
        queue: WorkQueue | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self.reconciler = reconciler
        self.config = config
        self.core_api = core_api
        self.apps_api = apps_api
        self.cache = cache
        self.queue = queue or WorkQueue(
            base_delay=config.requeue_base_seconds,
            max_delay=config.requeue_max_seconds,
        )
        self.logger = logger or logging.getLogger(__name__)
        self.ready = threading.Event()

        self._stop = threading.Event()
        self._watcher_lock = threading.Lock()
        self._active_watchers: set[watch.Watch] = set()
        self._state_lock = threading.Lock()
        self._generations: dict[WorkloadKey, Any] = {}
        self._pod_images: dict[tuple[str, str], str] = {}
        self._listed: set[str] = set()
        self._threads: list[threading.Thread] = []
        self.sources = self._build_sources()

    def _build_sources(self) -> list[WatchSource]:
        sources: list[WatchSource] = []
        for namespace in self.config.namespaces or (None,):
            for kind in WorkloadKind:
                list_fn, kwargs = workload_list_call(self.apps_api, kind, namespace)
                sources.append(
                    WatchSource(
                        resource=f"{kind.lower()}s",
                        namespace=namespace,
                        list_fn=list_fn,
                        list_kwargs=kwargs,
                        on_event=partial(self.handle_workload_event, kind),
                        on_list=partial(self.sync_workloads, kind, namespace),
                    )
                )
            list_fn, kwargs = pod_list_call(self.core_api, namespace)
            sources.append(
                WatchSource(
                    resource="pods",
                    namespace=namespace,
                    list_fn=list_fn,
                    list_kwargs=kwargs,
                    on_event=self.handle_pod_event,
                    on_list=partial(self.sync_pods, namespace),
                )
            )
        return sources

    @staticmethod
    def workload_key(kind: WorkloadKind, obj: Any) -> WorkloadKey | None:
        metadata = getattr(obj, "metadata", None)
        namespace = getattr(metadata, "namespace", None)
        name = getattr(metadata, "name", None)
        if not namespace or not name:
            return None
        return WorkloadKey(kind=kind, namespace=namespace, name=name)

    @staticmethod
    def pod_owner_key(pod: Any) -> WorkloadKey | None:
        """Map a pod to the workload that manages it, without any API call.

        A ReplicaSet owner is mapped to its Deployment by stripping the
        ``-<pod-template-hash>`` suffix the Deployment controller appends.
        Bare ReplicaSets and unknown owners yield ``None``.
        """
        metadata = getattr(pod, "metadata", None)
        namespace = getattr(metadata, "namespace", None)
        link = controller_link(metadata)
        if link is None or not namespace:
            return None
        if link.kind == "ReplicaSet":
            pod_hash = (getattr(metadata, "labels", None) or {}).get(POD_TEMPLATE_HASH_LABEL)
            suffix = f"-{pod_hash}"
            if not pod_hash or not link.name.endswith(suffix) or len(link.name) == len(suffix):
                return None
            return WorkloadKey(WorkloadKind.DEPLOYMENT, namespace, link.name[: -len(suffix)])
        if link.kind in (WorkloadKind.STATEFUL_SET, WorkloadKind.DAEMON_SET):
            return WorkloadKey(WorkloadKind(link.kind), namespace, link.name)
        return None

    def handle_workload_event(self, kind: WorkloadKind, event_type: str, obj: Any) -> WorkloadKey | None:
        """Enqueue a workload on creation and on spec changes.

        Status-only updates keep ``metadata.generation`` unchanged and are
        ignored. Deletion drops the cache entry.
        """
        key = self.workload_key(kind, obj)
        if key is None:
            return None

        if event_type == "DELETED":
            with self._state_lock:
                self._generations.pop(key, None)
            self.cache.forget(key)
            self.logger.debug("%s deleted; cache entry dropped", key)
            return None
        if event_type not in {"ADDED", "MODIFIED"}:
            return None

        generation = getattr(getattr(obj, "metadata", None), "generation", None)
        with self._state_lock:
            previous = self._generations.get(key, _MISSING)
            self._generations[key] = generation
        if event_type == "MODIFIED" and previous == generation:
            return None

        self.queue.add(key)
        return key

    def handle_pod_event(self, event_type: str, pod: Any) -> WorkloadKey | None:
        """Enqueue the owning workload when a sidecar pod appears, goes away or changes image."""
        key = self.pod_owner_key(pod)
        if key is None:
            return None
        metadata = getattr(pod, "metadata", None)
        pod_id = (key.namespace, getattr(metadata, "name", None) or "")
        image = self.reconciler.scanner.sidecar_image(pod)

        with self._state_lock:
            if event_type == "DELETED":
                previous = self._pod_images.pop(pod_id, None)
                if previous is None and image is None:
                    return None
            elif event_type in {"ADDED", "MODIFIED"}:
                if image is None:
                    return None
                previous = self._pod_images.get(pod_id)
                self._pod_images[pod_id] = image
                if event_type == "MODIFIED" and previous == image:
                    return None
            else:
                return None

        self.queue.add(key)
        return key

    def sync_workloads(self, kind: WorkloadKind, namespace: str | None, items: list[Any]) -> None:
        """Seed state from a full listing and evict entries for workloads that no longer exist."""
        generations: dict[WorkloadKey, Any] = {}
        for item in items:
            key = self.workload_key(kind, item)
            if key is not None:
                generations[key] = getattr(getattr(item, "metadata", None), "generation", None)
        keys = list(generations)
        live = set(keys)
        with self._state_lock:
            for key in [
                known
                for known in self._generations
                if known.kind == kind and (namespace is None or known.namespace == namespace) and known not in live
            ]:
                del self._generations[key]
            self._generations.update(generations)
        dropped = self.cache.retain(live, kind=kind, namespace=namespace)
        if dropped:
            self.logger.info("Evicted %d stale %s cache entr(ies) after re-list", dropped, kind)
        for key in keys:
            self.queue.add(key)

    def sync_pods(self, namespace: str | None, items: list[Any]) -> None:
        seen: dict[tuple[str, str], str] = {}
        for pod in items:
            key = self.pod_owner_key(pod)
            image = self.reconciler.scanner.sidecar_image(pod)
            if key is None or image is None:
                continue
            seen[(key.namespace, getattr(pod.metadata, "name", None) or "")] = image
        with self._state_lock:
            for pod_id in [
                pod_id for pod_id in self._pod_images if namespace is None or pod_id[0] == namespace
            ]:
                if pod_id not in seen:
                    del self._pod_images[pod_id]
            self._pod_images.update(seen)

    def resync(self) -> int:
        """Enqueue every known workload; catches drift no event announced."""
        with self._state_lock:
            keys = list(self._generations)
        for key in keys:
            self.queue.add(key)
        self.logger.debug("Periodic resync enqueued %d workload(s)", len(keys))
        return len(keys)

    def process_next(self, timeout: float | None = 1.0) -> ReconcileResult | None:
        """Pop one key, reconcile it and translate the result into queue operations."""
        key = self.queue.get(timeout=timeout)
        if key is None:
            return None
        try:
            result = self.reconciler.reconcile(ReconcileRequest(key), cancel_event=self._stop)
        except Exception:
            self.logger.exception("Unexpected error reconciling %s", key)
            self.queue.add_rate_limited(key)
            return None
        finally:
            self.queue.done(key)

        if result.requeue:
            delay = self.queue.add_rate_limited(key)
            self.logger.info("Requeued %s in %.1fs after %s failure", key, delay, result.step or "pass")
        else:
            self.queue.forget(key)
            if result.requeue_after is not None:
                self.queue.add_after(key, result.requeue_after)
        return result

    def request_stop(self) -> None:
        """Request a cooperative stop and immediately interrupt any open watch stream."""
        self._stop.set()
        self.queue.shut_down()
        with self._watcher_lock:
            watchers = list(self._active_watchers)
        for watcher in watchers:
            watcher.stop()

    def is_alive(self) -> bool:
        """True while every started thread is still running."""
        return all(thread.is_alive() for thread in self._threads)

    def _mark_listed(self, source: WatchSource) -> None:
        with self._state_lock:
            self._listed.add(source.name)
            all_listed = len(self._listed) == len(self.sources)
        if all_listed and not self.ready.is_set():
            self.logger.info("Initial listing complete for %d watch source(s)", len(self.sources))
            self.ready.set()

    def _access_denied(self, source: WatchSource, status: int | None, during: str) -> None:
        self.logger.error(
            "Kubernetes API access denied during %s of %s (status=%s). "
            "Check controller RBAC and service account permissions.",
            during,
            source.name,
            status,
        )
        METRICS.watch_errors_total.labels(resource=source.resource).inc()
        self.ready.clear()
        self.request_stop()

    def _backoff(self, backoff_seconds: float) -> float:
        jittered = backoff_seconds * (0.5 + random.random())  # noqa: S311
        self._stop.wait(timeout=jittered)
        return min(backoff_seconds * 2, MAX_WATCH_BACKOFF_SECONDS)

    def _list(self, source: WatchSource) -> str | None:
        listing = source.list_fn(**source.list_kwargs, _request_timeout=self.config.api_timeout_seconds)
        source.on_list(list(getattr(listing, "items", None) or []))
        self._mark_listed(source)
        return getattr(getattr(listing, "metadata", None), "resource_version", None)

    def watch_source(self, source: WatchSource) -> None:
        """List-then-watch one source until stop.

        Re-lists on ``410 Gone``, stops the whole controller on ``401``/``403``
        and backs off with jitter (capped at 30 s) on anything else.
        """
        resource_version: str | None = None
        listed = False
        backoff_seconds: float = 1
        stream_count = 0

        while not self._stop.is_set():
            if not listed:
                try:
                    resource_version = self._list(source)
                    listed = True
                    backoff_seconds = 1
                    self.logger.info("Watching %s from resourceVersion %s", source.name, resource_version)
                except ApiException as exc:
                    if exc.status in {401, 403}:
                        self._access_denied(source, exc.status, "list")
                        return
                    self.logger.exception("Listing %s failed", source.name)
                    METRICS.watch_errors_total.labels(resource=source.resource).inc()
                    backoff_seconds = self._backoff(backoff_seconds)
                    continue
                except Exception:
                    self.logger.exception("Unexpected error listing %s", source.name)
                    METRICS.watch_errors_total.labels(resource=source.resource).inc()
                    backoff_seconds = self._backoff(backoff_seconds)
                    continue

            watcher = watch.Watch()
            with self._watcher_lock:
                self._active_watchers.add(watcher)
            try:
                if stream_count > 0:
                    METRICS.watch_reconnects_total.labels(resource=source.resource).inc()
                stream_count += 1
                stream = watcher.stream(
                    source.list_fn,
                    resource_version=resource_version,
                    timeout_seconds=WATCH_TIMEOUT_SECONDS,
                    **source.list_kwargs,
                )
                for event in stream:
                    if self._stop.is_set():
                        break
                    obj = event.get("object")
                    if obj is None:
                        continue
                    metadata = getattr(obj, "metadata", None)
                    if metadata and metadata.resource_version:
                        resource_version = metadata.resource_version
                    source.on_event(str(event.get("type", "")), obj)
                backoff_seconds = 1
            except ApiException as exc:
                # 410 Gone: the resourceVersion was compacted away; take a fresh snapshot.
                if exc.status == 410:
                    self.logger.warning("Watch of %s expired, re-listing", source.name)
                    listed = False
                    continue
                if exc.status in {401, 403}:
                    self._access_denied(source, exc.status, "watch")
                    return
                self.logger.exception("Kubernetes API watch error on %s", source.name)
                METRICS.watch_errors_total.labels(resource=source.resource).inc()
                backoff_seconds = self._backoff(backoff_seconds)
            except Exception:
                self.logger.exception("Unexpected watch error on %s", source.name)
                METRICS.watch_errors_total.labels(resource=source.resource).inc()
                backoff_seconds = self._backoff(backoff_seconds)
            finally:
                watcher.stop()
                with self._watcher_lock:
                    self._active_watchers.discard(watcher)

    def _work(self) -> None:
        while not self._stop.is_set():
            self.process_next(timeout=1.0)

    def _start_thread(self, name: str, target: Callable[..., None], *args: Any) -> None:
        thread = threading.Thread(target=target, args=args, name=name, daemon=True)
        thread.start()
        self._threads.append(thread)

    def run_forever(self, shutdown_event: threading.Event | None = None) -> None:
        """Run watch threads and workers until shutdown.

        1. Starts one list-then-watch thread per source (workload kinds and
           pods, per namespace or cluster-wide).
        2. Starts ``config.workers`` reconcile workers sharing the queue.
        3. Enqueues every known workload each ``resync_seconds``.
        4. On shutdown, or once access is denied, stops watches, shuts the
           queue down and lets in-flight passes observe cancellation.
        """
        stop = shutdown_event or threading.Event()
        self._stop.clear()
        self._threads = []

        for source in self.sources:
            self._start_thread(f"watch-{source.name}", self.watch_source, source)
        for index in range(self.config.workers):
            self._start_thread(f"worker-{index}", self._work)

        next_resync = time.monotonic() + self.config.resync_seconds
        while not stop.is_set() and not self._stop.is_set():
            stop.wait(timeout=1.0)
            if time.monotonic() >= next_resync:
                self.resync()
                next_resync = time.monotonic() + self.config.resync_seconds

        self.request_stop()
        for thread in self._threads:
            thread.join(timeout=self.config.pass_deadline_seconds)
        self.ready.clear()
        self.logger.info("Controller stopped")
