from __future__ import annotations

from types import SimpleNamespace
from typing import Any

import pytest
from kubernetes.client import ApiException

from restarter.src.errors import TransientError
from restarter.src.models import WorkloadKey, WorkloadKind, WorkloadRef
from restarter.src.scanner import PodScanner, selector_to_string

SIDECAR = "istio-proxy"


def owner(kind: str, name: str, uid: str | None = None, controller: bool = True) -> SimpleNamespace:
    return SimpleNamespace(kind=kind, name=name, uid=uid or f"{name}-uid", controller=controller)


def make_pod(
    name: str,
    owners: list[SimpleNamespace],
    *,
    spec_image: str | None = "istio/proxyv2:1.19",
    status_image: str | None = None,
    native: bool = False,
    phase: str = "Running",
) -> SimpleNamespace:
    containers = [SimpleNamespace(name="app", image="web:1")]
    init_containers = []
    if spec_image is not None:
        sidecar = SimpleNamespace(name=SIDECAR, image=spec_image)
        (init_containers if native else containers).append(sidecar)
    statuses = None
    if status_image is not None:
        statuses = [SimpleNamespace(name="app", image="web:1"), SimpleNamespace(name=SIDECAR, image=status_image)]
    return SimpleNamespace(
        metadata=SimpleNamespace(name=name, namespace="ns", owner_references=owners),
        spec=SimpleNamespace(containers=containers, init_containers=init_containers),
        status=SimpleNamespace(phase=phase, container_statuses=statuses, init_container_statuses=None),
    )


class FakeCoreApi:
    def __init__(self, pods: list[SimpleNamespace], fail_status: int | None = None) -> None:
        self.pods = pods
        self.fail_status = fail_status
        self.selectors: list[str] = []

    def list_namespaced_pod(self, namespace: str, label_selector: str, _request_timeout: float) -> SimpleNamespace:
        self.selectors.append(label_selector)
        if self.fail_status is not None:
            raise ApiException(status=self.fail_status, reason="boom")
        return SimpleNamespace(items=self.pods)


class FakeAppsApi:
    def __init__(self, replica_sets: dict[str, SimpleNamespace] | None = None) -> None:
        self.replica_sets = replica_sets or {}
        self.reads: list[str] = []

    def read_namespaced_replica_set(self, name: str, namespace: str, _request_timeout: float) -> Any:
        self.reads.append(name)
        if name not in self.replica_sets:
            raise ApiException(status=404, reason="Not Found")
        return self.replica_sets[name]

    def read_namespaced_controller_revision(self, name: str, namespace: str, _request_timeout: float) -> Any:
        raise ApiException(status=404, reason="Not Found")


def replica_set(name: str, deployment: str, deployment_uid: str = "web-uid") -> SimpleNamespace:
    return SimpleNamespace(metadata=SimpleNamespace(name=name, owner_references=[owner("Deployment", deployment, deployment_uid)]))


def make_ref(kind: WorkloadKind = WorkloadKind.DEPLOYMENT, name: str = "web", uid: str | None = "web-uid") -> WorkloadRef:
    return WorkloadRef(
        key=WorkloadKey(kind, "ns", name),
        uid=uid,
        resource_version="1",
        fingerprint="fp",
        template=None,
        selector=SimpleNamespace(match_labels={"app": name}, match_expressions=None),
    )


# ---------------------------------------------------------------------------
# Selector rendering
# ---------------------------------------------------------------------------


def test_selector_to_string_renders_labels_and_expressions() -> None:
    selector = SimpleNamespace(
        match_labels={"app": "web", "tier": "front"},
        match_expressions=[
            SimpleNamespace(key="env", operator="In", values=["prod", "canary"]),
            SimpleNamespace(key="legacy", operator="DoesNotExist", values=None),
            SimpleNamespace(key="track", operator="Exists", values=None),
            SimpleNamespace(key="zone", operator="NotIn", values=["b"]),
        ],
    )

    assert selector_to_string(selector) == "app=web,tier=front,env in (canary,prod),!legacy,track,zone notin (b)"


def test_selector_to_string_rejects_unknown_operator() -> None:
    selector = SimpleNamespace(match_labels=None, match_expressions=[SimpleNamespace(key="a", operator="Gt", values=["1"])])

    with pytest.raises(ValueError, match="Gt"):
        selector_to_string(selector)


# ---------------------------------------------------------------------------
# Scanning
# ---------------------------------------------------------------------------


def test_scan_follows_replica_set_to_deployment() -> None:
    pods = [make_pod(f"web-abc-{i}", [owner("ReplicaSet", "web-abc")]) for i in range(3)]
    apps_api = FakeAppsApi({"web-abc": replica_set("web-abc", "web")})
    scanner = PodScanner(FakeCoreApi(pods), apps_api, SIDECAR)

    observations = scanner.scan(make_ref())

    assert [o.pod_name for o in observations] == ["web-abc-0", "web-abc-1", "web-abc-2"]
    assert {o.actual_image for o in observations} == {"istio/proxyv2:1.19"}
    # One read per ReplicaSet per scan, however many pods share it.
    assert apps_api.reads == ["web-abc"]


def test_scan_excludes_pods_of_other_workloads_with_overlapping_labels() -> None:
    pods = [
        make_pod("web-abc-0", [owner("ReplicaSet", "web-abc")]),
        make_pod("web-canary-xyz-0", [owner("ReplicaSet", "web-canary-xyz")]),
        make_pod("orphan", []),
        make_pod("job-pod", [owner("Job", "batch")]),
    ]
    apps_api = FakeAppsApi(
        {
            "web-abc": replica_set("web-abc", "web"),
            "web-canary-xyz": replica_set("web-canary-xyz", "web-canary", "canary-uid"),
        }
    )

    observations = PodScanner(FakeCoreApi(pods), apps_api, SIDECAR).scan(make_ref())

    assert [o.pod_name for o in observations] == ["web-abc-0"]


def test_scan_ignores_non_controller_owner_references() -> None:
    pods = [make_pod("web-0", [owner("StatefulSet", "web", controller=False)])]

    observations = PodScanner(FakeCoreApi(pods), FakeAppsApi(), SIDECAR).scan(make_ref(WorkloadKind.STATEFUL_SET))

    assert observations == []


def test_scan_matches_direct_owner_by_uid() -> None:
    pods = [
        make_pod("db-0", [owner("StatefulSet", "db", uid="db-uid")]),
        make_pod("db-1", [owner("StatefulSet", "db", uid="old-db-uid")]),
    ]
    ref = make_ref(WorkloadKind.STATEFUL_SET, name="db", uid="db-uid")

    observations = PodScanner(FakeCoreApi(pods), FakeAppsApi(), SIDECAR).scan(ref)

    assert [o.pod_name for o in observations] == ["db-0"]


def test_scan_skips_vanished_replica_set() -> None:
    pods = [make_pod("web-gone-0", [owner("ReplicaSet", "web-gone")])]

    assert PodScanner(FakeCoreApi(pods), FakeAppsApi(), SIDECAR).scan(make_ref()) == []


def test_scan_prefers_status_image_and_skips_finished_pods() -> None:
    pods = [
        make_pod("ds-0", [owner("DaemonSet", "web")], spec_image="proxyv2:1.19", status_image="docker.io/istio/proxyv2:1.19@sha256:a"),
        make_pod("ds-1", [owner("DaemonSet", "web")], spec_image="proxyv2:1.19"),
        make_pod("ds-2", [owner("DaemonSet", "web")], phase="Succeeded"),
    ]

    observations = PodScanner(FakeCoreApi(pods), FakeAppsApi(), SIDECAR).scan(make_ref(WorkloadKind.DAEMON_SET))

    assert {o.pod_name: o.actual_image for o in observations} == {
        "ds-0": "docker.io/istio/proxyv2:1.19@sha256:a",
        "ds-1": "proxyv2:1.19",
    }


def test_scan_finds_native_sidecar_and_skips_pods_without_one() -> None:
    pods = [
        make_pod("ds-0", [owner("DaemonSet", "web")], native=True),
        make_pod("ds-1", [owner("DaemonSet", "web")], spec_image=None),
    ]

    observations = PodScanner(FakeCoreApi(pods), FakeAppsApi(), SIDECAR).scan(make_ref(WorkloadKind.DAEMON_SET))

    assert [o.pod_name for o in observations] == ["ds-0"]


def test_scan_with_empty_selector_lists_nothing() -> None:
    core_api = FakeCoreApi([make_pod("x", [])])
    ref = make_ref()
    ref = WorkloadRef(ref.key, ref.uid, ref.resource_version, ref.fingerprint, None, None)

    assert PodScanner(core_api, FakeAppsApi(), SIDECAR).scan(ref) == []
    assert core_api.selectors == []


def test_scan_list_failure_is_transient() -> None:
    scanner = PodScanner(FakeCoreApi([], fail_status=500), FakeAppsApi(), SIDECAR)

    with pytest.raises(TransientError) as exc_info:
        scanner.scan(make_ref())

    assert exc_info.value.step == "scan"


def test_scan_respects_hop_limit() -> None:
    pods = [make_pod("web-abc-0", [owner("ReplicaSet", "web-abc")])]
    apps_api = FakeAppsApi({"web-abc": replica_set("web-abc", "web")})

    assert PodScanner(FakeCoreApi(pods), apps_api, SIDECAR, max_hops=0).scan(make_ref()) == []
