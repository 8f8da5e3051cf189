from __future__ import annotations

from datetime import UTC, datetime

import pytest

from restarter.src.comparator import (
    REASON_NO_PODS,
    REASON_NOT_COMPARABLE,
    REASON_ROLLOUT_IN_PROGRESS,
    REASON_UP_TO_DATE,
    ImageReference,
    compare,
    images_equal,
)
from restarter.src.models import SidecarImageObservation

OBSERVED_AT = datetime(2026, 1, 1, tzinfo=UTC)


def observe(*images: str) -> list[SidecarImageObservation]:
    return [
        SidecarImageObservation(pod_name=f"web-{index}", actual_image=image, observed_at=OBSERVED_AT)
        for index, image in enumerate(images)
    ]


# ---------------------------------------------------------------------------
# Image reference parsing
# ---------------------------------------------------------------------------


def test_parse_splits_hub_name_tag_and_digest() -> None:
    ref = ImageReference.parse("gcr.io/istio-release/proxyv2:1.20.1@sha256:abc")

    assert ref.hub == "gcr.io/istio-release"
    assert ref.name == "proxyv2"
    assert ref.tag == "1.20.1"
    assert ref.digest == "sha256:abc"


def test_parse_keeps_registry_port_out_of_the_tag() -> None:
    ref = ImageReference.parse("localhost:5000/proxyv2")

    assert ref.hub == "localhost:5000"
    assert ref.name == "proxyv2"
    assert ref.tag is None


@pytest.mark.parametrize(
    ("left", "right"),
    [
        ("proxyv2:1.20", "docker.io/library/proxyv2:1.20"),
        ("istio/proxyv2:1.20", "docker.io/istio/proxyv2:1.20"),
        ("istio/proxyv2", "istio/proxyv2:latest"),
    ],
)
def test_exact_mode_treats_docker_hub_defaults_as_equal(left: str, right: str) -> None:
    assert images_equal(left, right) is True


def test_exact_mode_distinguishes_hubs() -> None:
    assert images_equal("gcr.io/istio/proxyv2:1.20", "docker.io/istio/proxyv2:1.20") is False


# ---------------------------------------------------------------------------
# Hub-aware comparison
# ---------------------------------------------------------------------------


def test_hub_aware_ignores_hub_when_tags_match() -> None:
    assert images_equal("mirror.local/istio/proxyv2:1.20", "docker.io/istio/proxyv2:1.20", hub_aware=True) is True


def test_hub_aware_prefers_digest_when_both_sides_have_one() -> None:
    desired = "a.io/proxyv2:1.20@sha256:111"
    actual = "b.io/proxyv2:1.20@sha256:222"

    assert images_equal(desired, actual, hub_aware=True) is False
    assert images_equal(desired, "b.io/proxyv2:1.19@sha256:111", hub_aware=True) is True


def test_hub_aware_digest_versus_tag_is_not_comparable() -> None:
    assert images_equal("a.io/proxyv2@sha256:111", "b.io/proxyv2:1.20", hub_aware=True) is None


def test_hub_aware_is_reflexive_and_symmetric() -> None:
    images = [
        "docker.io/istio/proxyv2:1.20",
        "mirror.local/istio/proxyv2:1.19",
        "proxyv2",
        "gcr.io/x/proxyv2:1.20@sha256:aaa",
    ]
    for left in images:
        assert images_equal(left, left, hub_aware=True) is True
        for right in images:
            assert images_equal(left, right, hub_aware=True) == images_equal(right, left, hub_aware=True)


# ---------------------------------------------------------------------------
# Verdicts
# ---------------------------------------------------------------------------


def test_uniform_old_image_is_drift() -> None:
    verdict = compare("istio/proxyv2:1.20", observe("istio/proxyv2:1.19", "istio/proxyv2:1.19", "istio/proxyv2:1.19"))

    assert verdict.has_drift is True
    assert verdict.actual_image == "istio/proxyv2:1.19"
    assert "3 pod(s)" in verdict.reason


def test_no_pods_is_never_drift() -> None:
    verdict = compare("istio/proxyv2:1.20", [])

    assert verdict.has_drift is False
    assert verdict.reason == REASON_NO_PODS


def test_all_pods_on_desired_image_is_up_to_date() -> None:
    verdict = compare("istio/proxyv2:1.20", observe("docker.io/istio/proxyv2:1.20"))

    assert verdict.has_drift is False
    assert verdict.reason == REASON_UP_TO_DATE


def test_any_pod_on_desired_image_means_rollout_in_progress() -> None:
    verdict = compare("istio/proxyv2:1.20", observe("istio/proxyv2:1.19", "istio/proxyv2:1.20"))

    assert verdict.has_drift is False
    assert verdict.reason == REASON_ROLLOUT_IN_PROGRESS


def test_pods_on_different_old_images_mean_rollout_in_progress() -> None:
    verdict = compare("istio/proxyv2:1.20", observe("istio/proxyv2:1.18", "istio/proxyv2:1.19"))

    assert verdict.has_drift is False
    assert verdict.reason == REASON_ROLLOUT_IN_PROGRESS


def test_not_comparable_reference_yields_no_drift() -> None:
    verdict = compare("istio/proxyv2@sha256:abc", observe("istio/proxyv2:1.19"), hub_aware=True)

    assert verdict.has_drift is False
    assert verdict.reason == REASON_NOT_COMPARABLE


def test_hub_aware_mirror_does_not_trigger_drift() -> None:
    verdict = compare(
        "docker.io/istio/proxyv2:1.20",
        observe("mirror.corp/istio/proxyv2:1.20", "mirror.corp/istio/proxyv2:1.20"),
        hub_aware=True,
    )

    assert verdict.has_drift is False

    exact = compare(
        "docker.io/istio/proxyv2:1.20",
        observe("mirror.corp/istio/proxyv2:1.20"),
        hub_aware=False,
    )
    assert exact.has_drift is True
