from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass

from restarter.src.models import SidecarImageObservation

DEFAULT_REGISTRY = "docker.io"
DEFAULT_TAG = "latest"

REASON_NO_PODS = "no live pods to compare"
REASON_ROLLOUT_IN_PROGRESS = "rollout in progress"
REASON_UP_TO_DATE = "sidecar image matches desired"
REASON_NOT_COMPARABLE = "image references not comparable"


@dataclass(frozen=True)
class ImageReference:
    """Parsed container image reference ``[hub/]name[:tag][@digest]``.

    ``hub`` is everything before the last path component (registry plus
    repository path), which is what Istio calls the hub.
    """

    hub: str
    name: str
    tag: str | None
    digest: str | None

    @classmethod
    def parse(cls, image: str) -> ImageReference:
        remainder, _, digest = image.strip().partition("@")
        hub, _, last = remainder.rpartition("/")
        name, separator, tag = last.partition(":")
        return cls(
            hub=hub,
            name=name,
            tag=tag if separator and tag else None,
            digest=digest or None,
        )

    def canonical(self) -> str:
        """Return the reference with Docker Hub defaults made explicit.

        ``proxyv2:1.20`` and ``docker.io/library/proxyv2:1.20`` canonicalize
        identically; every other hub is kept verbatim.
        """
        hub = self.hub
        if not hub:
            hub = f"{DEFAULT_REGISTRY}/library"
        else:
            first = hub.split("/", 1)[0]
            if "." not in first and ":" not in first and first != "localhost":
                hub = f"{DEFAULT_REGISTRY}/{hub}"
        reference = f"{hub}/{self.name}"
        tag = self.tag
        if tag is None and self.digest is None:
            tag = DEFAULT_TAG
        if tag is not None:
            reference = f"{reference}:{tag}"
        if self.digest is not None:
            reference = f"{reference}@{self.digest}"
        return reference


@dataclass(frozen=True)
class DriftVerdict:
    has_drift: bool
    reason: str
    actual_image: str | None = None


def images_equal(desired: str, actual: str, hub_aware: bool = False) -> bool | None:
    """Compare two image references.

    Exact mode compares canonical references. Hub-aware mode compares only the
    digest (when both sides carry one) or else the tag, ignoring the hub.
    Returns ``None`` when a hub-aware comparison has nothing in common to
    compare (one side pinned by digest only, the other by tag only).
    """
    left = ImageReference.parse(desired)
    right = ImageReference.parse(actual)
    if not hub_aware:
        return left.canonical() == right.canonical()

    if left.digest is not None and right.digest is not None:
        return left.digest == right.digest
    left_tag = left.tag if left.tag is not None or left.digest is not None else DEFAULT_TAG
    right_tag = right.tag if right.tag is not None or right.digest is not None else DEFAULT_TAG
    if left_tag is None or right_tag is None:
        return None
    return left_tag == right_tag


def compare(
    desired_image: str,
    observations: Sequence[SidecarImageObservation],
    hub_aware: bool = False,
) -> DriftVerdict:
    """Reduce per-pod observations to a single drift verdict.

    Drift is only declared when every observed pod runs the same image and
    that image differs from *desired_image*. Zero pods, pods that disagree
    with each other, any pod already on the desired image, or an
    indeterminate comparison all yield no drift.
    """
    if not observations:
        return DriftVerdict(has_drift=False, reason=REASON_NO_PODS)

    matches = [images_equal(desired_image, o.actual_image, hub_aware) for o in observations]
    if any(match is None for match in matches):
        return DriftVerdict(has_drift=False, reason=REASON_NOT_COMPARABLE)
    if all(matches):
        return DriftVerdict(has_drift=False, reason=REASON_UP_TO_DATE)
    if any(matches):
        return DriftVerdict(has_drift=False, reason=REASON_ROLLOUT_IN_PROGRESS)

    first = observations[0].actual_image
    for observation in observations[1:]:
        if not images_equal(first, observation.actual_image, hub_aware):
            return DriftVerdict(has_drift=False, reason=REASON_ROLLOUT_IN_PROGRESS)

    return DriftVerdict(
        has_drift=True,
        reason=f"all {len(observations)} pod(s) run {first}, webhook injects {desired_image}",
        actual_image=first,
    )
