from __future__ import annotations

import base64
import binascii
import http.client
import json
import logging
import ssl
import threading
import time
import urllib.error
import urllib.request
import uuid
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

import jsonpatch
import jsonpointer
from kubernetes.client import AdmissionregistrationV1Api, ApiClient

from restarter.src.errors import RestarterError, TransientError, ValidationFailure
from restarter.src.kube import call_api
from restarter.src.metrics import METRICS
from restarter.src.models import Deadline, DesiredInjectionResult, WorkloadRef

ADMISSION_API_VERSION = "admission.k8s.io/v1"
MAX_RESPONSE_BYTES = 4 * 1024 * 1024
DEFAULT_WEBHOOK_NAME_MARKER = "sidecar-injector"

CONTAINER_FIELDS = ("containers", "initContainers")

_serializer = ApiClient()


@dataclass(frozen=True)
class WebhookEndpoint:
    url: str
    ssl_context: ssl.SSLContext | None = None


def build_ssl_context(
    ca_pem: str | None = None,
    ca_file: str | None = None,
    insecure_skip_verify: bool = False,
) -> ssl.SSLContext:
    if insecure_skip_verify:
        context = ssl.create_default_context()
        context.check_hostname = False
        context.verify_mode = ssl.CERT_NONE
        return context
    return ssl.create_default_context(cafile=ca_file or None, cadata=ca_pem or None)


class StaticEndpoint:
    """Endpoint given explicitly through configuration."""

    def __init__(self, url: str, ca_file: str | None = None, insecure_skip_verify: bool = False) -> None:
        context = None
        if url.startswith("https://"):
            context = build_ssl_context(ca_file=ca_file, insecure_skip_verify=insecure_skip_verify)
        self._endpoint = WebhookEndpoint(url=url, ssl_context=context)

    def get(self, timeout: float) -> WebhookEndpoint:
        return self._endpoint

    def invalidate(self) -> None:
        return None


class InjectorEndpointResolver:
    """Discovers the injector endpoint from a ``MutatingWebhookConfiguration``.

    The first webhook whose name contains ``sidecar-injector`` is used. A
    service reference becomes ``https://<name>.<namespace>.svc:<port><path>``
    and the webhook's ``caBundle`` becomes the TLS trust root. The resolved
    endpoint is memoized until :meth:`invalidate` is called after a
    connection failure.
    """

    def __init__(
        self,
        admission_api: AdmissionregistrationV1Api,
        configuration_name: str,
        *,
        webhook_name_marker: str = DEFAULT_WEBHOOK_NAME_MARKER,
        insecure_skip_verify: bool = False,
        logger: logging.Logger | None = None,
    ) -> None:
        self.admission_api = admission_api
        self.configuration_name = configuration_name
        self.webhook_name_marker = webhook_name_marker
        self.insecure_skip_verify = insecure_skip_verify
        self.logger = logger or logging.getLogger(__name__)
        self._lock = threading.Lock()
        self._endpoint: WebhookEndpoint | None = None

    def get(self, timeout: float) -> WebhookEndpoint:
        with self._lock:
            if self._endpoint is not None:
                return self._endpoint
        endpoint = self._resolve(timeout)
        with self._lock:
            self._endpoint = endpoint
        return endpoint

    def invalidate(self) -> None:
        with self._lock:
            self._endpoint = None

    def _resolve(self, timeout: float) -> WebhookEndpoint:
        try:
            configuration = call_api(
                self.admission_api.read_mutating_webhook_configuration,
                name=self.configuration_name,
                step="webhook",
                _request_timeout=timeout,
            )
        except TransientError:
            raise
        except RestarterError as exc:
            # Missing or forbidden; retried with backoff like an outage.
            raise TransientError(
                f"cannot read MutatingWebhookConfiguration {self.configuration_name}: {exc}",
                step="webhook",
            ) from exc

        for webhook in getattr(configuration, "webhooks", None) or []:
            if self.webhook_name_marker not in (webhook.name or ""):
                continue
            client_config = webhook.client_config
            url = client_config.url
            service = client_config.service
            if not url and service is not None:
                path = service.path or ""
                port = service.port or 443
                url = f"https://{service.name}.{service.namespace}.svc:{port}{path}"
            if not url:
                continue
            try:
                ca_pem = None
                if client_config.ca_bundle:
                    ca_pem = base64.b64decode(client_config.ca_bundle, validate=True).decode("ascii")
                context = build_ssl_context(ca_pem=ca_pem, insecure_skip_verify=self.insecure_skip_verify)
            except (binascii.Error, UnicodeDecodeError, ssl.SSLError) as exc:
                raise TransientError(
                    f"webhook {webhook.name} in {self.configuration_name} has a corrupt caBundle: "
                    f"{type(exc).__name__}",
                    step="webhook",
                ) from exc
            self.logger.info(
                "Resolved injector endpoint from %s webhook %s",
                self.configuration_name,
                webhook.name,
            )
            return WebhookEndpoint(url=url, ssl_context=context)

        raise TransientError(
            f"MutatingWebhookConfiguration {self.configuration_name} has no "
            f"{self.webhook_name_marker!r} webhook",
            step="webhook",
        )


def build_pod(ref: WorkloadRef) -> dict[str, Any]:
    """Render the workload's pod template as the pod object the webhook would admit."""
    template = _serializer.sanitize_for_serialization(ref.template) or {}
    metadata = dict(template.get("metadata") or {})
    metadata.pop("name", None)
    metadata["generateName"] = f"{ref.name}-"
    metadata["namespace"] = ref.namespace
    return {
        "apiVersion": "v1",
        "kind": "Pod",
        "metadata": metadata,
        "spec": template.get("spec") or {},
    }


def build_admission_review(ref: WorkloadRef, pod: dict[str, Any], uid: str) -> dict[str, Any]:
    """Build a synthetic dry-run ``AdmissionReview`` for pod creation."""
    return {
        "apiVersion": ADMISSION_API_VERSION,
        "kind": "AdmissionReview",
        "request": {
            "uid": uid,
            "kind": {"group": "", "version": "v1", "kind": "Pod"},
            "resource": {"group": "", "version": "v1", "resource": "pods"},
            "requestKind": {"group": "", "version": "v1", "kind": "Pod"},
            "requestResource": {"group": "", "version": "v1", "resource": "pods"},
            "namespace": ref.namespace,
            "operation": "CREATE",
            "userInfo": {"username": "system:serviceaccount:sidecar-restarter:dry-run"},
            "object": pod,
            "oldObject": None,
            "dryRun": True,
            "options": {"apiVersion": "meta.k8s.io/v1", "kind": "CreateOptions", "dryRun": ["All"]},
        },
    }


def _require(condition: bool, message: str) -> None:
    if not condition:
        raise ValidationFailure(message, step="webhook")


def _decode_patch(response: dict[str, Any]) -> list[Any]:
    _require(response.get("patchType") == "JSONPatch", "response patchType is not JSONPatch")
    encoded = response.get("patch")
    _require(isinstance(encoded, str) and bool(encoded), "response carries no patch")
    try:
        operations = json.loads(base64.b64decode(encoded, validate=True))
    except (binascii.Error, ValueError) as exc:
        raise ValidationFailure(f"patch is not base64-encoded JSON: {type(exc).__name__}", step="webhook") from exc
    _require(isinstance(operations, list), "patch is not a JSON patch array")
    _require(bool(operations), "patch is empty but a sidecar was expected")
    return operations


def _named_containers(pod: Any, name: str) -> list[dict[str, Any]]:
    _require(isinstance(pod, dict), "patched pod is not an object")
    spec = pod.get("spec")
    _require(isinstance(spec, dict), "patched pod has no spec")
    found: list[dict[str, Any]] = []
    for field in CONTAINER_FIELDS:
        containers = spec.get(field) or []
        _require(isinstance(containers, list), f"patched spec.{field} is not a list")
        for container in containers:
            _require(isinstance(container, dict), f"patched spec.{field} holds a non-object entry")
            if container.get("name") == name:
                found.append(container)
    return found


def apply_injection_patch(pod: dict[str, Any], operations: list[Any]) -> Any:
    """Apply the webhook's JSON patch to a copy of *pod*; *pod* itself is untouched.

    Operations address containers by index, so the proxy is only found
    reliably by reading the patched pod rather than the individual ops.
    """
    for operation in operations:
        _require(isinstance(operation, dict), "patch operation is not an object")
        _require(
            isinstance(operation.get("op"), str) and isinstance(operation.get("path"), str),
            "patch operation lacks op/path",
        )
    try:
        return jsonpatch.apply_patch(pod, operations, in_place=False)
    except (jsonpatch.JsonPatchException, jsonpointer.JsonPointerException, TypeError) as exc:
        raise ValidationFailure(
            f"patch does not apply to the dry-run pod: {type(exc).__name__}", step="webhook"
        ) from exc


def extract_sidecar_image(
    review: Any,
    *,
    expected_uid: str,
    sidecar_name: str,
    pod: dict[str, Any],
) -> str:
    """Validate an ``AdmissionReview`` response and return the injected sidecar image.

    The payload is treated as untrusted: every field is type-checked before
    use. Any deviation raises :class:`ValidationFailure`; no best-guess
    image is ever returned.
    """
    _require(isinstance(review, dict), "response is not a JSON object")
    _require(review.get("kind") == "AdmissionReview", "response kind is not AdmissionReview")
    api_version = review.get("apiVersion")
    _require(
        isinstance(api_version, str) and api_version.startswith("admission.k8s.io/"),
        "response apiVersion is not admission.k8s.io",
    )
    response = review.get("response")
    _require(isinstance(response, dict), "response.response is missing")
    _require(response.get("uid") == expected_uid, "response uid does not match request")
    _require(response.get("allowed") is True, "webhook did not allow the dry-run pod")

    patched = apply_injection_patch(pod, _decode_patch(response))
    # A sidecar declared in the template and left untouched (e.g. ``image: auto``)
    # was not injected.
    declared = _named_containers(pod, sidecar_name)
    injected = [container for container in _named_containers(patched, sidecar_name) if container not in declared]
    _require(bool(injected), f"patch does not reference a {sidecar_name} container")

    images: set[str] = set()
    for container in injected:
        image = container.get("image")
        _require(isinstance(image, str) and bool(image.strip()), "sidecar container has no image")
        images.add(image.strip())
    _require(len(images) == 1, "patch sets conflicting sidecar images")
    return images.pop()


class WebhookClient:
    """Asks the injection webhook which sidecar image it would inject today.

    Raw request and response payloads are never logged: they can carry CA
    material and mesh configuration. Only namespace/name, outcome and elapsed
    time are.
    """

    def __init__(
        self,
        endpoint: StaticEndpoint | InjectorEndpointResolver,
        sidecar_container_name: str,
        *,
        timeout_seconds: float = 10.0,
        slow_seconds: float = 2.0,
        logger: logging.Logger | None = None,
        uid_fn: Callable[[], str] = lambda: str(uuid.uuid4()),
        opener: Callable[..., Any] = urllib.request.urlopen,
    ) -> None:
        self.endpoint = endpoint
        self.sidecar_container_name = sidecar_container_name
        self.timeout_seconds = timeout_seconds
        self.slow_seconds = slow_seconds
        self.logger = logger or logging.getLogger(__name__)
        self.uid_fn = uid_fn
        self.opener = opener

    def desired_injection(self, ref: WorkloadRef, deadline: Deadline | None = None) -> DesiredInjectionResult:
        """Dry-run the webhook for *ref*'s template and return the validated result.

        Raises :class:`TransientError` on timeouts, connection failures and
        5xx/429 answers, :class:`ValidationFailure` on anything malformed.
        """
        if deadline is not None:
            deadline.check("webhook", ref.key)
        timeout = deadline.timeout(self.timeout_seconds) if deadline is not None else self.timeout_seconds

        started = time.monotonic()
        outcome = "error"
        try:
            endpoint = self.endpoint.get(timeout)
            pod = build_pod(ref)
            uid = self.uid_fn()
            body = json.dumps(build_admission_review(ref, pod, uid)).encode("utf-8")
            raw = self._post(endpoint, body, timeout, ref)
            try:
                review = json.loads(raw)
            except ValueError as exc:
                raise ValidationFailure("response is not valid JSON", key=ref.key, step="webhook") from exc
            try:
                image = extract_sidecar_image(
                    review,
                    expected_uid=uid,
                    sidecar_name=self.sidecar_container_name,
                    pod=pod,
                )
            except ValidationFailure as exc:
                exc.key = ref.key
                raise
            outcome = "ok"
        except ValidationFailure:
            outcome = "invalid"
            raise
        except TransientError as exc:
            outcome = "transient"
            if exc.key is None:
                exc.key = ref.key
            raise
        finally:
            elapsed = time.monotonic() - started
            METRICS.webhook_requests_total.labels(outcome=outcome).inc()
            METRICS.webhook_latency_seconds.observe(elapsed)
            self.logger.info(
                "Webhook dry-run for %s/%s: outcome=%s elapsed=%.3fs",
                ref.namespace,
                ref.name,
                outcome,
                elapsed,
            )

        latency_ok = elapsed <= self.slow_seconds
        if not latency_ok:
            self.logger.warning(
                "Webhook dry-run for %s/%s was slow (%.3fs > %.3fs)",
                ref.namespace,
                ref.name,
                elapsed,
                self.slow_seconds,
            )
        return DesiredInjectionResult(
            template_fingerprint=ref.fingerprint,
            desired_image=image,
            webhook_latency_ok=latency_ok,
            raw_patch_validated=True,
        )

    def _post(self, endpoint: WebhookEndpoint, body: bytes, timeout: float, ref: WorkloadRef) -> bytes:
        request = urllib.request.Request(  # noqa: S310
            url=endpoint.url,
            data=body,
            method="POST",
            headers={"Content-Type": "application/json", "Accept": "application/json"},
        )
        try:
            with self.opener(request, timeout=timeout, context=endpoint.ssl_context) as response:
                raw = response.read(MAX_RESPONSE_BYTES + 1)
        except urllib.error.HTTPError as exc:
            if exc.code == 429 or exc.code >= 500:
                raise TransientError(f"webhook answered HTTP {exc.code}", key=ref.key, step="webhook") from exc
            raise ValidationFailure(f"webhook rejected request with HTTP {exc.code}", key=ref.key, step="webhook") from exc
        except (urllib.error.URLError, http.client.HTTPException, OSError) as exc:
            self.endpoint.invalidate()
            reason = getattr(exc, "reason", None) or exc
            raise TransientError(f"webhook unreachable: {reason}", key=ref.key, step="webhook") from exc

        if len(raw) > MAX_RESPONSE_BYTES:
            raise ValidationFailure("response exceeds size limit", key=ref.key, step="webhook")
        return raw
