"""Kubernetes HTTP client: the four operations the controller consumes."""

from __future__ import annotations

import base64
import copy
import hashlib
import json
import logging
from typing import Dict, Any, List, NoReturn, Optional, Tuple

import requests

from .config import settings
from .errors import ConflictingState, TerminalApplyError, TransientApplyError
from .schemas import (
    ApplyOutcome,
    ApplyResult,
    ResourceIdentity,
    ResourceSpec,
    ResourceStatus,
    ResourceUsage,
)

logger = logging.getLogger(__name__)

PAYLOAD_HASH_ANNOTATION = "kubeconverge.io/payload-hash"

TRANSIENT_STATUS_CODES = frozenset({408, 429, 500, 502, 503, 504})

# kind -> (API group prefix, plural, namespaced)
RESOURCE_ROUTES: Dict[str, Tuple[str, str, bool]] = {
    "Namespace": ("/api/v1", "namespaces", False),
    "Secret": ("/api/v1", "secrets", True),
    "ConfigMap": ("/api/v1", "configmaps", True),
    "Service": ("/api/v1", "services", True),
    "Endpoints": ("/api/v1", "endpoints", True),
    "PersistentVolume": ("/api/v1", "persistentvolumes", False),
    "PersistentVolumeClaim": ("/api/v1", "persistentvolumeclaims", True),
    "Pod": ("/api/v1", "pods", True),
    "Deployment": ("/apis/apps/v1", "deployments", True),
    "StatefulSet": ("/apis/apps/v1", "statefulsets", True),
    "DaemonSet": ("/apis/apps/v1", "daemonsets", True),
    "ReplicaSet": ("/apis/apps/v1", "replicasets", True),
    "Job": ("/apis/batch/v1", "jobs", True),
    "CronJob": ("/apis/batch/v1", "cronjobs", True),
    "HorizontalPodAutoscaler": ("/apis/autoscaling/v2", "horizontalpodautoscalers", True),
    "Ingress": ("/apis/networking.k8s.io/v1", "ingresses", True),
    "StorageClass": ("/apis/storage.k8s.io/v1", "storageclasses", False),
}

WORKLOAD_KINDS = frozenset({"Deployment", "StatefulSet", "DaemonSet", "ReplicaSet"})

METRICS_PREFIX = "/apis/metrics.k8s.io/v1beta1"

_MEMORY_SUFFIXES = {
    "Ki": 1024, "Mi": 1024 ** 2, "Gi": 1024 ** 3, "Ti": 1024 ** 4, "Pi": 1024 ** 5, "Ei": 1024 ** 6,
    "k": 1000, "M": 1000 ** 2, "G": 1000 ** 3, "T": 1000 ** 4, "P": 1000 ** 5, "E": 1000 ** 6,
}
_CPU_SUFFIXES = {"n": 1e-6, "u": 1e-3, "m": 1.0}


def parse_cpu(quantity: str) -> float:
    """CPU quantity -> millicores ("250m" -> 250.0, "2" -> 2000.0)."""
    q = str(quantity).strip()
    if q and q[-1] in _CPU_SUFFIXES:
        return float(q[:-1]) * _CPU_SUFFIXES[q[-1]]
    return float(q) * 1000.0


def parse_memory(quantity: str) -> int:
    """Memory quantity -> bytes ("128Mi" -> 134217728)."""
    q = str(quantity).strip()
    for suffix in sorted(_MEMORY_SUFFIXES, key=len, reverse=True):
        if q.endswith(suffix):
            return int(float(q[: -len(suffix)]) * _MEMORY_SUFFIXES[suffix])
    return int(float(q))


def payload_hash(payload: Dict[str, Any]) -> str:
    canonical = json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def comparable_payload(payload: Dict[str, Any], kind: Optional[str] = None) -> Dict[str, Any]:
    """The fields of ``payload`` a live object is expected to echo back.

    Drops ``metadata``/``status`` and folds a Secret's write-only
    ``stringData`` into base64 ``data``, which is how the API returns it.
    """
    desired = {k: v for k, v in payload.items() if k not in ("metadata", "status")}
    string_data = desired.pop("stringData", None)
    if (kind or payload.get("kind")) == "Secret" and isinstance(string_data, dict):
        data = dict(desired.get("data") or {})
        for key, value in string_data.items():
            data[key] = base64.b64encode(str(value).encode("utf-8")).decode("ascii")
        desired["data"] = data
    elif string_data is not None:
        desired["stringData"] = string_data
    return desired


def payload_matches(desired: Any, live: Any) -> bool:
    """True when every field set in ``desired`` has the same value in ``live``.

    Fields the API server fills in (defaults, status, uids) are ignored.
    """
    if isinstance(desired, dict):
        if not isinstance(live, dict):
            return False
        return all(k in live and payload_matches(v, live[k]) for k, v in desired.items())
    if isinstance(desired, list):
        if not isinstance(live, list) or len(desired) != len(live):
            return False
        return all(payload_matches(d, l) for d, l in zip(desired, live))
    return desired == live


class K8sClient:
    def __init__(
        self,
        base_url: str | None = None,
        namespace: str | None = None,
        session: requests.Session | None = None,
    ):
        if not base_url:
            base_url = settings.k8s_api_base_url
        if not base_url:
            raise ValueError("K8S_API_BASE_URL is not set. Configure it in env.")

        self.base_url = base_url.rstrip("/")
        self.namespace = namespace or settings.k8s_namespace
        self.verify_ssl = settings.verify_ssl
        self.bearer_token = settings.k8s_bearer_token
        self.timeout = settings.request_timeout
        self.session = session or requests.Session()

    # ------------------------------------------------------------------ #
    # Internal helpers                                                   #
    # ------------------------------------------------------------------ #

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.bearer_token:
            headers["Authorization"] = f"Bearer {self.bearer_token}"
        return headers

    def _request(
        self,
        method: str,
        path: str,
        json_body: Dict[str, Any] | None = None,
        params: Dict[str, str] | None = None,
        identity: ResourceIdentity | None = None,
    ) -> requests.Response:
        url = f"{self.base_url}{path}"
        logger.debug("%s %s", method, path)
        try:
            return self.session.request(
                method=method,
                url=url,
                headers=self._headers(),
                json=json_body,
                params=params,
                verify=self.verify_ssl,
                timeout=self.timeout,
            )
        except (requests.ConnectionError, requests.Timeout, requests.exceptions.ChunkedEncodingError) as e:
            raise TransientApplyError(f"{method} {path} failed: {e}", identity) from e
        except requests.RequestException as e:
            raise TerminalApplyError(f"{method} {path} failed: {e}", identity) from e

    @staticmethod
    def _body(resp: requests.Response) -> Dict[str, Any]:
        try:
            raw = resp.json()
        except ValueError:
            return {"raw_text": resp.text}
        return raw if isinstance(raw, dict) else {"raw": raw}

    def _raise_for_status(self, resp: requests.Response, identity: ResourceIdentity | None) -> NoReturn:
        raw = self._body(resp)
        detail = raw.get("message") or raw.get("raw_text") or raw
        message = f"K8s API error {resp.status_code}: {detail}"
        if resp.status_code in TRANSIENT_STATUS_CODES:
            raise TransientApplyError(message, identity, status_code=resp.status_code)
        raise TerminalApplyError(message, identity, status_code=resp.status_code)

    def _route(self, identity: ResourceIdentity) -> Tuple[str, str, bool]:
        route = RESOURCE_ROUTES.get(identity.kind)
        if route is None:
            raise TerminalApplyError(f"Unsupported kind: {identity.kind}", identity)
        return route

    def collection_path(self, identity: ResourceIdentity) -> str:
        prefix, plural, namespaced = self._route(identity)
        if namespaced:
            return f"{prefix}/namespaces/{identity.namespace or self.namespace}/{plural}"
        return f"{prefix}/{plural}"

    def object_path(self, identity: ResourceIdentity) -> str:
        return f"{self.collection_path(identity)}/{identity.name}"

    def api_version(self, identity: ResourceIdentity) -> str:
        prefix = self._route(identity)[0]
        return prefix.split("/", 2)[2] if prefix.startswith("/apis/") else "v1"

    def prepare_payload(self, spec: ResourceSpec) -> Dict[str, Any]:
        """The body actually submitted: payload plus identity and hash annotation."""
        body = copy.deepcopy(spec.payload)
        body.setdefault("apiVersion", self.api_version(spec.identity))
        body.setdefault("kind", spec.kind)
        meta = body.setdefault("metadata", {})
        meta["name"] = spec.identity.name
        if spec.identity.namespace:
            meta["namespace"] = spec.identity.namespace
        annotations = meta.setdefault("annotations", {})
        annotations[PAYLOAD_HASH_ANNOTATION] = payload_hash(spec.payload)
        return body

    def _get_object(self, identity: ResourceIdentity) -> Optional[Dict[str, Any]]:
        resp = self._request("GET", self.object_path(identity), identity=identity)
        if resp.status_code == 404:
            return None
        if resp.status_code != 200:
            self._raise_for_status(resp, identity)
        return self._body(resp)

    # ------------------------------------------------------------------ #
    # Apply                                                              #
    # ------------------------------------------------------------------ #

    def apply_resource(self, spec: ResourceSpec) -> ApplyResult:
        """Create the resource, or confirm an identical one already exists."""
        identity = spec.identity
        body = self.prepare_payload(spec)
        resp = self._request("POST", self.collection_path(identity), json_body=body, identity=identity)

        if resp.status_code in (200, 201, 202):
            return ApplyResult(
                success=True,
                message=f"Created {identity.kind} '{identity.name}'.",
                outcome=ApplyOutcome.APPLIED,
                raw_response=self._body(resp),
            )

        if resp.status_code == 409:
            return self._reconcile_existing(spec)

        self._raise_for_status(resp, identity)

    def _reconcile_existing(self, spec: ResourceSpec) -> ApplyResult:
        identity = spec.identity
        live = self._get_object(identity)
        if live is None:
            # Deleted between our POST and GET; let the retry create it.
            raise TransientApplyError("resource vanished after AlreadyExists", identity)

        annotations = (live.get("metadata") or {}).get("annotations") or {}
        live_hash = annotations.get(PAYLOAD_HASH_ANNOTATION)
        if live_hash is not None:
            same = live_hash == payload_hash(spec.payload)
        else:
            same = payload_matches(comparable_payload(spec.payload, spec.kind), live)

        if not same:
            raise ConflictingState("exists with a different payload; refusing to overwrite", identity)
        return ApplyResult(
            success=True,
            message=f"{identity.kind} '{identity.name}' already exists with identical payload.",
            outcome=ApplyOutcome.EXISTS,
            raw_response=live,
        )

    # ------------------------------------------------------------------ #
    # Status / delete / metrics                                          #
    # ------------------------------------------------------------------ #

    def get_resource_status(self, identity: ResourceIdentity) -> ResourceStatus:
        obj = self._get_object(identity)
        if obj is None:
            return ResourceStatus(identity=identity, exists=False)

        status = ResourceStatus(
            identity=identity,
            exists=True,
            metadata=obj.get("metadata") or {},
            spec=obj.get("spec") or {},
            status=obj.get("status") or {},
        )
        if identity.kind == "Service":
            status.ready_endpoints = self._count_endpoints(identity)
        return status

    def _count_endpoints(self, identity: ResourceIdentity) -> int:
        endpoints = self._get_object(identity.model_copy(update={"kind": "Endpoints"}))
        if endpoints is None:
            return 0
        return sum(len(subset.get("addresses") or []) for subset in endpoints.get("subsets") or [])

    def delete_resource(self, identity: ResourceIdentity) -> bool:
        """Delete; returns False when the resource was already gone."""
        resp = self._request(
            "DELETE",
            self.object_path(identity),
            json_body={"propagationPolicy": "Background"},
            identity=identity,
        )
        if resp.status_code == 404:
            return False
        if resp.status_code not in (200, 202):
            self._raise_for_status(resp, identity)
        return True

    def get_metrics(self, identity: ResourceIdentity) -> ResourceUsage:
        namespace = identity.namespace or self.namespace
        items: List[Dict[str, Any]] = []

        if identity.kind == "Pod":
            resp = self._request("GET", f"{METRICS_PREFIX}/namespaces/{namespace}/pods/{identity.name}", identity=identity)
            if resp.status_code == 200:
                items = [self._body(resp)]
            elif resp.status_code != 404:
                self._raise_for_status(resp, identity)
        else:
            target = identity
            if identity.kind == "HorizontalPodAutoscaler":
                hpa = self._get_object(identity) or {}
                ref = (hpa.get("spec") or {}).get("scaleTargetRef") or {}
                if ref.get("kind") and ref.get("name"):
                    target = ResourceIdentity(kind=ref["kind"], name=ref["name"], namespace=identity.namespace)
            if target.kind in WORKLOAD_KINDS:
                items = self._pod_metrics_for_workload(target)

        usage = ResourceUsage(identity=identity, pods=len(items))
        for item in items:
            for container in item.get("containers") or []:
                used = container.get("usage") or {}
                if "cpu" in used:
                    usage.cpu_millicores += parse_cpu(used["cpu"])
                if "memory" in used:
                    usage.memory_bytes += parse_memory(used["memory"])
        return usage

    def _pod_metrics_for_workload(self, identity: ResourceIdentity) -> List[Dict[str, Any]]:
        obj = self._get_object(identity)
        if obj is None:
            return []
        labels = ((obj.get("spec") or {}).get("selector") or {}).get("matchLabels") or {}
        if not labels:
            return []
        selector = ",".join(f"{k}={v}" for k, v in sorted(labels.items()))
        namespace = identity.namespace or self.namespace
        resp = self._request(
            "GET",
            f"{METRICS_PREFIX}/namespaces/{namespace}/pods",
            params={"labelSelector": selector},
            identity=identity,
        )
        if resp.status_code == 404:
            return []
        if resp.status_code != 200:
            self._raise_for_status(resp, identity)
        return self._body(resp).get("items", [])
