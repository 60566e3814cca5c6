"""Kind-specific readiness predicates and wait budgets."""

from __future__ import annotations

from typing import Callable, Dict, Optional

from .schemas import ResourceSpec, ResourceStatus

Predicate = Callable[[ResourceStatus], bool]

DEFAULT_TIMEOUT = 30.0

KIND_TIMEOUTS: Dict[str, float] = {
    "StatefulSet": 120.0,
    "Deployment": 120.0,
    "DaemonSet": 120.0,
    "ReplicaSet": 120.0,
    "Pod": 120.0,
    "Job": 120.0,
    "HorizontalPodAutoscaler": 120.0,
    "PersistentVolumeClaim": 60.0,
}


def _replicas_ready(status: ResourceStatus) -> bool:
    desired = status.spec.get("replicas", 1)
    ready = status.status.get("readyReplicas", 0) or 0
    generation = status.metadata.get("generation")
    observed = status.status.get("observedGeneration")
    if generation is not None and observed is not None and observed < generation:
        return False
    return ready >= desired


def _daemonset_ready(status: ResourceStatus) -> bool:
    desired = status.status.get("desiredNumberScheduled")
    if desired is None:
        return False
    return (status.status.get("numberReady", 0) or 0) >= desired


def _pod_ready(status: ResourceStatus) -> bool:
    phase = status.status.get("phase")
    if phase == "Succeeded":
        return True
    if phase != "Running":
        return False
    containers = status.status.get("containerStatuses") or []
    return bool(containers) and all(c.get("ready") for c in containers)


def _job_ready(status: ResourceStatus) -> bool:
    return (status.status.get("succeeded", 0) or 0) >= 1


def _service_ready(status: ResourceStatus) -> bool:
    # Nothing will ever populate endpoints for these, so existing is enough.
    if status.spec.get("type") == "ExternalName" or not status.spec.get("selector"):
        return True
    return (status.ready_endpoints or 0) > 0


def _pvc_ready(status: ResourceStatus) -> bool:
    return status.status.get("phase") == "Bound"


def _pv_ready(status: ResourceStatus) -> bool:
    return status.status.get("phase") in ("Bound", "Available")


def _hpa_ready(status: ResourceStatus) -> bool:
    return bool(status.status.get("currentMetrics"))


PREDICATES: Dict[str, Predicate] = {
    "StatefulSet": _replicas_ready,
    "Deployment": _replicas_ready,
    "ReplicaSet": _replicas_ready,
    "DaemonSet": _daemonset_ready,
    "Pod": _pod_ready,
    "Job": _job_ready,
    "Service": _service_ready,
    "PersistentVolumeClaim": _pvc_ready,
    "PersistentVolume": _pv_ready,
    "HorizontalPodAutoscaler": _hpa_ready,
}


def is_ready(status: ResourceStatus) -> bool:
    if not status.exists:
        return False
    predicate = PREDICATES.get(status.identity.kind)
    if predicate is None:
        return True
    return predicate(status)


def timeout_for(spec: ResourceSpec, scale: float = 1.0, override: Optional[float] = None) -> float:
    """Wait budget for ``spec``: its own timeoutSeconds, else the per-kind default."""
    if spec.timeout_seconds is not None:
        return spec.timeout_seconds
    if override is not None:
        return override
    return KIND_TIMEOUTS.get(spec.kind, DEFAULT_TIMEOUT) * scale
