import pytest

from kubeconverge.readiness import is_ready, timeout_for
from kubeconverge.schemas import ResourceStatus

from fake_cluster import ident, make_spec


def _status(ref: str, exists: bool = True, **fields) -> ResourceStatus:
    return ResourceStatus(identity=ident(ref), exists=exists, **fields)


@pytest.mark.parametrize(
    "status,expected",
    [
        (_status("StatefulSet/db", spec={"replicas": 3}, status={"readyReplicas": 3}), True),
        (_status("StatefulSet/db", spec={"replicas": 3}, status={"readyReplicas": 2}), False),
        (_status("Deployment/app", spec={}, status={"readyReplicas": 1}), True),
        (
            _status(
                "Deployment/app",
                metadata={"generation": 4},
                spec={"replicas": 1},
                status={"readyReplicas": 1, "observedGeneration": 3},
            ),
            False,
        ),
        (_status("DaemonSet/agent", status={"desiredNumberScheduled": 2, "numberReady": 2}), True),
        (_status("Pod/p", status={"phase": "Running", "containerStatuses": [{"ready": True}, {"ready": False}]}), False),
        (_status("Pod/p", status={"phase": "Succeeded"}), True),
        (_status("Job/migrate", status={"succeeded": 1}), True),
        (_status("Service/db-svc", spec={"selector": {"app": "db"}}, ready_endpoints=0), False),
        (_status("Service/db-svc", spec={"selector": {"app": "db"}}, ready_endpoints=1), True),
        (_status("Service/external", spec={"type": "ExternalName"}), True),
        (_status("PersistentVolumeClaim/data", status={"phase": "Pending"}), False),
        (_status("PersistentVolumeClaim/data", status={"phase": "Bound"}), True),
        (_status("PersistentVolume/pv", status={"phase": "Available"}), True),
        (_status("HorizontalPodAutoscaler/hpa", status={}), False),
        (_status("HorizontalPodAutoscaler/hpa", status={"currentMetrics": [{"type": "Resource"}]}), True),
        (_status("ConfigMap/cfg"), True),
        (_status("Secret/creds", exists=False), False),
    ],
)
def test_is_ready(status: ResourceStatus, expected: bool) -> None:
    assert is_ready(status) is expected


def test_timeouts_by_kind() -> None:
    assert timeout_for(make_spec("StatefulSet/db")) == 120.0
    assert timeout_for(make_spec("Deployment/app")) == 120.0
    assert timeout_for(make_spec("Service/svc")) == 30.0
    assert timeout_for(make_spec("ConfigMap/cfg")) == 30.0
    assert timeout_for(make_spec("Secret/s")) == 30.0
    assert timeout_for(make_spec("PersistentVolumeClaim/data")) == 60.0


def test_timeout_precedence() -> None:
    assert timeout_for(make_spec("StatefulSet/db"), scale=0.5) == 60.0
    assert timeout_for(make_spec("StatefulSet/db"), override=10.0) == 10.0
    assert timeout_for(make_spec("StatefulSet/db", timeout=300.0), scale=0.5, override=10.0) == 300.0
