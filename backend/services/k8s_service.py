from typing import Dict, List, Optional

from kubeconverge.errors import ConvergeError
from kubeconverge.k8s_client import K8sClient
from kubeconverge.readiness import is_ready
from kubeconverge.schemas import ResourceIdentity, ResourceState


class K8sService:
    """
    Wraps K8sClient for the API routes. The client is created lazily so
    the app can start (and serve /api/status) without cluster settings.
    """

    def __init__(self, client: Optional[K8sClient] = None):
        self._client = client

    @property
    def client(self) -> K8sClient:
        if self._client is None:
            self._client = K8sClient()
        return self._client

    def snapshot(self, order: List[ResourceIdentity]) -> List[Dict]:
        rows = []
        for identity in order:
            row: Dict = {"identity": str(identity), "kind": identity.kind, "name": identity.name}
            try:
                current = self.client.get_resource_status(identity)
                usage = self.client.get_metrics(identity)
            except ConvergeError as e:
                row.update({"state": None, "error": e.message})
                rows.append(row)
                continue
            if not current.exists:
                state = None
            elif is_ready(current):
                state = ResourceState.READY.value
            else:
                state = ResourceState.NOT_READY.value
            row.update(
                {
                    "exists": current.exists,
                    "state": state,
                    "cpu_millicores": usage.cpu_millicores,
                    "memory_bytes": usage.memory_bytes,
                    "pods": usage.pods,
                }
            )
            rows.append(row)
        return rows


def get_k8s_service() -> K8sService:
    return K8sService()
