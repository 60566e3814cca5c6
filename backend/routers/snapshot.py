# backend/routers/snapshot.py

from fastapi import APIRouter, Depends, HTTPException

from backend.services.k8s_service import K8sService, get_k8s_service
from kubeconverge.state import load_result

router = APIRouter(tags=["Cluster Snapshot"])


@router.get("/snapshot")
def get_snapshot(service: K8sService = Depends(get_k8s_service)):
    """
    Live readiness and resource usage of every resource in the last run.
    """
    result = load_result()
    if result is None:
        raise HTTPException(status_code=404, detail="No previous run recorded")
    try:
        resources = service.snapshot(result.order)
    except ValueError as e:
        raise HTTPException(status_code=503, detail=str(e))
    return {"manifest_dir": result.manifest_dir, "resources": resources}
