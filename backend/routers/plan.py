# backend/routers/plan.py

from fastapi import APIRouter, HTTPException
from pydantic import BaseModel

from kubeconverge.errors import CyclicDependency, ManifestError
from kubeconverge.manifests import load_manifest_set
from kubeconverge.resolver import resolve_order

router = APIRouter(tags=["Plan"])


class PlanRequest(BaseModel):
    manifest_dir: str
    namespace: str | None = None


@router.post("/plan")
def plan(req: PlanRequest):
    """
    Resolve the apply order of a Manifest Set without touching the cluster.
    """
    try:
        specs = load_manifest_set(req.manifest_dir, default_namespace=req.namespace)
        ordered = resolve_order(specs)
    except CyclicDependency as e:
        raise HTTPException(
            status_code=409,
            detail={"error": "CyclicDependency", "members": [str(m) for m in e.members]},
        )
    except ManifestError as e:
        raise HTTPException(status_code=422, detail=str(e))

    return {
        "manifest_dir": req.manifest_dir,
        "order": [
            {"identity": str(s.identity), "depends_on": [str(d) for d in s.depends_on]}
            for s in ordered
        ],
    }
