# backend/routers/status.py

from fastapi import APIRouter, HTTPException

from kubeconverge.reporter import summarize
from kubeconverge.state import load_result

router = APIRouter(tags=["Run Status"])


@router.get("/status")
def get_status():
    """
    Summary of the last deploy run (same data as `kubeconverge status --json`).
    """
    result = load_result()
    if result is None:
        raise HTTPException(status_code=404, detail="No previous run recorded")
    return summarize(result)
