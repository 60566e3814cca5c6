from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from backend.routers import plan, snapshot, status

app = FastAPI(
    title="kubeconverge API",
    version="0.1.0",
    description="Read-only view of kubeconverge runs and the Manifest Sets they deploy",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["GET", "POST"],
    allow_headers=["*"],
)


@app.get("/", tags=["Status"])
def root():
    """Simple health endpoint."""
    return {"status": "kubeconverge API running"}


app.include_router(status.router, prefix="/api")
app.include_router(plan.router, prefix="/api")
app.include_router(snapshot.router, prefix="/api")
