from datetime import datetime
from enum import Enum
from typing import Optional, List, Dict, Any, Tuple

from pydantic import BaseModel, ConfigDict, Field


CLUSTER_SCOPED_KINDS = frozenset({"Namespace", "PersistentVolume", "StorageClass"})


class ResourceIdentity(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: str
    name: str
    namespace: str = ""

    def __str__(self) -> str:
        if self.namespace:
            return f"{self.namespace}/{self.kind}/{self.name}"
        return f"{self.kind}/{self.name}"

    @classmethod
    def parse(cls, ref: str, default_namespace: str) -> "ResourceIdentity":
        """Parse ``Kind/name`` or ``namespace/Kind/name``."""
        parts = [p.strip() for p in ref.strip().split("/")]
        if len(parts) == 2 and all(parts):
            kind, name = parts
            namespace = "" if kind in CLUSTER_SCOPED_KINDS else default_namespace
        elif len(parts) == 3 and all(parts):
            namespace, kind, name = parts
            if kind in CLUSTER_SCOPED_KINDS:
                namespace = ""
        else:
            raise ValueError(f"Invalid resource reference: {ref!r}")
        return cls(kind=kind, name=name, namespace=namespace)


class ResourceSpec(BaseModel):
    model_config = ConfigDict(frozen=True)

    identity: ResourceIdentity
    depends_on: Tuple[ResourceIdentity, ...] = ()
    payload: Dict[str, Any]
    timeout_seconds: Optional[float] = None
    source: Optional[str] = None

    @property
    def kind(self) -> str:
        return self.identity.kind


class ApplyOutcome(str, Enum):
    APPLIED = "applied"
    EXISTS = "already-exists"
    TRANSIENT_ERROR = "transient-error"
    TERMINAL_ERROR = "terminal-error"


class ApplyAttempt(BaseModel):
    model_config = ConfigDict(frozen=True)

    identity: ResourceIdentity
    attempt: int
    timestamp: datetime
    outcome: ApplyOutcome
    message: str = ""


class ApplyResult(BaseModel):
    success: bool
    message: str
    outcome: Optional[ApplyOutcome] = None
    raw_response: Optional[Dict[str, Any]] = None


class ResourceStatus(BaseModel):
    identity: ResourceIdentity
    exists: bool
    metadata: Dict[str, Any] = Field(default_factory=dict)
    spec: Dict[str, Any] = Field(default_factory=dict)
    status: Dict[str, Any] = Field(default_factory=dict)
    # Services only: number of ready endpoint addresses.
    ready_endpoints: Optional[int] = None


class ResourceUsage(BaseModel):
    identity: ResourceIdentity
    cpu_millicores: float = 0.0
    memory_bytes: int = 0
    pods: int = 0


class ResourceState(str, Enum):
    READY = "ready"
    NOT_READY = "not-ready"
    FAILED = "failed"
    TIMED_OUT = "timed-out"
    NOT_ATTEMPTED = "not-attempted"
    CANCELLED = "cancelled"


class ResourceReport(BaseModel):
    identity: ResourceIdentity
    state: ResourceState
    outcome: Optional[ApplyOutcome] = None
    retries: int = 0
    elapsed_seconds: float = 0.0
    error_type: Optional[str] = None
    error: Optional[str] = None


class ConvergenceResult(BaseModel):
    resources: List[ResourceReport] = Field(default_factory=list)
    attempts: List[ApplyAttempt] = Field(default_factory=list)
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    elapsed_seconds: float = 0.0
    manifest_dir: Optional[str] = None
    cancelled: bool = False
    # Run-level failure that happened before any resource was attempted.
    error_type: Optional[str] = None
    error: Optional[str] = None

    @property
    def success(self) -> bool:
        return self.error_type is None and all(r.state == ResourceState.READY for r in self.resources)

    @property
    def order(self) -> List[ResourceIdentity]:
        return [r.identity for r in self.resources]

    def states(self) -> Dict[str, ResourceState]:
        return {str(r.identity): r.state for r in self.resources}

    def report_for(self, identity: ResourceIdentity) -> Optional[ResourceReport]:
        for r in self.resources:
            if r.identity == identity:
                return r
        return None
