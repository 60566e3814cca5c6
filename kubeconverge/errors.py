"""Error taxonomy for a deployment run.

Every error that concerns a single resource carries its identity so the
reporter can attribute it without parsing messages.
"""

from __future__ import annotations

from typing import Iterable, List, Optional

from .schemas import ResourceIdentity


class ConvergeError(Exception):
    """Base class for all kubeconverge errors."""

    def __init__(self, message: str, identity: Optional[ResourceIdentity] = None):
        super().__init__(message)
        self.message = message
        self.identity = identity

    def __str__(self) -> str:
        if self.identity is not None:
            return f"{self.identity}: {self.message}"
        return self.message


class ManifestError(ConvergeError):
    """The Manifest Set could not be loaded."""


class CyclicDependency(ConvergeError):
    def __init__(self, members: Iterable[ResourceIdentity]):
        self.members: List[ResourceIdentity] = list(members)
        names = ", ".join(str(m) for m in self.members)
        super().__init__(f"dependency cycle between: {names}")


class TransientApplyError(ConvergeError):
    """Retryable failure (network, timeout, throttling, server-side 5xx)."""

    def __init__(self, message: str, identity: Optional[ResourceIdentity] = None, status_code: Optional[int] = None):
        super().__init__(message, identity)
        self.status_code = status_code


class TerminalApplyError(ConvergeError):
    """Non-retryable failure (invalid payload, permission denied, ...)."""

    def __init__(self, message: str, identity: Optional[ResourceIdentity] = None, status_code: Optional[int] = None):
        super().__init__(message, identity)
        self.status_code = status_code


class ConflictingState(ConvergeError):
    """The resource already exists with a payload other than the desired one."""


class ReadinessTimeout(ConvergeError):
    def __init__(self, identity: ResourceIdentity, timeout: float):
        super().__init__(f"not ready after {timeout:g}s", identity)
        self.timeout = timeout


class RunCancelled(ConvergeError):
    """The run was cancelled externally while working on a resource."""
