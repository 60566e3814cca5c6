"""Apply-and-verify controller.

Each resource walks ``Pending -> Applying -> AwaitingReady -> Ready``; any
other terminal phase halts the run and everything after it is reported as
not attempted. Only one resource is ever past ``Pending`` and not terminal.
"""

from __future__ import annotations

import logging
import threading
import time
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, Dict, List, Optional, Protocol, Sequence, Tuple

from tenacity import Retrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from .config import settings
from .errors import (
    ConflictingState,
    ConvergeError,
    CyclicDependency,
    ReadinessTimeout,
    RunCancelled,
    TerminalApplyError,
    TransientApplyError,
)
from .readiness import is_ready, timeout_for
from .resolver import dependency_closure, resolve_order
from .schemas import (
    ApplyAttempt,
    ApplyOutcome,
    ApplyResult,
    ConvergenceResult,
    ResourceIdentity,
    ResourceReport,
    ResourceSpec,
    ResourceState,
    ResourceStatus,
    ResourceUsage,
)

logger = logging.getLogger(__name__)


class ClusterClient(Protocol):
    def apply_resource(self, spec: ResourceSpec) -> ApplyResult: ...

    def get_resource_status(self, identity: ResourceIdentity) -> ResourceStatus: ...

    def delete_resource(self, identity: ResourceIdentity) -> bool: ...

    def get_metrics(self, identity: ResourceIdentity) -> ResourceUsage: ...


class Phase(str, Enum):
    PENDING = "Pending"
    APPLYING = "Applying"
    AWAITING_READY = "AwaitingReady"
    READY = "Ready"
    FAILED = "Failed"
    TIMED_OUT = "TimedOut"
    CANCELLED = "Cancelled"


class Controller:
    def __init__(
        self,
        client: ClusterClient,
        *,
        poll_interval: Optional[float] = None,
        retry_base: Optional[float] = None,
        retry_cap: Optional[float] = None,
        retry_attempts: Optional[int] = None,
        timeout_scale: float = 1.0,
        timeout_override: Optional[float] = None,
        cancel_event: Optional[threading.Event] = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Optional[Callable[[float], None]] = None,
    ):
        self.client = client
        self.poll_interval = settings.poll_interval if poll_interval is None else poll_interval
        self.retry_base = settings.retry_base if retry_base is None else retry_base
        self.retry_cap = settings.retry_cap if retry_cap is None else retry_cap
        self.retry_attempts = settings.retry_attempts if retry_attempts is None else retry_attempts
        self.timeout_scale = timeout_scale
        self.timeout_override = timeout_override
        self.cancel_event = cancel_event or threading.Event()
        self._clock = clock
        self._sleep = sleep

        self.phases: Dict[ResourceIdentity, Phase] = {}
        self.attempts: List[ApplyAttempt] = []

    # ------------------------------------------------------------------ #
    # Helpers                                                            #
    # ------------------------------------------------------------------ #

    def _pause(self, seconds: float, identity: ResourceIdentity) -> None:
        """Wait ``seconds`` unless cancelled; cancellation wakes the wait."""
        if self._sleep is not None:
            self._sleep(seconds)
        elif seconds > 0:
            self.cancel_event.wait(seconds)
        if self.cancel_event.is_set():
            raise RunCancelled("cancelled while waiting", identity)

    def _transition(self, identity: ResourceIdentity, phase: Phase) -> None:
        previous = self.phases.get(identity, Phase.PENDING)
        self.phases[identity] = phase
        logger.info("%s: %s -> %s", identity, previous.value, phase.value)

    def _record(self, identity: ResourceIdentity, attempt: int, outcome: ApplyOutcome, message: str) -> None:
        self.attempts.append(
            ApplyAttempt(
                identity=identity,
                attempt=attempt,
                timestamp=datetime.now(timezone.utc),
                outcome=outcome,
                message=message,
            )
        )

    # ------------------------------------------------------------------ #
    # Per-resource state machine                                         #
    # ------------------------------------------------------------------ #

    def _apply_with_retry(self, spec: ResourceSpec) -> Tuple[ApplyResult, int]:
        identity = spec.identity
        retrying = Retrying(
            stop=stop_after_attempt(self.retry_attempts),
            wait=wait_exponential(multiplier=self.retry_base, max=self.retry_cap),
            retry=retry_if_exception_type(TransientApplyError),
            sleep=lambda seconds: self._pause(seconds, identity),
            reraise=True,
        )
        for attempt in retrying:
            with attempt:
                number = attempt.retry_state.attempt_number
                try:
                    result = self.client.apply_resource(spec)
                except TransientApplyError as e:
                    self._record(identity, number, ApplyOutcome.TRANSIENT_ERROR, e.message)
                    logger.warning("%s: transient apply error (attempt %d/%d): %s",
                                   identity, number, self.retry_attempts, e.message)
                    raise
                except (TerminalApplyError, ConflictingState) as e:
                    self._record(identity, number, ApplyOutcome.TERMINAL_ERROR, e.message)
                    raise
                outcome = result.outcome or ApplyOutcome.APPLIED
                self._record(identity, number, outcome, result.message)
                return result, number - 1
        raise AssertionError("retry loop exited without outcome")  # pragma: no cover

    def _await_ready(self, spec: ResourceSpec) -> None:
        identity = spec.identity
        timeout = timeout_for(spec, self.timeout_scale, self.timeout_override)
        deadline = self._clock() + timeout
        while True:
            try:
                if is_ready(self.client.get_resource_status(identity)):
                    return
            except TransientApplyError as e:
                logger.warning("%s: status check failed, will retry: %s", identity, e.message)
            remaining = deadline - self._clock()
            if remaining <= 0:
                raise ReadinessTimeout(identity, timeout)
            self._pause(min(self.poll_interval, remaining), identity)

    def converge_resource(self, spec: ResourceSpec) -> ResourceReport:
        identity = spec.identity
        started = self._clock()
        retries = 0
        outcome: Optional[ApplyOutcome] = None

        def report(state: ResourceState, error: Optional[ConvergeError] = None) -> ResourceReport:
            return ResourceReport(
                identity=identity,
                state=state,
                outcome=outcome,
                retries=retries,
                elapsed_seconds=round(self._clock() - started, 3),
                error_type=type(error).__name__ if error else None,
                error=error.message if error else None,
            )

        self._transition(identity, Phase.APPLYING)
        try:
            result, retries = self._apply_with_retry(spec)
            outcome = result.outcome or ApplyOutcome.APPLIED
            self._transition(identity, Phase.AWAITING_READY)
            self._await_ready(spec)
        except RunCancelled as e:
            self._transition(identity, Phase.CANCELLED)
            return report(ResourceState.CANCELLED, e)
        except ReadinessTimeout as e:
            self._transition(identity, Phase.TIMED_OUT)
            return report(ResourceState.TIMED_OUT, e)
        except (TransientApplyError, TerminalApplyError, ConflictingState) as e:
            if outcome is None:
                outcome = ApplyOutcome.TRANSIENT_ERROR if isinstance(e, TransientApplyError) else ApplyOutcome.TERMINAL_ERROR
                retries = sum(1 for a in self.attempts if a.identity == identity) - 1
            self._transition(identity, Phase.FAILED)
            logger.error("%s: %s", identity, e.message)
            return report(ResourceState.FAILED, e)

        self._transition(identity, Phase.READY)
        return report(ResourceState.READY)

    # ------------------------------------------------------------------ #
    # Whole run                                                          #
    # ------------------------------------------------------------------ #

    def run(self, specs: Sequence[ResourceSpec], manifest_dir: Optional[str] = None) -> ConvergenceResult:
        started_at = datetime.now(timezone.utc)
        started = self._clock()
        result = ConvergenceResult(started_at=started_at, manifest_dir=manifest_dir)

        try:
            ordered = resolve_order(specs)
        except CyclicDependency as e:
            logger.error("%s", e)
            result.resources = [ResourceReport(identity=s.identity, state=ResourceState.NOT_ATTEMPTED) for s in specs]
            result.error_type = type(e).__name__
            result.error = str(e)
            return self._finish(result, started)

        logger.info("Resolved order: %s", ", ".join(str(s.identity) for s in ordered))
        for spec in ordered:
            self.phases[spec.identity] = Phase.PENDING

        halted: Optional[ResourceReport] = None
        blocked: List[ResourceIdentity] = []
        for spec in ordered:
            if halted is None and self.cancel_event.is_set():
                result.cancelled = True
                result.resources.append(
                    ResourceReport(identity=spec.identity, state=ResourceState.NOT_ATTEMPTED, error="run cancelled")
                )
                continue
            if halted is not None:
                reason = "blocked by" if spec.identity in blocked else "run halted at"
                result.resources.append(
                    ResourceReport(
                        identity=spec.identity,
                        state=ResourceState.NOT_ATTEMPTED,
                        error=f"{reason} {halted.identity}",
                    )
                )
                continue

            report = self.converge_resource(spec)
            result.resources.append(report)
            if report.state != ResourceState.READY:
                halted = report
                blocked = dependency_closure(ordered, spec.identity)
                result.cancelled = report.state == ResourceState.CANCELLED

        return self._finish(result, started)

    def _finish(self, result: ConvergenceResult, started: float) -> ConvergenceResult:
        result.attempts = list(self.attempts)
        result.finished_at = datetime.now(timezone.utc)
        result.elapsed_seconds = round(self._clock() - started, 3)
        return result

    # ------------------------------------------------------------------ #
    # Teardown                                                           #
    # ------------------------------------------------------------------ #

    def teardown(self, order: Sequence[ResourceIdentity]) -> Dict[ResourceIdentity, str]:
        """Delete resources in reverse of ``order``; returns identity -> outcome."""
        outcomes: Dict[ResourceIdentity, str] = {}
        for identity in reversed(list(order)):
            if self.cancel_event.is_set():
                outcomes[identity] = "cancelled"
                logger.warning("Teardown cancelled before %s", identity)
                break
            retrying = Retrying(
                stop=stop_after_attempt(self.retry_attempts),
                wait=wait_exponential(multiplier=self.retry_base, max=self.retry_cap),
                retry=retry_if_exception_type(TransientApplyError),
                sleep=lambda seconds, i=identity: self._pause(seconds, i),
                reraise=True,
            )
            try:
                deleted = retrying(self.client.delete_resource, identity)
            except RunCancelled:
                outcomes[identity] = "cancelled"
                break
            except (TransientApplyError, TerminalApplyError) as e:
                logger.error("%s: delete failed: %s", identity, e.message)
                outcomes[identity] = f"error: {e.message}"
                continue
            outcomes[identity] = "deleted" if deleted else "absent"
            logger.info("%s: %s", identity, outcomes[identity])
        return outcomes
