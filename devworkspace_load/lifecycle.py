"""
One VU iteration against the DevWorkspace API: create, wait until ready, delete.

Creation precedes polling, which precedes deletion. Deletion is only attempted
once creation succeeded. All HTTP failures are turned into outcomes; nothing
here is allowed to take down the other VUs.
"""
import enum
import logging
import math
import time
from dataclasses import dataclass
from typing import Optional

from . import metrics as m
from .errors import ParseError, ReadinessTimeoutError, TransportError
from .kube import devworkspace_path, devworkspaces_path
from .manifests import DevWorkspaceTemplate, devworkspace_name

logger = logging.getLogger(__name__)

CREATE_OK_STATUSES = (201, 409)
DELETE_OK_STATUSES = (200, 404)
READY_PHASES = ("Ready", "Running")
FAILED_PHASES = ("Failing", "Failed", "Error")
DEFAULT_POLL_INTERVAL = 5


class LifecycleOutcome(enum.Enum):
    CREATED = "Created"
    CREATE_FAILED = "CreateFailed"
    READY_OBSERVED = "ReadyObserved"
    READY_TIMED_OUT = "ReadyTimedOut"
    READY_FAILED_PHASE = "ReadyFailedPhase"
    DELETED = "Deleted"
    DELETE_FAILED = "DeleteFailed"
    ERRORED = "Errored"


class ReadinessState(enum.Enum):
    POLLING = "Polling"
    READY = "Ready"
    FAILED = "Failed"
    TIMED_OUT = "TimedOut"


_READINESS_OUTCOMES = {
    ReadinessState.READY: LifecycleOutcome.READY_OBSERVED,
    ReadinessState.FAILED: LifecycleOutcome.READY_FAILED_PHASE,
    ReadinessState.TIMED_OUT: LifecycleOutcome.READY_TIMED_OUT,
}


@dataclass(frozen=True)
class ResourceIdentity:
    name: str
    namespace: str

    @classmethod
    def for_iteration(cls, vu_id, iteration, namespace: str) -> "ResourceIdentity":
        return cls(name=devworkspace_name(vu_id, iteration), namespace=namespace)


@dataclass
class ReadinessResult:
    state: ReadinessState
    attempts: int
    last_phase: Optional[str] = None
    duration_ms: Optional[float] = None
    error: Optional[Exception] = None


@dataclass
class CycleResult:
    vu_id: int
    iteration: int
    identity: Optional[ResourceIdentity]
    outcome: LifecycleOutcome
    readiness: Optional[ReadinessState] = None
    delete_attempted: bool = False
    error: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.outcome == LifecycleOutcome.DELETED

    def as_record(self) -> dict:
        return {
            "vu": self.vu_id,
            "iteration": self.iteration,
            "name": self.identity.name if self.identity else None,
            "namespace": self.identity.namespace if self.identity else None,
            "outcome": self.outcome.value,
            "readiness": self.readiness.value if self.readiness else None,
            "delete_attempted": self.delete_attempted,
            "error": self.error,
        }


def classify_phase(phase) -> ReadinessState:
    """Map a DevWorkspace status.phase onto the poller's next state."""
    if phase in READY_PHASES:
        return ReadinessState.READY
    if phase in FAILED_PHASES:
        return ReadinessState.FAILED
    return ReadinessState.POLLING


def max_poll_attempts(ready_timeout_seconds: float, poll_interval: float) -> int:
    return max(1, int(math.ceil(ready_timeout_seconds / poll_interval)))


def _extract_phase(response):
    try:
        body = response.json()
    except ValueError as e:
        raise ParseError(f"{response.text} : {e}") from e
    if not isinstance(body, dict):
        raise ParseError(f"Expected a JSON object, got {type(body).__name__}")
    status = body.get("status") or {}
    if not isinstance(status, dict):
        raise ParseError(f"Unexpected status field: {status!r}")
    return status.get("phase")


class DevWorkspaceLifecycle:
    """Drives create -> poll -> delete for a single DevWorkspace."""

    def __init__(self, kube_client, collector: m.MetricsCollector, sampler, template: DevWorkspaceTemplate,
                 ready_timeout_seconds: float = 600, poll_interval: float = DEFAULT_POLL_INTERVAL,
                 sleep=time.sleep, clock=time.monotonic):
        self.kube_client = kube_client
        self.collector = collector
        self.sampler = sampler
        self.template = template
        self.ready_timeout_seconds = ready_timeout_seconds
        self.poll_interval = poll_interval
        self.max_attempts = max_poll_attempts(ready_timeout_seconds, poll_interval)
        self._sleep = sleep
        self._clock = clock

    def create(self, vu_id, identity: ResourceIdentity) -> bool:
        manifest = self.template.build(identity.name, identity.namespace)
        create_start = self._clock()
        try:
            response = self.kube_client.post(devworkspaces_path(identity.namespace), manifest)
        except TransportError as e:
            self.collector.check('DevWorkspace created', False)
            logger.error(f"[VU {vu_id}] Failed to create DevWorkspace: {e}")
            return False

        created = response.status_code in CREATE_OK_STATUSES
        self.collector.check('DevWorkspace created', created)
        if not created:
            logger.error(f"[VU {vu_id}] Failed to create DevWorkspace: {response.status_code}, {response.text}")
            return False
        if response.status_code == 409:
            logger.debug(f"[VU {vu_id}] DevWorkspace {identity.name} already exists, continuing")

        self.collector.add_trend(m.CREATE_DURATION, (self._clock() - create_start) * 1000)
        self.collector.increment(m.CREATE_COUNT)
        return True

    def _poll_once(self, vu_id, path: str):
        """Return (state, phase) for one GET; transient problems keep POLLING."""
        try:
            response = self.kube_client.get(path)
        except TransportError as e:
            logger.debug(f"GET [VU {vu_id}] transient failure: {e}")
            return ReadinessState.POLLING, None
        if response.status_code != 200:
            logger.debug(f"GET [VU {vu_id}] got {response.status_code}, still polling")
            return ReadinessState.POLLING, None
        try:
            phase = _extract_phase(response)
        except ParseError as e:
            logger.error(f"GET [VU {vu_id}] Failed to parse DevWorkspace from API: {e}")
            return ReadinessState.POLLING, None
        return classify_phase(phase), phase

    def _sample_operator_metrics(self):
        if self.sampler is None:
            return
        try:
            self.sampler.sample_and_check()
        except Exception as e:
            # the VU's own lifecycle must not depend on metrics collection
            logger.warning(f"[DWO METRICS] Sampling failed: {e}")

    def wait_until_ready(self, vu_id, identity: ResourceIdentity) -> ReadinessResult:
        path = devworkspace_path(identity.namespace, identity.name)
        ready_start = self._clock()
        state = ReadinessState.POLLING
        phase = None
        attempts = 0

        while attempts < self.max_attempts:
            state, phase = self._poll_once(vu_id, path)
            attempts += 1
            if state != ReadinessState.POLLING:
                break
            self._sample_operator_metrics()
            self._sleep(self.poll_interval)

        if state == ReadinessState.POLLING:
            state = ReadinessState.TIMED_OUT

        if state == ReadinessState.READY:
            duration_ms = (self._clock() - ready_start) * 1000
            self.collector.increment(m.READY_COUNT)
            self.collector.add_trend(m.READY_DURATION, duration_ms)
            return ReadinessResult(state, attempts, phase, duration_ms)

        self.collector.increment(m.READY_FAILED)
        error = None
        if state == ReadinessState.TIMED_OUT:
            error = ReadinessTimeoutError(
                f"DevWorkspace {identity.name} not ready after {attempts} attempts ({self.ready_timeout_seconds}s)"
            )
            logger.warning(f"[VU {vu_id}] {error}")
        else:
            logger.warning(f"[VU {vu_id}] DevWorkspace {identity.name} entered phase {phase}")
        return ReadinessResult(state, attempts, phase, error=error)

    def delete(self, vu_id, identity: ResourceIdentity) -> bool:
        path = devworkspace_path(identity.namespace, identity.name)
        delete_start = self._clock()
        try:
            response = self.kube_client.delete(path)
        except TransportError as e:
            self.collector.add_trend(m.DELETE_DURATION, (self._clock() - delete_start) * 1000)
            self.collector.check('DevWorkspace deleted or not found', False)
            logger.error(f"[VU {vu_id}] Failed to delete DevWorkspace {identity.name}: {e}")
            return False
        self.collector.add_trend(m.DELETE_DURATION, (self._clock() - delete_start) * 1000)
        deleted = response.status_code in DELETE_OK_STATUSES
        self.collector.check('DevWorkspace deleted or not found', deleted)
        if not deleted:
            logger.error(f"[VU {vu_id}] Failed to delete DevWorkspace {identity.name}: {response.status_code}")
        return deleted

    def run_cycle(self, vu_id, iteration, namespace: str) -> CycleResult:
        identity = ResourceIdentity.for_iteration(vu_id, iteration, namespace)
        if not self.create(vu_id, identity):
            return CycleResult(vu_id, iteration, identity, LifecycleOutcome.CREATE_FAILED)

        readiness = self.wait_until_ready(vu_id, identity)
        deleted = self.delete(vu_id, identity)

        if readiness.state != ReadinessState.READY:
            outcome = _READINESS_OUTCOMES[readiness.state]
        elif deleted:
            outcome = LifecycleOutcome.DELETED
        else:
            outcome = LifecycleOutcome.DELETE_FAILED
        return CycleResult(vu_id, iteration, identity, outcome, readiness=readiness.state, delete_attempted=True,
                           error=str(readiness.error) if readiness.error else None)
