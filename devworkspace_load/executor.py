"""
Ramping virtual-user executor.

Starts and retires VU threads so the number of running VUs follows the
stage profile. Each VU runs iterations back to back; a retired VU finishes
its current iteration and exits. After the last stage the executor waits up
to ``graceful_ramp_down`` seconds for in-flight iterations.
"""
import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Sequence

from .stages import RampStage, target_at, total_duration

logger = logging.getLogger(__name__)


class VirtualUser(threading.Thread):
    def __init__(self, vu_id: int, executor: "RampingVUExecutor"):
        super().__init__(name=f"vu-{vu_id}", daemon=True)
        self.vu_id = vu_id
        self.executor = executor
        self.retire_event = threading.Event()

    def retire(self):
        self.retire_event.set()

    @property
    def retiring(self) -> bool:
        return self.retire_event.is_set()

    def run(self):
        logger.debug(f"[VU {self.vu_id}] started")
        while not self.retire_event.is_set() and not self.executor.stop_event.is_set():
            iteration = self.executor.next_iteration(self.vu_id)
            try:
                self.executor.iteration_fn(self.vu_id, iteration)
            except Exception as e:
                logger.error(f"[VU {self.vu_id}] iteration {iteration} raised: {e}")
                logger.exception(e)
        logger.debug(f"[VU {self.vu_id}] stopped")


@dataclass
class ExecutionSummary:
    started_at: float
    finished_at: float = 0.0
    iterations: int = 0
    peak_vus: int = 0
    interrupted_vus: int = 0
    target_history: List[int] = field(default_factory=list)

    @property
    def duration_seconds(self) -> float:
        return self.finished_at - self.started_at


class RampingVUExecutor:
    """Follows ``[{duration, target}, ...]`` stages with linear ramps between targets."""

    def __init__(self, stages: Sequence[RampStage], iteration_fn: Callable[[int, int], object],
                 time_unit: float = 60.0, tick: float = 1.0, graceful_ramp_down: float = 60.0,
                 start_vus: int = 0, stop_event: Optional[threading.Event] = None,
                 clock=time.monotonic):
        self.stages = list(stages)
        self.iteration_fn = iteration_fn
        self.time_unit = float(time_unit)
        self.tick = float(tick)
        self.graceful_ramp_down = float(graceful_ramp_down)
        self.start_vus = start_vus
        self.stop_event = stop_event or threading.Event()
        self._clock = clock
        self._lock = threading.Lock()
        self._vus: Dict[int, VirtualUser] = {}
        self._iterations: Dict[int, int] = {}
        self._iteration_total = 0

    def next_iteration(self, vu_id: int) -> int:
        """Per-VU iteration counter; never repeats for a VU id within a run."""
        with self._lock:
            iteration = self._iterations.get(vu_id, 0)
            self._iterations[vu_id] = iteration + 1
            self._iteration_total += 1
            return iteration

    def _active(self) -> List[VirtualUser]:
        return [vu for vu in self._vus.values() if vu.is_alive() and not vu.retiring]

    def _free_vu_id(self) -> int:
        vu_id = 1
        while vu_id in self._vus and self._vus[vu_id].is_alive():
            vu_id += 1
        return vu_id

    def _scale_to(self, target: int):
        active = self._active()
        if len(active) < target:
            for _ in range(target - len(active)):
                vu_id = self._free_vu_id()
                vu = VirtualUser(vu_id, self)
                self._vus[vu_id] = vu
                vu.start()
        elif len(active) > target:
            # retire the most recently added VUs first
            for vu in sorted(active, key=lambda v: v.vu_id, reverse=True)[:len(active) - target]:
                vu.retire()

    def running_vus(self) -> int:
        return len([vu for vu in self._vus.values() if vu.is_alive()])

    def run(self) -> ExecutionSummary:
        summary = ExecutionSummary(started_at=time.time())
        schedule_seconds = total_duration(self.stages) * self.time_unit
        start = self._clock()
        last_target = None
        logger.info(
            f"Ramping VUs through {len(self.stages)} stages over {schedule_seconds:.0f}s: "
            f"{[stage.as_executor_stage() for stage in self.stages]}"
        )

        while not self.stop_event.is_set():
            elapsed = self._clock() - start
            if elapsed >= schedule_seconds:
                break
            target = target_at(self.stages, elapsed / self.time_unit, self.start_vus)
            if target != last_target:
                logger.info(f"Target VUs: {target} (t={elapsed:.0f}s)")
                summary.target_history.append(target)
                last_target = target
            self._scale_to(target)
            summary.peak_vus = max(summary.peak_vus, self.running_vus())
            self.stop_event.wait(min(self.tick, max(0.0, schedule_seconds - elapsed)))

        self._scale_to(0)
        deadline = self._clock() + self.graceful_ramp_down
        for vu in list(self._vus.values()):
            vu.join(timeout=max(0.0, deadline - self._clock()))
        still_running = [vu.vu_id for vu in self._vus.values() if vu.is_alive()]
        if still_running:
            logger.warning(f"{len(still_running)} VUs still running after graceful ramp-down: {still_running}")

        summary.interrupted_vus = len(still_running)
        summary.iterations = self._iteration_total
        summary.finished_at = time.time()
        logger.info(f"Executor finished: {summary.iterations} iterations, peak {summary.peak_vus} VUs")
        return summary
