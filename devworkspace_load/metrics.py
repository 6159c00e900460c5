"""
Thread-safe observation sinks shared by every VU.

Sinks are append-only (Trend) or increment-only (Counter, Rate); each write
takes the sink's own lock, so concurrent VUs never lose an update. The
collector is created once per run and read once at the end for reporting.
Optionally every observation is mirrored to Prometheus.
"""
import logging
import operator
import re
import threading
import time
from dataclasses import dataclass
from typing import Dict, List, Optional

import numpy as np
from prometheus_client import CollectorRegistry, Counter as PromCounter, Summary as PromSummary

logger = logging.getLogger(__name__)

# Metric names
CREATE_DURATION = "devworkspace_create_duration"
DELETE_DURATION = "devworkspace_delete_duration"
READY_DURATION = "devworkspace_ready_duration"
CREATE_COUNT = "devworkspace_create_count"
READY_COUNT = "devworkspace_ready"
READY_FAILED = "devworkspace_ready_failed"
OPERATOR_CPU = "average_operator_cpu"  # in millicores
OPERATOR_MEMORY = "average_operator_memory"  # in Mi
CPU_VIOLATIONS = "operator_cpu_violations"
MEM_VIOLATIONS = "operator_mem_violations"
CHECKS = "checks"

SUMMARY_METRICS = [
    CREATE_COUNT,
    CREATE_DURATION,
    DELETE_DURATION,
    READY_DURATION,
    READY_COUNT,
    READY_FAILED,
    CPU_VIOLATIONS,
    MEM_VIOLATIONS,
    OPERATOR_CPU,
    OPERATOR_MEMORY,
]

DEFAULT_THRESHOLDS = {
    CHECKS: ["rate>0.95"],
    CREATE_DURATION: ["p(95)<15000"],
    DELETE_DURATION: ["p(95)<10000"],
    READY_DURATION: ["p(95)<60000"],
    READY_FAILED: ["count<5"],
    CPU_VIOLATIONS: ["count==0"],
    MEM_VIOLATIONS: ["count==0"],
}


class Trend:
    """Append-only series of samples with percentile statistics."""
    kind = "trend"

    def __init__(self, name: str):
        self.name = name
        self._values: List[float] = []
        self._lock = threading.Lock()

    def add(self, value: float):
        with self._lock:
            self._values.append(float(value))

    def values(self) -> List[float]:
        with self._lock:
            return list(self._values)

    def stats(self, elapsed_seconds: float = 0.0) -> Dict[str, float]:
        values = np.asarray(self.values(), dtype=float)
        if values.size == 0:
            return {"count": 0, "avg": 0.0, "min": 0.0, "med": 0.0, "max": 0.0, "p(90)": 0.0, "p(95)": 0.0}
        return {
            "count": int(values.size),
            "avg": float(np.mean(values)),
            "min": float(np.min(values)),
            "med": float(np.median(values)),
            "max": float(np.max(values)),
            "p(90)": float(np.percentile(values, 90)),
            "p(95)": float(np.percentile(values, 95)),
        }

    def aggregate(self, name: str) -> float:
        match = _PERCENTILE_RE.match(name)
        values = self.values()
        if match:
            return float(np.percentile(values, float(match.group(1)))) if values else 0.0
        stats = self.stats()
        if name not in stats:
            raise ValueError(f"Aggregation {name} not supported for trend {self.name}")
        return stats[name]


class Counter:
    """Increment-only counter."""
    kind = "counter"

    def __init__(self, name: str):
        self.name = name
        self._count = 0
        self._lock = threading.Lock()

    def add(self, value: int = 1):
        with self._lock:
            self._count += value

    @property
    def count(self) -> int:
        with self._lock:
            return self._count

    def stats(self, elapsed_seconds: float = 0.0) -> Dict[str, float]:
        count = self.count
        return {"count": count, "rate": (count / elapsed_seconds) if elapsed_seconds > 0 else 0.0}


class Rate:
    """Fraction of passing boolean observations, e.g. check results."""
    kind = "rate"

    def __init__(self, name: str):
        self.name = name
        self._passes = 0
        self._fails = 0
        self._lock = threading.Lock()

    def add(self, passed: bool):
        with self._lock:
            if passed:
                self._passes += 1
            else:
                self._fails += 1

    def stats(self, elapsed_seconds: float = 0.0) -> Dict[str, float]:
        with self._lock:
            passes, fails = self._passes, self._fails
        total = passes + fails
        return {"rate": (passes / total) if total else 0.0, "passes": passes, "fails": fails}


_PERCENTILE_RE = re.compile(r"^p\((\d+(?:\.\d+)?)\)$")
_THRESHOLD_RE = re.compile(
    r"^\s*(avg|min|max|med|count|rate|passes|fails|p\(\d+(?:\.\d+)?\))\s*(<=|>=|==|!=|<|>)\s*(-?\d+(?:\.\d+)?)\s*$"
)
_OPERATORS = {
    "<": operator.lt,
    "<=": operator.le,
    ">": operator.gt,
    ">=": operator.ge,
    "==": operator.eq,
    "!=": operator.ne,
}


@dataclass(frozen=True)
class Threshold:
    """A single pass/fail predicate such as ``p(95)<15000``."""
    metric: str
    expression: str
    aggregation: str
    op: str
    bound: float

    @classmethod
    def parse(cls, metric: str, expression: str) -> "Threshold":
        match = _THRESHOLD_RE.match(expression)
        if not match:
            raise ValueError(f"Invalid threshold expression for {metric}: {expression!r}")
        aggregation, op, bound = match.groups()
        return cls(metric=metric, expression=expression.strip(), aggregation=aggregation,
                   op=op, bound=float(bound))

    def evaluate(self, observed: float) -> bool:
        return _OPERATORS[self.op](observed, self.bound)


@dataclass(frozen=True)
class ThresholdResult:
    threshold: Threshold
    observed: float
    passed: bool


class MetricsCollector:
    """Registry of the run's sinks, injected into every component."""

    def __init__(self, thresholds: Optional[Dict[str, List[str]]] = None,
                 prometheus_registry: Optional[CollectorRegistry] = None):
        self._sinks = {}
        self._lock = threading.Lock()
        self.start_time = time.time()
        self.end_time = None

        for name in (CREATE_DURATION, DELETE_DURATION, READY_DURATION, OPERATOR_CPU, OPERATOR_MEMORY):
            self._sinks[name] = Trend(name)
        for name in (CREATE_COUNT, READY_COUNT, READY_FAILED, CPU_VIOLATIONS, MEM_VIOLATIONS):
            self._sinks[name] = Counter(name)
        self._sinks[CHECKS] = Rate(CHECKS)

        raw_thresholds = DEFAULT_THRESHOLDS if thresholds is None else thresholds
        self.thresholds = [
            Threshold.parse(metric, expression)
            for metric, expressions in raw_thresholds.items()
            for expression in expressions
        ]

        self.prometheus_registry = prometheus_registry
        self._prom = {}
        self._prom_checks = None
        if prometheus_registry is not None:
            self._init_prometheus(prometheus_registry)

    def _init_prometheus(self, registry: CollectorRegistry):
        for name, sink in self._sinks.items():
            if isinstance(sink, Trend):
                self._prom[name] = PromSummary(name, f"DevWorkspace load test trend {name}", registry=registry)
            elif isinstance(sink, Counter):
                self._prom[name] = PromCounter(name, f"DevWorkspace load test counter {name}", registry=registry)
        self._prom_checks = PromCounter(
            'devworkspace_load_test_checks', 'Check results by outcome', ['outcome'], registry=registry
        )
        logger.info("Prometheus mirroring enabled for %d load test metrics", len(self._prom))

    def sink(self, name: str):
        try:
            return self._sinks[name]
        except KeyError:
            raise KeyError(f"Unknown metric: {name}") from None

    def add_trend(self, name: str, value: float):
        self.sink(name).add(value)
        prom = self._prom.get(name)
        if prom is not None:
            prom.observe(value)

    def increment(self, name: str, value: int = 1):
        self.sink(name).add(value)
        prom = self._prom.get(name)
        if prom is not None:
            prom.inc(value)

    def check(self, name: str, passed: bool) -> bool:
        """Record a named check outcome and return it."""
        self._sinks[CHECKS].add(bool(passed))
        if self._prom_checks is not None:
            self._prom_checks.labels(outcome='pass' if passed else 'fail').inc()
        if not passed:
            logger.debug("Check failed: %s", name)
        return bool(passed)

    def count(self, name: str) -> int:
        return self.sink(name).count

    def trend_values(self, name: str) -> List[float]:
        return self.sink(name).values()

    def finish(self):
        with self._lock:
            if self.end_time is None:
                self.end_time = time.time()

    @property
    def elapsed_seconds(self) -> float:
        end = self.end_time if self.end_time is not None else time.time()
        return max(0.0, end - self.start_time)

    def snapshot(self, names=None) -> Dict[str, Dict]:
        """Return ``{name: {"type": kind, "values": stats}}`` for the given metrics."""
        elapsed = self.elapsed_seconds
        selected = self._sinks.keys() if names is None else [n for n in names if n in self._sinks]
        return {
            name: {"type": self._sinks[name].kind, "values": self._sinks[name].stats(elapsed)}
            for name in selected
        }

    def evaluate_thresholds(self) -> List[ThresholdResult]:
        elapsed = self.elapsed_seconds
        results = []
        for threshold in self.thresholds:
            sink = self._sinks.get(threshold.metric)
            if sink is None:
                logger.warning("Threshold defined for unknown metric %s", threshold.metric)
                continue
            if isinstance(sink, Trend):
                observed = sink.aggregate(threshold.aggregation)
            else:
                stats = sink.stats(elapsed)
                if threshold.aggregation not in stats:
                    raise ValueError(
                        f"Aggregation {threshold.aggregation} not supported for {sink.kind} {threshold.metric}"
                    )
                observed = stats[threshold.aggregation]
            results.append(ThresholdResult(threshold, observed, threshold.evaluate(observed)))
        return results
