"""
Load test harness for the DevWorkspace Operator.
"""
from .errors import ConfigError, InvalidQuantity, LoadTestError, ParseError, ReadinessTimeoutError, TransportError
from .lifecycle import CycleResult, DevWorkspaceLifecycle, LifecycleOutcome, ReadinessState, ResourceIdentity
from .metrics import MetricsCollector
from .runner import LoadTestRunner
from .stages import RampStage, build_stages
from .units import parse_cpu_to_millicores, parse_memory_to_bytes

__version__ = "0.1.0"
