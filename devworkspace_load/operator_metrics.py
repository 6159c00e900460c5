"""
Samples DevWorkspace Operator CPU/memory usage from metrics.k8s.io.

Every polling VU calls ``sample_and_check`` once per poll cycle. Samples are
not deduplicated across VUs: more VUs polling means denser sampling.
Nothing in here raises into the caller; a failed query only skips the cycle.
"""
import logging

from . import metrics as m
from .errors import InvalidQuantity, TransportError
from .kube import pod_metrics_path
from .units import bytes_to_mebibytes, parse_cpu_to_millicores, parse_memory_to_bytes

logger = logging.getLogger(__name__)

CONTROLLER_POD_SUBSTRING = "devworkspace-controller"


class OperatorMetricsSampler:
    def __init__(self, kube_client, collector: m.MetricsCollector, operator_namespace: str,
                 max_cpu_millicores: int = 250, max_memory_bytes: int = 200 * 1024 * 1024,
                 pod_name_substring: str = CONTROLLER_POD_SUBSTRING):
        self.kube_client = kube_client
        self.collector = collector
        self.operator_namespace = operator_namespace
        self.max_cpu_millicores = max_cpu_millicores
        self.max_memory_bytes = max_memory_bytes
        self.pod_name_substring = pod_name_substring

    def _fetch_pod_metrics(self):
        path = pod_metrics_path(self.operator_namespace)
        try:
            response = self.kube_client.get(path)
        except TransportError as e:
            self.collector.check('Fetched pod metrics successfully', False)
            logger.warning(f"[DWO METRICS] Unable to fetch DevWorkspace Operator metrics from Kubernetes: {e}")
            return None

        if not self.collector.check('Fetched pod metrics successfully', response.status_code == 200):
            logger.warning(
                f"[DWO METRICS] Unable to fetch DevWorkspace Operator metrics from Kubernetes, got {response.status_code}"
            )
            return None

        try:
            data = response.json()
            items = data["items"]
        except (ValueError, KeyError, TypeError) as e:
            logger.warning(f"[DWO METRICS] Malformed pod metrics response: {e}")
            return None
        return items if isinstance(items, list) else []

    def _operator_pods(self, items):
        for pod in items:
            name = ((pod or {}).get("metadata") or {}).get("name", "")
            if self.pod_name_substring in name:
                yield name, pod

    def sample_and_check(self) -> int:
        """Record one usage sample per operator pod. Returns the number of pods sampled."""
        items = self._fetch_pod_metrics()
        if items is None:
            return 0

        sampled = 0
        for name, pod in self._operator_pods(items):
            try:
                container = pod["containers"][0]  # assuming single container
                usage = container["usage"]
                cpu = parse_cpu_to_millicores(usage["cpu"])
                memory = parse_memory_to_bytes(usage["memory"])
            except (KeyError, IndexError, TypeError, InvalidQuantity) as e:
                logger.warning(f"[DWO METRICS] Skipping pod {name}, unreadable usage: {e}")
                continue

            self.collector.add_trend(m.OPERATOR_CPU, cpu)
            self.collector.add_trend(m.OPERATOR_MEMORY, bytes_to_mebibytes(memory))

            cpu_ok = cpu <= self.max_cpu_millicores
            mem_ok = memory <= self.max_memory_bytes
            if not cpu_ok:
                self.collector.increment(m.CPU_VIOLATIONS)
                logger.warning(f"[DWO METRICS] [{name}] CPU {cpu}m exceeds {self.max_cpu_millicores}m")
            if not mem_ok:
                self.collector.increment(m.MEM_VIOLATIONS)
                logger.warning(
                    f"[DWO METRICS] [{name}] Memory {bytes_to_mebibytes(memory):.1f}Mi exceeds "
                    f"{round(bytes_to_mebibytes(self.max_memory_bytes))}Mi"
                )
            self.collector.check(f"[{name}] CPU < {self.max_cpu_millicores}m", cpu_ok)
            self.collector.check(f"[{name}] Memory < {round(bytes_to_mebibytes(self.max_memory_bytes))}Mi", mem_ok)
            sampled += 1
        return sampled
