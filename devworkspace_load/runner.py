"""
Run coordinator for the DevWorkspace Operator load test.

setup() provisions shared fixtures, run_iteration() is what every VU executes,
final_cleanup() removes everything the run labeled, and run() ties them
together with the ramping executor.
"""
import logging
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional

from . import metrics as m
from .config import LoadTestSettings
from .errors import ConfigError, TransportError
from .executor import ExecutionSummary, RampingVUExecutor
from .kube import (
    KubeApiClient,
    configmaps_path,
    devworkspaces_path,
    label_selector_query,
    namespace_path,
    namespaces_path,
    secrets_path,
)
from .lifecycle import (
    CREATE_OK_STATUSES,
    DELETE_OK_STATUSES,
    CycleResult,
    DevWorkspaceLifecycle,
    LifecycleOutcome,
)
from .manifests import (
    AUTOMOUNT_CONFIGMAP_NAME,
    AUTOMOUNT_SECRET_NAME,
    LABEL_KEY,
    LABEL_VALUE,
    DevWorkspaceTemplate,
    automount_configmap,
    automount_secret,
    namespace_manifest,
    separate_namespace_name,
)
from .operator_metrics import OperatorMetricsSampler
from .stages import DEFAULT_STAGE_PROFILE, RampStage, build_stages

logger = logging.getLogger(__name__)


@dataclass
class RunResult:
    start_time: datetime
    end_time: datetime
    stages: List[RampStage]
    cycle_results: List[CycleResult]
    threshold_results: List[m.ThresholdResult]
    execution: Optional[ExecutionSummary] = None
    cleanup_ran: bool = False
    outcome_counts: dict = field(default_factory=dict)

    @property
    def thresholds_passed(self) -> bool:
        return all(result.passed for result in self.threshold_results)


class LoadTestRunner:
    def __init__(self, settings: LoadTestSettings, kube_client=None, collector: Optional[m.MetricsCollector] = None,
                 template: Optional[DevWorkspaceTemplate] = None, sleep=time.sleep,
                 stage_profile=DEFAULT_STAGE_PROFILE):
        self.settings = settings
        self.kube_client = kube_client or KubeApiClient(
            settings.api_server, settings.token, timeout=settings.request_timeout,
            pool_size=max(1, settings.max_vus),
        )
        self.collector = collector or m.MetricsCollector()
        self.template = template or DevWorkspaceTemplate(settings.devworkspace_link)
        self.sampler = OperatorMetricsSampler(
            self.kube_client, self.collector, settings.operator_namespace,
            max_cpu_millicores=settings.max_cpu_millicores,
            max_memory_bytes=settings.max_memory_bytes,
        )
        self.lifecycle = DevWorkspaceLifecycle(
            self.kube_client, self.collector, self.sampler, self.template,
            ready_timeout_seconds=settings.ready_timeout_seconds,
            poll_interval=settings.poll_interval,
            sleep=sleep,
        )
        self.stage_profile = stage_profile
        self.stop_event = threading.Event()
        self._results: List[CycleResult] = []
        self._results_lock = threading.Lock()
        self._cleanup_done = threading.Event()

    # -- setup -----------------------------------------------------------------

    def _create_idempotent(self, path: str, manifest: dict, description: str):
        response = self.kube_client.post(path, manifest)
        if response.status_code not in CREATE_OK_STATUSES:
            raise TransportError(
                f"Failed to create {description}: {response.status_code} - {response.text}",
                status_code=response.status_code, body=response.text,
            )
        return response

    def setup(self):
        if not self.settings.create_automount_resources:
            return
        namespace = self.settings.load_test_namespace
        self._create_idempotent(configmaps_path(namespace), automount_configmap(namespace), "automount ConfigMap")
        logger.info(f"Created automount configMap : {AUTOMOUNT_CONFIGMAP_NAME}")
        self._create_idempotent(
            secrets_path(namespace),
            automount_secret(namespace, self.settings.secret_value_base64),
            "automount Secret",
        )
        logger.info(f"Created automount secret : {AUTOMOUNT_SECRET_NAME}")

    # -- per-iteration ---------------------------------------------------------

    def namespace_for(self, vu_id, iteration) -> str:
        if self.settings.separate_namespaces:
            return separate_namespace_name(vu_id, iteration)
        return self.settings.load_test_namespace

    def create_namespace(self, name: str):
        self._create_idempotent(namespaces_path(), namespace_manifest(name), f"Namespace {name}")

    def _record(self, result: CycleResult) -> CycleResult:
        with self._results_lock:
            self._results.append(result)
        return result

    def run_iteration(self, vu_id, iteration) -> CycleResult:
        if not self.settings.api_server:
            raise ConfigError('KUBE_API env var is required')

        namespace = self.namespace_for(vu_id, iteration)
        try:
            if self.settings.separate_namespaces:
                self.create_namespace(namespace)
            result = self.lifecycle.run_cycle(vu_id, iteration, namespace)
        except Exception as e:
            logger.error(f"Load test for {vu_id}-{iteration} failed: {e}")
            result = CycleResult(vu_id, iteration, None, LifecycleOutcome.ERRORED, error=str(e))
        return self._record(result)

    def results(self) -> List[CycleResult]:
        with self._results_lock:
            return list(self._results)

    # -- cleanup ---------------------------------------------------------------

    def _delete(self, path: str, description: str, ok_statuses=DELETE_OK_STATUSES) -> bool:
        try:
            response = self.kube_client.delete(path)
        except TransportError as e:
            logger.warning(f"[CLEANUP] Failed to delete {description}: {e}")
            return False
        if response.status_code not in ok_statuses:
            logger.warning(f"[CLEANUP] Failed to delete {description}: {response.status_code}")
            return False
        return True

    def delete_all_devworkspaces_in_namespace(self) -> bool:
        namespace = self.settings.load_test_namespace
        logger.info(f"[CLEANUP] Deleting all DevWorkspaces in {namespace} containing label {LABEL_KEY}={LABEL_VALUE}")
        url = f"{devworkspaces_path(namespace)}?{label_selector_query(LABEL_KEY, LABEL_VALUE)}"
        return self._delete(url, f"DevWorkspaces in {namespace}", ok_statuses=(200,))

    def delete_all_separate_namespaces(self) -> int:
        logger.info(f"[CLEANUP] Deleting all Namespaces containing label {LABEL_KEY}={LABEL_VALUE}")
        try:
            response = self.kube_client.get(f"{namespaces_path()}?{label_selector_query(LABEL_KEY, LABEL_VALUE)}")
        except TransportError as e:
            logger.error(f"[CLEANUP] Failed to list Namespaces: {e}")
            return 0
        if response.status_code != 200:
            logger.error(f"[CLEANUP] Failed to list Namespaces: {response.status_code}")
            return 0
        try:
            items = response.json().get("items")
        except (ValueError, AttributeError) as e:
            logger.error(f"[CLEANUP] Malformed Namespace list: {e}")
            return 0
        if not isinstance(items, list):
            return 0

        deleted = 0
        for item in items:
            name = ((item or {}).get("metadata") or {}).get("name")
            if name and self._delete(namespace_path(name), f"Namespace {name}"):
                deleted += 1
        logger.info(f"[CLEANUP] Deleted {deleted}/{len(items)} labeled Namespaces")
        return deleted

    def final_cleanup(self):
        if self._cleanup_done.is_set():
            return
        self._cleanup_done.set()
        if self.settings.separate_namespaces:
            self.delete_all_separate_namespaces()
        else:
            self.delete_all_devworkspaces_in_namespace()

        if self.settings.create_automount_resources:
            namespace = self.settings.load_test_namespace
            self._delete(f"{configmaps_path(namespace)}/{AUTOMOUNT_CONFIGMAP_NAME}",
                         f"ConfigMap {AUTOMOUNT_CONFIGMAP_NAME}")
            self._delete(f"{secrets_path(namespace)}/{AUTOMOUNT_SECRET_NAME}",
                         f"Secret {AUTOMOUNT_SECRET_NAME}")

    def _run_cleanup_safely(self):
        try:
            self.final_cleanup()
        except Exception as e:
            logger.error(f"[CLEANUP] Final cleanup failed: {e}")
            logger.exception(e)

    # -- orchestration ---------------------------------------------------------

    def build_stages(self) -> List[RampStage]:
        return build_stages(self.settings.duration_minutes, self.settings.max_vus, self.stage_profile)

    def run(self, time_unit: float = 60.0, tick: float = 1.0, graceful_ramp_down: float = 60.0) -> RunResult:
        """Execute the whole experiment: setup, ramp, cleanup once the ramp has drained, thresholds."""
        self.settings.validate()
        stages = self.build_stages()
        start_time = datetime.now()
        logger.info(f"Load test started at {start_time.isoformat()}")
        logger.info(f"Stages: {[stage.as_executor_stage() for stage in stages]}")

        self.setup()

        executor = RampingVUExecutor(
            stages, self.run_iteration, time_unit=time_unit, tick=tick,
            graceful_ramp_down=graceful_ramp_down, stop_event=self.stop_event,
        )
        try:
            execution = executor.run()
        except BaseException:
            # KeyboardInterrupt included
            self.stop_event.set()
            raise
        finally:
            # runs after the graceful drain, no VU creates anything past this point
            self._run_cleanup_safely()
            self.collector.finish()

        end_time = datetime.now()
        results = self.results()
        outcome_counts = {}
        for result in results:
            outcome_counts[result.outcome.value] = outcome_counts.get(result.outcome.value, 0) + 1
        logger.info(f"Load test ended at {end_time.isoformat()}, outcomes: {outcome_counts}")

        return RunResult(
            start_time=start_time,
            end_time=end_time,
            stages=stages,
            cycle_results=results,
            threshold_results=self.collector.evaluate_thresholds(),
            execution=execution,
            cleanup_ran=self._cleanup_done.is_set(),
            outcome_counts=outcome_counts,
        )
