import time

import pytest

from conftest import NAMESPACE, FakeResponse
from devworkspace_load import metrics as m
from devworkspace_load import runner as runner_module
from devworkspace_load.errors import ConfigError, TransportError
from devworkspace_load.kube import (
    configmaps_path,
    devworkspaces_path,
    label_selector_query,
    namespace_path,
    namespaces_path,
    secrets_path,
)
from devworkspace_load.lifecycle import LifecycleOutcome
from devworkspace_load.manifests import AUTOMOUNT_CONFIGMAP_NAME, AUTOMOUNT_SECRET_NAME, TEST_LABELS
from devworkspace_load.runner import LoadTestRunner

SELECTOR = label_selector_query("load-test", "test-type")


def make_runner(settings, kube, collector, **overrides):
    return LoadTestRunner(settings.with_overrides(**overrides), kube_client=kube, collector=collector,
                          sleep=lambda _: None)


def test_setup_creates_automount_resources(settings, kube, collector):
    kube.route("POST", configmaps_path(NAMESPACE), FakeResponse(201, {}))
    kube.route("POST", secrets_path(NAMESPACE), FakeResponse(409, {}))
    runner = make_runner(settings, kube, collector, create_automount_resources=True,
                         secret_value_base64="c2VjcmV0")
    runner.setup()

    (cm_call,) = kube.calls_for("POST", configmaps_path(NAMESPACE))
    (secret_call,) = kube.calls_for("POST", secrets_path(NAMESPACE))
    assert cm_call[2]["metadata"]["name"] == AUTOMOUNT_CONFIGMAP_NAME
    assert secret_call[2]["metadata"]["name"] == AUTOMOUNT_SECRET_NAME
    assert secret_call[2]["data"]["secret.key"] == "c2VjcmV0"


def test_setup_failure_is_fatal(settings, kube, collector):
    kube.route("POST", configmaps_path(NAMESPACE), FakeResponse(403, text="forbidden"))
    runner = make_runner(settings, kube, collector, create_automount_resources=True)
    with pytest.raises(TransportError) as excinfo:
        runner.setup()
    assert excinfo.value.status_code == 403


def test_setup_is_noop_without_automount(settings, kube, collector):
    make_runner(settings, kube, collector).setup()
    assert kube.calls == []


def test_iteration_in_shared_namespace(settings, kube, collector):
    kube.route("POST", devworkspaces_path(NAMESPACE), FakeResponse(201, {}))
    kube.route("GET", f"{devworkspaces_path(NAMESPACE)}/dw-test-3-7", FakeResponse(200, {"status": {"phase": "Running"}}))
    runner = make_runner(settings, kube, collector)

    result = runner.run_iteration(3, 7)

    assert result.outcome == LifecycleOutcome.DELETED
    assert result.identity.namespace == NAMESPACE
    assert runner.results() == [result]
    assert kube.calls_for("POST", namespaces_path()) == []


def test_iteration_in_separate_namespace(settings, kube, collector):
    namespace = "load-test-ns-2-0"
    kube.route("POST", namespaces_path(), FakeResponse(201, {}))
    kube.route("POST", devworkspaces_path(namespace), FakeResponse(201, {}))
    kube.route("GET", f"{devworkspaces_path(namespace)}/dw-test-2-0", FakeResponse(200, {"status": {"phase": "Ready"}}))
    runner = make_runner(settings, kube, collector, separate_namespaces=True)

    result = runner.run_iteration(2, 0)

    assert result.outcome == LifecycleOutcome.DELETED
    assert result.identity.namespace == namespace
    (ns_call,) = kube.calls_for("POST", namespaces_path())
    assert ns_call[2]["metadata"] == {"name": namespace, "labels": TEST_LABELS}


def test_namespace_creation_failure_is_contained(settings, kube, collector):
    kube.route("POST", namespaces_path(), FakeResponse(500, text="quota exceeded"))
    runner = make_runner(settings, kube, collector, separate_namespaces=True)

    result = runner.run_iteration(1, 0)

    assert result.outcome == LifecycleOutcome.ERRORED
    assert "quota exceeded" in result.error
    assert kube.calls_for("POST", devworkspaces_path("load-test-ns-1-0")) == []


def test_unexpected_error_is_contained(settings, kube, collector):
    kube.route("POST", devworkspaces_path(NAMESPACE), RuntimeError("bug"))
    runner = make_runner(settings, kube, collector)
    result = runner.run_iteration(1, 0)
    assert result.outcome == LifecycleOutcome.ERRORED
    assert result.identity is None


def test_missing_api_server_is_fatal(settings, kube, collector):
    runner = make_runner(settings, kube, collector, api_server="")
    with pytest.raises(ConfigError):
        runner.run_iteration(1, 0)


def test_cleanup_shared_namespace_by_label(settings, kube, collector):
    url = f"{devworkspaces_path(NAMESPACE)}?{SELECTOR}"
    kube.route("DELETE", url, FakeResponse(200, {}))
    runner = make_runner(settings, kube, collector)

    runner.final_cleanup()
    runner.final_cleanup()

    assert len(kube.calls_for("DELETE", url)) == 1
    assert len(kube.calls) == 1


def test_cleanup_separate_namespaces(settings, kube, collector):
    kube.route("GET", f"{namespaces_path()}?{SELECTOR}", FakeResponse(200, {"items": [
        {"metadata": {"name": "load-test-ns-1-0"}},
        {"metadata": {"name": "load-test-ns-1-1"}},
        {"metadata": {"name": "load-test-ns-2-0"}},
    ]}))
    kube.route("DELETE", namespace_path("load-test-ns-1-0"), FakeResponse(200, {}))
    kube.route("DELETE", namespace_path("load-test-ns-1-1"), FakeResponse(500))
    kube.route("DELETE", namespace_path("load-test-ns-2-0"), FakeResponse(404))
    runner = make_runner(settings, kube, collector, separate_namespaces=True)

    assert runner.delete_all_separate_namespaces() == 2
    assert len(kube.calls_for("DELETE")) == 3


def test_cleanup_separate_namespaces_list_failure(settings, kube, collector):
    kube.route("GET", f"{namespaces_path()}?{SELECTOR}", FakeResponse(403))
    runner = make_runner(settings, kube, collector, separate_namespaces=True)
    assert runner.delete_all_separate_namespaces() == 0
    assert kube.calls_for("DELETE") == []


def test_cleanup_removes_automount_resources(settings, kube, collector):
    runner = make_runner(settings, kube, collector, create_automount_resources=True)
    runner.final_cleanup()
    deleted = [path for _, path, _ in kube.calls_for("DELETE")]
    assert f"{configmaps_path(NAMESPACE)}/{AUTOMOUNT_CONFIGMAP_NAME}" in deleted
    assert f"{secrets_path(NAMESPACE)}/{AUTOMOUNT_SECRET_NAME}" in deleted


def test_run_end_to_end(settings, kube, collector):
    cleanup_url = f"{devworkspaces_path(NAMESPACE)}?{SELECTOR}"
    kube.route("POST", devworkspaces_path(NAMESPACE), FakeResponse(201, {}))
    kube.route("DELETE", cleanup_url, FakeResponse(200, {}))
    # unrouted readiness GETs answer 404, so every workspace times out after one attempt
    runner = LoadTestRunner(
        settings.with_overrides(max_vus=2, duration_minutes=10, ready_timeout_seconds=5),
        kube_client=kube, collector=collector, sleep=lambda _: time.sleep(0.005),
    )

    result = runner.run(time_unit=0.02, tick=0.005, graceful_ramp_down=2.0)

    assert [stage.target for stage in result.stages] == [0, 1, 1, 2, 1, 0]
    assert result.cleanup_ran
    assert len(kube.calls_for("DELETE", cleanup_url)) == 1
    assert result.cycle_results
    assert set(result.outcome_counts) == {LifecycleOutcome.READY_TIMED_OUT.value}
    assert collector.count(m.READY_FAILED) == len(result.cycle_results)
    assert result.execution.peak_vus <= 2
    assert {r.threshold.metric for r in result.threshold_results} == set(m.DEFAULT_THRESHOLDS)
    assert collector.end_time is not None


def test_run_rejects_invalid_settings(settings, kube, collector):
    runner = make_runner(settings, kube, collector, duration_minutes=0)
    with pytest.raises(ConfigError):
        runner.run()
    assert kube.calls == []


def test_cleanup_waits_for_ramp_longer_than_duration(settings, kube, collector):
    cleanup_url = f"{devworkspaces_path(NAMESPACE)}?{SELECTOR}"
    kube.route("POST", devworkspaces_path(NAMESPACE), FakeResponse(201, {}))
    kube.route("DELETE", cleanup_url, FakeResponse(200, {}))
    runner = LoadTestRunner(
        settings.with_overrides(max_vus=4, duration_minutes=6, ready_timeout_seconds=5),
        kube_client=kube, collector=collector, sleep=lambda _: time.sleep(0.005),
    )

    result = runner.run(time_unit=0.02, tick=0.005, graceful_ramp_down=2.0)

    # per-stage rounding stretches 6 minutes into 7
    assert sum(stage.duration for stage in result.stages) == 7
    methods_and_paths = [(method, path) for method, path, _ in kube.calls]
    cleanup_index = methods_and_paths.index(("DELETE", cleanup_url))
    creates_after_cleanup = [
        call for call in methods_and_paths[cleanup_index:] if call == ("POST", devworkspaces_path(NAMESPACE))
    ]
    assert creates_after_cleanup == []
    assert result.cycle_results


def test_interrupt_stops_vus_and_cleans_up_at_once(settings, kube, collector, monkeypatch):
    cleanup_url = f"{devworkspaces_path(NAMESPACE)}?{SELECTOR}"
    kube.route("DELETE", cleanup_url, FakeResponse(200, {}))

    def interrupted(self):
        raise KeyboardInterrupt

    monkeypatch.setattr(runner_module.RampingVUExecutor, "run", interrupted)
    runner = make_runner(settings, kube, collector, duration_minutes=3)

    started = time.monotonic()
    with pytest.raises(KeyboardInterrupt):
        runner.run(time_unit=1.0)

    assert time.monotonic() - started < 1.0
    assert runner.stop_event.is_set()
    assert len(kube.calls_for("DELETE", cleanup_url)) == 1
    assert collector.end_time is not None
