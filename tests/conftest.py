import json
import threading

import pytest

from devworkspace_load.config import LoadTestSettings
from devworkspace_load.errors import TransportError
from devworkspace_load.kube import devworkspace_path, devworkspaces_path, pod_metrics_path
from devworkspace_load.lifecycle import DevWorkspaceLifecycle
from devworkspace_load.manifests import DevWorkspaceTemplate
from devworkspace_load.metrics import MetricsCollector
from devworkspace_load.operator_metrics import OperatorMetricsSampler

NAMESPACE = "loadtest-devworkspaces"
OPERATOR_NAMESPACE = "openshift-operators"


class FakeResponse:
    def __init__(self, status_code, body=None, text=None):
        self.status_code = status_code
        self._body = body
        if text is None:
            text = json.dumps(body) if body is not None else ""
        self.text = text

    def json(self):
        if self._body is None:
            return json.loads(self.text)
        return self._body


class FakeKubeClient:
    """Scripted stand-in for KubeApiClient.

    Routes match on method and exact path (query string included). Each route
    replays its responses in order and repeats the last one; an exception in
    the list is raised instead of returned. Unrouted calls get a 404.
    """

    def __init__(self):
        self.calls = []
        self._routes = {}
        self._lock = threading.Lock()

    def route(self, method, path, *responses):
        self._routes[(method, path)] = list(responses)
        return self

    def _respond(self, method, path, body=None):
        with self._lock:
            self.calls.append((method, path, body))
            responses = self._routes.get((method, path))
            if not responses:
                return FakeResponse(404)
            response = responses.pop(0) if len(responses) > 1 else responses[0]
        if isinstance(response, Exception):
            raise response
        return response

    def get(self, path):
        return self._respond("GET", path)

    def post(self, path, body):
        return self._respond("POST", path, body)

    def delete(self, path):
        return self._respond("DELETE", path)

    def calls_for(self, method, path=None):
        return [c for c in self.calls if c[0] == method and (path is None or c[1] == path)]


def phase_response(phase):
    return FakeResponse(200, {"status": {"phase": phase}} if phase is not None else {"status": {}})


def pod_metrics(*pods):
    return FakeResponse(200, {
        "items": [
            {"metadata": {"name": name}, "containers": [{"usage": {"cpu": cpu, "memory": memory}}]}
            for name, cpu, memory in pods
        ]
    })


@pytest.fixture
def kube():
    return FakeKubeClient()


@pytest.fixture
def collector():
    return MetricsCollector()


@pytest.fixture
def sampler(kube, collector):
    return OperatorMetricsSampler(kube, collector, OPERATOR_NAMESPACE)


@pytest.fixture
def lifecycle(kube, collector, sampler):
    return DevWorkspaceLifecycle(
        kube, collector, sampler, DevWorkspaceTemplate(),
        ready_timeout_seconds=25, poll_interval=5, sleep=lambda _: None,
    )


@pytest.fixture
def settings():
    return LoadTestSettings(api_server="https://api.example.test:6443", token="sha256~token")


def dw_paths(name, namespace=NAMESPACE):
    return devworkspaces_path(namespace), devworkspace_path(namespace, name)


def metrics_path():
    return pod_metrics_path(OPERATOR_NAMESPACE)


def transport_error():
    return TransportError("connection refused")
