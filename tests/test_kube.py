import pytest
import requests

from conftest import FakeResponse
from devworkspace_load import kube
from devworkspace_load.errors import TransportError
from devworkspace_load.manifests import DevWorkspaceTemplate


def test_fetch_url_returns_response(monkeypatch):
    response = FakeResponse(200, {"kind": "DevWorkspace"})
    monkeypatch.setattr(kube.requests, "get", lambda url, timeout: response)
    assert kube.fetch_url("https://example.test/dw.json") is response


def test_fetch_url_non_200_raises(monkeypatch):
    monkeypatch.setattr(kube.requests, "get", lambda url, timeout: FakeResponse(404, text="not found"))
    with pytest.raises(TransportError) as excinfo:
        kube.fetch_url("https://example.test/missing.json")
    assert excinfo.value.status_code == 404
    assert excinfo.value.body == "not found"


def test_fetch_url_connection_error(monkeypatch):
    def refuse(url, timeout):
        raise requests.exceptions.ConnectionError("refused")

    monkeypatch.setattr(kube.requests, "get", refuse)
    with pytest.raises(TransportError):
        kube.fetch_url("https://example.test/dw.json")


def test_template_fetches_through_fetch_url(monkeypatch):
    monkeypatch.setattr(kube.requests, "get", lambda url, timeout: FakeResponse(200, {"kind": "DevWorkspace"}))
    manifest = DevWorkspaceTemplate("https://example.test/dw.json").build("dw-test-1-0", "ns")
    assert manifest["kind"] == "DevWorkspace"
    assert manifest["metadata"]["name"] == "dw-test-1-0"


def test_label_selector_query():
    assert kube.label_selector_query("load-test", "test-type") == "labelSelector=load-test%3Dtest-type"
