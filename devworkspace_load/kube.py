"""
Minimal Kubernetes REST client used by the load test.

All calls return the raw ``requests.Response`` so callers can decide which
status codes count as success (201/409 on create, 200/404 on delete).
Connection level failures are raised as ``TransportError``.
"""
import json
import logging
import time

import requests
import urllib3
from requests.adapters import HTTPAdapter

from .errors import TransportError

logger = logging.getLogger(__name__)

DEVWORKSPACE_API = "/apis/workspace.devfile.io/v1alpha2"
METRICS_API = "/apis/metrics.k8s.io/v1beta1"
CORE_API = "/api/v1"


def devworkspaces_path(namespace: str) -> str:
    return f"{DEVWORKSPACE_API}/namespaces/{namespace}/devworkspaces"


def devworkspace_path(namespace: str, name: str) -> str:
    return f"{devworkspaces_path(namespace)}/{name}"


def pod_metrics_path(namespace: str) -> str:
    return f"{METRICS_API}/namespaces/{namespace}/pods"


def namespaces_path() -> str:
    return f"{CORE_API}/namespaces"


def namespace_path(name: str) -> str:
    return f"{namespaces_path()}/{name}"


def configmaps_path(namespace: str) -> str:
    return f"{CORE_API}/namespaces/{namespace}/configmaps"


def secrets_path(namespace: str) -> str:
    return f"{CORE_API}/namespaces/{namespace}/secrets"


def label_selector_query(key: str, value: str) -> str:
    return f"labelSelector={key}%3D{value}"


class KubeApiClient:
    """Bearer-token client for the Kubernetes API server with a pooled session."""

    def __init__(self, api_server: str, token: str, timeout: float = 60.0,
                 pool_size: int = 50, verify_tls: bool = False):
        self.api_server = api_server.rstrip("/")
        self.timeout = timeout
        self.verify_tls = verify_tls
        self.session = requests.Session()
        adapter = HTTPAdapter(pool_connections=max(1, pool_size), pool_maxsize=max(1, pool_size))
        self.session.mount('http://', adapter)
        self.session.mount('https://', adapter)
        self.session.headers.update({
            'Authorization': f'Bearer {token}',
            'Content-Type': 'application/json',
        })
        if not verify_tls:
            # trust self-signed certs like in CRC
            urllib3.disable_warnings(urllib3.exceptions.InsecureRequestWarning)

    def url(self, path: str) -> str:
        if path.startswith("http://") or path.startswith("https://"):
            return path
        return f"{self.api_server}{path}"

    def request(self, method: str, path: str, body=None) -> requests.Response:
        full_url = self.url(path)
        data = json.dumps(body) if body is not None else None
        start_time = time.time()
        try:
            response = self.session.request(method, full_url, data=data, timeout=self.timeout,
                                            verify=self.verify_tls)
        except requests.exceptions.RequestException as e:
            elapsed_ms = (time.time() - start_time) * 1000
            logger.debug(f"{method} {full_url} failed after {elapsed_ms:.1f} ms: {e}")
            raise TransportError(f"{method} {full_url} failed: {e}") from e
        logger.debug(f"{method} {full_url} -> {response.status_code}")
        return response

    def get(self, path: str) -> requests.Response:
        return self.request("GET", path)

    def post(self, path: str, body) -> requests.Response:
        return self.request("POST", path, body)

    def delete(self, path: str) -> requests.Response:
        return self.request("DELETE", path)

    def close(self):
        self.session.close()


def fetch_url(url: str, timeout: float = 30.0):
    """GET an arbitrary (unauthenticated) URL; non-200 responses raise TransportError."""
    try:
        response = requests.get(url, timeout=timeout)
    except requests.exceptions.RequestException as e:
        raise TransportError(f"Failed to fetch {url}: {e}") from e
    if response.status_code != 200:
        raise TransportError(f"Failed to fetch JSON content from {url}, got {response.status_code}",
                             status_code=response.status_code, body=response.text)
    return response
