"""
Resource payloads submitted by the load test.

Every DevWorkspace and Namespace created by a VU carries the
``load-test=test-type`` label; final cleanup deletes by that selector.
"""
import copy
import logging
import threading

from .errors import ParseError
from .kube import fetch_url

logger = logging.getLogger(__name__)

LABEL_KEY = "load-test"
LABEL_VALUE = "test-type"
TEST_LABELS = {LABEL_KEY: LABEL_VALUE}

AUTOMOUNT_CONFIGMAP_NAME = "dwo-load-test-automount-configmap"
AUTOMOUNT_SECRET_NAME = "dwo-load-test-automount-secret"

DEVWORKSPACE_API_VERSION = "workspace.devfile.io/v1alpha2"
DEVWORKSPACE_IMAGE = "registry.access.redhat.com/ubi9/ubi-micro:9.6-1752751762"


def devworkspace_name(vu_id, iteration) -> str:
    return f"dw-test-{vu_id}-{iteration}"


def separate_namespace_name(vu_id, iteration) -> str:
    return f"load-test-ns-{vu_id}-{iteration}"


def opinionated_devworkspace(namespace: str) -> dict:
    """A small ephemeral DevWorkspace with a single sleeping container."""
    return {
        "apiVersion": DEVWORKSPACE_API_VERSION,
        "kind": "DevWorkspace",
        "metadata": {
            "name": "minimal-dw",
            "namespace": namespace,
            "labels": dict(TEST_LABELS),
        },
        "spec": {
            "started": True,
            "template": {
                "attributes": {
                    "controller.devfile.io/storage-type": "ephemeral",
                },
                "components": [{
                    "name": "dev",
                    "container": {
                        "image": DEVWORKSPACE_IMAGE,
                        "command": ["sleep", "3600"],
                        "imagePullPolicy": "IfNotPresent",
                        "memoryLimit": "64Mi",
                        "memoryRequest": "32Mi",
                        "cpuLimit": "200m",
                        "cpuRequest": "100m",
                    },
                }],
            },
        },
    }


def namespace_manifest(name: str) -> dict:
    return {
        "apiVersion": "v1",
        "kind": "Namespace",
        "metadata": {
            "name": name,
            "labels": dict(TEST_LABELS),
        },
    }


def automount_configmap(namespace: str) -> dict:
    return {
        "apiVersion": "v1",
        "kind": "ConfigMap",
        "metadata": {
            "name": AUTOMOUNT_CONFIGMAP_NAME,
            "namespace": namespace,
            "labels": {
                "controller.devfile.io/mount-to-devworkspace": "true",
                "controller.devfile.io/watch-configmap": "true",
            },
            "annotations": {
                "controller.devfile.io/mount-path": "/etc/config/dwo-load-test-configmap",
                "controller.devfile.io/mount-access-mode": "0644",
                "controller.devfile.io/mount-as": "file",
            },
        },
        "data": {
            "test.key": "test-value",
        },
    }


def automount_secret(namespace: str, secret_value_base64: str) -> dict:
    return {
        "apiVersion": "v1",
        "kind": "Secret",
        "metadata": {
            "name": AUTOMOUNT_SECRET_NAME,
            "namespace": namespace,
            "labels": {
                "controller.devfile.io/mount-to-devworkspace": "true",
                "controller.devfile.io/watch-secret": "true",
            },
            "annotations": {
                "controller.devfile.io/mount-path": "/etc/secret/dwo-load-test-secret",
                "controller.devfile.io/mount-as": "file",
            },
        },
        "type": "Opaque",
        "data": {
            "secret.key": secret_value_base64,
        },
    }


class DevWorkspaceTemplate:
    """Produces per-VU DevWorkspace manifests.

    With an external link the manifest is downloaded on first use and every
    later call works on a deep copy of that cached document.
    """

    def __init__(self, external_link: str = "", fetch=fetch_url):
        self.external_link = external_link or ""
        self._fetch = fetch
        self._cached = None
        self._lock = threading.Lock()

    def _external_manifest(self) -> dict:
        with self._lock:
            if self._cached is None:
                response = self._fetch(self.external_link)
                try:
                    manifest = response.json()
                except ValueError as e:
                    raise ParseError(f"[DW CREATE] Failed to parse JSON : {response.text}: {e}") from e
                if not isinstance(manifest, dict):
                    raise ParseError(f"[DW CREATE] Expected a JSON object from {self.external_link}")
                self._cached = manifest
                logger.info(f"Loaded external DevWorkspace manifest from {self.external_link}")
            return copy.deepcopy(self._cached)

    def build(self, name: str, namespace: str) -> dict:
        if self.external_link:
            manifest = self._external_manifest()
        else:
            manifest = opinionated_devworkspace(namespace)
        metadata = manifest.setdefault("metadata", {})
        metadata["name"] = name
        metadata["namespace"] = namespace
        metadata["labels"] = dict(TEST_LABELS)
        return manifest
