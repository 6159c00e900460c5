"""
Configuration for the DevWorkspace load test.

Every setting is read from the environment (the load test normally runs as a
Pod or from a CI job) and can be overridden on the command line.
"""
import logging
import os
from dataclasses import dataclass, replace

from kubernetes import client as k8s_client, config as k8s_config
from kubernetes.config.config_exception import ConfigException

from .errors import ConfigError

logger = logging.getLogger(__name__)

IN_CLUSTER_API_SERVER = "https://kubernetes.default.svc"
SERVICE_ACCOUNT_TOKEN_PATH = "/var/run/secrets/kubernetes.io/serviceaccount/token"


def _coerce_bool(value: str) -> bool:
    return str(value).strip().lower() in {"1", "true", "yes", "y", "on"}


CONFIG_SCHEMA = {
    "IN_CLUSTER": (False, _coerce_bool),
    "KUBE_API": ("", str),
    "KUBE_TOKEN": ("", str),
    "SEPARATE_NAMESPACES": (False, _coerce_bool),
    "DWO_NAMESPACE": ("openshift-operators", str),
    "DEVWORKSPACE_LINK": ("", str),
    "CREATE_AUTOMOUNT_RESOURCES": (False, _coerce_bool),
    "MAX_VUS": (50, int),
    "DEV_WORKSPACE_READY_TIMEOUT_IN_SECONDS": (600, int),
    "TEST_DURATION_IN_MINUTES": (25, int),
    "LOAD_TEST_NAMESPACE": ("loadtest-devworkspaces", str),
    "SECRET_VALUE_BASE64": ("dGVzdA==", str),  # base64-encoded 'test'
    "POLL_INTERVAL": (5, int),
    "MAX_OPERATOR_CPU_MILLICORES": (250, int),
    "MAX_OPERATOR_MEMORY_MI": (200, int),
    "REQUEST_TIMEOUT": (60.0, float),
    "METRICS_PORT": (0, int),
    "OUTPUT_DIR": ("./load_test_results", str),
}


def _cast_value(raw_value, caster, default):
    try:
        return caster(raw_value)
    except (TypeError, ValueError):
        logger.warning("Ignoring invalid configuration value %r, using default %r", raw_value, default)
        return default


def load_config(environ=None):
    """Read CONFIG_SCHEMA from the environment, falling back to defaults."""
    environ = os.environ if environ is None else environ
    config = {}
    for key, (default, caster) in CONFIG_SCHEMA.items():
        raw = environ.get(key)
        if raw is None or raw == "":
            config[key] = default
        else:
            config[key] = _cast_value(raw, caster, default)
    return config


@dataclass(frozen=True)
class LoadTestSettings:
    """Resolved settings for one load test run."""
    api_server: str
    token: str
    in_cluster: bool = False
    separate_namespaces: bool = False
    operator_namespace: str = "openshift-operators"
    devworkspace_link: str = ""
    create_automount_resources: bool = False
    max_vus: int = 50
    ready_timeout_seconds: int = 600
    duration_minutes: int = 25
    load_test_namespace: str = "loadtest-devworkspaces"
    secret_value_base64: str = "dGVzdA=="
    poll_interval: int = 5
    max_cpu_millicores: int = 250
    max_memory_bytes: int = 200 * 1024 * 1024
    request_timeout: float = 60.0
    metrics_port: int = 0
    output_dir: str = "./load_test_results"

    @classmethod
    def from_config(cls, config: dict) -> "LoadTestSettings":
        api_server, token = resolve_credentials(config)
        return cls(
            api_server=api_server,
            token=token,
            in_cluster=config["IN_CLUSTER"],
            separate_namespaces=config["SEPARATE_NAMESPACES"],
            operator_namespace=config["DWO_NAMESPACE"],
            devworkspace_link=config["DEVWORKSPACE_LINK"],
            create_automount_resources=config["CREATE_AUTOMOUNT_RESOURCES"],
            max_vus=max(0, config["MAX_VUS"]),
            ready_timeout_seconds=config["DEV_WORKSPACE_READY_TIMEOUT_IN_SECONDS"],
            duration_minutes=config["TEST_DURATION_IN_MINUTES"],
            load_test_namespace=config["LOAD_TEST_NAMESPACE"],
            secret_value_base64=config["SECRET_VALUE_BASE64"],
            poll_interval=max(1, config["POLL_INTERVAL"]),
            max_cpu_millicores=config["MAX_OPERATOR_CPU_MILLICORES"],
            max_memory_bytes=config["MAX_OPERATOR_MEMORY_MI"] * 1024 * 1024,
            request_timeout=config["REQUEST_TIMEOUT"],
            metrics_port=config["METRICS_PORT"],
            output_dir=config["OUTPUT_DIR"],
        )

    def with_overrides(self, **overrides) -> "LoadTestSettings":
        return replace(self, **{k: v for k, v in overrides.items() if v is not None})

    def validate(self):
        if not self.api_server:
            raise ConfigError("KUBE_API env var is required")
        if not self.token:
            raise ConfigError("KUBE_TOKEN env var is required (or a kubeconfig with a bearer token)")
        if self.duration_minutes <= 0:
            raise ConfigError(f"TEST_DURATION_IN_MINUTES must be positive, got {self.duration_minutes}")
        if self.ready_timeout_seconds <= 0:
            raise ConfigError(
                f"DEV_WORKSPACE_READY_TIMEOUT_IN_SECONDS must be positive, got {self.ready_timeout_seconds}"
            )
        return self


def _read_service_account_token(path: str = SERVICE_ACCOUNT_TOKEN_PATH) -> str:
    try:
        with open(path) as f:
            return f.read().strip()
    except OSError as e:
        raise ConfigError(f"Unable to read service account token from {path}: {e}") from e


def _credentials_from_kubeconfig():
    """Resolve host and bearer token from the current kubeconfig context."""
    configuration = k8s_client.Configuration()
    try:
        k8s_config.load_kube_config(client_configuration=configuration)
    except (ConfigException, OSError) as e:
        logger.debug("No usable kubeconfig: %s", e)
        return "", ""
    authorization = (configuration.api_key or {}).get("authorization", "")
    token = authorization.split(" ", 1)[1] if authorization.startswith("Bearer ") else authorization
    return configuration.host or "", token


def resolve_credentials(config: dict):
    """Return (api_server, token) following in-cluster, env, kubeconfig order."""
    if config["IN_CLUSTER"]:
        return IN_CLUSTER_API_SERVER, _read_service_account_token()

    api_server = config["KUBE_API"]
    token = config["KUBE_TOKEN"]
    if api_server and token:
        return api_server, token

    kube_host, kube_token = _credentials_from_kubeconfig()
    if kube_host or kube_token:
        logger.info("Resolved API server credentials from kubeconfig")
    return api_server or kube_host, token or kube_token


def settings_from_env(environ=None, **overrides) -> LoadTestSettings:
    return LoadTestSettings.from_config(load_config(environ)).with_overrides(**overrides)
