"""Configuration loading: YAML file plus environment overrides."""

import os
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

import yaml

from .logging_config import get_logger
from .models import ControllerConfig

logger = get_logger(__name__)

CONFIG_SEARCH_PATHS = [Path("glbc.yaml"), Path("config.yaml"), Path("/etc/glbc/config.yaml")]

# environment variable -> top level config field
ENV_OVERRIDES = {
    "GLBC_DOMAIN": "domain",
    "GLBC_MODE": "mode",
    "GLBC_TLS_PROVIDED": "tls_enabled",
    "GLBC_TLS_PROVIDER": "tls_provider",
    "GLBC_TLS_EMAIL": "tls_email",
    "GLBC_DNS_PROVIDER": "dns_provider",
    "GLBC_HOST_RESOLVER": "host_resolver",
    "GLBC_NAMESPACE": "namespace",
    "AWS_REGION": "region",
}

# environment variable -> (cluster field, cluster attribute)
CLUSTER_ENV_OVERRIDES = {
    "GLBC_KUBECONFIG": ("root_cluster", "kubeconfig_path"),
    "GLBC_KCP_CONTEXT": ("root_cluster", "context"),
    "GLBC_CONTROL_KUBECONFIG": ("control_cluster", "kubeconfig_path"),
    "GLBC_CONTROL_CONTEXT": ("control_cluster", "context"),
}

_CLUSTER_NAMES = {"root_cluster": "root", "control_cluster": "control"}


def find_config_file(explicit: Optional[str] = None) -> Optional[Path]:
    """Return the config file to load, or None to run on defaults.

    Raises:
        FileNotFoundError: If an explicitly given file does not exist.
    """
    if explicit:
        path = Path(explicit)
        if not path.exists():
            raise FileNotFoundError(f"Configuration file not found: {path}")
        return path
    for path in CONFIG_SEARCH_PATHS:
        if path.exists():
            return path
    return None


def apply_env_overrides(data: Dict[str, Any], environ: Mapping[str, str]) -> Dict[str, Any]:
    data = dict(data)
    for env_name, field in ENV_OVERRIDES.items():
        value = environ.get(env_name)
        if value:
            data[field] = value

    for env_name, (cluster_field, attribute) in CLUSTER_ENV_OVERRIDES.items():
        value = environ.get(env_name)
        if not value:
            continue
        cluster = dict(data.get(cluster_field) or {"name": _CLUSTER_NAMES[cluster_field]})
        cluster[attribute] = value
        data[cluster_field] = cluster
    return data


def load_config(path: Optional[Path] = None, environ: Optional[Mapping[str, str]] = None) -> ControllerConfig:
    """Load the controller configuration.

    Args:
        path: YAML file to read; defaults only when None.
        environ: Environment used for overrides, os.environ by default.

    Raises:
        pydantic.ValidationError: If the resulting configuration is invalid.
    """
    data: Dict[str, Any] = {}
    if path is not None:
        logger.debug("Loading configuration file", config_path=str(path))
        with open(path) as f:
            data = yaml.safe_load(f) or {}
        if not isinstance(data, dict):
            raise ValueError(f"{path}: expected a mapping at the top level")

    data = apply_env_overrides(data, os.environ if environ is None else environ)
    return ControllerConfig(**data)


def sample_config() -> Dict[str, Any]:
    return {
        "domain": "hcpapps.net",
        "mode": "root",
        "tls_enabled": False,
        "tls_provider": "le-staging",
        "tls_email": None,
        "certificate_namespace": "cert-manager",
        "dns_provider": "fake",
        "host_resolver": "default",
        "region": "eu-central-1",
        "namespace": None,
        "workers": 2,
        "max_retries": 15,
        "resync_period": 36000,
        "root_cluster": {
            "name": "kcp",
            "kubeconfig_path": "~/.kube/kcp.kubeconfig",
            "context": "admin",
        },
        "control_cluster": {
            "name": "glbc",
            "kubeconfig_path": "~/.kube/config",
            "context": None,
        },
    }
