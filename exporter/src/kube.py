from __future__ import annotations

import logging

from kubernetes import client, config
from kubernetes.client import CoreV1Api
from kubernetes.config.config_exception import ConfigException

from exporter.src.config import ConfigError

LOGGER = logging.getLogger(__name__)


def load_kube_configuration(kubeconfig: str = "", master: str = "") -> None:
    """Load Kubernetes client configuration.

    An explicit ``kubeconfig`` path is used as-is.  Otherwise in-cluster
    config is tried first (running inside a pod), falling back to the local
    kubeconfig for development.  ``master`` overrides the API server URL
    from whichever source was loaded.
    """
    try:
        if kubeconfig:
            config.load_kube_config(config_file=kubeconfig)
            LOGGER.info("Loaded kubeconfig %s", kubeconfig)
        else:
            try:
                config.load_incluster_config()
                LOGGER.info("Loaded in-cluster Kubernetes configuration")
            except ConfigException:
                config.load_kube_config()
                LOGGER.info("Loaded local kubeconfig")
    except (ConfigException, OSError) as exc:
        raise ConfigError(f"Cannot load Kubernetes configuration: {exc}") from exc

    if master:
        configuration = client.Configuration.get_default_copy()
        configuration.host = master
        client.Configuration.set_default(configuration)
        LOGGER.info("Using Kubernetes API server %s", master)


def build_core_client() -> CoreV1Api:
    """Return a CoreV1 API client using the active kube configuration."""
    return client.CoreV1Api()
