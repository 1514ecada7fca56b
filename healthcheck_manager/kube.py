"""
Kubernetes client bootstrap shared by the Kubernetes-backed collaborators.
"""

import logging
from typing import Optional

from kubernetes import client, config

logger = logging.getLogger(__name__)

_api_client: Optional[client.ApiClient] = None


def get_api_client(kubeconfig_path: Optional[str] = None) -> client.ApiClient:
    """
    Load Kubernetes configuration once and return a shared ApiClient.

    Tries in-cluster config first and falls back to kubeconfig, unless an
    explicit kubeconfig path is given.
    """
    global _api_client
    if _api_client is not None:
        return _api_client

    try:
        if kubeconfig_path:
            config.load_kube_config(config_file=kubeconfig_path)
        else:
            try:
                config.load_incluster_config()
            except config.ConfigException:
                config.load_kube_config()
    except Exception as e:
        raise RuntimeError(f"Failed to load Kubernetes config: {e}")

    _api_client = client.ApiClient()
    logger.info("Kubernetes client configured")
    return _api_client
