"""Kubernetes client bootstrap."""

import logging
from typing import Tuple

from kubernetes import client, config

from podmover.errors import ConfigurationError


logger = logging.getLogger(__name__)


def load_kube_clients(
    master_url: str = "", kubeconfig: str = ""
) -> Tuple[client.CoreV1Api, client.AppsV1Api]:
    """Create the API clients used by the mover.

    Args:
        master_url: API server address; overrides the kubeconfig server.
        kubeconfig: Path to a kubeconfig file.

    Without either, the in-cluster service account is used, falling back
    to the default kubeconfig.

    Raises:
        ConfigurationError: If no usable configuration was found.
    """
    try:
        if kubeconfig:
            configuration = client.Configuration()
            config.load_kube_config(
                config_file=kubeconfig, client_configuration=configuration
            )
            if master_url:
                configuration.host = master_url
            api_client = client.ApiClient(configuration)
            logger.debug("using kubeconfig %s (server %s)", kubeconfig, configuration.host)
        elif master_url:
            configuration = client.Configuration()
            configuration.host = master_url
            api_client = client.ApiClient(configuration)
            logger.debug("using API server %s", master_url)
        else:
            try:
                config.load_incluster_config()
                logger.debug("using in-cluster configuration")
            except config.ConfigException:
                config.load_kube_config()
                logger.debug("using default kubeconfig")
            api_client = client.ApiClient()
    except (config.ConfigException, OSError) as e:
        raise ConfigurationError(f"failed to load Kubernetes configuration: {e}") from e

    return client.CoreV1Api(api_client), client.AppsV1Api(api_client)
