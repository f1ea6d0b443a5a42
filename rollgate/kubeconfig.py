"""
Kubeconfig loading.
"""

import os
from typing import List, Optional

from kubernetes import config
from kubernetes.config.config_exception import ConfigException
from loguru import logger

from .errors import ConfigurationError


class KubeConfigHandler:
    """Loads (and merges) kubeconfig files and activates a context."""

    def __init__(self, kubeconfig: Optional[str] = None):
        # Same lookup as kubectl: explicit path, then $KUBECONFIG (path list), then ~/.kube/config
        self.kubeconfig = kubeconfig or os.environ.get("KUBECONFIG") or os.path.expanduser("~/.kube/config")

    @property
    def paths(self) -> List[str]:
        return [p for p in self.kubeconfig.split(os.pathsep) if p]

    def load_context(self, context: Optional[str] = None) -> None:
        """
        Configure the default kubernetes client for a context.

        Args:
            context: Context name; None uses the kubeconfig's current-context

        Raises:
            ConfigurationError: The files cannot be read or the context does not exist
        """
        try:
            config.load_kube_config(config_file=self.kubeconfig, context=context)
        except (ConfigException, OSError, TypeError) as e:
            error_msg = f"Error creating client config for context {context or '<current>'}: {e}"
            if "ExpiredToken" in str(e) or "security token" in str(e).lower():
                error_msg += " - Your AWS security token appears to be expired. Please refresh your credentials."
            raise ConfigurationError(error_msg) from e
        logger.info(f"Using context {context or '<current>'} from {', '.join(self.paths)}")
