"""
Tests for kubeconfig lookup and context loading.
"""

import os
from unittest.mock import patch

import pytest
from kubernetes.config.config_exception import ConfigException

from rollgate.errors import ConfigurationError
from rollgate.kubeconfig import KubeConfigHandler


class TestKubeConfigHandler:
    def test_explicit_path_wins(self, monkeypatch):
        monkeypatch.setenv("KUBECONFIG", "/env/config")
        assert KubeConfigHandler("/explicit/config").kubeconfig == "/explicit/config"

    def test_environment_path_list(self, monkeypatch):
        monkeypatch.setenv("KUBECONFIG", os.pathsep.join(["/a/config", "", "/b/config"]))
        assert KubeConfigHandler().paths == ["/a/config", "/b/config"]

    def test_home_default(self, monkeypatch):
        monkeypatch.delenv("KUBECONFIG", raising=False)
        assert KubeConfigHandler().kubeconfig == os.path.expanduser("~/.kube/config")

    def test_load_context(self):
        with patch("rollgate.kubeconfig.config.load_kube_config") as load:
            KubeConfigHandler("/a/config").load_context("prod")
        load.assert_called_once_with(config_file="/a/config", context="prod")

    def test_missing_context_is_configuration_error(self):
        with patch("rollgate.kubeconfig.config.load_kube_config", side_effect=ConfigException("context not found")):
            with pytest.raises(ConfigurationError, match="context not found"):
                KubeConfigHandler("/a/config").load_context("missing")

    def test_expired_token_hint(self):
        with patch("rollgate.kubeconfig.config.load_kube_config", side_effect=ConfigException("ExpiredToken")):
            with pytest.raises(ConfigurationError, match="expired"):
                KubeConfigHandler("/a/config").load_context("prod")
