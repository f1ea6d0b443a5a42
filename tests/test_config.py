"""
Tests for the restart configuration file.
"""

import pytest

from rollgate.config import SAMPLE_CONFIG, create_sample_config, load_config
from rollgate.errors import ConfigurationError
from rollgate.models import PollPolicy, RestartOptions

CONFIG = """
[defaults]
poll_interval = 5
timeout = 900
max_retries = 1
max_parallel = 2
owner_label = "app.kubernetes.io/instance"

[clusters.orders]
timeout = 1800

[clusters.scratch]
skip = true

[clusters.forever]
timeout = 0
"""


@pytest.fixture
def config_file(tmp_path):
    path = tmp_path / "rollgate.toml"
    path.write_text(CONFIG)
    return path


class TestRestartConfig:
    def test_defaults_apply(self, config_file):
        options = load_config(config_file).apply(RestartOptions())

        assert options.policy == PollPolicy(interval=5, timeout=900, max_retries=1)
        assert options.max_parallel == 2
        assert options.owner_label == "app.kubernetes.io/instance"
        assert options.name_prefix == "crate-data-hot-"

    def test_cluster_overrides(self, config_file):
        options = load_config(config_file).apply(RestartOptions())

        assert options.cluster_policies.get("orders", options.policy).timeout == 1800
        assert options.cluster_policies.get("orders", options.policy).interval == 5
        assert options.cluster_policies.get("forever", options.policy).timeout is None
        assert options.cluster_policies.get("other", options.policy).timeout == 900
        assert options.skip_clusters == ["scratch"]

    def test_command_line_wins(self, config_file):
        cli_options = RestartOptions(policy=PollPolicy(interval=1, timeout=60), max_parallel=4)

        options = load_config(config_file).apply(cli_options, {"timeout": True, "max_parallel": True})

        assert options.policy.timeout == 60
        assert options.policy.interval == 5
        assert options.max_parallel == 4
        # An explicit flag also wins over the cluster table
        assert options.cluster_policies.get("orders", options.policy).timeout == 60

    def test_empty_prefix_disables_name_fallback(self, tmp_path):
        path = tmp_path / "c.toml"
        path.write_text('[defaults]\nname_prefix = ""\n')

        assert load_config(path).apply(RestartOptions()).name_prefix is None

    def test_missing_file(self, tmp_path):
        with pytest.raises(ConfigurationError, match="not found"):
            load_config(tmp_path / "missing.toml")

    def test_invalid_toml(self, tmp_path):
        path = tmp_path / "c.toml"
        path.write_text("[defaults\n")

        with pytest.raises(ConfigurationError, match="Invalid TOML"):
            load_config(path)

    @pytest.mark.parametrize(
        "content",
        [
            "[defaults]\npoll_interval = 0\n",
            "[defaults]\nmax_retries = -1\n",
            "[defaults]\nunknown = 1\n",
            "[clusters.x]\nmax_parallel = 2\n",
            "[maintenance]\n",
        ],
    )
    def test_invalid_values(self, tmp_path, content):
        path = tmp_path / "c.toml"
        path.write_text(content)

        with pytest.raises(ConfigurationError):
            load_config(path)

    def test_sample_config_is_valid(self, tmp_path):
        path = tmp_path / "sample.toml"
        create_sample_config(path)

        assert path.read_text() == SAMPLE_CONFIG
        options = load_config(path).apply(RestartOptions())
        assert options.policy.timeout == 900
