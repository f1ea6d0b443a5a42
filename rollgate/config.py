"""
Restart configuration file.

The file is TOML. Global defaults live in a [defaults] table, per-cluster
overrides in [clusters.<name>] tables, keyed by CrateDB resource name:

    [defaults]
    poll_interval = 10
    timeout = 900           # seconds per health gate, 0 means wait forever
    max_retries = 3
    max_parallel = 2

    [clusters.orders-prod]
    timeout = 1800

    [clusters.scratch]
    skip = true
"""

import tomllib
from pathlib import Path
from typing import Any, Dict, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .errors import ConfigurationError
from .models import PollPolicy, RestartOptions

SAMPLE_CONFIG = '''# rollgate restart configuration

[defaults]
poll_interval = 10      # seconds between health checks
timeout = 900           # max seconds per health gate, 0 = unlimited
max_retries = 3         # consecutive failed health queries tolerated
max_parallel = 1        # clusters restarted at the same time
dry_run = false
owner_label = "crate-cluster"
name_prefix = "crate-data-hot-"

# [clusters.my-cluster]
# timeout = 1800
# skip = true
'''


class PolicySettings(BaseModel):
    """Health gate settings that can be overridden per cluster."""

    model_config = ConfigDict(extra="forbid")

    poll_interval: Optional[float] = Field(default=None, gt=0)
    timeout: Optional[float] = Field(default=None, ge=0)
    max_retries: Optional[int] = Field(default=None, ge=0)

    def apply(self, policy: PollPolicy) -> PollPolicy:
        """Return a copy of policy with the values set here."""
        update: Dict[str, Any] = {}
        if self.poll_interval is not None:
            update["interval"] = self.poll_interval
        if self.timeout is not None:
            update["timeout"] = self.timeout or None
        if self.max_retries is not None:
            update["max_retries"] = self.max_retries
        return policy.model_copy(update=update)


class DefaultSettings(PolicySettings):
    """The [defaults] table."""

    dry_run: Optional[bool] = None
    max_parallel: Optional[int] = Field(default=None, ge=1)
    run_timeout: Optional[float] = Field(default=None, gt=0)
    owner_label: Optional[str] = None
    name_prefix: Optional[str] = None
    recreate_timeout: Optional[float] = Field(default=None, gt=0)


class ClusterSettings(PolicySettings):
    """A [clusters.<name>] table."""

    skip: bool = False


class RestartConfig(BaseModel):
    """Parsed configuration file."""

    model_config = ConfigDict(extra="forbid")

    defaults: DefaultSettings = Field(default_factory=DefaultSettings)
    clusters: Dict[str, ClusterSettings] = Field(default_factory=dict)

    def apply(self, options: RestartOptions, explicit: Optional[Dict[str, Any]] = None) -> RestartOptions:
        """
        Merge the file into options. Values passed explicitly on the command line win.

        Args:
            options: Options built from the command line and built-in defaults
            explicit: Option names the user set on the command line

        Returns:
            New RestartOptions
        """
        explicit = explicit or {}
        update: Dict[str, Any] = {}

        # File defaults apply below explicit CLI flags.
        file_policy = self.defaults.apply(PollPolicy())
        policy_update = {
            field: getattr(options.policy, field)
            for field, flag in (("interval", "poll_interval"), ("timeout", "timeout"), ("max_retries", "max_retries"))
            if flag in explicit
        }
        policy = file_policy.model_copy(update=policy_update)
        update["policy"] = policy

        for field in ("dry_run", "max_parallel", "run_timeout", "owner_label", "name_prefix", "recreate_timeout"):
            value = getattr(self.defaults, field)
            if value is not None and field not in explicit:
                update[field] = value
        if self.defaults.name_prefix == "" and "name_prefix" not in explicit:
            update["name_prefix"] = None

        cluster_policies = {}
        for name, settings in self.clusters.items():
            cluster_policy = settings.apply(policy).model_copy(update=policy_update)
            if cluster_policy != policy:
                cluster_policies[name] = cluster_policy
        update["cluster_policies"] = cluster_policies
        update["skip_clusters"] = sorted(
            set(options.skip_clusters) | {name for name, s in self.clusters.items() if s.skip}
        )
        return options.model_copy(update=update)


def load_config(path: Union[str, Path]) -> RestartConfig:
    """
    Load and validate a restart configuration file.

    Raises:
        ConfigurationError: The file is missing, is not TOML or has invalid values
    """
    config_path = Path(path)
    try:
        with open(config_path, "rb") as f:
            data = tomllib.load(f)
    except FileNotFoundError as e:
        raise ConfigurationError(f"Restart config file not found: {config_path}") from e
    except tomllib.TOMLDecodeError as e:
        raise ConfigurationError(f"Invalid TOML in {config_path}: {e}") from e

    try:
        return RestartConfig(**data)
    except ValidationError as e:
        raise ConfigurationError(f"Invalid restart config {config_path}: {e}") from e


def create_sample_config(output_path: Union[str, Path]) -> None:
    """Write a commented sample configuration file."""
    Path(output_path).write_text(SAMPLE_CONFIG)
