"""
Configuration loader for dispatch and transfer runs.
"""

from __future__ import annotations

import os
import re
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Any, cast

import yaml

from fleet_scan.errors import ConfigurationError

CONFIG_ENV_VAR = "FLEET_SCAN_CONFIG"
ENV_PREFIX = "FLEET_SCAN_"

_ENV_REF = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)\}")

DEFAULT_SHARD_SIZE = 10
DEFAULT_PARTITION_COLUMN = "run_date"
DEFAULT_MANIFEST_PREFIX = "load-manifests/"
DEFAULT_LOAD_TIMEOUT_SECONDS = 3600
DEFAULT_POLL_INTERVAL_SECONDS = 10
DEFAULT_CLAIM_TTL_SECONDS = 7200

ERR_MISSING_VALUE = "Config value {} is not set (YAML key {!r} or env var {})"
ERR_NOT_INT = "Config value {} must be an integer, got {!r}"
ERR_NOT_POSITIVE = "Config value {} must be > 0, got {}"
ERR_UNRESOLVED = "Config value {} references an unset environment variable: {}"

PREFIX_FIELDS = ("result_prefix", "input_prefix", "manifest_prefix")


def load_config(config_path: Path | str | None = None) -> dict[str, Any]:
    """
    Load configuration from YAML file with environment variable substitution.

    Args:
        config_path: Path to config file. If None, uses $FLEET_SCAN_CONFIG or
            the default config/fleet_scan.yaml

    Returns:
        Dictionary with configuration values

    Raises:
        ConfigurationError: If the config file does not exist or the YAML root
            is not a mapping
    """
    if config_path is None:
        env_path = os.getenv(CONFIG_ENV_VAR)
        if env_path:
            config_path = env_path
        else:
            # Default to config/fleet_scan.yaml relative to project root
            project_root = Path(__file__).parent.parent
            config_path = project_root / "config" / "fleet_scan.yaml"

    config_path = Path(config_path)

    if not config_path.exists():
        raise ConfigurationError(f"Config file not found: {config_path}")

    with config_path.open("r", encoding="utf-8") as f:
        try:
            data = yaml.safe_load(f)
        except yaml.YAMLError as exc:
            raise ConfigurationError(f"Config file {config_path} is not valid YAML: {exc}") from exc

    if data is None:
        config: dict[str, Any] = {}
    elif not isinstance(data, dict):
        raise ConfigurationError(f"Config root must be a mapping, got {type(data).__name__}")
    else:
        config = cast(dict[str, Any], data)

    return cast(dict[str, Any], _substitute_env_vars(config))


def _substitute_env_vars(obj: Any) -> Any:
    """Recursively expand ${VAR} references, including ones embedded in a longer string.

    Unset variables are left as written; PipelineConfig rejects them where a
    literal placeholder would otherwise leak into a bucket key or identifier.
    """
    if isinstance(obj, dict):
        return {k: _substitute_env_vars(v) for k, v in obj.items()}
    if isinstance(obj, list):
        return [_substitute_env_vars(item) for item in obj]
    if isinstance(obj, str):
        return _ENV_REF.sub(lambda m: os.environ.get(m.group(1), m.group(0)), obj)
    return obj


def env_var_name(yaml_key: str) -> str:
    """FLEET_SCAN_<KEY> with dashes turned into underscores."""
    return ENV_PREFIX + yaml_key.replace("-", "_").upper()


@dataclass(frozen=True)
class PipelineConfig:
    """Settings shared by the dispatch and transfer entry points.

    YAML keys use dashes (``result-bucket``); attribute names use underscores.
    """

    region: str | None = None
    result_bucket: str | None = None
    result_prefix: str = ""
    request_queue_url: str | None = None
    input_bucket: str | None = None
    input_prefix: str = ""
    shard_size: Any = DEFAULT_SHARD_SIZE
    redshift_cluster: str | None = None
    redshift_workgroup: str | None = None
    redshift_database: str | None = None
    redshift_db_user: str | None = None
    redshift_secret_arn: str | None = None
    warehouse_table: str | None = None
    partition_column: str = DEFAULT_PARTITION_COLUMN
    copy_iam_role: str | None = None
    manifest_prefix: str = DEFAULT_MANIFEST_PREFIX
    load_timeout_seconds: Any = DEFAULT_LOAD_TIMEOUT_SECONDS
    poll_interval_seconds: Any = DEFAULT_POLL_INTERVAL_SECONDS
    claim_ttl_seconds: Any = DEFAULT_CLAIM_TTL_SECONDS
    webhook_url: str | None = None

    def __post_init__(self) -> None:
        # Prefixes are optional, so require() never sees them; check them here.
        for name in PREFIX_FIELDS:
            value = str(getattr(self, name))
            if _ENV_REF.search(value):
                raise ConfigurationError(ERR_UNRESOLVED.format(name, value))

    @classmethod
    def from_mapping(cls, raw: dict[str, Any], environ: dict[str, str] | None = None) -> PipelineConfig:
        """Build a config from a YAML mapping; FLEET_SCAN_* env vars win over the file."""
        env = os.environ if environ is None else environ
        values: dict[str, Any] = {}
        for f in fields(cls):
            yaml_key = f.name.replace("_", "-")
            value = raw.get(yaml_key, raw.get(f.name))
            env_value = env.get(env_var_name(yaml_key))
            if env_value is not None:
                value = env_value
            if value is not None:
                values[f.name] = value
        return cls(**values)

    @classmethod
    def load(cls, config_path: Path | str | None = None) -> PipelineConfig:
        return cls.from_mapping(load_config(config_path))

    def require(self, name: str) -> str:
        """Return a non-empty string setting or raise ConfigurationError."""
        value = getattr(self, name)
        if value is None or str(value).strip() == "":
            yaml_key = name.replace("_", "-")
            raise ConfigurationError(ERR_MISSING_VALUE.format(name, yaml_key, env_var_name(yaml_key)))
        if _ENV_REF.search(str(value)):
            raise ConfigurationError(ERR_UNRESOLVED.format(name, value))
        return str(value)

    def require_positive_int(self, name: str) -> int:
        value = getattr(self, name)
        try:
            number = int(value)
        except (TypeError, ValueError) as exc:
            raise ConfigurationError(ERR_NOT_INT.format(name, value)) from exc
        if number <= 0:
            raise ConfigurationError(ERR_NOT_POSITIVE.format(name, number))
        return number

    def get_shard_size(self) -> int:
        return self.require_positive_int("shard_size")

    def warehouse_target(self) -> dict[str, str]:
        """Connection arguments for the Redshift Data API.

        Exactly one of cluster/workgroup must be set; a provisioned cluster
        also needs a database user or a secret.
        """
        target: dict[str, str] = {"Database": self.require("redshift_database")}
        if self.redshift_cluster:
            target["ClusterIdentifier"] = self.redshift_cluster
        elif self.redshift_workgroup:
            target["WorkgroupName"] = self.redshift_workgroup
        else:
            raise ConfigurationError("One of redshift-cluster or redshift-workgroup must be set")

        if self.redshift_secret_arn:
            target["SecretArn"] = self.redshift_secret_arn
        elif self.redshift_db_user:
            target["DbUser"] = self.redshift_db_user
        elif self.redshift_cluster:
            raise ConfigurationError("redshift-db-user or redshift-secret-arn is required for a provisioned cluster")
        return target
