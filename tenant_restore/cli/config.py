"""Configuration loading.

Settings come from a YAML file, then ``TENANT_RESTORE_*`` environment
variables, then CLI options (applied by the commands themselves).

Example ``.tenant-restore.yaml``::

    region: eu-west-1
    source_instance_identifier: tenants-prod
    source_secret_arn: arn:aws:secretsmanager:eu-west-1:123456789012:secret:prod-db
    db_subnet_group: restore-subnets
    db_security_group_ids: [sg-0123]
    dms_subnet_group: restore-dms-subnets
    dms_security_group_ids: [sg-0456]
    dms_access_role_arn: arn:aws:iam::123456789012:role/dms-secrets
    ecs_cluster: database-restoration
    extract_task_definition: ddl-extraction
    apply_task_definition: ddl-apply
    task_subnet_ids: [subnet-0abc]
    task_security_group_ids: [sg-0789]
    ddl_bucket: database-ddl-storage-123456789012-eu-west-1
    audit_table: RestoreHistory
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

logger = logging.getLogger(__name__)

ENV_PREFIX = "TENANT_RESTORE_"
CONFIG_ENV_VAR = "TENANT_RESTORE_CONFIG"
LOCAL_CONFIG_FILE = ".tenant-restore.yaml"
USER_CONFIG_FILE = Path.home() / ".tenant-restore" / "config.yaml"


class ConfigError(Exception):
    """Raised when configuration is missing or malformed."""


@dataclass
class Config:
    """Restore tool configuration."""

    # AWS access
    aws_profile: Optional[str] = None
    region: Optional[str] = None
    log_level: str = "INFO"

    # Production database
    source_instance_identifier: Optional[str] = None
    source_cluster_identifier: Optional[str] = None
    source_secret_arn: Optional[str] = None

    # Ephemeral database networking and sizing
    resource_prefix: str = "tmp-resource-"
    db_subnet_group: Optional[str] = None
    db_security_group_ids: List[str] = field(default_factory=list)
    db_instance_class: Optional[str] = None
    cluster_instance_class: str = "db.r6g.large"

    # Data replication
    dms_subnet_group: Optional[str] = None
    dms_security_group_ids: List[str] = field(default_factory=list)
    dms_access_role_arn: Optional[str] = None
    dms_instance_class: str = "dms.t3.medium"
    dms_engine_version: str = "3.5.4"
    dms_allocated_storage: int = 50
    max_parallel_migrations: int = 8

    # One-shot DDL tasks
    task_runner: str = "ecs"
    ecs_cluster: Optional[str] = None
    extract_task_definition: Optional[str] = None
    extract_container_name: str = "ddl-extraction"
    apply_task_definition: Optional[str] = None
    apply_container_name: str = "ddl-apply"
    task_subnet_ids: List[str] = field(default_factory=list)
    task_security_group_ids: List[str] = field(default_factory=list)

    # Artifact storage
    ddl_bucket: Optional[str] = None
    ddl_prefix: str = "ddl"

    # Audit ledger
    audit_backend: str = "dynamodb"
    audit_table: Optional[str] = None
    audit_dir: Optional[str] = None

    # Polling bounds (seconds)
    provision_timeout: int = 7200
    provision_poll_interval: int = 30
    task_timeout: int = 3600
    task_poll_interval: int = 15
    migration_timeout: int = 14400
    migration_poll_interval: int = 30
    connection_timeout: int = 600
    connection_poll_interval: int = 10
    deletion_timeout: int = 3600
    deletion_poll_interval: int = 30
    max_retries: int = 3

    tags: Dict[str, str] = field(
        default_factory=lambda: {"Project": "TenantSchemaRestore", "Process": "Restoration"}
    )

    # Set by the CLI, not read from file
    config_path: Optional[str] = None

    @classmethod
    def load(cls, path: Optional[str] = None) -> "Config":
        """Load configuration from file and environment.

        Args:
            path: Explicit config file path (optional)

        Returns:
            Config instance

        Raises:
            ConfigError: If an explicit path does not exist or the file is malformed
        """
        config_path = cls._find_config_file(path)
        data: Dict[str, Any] = {}

        if config_path is not None:
            try:
                with open(config_path, "r") as f:
                    loaded = yaml.safe_load(f) or {}
            except yaml.YAMLError as e:
                raise ConfigError(f"Invalid YAML in {config_path}: {e}") from e
            if not isinstance(loaded, dict):
                raise ConfigError(f"Config file {config_path} must contain a mapping")
            data.update(loaded)
            logger.debug(f"Loaded configuration from {config_path}")

        data.update(cls._from_environment())

        known = {f.name: f for f in fields(cls)}
        unknown = sorted(set(data) - set(known))
        if unknown:
            logger.warning(f"Ignoring unknown configuration keys: {', '.join(unknown)}")

        kwargs = {name: cls._coerce(known[name].default, value) for name, value in data.items() if name in known}
        config = cls(**kwargs)
        config.config_path = str(config_path) if config_path else None
        return config

    @staticmethod
    def _find_config_file(path: Optional[str]) -> Optional[Path]:
        if path:
            explicit = Path(path).expanduser()
            if not explicit.exists():
                raise ConfigError(f"Config file not found: {explicit}")
            return explicit

        env_path = os.environ.get(CONFIG_ENV_VAR)
        if env_path:
            return Config._find_config_file(env_path)

        for candidate in (Path.cwd() / LOCAL_CONFIG_FILE, USER_CONFIG_FILE):
            if candidate.exists():
                return candidate
        return None

    @classmethod
    def _from_environment(cls) -> Dict[str, Any]:
        values: Dict[str, Any] = {}
        for f in fields(cls):
            env_name = f"{ENV_PREFIX}{f.name.upper()}"
            if env_name in os.environ and env_name != CONFIG_ENV_VAR:
                values[f.name] = os.environ[env_name]
        return values

    @staticmethod
    def _coerce(default: Any, value: Any) -> Any:
        """Convert environment strings to the type of the field default."""
        if not isinstance(value, str):
            return value
        if isinstance(default, bool):
            return value.strip().lower() in ("1", "true", "yes", "on")
        if isinstance(default, int):
            return int(value)
        return value

    def __post_init__(self) -> None:
        # List and dict fields arriving from the environment are comma separated
        for name in ("db_security_group_ids", "dms_security_group_ids", "task_subnet_ids", "task_security_group_ids"):
            value = getattr(self, name)
            if isinstance(value, str):
                setattr(self, name, [item.strip() for item in value.split(",") if item.strip()])
        if isinstance(self.tags, str):
            self.tags = dict(pair.split("=", 1) for pair in self.tags.split(",") if "=" in pair)

    def require(self, *names: str) -> None:
        """Ensure the named settings are present.

        Raises:
            ConfigError: Listing every missing setting
        """
        missing = [name for name in names if not getattr(self, name)]
        if missing:
            raise ConfigError(f"Missing required configuration: {', '.join(missing)}")

    @property
    def source_identifier(self) -> Optional[str]:
        return self.source_cluster_identifier or self.source_instance_identifier
