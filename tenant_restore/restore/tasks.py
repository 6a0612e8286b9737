"""One-shot task execution.

Structure extraction and DDL apply run as one-shot tasks configured purely
by environment variables. ``EcsTaskRunner`` launches them as Fargate tasks
inside the VPC and waits for the container to exit; ``LocalTaskRunner``
runs the same task bodies in-process for operators already inside the VPC.
"""

from __future__ import annotations

import json
import logging
import os
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple, Type

from ..aws.client import create_boto_client
from ..cli.config import Config
from ..utils.polling import poll_until
from .errors import DDLApplyError, ExtractionError, PhaseTimeoutError, RestoreError

logger = logging.getLogger(__name__)


class TaskKind(Enum):
    """The two one-shot task bodies."""

    EXTRACT = "extract"
    APPLY = "apply"

    @property
    def error_class(self) -> Type[RestoreError]:
        return ExtractionError if self == TaskKind.EXTRACT else DDLApplyError


REQUIRED_VARIABLES = {
    TaskKind.EXTRACT: ("DB_SECRET_ARN", "DB_NAME", "TARGET_SCHEMAS", "RECOVERY_SUFFIX", "RUN_ID", "S3_BUCKET"),
    TaskKind.APPLY: ("DB_SECRET_ARN", "DB_NAME", "S3_BUCKET", "S3_OBJECT_KEY"),
}


@dataclass
class TaskEnvironment:
    """Environment contract of the one-shot tasks."""

    db_secret_arn: str
    db_name: str
    s3_bucket: str
    target_schemas: Tuple[str, ...] = ()
    recovery_suffix: str = ""
    run_id: str = ""
    s3_prefix: str = "ddl"
    s3_object_key: Optional[str] = None

    @classmethod
    def from_environ(cls, kind: TaskKind, environ: Optional[Mapping[str, str]] = None) -> "TaskEnvironment":
        """Read the task contract from environment variables.

        Raises:
            RestoreError: Of the task's error class, listing missing variables
        """
        environ = os.environ if environ is None else environ
        missing = [name for name in REQUIRED_VARIABLES[kind] if not environ.get(name)]
        if missing:
            raise kind.error_class(f"Required environment variables not set: {', '.join(missing)}")

        schemas = tuple(s.strip() for s in environ.get("TARGET_SCHEMAS", "").split(",") if s.strip())
        return cls(
            db_secret_arn=environ["DB_SECRET_ARN"],
            db_name=environ["DB_NAME"],
            s3_bucket=environ["S3_BUCKET"],
            target_schemas=schemas,
            recovery_suffix=environ.get("RECOVERY_SUFFIX", ""),
            run_id=environ.get("RUN_ID", ""),
            s3_prefix=environ.get("S3_PREFIX") or "ddl",
            s3_object_key=environ.get("S3_OBJECT_KEY") or None,
        )

    def to_environ(self) -> Dict[str, str]:
        values = {
            "DB_SECRET_ARN": self.db_secret_arn,
            "DB_NAME": self.db_name,
            "TARGET_SCHEMAS": ",".join(self.target_schemas),
            "RECOVERY_SUFFIX": self.recovery_suffix,
            "RUN_ID": self.run_id,
            "S3_BUCKET": self.s3_bucket,
            "S3_PREFIX": self.s3_prefix,
            "S3_OBJECT_KEY": self.s3_object_key or "",
        }
        return {name: value for name, value in values.items() if value}

    def to_overrides(self) -> List[Dict[str, str]]:
        """Environment in the ECS container override shape."""
        return [{"name": name, "value": value} for name, value in self.to_environ().items()]


@dataclass
class ConnectionSettings:
    """PostgreSQL connection parameters read from a credential secret."""

    host: str
    port: int
    username: str
    dbname: str
    password: str = field(repr=False, default="")

    @classmethod
    def from_secret(cls, payload: Dict[str, Any], dbname: str) -> "ConnectionSettings":
        if not payload.get("host") or not payload.get("password"):
            raise ValueError(f"Secret does not contain required fields: host and password (keys: {sorted(payload)})")
        return cls(
            host=payload["host"],
            port=int(payload.get("port") or 5432),
            username=payload.get("username") or "postgres",
            dbname=dbname,
            password=payload["password"],
        )


def load_connection_settings(
    secret_arn: str,
    dbname: str,
    region: Optional[str] = None,
    aws_profile: Optional[str] = None,
) -> ConnectionSettings:
    """Read a credential secret and build connection settings for ``dbname``."""
    secrets = create_boto_client("secretsmanager", region_name=region, profile_name=aws_profile)
    payload = json.loads(secrets.get_secret_value(SecretId=secret_arn)["SecretString"])
    settings = ConnectionSettings.from_secret(payload, dbname)
    logger.info(f"Database host: {settings.host}:{settings.port}, user: {settings.username}, database: {dbname}")
    return settings


class EcsTaskRunner:
    """Runs one-shot tasks on ECS Fargate and waits for them to stop."""

    def __init__(
        self,
        config: Config,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.config = config
        self.sleep = sleep
        self.clock = clock
        self.ecs = create_boto_client("ecs", region_name=config.region, profile_name=config.aws_profile)

    def _task_definition(self, kind: TaskKind) -> Tuple[str, str]:
        if kind == TaskKind.EXTRACT:
            return self.config.extract_task_definition, self.config.extract_container_name  # type: ignore[return-value]
        return self.config.apply_task_definition, self.config.apply_container_name  # type: ignore[return-value]

    def run(self, kind: TaskKind, environment: TaskEnvironment) -> Dict[str, Any]:
        """Launch the task and block until it stops.

        Returns:
            Final describe_tasks entry

        Raises:
            ExtractionError / DDLApplyError: If the task cannot start or exits non-zero
            PhaseTimeoutError: If the task does not stop within the task bound
        """
        error_class = kind.error_class
        task_definition, container_name = self._task_definition(kind)
        if not self.config.ecs_cluster or not task_definition:
            raise error_class(f"ECS cluster and {kind.value} task definition must be configured")

        response = self.ecs.run_task(
            cluster=self.config.ecs_cluster,
            taskDefinition=task_definition,
            launchType="FARGATE",
            count=1,
            startedBy=f"tenant-restore-{environment.run_id}"[:36],
            networkConfiguration={
                "awsvpcConfiguration": {
                    "subnets": list(self.config.task_subnet_ids),
                    "securityGroups": list(self.config.task_security_group_ids),
                    "assignPublicIp": "DISABLED",
                }
            },
            overrides={"containerOverrides": [{"name": container_name, "environment": environment.to_overrides()}]},
            tags=[{"key": key, "value": value} for key, value in self.config.tags.items()]
            + ([{"key": "RestoreRunId", "value": environment.run_id}] if environment.run_id else []),
        )

        failures = response.get("failures") or []
        tasks = response.get("tasks") or []
        if failures or not tasks:
            reasons = ", ".join(f"{f.get('arn', '')} {f.get('reason', 'unknown')}".strip() for f in failures)
            raise error_class(f"{kind.value} task could not be started: {reasons or 'no task returned'}")

        task_arn = tasks[0]["taskArn"]
        logger.info(f"Started {kind.value} task {task_arn}")

        task = poll_until(
            lambda: self._stopped_task(task_arn),
            description=f"{kind.value} task {task_arn.rsplit('/', 1)[-1]}",
            interval=self.config.task_poll_interval,
            timeout=self.config.task_timeout,
            sleep=self.sleep,
            clock=self.clock,
            timeout_error=PhaseTimeoutError,
        )

        container = next((c for c in task.get("containers", []) if c.get("name") == container_name), None)
        exit_code = container.get("exitCode") if container else None
        if exit_code != 0:
            reason = (container or {}).get("reason") or task.get("stoppedReason") or "unknown reason"
            raise error_class(f"{kind.value} task {task_arn} exited with code {exit_code}: {reason}")

        logger.info(f"{kind.value} task {task_arn} completed")
        return task

    def _stopped_task(self, task_arn: str) -> Optional[Dict[str, Any]]:
        response = self.ecs.describe_tasks(cluster=self.config.ecs_cluster, tasks=[task_arn])
        tasks = response.get("tasks") or []
        if not tasks:
            return None
        task = tasks[0]
        logger.debug(f"Task {task_arn} status: {task.get('lastStatus')}")
        return task if task.get("lastStatus") == "STOPPED" else None


class LocalTaskRunner:
    """Runs the task bodies in the current process."""

    def __init__(self, config: Config) -> None:
        self.config = config

    def run(self, kind: TaskKind, environment: TaskEnvironment) -> Dict[str, Any]:
        from .applier import DDLApplier
        from .extractor import DDLExtractor

        error_class = kind.error_class
        try:
            if kind == TaskKind.EXTRACT:
                keys = DDLExtractor(environment, region=self.config.region, aws_profile=self.config.aws_profile).run()
                return {"artifact_keys": keys}
            count = DDLApplier(environment, region=self.config.region, aws_profile=self.config.aws_profile).run()
            return {"statements": count}
        except RestoreError:
            raise
        except Exception as e:
            raise error_class(f"{kind.value} task failed: {e}") from e


def create_task_runner(config: Config, sleep: Callable[[float], None] = time.sleep):
    """Build the runner selected by ``config.task_runner`` ('ecs' or 'local')."""
    if config.task_runner == "local":
        return LocalTaskRunner(config)
    if config.task_runner == "ecs":
        return EcsTaskRunner(config, sleep=sleep)
    raise ValueError(f"Unknown task runner '{config.task_runner}' (expected 'ecs' or 'local')")
