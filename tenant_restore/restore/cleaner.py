"""Compensation for restore runs.

Tears down every temporary resource of a run, best-effort and in parallel,
and on the failure path first drops the restored schemas from production.
Resources are located by their deterministic run-scoped names, so
compensation needs only the request (run id, database, schemas).
"""

from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any, Callable, List, Optional

from botocore.exceptions import ClientError

from ..cli.config import Config
from ..models.restore_request import RestoreRequest
from ..utils.polling import poll_until
from .artifacts import DDLArtifactStore
from .ddl import build_rollback_script
from .deleter import ResourceDeleter, error_code
from .errors import CleanupError, PhaseTimeoutError
from .naming import ResourceNames
from .safety import SafetyChecker
from .tasks import TaskEnvironment, TaskKind

logger = logging.getLogger(__name__)

ACTIVE_TASK_STATUSES = {"starting", "running", "resuming"}


@dataclass
class CompensationReport:
    """Outcome of one compensation pass.

    Attributes:
        run_id: Compensated run
        deleted: Resources deleted (or already gone)
        failed: Error messages for resources that could not be deleted
        skipped: Resources refused by the safety checker, with reason
        schemas_dropped: True if the rollback of restored schemas succeeded
    """

    run_id: str
    deleted: List[str] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)
    schemas_dropped: bool = False

    @property
    def succeeded(self) -> bool:
        return not self.failed

    @property
    def database_deleted(self) -> bool:
        """False when any RDS deletion of the pass did not complete."""
        markers = ("AWS::RDS::", "delete_database:")
        return not any(entry.startswith(markers) for entry in self.failed + self.skipped)


class CompensationManager:
    """Idempotent teardown of a run's temporary resources.

    Attributes:
        config: Tool configuration
        deleter: Deletion strategies
        task_runner: Runner used for the rollback DDL
    """

    def __init__(
        self,
        config: Config,
        deleter: Optional[ResourceDeleter] = None,
        task_runner: Any = None,
        artifact_store: Optional[DDLArtifactStore] = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.config = config
        self.deleter = deleter or ResourceDeleter(
            aws_profile=config.aws_profile, max_retries=config.max_retries, sleep=sleep
        )
        self.task_runner = task_runner
        self.artifact_store = artifact_store
        self.sleep = sleep
        self.clock = clock

    def compensate(self, request: RestoreRequest, rollback_schemas: bool = False) -> CompensationReport:
        """Delete everything the run created.

        Never raises; failures are collected in the report.

        Args:
            request: The run's request (run id, database, schemas)
            rollback_schemas: Drop the restored ``schema_runId`` schemas first

        Returns:
            CompensationReport
        """
        names = ResourceNames(request.run_id, self.config.resource_prefix)
        protected = [
            self.config.source_instance_identifier,
            self.config.source_cluster_identifier,
            self.config.source_secret_arn,
        ]
        context = _Pass(
            names=names,
            request=request,
            checker=SafetyChecker(names, protected_identifiers=protected),
            report=CompensationReport(run_id=request.run_id),
        )

        logger.info(f"Compensating run {request.run_id}")

        if rollback_schemas:
            self._rollback_schemas(context)

        groups = [self._delete_database, self._delete_migration, self._delete_secret, self._delete_artifacts]
        with ThreadPoolExecutor(max_workers=len(groups), thread_name_prefix="cleanup") as executor:
            futures = [executor.submit(self._run_group, group, context) for group in groups]
            for future in futures:
                future.result()

        report = context.report
        if report.failed:
            logger.warning(f"Compensation of run {request.run_id} left {len(report.failed)} resource(s) behind")
        else:
            logger.info(f"Compensation of run {request.run_id} complete ({len(report.deleted)} resource(s))")
        return report

    def _run_group(self, group: Callable[["_Pass"], None], context: "_Pass") -> None:
        try:
            group(context)
        except Exception as e:
            error = CleanupError(f"{group.__name__.lstrip('_')}: {e}")
            logger.warning(str(error))
            context.record_failure(str(error))

    def _delete(
        self,
        context: "_Pass",
        resource_type: str,
        resource_id: str,
        arn: Optional[str] = None,
    ) -> bool:
        """Safety-checked, idempotent deletion of one resource."""
        resource = {"resource_type": resource_type, "resource_id": resource_id}
        is_protected, reason = context.checker.is_protected(resource)
        if is_protected:
            logger.warning(f"Refusing to delete {resource_type} {resource_id}: {reason}")
            context.record(skipped=f"{resource_type} {resource_id}: {reason}")
            return False

        success, error = self.deleter.delete_resource(resource_type, resource_id, self.config.region, arn)
        if success:
            context.record(deleted=f"{resource_type} {resource_id}")
        else:
            context.record_failure(f"{resource_type} {resource_id}: {error}")
        return success

    def _wait_until_gone(self, resource_type: str, resource_id: str) -> None:
        poll_until(
            lambda: None if self.deleter.exists(resource_type, resource_id, self.config.region) else True,
            description=f"{resource_type} {resource_id} to be deleted",
            interval=self.config.deletion_poll_interval,
            timeout=self.config.deletion_timeout,
            sleep=self.sleep,
            clock=self.clock,
            timeout_error=PhaseTimeoutError,
        )

    def _rollback_schemas(self, context: "_Pass") -> None:
        """Drop the restored schemas from production."""
        request = context.request
        if self.task_runner is None or self.artifact_store is None or not self.config.source_secret_arn:
            context.record_failure("rollback: task runner, artifact bucket and production secret are required")
            return

        try:
            script = build_rollback_script(request.target_schemas)
            key = self.artifact_store.upload_rollback(script, context.names, request.target_database, request.schemas)
            environment = TaskEnvironment(
                db_secret_arn=self.config.source_secret_arn,
                db_name=request.target_database,
                s3_bucket=self.artifact_store.bucket,
                run_id=request.run_id,
                s3_prefix=self.artifact_store.ddl_prefix,
                s3_object_key=key,
            )
            self.task_runner.run(TaskKind.APPLY, environment)
        except Exception as e:
            error = CleanupError(f"rollback of schemas {', '.join(request.target_schemas)} failed: {e}")
            logger.error(str(error))
            context.record_failure(str(error))
            return

        context.report.schemas_dropped = True
        logger.info(f"Dropped restored schemas: {', '.join(request.target_schemas)}")

    def _delete_database(self, context: "_Pass") -> None:
        """Cluster member instance first, then the instance or cluster itself."""
        names = context.names
        writer = names.cluster_instance_identifier
        try:
            writer_existed = self.deleter.exists("AWS::RDS::DBInstance", writer, self.config.region)
        except ClientError as e:
            logger.warning(f"Could not check writer instance {writer}, deleting without waiting: {e}")
            writer_existed = False

        self._delete(context, "AWS::RDS::DBInstance", writer)
        self._delete(context, "AWS::RDS::DBInstance", names.database_identifier)

        if writer_existed:
            self._wait_until_gone("AWS::RDS::DBInstance", writer)
        self._delete(context, "AWS::RDS::DBCluster", names.database_identifier)

    def _delete_migration(self, context: "_Pass") -> None:
        """Every unit's task and endpoints, then the replication instance."""
        names = context.names
        for schema in context.request.schemas:
            task_id = names.task_identifier(schema)
            try:
                self._stop_task(task_id)
                if self._delete(context, "AWS::DMS::ReplicationTask", task_id):
                    self._wait_until_gone("AWS::DMS::ReplicationTask", task_id)
            except Exception as e:
                context.record_failure(f"AWS::DMS::ReplicationTask {task_id}: {e}")

            for role in ("source", "target"):
                self._delete(context, "AWS::DMS::Endpoint", names.endpoint_identifier(schema, role))

        self._delete(context, "AWS::DMS::ReplicationInstance", names.replication_instance_identifier)

    def _stop_task(self, task_id: str) -> None:
        dms = self.deleter.client("dms", self.config.region)
        try:
            response = dms.describe_replication_tasks(
                Filters=[{"Name": "replication-task-id", "Values": [task_id]}],
                WithoutSettings=True,
            )
        except ClientError as e:
            if error_code(e) == "ResourceNotFoundFault":
                return
            raise

        tasks = response.get("ReplicationTasks", [])
        if not tasks or tasks[0].get("Status") not in ACTIVE_TASK_STATUSES:
            return

        task_arn = tasks[0]["ReplicationTaskArn"]
        logger.info(f"Stopping replication task {task_id}")
        try:
            dms.stop_replication_task(ReplicationTaskArn=task_arn)
        except ClientError as e:
            if error_code(e) != "InvalidResourceStateFault":
                raise

        def stopped() -> Optional[bool]:
            current = dms.describe_replication_tasks(
                Filters=[{"Name": "replication-task-arn", "Values": [task_arn]}],
                WithoutSettings=True,
            ).get("ReplicationTasks", [])
            return None if current and current[0].get("Status") in ACTIVE_TASK_STATUSES | {"stopping"} else True

        poll_until(
            stopped,
            description=f"replication task {task_id} to stop",
            interval=self.config.deletion_poll_interval,
            timeout=self.config.deletion_timeout,
            sleep=self.sleep,
            clock=self.clock,
            timeout_error=PhaseTimeoutError,
        )

    def _delete_secret(self, context: "_Pass") -> None:
        self._delete(context, "AWS::SecretsManager::Secret", context.names.secret_name)

    def _delete_artifacts(self, context: "_Pass") -> None:
        if self.artifact_store is None:
            return
        prefix = context.names.artifact_prefix(self.artifact_store.ddl_prefix, context.request.target_database)
        for key in self.artifact_store.list_keys(prefix):
            self._delete(context, "AWS::S3::Object", key, arn=self.artifact_store.object_arn(key))


@dataclass
class _Pass:
    """Shared state of one compensation pass across worker threads."""

    names: ResourceNames
    request: RestoreRequest
    checker: SafetyChecker
    report: CompensationReport
    lock: threading.Lock = field(default_factory=threading.Lock)

    def record(self, deleted: Optional[str] = None, skipped: Optional[str] = None) -> None:
        with self.lock:
            if deleted:
                self.report.deleted.append(deleted)
            if skipped:
                self.report.skipped.append(skipped)

    def record_failure(self, message: str) -> None:
        with self.lock:
            self.report.failed.append(message)
