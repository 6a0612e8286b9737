"""Restore saga orchestration.

Sequences detection, provisioning, extraction, pre-copy DDL, per-schema
migration and post-copy DDL for one request. Any failure routes through
compensation before the run is marked failed; compensation also runs after
success, so every temporary resource is gone once the run is terminal.
"""

from __future__ import annotations

import logging
import time
from datetime import datetime, timezone
from typing import Any, Callable, Optional

from ..cli.config import Config
from ..models.ddl_artifact import ArtifactKind
from ..models.ephemeral_database import DatabaseState
from ..models.migration_unit import MigrationUnit
from ..models.restore_record import RestoreRecord, RestoreStatus
from ..models.restore_request import RestoreRequest
from ..models.run_context import FORWARD_ORDER, RunContext, SagaState
from .artifacts import DDLArtifactStore
from .audit import create_audit_storage
from .cleaner import CompensationManager
from .credentials import CredentialResolver
from .errors import DDLApplyError, ExtractionError
from .migration import MigrationCoordinator
from .naming import ResourceNames
from .provisioner import EphemeralDatabaseProvisioner
from .tasks import TaskEnvironment, TaskKind, create_task_runner

logger = logging.getLogger(__name__)


def _now() -> datetime:
    return datetime.now(timezone.utc)


class RestoreOrchestrator:
    """Saga controller for one restore request at a time.

    Collaborators are built from the configuration unless injected.
    """

    def __init__(
        self,
        config: Config,
        audit_storage: Any = None,
        task_runner: Any = None,
        artifact_store: Optional[DDLArtifactStore] = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        config.require("source_secret_arn", "ddl_bucket", "dms_access_role_arn")
        if not config.source_identifier:
            config.require("source_instance_identifier")

        self.config = config
        self.sleep = sleep
        self.clock = clock
        self.audit_storage = audit_storage or create_audit_storage(config)
        self.task_runner = task_runner or create_task_runner(config, sleep=sleep)
        self.artifact_store = artifact_store or DDLArtifactStore(
            config.ddl_bucket, config.ddl_prefix, region=config.region, aws_profile=config.aws_profile  # type: ignore[arg-type]
        )

    def run(self, request: RestoreRequest) -> RunContext:
        """Execute the saga for ``request``.

        Never raises for phase failures: the returned context carries the
        terminal state, the error and its kind.

        Returns:
            Final RunContext (state succeeded or failed)
        """
        context = RunContext(request=request)
        names = ResourceNames(request.run_id, self.config.resource_prefix)
        record = RestoreRecord(run_id=request.run_id, request=request.to_dict(), submitted_at=_now())
        record.phase_timestamps[SagaState.INIT.value] = record.submitted_at.isoformat()
        self._log(record)

        logger.info(
            f"Run {request.run_id}: restoring {', '.join(request.schemas)} of {request.target_database} "
            f"from {request.recovery_point.kind}"
        )

        try:
            self._execute(context, names, record)
        except Exception as e:
            context.record_error(e)
            logger.error(f"Run {request.run_id} failed in {context.state.value}: {context.error}")

        self._finish(context, record)
        return context

    def _advance(self, context: RunContext, record: RestoreRecord, target: SagaState) -> None:
        context.transition(target)
        record.phase_timestamps[target.value] = _now().isoformat()
        self._log(record)
        logger.info(f"Run {context.run_id}: {target.value}")

    def _execute(self, context: RunContext, names: ResourceNames, record: RestoreRecord) -> None:
        request = context.request

        # Detection
        self._advance(context, record, SagaState.DETECTING)
        provisioner = EphemeralDatabaseProvisioner(self.config, names, sleep=self.sleep, clock=self.clock)
        source = provisioner.detect()
        context.architecture = source.architecture
        context.engine = source.engine
        logger.info(f"Production is {source.architecture.value} ({source.engine})")

        # Ephemeral database and its credential
        self._advance(context, record, SagaState.PROVISIONING)
        resolver = CredentialResolver(
            self.config.source_secret_arn,  # type: ignore[arg-type]
            names,
            region=self.config.region,
            aws_profile=self.config.aws_profile,
            tags=self.config.tags,
        )
        # Resolve the target time first so a snapshot typo fails before anything is created
        context.target_time = resolver.target_time(request.recovery_point, source.architecture)
        context.ephemeral_database = provisioner.provision(source, request.recovery_point)
        context.credential = resolver.resolve(context.target_time, context.ephemeral_database)

        # Structure extraction and pre-copy DDL
        self._advance(context, record, SagaState.EXTRACTING)
        result = self.task_runner.run(
            TaskKind.EXTRACT,
            TaskEnvironment(
                db_secret_arn=context.credential.secret_arn,  # type: ignore[arg-type]
                db_name=request.target_database,
                s3_bucket=self.artifact_store.bucket,
                target_schemas=request.schemas,
                recovery_suffix=request.suffix,
                run_id=request.run_id,
                s3_prefix=self.artifact_store.ddl_prefix,
            ),
        )
        context.artifact_keys = self._artifact_keys(names, request, result)
        self._apply(context, ArtifactKind.PRE_COPY)
        self._advance(context, record, SagaState.PRE_COPY_APPLIED)

        # Data migration
        self._advance(context, record, SagaState.MIGRATING)
        coordinator = MigrationCoordinator(self.config, names, sleep=self.sleep, clock=self.clock)
        context.replication_instance_arn = coordinator.create_replication_instance()
        context.migration_units = [
            MigrationUnit(schema=schema, target_schema=request.target_schema(schema)) for schema in request.schemas
        ]
        coordinator.run(
            request,
            context.replication_instance_arn,
            source_secret_arn=context.credential.secret_arn,  # type: ignore[arg-type]
            target_secret_arn=self.config.source_secret_arn,  # type: ignore[arg-type]
            engine=context.engine or "postgres",
            units=context.migration_units,
        )

        # Post-copy DDL
        self._apply(context, ArtifactKind.POST_COPY)
        self._advance(context, record, SagaState.POST_COPY_APPLIED)

    def _artifact_keys(self, names: ResourceNames, request: RestoreRequest, result: Any) -> dict:
        """Keys reported by the task, falling back to the deterministic layout."""
        reported = (result or {}).get("artifact_keys") if isinstance(result, dict) else None
        if reported:
            return dict(reported)
        return {
            kind.value: names.artifact_key(self.artifact_store.ddl_prefix, request.target_database, kind)
            for kind in (ArtifactKind.PRE_COPY, ArtifactKind.POST_COPY, ArtifactKind.COMPLETE)
        }

    def _apply(self, context: RunContext, kind: ArtifactKind) -> None:
        key = context.artifact_keys.get(kind.value)
        if not key:
            raise ExtractionError(f"No {kind.value} document recorded for run {context.run_id}")

        logger.info(f"Applying {kind.value} DDL to {context.request.target_database}")
        try:
            self.task_runner.run(
                TaskKind.APPLY,
                TaskEnvironment(
                    db_secret_arn=self.config.source_secret_arn,  # type: ignore[arg-type]
                    db_name=context.request.target_database,
                    s3_bucket=self.artifact_store.bucket,
                    run_id=context.run_id,
                    s3_prefix=self.artifact_store.ddl_prefix,
                    s3_object_key=key,
                ),
            )
        except DDLApplyError as e:
            e.phase = kind.value
            raise

    def _finish(self, context: RunContext, record: RestoreRecord) -> None:
        """Compensate, then set the terminal state and close the audit record."""
        # Schemas may exist from the extraction phase on (an apply task can outlive its timeout)
        rollback = context.failed and FORWARD_ORDER.index(context.state) >= FORWARD_ORDER.index(SagaState.EXTRACTING)

        self._advance(context, record, SagaState.CLEANING_UP)
        compensation = CompensationManager(
            self.config,
            task_runner=self.task_runner,
            artifact_store=self.artifact_store,
            sleep=self.sleep,
            clock=self.clock,
        )
        report = compensation.compensate(context.request, rollback_schemas=rollback)
        context.schemas_rolled_back = report.schemas_dropped
        context.cleanup_errors = list(report.failed)
        if context.ephemeral_database is not None:
            context.ephemeral_database.state = (
                DatabaseState.DELETED if report.database_deleted else DatabaseState.DELETING
            )
        for error in report.failed:
            logger.warning(f"Cleanup: {error}")

        terminal = SagaState.FAILED if context.failed else SagaState.SUCCEEDED
        context.transition(terminal)

        record.phase_timestamps[terminal.value] = _now().isoformat()
        record.status = RestoreStatus.FAILED if context.failed else RestoreStatus.SUCCEEDED
        record.error_detail = context.error
        record.error_kind = context.error_kind
        record.cleanup_errors = list(report.failed)
        record.completed_at = _now()
        self._log(record)

        logger.info(f"Run {context.run_id} {terminal.value}")

    def _log(self, record: RestoreRecord) -> None:
        """Write the audit record; a ledger outage never fails the run."""
        try:
            self.audit_storage.log_record(record)
        except Exception as e:
            logger.warning(f"Could not write audit record {record.run_id}: {e}")
