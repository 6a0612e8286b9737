"""Integration tests for the restore saga.

Cloud-facing collaborators are replaced at the orchestrator seam; audit
storage, naming, request and context handling run for real.
"""

from __future__ import annotations

from datetime import datetime, timezone
from pathlib import Path
from unittest.mock import Mock, patch

import pytest

from tenant_restore.cli.config import Config, ConfigError
from tenant_restore.models.ephemeral_database import Architecture, DatabaseState, EphemeralDatabase
from tenant_restore.models.migration_unit import TaskState
from tenant_restore.models.restore_record import RestoreStatus
from tenant_restore.models.restore_request import RestoreRequest
from tenant_restore.models.run_context import RunContext, SagaState
from tenant_restore.models.temporal_credential import TemporalCredential
from tenant_restore.restore.audit import AuditStorage
from tenant_restore.restore.cleaner import CompensationReport
from tenant_restore.restore.errors import DDLApplyError, MigrationError, ProvisioningError
from tenant_restore.restore.orchestrator import RestoreOrchestrator
from tenant_restore.restore.provisioner import SourceDatabase
from tenant_restore.restore.tasks import TaskKind

RUN_ID = "abc123def456"
TARGET_TIME = datetime(2025, 6, 1, 9, 30, tzinfo=timezone.utc)


@pytest.fixture
def config(tmp_path: Path) -> Config:
    return Config(
        region="eu-west-1",
        source_instance_identifier="tenants-prod",
        source_secret_arn="arn:secret:prod",
        ddl_bucket="ddl-bucket",
        dms_access_role_arn="arn:iam:role/dms",
        audit_backend="file",
        audit_dir=str(tmp_path / "audit"),
    )


@pytest.fixture
def audit(tmp_path: Path) -> AuditStorage:
    return AuditStorage(str(tmp_path / "audit"))


@pytest.fixture
def artifact_store() -> Mock:
    store = Mock()
    store.bucket = "ddl-bucket"
    store.ddl_prefix = "ddl"
    return store


@pytest.fixture
def task_runner() -> Mock:
    runner = Mock()
    runner.run.return_value = None
    return runner


@pytest.fixture
def collaborators():
    """Patch provisioner, credential resolver, migration and compensation."""
    with patch("tenant_restore.restore.orchestrator.EphemeralDatabaseProvisioner") as provisioner_class, patch(
        "tenant_restore.restore.orchestrator.CredentialResolver"
    ) as resolver_class, patch(
        "tenant_restore.restore.orchestrator.MigrationCoordinator"
    ) as coordinator_class, patch(
        "tenant_restore.restore.orchestrator.CompensationManager"
    ) as compensation_class:
        provisioner = provisioner_class.return_value
        provisioner.detect.return_value = SourceDatabase("tenants-prod", Architecture.SINGLE_INSTANCE, "postgres")
        provisioner.provision.return_value = EphemeralDatabase(
            run_id=RUN_ID,
            identifier=f"tmp-resource-{RUN_ID}",
            architecture=Architecture.SINGLE_INSTANCE,
            source_method="snapshot",
            engine="postgres",
            state=DatabaseState.AVAILABLE,
            endpoint="tmp.db.local",
            port=5432,
        )

        resolver = resolver_class.return_value
        resolver.target_time.return_value = TARGET_TIME
        resolver.resolve.return_value = TemporalCredential(
            version_id="v1", valid_at=TARGET_TIME, secret_name=f"tmp-resource-{RUN_ID}", secret_arn="arn:secret:tmp"
        )

        coordinator = coordinator_class.return_value
        coordinator.create_replication_instance.return_value = "arn:dms:ri"

        def complete_units(request, instance_arn, source_secret_arn, target_secret_arn, engine, units):
            for unit in units:
                unit.task_state = TaskState.SUCCEEDED
            return units

        coordinator.run.side_effect = complete_units

        compensation = compensation_class.return_value
        compensation.compensate.side_effect = lambda request, rollback_schemas=False: CompensationReport(
            run_id=request.run_id, deleted=["AWS::RDS::DBInstance x"], schemas_dropped=rollback_schemas
        )

        yield {
            "provisioner": provisioner,
            "resolver": resolver,
            "coordinator": coordinator,
            "compensation": compensation,
        }


def make_orchestrator(config: Config, audit: AuditStorage, task_runner: Mock, artifact_store: Mock):
    return RestoreOrchestrator(
        config, audit_storage=audit, task_runner=task_runner, artifact_store=artifact_store, sleep=Mock()
    )


def make_request(schemas=("tenant_a",)) -> RestoreRequest:
    return RestoreRequest.create(database="app", schemas=list(schemas), snapshot_id="snap-1", run_id=RUN_ID)


class TestRestoreWorkflow:
    """End-to-end saga behaviour."""

    def test_happy_path(
        self, config: Config, audit: AuditStorage, task_runner: Mock, artifact_store: Mock, collaborators
    ) -> None:
        """Test that every phase runs in order and the run succeeds."""
        context = make_orchestrator(config, audit, task_runner, artifact_store).run(make_request())

        assert context.state == SagaState.SUCCEEDED
        assert context.error is None
        assert context.all_units_succeeded
        assert context.ephemeral_database.state == DatabaseState.DELETED

        kinds = [c.args[0] for c in task_runner.run.call_args_list]
        assert kinds == [TaskKind.EXTRACT, TaskKind.APPLY, TaskKind.APPLY]
        pre_env = task_runner.run.call_args_list[1].args[1]
        post_env = task_runner.run.call_args_list[2].args[1]
        assert pre_env.s3_object_key == f"ddl/app/{RUN_ID}/pre-copy.sql"
        assert post_env.s3_object_key == f"ddl/app/{RUN_ID}/post-copy.sql"
        assert pre_env.db_secret_arn == "arn:secret:prod"

        extract_env = task_runner.run.call_args_list[0].args[1]
        assert extract_env.db_secret_arn == "arn:secret:tmp"
        assert extract_env.recovery_suffix == f"_{RUN_ID}"

        collaborators["compensation"].compensate.assert_called_once()
        assert collaborators["compensation"].compensate.call_args.kwargs["rollback_schemas"] is False

        record = audit.get_record(RUN_ID)
        assert record.status == RestoreStatus.SUCCEEDED
        assert list(record.phase_timestamps) == [
            "init",
            "detecting",
            "provisioning",
            "extracting",
            "pre-copy-applied",
            "migrating",
            "post-copy-applied",
            "cleaning-up",
            "succeeded",
        ]
        assert record.completed_at is not None

    def test_reported_artifact_keys_are_used(
        self, config: Config, audit: AuditStorage, task_runner: Mock, artifact_store: Mock, collaborators
    ) -> None:
        """Test that keys returned by the extraction task take precedence."""
        task_runner.run.side_effect = [
            {"artifact_keys": {"pre-copy": "custom/pre.sql", "post-copy": "custom/post.sql"}},
            None,
            None,
        ]

        make_orchestrator(config, audit, task_runner, artifact_store).run(make_request())

        assert task_runner.run.call_args_list[1].args[1].s3_object_key == "custom/pre.sql"

    def test_failed_unit_rolls_back_and_cleans_up(
        self, config: Config, audit: AuditStorage, task_runner: Mock, artifact_store: Mock, collaborators
    ) -> None:
        """Test a multi-schema run where one unit fails."""

        def one_fails(request, instance_arn, source_secret_arn, target_secret_arn, engine, units):
            units[0].task_state = TaskState.SUCCEEDED
            units[1].mark_failed("table tenant_b.orders errored")
            raise MigrationError("1 of 2 migration unit(s) failed: tenant_b")

        collaborators["coordinator"].run.side_effect = one_fails

        context = make_orchestrator(config, audit, task_runner, artifact_store).run(
            make_request(["tenant_a", "tenant_b"])
        )

        assert context.state == SagaState.FAILED
        assert context.error_kind == "migration"
        assert [u.task_state for u in context.migration_units] == [TaskState.SUCCEEDED, TaskState.FAILED]
        assert context.schemas_rolled_back is True
        assert collaborators["compensation"].compensate.call_args.kwargs["rollback_schemas"] is True
        # post-copy DDL never applied
        assert len(task_runner.run.call_args_list) == 2

        record = audit.get_record(RUN_ID)
        assert record.status == RestoreStatus.FAILED
        assert record.error_kind == "migration"
        assert "tenant_b" in record.error_detail
        assert "post-copy-applied" not in record.phase_timestamps
        assert "failed" in record.phase_timestamps

    def test_provisioning_failure_skips_rollback(
        self, config: Config, audit: AuditStorage, task_runner: Mock, artifact_store: Mock, collaborators
    ) -> None:
        """Test that nothing touches production before extraction."""
        collaborators["provisioner"].provision.side_effect = ProvisioningError("snapshot snap-1 not found")

        context = make_orchestrator(config, audit, task_runner, artifact_store).run(make_request())

        assert context.state == SagaState.FAILED
        assert context.error_kind == "provisioning"
        task_runner.run.assert_not_called()
        assert collaborators["compensation"].compensate.call_args.kwargs["rollback_schemas"] is False
        collaborators["compensation"].compensate.assert_called_once()

    def test_pre_copy_failure_records_phase(
        self, config: Config, audit: AuditStorage, task_runner: Mock, artifact_store: Mock, collaborators
    ) -> None:
        """Test that an apply failure is attributed to its document."""
        error = DDLApplyError("statement 4 failed")
        task_runner.run.side_effect = [None, error]

        context = make_orchestrator(config, audit, task_runner, artifact_store).run(make_request())

        assert context.error_kind == "ddl-apply"
        assert error.phase == "pre-copy"
        collaborators["coordinator"].run.assert_not_called()
        assert collaborators["compensation"].compensate.call_args.kwargs["rollback_schemas"] is True

    def test_cleanup_errors_recorded_on_success(
        self, config: Config, audit: AuditStorage, task_runner: Mock, artifact_store: Mock, collaborators
    ) -> None:
        """Test that leftover resources are reported without failing the run."""
        collaborators["compensation"].compensate.side_effect = None
        collaborators["compensation"].compensate.return_value = CompensationReport(
            run_id=RUN_ID, failed=["AWS::SecretsManager::Secret x: AccessDenied"]
        )

        context = make_orchestrator(config, audit, task_runner, artifact_store).run(make_request())

        assert context.state == SagaState.SUCCEEDED
        assert context.cleanup_errors == ["AWS::SecretsManager::Secret x: AccessDenied"]
        assert context.ephemeral_database.state == DatabaseState.DELETED
        assert audit.get_record(RUN_ID).cleanup_errors == ["AWS::SecretsManager::Secret x: AccessDenied"]

    def test_database_left_behind_stays_deleting(
        self, config: Config, audit: AuditStorage, task_runner: Mock, artifact_store: Mock, collaborators
    ) -> None:
        """Test that a clone whose deletion failed is not reported as deleted."""
        collaborators["compensation"].compensate.side_effect = None
        collaborators["compensation"].compensate.return_value = CompensationReport(
            run_id=RUN_ID, failed=[f"AWS::RDS::DBInstance tmp-resource-{RUN_ID}: InvalidDBInstanceState"]
        )

        context = make_orchestrator(config, audit, task_runner, artifact_store).run(make_request())

        assert context.state == SagaState.SUCCEEDED
        assert context.ephemeral_database.state == DatabaseState.DELETING
        assert RunContext.from_dict(context.to_dict()).ephemeral_database.state == DatabaseState.DELETING

    def test_audit_outage_does_not_fail_run(
        self, config: Config, task_runner: Mock, artifact_store: Mock, collaborators
    ) -> None:
        """Test that audit write errors are logged only."""
        broken_audit = Mock()
        broken_audit.log_record.side_effect = RuntimeError("table unavailable")

        context = RestoreOrchestrator(
            config, audit_storage=broken_audit, task_runner=task_runner, artifact_store=artifact_store, sleep=Mock()
        ).run(make_request())

        assert context.state == SagaState.SUCCEEDED

    def test_missing_configuration(self, audit: AuditStorage) -> None:
        """Test that required settings are checked up front."""
        with pytest.raises(ConfigError, match="source_secret_arn"):
            RestoreOrchestrator(Config(), audit_storage=audit, task_runner=Mock(), artifact_store=Mock())
