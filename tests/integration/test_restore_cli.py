"""Integration tests for the tenant-restore CLI."""

from __future__ import annotations

import os
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional
from unittest.mock import patch

import pytest
from typer.testing import CliRunner

from tenant_restore.aws.credentials import CredentialValidationError
from tenant_restore.cli.main import app
from tenant_restore.models.restore_record import RestoreStatus
from tenant_restore.models.run_context import RunContext, SagaState
from tenant_restore.restore.audit import AuditStorage
from tenant_restore.restore.cleaner import CompensationReport
from tests.fixtures.records import create_record, create_request

DUMP = """--
-- PostgreSQL database dump
--
SET statement_timeout = 0;
CREATE SCHEMA tenant_a;
CREATE TABLE tenant_a.orders (
    id integer NOT NULL,
    total numeric(10,2)
);
ALTER TABLE ONLY tenant_a.orders ADD CONSTRAINT orders_pkey PRIMARY KEY (id);
CREATE INDEX orders_total_idx ON tenant_a.orders USING btree (total);
"""


@pytest.fixture
def runner() -> CliRunner:
    """Create CLI test runner."""
    return CliRunner()


@pytest.fixture
def audit_dir(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    """Point the CLI at a file audit ledger and away from any user config."""
    directory = tmp_path / "audit"
    for name in list(os.environ):
        if name.startswith("TENANT_RESTORE_"):
            monkeypatch.delenv(name)
    monkeypatch.chdir(tmp_path)
    monkeypatch.setattr("tenant_restore.cli.config.USER_CONFIG_FILE", tmp_path / "missing.yaml")
    monkeypatch.setenv("TENANT_RESTORE_AUDIT_BACKEND", "file")
    monkeypatch.setenv("TENANT_RESTORE_AUDIT_DIR", str(directory))
    monkeypatch.setenv("TENANT_RESTORE_REGION", "eu-west-1")
    monkeypatch.setattr("tenant_restore.cli.main.console.width", 200)
    monkeypatch.setattr(
        "tenant_restore.cli.main.validate_credentials",
        lambda profile, region: {"account_id": "123456789012", "arn": "arn:aws:iam::123456789012:user/oncall"},
    )
    return directory


def finished_context(state: SagaState, error: Optional[str] = None) -> RunContext:
    request = create_request(schemas=["tenant_a", "tenant_b"])
    context = RunContext(request=request, state=state)
    context.error = error
    context.error_kind = "migration" if error else None
    return context


class TestRestoreRun:
    """Tests for 'restore run'."""

    def test_requires_recovery_point(self, runner: CliRunner, audit_dir: Path) -> None:
        """Test that a request without time or snapshot is rejected."""
        result = runner.invoke(app, ["restore", "run", "-d", "app", "-s", "tenant_a"])

        assert result.exit_code == 2
        assert "Either restore time or snapshot id" in result.stdout

    def test_rejects_both_recovery_points(self, runner: CliRunner, audit_dir: Path) -> None:
        """Test that time and snapshot are mutually exclusive."""
        result = runner.invoke(
            app,
            ["restore", "run", "-d", "app", "-s", "tenant_a", "-t", "2025-06-01T00:00:00Z", "--snapshot-id", "s"],
        )

        assert result.exit_code == 2

    @patch("tenant_restore.restore.orchestrator.RestoreOrchestrator")
    def test_rejects_malformed_run_id(self, mock_orchestrator, runner: CliRunner, audit_dir: Path) -> None:
        """Test that a run id unusable in resource names never starts a run."""
        result = runner.invoke(
            app, ["restore", "run", "-d", "app", "-s", "tenant_a", "--snapshot-id", "s", "--run-id", "Bad_ID--x"]
        )

        assert result.exit_code == 2
        assert "Invalid run id" in result.stdout
        mock_orchestrator.assert_not_called()

    @patch("tenant_restore.restore.orchestrator.RestoreOrchestrator")
    def test_success_exit_code(self, mock_orchestrator, runner: CliRunner, audit_dir: Path) -> None:
        """Test a succeeded run exits 0 and prints the restored schemas."""
        mock_orchestrator.return_value.run.return_value = finished_context(SagaState.SUCCEEDED)

        result = runner.invoke(
            app,
            ["restore", "run", "-d", "app", "-s", "tenant_a", "-s", "tenant_b", "--snapshot-id", "snap-1"],
        )

        assert result.exit_code == 0
        assert "succeeded" in result.stdout
        assert "tenant_b_abc123def456" in result.stdout
        request = mock_orchestrator.return_value.run.call_args.args[0]
        assert request.schemas == ("tenant_a", "tenant_b")
        assert request.recovery_point.kind == "snapshot"
        assert request.requested_by == "arn:aws:iam::123456789012:user/oncall"

    def test_invalid_credentials(self, runner: CliRunner, audit_dir: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        """Test that rejected credentials stop the run before any work."""

        def reject(profile, region):
            raise CredentialValidationError("AWS credentials rejected (ExpiredToken)")

        monkeypatch.setattr("tenant_restore.cli.main.validate_credentials", reject)

        result = runner.invoke(app, ["restore", "run", "-d", "app", "-s", "tenant_a", "--snapshot-id", "snap-1"])

        assert result.exit_code == 2
        assert "ExpiredToken" in result.stdout

    @patch("tenant_restore.restore.orchestrator.RestoreOrchestrator")
    def test_failure_exit_code(self, mock_orchestrator, runner: CliRunner, audit_dir: Path) -> None:
        """Test a failed run exits 1 and prints the error and unit table."""
        context = finished_context(SagaState.FAILED, error="1 of 2 migration unit(s) failed: tenant_b")
        context.migration_units = []
        mock_orchestrator.return_value.run.return_value = context

        result = runner.invoke(
            app, ["restore", "run", "-d", "app", "-s", "tenant_a", "-t", "2025-06-01T09:30:00Z"]
        )

        assert result.exit_code == 1
        assert "tenant_b" in result.stdout
        assert "failed" in result.stdout

    @patch("tenant_restore.restore.orchestrator.RestoreOrchestrator")
    def test_cleanup_errors_print_retry_hint(self, mock_orchestrator, runner: CliRunner, audit_dir: Path) -> None:
        """Test that leftover resources point at the cleanup command."""
        context = finished_context(SagaState.SUCCEEDED)
        context.cleanup_errors = ["AWS::SecretsManager::Secret tmp-resource-abc123def456: AccessDenied"]
        mock_orchestrator.return_value.run.return_value = context

        result = runner.invoke(app, ["restore", "run", "-d", "app", "-s", "tenant_a", "--snapshot-id", "snap-1"])

        assert result.exit_code == 0
        assert "restore cleanup --run-id abc123def456" in result.stdout

    def test_missing_configuration_exit_code(self, runner: CliRunner, audit_dir: Path) -> None:
        """Test that missing settings are reported before any work."""
        result = runner.invoke(app, ["restore", "run", "-d", "app", "-s", "tenant_a", "--snapshot-id", "snap-1"])

        assert result.exit_code == 2
        assert "Missing required configuration" in result.stdout


class TestRestoreLedger:
    """Tests for 'restore show' and 'restore history'."""

    def test_show(self, runner: CliRunner, audit_dir: Path) -> None:
        """Test that a stored record is displayed."""
        AuditStorage(str(audit_dir)).log_record(create_record(status=RestoreStatus.FAILED))

        result = runner.invoke(app, ["restore", "show", "abc123def456"])

        assert result.exit_code == 0
        assert "abc123def456" in result.stdout
        assert "failed" in result.stdout

    def test_show_unknown_run(self, runner: CliRunner, audit_dir: Path) -> None:
        """Test that an unknown run exits 1."""
        result = runner.invoke(app, ["restore", "show", "ffffffffffff"])

        assert result.exit_code == 1
        assert "not found" in result.stdout

    def test_history_filters_by_date(self, runner: CliRunner, audit_dir: Path) -> None:
        """Test history with a lower bound."""
        storage = AuditStorage(str(audit_dir))
        storage.log_record(create_record("aaaaaaaaaaaa", datetime(2025, 5, 1, tzinfo=timezone.utc)))
        storage.log_record(
            create_record("bbbbbbbbbbbb", datetime(2025, 6, 15, tzinfo=timezone.utc), RestoreStatus.SUCCEEDED)
        )

        result = runner.invoke(app, ["restore", "history", "--since", "2025-06-01"])

        assert result.exit_code == 0
        assert "bbbbbbbbbbbb" in result.stdout
        assert "aaaaaaaaaaaa" not in result.stdout

    def test_history_invalid_date(self, runner: CliRunner, audit_dir: Path) -> None:
        """Test that a malformed date is rejected."""
        result = runner.invoke(app, ["restore", "history", "--since", "last tuesday"])

        assert result.exit_code == 2

    def test_history_empty(self, runner: CliRunner, audit_dir: Path) -> None:
        """Test an empty ledger."""
        result = runner.invoke(app, ["restore", "history"])

        assert result.exit_code == 0
        assert "No restore runs found" in result.stdout


class TestRestoreCleanup:
    """Tests for 'restore cleanup'."""

    @patch("tenant_restore.restore.cleaner.CompensationManager")
    def test_cleanup_from_audit_record(self, mock_manager, runner: CliRunner, audit_dir: Path) -> None:
        """Test that the request is rebuilt from the ledger."""
        AuditStorage(str(audit_dir)).log_record(create_record(schemas=["tenant_a", "tenant_b"]))
        mock_manager.return_value.compensate.return_value = CompensationReport(
            run_id="abc123def456", deleted=["AWS::DMS::ReplicationInstance tmp-resource-abc123def456"]
        )

        result = runner.invoke(app, ["restore", "cleanup", "--run-id", "abc123def456", "--yes"])

        assert result.exit_code == 0
        request = mock_manager.return_value.compensate.call_args.args[0]
        assert request.schemas == ("tenant_a", "tenant_b")
        assert mock_manager.return_value.compensate.call_args.kwargs["rollback_schemas"] is False

    @patch("tenant_restore.restore.cleaner.CompensationManager")
    def test_cleanup_reports_leftovers(self, mock_manager, runner: CliRunner, audit_dir: Path) -> None:
        """Test that leftover resources exit 1."""
        mock_manager.return_value.compensate.return_value = CompensationReport(
            run_id="abc123def456", failed=["AWS::RDS::DBInstance tmp-resource-abc123def456: InvalidDBInstanceState"]
        )

        result = runner.invoke(
            app, ["restore", "cleanup", "--run-id", "abc123def456", "-d", "app", "-s", "tenant_a", "--yes"]
        )

        assert result.exit_code == 1
        assert "InvalidDBInstanceState" in result.stdout

    def test_cleanup_without_record_or_schemas(self, runner: CliRunner, audit_dir: Path) -> None:
        """Test that an unknown run needs --database and --schema."""
        result = runner.invoke(app, ["restore", "cleanup", "--run-id", "abc123def456", "--yes"])

        assert result.exit_code == 1
        assert "pass --database and --schema" in result.stdout

    @patch("tenant_restore.restore.cleaner.CompensationManager")
    def test_cleanup_cancelled(self, mock_manager, runner: CliRunner, audit_dir: Path) -> None:
        """Test that declining the prompt deletes nothing."""
        AuditStorage(str(audit_dir)).log_record(create_record())

        result = runner.invoke(app, ["restore", "cleanup", "--run-id", "abc123def456"], input="n\n")

        assert result.exit_code == 0
        assert "Cancelled" in result.stdout
        mock_manager.return_value.compensate.assert_not_called()


class TestDDLSplit:
    """Tests for 'ddl split'."""

    def test_split_writes_documents(self, runner: CliRunner, audit_dir: Path, tmp_path: Path) -> None:
        """Test offline classification of a dump file."""
        dump_file = tmp_path / "dump.sql"
        dump_file.write_text(DUMP)
        output_dir = tmp_path / "out"

        result = runner.invoke(
            app,
            ["ddl", "split", str(dump_file), "-s", "tenant_a", "--run-id", "abc123def456", "-o", str(output_dir)],
        )

        assert result.exit_code == 0
        pre_copy = (output_dir / "pre-copy.sql").read_text()
        post_copy = (output_dir / "post-copy.sql").read_text()
        assert "CREATE TABLE tenant_a_abc123def456.orders" in pre_copy
        assert "orders_total_idx" in post_copy
        assert "orders_total_idx" not in pre_copy
        assert (output_dir / "complete.sql").exists()

    def test_split_without_structure(self, runner: CliRunner, audit_dir: Path, tmp_path: Path) -> None:
        """Test that a dump of other schemas exits 1."""
        dump_file = tmp_path / "dump.sql"
        dump_file.write_text("-- nothing\n")

        result = runner.invoke(app, ["ddl", "split", str(dump_file), "-s", "tenant_a"])

        assert result.exit_code == 1

    def test_split_session_preamble_only(self, runner: CliRunner, audit_dir: Path, tmp_path: Path) -> None:
        """Test that session settings alone do not count as structure."""
        dump_file = tmp_path / "dump.sql"
        dump_file.write_text("SET statement_timeout = 0;\nSELECT pg_catalog.set_config('search_path', '', false);\n")

        result = runner.invoke(app, ["ddl", "split", str(dump_file), "-s", "tenant_a"])

        assert result.exit_code == 1
        assert "No schema or table found" in result.stdout


class TestTaskEntrypoints:
    """Tests for 'ddl extract' and 'ddl apply'."""

    def test_apply_requires_environment(
        self, runner: CliRunner, audit_dir: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        """Test that a task started without its contract exits 1."""
        for name in ("DB_SECRET_ARN", "DB_NAME", "S3_BUCKET", "S3_OBJECT_KEY"):
            monkeypatch.delenv(name, raising=False)

        result = runner.invoke(app, ["ddl", "apply"])

        assert result.exit_code == 1

    @patch("tenant_restore.restore.applier.DDLApplier")
    def test_apply_runs_document(
        self, mock_applier, runner: CliRunner, audit_dir: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        """Test the apply entrypoint reads its environment."""
        monkeypatch.setenv("DB_SECRET_ARN", "arn:secret:prod")
        monkeypatch.setenv("DB_NAME", "app")
        monkeypatch.setenv("S3_BUCKET", "ddl-bucket")
        monkeypatch.setenv("S3_OBJECT_KEY", "ddl/app/abc123def456/post-copy.sql")
        mock_applier.return_value.run.return_value = 12

        result = runner.invoke(app, ["ddl", "apply"])

        assert result.exit_code == 0
        assert "Applied 12 statements" in result.stdout
        environment = mock_applier.call_args.args[0]
        assert environment.s3_object_key == "ddl/app/abc123def456/post-copy.sql"

    @patch("tenant_restore.restore.extractor.DDLExtractor")
    def test_extract_reports_keys(
        self, mock_extractor, runner: CliRunner, audit_dir: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        """Test the extract entrypoint prints uploaded documents."""
        for name, value in {
            "DB_SECRET_ARN": "arn:secret:tmp",
            "DB_NAME": "app",
            "S3_BUCKET": "ddl-bucket",
            "TARGET_SCHEMAS": "tenant_a",
            "RECOVERY_SUFFIX": "_abc123def456",
            "RUN_ID": "abc123def456",
        }.items():
            monkeypatch.setenv(name, value)
        mock_extractor.return_value.run.return_value = {"pre-copy": "ddl/app/abc123def456/pre-copy.sql"}

        result = runner.invoke(app, ["ddl", "extract"])

        assert result.exit_code == 0
        assert "s3://ddl-bucket/ddl/app/abc123def456/pre-copy.sql" in result.stdout


def test_version(runner: CliRunner, audit_dir: Path) -> None:
    """Test the version command."""
    result = runner.invoke(app, ["version"])

    assert result.exit_code == 0
    assert "tenant-schema-restore version" in result.stdout
