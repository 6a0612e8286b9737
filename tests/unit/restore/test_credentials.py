"""Tests for temporal credential resolution."""

from __future__ import annotations

import json
from datetime import datetime, timedelta, timezone
from unittest.mock import Mock, patch

import pytest
from botocore.exceptions import ClientError

from tenant_restore.models.ephemeral_database import Architecture, EphemeralDatabase
from tenant_restore.models.restore_request import PointInTime, Snapshot
from tenant_restore.restore.credentials import CredentialResolver, select_version
from tenant_restore.restore.errors import NoCredentialAtTime, ProvisioningError
from tenant_restore.restore.naming import ResourceNames

T1 = datetime(2025, 1, 1, tzinfo=timezone.utc)
T2 = datetime(2025, 3, 1, tzinfo=timezone.utc)
T3 = datetime(2025, 6, 1, tzinfo=timezone.utc)

VERSIONS = [
    {"VersionId": "v3", "CreatedDate": T3},
    {"VersionId": "v1", "CreatedDate": T1},
    {"VersionId": "v2", "CreatedDate": T2},
]

SOURCE_SECRET = "arn:aws:secretsmanager:eu-west-1:123456789012:secret:prod-db"


class TestSelectVersion:
    """Test suite for select_version."""

    def test_between_versions_selects_older(self) -> None:
        """Test a time between two rotations."""
        assert select_version(VERSIONS, T1 + timedelta(days=10))["VersionId"] == "v1"
        assert select_version(VERSIONS, T2 + timedelta(days=10))["VersionId"] == "v2"

    def test_exact_creation_time_is_inclusive(self) -> None:
        """Test that a version created exactly at T is selected."""
        assert select_version(VERSIONS, T2)["VersionId"] == "v2"

    def test_after_last_rotation(self) -> None:
        """Test a time after the newest version."""
        assert select_version(VERSIONS, T3 + timedelta(days=1))["VersionId"] == "v3"

    def test_before_first_version(self) -> None:
        """Test that nothing is selected before the first version."""
        assert select_version(VERSIONS, T1 - timedelta(seconds=1)) is None

    def test_versions_without_date_ignored(self) -> None:
        """Test that undated versions are skipped."""
        versions = [{"VersionId": "v0"}, {"VersionId": "v1", "CreatedDate": T1}]

        assert select_version(versions, T2)["VersionId"] == "v1"


class TestCredentialResolver:
    """Test suite for CredentialResolver."""

    @pytest.fixture
    def clients(self):
        secrets = Mock()
        rds = Mock()
        secrets.list_secret_version_ids.return_value = {"Versions": VERSIONS}
        secrets.get_secret_value.return_value = {
            "SecretString": json.dumps(
                {"username": "app", "password": "old-pass", "host": "prod.db", "port": 5432, "dbInstanceIdentifier": "prod"}
            )
        }
        secrets.create_secret.return_value = {"ARN": "arn:secret:tmp"}
        return {"secretsmanager": secrets, "rds": rds}

    @pytest.fixture
    def resolver(self, clients) -> CredentialResolver:
        with patch("tenant_restore.restore.credentials.create_boto_client") as mock_create_client:
            mock_create_client.side_effect = lambda service, **kwargs: clients[service]
            return CredentialResolver(SOURCE_SECRET, ResourceNames("abc123def456"), tags={"Team": "data"})

    @pytest.fixture
    def database(self) -> EphemeralDatabase:
        return EphemeralDatabase(
            run_id="abc123def456",
            identifier="tmp-resource-abc123def456",
            architecture=Architecture.SINGLE_INSTANCE,
            source_method="point-in-time",
            engine="postgres",
            endpoint="tmp.db",
            port=5433,
        )

    def test_target_time_for_point_in_time(self, resolver: CredentialResolver) -> None:
        """Test that the restore time is used directly."""
        assert resolver.target_time(PointInTime(T2), Architecture.SINGLE_INSTANCE) == T2

    def test_target_time_for_instance_snapshot(self, resolver: CredentialResolver, clients) -> None:
        """Test snapshot creation time lookup for instances."""
        clients["rds"].describe_db_snapshots.return_value = {"DBSnapshots": [{"SnapshotCreateTime": T2}]}

        assert resolver.target_time(Snapshot("nightly"), Architecture.SINGLE_INSTANCE) == T2
        clients["rds"].describe_db_snapshots.assert_called_once_with(DBSnapshotIdentifier="nightly")

    def test_target_time_for_cluster_snapshot(self, resolver: CredentialResolver, clients) -> None:
        """Test snapshot creation time lookup for clusters."""
        clients["rds"].describe_db_cluster_snapshots.return_value = {"DBClusterSnapshots": [{"SnapshotCreateTime": T3}]}

        assert resolver.target_time(Snapshot("nightly"), Architecture.CLUSTER) == T3

    def test_missing_snapshot(self, resolver: CredentialResolver, clients) -> None:
        """Test that an unknown snapshot is a provisioning error."""
        clients["rds"].describe_db_snapshots.side_effect = ClientError(
            {"Error": {"Code": "DBSnapshotNotFound", "Message": "not found"}}, "DescribeDBSnapshots"
        )

        with pytest.raises(ProvisioningError, match="nightly"):
            resolver.target_time(Snapshot("nightly"), Architecture.SINGLE_INSTANCE)

    def test_list_versions_paginates(self, resolver: CredentialResolver, clients) -> None:
        """Test that every page of versions is read."""
        clients["secretsmanager"].list_secret_version_ids.side_effect = [
            {"Versions": VERSIONS[:1], "NextToken": "t"},
            {"Versions": VERSIONS[1:]},
        ]

        assert len(resolver.list_versions()) == 3
        second_call = clients["secretsmanager"].list_secret_version_ids.call_args_list[1]
        assert second_call.kwargs["NextToken"] == "t"
        assert second_call.kwargs["IncludeDeprecated"] is True

    def test_no_credential_at_time(self, resolver: CredentialResolver, database: EphemeralDatabase) -> None:
        """Test resolution before the first version fails."""
        with pytest.raises(NoCredentialAtTime):
            resolver.resolve(T1 - timedelta(days=1), database)

    def test_resolve_creates_run_scoped_secret(
        self, resolver: CredentialResolver, clients, database: EphemeralDatabase
    ) -> None:
        """Test the historical payload is pointed at the clone."""
        credential = resolver.resolve(T2 + timedelta(days=1), database)

        clients["secretsmanager"].get_secret_value.assert_called_once_with(SecretId=SOURCE_SECRET, VersionId="v2")
        kwargs = clients["secretsmanager"].create_secret.call_args.kwargs
        payload = json.loads(kwargs["SecretString"])

        assert kwargs["Name"] == "tmp-resource-abc123def456"
        assert {"Key": "RestoreRunId", "Value": "abc123def456"} in kwargs["Tags"]
        assert {"Key": "Team", "Value": "data"} in kwargs["Tags"]
        assert payload["host"] == "tmp.db"
        assert payload["port"] == 5433
        assert payload["password"] == "old-pass"
        assert payload["dbInstanceIdentifier"] == "tmp-resource-abc123def456"
        assert credential.version_id == "v2"
        assert credential.secret_arn == "arn:secret:tmp"
        assert "old-pass" not in repr(credential)

    def test_resolve_for_cluster_sets_cluster_identifier(
        self, resolver: CredentialResolver, clients, database: EphemeralDatabase
    ) -> None:
        """Test the cluster identifier replaces the instance identifier."""
        database.architecture = Architecture.CLUSTER

        resolver.resolve(T3, database)

        payload = json.loads(clients["secretsmanager"].create_secret.call_args.kwargs["SecretString"])
        assert payload["dbClusterIdentifier"] == "tmp-resource-abc123def456"
        assert "dbInstanceIdentifier" not in payload

    def test_resolve_updates_existing_secret(
        self, resolver: CredentialResolver, clients, database: EphemeralDatabase
    ) -> None:
        """Test that a rerun overwrites the secret it created before."""
        clients["secretsmanager"].create_secret.side_effect = ClientError(
            {"Error": {"Code": "ResourceExistsException", "Message": "exists"}}, "CreateSecret"
        )
        clients["secretsmanager"].put_secret_value.return_value = {"ARN": "arn:secret:tmp"}

        credential = resolver.resolve(T3, database)

        clients["secretsmanager"].put_secret_value.assert_called_once()
        assert credential.secret_arn == "arn:secret:tmp"
