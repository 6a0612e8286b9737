"""Tests for ResourceDeleter class.

Test coverage for idempotent deletion of restore-run resources.
"""

from __future__ import annotations

from unittest.mock import Mock, patch

import pytest
from botocore.exceptions import ClientError

from tenant_restore.restore.deleter import ResourceDeleter, find_dms_resource_arn


def client_error(code: str, message: str = "error") -> ClientError:
    return ClientError({"Error": {"Code": code, "Message": message}}, "Operation")


class TestResourceDeleter:
    """Test suite for ResourceDeleter class."""

    def test_init_creates_deleter_with_defaults(self) -> None:
        """Test initialization with default parameters."""
        deleter = ResourceDeleter()

        assert deleter.aws_profile is None
        assert deleter.max_retries == 3

    @patch("tenant_restore.restore.deleter.create_boto_client")
    def test_delete_db_instance_skips_final_snapshot(self, mock_create_client: Mock) -> None:
        """Test RDS instance deletion parameters."""
        mock_client = Mock()
        mock_create_client.return_value = mock_client

        deleter = ResourceDeleter(aws_profile="restore")
        success, error = deleter.delete_resource("AWS::RDS::DBInstance", "tmp-resource-r1", "eu-west-1")

        assert success is True
        assert error is None
        mock_create_client.assert_called_once_with(service_name="rds", region_name="eu-west-1", profile_name="restore")
        mock_client.delete_db_instance.assert_called_once_with(
            DBInstanceIdentifier="tmp-resource-r1",
            SkipFinalSnapshot=True,
            DeleteAutomatedBackups=True,
        )

    @patch("tenant_restore.restore.deleter.create_boto_client")
    def test_delete_db_cluster(self, mock_create_client: Mock) -> None:
        """Test RDS cluster deletion parameters."""
        mock_client = Mock()
        mock_create_client.return_value = mock_client

        success, _ = ResourceDeleter().delete_resource("AWS::RDS::DBCluster", "tmp-resource-r1", "eu-west-1")

        assert success is True
        mock_client.delete_db_cluster.assert_called_once_with(
            DBClusterIdentifier="tmp-resource-r1", SkipFinalSnapshot=True
        )

    @patch("tenant_restore.restore.deleter.create_boto_client")
    def test_delete_secret_without_recovery(self, mock_create_client: Mock) -> None:
        """Test immediate secret deletion."""
        mock_client = Mock()
        mock_create_client.return_value = mock_client

        ResourceDeleter().delete_resource("AWS::SecretsManager::Secret", "tmp-resource-r1", "eu-west-1")

        mock_client.delete_secret.assert_called_once_with(SecretId="tmp-resource-r1", ForceDeleteWithoutRecovery=True)

    @patch("tenant_restore.restore.deleter.create_boto_client")
    def test_delete_s3_object_uses_bucket_from_arn(self, mock_create_client: Mock) -> None:
        """Test S3 object deletion."""
        mock_client = Mock()
        mock_create_client.return_value = mock_client

        success, _ = ResourceDeleter().delete_resource(
            "AWS::S3::Object",
            "ddl/app/r1/pre-copy.sql",
            "eu-west-1",
            arn="arn:aws:s3:::ddl-bucket/ddl/app/r1/pre-copy.sql",
        )

        assert success is True
        mock_client.delete_object.assert_called_once_with(Bucket="ddl-bucket", Key="ddl/app/r1/pre-copy.sql")

    @patch("tenant_restore.restore.deleter.create_boto_client")
    def test_delete_dms_endpoint_looks_up_arn(self, mock_create_client: Mock) -> None:
        """Test that DMS resources are resolved by identifier."""
        mock_client = Mock()
        mock_client.describe_endpoints.return_value = {"Endpoints": [{"EndpointArn": "arn:dms:endpoint:1"}]}
        mock_create_client.return_value = mock_client

        success, _ = ResourceDeleter().delete_resource("AWS::DMS::Endpoint", "tmp-resource-r1-a-source", "eu-west-1")

        assert success is True
        mock_client.describe_endpoints.assert_called_once_with(
            Filters=[{"Name": "endpoint-id", "Values": ["tmp-resource-r1-a-source"]}]
        )
        mock_client.delete_endpoint.assert_called_once_with(EndpointArn="arn:dms:endpoint:1")

    @patch("tenant_restore.restore.deleter.create_boto_client")
    def test_missing_dms_resource_counts_as_deleted(self, mock_create_client: Mock) -> None:
        """Test that a DMS lookup miss is success."""
        mock_client = Mock()
        mock_client.describe_replication_tasks.side_effect = client_error("ResourceNotFoundFault")
        mock_create_client.return_value = mock_client

        success, error = ResourceDeleter().delete_resource("AWS::DMS::ReplicationTask", "tmp-resource-r1-a", None)

        assert success is True
        assert error is None
        mock_client.delete_replication_task.assert_not_called()

    @pytest.mark.parametrize("code", ["DBInstanceNotFound", "ResourceNotFoundException", "NoSuchKey"])
    @patch("tenant_restore.restore.deleter.create_boto_client")
    def test_not_found_is_success(self, mock_create_client: Mock, code: str) -> None:
        """Test idempotent deletion of resources that are already gone."""
        mock_client = Mock()
        mock_client.delete_db_instance.side_effect = client_error(code)
        mock_create_client.return_value = mock_client

        success, error = ResourceDeleter().delete_resource("AWS::RDS::DBInstance", "tmp-resource-r1", None)

        assert success is True
        assert error is None

    @patch("tenant_restore.restore.deleter.create_boto_client")
    def test_already_deleting_is_success(self, mock_create_client: Mock) -> None:
        """Test that an in-progress deletion counts as deleted."""
        mock_client = Mock()
        mock_client.delete_db_instance.side_effect = client_error(
            "InvalidDBInstanceState", "Instance tmp-resource-r1 is already being deleted."
        )
        mock_create_client.return_value = mock_client

        success, _ = ResourceDeleter().delete_resource("AWS::RDS::DBInstance", "tmp-resource-r1", None)

        assert success is True
        assert mock_client.delete_db_instance.call_count == 1

    @patch("tenant_restore.restore.deleter.create_boto_client")
    def test_retryable_error_retried_with_backoff(self, mock_create_client: Mock) -> None:
        """Test exponential backoff on transient errors."""
        mock_client = Mock()
        mock_client.delete_db_cluster.side_effect = [
            client_error("InvalidDBClusterStateFault", "Cluster has member instances"),
            client_error("Throttling"),
            {},
        ]
        mock_create_client.return_value = mock_client
        sleep = Mock()

        success, _ = ResourceDeleter(sleep=sleep).delete_resource("AWS::RDS::DBCluster", "tmp-resource-r1", None)

        assert success is True
        assert [c.args[0] for c in sleep.call_args_list] == [1, 2]

    @patch("tenant_restore.restore.deleter.create_boto_client")
    def test_retryable_error_exhausts_attempts(self, mock_create_client: Mock) -> None:
        """Test failure after the last attempt."""
        mock_client = Mock()
        mock_client.delete_db_cluster.side_effect = client_error("InvalidDBClusterStateFault", "busy")
        mock_create_client.return_value = mock_client

        success, error = ResourceDeleter(max_retries=2, sleep=Mock()).delete_resource(
            "AWS::RDS::DBCluster", "tmp-resource-r1", None
        )

        assert success is False
        assert "InvalidDBClusterStateFault" in error
        assert mock_client.delete_db_cluster.call_count == 2

    @patch("tenant_restore.restore.deleter.create_boto_client")
    def test_permanent_error_not_retried(self, mock_create_client: Mock) -> None:
        """Test access errors fail immediately."""
        mock_client = Mock()
        mock_client.delete_secret.side_effect = client_error("AccessDeniedException", "denied")
        mock_create_client.return_value = mock_client

        success, error = ResourceDeleter().delete_resource("AWS::SecretsManager::Secret", "tmp-resource-r1", None)

        assert success is False
        assert error == "AccessDeniedException: denied"
        assert mock_client.delete_secret.call_count == 1

    def test_unsupported_resource_type(self) -> None:
        """Test handling of unknown resource types."""
        success, error = ResourceDeleter().delete_resource("AWS::EC2::Instance", "i-123", None)

        assert success is False
        assert "Unsupported resource type" in error

    @patch("tenant_restore.restore.deleter.create_boto_client")
    def test_clients_are_cached(self, mock_create_client: Mock) -> None:
        """Test one client per service and region."""
        deleter = ResourceDeleter()

        assert deleter.client("rds", "eu-west-1") is deleter.client("rds", "eu-west-1")
        mock_create_client.assert_called_once()


class TestExists:
    """Test suite for ResourceDeleter.exists."""

    @patch("tenant_restore.restore.deleter.create_boto_client")
    def test_instance_exists(self, mock_create_client: Mock) -> None:
        """Test a describable instance exists."""
        mock_create_client.return_value = Mock()

        assert ResourceDeleter().exists("AWS::RDS::DBInstance", "tmp-resource-r1", None) is True

    @patch("tenant_restore.restore.deleter.create_boto_client")
    def test_instance_gone(self, mock_create_client: Mock) -> None:
        """Test a not-found instance does not exist."""
        mock_client = Mock()
        mock_client.describe_db_instances.side_effect = client_error("DBInstanceNotFound")
        mock_create_client.return_value = mock_client

        assert ResourceDeleter().exists("AWS::RDS::DBInstance", "tmp-resource-r1", None) is False

    @patch("tenant_restore.restore.deleter.create_boto_client")
    def test_dms_task_exists(self, mock_create_client: Mock) -> None:
        """Test DMS existence through ARN lookup."""
        mock_client = Mock()
        mock_client.describe_replication_tasks.return_value = {"ReplicationTasks": []}
        mock_create_client.return_value = mock_client

        assert ResourceDeleter().exists("AWS::DMS::ReplicationTask", "tmp-resource-r1-a", None) is False


def test_find_dms_resource_arn() -> None:
    """Test replication instance lookup by identifier."""
    dms = Mock()
    dms.describe_replication_instances.return_value = {
        "ReplicationInstances": [{"ReplicationInstanceArn": "arn:dms:rep:1"}]
    }

    assert find_dms_resource_arn(dms, "AWS::DMS::ReplicationInstance", "tmp-resource-r1") == "arn:dms:rep:1"
