"""AWS resource deletion strategies.

Maps the temporary resource types of a restore run to their deletion
methods with idempotent error handling and retry logic.
"""

from __future__ import annotations

import logging
import threading
import time
from typing import Any, Callable, Dict, Optional, Tuple

from botocore.exceptions import ClientError

from ..aws.client import create_boto_client

logger = logging.getLogger(__name__)

# Codes meaning the resource is already gone
NOT_FOUND_CODES = {
    "DBInstanceNotFound",
    "DBInstanceNotFoundFault",
    "DBClusterNotFoundFault",
    "ResourceNotFoundFault",
    "ResourceNotFoundException",
    "NoSuchKey",
    "NoSuchEntity",
}

# Codes worth retrying: resource still transitioning, or API throttling
RETRYABLE_CODES = {
    "InvalidDBInstanceState",
    "InvalidDBInstanceStateFault",
    "InvalidDBClusterStateFault",
    "InvalidResourceStateFault",
    "Throttling",
    "ThrottlingException",
    "RequestLimitExceeded",
    "TooManyRequestsException",
}

ALREADY_DELETING_MARKERS = ("already being deleted", "is being deleted", "currently being deleted")


def error_code(error: ClientError) -> str:
    return error.response.get("Error", {}).get("Code", "Unknown")


def error_message(error: ClientError) -> str:
    return error.response.get("Error", {}).get("Message", str(error))


def is_not_found(error: Exception) -> bool:
    return isinstance(error, ClientError) and error_code(error) in NOT_FOUND_CODES


def is_retryable(error: Exception) -> bool:
    return isinstance(error, ClientError) and error_code(error) in RETRYABLE_CODES


def is_already_deleting(error: Exception) -> bool:
    if not isinstance(error, ClientError):
        return False
    message = error_message(error).lower()
    return any(marker in message for marker in ALREADY_DELETING_MARKERS)


# DMS resources are deleted by ARN but named by identifier:
# resource_type -> (describe method, filter name, response key, arn field)
DMS_ARN_LOOKUPS = {
    "AWS::DMS::ReplicationTask": (
        "describe_replication_tasks",
        "replication-task-id",
        "ReplicationTasks",
        "ReplicationTaskArn",
    ),
    "AWS::DMS::Endpoint": ("describe_endpoints", "endpoint-id", "Endpoints", "EndpointArn"),
    "AWS::DMS::ReplicationInstance": (
        "describe_replication_instances",
        "replication-instance-id",
        "ReplicationInstances",
        "ReplicationInstanceArn",
    ),
}


def find_dms_resource_arn(dms: Any, resource_type: str, identifier: str) -> Optional[str]:
    """Look up a DMS resource ARN by identifier; None if it does not exist."""
    describe, filter_name, response_key, arn_field = DMS_ARN_LOOKUPS[resource_type]
    try:
        response = getattr(dms, describe)(Filters=[{"Name": filter_name, "Values": [identifier]}])
    except ClientError as e:
        if is_not_found(e):
            return None
        raise
    items = response.get(response_key, [])
    return items[0][arn_field] if items else None


class ResourceDeleter:
    """AWS resource deletion for restore-run resources.

    Every deletion is idempotent: a resource that no longer exists, or is
    already being deleted, counts as deleted. Transient failures (resource
    still transitioning, throttling) are retried with exponential backoff.
    """

    # Deletion method mapping: resource_type -> (service, method, id_field)
    DELETION_METHODS = {
        "AWS::RDS::DBInstance": ("rds", "delete_db_instance", "DBInstanceIdentifier"),
        "AWS::RDS::DBCluster": ("rds", "delete_db_cluster", "DBClusterIdentifier"),
        "AWS::DMS::ReplicationTask": ("dms", "delete_replication_task", "ReplicationTaskArn"),
        "AWS::DMS::Endpoint": ("dms", "delete_endpoint", "EndpointArn"),
        "AWS::DMS::ReplicationInstance": ("dms", "delete_replication_instance", "ReplicationInstanceArn"),
        "AWS::SecretsManager::Secret": ("secretsmanager", "delete_secret", "SecretId"),
        "AWS::S3::Object": ("s3", "delete_object", "Key"),
    }

    ARN_LOOKUPS = DMS_ARN_LOOKUPS

    def __init__(
        self,
        aws_profile: Optional[str] = None,
        max_retries: int = 3,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        """Initialize resource deleter.

        Args:
            aws_profile: AWS profile name (optional)
            max_retries: Maximum number of attempts per deletion (default: 3)
            sleep: Sleep function used between retries
        """
        self.aws_profile = aws_profile
        self.max_retries = max_retries
        self.sleep = sleep
        self._clients: Dict[Tuple[str, Optional[str]], Any] = {}
        self._lock = threading.Lock()

    def client(self, service: str, region: Optional[str]) -> Any:
        """Return a cached boto3 client for ``service`` in ``region``."""
        key = (service, region)
        with self._lock:
            if key not in self._clients:
                self._clients[key] = create_boto_client(
                    service_name=service,
                    region_name=region,
                    profile_name=self.aws_profile,
                )
            return self._clients[key]

    def delete_resource(
        self,
        resource_type: str,
        resource_id: str,
        region: Optional[str],
        arn: Optional[str] = None,
    ) -> Tuple[bool, Optional[str]]:
        """Delete an AWS resource.

        Args:
            resource_type: Resource type (e.g., "AWS::RDS::DBInstance")
            resource_id: Resource identifier (object key for S3 objects)
            region: AWS region
            arn: Resource ARN (looked up from the identifier for DMS when
                missing; required for S3 objects to carry the bucket)

        Returns:
            Tuple of (success: bool, error_message: Optional[str])
        """
        if resource_type not in self.DELETION_METHODS:
            error_msg = f"Unsupported resource type: {resource_type}"
            logger.warning(error_msg)
            return (False, error_msg)

        for attempt in range(self.max_retries):
            try:
                self._attempt_deletion(resource_type, resource_id, region, arn)
                logger.info(f"Deleted {resource_type}: {resource_id}")
                return (True, None)

            except ClientError as e:
                code = error_code(e)
                if is_not_found(e):
                    logger.info(f"{resource_type} {resource_id} already deleted")
                    return (True, None)
                if is_already_deleting(e):
                    logger.info(f"{resource_type} {resource_id} already being deleted")
                    return (True, None)
                if code in RETRYABLE_CODES and attempt < self.max_retries - 1:
                    wait_time = 2**attempt
                    logger.debug(
                        f"{code} deleting {resource_id}, retrying in {wait_time}s "
                        f"(attempt {attempt + 1}/{self.max_retries})"
                    )
                    self.sleep(wait_time)
                    continue
                error_msg = f"{code}: {error_message(e)}"
                logger.warning(f"Failed to delete {resource_type} {resource_id}: {error_msg}")
                return (False, error_msg)

        error_msg = f"Failed to delete {resource_type} {resource_id} after {self.max_retries} attempts"
        logger.warning(error_msg)
        return (False, error_msg)

    def resolve_arn(self, resource_type: str, resource_id: str, region: Optional[str]) -> Optional[str]:
        """Look up the ARN of a DMS resource by identifier.

        Returns:
            ARN, or None if the resource does not exist
        """
        return find_dms_resource_arn(self.client("dms", region), resource_type, resource_id)

    def exists(self, resource_type: str, resource_id: str, region: Optional[str]) -> bool:
        """Return True while the resource can still be described."""
        if resource_type in self.ARN_LOOKUPS:
            return self.resolve_arn(resource_type, resource_id, region) is not None

        client = self.client("rds", region)
        try:
            if resource_type == "AWS::RDS::DBInstance":
                client.describe_db_instances(DBInstanceIdentifier=resource_id)
            elif resource_type == "AWS::RDS::DBCluster":
                client.describe_db_clusters(DBClusterIdentifier=resource_id)
            else:
                raise ValueError(f"Existence check not supported for {resource_type}")
        except ClientError as e:
            if is_not_found(e):
                return False
            raise
        return True

    def _attempt_deletion(
        self,
        resource_type: str,
        resource_id: str,
        region: Optional[str],
        arn: Optional[str],
    ) -> None:
        """Attempt a single deletion operation; ClientErrors propagate."""
        service, method, id_field = self.DELETION_METHODS[resource_type]

        if resource_type in self.ARN_LOOKUPS and not arn:
            arn = self.resolve_arn(resource_type, resource_id, region)
            if arn is None:
                raise ClientError(
                    {"Error": {"Code": "ResourceNotFoundFault", "Message": f"{resource_id} not found"}},
                    method,
                )

        client = self.client(service, region)
        params = self._build_deletion_params(resource_type, id_field, resource_id, arn)
        getattr(client, method)(**params)

    def _build_deletion_params(
        self,
        resource_type: str,
        id_field: str,
        resource_id: str,
        arn: Optional[str],
    ) -> Dict[str, Any]:
        """Build deletion parameters for the boto3 call."""
        if "Arn" in id_field:
            return {id_field: arn}

        if resource_type == "AWS::RDS::DBInstance":
            # Skip final snapshot for faster deletion
            return {
                id_field: resource_id,
                "SkipFinalSnapshot": True,
                "DeleteAutomatedBackups": True,
            }
        elif resource_type == "AWS::RDS::DBCluster":
            return {id_field: resource_id, "SkipFinalSnapshot": True}
        elif resource_type == "AWS::SecretsManager::Secret":
            # Immediate deletion (no recovery window)
            return {id_field: resource_id, "ForceDeleteWithoutRecovery": True}
        elif resource_type == "AWS::S3::Object":
            # arn:aws:s3:::bucket/key
            bucket = (arn or "").split(":::", 1)[-1].split("/", 1)[0]
            if not bucket:
                raise ValueError(f"S3 object {resource_id} requires an ARN carrying the bucket")
            return {"Bucket": bucket, id_field: resource_id}

        return {id_field: resource_id}
