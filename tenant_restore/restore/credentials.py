"""Temporal credential resolution.

The ephemeral database carries the users and passwords production had at
the recovery point, which may differ from today's after rotations. The
resolver finds the version of the production secret that was current at
that time and publishes it as a run-scoped secret pointed at the clone.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

from botocore.exceptions import ClientError

from ..aws.client import create_boto_client
from ..models.ephemeral_database import Architecture, EphemeralDatabase
from ..models.restore_request import PointInTime, RecoveryPoint
from ..models.temporal_credential import TemporalCredential
from .errors import NoCredentialAtTime, ProvisioningError
from .naming import ResourceNames

logger = logging.getLogger(__name__)


def select_version(versions: Iterable[Dict[str, Any]], target_time: datetime) -> Optional[Dict[str, Any]]:
    """Pick the newest secret version created at or before ``target_time``.

    Versions without a creation date are ignored.

    Args:
        versions: Entries of ListSecretVersionIds ``Versions``
        target_time: Timezone-aware recovery time

    Returns:
        Selected version entry, or None if every version is newer
    """
    dated = sorted((v for v in versions if v.get("CreatedDate")), key=lambda v: v["CreatedDate"])

    selected = None
    for version in dated:
        if version["CreatedDate"] <= target_time:
            selected = version
        else:
            # Sorted ascending, so everything after is too recent as well
            break
    return selected


class CredentialResolver:
    """Creates the run-scoped credential for the ephemeral database.

    Attributes:
        source_secret_arn: Production credential secret
        names: Run-scoped resource naming
        tags: Extra tags for the created secret
    """

    def __init__(
        self,
        source_secret_arn: str,
        names: ResourceNames,
        region: Optional[str] = None,
        aws_profile: Optional[str] = None,
        tags: Optional[Dict[str, str]] = None,
    ) -> None:
        self.source_secret_arn = source_secret_arn
        self.names = names
        self.tags = tags or {}
        self.secrets = create_boto_client("secretsmanager", region_name=region, profile_name=aws_profile)
        self.rds = create_boto_client("rds", region_name=region, profile_name=aws_profile)

    def target_time(self, recovery_point: RecoveryPoint, architecture: Architecture) -> datetime:
        """Time whose credentials the clone carries.

        For snapshots this is the snapshot creation time, looked up as a DB
        snapshot or cluster snapshot depending on the architecture.

        Raises:
            ProvisioningError: If the snapshot does not exist or has no creation time
        """
        if isinstance(recovery_point, PointInTime):
            return recovery_point.timestamp

        snapshot_id = recovery_point.snapshot_id
        try:
            if architecture == Architecture.CLUSTER:
                response = self.rds.describe_db_cluster_snapshots(DBClusterSnapshotIdentifier=snapshot_id)
                snapshots = response.get("DBClusterSnapshots", [])
            else:
                response = self.rds.describe_db_snapshots(DBSnapshotIdentifier=snapshot_id)
                snapshots = response.get("DBSnapshots", [])
        except ClientError as e:
            raise ProvisioningError(f"Snapshot {snapshot_id} could not be described: {e}") from e

        created = snapshots[0].get("SnapshotCreateTime") if snapshots else None
        if created is None:
            raise ProvisioningError(f"Snapshot {snapshot_id} not found or missing creation time")

        logger.info(f"Snapshot {snapshot_id} created at {created.isoformat()}")
        return created

    def list_versions(self) -> List[Dict[str, Any]]:
        """All versions of the production secret, deprecated ones included."""
        versions: List[Dict[str, Any]] = []
        params: Dict[str, Any] = {"SecretId": self.source_secret_arn, "IncludeDeprecated": True}

        while True:
            response = self.secrets.list_secret_version_ids(**params)
            versions.extend(response.get("Versions", []))
            next_token = response.get("NextToken")
            if not next_token:
                break
            params["NextToken"] = next_token

        return versions

    def find_version(self, target_time: datetime) -> Dict[str, Any]:
        """Select the version current at ``target_time``.

        Raises:
            NoCredentialAtTime: If no version was created at or before that time
        """
        versions = self.list_versions()
        logger.debug(f"Evaluating {len(versions)} secret versions against {target_time.isoformat()}")

        selected = select_version(versions, target_time)
        if selected is None or not selected.get("VersionId"):
            raise NoCredentialAtTime(f"No secret version found that was active at {target_time.isoformat()}")

        logger.info(f"Selected secret version {selected['VersionId']} (created {selected['CreatedDate'].isoformat()})")
        return selected

    def resolve(self, target_time: datetime, database: EphemeralDatabase) -> TemporalCredential:
        """Create the run-scoped secret for ``database``.

        The historical payload is copied, its host and port pointed at the
        clone, and the clone identifier added. Re-running for the same run
        updates the existing secret instead of failing.

        Raises:
            NoCredentialAtTime: If no version was current at ``target_time``
        """
        version = self.find_version(target_time)
        version_id = version["VersionId"]

        response = self.secrets.get_secret_value(SecretId=self.source_secret_arn, VersionId=version_id)
        if not response.get("SecretString"):
            raise NoCredentialAtTime(f"Secret version {version_id} does not contain a string value")

        payload = json.loads(response["SecretString"])
        payload["host"] = database.endpoint
        if database.port:
            payload["port"] = database.port
        if database.architecture == Architecture.CLUSTER:
            payload["dbClusterIdentifier"] = database.identifier
            payload.pop("dbInstanceIdentifier", None)
        else:
            payload["dbInstanceIdentifier"] = database.identifier
            payload.pop("dbClusterIdentifier", None)

        secret_name = self.names.secret_name
        secret_string = json.dumps(payload)
        try:
            created = self.secrets.create_secret(
                Name=secret_name,
                SecretString=secret_string,
                Description=(
                    f"Credentials for restored database {database.identifier} "
                    f"(valid at {target_time.isoformat()})"
                ),
                Tags=self.names.tags(self.tags),
            )
            secret_arn = created["ARN"]
            logger.info(f"Created secret {secret_name}")
        except ClientError as e:
            if e.response.get("Error", {}).get("Code") != "ResourceExistsException":
                raise
            updated = self.secrets.put_secret_value(SecretId=secret_name, SecretString=secret_string)
            secret_arn = updated["ARN"]
            logger.info(f"Secret {secret_name} already existed, stored new value")

        return TemporalCredential(
            version_id=version_id,
            valid_at=target_time,
            secret_name=secret_name,
            secret_arn=secret_arn,
            secret_payload=payload,
        )
