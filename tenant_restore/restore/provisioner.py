"""Ephemeral database provisioning.

Detects whether production is a single instance or a cluster, restores a
disposable copy from a snapshot or point in time, and waits until it is
available.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

from botocore.exceptions import ClientError

from ..aws.client import create_boto_client
from ..cli.config import Config
from ..models.ephemeral_database import Architecture, DatabaseState, EphemeralDatabase
from ..models.restore_request import PointInTime, RecoveryPoint, Snapshot
from ..utils.polling import poll_until, retry_with_backoff
from .deleter import error_code
from .errors import PhaseTimeoutError, ProvisioningError
from .naming import ResourceNames

logger = logging.getLogger(__name__)

FAILED_STATUSES = {
    "failed",
    "incompatible-restore",
    "incompatible-parameters",
    "storage-full",
    "inaccessible-encryption-credentials",
}

TRANSIENT_CREATE_CODES = {
    "Throttling",
    "ThrottlingException",
    "RequestLimitExceeded",
    "InsufficientDBInstanceCapacity",
    "InsufficientDBInstanceCapacityFault",
    "InsufficientDBClusterCapacityFault",
    "InvalidDBInstanceState",
    "InvalidDBInstanceStateFault",
    "InvalidDBClusterStateFault",
}

ALREADY_EXISTS_CODES = {"DBInstanceAlreadyExists", "DBInstanceAlreadyExistsFault", "DBClusterAlreadyExistsFault"}


def _is_transient(error: Exception) -> bool:
    return isinstance(error, ClientError) and error_code(error) in TRANSIENT_CREATE_CODES


@dataclass
class SourceDatabase:
    """Production database as seen by detection."""

    identifier: str
    architecture: Architecture
    engine: str
    instance_class: Optional[str] = None
    cluster_instance_class: Optional[str] = None

    @property
    def is_aurora(self) -> bool:
        return self.engine.startswith("aurora")


class EphemeralDatabaseProvisioner:
    """Creates and waits for the ephemeral clone of production.

    Restore variants are dispatched through ``RESTORE_OPERATIONS``, keyed by
    (architecture, recovery point kind).
    """

    RESTORE_OPERATIONS = {
        (Architecture.SINGLE_INSTANCE, "snapshot"): "_restore_instance_from_snapshot",
        (Architecture.SINGLE_INSTANCE, "point-in-time"): "_restore_instance_to_point_in_time",
        (Architecture.CLUSTER, "snapshot"): "_restore_cluster_from_snapshot",
        (Architecture.CLUSTER, "point-in-time"): "_restore_cluster_to_point_in_time",
    }

    def __init__(
        self,
        config: Config,
        names: ResourceNames,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.config = config
        self.names = names
        self.sleep = sleep
        self.clock = clock
        self.rds = create_boto_client("rds", region_name=config.region, profile_name=config.aws_profile)

    def detect(self) -> SourceDatabase:
        """Classify production as single-instance or cluster.

        An instance that belongs to a DB cluster counts as a cluster.

        Raises:
            ProvisioningError: If no source identifier is configured or it cannot be described
        """
        try:
            if self.config.source_cluster_identifier:
                return self._describe_source_cluster(self.config.source_cluster_identifier)

            if not self.config.source_instance_identifier:
                raise ProvisioningError("No source instance or cluster identifier configured")

            response = self.rds.describe_db_instances(DBInstanceIdentifier=self.config.source_instance_identifier)
        except ClientError as e:
            raise ProvisioningError(f"Could not describe production database: {e}") from e

        instance = response["DBInstances"][0]
        if instance.get("DBClusterIdentifier"):
            logger.info(
                f"Instance {instance['DBInstanceIdentifier']} is a member of cluster {instance['DBClusterIdentifier']}"
            )
            try:
                source = self._describe_source_cluster(instance["DBClusterIdentifier"])
            except ClientError as e:
                raise ProvisioningError(f"Could not describe production cluster: {e}") from e
            source.cluster_instance_class = instance.get("DBInstanceClass")
            return source

        return SourceDatabase(
            identifier=instance["DBInstanceIdentifier"],
            architecture=Architecture.SINGLE_INSTANCE,
            engine=instance["Engine"],
            instance_class=instance.get("DBInstanceClass"),
        )

    def _describe_source_cluster(self, cluster_id: str) -> SourceDatabase:
        cluster = self.rds.describe_db_clusters(DBClusterIdentifier=cluster_id)["DBClusters"][0]
        return SourceDatabase(
            identifier=cluster["DBClusterIdentifier"],
            architecture=Architecture.CLUSTER,
            engine=cluster["Engine"],
            cluster_instance_class=cluster.get("DBClusterInstanceClass"),
        )

    def provision(self, source: SourceDatabase, recovery_point: RecoveryPoint) -> EphemeralDatabase:
        """Start the restore and wait until the clone is available.

        Raises:
            ProvisioningError: If the restore call fails or the clone enters a failed state
            PhaseTimeoutError: If the clone is not available within the provisioning bound
        """
        database = EphemeralDatabase(
            run_id=self.names.run_id,
            identifier=self.names.database_identifier,
            architecture=source.architecture,
            source_method=recovery_point.kind,
            engine=source.engine,
        )

        self.start_restore(source, recovery_point, database)
        return self.wait_until_available(database)

    def start_restore(self, source: SourceDatabase, recovery_point: RecoveryPoint, database: EphemeralDatabase) -> None:
        """Issue the restore call(s) for the (architecture, recovery kind) pair."""
        operation = getattr(self, self.RESTORE_OPERATIONS[(source.architecture, recovery_point.kind)])
        logger.info(
            f"Restoring {source.architecture.value} {source.identifier} from {recovery_point.kind} "
            f"as {database.identifier}"
        )

        self._create(lambda: operation(source, recovery_point), f"restore of {database.identifier}")

        if source.architecture == Architecture.CLUSTER and source.is_aurora:
            database.instance_identifier = self.names.cluster_instance_identifier
            self._create(
                lambda: self.rds.create_db_instance(
                    DBInstanceIdentifier=database.instance_identifier,
                    DBClusterIdentifier=database.identifier,
                    Engine=source.engine,
                    DBInstanceClass=self.config.cluster_instance_class,
                    PubliclyAccessible=False,
                    Tags=self._tags(),
                ),
                f"writer instance {database.instance_identifier}",
            )

        database.state = DatabaseState.PROVISIONING

    def _create(self, call: Callable[[], Any], description: str) -> None:
        try:
            retry_with_backoff(
                call,
                description=description,
                is_retryable=_is_transient,
                max_attempts=self.config.max_retries,
                base_delay=5.0,
                sleep=self.sleep,
            )
        except ClientError as e:
            if error_code(e) in ALREADY_EXISTS_CODES:
                logger.info(f"{description} already requested, waiting for it")
                return
            raise ProvisioningError(f"{description} failed: {e}") from e

    def _tags(self):
        return self.names.tags(self.config.tags)

    def _network(self) -> Dict[str, Any]:
        params: Dict[str, Any] = {"DeletionProtection": False}
        if self.config.db_subnet_group:
            params["DBSubnetGroupName"] = self.config.db_subnet_group
        if self.config.db_security_group_ids:
            params["VpcSecurityGroupIds"] = list(self.config.db_security_group_ids)
        return params

    def _instance_params(self, source: SourceDatabase) -> Dict[str, Any]:
        params = self._network()
        params.update(PubliclyAccessible=False, MultiAZ=False, Tags=self._tags())
        instance_class = self.config.db_instance_class or source.instance_class
        if instance_class:
            params["DBInstanceClass"] = instance_class
        return params

    def _cluster_params(self, source: SourceDatabase) -> Dict[str, Any]:
        params = self._network()
        params.update(Engine=source.engine, Tags=self._tags())
        if not source.is_aurora:
            # Multi-AZ DB clusters take their instance class at restore time
            params["DBClusterInstanceClass"] = (
                source.cluster_instance_class or self.config.db_instance_class or self.config.cluster_instance_class
            )
            params["PubliclyAccessible"] = False
        return params

    def _restore_instance_from_snapshot(self, source: SourceDatabase, recovery_point: Snapshot) -> Any:
        return self.rds.restore_db_instance_from_db_snapshot(
            DBInstanceIdentifier=self.names.database_identifier,
            DBSnapshotIdentifier=recovery_point.snapshot_id,
            **self._instance_params(source),
        )

    def _restore_instance_to_point_in_time(self, source: SourceDatabase, recovery_point: PointInTime) -> Any:
        return self.rds.restore_db_instance_to_point_in_time(
            SourceDBInstanceIdentifier=source.identifier,
            TargetDBInstanceIdentifier=self.names.database_identifier,
            RestoreTime=recovery_point.timestamp,
            **self._instance_params(source),
        )

    def _restore_cluster_from_snapshot(self, source: SourceDatabase, recovery_point: Snapshot) -> Any:
        return self.rds.restore_db_cluster_from_snapshot(
            DBClusterIdentifier=self.names.database_identifier,
            SnapshotIdentifier=recovery_point.snapshot_id,
            **self._cluster_params(source),
        )

    def _restore_cluster_to_point_in_time(self, source: SourceDatabase, recovery_point: PointInTime) -> Any:
        params = self._cluster_params(source)
        # The engine is inherited from the source cluster
        params.pop("Engine")
        return self.rds.restore_db_cluster_to_point_in_time(
            DBClusterIdentifier=self.names.database_identifier,
            SourceDBClusterIdentifier=source.identifier,
            RestoreToTime=recovery_point.timestamp,
            **params,
        )

    def wait_until_available(self, database: EphemeralDatabase) -> EphemeralDatabase:
        """Poll until the clone (and its writer instance) is available.

        Raises:
            ProvisioningError: On a failed status
            PhaseTimeoutError: When the provisioning bound is exceeded
        """
        if database.architecture == Architecture.CLUSTER:
            check = lambda: self._check_cluster(database)  # noqa: E731
        else:
            check = lambda: self._check_instance(database.identifier, database)  # noqa: E731

        try:
            poll_until(
                check,
                description=f"database {database.identifier} to become available",
                interval=self.config.provision_poll_interval,
                timeout=self.config.provision_timeout,
                sleep=self.sleep,
                clock=self.clock,
                timeout_error=PhaseTimeoutError,
            )
        except (ProvisioningError, PhaseTimeoutError):
            database.state = DatabaseState.FAILED
            raise

        database.state = DatabaseState.AVAILABLE
        logger.info(f"Database {database.identifier} available at {database.endpoint}:{database.port}")
        return database

    def _check_instance(self, identifier: str, database: Optional[EphemeralDatabase] = None) -> Optional[bool]:
        try:
            instance = self.rds.describe_db_instances(DBInstanceIdentifier=identifier)["DBInstances"][0]
        except ClientError as e:
            if error_code(e) in ("DBInstanceNotFound", "DBInstanceNotFoundFault"):
                return None
            raise

        status = instance.get("DBInstanceStatus", "")
        logger.debug(f"Instance {identifier} status: {status}")
        if status in FAILED_STATUSES:
            raise ProvisioningError(f"Instance {identifier} entered status '{status}'")
        if status != "available":
            return None

        if database is not None:
            endpoint = instance.get("Endpoint") or {}
            database.endpoint = endpoint.get("Address")
            database.port = endpoint.get("Port")
        return True

    def _check_cluster(self, database: EphemeralDatabase) -> Optional[bool]:
        try:
            cluster = self.rds.describe_db_clusters(DBClusterIdentifier=database.identifier)["DBClusters"][0]
        except ClientError as e:
            if error_code(e) == "DBClusterNotFoundFault":
                return None
            raise

        status = cluster.get("Status", "")
        logger.debug(f"Cluster {database.identifier} status: {status}")
        if status in FAILED_STATUSES:
            raise ProvisioningError(f"Cluster {database.identifier} entered status '{status}'")
        if status != "available":
            return None

        if database.instance_identifier and not self._check_instance(database.instance_identifier):
            return None

        database.endpoint = cluster.get("Endpoint")
        database.port = cluster.get("Port")
        return True
