"""Per-schema data migration with AWS DMS.

One run-scoped replication instance serves every schema. Each schema is a
migration unit with its own source and target endpoints and a full-load
task that writes into ``<schema>_<run_id>``. Units run concurrently and the
coordinator joins on all of them before reporting.
"""

from __future__ import annotations

import json
import logging
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from typing import Any, Callable, Dict, List, Optional

from botocore.exceptions import ClientError

from ..aws.client import create_boto_client
from ..cli.config import Config
from ..models.migration_unit import MigrationUnit, TaskState
from ..models.restore_request import RestoreRequest
from ..utils.polling import poll_until, retry_with_backoff
from .deleter import error_code, find_dms_resource_arn, is_retryable
from .errors import ConnectivityError, MigrationError, PhaseTimeoutError
from .naming import ResourceNames

logger = logging.getLogger(__name__)

INSTANCE_FAILED_STATUSES = {"failed", "incompatible-network", "storage-full", "inaccessible-encryption-credentials"}
FULL_LOAD_FINISHED = "FULL_LOAD_ONLY_FINISHED"

TASK_SETTINGS = {
    "TargetMetadata": {
        "SupportLobs": True,
        "FullLobMode": False,
        "LimitedSizeLobMode": True,
        "LobMaxSize": 32,
    },
    "FullLoadSettings": {
        # Reruns of a unit overwrite instead of duplicating rows
        "TargetTablePrepMode": "TRUNCATE_BEFORE_LOAD",
        "MaxFullLoadSubTasks": 8,
        "CommitRate": 10000,
    },
    "Logging": {"EnableLogging": True},
}


def build_table_mappings(schema: str, target_schema: str) -> Dict[str, Any]:
    """Select every table of ``schema`` and rename the schema to ``target_schema``."""
    return {
        "rules": [
            {
                "rule-type": "selection",
                "rule-id": "1",
                "rule-name": "include-schema",
                "object-locator": {"schema-name": schema, "table-name": "%"},
                "rule-action": "include",
            },
            {
                "rule-type": "transformation",
                "rule-id": "2",
                "rule-name": "rename-schema",
                "rule-target": "schema",
                "object-locator": {"schema-name": schema},
                "rule-action": "rename",
                "value": target_schema,
            },
        ]
    }


def _is_transient(error: Exception) -> bool:
    return isinstance(error, ConnectivityError) or is_retryable(error)


class MigrationCoordinator:
    """Runs one migration unit per schema and joins on all of them."""

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
        self.dms = create_boto_client("dms", region_name=config.region, profile_name=config.aws_profile)

    def _poll(self, check: Callable[[], Any], description: str, interval: float, timeout: float) -> Any:
        return poll_until(
            check,
            description=description,
            interval=interval,
            timeout=timeout,
            sleep=self.sleep,
            clock=self.clock,
            timeout_error=PhaseTimeoutError,
        )

    def _create_or_find(
        self,
        call: Callable[[], Dict[str, Any]],
        response_key: str,
        arn_field: str,
        resource_type: str,
        identifier: str,
    ) -> str:
        """Create a DMS resource, or return the ARN of the one a previous attempt created."""
        try:
            return call()[response_key][arn_field]
        except ClientError as e:
            if error_code(e) != "ResourceAlreadyExistsFault":
                raise
            arn = find_dms_resource_arn(self.dms, resource_type, identifier)
            if arn is None:
                raise
            logger.info(f"{identifier} already exists, reusing it")
            return arn

    def create_replication_instance(self) -> str:
        """Create the run's replication instance and wait until it is available.

        Returns:
            Replication instance ARN
        """
        identifier = self.names.replication_instance_identifier
        params: Dict[str, Any] = {
            "ReplicationInstanceIdentifier": identifier,
            "ReplicationInstanceClass": self.config.dms_instance_class,
            "AllocatedStorage": self.config.dms_allocated_storage,
            "EngineVersion": self.config.dms_engine_version,
            "MultiAZ": False,
            "PubliclyAccessible": False,
            "Tags": self.names.tags(self.config.tags),
        }
        if self.config.dms_subnet_group:
            params["ReplicationSubnetGroupIdentifier"] = self.config.dms_subnet_group
        if self.config.dms_security_group_ids:
            params["VpcSecurityGroupIds"] = list(self.config.dms_security_group_ids)

        logger.info(f"Creating replication instance {identifier}")
        arn = self._create_or_find(
            lambda: self.dms.create_replication_instance(**params),
            "ReplicationInstance",
            "ReplicationInstanceArn",
            "AWS::DMS::ReplicationInstance",
            identifier,
        )

        def check() -> Optional[bool]:
            response = self.dms.describe_replication_instances(
                Filters=[{"Name": "replication-instance-arn", "Values": [arn]}]
            )
            instances = response.get("ReplicationInstances", [])
            status = instances[0].get("ReplicationInstanceStatus") if instances else None
            logger.debug(f"Replication instance {identifier} status: {status}")
            if status in INSTANCE_FAILED_STATUSES:
                raise MigrationError(f"Replication instance {identifier} entered status '{status}'")
            return True if status == "available" else None

        self._poll(
            check,
            f"replication instance {identifier}",
            self.config.provision_poll_interval,
            self.config.provision_timeout,
        )
        logger.info(f"Replication instance {identifier} available")
        return arn

    def run(
        self,
        request: RestoreRequest,
        replication_instance_arn: str,
        source_secret_arn: str,
        target_secret_arn: str,
        engine: str = "postgres",
        units: Optional[List[MigrationUnit]] = None,
    ) -> List[MigrationUnit]:
        """Migrate every schema of ``request`` concurrently.

        Args:
            request: Restore request (schemas, database, run suffix)
            replication_instance_arn: Instance created by create_replication_instance
            source_secret_arn: Run-scoped secret for the ephemeral database
            target_secret_arn: Production credential secret
            engine: Engine reported for production
            units: Pre-built units to fill in (one per schema); built if omitted

        Returns:
            The units, all in a terminal state

        Raises:
            MigrationError: After every unit finished, if any unit failed
        """
        if units is None:
            units = [MigrationUnit(schema=s, target_schema=request.target_schema(s)) for s in request.schemas]

        workers = max(1, min(self.config.max_parallel_migrations, len(units)))
        logger.info(f"Starting {len(units)} migration unit(s) with {workers} worker(s)")

        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="migration") as executor:
            futures = {
                executor.submit(
                    self.run_unit,
                    unit,
                    replication_instance_arn,
                    request.target_database,
                    source_secret_arn,
                    target_secret_arn,
                    engine,
                ): unit
                for unit in units
            }
            for future in as_completed(futures):
                unit = futures[future]
                try:
                    future.result()
                except Exception as e:
                    unit.mark_failed(str(e) or e.__class__.__name__)
                    logger.error(f"Migration of schema {unit.schema} failed: {unit.error}")

        failed = [unit for unit in units if unit.task_state != TaskState.SUCCEEDED]
        if failed:
            detail = "; ".join(f"{unit.schema}: {unit.error}" for unit in failed)
            raise MigrationError(f"{len(failed)} of {len(units)} migration unit(s) failed: {detail}")

        logger.info(f"All {len(units)} migration unit(s) succeeded")
        return units

    def run_unit(
        self,
        unit: MigrationUnit,
        replication_instance_arn: str,
        database_name: str,
        source_secret_arn: str,
        target_secret_arn: str,
        engine: str = "postgres",
    ) -> MigrationUnit:
        """Endpoints, connectivity checks, full-load task, completion."""
        engine_name = "aurora-postgresql" if engine.startswith("aurora") else "postgres"

        unit.source_endpoint_arn = self._create_endpoint(
            unit.schema, "source", source_secret_arn, database_name, engine_name
        )
        unit.target_endpoint_arn = self._create_endpoint(
            unit.schema, "target", target_secret_arn, database_name, engine_name
        )

        # A failed check aborts the unit before any data moves
        for endpoint_arn in (unit.source_endpoint_arn, unit.target_endpoint_arn):
            self.verify_connectivity(replication_instance_arn, endpoint_arn)
        unit.task_state = TaskState.CONNECTIVITY_VERIFIED

        unit.task_arn = self._create_task(unit, replication_instance_arn)
        self._wait_for_task_ready(unit)

        self.dms.start_replication_task(
            ReplicationTaskArn=unit.task_arn,
            StartReplicationTaskType="start-replication",
        )
        unit.task_state = TaskState.RUNNING
        logger.info(f"Started replication task for schema {unit.schema} -> {unit.target_schema}")

        self._wait_for_task_completion(unit)
        return unit

    def _create_endpoint(self, schema: str, role: str, secret_arn: str, database_name: str, engine_name: str) -> str:
        identifier = self.names.endpoint_identifier(schema, role)
        settings = {
            "SecretsManagerSecretId": secret_arn,
            "SecretsManagerAccessRoleArn": self.config.dms_access_role_arn,
            "DatabaseName": database_name,
        }
        return self._create_or_find(
            lambda: self.dms.create_endpoint(
                EndpointIdentifier=identifier,
                EndpointType=role,
                EngineName=engine_name,
                DatabaseName=database_name,
                SslMode="require",
                PostgreSQLSettings=settings,
                Tags=self.names.tags(self.config.tags),
            ),
            "Endpoint",
            "EndpointArn",
            "AWS::DMS::Endpoint",
            identifier,
        )

    def verify_connectivity(self, replication_instance_arn: str, endpoint_arn: str) -> None:
        """Test one endpoint, retrying failed tests with backoff.

        Raises:
            ConnectivityError: If the endpoint still cannot connect after all attempts
        """

        def attempt() -> None:
            self.dms.test_connection(ReplicationInstanceArn=replication_instance_arn, EndpointArn=endpoint_arn)
            self._poll(
                lambda: self._connection_status(replication_instance_arn, endpoint_arn),
                f"connection test of {endpoint_arn}",
                self.config.connection_poll_interval,
                self.config.connection_timeout,
            )

        retry_with_backoff(
            attempt,
            description=f"connection test of {endpoint_arn}",
            is_retryable=_is_transient,
            max_attempts=self.config.max_retries,
            base_delay=self.config.connection_poll_interval,
            sleep=self.sleep,
        )
        logger.info(f"Endpoint {endpoint_arn} connection verified")

    def _connection_status(self, replication_instance_arn: str, endpoint_arn: str) -> Optional[str]:
        response = self.dms.describe_connections(
            Filters=[
                {"Name": "endpoint-arn", "Values": [endpoint_arn]},
                {"Name": "replication-instance-arn", "Values": [replication_instance_arn]},
            ]
        )
        connections = response.get("Connections", [])
        if not connections:
            return None
        connection = connections[0]
        status = connection.get("Status")
        if status == "successful":
            return status
        if status == "failed":
            raise ConnectivityError(
                f"Endpoint {connection.get('EndpointIdentifier', endpoint_arn)} cannot connect: "
                f"{connection.get('LastFailureMessage', 'unknown error')}"
            )
        return None

    def _create_task(self, unit: MigrationUnit, replication_instance_arn: str) -> str:
        identifier = self.names.task_identifier(unit.schema)
        return self._create_or_find(
            lambda: self.dms.create_replication_task(
                ReplicationTaskIdentifier=identifier,
                SourceEndpointArn=unit.source_endpoint_arn,
                TargetEndpointArn=unit.target_endpoint_arn,
                ReplicationInstanceArn=replication_instance_arn,
                MigrationType="full-load",
                TableMappings=json.dumps(build_table_mappings(unit.schema, unit.target_schema)),
                ReplicationTaskSettings=json.dumps(TASK_SETTINGS),
                Tags=self.names.tags(self.config.tags),
            ),
            "ReplicationTask",
            "ReplicationTaskArn",
            "AWS::DMS::ReplicationTask",
            identifier,
        )

    def _describe_task(self, task_arn: str) -> Optional[Dict[str, Any]]:
        response = self.dms.describe_replication_tasks(
            Filters=[{"Name": "replication-task-arn", "Values": [task_arn]}],
            WithoutSettings=True,
        )
        tasks = response.get("ReplicationTasks", [])
        return tasks[0] if tasks else None

    def _wait_for_task_ready(self, unit: MigrationUnit) -> None:
        def check() -> Optional[bool]:
            task = self._describe_task(unit.task_arn)  # type: ignore[arg-type]
            status = task.get("Status") if task else None
            if status == "failed":
                raise MigrationError(f"Task for {unit.schema} failed during creation: {task.get('LastFailureMessage')}")
            return True if status == "ready" else None

        self._poll(
            check,
            f"replication task for {unit.schema} to be ready",
            self.config.migration_poll_interval,
            self.config.migration_timeout,
        )

    def _wait_for_task_completion(self, unit: MigrationUnit) -> None:
        def check() -> Optional[Dict[str, Any]]:
            task = self._describe_task(unit.task_arn)  # type: ignore[arg-type]
            if not task:
                return None
            status = task.get("Status")
            stats = task.get("ReplicationTaskStats", {})
            logger.debug(
                f"Task for {unit.schema}: {status} ({stats.get('FullLoadProgressPercent', 0)}% loaded)"
            )
            return task if status in ("stopped", "failed") else None

        task = self._poll(
            check,
            f"replication task for {unit.schema} to finish",
            self.config.migration_poll_interval,
            self.config.migration_timeout,
        )

        stats = task.get("ReplicationTaskStats", {})
        unit.tables_loaded = stats.get("TablesLoaded", 0)
        unit.tables_errored = stats.get("TablesErrored", 0)
        stop_reason = task.get("StopReason", "")

        if task.get("Status") == "failed":
            raise MigrationError(f"Task for {unit.schema} failed: {task.get('LastFailureMessage', stop_reason)}")
        if FULL_LOAD_FINISHED not in stop_reason:
            raise MigrationError(f"Task for {unit.schema} stopped before full load finished: {stop_reason}")
        if unit.tables_errored:
            raise MigrationError(f"Task for {unit.schema} finished with {unit.tables_errored} errored table(s)")

        unit.task_state = TaskState.SUCCEEDED
        logger.info(f"Schema {unit.schema} migrated: {unit.tables_loaded} table(s) loaded")
