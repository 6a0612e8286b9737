"""Audit storage for restore runs.

Stores and retrieves restore records for compliance and troubleshooting,
either as YAML files or in a DynamoDB table.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from boto3.dynamodb.types import TypeDeserializer, TypeSerializer

from ..aws.client import create_boto_client
from ..models.restore_record import RestoreRecord

logger = logging.getLogger(__name__)


def _in_range(record: RestoreRecord, since: Optional[datetime], until: Optional[datetime]) -> bool:
    submitted = record.submitted_at
    if since and submitted < _aware(since):
        return False
    if until and submitted > _aware(until):
        return False
    return True


def _aware(value: datetime) -> datetime:
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


class AuditStorage:
    """Restore record storage as YAML files.

    Records are organized by the year/month of submission and overwritten
    in place as the run progresses.

    Storage structure:
        ~/.tenant-restore/audit-logs/
            2025/
                06/
                    restore-3f2a9c1b7d4e.yaml

    Attributes:
        storage_dir: Base directory for audit logs
    """

    def __init__(self, storage_dir: Optional[str] = None) -> None:
        """Initialize audit storage.

        Args:
            storage_dir: Base directory for audit logs (default: ~/.tenant-restore/audit-logs)
        """
        if storage_dir is None:
            storage_dir = str(Path.home() / ".tenant-restore" / "audit-logs")

        self.storage_dir = Path(storage_dir).expanduser()
        self.storage_dir.mkdir(parents=True, exist_ok=True)

    def log_record(self, record: RestoreRecord) -> None:
        """Write (or overwrite) the audit log of one run.

        Args:
            record: Restore record to store
        """
        record.validate()

        year_month_dir = self.storage_dir / str(record.submitted_at.year) / f"{record.submitted_at.month:02d}"
        year_month_dir.mkdir(parents=True, exist_ok=True)

        audit_data = {
            "metadata": {
                "version": "1.0",
                "log_type": "schema_restore",
                "written_at": datetime.now(timezone.utc).isoformat(),
            },
            "record": record.to_dict(),
        }

        audit_file = year_month_dir / f"restore-{record.run_id}.yaml"
        with open(audit_file, "w") as f:
            yaml.dump(audit_data, f, default_flow_style=False, sort_keys=False)

    def get_record(self, run_id: str) -> Optional[RestoreRecord]:
        """Retrieve a run's record by ID.

        Returns:
            RestoreRecord if found, None otherwise
        """
        for audit_file in self.storage_dir.glob(f"*/*/restore-{run_id}.yaml"):
            with open(audit_file, "r") as f:
                return RestoreRecord.from_dict(yaml.safe_load(f)["record"])
        return None

    def query_records(self, since: Optional[datetime] = None, until: Optional[datetime] = None) -> List[RestoreRecord]:
        """Query records submitted within a date range.

        Args:
            since: Start date (inclusive), None for all
            until: End date (inclusive), None for all

        Returns:
            Matching records, oldest first
        """
        results = []

        for year_dir in sorted(self.storage_dir.glob("*")):
            if not year_dir.is_dir():
                continue

            for month_dir in sorted(year_dir.glob("*")):
                if not month_dir.is_dir():
                    continue

                for audit_file in sorted(month_dir.glob("restore-*.yaml")):
                    with open(audit_file, "r") as f:
                        audit_data = yaml.safe_load(f)

                    record = RestoreRecord.from_dict(audit_data["record"])
                    if _in_range(record, since, until):
                        results.append(record)

        return sorted(results, key=lambda r: r.submitted_at)


class DynamoDBAuditStorage:
    """Restore record storage in DynamoDB.

    Table key: partition ``restoreId`` (run id), sort ``timestamp``
    (submission time, ISO 8601). The full record is kept under ``record``;
    ``status``, ``targetDatabase`` and ``schemas`` are duplicated as
    top-level attributes for console browsing.
    """

    def __init__(self, table_name: str, region: Optional[str] = None, aws_profile: Optional[str] = None) -> None:
        self.table_name = table_name
        self.dynamodb = create_boto_client("dynamodb", region_name=region, profile_name=aws_profile)
        self._serializer = TypeSerializer()
        self._deserializer = TypeDeserializer()

    def _to_item(self, record: RestoreRecord) -> Dict[str, Any]:
        document = record.to_dict()
        # Floats are not accepted by the DynamoDB serializer
        document.pop("duration_seconds", None)
        item = {
            "restoreId": record.run_id,
            "timestamp": record.submitted_at.isoformat(),
            "status": record.status.value,
            "targetDatabase": record.request.get("target_database"),
            "schemas": list(record.request.get("schemas", [])),
            "record": document,
        }
        return {key: self._serializer.serialize(value) for key, value in item.items()}

    def _from_item(self, item: Dict[str, Any]) -> RestoreRecord:
        document = {key: self._deserializer.deserialize(value) for key, value in item.items()}
        return RestoreRecord.from_dict(document["record"])

    def log_record(self, record: RestoreRecord) -> None:
        """Write (or overwrite) the item of one run."""
        record.validate()
        self.dynamodb.put_item(TableName=self.table_name, Item=self._to_item(record))
        logger.debug(f"Audit record {record.run_id} written ({record.status.value})")

    def get_record(self, run_id: str) -> Optional[RestoreRecord]:
        response = self.dynamodb.query(
            TableName=self.table_name,
            KeyConditionExpression="restoreId = :id",
            ExpressionAttributeValues={":id": {"S": run_id}},
            ScanIndexForward=False,
            Limit=1,
        )
        items = response.get("Items", [])
        return self._from_item(items[0]) if items else None

    def query_records(self, since: Optional[datetime] = None, until: Optional[datetime] = None) -> List[RestoreRecord]:
        results = []
        paginator = self.dynamodb.get_paginator("scan")
        for page in paginator.paginate(TableName=self.table_name):
            for item in page.get("Items", []):
                record = self._from_item(item)
                if _in_range(record, since, until):
                    results.append(record)
        return sorted(results, key=lambda r: r.submitted_at)


def create_audit_storage(config: Any):
    """Build the audit backend selected by ``config.audit_backend``.

    Raises:
        ValueError: If the backend is unknown or its settings are missing
    """
    if config.audit_backend == "file":
        return AuditStorage(config.audit_dir)
    if config.audit_backend == "dynamodb":
        if not config.audit_table:
            raise ValueError("audit_table must be configured for the dynamodb audit backend")
        return DynamoDBAuditStorage(config.audit_table, region=config.region, aws_profile=config.aws_profile)
    raise ValueError(f"Unknown audit backend '{config.audit_backend}' (expected 'dynamodb' or 'file')")
