"""Restore request model.

A request names the production database, the tenant schemas to bring back,
and exactly one recovery point. Requests are validated on creation and are
immutable afterwards.
"""

from __future__ import annotations

import re
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, Optional, Tuple, Union

from ..restore.errors import RequestValidationError

# PostgreSQL truncates identifiers at 63 bytes (NAMEDATALEN - 1)
MAX_IDENTIFIER_LENGTH = 63
RUN_ID_LENGTH = 12
# Unquoted identifiers only; pg_dump and PostgreSQL fold unquoted names to lower case
SCHEMA_NAME_PATTERN = re.compile(r"^[a-z_][a-z0-9_$]*$")
RUN_ID_PATTERN = re.compile(r"^[0-9a-f]{12}$")


def generate_run_id() -> str:
    """Generate a run identifier usable as a schema suffix and AWS identifier part."""
    return uuid.uuid4().hex[:RUN_ID_LENGTH]


def parse_timestamp(value: Union[str, datetime]) -> datetime:
    """Parse an ISO 8601 timestamp, treating naive values as UTC.

    Raises:
        RequestValidationError: If the value is not a valid timestamp
    """
    if isinstance(value, datetime):
        parsed = value
    else:
        text = str(value).strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            raise RequestValidationError(
                f"Invalid restore time '{value}'. Expected ISO format like '2025-06-15T14:30:00Z'"
            )

    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


@dataclass(frozen=True)
class PointInTime:
    """Restore to an explicit point in time."""

    timestamp: datetime

    @property
    def kind(self) -> str:
        return "point-in-time"

    def to_dict(self) -> Dict[str, Any]:
        return {"kind": self.kind, "restore_time": self.timestamp.isoformat()}


@dataclass(frozen=True)
class Snapshot:
    """Restore from a named snapshot."""

    snapshot_id: str

    @property
    def kind(self) -> str:
        return "snapshot"

    def to_dict(self) -> Dict[str, Any]:
        return {"kind": self.kind, "snapshot_id": self.snapshot_id}


RecoveryPoint = Union[PointInTime, Snapshot]


def recovery_point_from_dict(data: Dict[str, Any]) -> RecoveryPoint:
    """Rebuild a recovery point from its serialized form."""
    if data.get("kind") == "snapshot":
        return Snapshot(snapshot_id=data["snapshot_id"])
    return PointInTime(timestamp=parse_timestamp(data["restore_time"]))


@dataclass(frozen=True)
class RestoreRequest:
    """Validated, immutable restore request.

    Attributes:
        target_database: Database name inside the production instance
        schemas: Ordered tenant schemas to restore (non-empty, unique)
        recovery_point: PointInTime or Snapshot
        run_id: Correlation key and schema suffix for this run
        requested_by: Free-form caller identity for the audit record
    """

    target_database: str
    schemas: Tuple[str, ...]
    recovery_point: RecoveryPoint
    run_id: str = field(default_factory=generate_run_id)
    requested_by: Optional[str] = None

    @classmethod
    def create(
        cls,
        database: str,
        schemas: Iterable[str],
        restore_time: Optional[Union[str, datetime]] = None,
        snapshot_id: Optional[str] = None,
        run_id: Optional[str] = None,
        requested_by: Optional[str] = None,
    ) -> "RestoreRequest":
        """Validate inputs and build a request.

        Raises:
            RequestValidationError: If any field is missing or inconsistent
        """
        if not database or not str(database).strip():
            raise RequestValidationError("A target database name is required")

        has_time = restore_time is not None and str(restore_time).strip() != ""
        has_snapshot = snapshot_id is not None and str(snapshot_id).strip() != ""
        if has_time and has_snapshot:
            raise RequestValidationError("Provide either restore time or snapshot id, not both")
        if not has_time and not has_snapshot:
            raise RequestValidationError("Either restore time or snapshot id must be provided")

        recovery_point: RecoveryPoint
        if has_time:
            recovery_point = PointInTime(timestamp=parse_timestamp(restore_time))  # type: ignore[arg-type]
        else:
            recovery_point = Snapshot(snapshot_id=str(snapshot_id).strip())

        schema_tuple = tuple(str(s).strip() for s in schemas)
        run_id = run_id or generate_run_id()
        if not RUN_ID_PATTERN.match(run_id):
            raise RequestValidationError(
                f"Invalid run id '{run_id}': expected {RUN_ID_LENGTH} lowercase hex characters"
            )
        cls._validate_schemas(schema_tuple, run_id)

        return cls(
            target_database=str(database).strip(),
            schemas=schema_tuple,
            recovery_point=recovery_point,
            run_id=run_id,
            requested_by=requested_by,
        )

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "RestoreRequest":
        """Build a request from a workflow submission payload.

        Accepts ``{"database", "schemas", "restoreTime" | "snapshotId"}``.
        """
        schemas = payload.get("schemas") or []
        if isinstance(schemas, str):
            schemas = [s for s in schemas.split(",") if s.strip()]
        return cls.create(
            database=payload.get("database", ""),
            schemas=schemas,
            restore_time=payload.get("restoreTime"),
            snapshot_id=payload.get("snapshotId"),
            requested_by=payload.get("requestedBy"),
        )

    @staticmethod
    def _validate_schemas(schemas: Tuple[str, ...], run_id: str) -> None:
        if not schemas:
            raise RequestValidationError("At least one schema is required")

        seen = set()
        for schema in schemas:
            if schema in seen:
                raise RequestValidationError(f"Duplicate schema '{schema}' in request")
            seen.add(schema)

            if not SCHEMA_NAME_PATTERN.match(schema):
                raise RequestValidationError(
                    f"Invalid schema name '{schema}': expected a lowercase unquoted identifier"
                )

            if len(schema) + 1 + len(run_id) > MAX_IDENTIFIER_LENGTH:
                raise RequestValidationError(
                    f"Schema name '{schema}' is too long to carry the run suffix "
                    f"(max {MAX_IDENTIFIER_LENGTH - 1 - len(run_id)} characters)"
                )

    @property
    def suffix(self) -> str:
        """Suffix appended to every restored schema name."""
        return f"_{self.run_id}"

    def target_schema(self, schema: str) -> str:
        """Name of the production schema receiving ``schema``'s historical data."""
        return f"{schema}{self.suffix}"

    @property
    def target_schemas(self) -> Tuple[str, ...]:
        return tuple(self.target_schema(s) for s in self.schemas)

    def to_dict(self) -> Dict[str, Any]:
        """Convert request to dictionary for serialization."""
        return {
            "run_id": self.run_id,
            "target_database": self.target_database,
            "schemas": list(self.schemas),
            "recovery_point": self.recovery_point.to_dict(),
            "requested_by": self.requested_by,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RestoreRequest":
        """Create request from dictionary."""
        return cls(
            target_database=data["target_database"],
            schemas=tuple(data["schemas"]),
            recovery_point=recovery_point_from_dict(data["recovery_point"]),
            run_id=data["run_id"],
            requested_by=data.get("requested_by"),
        )
