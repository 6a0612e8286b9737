"""Data models for restore runs."""

from __future__ import annotations

from .ddl_artifact import ArtifactKind, DDLArtifactSet
from .ephemeral_database import Architecture, DatabaseState, EphemeralDatabase
from .migration_unit import MigrationUnit, TaskState
from .restore_record import RestoreRecord, RestoreStatus
from .restore_request import PointInTime, RecoveryPoint, RestoreRequest, Snapshot
from .run_context import RunContext, SagaState
from .temporal_credential import TemporalCredential

__all__ = [
    "Architecture",
    "ArtifactKind",
    "DDLArtifactSet",
    "DatabaseState",
    "EphemeralDatabase",
    "MigrationUnit",
    "PointInTime",
    "RecoveryPoint",
    "RestoreRecord",
    "RestoreRequest",
    "RestoreStatus",
    "RunContext",
    "SagaState",
    "Snapshot",
    "TaskState",
    "TemporalCredential",
]
