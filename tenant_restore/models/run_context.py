"""Run context for the restore saga.

Everything a run accumulates across phases (detected architecture, resource
identifiers, artifact keys, unit outcomes) lives here instead of in module or
instance globals, so a run can be persisted, inspected and compensated from
its serialized form.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from .ephemeral_database import Architecture, EphemeralDatabase
from .migration_unit import MigrationUnit, TaskState
from .restore_request import RestoreRequest
from .temporal_credential import TemporalCredential


class SagaState(Enum):
    """Restore saga states.

    State transitions:
        init → detecting → provisioning → extracting → pre-copy-applied
             → migrating → post-copy-applied → cleaning-up → succeeded
        any non-terminal state → cleaning-up → failed
    """

    INIT = "init"
    DETECTING = "detecting"
    PROVISIONING = "provisioning"
    EXTRACTING = "extracting"
    PRE_COPY_APPLIED = "pre-copy-applied"
    MIGRATING = "migrating"
    POST_COPY_APPLIED = "post-copy-applied"
    CLEANING_UP = "cleaning-up"
    SUCCEEDED = "succeeded"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (SagaState.SUCCEEDED, SagaState.FAILED)


FORWARD_ORDER = [
    SagaState.INIT,
    SagaState.DETECTING,
    SagaState.PROVISIONING,
    SagaState.EXTRACTING,
    SagaState.PRE_COPY_APPLIED,
    SagaState.MIGRATING,
    SagaState.POST_COPY_APPLIED,
    SagaState.CLEANING_UP,
]


def is_valid_transition(current: SagaState, target: SagaState) -> bool:
    """Return True if the saga may move from ``current`` to ``target``."""
    if current.is_terminal:
        return False
    if target == SagaState.CLEANING_UP:
        return current != SagaState.CLEANING_UP
    if target.is_terminal:
        return current == SagaState.CLEANING_UP
    return FORWARD_ORDER.index(target) == FORWARD_ORDER.index(current) + 1


@dataclass
class RunContext:
    """Serializable state of one restore run.

    Attributes:
        request: The accepted restore request
        state: Current saga state
        architecture: Cached production architecture (set by detection)
        engine: Production engine name (set by detection)
        target_time: Time used for credential resolution
        ephemeral_database: Clone created for the run
        credential: Run-scoped credential for the clone
        artifact_keys: Object keys of the DDL documents, by artifact kind value
        replication_instance_arn: Run-scoped replication instance
        migration_units: One per requested schema
        error: Message of the error that failed the run
        error_kind: Category of that error
        cleanup_errors: Resources compensation could not delete
        schemas_rolled_back: True once restored schemas were dropped after a failure
    """

    request: RestoreRequest
    state: SagaState = SagaState.INIT
    architecture: Optional[Architecture] = None
    engine: Optional[str] = None
    target_time: Optional[datetime] = None
    ephemeral_database: Optional[EphemeralDatabase] = None
    credential: Optional[TemporalCredential] = None
    artifact_keys: Dict[str, str] = field(default_factory=dict)
    replication_instance_arn: Optional[str] = None
    migration_units: List[MigrationUnit] = field(default_factory=list)
    error: Optional[str] = None
    error_kind: Optional[str] = None
    cleanup_errors: List[str] = field(default_factory=list)
    schemas_rolled_back: bool = False

    @property
    def run_id(self) -> str:
        return self.request.run_id

    @property
    def succeeded(self) -> bool:
        return self.state == SagaState.SUCCEEDED

    @property
    def failed(self) -> bool:
        return self.error is not None

    @property
    def all_units_succeeded(self) -> bool:
        return bool(self.migration_units) and all(
            unit.task_state == TaskState.SUCCEEDED for unit in self.migration_units
        )

    def transition(self, target: SagaState) -> None:
        """Move to ``target``.

        Raises:
            ValueError: If the transition is not allowed
        """
        if not is_valid_transition(self.state, target):
            raise ValueError(f"Invalid saga transition {self.state.value} -> {target.value}")
        self.state = target

    def record_error(self, error: Exception) -> None:
        """Remember the first error that failed the run."""
        if self.error is None:
            self.error = str(error) or error.__class__.__name__
            self.error_kind = getattr(error, "kind", "unexpected")

    def to_dict(self) -> Dict[str, Any]:
        """Convert context to dictionary for serialization."""
        return {
            "request": self.request.to_dict(),
            "state": self.state.value,
            "architecture": self.architecture.value if self.architecture else None,
            "engine": self.engine,
            "target_time": self.target_time.isoformat() if self.target_time else None,
            "ephemeral_database": self.ephemeral_database.to_dict() if self.ephemeral_database else None,
            "credential": self.credential.to_dict() if self.credential else None,
            "artifact_keys": dict(self.artifact_keys),
            "replication_instance_arn": self.replication_instance_arn,
            "migration_units": [unit.to_dict() for unit in self.migration_units],
            "error": self.error,
            "error_kind": self.error_kind,
            "cleanup_errors": list(self.cleanup_errors),
            "schemas_rolled_back": self.schemas_rolled_back,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RunContext":
        """Create context from dictionary."""
        database = data.get("ephemeral_database")
        credential = data.get("credential")
        target_time = data.get("target_time")
        architecture = data.get("architecture")
        return cls(
            request=RestoreRequest.from_dict(data["request"]),
            state=SagaState(data.get("state", SagaState.INIT.value)),
            architecture=Architecture(architecture) if architecture else None,
            engine=data.get("engine"),
            target_time=datetime.fromisoformat(target_time) if target_time else None,
            ephemeral_database=EphemeralDatabase.from_dict(database) if database else None,
            credential=TemporalCredential.from_dict(credential) if credential else None,
            artifact_keys=dict(data.get("artifact_keys") or {}),
            replication_instance_arn=data.get("replication_instance_arn"),
            migration_units=[MigrationUnit.from_dict(u) for u in data.get("migration_units") or []],
            error=data.get("error"),
            error_kind=data.get("error_kind"),
            cleanup_errors=list(data.get("cleanup_errors") or []),
            schemas_rolled_back=bool(data.get("schemas_rolled_back", False)),
        )
