"""Migration unit model.

One schema-scoped data copy task from the ephemeral database to production.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional


class TaskState(Enum):
    """Migration unit status with state transitions.

    State transitions:
        created → connectivity-verified → running → succeeded
        created → failed (connectivity)
        running → failed
    """

    CREATED = "created"
    CONNECTIVITY_VERIFIED = "connectivity-verified"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (TaskState.SUCCEEDED, TaskState.FAILED)


@dataclass
class MigrationUnit:
    """Migration unit entity.

    Attributes:
        schema: Source schema on the ephemeral database
        target_schema: Destination schema on production (schema_runId)
        task_state: Current status
        source_endpoint_arn: Replication endpoint for the ephemeral database
        target_endpoint_arn: Replication endpoint for production
        task_arn: Replication task ARN
        tables_loaded: Tables fully copied (from task statistics)
        tables_errored: Tables that failed (from task statistics)
        error: Failure reason when task_state is failed
    """

    schema: str
    target_schema: str
    task_state: TaskState = TaskState.CREATED
    source_endpoint_arn: Optional[str] = None
    target_endpoint_arn: Optional[str] = None
    task_arn: Optional[str] = None
    tables_loaded: int = 0
    tables_errored: int = 0
    error: Optional[str] = None

    def mark_failed(self, error: str) -> None:
        self.task_state = TaskState.FAILED
        self.error = error

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "schema": self.schema,
            "target_schema": self.target_schema,
            "task_state": self.task_state.value,
            "source_endpoint_arn": self.source_endpoint_arn,
            "target_endpoint_arn": self.target_endpoint_arn,
            "task_arn": self.task_arn,
            "tables_loaded": self.tables_loaded,
            "tables_errored": self.tables_errored,
            "error": self.error,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "MigrationUnit":
        """Create from dictionary."""
        return cls(
            schema=data["schema"],
            target_schema=data["target_schema"],
            task_state=TaskState(data.get("task_state", TaskState.CREATED.value)),
            source_endpoint_arn=data.get("source_endpoint_arn"),
            target_endpoint_arn=data.get("target_endpoint_arn"),
            task_arn=data.get("task_arn"),
            tables_loaded=data.get("tables_loaded", 0),
            tables_errored=data.get("tables_errored", 0),
            error=data.get("error"),
        )
