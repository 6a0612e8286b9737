"""Restore audit record model.

Durable trace of one restore run: what was asked, when each phase started,
and how it ended.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional


class RestoreStatus(Enum):
    """Final status of a restore run."""

    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


@dataclass
class RestoreRecord:
    """Restore record entity.

    Validation rules:
        - status=failed: requires error_detail
        - status=succeeded: no error_detail
        - completed_at must not precede submitted_at

    Attributes:
        run_id: Restore run identifier
        request: Snapshot of the restore request (RestoreRequest.to_dict())
        submitted_at: When the request was accepted (UTC)
        status: Current status
        phase_timestamps: Saga state name to ISO timestamp of entry
        error_detail: Error message when failed (optional)
        error_kind: Error category when failed (optional)
        cleanup_errors: Resources that could not be deleted (optional)
        completed_at: When the run reached a terminal state (optional)
    """

    run_id: str
    request: Dict[str, Any]
    submitted_at: datetime
    status: RestoreStatus = RestoreStatus.RUNNING
    phase_timestamps: Dict[str, str] = field(default_factory=dict)
    error_detail: Optional[str] = None
    error_kind: Optional[str] = None
    cleanup_errors: List[str] = field(default_factory=list)
    completed_at: Optional[datetime] = None

    @property
    def duration_seconds(self) -> Optional[float]:
        if self.completed_at is None:
            return None
        return (self.completed_at - self.submitted_at).total_seconds()

    def validate(self) -> bool:
        """Validate record invariants.

        Returns:
            True if validation passes

        Raises:
            ValueError: If any validation rule fails
        """
        if self.status == RestoreStatus.FAILED and not self.error_detail:
            raise ValueError("Failed status requires error_detail")
        if self.status == RestoreStatus.SUCCEEDED and self.error_detail:
            raise ValueError("Succeeded status cannot have error_detail")
        if self.completed_at and self.completed_at < self.submitted_at:
            raise ValueError("Completion time before submission time")
        return True

    def to_dict(self) -> Dict[str, Any]:
        """Convert record to dictionary for serialization."""
        return {
            "run_id": self.run_id,
            "request": self.request,
            "submitted_at": self.submitted_at.isoformat(),
            "status": self.status.value,
            "phase_timestamps": dict(self.phase_timestamps),
            "error_detail": self.error_detail,
            "error_kind": self.error_kind,
            "cleanup_errors": list(self.cleanup_errors),
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "duration_seconds": self.duration_seconds,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RestoreRecord":
        """Create record from dictionary."""
        completed_at = data.get("completed_at")
        return cls(
            run_id=data["run_id"],
            request=data["request"],
            submitted_at=datetime.fromisoformat(data["submitted_at"]),
            status=RestoreStatus(data.get("status", RestoreStatus.RUNNING.value)),
            phase_timestamps=dict(data.get("phase_timestamps") or {}),
            error_detail=data.get("error_detail"),
            error_kind=data.get("error_kind"),
            cleanup_errors=list(data.get("cleanup_errors") or []),
            completed_at=datetime.fromisoformat(completed_at) if completed_at else None,
        )
