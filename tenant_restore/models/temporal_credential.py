"""Temporal credential model."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Optional


@dataclass
class TemporalCredential:
    """Credential valid for the ephemeral database.

    Holds the username/password that production used at the recovery point,
    pointed at the ephemeral database host. The payload is excluded from
    ``repr`` and from ``to_dict`` so it never reaches logs or audit records.

    Attributes:
        version_id: Historical secret version the payload was copied from
        valid_at: Target time used to select the version
        secret_name: Name of the run-scoped secret
        secret_arn: ARN of the run-scoped secret once created
        secret_payload: Connection document (engine, host, port, username, password, ...)
    """

    version_id: str
    valid_at: datetime
    secret_name: str
    secret_arn: Optional[str] = None
    secret_payload: Dict[str, Any] = field(default_factory=dict, repr=False)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for serialization (payload omitted)."""
        return {
            "version_id": self.version_id,
            "valid_at": self.valid_at.isoformat(),
            "secret_name": self.secret_name,
            "secret_arn": self.secret_arn,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TemporalCredential":
        """Create from dictionary."""
        return cls(
            version_id=data["version_id"],
            valid_at=datetime.fromisoformat(data["valid_at"]),
            secret_name=data["secret_name"],
            secret_arn=data.get("secret_arn"),
        )
