"""Ephemeral database model.

Disposable RDS instance or cluster restored from a snapshot or point in time
so that historical data can be read without touching production.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional


class Architecture(Enum):
    """Production database architecture, detected once per run."""

    SINGLE_INSTANCE = "single-instance"
    CLUSTER = "cluster"


class DatabaseState(Enum):
    """Lifecycle of the ephemeral database.

    State transitions:
        requested → provisioning → available → deleting → deleted
        requested → provisioning → failed
    """

    REQUESTED = "requested"
    PROVISIONING = "provisioning"
    AVAILABLE = "available"
    DELETING = "deleting"
    DELETED = "deleted"
    FAILED = "failed"


@dataclass
class EphemeralDatabase:
    """Ephemeral database entity.

    Attributes:
        run_id: Owning restore run
        identifier: RDS instance identifier, or cluster identifier for clusters
        architecture: single-instance or cluster
        source_method: snapshot or point-in-time (mirrors the recovery point)
        engine: Database engine reported by RDS (e.g. postgres, aurora-postgresql)
        state: Current lifecycle state
        endpoint: Hostname once available
        port: Port once available
        instance_identifier: Writer instance inside a cluster (cluster only)
    """

    run_id: str
    identifier: str
    architecture: Architecture
    source_method: str
    engine: str
    state: DatabaseState = DatabaseState.REQUESTED
    endpoint: Optional[str] = None
    port: Optional[int] = None
    instance_identifier: Optional[str] = None

    @property
    def is_available(self) -> bool:
        return self.state == DatabaseState.AVAILABLE and bool(self.endpoint)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "run_id": self.run_id,
            "identifier": self.identifier,
            "architecture": self.architecture.value,
            "source_method": self.source_method,
            "engine": self.engine,
            "state": self.state.value,
            "endpoint": self.endpoint,
            "port": self.port,
            "instance_identifier": self.instance_identifier,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "EphemeralDatabase":
        """Create from dictionary."""
        return cls(
            run_id=data["run_id"],
            identifier=data["identifier"],
            architecture=Architecture(data["architecture"]),
            source_method=data["source_method"],
            engine=data["engine"],
            state=DatabaseState(data.get("state", DatabaseState.REQUESTED.value)),
            endpoint=data.get("endpoint"),
            port=data.get("port"),
            instance_identifier=data.get("instance_identifier"),
        )
