"""Run-scoped resource naming.

Every temporary resource name is derived from the run id, so compensation can
locate resources from the run id and schema list alone, even when a phase
crashed before recording an ARN.
"""

from __future__ import annotations

import hashlib
import re
from dataclasses import dataclass
from typing import Dict, List, Optional

from ..models.ddl_artifact import ArtifactKind

RUN_ID_TAG = "RestoreRunId"


def _slug(value: str) -> str:
    """Lowercase AWS-identifier-safe form of a schema name, made unique by a short hash."""
    slug = re.sub(r"[^a-z0-9]+", "-", value.lower()).strip("-") or "schema"
    digest = hashlib.sha1(value.encode("utf-8")).hexdigest()[:6]
    return f"{slug[:40].rstrip('-')}-{digest}"


@dataclass(frozen=True)
class ResourceNames:
    """Deterministic names for one run's temporary resources."""

    run_id: str
    prefix: str = "tmp-resource-"

    @property
    def base(self) -> str:
        return f"{self.prefix}{self.run_id}"

    @property
    def database_identifier(self) -> str:
        """RDS instance identifier, or cluster identifier for clusters."""
        return self.base

    @property
    def cluster_instance_identifier(self) -> str:
        """Writer instance created inside an ephemeral Aurora cluster."""
        return f"{self.base}-writer"

    @property
    def secret_name(self) -> str:
        return self.base

    @property
    def replication_instance_identifier(self) -> str:
        return self.base

    def endpoint_identifier(self, schema: str, role: str) -> str:
        """Replication endpoint for ``schema``; role is 'source' or 'target'."""
        return f"{self.base}-{_slug(schema)}-{role}"

    def task_identifier(self, schema: str) -> str:
        return f"{self.base}-{_slug(schema)}"

    def artifact_prefix(self, ddl_prefix: str, database: str) -> str:
        parts = [p.strip("/") for p in (ddl_prefix, database, self.run_id) if p and p.strip("/")]
        return "/".join(parts) + "/"

    def artifact_key(self, ddl_prefix: str, database: str, kind: ArtifactKind) -> str:
        return f"{self.artifact_prefix(ddl_prefix, database)}{kind.value}.sql"

    def owns(self, identifier: Optional[str]) -> bool:
        """True if ``identifier`` (name, ARN-free id or object key) belongs to this run."""
        if not identifier:
            return False
        return identifier.startswith(self.base) or f"/{self.run_id}/" in identifier

    def tags(self, extra: Optional[Dict[str, str]] = None) -> List[Dict[str, str]]:
        """Tag list in the Key/Value shape RDS, DMS and Secrets Manager accept."""
        tags = [{"Key": RUN_ID_TAG, "Value": self.run_id}]
        for key, value in (extra or {}).items():
            if key != RUN_ID_TAG:
                tags.append({"Key": key, "Value": value})
        return tags
