"""DDL artifact set model.

The structural dump of the restored schemas, split into the statements that
must exist before bulk copy and those applied after it.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Tuple


class ArtifactKind(Enum):
    """The three documents written per run."""

    PRE_COPY = "pre-copy"
    POST_COPY = "post-copy"
    COMPLETE = "complete"
    ROLLBACK = "rollback"


DOCUMENT_HEADERS = {
    ArtifactKind.PRE_COPY: (
        "-- PRE-COPY DDL for schema-level restore\n"
        "-- Contains: schemas, extensions, types, functions, sequences, tables, primary keys\n"
    ),
    ArtifactKind.POST_COPY: (
        "-- POST-COPY DDL for schema-level restore\n"
        "-- Contains: indexes, foreign keys, constraints, views, triggers, policies, grants\n"
    ),
    ArtifactKind.COMPLETE: "-- COMPLETE renamed schema dump for schema-level restore\n",
    ArtifactKind.ROLLBACK: "-- ROLLBACK of restored schemas\n",
}


@dataclass
class DDLArtifactSet:
    """Classified DDL for one run.

    Attributes:
        run_id: Owning restore run
        schemas: Source schemas covered by the dump
        pre_copy: Statements applied before data copy
        post_copy: Statements applied after data copy
        complete: Every statement of the renamed dump, in original order
        unclassified: Post-copy statements that matched no known category
        categories: Statement count per classification category
        created_schemas: Schemas declared by the dump, as named after renaming
    """

    run_id: str
    schemas: Tuple[str, ...]
    pre_copy: List[str] = field(default_factory=list)
    post_copy: List[str] = field(default_factory=list)
    complete: List[str] = field(default_factory=list)
    unclassified: List[str] = field(default_factory=list)
    categories: Dict[str, int] = field(default_factory=dict)
    created_schemas: List[str] = field(default_factory=list)

    def render(self, kind: ArtifactKind) -> str:
        """Render one document as an executable SQL script."""
        statements = {
            ArtifactKind.PRE_COPY: self.pre_copy,
            ArtifactKind.POST_COPY: self.post_copy,
            ArtifactKind.COMPLETE: self.complete,
        }[kind]
        body = "\n\n".join(statement.strip() for statement in statements)
        return f"{DOCUMENT_HEADERS[kind]}\n{body}\n" if body else DOCUMENT_HEADERS[kind]

    def documents(self) -> Dict[ArtifactKind, str]:
        """Render all three documents."""
        return {kind: self.render(kind) for kind in (ArtifactKind.PRE_COPY, ArtifactKind.POST_COPY, ArtifactKind.COMPLETE)}

    def declares_structure(self) -> bool:
        """True if the dump created at least one schema or table."""
        return any(self.categories.get(category) for category in ("schema", "table"))

    def stats(self) -> Dict[str, int]:
        return {
            "pre_copy": len(self.pre_copy),
            "post_copy": len(self.post_copy),
            "complete": len(self.complete),
            "unclassified": len(self.unclassified),
        }
