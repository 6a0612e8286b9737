"""Structure extraction task body.

Dumps the structure of the requested schemas from the ephemeral database
with pg_dump, renames and classifies it, and uploads the documents.
"""

from __future__ import annotations

import logging
import os
import subprocess
from typing import Callable, Dict, List, Optional, Sequence

from .artifacts import DDLArtifactStore
from .ddl import DDLClassifier
from .errors import ExtractionError
from .naming import ResourceNames
from .tasks import ConnectionSettings, TaskEnvironment, load_connection_settings

logger = logging.getLogger(__name__)

PG_DUMP_OPTIONS = [
    "--schema-only",
    "--no-owner",
    "--no-privileges",
    "--no-tablespaces",
    "--no-security-labels",
    "--no-comments",
]


def build_pg_dump_command(settings: ConnectionSettings, schemas: Sequence[str]) -> List[str]:
    """pg_dump argument list for a structure-only dump of ``schemas``."""
    args = [
        "pg_dump",
        f"--host={settings.host}",
        f"--port={settings.port}",
        f"--username={settings.username}",
        f"--dbname={settings.dbname}",
        *PG_DUMP_OPTIONS,
    ]
    args.extend(f"--schema={schema}" for schema in schemas)
    return args


def run_pg_dump(settings: ConnectionSettings, schemas: Sequence[str]) -> str:
    """Run pg_dump and return the dump text.

    The password is passed through ``PGPASSWORD``, never on the command line.

    Raises:
        ExtractionError: If pg_dump is missing or exits non-zero
    """
    env = dict(os.environ, PGPASSWORD=settings.password, PGSSLMODE=os.environ.get("PGSSLMODE", "require"))
    args = build_pg_dump_command(settings, schemas)
    logger.info(f"Running pg_dump for schemas: {', '.join(schemas)}")

    try:
        result = subprocess.run(args, env=env, capture_output=True, text=True, check=False)
    except FileNotFoundError as e:
        raise ExtractionError("pg_dump executable not found") from e

    if result.returncode != 0:
        raise ExtractionError(f"pg_dump failed: {result.stderr.strip()}")

    logger.info(f"DDL extraction complete: {len(result.stdout.splitlines())} lines extracted")
    return result.stdout


class DDLExtractor:
    """Extraction task: dump, rename, classify, upload."""

    def __init__(
        self,
        environment: TaskEnvironment,
        region: Optional[str] = None,
        aws_profile: Optional[str] = None,
        dump: Callable[[ConnectionSettings, Sequence[str]], str] = run_pg_dump,
    ) -> None:
        self.environment = environment
        self.region = region
        self.aws_profile = aws_profile
        self.dump = dump

    def run(self) -> Dict[str, str]:
        """Execute the extraction.

        Returns:
            Mapping of artifact kind value to uploaded object key
        """
        env = self.environment
        if not env.target_schemas:
            raise ExtractionError("No target schemas given")

        settings = load_connection_settings(env.db_secret_arn, env.db_name, self.region, self.aws_profile)
        dump_sql = self.dump(settings, env.target_schemas)
        if not dump_sql.strip():
            raise ExtractionError("pg_dump produced an empty dump")

        classifier = DDLClassifier(env.run_id, env.target_schemas, suffix=env.recovery_suffix)
        artifacts = classifier.classify(dump_sql)
        if not artifacts.declares_structure():
            raise ExtractionError(f"No structure found for schemas {', '.join(env.target_schemas)}")

        # pg_dump fails only when every --schema pattern misses
        missing = [s for s in env.target_schemas if f"{s}{classifier.suffix}" not in artifacts.created_schemas]
        if missing:
            raise ExtractionError(f"Schemas not found in the recovered database: {', '.join(missing)}")

        store = DDLArtifactStore(env.s3_bucket, env.s3_prefix, region=self.region, aws_profile=self.aws_profile)
        keys = store.upload_set(artifacts, ResourceNames(env.run_id), env.db_name)
        logger.info(f"Uploaded DDL documents: {artifacts.stats()}")
        return keys
