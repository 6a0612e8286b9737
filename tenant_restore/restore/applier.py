"""DDL apply task body.

Downloads one document and executes it against production in a single
transaction, so a failing document leaves production untouched.
"""

from __future__ import annotations

import logging
from typing import Any, Callable, Optional

import psycopg2

from .artifacts import DDLArtifactStore
from .ddl import split_statements
from .errors import DDLApplyError
from .tasks import ConnectionSettings, TaskEnvironment, load_connection_settings

logger = logging.getLogger(__name__)

CONNECT_TIMEOUT = 30


def connect(settings: ConnectionSettings) -> Any:
    """Open a TLS connection to PostgreSQL."""
    return psycopg2.connect(
        host=settings.host,
        port=settings.port,
        dbname=settings.dbname,
        user=settings.username,
        password=settings.password,
        sslmode="require",
        connect_timeout=CONNECT_TIMEOUT,
        application_name="tenant-restore",
    )


def apply_script(
    settings: ConnectionSettings,
    sql: str,
    connector: Callable[[ConnectionSettings], Any] = connect,
) -> int:
    """Execute every statement of ``sql`` in one transaction.

    Returns:
        Number of statements executed

    Raises:
        DDLApplyError: If connecting fails or any statement fails (after rollback)
    """
    statements = split_statements(sql)
    if not statements:
        logger.info("Document contains no statements, nothing to apply")
        return 0

    try:
        conn = connector(settings)
    except psycopg2.Error as e:
        raise DDLApplyError(f"Could not connect to {settings.host}/{settings.dbname}: {e}") from e

    executed = 0
    try:
        # The connection context manager commits on success and rolls back on error
        with conn:
            with conn.cursor() as cur:
                for statement in statements:
                    cur.execute(statement)
                    executed += 1
    except psycopg2.Error as e:
        failed = statements[executed] if executed < len(statements) else ""
        logger.error(f"Statement {executed + 1}/{len(statements)} failed, transaction rolled back")
        raise DDLApplyError(f"DDL apply failed at statement {executed + 1}: {e}; statement: {failed[:200]}") from e
    finally:
        conn.close()

    logger.info(f"Applied {executed} statements")
    return executed


class DDLApplier:
    """Apply task: download a document and execute it."""

    def __init__(
        self,
        environment: TaskEnvironment,
        region: Optional[str] = None,
        aws_profile: Optional[str] = None,
        connector: Callable[[ConnectionSettings], Any] = connect,
    ) -> None:
        self.environment = environment
        self.region = region
        self.aws_profile = aws_profile
        self.connector = connector

    def run(self) -> int:
        env = self.environment
        if not env.s3_object_key:
            raise DDLApplyError("No document key given")

        store = DDLArtifactStore(env.s3_bucket, env.s3_prefix, region=self.region, aws_profile=self.aws_profile)
        try:
            sql = store.get(env.s3_object_key)
        except FileNotFoundError as e:
            raise DDLApplyError(str(e)) from e

        logger.info(f"Applying s3://{env.s3_bucket}/{env.s3_object_key} to {env.db_name}")
        settings = load_connection_settings(env.db_secret_arn, env.db_name, self.region, self.aws_profile)
        return apply_script(settings, sql, connector=self.connector)
