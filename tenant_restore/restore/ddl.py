"""DDL splitting, schema renaming and classification.

Takes a ``pg_dump --schema-only`` script, renames every restored schema to
``<schema><suffix>``, splits the script into statements and partitions them
into the statements needed before bulk copy (pre-copy) and those applied
after it (post-copy).

Statement boundaries respect dollar-quoted bodies, ``BEGIN ATOMIC ... END``
routine bodies, quoted strings, quoted identifiers and comments, so a
function body containing ``;`` stays one statement.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from enum import Enum
from typing import Iterable, List, Optional, Pattern, Sequence, Tuple

from ..models.ddl_artifact import DDLArtifactSet

logger = logging.getLogger(__name__)

DOLLAR_QUOTE = re.compile(r"\$([A-Za-z_][A-Za-z0-9_]*)?\$")
LINE_COMMENT = re.compile(r"--[^\n]*")
BLOCK_COMMENT = re.compile(r"/\*.*?\*/", re.DOTALL)
WHITESPACE = re.compile(r"\s+")
WORD = re.compile(r"[^\W\d][\w$]*")
BEGIN_ATOMIC = re.compile(r"BEGIN\s+ATOMIC(?![\w$])", re.IGNORECASE)
SCHEMA_DECLARATION = re.compile(r'^CREATE\s+SCHEMA\s+(?:IF\s+NOT\s+EXISTS\s+)?("[^"]*"|[^\s;]+)', re.IGNORECASE)

# Identifier or quoted identifier, optionally schema-qualified
_NAME = r'(?:"[^"]*"|[A-Z0-9_$]+)(?:\.(?:"[^"]*"|[A-Z0-9_$]+))*'
_ALTER_TABLE = rf"^ALTER TABLE (?:IF EXISTS )?(?:ONLY )?{_NAME} "


class Phase(Enum):
    """When a statement is applied relative to the data copy."""

    PRE_COPY = "pre-copy"
    POST_COPY = "post-copy"


@dataclass(frozen=True)
class Classification:
    """Result of classifying one statement."""

    phase: Phase
    category: str

    @property
    def unclassified(self) -> bool:
        return self.category == "unclassified"


# Ordered: the first matching rule wins. Patterns run against the
# comment-free, whitespace-collapsed, upper-cased statement.
CLASSIFICATION_RULES: Sequence[Tuple[Pattern[str], Phase, str]] = [
    # Session configuration emitted at the top of every dump
    (re.compile(r"^SET "), Phase.PRE_COPY, "session"),
    (re.compile(r"^SELECT PG_CATALOG\.SET_CONFIG\("), Phase.PRE_COPY, "session"),
    # Ownership and privileges
    (re.compile(r"^ALTER .* OWNER TO "), Phase.POST_COPY, "ownership"),
    (re.compile(r"^(GRANT|REVOKE) "), Phase.POST_COPY, "privileges"),
    (re.compile(r"^ALTER DEFAULT PRIVILEGES "), Phase.POST_COPY, "privileges"),
    (re.compile(r"^COMMENT ON "), Phase.POST_COPY, "comment"),
    (re.compile(r"^SECURITY LABEL "), Phase.POST_COPY, "comment"),
    # Foundation objects
    (re.compile(r"^CREATE SCHEMA "), Phase.PRE_COPY, "schema"),
    (re.compile(r"^CREATE EXTENSION "), Phase.PRE_COPY, "extension"),
    (re.compile(r"^CREATE (OR REPLACE )?(TRUSTED )?(PROCEDURAL )?LANGUAGE "), Phase.PRE_COPY, "language"),
    (re.compile(r"^CREATE TYPE "), Phase.PRE_COPY, "type"),
    (re.compile(r"^CREATE DOMAIN "), Phase.PRE_COPY, "domain"),
    (re.compile(r"^CREATE COLLATION "), Phase.PRE_COPY, "collation"),
    (re.compile(r"^CREATE (DEFAULT )?CONVERSION "), Phase.PRE_COPY, "conversion"),
    (re.compile(r"^CREATE TEXT SEARCH "), Phase.PRE_COPY, "text-search"),
    (re.compile(r"^CREATE CAST "), Phase.PRE_COPY, "cast"),
    (re.compile(r"^CREATE OPERATOR "), Phase.PRE_COPY, "operator"),
    (re.compile(r"^CREATE (OR REPLACE )?AGGREGATE "), Phase.PRE_COPY, "aggregate"),
    (re.compile(r"^CREATE (OR REPLACE )?(FUNCTION|PROCEDURE) "), Phase.PRE_COPY, "function"),
    (re.compile(r"^ALTER (FUNCTION|PROCEDURE|AGGREGATE) "), Phase.PRE_COPY, "function"),
    (re.compile(r"^ALTER TYPE "), Phase.PRE_COPY, "type"),
    (re.compile(r"^ALTER DOMAIN "), Phase.PRE_COPY, "domain"),
    (re.compile(r"^CREATE (TEMP |TEMPORARY )?SEQUENCE "), Phase.PRE_COPY, "sequence"),
    (re.compile(r"^ALTER SEQUENCE .* OWNED BY "), Phase.PRE_COPY, "sequence"),
    (re.compile(r"^CREATE (UNLOGGED )?TABLE "), Phase.PRE_COPY, "table"),
    (re.compile(_ALTER_TABLE + rf"ADD CONSTRAINT {_NAME} PRIMARY KEY"), Phase.PRE_COPY, "primary-key"),
    (re.compile(_ALTER_TABLE + r"ATTACH PARTITION "), Phase.PRE_COPY, "partition"),
    (re.compile(_ALTER_TABLE + rf"ALTER COLUMN {_NAME} SET DEFAULT "), Phase.PRE_COPY, "default"),
    # Identity columns reject the explicit values written by the bulk copy
    (re.compile(_ALTER_TABLE + rf"ALTER COLUMN {_NAME} ADD GENERATED "), Phase.POST_COPY, "identity"),
    # Everything that references data or slows down the bulk load
    (re.compile(r"^CREATE (UNIQUE )?INDEX "), Phase.POST_COPY, "index"),
    (re.compile(r"^ALTER INDEX .* ATTACH PARTITION "), Phase.POST_COPY, "index"),
    (re.compile(_ALTER_TABLE + rf"ADD CONSTRAINT {_NAME} FOREIGN KEY"), Phase.POST_COPY, "foreign-key"),
    (re.compile(_ALTER_TABLE + rf"ADD CONSTRAINT {_NAME} (UNIQUE|CHECK|EXCLUDE)"), Phase.POST_COPY, "constraint"),
    (re.compile(r"^CREATE (OR REPLACE )?(TEMP |TEMPORARY )?(RECURSIVE )?VIEW "), Phase.POST_COPY, "view"),
    (re.compile(r"^CREATE MATERIALIZED VIEW "), Phase.POST_COPY, "view"),
    (re.compile(r"^REFRESH MATERIALIZED VIEW "), Phase.POST_COPY, "view"),
    (re.compile(r"^CREATE (OR REPLACE )?(CONSTRAINT )?TRIGGER "), Phase.POST_COPY, "trigger"),
    (re.compile(r"^CREATE EVENT TRIGGER "), Phase.POST_COPY, "trigger"),
    (re.compile(r"^CREATE (OR REPLACE )?RULE "), Phase.POST_COPY, "rule"),
    (re.compile(r"^(CREATE|ALTER) POLICY "), Phase.POST_COPY, "policy"),
    (re.compile(_ALTER_TABLE + r"(ENABLE|DISABLE|FORCE|NO FORCE) ROW LEVEL SECURITY"), Phase.POST_COPY, "policy"),
    (re.compile(_ALTER_TABLE + r"REPLICA IDENTITY "), Phase.POST_COPY, "replica-identity"),
    (re.compile(_ALTER_TABLE + r"CLUSTER ON "), Phase.POST_COPY, "index"),
    (re.compile(r"^CREATE STATISTICS "), Phase.POST_COPY, "statistics"),
]


def _skip_quoted(sql: str, i: int, quote: str, backslash_escapes: bool) -> int:
    """Return the index just past the quoted token starting at ``i``."""
    n = len(sql)
    j = i + 1
    while j < n:
        c = sql[j]
        if backslash_escapes and c == "\\":
            j += 2
            continue
        if c == quote:
            if j + 1 < n and sql[j + 1] == quote:
                j += 2
                continue
            return j + 1
        j += 1
    return n


def _skip_block_comment(sql: str, i: int) -> int:
    """Return the index just past the (possibly nested) block comment at ``i``."""
    n = len(sql)
    depth = 0
    j = i
    while j < n:
        if sql.startswith("/*", j):
            depth += 1
            j += 2
        elif sql.startswith("*/", j):
            depth -= 1
            j += 2
            if depth == 0:
                return j
        else:
            j += 1
    return n


def _is_identifier_char(c: str) -> bool:
    return c.isalnum() or c in "_$"


def _unquote(identifier: str) -> str:
    if identifier.startswith('"'):
        return identifier[1:-1].replace('""', '"')
    return identifier.lower()


def _strip_leading_noise(text: str) -> str:
    """Drop whitespace and comments in front of a statement."""
    while True:
        stripped = text.lstrip()
        if stripped.startswith("--"):
            newline = stripped.find("\n")
            text = "" if newline == -1 else stripped[newline + 1 :]
        elif stripped.startswith("/*"):
            text = stripped[_skip_block_comment(stripped, 0) :]
        else:
            return stripped.rstrip()


def split_statements(sql: str) -> List[str]:
    """Split a SQL script into statements.

    Statements keep their terminating ``;``. Leading comments and psql
    meta-commands (lines starting with a backslash, e.g. ``\\restrict``)
    are dropped.

    Args:
        sql: SQL script text

    Returns:
        List of statements in script order
    """
    statements: List[str] = []
    n = len(sql)
    i = 0
    start = 0
    has_code = False
    # Open BEGIN ATOMIC / CASE blocks of an SQL-standard routine body
    atomic_depth = 0

    while i < n:
        ch = sql[i]
        nxt = sql[i + 1] if i + 1 < n else ""

        if ch == "-" and nxt == "-":
            newline = sql.find("\n", i)
            i = n if newline == -1 else newline + 1
            continue

        if ch == "/" and nxt == "*":
            i = _skip_block_comment(sql, i)
            continue

        if ch == "\\" and not has_code:
            newline = sql.find("\n", i)
            i = n if newline == -1 else newline + 1
            start = i
            continue

        if ch == "'":
            prev = sql[i - 1] if i > 0 else ""
            before = sql[i - 2] if i > 1 else ""
            escape_string = prev in "eE" and not _is_identifier_char(before)
            i = _skip_quoted(sql, i, "'", backslash_escapes=escape_string)
            has_code = True
            continue

        if ch == '"':
            i = _skip_quoted(sql, i, '"', backslash_escapes=False)
            has_code = True
            continue

        if ch == "$" and (i == 0 or not _is_identifier_char(sql[i - 1])):
            match = DOLLAR_QUOTE.match(sql, i)
            if match:
                delimiter = match.group(0)
                close = sql.find(delimiter, match.end())
                i = n if close == -1 else close + len(delimiter)
                has_code = True
                continue

        if ch.isalpha() or ch == "_":
            word = WORD.match(sql, i)
            end = word.end() if word else i + 1
            token = sql[i:end].upper()
            if token == "BEGIN" and BEGIN_ATOMIC.match(sql, i):
                atomic_depth += 1
            elif atomic_depth and token in ("BEGIN", "CASE"):
                atomic_depth += 1
            elif atomic_depth and token == "END":
                atomic_depth -= 1
            i = end
            has_code = True
            continue

        if ch == ";" and atomic_depth:
            i += 1
            continue

        if ch == ";":
            if has_code:
                statements.append(_strip_leading_noise(sql[start : i + 1]))
            start = i + 1
            has_code = False
            i += 1
            continue

        if not ch.isspace():
            has_code = True
        i += 1

    if has_code:
        remainder = _strip_leading_noise(sql[start:])
        if remainder:
            statements.append(remainder)

    return statements


def normalize_statement(statement: str) -> str:
    """Comment-free, whitespace-collapsed, upper-cased form used for matching."""
    text = BLOCK_COMMENT.sub(" ", statement)
    text = LINE_COMMENT.sub(" ", text)
    return WHITESPACE.sub(" ", text).strip().upper()


def classify_statement(statement: str) -> Classification:
    """Decide whether a statement runs before or after the data copy.

    Statements matching no rule go to post-copy and are reported as
    unclassified.
    """
    normalized = normalize_statement(statement)
    for pattern, phase, category in CLASSIFICATION_RULES:
        if pattern.search(normalized):
            return Classification(phase=phase, category=category)
    return Classification(phase=Phase.POST_COPY, category="unclassified")


def rename_schema(sql: str, schema: str, target: str) -> str:
    """Rename every reference to ``schema`` in ``sql`` to ``target``.

    Handles schema declarations (made idempotent with IF NOT EXISTS),
    ``SCHEMA name`` clauses, qualified references (``schema.object``,
    including inside string literals such as ``nextval('schema.seq')``),
    and quoted qualified references (``"Schema".object``). Matching is
    boundary aware, so renaming ``customer`` leaves ``customer_archive``
    untouched.
    """
    name = re.escape(schema)
    quoted = re.escape(f'"{schema}"')

    def _declaration(match: "re.Match[str]") -> str:
        is_quoted = match.group(2) == '"'
        new_name = f'"{target}"' if is_quoted else target
        return f"{match.group(1)}IF NOT EXISTS {new_name}"

    sql = re.sub(
        rf'((?i:\bCREATE\s+SCHEMA)\s+)(?:(?i:IF\s+NOT\s+EXISTS)\s+)?("?){name}\2(?![\w$])',
        _declaration,
        sql,
    )
    sql = re.sub(
        rf'((?i:\bSCHEMA)\s+)("?){name}\2(?![\w$.])(?!\s+(?i:IF\s+NOT))',
        lambda m: f"{m.group(1)}{m.group(2)}{target}{m.group(2)}",
        sql,
    )
    sql = re.sub(rf"(?<![\w$.\"]){name}\.", f"{target}.", sql)
    sql = re.sub(rf"(?<![\w$.]){quoted}(?=\.)", f'"{target}"', sql)
    return sql


def rename_schemas(sql: str, schemas: Iterable[str], suffix: str) -> str:
    """Rename every schema in ``schemas`` to ``<schema><suffix>``.

    Longer names are renamed first so a schema that is a prefix of another
    cannot capture the other's references.
    """
    for schema in sorted(set(schemas), key=len, reverse=True):
        sql = rename_schema(sql, schema, f"{schema}{suffix}")
    return sql


class DDLClassifier:
    """Turns a raw schema dump into a classified DDLArtifactSet."""

    def __init__(self, run_id: str, schemas: Sequence[str], suffix: Optional[str] = None) -> None:
        """Initialize classifier.

        Args:
            run_id: Restore run identifier
            schemas: Source schemas contained in the dump
            suffix: Schema suffix (default: ``_<run_id>``)
        """
        self.run_id = run_id
        self.schemas = tuple(schemas)
        self.suffix = suffix if suffix is not None else f"_{run_id}"

    def classify(self, dump_sql: str) -> DDLArtifactSet:
        """Rename, split and partition a schema dump.

        Args:
            dump_sql: Output of ``pg_dump --schema-only`` for ``schemas``

        Returns:
            DDLArtifactSet whose pre_copy and post_copy partition complete
        """
        renamed = rename_schemas(dump_sql, self.schemas, self.suffix)
        artifacts = DDLArtifactSet(run_id=self.run_id, schemas=self.schemas)

        for statement in split_statements(renamed):
            classification = classify_statement(statement)
            artifacts.complete.append(statement)
            artifacts.categories[classification.category] = artifacts.categories.get(classification.category, 0) + 1
            declaration = SCHEMA_DECLARATION.match(statement)
            if declaration:
                artifacts.created_schemas.append(_unquote(declaration.group(1)))

            if classification.phase == Phase.PRE_COPY:
                artifacts.pre_copy.append(statement)
            else:
                artifacts.post_copy.append(statement)

            if classification.unclassified:
                artifacts.unclassified.append(statement)
                preview = WHITESPACE.sub(" ", statement)[:100]
                logger.warning(f"Unclassified statement, adding to post-copy: {preview}...")

        logger.info(
            f"Classified {len(artifacts.complete)} statements: {len(artifacts.pre_copy)} pre-copy, "
            f"{len(artifacts.post_copy)} post-copy ({len(artifacts.unclassified)} unclassified)"
        )
        return artifacts


def build_rollback_script(target_schemas: Iterable[str]) -> str:
    """DROP statements removing restored schemas from production."""
    statements = [f'DROP SCHEMA IF EXISTS "{schema}" CASCADE;' for schema in target_schemas]
    return "\n".join(statements) + "\n"
