"""
SQLite backing store for revision-tracked documents.

This module owns the database file, connection configuration, schema
creation and the transaction helper every multi-table write goes through.

Invariants:
    - One connection per logical operation, closed on every exit path
    - Multi-table writes run inside BEGIN IMMEDIATE ... COMMIT
    - Any exception inside a transaction (cancellation included) rolls back
      before propagating; sqlite errors surface as PersistenceError
    - At most one row per document id has stale = 0 (partial unique index)

How to change safely:
    - Schema changes must be additive (CREATE ... IF NOT EXISTS)
    - Bump SCHEMA_VERSION when adding tables or columns
    - Keep slug tables append-only; redirects depend on old rows

Table schema (per document type):
    <table>:
        - rev_id TEXT PRIMARY KEY (UUID, one per stored revision)
        - id TEXT (UUID, stable across revisions)
        - old_rev_of TEXT (id on superseded rows, NULL on the current row)
        - parent_rev_id TEXT (revision this row was branched from)
        - stale INTEGER (0/1)
        - deleted INTEGER (0/1)
        - rev_user TEXT
        - rev_date INTEGER (Unix ms)
        - rev_tags TEXT (JSON list)
        - <content columns>
        - UNIQUE (id) WHERE stale = 0

    <join table>:
        - <source>_id TEXT, <target>_id TEXT, <timestamp> INTEGER (Unix ms)
        - PRIMARY KEY (source, target)

    <type>_slugs (types with a canonicalSlugName field):
        - name TEXT PRIMARY KEY
        - <type>_id TEXT
        - base_name TEXT
        - qualifier_part TEXT
        - created_on INTEGER (Unix ms)
        - created_by TEXT
"""

from __future__ import annotations

import asyncio
import logging
import sqlite3
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

from ..errors import ConstraintError, PersistenceError
from ..schema.codec import sql_type
from ..schema.registry import DocumentRegistry
from ..schema.types import DocumentType, RelationDef

logger = logging.getLogger(__name__)


def slug_table(doc_type: DocumentType) -> str:
    """Name of the slug table for a sluggable document type."""
    return f"{doc_type.name}_slugs"


def slug_foreign_key(doc_type: DocumentType) -> str:
    """Column in the slug table referencing the document id."""
    return f"{doc_type.name}_id"


def is_sluggable(doc_type: DocumentType) -> bool:
    return doc_type.get_field("canonicalSlugName") is not None


class Database:
    """SQLite database holding every document table.

    Thread safety:
        Each database connection is created per-operation.
        SQLite handles concurrent access via WAL mode.

    Example:
        >>> db = Database("/var/lib/revstore")
        >>> await db.initialize(registry)
        >>> with db.connection() as conn:
        ...     conn.execute("SELECT count(*) FROM reviews").fetchone()
    """

    # SQLite schema version for migrations
    SCHEMA_VERSION = 1

    def __init__(
        self,
        data_dir: str,
        db_file: str = "revstore.db",
        wal_mode: bool = True,
        busy_timeout_ms: int = 5000,
        cache_size_pages: int = -64000,
    ) -> None:
        """Initialize the database handle (no file is touched yet).

        Args:
            data_dir: Directory for the SQLite database file
            db_file: Database file name
            wal_mode: Enable SQLite WAL mode
            busy_timeout_ms: SQLite busy timeout
            cache_size_pages: SQLite cache size (negative = KB)
        """
        self.data_dir = Path(data_dir)
        self.db_file = db_file
        self.wal_mode = wal_mode
        self.busy_timeout_ms = busy_timeout_ms
        self.cache_size_pages = cache_size_pages
        self._lock = asyncio.Lock()

    @property
    def path(self) -> Path:
        return self.data_dir / self.db_file

    @contextmanager
    def connection(self) -> Iterator[sqlite3.Connection]:
        """Open a configured connection for one logical operation.

        Yields:
            SQLite connection in autocommit mode (explicit transactions)
        """
        self.data_dir.mkdir(parents=True, exist_ok=True)

        conn = sqlite3.connect(
            str(self.path),
            timeout=self.busy_timeout_ms / 1000.0,
            isolation_level=None,  # Autocommit by default, explicit transactions
        )
        conn.row_factory = sqlite3.Row

        try:
            conn.execute(f"PRAGMA busy_timeout = {self.busy_timeout_ms}")
            conn.execute(f"PRAGMA cache_size = {self.cache_size_pages}")
            if self.wal_mode:
                conn.execute("PRAGMA journal_mode = WAL")
            conn.execute("PRAGMA synchronous = NORMAL")
            conn.execute("PRAGMA foreign_keys = ON")

            yield conn
        finally:
            conn.close()

    @contextmanager
    def transaction(self, operation: str) -> Iterator[sqlite3.Connection]:
        """Run a block as one atomic unit.

        Args:
            operation: Short label used in logs and PersistenceError

        Yields:
            Connection with an open IMMEDIATE transaction

        Raises:
            ConstraintError: If a constraint rejected a write
            PersistenceError: For any other sqlite error
        """
        try:
            with self.connection() as conn:
                try:
                    # Lock acquisition can fail too ("database is locked")
                    conn.execute("BEGIN IMMEDIATE")
                    yield conn
                    conn.execute("COMMIT")
                except BaseException:
                    if conn.in_transaction:
                        conn.execute("ROLLBACK")
                    raise
        except BaseException as exc:
            logger.debug(
                "Rolled back transaction",
                extra={"operation": operation, "error": type(exc).__name__},
            )
            if isinstance(exc, sqlite3.IntegrityError):
                raise ConstraintError(f"{operation} failed: {exc}", operation) from exc
            if isinstance(exc, sqlite3.Error):
                raise PersistenceError(f"{operation} failed: {exc}", operation) from exc
            raise

    def _document_table_sql(self, doc_type: DocumentType) -> str:
        columns = ",\n".join(f"    {f.column} {sql_type(f.kind)}" for f in doc_type.fields)
        table = doc_type.table
        separator = "," if columns else ""
        statements = [
            f"""
CREATE TABLE IF NOT EXISTS {table} (
    rev_id TEXT PRIMARY KEY,
    id TEXT NOT NULL,
    old_rev_of TEXT,
    parent_rev_id TEXT,
    stale INTEGER NOT NULL DEFAULT 0,
    deleted INTEGER NOT NULL DEFAULT 0,
    rev_user TEXT NOT NULL,
    rev_date INTEGER NOT NULL,
    rev_tags TEXT NOT NULL DEFAULT '[]'{separator}
{columns}
);""",
            f"CREATE UNIQUE INDEX IF NOT EXISTS idx_{table}_current ON {table}(id) WHERE stale = 0;",
            f"CREATE INDEX IF NOT EXISTS idx_{table}_history ON {table}(id, rev_date);",
        ]
        if doc_type.get_field("createdOn"):
            statements.append(
                f"CREATE INDEX IF NOT EXISTS idx_{table}_created "
                f"ON {table}(created_on DESC) WHERE stale = 0 AND deleted = 0;"
            )
        return "\n".join(statements)

    def _join_table_sql(self, relation: RelationDef) -> str:
        table = relation.join_table
        return f"""
CREATE TABLE IF NOT EXISTS {table} (
    {relation.source_column} TEXT NOT NULL,
    {relation.target_column} TEXT NOT NULL,
    {relation.timestamp_column} INTEGER NOT NULL,
    PRIMARY KEY ({relation.source_column}, {relation.target_column})
);
CREATE INDEX IF NOT EXISTS idx_{table}_{relation.target_column}
    ON {table}({relation.target_column});"""

    def _slug_table_sql(self, doc_type: DocumentType) -> str:
        table = slug_table(doc_type)
        foreign_key = slug_foreign_key(doc_type)
        return f"""
CREATE TABLE IF NOT EXISTS {table} (
    name TEXT PRIMARY KEY,
    {foreign_key} TEXT NOT NULL,
    base_name TEXT NOT NULL,
    qualifier_part TEXT,
    created_on INTEGER NOT NULL,
    created_by TEXT
);
CREATE INDEX IF NOT EXISTS idx_{table}_document ON {table}({foreign_key});
CREATE INDEX IF NOT EXISTS idx_{table}_base ON {table}(base_name, created_on DESC);"""

    def _create_schema(self, conn: sqlite3.Connection, registry: DocumentRegistry) -> None:
        """Create database schema for every registered type."""
        parts = [
            """
CREATE TABLE IF NOT EXISTS schema_version (
    version INTEGER PRIMARY KEY,
    applied_at INTEGER NOT NULL
);"""
        ]
        join_tables: set[str] = set()
        for doc_type in registry.types():
            parts.append(self._document_table_sql(doc_type))
            if is_sluggable(doc_type):
                parts.append(self._slug_table_sql(doc_type))
            for relation in doc_type.relations:
                if relation.join_table not in join_tables:
                    join_tables.add(relation.join_table)
                    parts.append(self._join_table_sql(relation))
        parts.append(
            f"""
INSERT OR IGNORE INTO schema_version (version, applied_at)
VALUES ({self.SCHEMA_VERSION}, strftime('%s', 'now') * 1000);"""
        )
        conn.executescript("\n".join(parts))

    async def initialize(self, registry: DocumentRegistry) -> None:
        """Create the database file and schema if they don't exist.

        Args:
            registry: Registry holding every document type to store
        """
        async with self._lock:
            with self.connection() as conn:
                self._create_schema(conn, registry)
        logger.info(f"Initialized document database: {self.path}")
