"""
Durable SQLite storage for the config store.

Every collection lives in one ``documents`` table; the commit counter lives in
``store_meta``. A commit writes all upserts, all deletes and the revision bump
in a single transaction, guarded by a compare-and-swap on the stored revision
so two members sharing the file can never overwrite each other.

Invariants:
    - The revision in store_meta only ever increases by one per commit
    - A commit either applies completely or not at all
    - Documents are stored as JSON text, keyed by (collection, doc_id)

How to change safely:
    - Schema migrations must be backward compatible
    - Bump SCHEMA_VERSION and add an idempotent migration step in _create_schema

Table schema:
    documents:
        - collection TEXT
        - doc_id TEXT
        - doc_json TEXT
        - updated_at INTEGER (Unix ms)
        - PRIMARY KEY (collection, doc_id)

    store_meta:
        - key TEXT PRIMARY KEY
        - value TEXT
"""

from __future__ import annotations

import json
import logging
import sqlite3
import time
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)


class RevisionMismatchError(Exception):
    """The stored revision is not the one the commit was computed against."""

    def __init__(self, expected: int, actual: int) -> None:
        super().__init__(f"Stored revision is {actual}, expected {expected}")
        self.expected = expected
        self.actual = actual


class DurableStore:
    """SQLite file holding every configuration document.

    Thread safety:
        A connection is opened per operation. SQLite serializes writers;
        BEGIN IMMEDIATE takes the write lock before the revision is read.

    Example:
        >>> durable = DurableStore("/var/lib/strata/config.db")
        >>> durable.initialize()
        >>> collections, revision = durable.load_all()
    """

    SCHEMA_VERSION = 1

    def __init__(
        self,
        db_path: str,
        wal_mode: bool = True,
        busy_timeout_ms: int = 5000,
    ) -> None:
        """Initialize the durable store.

        Args:
            db_path: SQLite database file
            wal_mode: Enable SQLite WAL mode
            busy_timeout_ms: SQLite busy timeout
        """
        self.db_path = Path(db_path)
        self.wal_mode = wal_mode
        self.busy_timeout_ms = busy_timeout_ms

    @contextmanager
    def _get_connection(self) -> Iterator[sqlite3.Connection]:
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(
            str(self.db_path),
            timeout=self.busy_timeout_ms / 1000.0,
            isolation_level=None,  # explicit transactions only
        )
        conn.row_factory = sqlite3.Row
        try:
            conn.execute(f"PRAGMA busy_timeout = {self.busy_timeout_ms}")
            if self.wal_mode:
                conn.execute("PRAGMA journal_mode = WAL")
            conn.execute("PRAGMA synchronous = NORMAL")
            yield conn
        finally:
            conn.close()

    def _create_schema(self, conn: sqlite3.Connection) -> None:
        conn.executescript(f"""
            CREATE TABLE IF NOT EXISTS documents (
                collection TEXT NOT NULL,
                doc_id TEXT NOT NULL,
                doc_json TEXT NOT NULL,
                updated_at INTEGER NOT NULL,
                PRIMARY KEY (collection, doc_id)
            );

            CREATE TABLE IF NOT EXISTS store_meta (
                key TEXT PRIMARY KEY,
                value TEXT NOT NULL
            );

            INSERT OR IGNORE INTO store_meta (key, value) VALUES ('revision', '0');
            INSERT OR IGNORE INTO store_meta (key, value)
                VALUES ('schema_version', '{self.SCHEMA_VERSION}');
        """)

    def initialize(self) -> None:
        """Create the database file and schema if missing."""
        with self._get_connection() as conn:
            self._create_schema(conn)
        logger.info("Initialized config database", extra={"db_path": str(self.db_path)})

    @staticmethod
    def _revision(conn: sqlite3.Connection) -> int:
        row = conn.execute("SELECT value FROM store_meta WHERE key = 'revision'").fetchone()
        return int(row["value"]) if row else 0

    def read_revision(self) -> int:
        with self._get_connection() as conn:
            return self._revision(conn)

    def load_all(self) -> tuple[dict[str, dict[str, dict[str, Any]]], int]:
        """Read every document and the current revision in one read transaction.

        Returns:
            (collection -> doc_id -> document, revision)
        """
        collections: dict[str, dict[str, dict[str, Any]]] = {}
        with self._get_connection() as conn:
            conn.execute("BEGIN")
            try:
                revision = self._revision(conn)
                cursor = conn.execute(
                    "SELECT collection, doc_id, doc_json FROM documents ORDER BY rowid"
                )
                for row in cursor:
                    collections.setdefault(row["collection"], {})[row["doc_id"]] = json.loads(
                        row["doc_json"]
                    )
                conn.execute("COMMIT")
            except Exception:
                conn.execute("ROLLBACK")
                raise
        return collections, revision

    def commit(
        self,
        expected_revision: int,
        new_revision: int,
        upserts: list[tuple[str, dict[str, Any]]],
        deletes: list[tuple[str, str]],
    ) -> None:
        """Write one batch atomically.

        Args:
            expected_revision: Revision the batch was computed against
            new_revision: Revision to store on success
            upserts: (collection, full document) pairs
            deletes: (collection, doc_id) pairs

        Raises:
            RevisionMismatchError: If another writer committed first
        """
        now = int(time.time() * 1000)
        with self._get_connection() as conn:
            conn.execute("BEGIN IMMEDIATE")
            try:
                actual = self._revision(conn)
                if actual != expected_revision:
                    raise RevisionMismatchError(expected_revision, actual)

                for collection, doc in upserts:
                    conn.execute(
                        """
                        INSERT INTO documents (collection, doc_id, doc_json, updated_at)
                        VALUES (?, ?, ?, ?)
                        ON CONFLICT (collection, doc_id)
                        DO UPDATE SET doc_json = excluded.doc_json,
                                      updated_at = excluded.updated_at
                        """,
                        (collection, doc["_id"], json.dumps(doc, sort_keys=True), now),
                    )

                for collection, doc_id in deletes:
                    conn.execute(
                        "DELETE FROM documents WHERE collection = ? AND doc_id = ?",
                        (collection, doc_id),
                    )

                conn.execute(
                    "UPDATE store_meta SET value = ? WHERE key = 'revision'",
                    (str(new_revision),),
                )
                conn.execute("COMMIT")

            except Exception:
                conn.execute("ROLLBACK")
                raise

        logger.debug(
            "Committed config batch",
            extra={
                "revision": new_revision,
                "upserts": len(upserts),
                "deletes": len(deletes),
            },
        )
