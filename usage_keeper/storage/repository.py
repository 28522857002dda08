"""
Durable usage record store.

Owns the on-disk usage_records table. Rows are append-only: duplicates of
an existing dedup key are silently ignored and nothing is ever updated or
deleted.
"""

import logging
import sqlite3
import threading
from pathlib import Path
from typing import List, Optional, Tuple

from ..errors import ConfigError, ReadError, SchemaError, StoreError, WriteError
from .db import deadline, get_connection
from .dedup import dedup_key
from .models import RequestDetail, StatisticsSnapshot, TokenStats
from .timestamps import format_timestamp, parse_timestamp

logger = logging.getLogger(__name__)

SCHEMA = """
CREATE TABLE IF NOT EXISTS usage_records (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    api_key TEXT NOT NULL,
    model TEXT NOT NULL,
    timestamp TEXT NOT NULL,
    source TEXT NOT NULL DEFAULT '',
    auth_index TEXT NOT NULL DEFAULT '',
    failed INTEGER NOT NULL DEFAULT 0,
    input_tokens INTEGER NOT NULL DEFAULT 0,
    output_tokens INTEGER NOT NULL DEFAULT 0,
    reasoning_tokens INTEGER NOT NULL DEFAULT 0,
    cached_tokens INTEGER NOT NULL DEFAULT 0,
    total_tokens INTEGER NOT NULL DEFAULT 0,
    dedup_key TEXT NOT NULL,
    created_at TEXT NOT NULL DEFAULT (datetime('now'))
);

CREATE UNIQUE INDEX IF NOT EXISTS idx_usage_records_dedup
    ON usage_records(dedup_key);

CREATE INDEX IF NOT EXISTS idx_usage_records_lookup
    ON usage_records(api_key, model, timestamp);
"""

INSERT_RECORD = """
    INSERT OR IGNORE INTO usage_records (
        api_key, model, timestamp, source, auth_index, failed,
        input_tokens, output_tokens, reasoning_tokens, cached_tokens, total_tokens,
        dedup_key
    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
"""

SELECT_ALL = """
    SELECT api_key, model, timestamp, source, auth_index, failed,
           input_tokens, output_tokens, reasoning_tokens, cached_tokens, total_tokens
    FROM usage_records
    ORDER BY timestamp ASC, id ASC
"""


def _row_params(api_key: str, model: str, detail: RequestDetail) -> tuple:
    tokens = detail.tokens
    return (
        api_key,
        model,
        format_timestamp(detail.timestamp, detail.nanosecond),
        detail.source,
        detail.auth_index,
        1 if detail.failed else 0,
        tokens.input_tokens,
        tokens.output_tokens,
        tokens.reasoning_tokens,
        tokens.cached_tokens,
        tokens.total_tokens,
        dedup_key(api_key, model, detail),
    )


def _row_to_detail(row: tuple) -> Optional[RequestDetail]:
    """Rebuild a detail from a row, or None when the row is malformed."""
    (_, _, timestamp, source, auth_index, failed,
     input_tokens, output_tokens, reasoning_tokens, cached_tokens, total_tokens) = row

    if not isinstance(timestamp, str):
        return None
    try:
        parsed, nanosecond = parse_timestamp(timestamp)
        tokens = TokenStats(
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            reasoning_tokens=reasoning_tokens,
            cached_tokens=cached_tokens,
            total_tokens=total_tokens,
        )
    except ValueError:
        return None

    return RequestDetail(
        timestamp=parsed,
        source=source or "",
        auth_index=auth_index or "",
        tokens=tokens,
        failed=bool(failed),
        nanosecond=nanosecond,
    )


class SQLiteStore:
    """SQLite-backed store for usage records.

    A single connection serves every caller; operations are serialized on
    it so writes never race each other. WAL journaling lets other
    processes read while this one writes, and the busy timeout bounds how
    long any operation waits on a lock held elsewhere.

    A store built with ``SQLiteStore()`` is an empty handle: every
    operation except ``close`` raises StoreError until it has been opened
    through ``SQLiteStore.open`` and ``ensure_schema`` has succeeded.

    Example:
        store = SQLiteStore.open("~/.cli-proxy-api/usage.db")
        store.ensure_schema()
        store.insert_record("sk-1", "gpt-4o", detail)
        snapshot = store.load_all()
        store.close()
    """

    def __init__(self):
        self._conn: Optional[sqlite3.Connection] = None
        self._path: Optional[Path] = None
        self._schema_ready = False
        self._lock = threading.Lock()

    @classmethod
    def open(cls, path: str, busy_timeout: float = 5.0) -> "SQLiteStore":
        """Open (creating if needed) the database at path.

        Args:
            path: Database file path; a leading ``~`` is expanded
            busy_timeout: Seconds to wait on a locked database

        Returns:
            An open store whose schema has not been ensured yet

        Raises:
            ConfigError: If path is empty
            StoreError: If the directory or database cannot be opened
        """
        if path is None or not str(path).strip():
            raise ConfigError("database path cannot be empty", config_key="database_path")

        try:
            db_path = Path(path).expanduser()
        except RuntimeError as e:
            raise StoreError(f"failed to expand home directory: {e}") from e

        try:
            db_path.parent.mkdir(mode=0o700, parents=True, exist_ok=True)
        except OSError as e:
            raise StoreError(f"failed to create database directory: {e}") from e

        try:
            conn = get_connection(str(db_path), busy_timeout)
        except sqlite3.Error as e:
            raise StoreError(f"failed to open database: {e}") from e

        store = cls()
        store._conn = conn
        store._path = db_path
        logger.debug(f"Opened usage database at {db_path}")
        return store

    @property
    def path(self) -> Optional[Path]:
        """Resolved database path, or None for an unopened store."""
        return self._path

    @property
    def is_open(self) -> bool:
        return self._conn is not None

    def _require_connection(self) -> sqlite3.Connection:
        if self._conn is None:
            raise StoreError("store not initialized")
        return self._conn

    def _require_ready(self) -> sqlite3.Connection:
        conn = self._require_connection()
        if not self._schema_ready:
            raise StoreError("store not initialized")
        return conn

    def ensure_schema(self, timeout: Optional[float] = None) -> None:
        """Create the usage table and its indexes if they don't exist.

        Safe to call on every startup.

        Args:
            timeout: Optional deadline in seconds for the DDL

        Raises:
            StoreError: If the store is not open
            SchemaError: If the DDL fails
        """
        with self._lock:
            conn = self._require_connection()
            try:
                with deadline(conn, timeout):
                    conn.executescript(SCHEMA)
            except sqlite3.Error as e:
                raise SchemaError(f"failed to create schema: {e}") from e
            self._schema_ready = True
        logger.debug("Usage schema ready")

    def insert_record(self, api_key: str, model: str, detail: RequestDetail) -> bool:
        """Persist a single usage record.

        A record whose dedup key already exists is silently ignored.

        Args:
            api_key: API key identifier
            model: Model name
            detail: The request detail to persist

        Returns:
            True if a row was added, False if it was a duplicate

        Raises:
            StoreError: If the store is not initialized
            WriteError: If the insert fails for any other reason
        """
        params = _row_params(api_key, model, detail)
        with self._lock:
            conn = self._require_ready()
            try:
                cursor = conn.execute(INSERT_RECORD, params)
            except sqlite3.Error as e:
                raise WriteError(f"failed to insert record: {e}") from e
            return cursor.rowcount > 0

    def load_all(self, timeout: Optional[float] = None) -> StatisticsSnapshot:
        """Load every persisted record as a snapshot.

        Rows whose timestamp (or token counters) cannot be parsed are
        skipped rather than failing the load. Details in each model bucket
        are in ascending timestamp order.

        Args:
            timeout: Optional deadline in seconds for the query

        Returns:
            Snapshot containing every well-formed row

        Raises:
            StoreError: If the store is not initialized
            ReadError: If the query fails
        """
        snapshot = StatisticsSnapshot()
        skipped_rows = 0

        with self._lock:
            conn = self._require_ready()
            try:
                with deadline(conn, timeout):
                    for row in conn.execute(SELECT_ALL):
                        detail = _row_to_detail(row)
                        if detail is None:
                            skipped_rows += 1
                            continue
                        snapshot.add(row[0], row[1], detail)
            except sqlite3.Error as e:
                raise ReadError(f"failed to query records: {e}") from e

        # Text ordering is not chronological when fraction lengths differ.
        for api in snapshot.apis.values():
            for bucket in api.models.values():
                bucket.details.sort(key=lambda detail: (detail.timestamp, detail.nanosecond))

        if skipped_rows:
            logger.warning(
                f"Skipped {skipped_rows} malformed usage record(s) while loading",
                extra={"skipped_rows": skipped_rows},
            )
        return snapshot

    def persist_snapshot(
        self,
        snapshot: StatisticsSnapshot,
        timeout: Optional[float] = None
    ) -> Tuple[int, int]:
        """Persist every record of a snapshot in a single transaction.

        Records already present (same dedup key) are skipped. Either every
        new record is committed or none is.

        Args:
            snapshot: The snapshot to persist
            timeout: Optional deadline in seconds for the whole batch

        Returns:
            Tuple of (added, skipped)

        Raises:
            StoreError: If the store is not initialized
            WriteError: If any insert or the commit fails
        """
        rows = [
            _row_params(api_key, model, detail)
            for api_key, model, detail in snapshot.iter_details()
        ]

        with self._lock:
            conn = self._require_ready()
            try:
                try:
                    added, skipped = self._insert_batch(conn, rows, timeout)
                finally:
                    if conn.in_transaction:
                        self._rollback(conn)
            except sqlite3.Error as e:
                raise WriteError(f"failed to persist snapshot: {e}") from e

        logger.debug(f"Persisted snapshot: {added} added, {skipped} skipped")
        return added, skipped

    @staticmethod
    def _insert_batch(
        conn: sqlite3.Connection,
        rows: List[tuple],
        timeout: Optional[float]
    ) -> Tuple[int, int]:
        added = 0
        skipped = 0
        with deadline(conn, timeout) as expired:
            conn.execute("BEGIN IMMEDIATE")
            for params in rows:
                if expired():
                    raise sqlite3.OperationalError("interrupted")
                cursor = conn.execute(INSERT_RECORD, params)
                if cursor.rowcount > 0:
                    added += 1
                else:
                    skipped += 1
            conn.execute("COMMIT")
        return added, skipped

    @staticmethod
    def _rollback(conn: sqlite3.Connection) -> None:
        try:
            conn.execute("ROLLBACK")
        except sqlite3.Error as e:
            logger.warning(f"Rollback of usage snapshot failed: {e}")

    def close(self) -> None:
        """Close the database connection.

        Safe to call on a store that was never opened or is already closed.

        Raises:
            StoreError: If the driver fails to close the connection
        """
        with self._lock:
            conn, self._conn = self._conn, None
            self._schema_ready = False

        if conn is None:
            return
        try:
            conn.close()
        except sqlite3.Error as e:
            raise StoreError(f"failed to close database: {e}") from e
        logger.debug(f"Closed usage database at {self._path}")

    def __enter__(self):
        """Context manager entry."""
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        """Context manager exit - ensures connection is closed."""
        self.close()
        return False
