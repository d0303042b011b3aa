"""
Record Store - DuckDB persistence for positions and strategies.

Every record lives in a single `records` table keyed by (kind, record_id),
with the record's to_dict() payload stored as JSON. Records are upserted on
every save, so the table always holds the latest state of each position,
including closed ones kept for history.

Example:
    store = DuckDBStore("data/trader_tony.duckdb")
    store.save(position)
    raw = store.load("position", position.position_id)
    everything = store.load_all("position")
"""

import json
import logging
import threading
from pathlib import Path
from typing import Any, Dict, List, Optional, Protocol

import duckdb

from trader_tony.position.errors import StorageCorruptionError
from trader_tony.utils.time_utils import now_utc

logger = logging.getLogger(__name__)


MEMORY_DATABASE = ":memory:"


class Record(Protocol):
    """Anything the store can persist."""
    RECORD_KIND: str

    @property
    def record_id(self) -> str: ...

    def to_dict(self) -> Dict[str, Any]: ...


SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS records (
    kind VARCHAR NOT NULL,
    record_id VARCHAR NOT NULL,
    payload VARCHAR NOT NULL,
    created_at TIMESTAMP NOT NULL,
    updated_at TIMESTAMP NOT NULL,
    PRIMARY KEY (kind, record_id)
)
"""

UPSERT_SQL = """
INSERT INTO records (kind, record_id, payload, created_at, updated_at)
VALUES (?, ?, ?, ?, ?)
ON CONFLICT (kind, record_id) DO UPDATE SET
    payload = excluded.payload,
    updated_at = excluded.updated_at
"""


class DuckDBStore:
    """
    Thread-safe DuckDB record store.

    The engine calls the store directly from the event loop. The single
    shared connection is guarded by a lock so callers on other threads
    never interleave with it.
    """

    def __init__(self, database_path: str = MEMORY_DATABASE):
        """
        Initialize the store and create the schema.

        Args:
            database_path: DuckDB file path, or ":memory:" for an ephemeral store
        """
        self.database_path = database_path
        self._lock = threading.Lock()

        if database_path != MEMORY_DATABASE:
            Path(database_path).parent.mkdir(parents=True, exist_ok=True)

        self._conn: Optional[duckdb.DuckDBPyConnection] = duckdb.connect(database_path)
        self._conn.execute(SCHEMA_SQL)
        logger.info(f"DuckDBStore initialized at {database_path}")

    def _connection(self) -> duckdb.DuckDBPyConnection:
        if self._conn is None:
            raise RuntimeError("DuckDBStore is closed")
        return self._conn

    # ========================================================================
    # Writes
    # ========================================================================

    def save(self, record: Record) -> None:
        """Insert or update a record."""
        payload = json.dumps(record.to_dict(), default=str)
        timestamp = now_utc().replace(tzinfo=None)

        with self._lock:
            self._connection().execute(
                UPSERT_SQL,
                [record.RECORD_KIND, record.record_id, payload, timestamp, timestamp],
            )

        logger.debug(f"Saved {record.RECORD_KIND} {record.record_id}")

    def delete(self, kind: str, record_id: str) -> bool:
        """
        Delete a record.

        Returns:
            True if a record was removed
        """
        with self._lock:
            conn = self._connection()
            existing = conn.execute(
                "SELECT 1 FROM records WHERE kind = ? AND record_id = ?", [kind, record_id]
            ).fetchone()
            if existing is None:
                return False
            conn.execute(
                "DELETE FROM records WHERE kind = ? AND record_id = ?", [kind, record_id]
            )

        logger.debug(f"Deleted {kind} {record_id}")
        return True

    # ========================================================================
    # Reads
    # ========================================================================

    def load(self, kind: str, record_id: str) -> Optional[Dict[str, Any]]:
        """
        Load a single record payload.

        Raises:
            StorageCorruptionError: If the stored payload is not valid JSON
        """
        with self._lock:
            row = self._connection().execute(
                "SELECT payload FROM records WHERE kind = ? AND record_id = ?",
                [kind, record_id],
            ).fetchone()

        if row is None:
            return None
        return self._decode(kind, record_id, row[0])

    def load_all(self, kind: str) -> List[Dict[str, Any]]:
        """
        Load every record of a kind, oldest first.

        Raises:
            StorageCorruptionError: If any stored payload is not valid JSON
        """
        with self._lock:
            rows = self._connection().execute(
                "SELECT record_id, payload FROM records WHERE kind = ? "
                "ORDER BY created_at, record_id",
                [kind],
            ).fetchall()

        return [self._decode(kind, record_id, payload) for record_id, payload in rows]

    def count(self, kind: Optional[str] = None) -> int:
        with self._lock:
            if kind is None:
                row = self._connection().execute("SELECT COUNT(*) FROM records").fetchone()
            else:
                row = self._connection().execute(
                    "SELECT COUNT(*) FROM records WHERE kind = ?", [kind]
                ).fetchone()
        return row[0]

    @staticmethod
    def _decode(kind: str, record_id: str, payload: str) -> Dict[str, Any]:
        try:
            data = json.loads(payload)
        except json.JSONDecodeError as e:
            raise StorageCorruptionError(kind, record_id, f"invalid JSON: {e}") from e
        if not isinstance(data, dict):
            raise StorageCorruptionError(kind, record_id, "payload is not an object")
        return data

    # ========================================================================
    # Lifecycle
    # ========================================================================

    def close(self) -> None:
        with self._lock:
            if self._conn is not None:
                self._conn.close()
                self._conn = None
                logger.info(f"DuckDBStore closed ({self.database_path})")

    def __enter__(self) -> "DuckDBStore":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()
