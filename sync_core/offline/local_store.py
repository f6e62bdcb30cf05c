# =============================================================================
# sync_core/offline/local_store.py
# Local SQLite Key-Value Store for Offline Operation
# =============================================================================
"""
LocalStore - SQLite-backed durable storage for cached records, the pending
action queue and engine settings.

Features:
- Automatic schema creation
- Key-value records with write timestamp, TTL and priority
- Prefix listing for category namespaces
- Transaction support
- Thread-safe operations (thread-local connections)
- DataFrame snapshot for diagnostics (pandas)

Every SQLite failure surfaces as LocalStoreError; callers decide whether it
is fatal (writes) or a miss (reads).
"""

from __future__ import annotations
import json
import sqlite3
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Iterator, List, Optional, Union
import logging

import pandas as pd

from sync_core.errors import LocalStoreError
from sync_core.offline.models import CachePriority

logger = logging.getLogger(__name__)

# Table holding the serialized pending action queue
PENDING_ACTIONS_TABLE = "pending_job_actions"


@dataclass(frozen=True)
class StoredRecord:
    """A row of the cache_entries table."""
    key: str
    payload: str
    written_at: float
    ttl: Optional[float]
    priority: CachePriority


class LocalStore:
    """
    Local SQLite database for offline data storage.

    One instance is owned by the engine; it is never a process-wide global.
    """

    DEFAULT_DB_PATH = Path("local_data") / "sync_core.db"

    SCHEMA = {
        "cache_entries": """
            CREATE TABLE IF NOT EXISTS cache_entries (
                key TEXT PRIMARY KEY,
                payload TEXT NOT NULL,
                written_at REAL NOT NULL,
                ttl REAL,
                priority INTEGER DEFAULT 1
            )
        """,
        PENDING_ACTIONS_TABLE: f"""
            CREATE TABLE IF NOT EXISTS {PENDING_ACTIONS_TABLE} (
                seq INTEGER PRIMARY KEY AUTOINCREMENT,
                id TEXT NOT NULL UNIQUE,
                kind TEXT NOT NULL,
                payload_json TEXT,
                created_at REAL NOT NULL,
                attempts INTEGER DEFAULT 0,
                last_attempt REAL,
                status TEXT DEFAULT 'pending',
                error_message TEXT
            )
        """,
        "app_settings": """
            CREATE TABLE IF NOT EXISTS app_settings (
                key TEXT PRIMARY KEY,
                value TEXT,
                updated_at REAL
            )
        """,
    }

    def __init__(self, db_path: Optional[Union[str, Path]] = None):
        """
        Initialize local store.

        Args:
            db_path: Path to SQLite database file
        """
        self.db_path = Path(db_path) if db_path else self.DEFAULT_DB_PATH
        self._local = threading.local()
        self._initialized = False
        self._closed = False

    def _ensure_directory(self) -> None:
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

    def _get_connection(self) -> sqlite3.Connection:
        """Get thread-local database connection."""
        if self._closed:
            raise LocalStoreError("Local store is closed", operation="connect")

        if getattr(self._local, "connection", None) is None:
            try:
                self._ensure_directory()
                connection = sqlite3.connect(str(self.db_path), check_same_thread=False)
                connection.row_factory = sqlite3.Row
                connection.execute("PRAGMA journal_mode = WAL")
                connection.execute("PRAGMA synchronous = FULL")
            except (sqlite3.Error, OSError) as e:
                raise LocalStoreError(f"Cannot open local store: {e}", operation="connect")
            self._local.connection = connection
        return self._local.connection

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Context manager for database transactions."""
        conn = self._get_connection()
        try:
            yield conn
            conn.commit()
        except sqlite3.Error as e:
            conn.rollback()
            raise LocalStoreError(f"Transaction failed: {e}", operation="transaction")
        except Exception:
            conn.rollback()
            raise

    def initialize(self) -> None:
        """Initialize database schema."""
        if self._initialized:
            return

        with self.transaction() as conn:
            for table_name, schema in self.SCHEMA.items():
                conn.execute(schema)
                logger.debug(f"Created/verified table: {table_name}")

        self._initialized = True
        logger.info(f"Local store initialized at: {self.db_path}")

    # =========================================================================
    # KEY-VALUE OPERATIONS
    # =========================================================================

    def put(
        self,
        key: str,
        payload: str,
        written_at: Optional[float] = None,
        ttl: Optional[float] = None,
        priority: CachePriority = CachePriority.NORMAL,
    ) -> None:
        """
        Durably store a payload under ``key``, replacing any previous value.

        Raises:
            LocalStoreError: if the write could not be committed
        """
        written_at = time.time() if written_at is None else written_at
        try:
            with self.transaction() as conn:
                conn.execute(
                    """
                    INSERT OR REPLACE INTO cache_entries (key, payload, written_at, ttl, priority)
                    VALUES (?, ?, ?, ?, ?)
                    """,
                    [key, payload, written_at, ttl, int(priority)],
                )
        except LocalStoreError as e:
            raise LocalStoreError(e.message, key=key, operation="put")

    def get(self, key: str) -> Optional[StoredRecord]:
        """Return the stored record for ``key`` or None when absent."""
        rows = self.query("SELECT * FROM cache_entries WHERE key = ?", [key])
        return self._to_record(rows[0]) if rows else None

    def delete(self, key: str) -> bool:
        """Delete a record. Returns True when a row was removed."""
        return self.execute("DELETE FROM cache_entries WHERE key = ?", [key]) > 0

    def delete_many(self, keys: List[str]) -> int:
        if not keys:
            return 0
        removed = 0
        with self.transaction() as conn:
            for key in keys:
                removed += conn.execute("DELETE FROM cache_entries WHERE key = ?", [key]).rowcount
        return removed

    def list_keys(self, prefix: str = "") -> List[str]:
        """List keys starting with ``prefix`` in sorted order."""
        rows = self.query(
            "SELECT key FROM cache_entries WHERE substr(key, 1, ?) = ? ORDER BY key",
            [len(prefix), prefix],
        )
        return [row["key"] for row in rows]

    def list_records(self, prefix: str = "") -> List[StoredRecord]:
        rows = self.query(
            "SELECT * FROM cache_entries WHERE substr(key, 1, ?) = ? ORDER BY key",
            [len(prefix), prefix],
        )
        return [self._to_record(row) for row in rows]

    def count(self, prefix: str = "") -> int:
        rows = self.query(
            "SELECT COUNT(*) AS count FROM cache_entries WHERE substr(key, 1, ?) = ?",
            [len(prefix), prefix],
        )
        return rows[0]["count"] if rows else 0

    @staticmethod
    def _to_record(row: sqlite3.Row) -> StoredRecord:
        priority = row["priority"]
        return StoredRecord(
            key=row["key"],
            payload=row["payload"],
            written_at=row["written_at"],
            ttl=row["ttl"],
            priority=CachePriority(priority if priority is not None else CachePriority.NORMAL),
        )

    # =========================================================================
    # RAW SQL
    # =========================================================================

    def query(self, sql: str, params: Optional[List] = None) -> List[sqlite3.Row]:
        """Execute a raw SQL query."""
        try:
            cursor = self._get_connection().execute(sql, params or [])
            return cursor.fetchall()
        except sqlite3.Error as e:
            raise LocalStoreError(f"Query failed: {e}", operation="query")

    def execute(self, sql: str, params: Optional[List] = None) -> int:
        """Execute a raw SQL statement."""
        with self.transaction() as conn:
            cursor = conn.execute(sql, params or [])
            return cursor.rowcount

    # =========================================================================
    # PANDAS INTEGRATION
    # =========================================================================

    def to_dataframe(self, prefix: str = "") -> pd.DataFrame:
        """
        Load cache metadata into a pandas DataFrame.

        Payload bodies are summarized by size; the frame is meant for
        diagnostics, not for reading values back.

        Args:
            prefix: Only include keys starting with this prefix

        Returns:
            DataFrame with key, written_at, ttl, priority and size_bytes
        """
        columns = ["key", "written_at", "ttl", "priority", "size_bytes"]
        try:
            frame = pd.read_sql_query(
                """
                SELECT key, written_at, ttl, priority, length(payload) AS size_bytes
                FROM cache_entries
                WHERE substr(key, 1, ?) = ?
                ORDER BY key
                """,
                self._get_connection(),
                params=[len(prefix), prefix],
            )
        except (sqlite3.Error, pd.errors.DatabaseError) as e:
            raise LocalStoreError(f"Snapshot failed: {e}", operation="to_dataframe")

        if frame.empty:
            return pd.DataFrame(columns=columns)

        frame["priority"] = frame["priority"].map(lambda p: CachePriority(int(p)).name.lower())
        frame["written_at"] = pd.to_datetime(frame["written_at"], unit="s")
        return frame[columns]

    # =========================================================================
    # SETTINGS
    # =========================================================================

    def get_setting(self, key: str, default: Any = None) -> Any:
        """Get an engine setting."""
        result = self.query("SELECT value FROM app_settings WHERE key = ?", [key])
        if result:
            try:
                return json.loads(result[0]["value"])
            except json.JSONDecodeError:
                return result[0]["value"]
        return default

    def set_setting(self, key: str, value: Any) -> None:
        """Set an engine setting."""
        value_str = json.dumps(value) if not isinstance(value, str) else value
        self.execute(
            """
            INSERT OR REPLACE INTO app_settings (key, value, updated_at)
            VALUES (?, ?, ?)
            """,
            [key, value_str, time.time()],
        )

    def delete_setting(self, key: str) -> bool:
        return self.execute("DELETE FROM app_settings WHERE key = ?", [key]) > 0

    def close(self) -> None:
        """Close the database connection. Safe to call more than once."""
        connection = getattr(self._local, "connection", None)
        if connection is not None:
            connection.close()
            self._local.connection = None
        self._closed = True

    @property
    def is_closed(self) -> bool:
        return self._closed
