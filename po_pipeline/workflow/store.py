"""
SQLite state store for crash-safe workflow progress.

Values are JSON documents under string keys:

    upload:{upload_id}
    workflow:{workflow_id}
    workflow:{workflow_id}:stage:{stage}:result
    settings:{merchant_id}
    dlq:{job_id}

Writes use INSERT OR REPLACE, so re-running a stage overwrites its earlier
result instead of adding a second one.
"""

import asyncio
import json
import logging
import sqlite3
import threading
import time
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)


def upload_key(upload_id: str) -> str:
    return f"upload:{upload_id}"


def workflow_key(workflow_id: str) -> str:
    return f"workflow:{workflow_id}"


def stage_result_key(workflow_id: str, stage: str) -> str:
    return f"workflow:{workflow_id}:stage:{stage}:result"


def settings_key(merchant_id: str) -> str:
    return f"settings:{merchant_id}"


def dead_letter_key(job_id: str) -> str:
    return f"dlq:{job_id}"


class SQLiteStateStore:
    """
    SQLite-backed key-value store with JSON values.

    Uses WAL mode for concurrent readers and a lock around the shared
    connection. The async methods run the blocking work in a worker thread.
    """

    def __init__(self, db_path: str | Path = "po_pipeline_state.db"):
        self.db_path = str(db_path)
        self._conn: Optional[sqlite3.Connection] = None
        self._lock = threading.RLock()

    def __enter__(self):
        self.connect()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()

    def connect(self) -> sqlite3.Connection:
        """Initialize database connection with WAL mode for concurrent access."""
        with self._lock:
            if self._conn is None:
                self._conn = sqlite3.connect(
                    self.db_path,
                    check_same_thread=False,
                    timeout=30.0  # 30 second timeout for busy database
                )

                if self.db_path != ":memory:":
                    self._conn.execute("PRAGMA journal_mode=WAL")
                self._conn.execute("PRAGMA synchronous=NORMAL")
                self._conn.execute("PRAGMA temp_store=memory")

                self._create_table()

            return self._conn

    def close(self):
        """Close database connection."""
        with self._lock:
            if self._conn:
                try:
                    self._conn.close()
                except sqlite3.Error as e:
                    logger.warning(f"Error closing database connection: {e}")
                finally:
                    self._conn = None

    def _create_table(self):
        """Create the key-value table."""
        create_sql = """
        CREATE TABLE IF NOT EXISTS state (
            key        TEXT PRIMARY KEY,
            value      TEXT NOT NULL,
            updated_at DATETIME DEFAULT CURRENT_TIMESTAMP
        )
        """
        self._conn.execute(create_sql)
        self._conn.commit()

    def _retry_operation(self, operation, max_retries: int = 3):
        """Retry database operations with exponential backoff."""
        for attempt in range(max_retries):
            try:
                return operation()
            except sqlite3.OperationalError as e:
                if "database is locked" in str(e).lower() and attempt < max_retries - 1:
                    wait_time = (2 ** attempt) * 0.1  # 0.1, 0.2, 0.4 seconds
                    logger.warning(f"Database locked, retrying in {wait_time}s (attempt {attempt + 1})")
                    time.sleep(wait_time)
                else:
                    raise

    # Synchronous API ----------------------------------------------------

    def get_sync(self, key: str) -> Optional[Dict[str, Any]]:
        def operation():
            with self._lock:
                row = self.connect().execute("SELECT value FROM state WHERE key = ?", (key,)).fetchone()
                return json.loads(row[0]) if row else None

        return self._retry_operation(operation)

    def set_sync(self, key: str, value: Dict[str, Any]) -> None:
        payload = json.dumps(value, default=str)

        def operation():
            with self._lock:
                conn = self.connect()
                conn.execute(
                    "INSERT OR REPLACE INTO state (key, value, updated_at) VALUES (?, ?, ?)",
                    (key, payload, datetime.now().isoformat())
                )
                conn.commit()

        self._retry_operation(operation)
        logger.debug(f"Stored {key}")

    def patch_sync(self, key: str, patch: Dict[str, Any]) -> Dict[str, Any]:
        """Read-merge-write under the lock; creates the key if missing."""
        def operation():
            with self._lock:
                conn = self.connect()
                row = conn.execute("SELECT value FROM state WHERE key = ?", (key,)).fetchone()
                merged = json.loads(row[0]) if row else {}
                merged.update(json.loads(json.dumps(patch, default=str)))
                conn.execute(
                    "INSERT OR REPLACE INTO state (key, value, updated_at) VALUES (?, ?, ?)",
                    (key, json.dumps(merged), datetime.now().isoformat())
                )
                conn.commit()
                return merged

        return self._retry_operation(operation)

    def delete_sync(self, key: str) -> bool:
        def operation():
            with self._lock:
                conn = self.connect()
                cursor = conn.execute("DELETE FROM state WHERE key = ?", (key,))
                conn.commit()
                return cursor.rowcount > 0

        return self._retry_operation(operation)

    def keys_sync(self, prefix: str = "") -> List[str]:
        def operation():
            with self._lock:
                escaped = prefix.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
                cursor = self.connect().execute(
                    "SELECT key FROM state WHERE key LIKE ? ESCAPE '\\' ORDER BY key",
                    (f"{escaped}%",)
                )
                return [row[0] for row in cursor.fetchall()]

        return self._retry_operation(operation)

    # Async API ----------------------------------------------------------

    async def get(self, key: str) -> Optional[Dict[str, Any]]:
        return await asyncio.to_thread(self.get_sync, key)

    async def set(self, key: str, value: Dict[str, Any]) -> None:
        await asyncio.to_thread(self.set_sync, key, value)

    async def patch(self, key: str, patch: Dict[str, Any]) -> Dict[str, Any]:
        return await asyncio.to_thread(self.patch_sync, key, patch)

    async def delete(self, key: str) -> bool:
        return await asyncio.to_thread(self.delete_sync, key)

    async def keys(self, prefix: str = "") -> List[str]:
        return await asyncio.to_thread(self.keys_sync, prefix)

    def get_summary(self) -> Dict[str, int]:
        """Count workflows by status."""
        summary: Dict[str, int] = {}
        for key in self.keys_sync("workflow:"):
            if ":stage:" in key:
                continue
            record = self.get_sync(key) or {}
            status = record.get("status", "unknown")
            summary[status] = summary.get(status, 0) + 1
        summary["dead_lettered"] = len(self.keys_sync("dlq:"))
        return summary


def init_store(path: str | Path = "po_pipeline_state.db") -> SQLiteStateStore:
    """Initialize and return a connected SQLiteStateStore."""
    store = SQLiteStateStore(path)
    store.connect()
    return store
