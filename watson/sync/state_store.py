"""SQLite persistence for per-account sync state."""

import logging
import sqlite3
import threading
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Iterator, Optional

from ..errors import StorageError
from ..models import SyncState, SyncStatus

__all__ = ["SyncStateStore"]

logger = logging.getLogger(__name__)


def _to_text(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def _from_text(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


class SyncStateStore:
    """SQLite-backed store of SyncState rows, one per account."""

    def __init__(self, db_path: Path):
        """Initialize the state store.

        Args:
            db_path: Path to SQLite database file
        """
        self.db_path = Path(db_path)
        self._local = threading.local()
        self._connections: list[sqlite3.Connection] = []
        self._connections_lock = threading.Lock()
        self._init_db()

    def _get_connection(self) -> sqlite3.Connection:
        """Get thread-local database connection."""
        if not hasattr(self._local, "connection"):
            conn = sqlite3.connect(str(self.db_path), check_same_thread=False)
            conn.row_factory = sqlite3.Row
            self._local.connection = conn
            with self._connections_lock:
                self._connections.append(conn)
        return self._local.connection

    @contextmanager
    def _cursor(self) -> Iterator[sqlite3.Cursor]:
        """Context manager for database cursor."""
        conn = self._get_connection()
        cursor = conn.cursor()
        try:
            yield cursor
            conn.commit()
        except sqlite3.Error as e:
            conn.rollback()
            raise StorageError(f"Sync state database error: {e}") from e
        except Exception:
            conn.rollback()
            raise
        finally:
            cursor.close()

    def _init_db(self) -> None:
        """Initialize the database schema."""
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

        with self._cursor() as cursor:
            cursor.execute(
                """
                CREATE TABLE IF NOT EXISTS sync_state (
                    account_label TEXT PRIMARY KEY,
                    cursor TEXT,
                    last_synced_at TEXT,
                    last_full_sync_at TEXT,
                    status TEXT NOT NULL DEFAULT 'ok',
                    backoff_attempts INTEGER NOT NULL DEFAULT 0,
                    last_error TEXT,
                    next_retry_at TEXT
                )
                """
            )

    @staticmethod
    def _from_row(row: sqlite3.Row) -> SyncState:
        return SyncState(
            account_label=row["account_label"],
            cursor=row["cursor"],
            last_synced_at=_from_text(row["last_synced_at"]),
            last_full_sync_at=_from_text(row["last_full_sync_at"]),
            status=SyncStatus(row["status"]),
            backoff_attempts=row["backoff_attempts"],
            last_error=row["last_error"],
            next_retry_at=_from_text(row["next_retry_at"]),
        )

    def get(self, label: str) -> SyncState:
        """Stored state for ``label``, or a fresh OK state."""
        with self._cursor() as cursor:
            cursor.execute("SELECT * FROM sync_state WHERE account_label = ?", (label,))
            row = cursor.fetchone()
        if row is None:
            return SyncState(account_label=label)
        return self._from_row(row)

    def save(self, state: SyncState) -> None:
        with self._cursor() as cursor:
            cursor.execute(
                """
                INSERT OR REPLACE INTO sync_state (
                    account_label, cursor, last_synced_at, last_full_sync_at,
                    status, backoff_attempts, last_error, next_retry_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    state.account_label,
                    state.cursor,
                    _to_text(state.last_synced_at),
                    _to_text(state.last_full_sync_at),
                    state.status.value,
                    state.backoff_attempts,
                    state.last_error,
                    _to_text(state.next_retry_at),
                ),
            )
        logger.debug(f"Saved sync state for {state.account_label}: {state.describe()}")

    def delete(self, label: str) -> None:
        with self._cursor() as cursor:
            cursor.execute("DELETE FROM sync_state WHERE account_label = ?", (label,))

    def get_all(self) -> dict[str, SyncState]:
        with self._cursor() as cursor:
            cursor.execute("SELECT * FROM sync_state")
            rows = cursor.fetchall()
        return {row["account_label"]: self._from_row(row) for row in rows}

    def close(self) -> None:
        """Close every connection opened by this store."""
        with self._connections_lock:
            for conn in self._connections:
                conn.close()
            self._connections.clear()
        self._local = threading.local()
