import json
import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from .exceptions import DatabaseError
from .models import utcnow


RecordFilter = Callable[[Dict[str, Any]], bool]


class Database:
    """SQLite-backed keyed document store.

    Records are JSON documents grouped into named kinds ("queued-jobs",
    "job-executions", ...). There are no transactions across kinds; a single
    read-modify-write on one key is serialized through ``update``.
    """

    def __init__(self, db_path: str):
        self.db_path = db_path
        self._ensure_db_directory()
        self._init_schema()

    def _ensure_db_directory(self):
        Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)

    def _init_schema(self):
        with self.connection() as conn:
            conn.executescript("""
                CREATE TABLE IF NOT EXISTS records (
                    kind TEXT NOT NULL,
                    id TEXT NOT NULL,
                    data TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    PRIMARY KEY (kind, id)
                );

                CREATE INDEX IF NOT EXISTS idx_records_kind_created ON records(kind, created_at);

                CREATE TABLE IF NOT EXISTS config (
                    key TEXT PRIMARY KEY,
                    value TEXT NOT NULL
                );
            """)

    @contextmanager
    def connection(self):
        conn = None
        try:
            conn = sqlite3.connect(self.db_path, timeout=30.0)
            conn.row_factory = sqlite3.Row
            conn.execute("PRAGMA journal_mode=WAL")
            conn.execute("PRAGMA synchronous=NORMAL")
            yield conn
        except sqlite3.Error as e:
            raise DatabaseError(f"Database error on {self.db_path}: {e}") from e
        finally:
            if conn:
                conn.close()

    @contextmanager
    def transaction(self):
        with self.connection() as conn:
            conn.execute("BEGIN IMMEDIATE")
            try:
                yield conn
                conn.commit()
            except Exception:
                conn.rollback()
                raise

    def get(self, kind: str, record_id: str) -> Optional[Dict[str, Any]]:
        with self.connection() as conn:
            return self._get(conn, kind, record_id)

    def _get(self, conn, kind: str, record_id: str) -> Optional[Dict[str, Any]]:
        cursor = conn.cursor()
        cursor.execute("SELECT data FROM records WHERE kind = ? AND id = ?", (kind, record_id))
        row = cursor.fetchone()
        if not row:
            return None
        return json.loads(row[0])

    def upsert(self, kind: str, record_id: str, record: Dict[str, Any]):
        with self.transaction() as conn:
            self._upsert(conn, kind, record_id, record)

    def _upsert(self, conn, kind: str, record_id: str, record: Dict[str, Any]):
        now = utcnow().isoformat()
        conn.execute("""
            INSERT INTO records (kind, id, data, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?)
            ON CONFLICT(kind, id) DO UPDATE SET
                data = excluded.data,
                updated_at = excluded.updated_at
        """, (kind, record_id, json.dumps(record), now, now))

    def update(self, kind: str, record_id: str,
               fn: Callable[[Optional[Dict[str, Any]]], Optional[Dict[str, Any]]]) -> Optional[Dict[str, Any]]:
        """Apply ``fn`` to the current record inside one immediate transaction.

        ``fn`` receives the stored record (or None) and returns the record to
        write, or None to leave the store untouched.
        """
        with self.transaction() as conn:
            current = self._get(conn, kind, record_id)
            updated = fn(current)
            if updated is not None:
                self._upsert(conn, kind, record_id, updated)
            return updated

    def remove(self, kind: str, record_id: str) -> bool:
        with self.transaction() as conn:
            cursor = conn.execute("DELETE FROM records WHERE kind = ? AND id = ?", (kind, record_id))
            return cursor.rowcount == 1

    def list(self, kind: str, record_filter: Optional[RecordFilter] = None) -> List[Dict[str, Any]]:
        with self.connection() as conn:
            cursor = conn.cursor()
            cursor.execute("""
                SELECT data FROM records
                WHERE kind = ?
                ORDER BY created_at ASC, rowid ASC
            """, (kind,))
            records = [json.loads(row[0]) for row in cursor.fetchall()]

        if record_filter is None:
            return records
        return [record for record in records if record_filter(record)]

    def count(self, kind: str, record_filter: Optional[RecordFilter] = None) -> int:
        if record_filter is None:
            with self.connection() as conn:
                cursor = conn.cursor()
                cursor.execute("SELECT COUNT(*) FROM records WHERE kind = ?", (kind,))
                return cursor.fetchone()[0]
        return len(self.list(kind, record_filter))
