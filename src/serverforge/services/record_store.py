"""Transactional SQLite store for JSON records and credit balances.

Records are typed by ``kind`` (project, version, hosted_server, royalty) and
hold their dataclass ``to_dict()`` as ``payload_json``. Every write runs in a
``BEGIN IMMEDIATE`` transaction, so a read-check-write sequence inside
``transaction()`` is atomic with respect to other writers.
"""

from __future__ import annotations

import json
import sqlite3
import threading
from contextlib import contextmanager
from decimal import Decimal
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional

from serverforge.config import settings
from serverforge.domain.errors import InsufficientCreditsError, NotFoundError
from serverforge.domain.models import utc_now_iso

# Record kinds and their parent:
#   project -> owner_id, version -> project_id (sequence = version_number),
#   hosted_server -> project_id, royalty -> project_id (unique_key = project:image)
KIND_PROJECT = "project"
KIND_VERSION = "version"
KIND_HOSTED_SERVER = "hosted_server"
KIND_ROYALTY = "royalty"


def _dump(payload: Dict[str, Any]) -> str:
    return json.dumps(payload, ensure_ascii=False, separators=(",", ":"))


def _to_amount(value: Any) -> Decimal:
    return Decimal(str(value))


class StoreTransaction:
    """Operations bound to one open transaction."""

    def __init__(self, conn: sqlite3.Connection):
        self._conn = conn

    def get(self, kind: str, record_id: str) -> Optional[Dict[str, Any]]:
        row = self._conn.execute(
            "SELECT payload_json FROM records WHERE kind = ? AND record_id = ?",
            (kind, record_id),
        ).fetchone()
        return json.loads(row[0]) if row else None

    def find_by_key(self, kind: str, unique_key: str) -> Optional[Dict[str, Any]]:
        row = self._conn.execute(
            "SELECT payload_json FROM records WHERE kind = ? AND unique_key = ?",
            (kind, unique_key),
        ).fetchone()
        return json.loads(row[0]) if row else None

    def insert(
        self,
        kind: str,
        record_id: str,
        payload: Dict[str, Any],
        *,
        parent_id: Optional[str] = None,
        sequence: Optional[int] = None,
        unique_key: Optional[str] = None,
    ) -> None:
        now = utc_now_iso()
        self._conn.execute(
            "INSERT INTO records(kind, record_id, parent_id, sequence, unique_key, "
            "payload_json, created_at, updated_at) VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
            (kind, record_id, parent_id, sequence, unique_key, _dump(payload), now, now),
        )

    def update(self, kind: str, record_id: str, payload: Dict[str, Any]) -> None:
        cursor = self._conn.execute(
            "UPDATE records SET payload_json = ?, updated_at = ? WHERE kind = ? AND record_id = ?",
            (_dump(payload), utc_now_iso(), kind, record_id),
        )
        if cursor.rowcount != 1:
            raise NotFoundError(f"{kind} not found: {record_id}")

    def compare_and_set(
        self,
        kind: str,
        record_id: str,
        field: str,
        expected: Any,
        payload: Dict[str, Any],
    ) -> bool:
        """Replace the payload only if ``payload_json.field`` still equals ``expected``."""
        cursor = self._conn.execute(
            "UPDATE records SET payload_json = ?, updated_at = ? "
            "WHERE kind = ? AND record_id = ? AND json_extract(payload_json, ?) = ?",
            (_dump(payload), utc_now_iso(), kind, record_id, f"$.{field}", expected),
        )
        return cursor.rowcount == 1

    def list_by_parent(
        self,
        kind: str,
        parent_id: str,
        *,
        limit: Optional[int] = None,
        offset: int = 0,
        newest_first: bool = False,
    ) -> List[Dict[str, Any]]:
        order = "DESC" if newest_first else "ASC"
        sql = (
            "SELECT payload_json FROM records WHERE kind = ? AND parent_id = ? "
            f"ORDER BY COALESCE(sequence, 0) {order}, created_at {order}, rowid {order}"
        )
        params: List[Any] = [kind, parent_id]
        if limit is not None:
            sql += " LIMIT ? OFFSET ?"
            params.extend([int(limit), int(offset)])
        return [json.loads(row[0]) for row in self._conn.execute(sql, params).fetchall()]

    def count_by_parent(self, kind: str, parent_id: str) -> int:
        row = self._conn.execute(
            "SELECT COUNT(*) FROM records WHERE kind = ? AND parent_id = ?",
            (kind, parent_id),
        ).fetchone()
        return int(row[0])

    def next_sequence(self, kind: str, parent_id: str) -> int:
        row = self._conn.execute(
            "SELECT COALESCE(MAX(sequence), 0) FROM records WHERE kind = ? AND parent_id = ?",
            (kind, parent_id),
        ).fetchone()
        return int(row[0]) + 1

    def balance(self, user_id: str) -> float:
        row = self._conn.execute(
            "SELECT balance FROM credit_balances WHERE user_id = ?",
            (user_id,),
        ).fetchone()
        return float(row[0]) if row else 0.0

    def adjust_balance(self, user_id: str, delta: float) -> float:
        """Add ``delta`` (may be negative) and return the new balance."""
        current = _to_amount(self.balance(user_id))
        updated = current + _to_amount(delta)
        if updated < 0:
            raise InsufficientCreditsError(required=abs(float(delta)), balance=float(current))
        self._conn.execute(
            "INSERT INTO credit_balances(user_id, balance, updated_at) VALUES (?, ?, ?) "
            "ON CONFLICT(user_id) DO UPDATE SET balance = excluded.balance, "
            "updated_at = excluded.updated_at",
            (user_id, float(updated), utc_now_iso()),
        )
        return float(updated)


class RecordStore:
    """SQLite-backed record store with atomic commits."""

    def __init__(self, db_path: Optional[Path] = None) -> None:
        self._lock = threading.RLock()
        self._db_path = Path(db_path or settings.database_path)
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_db()

    @property
    def db_path(self) -> Path:
        return self._db_path

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(
            str(self._db_path),
            timeout=30.0,
            isolation_level=None,
            check_same_thread=False,
        )
        conn.execute("PRAGMA journal_mode=WAL;")
        conn.execute("PRAGMA synchronous=NORMAL;")
        conn.execute("PRAGMA foreign_keys=ON;")
        return conn

    def _init_db(self) -> None:
        with self._lock:
            conn = self._connect()
            try:
                conn.execute(
                    """
                    CREATE TABLE IF NOT EXISTS records (
                        kind TEXT NOT NULL,
                        record_id TEXT NOT NULL,
                        parent_id TEXT,
                        sequence INTEGER,
                        unique_key TEXT,
                        payload_json TEXT NOT NULL,
                        created_at TEXT NOT NULL,
                        updated_at TEXT NOT NULL,
                        PRIMARY KEY (kind, record_id)
                    )
                    """
                )
                conn.execute(
                    "CREATE UNIQUE INDEX IF NOT EXISTS idx_records_parent_sequence "
                    "ON records(kind, parent_id, sequence)"
                )
                conn.execute(
                    "CREATE UNIQUE INDEX IF NOT EXISTS idx_records_unique_key "
                    "ON records(kind, unique_key)"
                )
                conn.execute(
                    "CREATE INDEX IF NOT EXISTS idx_records_parent "
                    "ON records(kind, parent_id, created_at)"
                )
                conn.execute(
                    """
                    CREATE TABLE IF NOT EXISTS credit_balances (
                        user_id TEXT PRIMARY KEY,
                        balance REAL NOT NULL DEFAULT 0 CHECK (balance >= 0),
                        updated_at TEXT NOT NULL
                    )
                    """
                )
            finally:
                conn.close()

    @contextmanager
    def transaction(self) -> Iterator[StoreTransaction]:
        """Open a write transaction; commit on success, roll back on any error."""
        with self._lock:
            conn = self._connect()
            try:
                conn.execute("BEGIN IMMEDIATE")
                try:
                    yield StoreTransaction(conn)
                    conn.execute("COMMIT")
                except BaseException:
                    conn.execute("ROLLBACK")
                    raise
            finally:
                conn.close()

    # Single-statement conveniences

    def get(self, kind: str, record_id: str) -> Optional[Dict[str, Any]]:
        with self.transaction() as tx:
            return tx.get(kind, record_id)

    def require(self, kind: str, record_id: str) -> Dict[str, Any]:
        payload = self.get(kind, record_id)
        if payload is None:
            raise NotFoundError(f"{kind} not found: {record_id}")
        return payload

    def insert(self, kind: str, record_id: str, payload: Dict[str, Any], **kwargs: Any) -> None:
        with self.transaction() as tx:
            tx.insert(kind, record_id, payload, **kwargs)

    def update(self, kind: str, record_id: str, payload: Dict[str, Any]) -> None:
        with self.transaction() as tx:
            tx.update(kind, record_id, payload)

    def list_by_parent(self, kind: str, parent_id: str, **kwargs: Any) -> List[Dict[str, Any]]:
        with self.transaction() as tx:
            return tx.list_by_parent(kind, parent_id, **kwargs)

    def balance(self, user_id: str) -> float:
        with self.transaction() as tx:
            return tx.balance(user_id)
