"""SQLite persistence for canonical records and audit events."""

from __future__ import annotations

import json
import os
import sqlite3
import threading
import uuid
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, Iterator, List, Optional

from .import_contract import CATEGORIES, CanonicalRecord

SCHEMA_VERSION = 1


class StorageFailure(RuntimeError):
    """Raised when the underlying sqlite store rejects an operation."""


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _coerce_bool(value: bool | int) -> int:
    return 1 if value else 0


def resolve_db_path() -> Path:
    env_path = os.getenv("VAULT_DB_PATH")
    if env_path:
        return Path(env_path)

    base_dir = Path(__file__).resolve().parents[1]
    data_dir = base_dir / "data"
    data_dir.mkdir(parents=True, exist_ok=True)
    return data_dir / "vault.db"


def _dict_from_row(row: sqlite3.Row) -> Dict:
    return {k: row[k] for k in row.keys()}


def _coerce_json_payload(value: Optional[str]) -> Optional[Any]:
    if not value:
        return None
    try:
        parsed = json.loads(value)
    except json.JSONDecodeError:
        return None
    return parsed


def _record_to_row(record: CanonicalRecord, updated_at: str) -> tuple:
    return (
        record.id,
        record.full_text,
        record.created_at.astimezone(timezone.utc).isoformat(),
        record.author_handle,
        record.author_name,
        record.avatar_url,
        record.media_url,
        json.dumps(list(record.media_urls)),
        record.video_url,
        record.category,
        _coerce_bool(record.deleted),
        json.dumps(record.raw_payload, default=str),
        updated_at,
    )


def _record_from_row(row: sqlite3.Row) -> CanonicalRecord:
    payload = _dict_from_row(row)
    return CanonicalRecord(
        id=payload["id"],
        full_text=payload["full_text"] or "",
        created_at=datetime.fromisoformat(payload["created_at"]),
        author_handle=payload["author_handle"],
        author_name=payload["author_name"],
        avatar_url=payload["avatar_url"],
        media_url=payload["media_url"],
        media_urls=tuple(_coerce_json_payload(payload["media_urls"]) or ()),
        video_url=payload["video_url"],
        category=payload["category"],
        deleted=bool(payload["deleted"]),
        raw_payload=_coerce_json_payload(payload["raw_payload"]),
    )


class RecordStore:
    """Explicitly opened handle on the canonical record store.

    The store owns record lifetime. Records are written by ``upsert`` (keyed by
    id, so re-imports never duplicate), hidden by ``soft_delete`` and only ever
    removed by ``purge_all``. Every mutation runs in a single transaction.
    """

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)
        self._conn: Optional[sqlite3.Connection] = None
        self._lock = threading.RLock()

    def __enter__(self) -> "RecordStore":
        return self.open()

    def __exit__(self, *exc_info: Any) -> None:
        self.close()

    @property
    def is_open(self) -> bool:
        return self._conn is not None

    def open(self) -> "RecordStore":
        if self._conn is None:
            conn = sqlite3.connect(self.path, check_same_thread=False)
            conn.row_factory = sqlite3.Row
            self._conn = conn
            self.ensure_schema()
        return self

    def close(self) -> None:
        with self._lock:
            if self._conn is not None:
                self._conn.close()
                self._conn = None

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        if self._conn is None:
            raise StorageFailure("record store is not open")
        with self._lock:
            try:
                with self._conn:
                    yield self._conn
            except sqlite3.Error as exc:
                raise StorageFailure(f"record store operation failed: {exc}") from exc

    def ensure_schema(self) -> None:
        with self._transaction() as conn:
            conn.executescript(
                """
                CREATE TABLE IF NOT EXISTS records (
                    id TEXT PRIMARY KEY,
                    full_text TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    author_handle TEXT NOT NULL,
                    author_name TEXT NOT NULL,
                    avatar_url TEXT,
                    media_url TEXT,
                    media_urls TEXT NOT NULL,
                    video_url TEXT,
                    category TEXT NOT NULL,
                    deleted INTEGER NOT NULL DEFAULT 0,
                    raw_payload TEXT,
                    updated_at TEXT NOT NULL
                );

                CREATE INDEX IF NOT EXISTS idx_records_category_deleted
                    ON records(category, deleted);

                CREATE INDEX IF NOT EXISTS idx_records_author_handle
                    ON records(author_handle);

                CREATE TABLE IF NOT EXISTS events (
                    id TEXT PRIMARY KEY,
                    type TEXT NOT NULL,
                    message TEXT NOT NULL,
                    level TEXT NOT NULL,
                    payload TEXT,
                    created_at TEXT NOT NULL
                );
                """
            )
            conn.execute(f"PRAGMA user_version = {SCHEMA_VERSION}")

    def schema_version(self) -> int:
        with self._transaction() as conn:
            return int(conn.execute("PRAGMA user_version").fetchone()[0])

    def upsert(self, records: Iterable[CanonicalRecord]) -> int:
        rows = [_record_to_row(record, _now_iso()) for record in records]
        if not rows:
            return 0
        with self._transaction() as conn:
            conn.executemany(
                """
                INSERT INTO records(
                    id,
                    full_text,
                    created_at,
                    author_handle,
                    author_name,
                    avatar_url,
                    media_url,
                    media_urls,
                    video_url,
                    category,
                    deleted,
                    raw_payload,
                    updated_at
                )
                VALUES(?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    full_text = excluded.full_text,
                    created_at = excluded.created_at,
                    author_handle = excluded.author_handle,
                    author_name = excluded.author_name,
                    avatar_url = excluded.avatar_url,
                    media_url = excluded.media_url,
                    media_urls = excluded.media_urls,
                    video_url = excluded.video_url,
                    category = excluded.category,
                    deleted = excluded.deleted,
                    raw_payload = excluded.raw_payload,
                    updated_at = excluded.updated_at
                """,
                rows,
            )
        return len(rows)

    def get(self, record_id: str) -> Optional[CanonicalRecord]:
        with self._transaction() as conn:
            row = conn.execute("SELECT * FROM records WHERE id = ?", (record_id,)).fetchone()
        if not row:
            return None
        return _record_from_row(row)

    def query_by_category(self, category: str) -> List[CanonicalRecord]:
        if category not in CATEGORIES:
            raise ValueError(f"unknown category '{category}'")
        with self._transaction() as conn:
            rows = conn.execute(
                "SELECT * FROM records WHERE category = ? AND deleted = 0",
                (category,),
            ).fetchall()
        return [_record_from_row(row) for row in rows]

    def list_active(self) -> List[CanonicalRecord]:
        with self._transaction() as conn:
            rows = conn.execute("SELECT * FROM records WHERE deleted = 0").fetchall()
        return [_record_from_row(row) for row in rows]

    def count_by_category(self) -> Dict[str, int]:
        counts = {category: 0 for category in CATEGORIES}
        with self._transaction() as conn:
            rows = conn.execute(
                "SELECT category, COUNT(*) AS total FROM records WHERE deleted = 0 GROUP BY category"
            ).fetchall()
        for row in rows:
            counts[row["category"]] = row["total"]
        return counts

    def soft_delete(self, record_id: str) -> CanonicalRecord:
        with self._transaction() as conn:
            cursor = conn.execute(
                "UPDATE records SET deleted = ?, updated_at = ? WHERE id = ?",
                (_coerce_bool(True), _now_iso(), record_id),
            )
            if cursor.rowcount == 0:
                raise KeyError(f"record '{record_id}' not found")
            row = conn.execute("SELECT * FROM records WHERE id = ?", (record_id,)).fetchone()
        return _record_from_row(row)

    def purge_all(self) -> int:
        with self._transaction() as conn:
            removed = conn.execute("DELETE FROM records").rowcount
            conn.execute("DELETE FROM events")
        self.append_event("store.purged", f"Removed {removed} records", payload={"removed": removed})
        return removed

    def list_events(self, limit: int = 25) -> List[Dict[str, Any]]:
        with self._transaction() as conn:
            rows = conn.execute(
                "SELECT * FROM events ORDER BY datetime(created_at) DESC, rowid DESC LIMIT ?",
                (max(1, min(limit, 200)),),
            ).fetchall()
        out: List[Dict[str, Any]] = []
        for row in rows:
            payload = _dict_from_row(row)
            payload["payload"] = _coerce_json_payload(payload.get("payload"))
            out.append(payload)
        return out

    def append_event(
        self,
        event_type: str,
        message: str,
        level: str = "info",
        payload: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        event = {
            "id": f"evt-{uuid.uuid4().hex[:12]}",
            "type": event_type,
            "message": message,
            "level": level,
            "payload": payload,
            "created_at": _now_iso(),
        }
        with self._transaction() as conn:
            conn.execute(
                "INSERT INTO events(id, type, message, level, payload, created_at) VALUES(?, ?, ?, ?, ?, ?)",
                (
                    event["id"],
                    event["type"],
                    event["message"],
                    event["level"],
                    json.dumps(payload) if payload is not None else None,
                    event["created_at"],
                ),
            )
        return event
