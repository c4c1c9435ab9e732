"""Tests for the sqlite record store."""

from __future__ import annotations

import os
import sqlite3
import tempfile
import unittest
from datetime import datetime, timezone
from unittest.mock import patch

from backend.app.import_adapters import normalize
from backend.app.import_contract import CanonicalRecord
from backend.app.storage import SCHEMA_VERSION, RecordStore, StorageFailure


def _record(record_id: str, category: str = "bookmark", **overrides) -> CanonicalRecord:
    values = dict(
        id=record_id,
        full_text=f"text {record_id}",
        created_at=datetime(2024, 1, 1, 12, tzinfo=timezone.utc),
        author_handle="alice",
        author_name="Alice",
        category=category,
        media_url="https://example.com/a.jpg",
        media_urls=("https://example.com/a.jpg", "https://example.com/b.jpg"),
        raw_payload={"id": record_id, "nested": {"n": 1}},
    )
    values.update(overrides)
    return CanonicalRecord(**values)


class TestRecordStore(unittest.TestCase):
    def setUp(self) -> None:
        handle = tempfile.NamedTemporaryFile(delete=False, suffix=".db")
        handle.close()
        self._db_file = handle.name
        self.store = RecordStore(self._db_file).open()

    def tearDown(self) -> None:
        self.store.close()
        os.remove(self._db_file)

    def test_schema_is_versioned(self) -> None:
        self.assertEqual(self.store.schema_version(), SCHEMA_VERSION)

    def test_upsert_round_trips_every_field(self) -> None:
        record = _record("1", avatar_url="https://example.com/me.jpg", video_url="https://example.com/v.mp4")
        self.store.upsert([record])
        self.assertEqual(self.store.get("1"), record)

    def test_upsert_overwrites_by_id(self) -> None:
        self.store.upsert([_record("1")])
        self.store.upsert([_record("1", full_text="edited", category="like")])

        self.assertEqual(self.store.query_by_category("bookmark"), [])
        (stored,) = self.store.query_by_category("like")
        self.assertEqual(stored.full_text, "edited")

    def test_reimport_is_idempotent(self) -> None:
        payload = b'[{"tweet_id": "bookmark_5", "created_at": 1704067200}, {"id": "5"}, {"id_str": "6"}]'
        self.store.upsert(normalize(payload, "a.json"))
        first = sorted(self.store.list_active(), key=lambda r: r.id)
        self.store.upsert(normalize(payload, "a.json"))
        second = sorted(self.store.list_active(), key=lambda r: r.id)

        self.assertEqual([r.id for r in second], ["5", "6"])
        self.assertEqual([r.id for r in first], [r.id for r in second])
        self.assertEqual(first[0].full_text, second[0].full_text)

    def test_query_by_category_excludes_deleted(self) -> None:
        self.store.upsert([_record("1"), _record("2"), _record("3", category="like")])
        self.store.soft_delete("2")

        self.assertEqual([r.id for r in self.store.query_by_category("bookmark")], ["1"])
        self.assertEqual([r.id for r in self.store.query_by_category("like")], ["3"])
        self.assertEqual(self.store.count_by_category(), {"bookmark": 1, "like": 1, "tweet": 0})

    def test_soft_delete_keeps_the_row(self) -> None:
        self.store.upsert([_record("1")])
        deleted = self.store.soft_delete("1")

        self.assertTrue(deleted.deleted)
        self.assertTrue(self.store.get("1").deleted)
        self.assertEqual(self.store.list_active(), [])

    def test_soft_delete_unknown_id(self) -> None:
        with self.assertRaises(KeyError):
            self.store.soft_delete("missing")

    def test_reimport_restores_soft_deleted_record(self) -> None:
        self.store.upsert([_record("1")])
        self.store.soft_delete("1")
        self.store.upsert([_record("1")])
        self.assertFalse(self.store.get("1").deleted)

    def test_upsert_keeps_deleted_flag(self) -> None:
        self.store.upsert([_record("1", deleted=True), _record("2")])

        self.assertTrue(self.store.get("1").deleted)
        self.assertEqual([r.id for r in self.store.list_active()], ["2"])

    def test_purge_all_removes_everything(self) -> None:
        self.store.upsert([_record("1"), _record("2", category="tweet")])
        self.store.soft_delete("1")

        self.assertEqual(self.store.purge_all(), 2)
        self.assertIsNone(self.store.get("1"))
        self.assertEqual(self.store.list_active(), [])
        events = self.store.list_events()
        self.assertEqual([event["type"] for event in events], ["store.purged"])

    def test_query_rejects_unknown_category(self) -> None:
        with self.assertRaises(ValueError):
            self.store.query_by_category("retweet")

    def test_batch_upsert_is_all_or_nothing(self) -> None:
        self.store.upsert([_record("1")])
        broken = _record("2", author_handle=None)
        with self.assertRaises(StorageFailure):
            self.store.upsert([_record("1", full_text="changed"), broken])

        self.assertEqual(self.store.get("1").full_text, "text 1")
        self.assertIsNone(self.store.get("2"))

    def test_operations_on_closed_store_fail(self) -> None:
        self.store.close()
        with self.assertRaises(StorageFailure):
            self.store.list_active()
        self.store.open()
        self.assertEqual(self.store.list_active(), [])

    def test_events_newest_first(self) -> None:
        self.store.append_event("import.completed", "first", payload={"count": 1})
        self.store.append_event("record.deleted", "second")
        events = self.store.list_events(limit=10)
        self.assertEqual([event["type"] for event in events], ["record.deleted", "import.completed"])
        self.assertEqual(events[1]["payload"], {"count": 1})

    def test_context_manager_closes(self) -> None:
        with RecordStore(self._db_file) as store:
            self.assertTrue(store.is_open)
        self.assertFalse(store.is_open)

    def test_storage_errors_are_wrapped(self) -> None:
        with patch.object(self.store, "_conn") as conn:
            conn.__enter__.side_effect = sqlite3.OperationalError("disk I/O error")
            with self.assertRaises(StorageFailure):
                self.store.list_active()


if __name__ == "__main__":
    unittest.main()
