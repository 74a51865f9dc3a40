import os
import tempfile
import unittest

from dogwalking.billing.database import SCHEMA_VERSION, get_metadata
from dogwalking.billing.store import MemoryStore, SqliteStore, StoreError


def message(**overrides) -> dict:
    values = {
        "sender_id": 1,
        "receiver_id": 2,
        "content": "Rex was great today",
        "sent_at": "2024-06-12T12:00:00",
        "is_read": False,
    }
    values.update(overrides)
    return values


class EntityStoreContract:
    """Behaviour every store backend must share."""

    def make_store(self):
        raise NotImplementedError

    def setUp(self) -> None:
        self.store = self.make_store()

    def tearDown(self) -> None:
        self.store.close()

    def test_insert_assigns_increasing_ids(self) -> None:
        first = self.store.insert("messages", message())
        second = self.store.insert("messages", message(content="Second"))
        self.assertEqual(first["id"], 1)
        self.assertEqual(second["id"], 2)
        self.assertEqual(self.store.get("messages", 2)["content"], "Second")

    def test_returned_rows_are_copies(self) -> None:
        row = self.store.insert("messages", message())
        row["content"] = "changed"
        fetched = self.store.get("messages", row["id"])
        fetched["content"] = "changed again"
        self.assertEqual(self.store.get("messages", row["id"])["content"], "Rex was great today")

    def test_update_merges_fields(self) -> None:
        row = self.store.insert("messages", message())
        updated = self.store.update("messages", row["id"], {"is_read": True})
        self.assertIs(updated["is_read"], True)
        self.assertEqual(updated["content"], "Rex was great today")
        self.assertIsNone(self.store.update("messages", 99, {"is_read": True}))

    def test_booleans_come_back_as_bool(self) -> None:
        row = self.store.insert("messages", message())
        self.assertIs(self.store.get("messages", row["id"])["is_read"], False)

    def test_delete_and_delete_where(self) -> None:
        first = self.store.insert("messages", message())
        self.store.insert("messages", message(sender_id=3))
        self.store.insert("messages", message(sender_id=3))
        self.assertTrue(self.store.delete("messages", first["id"]))
        self.assertFalse(self.store.delete("messages", first["id"]))
        self.assertIsNone(self.store.get("messages", first["id"]))
        self.assertEqual(self.store.delete_where("messages", sender_id=3), 2)
        self.assertEqual(self.store.select("messages"), [])

    def test_select_filters_by_equality(self) -> None:
        self.store.insert("messages", message())
        self.store.insert("messages", message(is_read=True))
        self.store.insert("messages", message(receiver_id=5))
        unread = self.store.select("messages", receiver_id=2, is_read=False)
        self.assertEqual([row["id"] for row in unread], [1])
        self.assertEqual(len(self.store.select("messages")), 3)

    def test_select_none_matches_missing_values(self) -> None:
        self.store.insert(
            "walker_payments",
            {"walker_id": 1, "amount": 20.0, "payment_date": "2024-06-12", "notes": None},
        )
        self.store.insert(
            "walker_payments",
            {"walker_id": 1, "amount": 30.0, "payment_date": "2024-06-12", "notes": "bonus"},
        )
        rows = self.store.select("walker_payments", notes=None)
        self.assertEqual([row["amount"] for row in rows], [20.0])

    def test_unknown_table_is_rejected(self) -> None:
        with self.assertRaises(StoreError):
            self.store.insert("invoices", {"total": 1})
        with self.assertRaises(StoreError):
            self.store.select("invoices")


class MemoryStoreTestCase(EntityStoreContract, unittest.TestCase):
    def make_store(self):
        return MemoryStore()


class SqliteStoreTestCase(EntityStoreContract, unittest.TestCase):
    def make_store(self):
        return SqliteStore()

    def test_schema_version_is_recorded(self) -> None:
        self.assertEqual(get_metadata(self.store.conn, "schema_version"), str(SCHEMA_VERSION))
        self.assertIsNone(get_metadata(self.store.conn, "missing"))

    def test_unknown_column_is_rejected(self) -> None:
        with self.assertRaises(StoreError):
            self.store.insert("messages", message(subject="hello"))

    def test_rows_survive_reopening_the_file(self) -> None:
        handle, path = tempfile.mkstemp(suffix=".db")
        os.close(handle)
        self.addCleanup(os.remove, path)
        store = SqliteStore(path)
        row = store.insert("messages", message())
        store.close()

        reopened = SqliteStore(path)
        try:
            self.assertEqual(reopened.get("messages", row["id"])["content"], "Rex was great today")
        finally:
            reopened.close()


if __name__ == "__main__":
    unittest.main()
