import datetime as dt
import threading
import unittest

from dogwalking.billing.jobs import run_reconciliation
from dogwalking.billing.store import MemoryStore, SqliteStore
from dogwalking.billing.system import WalkingSystem

NOW = dt.datetime(2024, 6, 12, 12, 0)
THREADS = 8


def run_together(target, count: int = THREADS) -> list:
    barrier = threading.Barrier(count)
    errors = []

    def worker() -> None:
        barrier.wait()
        try:
            target()
        except Exception as exc:  # surfaced by the assertion in the test
            errors.append(exc)

    threads = [threading.Thread(target=worker) for _ in range(count)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()
    return errors


class ConcurrentReconciliationTests:
    def make_store(self):
        raise NotImplementedError

    def setUp(self) -> None:
        self.system = WalkingSystem(self.make_store(), clock=lambda: NOW)
        owner = self.system.create_user(
            username="jordan",
            email="jordan@example.com",
            first_name="Jordan",
            last_name="River",
            role="client",
        )
        self.client = self.system.create_client(user_id=owner["id"])
        pet = self.system.create_pet(client_id=self.client["id"], name="Rex")
        walker_user = self.system.create_user(
            username="sam",
            email="sam@example.com",
            first_name="Sam",
            last_name="Walker",
            role="walker",
        )
        self.walker = self.system.create_walker(user_id=walker_user["id"])
        self.walks = [
            self.system.create_walk(
                client_id=self.client["id"],
                pet_id=pet["id"],
                walker_id=self.walker["id"],
                date="2024-06-12",
                time="morning",
                billing_amount=20.00,
            )
            for _ in range(5)
        ]

    def tearDown(self) -> None:
        self.system.close()

    def test_parallel_earning_sweeps_create_one_earning_per_walk(self) -> None:
        for walk in self.walks:
            self.system.store.update("walks", walk["id"], {"status": "completed"})

        errors = run_together(self.system.apply_walker_earnings_for_completed_walks)

        self.assertEqual(errors, [])
        earnings = self.system.store.select("walker_earnings")
        self.assertEqual(sorted(e["walk_id"] for e in earnings), [w["id"] for w in self.walks])
        self.assertEqual(self.system.get_walker(self.walker["id"])["total_earnings"], 100.00)

    def test_parallel_completion_credits_once(self) -> None:
        walk = self.walks[0]

        errors = run_together(lambda: self.system.update_walk(walk["id"], status="completed"))

        self.assertEqual(errors, [])
        self.assertEqual(self.system.client_balance(self.client["id"]), 20.00)
        self.assertEqual(len(self.system.store.select("walker_earnings")), 1)

    def test_parallel_reconciliation(self) -> None:
        errors = run_together(lambda: run_reconciliation(self.system))

        self.assertEqual(errors, [])
        self.assertEqual(self.system.client_balance(self.client["id"]), 100.00)
        self.assertEqual(len(self.system.store.select("walker_earnings")), 5)


class MemoryStoreConcurrencyTestCase(ConcurrentReconciliationTests, unittest.TestCase):
    def make_store(self):
        return MemoryStore()


class SqliteStoreConcurrencyTestCase(ConcurrentReconciliationTests, unittest.TestCase):
    def make_store(self):
        return SqliteStore()


if __name__ == "__main__":
    unittest.main()
