import datetime as dt
import unittest

from dogwalking.billing import ledger
from dogwalking.billing.system import ValidationError, WalkingSystem

NOW = dt.datetime(2024, 6, 12, 18, 0)


class WalkerEarningsTestCase(unittest.TestCase):
    def setUp(self) -> None:
        self.system = WalkingSystem(clock=lambda: NOW)
        owner = self.system.create_user(
            username="jordan",
            email="jordan@example.com",
            first_name="Jordan",
            last_name="River",
            role="client",
        )
        self.client = self.system.create_client(user_id=owner["id"], address="12 Pet Lane")
        self.pet = self.system.create_pet(client_id=self.client["id"], name="Rex")
        walker_user = self.system.create_user(
            username="sam",
            email="sam@example.com",
            first_name="Sam",
            last_name="Walker",
            role="walker",
        )
        self.walker = self.system.create_walker(
            user_id=walker_user["id"],
            rate_20_min=10.00,
            rate_30_min=15.00,
            rate_60_min=30.00,
            rate_overnight=80.00,
        )

    def tearDown(self) -> None:
        self.system.close()

    def book(self, duration=30, date: str = "2024-06-12", walker_id=None) -> dict:
        return self.system.create_walk(
            client_id=self.client["id"],
            pet_id=self.pet["id"],
            walker_id=walker_id or self.walker["id"],
            date=date,
            time="09:00",
            duration=duration,
            billing_amount=25.00,
        )

    def test_rate_buckets(self) -> None:
        expected = {20: 10.00, 21: 15.00, 30: 15.00, 45: 30.00, 60: 30.00, 61: 30.00, 180: 30.00}
        for duration, amount in expected.items():
            with self.subTest(duration=duration):
                walk = self.book(duration)
                self.assertEqual(
                    self.system.calculate_walker_earning_for_walk(self.walker["id"], walk["id"]),
                    amount,
                )

    def test_overnight_uses_overnight_rate(self) -> None:
        walk = self.book(ledger.OVERNIGHT)
        self.assertEqual(walk["duration"], ledger.OVERNIGHT_MINUTES)
        self.assertEqual(
            self.system.calculate_walker_earning_for_walk(self.walker["id"], walk["id"]), 80.00
        )

    def test_completing_walks_accrues_earnings(self) -> None:
        for duration in (20, 30, 60):
            walk = self.book(duration)
            self.system.update_walk(walk["id"], status="completed")

        earnings = self.system.get_walker_earnings(self.walker["id"])
        self.assertEqual([e["amount"] for e in earnings], [10.00, 15.00, 30.00])
        walker = self.system.get_walker(self.walker["id"])
        self.assertEqual(walker["total_earnings"], 55.00)
        self.assertEqual(walker["unpaid_earnings"], 55.00)
        stored = self.system.store.get("walkers", self.walker["id"])
        self.assertEqual(stored["unpaid_earnings"], 55.00)

    def test_earning_details(self) -> None:
        walk = self.book(20)
        self.system.update_walk(walk["id"], status="completed")
        earning = self.system.get_walker_earnings(self.walker["id"])[0]
        self.assertEqual(earning["walk_id"], walk["id"])
        self.assertEqual(earning["earned_date"], "2024-06-12")
        self.assertEqual(earning["walk_date"], "2024-06-12")
        self.assertEqual(earning["walk_duration"], 20)
        self.assertEqual(earning["client_name"], "Jordan River")
        self.assertEqual(earning["walker_name"], "Sam Walker")
        self.assertEqual(earning["pet_name"], "Rex")
        self.assertIsNone(earning["payment_date"])

    def test_one_earning_per_walk(self) -> None:
        walk = self.book(30)
        self.system.update_walk(walk["id"], status="completed")
        self.system.update_walk(walk["id"], status="completed")
        self.assertEqual(self.system.apply_walker_earnings_for_completed_walks(), 0)

        existing = self.system.get_walker_earnings(self.walker["id"])[0]
        again = self.system.create_walker_earning(
            walker_id=self.walker["id"], walk_id=walk["id"], amount=99
        )
        self.assertEqual(again["id"], existing["id"])
        self.assertEqual(again["amount"], 15.00)
        self.assertEqual(len(self.system.store.select("walker_earnings")), 1)

    def test_missing_rate_creates_no_earning(self) -> None:
        self.system.update_walker(self.walker["id"], rate_20_min=0)
        walk = self.book(15)
        self.system.store.update("walks", walk["id"], {"status": "completed"})
        with self.assertLogs("dogwalking.billing.system", level="WARNING"):
            created = self.system.apply_walker_earnings_for_completed_walks()
        self.assertEqual(created, 0)
        self.assertEqual(self.system.get_walker_earnings(self.walker["id"]), [])

    def test_unassigned_walks_earn_nothing(self) -> None:
        walk = self.system.create_walk(
            client_id=self.client["id"], pet_id=self.pet["id"], date="2024-06-12", time="morning"
        )
        self.system.update_walk(walk["id"], status="completed")
        self.assertEqual(self.system.store.select("walker_earnings"), [])

    def test_payment_settles_oldest_earnings_first(self) -> None:
        for day, amount in (("2024-06-01", 10.00), ("2024-06-02", 15.00), ("2024-06-03", 20.00)):
            walk = self.book(30, date=day)
            self.system.create_walker_earning(
                walker_id=self.walker["id"], walk_id=walk["id"], amount=amount, earned_date=day
            )

        with self.assertLogs("dogwalking.billing.system", level="WARNING"):
            payment = self.system.process_walker_payment(self.walker["id"], 20.00, "2024-06-12")

        earnings = self.system.get_walker_earnings(self.walker["id"])
        self.assertEqual([e["is_paid"] for e in earnings], [True, True, False])
        self.assertEqual([e["payment_id"] for e in earnings], [payment["id"], payment["id"], None])
        self.assertEqual(earnings[0]["payment_method"], "cash")
        self.assertEqual(self.system.get_walker(self.walker["id"])["unpaid_earnings"], 20.00)
        unpaid = self.system.get_unpaid_walker_earnings(self.walker["id"])
        self.assertEqual([e["amount"] for e in unpaid], [20.00])

        details = self.system.get_walker_payment_details(payment["id"])
        self.assertEqual(len(details["earnings"]), 2)

    def test_leftover_payment_is_logged(self) -> None:
        walk = self.book(30)
        self.system.update_walk(walk["id"], status="completed")
        with self.assertLogs("dogwalking.billing.system", level="INFO") as captured:
            self.system.process_walker_payment(self.walker["id"], 40.00, "2024-06-12", "bank")
        self.assertTrue(any("25.00 unallocated" in line for line in captured.output))
        self.assertEqual(self.system.get_walker(self.walker["id"])["unpaid_earnings"], 0.0)

    def test_payments_listed_newest_first(self) -> None:
        self.system.process_walker_payment(self.walker["id"], 5, "2024-06-01")
        self.system.process_walker_payment(self.walker["id"], 6, "2024-06-10")
        self.system.process_walker_payment(self.walker["id"], 7, "2024-06-05")
        payments = self.system.get_walker_payments(self.walker["id"])
        self.assertEqual([p["payment_date"] for p in payments], ["2024-06-10", "2024-06-05", "2024-06-01"])

    def test_payment_validation(self) -> None:
        with self.assertRaises(ValidationError):
            self.system.process_walker_payment(self.walker["id"], 0, "2024-06-12")
        self.assertIsNone(self.system.process_walker_payment(404, 10, "2024-06-12"))
        self.assertEqual(self.system.get_walker_earnings(404), [])

    def test_deleting_a_walk_keeps_its_earning(self) -> None:
        walk = self.book(60)
        self.system.update_walk(walk["id"], status="completed")
        self.assertTrue(self.system.delete_walk(walk["id"]))
        earnings = self.system.get_walker_earnings(self.walker["id"])
        self.assertEqual(len(earnings), 1)
        self.assertIsNone(earnings[0]["walk_date"])
        self.assertEqual(earnings[0]["pet_name"], "Unknown")
        self.assertEqual(self.system.get_walker(self.walker["id"])["total_earnings"], 30.00)


if __name__ == "__main__":
    unittest.main()
