"""Core orchestration logic for the dog-walking billing engine."""

from __future__ import annotations

import datetime as dt
import functools
import json
import logging
import secrets
import threading
from typing import Any, Callable, Sequence

from . import ledger
from .store import EntityStore, MemoryStore

logger = logging.getLogger(__name__)

MAX_RECURRING_WEEKS = 52
USER_ROLES = ("admin", "client", "walker")
DEFAULT_WALKER_COLOR = "#4f46e5"

WALK_UPDATE_FIELDS = frozenset(
    {
        "client_id",
        "walker_id",
        "pet_id",
        "pet_ids",
        "date",
        "time",
        "duration",
        "billing_amount",
        "notes",
        "status",
        "is_paid",
        "paid_date",
        "is_group_walk",
        "repeat_weekly",
        "number_of_weeks",
    }
)
CLIENT_UPDATE_FIELDS = frozenset({"user_id", "address", "emergency_contact", "notes"})
WALKER_UPDATE_FIELDS = frozenset(
    {
        "user_id",
        "bio",
        "availability",
        "rating",
        ledger.RATE_20_MIN,
        ledger.RATE_30_MIN,
        ledger.RATE_60_MIN,
        ledger.RATE_OVERNIGHT,
        "street",
        "city",
        "state",
        "zip",
        "color",
    }
)
PET_UPDATE_FIELDS = frozenset({"client_id", "name", "breed", "age", "size", "notes", "is_active"})
USER_UPDATE_FIELDS = frozenset({"username", "email", "phone", "first_name", "last_name", "role", "is_active"})


class ValidationError(RuntimeError):
    """Raised when incoming data fails validation."""


def synchronized(method):
    """Run a ``WalkingSystem`` method while holding the engine lock."""

    @functools.wraps(method)
    def wrapper(self, *args, **kwargs):
        with self._lock:
            return method(self, *args, **kwargs)

    return wrapper


class WalkingSystem:
    """High level façade over walks, balances and walker earnings.

    Client balances and walker totals are never accumulated: they are derived
    from walk, payment and earning rows whenever they are read and written
    back to the cache columns after every mutation. All public operations run
    under one re-entrant lock so that check-then-act guards (an earning per
    walk, a walk applied to a balance once) hold when several threads share
    the engine.
    """

    def __init__(
        self,
        store: EntityStore | None = None,
        *,
        clock: Callable[[], dt.datetime] = dt.datetime.now,
    ) -> None:
        self.store = store if store is not None else MemoryStore()
        self.clock = clock
        self._lock = threading.RLock()

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    def _today(self) -> dt.date:
        return self.clock().date()

    @staticmethod
    def _full_name(user: dict | None) -> str | None:
        if not user:
            return None
        return f"{user['first_name']} {user['last_name']}"

    @staticmethod
    def _parse_date(value: Any, field: str) -> str:
        if isinstance(value, dt.datetime):
            return value.date().isoformat()
        if isinstance(value, dt.date):
            return value.isoformat()
        try:
            return dt.date.fromisoformat(str(value)).isoformat()
        except ValueError:
            raise ValidationError(f"{field} must be a YYYY-MM-DD date") from None

    @staticmethod
    def _parse_amount(value: Any, field: str, *, positive: bool = False) -> float:
        try:
            amount = ledger.money(value)
        except (TypeError, ValueError):
            raise ValidationError(f"{field} must be a number") from None
        if amount < 0 or (positive and amount == 0):
            raise ValidationError(f"{field} must be greater than zero")
        return amount

    @staticmethod
    def _check_fields(fields: dict, allowed: frozenset, entity: str) -> None:
        unknown = set(fields) - allowed
        if unknown:
            raise ValidationError(f"Unknown {entity} field(s): {', '.join(sorted(unknown))}")

    # ------------------------------------------------------------------
    # Users
    # ------------------------------------------------------------------
    @synchronized
    def create_user(
        self,
        *,
        username: str,
        email: str,
        first_name: str,
        last_name: str,
        role: str,
        phone: str | None = None,
    ) -> dict:
        if role not in USER_ROLES:
            raise ValidationError(f"Role must be one of: {', '.join(USER_ROLES)}")
        if self.get_user_by_username(username):
            raise ValidationError("Username already taken")
        return self.store.insert(
            "users",
            {
                "username": username,
                "email": email.lower(),
                "phone": phone,
                "first_name": first_name,
                "last_name": last_name,
                "role": role,
                "is_active": True,
            },
        )

    @synchronized
    def get_user(self, user_id: int) -> dict | None:
        return self.store.get("users", user_id)

    @synchronized
    def get_user_by_username(self, username: str) -> dict | None:
        rows = self.store.select("users", username=username)
        return rows[0] if rows else None

    @synchronized
    def get_user_by_email(self, email: str) -> dict | None:
        rows = self.store.select("users", email=email.lower())
        return rows[0] if rows else None

    @synchronized
    def get_all_users(self) -> list[dict]:
        return self.store.select("users")

    @synchronized
    def update_user(self, user_id: int, **fields: Any) -> dict | None:
        self._check_fields(fields, USER_UPDATE_FIELDS, "user")
        if "role" in fields and fields["role"] not in USER_ROLES:
            raise ValidationError(f"Role must be one of: {', '.join(USER_ROLES)}")
        if "email" in fields and fields["email"]:
            fields["email"] = fields["email"].lower()
        return self.store.update("users", user_id, fields)

    @synchronized
    def deactivate_user(self, user_id: int) -> dict | None:
        return self.store.update("users", user_id, {"is_active": False})

    @synchronized
    def get_user_with_role(self, user_id: int) -> dict | None:
        user = self.get_user(user_id)
        if not user:
            return None
        if user["role"] == "client":
            client = self.get_client_by_user_id(user_id)
            if client:
                user["client_details"] = client
        elif user["role"] == "walker":
            walker = self.get_walker_by_user_id(user_id)
            if walker:
                user["walker_details"] = walker
        return user

    # ------------------------------------------------------------------
    # Clients & client balance ledger
    # ------------------------------------------------------------------
    @synchronized
    def create_client(
        self,
        *,
        user_id: int,
        address: str | None = None,
        emergency_contact: str | None = None,
        notes: str | None = None,
    ) -> dict:
        row = self.store.insert(
            "clients",
            {
                "user_id": user_id,
                "address": address,
                "emergency_contact": emergency_contact,
                "notes": notes,
                "balance": 0.0,
                "last_payment_date": None,
            },
        )
        return self.get_client(row["id"])

    def _client_payments(self, client_id: int) -> list[dict]:
        payments = self.store.select("client_payments", client_id=client_id)
        return sorted(payments, key=lambda row: (row["payment_date"], row["id"]))

    def _client_view(self, row: dict) -> dict:
        payments = self._client_payments(row["id"])
        row["payments"] = payments
        row["balance"] = ledger.client_balance(
            self.store.select("walks", client_id=row["id"]), payments
        )
        return row

    @synchronized
    def get_client(self, client_id: int) -> dict | None:
        row = self.store.get("clients", client_id)
        return self._client_view(row) if row else None

    @synchronized
    def get_client_by_user_id(self, user_id: int) -> dict | None:
        rows = self.store.select("clients", user_id=user_id)
        return self._client_view(rows[0]) if rows else None

    @synchronized
    def update_client(self, client_id: int, **fields: Any) -> dict | None:
        self._check_fields(fields, CLIENT_UPDATE_FIELDS, "client")
        if not self.store.update("clients", client_id, fields):
            return None
        return self.get_client(client_id)

    @synchronized
    def get_client_with_pets(self, client_id: int) -> dict | None:
        client = self.get_client(client_id)
        if not client:
            return None
        user = self.get_user(client["user_id"])
        if not user:
            return None
        user["client_details"] = client
        user["pets"] = self.get_pets_by_client_id(client_id, include_inactive=True)
        return user

    @synchronized
    def get_all_clients_with_balances(self) -> list[dict]:
        """Return client users with balances recomputed from walk history."""

        results = []
        for user in self.store.select("users", role="client"):
            client = self.get_client_by_user_id(user["id"])
            if client:
                user["client_details"] = client
                results.append(user)
        return results

    @synchronized
    def client_balance(self, client_id: int) -> float | None:
        client = self.get_client(client_id)
        return client["balance"] if client else None

    @synchronized
    def refresh_client_balance(self, client_id: int) -> float | None:
        """Write the derived balance into the client's cache column."""

        client = self.get_client(client_id)
        if not client:
            return None
        self.store.update("clients", client_id, {"balance": client["balance"]})
        return client["balance"]

    @synchronized
    def record_client_payment(
        self,
        client_id: int,
        amount: float,
        payment_date: str,
        payment_method: str = "cash",
        notes: str | None = None,
    ) -> dict | None:
        if not self.store.get("clients", client_id):
            return None
        amount = self._parse_amount(amount, "amount", positive=True)
        payment_date = self._parse_date(payment_date, "payment_date")
        self.store.insert(
            "client_payments",
            {
                "client_id": client_id,
                "amount": amount,
                "payment_date": payment_date,
                "payment_method": payment_method or "cash",
                "notes": notes,
            },
        )
        self.store.update("clients", client_id, {"last_payment_date": payment_date})
        balance = self.refresh_client_balance(client_id)
        logger.info(
            "Recorded payment of %.2f for client %s, balance now %.2f",
            amount,
            client_id,
            balance,
        )
        return self.get_client(client_id)

    @synchronized
    def update_client_balance(
        self, client_id: int, amount: float = 0.0, is_payment: bool = False
    ) -> dict | None:
        """Refresh a client's balance, optionally recording a cash payment first."""

        if is_payment:
            return self.record_client_payment(client_id, amount, self._today().isoformat())
        if self.refresh_client_balance(client_id) is None:
            return None
        return self.get_client(client_id)

    # ------------------------------------------------------------------
    # Walkers
    # ------------------------------------------------------------------
    @staticmethod
    def _serialize_availability(value: Any) -> str | None:
        if value is None or isinstance(value, str):
            return value
        return json.dumps(value)

    @synchronized
    def create_walker(
        self,
        *,
        user_id: int,
        bio: str | None = None,
        availability: Any = None,
        rate_20_min: float = 15.00,
        rate_30_min: float = 20.00,
        rate_60_min: float = 35.00,
        rate_overnight: float = 80.00,
        street: str | None = None,
        city: str | None = None,
        state: str | None = None,
        zip: str | None = None,
        color: str = DEFAULT_WALKER_COLOR,
    ) -> dict:
        row = self.store.insert(
            "walkers",
            {
                "user_id": user_id,
                "bio": bio,
                "availability": self._serialize_availability(availability),
                "rating": 5,
                ledger.RATE_20_MIN: self._parse_amount(rate_20_min, ledger.RATE_20_MIN),
                ledger.RATE_30_MIN: self._parse_amount(rate_30_min, ledger.RATE_30_MIN),
                ledger.RATE_60_MIN: self._parse_amount(rate_60_min, ledger.RATE_60_MIN),
                ledger.RATE_OVERNIGHT: self._parse_amount(rate_overnight, ledger.RATE_OVERNIGHT),
                "total_earnings": 0.0,
                "unpaid_earnings": 0.0,
                "street": street,
                "city": city,
                "state": state,
                "zip": zip,
                "color": color or DEFAULT_WALKER_COLOR,
            },
        )
        return self.get_walker(row["id"])

    def _walker_totals(self, walker_id: int) -> tuple[float, float]:
        earnings = self.store.select("walker_earnings", walker_id=walker_id)
        earned = ledger.total(row["amount"] for row in earnings)
        unpaid = ledger.total(row["amount"] for row in earnings if not row["is_paid"])
        return earned, unpaid

    def _walker_view(self, row: dict) -> dict:
        row["total_earnings"], row["unpaid_earnings"] = self._walker_totals(row["id"])
        return row

    @synchronized
    def get_walker(self, walker_id: int) -> dict | None:
        row = self.store.get("walkers", walker_id)
        return self._walker_view(row) if row else None

    @synchronized
    def get_walker_by_user_id(self, user_id: int) -> dict | None:
        rows = self.store.select("walkers", user_id=user_id)
        return self._walker_view(rows[0]) if rows else None

    @synchronized
    def update_walker(self, walker_id: int, **fields: Any) -> dict | None:
        self._check_fields(fields, WALKER_UPDATE_FIELDS, "walker")
        for rate in (ledger.RATE_20_MIN, ledger.RATE_30_MIN, ledger.RATE_60_MIN, ledger.RATE_OVERNIGHT):
            if rate in fields:
                fields[rate] = self._parse_amount(fields[rate], rate)
        if "availability" in fields:
            fields["availability"] = self._serialize_availability(fields["availability"])
        if not self.store.update("walkers", walker_id, fields):
            return None
        return self.get_walker(walker_id)

    @synchronized
    def get_all_walkers(self) -> list[dict]:
        results = []
        for user in self.store.select("users", role="walker"):
            walker = self.get_walker_by_user_id(user["id"])
            if walker:
                user["walker_details"] = walker
                results.append(user)
        return results

    @synchronized
    def refresh_walker_totals(self, walker_id: int) -> dict | None:
        """Write derived earnings totals into the walker's cache columns."""

        if not self.store.get("walkers", walker_id):
            return None
        earned, unpaid = self._walker_totals(walker_id)
        self.store.update(
            "walkers", walker_id, {"total_earnings": earned, "unpaid_earnings": unpaid}
        )
        return self.get_walker(walker_id)

    # ------------------------------------------------------------------
    # Pets
    # ------------------------------------------------------------------
    @synchronized
    def create_pet(
        self,
        *,
        client_id: int,
        name: str,
        breed: str | None = None,
        age: int | None = None,
        size: str | None = None,
        notes: str | None = None,
    ) -> dict:
        return self.store.insert(
            "pets",
            {
                "client_id": client_id,
                "name": name,
                "breed": breed,
                "age": age,
                "size": size,
                "notes": notes,
                "is_active": True,
            },
        )

    @synchronized
    def get_pet(self, pet_id: int) -> dict | None:
        return self.store.get("pets", pet_id)

    @synchronized
    def get_pets_by_client_id(self, client_id: int, *, include_inactive: bool = False) -> list[dict]:
        pets = self.store.select("pets", client_id=client_id)
        if not include_inactive:
            pets = [pet for pet in pets if pet["is_active"]]
        return pets

    @synchronized
    def update_pet(self, pet_id: int, **fields: Any) -> dict | None:
        self._check_fields(fields, PET_UPDATE_FIELDS, "pet")
        return self.store.update("pets", pet_id, fields)

    @synchronized
    def deactivate_pet(self, pet_id: int) -> dict | None:
        return self.store.update("pets", pet_id, {"is_active": False})

    # ------------------------------------------------------------------
    # Walk lifecycle
    # ------------------------------------------------------------------
    @staticmethod
    def _normalize_pet_ids(pet_id: Any, pet_ids: Sequence | None) -> list[int]:
        ordered: list[int] = []
        try:
            for value in [pet_id, *(pet_ids or [])]:
                value = int(value)
                if value not in ordered:
                    ordered.append(value)
        except (TypeError, ValueError):
            raise ValidationError("Pet ids must be integers") from None
        return ordered

    def _normalize_walk_fields(self, fields: dict) -> dict:
        changes = dict(fields)
        if "date" in changes:
            changes["date"] = self._parse_date(changes["date"], "date")
        if "time" in changes:
            if ledger.parse_walk_time(changes["time"]) is None:
                raise ValidationError("time must be HH:MM[:SS] or a named time slot")
            changes["time"] = str(changes["time"]).strip()
        if "duration" in changes:
            try:
                changes["duration"] = ledger.normalize_duration(changes["duration"])
            except (TypeError, ValueError):
                raise ValidationError("duration must be a number of minutes or 'overnight'") from None
        if "billing_amount" in changes and changes["billing_amount"] is not None:
            changes["billing_amount"] = self._parse_amount(changes["billing_amount"], "billing_amount")
        if "status" in changes and changes["status"] not in ledger.WALK_STATUSES:
            raise ValidationError(f"status must be one of: {', '.join(ledger.WALK_STATUSES)}")
        if "paid_date" in changes and changes["paid_date"] is not None:
            changes["paid_date"] = self._parse_date(changes["paid_date"], "paid_date")
        if changes.get("number_of_weeks") is not None:
            try:
                weeks = int(changes["number_of_weeks"])
            except (TypeError, ValueError):
                raise ValidationError("number_of_weeks must be a whole number") from None
            if not 1 <= weeks <= MAX_RECURRING_WEEKS:
                raise ValidationError(f"number_of_weeks must be between 1 and {MAX_RECURRING_WEEKS}")
            changes["number_of_weeks"] = weeks
        return changes

    def _walk_pet_ids(self, walk: dict) -> list[int]:
        links = sorted(
            self.store.select("walk_pets", walk_id=walk["id"]),
            key=lambda row: (row["position"], row["id"]),
        )
        return [row["pet_id"] for row in links] or [walk["pet_id"]]

    def _set_walk_pets(self, walk_id: int, pet_ids: list[int]) -> None:
        self.store.delete_where("walk_pets", walk_id=walk_id)
        for position, pet_id in enumerate(pet_ids):
            self.store.insert("walk_pets", {"walk_id": walk_id, "pet_id": pet_id, "position": position})

    def _walk_view(self, walk: dict) -> dict:
        walk["pet_ids"] = self._walk_pet_ids(walk)
        return walk

    def _new_recurring_group_id(self) -> str:
        stamp = int(self.clock().timestamp() * 1000)
        return f"recur_{stamp}_{secrets.token_hex(4)}"

    @synchronized
    def create_walk(
        self,
        *,
        client_id: int,
        pet_id: int,
        date: str | dt.date,
        time: str,
        duration: int | str = ledger.DEFAULT_DURATION_MINUTES,
        walker_id: int | None = None,
        pet_ids: Sequence[int] | None = None,
        billing_amount: float | None = None,
        notes: str | None = None,
        is_group_walk: bool = False,
        repeat_weekly: bool = False,
        number_of_weeks: int | None = None,
    ) -> dict:
        """Schedule a walk, or a weekly series of walks when ``repeat_weekly``.

        A series gets ``number_of_weeks`` occurrences (a year of them when no
        count is given), all sharing one ``recurring_group_id``. The first walk
        is returned; for a series it also carries ``recurring_count``.
        """

        values = self._normalize_walk_fields(
            {
                "date": date,
                "time": time,
                "duration": duration,
                "billing_amount": billing_amount,
                "number_of_weeks": number_of_weeks,
            }
        )
        all_pets = self._normalize_pet_ids(pet_id, pet_ids)
        base = {
            "client_id": client_id,
            "walker_id": walker_id,
            "pet_id": all_pets[0],
            "time": values["time"],
            "duration": values["duration"],
            "billing_amount": values["billing_amount"],
            "notes": notes,
            "status": "scheduled",
            "is_paid": False,
            "paid_date": None,
            "is_balance_applied": False,
            "is_group_walk": bool(is_group_walk),
            "repeat_weekly": bool(repeat_weekly),
            "number_of_weeks": values["number_of_weeks"],
            "recurring_group_id": None,
        }
        dates = [ledger.parse_walk_date(values["date"])]
        if repeat_weekly:
            occurrences = values["number_of_weeks"] or MAX_RECURRING_WEEKS
            dates = ledger.weekly_dates(dates[0], occurrences)
            base["recurring_group_id"] = self._new_recurring_group_id()

        created = []
        for walk_date in dates:
            walk = self.store.insert("walks", {**base, "date": walk_date.isoformat()})
            self._set_walk_pets(walk["id"], all_pets)
            created.append(walk)

        first = self._walk_view(created[0])
        if repeat_weekly:
            first["recurring_count"] = len(created)
            logger.info(
                "Created %d recurring walks in group %s for client %s",
                len(created),
                base["recurring_group_id"],
                client_id,
            )
        else:
            logger.info("Created walk %s for client %s on %s", first["id"], client_id, first["date"])
        return first

    @synchronized
    def get_walk(self, walk_id: int) -> dict | None:
        walk = self.store.get("walks", walk_id)
        return self._walk_view(walk) if walk else None

    @synchronized
    def update_walk(self, walk_id: int, **fields: Any) -> dict | None:
        """Merge fields into a walk.

        Moving a walk into ``completed`` applies it to the client's balance
        and creates the walker's earning. Both steps are guarded, so marking
        an already completed walk completed again changes nothing. The
        cached balance of the walk's old and new client is refreshed after
        every update.
        """

        walk = self.store.get("walks", walk_id)
        if not walk:
            return None
        self._check_fields(fields, WALK_UPDATE_FIELDS, "walk")
        changes = self._normalize_walk_fields(fields)
        pet_ids = changes.pop("pet_ids", None)
        if pet_ids is not None or "pet_id" in changes:
            current = self._walk_pet_ids(walk)
            primary = changes.get("pet_id", walk["pet_id"])
            if pet_ids is None:
                pet_ids = [pet for pet in current if pet != walk["pet_id"]]
            all_pets = self._normalize_pet_ids(primary, pet_ids)
            changes["pet_id"] = all_pets[0]
            self._set_walk_pets(walk_id, all_pets)

        updated = self.store.update("walks", walk_id, changes)
        if updated["status"] == "completed" and walk["status"] != "completed":
            logger.info("Walk %s marked completed (was %s)", walk_id, walk["status"])
            self._apply_walk_to_balance(updated, refresh=False)
            if updated["walker_id"]:
                self.apply_walker_earnings_for_completed_walks(walker_id=updated["walker_id"])
        for client_id in {walk["client_id"], updated["client_id"]}:
            self.refresh_client_balance(client_id)
        return self.get_walk(walk_id)

    @synchronized
    def delete_walk(self, walk_id: int) -> bool:
        """Delete a walk with its photos and pet links.

        Earnings already created for the walk are kept.
        """

        walk = self.store.get("walks", walk_id)
        if not walk:
            return False
        photos = self.store.delete_where("walk_photos", walk_id=walk_id)
        self.store.delete_where("walk_pets", walk_id=walk_id)
        self.store.delete("walks", walk_id)
        self.refresh_client_balance(walk["client_id"])
        logger.info("Deleted walk %s and %d photo(s)", walk_id, photos)
        return True

    @synchronized
    def mark_walk_paid(
        self, walk_id: int, *, is_paid: bool = True, paid_date: str | None = None
    ) -> dict | None:
        if not self.store.get("walks", walk_id):
            return None
        if is_paid:
            paid_date = self._parse_date(paid_date or self._today(), "paid_date")
        else:
            paid_date = None
        self.store.update("walks", walk_id, {"is_paid": bool(is_paid), "paid_date": paid_date})
        return self.get_walk(walk_id)

    @synchronized
    def set_walk_balance_applied(self, walk_id: int) -> dict | None:
        """Apply a single completed walk to its client's balance on demand."""

        walk = self.store.get("walks", walk_id)
        if not walk:
            return None
        self._apply_walk_to_balance(walk)
        return self.get_walk(walk_id)

    def _apply_walk_to_balance(self, walk: dict, *, refresh: bool = True) -> bool:
        """Mark a completed walk as counted in its client's balance.

        This is the only place a walk is applied. Returns ``False`` when the
        walk is not completed or was applied before.
        """

        if walk["status"] != "completed" or walk.get("is_balance_applied"):
            return False
        self.store.update("walks", walk["id"], {"is_balance_applied": True})
        walk["is_balance_applied"] = True
        if refresh:
            self.refresh_client_balance(walk["client_id"])
        logger.info(
            "Applied walk %s (%.2f) to client %s balance",
            walk["id"],
            ledger.money(walk.get("billing_amount")),
            walk["client_id"],
        )
        return True

    # ------------------------------------------------------------------
    # Walk queries
    # ------------------------------------------------------------------
    def _walk_details(self, walk: dict) -> dict | None:
        pet = self.store.get("pets", walk["pet_id"])
        client = self.store.get("clients", walk["client_id"])
        if not pet or not client:
            return None
        client_user = self.store.get("users", client["user_id"])
        if not client_user:
            return None

        walker_name = None
        walker_color = None
        if walk.get("walker_id"):
            walker = self.store.get("walkers", walk["walker_id"])
            if walker:
                walker_name = self._full_name(self.store.get("users", walker["user_id"]))
                walker_color = walker["color"]

        walk = self._walk_view(walk)
        pet_names = []
        for other_id in walk["pet_ids"]:
            other = self.store.get("pets", other_id)
            if other:
                pet_names.append(other["name"])
            else:
                logger.warning("Walk %s references missing pet %s", walk["id"], other_id)

        walk.update(
            {
                "client_name": self._full_name(client_user),
                "pet_name": pet["name"],
                "all_pet_names": ", ".join(pet_names) or pet["name"],
                "walker_name": walker_name,
                "walker_color": walker_color,
            }
        )
        return walk

    def _details_for(self, walks: list[dict]) -> list[dict]:
        detailed = []
        for walk in sorted(walks, key=ledger.walk_sort_key):
            details = self._walk_details(walk)
            if details:
                detailed.append(details)
        return detailed

    @synchronized
    def get_walk_with_details(self, walk_id: int) -> dict | None:
        walk = self.store.get("walks", walk_id)
        return self._walk_details(walk) if walk else None

    @synchronized
    def get_walks_by_client_id(self, client_id: int) -> list[dict]:
        walks = sorted(self.store.select("walks", client_id=client_id), key=ledger.walk_sort_key)
        return [self._walk_view(walk) for walk in walks]

    @synchronized
    def get_walks_by_walker_id(self, walker_id: int) -> list[dict]:
        """Return a walker's walks with display details and the client address."""

        walks = self._details_for(self.store.select("walks", walker_id=walker_id))
        for walk in walks:
            client = self.store.get("clients", walk["client_id"])
            walk["address"] = client["address"] if client else None
        return walks

    @synchronized
    def get_walks_by_status(self, status: str | None = None) -> list[dict]:
        filters = {"status": status} if status else {}
        return self._details_for(self.store.select("walks", **filters))

    @synchronized
    def get_walks_by_date(self, date: str | dt.date) -> list[dict]:
        day = self._parse_date(date, "date")
        return self._details_for(self.store.select("walks", date=day))

    @synchronized
    def get_walks_by_recurring_group(self, recurring_group_id: str) -> list[dict]:
        walks = self.store.select("walks", recurring_group_id=recurring_group_id)
        return [self._walk_view(walk) for walk in sorted(walks, key=ledger.walk_sort_key)]

    @synchronized
    def get_upcoming_walks(self, limit: int = 5) -> list[dict]:
        today = self._today().isoformat()
        upcoming = [
            walk
            for walk in self.store.select("walks", status="scheduled")
            if walk["date"] >= today
        ]
        return self._details_for(upcoming)[:limit]

    # ------------------------------------------------------------------
    # Walk photos & messages
    # ------------------------------------------------------------------
    @synchronized
    def create_walk_photo(self, *, walk_id: int, photo_url: str) -> dict | None:
        if not self.store.get("walks", walk_id):
            return None
        return self.store.insert(
            "walk_photos",
            {
                "walk_id": walk_id,
                "photo_url": photo_url,
                "uploaded_at": self.clock().isoformat(timespec="seconds"),
            },
        )

    @synchronized
    def get_walk_photos(self, walk_id: int) -> list[dict]:
        return self.store.select("walk_photos", walk_id=walk_id)

    @synchronized
    def create_message(self, *, sender_id: int, receiver_id: int, content: str) -> dict:
        return self.store.insert(
            "messages",
            {
                "sender_id": sender_id,
                "receiver_id": receiver_id,
                "content": content,
                "sent_at": self.clock().isoformat(timespec="seconds"),
                "is_read": False,
            },
        )

    @synchronized
    def get_messages_between_users(self, user1_id: int, user2_id: int) -> list[dict]:
        messages = self.store.select("messages", sender_id=user1_id, receiver_id=user2_id)
        if user1_id != user2_id:
            messages += self.store.select("messages", sender_id=user2_id, receiver_id=user1_id)
        return sorted(messages, key=lambda row: (row["sent_at"], row["id"]))

    @synchronized
    def mark_message_as_read(self, message_id: int) -> dict | None:
        return self.store.update("messages", message_id, {"is_read": True})

    @synchronized
    def get_unread_message_count(self, user_id: int) -> int:
        return len(self.store.select("messages", receiver_id=user_id, is_read=False))

    # ------------------------------------------------------------------
    # Walker earnings ledger
    # ------------------------------------------------------------------
    @synchronized
    def calculate_walker_earning_for_walk(self, walker_id: int, walk_id: int) -> float:
        walker = self.store.get("walkers", walker_id)
        walk = self.store.get("walks", walk_id)
        if not walker or not walk:
            logger.warning("Cannot price walk %s for walker %s: record missing", walk_id, walker_id)
            return 0.0
        try:
            rate_field = ledger.rate_field_for_duration(walk["duration"])
        except (TypeError, ValueError):
            logger.warning("Walk %s has an unusable duration %r", walk_id, walk["duration"])
            return 0.0
        amount = ledger.money(walker.get(rate_field))
        if amount <= 0:
            logger.warning("Walker %s has no %s configured, walk %s earns nothing", walker_id, rate_field, walk_id)
        return amount

    def _earning_for_walk(self, walk_id: int) -> dict | None:
        rows = self.store.select("walker_earnings", walk_id=walk_id)
        return rows[0] if rows else None

    @synchronized
    def create_walker_earning(
        self,
        *,
        walker_id: int,
        walk_id: int,
        amount: float,
        earned_date: str | None = None,
    ) -> dict:
        """Record an earning for a walk, or return the one it already has."""

        existing = self._earning_for_walk(walk_id)
        if existing:
            return existing
        earning = self.store.insert(
            "walker_earnings",
            {
                "walker_id": walker_id,
                "walk_id": walk_id,
                "amount": self._parse_amount(amount, "amount", positive=True),
                "earned_date": self._parse_date(earned_date or self._today(), "earned_date"),
                "is_paid": False,
                "payment_id": None,
            },
        )
        self.refresh_walker_totals(walker_id)
        return earning

    @synchronized
    def apply_walker_earnings_for_completed_walks(self, walker_id: int | None = None) -> int:
        """Create the missing earning for every completed, assigned walk.

        Returns how many earnings were created.
        """

        filters: dict[str, Any] = {"status": "completed"}
        if walker_id is not None:
            filters["walker_id"] = walker_id
        today = self._today().isoformat()
        created = 0
        touched = set()
        for walk in self.store.select("walks", **filters):
            if not walk["walker_id"] or self._earning_for_walk(walk["id"]):
                continue
            amount = self.calculate_walker_earning_for_walk(walk["walker_id"], walk["id"])
            if amount <= 0:
                continue
            self.store.insert(
                "walker_earnings",
                {
                    "walker_id": walk["walker_id"],
                    "walk_id": walk["id"],
                    "amount": amount,
                    "earned_date": today,
                    "is_paid": False,
                    "payment_id": None,
                },
            )
            touched.add(walk["walker_id"])
            created += 1
        for touched_id in touched:
            self.refresh_walker_totals(touched_id)
        if created:
            logger.info("Created %d walker earning record(s)", created)
        return created

    def _earning_details(self, earning: dict, walker: dict) -> dict:
        walk = self.store.get("walks", earning["walk_id"])
        client_user = None
        pet = None
        if walk:
            client = self.store.get("clients", walk["client_id"])
            client_user = self.store.get("users", client["user_id"]) if client else None
            pet = self.store.get("pets", walk["pet_id"])
        payment = None
        if earning.get("payment_id"):
            payment = self.store.get("walker_payments", earning["payment_id"])
        earning.update(
            {
                "walk_date": walk["date"] if walk else None,
                "walk_time": walk["time"] if walk else None,
                "walk_duration": walk["duration"] if walk else None,
                "walker_name": self._full_name(self.store.get("users", walker["user_id"])) or "Unknown",
                "client_name": self._full_name(client_user) or "Unknown",
                "pet_name": pet["name"] if pet else "Unknown",
                "payment_date": payment["payment_date"] if payment else None,
                "payment_method": payment["payment_method"] if payment else None,
                "payment_amount": payment["amount"] if payment else None,
            }
        )
        return earning

    @staticmethod
    def _earning_sort_key(earning: dict) -> tuple:
        walk_key = ledger.walk_sort_key(
            {"date": earning.get("walk_date"), "time": earning.get("walk_time")}
        )
        return (earning["earned_date"], walk_key[0], walk_key[1], earning["id"])

    @synchronized
    def get_walker_earnings(self, walker_id: int) -> list[dict]:
        """Return a walker's earnings, oldest first, with walk details."""

        walker = self.store.get("walkers", walker_id)
        if not walker:
            return []
        earnings = [
            self._earning_details(earning, walker)
            for earning in self.store.select("walker_earnings", walker_id=walker_id)
        ]
        return sorted(earnings, key=self._earning_sort_key)

    @synchronized
    def get_unpaid_walker_earnings(self, walker_id: int) -> list[dict]:
        return [earning for earning in self.get_walker_earnings(walker_id) if not earning["is_paid"]]

    @synchronized
    def get_walker_payments(self, walker_id: int) -> list[dict]:
        payments = self.store.select("walker_payments", walker_id=walker_id)
        return sorted(payments, key=lambda row: (row["payment_date"], row["id"]), reverse=True)

    @synchronized
    def get_walker_payment_details(self, payment_id: int) -> dict | None:
        payment = self.store.get("walker_payments", payment_id)
        if not payment:
            return None
        earnings = [
            earning
            for earning in self.get_walker_earnings(payment["walker_id"])
            if earning["payment_id"] == payment_id
        ]
        return {"payment": payment, "earnings": earnings}

    @synchronized
    def process_walker_payment(
        self,
        walker_id: int,
        amount: float,
        payment_date: str,
        payment_method: str = "cash",
        notes: str | None = None,
    ) -> dict | None:
        """Record a payment and settle unpaid earnings oldest first.

        An earning the payment only partly covers is settled in full.
        """

        if not self.store.get("walkers", walker_id):
            return None
        amount = self._parse_amount(amount, "amount", positive=True)
        payment = self.store.insert(
            "walker_payments",
            {
                "walker_id": walker_id,
                "amount": amount,
                "payment_date": self._parse_date(payment_date, "payment_date"),
                "payment_method": payment_method or "cash",
                "notes": notes,
            },
        )
        allocation = ledger.allocate_payment(amount, self.get_unpaid_walker_earnings(walker_id))
        for earning in allocation.paid:
            self.store.update(
                "walker_earnings", earning["id"], {"is_paid": True, "payment_id": payment["id"]}
            )
        if allocation.partial:
            logger.warning(
                "Payment %s only partly covers earning %s (%.2f) for walker %s; settled in full",
                payment["id"],
                allocation.partial["id"],
                ledger.money(allocation.partial["amount"]),
                walker_id,
            )
        if allocation.unallocated > 0:
            logger.info(
                "Payment %s left %.2f unallocated for walker %s",
                payment["id"],
                allocation.unallocated,
                walker_id,
            )
        self.refresh_walker_totals(walker_id)
        logger.info(
            "Recorded payment %s of %.2f for walker %s covering %d earning(s)",
            payment["id"],
            amount,
            walker_id,
            len(allocation.paid),
        )
        return payment

    # ------------------------------------------------------------------
    # Batch reconciliation
    # ------------------------------------------------------------------
    @synchronized
    def update_outstanding_walks(self) -> int:
        """Mark unpaid walks at least a day old as outstanding."""

        cutoff = self._today() - dt.timedelta(days=1)
        count = 0
        touched = set()
        for walk in self.store.select("walks"):
            if walk["is_paid"] or walk["status"] not in ("completed", "scheduled"):
                continue
            try:
                walk_date = ledger.parse_walk_date(walk["date"])
            except ValueError:
                logger.warning("Walk %s has an unparsable date %r", walk["id"], walk["date"])
                continue
            if walk_date <= cutoff:
                self.store.update("walks", walk["id"], {"status": "outstanding"})
                touched.add(walk["client_id"])
                count += 1
        for client_id in touched:
            self.refresh_client_balance(client_id)
        if count:
            logger.info("Marked %d walk(s) outstanding", count)
        return count

    @synchronized
    def update_completed_walks(self) -> int:
        """Complete scheduled walks whose end time has passed."""

        now = self.clock()
        count = 0
        touched = set()
        for walk in self.store.select("walks", status="scheduled"):
            try:
                ends_at = ledger.walk_end(walk)
            except (TypeError, ValueError):
                logger.warning("Walk %s has an unusable date or duration", walk["id"])
                continue
            if ends_at > now:
                continue
            completed = self.store.update("walks", walk["id"], {"status": "completed"})
            self._apply_walk_to_balance(completed, refresh=False)
            touched.add(completed["client_id"])
            count += 1
        for client_id in touched:
            self.refresh_client_balance(client_id)
        if count:
            logger.info("Auto-completed %d walk(s)", count)
        return count

    @synchronized
    def apply_completed_walks_to_client_balances(self) -> int:
        count = 0
        touched = set()
        for walk in self.store.select("walks", status="completed", is_balance_applied=False):
            if self._apply_walk_to_balance(walk, refresh=False):
                touched.add(walk["client_id"])
                count += 1
        for client_id in touched:
            self.refresh_client_balance(client_id)
        return count

    def close(self) -> None:
        self.store.close()
