"""Ledger arithmetic shared by the billing engine.

Nothing here touches storage: balances and earnings are always derived from
the walk, payment and earning rows handed in, so the same helpers serve every
read path.
"""

from __future__ import annotations

import datetime as dt
from typing import Iterable, NamedTuple

OVERNIGHT = "overnight"
OVERNIGHT_MINUTES = 1440
DEFAULT_DURATION_MINUTES = 30

WALK_STATUSES = ("scheduled", "completed", "cancelled", "outstanding")

# Named booking slots and the start time each one stands for.
TIME_SLOTS = {
    "morning": dt.time(8, 0),
    "midday": dt.time(11, 0),
    "early_evening": dt.time(14, 0),
    "late_evening": dt.time(17, 0),
}

RATE_20_MIN = "rate_20_min"
RATE_30_MIN = "rate_30_min"
RATE_60_MIN = "rate_60_min"
RATE_OVERNIGHT = "rate_overnight"


def money(value) -> float:
    """Coerce a stored amount (number, numeric string or ``None``) to cents."""

    if value is None or value == "":
        return 0.0
    return round(float(value), 2)


def total(amounts: Iterable) -> float:
    return round(sum((money(amount) for amount in amounts), 0.0), 2)


def client_balance(walks: Iterable[dict], payments: Iterable[dict]) -> float:
    """Completed walk charges minus recorded payments. May be negative."""

    charges = total(walk.get("billing_amount") for walk in walks if walk.get("status") == "completed")
    paid = total(payment.get("amount") for payment in payments)
    return round(charges - paid, 2)


def normalize_duration(value) -> int:
    """Return a duration in minutes, mapping ``"overnight"`` to its sentinel.

    Raises ``ValueError`` for anything that is not a positive whole number of
    minutes.
    """

    if value is None:
        return DEFAULT_DURATION_MINUTES
    if isinstance(value, str):
        if value.strip().lower() == OVERNIGHT:
            return OVERNIGHT_MINUTES
        value = value.strip()
    if isinstance(value, bool):
        raise ValueError(f"Invalid duration: {value!r}")
    minutes = int(value)
    if minutes <= 0:
        raise ValueError(f"Duration must be positive: {value!r}")
    return minutes


def is_overnight(duration) -> bool:
    return duration == OVERNIGHT_MINUTES or duration == OVERNIGHT


def rate_field_for_duration(duration) -> str:
    """Pick the walker rate column for a walk length.

    Walks longer than an hour use the hourly rate, there is no long-walk
    premium.
    """

    if is_overnight(duration):
        return RATE_OVERNIGHT
    minutes = normalize_duration(duration)
    if minutes <= 20:
        return RATE_20_MIN
    if minutes <= 30:
        return RATE_30_MIN
    return RATE_60_MIN


def parse_walk_date(value: str) -> dt.date:
    return dt.date.fromisoformat(str(value))


def parse_walk_time(value) -> dt.time | None:
    """Resolve a named slot or an ``HH:MM[:SS]`` string, ``None`` if unparsable."""

    if value is None:
        return None
    text = str(value).strip()
    if text in TIME_SLOTS:
        return TIME_SLOTS[text]
    parts = text.split(":")
    if len(parts) < 2:
        return None
    try:
        hours, minutes = int(parts[0]), int(parts[1])
        seconds = int(parts[2]) if len(parts) > 2 else 0
        return dt.time(hours, minutes, seconds)
    except ValueError:
        return None


def walk_start(walk: dict) -> dt.datetime:
    """Start instant of a walk; an unparsable time counts as midnight."""

    start_time = parse_walk_time(walk.get("time")) or dt.time(0, 0)
    return dt.datetime.combine(parse_walk_date(walk["date"]), start_time)


def walk_end(walk: dict) -> dt.datetime:
    duration = walk.get("duration") or DEFAULT_DURATION_MINUTES
    return walk_start(walk) + dt.timedelta(minutes=normalize_duration(duration))


def walk_sort_key(walk: dict) -> tuple:
    start_time = parse_walk_time(walk.get("time")) or dt.time(0, 0)
    return (str(walk.get("date") or ""), start_time, walk.get("id") or 0)


def weekly_dates(base: dt.date, occurrences: int) -> list[dt.date]:
    """Calendar dates for a weekly series starting on ``base``."""

    return [base + dt.timedelta(days=7 * week) for week in range(occurrences)]


class Allocation(NamedTuple):
    paid: list[dict]
    partial: dict | None
    unallocated: float


def allocate_payment(amount: float, earnings: Iterable[dict]) -> Allocation:
    """Spend a payment on earnings in the order given.

    An earning the remaining money only partly covers is still taken as paid
    in full and ends the allocation; whatever money is left once every
    earning is covered comes back as ``unallocated``.
    """

    remaining = money(amount)
    paid: list[dict] = []
    partial = None
    for earning in earnings:
        if remaining <= 0:
            break
        owed = money(earning.get("amount"))
        paid.append(earning)
        if remaining >= owed:
            remaining = round(remaining - owed, 2)
        else:
            partial = earning
            remaining = 0.0
    return Allocation(paid=paid, partial=partial, unallocated=remaining)
