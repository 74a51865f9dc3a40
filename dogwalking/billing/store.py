"""Entity storage backends for the billing engine.

The engine talks to an :class:`EntityStore` and never to a concrete backend,
so the same engine runs against plain dictionaries in tests and against a
SQLite file in production.
"""

from __future__ import annotations

import abc
import copy
import itertools
import threading
from pathlib import Path
from typing import Any

from .database import (
    BOOLEAN_COLUMNS,
    get_connection,
    initialize_database,
    list_tables,
    table_columns,
)

TABLES = (
    "users",
    "clients",
    "client_payments",
    "walkers",
    "pets",
    "walks",
    "walk_pets",
    "walk_photos",
    "walker_earnings",
    "walker_payments",
    "messages",
)


class StoreError(RuntimeError):
    """Raised when a store is asked for a table or column it does not know."""


class EntityStore(abc.ABC):
    """Keyed record storage with a monotonic integer id per table.

    Rows are plain dictionaries. Every method returns copies, so callers may
    mutate what they get back without touching stored state.
    """

    @abc.abstractmethod
    def insert(self, table: str, values: dict) -> dict:
        """Store a new row, assign it the next id and return it."""

    @abc.abstractmethod
    def get(self, table: str, row_id: int) -> dict | None:
        """Return a row by id, or ``None``."""

    @abc.abstractmethod
    def update(self, table: str, row_id: int, values: dict) -> dict | None:
        """Merge ``values`` into a row and return it, or ``None`` if missing."""

    @abc.abstractmethod
    def delete(self, table: str, row_id: int) -> bool:
        """Remove a row, returning whether it existed."""

    @abc.abstractmethod
    def select(self, table: str, **equals: Any) -> list[dict]:
        """Return rows whose columns equal the given values, ordered by id."""

    def delete_where(self, table: str, **equals: Any) -> int:
        rows = self.select(table, **equals)
        for row in rows:
            self.delete(table, row["id"])
        return len(rows)

    def close(self) -> None:
        pass

    @staticmethod
    def _check_table(table: str) -> None:
        if table not in TABLES:
            raise StoreError(f"Unknown table: {table}")


class MemoryStore(EntityStore):
    """Process-lifetime storage in keyed dictionaries."""

    def __init__(self) -> None:
        self._rows: dict[str, dict[int, dict]] = {table: {} for table in TABLES}
        self._counters = {table: itertools.count(1) for table in TABLES}

    def insert(self, table: str, values: dict) -> dict:
        self._check_table(table)
        row = copy.deepcopy(values)
        row["id"] = next(self._counters[table])
        self._rows[table][row["id"]] = row
        return copy.deepcopy(row)

    def get(self, table: str, row_id: int) -> dict | None:
        self._check_table(table)
        row = self._rows[table].get(row_id)
        return copy.deepcopy(row) if row is not None else None

    def update(self, table: str, row_id: int, values: dict) -> dict | None:
        self._check_table(table)
        row = self._rows[table].get(row_id)
        if row is None:
            return None
        changes = {key: value for key, value in values.items() if key != "id"}
        row.update(copy.deepcopy(changes))
        return copy.deepcopy(row)

    def delete(self, table: str, row_id: int) -> bool:
        self._check_table(table)
        return self._rows[table].pop(row_id, None) is not None

    def select(self, table: str, **equals: Any) -> list[dict]:
        self._check_table(table)
        return [
            copy.deepcopy(row)
            for _, row in sorted(self._rows[table].items())
            if all(row.get(key) == value for key, value in equals.items())
        ]


class SqliteStore(EntityStore):
    """SQLite-backed storage, in memory by default or on disk."""

    def __init__(self, db_path: str | Path = ":memory:") -> None:
        self._lock = threading.Lock()
        self.conn = get_connection(db_path)
        initialize_database(self.conn)
        self._columns = {
            table: table_columns(self.conn, table)
            for table in list_tables(self.conn)
            if table in TABLES
        }

    def _check_columns(self, table: str, keys) -> None:
        self._check_table(table)
        unknown = set(keys) - self._columns[table]
        if unknown:
            raise StoreError(f"Unknown column(s) for {table}: {', '.join(sorted(unknown))}")

    def _decode(self, table: str, row: dict | None) -> dict | None:
        if row is None:
            return None
        for column in BOOLEAN_COLUMNS.get(table, ()):
            if row.get(column) is not None:
                row[column] = bool(row[column])
        return row

    @staticmethod
    def _encode(values: dict) -> dict:
        return {key: int(value) if isinstance(value, bool) else value for key, value in values.items()}

    def insert(self, table: str, values: dict) -> dict:
        values = {key: value for key, value in values.items() if key != "id"}
        self._check_columns(table, values)
        encoded = self._encode(values)
        columns = ", ".join(encoded)
        placeholders = ", ".join("?" for _ in encoded)
        with self._lock:
            if encoded:
                cur = self.conn.execute(
                    f"INSERT INTO {table}({columns}) VALUES ({placeholders})",
                    tuple(encoded.values()),
                )
            else:
                cur = self.conn.execute(f"INSERT INTO {table} DEFAULT VALUES")
            self.conn.commit()
            row = self.conn.execute(
                f"SELECT * FROM {table} WHERE id = ?", (cur.lastrowid,)
            ).fetchone()
        return self._decode(table, row)

    def get(self, table: str, row_id: int) -> dict | None:
        self._check_table(table)
        with self._lock:
            row = self.conn.execute(f"SELECT * FROM {table} WHERE id = ?", (row_id,)).fetchone()
        return self._decode(table, row)

    def update(self, table: str, row_id: int, values: dict) -> dict | None:
        values = {key: value for key, value in values.items() if key != "id"}
        self._check_columns(table, values)
        encoded = self._encode(values)
        with self._lock:
            if encoded:
                assignments = ", ".join(f"{column} = ?" for column in encoded)
                self.conn.execute(
                    f"UPDATE {table} SET {assignments} WHERE id = ?",
                    (*encoded.values(), row_id),
                )
                self.conn.commit()
            row = self.conn.execute(f"SELECT * FROM {table} WHERE id = ?", (row_id,)).fetchone()
        return self._decode(table, row)

    def delete(self, table: str, row_id: int) -> bool:
        self._check_table(table)
        with self._lock:
            cur = self.conn.execute(f"DELETE FROM {table} WHERE id = ?", (row_id,))
            self.conn.commit()
        return cur.rowcount > 0

    def select(self, table: str, **equals: Any) -> list[dict]:
        self._check_columns(table, equals)
        encoded = self._encode(equals)
        conditions = []
        params: list[Any] = []
        for column, value in encoded.items():
            if value is None:
                conditions.append(f"{column} IS NULL")
            else:
                conditions.append(f"{column} = ?")
                params.append(value)
        where = ""
        if conditions:
            where = " WHERE " + " AND ".join(conditions)
        with self._lock:
            rows = self.conn.execute(
                f"SELECT * FROM {table}{where} ORDER BY id", params
            ).fetchall()
        return [self._decode(table, row) for row in rows]

    def close(self) -> None:
        with self._lock:
            self.conn.close()
