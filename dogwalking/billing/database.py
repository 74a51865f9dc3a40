"""Database utilities for the dog-walking billing engine."""

from __future__ import annotations

import json
import sqlite3
from pathlib import Path


SCHEMA_VERSION = 1

# SQLite has no boolean type, these columns are converted back on read.
BOOLEAN_COLUMNS: dict[str, frozenset[str]] = {
    "users": frozenset({"is_active"}),
    "pets": frozenset({"is_active"}),
    "walks": frozenset({"is_paid", "is_balance_applied", "is_group_walk", "repeat_weekly"}),
    "walker_earnings": frozenset({"is_paid"}),
    "messages": frozenset({"is_read"}),
}


def dict_factory(cursor: sqlite3.Cursor, row: sqlite3.Row) -> dict:
    """Return rows as dictionaries rather than tuples."""

    return {description[0]: row[idx] for idx, description in enumerate(cursor.description)}


def get_connection(path: str | Path) -> sqlite3.Connection:
    """Return a SQLite connection with sensible defaults.

    The connection may be shared between threads, callers are expected to
    serialize access themselves.
    """

    conn = sqlite3.connect(path, check_same_thread=False)
    conn.row_factory = dict_factory
    conn.execute("PRAGMA foreign_keys = ON")
    conn.execute("PRAGMA journal_mode = WAL")
    conn.execute("PRAGMA busy_timeout = 5000")
    return conn


def initialize_database(conn: sqlite3.Connection) -> None:
    """Create the database schema if it does not yet exist."""

    conn.executescript(
        """
        CREATE TABLE IF NOT EXISTS metadata (
            key TEXT PRIMARY KEY,
            value TEXT NOT NULL
        );

        CREATE TABLE IF NOT EXISTS users (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            username TEXT NOT NULL UNIQUE,
            email TEXT NOT NULL,
            phone TEXT,
            first_name TEXT NOT NULL,
            last_name TEXT NOT NULL,
            role TEXT NOT NULL,
            is_active INTEGER DEFAULT 1
        );

        CREATE TABLE IF NOT EXISTS clients (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            user_id INTEGER NOT NULL,
            address TEXT,
            emergency_contact TEXT,
            notes TEXT,
            balance REAL DEFAULT 0,
            last_payment_date TEXT
        );

        CREATE TABLE IF NOT EXISTS client_payments (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            client_id INTEGER NOT NULL,
            amount REAL NOT NULL,
            payment_date TEXT NOT NULL,
            payment_method TEXT NOT NULL DEFAULT 'cash',
            notes TEXT
        );

        CREATE TABLE IF NOT EXISTS walkers (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            user_id INTEGER NOT NULL,
            bio TEXT,
            availability TEXT,
            rating INTEGER,
            rate_20_min REAL DEFAULT 15.00,
            rate_30_min REAL DEFAULT 20.00,
            rate_60_min REAL DEFAULT 35.00,
            rate_overnight REAL DEFAULT 80.00,
            total_earnings REAL DEFAULT 0,
            unpaid_earnings REAL DEFAULT 0,
            street TEXT,
            city TEXT,
            state TEXT,
            zip TEXT,
            color TEXT DEFAULT '#4f46e5'
        );

        CREATE TABLE IF NOT EXISTS pets (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            client_id INTEGER NOT NULL,
            name TEXT NOT NULL,
            breed TEXT,
            age INTEGER,
            size TEXT,
            notes TEXT,
            is_active INTEGER DEFAULT 1
        );

        CREATE TABLE IF NOT EXISTS walks (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            client_id INTEGER NOT NULL,
            walker_id INTEGER,
            pet_id INTEGER NOT NULL,
            date TEXT NOT NULL,
            time TEXT NOT NULL,
            duration INTEGER DEFAULT 30,
            billing_amount REAL,
            notes TEXT,
            status TEXT NOT NULL DEFAULT 'scheduled',
            is_paid INTEGER DEFAULT 0,
            paid_date TEXT,
            is_balance_applied INTEGER DEFAULT 0,
            is_group_walk INTEGER DEFAULT 0,
            repeat_weekly INTEGER DEFAULT 0,
            number_of_weeks INTEGER,
            recurring_group_id TEXT
        );

        CREATE TABLE IF NOT EXISTS walk_pets (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            walk_id INTEGER NOT NULL,
            pet_id INTEGER NOT NULL,
            position INTEGER NOT NULL DEFAULT 0,
            FOREIGN KEY(walk_id) REFERENCES walks(id) ON DELETE CASCADE
        );

        CREATE TABLE IF NOT EXISTS walk_photos (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            walk_id INTEGER NOT NULL,
            photo_url TEXT NOT NULL,
            uploaded_at TEXT NOT NULL,
            FOREIGN KEY(walk_id) REFERENCES walks(id) ON DELETE CASCADE
        );

        CREATE TABLE IF NOT EXISTS walker_earnings (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            walker_id INTEGER NOT NULL,
            walk_id INTEGER NOT NULL UNIQUE,
            amount REAL NOT NULL,
            earned_date TEXT NOT NULL,
            is_paid INTEGER DEFAULT 0,
            payment_id INTEGER
        );

        CREATE TABLE IF NOT EXISTS walker_payments (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            walker_id INTEGER NOT NULL,
            amount REAL NOT NULL,
            payment_date TEXT NOT NULL,
            payment_method TEXT DEFAULT 'cash',
            notes TEXT
        );

        CREATE TABLE IF NOT EXISTS messages (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            sender_id INTEGER NOT NULL,
            receiver_id INTEGER NOT NULL,
            content TEXT NOT NULL,
            sent_at TEXT NOT NULL,
            is_read INTEGER DEFAULT 0
        );

        CREATE INDEX IF NOT EXISTS idx_walks_client ON walks(client_id);
        CREATE INDEX IF NOT EXISTS idx_walks_walker ON walks(walker_id);
        CREATE INDEX IF NOT EXISTS idx_walks_status ON walks(status);
        CREATE INDEX IF NOT EXISTS idx_walk_pets_walk ON walk_pets(walk_id);
        CREATE INDEX IF NOT EXISTS idx_earnings_walker ON walker_earnings(walker_id);
        """
    )

    set_metadata(conn, "schema_version", SCHEMA_VERSION)


def list_tables(conn: sqlite3.Connection) -> set[str]:
    rows = conn.execute(
        "SELECT name FROM sqlite_master WHERE type = 'table' AND name NOT LIKE 'sqlite_%'"
    ).fetchall()
    return {row["name"] for row in rows}


def table_columns(conn: sqlite3.Connection, table: str) -> set[str]:
    return {row["name"] for row in conn.execute(f"PRAGMA table_info({table})").fetchall()}


def set_metadata(conn: sqlite3.Connection, key: str, value: int | str | dict | list) -> None:
    if isinstance(value, (dict, list)):
        value = json.dumps(value)
    conn.execute(
        "INSERT INTO metadata(key, value) VALUES (?, ?)\n         ON CONFLICT(key) DO UPDATE SET value = excluded.value",
        (key, str(value)),
    )
    conn.commit()


def get_metadata(conn: sqlite3.Connection, key: str, default: str | None = None) -> str | None:
    row = conn.execute("SELECT value FROM metadata WHERE key = ?", (key,)).fetchone()
    return row["value"] if row else default
