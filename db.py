"""
db.py
SQLite helpers + initialization (creates DB/tables, inserts default admin, etc.)
"""

from __future__ import annotations

import logging
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone

from config import settings

log = logging.getLogger(__name__)

DB_FILE = settings.db_path
BUSY_TIMEOUT_SECONDS = 30.0


def _connect() -> sqlite3.Connection:
    conn = sqlite3.connect(DB_FILE, timeout=BUSY_TIMEOUT_SECONDS, check_same_thread=False)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON")
    return conn


@contextmanager
def get_conn():
    conn = _connect()
    try:
        yield conn
        conn.commit()
    finally:
        conn.close()


@contextmanager
def transaction():
    """
    Open a write transaction up front (BEGIN IMMEDIATE).
    Everything executed on the yielded connection commits together or not at all;
    concurrent writers wait on the SQLite write lock instead of interleaving.
    """
    conn = _connect()
    try:
        conn.execute("BEGIN IMMEDIATE")
        try:
            yield conn
        except BaseException:
            conn.rollback()
            raise
        conn.commit()
    finally:
        conn.close()


def execute(sql: str, params: tuple = ()) -> int:
    with get_conn() as conn:
        cur = conn.execute(sql, params)
        return cur.lastrowid


def execute_rowcount(sql: str, params: tuple = ()) -> int:
    with get_conn() as conn:
        cur = conn.execute(sql, params)
        return cur.rowcount


def fetch_one(sql: str, params: tuple = ()):
    with get_conn() as conn:
        cur = conn.execute(sql, params)
        return cur.fetchone()


def fetch_all(sql: str, params: tuple = ()) -> list[sqlite3.Row]:
    with get_conn() as conn:
        cur = conn.execute(sql, params)
        return cur.fetchall()


def _create_tables() -> None:
    execute(
        """
        CREATE TABLE IF NOT EXISTS members (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            full_name TEXT NOT NULL,
            email TEXT NOT NULL UNIQUE,
            phone TEXT NOT NULL,
            password_hash TEXT NOT NULL,
            is_admin INTEGER NOT NULL DEFAULT 0,
            is_verified INTEGER NOT NULL DEFAULT 0,
            verification_token TEXT,
            barcode TEXT UNIQUE,
            plan_code TEXT NOT NULL,
            plan_price INTEGER NOT NULL,
            plan_duration_days INTEGER NOT NULL,
            account_status TEXT NOT NULL DEFAULT 'pending'
                CHECK(account_status IN ('pending','active','expired','suspended')),
            payment_status TEXT NOT NULL DEFAULT 'pending'
                CHECK(payment_status IN ('pending','active','overdue')),
            is_active INTEGER NOT NULL DEFAULT 0,
            membership_start_date TEXT,
            membership_end_date TEXT,
            next_due_date TEXT,
            last_payment_date TEXT,
            last_check_in TEXT,
            total_visits INTEGER NOT NULL DEFAULT 0,
            health_profile TEXT,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        )
        """
    )
    execute("CREATE INDEX IF NOT EXISTS idx_members_status ON members(account_status)")
    execute("CREATE INDEX IF NOT EXISTS idx_members_end_date ON members(membership_end_date)")

    execute(
        """
        CREATE TABLE IF NOT EXISTS payments (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            reference TEXT NOT NULL UNIQUE,
            transaction_id TEXT,
            member_id INTEGER NOT NULL,
            amount INTEGER NOT NULL,
            plan_code TEXT NOT NULL,
            duration_days INTEGER NOT NULL,
            trainer_addon INTEGER NOT NULL DEFAULT 0,
            method TEXT NOT NULL CHECK(method IN ('cash','paystack','bank-transfer')),
            status TEXT NOT NULL DEFAULT 'pending'
                CHECK(status IN ('pending','completed','failed','refunded')),
            verification_status TEXT NOT NULL DEFAULT 'pending'
                CHECK(verification_status IN ('pending','verified','failed')),
            gateway_payload TEXT,
            initiated_at TEXT NOT NULL,
            completed_at TEXT,
            verified_at TEXT,
            updated_at TEXT NOT NULL,
            FOREIGN KEY(member_id) REFERENCES members(id)
        )
        """
    )
    execute("CREATE INDEX IF NOT EXISTS idx_payments_member ON payments(member_id, initiated_at)")
    execute("CREATE INDEX IF NOT EXISTS idx_payments_status ON payments(status)")

    execute(
        """
        CREATE TABLE IF NOT EXISTS attendance (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            member_id INTEGER NOT NULL,
            check_in_time TEXT NOT NULL,
            check_out_time TEXT,
            date TEXT NOT NULL,
            FOREIGN KEY(member_id) REFERENCES members(id)
        )
        """
    )
    # At most one open session per member per gym-local day
    execute(
        """
        CREATE UNIQUE INDEX IF NOT EXISTS idx_attendance_open
        ON attendance(member_id, date) WHERE check_out_time IS NULL
        """
    )
    execute("CREATE INDEX IF NOT EXISTS idx_attendance_check_in ON attendance(check_in_time)")

    # Small settings table (used to force password change on first login)
    execute(
        """
        CREATE TABLE IF NOT EXISTS app_settings (
            key TEXT PRIMARY KEY,
            value TEXT NOT NULL
        )
        """
    )


def _get_setting(key: str, default: str | None = None) -> str | None:
    row = fetch_one("SELECT value FROM app_settings WHERE key = ?", (key,))
    if row:
        return str(row["value"])
    return default


def _set_setting(key: str, value: str) -> None:
    execute(
        """
        INSERT INTO app_settings(key, value) VALUES(?, ?)
        ON CONFLICT(key) DO UPDATE SET value=excluded.value
        """,
        (key, value),
    )


def init_db(admin_email: str, default_admin_hash: str) -> None:
    """
    Initialize the database.
    - Create tables
    - Insert a default admin account if no admin exists
    - Force password change on first login
    """
    _create_tables()

    admin = fetch_one("SELECT id FROM members WHERE is_admin = 1 LIMIT 1")
    if not admin:
        now = datetime.now(timezone.utc).isoformat(timespec="seconds")
        execute(
            """
            INSERT INTO members(full_name, email, phone, password_hash, is_admin, is_verified,
                plan_code, plan_price, plan_duration_days, created_at, updated_at)
            VALUES(?,?,?,?,1,1,?,?,?,?,?)
            """,
            ("Administrator", admin_email, "-", default_admin_hash, "walk-in", 0, 1, now, now),
        )
        _set_setting("force_password_change", "1")
        log.info("Created default admin account %s", admin_email)
    else:
        # ensure setting exists
        if _get_setting("force_password_change") is None:
            _set_setting("force_password_change", "0")


def is_force_password_change() -> bool:
    val = fetch_one("SELECT value FROM app_settings WHERE key = ?", ("force_password_change",))
    return bool(val and str(val["value"]) == "1")


def clear_force_password_change() -> None:
    _set_setting("force_password_change", "0")
