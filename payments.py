"""
payments.py
Payment record store: one row per attempt, keyed by the gateway reference.
Status transitions are compare-and-set so only one caller moves a reference out of 'pending'.
"""

from __future__ import annotations

import json
import sqlite3
from datetime import datetime

import db
import utils
from errors import NotFound
from models import COMPLETED, FAILED, PENDING, VERIFIED, PaymentAttempt


def find_by_reference(reference: str) -> PaymentAttempt | None:
    row = db.fetch_one("SELECT * FROM payments WHERE reference = ?", (reference,))
    return PaymentAttempt.from_row(row) if row else None


def get_by_reference(reference: str) -> PaymentAttempt:
    attempt = find_by_reference(reference)
    if attempt is None:
        raise NotFound("Payment not found.", reference=reference)
    return attempt


def create_pending(
    *,
    reference: str,
    member_id: int,
    amount: int,
    plan_code: str,
    duration_days: int,
    trainer_addon: bool,
    method: str,
    now: datetime,
) -> tuple[PaymentAttempt, bool]:
    """
    Insert a pending attempt unless the reference already exists.
    Returns the stored attempt and whether this call created it.
    """
    stamp = utils.to_iso(now)
    with db.get_conn() as conn:
        cur = conn.execute(
            """
            INSERT INTO payments(reference, member_id, amount, plan_code, duration_days, trainer_addon,
                method, status, verification_status, initiated_at, updated_at)
            VALUES(?,?,?,?,?,?,?,'pending','pending',?,?)
            ON CONFLICT(reference) DO NOTHING
            """,
            (reference, member_id, amount, plan_code, duration_days, int(trainer_addon), method, stamp, stamp),
        )
        created = cur.rowcount == 1
    return get_by_reference(reference), created


def insert_completed(
    conn: sqlite3.Connection,
    *,
    reference: str,
    member_id: int,
    amount: int,
    plan_code: str,
    duration_days: int,
    trainer_addon: bool,
    method: str,
    now: datetime,
) -> int:
    stamp = utils.to_iso(now)
    cur = conn.execute(
        """
        INSERT INTO payments(reference, transaction_id, member_id, amount, plan_code, duration_days,
            trainer_addon, method, status, verification_status, initiated_at, completed_at, verified_at,
            updated_at)
        VALUES(?,?,?,?,?,?,?,?,'completed','verified',?,?,?,?)
        """,
        (reference, reference, member_id, amount, plan_code, duration_days, int(trainer_addon), method,
         stamp, stamp, stamp, stamp),
    )
    return cur.lastrowid


def mark_completed(
    conn: sqlite3.Connection,
    reference: str,
    *,
    gateway_payload: dict | None,
    transaction_id: str | None,
    now: datetime,
) -> bool:
    """pending -> completed/verified. False if another caller already moved the reference."""
    stamp = utils.to_iso(now)
    cur = conn.execute(
        """
        UPDATE payments
        SET status = ?, verification_status = ?, completed_at = ?, verified_at = ?,
            gateway_payload = ?, transaction_id = COALESCE(?, transaction_id, reference), updated_at = ?
        WHERE reference = ? AND status = ?
        """,
        (COMPLETED, VERIFIED, stamp, stamp, _dump(gateway_payload), transaction_id, stamp, reference, PENDING),
    )
    return cur.rowcount == 1


def mark_failed(reference: str, *, gateway_payload: dict | None, now: datetime) -> bool:
    """pending -> failed/failed. False if the reference had already left 'pending'."""
    stamp = utils.to_iso(now)
    count = db.execute_rowcount(
        """
        UPDATE payments
        SET status = ?, verification_status = ?, gateway_payload = ?, updated_at = ?
        WHERE reference = ? AND status = ?
        """,
        (FAILED, FAILED, _dump(gateway_payload), stamp, reference, PENDING),
    )
    return count == 1


def list_for_member(member_id: int, limit: int = 50) -> list[PaymentAttempt]:
    rows = db.fetch_all(
        "SELECT * FROM payments WHERE member_id = ? ORDER BY initiated_at DESC, id DESC LIMIT ?",
        (member_id, limit),
    )
    return [PaymentAttempt.from_row(r) for r in rows]


def list_recent(limit: int = 100) -> list[sqlite3.Row]:
    """Admin listing joined with the member's contact fields."""
    return db.fetch_all(
        """
        SELECT p.id, p.reference, p.member_id, m.full_name, m.email, m.phone, p.amount, p.plan_code,
               p.duration_days, p.trainer_addon, p.method, p.status, p.verification_status,
               p.initiated_at, p.completed_at
        FROM payments p
        JOIN members m ON m.id = p.member_id
        ORDER BY p.initiated_at DESC, p.id DESC
        LIMIT ?
        """,
        (limit,),
    )


def count_completed_for_member(member_id: int) -> int:
    row = db.fetch_one(
        "SELECT COUNT(*) AS c FROM payments WHERE member_id = ? AND status = 'completed'", (member_id,)
    )
    return int(row["c"])


def stats() -> dict:
    total = db.fetch_one("SELECT COALESCE(SUM(amount), 0) AS s FROM payments WHERE status = 'completed'")
    by_method = db.fetch_all(
        """
        SELECT method, COUNT(*) AS count, SUM(amount) AS total
        FROM payments WHERE status = 'completed'
        GROUP BY method ORDER BY method
        """
    )
    addons = db.fetch_one(
        "SELECT COUNT(*) AS c FROM payments WHERE trainer_addon = 1 AND status = 'completed'"
    )
    return {
        "total_revenue": int(total["s"]),
        "by_method": [dict(r) for r in by_method],
        "trainer_addons": int(addons["c"]),
    }


def _dump(payload: dict | None) -> str | None:
    return json.dumps(payload, default=str) if payload is not None else None
