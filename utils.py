"""
utils.py
Clock and date helpers, identifiers, validation, exports, sample data.
"""

from __future__ import annotations

import math
import numbers
import re
import secrets
import time
from datetime import date, datetime, timedelta, timezone
from zoneinfo import ZoneInfo

import pandas as pd

import auth
import db
from models import ACTIVE, EXPIRED, PAYMENT_ACTIVE, PAYMENT_OVERDUE, PLANS, get_plan

EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
SECONDS_PER_DAY = 24 * 60 * 60


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_iso(dt: datetime | None) -> str | None:
    """Canonical storage form: UTC, second precision, so stored values sort as text."""
    if dt is None:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat(timespec="seconds")


def local_day(moment: datetime, tz_name: str) -> date:
    """Calendar day of `moment` in the gym's timezone."""
    return moment.astimezone(ZoneInfo(tz_name)).date()


def days_until(due: datetime, now: datetime) -> int:
    """Whole days until `due`, rounded up (negative once overdue)."""
    return math.ceil((due - now).total_seconds() / SECONDS_PER_DAY)


def add_days(start: datetime, days: int) -> datetime:
    return start + timedelta(days=days)


def generate_barcode() -> str:
    return f"GYM-{secrets.token_hex(4).upper()}-{str(int(time.time() * 1000))[-4:]}"


def generate_token() -> str:
    return secrets.token_hex(24)


def gateway_reference(member_id: int, now: datetime) -> str:
    return f"GYM-{member_id}-{int(now.timestamp() * 1000)}"


def member_id_from_reference(reference: str) -> int | None:
    """Gateway references embed the member id: GYM-<member_id>-<millis>."""
    m = re.fullmatch(r"GYM-(\d+)-\d+", reference or "")
    return int(m.group(1)) if m else None


def cash_reference(now: datetime) -> str:
    return f"CASH-{int(now.timestamp() * 1000)}-{secrets.token_hex(3).upper()}"


def normalize_email(email: str | None) -> str:
    return (email or "").strip().lower()


def format_naira(minor: int) -> str:
    return f"₦{minor / 100:,.2f}"


def validate_registration_inputs(full_name: str, email: str, phone: str, password: str, plan_code: str) -> list[str]:
    errors: list[str] = []
    if not (full_name or "").strip():
        errors.append("Full name is required.")
    if not EMAIL_RE.match(normalize_email(email)):
        errors.append("A valid email is required.")
    if not (phone or "").strip():
        errors.append("Phone is required.")
    if len(password or "") < 6:
        errors.append("Password must be at least 6 characters.")
    if get_plan(plan_code) is None:
        errors.append(f"Unknown membership plan: {plan_code!r}.")
    return errors


def validate_payment_inputs(amount, plan_code: str | None, duration_days=None) -> list[str]:
    errors: list[str] = []
    try:
        if isinstance(amount, bool) or (isinstance(amount, numbers.Real) and int(amount) != amount):
            raise ValueError(amount)
        if int(amount) <= 0:
            errors.append("Amount must be > 0.")
    except (TypeError, ValueError, OverflowError):
        errors.append("Amount must be a whole number of minor units.")
    if not plan_code:
        errors.append("Membership type is required.")
    if duration_days is not None:
        try:
            if int(duration_days) < 1:
                errors.append("Duration must be at least 1 day.")
        except (TypeError, ValueError):
            errors.append("Duration must be numeric.")
    return errors


def members_to_csv_bytes(rows) -> bytes:
    df = pd.DataFrame([dict(r) for r in rows])
    df = df.drop(columns=["password_hash", "verification_token"], errors="ignore")
    return df.to_csv(index=False).encode("utf-8")


def payments_to_csv_bytes(rows) -> bytes:
    df = pd.DataFrame([dict(r) for r in rows])
    return df.to_csv(index=False).encode("utf-8")


def revenue_summary_by_month() -> pd.DataFrame:
    rows = db.fetch_all(
        """
        SELECT strftime('%Y-%m', completed_at) AS month, SUM(amount) AS revenue_minor, COUNT(*) AS payments
        FROM payments
        WHERE status = 'completed'
        GROUP BY strftime('%Y-%m', completed_at)
        ORDER BY month DESC
        """
    )
    df = pd.DataFrame([dict(r) for r in rows])
    if df.empty:
        return pd.DataFrame(columns=["month", "revenue", "payments"])
    df["revenue"] = df["revenue_minor"] / 100
    return df[["month", "revenue", "payments"]]


def insert_sample_data() -> None:
    """
    Insert 3 members and their cash payments (adds new rows each time; emails are made unique per run).
    """
    now = utcnow()
    tag = secrets.token_hex(2)
    password_hash = auth.hash_password("member123")
    deluxe = PLANS["deluxe"]
    bi_monthly = PLANS["bi-monthly"]

    members = [
        # active, due in ~5 days
        ("Ada Okafor", f"ada.{tag}@example.com", "08000000001", deluxe, now - timedelta(days=25),
         ACTIVE, PAYMENT_ACTIVE),
        # active, longer plan
        ("Tunde Bello", f"tunde.{tag}@example.com", "08000000002", bi_monthly, now - timedelta(days=10),
         ACTIVE, PAYMENT_ACTIVE),
        # expired two days ago
        ("Chioma Eze", f"chioma.{tag}@example.com", "08000000003", deluxe, now - timedelta(days=32),
         EXPIRED, PAYMENT_OVERDUE),
    ]

    for name, email, phone, plan, start, status, pay_status in members:
        end = start + timedelta(days=plan.duration_days)
        member_id = db.execute(
            """
            INSERT INTO members(full_name, email, phone, password_hash, is_verified, barcode,
                plan_code, plan_price, plan_duration_days, account_status, payment_status, is_active,
                membership_start_date, membership_end_date, next_due_date, last_payment_date,
                created_at, updated_at)
            VALUES(?,?,?,?,1,?,?,?,?,?,?,?,?,?,?,?,?,?)
            """,
            (name, email, phone, password_hash, generate_barcode(), plan.code, plan.price,
             plan.duration_days, status, pay_status, int(status == ACTIVE), to_iso(start), to_iso(end),
             to_iso(end), to_iso(start), to_iso(start), to_iso(start)),
        )
        db.execute(
            """
            INSERT INTO payments(reference, member_id, amount, plan_code, duration_days, method,
                status, verification_status, initiated_at, completed_at, verified_at, updated_at)
            VALUES(?,?,?,?,?,'cash','completed','verified',?,?,?,?)
            """,
            (cash_reference(start), member_id, plan.price, plan.code, plan.duration_days,
             to_iso(start), to_iso(start), to_iso(start), to_iso(start)),
        )
