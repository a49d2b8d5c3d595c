"""
members.py
Membership record store: lookups, predicate listings, registration and low-level field writes.
Lifecycle rules live in reconciliation.py / sweeper.py / reminders.py; this module only persists.
"""

from __future__ import annotations

import logging
import sqlite3
from datetime import datetime

import auth
import db
import utils
from errors import DuplicateRegistration, InputValidationError, NotAuthorized, NotFound
from models import (
    ACCOUNT_STATUSES,
    ACTIVE,
    EXPIRED,
    PAYMENT_ACTIVE,
    PAYMENT_OVERDUE,
    PAYMENT_PENDING,
    PENDING,
    HealthProfile,
    Member,
    get_plan,
)

log = logging.getLogger(__name__)


# ---------- Reads ----------

def find_by_id(member_id: int) -> Member | None:
    row = db.fetch_one("SELECT * FROM members WHERE id = ?", (member_id,))
    return Member.from_row(row) if row else None


def get_member(member_id: int) -> Member:
    member = find_by_id(member_id)
    if member is None:
        raise NotFound("Member not found.", member_id=member_id)
    return member


def find_by_barcode(barcode: str) -> Member | None:
    row = db.fetch_one("SELECT * FROM members WHERE barcode = ?", ((barcode or "").strip(),))
    return Member.from_row(row) if row else None


def find_by_email(email: str) -> Member | None:
    row = db.fetch_one("SELECT * FROM members WHERE email = ?", (utils.normalize_email(email),))
    return Member.from_row(row) if row else None


def list_members(search: str = "", status: str | None = None, include_admins: bool = False) -> list[Member]:
    sql = "SELECT * FROM members WHERE 1=1"
    params: list = []

    if not include_admins:
        sql += " AND is_admin = 0"

    if search.strip():
        sql += " AND (full_name LIKE ? OR email LIKE ? OR phone LIKE ? OR barcode LIKE ?)"
        like = f"%{search.strip()}%"
        params.extend([like, like, like, like])

    if status in ACCOUNT_STATUSES:
        sql += " AND account_status = ?"
        params.append(status)

    sql += " ORDER BY membership_end_date IS NULL, membership_end_date ASC, id DESC"
    return [Member.from_row(r) for r in db.fetch_all(sql, tuple(params))]


def list_by_status(
    statuses: tuple[str, ...],
    *,
    end_before: datetime | None = None,
    end_on_or_after: datetime | None = None,
    include_unset_end: bool = False,
) -> list[Member]:
    """
    Non-admin members in `statuses`, optionally filtered by membership end date.
    With include_unset_end, members without an end date also match `end_before`.
    """
    placeholders = ",".join("?" for _ in statuses)
    sql = f"SELECT * FROM members WHERE is_admin = 0 AND account_status IN ({placeholders})"
    params: list = list(statuses)
    if end_before is not None:
        if include_unset_end:
            sql += " AND (membership_end_date IS NULL OR membership_end_date < ?)"
        else:
            sql += " AND membership_end_date IS NOT NULL AND membership_end_date < ?"
        params.append(utils.to_iso(end_before))
    if end_on_or_after is not None:
        sql += " AND membership_end_date IS NOT NULL AND membership_end_date >= ?"
        params.append(utils.to_iso(end_on_or_after))
    sql += " ORDER BY id"
    return [Member.from_row(r) for r in db.fetch_all(sql, tuple(params))]


def list_due_between(start: datetime, end: datetime, statuses: tuple[str, ...] | None = None) -> list[Member]:
    sql = "SELECT * FROM members WHERE is_admin = 0 AND next_due_date >= ? AND next_due_date <= ?"
    params: list = [utils.to_iso(start), utils.to_iso(end)]
    if statuses:
        sql += f" AND account_status IN ({','.join('?' for _ in statuses)})"
        params.extend(statuses)
    sql += " ORDER BY next_due_date ASC"
    return [Member.from_row(r) for r in db.fetch_all(sql, tuple(params))]


def list_with_due_date(statuses: tuple[str, ...]) -> list[Member]:
    placeholders = ",".join("?" for _ in statuses)
    rows = db.fetch_all(
        f"""
        SELECT * FROM members
        WHERE is_admin = 0 AND next_due_date IS NOT NULL AND account_status IN ({placeholders})
        ORDER BY next_due_date ASC
        """,
        tuple(statuses),
    )
    return [Member.from_row(r) for r in rows]


def count_members(status: str | None = None) -> int:
    if status:
        row = db.fetch_one(
            "SELECT COUNT(*) AS c FROM members WHERE is_admin = 0 AND account_status = ?", (status,)
        )
    else:
        row = db.fetch_one("SELECT COUNT(*) AS c FROM members WHERE is_admin = 0")
    return int(row["c"])


# ---------- Registration ----------

def register_member(
    full_name: str,
    email: str,
    phone: str,
    password: str,
    plan_code: str,
    *,
    health_profile: HealthProfile | None = None,
    is_admin: bool = False,
    assign_barcode: bool = True,
    now: datetime | None = None,
) -> tuple[Member, str]:
    """
    Create a pending member. Returns the member and its email verification token.
    The barcode is assigned here and never changed afterwards.
    """
    errors = utils.validate_registration_inputs(full_name, email, phone, password, plan_code)
    if errors:
        raise InputValidationError(" ".join(errors), fields=errors)

    email = utils.normalize_email(email)
    if find_by_email(email) is not None:
        raise DuplicateRegistration("User already exists with this email.", email=email)

    plan = get_plan(plan_code)
    stamp = utils.to_iso(now or utils.utcnow())
    token = utils.generate_token()
    try:
        member_id = db.execute(
            """
            INSERT INTO members(full_name, email, phone, password_hash, is_admin, is_verified,
                verification_token, barcode, plan_code, plan_price, plan_duration_days,
                account_status, payment_status, is_active, health_profile, created_at, updated_at)
            VALUES(?,?,?,?,?,0,?,?,?,?,?,?,?,0,?,?,?)
            """,
            (
                full_name.strip(),
                email,
                phone.strip(),
                auth.hash_password(password),
                int(is_admin),
                token,
                utils.generate_barcode() if assign_barcode else None,
                plan.code,
                plan.price,
                plan.duration_days,
                PENDING,
                PENDING,
                health_profile.to_json() if health_profile else None,
                stamp,
                stamp,
            ),
        )
    except sqlite3.IntegrityError as e:
        raise DuplicateRegistration("User already exists with this email.", email=email) from e

    log.info("Registered member %s (%s) on plan %s", member_id, email, plan.code)
    return get_member(member_id), token


def verify_email(token: str) -> Member:
    row = db.fetch_one("SELECT id FROM members WHERE verification_token = ?", ((token or "").strip(),))
    if not row or not token:
        raise NotFound("Invalid or expired verification token.")
    db.execute(
        "UPDATE members SET is_verified = 1, verification_token = NULL WHERE id = ?",
        (row["id"],),
    )
    log.info("Member %s verified their email", row["id"])
    return get_member(row["id"])


# ---------- Admin overrides ----------

# Payment standing that follows a manual status change; suspension keeps the current one.
STATUS_PAYMENT_STANDING = {ACTIVE: PAYMENT_ACTIVE, EXPIRED: PAYMENT_OVERDUE, PENDING: PAYMENT_PENDING}


def set_status(member_id: int, status: str, *, admin_id: int, now: datetime | None = None) -> Member:
    """
    Admin override of a member's account status (suspend, reinstate, reset to pending).
    Dates are untouched, so the next sweep still reconciles active/expired with the end date.
    """
    if not auth.is_admin(admin_id):
        raise NotAuthorized("Only admins can change a member's status.", admin_id=admin_id)
    status = (status or "").strip().lower()
    if status not in ACCOUNT_STATUSES:
        raise InputValidationError("Invalid status.", status=status)

    member = get_member(member_id)
    if member.is_admin:
        raise InputValidationError("Admin accounts have no membership status.", member_id=member.id)

    db.execute(
        "UPDATE members SET account_status = ?, payment_status = ?, is_active = ?, updated_at = ? WHERE id = ?",
        (
            status,
            STATUS_PAYMENT_STANDING.get(status, member.payment_status),
            int(status == ACTIVE),
            utils.to_iso(now or utils.utcnow()),
            member.id,
        ),
    )
    log.info("Admin %s set member %s status %s -> %s", admin_id, member.id, member.account_status, status)
    return get_member(member.id)


# ---------- Writes (used inside db.transaction()) ----------

def apply_activation(
    conn: sqlite3.Connection,
    member_id: int,
    *,
    plan_code: str,
    start: datetime,
    end: datetime,
    now: datetime,
) -> None:
    conn.execute(
        """
        UPDATE members
        SET account_status = 'active', payment_status = 'active', is_active = 1,
            membership_start_date = ?, membership_end_date = ?, next_due_date = ?,
            last_payment_date = ?, plan_code = ?, updated_at = ?
        WHERE id = ?
        """,
        (utils.to_iso(start), utils.to_iso(end), utils.to_iso(end), utils.to_iso(now), plan_code,
         utils.to_iso(now), member_id),
    )


def assign_barcode_if_missing(conn: sqlite3.Connection, member_id: int) -> bool:
    cur = conn.execute(
        "UPDATE members SET barcode = ? WHERE id = ? AND barcode IS NULL",
        (utils.generate_barcode(), member_id),
    )
    return cur.rowcount == 1


def transition_status(
    conn: sqlite3.Connection,
    member_id: int,
    *,
    from_status: str,
    to_status: str,
    payment_status: str,
    is_active: bool,
    now: datetime,
) -> bool:
    """Compare-and-set on account_status. Returns False if the member was no longer in `from_status`."""
    cur = conn.execute(
        """
        UPDATE members
        SET account_status = ?, payment_status = ?, is_active = ?, updated_at = ?
        WHERE id = ? AND account_status = ?
        """,
        (to_status, payment_status, int(is_active), utils.to_iso(now), member_id, from_status),
    )
    return cur.rowcount == 1


def record_visit(conn: sqlite3.Connection, member_id: int, now: datetime) -> None:
    conn.execute(
        """
        UPDATE members
        SET total_visits = total_visits + 1, last_check_in = ?, updated_at = ?
        WHERE id = ?
        """,
        (utils.to_iso(now), utils.to_iso(now), member_id),
    )
