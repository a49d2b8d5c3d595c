"""
attendance.py
Check-in desk: barcode check-in, check-out, and today's attendance views.
"""

from __future__ import annotations

import logging
import sqlite3
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable

import db
import members
import utils
from errors import AlreadyCheckedIn, InputValidationError, MembershipNotActive, NotFound, NotVerified
from models import ACTIVE, AttendanceRecord, Member

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class AttendanceResult:
    member: Member
    record: AttendanceRecord
    message: str


class AttendanceEngine:
    def __init__(self, *, clock: Callable[[], datetime] = utils.utcnow, timezone: str = "Africa/Lagos"):
        self.clock = clock
        self.timezone = timezone

    def today(self, now: datetime | None = None) -> str:
        return utils.local_day(now or self.clock(), self.timezone).isoformat()

    def check_in(self, barcode: str) -> AttendanceResult:
        barcode = (barcode or "").strip()
        if not barcode:
            raise InputValidationError("Barcode is required.")

        member = members.find_by_barcode(barcode)
        if member is None:
            raise NotFound("Member not found with this barcode.", barcode=barcode)
        if not member.is_verified:
            raise NotVerified("Member account not verified.", member_id=member.id)
        if member.account_status != ACTIVE:
            raise MembershipNotActive(
                f"Membership is {member.account_status}. Please renew to access gym.",
                member_id=member.id,
                status=member.account_status,
            )

        now = self.clock()
        day = self.today(now)
        with db.transaction() as conn:
            existing = _open_record(conn, member.id, day)
            if existing is not None:
                raise AlreadyCheckedIn(
                    f"{member.full_name} is already checked in.",
                    member_id=member.id,
                    since=existing.check_in_time.isoformat(),
                )
            try:
                cur = conn.execute(
                    "INSERT INTO attendance(member_id, check_in_time, check_out_time, date) VALUES(?,?,NULL,?)",
                    (member.id, utils.to_iso(now), day),
                )
            except sqlite3.IntegrityError as e:
                raise AlreadyCheckedIn(
                    f"{member.full_name} is already checked in.", member_id=member.id
                ) from e
            members.record_visit(conn, member.id, now)
            record_id = cur.lastrowid

        member = members.get_member(member.id)
        log.info("Check-in: member %s (visit %s)", member.id, member.total_visits)
        return AttendanceResult(
            member=member,
            record=_get_record(record_id),
            message=f"Welcome {member.full_name}! Check-in successful.",
        )

    def check_out(self, member_id: int) -> AttendanceResult:
        member = members.get_member(member_id)
        now = self.clock()
        day = self.today(now)
        with db.transaction() as conn:
            record = _open_record(conn, member.id, day)
            if record is None:
                raise NotFound("No active check-in found for this member.", member_id=member.id)
            conn.execute(
                "UPDATE attendance SET check_out_time = ? WHERE id = ? AND check_out_time IS NULL",
                (utils.to_iso(now), record.id),
            )

        log.info("Check-out: member %s", member.id)
        return AttendanceResult(
            member=member,
            record=_get_record(record.id),
            message=f"{member.full_name} checked out successfully.",
        )

    def status_for_member(self, member_id: int) -> dict:
        row = db.fetch_one(
            "SELECT * FROM attendance WHERE member_id = ? AND date = ? ORDER BY check_in_time DESC, id DESC LIMIT 1",
            (member_id, self.today()),
        )
        if row is None:
            return {"isCheckedIn": False, "checkInTime": None, "checkOutTime": None, "date": None}
        record = AttendanceRecord.from_row(row)
        return {
            "isCheckedIn": record.is_open,
            "checkInTime": record.check_in_time.isoformat(),
            "checkOutTime": record.check_out_time.isoformat() if record.check_out_time else None,
            "date": record.date,
        }

    def todays_attendance(self) -> list[sqlite3.Row]:
        return db.fetch_all(
            """
            SELECT a.id, a.member_id, m.full_name, m.email, m.barcode, m.plan_code, m.account_status,
                   a.check_in_time, a.check_out_time
            FROM attendance a
            JOIN members m ON m.id = a.member_id
            WHERE a.date = ?
            ORDER BY a.check_in_time DESC
            """,
            (self.today(),),
        )

    def stats(self) -> dict:
        now = self.clock()
        week_start = utils.local_day(now - timedelta(days=7), self.timezone).isoformat()
        today_count = db.fetch_one("SELECT COUNT(*) AS c FROM attendance WHERE date = ?", (self.today(now),))
        week_count = db.fetch_one("SELECT COUNT(*) AS c FROM attendance WHERE date >= ?", (week_start,))
        return {
            "today_check_ins": int(today_count["c"]),
            "week_check_ins": int(week_count["c"]),
            "total_members": members.count_members(),
            "active_members": members.count_members(ACTIVE),
        }


def _open_record(conn: sqlite3.Connection, member_id: int, day: str) -> AttendanceRecord | None:
    row = conn.execute(
        "SELECT * FROM attendance WHERE member_id = ? AND date = ? AND check_out_time IS NULL",
        (member_id, day),
    ).fetchone()
    return AttendanceRecord.from_row(row) if row else None


def _get_record(record_id: int) -> AttendanceRecord:
    return AttendanceRecord.from_row(db.fetch_one("SELECT * FROM attendance WHERE id = ?", (record_id,)))
