"""
sweeper.py
Time-driven membership lifecycle: expire memberships whose end date has passed and
reactivate expired ones whose end date was pushed into the future.
"""

from __future__ import annotations

import logging
import sqlite3
from dataclasses import dataclass
from datetime import datetime
from typing import Callable

import db
import members
import utils
from models import ACTIVE, EXPIRED, PAYMENT_ACTIVE, PAYMENT_OVERDUE, Member

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class SweepSummary:
    expired_count: int
    reactivated_count: int
    failed_count: int = 0

    @property
    def total_updated(self) -> int:
        return self.expired_count + self.reactivated_count

    def to_dict(self) -> dict:
        return {
            "expired": self.expired_count,
            "reactivated": self.reactivated_count,
            "failed": self.failed_count,
            "totalUpdated": self.total_updated,
        }


def expire(member_id: int, now: datetime) -> bool:
    """active -> expired/overdue. False if the member was no longer active."""
    with db.transaction() as conn:
        return members.transition_status(
            conn, member_id,
            from_status=ACTIVE, to_status=EXPIRED,
            payment_status=PAYMENT_OVERDUE, is_active=False, now=now,
        )


def reactivate(member_id: int, now: datetime) -> bool:
    """expired -> active. False if the member was no longer expired."""
    with db.transaction() as conn:
        return members.transition_status(
            conn, member_id,
            from_status=EXPIRED, to_status=ACTIVE,
            payment_status=PAYMENT_ACTIVE, is_active=True, now=now,
        )


class MembershipSweeper:
    def __init__(self, *, clock: Callable[[], datetime] = utils.utcnow):
        self.clock = clock

    def sweep(self) -> SweepSummary:
        now = self.clock()
        log.info("Running membership status sweep at %s", utils.to_iso(now))
        expired = reactivated = failed = 0

        for member in members.list_by_status((ACTIVE,), end_before=now, include_unset_end=True):
            try:
                if expire(member.id, now):
                    expired += 1
                    log.info("Membership expired for member %s (%s)", member.id, member.email)
            except sqlite3.Error:
                failed += 1
                log.exception("Could not expire member %s", member.id)

        for member in members.list_by_status((EXPIRED,), end_on_or_after=now):
            try:
                if reactivate(member.id, now):
                    reactivated += 1
                    log.info("Reactivated membership for member %s (%s)", member.id, member.email)
            except sqlite3.Error:
                failed += 1
                log.exception("Could not reactivate member %s", member.id)

        summary = SweepSummary(expired, reactivated, failed)
        log.info("Sweep complete: %s", summary.to_dict())
        return summary

    def check_member(self, member_id: int) -> Member:
        """Apply the sweep rules to a single member (e.g. when their dashboard loads)."""
        member = members.get_member(member_id)
        if member.is_admin or member.account_status not in (ACTIVE, EXPIRED):
            return member

        now = self.clock()
        end = member.membership_end_date
        if member.account_status == ACTIVE and (end is None or end < now):
            if expire(member.id, now):
                log.info("Membership expired for member %s (%s)", member.id, member.email)
        elif member.account_status == EXPIRED and end is not None and end >= now:
            if reactivate(member.id, now):
                log.info("Reactivated membership for member %s (%s)", member.id, member.email)
        return members.get_member(member.id)
