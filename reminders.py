"""
reminders.py
Payment-due reminders: pick members whose due date falls in a reminder bucket and notify them.

Buckets: 7, 3 and 1 day(s) ahead, the due day itself, then daily for the first week overdue.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable

import members
import sweeper
import utils
from errors import InputValidationError, NotificationFailed
from models import ACTIVE, EXPIRED, Member, get_plan
from notifier import PAYMENT_REMINDER, DeliveryResult, Notifier

log = logging.getLogger(__name__)

ADVANCE_BUCKETS = (7, 3, 1, 0)
OVERDUE_WINDOW_DAYS = 7
CANDIDATE_STATUSES = (ACTIVE, EXPIRED)


def should_send(days_until_due: int) -> bool:
    return days_until_due in ADVANCE_BUCKETS or -OVERDUE_WINDOW_DAYS <= days_until_due < 0


def reminder_type(days_until_due: int) -> str:
    if days_until_due < 0:
        return "Overdue"
    if days_until_due == 0:
        return "Due Today"
    if days_until_due <= 3:
        return "Urgent"
    return "Advance Notice"


def _subject(days_until_due: int) -> str:
    if days_until_due <= 0:
        return "URGENT: Your Gym Membership Payment is Overdue"
    plural = "s" if days_until_due != 1 else ""
    if days_until_due <= 2:
        return f"Payment Due in {days_until_due} Day{plural} - Action Required"
    return f"Upcoming Payment Reminder - {days_until_due} Days"


def build_template_data(member: Member, days_until_due: int, amount_due: int) -> dict:
    plan = get_plan(member.plan_code)
    data = {
        "subject": _subject(days_until_due),
        "name": member.full_name,
        "membershipType": plan.display_name if plan else member.plan_code,
        "nextDueDate": utils.to_iso(member.next_due_date),
        "amountDue": amount_due,
        "amountDueDisplay": utils.format_naira(amount_due),
        "daysUntilDue": days_until_due,
        "reminderType": reminder_type(days_until_due),
        "isDue": days_until_due <= 0,
        "isUrgent": days_until_due <= 2,
    }
    if days_until_due <= 0:
        data["daysOverdue"] = abs(days_until_due)
    else:
        data["daysRemaining"] = days_until_due
    return data


@dataclass(frozen=True)
class ReminderSummary:
    sent: int
    failed: int
    skipped: int

    def to_dict(self) -> dict:
        return {"sent": self.sent, "failed": self.failed, "skipped": self.skipped}


class ReminderDispatcher:
    def __init__(
        self,
        notifier: Notifier,
        *,
        clock: Callable[[], datetime] = utils.utcnow,
        default_price: int = 1_550_000,
    ):
        self.notifier = notifier
        self.clock = clock
        self.default_price = default_price

    def run_reminder_sweep(self) -> ReminderSummary:
        now = self.clock()
        candidates = members.list_with_due_date(CANDIDATE_STATUSES)
        log.info("Checking %s members for payment reminders", len(candidates))
        sent = failed = skipped = 0

        for member in candidates:
            days = utils.days_until(member.next_due_date, now)
            if not should_send(days):
                skipped += 1
                continue

            result = self._deliver(member, days)
            if not result.success:
                failed += 1
                continue
            sent += 1

            if days < 0 and member.account_status == ACTIVE:
                self._demote_if_lapsed(member, now)

        summary = ReminderSummary(sent, failed, skipped)
        log.info("Reminder summary: %s", summary.to_dict())
        return summary

    def preview_reminders(self) -> dict:
        """Read-only view of who the next run would remind, for the admin dashboard."""
        now = self.clock()
        rows = []
        for member in members.list_with_due_date(CANDIDATE_STATUSES):
            days = utils.days_until(member.next_due_date, now)
            rows.append(
                {
                    "id": member.id,
                    "name": member.full_name,
                    "email": member.email,
                    "membershipType": member.plan_code,
                    "status": member.account_status,
                    "nextDueDate": utils.to_iso(member.next_due_date),
                    "daysUntilDue": days,
                    "willReceiveReminder": should_send(days),
                    "reminderType": reminder_type(days),
                }
            )
        return {
            "total": len(rows),
            "willReceiveReminders": sum(1 for r in rows if r["willReceiveReminder"]),
            "users": rows,
        }

    def send_single(self, member_id: int) -> DeliveryResult:
        """Manual reminder; ignores the bucket schedule."""
        member = members.get_member(member_id)
        if member.next_due_date is None:
            raise InputValidationError("User has no due date set.", member_id=member.id)

        result = self._deliver(member, utils.days_until(member.next_due_date, self.clock()))
        if not result.success:
            raise NotificationFailed(
                result.error or "Failed to send reminder.", member_id=member.id, recipient=member.email
            )
        return result

    def reminder_stats(self) -> dict:
        now = self.clock()
        with_due = members.list_with_due_date(CANDIDATE_STATUSES)
        return {
            "totalWithDueDate": len(with_due),
            "dueIn7Days": len(members.list_due_between(now, now + timedelta(days=7))),
            "dueIn3Days": len(members.list_due_between(now, now + timedelta(days=3))),
            "dueToday": len(members.list_due_between(now, now + timedelta(days=1))),
            "overdue": sum(1 for m in with_due if m.next_due_date < now),
        }

    # ---------- internals ----------
    def _deliver(self, member: Member, days: int) -> DeliveryResult:
        data = build_template_data(member, days, member.plan_price or self.default_price)
        try:
            result = self.notifier.send(PAYMENT_REMINDER, member.email, data)
        except Exception as e:  # a broken transport must not stop the batch
            log.exception("Failed to send reminder to member %s", member.id)
            return DeliveryResult(success=False, error=str(e))

        if result.success:
            log.info("Reminder sent to member %s (%s days until due)", member.id, days)
        else:
            log.warning("Reminder to member %s not delivered: %s", member.id, result.error)
        return result

    @staticmethod
    def _demote_if_lapsed(member: Member, now: datetime) -> None:
        # Same rule as the sweeper, so running both in any order converges.
        end = member.membership_end_date
        if end is not None and end >= now:
            return
        if sweeper.expire(member.id, now):
            log.info("Member %s marked as expired after overdue reminder", member.id)
