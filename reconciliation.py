"""
reconciliation.py
Payment reconciliation: confirm a payment's gateway outcome and apply its membership effects exactly once.

Gateway webhooks and client-side confirmations both land in ReconciliationEngine.reconcile().
Operator-attested cash payments go through record_cash_payment() and skip gateway verification.
"""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from dataclasses import dataclass
from datetime import datetime
from typing import Callable

import db
import members
import payments
import utils
from errors import AmountMismatch, InputValidationError, NotFound, PaymentFailed, VerificationUnavailable
from gateway import GatewayUnavailable, PaymentGateway, VerificationOutcome
from models import (
    FAILED,
    METHOD_CASH,
    METHOD_PAYSTACK,
    METHOD_TRANSFER,
    Member,
    REFUNDED,
    PaymentAttempt,
    get_plan,
    resolve_duration,
)

log = logging.getLogger(__name__)

ACTIVATED = "activated"
ALREADY_VERIFIED = "already_verified"


@dataclass(frozen=True)
class ReconciliationResult:
    outcome: str
    member: Member
    payment: PaymentAttempt

    @property
    def already_verified(self) -> bool:
        return self.outcome == ALREADY_VERIFIED

    def to_dict(self) -> dict:
        message = (
            "Payment already verified"
            if self.already_verified
            else "Payment verified and membership activated"
        )
        return {
            "success": True,
            "outcome": self.outcome,
            "message": message,
            "payment": self.payment.public_fields(),
            "user": self.member.public_fields(),
        }


class ReconciliationEngine:
    def __init__(
        self,
        gateway: PaymentGateway | None = None,
        *,
        clock: Callable[[], datetime] = utils.utcnow,
        verify_timeout: float = 30.0,
    ):
        self.gateway = gateway
        self.clock = clock
        self.verify_timeout = verify_timeout
        self._executor = ThreadPoolExecutor(max_workers=4, thread_name_prefix="gateway-verify")

    # ===== GATEWAY FLOW =====
    def initiate_payment(
        self,
        member_id: int,
        plan_code: str,
        amount: int | None = None,
        *,
        duration_days: int | None = None,
        trainer_addon: bool = False,
    ) -> PaymentAttempt:
        """Create the pending attempt the client will pay against; the reference embeds the member id."""
        plan = get_plan(plan_code)
        if plan is None:
            raise InputValidationError(f"Unknown membership plan: {plan_code!r}.", plan=plan_code)
        amount = plan.price if amount is None else amount
        errors = utils.validate_payment_inputs(amount, plan.code, duration_days)
        if errors:
            raise InputValidationError(" ".join(errors), fields=errors)
        member = members.get_member(member_id)

        now = self.clock()
        attempt, _ = payments.create_pending(
            reference=utils.gateway_reference(member.id, now),
            member_id=member.id,
            amount=int(amount),
            plan_code=plan.code,
            duration_days=resolve_duration(plan.code, duration_days),
            trainer_addon=trainer_addon,
            method=METHOD_PAYSTACK,
            now=now,
        )
        log.info("Initiated payment %s for member %s (%s)", attempt.reference, member.id, attempt.amount)
        return attempt

    def reconcile(
        self,
        reference: str,
        expected_amount: int,
        expected_plan: str,
        expected_duration: int | None = None,
        trainer_addon: bool = False,
        *,
        member_id: int | None = None,
    ) -> ReconciliationResult:
        reference = (reference or "").strip()
        if not reference:
            raise InputValidationError("Payment reference is required.")
        errors = utils.validate_payment_inputs(expected_amount, expected_plan, expected_duration)
        if expected_plan and get_plan(expected_plan) is None:
            errors.append(f"Unknown membership plan: {expected_plan!r}.")
        if errors:
            raise InputValidationError(" ".join(errors), reference=reference, fields=errors)
        expected_amount = int(expected_amount)

        attempt = payments.find_by_reference(reference)
        if attempt is not None:
            if attempt.is_reconciled:
                log.info("Payment %s already verified", reference)
                return self._already_verified(attempt)
            self._check_not_terminal(attempt)
            if member_id is not None and attempt.member_id != member_id:
                raise InputValidationError(
                    "Payment reference belongs to another member.", reference=reference, member_id=member_id
                )
        else:
            attempt = self._create_attempt(
                reference, expected_amount, expected_plan, expected_duration, trainer_addon, member_id
            )
            if attempt.is_reconciled:
                return self._already_verified(attempt)

        if attempt.amount != expected_amount:
            log.warning(
                "Caller expected %s on %s; checking against the initiated amount %s",
                expected_amount, reference, attempt.amount,
            )
        # Activation uses the stored snapshot; the paid amount must match it too.
        expected_amount = attempt.amount
        outcome = self._verify(reference)

        if not outcome.success:
            self._fail(attempt, outcome)
            raise PaymentFailed(
                "Payment not successful.", reference=reference, member_id=attempt.member_id
            )

        if outcome.amount_minor_units != expected_amount:
            self._fail(attempt, outcome)
            log.warning(
                "Amount mismatch on %s: expected %s, gateway reported %s",
                reference, expected_amount, outcome.amount_minor_units,
            )
            raise AmountMismatch(
                "Payment amount verification failed.",
                reference=reference,
                member_id=attempt.member_id,
                expected=expected_amount,
                received=outcome.amount_minor_units,
            )

        now = self.clock()
        with db.transaction() as conn:
            won = payments.mark_completed(
                conn,
                reference,
                gateway_payload=outcome.raw_payload,
                transaction_id=outcome.transaction_id,
                now=now,
            )
            if won:
                self._activate(conn, attempt, now)

        stored = payments.get_by_reference(reference)
        if not won:
            log.info("Payment %s was completed by a concurrent confirmation", reference)
            return self._already_verified(stored)

        member = members.get_member(attempt.member_id)
        log.info(
            "Payment %s verified; member %s active until %s",
            reference, member.id, utils.to_iso(member.membership_end_date),
        )
        return ReconciliationResult(ACTIVATED, member, stored)

    # ===== CASH FLOW =====
    def record_cash_payment(
        self,
        member_id: int,
        amount: int,
        plan_code: str,
        *,
        duration_days: int | None = None,
        trainer_addon: bool = False,
        method: str = METHOD_CASH,
    ) -> ReconciliationResult:
        """Operator-attested payment: recorded as completed/verified and applied immediately."""
        errors = utils.validate_payment_inputs(amount, plan_code, duration_days)
        plan = get_plan(plan_code)
        if plan_code and plan is None:
            errors.append(f"Unknown membership plan: {plan_code!r}.")
        if method not in (METHOD_CASH, METHOD_TRANSFER):
            errors.append(f"Unsupported offline payment method: {method!r}.")
        if errors:
            raise InputValidationError(" ".join(errors), member_id=member_id, fields=errors)
        member = members.get_member(member_id)

        now = self.clock()
        reference = utils.cash_reference(now)
        with db.transaction() as conn:
            payments.insert_completed(
                conn,
                reference=reference,
                member_id=member.id,
                amount=int(amount),
                plan_code=plan.code,
                duration_days=resolve_duration(plan.code, duration_days),
                trainer_addon=trainer_addon,
                method=method,
                now=now,
            )
            attempt = PaymentAttempt.from_row(
                conn.execute("SELECT * FROM payments WHERE reference = ?", (reference,)).fetchone()
            )
            self._activate(conn, attempt, now)

        member = members.get_member(member.id)
        log.info("Recorded %s payment %s for member %s", method, reference, member.id)
        return ReconciliationResult(ACTIVATED, member, payments.get_by_reference(reference))

    # ---------- internals ----------
    def _create_attempt(self, reference, amount, plan_code, duration, trainer_addon, member_id) -> PaymentAttempt:
        owner_id = member_id if member_id is not None else utils.member_id_from_reference(reference)
        if owner_id is None:
            raise InputValidationError("Cannot resolve the member for this reference.", reference=reference)
        if members.find_by_id(owner_id) is None:
            raise NotFound("Member not found.", member_id=owner_id, reference=reference)
        plan = get_plan(plan_code)
        attempt, created = payments.create_pending(
            reference=reference,
            member_id=owner_id,
            amount=amount,
            plan_code=plan.code,
            duration_days=resolve_duration(plan_code, duration),
            trainer_addon=trainer_addon,
            method=METHOD_PAYSTACK,
            now=self.clock(),
        )
        if not created:
            # a concurrent confirmation inserted it first
            self._check_not_terminal(attempt)
        return attempt

    def _verify(self, reference: str) -> VerificationOutcome:
        if self.gateway is None:
            raise VerificationUnavailable("Payment gateway is not configured.", reference=reference)
        # The verification keeps running even if the caller goes away; the result is re-confirmable.
        future = self._executor.submit(self.gateway.verify, reference)
        try:
            return future.result(timeout=self.verify_timeout)
        except FutureTimeout as e:
            log.warning("Gateway verification timed out for %s", reference)
            raise VerificationUnavailable("Payment provider timed out.", reference=reference) from e
        except GatewayUnavailable as e:
            log.warning("Gateway unavailable for %s: %s", reference, e)
            raise VerificationUnavailable(f"Failed to verify with payment provider: {e}", reference=reference) from e

    def _fail(self, attempt: PaymentAttempt, outcome: VerificationOutcome) -> None:
        if payments.mark_failed(attempt.reference, gateway_payload=outcome.raw_payload, now=self.clock()):
            log.warning("Payment %s marked failed for member %s", attempt.reference, attempt.member_id)

    def _activate(self, conn, attempt: PaymentAttempt, now: datetime) -> None:
        members.apply_activation(
            conn,
            attempt.member_id,
            plan_code=attempt.plan_code,
            start=now,
            end=utils.add_days(now, attempt.duration_days),
            now=now,
        )
        if members.assign_barcode_if_missing(conn, attempt.member_id):
            log.info("Assigned barcode to member %s on first activation", attempt.member_id)

    def _already_verified(self, attempt: PaymentAttempt) -> ReconciliationResult:
        return ReconciliationResult(ALREADY_VERIFIED, members.get_member(attempt.member_id), attempt)

    @staticmethod
    def _check_not_terminal(attempt: PaymentAttempt) -> None:
        if attempt.status in (FAILED, REFUNDED):
            raise PaymentFailed(
                f"Payment is {attempt.status} and cannot be verified again.",
                reference=attempt.reference,
                member_id=attempt.member_id,
                status=attempt.status,
            )

    def shutdown(self) -> None:
        self._executor.shutdown(wait=False)
