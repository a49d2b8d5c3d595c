import threading
import time
from datetime import timedelta

import pytest

import db
import members
import payments
from conftest import FakeGateway
from errors import AmountMismatch, InputValidationError, NotFound, PaymentFailed, VerificationUnavailable
from gateway import GatewayUnavailable, VerificationOutcome
from models import ACTIVE, COMPLETED, FAILED, PENDING, PLANS, VERIFIED
from reconciliation import ACTIVATED, ALREADY_VERIFIED, ReconciliationEngine

DELUXE = PLANS["deluxe"].price


@pytest.fixture
def gateway():
    return FakeGateway(amount=DELUXE)


@pytest.fixture
def engine(gateway, clock):
    eng = ReconciliationEngine(gateway, clock=clock, verify_timeout=2.0)
    yield eng
    eng.shutdown()


def payment_count(member_id):
    return db.fetch_one("SELECT COUNT(*) AS c FROM payments WHERE member_id = ?", (member_id,))["c"]


def test_initiate_payment_creates_pending_attempt_with_plan_snapshot(engine, make_member, clock):
    member = make_member()
    attempt = engine.initiate_payment(member.id, "deluxe")

    assert attempt.reference.startswith(f"GYM-{member.id}-")
    assert attempt.status == PENDING
    assert attempt.amount == DELUXE
    assert attempt.duration_days == 30
    assert attempt.initiated_at == clock()


def test_initiate_payment_rejects_unknown_plan(engine, make_member):
    member = make_member()
    with pytest.raises(InputValidationError):
        engine.initiate_payment(member.id, "platinum")


def test_reconcile_activates_member(engine, make_member, clock):
    member = make_member()
    attempt = engine.initiate_payment(member.id, "deluxe")

    result = engine.reconcile(attempt.reference, DELUXE, "deluxe")

    assert result.outcome == ACTIVATED
    assert result.payment.status == COMPLETED
    assert result.payment.verification_status == VERIFIED
    assert result.payment.gateway_payload["status"] == "success"
    assert result.member.account_status == ACTIVE
    assert result.member.payment_status == "active"
    assert result.member.is_active
    assert result.member.membership_start_date == clock()
    assert result.member.membership_end_date == clock() + timedelta(days=30)
    assert result.member.next_due_date == result.member.membership_end_date
    assert result.member.last_payment_date == clock()


def test_reconcile_twice_is_idempotent(engine, gateway, make_member, clock):
    member = make_member()
    attempt = engine.initiate_payment(member.id, "deluxe")
    first = engine.reconcile(attempt.reference, DELUXE, "deluxe")

    clock.advance(hours=2)
    second = engine.reconcile(attempt.reference, DELUXE, "deluxe")
    third = engine.reconcile(attempt.reference, DELUXE, "deluxe")

    assert second.outcome == ALREADY_VERIFIED
    assert third.already_verified
    assert second.member == first.member
    assert len(gateway.calls) == 1
    assert payment_count(member.id) == 1


def test_amount_mismatch_fails_payment_and_leaves_member(engine, gateway, make_member):
    member = make_member()
    attempt = engine.initiate_payment(member.id, "deluxe")
    gateway.script(attempt.reference, VerificationOutcome(True, DELUXE - 100, {"amount": DELUXE - 100}))

    with pytest.raises(AmountMismatch) as exc:
        engine.reconcile(attempt.reference, DELUXE, "deluxe")

    assert exc.value.details["expected"] == DELUXE
    assert exc.value.details["received"] == DELUXE - 100
    assert payments.get_by_reference(attempt.reference).status == FAILED
    after = members.get_member(member.id)
    assert after.account_status == "pending"
    assert after.membership_end_date is None


def test_failed_reference_is_terminal(engine, gateway, make_member):
    member = make_member()
    attempt = engine.initiate_payment(member.id, "deluxe")
    gateway.script(attempt.reference, VerificationOutcome(False, 0, {"status": "abandoned"}))

    with pytest.raises(PaymentFailed):
        engine.reconcile(attempt.reference, DELUXE, "deluxe")
    assert payments.get_by_reference(attempt.reference).status == FAILED

    gateway.script(attempt.reference, VerificationOutcome(True, DELUXE))
    with pytest.raises(PaymentFailed):
        engine.reconcile(attempt.reference, DELUXE, "deluxe")
    assert len(gateway.calls) == 1
    assert members.get_member(member.id).account_status == "pending"


def test_gateway_unavailable_leaves_attempt_pending_and_retry_succeeds(engine, gateway, make_member):
    member = make_member()
    attempt = engine.initiate_payment(member.id, "deluxe")
    gateway.script(attempt.reference, GatewayUnavailable("connection reset"))

    with pytest.raises(VerificationUnavailable):
        engine.reconcile(attempt.reference, DELUXE, "deluxe")
    assert payments.get_by_reference(attempt.reference).status == PENDING
    assert members.get_member(member.id).account_status == "pending"

    gateway.script(attempt.reference, VerificationOutcome(True, DELUXE))
    assert engine.reconcile(attempt.reference, DELUXE, "deluxe").outcome == ACTIVATED


def test_gateway_timeout_is_unavailable(make_member, clock):
    class SlowGateway:
        def verify(self, reference):
            time.sleep(0.5)
            return VerificationOutcome(True, DELUXE)

    engine = ReconciliationEngine(SlowGateway(), clock=clock, verify_timeout=0.05)
    member = make_member()
    attempt = engine.initiate_payment(member.id, "deluxe")
    try:
        with pytest.raises(VerificationUnavailable):
            engine.reconcile(attempt.reference, DELUXE, "deluxe")
        assert payments.get_by_reference(attempt.reference).status == PENDING
    finally:
        engine.shutdown()


def test_missing_gateway_is_unavailable(make_member, clock):
    engine = ReconciliationEngine(None, clock=clock)
    member = make_member()
    attempt = engine.initiate_payment(member.id, "deluxe")
    with pytest.raises(VerificationUnavailable):
        engine.reconcile(attempt.reference, DELUXE, "deluxe")
    engine.shutdown()


def test_reference_without_attempt_resolves_member_from_reference(engine, make_member, clock):
    member = make_member()
    reference = f"GYM-{member.id}-1768467600000"

    result = engine.reconcile(reference, DELUXE, "deluxe")

    assert result.outcome == ACTIVATED
    assert result.payment.member_id == member.id
    assert result.member.membership_end_date == clock() + timedelta(days=30)


def test_unresolvable_reference_is_rejected(engine):
    with pytest.raises(InputValidationError):
        engine.reconcile("T1234567890", DELUXE, "deluxe")


def test_reference_for_unknown_member_is_not_found(engine):
    with pytest.raises(NotFound):
        engine.reconcile("GYM-9999-1768467600000", DELUXE, "deluxe")


@pytest.mark.parametrize(
    "reference, amount, plan",
    [
        ("", DELUXE, "deluxe"),
        ("GYM-1-1", 0, "deluxe"),
        ("GYM-1-1", DELUXE + 0.7, "deluxe"),
        ("GYM-1-1", "15500.50", "deluxe"),
        ("GYM-1-1", DELUXE, ""),
        ("GYM-1-1", DELUXE, "gold"),
    ],
)
def test_invalid_inputs_are_rejected(engine, reference, amount, plan):
    with pytest.raises(InputValidationError):
        engine.reconcile(reference, amount, plan)


def test_reference_owned_by_another_member_is_rejected(engine, make_member):
    owner = make_member()
    other = make_member()
    attempt = engine.initiate_payment(owner.id, "deluxe")
    with pytest.raises(InputValidationError):
        engine.reconcile(attempt.reference, DELUXE, "deluxe", member_id=other.id)


def test_existing_attempt_uses_initiated_duration(engine, gateway, make_member, clock):
    member = make_member()
    attempt = engine.initiate_payment(member.id, "weekly", duration_days=7)
    gateway.script(attempt.reference, VerificationOutcome(True, PLANS["weekly"].price))

    result = engine.reconcile(attempt.reference, PLANS["weekly"].price, "weekly", 30)

    assert result.member.membership_end_date == clock() + timedelta(days=7)


def test_existing_attempt_is_checked_against_initiated_amount(engine, gateway, make_member):
    member = make_member("walk-in")
    attempt = engine.initiate_payment(member.id, "deluxe")
    walk_in = PLANS["walk-in"].price
    gateway.script(attempt.reference, VerificationOutcome(True, walk_in, {"amount": walk_in}))

    with pytest.raises(AmountMismatch) as exc:
        engine.reconcile(attempt.reference, walk_in, "walk-in")

    assert exc.value.details["expected"] == DELUXE
    assert exc.value.details["received"] == walk_in
    assert payments.get_by_reference(attempt.reference).status == FAILED
    after = members.get_member(member.id)
    assert after.account_status == "pending"
    assert after.membership_end_date is None


def test_existing_attempt_ignores_caller_amount_when_paid_in_full(engine, make_member):
    member = make_member()
    attempt = engine.initiate_payment(member.id, "deluxe")

    result = engine.reconcile(attempt.reference, PLANS["walk-in"].price, "walk-in")

    assert result.outcome == ACTIVATED
    assert result.member.plan_code == "deluxe"


def test_concurrent_confirmations_activate_once(engine, gateway, make_member, clock):
    member = make_member()
    attempt = engine.initiate_payment(member.id, "deluxe")
    gateway.barrier = threading.Barrier(2)
    results, errors = [], []

    def confirm():
        try:
            results.append(engine.reconcile(attempt.reference, DELUXE, "deluxe"))
        except Exception as e:
            errors.append(e)

    threads = [threading.Thread(target=confirm) for _ in range(2)]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=10)

    assert errors == []
    assert sorted(r.outcome for r in results) == [ACTIVATED, ALREADY_VERIFIED]
    assert payment_count(member.id) == 1
    assert members.get_member(member.id).membership_end_date == clock() + timedelta(days=30)


def test_cash_payment_activates_immediately(engine, gateway, make_member, clock):
    member = make_member()

    result = engine.record_cash_payment(member.id, DELUXE, "deluxe")

    assert result.outcome == ACTIVATED
    assert result.payment.method == "cash"
    assert result.payment.reference.startswith("CASH-")
    assert result.payment.is_reconciled
    assert result.member.membership_end_date == clock() + timedelta(days=30)
    assert gateway.calls == []


def test_renewal_restarts_from_payment_time(engine, make_member, clock):
    member = make_member()
    engine.record_cash_payment(member.id, DELUXE, "deluxe")

    clock.advance(days=10)
    result = engine.record_cash_payment(member.id, PLANS["weekly"].price, "weekly", method="bank-transfer")

    assert result.member.membership_start_date == clock()
    assert result.member.membership_end_date == clock() + timedelta(days=7)
    assert result.member.plan_code == "weekly"
    assert payments.count_completed_for_member(member.id) == 2


def test_cash_payment_rejects_gateway_method(engine, make_member):
    member = make_member()
    with pytest.raises(InputValidationError):
        engine.record_cash_payment(member.id, DELUXE, "deluxe", method="paystack")


def test_first_activation_assigns_missing_barcode(engine, make_member):
    member = make_member(barcode=None)
    assert member.barcode is None

    result = engine.record_cash_payment(member.id, DELUXE, "deluxe")

    assert result.member.barcode.startswith("GYM-")


def test_payment_stats(engine, make_member):
    member = make_member()
    engine.record_cash_payment(member.id, DELUXE, "deluxe", trainer_addon=True)
    attempt = engine.initiate_payment(member.id, "deluxe")
    engine.reconcile(attempt.reference, DELUXE, "deluxe")

    stats = payments.stats()

    assert stats["total_revenue"] == 2 * DELUXE
    assert {r["method"] for r in stats["by_method"]} == {"cash", "paystack"}
    assert stats["trainer_addons"] == 1
