import hashlib
import hmac
import json
from datetime import timedelta

import pytest

import payments
import webhooks
from conftest import FakeGateway
from errors import InputValidationError, NotFound
from models import PLANS
from reconciliation import ACTIVATED, ALREADY_VERIFIED, ReconciliationEngine

SECRET = "sk_test_webhook"
DELUXE = PLANS["deluxe"].price


@pytest.fixture
def engine(clock):
    eng = ReconciliationEngine(FakeGateway(amount=DELUXE), clock=clock)
    yield eng
    eng.shutdown()


def sign(body: bytes, secret: str = SECRET) -> str:
    return hmac.new(secret.encode(), body, hashlib.sha512).hexdigest()


def charge_success(reference, amount=DELUXE, metadata=None) -> bytes:
    return json.dumps(
        {"event": "charge.success", "data": {"reference": reference, "amount": amount, "metadata": metadata or {}}}
    ).encode()


def test_signature_check():
    body = b'{"event": "charge.success"}'
    assert webhooks.verify_signature(SECRET, body, sign(body))
    assert not webhooks.verify_signature(SECRET, body, sign(body, "other"))
    assert not webhooks.verify_signature(SECRET, body, None)
    assert not webhooks.verify_signature("", body, sign(body))


def test_bad_signature_is_rejected_before_any_work(engine, make_member):
    member = make_member()
    attempt = engine.initiate_payment(member.id, "deluxe")
    body = charge_success(attempt.reference)

    with pytest.raises(InputValidationError):
        webhooks.receive(engine, body, "deadbeef", SECRET)
    assert payments.get_by_reference(attempt.reference).status == "pending"


def test_charge_success_reconciles_initiated_attempt(engine, make_member, clock):
    member = make_member()
    attempt = engine.initiate_payment(member.id, "deluxe")
    body = charge_success(attempt.reference)

    result = webhooks.receive(engine, body, sign(body), SECRET)

    assert result.outcome == ACTIVATED
    assert result.member.membership_end_date == clock() + timedelta(days=30)
    # client confirmation arriving afterwards is a no-op
    assert engine.reconcile(attempt.reference, DELUXE, "deluxe").outcome == ALREADY_VERIFIED


def test_charge_success_without_attempt_uses_metadata(engine, make_member):
    member = make_member("weekly")
    reference = "T-external-123"
    body = charge_success(reference, metadata={"user_id": str(member.id), "membership_type": "deluxe"})

    result = webhooks.receive(engine, body, sign(body), SECRET)

    assert result.outcome == ACTIVATED
    assert result.payment.member_id == member.id
    assert result.member.plan_code == "deluxe"


def test_charge_success_for_unknown_member(engine):
    body = charge_success("T-nobody", metadata={"user_id": 4242})
    with pytest.raises(NotFound):
        webhooks.receive(engine, body, sign(body), SECRET)


def test_other_events_are_ignored(engine):
    body = json.dumps({"event": "transfer.success", "data": {"reference": "X"}}).encode()
    assert webhooks.receive(engine, body, sign(body), SECRET) is None


def test_malformed_body(engine):
    body = b"not json"
    with pytest.raises(InputValidationError):
        webhooks.receive(engine, body, sign(body), SECRET)


def test_receiver_shares_engine_with_client_confirmation(engine, make_member):
    receiver = webhooks.WebhookReceiver(engine, SECRET)
    member = make_member()
    attempt = engine.initiate_payment(member.id, "deluxe")
    body = charge_success(attempt.reference)

    assert receiver.configured
    assert receiver.receive(body, sign(body)).outcome == ACTIVATED
    assert engine.reconcile(attempt.reference, DELUXE, "deluxe").outcome == ALREADY_VERIFIED


def test_receiver_without_secret_rejects_everything(engine):
    receiver = webhooks.WebhookReceiver(engine, None)
    body = charge_success("GYM-1-1")
    assert not receiver.configured
    with pytest.raises(InputValidationError):
        receiver.receive(body, sign(body))
