"""
webhooks.py
Gateway webhook receiver: authenticate the delivery and route charge.success into the same
reconcile() entry point the client confirmation uses.
"""

from __future__ import annotations

import hashlib
import hmac
import json
import logging

import members
import payments
import utils
from errors import InputValidationError, NotFound
from reconciliation import ReconciliationEngine, ReconciliationResult

log = logging.getLogger(__name__)

CHARGE_SUCCESS = "charge.success"


def verify_signature(secret: str, raw_body: bytes, signature: str | None) -> bool:
    """HMAC-SHA512 of the raw body, hex encoded, as sent in x-paystack-signature."""
    if not secret or not signature:
        return False
    expected = hmac.new(secret.encode("utf-8"), raw_body, hashlib.sha512).hexdigest()
    return hmac.compare_digest(expected, signature.strip())


def parse_event(raw_body: bytes) -> dict:
    try:
        event = json.loads(raw_body)
    except (TypeError, ValueError) as e:
        raise InputValidationError("Webhook body is not valid JSON.") from e
    if not isinstance(event, dict):
        raise InputValidationError("Webhook body must be a JSON object.")
    return event


def receive(
    engine: ReconciliationEngine, raw_body: bytes, signature: str | None, secret: str | None
) -> ReconciliationResult | None:
    if not verify_signature(secret or "", raw_body, signature):
        log.warning("Rejected webhook with invalid signature")
        raise InputValidationError("Invalid signature.")
    return handle_event(engine, parse_event(raw_body))


class WebhookReceiver:
    """Gateway webhook endpoint bound to the process's reconciliation engine and signing secret."""

    def __init__(self, engine: ReconciliationEngine, secret: str | None):
        self.engine = engine
        self.secret = secret

    @property
    def configured(self) -> bool:
        return bool(self.secret)

    def receive(self, raw_body: bytes, signature: str | None) -> ReconciliationResult | None:
        return receive(self.engine, raw_body, signature, self.secret)


def handle_event(engine: ReconciliationEngine, event: dict) -> ReconciliationResult | None:
    kind = event.get("event")
    if kind != CHARGE_SUCCESS:
        log.info("Ignoring webhook event %s", kind)
        return None

    tx = event.get("data") or {}
    reference = (tx.get("reference") or "").strip()
    if not reference:
        raise InputValidationError("Webhook event has no reference.")
    metadata = tx.get("metadata") or {}

    attempt = payments.find_by_reference(reference)
    if attempt is not None:
        # Reconcile against the snapshot taken when the payment was initiated.
        return engine.reconcile(
            reference,
            attempt.amount,
            attempt.plan_code,
            attempt.duration_days,
            attempt.trainer_addon,
            member_id=attempt.member_id,
        )

    member_id = _member_id(metadata, reference)
    member = members.find_by_id(member_id) if member_id is not None else None
    if member is None:
        log.warning("Webhook: member not found for transaction %s", reference)
        raise NotFound("Member not found for transaction.", reference=reference, member_id=member_id)

    return engine.reconcile(
        reference,
        tx.get("amount"),
        metadata.get("membership_type") or member.plan_code,
        metadata.get("duration") or None,
        bool(metadata.get("trainer_addon")),
        member_id=member.id,
    )


def _member_id(metadata: dict, reference: str) -> int | None:
    raw = metadata.get("user_id")
    if raw is not None:
        try:
            return int(raw)
        except (TypeError, ValueError):
            log.warning("Webhook metadata user_id %r is not numeric", raw)
    return utils.member_id_from_reference(reference)
