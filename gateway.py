"""
gateway.py
Interface of the hosted payment gateway's verification endpoint, as consumed by reconciliation.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Protocol


class GatewayUnavailable(Exception):
    """Transient failure talking to the gateway (network error, timeout, 5xx)."""


@dataclass(frozen=True)
class VerificationOutcome:
    success: bool
    amount_minor_units: int
    raw_payload: dict = field(default_factory=dict)
    transaction_id: str | None = None


class PaymentGateway(Protocol):
    def verify(self, reference: str) -> VerificationOutcome:
        """Look the reference up at the gateway. May raise GatewayUnavailable."""
        ...
