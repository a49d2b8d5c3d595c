"""
notifier.py
Outbound notification interface used by the reminder jobs.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from typing import Protocol

log = logging.getLogger(__name__)

PAYMENT_REMINDER = "payment_reminder"


@dataclass(frozen=True)
class DeliveryResult:
    success: bool
    message_id: str | None = None
    error: str | None = None


class Notifier(Protocol):
    def send(self, kind: str, recipient: str, template_data: dict) -> DeliveryResult:
        ...


class LoggingNotifier:
    """Writes notifications to the log instead of delivering them (local runs without a mail transport)."""

    def send(self, kind: str, recipient: str, template_data: dict) -> DeliveryResult:
        message_id = uuid.uuid4().hex
        log.info("[%s] %s -> %s: %s", message_id[:8], kind, recipient, template_data.get("subject"))
        return DeliveryResult(success=True, message_id=message_id)
