"""
errors.py
Domain errors. Each carries a stable `kind` plus the ids the UI needs to render a message.
"""

from __future__ import annotations


class GymError(Exception):
    """Base error for the service layer."""

    kind = "error"

    def __init__(self, message: str, **details):
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> dict:
        return {"error": self.kind, "message": self.message, **self.details}


# ---------- Input validation ----------
class InputValidationError(GymError):
    kind = "invalid_input"


class NotFound(GymError):
    kind = "not_found"


# ---------- Conflicts (already in the requested state) ----------
class ConflictError(GymError):
    kind = "conflict"


class AlreadyCheckedIn(ConflictError):
    kind = "already_checked_in"


class DuplicateRegistration(ConflictError):
    kind = "duplicate_registration"


# ---------- External dependencies ----------
class ExternalDependencyError(GymError):
    kind = "external_unavailable"


class VerificationUnavailable(ExternalDependencyError):
    kind = "verification_unavailable"


class NotificationFailed(ExternalDependencyError):
    kind = "notification_failed"


# ---------- Verification rejected (terminal for the reference) ----------
class VerificationRejected(GymError):
    kind = "verification_rejected"


class PaymentFailed(VerificationRejected):
    kind = "payment_failed"


class AmountMismatch(VerificationRejected):
    kind = "amount_mismatch"


# ---------- Business rules ----------
class BusinessRuleViolation(GymError):
    kind = "rule_violation"


class MembershipNotActive(BusinessRuleViolation):
    kind = "membership_not_active"


class NotVerified(BusinessRuleViolation):
    kind = "not_verified"


class NotAuthorized(BusinessRuleViolation):
    kind = "not_authorized"
