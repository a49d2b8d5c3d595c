"""
models.py
Lightweight domain helpers (plans, statuses, dataclasses).
"""

from __future__ import annotations

import json
import sqlite3
from dataclasses import asdict, dataclass, fields
from datetime import datetime

# Account lifecycle
PENDING = "pending"
ACTIVE = "active"
EXPIRED = "expired"
SUSPENDED = "suspended"
ACCOUNT_STATUSES = (PENDING, ACTIVE, EXPIRED, SUSPENDED)

# Payment standing on the member record
PAYMENT_PENDING = "pending"
PAYMENT_ACTIVE = "active"
PAYMENT_OVERDUE = "overdue"

# Payment attempt
COMPLETED = "completed"
FAILED = "failed"
REFUNDED = "refunded"
VERIFIED = "verified"

METHOD_CASH = "cash"
METHOD_PAYSTACK = "paystack"
METHOD_TRANSFER = "bank-transfer"
PAYMENT_METHODS = (METHOD_CASH, METHOD_PAYSTACK, METHOD_TRANSFER)

DEFAULT_DURATION_DAYS = 30


@dataclass(frozen=True)
class Plan:
    code: str
    display_name: str
    price: int  # minor units (kobo)
    duration_days: int


PLANS = {
    "walk-in": Plan("walk-in", "Walk-in", 500_000, 1),
    "weekly": Plan("weekly", "Weekly", 650_000, 7),
    "deluxe": Plan("deluxe", "Deluxe", 1_550_000, 30),
    "bi-monthly": Plan("bi-monthly", "Bi-Monthly", 4_000_000, 90),
}


def get_plan(code: str | None) -> Plan | None:
    """Case-insensitive lookup; accepts display names like 'Bi-Monthly'."""
    if not code:
        return None
    return PLANS.get(code.strip().lower())


def resolve_duration(plan_code: str | None, duration_days: int | None = None) -> int:
    if duration_days:
        return int(duration_days)
    plan = get_plan(plan_code)
    return plan.duration_days if plan else DEFAULT_DURATION_DAYS


def _ts(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


@dataclass(frozen=True)
class HealthProfile:
    """Optional self-declared health details captured at registration."""

    has_medical_conditions: bool | None = None
    medical_conditions_details: str | None = None
    is_on_medication: bool | None = None
    medication_details: str | None = None
    has_surgery_or_injury: bool | None = None
    surgery_or_injury_details: str | None = None
    has_chest_pain_or_dizziness: bool | None = None
    has_allergies: bool | None = None
    allergies_details: str | None = None
    emergency_contact_name: str | None = None
    emergency_contact_phone: str | None = None
    smokes: bool | None = None
    drinks_alcohol: bool | None = None
    exercise_frequency: str | None = None  # never / occasionally / regularly
    fitness_goals: str | None = None
    agreed_to_declaration: bool = False

    def to_json(self) -> str:
        return json.dumps(asdict(self))

    @classmethod
    def from_json(cls, raw: str | None) -> "HealthProfile | None":
        if not raw:
            return None
        data = json.loads(raw)
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in data.items() if k in known})


@dataclass(frozen=True)
class Member:
    id: int
    full_name: str
    email: str
    phone: str
    is_admin: bool
    is_verified: bool
    barcode: str | None
    plan_code: str
    plan_price: int
    plan_duration_days: int
    account_status: str
    payment_status: str
    is_active: bool
    membership_start_date: datetime | None
    membership_end_date: datetime | None
    next_due_date: datetime | None
    last_payment_date: datetime | None
    last_check_in: datetime | None
    total_visits: int
    health_profile: HealthProfile | None = None

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "Member":
        return cls(
            id=row["id"],
            full_name=row["full_name"],
            email=row["email"],
            phone=row["phone"],
            is_admin=bool(row["is_admin"]),
            is_verified=bool(row["is_verified"]),
            barcode=row["barcode"],
            plan_code=row["plan_code"],
            plan_price=row["plan_price"],
            plan_duration_days=row["plan_duration_days"],
            account_status=row["account_status"],
            payment_status=row["payment_status"],
            is_active=bool(row["is_active"]),
            membership_start_date=_ts(row["membership_start_date"]),
            membership_end_date=_ts(row["membership_end_date"]),
            next_due_date=_ts(row["next_due_date"]),
            last_payment_date=_ts(row["last_payment_date"]),
            last_check_in=_ts(row["last_check_in"]),
            total_visits=row["total_visits"],
            health_profile=HealthProfile.from_json(row["health_profile"]),
        )

    def public_fields(self) -> dict:
        return {
            "id": self.id,
            "fullName": self.full_name,
            "email": self.email,
            "barcode": self.barcode,
            "membershipType": self.plan_code,
            "status": self.account_status,
            "paymentStatus": self.payment_status,
            "isActive": self.is_active,
            "membershipStartDate": _iso(self.membership_start_date),
            "membershipEndDate": _iso(self.membership_end_date),
            "nextDueDate": _iso(self.next_due_date),
            "lastPaymentDate": _iso(self.last_payment_date),
            "lastCheckIn": _iso(self.last_check_in),
            "totalVisits": self.total_visits,
        }


@dataclass(frozen=True)
class PaymentAttempt:
    id: int
    reference: str
    transaction_id: str | None
    member_id: int
    amount: int  # minor units
    plan_code: str
    duration_days: int
    trainer_addon: bool
    method: str
    status: str
    verification_status: str
    gateway_payload: dict | None
    initiated_at: datetime
    completed_at: datetime | None
    verified_at: datetime | None

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "PaymentAttempt":
        payload = row["gateway_payload"]
        return cls(
            id=row["id"],
            reference=row["reference"],
            transaction_id=row["transaction_id"],
            member_id=row["member_id"],
            amount=row["amount"],
            plan_code=row["plan_code"],
            duration_days=row["duration_days"],
            trainer_addon=bool(row["trainer_addon"]),
            method=row["method"],
            status=row["status"],
            verification_status=row["verification_status"],
            gateway_payload=json.loads(payload) if payload else None,
            initiated_at=_ts(row["initiated_at"]),
            completed_at=_ts(row["completed_at"]),
            verified_at=_ts(row["verified_at"]),
        )

    @property
    def is_reconciled(self) -> bool:
        return self.status == COMPLETED and self.verification_status == VERIFIED

    def public_fields(self) -> dict:
        return {
            "id": self.id,
            "reference": self.reference,
            "amount": self.amount,
            "membershipType": self.plan_code,
            "duration": self.duration_days,
            "trainerAddon": self.trainer_addon,
            "method": self.method,
            "status": self.status,
            "verificationStatus": self.verification_status,
            "initiatedAt": _iso(self.initiated_at),
            "completedAt": _iso(self.completed_at),
            "verifiedAt": _iso(self.verified_at),
        }


@dataclass(frozen=True)
class AttendanceRecord:
    id: int
    member_id: int
    check_in_time: datetime
    check_out_time: datetime | None
    date: str  # gym-local calendar day, YYYY-MM-DD

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "AttendanceRecord":
        return cls(
            id=row["id"],
            member_id=row["member_id"],
            check_in_time=_ts(row["check_in_time"]),
            check_out_time=_ts(row["check_out_time"]),
            date=row["date"],
        )

    @property
    def is_open(self) -> bool:
        return self.check_out_time is None
