import threading
from datetime import datetime, timedelta, timezone

import bcrypt
import pytest

import auth
import db
import members
import utils
from gateway import GatewayUnavailable, VerificationOutcome
from notifier import DeliveryResult

ADMIN_EMAIL = "admin@test.local"
ADMIN_PASSWORD = "admin123"
START = datetime(2026, 1, 15, 9, 0, tzinfo=timezone.utc)


class FakeClock:
    def __init__(self, now: datetime = START):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **delta) -> datetime:
        self.now += timedelta(**delta)
        return self.now


class FakeGateway:
    """Scripted verification: reference -> VerificationOutcome or exception; default is a success for `amount`."""

    def __init__(self, amount: int | None = None):
        self.amount = amount
        self.outcomes = {}
        self.calls = []
        self.barrier: threading.Barrier | None = None
        self._lock = threading.Lock()

    def script(self, reference: str, outcome):
        self.outcomes[reference] = outcome

    def verify(self, reference: str) -> VerificationOutcome:
        with self._lock:
            self.calls.append(reference)
        if self.barrier is not None:
            self.barrier.wait(timeout=5)
        outcome = self.outcomes.get(reference)
        if outcome is None:
            if self.amount is None:
                raise GatewayUnavailable("no scripted outcome")
            outcome = VerificationOutcome(True, self.amount, {"status": "success", "reference": reference}, "tx-1")
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


class RecordingNotifier:
    def __init__(self, fail_for=(), raise_for=()):
        self.sent = []
        self.fail_for = set(fail_for)
        self.raise_for = set(raise_for)

    def send(self, kind, recipient, template_data):
        if recipient in self.raise_for:
            raise ConnectionError("smtp down")
        if recipient in self.fail_for:
            return DeliveryResult(success=False, error="mailbox unavailable")
        self.sent.append((kind, recipient, template_data))
        return DeliveryResult(success=True, message_id=f"msg-{len(self.sent)}")

    def recipients(self):
        return [r for _, r, _ in self.sent]


@pytest.fixture(autouse=True)
def fast_bcrypt(monkeypatch):
    real_gensalt = bcrypt.gensalt
    monkeypatch.setattr(bcrypt, "gensalt", lambda rounds=12, prefix=b"2b": real_gensalt(rounds=4, prefix=prefix))


@pytest.fixture(autouse=True)
def temp_db(tmp_path, monkeypatch, fast_bcrypt):
    db_path = tmp_path / "test_gym.db"
    monkeypatch.setattr(db, "DB_FILE", db_path)
    db.init_db(ADMIN_EMAIL, auth.hash_password(ADMIN_PASSWORD))
    return db_path


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def notifier():
    return RecordingNotifier()


def set_member(member_id: int, **columns):
    """Force member columns into a given state; datetimes are stored the way the app stores them."""
    assignments = ", ".join(f"{name} = ?" for name in columns)
    values = [utils.to_iso(v) if isinstance(v, datetime) else v for v in columns.values()]
    db.execute(f"UPDATE members SET {assignments} WHERE id = ?", (*values, member_id))
    return members.get_member(member_id)


@pytest.fixture
def make_member(clock):
    counter = {"n": 0}

    def _make(plan_code="deluxe", *, verified=True, **state):
        counter["n"] += 1
        member, token = members.register_member(
            f"Member {counter['n']}",
            f"member{counter['n']}@test.local",
            "08030000000",
            "secret123",
            plan_code,
            now=clock(),
        )
        if verified:
            member = members.verify_email(token)
        if state:
            member = set_member(member.id, **state)
        return member

    return _make
