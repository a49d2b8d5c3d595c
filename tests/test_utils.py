from datetime import datetime, timedelta, timezone

import db
import members
import utils
from conftest import FakeGateway
from models import PLANS
from reconciliation import ReconciliationEngine


def test_days_until_rounds_up():
    now = datetime(2026, 1, 15, 9, 0, tzinfo=timezone.utc)
    assert utils.days_until(now + timedelta(days=3), now) == 3
    assert utils.days_until(now + timedelta(days=2, hours=1), now) == 3
    assert utils.days_until(now - timedelta(hours=1), now) == 0
    assert utils.days_until(now - timedelta(days=1, hours=1), now) == -1


def test_to_iso_normalises_to_utc():
    lagos = datetime(2026, 1, 15, 10, 0, tzinfo=timezone(timedelta(hours=1)))
    assert utils.to_iso(lagos) == "2026-01-15T09:00:00+00:00"
    assert utils.to_iso(datetime(2026, 1, 15, 9, 0)) == "2026-01-15T09:00:00+00:00"
    assert utils.to_iso(None) is None


def test_references():
    now = datetime(2026, 1, 15, 9, 0, tzinfo=timezone.utc)
    ref = utils.gateway_reference(42, now)
    assert ref == "GYM-42-1768467600000"
    assert utils.member_id_from_reference(ref) == 42
    assert utils.member_id_from_reference("T-123") is None
    assert utils.cash_reference(now).startswith("CASH-1768467600000-")


def test_barcode_format():
    barcode = utils.generate_barcode()
    prefix, middle, suffix = barcode.split("-")
    assert prefix == "GYM" and len(middle) == 8 and len(suffix) == 4


def test_format_naira():
    assert utils.format_naira(1_550_000) == "₦15,500.00"


def test_member_export_hides_secrets(make_member):
    make_member()
    csv = utils.members_to_csv_bytes(db.fetch_all("SELECT * FROM members")).decode()
    header = csv.splitlines()[0]
    assert "password_hash" not in header
    assert "verification_token" not in header
    assert "email" in header


def test_revenue_summary(make_member, clock):
    engine = ReconciliationEngine(FakeGateway(), clock=clock)
    member = make_member()
    engine.record_cash_payment(member.id, PLANS["deluxe"].price, "deluxe")
    engine.shutdown()

    summary = utils.revenue_summary_by_month()

    assert summary.to_dict("records") == [{"month": "2026-01", "revenue": 15_500.0, "payments": 1}]


def test_sample_data_inserts_members():
    utils.insert_sample_data()
    assert members.count_members() == 3
    assert members.count_members("expired") == 1


def test_payment_amounts_must_be_whole_minor_units():
    assert utils.validate_payment_inputs(1_550_000, "deluxe") == []
    assert utils.validate_payment_inputs(1_550_000.0, "deluxe") == []
    assert utils.validate_payment_inputs(1_550_000.7, "deluxe") == ["Amount must be a whole number of minor units."]
    assert utils.validate_payment_inputs("15500.50", "deluxe") == ["Amount must be a whole number of minor units."]
    assert utils.validate_payment_inputs(True, "deluxe") == ["Amount must be a whole number of minor units."]
    assert utils.validate_payment_inputs(float("inf"), "deluxe") == ["Amount must be a whole number of minor units."]
