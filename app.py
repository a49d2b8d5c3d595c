"""
app.py
Streamlit gym membership dashboard (admin).
Run: streamlit run app.py
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import timedelta

import pandas as pd
import streamlit as st

import auth
import db
import members
import payments
import utils
from attendance import AttendanceEngine
from config import configure_logging, settings
from errors import ConflictError, GymError
from models import ACCOUNT_STATUSES, ACTIVE, METHOD_PAYSTACK, PAYMENT_METHODS, PLANS, HealthProfile, get_plan
from notifier import LoggingNotifier
from reconciliation import ReconciliationEngine
from reminders import ReminderDispatcher
from scheduler import SchedulerHandle
from sweeper import MembershipSweeper
from webhooks import WebhookReceiver

st.set_page_config(page_title="Gym Membership", layout="wide")


@dataclass
class Services:
    reconciliation: ReconciliationEngine
    attendance: AttendanceEngine
    sweeper: MembershipSweeper
    reminders: ReminderDispatcher
    scheduler: SchedulerHandle
    webhooks: WebhookReceiver


@st.cache_resource
def get_services() -> Services:
    # Once per process: DB bootstrap, engines, and the background scheduler.
    configure_logging()
    db.init_db(settings.admin_email, auth.hash_password(settings.admin_password))

    sweeper = MembershipSweeper()
    dispatcher = ReminderDispatcher(LoggingNotifier(), default_price=settings.default_reminder_price)
    handle = SchedulerHandle(
        sweeper,
        dispatcher,
        timezone=settings.timezone,
        reminder_hour=settings.reminder_hour,
        reminder_minute=settings.reminder_minute,
    )
    if settings.scheduler_enabled:
        handle.start(sweep_on_startup=settings.sweep_on_startup)

    reconciliation = ReconciliationEngine(verify_timeout=settings.gateway_timeout_seconds)
    return Services(
        reconciliation=reconciliation,
        attendance=AttendanceEngine(timezone=settings.timezone),
        sweeper=sweeper,
        reminders=dispatcher,
        scheduler=handle,
        webhooks=WebhookReceiver(reconciliation, settings.webhook_secret),
    )


def require_login():
    if "logged_in" not in st.session_state:
        st.session_state.logged_in = False
    if "username" not in st.session_state:
        st.session_state.username = None


def logout():
    st.session_state.logged_in = False
    st.session_state.username = None
    st.success("Logged out.")


def show_error(e: GymError):
    if isinstance(e, ConflictError):
        st.warning(e.message)
    else:
        st.error(e.message)


def login_screen():
    st.title("🔐 Gym Admin Login")

    col1, col2 = st.columns([1, 1])
    with col1:
        email = st.text_input("Email", value=settings.admin_email)
        password = st.text_input("Password", type="password")
        if st.button("Login", type="primary"):
            if auth.login(email.strip(), password):
                st.session_state.logged_in = True
                st.session_state.username = email.strip().lower()
                st.rerun()
            else:
                st.error("Invalid email or password.")

    with col2:
        st.info(
            "First run creates a default admin:\n\n"
            f"- email: **{settings.admin_email}**\n"
            "- password: from `GYM_ADMIN_PASSWORD` (default **admin123**)\n\n"
            "You will be forced to change it on first login."
        )


def force_change_password_screen():
    st.title("⚠️ Change Password (Required)")

    st.warning("You must change the default password before using the app.")
    new1 = st.text_input("New password", type="password")
    new2 = st.text_input("Confirm new password", type="password")

    if st.button("Update password", type="primary"):
        if len(new1) < 6:
            st.error("Password must be at least 6 characters.")
            return
        if new1 != new2:
            st.error("Passwords do not match.")
            return
        auth.change_password(st.session_state.username, new1)
        st.success("Password updated. You can continue.")
        st.rerun()


def members_frame(rows) -> pd.DataFrame:
    if not rows:
        return pd.DataFrame(columns=["id", "fullName", "email", "barcode", "membershipType", "status"])
    return pd.DataFrame([m.public_fields() for m in rows])


def member_picker(label: str = "Member", key: str | None = None) -> int | None:
    rows = members.list_members()
    if not rows:
        st.info("No members yet. Register a member first.")
        return None
    options = {f"{m.full_name} ({m.email}) - ID {m.id}": m.id for m in rows}
    chosen = st.selectbox(label, list(options.keys()), key=key)
    return options[chosen]


def current_admin_id() -> int | None:
    admin = auth.get_admin_by_email(st.session_state.username)
    return admin["id"] if admin else None


def status_control(member):
    c1, c2 = st.columns([2, 1])
    with c1:
        new_status = st.selectbox(
            "Account status",
            ACCOUNT_STATUSES,
            index=ACCOUNT_STATUSES.index(member.account_status),
            key=f"status_{member.id}",
        )
    with c2:
        st.write("")
        if st.button("Update status", key=f"status_btn_{member.id}", disabled=new_status == member.account_status):
            try:
                members.set_status(member.id, new_status, admin_id=current_admin_id())
                st.success(f"Status updated to {new_status}.")
                st.rerun()
            except GymError as e:
                show_error(e)


def dashboard_page(svc: Services):
    st.header("📊 Dashboard")

    stats = svc.attendance.stats()
    pay_stats = payments.stats()
    reminder_stats = svc.reminders.reminder_stats()

    c1, c2, c3, c4 = st.columns(4)
    c1.metric("Active members", stats["active_members"])
    c2.metric("Check-ins today", stats["today_check_ins"])
    c3.metric("Due in next 7 days", reminder_stats["dueIn7Days"])
    c4.metric("Total revenue", utils.format_naira(pay_stats["total_revenue"]))

    st.divider()

    st.subheader("Due soon (next 7 days)")
    now = utils.utcnow()
    rows = members.list_due_between(now, now + timedelta(days=7), (ACTIVE,))
    if rows:
        st.dataframe(members_frame(rows), use_container_width=True, hide_index=True)
    else:
        st.caption("No memberships due in the next 7 days.")


def register_form():
    st.subheader("➕ Register Member")

    col1, col2 = st.columns(2)
    with col1:
        full_name = st.text_input("Full name")
        email = st.text_input("Email")
        phone = st.text_input("Phone")
        password = st.text_input("Initial password", type="password")
    with col2:
        plan_code = st.selectbox(
            "Plan",
            options=list(PLANS.keys()),
            format_func=lambda c: f"{PLANS[c].display_name} - {utils.format_naira(PLANS[c].price)} / {PLANS[c].duration_days}d",
        )
        emergency_name = st.text_input("Emergency contact name (optional)")
        emergency_phone = st.text_input("Emergency contact phone (optional)")
        agreed = st.checkbox("Member agreed to the health declaration")
        mark_verified = st.checkbox("Email verified at the desk", value=True)

    if st.button("Register", type="primary"):
        profile = None
        if emergency_name.strip() or emergency_phone.strip() or agreed:
            profile = HealthProfile(
                emergency_contact_name=emergency_name.strip() or None,
                emergency_contact_phone=emergency_phone.strip() or None,
                agreed_to_declaration=agreed,
            )
        try:
            member, token = members.register_member(
                full_name, email, phone, password, plan_code, health_profile=profile
            )
            if mark_verified:
                members.verify_email(token)
            st.success(f"Registered {member.full_name}. Barcode: {member.barcode}")
            st.rerun()
        except GymError as e:
            show_error(e)


def members_page(svc: Services):
    st.header("👥 Members")

    with st.sidebar:
        st.subheader("Search & Filters")
        search = st.text_input("Search (name/email/phone/barcode)")
        status_filter = st.selectbox("Status", ["All", *ACCOUNT_STATUSES])

    rows = members.list_members(search=search, status=None if status_filter == "All" else status_filter)
    st.dataframe(members_frame(rows), use_container_width=True, hide_index=True)

    st.divider()

    colA, colB = st.columns([1, 2])
    with colA:
        st.subheader("Select member")
        member_ids = [m.id for m in rows]
        selected_id = st.selectbox("Member ID", options=["(none)"] + [str(i) for i in member_ids])

    with colB:
        if selected_id != "(none)":
            member = svc.sweeper.check_member(int(selected_id))
            st.subheader(member.full_name)
            st.json(member.public_fields())
            status_control(member)
            history = payments.list_for_member(member.id)
            if history:
                st.dataframe(
                    pd.DataFrame([p.public_fields() for p in history]), use_container_width=True, hide_index=True
                )
            else:
                st.caption("No payments for this member yet.")

    st.divider()
    register_form()


def payments_page(svc: Services):
    st.header("💳 Payments")

    member_id = member_picker(key="payments_member")
    if member_id is None:
        return
    member = members.get_member(member_id)

    st.subheader("Record offline payment")
    c1, c2, c3, c4 = st.columns(4)
    with c1:
        plan_code = st.selectbox(
            "Plan", list(PLANS.keys()), index=list(PLANS.keys()).index(member.plan_code)
            if member.plan_code in PLANS else 0,
        )
    plan = get_plan(plan_code)
    with c2:
        amount = st.number_input("Amount (kobo)", min_value=1, value=plan.price, step=100)
    with c3:
        method = st.selectbox("Method", [m for m in PAYMENT_METHODS if m != METHOD_PAYSTACK])
    with c4:
        trainer_addon = st.checkbox("Trainer add-on")

    if st.button("Record payment", type="primary"):
        try:
            result = svc.reconciliation.record_cash_payment(
                member.id, int(amount), plan.code, trainer_addon=trainer_addon, method=method
            )
            st.success(
                f"Payment recorded. Active until {result.member.membership_end_date:%Y-%m-%d}."
            )
            st.rerun()
        except GymError as e:
            show_error(e)

    st.divider()

    with st.expander("Replay a gateway webhook delivery"):
        if not svc.webhooks.configured:
            st.caption("Set PAYSTACK_SECRET_KEY to accept webhook deliveries.")
        raw_body = st.text_area("Raw JSON body")
        signature = st.text_input("x-paystack-signature")
        if st.button("Process delivery", disabled=not svc.webhooks.configured):
            try:
                result = svc.webhooks.receive(raw_body.encode("utf-8"), signature)
                if result is None:
                    st.info("Event ignored (not charge.success).")
                elif result.already_verified:
                    st.info(f"Payment {result.payment.reference} was already verified.")
                else:
                    st.success(f"Payment {result.payment.reference} verified for {result.member.full_name}.")
            except GymError as e:
                show_error(e)

    st.subheader("Payment history")
    history = payments.list_for_member(member.id)
    if history:
        st.dataframe(pd.DataFrame([p.public_fields() for p in history]), use_container_width=True, hide_index=True)
    else:
        st.caption("No payments for this member yet.")

    st.subheader("Recent payments (all members)")
    recent = payments.list_recent()
    if recent:
        st.dataframe(pd.DataFrame([dict(r) for r in recent]), use_container_width=True, hide_index=True)

    stats = payments.stats()
    st.caption(
        f"Completed revenue: {utils.format_naira(stats['total_revenue'])} · "
        f"Trainer add-ons: {stats['trainer_addons']}"
    )


def checkin_page(svc: Services):
    st.header("🚪 Check-in Desk")

    col1, col2 = st.columns(2)
    with col1:
        barcode = st.text_input("Scan or type barcode")
        if st.button("Check in", type="primary"):
            try:
                result = svc.attendance.check_in(barcode)
                st.success(f"{result.message} Visits: {result.member.total_visits}")
            except GymError as e:
                show_error(e)

    with col2:
        member_id = member_picker("Check out member", key="checkout_member")
        if member_id is not None and st.button("Check out"):
            try:
                st.success(svc.attendance.check_out(member_id).message)
            except GymError as e:
                show_error(e)

    st.divider()

    st.subheader("Today's attendance")
    rows = svc.attendance.todays_attendance()
    if rows:
        st.dataframe(pd.DataFrame([dict(r) for r in rows]), use_container_width=True, hide_index=True)
    else:
        st.caption("No check-ins yet today.")


def reminders_page(svc: Services):
    st.header("⏰ Payment Reminders")

    stats = svc.reminders.reminder_stats()
    c1, c2, c3, c4 = st.columns(4)
    c1.metric("Due in 7 days", stats["dueIn7Days"])
    c2.metric("Due in 3 days", stats["dueIn3Days"])
    c3.metric("Due today", stats["dueToday"])
    c4.metric("Overdue", stats["overdue"])

    preview = svc.reminders.preview_reminders()
    next_run = svc.scheduler.next_run_times().get("reminders-daily")
    st.caption(
        f"{preview['willReceiveReminders']} of {preview['total']} members will be reminded on the next run"
        f" ({next_run or 'scheduler not running'})."
    )
    if preview["users"]:
        st.dataframe(pd.DataFrame(preview["users"]), use_container_width=True, hide_index=True)

    if st.button("Send reminders now", type="primary"):
        summary = svc.scheduler.run_reminders_now()
        if summary is None:
            st.warning("A reminder run is already in progress.")
        else:
            st.success(f"Sent {summary.sent}, failed {summary.failed}, skipped {summary.skipped}.")

    st.divider()

    member_id = member_picker("Send a reminder to", key="reminder_member")
    if member_id is not None and st.button("Send reminder"):
        try:
            svc.reminders.send_single(member_id)
            st.success("Reminder sent.")
        except GymError as e:
            show_error(e)


def jobs_page(svc: Services):
    st.header("🔁 Scheduled Jobs")

    if svc.scheduler.started:
        st.caption(f"Background scheduler running ({svc.scheduler.timezone}).")
    else:
        st.warning("Background scheduler is not running (GYM_SCHEDULER_ENABLED is off). Use the buttons below.")

    if st.button("Run membership sweep now", type="primary"):
        summary = svc.scheduler.run_sweep_now()
        if summary is None:
            st.warning("A sweep is already in progress.")
        else:
            st.success(
                f"Expired {summary.expired_count}, reactivated {summary.reactivated_count}, "
                f"failed {summary.failed_count}."
            )

    st.subheader("Next runs")
    st.table(
        pd.DataFrame(
            [{"job": k, "next_run": v} for k, v in svc.scheduler.next_run_times().items()],
            columns=["job", "next_run"],
        )
    )
    for lease in (svc.scheduler.sweep_lease, svc.scheduler.reminder_lease):
        last = lease.last_result.to_dict() if lease.last_result else None
        st.caption(f"{lease.name}: last started {lease.last_started_at or '-'} · result {last or '-'}")


def reports_page():
    st.header("🧾 Reports")

    st.subheader("Export members to CSV")
    rows = db.fetch_all("SELECT * FROM members WHERE is_admin = 0 ORDER BY id DESC")
    if rows:
        st.download_button(
            "Download members.csv",
            data=utils.members_to_csv_bytes(rows),
            file_name="members.csv",
            mime="text/csv",
        )
    else:
        st.caption("No members to export.")

    st.divider()

    st.subheader("Export payments to CSV")
    recent = payments.list_recent(limit=100_000)
    if recent:
        st.download_button(
            "Download payments.csv",
            data=utils.payments_to_csv_bytes(recent),
            file_name="payments.csv",
            mime="text/csv",
        )
    else:
        st.caption("No payments to export.")

    st.divider()

    st.subheader("Revenue summary by month")
    st.dataframe(utils.revenue_summary_by_month(), use_container_width=True, hide_index=True)


def settings_page():
    st.header("⚙️ Settings")

    st.subheader("Change password")
    p1 = st.text_input("New password", type="password")
    p2 = st.text_input("Confirm new password", type="password")
    if st.button("Update password", type="primary"):
        if len(p1) < 6:
            st.error("Password must be at least 6 characters.")
        elif p1 != p2:
            st.error("Passwords do not match.")
        else:
            auth.change_password(st.session_state.username, p1)
            st.success("Password updated.")

    st.divider()

    st.subheader("Sample data")
    st.caption("Insert 3 sample members + their payments for testing (adds new rows each run).")
    if st.button("Insert sample data"):
        utils.insert_sample_data()
        st.success("Sample data inserted.")
        st.rerun()


def main_app(svc: Services):
    st.sidebar.title("🏋️ Gym Membership")
    st.sidebar.caption(f"Logged in as: {st.session_state.username}")

    pages = ["Dashboard", "Members", "Payments", "Check-in", "Reminders", "Jobs", "Reports", "Settings"]
    if "page" not in st.session_state:
        st.session_state.page = "Dashboard"
    st.session_state.page = st.sidebar.radio("Navigate", pages, index=pages.index(st.session_state.page))

    if st.sidebar.button("Logout"):
        logout()
        st.rerun()

    if st.session_state.page == "Dashboard":
        dashboard_page(svc)
    elif st.session_state.page == "Members":
        members_page(svc)
    elif st.session_state.page == "Payments":
        payments_page(svc)
    elif st.session_state.page == "Check-in":
        checkin_page(svc)
    elif st.session_state.page == "Reminders":
        reminders_page(svc)
    elif st.session_state.page == "Jobs":
        jobs_page(svc)
    elif st.session_state.page == "Reports":
        reports_page()
    elif st.session_state.page == "Settings":
        settings_page()


# --------- App entry ---------

def run():
    svc = get_services()
    require_login()

    if not st.session_state.logged_in:
        login_screen()
        return

    # Force password change on first login after DB creation
    if db.is_force_password_change():
        force_change_password_screen()
        return

    main_app(svc)


if __name__ == "__main__":
    run()
