"""
app.py
Streamlit gym back office (owner-only): plans, members, memberships, payments.
Run: streamlit run app.py
"""

from __future__ import annotations

from datetime import date, timedelta
from decimal import Decimal

import streamlit as st

import auth
import utils
from catalog import PlanRepository
from config import configure_logging, load_settings
from db import Database
from errors import GymError
from models import MembershipStatus, PaymentMethod, PaymentType, Plan, TransactionType
from notify import build_notifier
from reconcile import MembershipService

st.set_page_config(page_title="Gym Management System", layout="wide")

METHODS = [m.value for m in PaymentMethod]
ENTRY_TYPES = [t.value for t in PaymentType if t != PaymentType.MEMBERSHIP]


@st.cache_resource
def bootstrap():
    """Build settings, database and service once per server process."""
    settings = load_settings()
    configure_logging(settings)
    database = Database(settings.db_path, timeout=settings.db_timeout)
    database.init_db(auth.hash_password("admin123"))
    service = MembershipService.from_database(database, notifier=build_notifier(settings), settings=settings)
    return settings, database, service


def require_login():
    if "logged_in" not in st.session_state:
        st.session_state.logged_in = False
    if "username" not in st.session_state:
        st.session_state.username = None


def logout():
    st.session_state.logged_in = False
    st.session_state.username = None
    st.success("Logged out.")


def login_screen(admin_auth: auth.AdminAuth):
    st.title("🔐 Gym Owner Login")

    col1, col2 = st.columns([1, 1])
    with col1:
        username = st.text_input("Username", value="admin")
        password = st.text_input("Password", type="password")
        if st.button("Login", type="primary"):
            if admin_auth.login(username.strip(), password):
                st.session_state.logged_in = True
                st.session_state.username = username.strip()
                st.rerun()
            else:
                st.error("Invalid username or password.")

    with col2:
        st.info(
            "First run creates a default admin:\n\n"
            "- username: **admin**\n"
            "- password: **admin123**\n\n"
            "You will be forced to change it on first login."
        )


def password_form(admin_auth: auth.AdminAuth) -> bool:
    new1 = st.text_input("New password", type="password")
    new2 = st.text_input("Confirm new password", type="password")
    if st.button("Update password", type="primary"):
        problems = auth.password_problems(new1, new2)
        for p in problems:
            st.error(p)
        if not problems:
            admin_auth.change_password(st.session_state.username, new1)
            st.success("Password updated.")
            return True
    return False


def force_change_password_screen(admin_auth: auth.AdminAuth):
    st.title("⚠️ Change Password (Required)")
    st.warning("You must change the default password before using the app.")
    if password_form(admin_auth):
        st.rerun()


def plan_label(plan: Plan) -> str:
    return f"{plan.name} ({plan.duration_days} days)"


def pick_plan(plans: list[Plan], label: str = "Plan", key: str | None = None) -> Plan | None:
    if not plans:
        st.info("No active plans yet. Add one under Plans.")
        return None
    return st.selectbox(label, plans, format_func=plan_label, key=key)


# ---------- Pages ----------

def dashboard_page(service: MembershipService):
    st.header("📊 Dashboard")

    service.sweep_expirations()
    memberships = service.memberships.list_memberships()

    today = date.today()
    in_7 = today + timedelta(days=7)
    active = [m for m in memberships if m.status == MembershipStatus.ACTIVE]
    pending = [m for m in memberships if m.status == MembershipStatus.PENDING]
    expiring = [m for m in active if today <= m.end_date <= in_7]
    outstanding = sum((m.remaining for m in pending), Decimal("0"))

    c1, c2, c3 = st.columns(3)
    c1.metric("Active memberships", len(active))
    c2.metric("Expiring in next 7 days", len(expiring))
    c3.metric("Outstanding balance", f"{outstanding:.2f}")

    st.divider()
    st.subheader("Expiring soon (next 7 days)")
    if expiring:
        st.dataframe(
            utils.records_to_frame(expiring, ["id", "member_id", "plan_id", "end_date", "amount_paid"]),
            use_container_width=True,
            hide_index=True,
        )
    else:
        st.caption("No memberships expiring in the next 7 days.")


def plans_page(plans: PlanRepository):
    st.header("📋 Plans")

    st.dataframe(
        utils.records_to_frame(plans.list_plans()),
        use_container_width=True,
        hide_index=True,
    )

    st.subheader("➕ Add plan")
    col1, col2, col3 = st.columns(3)
    with col1:
        name = st.text_input("Name")
        duration = st.number_input("Duration (days)", min_value=1, value=30, step=1)
    with col2:
        base = st.text_input("Base price", value="1000")
        discounted = st.text_input("Discounted price (0 = none)", value="0")
    with col3:
        admission = st.text_input("Admission fee", value="0")
        description = st.text_input("Description", value="")

    if st.button("Save plan", type="primary"):
        try:
            plans.create_plan(
                Plan(
                    id=None,
                    name=name,
                    duration_days=int(duration),
                    base_price=base,
                    discounted_price=discounted,
                    admission_fee=admission,
                    active=True,
                    description=description.strip() or None,
                )
            )
            st.success("Plan added.")
            st.rerun()
        except GymError as exc:
            st.error(str(exc))

    existing = plans.list_plans()
    if not existing:
        return

    st.divider()
    st.subheader("✏️ Edit plan")
    plan = st.selectbox("Plan to edit", existing, format_func=plan_label, key="edit_plan")
    col1, col2, col3 = st.columns(3)
    with col1:
        name = st.text_input("Name", value=plan.name, key=f"edit_name_{plan.id}")
        duration = st.number_input(
            "Duration (days)", min_value=1, value=plan.duration_days, step=1, key=f"edit_duration_{plan.id}"
        )
    with col2:
        base = st.text_input("Base price", value=str(plan.base_price), key=f"edit_base_{plan.id}")
        discounted = st.text_input(
            "Discounted price (0 = none)", value=str(plan.discounted_price), key=f"edit_discounted_{plan.id}"
        )
    with col3:
        admission = st.text_input("Admission fee", value=str(plan.admission_fee), key=f"edit_admission_{plan.id}")
        description = st.text_input("Description", value=plan.description or "", key=f"edit_description_{plan.id}")
    active = st.checkbox("Offered to new members", value=plan.active, key=f"edit_active_{plan.id}")
    st.caption("Existing members can still renew a plan that is no longer offered.")

    if st.button("Update plan"):
        try:
            plans.update_plan(
                Plan(
                    id=plan.id,
                    name=name,
                    duration_days=int(duration),
                    base_price=base,
                    discounted_price=discounted,
                    admission_fee=admission,
                    active=active,
                    description=description.strip() or None,
                )
            )
            st.success("Plan updated.")
            st.rerun()
        except GymError as exc:
            st.error(str(exc))


def members_page(service: MembershipService):
    st.header("👥 Members")

    with st.sidebar:
        st.subheader("Search")
        search = st.text_input("Search (name/phone/code)")

    st.dataframe(
        utils.records_to_frame(service.members.list_members(search=search)),
        use_container_width=True,
        hide_index=True,
    )

    st.divider()
    st.subheader("➕ Register member")
    col1, col2, col3 = st.columns(3)
    with col1:
        full_name = st.text_input("Full name")
        phone = st.text_input("Phone")
        email = st.text_input("Email (optional, for receipts)")
    with col2:
        plan = pick_plan(service.plans.list_plans(active_only=True))
        start_date = st.date_input("Start date", value=date.today())
    with col3:
        initial = st.text_input("Initial payment", value="0")
        method = st.selectbox("Method", METHODS)
        notes = st.text_input("Notes", value="")

    if st.button("Register", type="primary", disabled=plan is None):
        try:
            member, result = service.register_member(
                full_name,
                phone,
                email.strip() or None,
                plan.id,
                start_date,
                initial_payment=initial or None,
                method=method,
                notes=notes.strip() or None,
                created_by=st.session_state.username,
            )
            st.success(
                f"Member {member.member_code} registered: {result.membership.status.value}, "
                f"due {result.membership.amount_due}, paid {result.membership.amount_paid}."
            )
        except GymError as exc:
            st.error(str(exc))

    members = service.members.list_members()
    if not members:
        return

    st.divider()
    st.subheader("✏️ Edit member")
    member = st.selectbox(
        "Member", members, format_func=lambda m: f"{m.full_name} ({m.phone}) - {m.member_code}", key="edit_member"
    )
    col1, col2 = st.columns(2)
    with col1:
        full_name = st.text_input("Full name", value=member.full_name, key=f"edit_full_name_{member.id}")
        phone = st.text_input("Phone", value=member.phone, key=f"edit_phone_{member.id}")
    with col2:
        email = st.text_input("Email", value=member.email or "", key=f"edit_email_{member.id}")
        status = st.selectbox(
            "Status", ["active", "inactive"], index=0 if member.status == "active" else 1, key=f"edit_status_{member.id}"
        )

    if st.button("Save member"):
        try:
            service.update_member(member.id, full_name, phone, email.strip() or None, status)
            st.success("Member updated.")
            st.rerun()
        except GymError as exc:
            st.error(str(exc))

    st.subheader("Membership history")
    history = service.memberships.history_for_member(member.id)
    if history:
        st.dataframe(
            utils.records_to_frame(
                history, ["id", "plan_id", "start_date", "end_date", "amount_due", "amount_paid", "status"]
            ),
            use_container_width=True,
            hide_index=True,
        )
    else:
        st.caption("No memberships yet.")


def memberships_page(service: MembershipService):
    st.header("🎟️ Memberships")

    expired_now = service.sweep_expirations()
    if expired_now:
        st.caption(f"{expired_now} membership(s) just expired.")

    with st.sidebar:
        status_filter = st.selectbox("Status", ["All"] + [s.value for s in MembershipStatus])
    status = None if status_filter == "All" else MembershipStatus(status_filter)
    rows = service.memberships.list_memberships(status=status)
    st.dataframe(utils.records_to_frame(rows), use_container_width=True, hide_index=True)

    if not rows:
        return

    st.divider()
    membership_id = st.selectbox("Membership ID", [m.id for m in rows])
    balance = service.get_membership_balance(membership_id)
    c1, c2, c3, c4 = st.columns(4)
    c1.metric("Status", balance.status.value)
    c2.metric("Due", f"{balance.amount_due:.2f}")
    c3.metric("Paid", f"{balance.amount_paid:.2f}")
    c4.metric("Remaining", f"{balance.remaining:.2f}")

    st.subheader("💳 Collect payment")
    p1, p2, p3 = st.columns([1, 1, 2])
    with p1:
        amount = st.text_input("Amount", value=str(balance.remaining or balance.amount_due))
    with p2:
        method = st.selectbox("Method", METHODS, key="collect_method")
    with p3:
        notes = st.text_input("Notes", value="", key="collect_notes")

    if st.button("Record payment", type="primary"):
        try:
            result = service.collect_payment(
                membership_id, amount, method, notes=notes.strip() or None, created_by=st.session_state.username
            )
            st.success(f"Payment {result.payment.invoice_number} recorded. Status: {result.membership.status.value}.")
            st.rerun()
        except GymError as exc:
            st.error(str(exc))

    st.subheader("Payment history")
    history = service.payments.list_for_membership(membership_id)
    if history:
        st.dataframe(utils.records_to_frame(history), use_container_width=True, hide_index=True)
    else:
        st.caption("No payments for this membership yet.")


def change_plan_page(service: MembershipService):
    st.header("🔁 Change plan")

    members = service.members.list_members()
    if not members:
        st.info("No members yet.")
        return

    member = st.selectbox("Member", members, format_func=lambda m: f"{m.full_name} ({m.phone}) - {m.member_code}")
    if member.membership_id:
        current = service.memberships.get(member.membership_id)
        st.write(
            f"Current plan: **{current.plan_id}** | Due: **{current.amount_due}** | "
            f"End: **{current.end_date}** | Status: **{current.status.value}**"
        )

    plan = pick_plan(service.plans.list_plans(active_only=True), "New plan", key="new_plan")
    start_date = st.date_input("Start date", value=date.today())
    initial = st.text_input("Payment now", value="0")
    method = st.selectbox("Payment method", METHODS)

    if st.button("Change plan", type="primary", disabled=plan is None):
        try:
            result = service.change_plan(
                member.id, plan.id, start_date, initial_payment=initial or None, method=method,
                created_by=st.session_state.username,
            )
            st.success(f"New membership {result.membership.id} opened ({result.membership.status.value}).")
        except GymError as exc:
            st.error(str(exc))


def payments_page(service: MembershipService):
    st.header("🧾 Payments")
    col1, col2 = st.columns([2, 1])
    with col1:
        search = st.text_input("Invoice number")
    with col2:
        kind = st.selectbox("Direction", ["All"] + [t.value for t in TransactionType])
    transaction_type = None if kind == "All" else TransactionType(kind)
    rows = service.payments.list_payments(search=search, transaction_type=transaction_type)
    if rows:
        st.dataframe(utils.records_to_frame(rows), use_container_width=True, hide_index=True)
    else:
        st.caption("No payments found.")

    st.divider()
    st.subheader("➕ Record income or expense")
    st.caption("Membership fees are taken on the Memberships page.")
    e1, e2, e3 = st.columns(3)
    with e1:
        direction = st.radio("Type", ["credit", "debit"], format_func=lambda t: "Income" if t == "credit" else "Expense")
        payment_type = st.selectbox("Category", ENTRY_TYPES)
    with e2:
        amount = st.text_input("Amount", value="", key="entry_amount")
        method = st.selectbox("Method", METHODS, key="entry_method")
    with e3:
        label = st.text_input("Description", value="", key="entry_label")
        notes = st.text_input("Notes", value="", key="entry_notes")

    if st.button("Record entry", type="primary"):
        try:
            entry = service.record_entry(
                amount,
                method,
                direction,
                payment_type,
                label=label,
                notes=notes,
                created_by=st.session_state.username,
            )
            st.success(f"Entry {entry.invoice_number} recorded.")
            st.rerun()
        except GymError as exc:
            st.error(str(exc))


def settings_page(admin_auth: auth.AdminAuth):
    st.header("⚙️ Settings")
    st.subheader("Change password")
    password_form(admin_auth)


def main_app(service: MembershipService, admin_auth: auth.AdminAuth):
    st.sidebar.title("🏋️ Gym System")
    st.sidebar.caption(f"Logged in as: {st.session_state.username}")

    pages = ["Dashboard", "Plans", "Members", "Memberships", "Change plan", "Payments", "Settings"]
    if "page" not in st.session_state:
        st.session_state.page = "Dashboard"
    st.session_state.page = st.sidebar.radio("Navigate", pages, index=pages.index(st.session_state.page))

    if st.sidebar.button("Logout"):
        logout()
        st.rerun()

    page = st.session_state.page
    if page == "Dashboard":
        dashboard_page(service)
    elif page == "Plans":
        plans_page(service.plans)
    elif page == "Members":
        members_page(service)
    elif page == "Memberships":
        memberships_page(service)
    elif page == "Change plan":
        change_plan_page(service)
    elif page == "Payments":
        payments_page(service)
    elif page == "Settings":
        settings_page(admin_auth)


# --------- App entry ---------

def run():
    _, database, service = bootstrap()
    admin_auth = auth.AdminAuth(database)
    require_login()

    if not st.session_state.logged_in:
        login_screen(admin_auth)
        return

    # Force password change on first login after DB creation
    if database.is_force_password_change():
        force_change_password_screen(admin_auth)
        return

    main_app(service, admin_auth)


if __name__ == "__main__":
    run()
