import sys
import os
sys.path.append(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import asyncio
from datetime import date, datetime, timedelta
from typing import List, Optional

import streamlit as st
import pandas as pd
import numpy as np
import plotly.graph_objects as go
import plotly.express as px

from portal.async_reports import monthly_overview
from portal.domain import CASH_HOLDER_ROLES, ExpenseStatus, Role, TransferStatus
from portal.exceptions import SnapshotError
from portal.ledger import (
    build_ledger, building_cash, cash_on_hand_total, dues_summary, flat_ledger, ledger_frame,
    payables, receivables, staff_cash_ledger,
)
from portal.recovery import RecoveryManager, RecoveryOutcome
from portal.runtime import Portal, start_portal
from portal.storage import Store

st.set_page_config(page_title="Building Portal", layout="wide")


class SessionStateStore(Store):
    """Per-browser-session flags for crash recovery."""

    PREFIX = "session_store:"

    def read(self, key: str) -> Optional[str]:
        return st.session_state.get(self.PREFIX + key)

    def write(self, key: str, text: str) -> None:
        st.session_state[self.PREFIX + key] = text

    def remove(self, key: str) -> None:
        st.session_state.pop(self.PREFIX + key, None)

    def keys(self) -> List[str]:
        return sorted(k[len(self.PREFIX):] for k in st.session_state.keys() if k.startswith(self.PREFIX))


@st.cache_resource
def get_portal() -> Portal:
    return start_portal()


portal = get_portal()
registry = portal.registry
services = portal.services
recovery = RecoveryManager(registry, session=SessionStateStore(), restart=lambda: portal.call(registry.reload))


def money(x) -> str:
    return f"Rs {x:,.0f}"


def show_result(result, success: str) -> bool:
    if result.is_right():
        st.success(success)
        return True
    st.error(f"❌ {result.get_error()['message']}")
    return False


def last_months(n: int = 12) -> List[str]:
    end = pd.Timestamp.today().normalize()
    return [m.strftime("%Y-%m") for m in pd.date_range(end=end, periods=n, freq="MS")]


users = registry.users.get()
staff = [u for u in users if u.role != Role.RESIDENT]

st.sidebar.markdown("### 👤 Acting as")
acting_name = st.sidebar.selectbox("User", [f"{u.owner_name} ({u.role.value})" for u in staff])
acting = staff[[f"{u.owner_name} ({u.role.value})" for u in staff].index(acting_name)]
st.sidebar.caption(f"Remote mirror: **{registry.connection_status}**")

menu = st.sidebar.radio(
    "Menu",
    ["🏠 Overview", "📒 Building Ledger", "🏢 Flats & Dues", "🧾 Payables", "📥 Receivables",
     "💵 Cash", "🔔 Notifications", "🛟 Backup"]
)


def page_overview():
    payments = registry.payments.get()
    expenses = registry.expenses.get()
    flats = registry.flats.get()

    k1, k2, k3, k4 = st.columns(4)
    with k1:
        st.metric("Building Cash", money(building_cash(payments, expenses)))
    with k2:
        st.metric("Cash on Hand", money(cash_on_hand_total(registry.users.get())))
    with k3:
        st.metric("Outstanding Dues", money(sum(s.outstanding for s in dues_summary(flats))))
    with k4:
        st.metric("Properties", len(flats))

    months = last_months()
    overview = asyncio.run(monthly_overview(list(payments), list(expenses), months))
    collected = np.array([overview[m]["collected"] for m in months])
    spent = np.array([overview[m]["spent"] for m in months])
    st.caption(f"12-month net: {money(int(np.sum(collected - spent)))}")

    fig_ts = go.Figure()
    fig_ts.add_trace(go.Scatter(x=months, y=collected, mode="lines+markers", name="Collected"))
    fig_ts.add_trace(go.Scatter(x=months, y=spent, mode="lines+markers", name="Spent"))
    fig_ts.update_layout(template="plotly_dark", margin=dict(t=30, b=10, l=10, r=10))
    st.plotly_chart(fig_ts, use_container_width=True)

    st.info(registry.president_message.get())


def page_building_ledger():
    st.title("📒 Building Ledger")
    col1, col2 = st.columns(2)
    with col1:
        start = st.date_input("From", value=date.today() - timedelta(days=30))
    with col2:
        end = st.date_input("To", value=date.today())

    ledger = build_ledger(
        registry.payments.get(), registry.expenses.get(),
        start=start.isoformat(), end=end.isoformat(), flats=registry.flats.get(),
    )
    m1, m2 = st.columns(2)
    m1.metric("Opening Balance", money(ledger.opening_balance))
    m2.metric("Closing Balance", money(ledger.closing_balance))

    df = ledger_frame(ledger)
    if df.empty:
        st.info("No transactions in this period.")
        return
    st.dataframe(df, use_container_width=True)
    fig = px.line(df, x="date", y="balance", title="Running balance", template="plotly_dark")
    st.plotly_chart(fig, use_container_width=True)
    st.download_button("⬇ Download CSV", df.to_csv(index=False), file_name="building_ledger.csv")


def page_flats():
    st.title("🏢 Flats & Dues")
    flats = registry.flats.get()
    summary = pd.DataFrame([s.__dict__ for s in dues_summary(flats)])
    summary["pending_months"] = summary["pending_months"].map(", ".join)
    st.dataframe(summary, use_container_width=True)

    flat_id = st.selectbox("Flat", [f.id for f in flats])
    flat = next(f for f in flats if f.id == flat_id)

    st.subheader(f"Statement: {flat.label}")
    df = ledger_frame(flat_ledger(flat, registry.payments.get()))
    if df.empty:
        st.info("No dues or payments yet.")
    else:
        st.dataframe(df, use_container_width=True)

    st.subheader("➕ Record Payment")
    with st.form("payment_form", clear_on_submit=True):
        amount = st.number_input("Amount (Rs)", min_value=0, step=500)
        paid_on = st.date_input("Date")
        purpose = st.selectbox("Purpose", ["Maintenance", "Other"])
        remarks = st.text_input("Remarks")
        submitted = st.form_submit_button("Record")
    if submitted:
        result = portal.call(
            services.payments.process_payment,
            flat_id, int(amount), datetime.combine(paid_on, datetime.now().time()).isoformat(),
            purpose, acting.id, remarks,
        )
        if show_result(result, "✅ Payment recorded"):
            payment = result.get_or_else(None)
            st.table(pd.DataFrame([{"Description": b.description, "Amount": money(b.amount)} for b in payment.breakdown]))


def page_payables():
    st.title("🧾 Payables")
    items = payables(registry.expenses.get(), registry.loans.get())
    if items:
        st.dataframe(pd.DataFrame([p.__dict__ for p in items]), use_container_width=True)
    else:
        st.info("Nothing to pay.")

    st.subheader("Pay")
    expense_ids = [p.id for p in items if p.kind == "expense"]
    loan_ids = [p.id for p in items if p.kind == "loan"]
    if expense_ids or loan_ids:
        choice = st.selectbox("Payable", expense_ids + loan_ids)
        if st.button("💸 Pay from cash", key="btn_pay"):
            if choice in expense_ids:
                result = portal.call(services.expenses.pay_expense, choice, acting.id)
            else:
                result = portal.call(services.expenses.pay_loan, choice, acting.id)
            show_result(result, f"✅ {choice} paid")

    st.subheader("Awaiting approval")
    pending = [e for e in registry.expenses.get() if e.status == ExpenseStatus.PENDING_APPROVAL]
    for e in pending:
        c1, c2, c3 = st.columns([3, 1, 2])
        c1.write(f"**{e.purpose}** {money(e.amount)} (approved by {', '.join(e.approved_by) or 'nobody'})")
        if c2.button("Approve", key=f"approve_{e.id}"):
            show_result(portal.call(services.expenses.approve_expense, e.id, acting.id), "Approved")
        reason = c3.text_input("Reason", key=f"reason_{e.id}")
        if c3.button("Reject", key=f"reject_{e.id}"):
            show_result(portal.call(services.expenses.reject_expense, e.id, acting.id, reason), "Rejected")
    if not pending:
        st.caption("No requests waiting.")

    st.subheader("➕ Request Payable")
    with st.form("payable_form", clear_on_submit=True):
        kind = st.selectbox("Type", ["new", "recurring", "loan"])
        purpose = st.text_input("Purpose / person")
        amount = st.number_input("Amount (Rs)", min_value=0, step=500)
        remarks = st.text_input("Description")
        submitted = st.form_submit_button("Send for approval")
    if submitted:
        result = portal.call(
            services.expenses.add_payable, acting.id, int(amount),
            purpose=purpose, kind=kind, remarks=remarks, person_name=purpose,
        )
        show_result(result, "✅ Request sent for approval")


def page_receivables():
    st.title("📥 Receivables")
    items = receivables(registry.flats.get(), registry.loans.get())
    if items:
        df = pd.DataFrame([r.__dict__ for r in items])
        st.metric("Total receivable", money(df["amount"].sum()))
        st.dataframe(df, use_container_width=True)
    else:
        st.info("Nothing outstanding.")

    st.subheader("➕ Add Receivable")
    with st.form("receivable_form", clear_on_submit=True):
        purpose = st.selectbox("Purpose", ["Maintenance", "Repair Fund", "Other"])
        description = st.text_input("Description (for Other)")
        amount = st.number_input("Amount (Rs)", min_value=0, step=500)
        apply_to = st.selectbox("Apply to", ["all", "flats_only", "specific"])
        flat_id = st.selectbox("Flat (for specific)", [f.id for f in registry.flats.get()])
        submitted = st.form_submit_button("Add")
    if submitted:
        result = portal.call(
            services.dues.add_receivable, purpose, int(amount),
            apply_to=apply_to, flat_id=flat_id, description=description,
        )
        if show_result(result, "✅ Receivable added"):
            st.caption(f"Added to {len(result.get_or_else(()))} properties")


def page_cash():
    st.title("💵 Cash")
    holders = [u for u in registry.users.get() if u.role in CASH_HOLDER_ROLES]
    cols = st.columns(len(holders))
    for col, u in zip(cols, holders):
        with col:
            st.metric(u.owner_name, money(u.cash_on_hand or 0))

    if acting.role == Role.GUARD:
        st.subheader("My cash ledger")
        df = ledger_frame(staff_cash_ledger(acting.id, registry.payments.get(), registry.cash_transfers.get()))
        st.dataframe(df, use_container_width=True)
        if st.button("Transfer all cash to accountant", key="btn_transfer"):
            show_result(portal.call(services.cash.initiate_transfer, acting.id), "✅ Transfer sent")

    st.subheader("Pending transfers")
    pending = [t for t in registry.cash_transfers.get() if t.status == TransferStatus.PENDING]
    for t in pending:
        c1, c2 = st.columns([3, 1])
        c1.write(f"{t.id}: {money(t.amount)} from {t.from_user_id} on {t.date[:10]}")
        if c2.button("Confirm receipt", key=f"confirm_{t.id}"):
            show_result(portal.call(services.cash.confirm_transfer, t.id, acting.id), "✅ Receipt confirmed")
    if not pending:
        st.caption("No pending transfers.")


def page_notifications():
    st.title("🔔 Notifications")
    if st.button("🔄 Generate reminders", key="btn_reminders"):
        result = portal.call(services.notifications.generate_reminders)
        show_result(result, f"{len(result.get_or_else(()))} reminder(s) created")

    mine = [n for n in registry.notifications.get() if n.recipient_id == acting.id]
    if not mine:
        st.info("No notifications.")
    for n in reversed(mine):
        c1, c2 = st.columns([4, 1])
        (c1.write if n.is_read else c1.warning)(f"[{n.date[:16]}] {n.message}")
        if not n.is_read and c2.button("Mark read", key=f"read_{n.id}"):
            portal.call(services.notifications.mark_read, n.id)


def page_backup():
    st.title("🛟 Backup & Automation")
    st.download_button(
        "⬇ Download backup",
        portal.call(registry.export_snapshot),
        file_name=f"portal-backup-{date.today().isoformat()}.json",
        mime="application/json",
    )
    uploaded = st.file_uploader("Restore from backup", type=["json"])
    if uploaded is not None and st.button("Restore", key="btn_restore"):
        try:
            restored = portal.call(registry.import_snapshot, uploaded.getvalue().decode("utf-8"))
        except SnapshotError as e:
            st.error(f"❌ Invalid backup file: {e}")
        else:
            st.success(f"✅ Restored {len(restored)} sections")

    st.divider()
    if st.button("📌 Create restore point", key="btn_restore_point"):
        portal.call(recovery.create_restore_point)
        st.success("Safe restore point created")

    if st.button("🗓 Run monthly automation", key="btn_monthly"):
        result = portal.call(services.dues.run_monthly_automation)
        if show_result(result, "Monthly automation complete"):
            out = result.get_or_else({})
            st.caption(f"{len(out['flats'])} flats charged, {len(out['expenses'])} recurring expenses added")

    st.caption(f"Next transaction id: {services.ids.peek()}")


PAGES = {
    "🏠 Overview": page_overview,
    "📒 Building Ledger": page_building_ledger,
    "🏢 Flats & Dues": page_flats,
    "🧾 Payables": page_payables,
    "📥 Receivables": page_receivables,
    "💵 Cash": page_cash,
    "🔔 Notifications": page_notifications,
    "🛟 Backup": page_backup,
}

try:
    PAGES[menu]()
except Exception as e:
    outcome = recovery.recover(e)
    st.error("Something went wrong.")
    if outcome is RecoveryOutcome.RESTORED:
        st.info("The application state was restored from the last safe restore point.")
    elif outcome is RecoveryOutcome.WIPED:
        st.info("The application state was reset to its initial values.")
    else:
        st.warning("Recovery was attempted moments ago and did not help.")
    if st.button("Restart Application", key="btn_restart"):
        recovery.reset_session()
        st.rerun()
