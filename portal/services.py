"""
Workflow operations: the only code that mutates several slices for one user action.

Every operation validates its preconditions against the current slice values
first and returns ``Left({"error": ..., "message": ...})`` without touching any
slice when one fails. Only then are the slices written, each through its own
``set``. A ``Right`` carries the created or updated record.
"""
import logging
import re
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Callable, Dict, List, Optional, Tuple

from portal import codecs
from portal.domain import (
    CASH_HOLDER_ROLES, BreakdownLine, CashTransfer, DeletedItem, Dues, DuesStatus, Expense,
    ExpenseDetails, ExpenseStatus, Flat, Loan, LoanStatus, LoanType, Notification,
    NotificationAction, NotificationPayload, Payment, PaymentStatus, Role, TransferStatus, User,
)
from portal.events import (
    CASH_TRANSFER_CONFIRMED, CASH_TRANSFER_INITIATED, DUES_GENERATED, EXPENSE_APPROVED,
    EXPENSE_PAID, EXPENSE_REJECTED, EXPENSE_REQUESTED, PAYMENT_RECORDED, RENT_CONFIRMED,
)
from portal.exceptions import StoreError
from portal.functional import Either, Right, find_by_id, first, reject
from portal.ledger import cash_on_hand_total
from portal.registry import StateRegistry
from portal.slices import Slice
from portal.transforms import (
    adjust_cash, append, dues_status, map_by_id, prepend, remove_by_id, unpaid_dues, update_by_id,
)

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]

DELETED_ITEMS_KEPT = 10
MAINTENANCE = "Maintenance"
RENT_CONFIRMED_STATUS = "Confirmed"
TENANT_REMINDER_DAY = 4


def format_currency(amount: int) -> str:
    return f"Rs {amount:,}"


def month_label(month: str) -> str:
    """'2024-03' -> 'March 2024'"""
    return datetime.strptime(month, "%Y-%m").strftime("%B %Y")


class TransactionIds:
    """Sequential transaction ids backed by the counter slice.

    ``get_next`` increments the counter before returning, so two calls in a
    row can never hand out the same id.
    """

    def __init__(self, counter: Slice, prefix: str = "EDEN", width: int = 5):
        self._counter = counter
        self.prefix = prefix
        self.width = width

    def _format(self, n: int) -> str:
        return f"{self.prefix}{n:0{self.width}d}"

    def peek(self) -> str:
        return self._format(self._counter.get())

    def get_next(self) -> str:
        n = self._counter.get()
        self._counter.set(n + 1)
        return self._format(n)


# ---- pure helpers ----

def allocate_payment(flat: Flat, amount: int) -> Tuple[Flat, Tuple[BreakdownLine, ...]]:
    """Apply ``amount`` to the flat's unpaid dues, oldest month first.

    Whatever is left once every due is covered goes to the advance balance.
    Returns the updated flat and one breakdown line per due touched, plus an
    "Advance Payment" line for any residual.
    """
    settled: List[Tuple[Dues, Dues]] = []
    breakdown: List[BreakdownLine] = []
    remaining = amount

    for due in unpaid_dues(flat):
        if remaining <= 0:
            break
        portion = min(remaining, due.owed)
        if portion <= 0:
            continue
        paid = due.paid_amount + portion
        settled.append((due, replace(due, paid_amount=paid, status=dues_status(due.amount, paid))))
        breakdown.append(BreakdownLine(f"{due.description} for {month_label(due.month)}", portion))
        remaining -= portion

    if remaining > 0:
        breakdown.append(BreakdownLine("Advance Payment", remaining))

    def settle(d: Dues) -> Dues:
        return next((new for old, new in settled if old is d), d)

    updated = replace(flat, dues=tuple(map(settle, flat.dues)),
                      advance_balance=flat.advance_balance + max(remaining, 0))
    return updated, tuple(breakdown)


def plan_cash_deduction(users: Tuple[User, ...], payer_id: str, amount: int) -> Optional[Dict[str, int]]:
    """Work out who pays ``amount``: the payer first, then guards by largest balance.

    Returns per-user negative deltas for ``adjust_cash``, or None when the
    cash holders together cannot cover the amount.
    """
    if cash_on_hand_total(users) < amount:
        return None

    payer = first(users, lambda u: u.id == payer_id and u.role in CASH_HOLDER_ROLES)
    guards = sorted(
        (u for u in users if u.role == Role.GUARD and u.id != payer_id),
        key=lambda u: (-(u.cash_on_hand or 0), u.id),
    )
    others = [u for u in users if u.role == Role.ACCOUNTANT and u.id != payer_id]
    order = ([payer] if payer is not None else []) + guards + others

    deltas: Dict[str, int] = {}
    remaining = amount
    for holder in order:
        if remaining <= 0:
            break
        take = min(remaining, holder.cash_on_hand or 0)
        if take > 0:
            deltas[holder.id] = -take
            remaining -= take
    return deltas if remaining <= 0 else None


def charge_month(flat: Flat, month: str) -> Flat:
    """Append the maintenance due for ``month``, paid from advance balance first."""
    charge = flat.monthly_maintenance // 2 if flat.is_vacant else flat.monthly_maintenance
    advance = flat.advance_balance
    paid = min(advance, charge) if advance > 0 else 0
    due = Dues(month=month, amount=charge, status=dues_status(charge, paid), paid_amount=paid, description=MAINTENANCE)
    return replace(flat, dues=flat.dues + (due,), advance_balance=advance - paid)


def has_due(flat: Flat, month: str, description: str = MAINTENANCE) -> bool:
    return any(d.month == month and d.description == description for d in flat.dues)


# ---- services ----

class _Workflow:
    def __init__(self, registry: StateRegistry, ids: TransactionIds, clock: Clock = datetime.now):
        self.registry = registry
        self.ids = ids
        self._clock = clock

    def _now(self) -> str:
        return self._clock().isoformat()

    def _user(self, user_id: Optional[str]) -> Optional[User]:
        return find_by_id(self.registry.users.get(), user_id).get_or_else(None)

    def _cash_holder(self, user_id: Optional[str], role: str) -> Either:
        """Right(user) when ``user_id`` may receive or pay out building cash."""
        user = self._user(user_id)
        if user is None:
            return reject(f"{role}_not_found", f"User {user_id} does not exist", **{f"{role}_id": user_id})
        if user.role not in CASH_HOLDER_ROLES:
            return reject("not_a_cash_holder", f"{user.owner_name} does not hold building cash",
                          **{f"{role}_id": user_id})
        return Right(user)

    def _checkers(self) -> Tuple[User, ...]:
        return tuple(u for u in self.registry.users.get() if u.role == Role.ACCOUNTS_CHECKER)

    def _accountant(self) -> Optional[User]:
        return first(self.registry.users.get(), lambda u: u.role == Role.ACCOUNTANT)

    def _notify(self, *notifications: Notification) -> None:
        if notifications:
            self.registry.notifications.set(lambda ns: ns + tuple(notifications))

    def _publish(self, name: str, payload: dict) -> None:
        self.registry.bus.publish(name, payload)

    def _read_marker(self, key: str, what: str) -> Optional[str]:
        try:
            return self.registry.store.read(key)
        except StoreError as e:
            logger.warning("Could not read %s marker: %s", what, e)
            return None

    def _write_marker(self, key: str, value: str, what: str) -> None:
        try:
            self.registry.store.write(key, value)
        except StoreError as e:
            logger.error("Could not write %s marker: %s", what, e)

    def _record_deletion(self, record, type_: str) -> None:
        item = DeletedItem(item=codecs.to_json(record), type=type_, deleted_at=self._now())
        self.registry.deleted_items.set(lambda items: ((item,) + items)[:DELETED_ITEMS_KEPT])


class PaymentService(_Workflow):

    def process_payment(
        self,
        flat_id: str,
        amount: int,
        date: str,
        purpose: str,
        receiver_id: str,
        remarks: str = "",
    ) -> Either:
        """Record a payment against a flat's dues and credit the receiver's cash."""
        if amount <= 0:
            return reject("invalid_amount", "Payment amount must be greater than zero", amount=amount)
        flat = find_by_id(self.registry.flats.get(), flat_id).get_or_else(None)
        if flat is None:
            return reject("flat_not_found", f"Flat {flat_id} does not exist", flat_id=flat_id)
        receiver = self._cash_holder(receiver_id, "receiver")
        if receiver.is_left():
            return receiver

        updated_flat, breakdown = allocate_payment(flat, amount)
        payment = Payment(
            id=self.ids.get_next(),
            flat_id=flat_id,
            amount=amount,
            date=date,
            purpose=purpose,
            status=PaymentStatus.CONFIRMED,
            remarks=remarks,
            received_by=receiver_id,
            breakdown=breakdown,
        )
        self.registry.payments.set(lambda ps: prepend(ps, payment))
        self.registry.users.set(lambda us: adjust_cash(us, {receiver_id: amount}))
        self.registry.flats.set(lambda fs: map_by_id(fs, flat_id, lambda _: updated_flat))

        logger.info("Payment %s of %d recorded for flat %s", payment.id, amount, flat_id)
        self._publish(PAYMENT_RECORDED, {"payment_id": payment.id, "flat_id": flat_id, "amount": amount})
        return Right(payment)

    def receive_loan(
        self,
        person_id: str,
        amount: int,
        date: str,
        due_date: str,
        receiver_id: str,
        description: str = "",
    ) -> Either:
        """Borrow cash: records a Received loan plus the matching cash inflow."""
        if amount <= 0:
            return reject("invalid_amount", "Loan amount must be greater than zero", amount=amount)
        receiver = self._cash_holder(receiver_id, "receiver")
        if receiver.is_left():
            return receiver
        person = self._user(person_id)
        flat = find_by_id(self.registry.flats.get(), person_id).get_or_else(None)
        if person is None and flat is None:
            return reject("person_not_found", f"No user or flat with id {person_id}", person_id=person_id)
        person_name = person.owner_name if person is not None else flat.label

        loan = Loan(
            id=self.ids.get_next(),
            type=LoanType.RECEIVED,
            person_id=person_id,
            person_name=person_name,
            amount=amount,
            due_date=due_date,
            date=date,
            status=LoanStatus.PENDING,
            description=description or f"Loan received from {person_name}",
        )
        payment = Payment(
            id=self.ids.get_next(),
            flat_id=person_id,
            amount=amount,
            date=date,
            purpose="Loan Received",
            remarks=description,
            received_by=receiver_id,
            breakdown=(BreakdownLine(f"Loan received from {person_name}", amount),),
        )
        self.registry.loans.set(lambda ls: prepend(ls, loan))
        self.registry.payments.set(lambda ps: append(ps, payment))
        self.registry.users.set(lambda us: adjust_cash(us, {receiver_id: amount}))
        self._publish(PAYMENT_RECORDED, {"payment_id": payment.id, "flat_id": person_id, "amount": amount})
        return Right((loan, payment))

    def update_payment(self, payment_id: str, **changes) -> Either:
        if find_by_id(self.registry.payments.get(), payment_id).is_none():
            return reject("payment_not_found", f"Payment {payment_id} does not exist", payment_id=payment_id)
        self.registry.payments.set(lambda ps: update_by_id(ps, payment_id, **changes))
        return Right(find_by_id(self.registry.payments.get(), payment_id).get_or_else(None))

    def delete_payment(self, payment_id: str) -> Either:
        payment = find_by_id(self.registry.payments.get(), payment_id).get_or_else(None)
        if payment is None:
            return reject("payment_not_found", f"Payment {payment_id} does not exist", payment_id=payment_id)
        self._record_deletion(payment, "payment")
        self.registry.payments.set(lambda ps: remove_by_id(ps, payment_id))
        return Right(payment)

    def confirm_rent_payment(self, transaction_id: str, owner_id: str) -> Either:
        """Owner confirms a tenant's rent entry; the rent notification is closed."""
        tx = find_by_id(self.registry.tenant_transactions.get(), transaction_id).get_or_else(None)
        if tx is None:
            return reject("transaction_not_found", f"Tenant transaction {transaction_id} does not exist",
                          transaction_id=transaction_id)
        if self._user(owner_id) is None:
            return reject("user_not_found", f"User {owner_id} does not exist", user_id=owner_id)
        if tx.status == RENT_CONFIRMED_STATUS:
            return reject("already_confirmed", f"Tenant transaction {transaction_id} is already confirmed",
                          transaction_id=transaction_id)

        updated = replace(tx, status=RENT_CONFIRMED_STATUS, owner_confirmation_by=owner_id, confirmed_on=self._now())
        self.registry.tenant_transactions.set(lambda ts: map_by_id(ts, transaction_id, lambda _: updated))
        self.registry.notifications.set(lambda ns: tuple(
            replace(n, is_read=True, message="You have confirmed rent receipt.")
            if n.payload is not None and n.payload.tenant_transaction_id == transaction_id else n
            for n in ns
        ))
        self._publish(RENT_CONFIRMED, {"transaction_id": transaction_id, "owner_id": owner_id})
        return Right(updated)


class ExpenseService(_Workflow):

    def add_payable(
        self,
        requester_id: str,
        amount: int,
        purpose: str = "",
        kind: str = "new",
        due_date: Optional[str] = None,
        remarks: str = "",
        invoice_img: Optional[str] = None,
        details: Optional[ExpenseDetails] = None,
        person_id: Optional[str] = None,
        person_name: Optional[str] = None,
    ) -> Either:
        """Request a payable: a new bill, a recurring bill, or a loan paid out.

        The expense waits in Pending Approval for every accounts checker; each
        checker gets an approval notification. With no checkers configured
        there is nobody to wait for and the expense is confirmed immediately.
        """
        if amount <= 0:
            return reject("invalid_amount", "Payable amount must be greater than zero", amount=amount)
        if kind not in ("new", "recurring", "loan"):
            return reject("invalid_kind", f"Unknown payable kind {kind!r}", kind=kind)
        requester = self._user(requester_id)
        if requester is None:
            return reject("requester_not_found", f"User {requester_id} does not exist", requester_id=requester_id)

        now = self._now()
        if kind == "loan":
            person = self._user(person_id)
            name = person.owner_name if person is not None else (person_name or "Unknown")
            loan = Loan(
                id=self.ids.get_next(),
                type=LoanType.PAID_OUT,
                person_id=person_id or "other",
                person_name=name,
                amount=amount,
                due_date=due_date or now,
                date=now,
                status=LoanStatus.PENDING,
                description=remarks,
            )
            self.registry.loans.set(lambda ls: prepend(ls, loan))
            purpose, due_date = f"Loan to {name}", None
        elif kind == "recurring":
            due_date = None
        else:
            details = None

        checkers = self._checkers()
        expense = Expense(
            id=self.ids.get_next(),
            purpose=purpose,
            amount=amount,
            date=now,
            status=ExpenseStatus.PENDING_APPROVAL if checkers else ExpenseStatus.CONFIRMED,
            requires_approval=True,
            requested_by=requester_id,
            due_date=due_date,
            remarks=remarks,
            invoice_img=invoice_img,
            details=details,
        )
        self.registry.expenses.set(lambda es: prepend(es, expense))
        self._notify(*(
            Notification(
                id=f"notif-approval-{expense.id}-{c.id}",
                recipient_id=c.id,
                message=(
                    f"New expense approval needed: {expense.purpose} for "
                    f"{format_currency(amount)} requested by {requester.owner_name}."
                ),
                date=now,
                action_type=NotificationAction.EXPENSE_APPROVAL,
                payload=NotificationPayload(expense_id=expense.id),
            )
            for c in checkers
        ))
        self._publish(EXPENSE_REQUESTED, {"expense_id": expense.id, "amount": amount})
        return Right(expense)

    def approve_expense(self, expense_id: str, approver_id: str) -> Either:
        """Record one checker's approval; confirm once every checker has approved."""
        expense = find_by_id(self.registry.expenses.get(), expense_id).get_or_else(None)
        if expense is None:
            return reject("expense_not_found", f"Expense {expense_id} does not exist", expense_id=expense_id)
        checkers = self._checkers()
        if approver_id not in {c.id for c in checkers}:
            return reject("not_a_checker", f"User {approver_id} is not an accounts checker", approver_id=approver_id)
        if expense.status == ExpenseStatus.OBJECTED:
            return reject("expense_objected", f"Expense {expense_id} was rejected and cannot be approved",
                          expense_id=expense_id)
        if approver_id in expense.approved_by:
            return Right(expense)

        approved_by = expense.approved_by + (approver_id,)
        all_approved = all(c.id in approved_by for c in checkers)
        confirm = all_approved and expense.status == ExpenseStatus.PENDING_APPROVAL
        status = ExpenseStatus.CONFIRMED if confirm else expense.status
        updated = replace(expense, approved_by=approved_by, status=status)

        self.registry.expenses.set(lambda es: map_by_id(es, expense_id, lambda _: updated))
        approval_notice = f"notif-approval-{expense_id}-{approver_id}"
        self.registry.notifications.set(lambda ns: update_by_id(ns, approval_notice, is_read=True))
        if confirm:
            logger.info("Expense %s confirmed by all checkers", expense_id)
            self._publish(EXPENSE_APPROVED, {"expense_id": expense_id})
        return Right(updated)

    def reject_expense(self, expense_id: str, rejector_id: str, reason: str) -> Either:
        """Object to an expense. Objected is terminal."""
        expense = find_by_id(self.registry.expenses.get(), expense_id).get_or_else(None)
        if expense is None:
            return reject("expense_not_found", f"Expense {expense_id} does not exist", expense_id=expense_id)
        rejector = self._user(rejector_id)
        if rejector is None:
            return reject("user_not_found", f"User {rejector_id} does not exist", user_id=rejector_id)
        if expense.status == ExpenseStatus.OBJECTED:
            return reject("expense_objected", f"Expense {expense_id} is already rejected", expense_id=expense_id)
        if expense.paid:
            return reject("already_paid", f"Expense {expense_id} is already paid", expense_id=expense_id)

        updated = replace(expense, status=ExpenseStatus.OBJECTED,
                          remarks=f"Rejected by {rejector.owner_name}: {reason}")
        self.registry.expenses.set(lambda es: map_by_id(es, expense_id, lambda _: updated))

        now = self._now()
        requester = self._user(expense.requested_by)
        accountant = self._accountant()
        notices = []
        if requester is not None:
            notices.append(Notification(
                id=f"notif-reject-{expense_id}-{requester.id}",
                recipient_id=requester.id,
                message=(f'Your expense request "{expense.purpose}" was rejected by '
                         f"{rejector.owner_name}. Reason: {reason}"),
                date=now,
                action_type=NotificationAction.EXPENSE_REJECTED,
                payload=NotificationPayload(expense_id=expense_id),
            ))
        if accountant is not None and (requester is None or accountant.id != requester.id):
            notices.append(Notification(
                id=f"notif-reject-{expense_id}-{accountant.id}",
                recipient_id=accountant.id,
                message=f'Expense "{expense.purpose}" was rejected by {rejector.owner_name}. Reason: {reason}',
                date=now,
                action_type=NotificationAction.EXPENSE_REJECTED,
                payload=NotificationPayload(expense_id=expense_id),
            ))
        self._notify(*notices)
        self._publish(EXPENSE_REJECTED, {"expense_id": expense_id, "reason": reason})
        return Right(updated)

    def _guard_cash(self, payer_id: str, amount: int) -> Either:
        payer = self._cash_holder(payer_id, "payer")
        if payer.is_left():
            return payer
        users = self.registry.users.get()
        plan = plan_cash_deduction(users, payer_id, amount)
        if plan is None:
            cash = cash_on_hand_total(users)
            return reject(
                "insufficient_funds",
                f"Insufficient building cash ({format_currency(cash)}) for this payment of {format_currency(amount)}",
                available=cash,
                required=amount,
            )
        return Right(plan)

    def pay_expense(self, expense_id: str, payer_id: str, paid_on: Optional[str] = None) -> Either:
        """Pay a confirmed expense from staff cash; either fully applies or changes nothing."""
        expense = find_by_id(self.registry.expenses.get(), expense_id).get_or_else(None)
        if expense is None:
            return reject("expense_not_found", f"Expense {expense_id} does not exist", expense_id=expense_id)
        if expense.paid:
            return reject("already_paid", f"Expense {expense_id} is already paid", expense_id=expense_id)
        if expense.status != ExpenseStatus.CONFIRMED:
            return reject("not_payable", f"Expense {expense_id} is {expense.status.value}",
                          expense_id=expense_id, status=expense.status.value)

        def apply(plan: Dict[str, int]) -> Either:
            updated = replace(expense, paid=True, status=ExpenseStatus.PAID, paid_by=payer_id,
                              date=paid_on or self._now())
            self.registry.users.set(lambda us: adjust_cash(us, plan))
            self.registry.expenses.set(lambda es: map_by_id(es, expense_id, lambda _: updated))
            self.registry.notifications.set(lambda ns: tuple(
                replace(n, is_read=True)
                if n.payload is not None and n.payload.expense_id == expense_id
                and n.action_type == NotificationAction.PAYABLE_REMINDER else n
                for n in ns
            ))
            logger.info("Expense %s paid (%d)", expense_id, expense.amount)
            self._publish(EXPENSE_PAID, {"expense_id": expense_id, "amount": expense.amount, "deductions": plan})
            return Right(updated)

        return self._guard_cash(payer_id, expense.amount).bind(apply)

    def pay_loan(self, loan_id: str, payer_id: str, paid_on: Optional[str] = None) -> Either:
        """Repay a received loan; the repayment is booked as a paid expense."""
        loan = find_by_id(self.registry.loans.get(), loan_id).get_or_else(None)
        if loan is None:
            return reject("loan_not_found", f"Loan {loan_id} does not exist", loan_id=loan_id)
        if loan.type != LoanType.RECEIVED or loan.status == LoanStatus.PAID:
            return reject("not_payable", f"Loan {loan_id} has nothing to repay", loan_id=loan_id)

        def apply(plan: Dict[str, int]) -> Either:
            expense = Expense(
                id=self.ids.get_next(),
                purpose=f"Loan Repayment to {loan.person_name}",
                amount=loan.amount,
                date=paid_on or self._now(),
                status=ExpenseStatus.PAID,
                paid=True,
                paid_by=payer_id,
                approved_by=("auto-approved",),
                remarks=f"Repayment of loan ID {loan.id}",
            )
            self.registry.users.set(lambda us: adjust_cash(us, plan))
            self.registry.loans.set(lambda ls: update_by_id(ls, loan_id, status=LoanStatus.PAID))
            self.registry.expenses.set(lambda es: append(es, expense))
            self._publish(EXPENSE_PAID, {"expense_id": expense.id, "amount": loan.amount, "deductions": plan})
            return Right(expense)

        return self._guard_cash(payer_id, loan.amount).bind(apply)

    def update_expense(self, expense_id: str, **changes) -> Either:
        if find_by_id(self.registry.expenses.get(), expense_id).is_none():
            return reject("expense_not_found", f"Expense {expense_id} does not exist", expense_id=expense_id)
        self.registry.expenses.set(lambda es: update_by_id(es, expense_id, **changes))
        return Right(find_by_id(self.registry.expenses.get(), expense_id).get_or_else(None))

    def delete_expense(self, expense_id: str) -> Either:
        expense = find_by_id(self.registry.expenses.get(), expense_id).get_or_else(None)
        if expense is None:
            return reject("expense_not_found", f"Expense {expense_id} does not exist", expense_id=expense_id)
        self._record_deletion(expense, "expense")
        self.registry.expenses.set(lambda es: remove_by_id(es, expense_id))
        return Right(expense)

    def delete_loan(self, loan_id: str) -> Either:
        loan = find_by_id(self.registry.loans.get(), loan_id).get_or_else(None)
        if loan is None:
            return reject("loan_not_found", f"Loan {loan_id} does not exist", loan_id=loan_id)
        self._record_deletion(loan, "loan")
        self.registry.loans.set(lambda ls: remove_by_id(ls, loan_id))
        return Right(loan)


class DuesService(_Workflow):

    def _month(self) -> str:
        return self._clock().strftime("%Y-%m")

    def generate_monthly_dues(self, month: Optional[str] = None) -> Either:
        """Charge every flat its maintenance for ``month``; flats already charged are skipped."""
        month = month or self._month()
        flats = self.registry.flats.get()
        charged = tuple(f.id for f in flats if not has_due(f, month))
        if charged:
            self.registry.flats.set(lambda fs: tuple(f if has_due(f, month) else charge_month(f, month) for f in fs))
            logger.info("Generated %s dues for %d flats", month, len(charged))
            self._publish(DUES_GENERATED, {"month": month, "flats": list(charged)})
        return Right(charged)

    def generate_recurring_expenses(self, month: Optional[str] = None) -> Either:
        """Add this month's fixed bills as confirmed payables, once per month."""
        month = month or self._month()
        if self._read_marker(self.registry.monthly_run_key, "monthly run") == month:
            logger.debug("Recurring expenses for %s already generated", month)
            return Right(())

        now = self._now()
        created = tuple(
            Expense(
                id=self.ids.get_next(),
                purpose=r.purpose,
                amount=r.amount,
                date=now,
                status=ExpenseStatus.CONFIRMED,
                approved_by=("auto-approved-recurring",),
                remarks="Auto-generated monthly expense",
            )
            for r in self.registry.recurring_expenses.get()
            if r.amount > 0
        )
        if created:
            self.registry.expenses.set(lambda es: created + es)
        self._write_marker(self.registry.monthly_run_key, month, "monthly run")
        return Right(created)

    def run_monthly_automation(self, month: Optional[str] = None) -> Either:
        month = month or self._month()
        return self.generate_monthly_dues(month).bind(
            lambda flats: self.generate_recurring_expenses(month).map(
                lambda expenses: {"month": month, "flats": flats, "expenses": expenses}
            )
        )

    def add_receivable(
        self,
        purpose: str,
        amount: int,
        apply_to: str = "all",
        flat_id: Optional[str] = None,
        description: str = "",
    ) -> Either:
        """Add a one-off charge for the current month to all flats, numbered flats, or one flat."""
        if amount <= 0:
            return reject("invalid_amount", "Receivable amount must be greater than zero", amount=amount)
        flats = self.registry.flats.get()
        if apply_to == "all":
            targets = {f.id for f in flats}
        elif apply_to == "flats_only":
            targets = {f.id for f in flats if f.id.isdigit()}
        elif apply_to == "specific":
            if find_by_id(flats, flat_id).is_none():
                return reject("flat_not_found", f"Flat {flat_id} does not exist", flat_id=flat_id)
            targets = {flat_id}
        else:
            return reject("invalid_target", f"Unknown receivable target {apply_to!r}", apply_to=apply_to)

        due = Dues(
            month=self._month(),
            amount=amount,
            status=DuesStatus.PENDING,
            paid_amount=0,
            description=(description or "Charge") if purpose == "Other" else purpose,
        )
        self.registry.flats.set(lambda fs: tuple(
            replace(f, dues=f.dues + (due,)) if f.id in targets else f for f in fs
        ))
        return Right(tuple(f.id for f in flats if f.id in targets))

    def update_due(self, flat_id: str, month: str, description: str, **changes) -> Either:
        """Edit one due; status follows amount and paid amount unless given explicitly."""
        flat = find_by_id(self.registry.flats.get(), flat_id).get_or_else(None)
        if flat is None:
            return reject("flat_not_found", f"Flat {flat_id} does not exist", flat_id=flat_id)
        if not has_due(flat, month, description):
            return reject("due_not_found", f"No {description} due for {month} on flat {flat_id}",
                          flat_id=flat_id, month=month)

        def edit(d: Dues) -> Dues:
            if d.month != month or d.description != description:
                return d
            edited = replace(d, **changes)
            if "status" not in changes:
                edited = replace(edited, status=dues_status(edited.amount, edited.paid_amount))
            return edited

        updated = replace(flat, dues=tuple(edit(d) for d in flat.dues))
        self.registry.flats.set(lambda fs: map_by_id(fs, flat_id, lambda _: updated))
        return Right(updated)

    def delete_due(self, flat_id: str, month: str, description: str) -> Either:
        flat = find_by_id(self.registry.flats.get(), flat_id).get_or_else(None)
        if flat is None:
            return reject("flat_not_found", f"Flat {flat_id} does not exist", flat_id=flat_id)
        if not has_due(flat, month, description):
            return reject("due_not_found", f"No {description} due for {month} on flat {flat_id}",
                          flat_id=flat_id, month=month)
        updated = replace(flat, dues=tuple(
            d for d in flat.dues if not (d.month == month and d.description == description)
        ))
        self.registry.flats.set(lambda fs: map_by_id(fs, flat_id, lambda _: updated))
        return Right(updated)


class CashService(_Workflow):

    def initiate_transfer(self, sender_id: str) -> Either:
        """Hand all of a staff member's cash to the accountant, pending confirmation."""
        sender = self._user(sender_id)
        if sender is None:
            return reject("user_not_found", f"User {sender_id} does not exist", user_id=sender_id)
        accountant = self._accountant()
        if accountant is None:
            return reject("no_accountant", "No accountant is configured to receive cash")
        amount = sender.cash_on_hand or 0
        if amount <= 0:
            return reject("nothing_to_transfer", f"{sender.owner_name} holds no cash", user_id=sender_id)

        transfer = CashTransfer(
            id=self.ids.get_next(),
            from_user_id=sender_id,
            to_user_id=accountant.id,
            amount=amount,
            date=self._now(),
            status=TransferStatus.PENDING,
        )
        self.registry.cash_transfers.set(lambda ts: prepend(ts, transfer))
        self.registry.users.set(lambda us: adjust_cash(us, {sender_id: -amount}))
        self._notify(Notification(
            id=f"notif-cashtransfer-{transfer.id}",
            recipient_id=accountant.id,
            message=f"{sender.owner_name} has transferred {format_currency(amount)}. Please confirm receipt.",
            date=transfer.date,
            action_type=NotificationAction.CASH_TRANSFER_CONFIRMATION,
            payload=NotificationPayload(cash_transfer_id=transfer.id, amount=amount, from_user_id=sender_id),
        ))
        self._publish(CASH_TRANSFER_INITIATED, {"transfer_id": transfer.id, "amount": amount})
        return Right(transfer)

    def confirm_transfer(self, transfer_id: str, confirmer_id: str) -> Either:
        transfer = find_by_id(self.registry.cash_transfers.get(), transfer_id).get_or_else(None)
        if transfer is None:
            return reject("transfer_not_found", f"Cash transfer {transfer_id} does not exist", transfer_id=transfer_id)
        if transfer.status == TransferStatus.CONFIRMED:
            return reject("already_confirmed", f"Cash transfer {transfer_id} is already confirmed",
                          transfer_id=transfer_id)
        if confirmer_id != transfer.to_user_id:
            return reject("not_recipient", f"Only {transfer.to_user_id} can confirm this transfer",
                          transfer_id=transfer_id)

        now = self._now()
        sender = self._user(transfer.from_user_id)
        sender_name = sender.owner_name if sender is not None else transfer.from_user_id
        updated = replace(transfer, status=TransferStatus.CONFIRMED, confirmed_on=now)

        self.registry.cash_transfers.set(lambda ts: map_by_id(ts, transfer_id, lambda _: updated))
        self.registry.users.set(lambda us: adjust_cash(us, {confirmer_id: transfer.amount}))
        self.registry.notifications.set(lambda ns: tuple(
            replace(n, is_read=True,
                    message=f"You confirmed receipt of {format_currency(transfer.amount)} from {sender_name}.")
            if n.payload is not None and n.payload.cash_transfer_id == transfer_id else n
            for n in ns
        ))
        self._notify(Notification(
            id=f"notif-cashtransfer-confirmed-{transfer_id}",
            recipient_id=transfer.from_user_id,
            message=f"Your transfer of {format_currency(transfer.amount)} has been confirmed by the accountant.",
            date=now,
            action_type=NotificationAction.INFO,
        ))
        self._publish(CASH_TRANSFER_CONFIRMED, {"transfer_id": transfer_id, "amount": transfer.amount})
        return Right(updated)


class NotificationService(_Workflow):

    def generate_reminders(self) -> Either:
        """Due reminders for residents and payable reminders for the accountant.

        A recipient who already has an unread reminder of the same kind does
        not get another one. On the 4th of the month tenants of occupied flats
        also get their rent reminder, once per month.
        """
        users = self.registry.users.get()
        existing = self.registry.notifications.get()
        now = self._clock()
        stamp = now.isoformat()
        created: List[Notification] = []

        for flat in self.registry.flats.get():
            if not any(d.status in (DuesStatus.PENDING, DuesStatus.PARTIAL) for d in flat.dues):
                continue
            resident = first(users, lambda u: u.role == Role.RESIDENT and u.id.startswith(flat.id))
            if resident is None:
                continue
            if any(n.recipient_id == resident.id and n.action_type == NotificationAction.DUE_REMINDER
                   and not n.is_read for n in existing):
                continue
            created.append(Notification(
                id=f"notif-due-{resident.id}-{int(now.timestamp() * 1000)}",
                recipient_id=resident.id,
                message="You have pending maintenance dues. Please pay them at your earliest convenience.",
                date=stamp,
                action_type=NotificationAction.DUE_REMINDER,
            ))

        accountant = first(users, lambda u: u.role == Role.ACCOUNTANT)
        if accountant is not None:
            for e in self.registry.expenses.get():
                if e.paid or e.status != ExpenseStatus.CONFIRMED or (accountant.cash_on_hand or 0) < e.amount:
                    continue
                if any(n.payload is not None and n.payload.expense_id == e.id and not n.is_read for n in existing):
                    continue
                created.append(Notification(
                    id=f"notif-pay-{e.id}",
                    recipient_id=accountant.id,
                    message=f"Please pay the pending expense: {e.purpose} ({format_currency(e.amount)}).",
                    date=stamp,
                    action_type=NotificationAction.PAYABLE_REMINDER,
                    payload=NotificationPayload(expense_id=e.id, amount=e.amount),
                ))

        created.extend(self._tenant_reminders(users, now))

        if created:
            fresh = {n.id for n in created}
            self.registry.notifications.set(lambda ns: tuple(n for n in ns if n.id not in fresh) + tuple(created))
        return Right(tuple(created))

    def _tenant_reminders(self, users: Tuple[User, ...], now: datetime) -> List[Notification]:
        if now.day != TENANT_REMINDER_DAY:
            return []
        key = self.registry.tenant_reminder_key(now.strftime("%Y-%m"))
        if self._read_marker(key, "tenant reminder"):
            return []

        flats = {f.id: f for f in self.registry.flats.get()}
        reminders = []
        for tenant in users:
            if tenant.resident_type != "Tenant":
                continue
            flat = flats.get(re.sub("tnt", "", tenant.id, flags=re.IGNORECASE))
            if flat is None or flat.is_vacant:
                continue
            reminders.append(Notification(
                id=f"notif-tenant-monthly-{tenant.id}",
                recipient_id=tenant.id,
                message=f"Reminder: Please pay rent and upload utility bills for {now.strftime('%B')}",
                date=now.isoformat(),
                action_type=NotificationAction.INFO,
            ))
        self._write_marker(key, "true", "tenant reminder")
        return reminders

    def mark_read(self, notification_id: str) -> Either:
        if find_by_id(self.registry.notifications.get(), notification_id).is_none():
            return reject("notification_not_found", f"Notification {notification_id} does not exist",
                          notification_id=notification_id)
        self.registry.notifications.set(lambda ns: update_by_id(ns, notification_id, is_read=True))
        return Right(find_by_id(self.registry.notifications.get(), notification_id).get_or_else(None))


@dataclass(frozen=True)
class PortalServices:
    ids: TransactionIds
    payments: PaymentService
    expenses: ExpenseService
    dues: DuesService
    cash: CashService
    notifications: NotificationService


def build_services(registry: StateRegistry, prefix: str = "EDEN", clock: Clock = datetime.now) -> PortalServices:
    ids = TransactionIds(registry.transaction_counter, prefix=prefix)
    return PortalServices(
        ids=ids,
        payments=PaymentService(registry, ids, clock),
        expenses=ExpenseService(registry, ids, clock),
        dues=DuesService(registry, ids, clock),
        cash=CashService(registry, ids, clock),
        notifications=NotificationService(registry, ids, clock),
    )
