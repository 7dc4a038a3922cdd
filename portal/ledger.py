"""
Derived ledgers.

Everything here is a pure function of slice values: no slice is read or
written, inputs are never mutated, and the same inputs always produce the
same output. Dates are ISO strings; ordering is a stable sort on the date
string so entries sharing a timestamp keep their merge order.
"""
from dataclasses import dataclass
from datetime import date
from functools import reduce
from itertools import accumulate
from typing import Dict, Iterable, Optional, Tuple

import pandas as pd

from portal.domain import (
    CASH_HOLDER_ROLES, CashTransfer, Dues, DuesStatus, Expense, ExpenseStatus, Flat, Loan,
    LoanStatus, LoanType, Payment, User,
)
from portal.transforms import outstanding, unpaid_dues


@dataclass(frozen=True)
class LedgerEntry:
    date: str
    id: str
    label: str
    description: str
    debit: int
    credit: int
    kind: str


@dataclass(frozen=True)
class LedgerRow:
    entry: LedgerEntry
    balance: int


@dataclass(frozen=True)
class Ledger:
    opening_balance: int
    rows: Tuple[LedgerRow, ...]
    closing_balance: int
    start: Optional[str] = None
    end: Optional[str] = None


@dataclass(frozen=True)
class Receivable:
    id: str
    source: str         # flat label or borrower name
    purpose: str
    amount: int
    due_date: str
    kind: str           # "due" or "loan"
    flat_id: Optional[str] = None
    month: Optional[str] = None


@dataclass(frozen=True)
class Payable:
    id: str
    label: str
    amount: int
    date: str
    due_date: Optional[str]
    kind: str           # "expense" or "loan"


@dataclass(frozen=True)
class DuesSummary:
    flat_id: str
    label: str
    outstanding: int
    advance_balance: int
    pending_months: Tuple[str, ...]


def day_of(ts: str) -> date:
    return date.fromisoformat(ts[:10])


def to_entry(record, flat_labels: Optional[Dict[str, str]] = None) -> LedgerEntry:
    """Turn a payment or expense into a ledger entry, dispatching on its ``kind``."""
    labels = flat_labels or {}
    kind = getattr(record, "kind", None)
    if kind == Payment.kind:
        return LedgerEntry(
            date=record.date,
            id=record.id,
            label=record.purpose,
            description=record.remarks or f"From: {labels.get(record.flat_id, record.flat_id)}",
            debit=0,
            credit=record.amount,
            kind=kind,
        )
    if kind == Expense.kind:
        return LedgerEntry(
            date=record.date,
            id=record.id,
            label=record.purpose,
            description=record.remarks,
            debit=record.amount,
            credit=0,
            kind=kind,
        )
    raise TypeError(f"no ledger entry for {type(record).__name__} (kind={kind!r})")


def sort_entries(entries: Iterable[LedgerEntry]) -> Tuple[LedgerEntry, ...]:
    return tuple(sorted(entries, key=lambda e: e.date))


def merge_transactions(
    payments: Iterable[Payment],
    expenses: Iterable[Expense],
    flats: Iterable[Flat] = (),
) -> Tuple[LedgerEntry, ...]:
    """All payments as credits and paid expenses as debits, oldest first."""
    labels = {f.id: f.label for f in flats}
    paid = filter(lambda e: e.paid, expenses)
    return sort_entries(to_entry(r, labels) for r in (*payments, *paid))


def fold_ledger(entries: Iterable[LedgerEntry], opening: int = 0) -> Tuple[LedgerRow, ...]:
    entries = tuple(entries)
    balances = accumulate((e.credit - e.debit for e in entries), initial=opening)
    next(balances)
    return tuple(LedgerRow(e, b) for e, b in zip(entries, balances))


def _in_range(entry: LedgerEntry, start: Optional[date], end: Optional[date]) -> bool:
    d = day_of(entry.date)
    return (start is None or d >= start) and (end is None or d <= end)


def ledger_for_range(
    entries: Tuple[LedgerEntry, ...],
    start: Optional[str] = None,
    end: Optional[str] = None,
) -> Ledger:
    """Opening balance from everything before ``start``, running balance within [start, end]."""
    s = day_of(start) if start else None
    e = day_of(end) if end else None
    opening = sum(x.credit - x.debit for x in entries if s is not None and day_of(x.date) < s)
    rows = fold_ledger((x for x in entries if _in_range(x, s, e)), opening)
    closing = rows[-1].balance if rows else opening
    return Ledger(opening_balance=opening, rows=rows, closing_balance=closing, start=start, end=end)


def build_ledger(
    payments: Iterable[Payment],
    expenses: Iterable[Expense],
    start: Optional[str] = None,
    end: Optional[str] = None,
    flats: Iterable[Flat] = (),
) -> Ledger:
    return ledger_for_range(merge_transactions(payments, expenses, flats), start, end)


def _due_entry(flat: Flat, d: Dues) -> LedgerEntry:
    return LedgerEntry(
        date=f"{d.month}-01",
        id=f"{flat.id}-{d.month}-{d.description}",
        label=d.description,
        description=f"{d.description} for {d.month}",
        debit=d.amount,
        credit=0,
        kind="due",
    )


def flat_ledger(
    flat: Flat,
    payments: Iterable[Payment],
    start: Optional[str] = None,
    end: Optional[str] = None,
) -> Ledger:
    """A flat's statement: dues as debits on the first of their month, payments as credits."""
    dues = (_due_entry(flat, d) for d in flat.dues)
    paid = (to_entry(p) for p in payments if p.flat_id == flat.id)
    return ledger_for_range(sort_entries((*dues, *paid)), start, end)


def staff_cash_ledger(
    user_id: str,
    payments: Iterable[Payment],
    transfers: Iterable[CashTransfer],
) -> Ledger:
    """Cash a staff member collected, minus what they handed to the accountant."""
    received = (
        LedgerEntry(p.date, p.id, p.purpose, f"Payment from Flat {p.flat_id}", 0, p.amount, "payment")
        for p in payments if p.received_by == user_id
    )
    handed = (
        LedgerEntry(t.date, t.id, "Cash Transfer", "Cash Transferred to Accountant", t.amount, 0, "transfer")
        for t in transfers if t.from_user_id == user_id
    )
    return ledger_for_range(sort_entries((*received, *handed)))


def dues_summary(flats: Iterable[Flat]) -> Tuple[DuesSummary, ...]:
    return tuple(
        DuesSummary(
            flat_id=f.id,
            label=f.label,
            outstanding=outstanding(f),
            advance_balance=f.advance_balance,
            pending_months=tuple(dict.fromkeys(d.month for d in unpaid_dues(f))),
        )
        for f in flats
    )


def building_cash(payments: Iterable[Payment], expenses: Iterable[Expense]) -> int:
    credits = reduce(lambda acc, p: acc + p.amount, payments, 0)
    debits = reduce(lambda acc, e: acc + e.amount if e.paid else acc, expenses, 0)
    return credits - debits


def cash_on_hand_total(users: Iterable[User]) -> int:
    """Cash held by the accountant and guards; the pool expenses are paid from."""
    return sum(u.cash_on_hand or 0 for u in users if u.role in CASH_HOLDER_ROLES)


def receivables(flats: Iterable[Flat], loans: Iterable[Loan]) -> Tuple[Receivable, ...]:
    """Money owed to the building: open dues and loans it paid out."""
    dues = (
        Receivable(
            id=f"{f.id}-{d.month}-{d.description}",
            source=f.label,
            purpose=d.description,
            amount=d.owed,
            due_date=f"{d.month}-28",
            kind="due",
            flat_id=f.id,
            month=d.month,
        )
        for f in flats
        for d in f.dues
        if d.status in (DuesStatus.PENDING, DuesStatus.PARTIAL)
    )
    lent = (
        Receivable(id=l.id, source=l.person_name, purpose="Loan Repayment", amount=l.amount,
                   due_date=l.due_date, kind="loan")
        for l in loans
        if l.type == LoanType.PAID_OUT and l.status == LoanStatus.PENDING
    )
    return tuple(sorted((*dues, *lent), key=lambda r: r.due_date))


def payables(expenses: Iterable[Expense], loans: Iterable[Loan]) -> Tuple[Payable, ...]:
    """Money the building owes: confirmed unpaid expenses and loans it received."""
    bills = (
        Payable(e.id, e.purpose, e.amount, e.date, e.due_date, "expense")
        for e in expenses
        if not e.paid and e.status == ExpenseStatus.CONFIRMED
    )
    borrowed = (
        Payable(l.id, f"Repayment to {l.person_name}", l.amount, l.date, l.due_date, "loan")
        for l in loans
        if l.type == LoanType.RECEIVED and l.status == LoanStatus.PENDING
    )
    return tuple(sorted((*bills, *borrowed), key=lambda p: p.date))


LEDGER_COLUMNS = ["date", "id", "label", "description", "debit", "credit", "balance"]


def ledger_frame(ledger: Ledger) -> pd.DataFrame:
    df = pd.DataFrame(
        [
            {
                "date": r.entry.date,
                "id": r.entry.id,
                "label": r.entry.label,
                "description": r.entry.description,
                "debit": r.entry.debit,
                "credit": r.entry.credit,
                "balance": r.balance,
            }
            for r in ledger.rows
        ],
        columns=LEDGER_COLUMNS,
    )
    if not df.empty:
        df["date"] = pd.to_datetime(df["date"].str.slice(0, 10))
    return df
