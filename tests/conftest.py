from dataclasses import replace
from datetime import datetime

import pytest

from portal.domain import Dues, DuesStatus, Expense, ExpenseStatus, Payment
from portal.exceptions import StoreError
from portal.registry import StateRegistry
from portal.services import build_services
from portal.storage import MemoryStore
from portal.transforms import adjust_cash, map_by_id

FAST = 0.01
NOW = datetime(2024, 3, 15, 10, 30, 0)


class CountingStore(MemoryStore):
    def __init__(self, initial=None):
        super().__init__(initial)
        self.writes = []

    def write(self, key, text):
        self.writes.append(key)
        super().write(key, text)


class FailingStore(MemoryStore):
    """Reads work, every write fails like a full disk."""

    def write(self, key, text):
        raise StoreError("disk full")


def make_due(month, amount=1000, paid=0, status=DuesStatus.PENDING, description="Maintenance"):
    return Dues(month=month, amount=amount, status=status, paid_amount=paid, description=description)


def make_payment(id, amount, date, flat_id="101", received_by="faisal"):
    return Payment(id=id, flat_id=flat_id, amount=amount, date=date, purpose="Maintenance", received_by=received_by)


def make_expense(id, amount, date, paid=True, status=None):
    status = status or (ExpenseStatus.PAID if paid else ExpenseStatus.CONFIRMED)
    return Expense(id=id, purpose="Bill", amount=amount, date=date, status=status, paid=paid)


def set_dues(registry, flat_id, *dues, advance=0):
    registry.flats.set(lambda fs: map_by_id(fs, flat_id, lambda f: replace(f, dues=tuple(dues), advance_balance=advance)))


def set_cash(registry, **cash):
    current = {u.id: u.cash_on_hand or 0 for u in registry.users.get()}
    registry.users.set(lambda us: adjust_cash(us, {uid: amount - current[uid] for uid, amount in cash.items()}))


def cash_of(registry, user_id):
    return next(u.cash_on_hand for u in registry.users.get() if u.id == user_id)


def flat_of(registry, flat_id):
    return next(f for f in registry.flats.get() if f.id == flat_id)


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def registry(store):
    return StateRegistry(store, namespace="test", debounce_seconds=FAST)


@pytest.fixture
def services(registry):
    return build_services(registry, clock=lambda: NOW)
