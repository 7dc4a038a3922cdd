from dataclasses import replace
from typing import Any, Callable, Tuple, TypeVar

from portal.domain import Dues, DuesStatus, Flat, User

R = TypeVar("R")


def prepend(records: Tuple[R, ...], r: R) -> Tuple[R, ...]:
    return (r,) + records


def append(records: Tuple[R, ...], r: R) -> Tuple[R, ...]:
    return records + (r,)


def update_by_id(records: Tuple[R, ...], rid: str, **changes: Any) -> Tuple[R, ...]:
    return tuple(replace(r, **changes) if r.id == rid else r for r in records)


def map_by_id(records: Tuple[R, ...], rid: str, f: Callable[[R], R]) -> Tuple[R, ...]:
    return tuple(f(r) if r.id == rid else r for r in records)


def remove_by_id(records: Tuple[R, ...], rid: str) -> Tuple[R, ...]:
    return tuple(filter(lambda r: r.id != rid, records))


def adjust_cash(users: Tuple[User, ...], deltas: dict) -> Tuple[User, ...]:
    """Apply per-user cash-on-hand deltas ({user_id: +/-amount})."""
    return tuple(
        replace(u, cash_on_hand=(u.cash_on_hand or 0) + deltas[u.id]) if u.id in deltas else u
        for u in users
    )


def dues_status(amount: int, paid_amount: int) -> DuesStatus:
    if paid_amount >= amount:
        return DuesStatus.PAID
    if paid_amount <= 0:
        return DuesStatus.PENDING
    return DuesStatus.PARTIAL


def unpaid_dues(flat: Flat) -> Tuple[Dues, ...]:
    """Unpaid dues of a flat, oldest month first."""
    return tuple(sorted((d for d in flat.dues if d.status != DuesStatus.PAID), key=lambda d: d.month))


def outstanding(flat: Flat) -> int:
    return sum(d.owed for d in flat.dues if d.status != DuesStatus.PAID)
