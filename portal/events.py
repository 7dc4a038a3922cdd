from typing import Callable, Dict, List, NamedTuple, Optional
from datetime import datetime

__all__ = [
    'Event', 'EventBus',
    'SLICE_CHANGED', 'PAYMENT_RECORDED', 'EXPENSE_REQUESTED', 'EXPENSE_APPROVED',
    'EXPENSE_REJECTED', 'EXPENSE_PAID', 'CASH_TRANSFER_INITIATED', 'CASH_TRANSFER_CONFIRMED',
    'DUES_GENERATED', 'RENT_CONFIRMED', 'STATE_RESTORED',
]


class Event(NamedTuple):
    name: str
    ts: str
    payload: dict


Handler = Callable[[Event, dict], Optional[dict]]


class EventBus:
    """Synchronous in-process publish/subscribe.

    One bus belongs to one registry; there is no module-level instance, so a
    fresh registry (and bus) can be built per test.
    """

    def __init__(self):
        self._subscribers: Dict[str, List[Handler]] = {}

    def subscribe(self, name: str, handler: Handler) -> None:
        if name not in self._subscribers:
            self._subscribers[name] = []
        self._subscribers[name].append(handler)

    def publish(self, name: str, payload: dict) -> List[Optional[dict]]:
        if name not in self._subscribers:
            return []

        event = Event(
            name=name,
            ts=datetime.now().isoformat(),
            payload=payload
        )

        results = []
        for handler in list(self._subscribers[name]):
            results.append(handler(event, payload))
        return results

    def unsubscribe(self, name: str, handler: Handler) -> None:
        if name in self._subscribers:
            if handler in self._subscribers[name]:
                self._subscribers[name].remove(handler)


SLICE_CHANGED = "SLICE_CHANGED"
PAYMENT_RECORDED = "PAYMENT_RECORDED"
EXPENSE_REQUESTED = "EXPENSE_REQUESTED"
EXPENSE_APPROVED = "EXPENSE_APPROVED"
EXPENSE_REJECTED = "EXPENSE_REJECTED"
EXPENSE_PAID = "EXPENSE_PAID"
CASH_TRANSFER_INITIATED = "CASH_TRANSFER_INITIATED"
CASH_TRANSFER_CONFIRMED = "CASH_TRANSFER_CONFIRMED"
DUES_GENERATED = "DUES_GENERATED"
RENT_CONFIRMED = "RENT_CONFIRMED"
STATE_RESTORED = "STATE_RESTORED"
