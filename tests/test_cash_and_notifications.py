from dataclasses import replace
from datetime import datetime

from conftest import NOW, cash_of, make_due, make_expense, set_cash, set_dues
from portal.domain import (
    Notification, NotificationAction, NotificationPayload, Role, TenantTransaction, TransferStatus, User,
)
from portal.events import CASH_TRANSFER_CONFIRMED, RENT_CONFIRMED
from portal.services import build_services
from portal.transforms import map_by_id


def test_guard_hands_cash_to_accountant(registry, services):
    set_cash(registry, rahman=2500)

    transfer = services.cash.initiate_transfer("rahman").get_or_else(None)

    assert (transfer.from_user_id, transfer.to_user_id, transfer.amount) == ("rahman", "faisal", 2500)
    assert transfer.status is TransferStatus.PENDING
    assert cash_of(registry, "rahman") == 0
    assert cash_of(registry, "faisal") == 0
    note = registry.notifications.get()[0]
    assert note.id == f"notif-cashtransfer-{transfer.id}"
    assert note.action_type is NotificationAction.CASH_TRANSFER_CONFIRMATION
    assert note.payload.amount == 2500


def test_confirming_transfer_credits_accountant(registry, services):
    set_cash(registry, rahman=2500)
    transfer = services.cash.initiate_transfer("rahman").get_or_else(None)
    confirmed = []
    registry.bus.subscribe(CASH_TRANSFER_CONFIRMED, lambda event, payload: confirmed.append(payload))

    result = services.cash.confirm_transfer(transfer.id, "faisal").get_or_else(None)

    assert result.status is TransferStatus.CONFIRMED
    assert result.confirmed_on == NOW.isoformat()
    assert cash_of(registry, "faisal") == 2500
    notes = registry.notifications.get()
    assert notes[0].is_read
    assert notes[-1].recipient_id == "rahman"
    assert notes[-1].action_type is NotificationAction.INFO
    assert confirmed == [{"transfer_id": transfer.id, "amount": 2500}]


def test_transfer_preconditions(registry, services):
    assert services.cash.initiate_transfer("rahman").get_error()["error"] == "nothing_to_transfer"
    assert services.cash.initiate_transfer("ghost").get_error()["error"] == "user_not_found"

    set_cash(registry, nasir=100)
    transfer = services.cash.initiate_transfer("nasir").get_or_else(None)
    assert services.cash.confirm_transfer(transfer.id, "admin").get_error()["error"] == "not_recipient"
    services.cash.confirm_transfer(transfer.id, "faisal")
    assert services.cash.confirm_transfer(transfer.id, "faisal").get_error()["error"] == "already_confirmed"
    assert services.cash.confirm_transfer("nope", "faisal").get_error()["error"] == "transfer_not_found"


def test_transfer_needs_an_accountant(registry, services):
    set_cash(registry, rahman=100)
    registry.users.set(lambda us: tuple(u for u in us if u.role != Role.ACCOUNTANT))
    assert services.cash.initiate_transfer("rahman").get_error()["error"] == "no_accountant"
    assert cash_of(registry, "rahman") == 100


def test_due_reminders_go_to_residents_once(registry, services):
    set_dues(registry, "101", make_due("2024-03"))

    first = services.notifications.generate_reminders().get_or_else(None)
    assert [n.recipient_id for n in first] == ["101own"]
    assert first[0].action_type is NotificationAction.DUE_REMINDER
    assert first[0].id == f"notif-due-101own-{int(NOW.timestamp() * 1000)}"

    assert services.notifications.generate_reminders().get_or_else(None) == ()

    services.notifications.mark_read(first[0].id)
    assert len(services.notifications.generate_reminders().get_or_else(None)) == 1


def test_payable_reminder_only_when_cash_covers_it(registry, services):
    registry.expenses.set((make_expense("EDEN00007", 800, "2024-03-01", paid=False),))

    assert services.notifications.generate_reminders().get_or_else(None) == ()

    set_cash(registry, faisal=1000)
    created = services.notifications.generate_reminders().get_or_else(None)
    assert [n.id for n in created] == ["notif-pay-EDEN00007"]
    assert created[0].recipient_id == "faisal"
    assert created[0].payload.expense_id == "EDEN00007"
    assert services.notifications.generate_reminders().get_or_else(None) == ()


def test_mark_unknown_notification(services):
    assert services.notifications.mark_read("nope").get_error()["error"] == "notification_not_found"


def add_tenants(registry):
    registry.users.set(lambda us: us + (
        User("101tnt", Role.RESIDENT, "Tenant of 101", resident_type="Tenant"),
        User("102TNT", Role.RESIDENT, "Tenant of 102", resident_type="Tenant"),
    ))
    registry.flats.set(lambda fs: map_by_id(fs, "102", lambda f: replace(f, is_vacant=True)))


def test_tenants_of_occupied_flats_get_rent_reminder_on_the_4th(registry, store):
    add_tenants(registry)
    services = build_services(registry, clock=lambda: datetime(2024, 3, 4, 9, 0))

    created = services.notifications.generate_reminders().get_or_else(None)

    assert [n.recipient_id for n in created] == ["101tnt"]
    assert created[0].id == "notif-tenant-monthly-101tnt"
    assert created[0].message == "Reminder: Please pay rent and upload utility bills for March"
    assert created[0].action_type is NotificationAction.INFO
    assert store.read("test-tenant-notif-run-2024-03") == "true"
    assert services.notifications.generate_reminders().get_or_else(None) == ()


def test_no_rent_reminder_on_other_days(registry, services):
    add_tenants(registry)
    assert services.notifications.generate_reminders().get_or_else(None) == ()


def test_owner_confirms_rent_payment(registry, services):
    tx = TenantTransaction("T1", "101tnt", "101", "Rent", "2024-03", "2024-03-05", amount=40000,
                           status="Pending Confirmation")
    registry.tenant_transactions.set((tx,))
    registry.notifications.set((Notification(
        "n-rent", "101own", "Tenant paid rent for March", "2024-03-05",
        action_type=NotificationAction.RENT_CONFIRMATION,
        payload=NotificationPayload(tenant_transaction_id="T1"),
    ),))
    events = []
    registry.bus.subscribe(RENT_CONFIRMED, lambda event, payload: events.append(payload))

    confirmed = services.payments.confirm_rent_payment("T1", "101own").get_or_else(None)

    assert confirmed.status == "Confirmed"
    assert confirmed.owner_confirmation_by == "101own"
    assert confirmed.confirmed_on == NOW.isoformat()
    assert registry.tenant_transactions.get() == (confirmed,)
    note = registry.notifications.get()[0]
    assert note.is_read
    assert note.message == "You have confirmed rent receipt."
    assert events == [{"transaction_id": "T1", "owner_id": "101own"}]
    again = services.payments.confirm_rent_payment("T1", "101own")
    assert again.get_error()["error"] == "already_confirmed"


def test_confirm_rent_preconditions(registry, services):
    assert services.payments.confirm_rent_payment("T9", "101own").get_error()["error"] == "transaction_not_found"
    registry.tenant_transactions.set((TenantTransaction("T1", "101tnt", "101", "Rent", "2024-03", "2024-03-05"),))
    assert services.payments.confirm_rent_payment("T1", "ghost").get_error()["error"] == "user_not_found"
    assert registry.tenant_transactions.get()[0].status is None
