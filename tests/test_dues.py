from dataclasses import replace

from conftest import flat_of, make_due, set_dues
from portal.domain import DuesStatus, ExpenseStatus
from portal.events import DUES_GENERATED
from portal.exceptions import StoreError
from portal.transforms import map_by_id


def test_monthly_dues_charge_every_flat(registry, services):
    charged = services.dues.generate_monthly_dues().get_or_else(None)

    assert len(charged) == 53
    due = flat_of(registry, "101").dues[0]
    assert (due.month, due.amount, due.status, due.description) == ("2024-03", 6000, DuesStatus.PENDING, "Maintenance")
    assert flat_of(registry, "205").dues[0].amount == 1500
    assert flat_of(registry, "902").dues[0].amount == 8000


def test_monthly_dues_are_generated_once(registry, services):
    events = []
    registry.bus.subscribe(DUES_GENERATED, lambda event, payload: events.append(payload))
    services.dues.generate_monthly_dues("2024-03")
    again = services.dues.generate_monthly_dues("2024-03")
    assert again.get_or_else(None) == ()
    assert len(flat_of(registry, "101").dues) == 1
    assert len(events) == 1


def test_vacant_flat_pays_half(registry, services):
    registry.flats.set(lambda fs: map_by_id(fs, "101", lambda f: replace(f, is_vacant=True)))
    services.dues.generate_monthly_dues("2024-03")
    assert flat_of(registry, "101").dues[0].amount == 3000


def test_advance_balance_is_applied_first(registry, services):
    set_dues(registry, "101", advance=2000)
    set_dues(registry, "102", advance=9000)
    services.dues.generate_monthly_dues("2024-03")

    partly = flat_of(registry, "101")
    assert (partly.dues[0].paid_amount, partly.dues[0].status, partly.advance_balance) == (2000, DuesStatus.PARTIAL, 0)
    covered = flat_of(registry, "102")
    assert (covered.dues[0].status, covered.advance_balance) == (DuesStatus.PAID, 3000)


def test_recurring_expenses_run_once_per_month(registry, services, store):
    created = services.dues.generate_recurring_expenses("2024-03").get_or_else(None)

    assert [e.purpose for e in created] == [
        "Lift Maintenance", "Sweeper Salary", "Guard Salary (Day)", "Guard Salary (Night)",
    ]
    assert all(e.status is ExpenseStatus.CONFIRMED for e in created)
    assert created[0].approved_by == ("auto-approved-recurring",)
    assert created[0].remarks == "Auto-generated monthly expense"
    assert store.read("test-monthly-run") == "2024-03"

    assert services.dues.generate_recurring_expenses("2024-03").get_or_else(None) == ()
    assert len(registry.expenses.get()) == 4
    services.dues.generate_recurring_expenses("2024-04")
    assert len(registry.expenses.get()) == 8


def test_recurring_expenses_survive_marker_store_failure(registry, services, monkeypatch, caplog):
    def broken(key, text):
        raise StoreError("disk full")

    monkeypatch.setattr(registry.store, "write", broken)
    created = services.dues.generate_recurring_expenses("2024-03").get_or_else(None)
    assert len(created) == 4
    assert "monthly run marker" in caplog.text


def test_run_monthly_automation(registry, services):
    result = services.dues.run_monthly_automation().get_or_else(None)
    assert result["month"] == "2024-03"
    assert len(result["flats"]) == 53
    assert len(result["expenses"]) == 4


def test_add_receivable_to_numbered_flats_only(registry, services):
    targets = services.dues.add_receivable("Water Tanker", 500, apply_to="flats_only").get_or_else(None)
    assert "G-01" not in targets
    assert len(targets) == 51
    assert flat_of(registry, "G-01").dues == ()
    due = flat_of(registry, "101").dues[0]
    assert (due.month, due.description, due.amount) == ("2024-03", "Water Tanker", 500)


def test_add_receivable_other_uses_description(registry, services):
    services.dues.add_receivable("Other", 250, apply_to="specific", flat_id="101", description="Key copy")
    assert flat_of(registry, "101").dues[0].description == "Key copy"
    assert flat_of(registry, "102").dues == ()


def test_add_receivable_validation(services):
    assert services.dues.add_receivable("X", 10, apply_to="specific", flat_id="999").get_error()["error"] == "flat_not_found"
    assert services.dues.add_receivable("X", 10, apply_to="roof").get_error()["error"] == "invalid_target"
    assert services.dues.add_receivable("X", 0).get_error()["error"] == "invalid_amount"


def test_update_due_recomputes_status(registry, services):
    set_dues(registry, "101", make_due("2024-01"), make_due("2024-02"))
    services.dues.update_due("101", "2024-01", "Maintenance", paid_amount=1000)
    dues = flat_of(registry, "101").dues
    assert dues[0].status is DuesStatus.PAID
    assert dues[1].status is DuesStatus.PENDING

    services.dues.update_due("101", "2024-02", "Maintenance", status=DuesStatus.PAID)
    assert flat_of(registry, "101").dues[1].status is DuesStatus.PAID
    assert flat_of(registry, "101").dues[1].paid_amount == 0


def test_delete_due(registry, services):
    set_dues(registry, "101", make_due("2024-01"), make_due("2024-01", description="Water Tanker"))
    services.dues.delete_due("101", "2024-01", "Water Tanker")
    assert [d.description for d in flat_of(registry, "101").dues] == ["Maintenance"]
    result = services.dues.delete_due("101", "2024-01", "Water Tanker")
    assert result.get_error()["error"] == "due_not_found"
