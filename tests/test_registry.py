import asyncio
import json

import pytest

from conftest import FAST
from portal.config import Settings
from portal.domain import Contact, DuesStatus
from portal.events import SLICE_CHANGED, STATE_RESTORED
from portal.exceptions import SnapshotError
from portal.mirror import MemoryMirror
from portal.registry import StateRegistry, create_registry, current_registry, provide
from portal.storage import MemoryStore


def test_every_slice_is_keyed_under_the_namespace(registry):
    keys = registry.slice_keys()
    assert len(keys) == 19
    assert len(set(keys)) == 19
    assert all(k.startswith("test-") for k in keys)
    assert "test-tenantTransactions" in keys
    assert registry.monthly_run_key == "test-monthly-run"
    assert registry.restore_point_key == "test-restore-point"


def test_initial_values_are_seeded(registry):
    assert registry.transaction_counter.get() == 1
    assert len(registry.flats.get()) == 53
    assert registry.building_info.get().total_flats == 48
    assert registry.payments.get() == ()
    assert registry.connection_status == "no-backend"


def test_unknown_slice_is_attribute_error(registry):
    with pytest.raises(AttributeError):
        registry.wallets


def test_slice_changes_are_published(registry):
    seen = []
    registry.bus.subscribe(SLICE_CHANGED, lambda event, payload: seen.append(payload))
    registry.notices.set(())
    registry.president_message.set("Water off on Sunday")
    assert seen == [{"key": "test-president-message", "origin": "local"}]


def test_export_then_import_into_fresh_registry(registry):
    registry.president_message.set("Hello residents")
    registry.contacts.set(lambda cs: cs + (Contact("c9", "Plumber", "Aslam", "0312"),))
    text = registry.export_snapshot()

    other = StateRegistry(MemoryStore(), namespace="other", debounce_seconds=FAST)
    restored = other.import_snapshot(text)

    assert set(restored) == set(registry.names)
    assert other.president_message.get() == "Hello residents"
    assert other.contacts.get()[-1].name == "Aslam"
    assert other.snapshot() == registry.snapshot()


def test_snapshot_uses_plain_json(registry):
    data = json.loads(registry.export_snapshot())
    assert data["transaction_counter"] == 1
    assert data["flats"][0]["dues"] == []
    assert data["building_info"]["name"] == "Al Ghafoor Eden"


def test_partial_snapshot_only_touches_its_fields(registry, store):
    registry.president_message.set("before")
    events = []
    registry.bus.subscribe(STATE_RESTORED, lambda event, payload: events.append(payload))

    restored = registry.import_snapshot('{"transaction_counter": 42, "unknownField": 1}')

    assert restored == ["transaction_counter"]
    assert registry.transaction_counter.get() == 42
    assert registry.president_message.get() == "before"
    assert store.read("test-tx-counter") == "42"
    assert events == [{"slices": ["transaction_counter"]}]


@pytest.mark.parametrize("text", ["not json", "[]", "{}", '{"somethingElse": 1}', '{"loans": null}'])
def test_invalid_snapshots_are_rejected(registry, text):
    with pytest.raises(SnapshotError):
        registry.import_snapshot(text)


def test_one_bad_field_means_nothing_is_applied(registry):
    text = json.dumps({
        "president_message": "should not land",
        "flats": [{"id": "101", "dues": [{"month": "2024-01", "amount": 1, "status": "Bogus"}]}],
    })
    with pytest.raises(SnapshotError) as err:
        registry.import_snapshot(text)
    assert "flats" in str(err.value)
    assert registry.president_message.get() != "should not land"


def test_null_snapshot_fields_are_skipped(registry):
    registry.president_message.set("kept")
    restored = registry.import_snapshot('{"president_message": null, "transaction_counter": 7, "loans": null}')
    assert restored == ["transaction_counter"]
    assert registry.president_message.get() == "kept"
    assert registry.transaction_counter.get() == 7


def test_reload_picks_up_rewritten_store(registry, store):
    store.write("test-president-message", '"from disk"')
    registry.reload()
    assert registry.president_message.get() == "from disk"


def test_provide_scopes_the_current_registry(registry):
    with pytest.raises(RuntimeError):
        current_registry()
    with provide(registry):
        assert current_registry() is registry
    with pytest.raises(RuntimeError):
        current_registry()


def test_create_registry_persists_to_sqlite(tmp_path):
    settings = Settings(namespace="disk", db_path=str(tmp_path / "portal.db"))
    first = create_registry(settings)
    first.president_message.set("kept")
    first.close()

    second = create_registry(settings)
    assert second.president_message.get() == "kept"
    assert second.flats.get()[0].dues == ()


@pytest.mark.asyncio
async def test_two_registries_sharing_a_mirror_converge():
    mirror = MemoryMirror()
    a = StateRegistry(MemoryStore(), mirror, namespace="shared", debounce_seconds=FAST)
    b = StateRegistry(MemoryStore(), mirror, namespace="shared", debounce_seconds=FAST)

    a.president_message.set("from a")
    await a.flush()
    await asyncio.sleep(FAST * 3)

    assert b.president_message.get() == "from a"
    assert mirror.pushes == [("shared-president-message", "from a")]

    b.flats.set(lambda fs: fs[:1])
    await b.flush()
    await asyncio.sleep(FAST * 3)

    assert len(a.flats.get()) == 1
    assert a.flats.get()[0].dues == ()
    assert a.flats.get()[0].advance_balance == 0
    assert len(mirror.pushes) == 2

    await a.aclose()
    await b.aclose()


def test_dues_status_survives_the_snapshot(registry):
    text = json.dumps({"flats": [{
        "id": "101", "label": "Flat 101", "floor": 1, "monthly_maintenance": 6000,
        "dues": [{"month": "2024-01", "amount": 6000, "status": "Partial", "paid_amount": 100,
                  "description": "Maintenance"}],
    }]})
    registry.import_snapshot(text)
    assert registry.flats.get()[0].dues[0].status is DuesStatus.PARTIAL
