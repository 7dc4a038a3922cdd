import asyncio
import logging

import pytest

from conftest import FAST, CountingStore, FailingStore
from portal.codecs import RecordListCodec
from portal.domain import Contact
from portal.exceptions import SerializationError
from portal.mirror import MemoryMirror
from portal.slices import TRANSITIONS, Slice, SliceState, Transition
from portal.storage import MemoryStore


async def settle(n=3):
    for _ in range(n):
        await asyncio.sleep(0)


def test_transition_table():
    assert TRANSITIONS[Transition.REMOTE_ECHO].adopt is False
    assert TRANSITIONS[Transition.REMOTE_ECHO].persist is False
    assert TRANSITIONS[Transition.REMOTE_EXTERNAL_CHANGE].push is False
    assert TRANSITIONS[Transition.REMOTE_EXTERNAL_CHANGE].cancel_push is True
    assert TRANSITIONS[Transition.REMOTE_EXTERNAL_CHANGE].clear_outbox is True
    assert TRANSITIONS[Transition.REMOTE_ECHO].clear_outbox is False
    assert TRANSITIONS[Transition.LOCAL_WRITE].push is True
    assert TRANSITIONS[Transition.NOOP].notify is False


def test_hydrates_from_store_before_first_read():
    store = MemoryStore({"ns-notes": '["stored"]'})
    s = Slice("ns-notes", ["initial"], store)
    assert s.state is SliceState.HYDRATED
    assert s.get() == ["stored"]


def test_missing_key_uses_initial():
    s = Slice("ns-notes", ["initial"], MemoryStore())
    assert s.get() == ["initial"]


def test_corrupt_store_value_falls_back_to_initial(caplog):
    store = MemoryStore({"ns-notes": "{not json"})
    with caplog.at_level(logging.WARNING):
        s = Slice("ns-notes", ["initial"], store)
    assert s.get() == ["initial"]
    assert "unreadable" in caplog.text


def test_set_writes_through_to_store():
    store = CountingStore()
    s = Slice("ns-notes", [], store)
    s.set(["a"])
    assert s.get() == ["a"]
    assert store.read("ns-notes") == '["a"]'
    assert store.writes == ["ns-notes"]


def test_set_with_updater():
    s = Slice("ns-counter", 1, MemoryStore())
    s.set(lambda n: n + 1)
    s.set(lambda n: n + 1)
    assert s.get() == 3


def test_equal_value_is_noop():
    store = CountingStore()
    s = Slice("ns-notes", ["a"], store)
    seen = []
    s.watch(lambda key, value, origin: seen.append(origin))
    s.set(["a"])
    assert store.writes == []
    assert seen == []


def test_store_failure_keeps_value_in_memory(caplog):
    s = Slice("ns-notes", [], FailingStore())
    with caplog.at_level(logging.ERROR):
        s.set(["a"])
    assert s.get() == ["a"]
    assert "continuing in memory" in caplog.text


def test_unserializable_value_is_rejected_before_adoption():
    s = Slice("ns-notes", ["a"], MemoryStore())
    with pytest.raises(SerializationError):
        s.set([object()])
    with pytest.raises(SerializationError):
        s.set([float("nan")])
    assert s.get() == ["a"]


def test_watch_and_unwatch():
    s = Slice("ns-notes", [], MemoryStore())
    seen = []
    unwatch = s.watch(lambda key, value, origin: seen.append((key, value, origin)))
    s.set(["a"])
    unwatch()
    s.set(["b"])
    assert seen == [("ns-notes", ["a"], "local")]


def test_reload_rereads_store():
    store = MemoryStore()
    s = Slice("ns-notes", [], store)
    store.write("ns-notes", '["restored"]')
    s.reload()
    assert s.get() == ["restored"]


def test_record_slice_round_trips_through_store():
    store = MemoryStore()
    codec = RecordListCodec(Contact)
    s = Slice("ns-contacts", (), store, codec=codec)
    s.set((Contact("c1", "Manager", "Faisal", "0300"),))

    again = Slice("ns-contacts", (), store, codec=codec)
    assert again.get() == (Contact("c1", "Manager", "Faisal", "0300"),)


@pytest.mark.asyncio
async def test_remote_echo_is_not_written_or_pushed_again():
    store = CountingStore()
    mirror = MemoryMirror()
    s = Slice("ns-notes", [], store, mirror, debounce_seconds=FAST)

    s.set(["a"])
    await s.flush()
    await settle()
    await asyncio.sleep(FAST * 3)

    assert store.writes == ["ns-notes"]
    assert mirror.pushes == [("ns-notes", ["a"])]
    assert s.get() == ["a"]


@pytest.mark.asyncio
async def test_burst_of_sets_is_pushed_once_with_last_value():
    mirror = MemoryMirror()
    s = Slice("ns-notes", [], MemoryStore(), mirror, debounce_seconds=FAST)

    s.set(["v1"])
    s.set(["v2"])
    s.set(["v3"])
    assert s.push_pending
    await asyncio.sleep(FAST * 5)
    await settle()

    assert mirror.pushes == [("ns-notes", ["v3"])]
    assert not s.push_pending


@pytest.mark.asyncio
async def test_external_change_is_adopted_without_push():
    store = CountingStore()
    mirror = MemoryMirror()
    s = Slice("ns-notes", [], store, mirror, debounce_seconds=FAST)
    seen = []
    s.watch(lambda key, value, origin: seen.append(origin))

    mirror.write("ns-notes", ["from another device"])
    await settle()
    await asyncio.sleep(FAST * 3)

    assert s.get() == ["from another device"]
    assert store.read("ns-notes") == '["from another device"]'
    assert mirror.pushes == []
    assert seen == ["remote"]


@pytest.mark.asyncio
async def test_external_change_cancels_pending_push():
    mirror = MemoryMirror()
    s = Slice("ns-notes", [], MemoryStore(), mirror, debounce_seconds=FAST)

    s.set(["local"])
    mirror.write("ns-notes", ["remote"])
    await settle()
    await asyncio.sleep(FAST * 5)

    assert s.get() == ["remote"]
    assert mirror.pushes == []


@pytest.mark.asyncio
async def test_late_echo_of_older_push_does_not_regress_value():
    mirror = MemoryMirror()
    s = Slice("ns-notes", [], MemoryStore(), mirror, debounce_seconds=FAST)

    s.set(["v1"])
    await s.flush()
    s.set(["v2"])
    await settle()
    assert s.get() == ["v2"]

    await asyncio.sleep(FAST * 5)
    await settle()
    assert s.get() == ["v2"]
    assert [v for _, v in mirror.pushes] == [["v1"], ["v2"]]


@pytest.mark.asyncio
async def test_existing_remote_document_is_delivered_on_subscribe():
    mirror = MemoryMirror()
    mirror.write("ns-notes", ["remote"])
    s = Slice("ns-notes", [], MemoryStore(), mirror, debounce_seconds=FAST)
    await settle()
    assert s.get() == ["remote"]


@pytest.mark.asyncio
async def test_malformed_remote_value_is_ignored(caplog):
    mirror = MemoryMirror()
    s = Slice("ns-contacts", (), MemoryStore(), mirror, codec=RecordListCodec(Contact), debounce_seconds=FAST)
    with caplog.at_level(logging.WARNING):
        mirror.write("ns-contacts", "not a list")
        await settle()
    assert s.get() == ()
    assert "malformed" in caplog.text


@pytest.mark.asyncio
async def test_close_stops_remote_updates():
    mirror = MemoryMirror()
    s = Slice("ns-notes", [], MemoryStore(), mirror, debounce_seconds=FAST)
    s.set(["pending"])
    s.close()
    mirror.write("ns-notes", ["remote"])
    await settle()
    await asyncio.sleep(FAST * 3)
    assert s.get() == ["pending"]
    assert mirror.pushes == []


class GatedMirror(MemoryMirror):
    """Holds every push until ``gate`` is set."""

    def __init__(self):
        super().__init__()
        self.gate = asyncio.Event()

    async def push(self, key, value):
        await self.gate.wait()
        return await super().push(key, value)


@pytest.mark.asyncio
async def test_own_push_landing_after_external_change_is_adopted():
    mirror = GatedMirror()
    a = Slice("ns-notes", [], MemoryStore(), mirror, debounce_seconds=FAST)
    b = Slice("ns-notes", [], MemoryStore(), mirror, debounce_seconds=FAST)

    a.set(["a-v2"])
    in_flight = asyncio.ensure_future(a.flush())
    await settle()
    mirror.write("ns-notes", ["b-v3"])
    await settle()
    assert a.get() == ["b-v3"]

    mirror.gate.set()
    await in_flight
    await settle()

    assert mirror.document("ns-notes") == {"value": ["a-v2"]}
    assert a.get() == ["a-v2"]
    assert b.get() == ["a-v2"]
