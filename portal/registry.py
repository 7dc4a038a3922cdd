"""
The application state surface: every synchronized slice under a stable key.

A registry is an ordinary object built once at startup and handed to the
code that needs it (``provide`` / ``current_registry`` for ambient access);
nothing here is a module-level singleton.
"""
import logging
from contextlib import contextmanager
from contextvars import ContextVar
from dataclasses import dataclass
from typing import Any, Dict, Iterator, List, Optional, Tuple

from portal import seed
from portal.codecs import Codec, RecordCodec, RecordListCodec, ScalarCodec, dumps, loads
from portal.config import Settings
from portal.domain import (
    BuildingInfo, CashTransfer, Contact, DeletedItem, Expense, Flat, Inquiry, Loan, Message,
    Notice, Notification, Payment, PersonalBudgetEntry, RecurringExpense, Task,
    TenantTransaction, User,
)
from portal.events import SLICE_CHANGED, STATE_RESTORED, EventBus
from portal.exceptions import SerializationError, SnapshotError
from portal.mirror import NullMirror, RedisMirror, RemoteMirror
from portal.slices import DEFAULT_DEBOUNCE_SECONDS, Slice
from portal.storage import SqliteStore, Store

logger = logging.getLogger(__name__)

MONTHLY_RUN_SUFFIX = "monthly-run"
RESTORE_POINT_SUFFIX = "restore-point"
TENANT_REMINDER_SUFFIX = "tenant-notif-run"


@dataclass(frozen=True)
class SliceSpec:
    name: str       # attribute name and snapshot field
    suffix: str     # store key is "<namespace>-<suffix>"
    codec: Codec
    initial: Any


def default_slice_specs() -> Tuple[SliceSpec, ...]:
    users, flats = seed.initial_users_and_flats()
    return (
        SliceSpec("users", "users", RecordListCodec(User), users),
        SliceSpec("flats", "flats", RecordListCodec(Flat), flats),
        SliceSpec("payments", "payments", RecordListCodec(Payment), ()),
        SliceSpec("expenses", "expenses", RecordListCodec(Expense), ()),
        SliceSpec("recurring_expenses", "recurring-expenses", RecordListCodec(RecurringExpense), seed.RECURRING_EXPENSES),
        SliceSpec("notices", "notices", RecordListCodec(Notice), ()),
        SliceSpec("messages", "messages", RecordListCodec(Message), ()),
        SliceSpec("notifications", "notifications", RecordListCodec(Notification), ()),
        SliceSpec("tasks", "tasks", RecordListCodec(Task), ()),
        SliceSpec("inquiries", "inquiries", RecordListCodec(Inquiry), ()),
        SliceSpec("tenant_transactions", "tenantTransactions", RecordListCodec(TenantTransaction), ()),
        SliceSpec("personal_budget_entries", "personalBudgetEntries", RecordListCodec(PersonalBudgetEntry), ()),
        SliceSpec("contacts", "contacts", RecordListCodec(Contact), seed.CONTACTS),
        SliceSpec("deleted_items", "deleted-items", RecordListCodec(DeletedItem), ()),
        SliceSpec("president_message", "president-message", ScalarCodec(str), seed.PRESIDENT_MESSAGE),
        SliceSpec("loans", "loans", RecordListCodec(Loan), ()),
        SliceSpec("cash_transfers", "cash-transfers", RecordListCodec(CashTransfer), ()),
        SliceSpec("transaction_counter", "tx-counter", ScalarCodec(int), 1),
        SliceSpec("building_info", "building-info", RecordCodec(BuildingInfo), seed.BUILDING_INFO),
    )


class StateRegistry:
    def __init__(
        self,
        store: Store,
        mirror: Optional[RemoteMirror] = None,
        namespace: str = Settings.namespace,
        debounce_seconds: float = DEFAULT_DEBOUNCE_SECONDS,
        bus: Optional[EventBus] = None,
        specs: Optional[Tuple[SliceSpec, ...]] = None,
    ):
        self.store = store
        self.mirror = mirror or NullMirror()
        self.namespace = namespace
        self.bus = bus or EventBus()
        self._slices: Dict[str, Slice] = {}
        if not self.mirror.configured:
            logger.info("No remote backend configured; running in local store mode")
        for spec in specs or default_slice_specs():
            s = Slice(
                self.key_for(spec.suffix),
                spec.initial,
                store=store,
                mirror=self.mirror,
                codec=spec.codec,
                debounce_seconds=debounce_seconds,
            )
            s.watch(self._on_slice_change)
            self._slices[spec.name] = s

    def __getattr__(self, name: str) -> Slice:
        slices = self.__dict__.get("_slices", {})
        if name in slices:
            return slices[name]
        raise AttributeError(f"{type(self).__name__} has no slice {name!r}")

    def key_for(self, suffix: str) -> str:
        return f"{self.namespace}-{suffix}"

    @property
    def names(self) -> List[str]:
        return list(self._slices)

    def slice(self, name: str) -> Slice:
        return self._slices[name]

    def slice_keys(self) -> List[str]:
        return [s.key for s in self._slices.values()]

    @property
    def monthly_run_key(self) -> str:
        return self.key_for(MONTHLY_RUN_SUFFIX)

    def tenant_reminder_key(self, month: str) -> str:
        return self.key_for(f"{TENANT_REMINDER_SUFFIX}-{month}")

    @property
    def restore_point_key(self) -> str:
        return self.key_for(RESTORE_POINT_SUFFIX)

    @property
    def connection_status(self) -> str:
        return self.mirror.status

    def _on_slice_change(self, key: str, value: Any, origin: str) -> None:
        self.bus.publish(SLICE_CHANGED, {"key": key, "origin": origin})

    # -- snapshots --

    def snapshot(self) -> Dict[str, Any]:
        return {name: s.codec.encode(s.get()) for name, s in self._slices.items()}

    def export_snapshot(self) -> str:
        return dumps(self.snapshot())

    def parse_snapshot(self, text: str) -> Dict[str, Any]:
        """Decode every known field present in a snapshot.

        Unknown fields are ignored and a ``null`` field counts as absent.
        """
        try:
            data = loads(text)
        except SerializationError as e:
            raise SnapshotError(f"snapshot is not valid JSON: {e}") from e
        if not isinstance(data, dict):
            raise SnapshotError("snapshot must be a JSON object")

        present = [name for name in self._slices if data.get(name) is not None]
        if not present:
            raise SnapshotError("snapshot contains none of the expected fields")

        decoded, bad = {}, []
        for name in present:
            try:
                decoded[name] = self._slices[name].codec.decode(data[name])
            except SerializationError as e:
                bad.append(f"{name}: {e}")
        if bad:
            raise SnapshotError("invalid snapshot fields: " + "; ".join(bad))
        return decoded

    def import_snapshot(self, text: str) -> List[str]:
        """Apply a (possibly partial) snapshot through the slices; returns restored names."""
        decoded = self.parse_snapshot(text)
        for name, value in decoded.items():
            self._slices[name].set(value)
        restored = list(decoded)
        logger.info("Restored %d slices from snapshot", len(restored))
        self.bus.publish(STATE_RESTORED, {"slices": restored})
        return restored

    # -- lifecycle --

    def reload(self) -> None:
        for s in self._slices.values():
            s.reload()

    async def connect(self) -> None:
        await self.mirror.connect()

    async def flush(self) -> None:
        for s in self._slices.values():
            await s.flush()

    async def aclose(self) -> None:
        await self.flush()
        self.close()
        await self.mirror.close()

    def close(self) -> None:
        for s in self._slices.values():
            s.close()


def build_mirror(settings: Settings) -> RemoteMirror:
    if settings.remote_backend == "redis":
        return RedisMirror(settings.redis_url, collection=settings.collection)
    return NullMirror()


def create_registry(settings: Optional[Settings] = None) -> StateRegistry:
    settings = settings or Settings.from_env()
    return StateRegistry(
        SqliteStore(settings.db_path),
        build_mirror(settings),
        namespace=settings.namespace,
        debounce_seconds=settings.debounce_seconds,
    )


_current: ContextVar[Optional[StateRegistry]] = ContextVar("portal_registry", default=None)


@contextmanager
def provide(registry: StateRegistry) -> Iterator[StateRegistry]:
    token = _current.set(registry)
    try:
        yield registry
    finally:
        _current.reset(token)


def current_registry() -> StateRegistry:
    registry = _current.get()
    if registry is None:
        raise RuntimeError("current_registry() must be used inside provide(registry)")
    return registry
