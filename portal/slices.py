"""
Synchronized slices.

A slice is one named piece of application state. It is hydrated from the
local store before anyone can read it, written through to the store on every
change, and mirrored to the remote with a debounced push. Remote changes flow
back in through the mirror subscription.

Every event a slice handles is classified into a ``Transition`` and the
transition table decides the effects. The echo guard lives in the
classification step: a remote value equal to the current value, or to a value
this slice pushed and has not seen come back yet, is a ``REMOTE_ECHO`` and
has no effect at all. A ``REMOTE_EXTERNAL_CHANGE`` is adopted and persisted
but never pushed back, and it cancels any push still waiting in the debounce
window. It also empties the outbox: a push that lands on the remote after the
adopted change is newer than it, so its echo is adopted too.
"""
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Generic, List, Optional, TypeVar, Union

from portal.codecs import Codec, dumps, loads
from portal.exceptions import SerializationError, StoreError
from portal.mirror import NullMirror, RemoteMirror, Unsubscribe
from portal.scheduling import DebouncedTask
from portal.storage import Store

logger = logging.getLogger(__name__)

T = TypeVar("T")

Updater = Callable[[T], T]
Listener = Callable[[str, Any, str], None]

DEFAULT_DEBOUNCE_SECONDS = 1.0


class SliceState(Enum):
    UNINITIALIZED = "uninitialized"
    HYDRATED = "hydrated"


class Transition(Enum):
    NOOP = "noop"
    LOCAL_WRITE = "local_write"
    REMOTE_ECHO = "remote_echo"
    REMOTE_EXTERNAL_CHANGE = "remote_external_change"


@dataclass(frozen=True)
class Effects:
    adopt: bool
    persist: bool
    push: bool
    cancel_push: bool
    clear_outbox: bool
    notify: bool


TRANSITIONS = {
    Transition.NOOP: Effects(
        adopt=False, persist=False, push=False, cancel_push=False, clear_outbox=False, notify=False),
    Transition.LOCAL_WRITE: Effects(
        adopt=True, persist=True, push=True, cancel_push=False, clear_outbox=False, notify=True),
    Transition.REMOTE_ECHO: Effects(
        adopt=False, persist=False, push=False, cancel_push=False, clear_outbox=False, notify=False),
    Transition.REMOTE_EXTERNAL_CHANGE: Effects(
        adopt=True, persist=True, push=False, cancel_push=True, clear_outbox=True, notify=True),
}


class Slice(Generic[T]):
    def __init__(
        self,
        key: str,
        initial: T,
        store: Store,
        mirror: Optional[RemoteMirror] = None,
        codec: Optional[Codec] = None,
        debounce_seconds: float = DEFAULT_DEBOUNCE_SECONDS,
        outbox_limit: int = 16,
    ):
        self.key = key
        self.initial = initial
        self.codec = codec or Codec()
        self.state = SliceState.UNINITIALIZED
        self._store = store
        self._mirror = mirror or NullMirror()
        self._value: T = initial
        self._encoded: Any = self.codec.encode(initial)
        # payloads pushed to the mirror whose echo has not arrived yet
        self._outbox: List[Any] = []
        self._outbox_limit = outbox_limit
        self._listeners: List[Listener] = []
        self._unsubscribe: Optional[Unsubscribe] = None
        self._debouncer: Optional[DebouncedTask] = None
        if self._mirror.configured:
            self._debouncer = DebouncedTask(debounce_seconds, self._push, name=key)
        self._hydrate()

    def __repr__(self) -> str:
        return f"Slice({self.key!r}, state={self.state.value})"

    # -- consumer surface --

    def get(self) -> T:
        return self._value

    def set(self, value_or_updater: Union[T, Updater]) -> None:
        new_value = value_or_updater(self._value) if callable(value_or_updater) else value_or_updater
        payload = self.codec.encode(new_value)
        text = dumps(payload)
        transition = Transition.NOOP if payload == self._encoded else Transition.LOCAL_WRITE
        self._apply(transition, new_value, payload, text, origin="local")

    def watch(self, listener: Listener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unwatch() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unwatch

    @property
    def push_pending(self) -> bool:
        return self._debouncer is not None and self._debouncer.pending

    async def flush(self) -> None:
        """Push any debounced value immediately and wait for in-flight pushes."""
        if self._debouncer is not None:
            await self._debouncer.flush()

    def reload(self) -> None:
        """Re-read the local store, e.g. after a recovery restore rewrote it."""
        if self._debouncer is not None:
            self._debouncer.cancel()
        value, payload = self._read_stored()
        self._value, self._encoded = value, payload
        self._notify("reload")

    def close(self) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        if self._debouncer is not None:
            self._debouncer.cancel()

    # -- lifecycle --

    def _hydrate(self) -> None:
        self._value, self._encoded = self._read_stored()
        self.state = SliceState.HYDRATED
        self._unsubscribe = self._mirror.subscribe(self.key, self._on_remote_change)

    def _read_stored(self):
        try:
            text = self._store.read(self.key)
        except (StoreError, OSError) as e:
            logger.warning("Error reading local store key %s: %s", self.key, e)
            text = None
        if text is None:
            return self.initial, self.codec.encode(self.initial)
        try:
            value = self.codec.decode(loads(text))
        except SerializationError as e:
            logger.warning("Stored value for %s is unreadable, using initial: %s", self.key, e)
            return self.initial, self.codec.encode(self.initial)
        return value, self.codec.encode(value)

    # -- remote side --

    def _on_remote_change(self, data: Any) -> None:
        transition = self._classify_remote(data)
        if transition is Transition.REMOTE_ECHO:
            logger.debug("Ignoring echo of own write for %s", self.key)
            return
        try:
            value = self.codec.decode(data)
            text = dumps(data)
        except SerializationError as e:
            logger.warning("Ignoring malformed remote value for %s: %s", self.key, e)
            return
        logger.info("Synced %s from remote", self.key)
        self._apply(transition, value, self.codec.encode(value), text, origin="remote")

    def _classify_remote(self, data: Any) -> Transition:
        for i, sent in enumerate(self._outbox):
            if sent == data:
                del self._outbox[: i + 1]
                return Transition.REMOTE_ECHO
        if data == self._encoded:
            return Transition.REMOTE_ECHO
        return Transition.REMOTE_EXTERNAL_CHANGE

    async def _push(self, payload: Any) -> None:
        self._outbox.append(payload)
        del self._outbox[: -self._outbox_limit]
        if await self._mirror.push(self.key, payload):
            logger.info("Saved %s to remote", self.key)
            return
        for i in range(len(self._outbox) - 1, -1, -1):
            if self._outbox[i] is payload:
                del self._outbox[i]
                break

    # -- effects --

    def _apply(self, transition: Transition, value: T, payload: Any, text: str, origin: str) -> None:
        effects = TRANSITIONS[transition]
        if effects.adopt:
            self._value = value
            self._encoded = payload
        if effects.persist:
            self._write_store(text)
        if effects.clear_outbox:
            self._outbox.clear()
        if self._debouncer is not None:
            if effects.cancel_push:
                self._debouncer.cancel()
            if effects.push:
                self._debouncer.schedule(payload)
        if effects.notify:
            self._notify(origin)

    def _write_store(self, text: str) -> None:
        try:
            self._store.write(self.key, text)
        except (StoreError, OSError) as e:
            logger.error("Local store error for %s, continuing in memory: %s", self.key, e)

    def _notify(self, origin: str) -> None:
        for listener in list(self._listeners):
            listener(self.key, self._value, origin)
