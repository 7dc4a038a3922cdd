"""
Crash recovery from a stored restore point.

A restore point is the registry's full snapshot stored under its own key,
apart from the live slice keys. When the application hits a fault it cannot
handle, ``recover`` first tries the restore point once per session, then
falls back to wiping the slice keys so every slice re-initializes from its
initial value. A wipe is skipped when the previous one happened within
``loop_window`` seconds, so a fault that survives a wipe cannot loop.
"""
import logging
import time
from enum import Enum
from typing import Callable, Optional

from portal.codecs import dumps
from portal.exceptions import SerializationError, SnapshotError, StoreError
from portal.registry import StateRegistry
from portal.storage import MemoryStore, Store

logger = logging.getLogger(__name__)

RESTORE_ATTEMPTED = "app_auto_restore_attempted"
RESET_TIMESTAMP = "app_reset_timestamp"
LOOP_WINDOW_SECONDS = 5.0


class RecoveryOutcome(Enum):
    RESTORED = "restored"
    WIPED = "wiped"
    SKIPPED = "skipped"


class RecoveryManager:

    def __init__(
        self,
        registry: StateRegistry,
        session: Optional[Store] = None,
        restart: Optional[Callable[[], None]] = None,
        clock: Callable[[], float] = time.time,
        loop_window: float = LOOP_WINDOW_SECONDS,
    ):
        self.registry = registry
        # flags that must not outlive the running session
        self.session = session if session is not None else MemoryStore()
        self._restart = restart or registry.reload
        self._clock = clock
        self.loop_window = loop_window

    @property
    def store(self) -> Store:
        return self.registry.store

    def has_restore_point(self) -> bool:
        return self.store.read(self.registry.restore_point_key) is not None

    def create_restore_point(self) -> str:
        text = self.registry.export_snapshot()
        self.store.write(self.registry.restore_point_key, text)
        logger.info("Safe restore point created")
        return text

    def ensure_restore_point(self) -> bool:
        """Create a restore point on first boot. Returns True if one was created."""
        if self.has_restore_point():
            return False
        self.create_restore_point()
        return True

    def recover(self, error: Optional[BaseException] = None) -> RecoveryOutcome:
        logger.error("Unrecoverable application fault: %r", error)

        if self.session.read(RESTORE_ATTEMPTED) is None and self._restore():
            return RecoveryOutcome.RESTORED

        last = self.session.read(RESET_TIMESTAMP)
        now = self._clock()
        if last is not None and now - float(last) < self.loop_window:
            logger.error("Reset loop detected, leaving stored state untouched")
            return RecoveryOutcome.SKIPPED

        self._wipe()
        self.session.write(RESET_TIMESTAMP, repr(now))
        self.session.remove(RESTORE_ATTEMPTED)
        self._restart()
        return RecoveryOutcome.WIPED

    def reset_session(self) -> None:
        self.session.remove(RESET_TIMESTAMP)
        self.session.remove(RESTORE_ATTEMPTED)

    def _restore(self) -> bool:
        text = self.store.read(self.registry.restore_point_key)
        if text is None:
            logger.warning("No restore point available")
            return False
        logger.info("Attempting to restore from the last restore point")
        try:
            decoded = self.registry.parse_snapshot(text)
            for name, value in decoded.items():
                s = self.registry.slice(name)
                self.store.write(s.key, dumps(s.codec.encode(value)))
        except (SnapshotError, SerializationError, StoreError) as e:
            logger.error("Failed to restore from restore point: %s", e)
            return False
        self.session.write(RESTORE_ATTEMPTED, "true")
        self._restart()
        logger.info("Restored %d slices from restore point", len(decoded))
        return True

    def _wipe(self) -> None:
        keys = self.registry.slice_keys() + [self.registry.monthly_run_key]
        for key in keys:
            try:
                self.store.remove(key)
            except StoreError as e:
                logger.error("Could not remove %s during reset: %s", key, e)
        logger.warning("Cleared %d stored keys to reset application state", len(keys))
