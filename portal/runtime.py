"""
Hosting the state layer inside a synchronous application.

Slices schedule their debounced pushes on the running asyncio loop and the
remote mirror delivers changes on it, so every slice call has to happen on
that loop. ``EventLoopThread`` owns a loop in a daemon thread and runs
functions and coroutines on it for callers that have no loop of their own
(the Streamlit dashboard).
"""
import asyncio
import logging
import threading
from dataclasses import dataclass
from typing import Any, Callable, Coroutine, Optional

from portal.config import Settings
from portal.logging_setup import configure_logging
from portal.recovery import RecoveryManager
from portal.registry import StateRegistry, create_registry
from portal.scheduling import PeriodicTask
from portal.services import PortalServices, build_services

logger = logging.getLogger(__name__)


class EventLoopThread:

    def __init__(self, name: str = "portal-loop"):
        self.loop = asyncio.new_event_loop()
        self._thread = threading.Thread(target=self._run, name=name, daemon=True)

    def _run(self) -> None:
        asyncio.set_event_loop(self.loop)
        self.loop.run_forever()

    @property
    def running(self) -> bool:
        return self._thread.is_alive()

    def start(self) -> "EventLoopThread":
        if not self.running:
            self._thread.start()
        return self

    def run(self, coro: Coroutine, timeout: Optional[float] = None) -> Any:
        """Run a coroutine on the loop thread and wait for its result."""
        future = asyncio.run_coroutine_threadsafe(coro, self.loop)
        return future.result(timeout=timeout)

    def call(self, fn: Callable[..., Any], *args: Any, timeout: Optional[float] = None, **kwargs: Any) -> Any:
        """Call a plain function on the loop thread and wait for its result."""
        async def invoke():
            return fn(*args, **kwargs)

        return self.run(invoke(), timeout=timeout)

    def stop(self, timeout: float = 5.0) -> None:
        if not self.running:
            return
        self.loop.call_soon_threadsafe(self.loop.stop)
        self._thread.join(timeout)
        self.loop.close()


@dataclass
class Portal:
    host: EventLoopThread
    registry: StateRegistry
    services: PortalServices
    recovery: RecoveryManager
    reminders: Optional[PeriodicTask] = None

    def call(self, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        return self.host.call(fn, *args, **kwargs)

    def shutdown(self) -> None:
        if self.reminders is not None:
            self.host.run(self.reminders.stop())
        self.host.run(self.registry.aclose())
        self.host.stop()


def _run_monthly_automation(services: PortalServices) -> None:
    result = services.dues.run_monthly_automation()
    if result.is_left():
        logger.error("Monthly automation failed: %s", result.get_error())
        return
    summary = result.get_or_else({})
    logger.info("Monthly automation for %s: %d flats charged, %d recurring bills",
                summary["month"], len(summary["flats"]), len(summary["expenses"]))


def start_portal(settings: Optional[Settings] = None) -> Portal:
    """Build the registry on a fresh loop thread and bring the portal up.

    Connects the mirror, makes sure a restore point exists, runs the monthly
    automation (idempotent per month) and starts the reminder loop.
    """
    settings = settings or Settings.from_env()
    configure_logging(settings.log_level)

    host = EventLoopThread().start()
    registry = host.call(create_registry, settings)
    host.run(registry.connect())
    logger.info("Remote mirror status: %s", registry.connection_status)

    services = build_services(registry, prefix=settings.tx_prefix)
    recovery = RecoveryManager(registry)
    host.call(recovery.ensure_restore_point)
    if settings.monthly_automation:
        host.call(_run_monthly_automation, services)

    reminders = None
    if settings.reminder_interval_seconds > 0:
        reminders = PeriodicTask(
            settings.reminder_interval_seconds, services.notifications.generate_reminders, name="reminders",
        )
        host.call(reminders.start)
    return Portal(host=host, registry=registry, services=services, recovery=recovery, reminders=reminders)
