"""Activity-aware sync scheduling.

Sync cycles are requested when the user goes idle (sliding inactivity
window), on a periodic check, on reconnection and at startup. No cycle
starts while the user is active unless the maximum interval since the
last cycle has elapsed.
"""

import logging
import threading
import time
from typing import Callable, Optional

from fieldsync.types import SyncResult

from .engine import SyncEngine

logger = logging.getLogger(__name__)


class SyncScheduler:
    """Owns the timers that trigger sync cycles.

    Args:
        engine: The sync engine to drive.
        inactivity_delay: Seconds without activity before the user counts as idle.
        periodic_interval: Seconds between periodic checks.
        min_interval: Minimum seconds between automatic cycles.
        max_interval: Ceiling; a cycle is forced once this many seconds pass.
        startup_delay: Seconds before the initial forced cycle.
        clock: Monotonic clock in seconds.
        timer_factory: ``threading.Timer``-compatible factory.
    """

    def __init__(
        self,
        engine: SyncEngine,
        inactivity_delay: float = 50.0,
        periodic_interval: float = 30.0,
        min_interval: float = 30.0,
        max_interval: float = 300.0,
        startup_delay: float = 2.0,
        clock: Callable[[], float] = time.monotonic,
        timer_factory=threading.Timer,
    ):
        self.engine = engine
        self.inactivity_delay = inactivity_delay
        self.periodic_interval = periodic_interval
        self.min_interval = min_interval
        self.max_interval = max_interval
        self.startup_delay = startup_delay
        self._clock = clock
        self._timer_factory = timer_factory

        self._lock = threading.Lock()
        self._running = False
        self._user_active = False
        self._last_sync: Optional[float] = None
        self._inactivity_timer = None
        self._periodic_timer = None
        self._ceiling_timer = None
        self._startup_timer = None

    # === Lifecycle ===

    def start(self) -> None:
        with self._lock:
            if self._running:
                return
            self._running = True
            self._startup_timer = self._schedule(self.startup_delay, self._on_startup)
            self._periodic_timer = self._schedule(self.periodic_interval, self._on_periodic)
        logger.info("Sync scheduler started")

    def stop(self) -> None:
        with self._lock:
            self._running = False
            for timer in (
                self._inactivity_timer,
                self._periodic_timer,
                self._ceiling_timer,
                self._startup_timer,
            ):
                if timer is not None:
                    timer.cancel()
            self._inactivity_timer = None
            self._periodic_timer = None
            self._ceiling_timer = None
            self._startup_timer = None
        logger.info("Sync scheduler stopped")

    @property
    def running(self) -> bool:
        return self._running

    @property
    def user_active(self) -> bool:
        return self._user_active

    def _schedule(self, delay: float, fn):
        timer = self._timer_factory(delay, fn)
        timer.daemon = True
        timer.start()
        return timer

    # === Signals ===

    def record_activity(self) -> None:
        """Mark the user active and restart the inactivity window."""
        with self._lock:
            if not self._running:
                return
            self._user_active = True
            if self._inactivity_timer is not None:
                self._inactivity_timer.cancel()
            self._inactivity_timer = self._schedule(self.inactivity_delay, self._on_idle)

    def on_connectivity_change(self, online: bool) -> Optional[SyncResult]:
        """Reconnection forces a cycle."""
        self.engine.notify_connectivity(online)
        if online and self._running:
            logger.info("Connectivity restored; forcing sync")
            return self._run(force=True)
        return None

    def request_sync(
        self, force: bool = False, ignore_activity: bool = False
    ) -> Optional[SyncResult]:
        """Run a cycle if the scheduling policy allows one now.

        Args:
            force: Explicit request; bypasses scheduling policy and the
                engine's circuit breaker.
            ignore_activity: Bypass activity deferral and the minimum
                interval only. A paused engine still skips the cycle.
        """
        now = self._clock()
        elapsed = None if self._last_sync is None else now - self._last_sync
        if elapsed is not None and elapsed >= self.max_interval:
            ignore_activity = True
        if not (force or ignore_activity):
            if self._user_active:
                logger.debug("User active; deferring sync")
                return None
            if elapsed is not None and elapsed < self.min_interval:
                logger.debug(f"Last sync {elapsed:.0f}s ago; skipping")
                return None
        return self._run(force=force)

    # === Timer callbacks ===

    def _on_idle(self) -> None:
        with self._lock:
            self._user_active = False
            self._inactivity_timer = None
        self.request_sync()

    def _on_periodic(self) -> None:
        try:
            self.request_sync()
        finally:
            with self._lock:
                if self._running:
                    self._periodic_timer = self._schedule(self.periodic_interval, self._on_periodic)

    def _on_ceiling(self) -> None:
        with self._lock:
            self._ceiling_timer = None
        self.request_sync(ignore_activity=True)

    def _on_startup(self) -> None:
        with self._lock:
            self._startup_timer = None
        self.request_sync(ignore_activity=True)

    def _run(self, force: bool) -> SyncResult:
        try:
            result = self.engine.sync(force=force)
        finally:
            self._last_sync = self._clock()
            self._arm_ceiling()
        return result

    def _arm_ceiling(self) -> None:
        with self._lock:
            if not self._running:
                return
            if self._ceiling_timer is not None:
                self._ceiling_timer.cancel()
            self._ceiling_timer = self._schedule(self.max_interval, self._on_ceiling)
