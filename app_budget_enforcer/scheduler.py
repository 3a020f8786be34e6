"""Enforcement scheduler: the background poller and the foreground-entry tracker.

Both loops run the same tick: read the ledger, ask the usage source for
today's cumulative usage, reconcile, and write the result back. Nothing is
cached between ticks, and a write computed from a snapshot that has since
changed is dropped and redone on the next tick.

Per watched-app session::

    IDLE --enter, budget left--> TRACKING --budget reaches 0--> BLOCKED
    IDLE --enter, no budget----> BLOCKED
    TRACKING / BLOCKED --leave--> IDLE
"""

from __future__ import annotations

import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import replace
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Iterable, Optional, Protocol, Tuple

from . import LOGGER_NAME
from .ledger import BudgetLedger, LedgerConflictError, LedgerError, LedgerStore
from .reconcile import ReconciliationResult, UsageObservation, reconcile
from .surface import BudgetNotifier
from .usage import local_midnight, now_local

logger = logging.getLogger(f"{LOGGER_NAME}.scheduler")


class UsageSource(Protocol):
    def query_cumulative_minutes(
        self, package_set: Iterable[str], window_start: datetime, window_end: datetime
    ) -> int: ...


class ForegroundDetector(Protocol):
    def current_foreground_package(self, lookback_seconds: float) -> Optional[str]: ...


class InterventionDispatcher(Protocol):
    def dispatch(self, package: str) -> None: ...


class Cadence(Enum):
    BASE = "base"
    FAST = "fast"


class TrackingState(Enum):
    IDLE = "idle"
    TRACKING = "tracking"
    BLOCKED = "blocked"


class CadencePolicy:
    """Poll fast only while a watched app is actually in front."""

    def __init__(self, base_seconds: float = 15.0, fast_seconds: float = 5.0):
        self.base_seconds = base_seconds
        self.fast_seconds = fast_seconds

    def cadence_for(self, foreground_watched: bool) -> Cadence:
        return Cadence.FAST if foreground_watched else Cadence.BASE

    def interval(self, cadence: Cadence) -> float:
        return self.fast_seconds if cadence is Cadence.FAST else self.base_seconds

    def next_interval(self, foreground_watched: bool) -> float:
        return self.interval(self.cadence_for(foreground_watched))


class EnforcementScheduler:
    def __init__(
        self,
        store: LedgerStore,
        usage_source: UsageSource,
        detector: ForegroundDetector,
        dispatcher: InterventionDispatcher,
        notifier: Optional[BudgetNotifier] = None,
        policy: Optional[CadencePolicy] = None,
        initial_delay_seconds: float = 2.0,
        read_timeout_seconds: float = 3.0,
        lookback_seconds: float = 10.0,
        ignored_packages: Iterable[str] = (),
        clock: Callable[[], datetime] = now_local,
    ):
        self.store = store
        self.usage_source = usage_source
        self.detector = detector
        self.dispatcher = dispatcher
        self.notifier = notifier or BudgetNotifier()
        self.policy = policy or CadencePolicy()
        self.initial_delay_seconds = initial_delay_seconds
        self.read_timeout_seconds = read_timeout_seconds
        self.lookback_seconds = lookback_seconds
        self.ignored_packages = frozenset(ignored_packages)
        self._clock = clock

        self._executor = ThreadPoolExecutor(max_workers=4, thread_name_prefix="budget-io")
        self._lock = threading.Lock()
        self._stop_event = threading.Event()
        self._background_thread: Optional[threading.Thread] = None
        self._background_cadence = Cadence.BASE
        self._state = TrackingState.IDLE
        self._package: Optional[str] = None
        self._tracking_stop: Optional[threading.Event] = None
        self._tracking_thread: Optional[threading.Thread] = None

    # -------------------------------------------------------- LIFECYCLE --

    @property
    def state(self) -> TrackingState:
        with self._lock:
            return self._state

    @property
    def tracked_package(self) -> Optional[str]:
        with self._lock:
            return self._package

    @property
    def background_cadence(self) -> Cadence:
        return self._background_cadence

    @property
    def stopped(self) -> bool:
        return self._stop_event.is_set()

    def start(self) -> None:
        if self.stopped:
            logger.warning("Scheduler was stopped and cannot be restarted.")
            return
        with self._lock:
            if self._background_thread is not None:
                return
            self._background_thread = threading.Thread(
                target=self._background_loop, name="budget-background", daemon=True
            )
            thread = self._background_thread
        logger.info(
            "Starting scheduler (base %ss, fast %ss).",
            self.policy.base_seconds,
            self.policy.fast_seconds,
        )
        thread.start()

    def stop(self, timeout: float = 5.0) -> None:
        self._stop_event.set()
        with self._lock:
            threads = [self._background_thread, self._tracking_thread]
            self._background_thread = None
            self._stop_tracking_locked()
            self._state = TrackingState.IDLE
            self._package = None
        for thread in threads:
            if thread is not None and thread is not threading.current_thread():
                thread.join(timeout)
        self._executor.shutdown(wait=False)
        logger.info("Scheduler stopped.")

    # ------------------------------------------------------- BACKGROUND --

    def _background_loop(self) -> None:
        delay = self.initial_delay_seconds
        while not self._stop_event.wait(delay):
            try:
                delay = self.background_tick()
            except Exception:
                logger.exception("Unexpected error in background tick.")
                delay = self.policy.interval(self._background_cadence)

    def background_tick(self) -> float:
        """Run one background pass and return the delay before the next one."""
        result = self.reconcile_now()
        if result is None:
            return self.policy.interval(self._background_cadence)

        ok, foreground = self._read_foreground()
        if not ok:
            return self.policy.interval(self._background_cadence)

        watched = self._is_watched(foreground, result.ledger)
        if watched and result.exhausted:
            self._block(foreground)
        self._background_cadence = self.policy.cadence_for(watched)
        return self.policy.interval(self._background_cadence)

    # ------------------------------------------------ FOREGROUND ENTRY --

    def on_foreground_changed(self, package: Optional[str]) -> None:
        if self.stopped:
            return
        ledger = self._read_ledger()
        if ledger is None:
            return
        if not self._is_watched(package, ledger):
            self._leave()
            return

        with self._lock:
            if self._state is TrackingState.TRACKING and self._package == package:
                return

        # Reconcile on entry so usage since the last background tick is charged first.
        result = self.reconcile_now()
        if result is not None:
            exhausted = result.exhausted
        else:
            refreshed = self._read_ledger()
            if refreshed is None:
                return
            exhausted = refreshed.remaining_minutes <= 0

        if exhausted:
            self._block(package)
        else:
            self._start_tracking(package)

    def tracking_tick(self, package: str) -> bool:
        """One fast-cadence pass for ``package``; False ends the sub-loop."""
        with self._lock:
            if self._state is not TrackingState.TRACKING or self._package != package:
                return False
        result = self.reconcile_now()
        if result is None:
            return True
        if result.exhausted:
            self._block(package)
            return False
        return True

    def _tracking_loop(self, package: str, stop: threading.Event) -> None:
        while not stop.wait(self.policy.fast_seconds):
            if self._stop_event.is_set():
                break
            try:
                if not self.tracking_tick(package):
                    break
            except Exception:
                logger.exception("Unexpected error while tracking %s.", package)

    def _start_tracking(self, package: str) -> None:
        with self._lock:
            if self.stopped:
                return
            self._stop_tracking_locked()
            stop = threading.Event()
            thread = threading.Thread(
                target=self._tracking_loop,
                args=(package, stop),
                name=f"budget-tracking-{package}",
                daemon=True,
            )
            self._state = TrackingState.TRACKING
            self._package = package
            self._tracking_stop = stop
            self._tracking_thread = thread
        logger.info("Tracking %s.", package)
        thread.start()

    def _block(self, package: str) -> None:
        with self._lock:
            self._stop_tracking_locked()
            if self._state is not TrackingState.BLOCKED or self._package != package:
                logger.info("Budget exhausted while %s is in front, blocking.", package)
            self._state = TrackingState.BLOCKED
            self._package = package
        try:
            self.dispatcher.dispatch(package)
        except Exception:
            logger.warning("Intervention for %s failed.", package, exc_info=True)

    def _leave(self) -> None:
        with self._lock:
            if self._state is TrackingState.IDLE:
                return
            logger.info("Left %s, back to idle.", self._package)
            self._stop_tracking_locked()
            self._state = TrackingState.IDLE
            self._package = None

    def _stop_tracking_locked(self) -> None:
        # Never joins: this may run on the tracking thread itself.
        if self._tracking_stop is not None:
            self._tracking_stop.set()
        self._tracking_stop = None
        self._tracking_thread = None

    # ------------------------------------------------------- RECONCILE --

    def reconcile_now(self) -> Optional[ReconciliationResult]:
        """Read, reconcile and write back; None when nothing durable happened."""
        ledger = self._read_ledger()
        if ledger is None:
            return None

        now = self._clock()
        window_start = local_midnight(now)
        if ledger.watched_packages:
            try:
                cumulative = self._call_external(
                    self.usage_source.query_cumulative_minutes,
                    ledger.watched_packages,
                    window_start,
                    now,
                )
            except Exception:
                logger.warning("Usage source unavailable, skipping tick.", exc_info=True)
                return None
        else:
            cumulative = 0

        observation = UsageObservation(
            package_set=ledger.watched_packages,
            window_start=window_start,
            window_end=now,
            cumulative_minutes=cumulative,
        )
        result = reconcile(ledger, observation, now.date())
        if result.ledger == ledger:
            return result
        if self.stopped:
            return None

        try:
            committed = self.store.commit(result.ledger, expected_version=ledger.version)
        except LedgerConflictError:
            logger.info("Ledger changed during tick, reconciling again next tick.")
            return None
        except LedgerError:
            logger.warning("Failed to persist ledger, retrying next tick.", exc_info=True)
            return None

        if result.minutes_deducted > 0:
            logger.info(
                "Deducted %s min (usage today %s min), %s min remaining.",
                result.minutes_deducted,
                result.new_checkpoint_usage_minutes,
                result.new_remaining_minutes,
            )
            self.notifier.notify(result.new_remaining_minutes)
        return replace(result, ledger=committed)

    # ---------------------------------------------------------- HELPERS --

    def _is_watched(self, package: Optional[str], ledger: BudgetLedger) -> bool:
        return (
            package is not None
            and package not in self.ignored_packages
            and package in ledger.watched_packages
        )

    def _read_ledger(self) -> Optional[BudgetLedger]:
        try:
            return self.store.read()
        except LedgerError:
            logger.warning("Failed to read ledger, skipping tick.", exc_info=True)
            return None

    def _read_foreground(self) -> Tuple[bool, Optional[str]]:
        try:
            return True, self._call_external(
                self.detector.current_foreground_package, self.lookback_seconds
            )
        except Exception:
            logger.warning("Foreground detector unavailable, skipping tick.", exc_info=True)
            return False, None

    def _call_external(self, func: Callable[..., Any], *args: Any) -> Any:
        future = self._executor.submit(func, *args)
        return future.result(timeout=self.read_timeout_seconds)
