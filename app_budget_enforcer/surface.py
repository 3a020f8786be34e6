"""Configuration and notification surfaces backed by the ledger store."""

from __future__ import annotations

import logging
import threading
from typing import Any, Callable, Dict, Iterable, Optional

from . import LOGGER_NAME
from .ledger import LedgerStore, normalize_packages

logger = logging.getLogger(f"{LOGGER_NAME}.surface")

BudgetSink = Callable[[int], None]


class BudgetNotifier:
    """Holds the single ``on_budget_changed`` sink.

    Delivery is best effort. Consumers that miss an update catch up by
    calling ``BudgetControls.get_remaining_minutes``.
    """

    def __init__(self, sink: Optional[BudgetSink] = None):
        self._sink = sink
        self._lock = threading.Lock()

    def register(self, sink: Optional[BudgetSink]) -> None:
        with self._lock:
            self._sink = sink

    def notify(self, remaining_minutes: int) -> None:
        with self._lock:
            sink = self._sink
        if sink is None:
            return
        try:
            sink(remaining_minutes)
        except Exception:
            logger.warning("Budget change sink failed.", exc_info=True)


def _validate_minutes(value: Any) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValueError(f"Minutes must be an integer, got {value!r}.")
    if value < 0:
        raise ValueError(f"Minutes must be >= 0, got {value}.")
    return value


class BudgetControls:
    def __init__(self, store: LedgerStore, notifier: Optional[BudgetNotifier] = None):
        self.store = store
        self.notifier = notifier or BudgetNotifier()

    def set_remaining_minutes(self, minutes: int) -> int:
        minutes = _validate_minutes(minutes)
        ledger = self.store.update(remaining_minutes=minutes)
        logger.info("Remaining budget set to %s min.", ledger.remaining_minutes)
        self.notifier.notify(ledger.remaining_minutes)
        return ledger.remaining_minutes

    def add_minutes(self, minutes: int) -> int:
        """Credit earned time on top of whatever is left."""
        minutes = _validate_minutes(minutes)
        # Read and update are separate store operations; a tick landing in between is overwritten.
        current = self.store.read().remaining_minutes
        return self.set_remaining_minutes(current + minutes)

    def set_watched_packages(self, packages: Iterable[str]) -> frozenset:
        watched = normalize_packages(packages)
        ledger = self.store.update(watched_packages=watched)
        logger.info("Watching %d package(s): %s", len(watched), ", ".join(sorted(watched)) or "-")
        return ledger.watched_packages

    def get_remaining_minutes(self) -> int:
        return self.store.read().remaining_minutes

    def status(self) -> Dict[str, Any]:
        ledger = self.store.read()
        return {
            "remaining_minutes": ledger.remaining_minutes,
            "watched_packages": sorted(ledger.watched_packages),
            "used_minutes_today": ledger.checkpoint_usage_minutes,
            "last_reconciled_day": ledger.checkpoint_day.isoformat() if ledger.checkpoint_day else None,
            "version": ledger.version,
        }
