"""Budget ledger and its durable store.

The ledger is a single JSON document per installation. Every read and every
write takes the store's file lock, so each operation is atomic against any
other process or thread touching the same file, but nothing spans two
operations. Reconciliation writes are version-checked so that a tick computed
from a stale snapshot is dropped instead of being applied on top of a newer one.
"""

from __future__ import annotations

import json
import logging
import threading
from dataclasses import dataclass, replace
from datetime import date
from pathlib import Path
from typing import Any, Dict, FrozenSet, Iterable, Optional

from filelock import FileLock, Timeout

from . import LOGGER_NAME

logger = logging.getLogger(f"{LOGGER_NAME}.ledger")

KEY_REMAINING = "remaining_budget_minutes"
KEY_WATCHED = "watched_packages"
KEY_CHECKPOINT_USAGE = "last_reconciled_usage_minutes"
KEY_CHECKPOINT_DAY = "last_reconciled_day"
KEY_CHECKPOINT_PACKAGES = "checkpoint_packages"
KEY_VERSION = "version"

_CONFIG_FIELDS = {"remaining_minutes", "watched_packages"}


class LedgerError(Exception):
    """The ledger could not be read or written."""


class LedgerWriteError(LedgerError):
    """A write did not reach durable storage."""


class LedgerConflictError(LedgerWriteError):
    """The stored ledger changed after the snapshot the write was computed from."""


def _as_count(value: Any, default: int = 0) -> int:
    if isinstance(value, bool):
        return default
    try:
        return max(0, int(value))
    except (TypeError, ValueError):
        return default


def _as_day(value: Any) -> Optional[date]:
    if not value:
        return None
    try:
        return date.fromisoformat(str(value))
    except ValueError:
        return None


def _as_packages(value: Any) -> Optional[FrozenSet[str]]:
    if value is None:
        return None
    if isinstance(value, str):
        value = [value]
    try:
        return frozenset(str(item).strip() for item in value if str(item).strip())
    except TypeError:
        return None


def normalize_packages(packages: Iterable[str]) -> FrozenSet[str]:
    if isinstance(packages, str):
        raise ValueError("Watched packages must be a collection of identifiers, not a string.")
    result = set()
    for item in packages:
        if not isinstance(item, str):
            raise ValueError(f"Package identifier must be a string, got {item!r}.")
        item = item.strip()
        if item:
            result.add(item)
    return frozenset(result)


@dataclass(frozen=True)
class BudgetLedger:
    remaining_minutes: int = 0
    watched_packages: FrozenSet[str] = frozenset()
    checkpoint_usage_minutes: int = 0
    checkpoint_day: Optional[date] = None
    # Watch set the checkpoint was measured against; None until the first reconciliation.
    checkpoint_packages: Optional[FrozenSet[str]] = None
    version: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            KEY_REMAINING: self.remaining_minutes,
            KEY_WATCHED: sorted(self.watched_packages),
            KEY_CHECKPOINT_USAGE: self.checkpoint_usage_minutes,
            KEY_CHECKPOINT_DAY: self.checkpoint_day.isoformat() if self.checkpoint_day else None,
            KEY_CHECKPOINT_PACKAGES: (
                sorted(self.checkpoint_packages) if self.checkpoint_packages is not None else None
            ),
            KEY_VERSION: self.version,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "BudgetLedger":
        return cls(
            remaining_minutes=_as_count(data.get(KEY_REMAINING)),
            watched_packages=_as_packages(data.get(KEY_WATCHED)) or frozenset(),
            checkpoint_usage_minutes=_as_count(data.get(KEY_CHECKPOINT_USAGE)),
            checkpoint_day=_as_day(data.get(KEY_CHECKPOINT_DAY)),
            checkpoint_packages=_as_packages(data.get(KEY_CHECKPOINT_PACKAGES)),
            version=_as_count(data.get(KEY_VERSION)),
        )


class LedgerStore:
    def __init__(self, path: Path, lock_timeout: float = 5.0):
        self.path = Path(path).expanduser()
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._file_lock = FileLock(str(self.path) + ".lock", timeout=lock_timeout)
        self._thread_lock = threading.Lock()

    # ----------------------------------------------------------- PUBLIC --

    def read(self) -> BudgetLedger:
        try:
            with self._thread_lock, self._file_lock:
                return self._read_unlocked()
        except Timeout as exc:
            raise LedgerError(f"Timed out waiting for ledger lock at {self.path}") from exc

    def commit(self, ledger: BudgetLedger, expected_version: int) -> BudgetLedger:
        """Persist the reconciliation fields of ``ledger``.

        The write lands only if the stored version still equals
        ``expected_version``. Watch list changes made in between are never
        overwritten because they bump the version too.
        """
        try:
            with self._thread_lock, self._file_lock:
                current = self._read_unlocked()
                if current.version != expected_version:
                    raise LedgerConflictError(
                        f"Ledger moved from version {expected_version} to {current.version}"
                    )
                updated = replace(
                    current,
                    remaining_minutes=max(0, ledger.remaining_minutes),
                    checkpoint_usage_minutes=max(0, ledger.checkpoint_usage_minutes),
                    checkpoint_day=ledger.checkpoint_day,
                    checkpoint_packages=ledger.checkpoint_packages,
                    version=current.version + 1,
                )
                self._write_unlocked(updated)
                return updated
        except Timeout as exc:
            raise LedgerWriteError(f"Timed out waiting for ledger lock at {self.path}") from exc

    def update(self, **changes: Any) -> BudgetLedger:
        """Last-writer-wins set of configuration fields."""
        unknown = set(changes) - _CONFIG_FIELDS
        if unknown:
            raise ValueError(f"Not a configurable ledger field: {', '.join(sorted(unknown))}")
        try:
            with self._thread_lock, self._file_lock:
                current = self._read_unlocked()
                updated = replace(current, version=current.version + 1, **changes)
                self._write_unlocked(updated)
                return updated
        except Timeout as exc:
            raise LedgerWriteError(f"Timed out waiting for ledger lock at {self.path}") from exc

    # ---------------------------------------------------------- PRIVATE --

    def _read_unlocked(self) -> BudgetLedger:
        try:
            with self.path.open("r", encoding="utf-8") as handle:
                data = json.load(handle)
        except FileNotFoundError:
            return BudgetLedger()
        except (OSError, ValueError):
            logger.warning("Failed to read ledger at %s, starting fresh.", self.path, exc_info=True)
            return BudgetLedger()
        if not isinstance(data, dict):
            logger.warning("Ledger at %s is not an object, starting fresh.", self.path)
            return BudgetLedger()
        return BudgetLedger.from_dict(data)

    def _write_unlocked(self, ledger: BudgetLedger) -> None:
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            tmp_path = self.path.with_suffix(".tmp")
            with tmp_path.open("w", encoding="utf-8") as handle:
                json.dump(ledger.to_dict(), handle)
            tmp_path.replace(self.path)
        except OSError as exc:
            raise LedgerWriteError(f"Unable to persist ledger at {self.path}: {exc}") from exc
