"""Per-application foreground usage journal and the usage source built on it."""

from __future__ import annotations

import json
import logging
import threading
from datetime import date, datetime, time as dtime
from pathlib import Path
from typing import Dict, Iterable, Optional

from filelock import FileLock, Timeout

from . import LOGGER_NAME

logger = logging.getLogger(f"{LOGGER_NAME}.usage")


def now_local() -> datetime:
    return datetime.now().astimezone()


def local_midnight(now: Optional[datetime] = None) -> datetime:
    now = now or now_local()
    return datetime.combine(now.date(), dtime.min, tzinfo=now.tzinfo)


class UsageJournal:
    """Foreground seconds per package, bucketed by local day.

    Only the sampler writes to the journal; readers get whole minutes. Older
    days are dropped once more than ``history_days`` are kept.
    """

    def __init__(self, path: Path, history_days: int = 7, lock_timeout: float = 5.0):
        self.path = Path(path).expanduser()
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.history_days = max(1, history_days)
        self._file_lock = FileLock(str(self.path) + ".lock", timeout=lock_timeout)
        self._lock = threading.Lock()
        self._days: Dict[str, Dict[str, float]] = {}
        self._load()

    def _load(self) -> None:
        try:
            with self._file_lock, self.path.open("r", encoding="utf-8") as handle:
                data = json.load(handle)
        except FileNotFoundError:
            return
        except Timeout:
            logger.warning("Timed out locking usage journal %s, starting empty.", self.path)
            return
        except Exception:
            logger.warning("Failed to read usage journal, starting fresh.", exc_info=True)
            return
        days = data.get("days") if isinstance(data, dict) else None
        if not isinstance(days, dict):
            return
        for day, packages in days.items():
            if not isinstance(packages, dict):
                continue
            bucket = {}
            for package, seconds in packages.items():
                try:
                    bucket[str(package)] = max(0.0, float(seconds))
                except (TypeError, ValueError):
                    continue
            self._days[str(day)] = bucket

    def add_seconds(self, package: str, seconds: float, day: Optional[date] = None) -> None:
        if not package or seconds <= 0:
            return
        key = (day or now_local().date()).isoformat()
        with self._lock:
            bucket = self._days.setdefault(key, {})
            bucket[package] = bucket.get(package, 0.0) + seconds
            self._prune_locked()

    def minutes_for(self, packages: Iterable[str], day: date) -> int:
        with self._lock:
            bucket = dict(self._days.get(day.isoformat(), {}))
        # Whole minutes per package, then summed, like the platform usage reports.
        return sum(int(bucket.get(package, 0.0) // 60) for package in set(packages))

    def save(self) -> None:
        with self._lock:
            snapshot = {"days": {day: dict(bucket) for day, bucket in self._days.items()}}
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with self._file_lock:
                tmp_path = self.path.with_suffix(".tmp")
                with tmp_path.open("w", encoding="utf-8") as handle:
                    json.dump(snapshot, handle)
                tmp_path.replace(self.path)
        except Exception:
            logger.error("Unable to persist usage journal.", exc_info=True)

    def _prune_locked(self) -> None:
        if len(self._days) <= self.history_days:
            return
        for day in sorted(self._days)[: len(self._days) - self.history_days]:
            del self._days[day]


class JournalUsageSource:
    def __init__(self, journal: UsageJournal):
        self.journal = journal

    def query_cumulative_minutes(
        self, package_set: Iterable[str], window_start: datetime, window_end: datetime
    ) -> int:
        if window_end <= window_start:
            return 0
        return self.journal.minutes_for(package_set, window_start.date())
