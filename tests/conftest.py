"""Shared fakes for the platform collaborators."""

from __future__ import annotations

from datetime import datetime, timezone

import pytest

from app_budget_enforcer.ledger import LedgerStore
from app_budget_enforcer.scheduler import CadencePolicy, EnforcementScheduler
from app_budget_enforcer.surface import BudgetControls, BudgetNotifier

NOON = datetime(2026, 10, 19, 12, 0, tzinfo=timezone.utc)


class ScriptedUsageSource:
    def __init__(self, minutes: int = 0):
        self.minutes = minutes
        self.fail = False
        self.calls = []

    def query_cumulative_minutes(self, package_set, window_start, window_end):
        self.calls.append((frozenset(package_set), window_start, window_end))
        if self.fail:
            raise RuntimeError("usage stats unavailable")
        return self.minutes


class FakeDetector:
    def __init__(self, package=None):
        self.package = package
        self.fail = False

    def current_foreground_package(self, lookback_seconds):
        if self.fail:
            raise RuntimeError("detector unavailable")
        return self.package


class RecordingDispatcher:
    def __init__(self):
        self.calls = []

    def dispatch(self, package):
        self.calls.append(package)


class Clock:
    def __init__(self, now: datetime = NOON):
        self.now = now

    def __call__(self) -> datetime:
        return self.now


@pytest.fixture
def store(tmp_path):
    return LedgerStore(tmp_path / "ledger.json", lock_timeout=2.0)


@pytest.fixture
def sink_calls():
    return []


@pytest.fixture
def controls(store, sink_calls):
    return BudgetControls(store, BudgetNotifier(sink_calls.append))


@pytest.fixture
def usage():
    return ScriptedUsageSource()


@pytest.fixture
def detector():
    return FakeDetector()


@pytest.fixture
def dispatcher():
    return RecordingDispatcher()


@pytest.fixture
def clock():
    return Clock()


@pytest.fixture
def make_scheduler(store, usage, detector, dispatcher, controls, clock):
    created = []

    def _make(fast_seconds: float = 60.0, base_seconds: float = 60.0, **kwargs):
        kwargs.setdefault("ignored_packages", ["com.apple.dock"])
        scheduler = EnforcementScheduler(
            store=store,
            usage_source=usage,
            detector=detector,
            dispatcher=dispatcher,
            notifier=controls.notifier,
            policy=CadencePolicy(base_seconds=base_seconds, fast_seconds=fast_seconds),
            read_timeout_seconds=2.0,
            clock=clock,
            **kwargs,
        )
        created.append(scheduler)
        return scheduler

    yield _make
    for scheduler in created:
        scheduler.stop(timeout=2.0)
