"""Reconciliation of cumulative usage against the budget ledger.

``reconcile`` is pure: it takes a ledger snapshot, one usage observation and
the current day, and returns the ledger that should be written back. The
clamps below are what make interleaved read-compute-write cycles from the two
pollers safe: a deduction never exceeds the newly observed usage or the
remaining budget, and the checkpoint only moves forward within a day.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import date, datetime
from typing import FrozenSet

from .ledger import BudgetLedger


@dataclass(frozen=True)
class UsageObservation:
    package_set: FrozenSet[str]
    window_start: datetime
    window_end: datetime
    cumulative_minutes: int


@dataclass(frozen=True)
class ReconciliationResult:
    new_remaining_minutes: int
    new_checkpoint_usage_minutes: int
    minutes_deducted: int
    exhausted: bool
    ledger: BudgetLedger


def reconcile(ledger: BudgetLedger, observation: UsageObservation, today: date) -> ReconciliationResult:
    cumulative = max(0, int(observation.cumulative_minutes))
    observed_packages = frozenset(observation.package_set)
    remaining = max(0, ledger.remaining_minutes)
    checkpoint = ledger.checkpoint_usage_minutes
    checkpoint_day = ledger.checkpoint_day

    if today != checkpoint_day:
        # Source counters restart at local midnight; yesterday's checkpoint means nothing today.
        checkpoint = 0
        checkpoint_day = today
    elif ledger.checkpoint_packages is not None and ledger.checkpoint_packages != observed_packages:
        # Watch list changed mid-day: usage accrued outside the old set is forgiven.
        checkpoint = cumulative

    delta = max(0, cumulative - checkpoint)
    to_deduct = min(delta, remaining)
    if cumulative > checkpoint:
        checkpoint = cumulative

    new_remaining = remaining - to_deduct
    new_ledger = replace(
        ledger,
        remaining_minutes=new_remaining,
        checkpoint_usage_minutes=checkpoint,
        checkpoint_day=checkpoint_day,
        checkpoint_packages=observed_packages,
    )
    return ReconciliationResult(
        new_remaining_minutes=new_remaining,
        new_checkpoint_usage_minutes=checkpoint,
        minutes_deducted=to_deduct,
        exhausted=new_remaining <= 0,
        ledger=new_ledger,
    )
