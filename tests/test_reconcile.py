"""Tests for the pure reconciliation step."""

from __future__ import annotations

from dataclasses import replace
from datetime import date, datetime, timedelta, timezone

import pytest

from app_budget_enforcer.ledger import BudgetLedger
from app_budget_enforcer.reconcile import UsageObservation, reconcile

TODAY = date(2026, 10, 19)
WATCHED = frozenset({"com.example.game", "com.example.video"})


def _ledger(remaining=30, checkpoint=0, day=TODAY, packages=WATCHED) -> BudgetLedger:
    return BudgetLedger(
        remaining_minutes=remaining,
        watched_packages=WATCHED,
        checkpoint_usage_minutes=checkpoint,
        checkpoint_day=day,
        checkpoint_packages=packages,
    )


def _obs(cumulative: int, packages=WATCHED) -> UsageObservation:
    start = datetime(2026, 10, 19, tzinfo=timezone.utc)
    return UsageObservation(
        package_set=packages,
        window_start=start,
        window_end=start + timedelta(hours=12),
        cumulative_minutes=cumulative,
    )


CASES = [
    (_ledger(remaining=30, checkpoint=0), 12),
    (_ledger(remaining=5, checkpoint=10), 40),
    (_ledger(remaining=0, checkpoint=3), 9),
    (_ledger(remaining=20, checkpoint=25), 20),
    (_ledger(remaining=20, checkpoint=40, day=TODAY - timedelta(days=1)), 5),
    (_ledger(remaining=20, checkpoint=0, day=None, packages=None), 7),
    (_ledger(remaining=8, checkpoint=4), -6),
]


class TestProperties:
    @pytest.mark.parametrize("ledger,cumulative", CASES)
    def test_second_application_is_a_no_op(self, ledger, cumulative):
        first = reconcile(ledger, _obs(cumulative), TODAY)
        second = reconcile(first.ledger, _obs(cumulative), TODAY)
        assert second.ledger == first.ledger
        assert second.minutes_deducted == 0
        assert second.exhausted == first.exhausted

    @pytest.mark.parametrize("ledger,cumulative", CASES)
    def test_budget_never_increases_or_goes_negative(self, ledger, cumulative):
        result = reconcile(ledger, _obs(cumulative), TODAY)
        assert 0 <= result.new_remaining_minutes <= ledger.remaining_minutes
        assert result.minutes_deducted == ledger.remaining_minutes - result.new_remaining_minutes


class TestScenarios:
    def test_day_rollover_discards_stale_checkpoint(self):
        ledger = _ledger(remaining=10, checkpoint=40, day=TODAY - timedelta(days=1))
        result = reconcile(ledger, _obs(5), TODAY)
        assert result.new_checkpoint_usage_minutes == 5
        assert result.minutes_deducted == 5
        assert result.new_remaining_minutes == 5
        assert result.ledger.checkpoint_day == TODAY

    def test_exhaustion_clamps_to_remaining(self):
        ledger = _ledger(remaining=3, checkpoint=10)
        result = reconcile(ledger, _obs(16), TODAY)
        assert result.minutes_deducted == 3
        assert result.new_remaining_minutes == 0
        assert result.exhausted is True
        assert result.new_checkpoint_usage_minutes == 16

    def test_lower_reading_same_day_is_ignored(self):
        ledger = _ledger(remaining=20, checkpoint=25)
        result = reconcile(ledger, _obs(20), TODAY)
        assert result.minutes_deducted == 0
        assert result.new_checkpoint_usage_minutes == 25
        assert result.new_remaining_minutes == 20

    def test_negative_reading_is_normalized(self):
        result = reconcile(_ledger(remaining=8, checkpoint=4), _obs(-6), TODAY)
        assert result.minutes_deducted == 0
        assert result.new_checkpoint_usage_minutes == 4

    def test_checkpoint_advances_without_budget(self):
        result = reconcile(_ledger(remaining=0, checkpoint=3), _obs(9), TODAY)
        assert result.minutes_deducted == 0
        assert result.new_checkpoint_usage_minutes == 9
        assert result.exhausted is True

    def test_fresh_ledger_charges_usage_so_far(self):
        ledger = BudgetLedger(remaining_minutes=20, watched_packages=WATCHED)
        result = reconcile(ledger, _obs(7), TODAY)
        assert result.minutes_deducted == 7
        assert result.ledger.checkpoint_packages == WATCHED

    def test_not_exhausted_with_budget_left(self):
        result = reconcile(_ledger(remaining=30, checkpoint=0), _obs(12), TODAY)
        assert result.new_remaining_minutes == 18
        assert result.exhausted is False

    def test_version_is_left_to_the_store(self):
        ledger = replace(_ledger(), version=7)
        assert reconcile(ledger, _obs(4), TODAY).ledger.version == 7


class TestWatchListChange:
    def test_removed_package_usage_is_forgiven(self):
        # 40 minutes were charged while both apps were watched; the video app is then dropped.
        ledger = _ledger(remaining=20, checkpoint=40)
        remaining_set = frozenset({"com.example.game"})
        rebased = reconcile(ledger, _obs(15, packages=remaining_set), TODAY)
        assert rebased.minutes_deducted == 0
        assert rebased.new_checkpoint_usage_minutes == 15
        assert rebased.ledger.checkpoint_packages == remaining_set

        later = reconcile(rebased.ledger, _obs(18, packages=remaining_set), TODAY)
        assert later.minutes_deducted == 3
        assert later.new_remaining_minutes == 17

    def test_rollover_wins_over_rebase(self):
        ledger = _ledger(remaining=20, checkpoint=40, day=TODAY - timedelta(days=1))
        result = reconcile(ledger, _obs(6, packages=frozenset({"com.example.game"})), TODAY)
        assert result.minutes_deducted == 6


class TestUnsynchronizedWriters:
    def test_same_snapshot_applied_twice_deducts_once(self):
        snapshot = _ledger(remaining=10, checkpoint=10)
        a = reconcile(snapshot, _obs(16), TODAY)
        b = reconcile(snapshot, _obs(16), TODAY)
        # Whichever write lands last, the stored ledger is the same single deduction.
        assert a.ledger == b.ledger
        assert a.ledger.remaining_minutes == 4
        assert a.ledger.checkpoint_usage_minutes == 16

    def test_second_writer_after_reread_deducts_nothing(self):
        snapshot = _ledger(remaining=10, checkpoint=10)
        first = reconcile(snapshot, _obs(16), TODAY)
        second = reconcile(first.ledger, _obs(16), TODAY)
        assert second.minutes_deducted == 0
        assert second.ledger.remaining_minutes == 4
