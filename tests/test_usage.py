"""Tests for the usage journal and the journal-backed usage source."""

from __future__ import annotations

import json
from datetime import date, datetime, timedelta, timezone

from app_budget_enforcer.usage import JournalUsageSource, UsageJournal, local_midnight

DAY = date(2026, 10, 19)
GAME = "com.example.game"
VIDEO = "com.example.video"


def test_local_midnight_keeps_timezone():
    tz = timezone(timedelta(hours=2))
    now = datetime(2026, 10, 19, 17, 45, 12, tzinfo=tz)
    assert local_midnight(now) == datetime(2026, 10, 19, tzinfo=tz)


class TestUsageJournal:
    def test_whole_minutes_per_package(self, tmp_path):
        journal = UsageJournal(tmp_path / "usage.json")
        journal.add_seconds(GAME, 119, day=DAY)
        journal.add_seconds(VIDEO, 61, day=DAY)
        # 1 + 1, not floor(180 / 60)
        assert journal.minutes_for([GAME, VIDEO], DAY) == 2

    def test_unwatched_and_other_days_are_excluded(self, tmp_path):
        journal = UsageJournal(tmp_path / "usage.json")
        journal.add_seconds(GAME, 600, day=DAY)
        journal.add_seconds("com.example.editor", 600, day=DAY)
        journal.add_seconds(GAME, 600, day=DAY - timedelta(days=1))
        assert journal.minutes_for([GAME], DAY) == 10

    def test_ignores_empty_and_negative_samples(self, tmp_path):
        journal = UsageJournal(tmp_path / "usage.json")
        journal.add_seconds("", 60, day=DAY)
        journal.add_seconds(GAME, -60, day=DAY)
        assert journal.minutes_for([GAME, ""], DAY) == 0

    def test_save_and_reload(self, tmp_path):
        path = tmp_path / "usage.json"
        journal = UsageJournal(path)
        journal.add_seconds(GAME, 300, day=DAY)
        journal.save()
        assert UsageJournal(path).minutes_for([GAME], DAY) == 5

    def test_corrupt_file_starts_empty(self, tmp_path):
        path = tmp_path / "usage.json"
        path.write_text("[]", encoding="utf-8")
        assert UsageJournal(path).minutes_for([GAME], DAY) == 0

    def test_old_days_are_pruned(self, tmp_path):
        path = tmp_path / "usage.json"
        journal = UsageJournal(path, history_days=2)
        for offset in range(4):
            journal.add_seconds(GAME, 60, day=DAY - timedelta(days=offset))
        journal.save()
        data = json.loads(path.read_text(encoding="utf-8"))
        assert sorted(data["days"]) == ["2026-10-18", "2026-10-19"]


class TestJournalUsageSource:
    def test_queries_the_window_day(self, tmp_path):
        journal = UsageJournal(tmp_path / "usage.json")
        journal.add_seconds(GAME, 420, day=DAY)
        source = JournalUsageSource(journal)
        start = datetime(2026, 10, 19, tzinfo=timezone.utc)
        assert source.query_cumulative_minutes({GAME}, start, start + timedelta(hours=9)) == 7

    def test_empty_window(self, tmp_path):
        journal = UsageJournal(tmp_path / "usage.json")
        journal.add_seconds(GAME, 420, day=DAY)
        source = JournalUsageSource(journal)
        start = datetime(2026, 10, 19, tzinfo=timezone.utc)
        assert source.query_cumulative_minutes({GAME}, start, start) == 0
