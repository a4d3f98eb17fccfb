"""
Unit tests for budget monitoring.

Tests watermark crossing, per-period deduplication and period rollover.
"""

import os
import tempfile
from datetime import datetime, timezone

import pytest

from ai_key_guard.core.budget import FLEET_SCOPE, BudgetMonitor, crossed_watermarks, period_key
from ai_key_guard.storage.models import (
    Budget,
    BudgetAlertKind,
    BudgetScope,
    UsageSnapshot,
    UsageWindow,
)
from ai_key_guard.storage.repository import WatermarkRepository
from tests.fakes import NOW, make_snapshot


class TestHelpers:
    """Test period keys and watermark arithmetic."""

    def test_period_keys(self):
        assert period_key(BudgetScope.DAILY, NOW) == "2026-10-14"
        assert period_key(BudgetScope.MONTHLY, NOW) == "2026-10"

    @pytest.mark.parametrize("spend,expected", [
        (74.9, []),
        (75.0, [75]),
        (89.9, [75]),
        (90.0, [75, 90]),
        (100.0, [75, 90, 100]),
        (250.0, [75, 90, 100]),
    ])
    def test_crossed_watermarks(self, spend, expected):
        assert crossed_watermarks(spend, 100.0) == expected


class TestBudgetMonitor:
    """Test alerting with watermark state in SQLite."""

    def setup_method(self):
        self.temp_dir = tempfile.mkdtemp()
        self.db_path = os.path.join(self.temp_dir, "test.db")
        self.repository = WatermarkRepository(self.db_path)
        self.monitor = BudgetMonitor(
            {BudgetScope.DAILY: Budget(BudgetScope.DAILY, 100.0)},
            self.repository,
        )

    def teardown_method(self):
        import shutil
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def test_below_first_watermark(self):
        assert self.monitor.check([make_snapshot(cost=50.0)], NOW) == []

    def test_approaching_alert(self):
        alerts = self.monitor.check([make_snapshot(cost=80.0)], NOW)

        assert len(alerts) == 1
        alert = alerts[0]
        assert alert.credential_id == "key-1"
        assert alert.watermark == 75
        assert alert.kind == BudgetAlertKind.APPROACHING
        assert alert.period_key == "2026-10-14"
        assert not alert.is_critical

    def test_unchanged_spend_does_not_realert(self):
        first = self.monitor.check([make_snapshot(cost=80.0)], NOW)
        second = self.monitor.check([make_snapshot(cost=80.0)], NOW)

        assert len(first) == 1
        assert second == []

    def test_one_alert_per_watermark_for_rising_spend(self):
        """75 -> 90 -> 100 with repeated runs in between alerts three times."""
        alerts = []
        for cost in (76.0, 77.0, 80.0, 91.0, 95.0, 95.0, 100.0, 130.0, 130.0):
            alerts.extend(self.monitor.check([make_snapshot(cost=cost)], NOW))

        assert [a.watermark for a in alerts] == [75, 90, 100]
        assert [a.watermarks for a in alerts] == [(75,), (90,), (100,)]
        assert [a.kind for a in alerts] == [
            BudgetAlertKind.APPROACHING,
            BudgetAlertKind.APPROACHING,
            BudgetAlertKind.EXCEEDED,
        ]

    def test_jump_past_several_watermarks_alerts_once(self):
        alerts = self.monitor.check([make_snapshot(cost=120.0)], NOW)

        assert len(alerts) == 1
        assert alerts[0].watermark == 100
        assert alerts[0].watermarks == (75, 90, 100)
        assert "crossed 75%, 90%, 100%" in alerts[0].message
        assert alerts[0].to_dict()["watermarks"] == [75, 90, 100]
        assert alerts[0].is_critical
        for watermark in (75, 90, 100):
            assert self.repository.is_alerted("key-1", "daily", "2026-10-14", watermark)

        assert self.monitor.check([make_snapshot(cost=125.0)], NOW) == []

    def test_new_period_resets_watermarks(self):
        next_day = datetime(2026, 10, 15, 9, 0, tzinfo=timezone.utc)

        assert len(self.monitor.check([make_snapshot(cost=80.0)], NOW)) == 1
        alerts = self.monitor.check([make_snapshot(cost=80.0)], next_day)

        assert len(alerts) == 1
        assert alerts[0].period_key == "2026-10-15"
        assert not self.repository.is_alerted("key-1", "daily", "2026-10-14", 75)

    def test_fleet_total(self):
        snapshots = [make_snapshot("key-1", cost=40.0), make_snapshot("key-2", cost=40.0)]

        alerts = self.monitor.check(snapshots, NOW)

        assert [(a.credential_id, a.watermark) for a in alerts] == [(FLEET_SCOPE, 75)]
        assert "Fleet" in alerts[0].message

    def test_window_must_match_scope(self):
        monthly = make_snapshot(cost=500.0, window=UsageWindow.MONTHLY)
        assert self.monitor.check([monthly], NOW) == []

    def test_unavailable_snapshots_are_ignored(self):
        snapshot = UsageSnapshot.unavailable("key-1", UsageWindow.DAILY, NOW, "timed out")
        assert self.monitor.check([snapshot], NOW) == []

    def test_monthly_budget(self):
        monitor = BudgetMonitor(
            {BudgetScope.MONTHLY: Budget(BudgetScope.MONTHLY, 1000.0)},
            self.repository,
        )

        alerts = monitor.check([make_snapshot(cost=950.0, window=UsageWindow.MONTHLY)], NOW)

        assert len(alerts) == 1
        assert alerts[0].scope == BudgetScope.MONTHLY
        assert alerts[0].period_key == "2026-10"
        assert alerts[0].watermark == 90

    def test_budget_must_be_positive(self):
        with pytest.raises(ValueError, match="must be > 0"):
            Budget(BudgetScope.DAILY, 0)
