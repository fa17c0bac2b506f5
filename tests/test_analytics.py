"""
Unit tests for cost analytics and reporting.

Tests breakdown grouping, rolling trends and the usage summary.
"""

import asyncio
import os
import sqlite3
import tempfile
from datetime import datetime, timedelta, timezone
from unittest.mock import patch

import pytest

from spend_governor.core.aggregator import WindowAggregator
from spend_governor.core.analytics import (
    AnalyticsReporter,
    TrendDirection,
    TrendPeriod,
    change_percent,
    group_events,
    trend_direction,
)
from spend_governor.storage.models import OperationKind, UsageEvent
from spend_governor.storage.repository import GovernanceRepository

NOW = datetime(2025, 9, 10, 12, 30, tzinfo=timezone.utc)


def make_event(
    principal="alice",
    cost=1.0,
    timestamp=NOW,
    model="gpt-4o",
    provider="openai",
    kind=OperationKind.COMPLETION,
    endpoint="chat",
) -> UsageEvent:
    return UsageEvent(
        principal=principal,
        provider=provider,
        model=model,
        operation_kind=kind,
        input_units=100,
        output_units=50,
        cost=cost,
        timestamp=timestamp,
        endpoint=endpoint,
    )


class TestTrendHelpers:
    """Test change and direction calculations."""

    def test_change_percent(self):
        assert change_percent(150.0, 100.0) == pytest.approx(50.0)
        assert change_percent(50.0, 100.0) == pytest.approx(-50.0)

    def test_change_percent_from_zero(self):
        assert change_percent(0.0, 0.0) == 0.0
        assert change_percent(5.0, 0.0) == 100.0

    def test_dead_band(self):
        assert trend_direction(10.0) == TrendDirection.STABLE
        assert trend_direction(-10.0) == TrendDirection.STABLE
        assert trend_direction(10.5) == TrendDirection.INCREASING
        assert trend_direction(-12.0) == TrendDirection.DECREASING

    def test_group_events_sorted_with_percentages(self):
        items = group_events([
            make_event(cost=1.0),
            make_event(cost=2.0),
            make_event(cost=1.0, model="text-embedding-3-small", kind=OperationKind.EMBEDDING),
        ])

        assert [(i.model, i.requests) for i in items] == [
            ("gpt-4o", 2),
            ("text-embedding-3-small", 1),
        ]
        assert items[0].cost == pytest.approx(3.0)
        assert items[0].units == 300
        assert items[0].percentage == pytest.approx(75.0)
        assert items[1].percentage == pytest.approx(25.0)

    def test_group_events_empty(self):
        assert group_events([]) == []


class TestAnalyticsReporter:
    """Test reports against the store."""

    def setup_method(self):
        """Set up test environment."""
        self.temp_dir = tempfile.mkdtemp()
        self.repository = GovernanceRepository(os.path.join(self.temp_dir, "test.db"))
        self.repository.initialize_schema()
        self.reporter = AnalyticsReporter(
            self.repository, WindowAggregator(self.repository), clock=lambda: NOW
        )

    def teardown_method(self):
        """Clean up test environment."""
        import shutil
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def test_breakdown(self):
        self.repository.insert_usage_events([
            make_event("alice", 4.0, model="gpt-4"),
            make_event("alice", 1.0),
            make_event("bob", 5.0, model="gpt-4"),
            make_event("alice", 9.0, NOW - timedelta(days=3)),
        ])
        breakdown = asyncio.run(self.reporter.breakdown(
            NOW - timedelta(hours=1), NOW, principal="alice", top_n=1
        ))

        assert breakdown.total_cost == pytest.approx(5.0)
        assert [i.model for i in breakdown.items] == ["gpt-4", "gpt-4o"]
        assert breakdown.items[0].percentage == pytest.approx(80.0)
        assert [e.cost for e in breakdown.top_events] == [4.0]

    def test_trend_increasing(self):
        self.repository.insert_usage_events([
            make_event(cost=10.0, timestamp=NOW - timedelta(hours=30)),
            make_event(cost=15.0, timestamp=NOW - timedelta(hours=2)),
        ])
        trend = asyncio.run(self.reporter.trend(TrendPeriod.DAILY))

        assert trend.current == pytest.approx(15.0)
        assert trend.previous == pytest.approx(10.0)
        assert trend.change == pytest.approx(5.0)
        assert trend.change_percent == pytest.approx(50.0)
        assert trend.projection == pytest.approx(17.5)
        assert trend.direction == TrendDirection.INCREASING

    def test_trend_accepts_period_name(self):
        trend = asyncio.run(self.reporter.trend("weekly", principal="alice"))

        assert trend.period == TrendPeriod.WEEKLY
        assert trend.change_percent == 0.0
        assert trend.direction == TrendDirection.STABLE

    def test_trend_is_per_principal(self):
        self.repository.insert_usage_events([
            make_event("alice", 5.0, NOW - timedelta(minutes=10)),
            make_event("bob", 50.0, NOW - timedelta(minutes=90)),
        ])
        trend = asyncio.run(self.reporter.trend(TrendPeriod.HOURLY, principal="alice"))

        assert trend.previous == 0.0
        assert trend.change_percent == 100.0

    def test_usage_analytics(self):
        self.repository.insert_usage_events([
            make_event("alice", 3.0, NOW - timedelta(days=1), model="gpt-4", endpoint="chat"),
            make_event("bob", 2.0, NOW - timedelta(days=2), endpoint=None),
            make_event("bob", 1.0, NOW - timedelta(days=3), provider="assemblyai",
                       model="assemblyai-transcription", kind=OperationKind.TRANSCRIPTION,
                       endpoint="audio"),
        ])
        analytics = asyncio.run(self.reporter.usage_analytics(NOW - timedelta(days=6), NOW))

        assert analytics.total_cost == pytest.approx(6.0)
        assert analytics.total_calls == 3
        assert analytics.cost_by_principal == {"alice": 3.0, "bob": 3.0}
        assert analytics.cost_by_endpoint == {"chat": 3.0, "unknown": 2.0, "audio": 1.0}
        assert analytics.cost_by_provider == {"openai": 5.0, "assemblyai": 1.0}
        assert list(analytics.cost_by_model) == ["gpt-4", "gpt-4o", "assemblyai-transcription"]
        assert analytics.daily_average == pytest.approx(1.0)
        assert analytics.projected_monthly == pytest.approx(30.0)
        assert analytics.top_events[0].cost == 3.0
        assert len(analytics.breakdown) == 3

    def test_usage_analytics_partial_day_counts_as_one(self):
        self.repository.insert_usage_event(make_event(cost=2.0))
        analytics = asyncio.run(self.reporter.usage_analytics(NOW - timedelta(hours=2), NOW))

        assert analytics.daily_average == pytest.approx(2.0)
        assert analytics.projected_monthly == pytest.approx(60.0)

    def test_usage_analytics_store_failure_returns_empty(self):
        with patch.object(
            self.repository, "fetch_usage_events", side_effect=sqlite3.OperationalError("no such table")
        ):
            analytics = asyncio.run(self.reporter.usage_analytics(NOW - timedelta(days=1), NOW))

        assert analytics.total_cost == 0.0
        assert analytics.total_calls == 0
        assert analytics.cost_by_model == {}
