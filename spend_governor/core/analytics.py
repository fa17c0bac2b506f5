"""
Cost analytics and reporting.

Read-only views over the usage ledger: cost breakdown by model and
operation, period-over-period trends, and the usage summary served to
dashboards.
"""

import asyncio
import logging
import math
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Callable, Dict, List, Optional, Tuple

from spend_governor.core.aggregator import WindowAggregator, as_utc
from spend_governor.storage.models import OperationKind, UsageEvent
from spend_governor.storage.repository import GovernanceRepository

logger = logging.getLogger(__name__)

TREND_DEAD_BAND_PERCENT = 10.0
PROJECTION_DAYS = 30


class TrendPeriod(Enum):
    HOURLY = "hourly"
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"


class TrendDirection(Enum):
    INCREASING = "increasing"
    DECREASING = "decreasing"
    STABLE = "stable"


_PERIOD_LENGTHS = {
    TrendPeriod.HOURLY: timedelta(hours=1),
    TrendPeriod.DAILY: timedelta(days=1),
    TrendPeriod.WEEKLY: timedelta(days=7),
    TrendPeriod.MONTHLY: timedelta(days=30),
}


@dataclass(frozen=True)
class BreakdownItem:
    """Spend of one (provider, model, operation kind) group."""
    provider: str
    model: str
    operation_kind: OperationKind
    cost: float
    units: int
    requests: int
    percentage: float


@dataclass(frozen=True)
class CostBreakdown:
    start: datetime
    end: datetime
    total_cost: float
    items: List[BreakdownItem] = field(default_factory=list)
    top_events: List[UsageEvent] = field(default_factory=list)


@dataclass(frozen=True)
class CostTrend:
    """Current window spend versus the window right before it."""
    period: TrendPeriod
    current: float
    previous: float
    change: float
    change_percent: float
    projection: float
    direction: TrendDirection


@dataclass(frozen=True)
class UsageAnalytics:
    """Usage summary for a time range."""
    start: datetime
    end: datetime
    total_cost: float = 0.0
    total_calls: int = 0
    cost_by_model: Dict[str, float] = field(default_factory=dict)
    cost_by_endpoint: Dict[str, float] = field(default_factory=dict)
    cost_by_principal: Dict[str, float] = field(default_factory=dict)
    cost_by_provider: Dict[str, float] = field(default_factory=dict)
    top_events: List[UsageEvent] = field(default_factory=list)
    daily_average: float = 0.0
    projected_monthly: float = 0.0
    breakdown: List[BreakdownItem] = field(default_factory=list)


def change_percent(current: float, previous: float) -> float:
    """Percentage change from ``previous`` to ``current``.

    A previous value of zero gives 0 when nothing was spent now either, and
    100 when something was. Spend appearing from an empty window is thus
    labelled increasing, not stable as a plain zero-guarded ratio would.
    """
    if previous > 0:
        return (current - previous) / previous * 100.0
    return 100.0 if current > 0 else 0.0


def trend_direction(percent: float) -> TrendDirection:
    if abs(percent) <= TREND_DEAD_BAND_PERCENT:
        return TrendDirection.STABLE
    return TrendDirection.INCREASING if percent > 0 else TrendDirection.DECREASING


def group_events(events: List[UsageEvent], total_cost: Optional[float] = None) -> List[BreakdownItem]:
    """Group events by (provider, model, operation kind), costliest first."""
    groups: Dict[Tuple[str, str, OperationKind], Tuple[float, int, int]] = {}
    for event in events:
        key = (event.provider, event.model, event.operation_kind)
        cost, units, requests = groups.get(key, (0.0, 0, 0))
        groups[key] = (cost + event.cost, units + event.total_units, requests + 1)

    if total_cost is None:
        total_cost = sum(event.cost for event in events)

    items = [
        BreakdownItem(
            provider=provider,
            model=model,
            operation_kind=kind,
            cost=cost,
            units=units,
            requests=requests,
            percentage=cost / total_cost * 100.0 if total_cost > 0 else 0.0,
        )
        for (provider, model, kind), (cost, units, requests) in groups.items()
    ]
    return sorted(items, key=lambda item: item.cost, reverse=True)


def _top_events(events: List[UsageEvent], top_n: int) -> List[UsageEvent]:
    return sorted(events, key=lambda event: event.cost, reverse=True)[:top_n]


def _sum_by(events: List[UsageEvent], key: Callable[[UsageEvent], Optional[str]]) -> Dict[str, float]:
    totals: Dict[str, float] = {}
    for event in events:
        name = key(event) or "unknown"
        totals[name] = totals.get(name, 0.0) + event.cost
    return dict(sorted(totals.items(), key=lambda item: item[1], reverse=True))


class AnalyticsReporter:
    """Builds reports from the usage ledger."""

    def __init__(
        self,
        repository: GovernanceRepository,
        aggregator: WindowAggregator,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self._repository = repository
        self._aggregator = aggregator
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    async def breakdown(
        self,
        start: datetime,
        end: datetime,
        principal: Optional[str] = None,
        top_n: int = 10,
    ) -> CostBreakdown:
        """Cost grouped by provider, model and operation kind.

        Args:
            start: Inclusive range start
            end: Inclusive range end
            principal: Optional principal filter
            top_n: Number of costliest single events to include

        Returns:
            CostBreakdown with groups sorted by cost, descending
        """
        events = await asyncio.to_thread(
            self._repository.fetch_usage_events, start, end, principal
        )
        total = sum(event.cost for event in events)
        return CostBreakdown(
            start=start,
            end=end,
            total_cost=total,
            items=group_events(events, total),
            top_events=_top_events(events, top_n),
        )

    async def trend(self, period: TrendPeriod, principal: Optional[str] = None) -> CostTrend:
        """Compare spend in the last period with the period before it.

        Windows are rolling: the current window is ``[now - L, now)`` and
        the previous one ``[now - 2L, now - L)``.
        """
        period = TrendPeriod(period)
        length = _PERIOD_LENGTHS[period]
        now = as_utc(self._clock())

        current, previous = await asyncio.gather(
            self._aggregator.spend_between(now - length, now, principal),
            self._aggregator.spend_between(now - 2 * length, now - length, principal),
        )
        change = current - previous
        percent = change_percent(current, previous)
        return CostTrend(
            period=period,
            current=current,
            previous=previous,
            change=change,
            change_percent=percent,
            projection=current + change * 0.5,
            direction=trend_direction(percent),
        )

    async def usage_analytics(
        self,
        start: datetime,
        end: datetime,
        principal: Optional[str] = None,
        top_n: int = 10,
    ) -> UsageAnalytics:
        """Summarize usage between ``start`` and ``end``.

        A store failure is logged and yields empty analytics.
        """
        try:
            events = await asyncio.to_thread(
                self._repository.fetch_usage_events, start, end, principal
            )
        except Exception:
            logger.exception("Failed to load usage analytics for %s", principal or "system")
            return UsageAnalytics(start=start, end=end)

        total = sum(event.cost for event in events)
        days = max(1, math.ceil((as_utc(end) - as_utc(start)).total_seconds() / 86400))
        daily_average = total / days

        return UsageAnalytics(
            start=start,
            end=end,
            total_cost=total,
            total_calls=len(events),
            cost_by_model=_sum_by(events, lambda e: e.model),
            cost_by_endpoint=_sum_by(events, lambda e: e.endpoint),
            cost_by_principal=_sum_by(events, lambda e: e.principal),
            cost_by_provider=_sum_by(events, lambda e: e.provider),
            top_events=_top_events(events, top_n),
            daily_average=daily_average,
            projected_monthly=daily_average * PROJECTION_DAYS,
            breakdown=group_events(events, total),
        )
