"""
Windowed spend aggregation.

Sums event cost over fixed-origin hour/day/month windows, globally or for a
single principal. Pure queries against the store; nothing is cached.
"""

import asyncio
import calendar
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

from spend_governor.storage.repository import GovernanceRepository


def as_utc(now: datetime) -> datetime:
    if now.tzinfo is None:
        return now.replace(tzinfo=timezone.utc)
    return now.astimezone(timezone.utc)


def hour_start(now: datetime) -> datetime:
    return as_utc(now).replace(minute=0, second=0, microsecond=0)


def day_start(now: datetime) -> datetime:
    return as_utc(now).replace(hour=0, minute=0, second=0, microsecond=0)


def month_start(now: datetime) -> datetime:
    return day_start(now).replace(day=1)


def days_in_month(now: datetime) -> int:
    now = as_utc(now)
    return calendar.monthrange(now.year, now.month)[1]


def month_key(now: datetime) -> str:
    """Period key for per-month ledgers, e.g. ``2025-10``."""
    return as_utc(now).strftime("%Y-%m")


@dataclass(frozen=True)
class WindowTotals:
    cost: float = 0.0
    units: int = 0


class WindowAggregator:
    """Spend and unit totals over time windows."""

    def __init__(self, repository: GovernanceRepository):
        self._repository = repository

    async def spend_since(self, window_start: datetime, principal: Optional[str] = None) -> float:
        """Total cost of events with ``timestamp >= window_start``.

        Args:
            window_start: Inclusive start of the window
            principal: One principal, or None for all principals

        Returns:
            Summed cost; 0.0 when no events match
        """
        totals = await asyncio.to_thread(self._repository.sum_usage, window_start, None, principal)
        return totals["cost"]

    async def units_since(self, window_start: datetime, principal: Optional[str] = None) -> int:
        totals = await asyncio.to_thread(self._repository.sum_usage, window_start, None, principal)
        return totals["units"]

    async def spend_between(
        self,
        start: datetime,
        end: datetime,
        principal: Optional[str] = None,
    ) -> float:
        """Total cost of events with ``start <= timestamp < end``."""
        totals = await asyncio.to_thread(self._repository.sum_usage, start, end, principal)
        return totals["cost"]

    async def usage_since(self, window_start: datetime, principal: Optional[str] = None) -> WindowTotals:
        """Cost and units since ``window_start`` in a single query."""
        totals = await asyncio.to_thread(self._repository.sum_usage, window_start, None, principal)
        return WindowTotals(cost=totals["cost"], units=totals["units"])
