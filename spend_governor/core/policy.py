"""
Budget policy evaluation.

Compares current windowed spend against limits and decides allow/deny.

Evaluation Order:
1. Hourly limit - A spike inside the hour is the strongest runaway-loop signal
2. Daily limit - Safety net for sustained overspend
3. Monthly limit - Overall budget

The first exceeded window sets the reason. Calls are denied only in
hard-stop mode; in soft-warn mode the reason is reported and the call is
allowed. A store failure during evaluation fails open.

Enforcement is best-effort: evaluation reads spend and decides without a
distributed lock, so concurrent in-flight calls can overshoot a limit by
their combined cost.
"""

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, Optional, Tuple

from spend_governor.config.loader import GovernorConfig
from spend_governor.core.aggregator import (
    WindowAggregator,
    WindowTotals,
    as_utc,
    day_start,
    days_in_month,
    hour_start,
    month_key,
    month_start,
)
from spend_governor.core.alerts import AlertDispatcher, build_alert
from spend_governor.core.status import BudgetStatus, PercentUsed, WindowFigures
from spend_governor.core.tasks import TaskQueue
from spend_governor.storage.models import (
    ALL_SERVICES,
    AlertRecord,
    BudgetLimit,
    BudgetScope,
    BudgetWindow,
    PauseStatus,
    ServicePauseState,
)
from spend_governor.storage.repository import GLOBAL_PRINCIPAL, GovernanceRepository

logger = logging.getLogger(__name__)

ALERT_TOPIC = "alert"
REEVALUATE_TOPIC = "reevaluate"

FAIL_OPEN_REASON = "budget check failed"

_WINDOW_LABELS = (
    (BudgetWindow.HOURLY, "Hourly"),
    (BudgetWindow.DAILY, "Daily"),
    (BudgetWindow.MONTHLY, "Monthly"),
)


# Windows whose configured default is the same for every scope
_SHARED_WINDOWS = (BudgetWindow.HOURLY, BudgetWindow.PER_REQUEST)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _percent(spend: float, limit: BudgetLimit) -> float:
    if not limit.enabled or limit.max_cost <= 0:
        return 0.0
    return spend / limit.max_cost * 100.0


class BudgetPolicyEngine:
    """Evaluates spend against hourly, daily and monthly limits.

    Parameters
    ----------
    repository:
        Shared store for limit overrides, pause state and the alert ledger.
    aggregator:
        Window spend queries.
    config:
        Default limits, alert thresholds and hard-stop mode.
    dispatcher:
        Alert dispatcher; None disables alerting.
    tasks:
        Optional task queue. When given, alert delivery and re-evaluation
        requests are handled off the request path.
    clock:
        Returns the current time; injectable for tests.
    """

    def __init__(
        self,
        repository: GovernanceRepository,
        aggregator: WindowAggregator,
        config: GovernorConfig,
        dispatcher: Optional[AlertDispatcher] = None,
        tasks: Optional[TaskQueue] = None,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self._repository = repository
        self._aggregator = aggregator
        self.config = config
        self._dispatcher = dispatcher
        self._tasks = tasks
        self._clock = clock

        if tasks is not None:
            tasks.register(ALERT_TOPIC, self._deliver_alert)
            tasks.register(REEVALUATE_TOPIC, self._reevaluate)

    def now(self) -> datetime:
        return as_utc(self._clock())

    async def evaluate(self, principal: Optional[str] = None) -> BudgetStatus:
        """Evaluate current spend for a principal, or globally.

        Args:
            principal: Principal to scope spend and limits to; None for the
                whole system

        Returns:
            BudgetStatus snapshot
        """
        now = self.now()
        hard_stop = self.config.hard_stop_at_limit
        pause_key = principal if principal is not None else GLOBAL_PRINCIPAL

        try:
            limits = await self.resolve_limits(principal)
            hourly, daily, monthly = await asyncio.gather(
                self._aggregator.usage_since(hour_start(now), principal),
                self._aggregator.usage_since(day_start(now), principal),
                self._aggregator.usage_since(month_start(now), principal),
            )
            pause = await self._active_pause(pause_key, now)
        except Exception:
            logger.exception("Budget check failed for %s, failing open", principal or "system")
            return self._fail_open(principal, now)

        totals = {
            BudgetWindow.HOURLY: hourly,
            BudgetWindow.DAILY: daily,
            BudgetWindow.MONTHLY: monthly,
        }
        reason = self._exceeded_reason(totals, limits)
        window_exceeded = reason is not None

        if reason is None and pause is not None and hard_stop:
            reason = f"Service paused: {pause.reason or 'budget limit reached'}"

        days_elapsed = now.day
        month_days = days_in_month(now)
        status = BudgetStatus(
            principal=principal,
            spend=WindowFigures(hourly=hourly.cost, daily=daily.cost, monthly=monthly.cost),
            units=WindowFigures(hourly=hourly.units, daily=daily.units, monthly=monthly.units),
            limits=WindowFigures(
                hourly=limits[BudgetWindow.HOURLY].max_cost,
                daily=limits[BudgetWindow.DAILY].max_cost,
                monthly=limits[BudgetWindow.MONTHLY].max_cost,
            ),
            percent_used=PercentUsed(
                daily=_percent(daily.cost, limits[BudgetWindow.DAILY]),
                monthly=_percent(monthly.cost, limits[BudgetWindow.MONTHLY]),
            ),
            # Linear extrapolation of the month so far, not a forecast model
            projected_monthly=monthly.cost / days_elapsed * month_days,
            days_elapsed=days_elapsed,
            days_in_month=month_days,
            allowed=not (hard_stop and reason is not None),
            reason=reason,
            hard_stop=hard_stop,
        )

        if not status.allowed:
            logger.warning("Budget denies %s: %s", principal or "system", reason)
            if window_exceeded and pause is None:
                await self._auto_pause(pause_key, reason)

        await self._check_thresholds(status, now)
        return status

    async def resolve_limits(self, principal: Optional[str]) -> Dict[BudgetWindow, BudgetLimit]:
        """Limits for a principal, most specific first.

        Layers, lowest to highest precedence:
        1. Configured defaults
        2. Global overrides (stored under no principal) that apply to the
           requested scope: hourly and per-request overrides apply to every
           principal, daily and monthly ones only to the scope they were
           saved with
        3. The principal's own overrides
        """
        budget = self.config.budget
        if principal is None:
            scope = BudgetScope.GLOBAL
            daily, monthly = budget.daily_total, budget.monthly_total
        else:
            scope = BudgetScope.PER_USER
            daily, monthly = budget.daily_per_user, budget.monthly_per_user

        limits = {
            BudgetWindow.HOURLY: BudgetLimit(scope, BudgetWindow.HOURLY, budget.hourly_total),
            BudgetWindow.DAILY: BudgetLimit(scope, BudgetWindow.DAILY, daily),
            BudgetWindow.MONTHLY: BudgetLimit(scope, BudgetWindow.MONTHLY, monthly),
            BudgetWindow.PER_REQUEST: BudgetLimit(
                scope,
                BudgetWindow.PER_REQUEST,
                budget.per_request_max_cost,
                max_units=budget.per_request_max_units,
            ),
        }
        global_overrides = await asyncio.to_thread(self._repository.fetch_budget_limits, None)
        for window, limit in global_overrides.items():
            if window in _SHARED_WINDOWS or limit.scope == scope:
                limits[window] = limit

        if principal is not None:
            overrides = await asyncio.to_thread(self._repository.fetch_budget_limits, principal)
            limits.update(overrides)
        return limits

    async def set_budget_limit(self, principal: Optional[str], limit: BudgetLimit) -> None:
        """Store a limit override for a principal (None for the global limits)."""
        await asyncio.to_thread(self._repository.upsert_budget_limit, principal, limit)

    async def reset_budget_limits(self, principal: Optional[str]) -> int:
        """Drop a principal's overrides so it falls back to the inherited limits.

        Returns:
            Number of overrides removed
        """
        removed = await asyncio.to_thread(self._repository.delete_budget_limits, principal)
        logger.info("Reset %d budget limit override(s) for %s", removed, principal or "system")
        return removed

    # Service pause state

    async def pause_service(self, principal: str, service: str, reason: str) -> ServicePauseState:
        state = ServicePauseState(
            principal=principal,
            service=service,
            status=PauseStatus.PAUSED,
            reason=reason,
            paused_at=self.now(),
        )
        await asyncio.to_thread(self._repository.upsert_pause_state, state)
        logger.warning("Service %s paused for %s: %s", service, principal, reason)
        return state

    async def resume_service(self, principal: str, service: str) -> ServicePauseState:
        state = ServicePauseState(
            principal=principal,
            service=service,
            status=PauseStatus.ACTIVE,
            resumed_at=self.now(),
        )
        await asyncio.to_thread(self._repository.upsert_pause_state, state)
        logger.info("Service %s resumed for %s", service, principal)
        return state

    async def paused_state(self, principal: str, service: str) -> Optional[ServicePauseState]:
        """Return the pause blocking ``service`` for a principal, if any.

        A principal-wide pause (service ``*``) blocks every service. Pauses
        past their cooldown are not reported; they are cleared on the next
        evaluation.
        """
        states = await asyncio.to_thread(
            self._repository.fetch_pause_states, principal, (service, ALL_SERVICES)
        )
        now = self.now()
        for state in states:
            if state.is_paused and not self._cooldown_expired(state, now):
                return state
        return None

    async def is_service_paused(self, principal: str, service: str) -> bool:
        return await self.paused_state(principal, service) is not None

    def _cooldown_expired(self, state: ServicePauseState, now: datetime) -> bool:
        if state.paused_at is None:
            return False
        cooldown = timedelta(minutes=self.config.pause_cooldown_minutes)
        return state.paused_at + cooldown <= now

    async def _active_pause(self, principal: str, now: datetime) -> Optional[ServicePauseState]:
        """Resume pauses whose cooldown has elapsed; return the principal-wide pause."""
        active = None
        for state in await asyncio.to_thread(self._repository.fetch_pause_states, principal):
            if not state.is_paused:
                continue
            if self._cooldown_expired(state, now):
                await self.resume_service(principal, state.service)
            elif state.service == ALL_SERVICES:
                active = state
        return active

    async def _auto_pause(self, principal: str, reason: str) -> None:
        if self.config.pause_cooldown_minutes == 0:
            return
        try:
            await self.pause_service(principal, ALL_SERVICES, f"Auto-paused: {reason}")
        except Exception:
            logger.exception("Failed to pause services for %s", principal)

    # Limits and thresholds

    @staticmethod
    def _exceeded_reason(
        totals: Dict[BudgetWindow, WindowTotals],
        limits: Dict[BudgetWindow, BudgetLimit],
    ) -> Optional[str]:
        for window, label in _WINDOW_LABELS:
            limit = limits[window]
            spent = totals[window]
            if not limit.enabled:
                continue
            if spent.cost > limit.max_cost:
                return f"{label} limit exceeded: ${spent.cost:.2f} / ${limit.max_cost:.2f}"
            if limit.max_units is not None and spent.units > limit.max_units:
                return f"{label} unit limit exceeded: {spent.units:,} / {limit.max_units:,} units"
        return None

    def crossed_threshold(self, percent_monthly: float) -> Optional[int]:
        """Highest enabled alert threshold at or below the monthly percentage."""
        crossed = [t for t in self.config.alert_thresholds if t <= percent_monthly]
        return max(crossed) if crossed else None

    async def _check_thresholds(self, status: BudgetStatus, now: datetime) -> None:
        if self._dispatcher is None:
            return
        threshold = self.crossed_threshold(status.percent_used.monthly)
        if threshold is None:
            return

        try:
            recorded = await asyncio.to_thread(
                self._repository.alert_recorded, status.principal, month_key(now), threshold
            )
            if recorded:
                return
            alert = build_alert(status, threshold, now)
            if self._tasks is not None:
                await self._tasks.publish(ALERT_TOPIC, (alert, status))
            else:
                await self._deliver_alert((alert, status))
        except Exception:
            logger.exception("Failed to dispatch %s%% budget alert", threshold)

    async def _deliver_alert(self, payload: Tuple[AlertRecord, BudgetStatus]) -> None:
        alert, status = payload
        await self._dispatcher.send(alert, status)

    async def _reevaluate(self, principal: Optional[str]) -> None:
        await self.evaluate(principal)

    def _fail_open(self, principal: Optional[str], now: datetime) -> BudgetStatus:
        return BudgetStatus(
            principal=principal,
            spend=WindowFigures(),
            units=WindowFigures(),
            limits=WindowFigures(),
            percent_used=PercentUsed(),
            projected_monthly=0.0,
            days_elapsed=now.day,
            days_in_month=days_in_month(now),
            allowed=True,
            reason=FAIL_OPEN_REASON,
            hard_stop=self.config.hard_stop_at_limit,
        )
