"""
Cost governor facade.

Wires the store, policy engine, alerting, recorder, gateway and analytics
together from a GovernorConfig. This is the surface that application code
(chat pipelines, file processors, workspace adapters) talks to.
"""

import asyncio
from datetime import datetime
from typing import Any, Awaitable, Callable, List, Optional

from spend_governor.config.loader import GovernorConfig, load_governor_config
from spend_governor.core.aggregator import WindowAggregator
from spend_governor.core.alerts import (
    AlertChannel,
    AlertDispatcher,
    EmailChannel,
    LogChannel,
    WebhookChannel,
)
from spend_governor.core.analytics import AnalyticsReporter, CostBreakdown, CostTrend, TrendPeriod, UsageAnalytics
from spend_governor.core.gateway import EnforcementGateway, MeasuredUsage, MeteredRequest
from spend_governor.core.limiter import RateLimiter
from spend_governor.core.policy import BudgetPolicyEngine
from spend_governor.core.pricing import PricingRegistry, UsageExtra
from spend_governor.core.recorder import UsageRecorder
from spend_governor.core.status import BudgetStatus, EnforcementDecision
from spend_governor.core.tasks import TaskQueue
from spend_governor.storage.models import AlertRecord, BudgetLimit, ServicePauseState, UsageEvent
from spend_governor.storage.repository import GovernanceRepository


def build_channels(config: GovernorConfig) -> List[AlertChannel]:
    """Alert channels enabled by configuration; the log channel is always on."""
    channels: List[AlertChannel] = [LogChannel()]
    settings = config.channels
    if settings.webhook_url:
        channels.append(WebhookChannel(settings.webhook_url, secret=settings.webhook_secret))
    if settings.email_enabled:
        channels.append(EmailChannel(
            host=settings.smtp_host,
            recipients=settings.email_recipients,
            sender=settings.smtp_sender,
            port=settings.smtp_port,
            username=settings.smtp_username,
            password=settings.smtp_password,
            use_tls=settings.smtp_use_tls,
        ))
    return channels


class CostGovernor:
    """Single entry point for metering, enforcement and reporting.

    Holds wiring and configuration only; all business state lives in the
    shared store, so any number of governors (one per process) can run
    against the same database.
    """

    def __init__(
        self,
        config: GovernorConfig,
        repository: GovernanceRepository,
        engine: BudgetPolicyEngine,
        recorder: UsageRecorder,
        gateway: EnforcementGateway,
        reporter: AnalyticsReporter,
        pricing: PricingRegistry,
        tasks: TaskQueue,
    ):
        self.config = config
        self.repository = repository
        self.engine = engine
        self.recorder = recorder
        self.gateway = gateway
        self.reporter = reporter
        self.pricing = pricing
        self.tasks = tasks

    @classmethod
    def from_config(
        cls,
        config: Optional[GovernorConfig] = None,
        channels: Optional[List[AlertChannel]] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> "CostGovernor":
        """Build a governor and initialize its store.

        Args:
            config: Configuration; loaded from the environment when omitted
            channels: Alert channels overriding the configured ones
            clock: Current-time source for the policy engine and reports

        Returns:
            Ready-to-use CostGovernor
        """
        if config is None:
            config = load_governor_config()

        repository = GovernanceRepository(config.db_path)
        repository.initialize_schema()

        tasks = TaskQueue()
        aggregator = WindowAggregator(repository)
        dispatcher = AlertDispatcher(
            repository, build_channels(config) if channels is None else channels
        )
        engine_kwargs = {"clock": clock} if clock is not None else {}
        engine = BudgetPolicyEngine(
            repository, aggregator, config, dispatcher=dispatcher, tasks=tasks, **engine_kwargs
        )
        pricing = PricingRegistry(default_model=config.default_pricing_model)
        recorder = UsageRecorder(repository, tasks=tasks)

        rate_limiter = None
        if config.requests_per_minute is not None:
            rate_limiter = RateLimiter(repository, config.requests_per_minute, clock=clock)

        gateway = EnforcementGateway(engine, recorder, pricing, rate_limiter=rate_limiter)
        reporter = AnalyticsReporter(repository, aggregator, clock=clock)

        return cls(config, repository, engine, recorder, gateway, reporter, pricing, tasks)

    # Lifecycle

    async def start(self) -> None:
        """Start the background worker for alerts and re-evaluations."""
        await self.tasks.start()

    async def stop(self) -> None:
        """Drain pending background work and stop the worker."""
        await self.tasks.stop()

    async def __aenter__(self) -> "CostGovernor":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.stop()

    # Metering and enforcement

    async def record_usage(self, event: UsageEvent) -> None:
        """Append a usage event; never raises for store failures."""
        await self.recorder.record(event)

    async def enforce_budget(self, principal: str, endpoint_tag: str) -> EnforcementDecision:
        """Ask whether ``principal`` may call ``endpoint_tag`` right now."""
        return await self.gateway.check(principal, endpoint_tag)

    async def evaluate(self, principal: Optional[str] = None) -> BudgetStatus:
        return await self.engine.evaluate(principal)

    async def call(
        self,
        request: MeteredRequest,
        dispatch: Callable[[], Awaitable[Any]],
        measure: Optional[Callable[[Any], MeasuredUsage]] = None,
    ) -> Any:
        """Run a metered call under enforcement; see EnforcementGateway.call."""
        return await self.gateway.call(request, dispatch, measure)

    def compute_cost(
        self,
        model: str,
        input_units: int,
        output_units: int,
        extra: Optional[UsageExtra] = None,
    ) -> float:
        return self.pricing.compute_cost(model, input_units, output_units, extra)

    # Administration

    async def set_budget_limit(self, principal: Optional[str], limit: BudgetLimit) -> None:
        await self.engine.set_budget_limit(principal, limit)

    async def reset_budget_limits(self, principal: Optional[str]) -> int:
        """Remove stored overrides; the principal inherits global and configured limits again."""
        return await self.engine.reset_budget_limits(principal)

    async def pause_service(self, principal: str, service: str, reason: str) -> ServicePauseState:
        return await self.engine.pause_service(principal, service, reason)

    async def resume_service(self, principal: str, service: str) -> ServicePauseState:
        return await self.engine.resume_service(principal, service)

    async def is_service_paused(self, principal: str, service: str) -> bool:
        return await self.engine.is_service_paused(principal, service)

    # Reporting

    async def get_usage_analytics(
        self,
        start: datetime,
        end: datetime,
        principal: Optional[str] = None,
    ) -> UsageAnalytics:
        return await self.reporter.usage_analytics(start, end, principal)

    async def get_cost_breakdown(
        self,
        start: datetime,
        end: datetime,
        principal: Optional[str] = None,
        top_n: int = 10,
    ) -> CostBreakdown:
        return await self.reporter.breakdown(start, end, principal, top_n)

    async def get_alert_history(
        self,
        principal: Optional[str] = None,
        period: Optional[str] = None,
    ) -> List[AlertRecord]:
        """Alerts already sent, oldest first; ``period`` is a YYYY-MM month key."""
        return await asyncio.to_thread(self.repository.fetch_alert_records, principal, period)

    async def get_cost_trend(self, period: TrendPeriod, principal: Optional[str] = None) -> CostTrend:
        return await self.reporter.trend(period, principal)
