"""
Budget enforcement around metered external calls.

Enforcement Order:
1. Per-request limit - Rejects a single oversized request before dispatch
2. Service pause - Emergency throttle state from the shared store (hard-stop only)
3. Request rate - Shared per-principal counter, when configured
4. Budget policy - Hourly, daily and monthly spend

Only calls still pending dispatch can be blocked. Once dispatched, a call
is billed regardless of outcome, so exactly one usage event is recorded for
it whether it succeeds or fails.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple

from spend_governor.core.limiter import RateLimiter
from spend_governor.core.policy import BudgetPolicyEngine
from spend_governor.core.pricing import PricingRegistry, UsageExtra
from spend_governor.core.recorder import UsageRecorder
from spend_governor.core.status import (
    BudgetExceeded,
    EnforcementDecision,
    PerRequestLimitExceeded,
    RateLimitExceeded,
    ServicePaused,
)
from spend_governor.core.token_counter import estimate_units, estimate_units_for_bytes
from spend_governor.storage.models import BudgetWindow, OperationKind, UsageEvent

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class MeteredRequest:
    """Description of one metered call, known before dispatch."""
    principal: str
    provider: str
    model: str
    operation_kind: OperationKind = OperationKind.COMPLETION
    endpoint: Optional[str] = None
    input_text: Optional[str] = None
    input_units: Optional[int] = None
    input_bytes: Optional[int] = None
    expected_output_units: int = 0
    extra: Optional[UsageExtra] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def service(self) -> str:
        """Service tag used for pause checks."""
        return self.endpoint or self.provider


@dataclass(frozen=True)
class MeasuredUsage:
    """Actual usage reported by the provider after the call."""
    input_units: int
    output_units: int
    extra: Optional[UsageExtra] = None
    cached: bool = False
    metadata: Dict[str, Any] = field(default_factory=dict)


class EnforcementGateway:
    """Wraps metered calls with pre-flight checks and usage recording."""

    def __init__(
        self,
        engine: BudgetPolicyEngine,
        recorder: UsageRecorder,
        pricing: PricingRegistry,
        rate_limiter: Optional[RateLimiter] = None,
    ):
        self._engine = engine
        self._recorder = recorder
        self._pricing = pricing
        self._rate_limiter = rate_limiter

    def estimate(self, request: MeteredRequest) -> Tuple[int, float]:
        """Estimate units and cost of a request from its input size.

        Returns:
            Tuple of (estimated input + output units, estimated cost)
        """
        input_units = self._estimated_input_units(request)
        cost = self._pricing.compute_cost(
            request.model, input_units, request.expected_output_units, request.extra
        )
        return input_units + request.expected_output_units, cost

    async def check(self, principal: str, endpoint: str) -> EnforcementDecision:
        """Decide whether a principal may dispatch a call to an endpoint now."""
        try:
            status = await self._authorize(principal, endpoint)
        except BudgetExceeded as e:
            logger.warning("Metered call to %s blocked for %s: %s", endpoint, principal, e.reason)
            return EnforcementDecision(allowed=False, reason=e.reason, status=e.status)
        return EnforcementDecision(allowed=True, reason=status.reason, status=status)

    async def call(
        self,
        request: MeteredRequest,
        dispatch: Callable[[], Awaitable[Any]],
        measure: Optional[Callable[[Any], MeasuredUsage]] = None,
    ) -> Any:
        """Run one metered call under budget enforcement.

        Args:
            request: What is about to be called, for estimation and attribution
            dispatch: Zero-argument coroutine function performing the real call
            measure: Extracts actual usage from the call result; without it
                the estimate is recorded

        Returns:
            The result of ``dispatch`` unchanged

        Raises:
            PerRequestLimitExceeded: If the estimate alone exceeds the
                per-request limit (nothing dispatched, nothing recorded)
            ServicePaused: If the service is paused
            RateLimitExceeded: If the principal is over its request rate
            BudgetExceeded: If the budget policy denies the call
            Exception: Whatever ``dispatch`` raises, after recording usage;
                cancellation is recorded the same way and propagated
        """
        estimated_units, estimated_cost = self.estimate(request)
        await self._preflight(request, estimated_units, estimated_cost)
        await self._authorize(request.principal, request.service)

        started = time.monotonic()
        try:
            result = await dispatch()
        except (Exception, asyncio.CancelledError) as e:
            # A caller-side timeout cancels us mid-call; the write must still land
            await asyncio.shield(self._recorder.record(self._build_event(
                request,
                MeasuredUsage(
                    input_units=self._estimated_input_units(request),
                    output_units=0,
                    extra=request.extra,
                    metadata={"error_message": str(e) or type(e).__name__},
                ),
                error=True,
                elapsed=time.monotonic() - started,
            )))
            raise

        usage = self._measure(request, result, measure)
        await self._recorder.record(
            self._build_event(request, usage, error=False, elapsed=time.monotonic() - started)
        )
        return result

    async def _preflight(self, request: MeteredRequest, units: int, cost: float) -> None:
        try:
            limits = await self._engine.resolve_limits(request.principal)
        except Exception:
            logger.exception("Could not load per-request limit for %s, skipping pre-flight", request.principal)
            return

        limit = limits[BudgetWindow.PER_REQUEST]
        if not limit.enabled:
            return
        if cost > limit.max_cost:
            raise PerRequestLimitExceeded(
                f"Request would exceed per-request cost limit (${cost:.4f} > ${limit.max_cost:.4f})",
                estimated_cost=cost,
                estimated_units=units,
            )
        if limit.max_units is not None and units > limit.max_units:
            raise PerRequestLimitExceeded(
                f"Request would exceed per-request unit limit ({units:,} > {limit.max_units:,})",
                estimated_cost=cost,
                estimated_units=units,
            )

    async def _authorize(self, principal: str, service: str):
        pause = None
        if self._engine.config.hard_stop_at_limit:
            try:
                pause = await self._engine.paused_state(principal, service)
            except Exception:
                logger.exception("Could not read pause state for %s, failing open", principal)
        if pause is not None:
            raise ServicePaused(
                f"Service {service} is paused: {pause.reason or 'paused by administrator'}"
            )

        if self._rate_limiter is not None:
            try:
                count = await self._rate_limiter.hit(principal)
            except Exception:
                logger.exception("Rate counter unavailable for %s, failing open", principal)
                count = 0
            if count > self._rate_limiter.limit:
                raise RateLimitExceeded(
                    f"Rate limit exceeded: {count} requests / {self._rate_limiter.limit} "
                    f"per {self._rate_limiter.window_seconds}s"
                )

        status = await self._engine.evaluate(principal)
        if not status.allowed:
            raise BudgetExceeded(status.reason or "Budget limit exceeded", status)
        return status

    @staticmethod
    def _estimated_input_units(request: MeteredRequest) -> int:
        if request.input_units is not None:
            return request.input_units
        if request.input_text is None and request.input_bytes is not None:
            return estimate_units_for_bytes(request.input_bytes)
        return estimate_units(request.input_text or "")

    def _measure(
        self,
        request: MeteredRequest,
        result: Any,
        measure: Optional[Callable[[Any], MeasuredUsage]],
    ) -> MeasuredUsage:
        fallback = MeasuredUsage(
            input_units=self._estimated_input_units(request),
            output_units=request.expected_output_units,
            extra=request.extra,
            metadata={"estimated": True},
        )
        if measure is None:
            return fallback
        try:
            return measure(result)
        except Exception:
            logger.exception("Could not measure usage for %s, recording estimate", request.model)
            return fallback

    def _build_event(
        self,
        request: MeteredRequest,
        usage: MeasuredUsage,
        error: bool,
        elapsed: float,
    ) -> UsageEvent:
        cost = self._pricing.compute_cost(
            request.model, usage.input_units, usage.output_units, usage.extra or request.extra
        )
        metadata = dict(request.metadata)
        metadata.update(usage.metadata)
        metadata["processing_time_ms"] = round(elapsed * 1000)
        return UsageEvent(
            principal=request.principal,
            provider=request.provider,
            model=request.model,
            operation_kind=request.operation_kind,
            endpoint=request.endpoint,
            input_units=usage.input_units,
            output_units=usage.output_units,
            cost=cost,
            timestamp=self._engine.now(),
            cached=usage.cached,
            error=error,
            metadata=metadata,
        )
