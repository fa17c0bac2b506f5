"""
Budget status snapshot and enforcement errors.

BudgetStatus is derived on every evaluation and never persisted.
"""

from dataclasses import asdict, dataclass, field
from typing import Any, Dict, Optional


@dataclass(frozen=True)
class WindowFigures:
    """One value per evaluated window."""
    hourly: float = 0.0
    daily: float = 0.0
    monthly: float = 0.0


@dataclass(frozen=True)
class PercentUsed:
    daily: float = 0.0
    monthly: float = 0.0


@dataclass(frozen=True)
class BudgetStatus:
    """Snapshot of spend against limits for one principal (or globally)."""
    principal: Optional[str]
    spend: WindowFigures
    units: WindowFigures
    limits: WindowFigures
    percent_used: PercentUsed
    projected_monthly: float
    days_elapsed: int
    days_in_month: int
    allowed: bool = True
    reason: Optional[str] = None
    hard_stop: bool = True

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class EnforcementDecision:
    """Answer to "may this principal make a metered call now?"."""
    allowed: bool
    reason: Optional[str] = None
    status: Optional[BudgetStatus] = field(default=None, compare=False)


class BudgetExceeded(Exception):
    """Raised when a metered call is blocked by budget policy.

    Carries the human-readable reason and, when an evaluation produced it,
    the structured BudgetStatus.
    """
    def __init__(self, reason: str, status: Optional[BudgetStatus] = None):
        super().__init__(reason)
        self.reason = reason
        self.status = status


class PerRequestLimitExceeded(BudgetExceeded):
    """The estimated cost of a single request is over the per-request limit."""
    def __init__(self, reason: str, estimated_cost: float, estimated_units: int):
        super().__init__(reason)
        self.estimated_cost = estimated_cost
        self.estimated_units = estimated_units


class ServicePaused(BudgetExceeded):
    """The principal's service is paused by the emergency throttle."""


class RateLimitExceeded(BudgetExceeded):
    """The principal made too many metered calls in the current minute."""
