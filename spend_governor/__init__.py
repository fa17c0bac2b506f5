"""
Spend Governor.

Metering, budget enforcement, alerting and emergency throttling for paid
external API calls.
"""

from .config.loader import GovernorConfig, load_governor_config
from .core.gateway import MeasuredUsage, MeteredRequest
from .core.status import BudgetExceeded, BudgetStatus, EnforcementDecision
from .governor import CostGovernor
from .storage.models import OperationKind, UsageEvent

__all__ = [
    "BudgetExceeded",
    "BudgetStatus",
    "CostGovernor",
    "EnforcementDecision",
    "GovernorConfig",
    "MeasuredUsage",
    "MeteredRequest",
    "OperationKind",
    "UsageEvent",
    "load_governor_config",
]
