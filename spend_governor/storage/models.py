"""
Data models for storage layer.

Defines the canonical usage, limit, alert and pause records.
"""

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional


ALL_SERVICES = "*"


class OperationKind(Enum):
    """Kind of metered operation."""
    COMPLETION = "completion"
    EMBEDDING = "embedding"
    TRANSCRIPTION = "transcription"
    TTS = "tts"
    IMAGE = "image"
    REQUEST = "request"
    STORAGE = "storage"
    OTHER = "other"


class BudgetWindow(Enum):
    """Time window a budget limit applies to."""
    HOURLY = "hourly"
    DAILY = "daily"
    MONTHLY = "monthly"
    PER_REQUEST = "per_request"


class BudgetScope(Enum):
    """Whether a limit applies to all principals or to one."""
    GLOBAL = "global"
    PER_USER = "per_user"


class AlertSeverity(Enum):
    """Severity of a budget alert."""
    WARNING = "warning"
    CRITICAL = "critical"
    EMERGENCY = "emergency"


class PauseStatus(Enum):
    ACTIVE = "active"
    PAUSED = "paused"


def _new_event_id() -> str:
    return uuid.uuid4().hex


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class UsageEvent:
    """Immutable record of one metered call attempt.

    Append-only events that form the ledger every budget decision is
    derived from. Failed attempts are recorded too, with ``error=True``,
    because providers may bill input units even when the call fails.
    """
    principal: str
    provider: str
    model: str
    operation_kind: OperationKind
    input_units: int
    output_units: int
    cost: float
    timestamp: datetime = field(default_factory=_utcnow)
    cached: bool = False
    error: bool = False
    endpoint: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    id: str = field(default_factory=_new_event_id)

    def __post_init__(self):
        """Validate cost and units are non-negative."""
        if self.cost < 0:
            raise ValueError("cost cannot be negative")
        if self.input_units < 0:
            raise ValueError("input_units cannot be negative")
        if self.output_units < 0:
            raise ValueError("output_units cannot be negative")
        if not self.principal:
            raise ValueError("principal is required")

    @property
    def total_units(self) -> int:
        """Total units consumed (input + output)."""
        return self.input_units + self.output_units


@dataclass(frozen=True)
class BudgetLimit:
    """Spend limit for one window."""
    scope: BudgetScope
    window: BudgetWindow
    max_cost: float
    max_units: Optional[int] = None
    enabled: bool = True

    def __post_init__(self):
        if self.max_cost < 0:
            raise ValueError("max_cost cannot be negative")
        if self.max_units is not None and self.max_units < 0:
            raise ValueError("max_units cannot be negative")


@dataclass(frozen=True)
class AlertRecord:
    """Append-only ledger entry for a crossed alert threshold.

    The store keeps at most one record per (principal, period, threshold).
    """
    severity: AlertSeverity
    threshold_crossed: int
    window: BudgetWindow
    principal: Optional[str]
    message: str
    timestamp: datetime
    period: str  # month key, "YYYY-MM"


@dataclass(frozen=True)
class ServicePauseState:
    """Emergency throttle state for a principal's service."""
    principal: str
    service: str
    status: PauseStatus
    reason: Optional[str] = None
    paused_at: Optional[datetime] = None
    resumed_at: Optional[datetime] = None

    @property
    def is_paused(self) -> bool:
        return self.status == PauseStatus.PAUSED
