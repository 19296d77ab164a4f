"""Shared data models."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Optional
import uuid

from gatekeeper.validation import ValidationError


class Priority(str, Enum):
    """Admission priority tiers, highest first."""
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"

    @classmethod
    def _missing_(cls, value):
        # "normal" is what most call sites pass for the middle tier
        if not isinstance(value, str):
            return None
        if value.lower() == "normal":
            return cls.MEDIUM
        return cls._value2member_map_.get(value.lower())

    @property
    def rank(self) -> int:
        return _PRIORITY_RANK[self]

    @classmethod
    def coerce(cls, value: "Priority | str | None") -> "Priority":
        """Turn a priority name into a Priority, defaulting to MEDIUM."""
        if value is None:
            return cls.MEDIUM
        try:
            return cls(value)
        except ValueError:
            raise ValidationError(
                f"Unknown priority {value!r}, expected one of high, medium, low"
            ) from None


_PRIORITY_RANK = {Priority.HIGH: 0, Priority.MEDIUM: 1, Priority.LOW: 2}


class AlertType(str, Enum):
    """Kinds of cost alert."""
    DAILY_LIMIT = "daily_limit"
    MONTHLY_LIMIT = "monthly_limit"
    UNUSUAL_USAGE = "unusual_usage"


class Timeframe(str, Enum):
    """Reporting windows for cost statistics."""
    DAY = "day"
    WEEK = "week"
    MONTH = "month"
    ALL = "all"


# =========================================================================
# Concurrency
# =========================================================================

@dataclass
class BatchOperation:
    """One operation submitted through execute_batch."""
    operation: Callable[[], Awaitable[Any]]
    user_id: str
    model: str
    priority: Priority = Priority.MEDIUM


@dataclass
class BatchOutcome:
    """Per-operation outcome of a batch."""
    success: bool
    result: Any = None
    error: Optional[str] = None


@dataclass
class ConcurrencyStats:
    """Snapshot of the controller's state."""
    active: int
    queued: int
    completed: int
    failed: int
    avg_processing_time_ms: float
    queue_depth: int
    max_concurrent_requests: int
    model_breakdown: dict[str, int] = field(default_factory=dict)
    user_breakdown: dict[str, int] = field(default_factory=dict)


# =========================================================================
# Cost tracking
# =========================================================================

@dataclass(frozen=True)
class UsageRecord:
    """Immutable ledger entry for one provider call."""
    user_id: str
    model: str
    input_tokens: int
    output_tokens: int
    cost: float
    operation: str
    request_id: str = field(default_factory=lambda: f"req_{uuid.uuid4().hex[:12]}")
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens


@dataclass
class BudgetLimits:
    """Budget configuration for a user."""
    user_id: str
    daily_limit: float
    monthly_limit: float
    alert_threshold: float = 80.0  # percent of a limit that triggers an alert


@dataclass
class CostAlert:
    """Advisory alert raised when spend crosses a budget threshold."""
    user_id: str
    alert_type: AlertType
    threshold: float
    current_value: float
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


@dataclass
class UsageResult:
    """Result of tracking one usage event."""
    cost: float
    within_budget: bool
    alerts: list[CostAlert] = field(default_factory=list)
    request_id: Optional[str] = None


@dataclass
class CostStats:
    """Aggregated usage for one user over a timeframe."""
    user_id: str
    timeframe: Timeframe
    total_cost: float
    total_requests: int
    avg_cost_per_request: float
    model_breakdown: dict[str, dict[str, float]]  # model -> {cost, requests, tokens}
    operation_breakdown: dict[str, dict[str, float]]  # operation -> {cost, requests}
    daily_trend: list[dict[str, Any]]  # [{date, cost, requests}, ...] oldest first
    budget_utilization: Optional[dict[str, float]] = None  # {daily, monthly} percent


@dataclass
class ModelCostEstimate:
    """Estimated cost of running an operation on a model."""
    model: str
    cost: float
    reason: str


@dataclass
class CostRecommendation:
    """Cost-aware model recommendation."""
    recommended_model: str
    estimated_cost: float
    reason: str
    alternatives: list[ModelCostEstimate]


@dataclass
class OptimizationReport:
    """Month-end projection and savings advice for a user."""
    user_id: str
    current_month_spend: float
    projected_month_spend: float
    potential_savings: float
    recommendations: list[str]
    top_cost_drivers: list[dict[str, Any]]  # [{operation, cost, percentage}, ...]


@dataclass
class SystemStats:
    """Spend across all users."""
    total_users: int
    total_cost: float
    total_requests: int
    top_users: list[dict[str, Any]]
    top_models: list[dict[str, Any]]


# =========================================================================
# Rate limiting
# =========================================================================

@dataclass
class RateLimitEntry:
    """Request count inside one fixed window."""
    count: int
    reset_time: float  # epoch seconds


@dataclass
class RateLimitResult:
    """Outcome of a rate limit check. A denial is advisory, not an error."""
    allowed: bool
    reset_time: Optional[float] = None
    suggestion: Optional[str] = None


@dataclass
class ModelRecommendation:
    """Advisory model choice."""
    model: str
    reason: str


@dataclass
class RateLimitDecision:
    """Outcome of rate limit handling with fallback and waiting."""
    model: str
    should_proceed: bool
    wait_time: Optional[float] = None
