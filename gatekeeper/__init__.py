"""
Gatekeeper - admission control and scheduling for LLM calls.

Concurrency control (priority queue + bounded worker pool):
    from gatekeeper import ConcurrencyController

    async with ConcurrencyController(max_concurrent_requests=5) as controller:
        result = await controller.submit(
            lambda: provider.complete(model, messages),
            user_id="user_123",
            model=model,
            priority="high",
        )

Rate limiting (per user and model):
    from gatekeeper import RateLimiter

    limiter = RateLimiter()
    if not limiter.check_limit("user_123", model).allowed:
        ...

Cost tracking (per-user budgets):
    from gatekeeper import CostTracker

    tracker = CostTracker()
    tracker.set_budget_limits("user_123", daily_limit=1.00, monthly_limit=20.00)
    result = tracker.track_usage("user_123", model, 1000, 500, "calendar_analysis")
"""

from gatekeeper.config import get_pricing, set_pricing, get_models, set_models
from gatekeeper.validation import ValidationError
from gatekeeper.models import (
    Priority,
    Timeframe,
    AlertType,
    BatchOperation,
    BatchOutcome,
    ConcurrencyStats,
    UsageRecord,
    UsageResult,
    BudgetLimits,
    CostAlert,
)
from gatekeeper.metrics import MetricsCollector, MetricEvent
from gatekeeper.rate_limiter import RateLimiter, RateLimitConfig
from gatekeeper.storage import InMemoryUsageStore, SQLiteUsageStore, InMemoryWorkItemStore
from gatekeeper.cost_tracker import CostTracker
from gatekeeper.concurrency import ConcurrencyController, RequestTimeoutError, ShutdownError
from gatekeeper.providers import (
    InferenceProvider,
    MockProvider,
    OpenAICompatibleProvider,
    Completion,
    ProviderError,
)
from gatekeeper.orchestrator import BatchOrchestrator, WorkItem, BatchRunSummary


__version__ = "1.0.0"
__all__ = [
    # Configuration
    "get_pricing",
    "set_pricing",
    "get_models",
    "set_models",
    "ValidationError",
    # Models
    "Priority",
    "Timeframe",
    "AlertType",
    "BatchOperation",
    "BatchOutcome",
    "ConcurrencyStats",
    "UsageRecord",
    "UsageResult",
    "BudgetLimits",
    "CostAlert",
    # Concurrency
    "ConcurrencyController",
    "RequestTimeoutError",
    "ShutdownError",
    "MetricsCollector",
    "MetricEvent",
    # Rate limiting
    "RateLimiter",
    "RateLimitConfig",
    # Cost tracking
    "CostTracker",
    "InMemoryUsageStore",
    "SQLiteUsageStore",
    # Providers and orchestration
    "InferenceProvider",
    "MockProvider",
    "OpenAICompatibleProvider",
    "Completion",
    "ProviderError",
    "BatchOrchestrator",
    "WorkItem",
    "BatchRunSummary",
    "InMemoryWorkItemStore",
]
