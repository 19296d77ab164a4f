"""
Cost tracking for Gatekeeper.

"Know what every LLM call costs, per user and per operation."

Features:
- Usage ledger with per-model pricing (bounded, oldest entries evicted)
- Per-user daily and monthly budgets with threshold alerts
- Cost statistics, model recommendations and optimization reports
- System-wide spend overview for dashboards

Budgets are advisory: usage is always recorded first and only then compared
against the limits, so a call that crosses a limit is still counted and the
alert arrives with it.
"""

from collections import defaultdict
from datetime import datetime, UTC, timedelta
from typing import Callable, Optional
import logging
import threading
import uuid

from gatekeeper import config
from gatekeeper.models import (
    AlertType,
    BudgetLimits,
    CostAlert,
    CostRecommendation,
    CostStats,
    ModelCostEstimate,
    OptimizationReport,
    SystemStats,
    Timeframe,
    UsageRecord,
    UsageResult,
)
from gatekeeper.storage import DEFAULT_MAX_RECORDS, InMemoryUsageStore, UsageStore
from gatekeeper.validation import validate_budget_limits, validate_token_counts

logger = logging.getLogger(__name__)

TREND_DAYS = 30
HIGH_UTILIZATION_PCT = 80.0
PREMIUM_HEADROOM_PCT = 50.0
BULK_SAVINGS_RATE = 0.8

_TIMEFRAME_WINDOWS = {
    Timeframe.DAY: timedelta(days=1),
    Timeframe.WEEK: timedelta(weeks=1),
    Timeframe.MONTH: timedelta(days=30),
}


def _model_reason(model: str) -> str:
    tiers = {tier_model: tier for tier, tier_model in config.get_models().items()}
    tier = tiers.get(model)
    if tier == "free":
        return "Free tier - good for bulk operations"
    if tier == "premium":
        return "Premium model - better accuracy"
    if tier == "high_capability":
        return "High-capability model - best for complex analysis"
    return "Configured model"


class CostTracker:
    """
    Usage ledger and budget alert engine.

    Example:
        ```python
        tracker = CostTracker()
        tracker.set_budget_limits("user_123", daily_limit=1.00, monthly_limit=20.00)

        result = tracker.track_usage(
            "user_123",
            model="qwen/qwen3-235b-a22b-2507",
            input_tokens=1200,
            output_tokens=300,
            operation="calendar_analysis",
        )
        for alert in result.alerts:
            notify(alert)

        stats = tracker.get_cost_stats("user_123", Timeframe.WEEK)
        ```
    """

    def __init__(
        self,
        pricing: Optional[dict[str, dict[str, float]]] = None,
        storage: Optional[UsageStore] = None,
        max_records: int = DEFAULT_MAX_RECORDS,
        alert_callback: Optional[Callable[[CostAlert], None]] = None,
    ):
        self._pricing = pricing
        self._storage = storage if storage is not None else InMemoryUsageStore(max_records=max_records)
        self._alert_callback = alert_callback
        self._alerts: list[CostAlert] = []
        self._lock = threading.Lock()

    @property
    def pricing(self) -> dict[str, dict[str, float]]:
        return self._pricing if self._pricing is not None else config.get_pricing()

    # =========================================================================
    # Usage Recording
    # =========================================================================

    def calculate_cost(self, model: str, input_tokens: int, output_tokens: int) -> Optional[float]:
        """Cost in USD for the given tokens, or None if the model has no pricing."""
        rates = self.pricing.get(model)
        if rates is None:
            return None
        return (input_tokens / 1000) * rates["input"] + (output_tokens / 1000) * rates["output"]

    def track_usage(
        self,
        user_id: str,
        model: str,
        input_tokens: int,
        output_tokens: int,
        operation: str,
        request_id: Optional[str] = None,
    ) -> UsageResult:
        """
        Record usage of a model and check the user's budget.

        Args:
            user_id: The user who made the request.
            model: Model used.
            input_tokens: Prompt tokens consumed.
            output_tokens: Completion tokens produced.
            operation: Free-text category (e.g., "calendar_analysis").
            request_id: Optional request identifier, generated if omitted.

        Returns:
            UsageResult with the cost, budget status and any alerts triggered.
        """
        validate_token_counts(input_tokens, output_tokens)

        cost = self.calculate_cost(model, input_tokens, output_tokens)
        if cost is None:
            logger.warning("No pricing information for model: %s", model)
            return UsageResult(cost=0.0, within_budget=True, alerts=[], request_id=request_id)

        record = UsageRecord(
            user_id=user_id,
            model=model,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            cost=cost,
            operation=operation,
            request_id=request_id or f"req_{uuid.uuid4().hex[:12]}",
        )

        with self._lock:
            self._storage.add_record(record)
            alerts = self._check_budget_limits(user_id, record.timestamp)
            self._alerts.extend(alerts)

        for alert in alerts:
            logger.warning(
                "Budget alert for %s: %s at $%.4f of $%.4f limit",
                user_id, alert.alert_type.value, alert.current_value, alert.threshold,
            )
            if self._alert_callback:
                try:
                    self._alert_callback(alert)
                except Exception:
                    logger.exception("Alert callback failed for %s", user_id)

        return UsageResult(
            cost=cost,
            within_budget=not alerts,
            alerts=alerts,
            request_id=record.request_id,
        )

    # =========================================================================
    # Budget Management
    # =========================================================================

    def set_budget_limits(
        self,
        user_id: str,
        daily_limit: float,
        monthly_limit: float,
        alert_threshold: float = 80.0,
    ) -> BudgetLimits:
        """
        Set budget limits for a user, replacing any existing ones.

        Args:
            user_id: Unique identifier for the user.
            daily_limit: Spend per calendar day (UTC) in USD.
            monthly_limit: Spend per calendar month (UTC) in USD.
            alert_threshold: Percentage of a limit at which alerts start.
        """
        validate_budget_limits(daily_limit, monthly_limit, alert_threshold)
        limits = BudgetLimits(
            user_id=user_id,
            daily_limit=daily_limit,
            monthly_limit=monthly_limit,
            alert_threshold=alert_threshold,
        )
        with self._lock:
            self._storage.set_budget(limits)
        return limits

    def get_budget_limits(self, user_id: str) -> Optional[BudgetLimits]:
        """Get budget limits for a user."""
        return self._storage.get_budget(user_id)

    def remove_budget_limits(self, user_id: str) -> bool:
        """Remove budget limits for a user. Returns True if existed."""
        with self._lock:
            return self._storage.remove_budget(user_id)

    def _check_budget_limits(self, user_id: str, now: datetime) -> list[CostAlert]:
        """Compare the user's updated totals against their limits."""
        limits = self._storage.get_budget(user_id)
        if limits is None:
            return []

        alerts = []
        ratio = limits.alert_threshold / 100
        checks = [
            (AlertType.DAILY_LIMIT, limits.daily_limit, self._get_daily_cost(user_id, now)),
            (AlertType.MONTHLY_LIMIT, limits.monthly_limit, self._get_monthly_cost(user_id, now)),
        ]

        for alert_type, limit, spent in checks:
            if spent >= limit * ratio:
                alerts.append(
                    CostAlert(
                        user_id=user_id,
                        alert_type=alert_type,
                        threshold=limit,
                        current_value=spent,
                        timestamp=now,
                    )
                )

        return alerts

    def _get_daily_cost(self, user_id: str, now: datetime) -> float:
        start_of_day = now.replace(hour=0, minute=0, second=0, microsecond=0)
        return sum(
            r.cost for r in self._storage.list_records_since(start_of_day)
            if r.user_id == user_id and r.timestamp.date() == now.date()
        )

    def _get_monthly_cost(self, user_id: str, now: datetime) -> float:
        start_of_month = now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)
        return sum(
            r.cost for r in self._storage.list_records_since(start_of_month)
            if r.user_id == user_id
            and (r.timestamp.year, r.timestamp.month) == (now.year, now.month)
        )

    # =========================================================================
    # Reports
    # =========================================================================

    def get_cost_stats(
        self,
        user_id: str,
        timeframe: Timeframe = Timeframe.MONTH,
    ) -> CostStats:
        """
        Aggregate a user's usage over a timeframe.

        Args:
            user_id: The user to report on.
            timeframe: Rolling window ("day", "week", "month") or "all".

        Returns:
            CostStats with totals, breakdowns, a 30-day trend and budget utilization.
        """
        timeframe = Timeframe(timeframe)
        now = datetime.now(UTC)

        window = _TIMEFRAME_WINDOWS.get(timeframe)
        if window is None:
            records = self._storage.list_records()
        else:
            records = self._storage.list_records_since(now - window)
        records = [r for r in records if r.user_id == user_id]

        total_cost = sum(r.cost for r in records)
        total_requests = len(records)

        model_breakdown: dict[str, dict[str, float]] = {}
        operation_breakdown: dict[str, dict[str, float]] = {}
        for r in records:
            by_model = model_breakdown.setdefault(r.model, {"cost": 0.0, "requests": 0, "tokens": 0})
            by_model["cost"] += r.cost
            by_model["requests"] += 1
            by_model["tokens"] += r.total_tokens

            by_operation = operation_breakdown.setdefault(r.operation, {"cost": 0.0, "requests": 0})
            by_operation["cost"] += r.cost
            by_operation["requests"] += 1

        # Daily trend over the last 30 calendar days, oldest first
        per_day: dict[str, list[float]] = defaultdict(list)
        for r in records:
            per_day[r.timestamp.date().isoformat()].append(r.cost)

        daily_trend = []
        for days_ago in range(TREND_DAYS - 1, -1, -1):
            date_str = (now - timedelta(days=days_ago)).date().isoformat()
            costs = per_day.get(date_str, [])
            daily_trend.append({"date": date_str, "cost": sum(costs), "requests": len(costs)})

        budget_utilization = None
        limits = self._storage.get_budget(user_id)
        if limits:
            daily_cost = self._get_daily_cost(user_id, now)
            monthly_cost = self._get_monthly_cost(user_id, now)
            budget_utilization = {
                "daily": (daily_cost / limits.daily_limit) * 100 if limits.daily_limit > 0 else 0.0,
                "monthly": (monthly_cost / limits.monthly_limit) * 100 if limits.monthly_limit > 0 else 0.0,
            }

        return CostStats(
            user_id=user_id,
            timeframe=timeframe,
            total_cost=total_cost,
            total_requests=total_requests,
            avg_cost_per_request=total_cost / total_requests if total_requests > 0 else 0.0,
            model_breakdown=model_breakdown,
            operation_breakdown=operation_breakdown,
            daily_trend=daily_trend,
            budget_utilization=budget_utilization,
        )

    def get_model_recommendation(
        self,
        user_id: str,
        operation: str,
        estimated_tokens: int,
    ) -> CostRecommendation:
        """
        Recommend the most cost-appropriate model for an operation.

        Defaults to the cheapest model. Falls back to the free tier once the
        user is past 80% of a budget, and picks the premium model for
        high-value operations while monthly utilization is under 50%.
        """
        alternatives = sorted(
            (
                ModelCostEstimate(
                    model=model,
                    cost=(estimated_tokens / 1000) * (rates["input"] + rates["output"]),
                    reason=_model_reason(model),
                )
                for model, rates in self.pricing.items()
            ),
            key=lambda alt: alt.cost,
        )
        if not alternatives:
            raise ValueError("No priced models configured")

        recommended = alternatives[0]
        reason = "Cost-optimized choice"

        utilization = self.get_cost_stats(user_id, Timeframe.MONTH).budget_utilization
        if utilization:
            if (
                utilization["daily"] > HIGH_UTILIZATION_PCT
                or utilization["monthly"] > HIGH_UTILIZATION_PCT
            ):
                recommended = next((alt for alt in alternatives if alt.cost == 0), alternatives[0])
                reason = "Budget limit approaching - using free model"
            elif (
                operation in config.PREMIUM_OPERATIONS
                and utilization["monthly"] < PREMIUM_HEADROOM_PCT
            ):
                premium = config.get_models()["premium"]
                recommended = next((alt for alt in alternatives if alt.model == premium), alternatives[0])
                reason = f"Premium model for better {operation} accuracy"

        return CostRecommendation(
            recommended_model=recommended.model,
            estimated_cost=recommended.cost,
            reason=reason,
            alternatives=alternatives,
        )

    def generate_optimization_report(self, user_id: str) -> OptimizationReport:
        """
        Project month-end spend and point out where money goes.

        Returns:
            OptimizationReport with projection, savings estimate and top cost drivers.
        """
        stats = self.get_cost_stats(user_id, Timeframe.MONTH)
        daily_average = sum(day["cost"] for day in stats.daily_trend) / TREND_DAYS
        projected = daily_average * TREND_DAYS

        potential_savings = 0.0
        recommendations: list[str] = []

        for operation, data in stats.operation_breakdown.items():
            if operation in config.BULK_OPERATIONS and data["cost"] > 0:
                saving = data["cost"] * BULK_SAVINGS_RATE
                potential_savings += saving
                recommendations.append(f"Use free model for {operation} to save ~${saving:.2f}")

        top_cost_drivers = sorted(
            (
                {
                    "operation": operation,
                    "cost": data["cost"],
                    "percentage": (data["cost"] / stats.total_cost) * 100 if stats.total_cost > 0 else 0.0,
                }
                for operation, data in stats.operation_breakdown.items()
            ),
            key=lambda driver: driver["cost"],
            reverse=True,
        )[:5]

        if stats.total_cost > 10:
            recommendations.append("Consider setting daily and monthly budget limits")

        free_model = config.get_models()["free"]
        if stats.total_requests > 0 and free_model not in stats.model_breakdown:
            recommendations.append("Try free models for non-critical operations to reduce costs")

        return OptimizationReport(
            user_id=user_id,
            current_month_spend=stats.total_cost,
            projected_month_spend=projected,
            potential_savings=potential_savings,
            recommendations=recommendations,
            top_cost_drivers=top_cost_drivers,
        )

    def get_system_stats(self) -> SystemStats:
        """Spend across all users, with top users and models."""
        records = self._storage.list_records()

        by_user: dict[str, dict[str, float]] = defaultdict(lambda: {"cost": 0.0, "requests": 0})
        by_model: dict[str, dict[str, float]] = defaultdict(lambda: {"cost": 0.0, "requests": 0})
        for r in records:
            by_user[r.user_id]["cost"] += r.cost
            by_user[r.user_id]["requests"] += 1
            by_model[r.model]["cost"] += r.cost
            by_model[r.model]["requests"] += 1

        top_users = sorted(
            ({"user_id": user_id, **stats} for user_id, stats in by_user.items()),
            key=lambda x: x["cost"],
            reverse=True,
        )[:10]
        top_models = sorted(
            ({"model": model, **stats} for model, stats in by_model.items()),
            key=lambda x: x["cost"],
            reverse=True,
        )

        return SystemStats(
            total_users=len(by_user),
            total_cost=sum(r.cost for r in records),
            total_requests=len(records),
            top_users=top_users,
            top_models=top_models,
        )

    # =========================================================================
    # Utility
    # =========================================================================

    def get_alerts(self, user_id: Optional[str] = None) -> list[CostAlert]:
        """Alerts raised so far, optionally for one user."""
        with self._lock:
            alerts = list(self._alerts)
        if user_id:
            alerts = [a for a in alerts if a.user_id == user_id]
        return alerts

    def export_usage_data(
        self,
        user_id: str,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> list[UsageRecord]:
        """Ledger entries for a user, optionally restricted to [start, end]."""
        records = [r for r in self._storage.list_records() if r.user_id == user_id]
        if start:
            records = [r for r in records if r.timestamp >= start]
        if end:
            records = [r for r in records if r.timestamp <= end]
        return records
