"""
Batch processing examples for Gatekeeper.

Demonstrates priority scheduling, rate limiting with fallback, budgets and a
full orchestrated run against the mock provider.
"""

import asyncio

from gatekeeper import (
    BatchOrchestrator,
    ConcurrencyController,
    CostTracker,
    InMemoryWorkItemStore,
    MockProvider,
    RateLimiter,
    RateLimitConfig,
    RequestTimeoutError,
    WorkItem,
    get_models,
)


async def example_priorities():
    """High priority work jumps the queue."""
    print("=" * 60)
    print("Example 1: Priority Scheduling")
    print("=" * 60)

    order = []

    def job(name):
        async def run():
            await asyncio.sleep(0.01)
            order.append(name)
            return name
        return run

    async with ConcurrencyController(max_concurrent_requests=1) as controller:
        await asyncio.gather(
            controller.submit(job("report"), user_id="u1", model="m", priority="low"),
            controller.submit(job("chat"), user_id="u1", model="m", priority="high"),
            controller.submit(job("sync"), user_id="u1", model="m", priority="medium"),
        )

    print(f"Completion order: {order}")
    print()


async def example_timeout():
    """Requests stuck in the queue fail with RequestTimeoutError."""
    print("=" * 60)
    print("Example 2: Queue Timeout")
    print("=" * 60)

    async with ConcurrencyController(max_concurrent_requests=1) as controller:
        slow = asyncio.ensure_future(
            controller.submit(lambda: asyncio.sleep(0.2), user_id="u1", model="m")
        )
        try:
            await controller.submit(lambda: asyncio.sleep(0), user_id="u1", model="m", timeout=0.05)
        except RequestTimeoutError as e:
            print(f"Timed out: {e}")
        await slow
    print()


async def example_rate_limit_fallback():
    """Switch to the free model when the premium window is exhausted."""
    print("=" * 60)
    print("Example 3: Rate Limit Fallback")
    print("=" * 60)

    models = get_models()
    limiter = RateLimiter({
        models["premium"]: RateLimitConfig(window_seconds=60, max_requests=2, model_type="premium"),
        models["free"]: RateLimitConfig(window_seconds=60, max_requests=20, model_type="free"),
    })

    for i in range(4):
        decision = await limiter.handle_rate_limit("u1", models["premium"], fallback_model=models["free"])
        print(f"Request {i + 1}: {decision.model}")
    print()


def example_budgets():
    """Budget alerts fire once spend crosses the threshold."""
    print("=" * 60)
    print("Example 4: Budgets")
    print("=" * 60)

    tracker = CostTracker()
    tracker.set_budget_limits("u1", daily_limit=1.00, monthly_limit=20.00)
    premium = get_models()["premium"]

    for i in range(3):
        result = tracker.track_usage("u1", premium, 1000, 1000, "calendar_analysis")
        print(f"Call {i + 1}: ${result.cost:.2f}, within budget: {result.within_budget}")
        for alert in result.alerts:
            print(f"  ALERT {alert.alert_type.value}: ${alert.current_value:.2f} of ${alert.threshold:.2f}")

    recommendation = tracker.get_model_recommendation("u1", "calendar_analysis", 2000)
    print(f"Recommended next model: {recommendation.recommended_model} ({recommendation.reason})")
    print()


async def example_orchestrated_run():
    """Process pending items for several users."""
    print("=" * 60)
    print("Example 5: Orchestrated Batch Run")
    print("=" * 60)

    store = InMemoryWorkItemStore()
    for user_id in ("alice", "bob"):
        store.add_user(
            user_id,
            [WorkItem(f"{user_id}-{i}", user_id, {"title": f"Meeting {i}"}) for i in range(6)],
            context=[{"id": "c1", "name": "Jordan"}],
        )

    tracker = CostTracker()
    async with ConcurrencyController(max_concurrent_requests=3) as controller:
        orchestrator = BatchOrchestrator(
            controller,
            MockProvider(latency=0.02, failure_rate=0.2, seed=7),
            store,
            cost_tracker=tracker,
            delay_between_batches=0.1,
            delay_between_users=0.2,
        )
        summary = await orchestrator.process_all_users()
        stats = controller.get_stats()

    print(f"Processed: {summary.processed}, failed: {summary.errors}")
    print(f"Controller completed={stats.completed} failed={stats.failed}")
    print(f"Total cost: ${tracker.get_system_stats().total_cost:.6f}")
    print()


async def main():
    await example_priorities()
    await example_timeout()
    await example_rate_limit_fallback()
    example_budgets()
    await example_orchestrated_run()


if __name__ == "__main__":
    asyncio.run(main())
