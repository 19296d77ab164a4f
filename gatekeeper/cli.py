"""
Command-line interface for Gatekeeper.

Provides commands for:
- Simulating a bulk workload against a mock provider
- Asking the rate limiter for a model recommendation
- Printing the pricing table
"""

import argparse
import asyncio
import logging
import sys
from typing import Optional

from gatekeeper import config
from gatekeeper.concurrency import ConcurrencyController
from gatekeeper.cost_tracker import CostTracker
from gatekeeper.metrics import MetricsCollector
from gatekeeper.orchestrator import BatchOrchestrator, WorkItem
from gatekeeper.providers import MockProvider
from gatekeeper.rate_limiter import RateLimiter
from gatekeeper.storage import InMemoryWorkItemStore
from gatekeeper.validation import ValidationError


async def _run_simulation(args) -> dict:
    store = InMemoryWorkItemStore()
    for u in range(args.users):
        user_id = f"user_{u + 1}"
        store.add_user(
            user_id,
            [
                WorkItem(
                    item_id=f"{user_id}-item-{i + 1}",
                    user_id=user_id,
                    payload={"title": f"Meeting {i + 1}", "attendees": [f"contact_{i % 3}"]},
                )
                for i in range(args.items)
            ],
            context=[{"id": f"contact_{c}", "name": f"Contact {c}"} for c in range(3)],
        )

    metrics = MetricsCollector(enable_logging=args.verbose)
    cost_tracker = CostTracker()
    rate_limiter = RateLimiter()
    models = config.get_models()
    provider = MockProvider(latency=args.latency, failure_rate=args.failure_rate, seed=args.seed)

    async with ConcurrencyController(args.concurrency, metrics=metrics) as controller:
        orchestrator = BatchOrchestrator(
            controller,
            provider,
            store,
            cost_tracker=cost_tracker,
            rate_limiter=rate_limiter,
            model=args.model or models["premium"],
            batch_size=args.batch_size,
            delay_between_batches=args.batch_delay,
            delay_between_users=args.user_delay,
            fallback_model=models["free"],
        )
        summary = await orchestrator.process_all_users()
        stats = controller.get_stats()

    return {
        "summary": summary,
        "stats": stats,
        "system": cost_tracker.get_system_stats(),
        "rate_limits": [rate_limiter.get_usage_stats(f"user_{u + 1}") for u in range(args.users)],
    }


def cmd_simulate(args) -> int:
    """Run a simulated bulk workload."""
    print("\n" + "=" * 60)
    print("GATEKEEPER SIMULATION")
    print("=" * 60)
    print(f"Users: {args.users}, items per user: {args.items}")
    print(f"Concurrency: {args.concurrency}, failure rate: {args.failure_rate:.0%}")
    print()

    result = asyncio.run(_run_simulation(args))
    summary, stats, system = result["summary"], result["stats"], result["system"]

    print("-" * 60)
    print("CONTROLLER")
    print("-" * 60)
    print(f"Completed: {stats.completed}")
    print(f"Failed: {stats.failed}")
    print(f"Avg processing time: {stats.avg_processing_time_ms:.1f}ms")
    print(f"Run duration: {summary.duration_seconds:.2f}s")
    print()
    print("-" * 60)
    print("COSTS")
    print("-" * 60)
    print(f"Total requests: {system.total_requests}")
    print(f"Total cost: ${system.total_cost:.6f}")
    for entry in system.top_models:
        print(f"  {entry['model']}: {entry['requests']} requests, ${entry['cost']:.6f}")
    print()
    print("-" * 60)
    print("RATE LIMITS")
    print("-" * 60)
    for usage in result["rate_limits"]:
        print(
            f"  {usage['user_id']}: free {usage['free_model_usage']['count']}, "
            f"premium {usage['premium_model_usage']['count']}"
        )
    print("=" * 60)
    return 0 if summary.errors == 0 else 1


def cmd_recommend(args) -> int:
    """Print the recommended model for a workload size."""
    recommendation = RateLimiter().recommended_model(args.count, args.historical)
    print(f"Model: {recommendation.model}")
    print(f"Why: {recommendation.reason}")
    return 0


def cmd_pricing(args) -> int:
    """Print the pricing table."""
    print(f"{'Model':<45} {'Input/1K':>10} {'Output/1K':>10}")
    print("-" * 67)
    for model, price in sorted(config.get_pricing().items()):
        print(f"{model:<45} {price['input']:>10.4f} {price['output']:>10.4f}")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="gatekeeper",
        description="Gatekeeper - LLM admission control and scheduling",
    )
    subparsers = parser.add_subparsers(dest="command", help="Command to run")

    sim_parser = subparsers.add_parser("simulate", help="Simulate a bulk workload")
    sim_parser.add_argument("--users", "-u", type=int, default=3, help="Number of users")
    sim_parser.add_argument("--items", "-n", type=int, default=10, help="Pending items per user")
    sim_parser.add_argument("--concurrency", "-c", type=int, default=config.DEFAULT_CONCURRENCY,
                            help="Concurrency ceiling (1-50)")
    sim_parser.add_argument("--failure-rate", "-f", type=float, default=0.1,
                            help="Simulated provider failure rate")
    sim_parser.add_argument("--latency", "-l", type=float, default=0.05,
                            help="Simulated provider latency in seconds")
    sim_parser.add_argument("--model", "-m", help="Model to use (defaults to the premium tier)")
    sim_parser.add_argument("--batch-size", type=int, default=5)
    sim_parser.add_argument("--batch-delay", type=float, default=0.0,
                            help="Seconds between batches")
    sim_parser.add_argument("--user-delay", type=float, default=0.0,
                            help="Seconds between users")
    sim_parser.add_argument("--seed", type=int, help="Random seed for the mock provider")
    sim_parser.add_argument("--verbose", "-v", action="store_true", help="Log controller events")

    rec_parser = subparsers.add_parser("recommend", help="Recommend a model for a workload")
    rec_parser.add_argument("--count", "-n", type=int, required=True, help="Number of requests")
    rec_parser.add_argument("--historical", action="store_true",
                            help="Workload is a historical sync")

    subparsers.add_parser("pricing", help="Show the pricing table")

    return parser


def main(argv: Optional[list[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        return 1

    logging.basicConfig(
        level=logging.INFO if getattr(args, "verbose", False) else logging.WARNING,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )

    commands = {
        "simulate": cmd_simulate,
        "recommend": cmd_recommend,
        "pricing": cmd_pricing,
    }

    try:
        return commands[args.command](args)
    except ValidationError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 2


if __name__ == "__main__":
    sys.exit(main())
