"""
Batch orchestration for Gatekeeper.

Drives a bulk workload (many pending items for many users) through the
concurrency controller, consulting the rate limiter before each provider call
and feeding usage into the cost tracker afterwards.
"""

import asyncio
import json
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Optional, Protocol

from gatekeeper import config
from gatekeeper.concurrency import ConcurrencyController
from gatekeeper.cost_tracker import CostTracker
from gatekeeper.models import BatchOperation, Priority
from gatekeeper.providers import InferenceProvider, Messages
from gatekeeper.rate_limiter import RateLimiter

logger = logging.getLogger(__name__)

SYSTEM_PROMPT = (
    "You analyze one work item for a user. Use the supplied context records to "
    "resolve references. Respond with a single JSON object."
)


@dataclass
class WorkItem:
    """One pending unit of work belonging to a user."""
    item_id: str
    user_id: str
    payload: dict[str, Any] = field(default_factory=dict)


class WorkItemStore(Protocol):
    """Persistence the orchestrator reads pending work from and writes outcomes to."""

    async def list_users(self) -> list[str]:
        ...

    async def get_pending(self, user_id: str) -> list[WorkItem]:
        ...

    async def get_context(self, user_id: str) -> list[dict[str, Any]]:
        ...

    async def mark_processed(
        self,
        item: WorkItem,
        success: bool,
        extracted: Optional[dict[str, Any]],
        model: str,
    ) -> None:
        ...


@dataclass
class UserProcessingResult:
    """Outcome counts for one user's pending items."""
    user_id: str
    processed: int = 0
    errors: int = 0


@dataclass
class BatchRunSummary:
    """Outcome of a full run over every user."""
    users: int = 0
    processed: int = 0
    errors: int = 0
    failed_users: list[str] = field(default_factory=list)
    duration_seconds: float = 0.0


def default_message_builder(item: WorkItem, context: list[dict[str, Any]]) -> Messages:
    """Build a chat prompt from the item payload and the user's shared context."""
    return [
        {"role": "system", "content": SYSTEM_PROMPT},
        {
            "role": "user",
            "content": json.dumps(
                {"item": item.payload, "context": context},
                default=str,
            ),
        },
    ]


def parse_extracted(text: str) -> dict[str, Any]:
    """Parse a provider response into extracted data. Non-JSON text is kept verbatim."""
    try:
        data = json.loads(text)
    except json.JSONDecodeError:
        return {"text": text}
    if isinstance(data, dict):
        return data
    return {"result": data}


class BatchOrchestrator:
    """
    Processes every user's pending items through the concurrency controller.

    Users are processed one after another with a pause between them. Each
    user's items run as one batch; a failing item is logged and still marked
    processed (without extracted data) so it is not retried forever.
    """

    def __init__(
        self,
        controller: ConcurrencyController,
        provider: InferenceProvider,
        store: WorkItemStore,
        cost_tracker: Optional[CostTracker] = None,
        rate_limiter: Optional[RateLimiter] = None,
        model: Optional[str] = None,
        operation: str = "calendar_analysis",
        batch_size: int = 5,
        delay_between_batches: float = 1.0,
        delay_between_users: float = 2.0,
        item_timeout: Optional[float] = 60.0,
        fallback_model: Optional[str] = None,
        message_builder: Optional[Callable[[WorkItem, list[dict[str, Any]]], Messages]] = None,
    ):
        self.controller = controller
        self.provider = provider
        self.store = store
        self.cost_tracker = cost_tracker
        self.rate_limiter = rate_limiter
        self.model = model or config.get_models()["premium"]
        self.operation = operation
        self.batch_size = batch_size
        self.delay_between_batches = delay_between_batches
        self.delay_between_users = delay_between_users
        self.item_timeout = item_timeout
        self.fallback_model = fallback_model
        self.message_builder = message_builder or default_message_builder

    async def process_all_users(self) -> BatchRunSummary:
        """Process pending items for every user in the store."""
        started = time.perf_counter()
        summary = BatchRunSummary()

        users = await self.store.list_users()
        summary.users = len(users)
        if not users:
            logger.info("No users found to process")
            return summary

        logger.info("Found %d users to process", len(users))

        for index, user_id in enumerate(users):
            try:
                result = await self.process_user(user_id)
            except Exception:
                logger.exception("Error processing user %s", user_id)
                summary.errors += 1
                summary.failed_users.append(user_id)
            else:
                summary.processed += result.processed
                summary.errors += result.errors

            if index < len(users) - 1 and self.delay_between_users > 0:
                await asyncio.sleep(self.delay_between_users)

        summary.duration_seconds = time.perf_counter() - started
        logger.info(
            "Batch processing complete: %d processed, %d failed across %d users in %.2fs",
            summary.processed, summary.errors, summary.users, summary.duration_seconds,
        )
        if self.cost_tracker is not None:
            system = self.cost_tracker.get_system_stats()
            logger.info(
                "Usage: %d requests, $%.4f total cost",
                system.total_requests, system.total_cost,
            )
        return summary

    async def process_user(self, user_id: str) -> UserProcessingResult:
        """Process one user's pending items as a single controller batch."""
        pending, context = await asyncio.gather(
            self.store.get_pending(user_id),
            self.store.get_context(user_id),
        )

        if not pending:
            logger.info("No pending items for user %s", user_id)
            return UserProcessingResult(user_id=user_id)

        logger.info("Processing %d items for user %s", len(pending), user_id)

        operations = [
            BatchOperation(
                operation=self._item_operation(item, context),
                user_id=user_id,
                model=self.model,
                priority=Priority.coerce("normal"),
            )
            for item in pending
        ]

        outcomes = await self.controller.execute_batch(
            operations,
            batch_size=self.batch_size,
            delay_between_batches=self.delay_between_batches,
            timeout=self.item_timeout,
        )

        result = UserProcessingResult(
            user_id=user_id,
            processed=sum(1 for o in outcomes if o.success),
            errors=sum(1 for o in outcomes if not o.success),
        )
        logger.info(
            "User %s: %d processed, %d errors",
            user_id, result.processed, result.errors,
        )
        return result

    def _item_operation(self, item: WorkItem, context: list[dict[str, Any]]):
        async def run():
            return await self._process_item(item, context)
        return run

    async def _process_item(self, item: WorkItem, context: list[dict[str, Any]]) -> dict[str, Any]:
        model = self.model
        try:
            if self.rate_limiter is not None:
                decision = await self.rate_limiter.handle_rate_limit(
                    item.user_id,
                    self.model,
                    fallback_model=self.fallback_model,
                )
                if not decision.should_proceed:
                    raise RuntimeError(
                        f"Rate limit for {self.model} resets in {decision.wait_time:.1f}s"
                    )
                model = decision.model

            completion = await self.provider.complete(
                model,
                self.message_builder(item, context),
                json_mode=True,
            )
            extracted = parse_extracted(completion.text)

            if self.cost_tracker is not None:
                self.cost_tracker.track_usage(
                    item.user_id,
                    model,
                    completion.input_tokens,
                    completion.output_tokens,
                    self.operation,
                )

            await self.store.mark_processed(item, True, extracted, model)
        except Exception as exc:
            logger.warning("Error processing item %s for %s: %s", item.item_id, item.user_id, exc)
            try:
                await self.store.mark_processed(item, False, None, model)
            except Exception:
                logger.exception("Failed to mark item %s as processed", item.item_id)
            raise

        logger.debug("Processed item %s for %s", item.item_id, item.user_id)
        return extracted
