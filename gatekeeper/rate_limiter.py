"""
Rate limiting for Gatekeeper.

Fixed-window request limits per (user, model) pair. A window opens on the
first request and closes at its reset time; the next request after that opens
a fresh window. Two full windows back to back allow up to 2x the limit across
the boundary.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from threading import Lock
from typing import Awaitable, Callable, Optional

from gatekeeper import config
from gatekeeper.models import (
    ModelRecommendation,
    RateLimitDecision,
    RateLimitEntry,
    RateLimitResult,
)

logger = logging.getLogger(__name__)

BULK_REQUEST_THRESHOLD = 50
CLEANUP_INTERVAL_SECONDS = 5 * 60
MIN_RETRY_WAIT = 0.01


@dataclass
class RateLimitConfig:
    """Rate limit configuration for one model."""
    window_seconds: float = 60.0
    max_requests: int = 60
    model_type: str = "premium"  # "free" or "premium"


def _load_configs() -> dict[str, RateLimitConfig]:
    return {
        model: RateLimitConfig(
            window_seconds=float(entry["window_seconds"]),
            max_requests=int(entry["max_requests"]),
            model_type=entry.get("model_type", "premium"),
        )
        for model, entry in config.get_rate_limits().items()
    }


class RateLimiter:
    """
    Fixed-window rate limiter keyed by (user_id, model).

    Models without a configuration are unlimited. Entries are created lazily
    on first use and discarded once their window has expired.
    """

    def __init__(
        self,
        configs: Optional[dict[str, RateLimitConfig]] = None,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        """
        Initialize rate limiter.

        Args:
            configs: Per-model configuration. Loaded from gatekeeper.config if not provided.
            clock: Time source returning epoch seconds.
            sleep: Coroutine used to wait for a window reset.
        """
        self.configs = configs if configs is not None else _load_configs()
        self._clock = clock
        self._sleep = sleep
        self._lock = Lock()
        self._entries: dict[str, RateLimitEntry] = {}
        self._cleanup_task: Optional[asyncio.Task] = None
        self.total_wait_time = 0.0

    @staticmethod
    def _key(user_id: str, model: str) -> str:
        return f"{user_id}:{model}"

    def check_limit(self, user_id: str, model: str) -> RateLimitResult:
        """
        Check whether a request may proceed and count it if so.

        Args:
            user_id: User identifier
            model: Model identifier

        Returns:
            RateLimitResult; on denial carries the window's reset time and a suggestion
        """
        limit = self.configs.get(model)
        if limit is None:
            return RateLimitResult(allowed=True)

        key = self._key(user_id, model)
        with self._lock:
            now = self._clock()
            entry = self._entries.get(key)

            if entry and now > entry.reset_time:
                del self._entries[key]
                entry = None

            if entry is None:
                self._entries[key] = RateLimitEntry(
                    count=1,
                    reset_time=now + limit.window_seconds,
                )
                return RateLimitResult(allowed=True)

            if entry.count >= limit.max_requests:
                if limit.model_type == "premium":
                    suggestion = (
                        "Consider using the free model for bulk processing "
                        "or wait for rate limit reset"
                    )
                else:
                    suggestion = "Consider upgrading to premium model for higher rate limits"

                logger.debug(
                    "Rate limit reached for %s on %s (%d/%d)",
                    user_id, model, entry.count, limit.max_requests,
                )
                return RateLimitResult(
                    allowed=False,
                    reset_time=entry.reset_time,
                    suggestion=suggestion,
                )

            entry.count += 1
            return RateLimitResult(allowed=True)

    def recommended_model(
        self,
        request_count: int,
        is_historical_sync: bool = False,
    ) -> ModelRecommendation:
        """Recommend a model for a workload of the given size. Advisory only."""
        models = config.get_models()

        if is_historical_sync or request_count > BULK_REQUEST_THRESHOLD:
            return ModelRecommendation(
                model=models["free"],
                reason=(
                    f"Historical sync or large batch ({request_count} requests) - "
                    f"using free model to avoid rate limits"
                ),
            )

        return ModelRecommendation(
            model=models["premium"],
            reason=(
                f"Small batch ({request_count} requests) - "
                f"using premium model for better accuracy"
            ),
        )

    def get_usage_stats(self, user_id: str) -> dict:
        """
        Get current window usage for the free and premium models.

        Returns:
            Dictionary with per-tier counts, reset times and recommendations
        """
        models = config.get_models()
        with self._lock:
            free_entry = self._entries.get(self._key(user_id, models["free"]))
            premium_entry = self._entries.get(self._key(user_id, models["premium"]))

        recommendations = []
        if premium_entry and premium_entry.count > 40:
            recommendations.append("Consider using free model for bulk operations to save costs")
        if free_entry and free_entry.count > 15:
            recommendations.append("Free model usage is high - premium model offers better accuracy")
        if not free_entry and not premium_entry:
            recommendations.append(
                "Start with free model for testing, upgrade to premium for production"
            )

        return {
            "user_id": user_id,
            "free_model_usage": {
                "count": free_entry.count if free_entry else 0,
                "reset_time": free_entry.reset_time if free_entry else None,
            },
            "premium_model_usage": {
                "count": premium_entry.count if premium_entry else 0,
                "reset_time": premium_entry.reset_time if premium_entry else None,
            },
            "recommendations": recommendations,
        }

    async def handle_rate_limit(
        self,
        user_id: str,
        primary_model: str,
        fallback_model: Optional[str] = None,
        max_wait: float = 60.0,
    ) -> RateLimitDecision:
        """
        Resolve which model a request should use under rate limits.

        Tries the primary model, then the fallback (unless the primary already
        is the free tier), then waits for the primary window to reset if that
        is no longer than max_wait.

        Args:
            user_id: User identifier
            primary_model: Preferred model
            fallback_model: Model to switch to when the primary is exhausted
            max_wait: Longest wait in seconds before giving up

        Returns:
            RateLimitDecision with the model to use and whether to proceed
        """
        primary = self.check_limit(user_id, primary_model)
        if primary.allowed:
            return RateLimitDecision(model=primary_model, should_proceed=True)

        wait_time = (
            max(0.0, primary.reset_time - self._clock())
            if primary.reset_time is not None
            else max_wait
        )
        logger.warning(
            "Rate limit exceeded for %s. %s. Wait time: %.1fs",
            primary_model, primary.suggestion, wait_time,
        )

        free_model = config.get_models()["free"]
        if fallback_model and primary_model != free_model:
            fallback = self.check_limit(user_id, fallback_model)
            if fallback.allowed:
                logger.info("Switched %s to fallback model %s", user_id, fallback_model)
                return RateLimitDecision(model=fallback_model, should_proceed=True)

        waited = 0.0
        while waited + wait_time <= max_wait:
            logger.info("Waiting %.1fs for rate limit reset on %s", wait_time, primary_model)
            await self._sleep(wait_time)
            waited += wait_time
            self.total_wait_time += wait_time

            retry = self.check_limit(user_id, primary_model)
            if retry.allowed:
                return RateLimitDecision(
                    model=primary_model,
                    should_proceed=True,
                    wait_time=waited,
                )

            # Woke at or before the reset time; the window is still closed
            wait_time = max(
                MIN_RETRY_WAIT,
                retry.reset_time - self._clock() if retry.reset_time is not None else max_wait,
            )

        return RateLimitDecision(
            model=primary_model,
            should_proceed=False,
            wait_time=waited + wait_time,
        )

    def cleanup(self) -> int:
        """
        Remove entries whose window has expired.

        Returns:
            Number of entries removed
        """
        with self._lock:
            now = self._clock()
            expired = [key for key, entry in self._entries.items() if now > entry.reset_time]
            for key in expired:
                del self._entries[key]

        if expired:
            logger.debug("Removed %d expired rate limit entries", len(expired))
        return len(expired)

    def start_cleanup(self, interval: float = CLEANUP_INTERVAL_SECONDS) -> asyncio.Task:
        """Start a background task that sweeps expired entries every interval seconds."""
        if self._cleanup_task is None or self._cleanup_task.done():
            self._cleanup_task = asyncio.get_running_loop().create_task(
                self._cleanup_loop(interval)
            )
        return self._cleanup_task

    async def stop_cleanup(self) -> None:
        """Stop the background sweep if it is running."""
        task, self._cleanup_task = self._cleanup_task, None
        if task is None or task.done():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def _cleanup_loop(self, interval: float) -> None:
        while True:
            await asyncio.sleep(interval)
            self.cleanup()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def reset(self, user_id: Optional[str] = None) -> None:
        """
        Reset rate limits for a user or all users.

        Args:
            user_id: User to reset, or None for all users
        """
        with self._lock:
            if user_id:
                prefix = f"{user_id}:"
                for key in [k for k in self._entries if k.startswith(prefix)]:
                    del self._entries[key]
            else:
                self._entries.clear()
