"""
Concurrency control for Gatekeeper.

Runs arbitrary async operations against a shared provider under a global
concurrency ceiling, admitting pending work by priority (then by submission
order). One controller is constructed per process and passed to every call
site; it runs a background drain loop on the current event loop.

Timeouts only apply while a request is waiting in the queue. Once admitted,
an operation runs until it finishes; only a forced shutdown cancels it.
"""

import asyncio
import logging
import random
import string
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional, Sequence, TypeVar

from gatekeeper import config
from gatekeeper.metrics import MetricsCollector
from gatekeeper.models import BatchOperation, BatchOutcome, ConcurrencyStats, Priority
from gatekeeper.validation import validate_batch_options, validate_concurrency

logger = logging.getLogger(__name__)

T = TypeVar("T")

PROCESSING_WINDOW = 100
DEFAULT_BATCH_SIZE = 10
DEFAULT_BATCH_DELAY = 0.1
DEFAULT_BATCH_TIMEOUT = 60.0


class RequestTimeoutError(TimeoutError):
    """Raised when a request is still queued when its timeout elapses."""

    def __init__(self, request_id: str, timeout: float):
        self.request_id = request_id
        self.timeout = timeout
        super().__init__(f"LLM request {request_id} timed out after {timeout:.3f}s in queue")


class ShutdownError(RuntimeError):
    """Raised for work rejected or abandoned because the controller is shutting down."""
    pass


def _new_request_id() -> str:
    suffix = "".join(random.choices(string.ascii_lowercase + string.digits, k=9))
    return f"{int(time.time() * 1000)}-{suffix}"


@dataclass
class QueuedRequest:
    """One submitted unit of work."""
    operation: Callable[[], Awaitable[Any]]
    priority: Priority
    user_id: str
    model: str
    future: asyncio.Future
    id: str = field(default_factory=_new_request_id)
    timestamp: float = field(default_factory=time.time)
    timeout_handle: Optional[asyncio.TimerHandle] = None
    task: Optional[asyncio.Task] = None


class ConcurrencyController:
    """
    Priority queue plus bounded worker pool.

    At most max_concurrent_requests operations run at once. Pending requests
    are admitted highest priority first and FIFO within a priority. A drain
    step runs whenever capacity may have changed (submission, completion,
    concurrency adjustment) and on a fixed tick.

    Every request that reaches a terminal outcome is counted exactly once:
    in completed when its operation returns, in failed when the operation
    raises, its queue timeout elapses, or a forced shutdown abandons it.
    An admitted operation is counted by its own outcome even if its caller
    stopped waiting. Requests whose caller gives up before admission are
    dropped without being counted.

    Example:
        ```python
        async with ConcurrencyController(max_concurrent_requests=5) as controller:
            summary = await controller.submit(
                lambda: provider.complete(model, messages),
                user_id="user_123",
                model=model,
                priority=Priority.HIGH,
                timeout=30.0,
            )
        ```
    """

    def __init__(
        self,
        max_concurrent_requests: Optional[int] = None,
        tick_interval: float = 0.1,
        metrics: Optional[MetricsCollector] = None,
    ):
        """
        Initialize the controller.

        Args:
            max_concurrent_requests: Concurrency ceiling in [1, 50]. Read from
                gatekeeper.config if not provided.
            tick_interval: Seconds between drain passes when nothing wakes the loop.
            metrics: Collector that receives lifecycle events.
        """
        if max_concurrent_requests is None:
            max_concurrent_requests = config.get_default_concurrency()
        validate_concurrency(max_concurrent_requests)

        self.max_concurrent_requests = max_concurrent_requests
        self.tick_interval = tick_interval
        self.metrics = metrics if metrics is not None else MetricsCollector()

        self._queue: list[QueuedRequest] = []
        self._active: dict[str, QueuedRequest] = {}
        self._processing_times: deque[float] = deque(maxlen=PROCESSING_WINDOW)
        self._completed = 0
        self._failed = 0
        self._avg_processing_time_ms = 0.0

        self._wake: Optional[asyncio.Event] = None
        self._loop_task: Optional[asyncio.Task] = None
        self._closing = False
        self._stopping = False

    async def __aenter__(self):
        self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.shutdown()
        return False

    # =========================================================================
    # Lifecycle
    # =========================================================================

    def start(self) -> None:
        """Start the background drain loop on the running event loop."""
        if self._loop_task is not None and not self._loop_task.done():
            return
        if self._wake is None:
            self._wake = asyncio.Event()
        self._stopping = False
        self._loop_task = asyncio.get_running_loop().create_task(self._drain_loop())

    @property
    def is_running(self) -> bool:
        return self._loop_task is not None and not self._loop_task.done()

    async def _drain_loop(self) -> None:
        while not self._stopping:
            try:
                async with asyncio.timeout(self.tick_interval):
                    await self._wake.wait()
            except TimeoutError:
                pass
            self._wake.clear()
            if not self._stopping:
                self._drain()

    def _notify(self) -> None:
        if self._wake is not None:
            self._wake.set()

    async def shutdown(self, timeout: float = 30.0) -> None:
        """
        Stop accepting work and wait for queued and active work to finish.

        If the timeout elapses first, every active and pending request is
        failed with ShutdownError and still-running operations are cancelled.

        Args:
            timeout: Seconds to wait before forcing shutdown.
        """
        self._closing = True
        self._notify()

        try:
            async with asyncio.timeout(timeout):
                await self._wait_idle()
        except TimeoutError:
            logger.warning(
                "Concurrency controller shutdown timed out after %.3fs, forcing shutdown "
                "(%d active, %d queued)",
                timeout, len(self._active), len(self._queue),
            )
            self._force_fail_all()
        finally:
            await self._stop_loop()

    async def _wait_idle(self) -> None:
        while self._active or self._queue:
            await asyncio.sleep(min(self.tick_interval, 0.01))

    async def _stop_loop(self) -> None:
        task, self._loop_task = self._loop_task, None
        if task is None or task.done():
            return
        self._stopping = True
        self._notify()
        await task

    def _force_fail_all(self) -> None:
        running = list(self._active.values())
        pending = [r for r in self._queue if not r.future.done()]
        abandoned = running + pending
        self._queue = []
        self._active.clear()
        self._failed += len(abandoned)

        for request in abandoned:
            if request.timeout_handle is not None:
                request.timeout_handle.cancel()
            if not request.future.done():
                request.future.set_exception(ShutdownError("System shutdown"))
            if request.task is not None and not request.task.done():
                request.task.cancel()

        self.metrics.record_event(
            "shutdown_forced",
            request_id="-",
            user_id="-",
            abandoned=len(abandoned),
        )

    # =========================================================================
    # Submission
    # =========================================================================

    async def submit(
        self,
        operation: Callable[[], Awaitable[T]],
        *,
        user_id: str,
        model: str,
        priority: Priority | str = Priority.MEDIUM,
        timeout: Optional[float] = None,
    ) -> T:
        """
        Run an operation under the concurrency ceiling.

        Args:
            operation: Zero-argument callable returning an awaitable.
            user_id: User the request is attributed to.
            model: Model the request targets.
            priority: "high", "medium" (or "normal") or "low".
            timeout: Seconds the request may wait in the queue before failing.

        Returns:
            Whatever the operation returns.

        Raises:
            RequestTimeoutError: If still queued when the timeout elapses.
            ShutdownError: If the controller is shutting down.
            Exception: Whatever the operation itself raised.
        """
        if self._closing:
            raise ShutdownError("Controller is shutting down; request rejected")

        loop = asyncio.get_running_loop()
        self.start()

        request = QueuedRequest(
            operation=operation,
            priority=Priority.coerce(priority),
            user_id=user_id,
            model=model,
            future=loop.create_future(),
        )

        if timeout is not None:
            request.timeout_handle = loop.call_later(timeout, self._expire, request.id, timeout)

        self._enqueue(request)
        return await request.future

    def _enqueue(self, request: QueuedRequest) -> None:
        # Before the first request of strictly lower priority
        index = next(
            (i for i, queued in enumerate(self._queue) if queued.priority.rank > request.priority.rank),
            len(self._queue),
        )
        self._queue.insert(index, request)

        logger.debug(
            "Queued request %s (%s) for %s on %s, queue length %d",
            request.id, request.priority.value, request.user_id, request.model, len(self._queue),
        )
        self.metrics.record_event(
            "request_queued",
            request_id=request.id,
            user_id=request.user_id,
            model=request.model,
            priority=request.priority.value,
            queue_length=len(self._queue),
        )
        self._notify()

    def _remove_from_queue(self, request_id: str) -> Optional[QueuedRequest]:
        for index, request in enumerate(self._queue):
            if request.id == request_id:
                return self._queue.pop(index)
        return None

    def _expire(self, request_id: str, timeout: float) -> None:
        request = self._remove_from_queue(request_id)
        if request is None:
            return  # already admitted or gone

        if not request.future.done():
            self._failed += 1
            request.future.set_exception(RequestTimeoutError(request_id, timeout))
        self.metrics.record_event(
            "request_timeout",
            request_id=request.id,
            user_id=request.user_id,
            model=request.model,
            timeout=timeout,
        )

    # =========================================================================
    # Execution
    # =========================================================================

    def _drain(self) -> None:
        """Admit queued requests while there is capacity."""
        while len(self._active) < self.max_concurrent_requests and self._queue:
            request = self._queue.pop(0)
            if request.timeout_handle is not None:
                request.timeout_handle.cancel()
            if request.future.done():
                continue  # caller gave up while it was queued

            self._active[request.id] = request
            logger.debug(
                "Admitted request %s (%d/%d active)",
                request.id, len(self._active), self.max_concurrent_requests,
            )
            request.task = asyncio.get_running_loop().create_task(self._run(request))

    async def _run(self, request: QueuedRequest) -> None:
        started = time.perf_counter()
        self.metrics.record_event(
            "request_started",
            request_id=request.id,
            user_id=request.user_id,
            model=request.model,
        )

        try:
            result = await request.operation()
        except Exception as exc:
            if self._release(request):
                self._failed += 1
            if not request.future.done():
                request.future.set_exception(exc)
            self.metrics.record_event(
                "request_failed",
                request_id=request.id,
                user_id=request.user_id,
                model=request.model,
                error=str(exc) or type(exc).__name__,
            )
        else:
            processing_time_ms = (time.perf_counter() - started) * 1000
            if self._release(request):
                self._completed += 1
                self._processing_times.append(processing_time_ms)
                self._avg_processing_time_ms = sum(self._processing_times) / len(self._processing_times)
            if not request.future.done():
                request.future.set_result(result)
            self.metrics.record_event(
                "request_completed",
                request_id=request.id,
                user_id=request.user_id,
                model=request.model,
                processing_time_ms=processing_time_ms,
            )
        finally:
            self._active.pop(request.id, None)
            self._notify()

    def _release(self, request: QueuedRequest) -> bool:
        """Remove a finished request from the active set. False if shutdown already failed it."""
        return self._active.pop(request.id, None) is not None

    async def execute_batch(
        self,
        operations: Sequence[BatchOperation],
        *,
        batch_size: int = DEFAULT_BATCH_SIZE,
        delay_between_batches: float = DEFAULT_BATCH_DELAY,
        timeout: Optional[float] = DEFAULT_BATCH_TIMEOUT,
    ) -> list[BatchOutcome]:
        """
        Run many operations in fixed-size groups with a pause between groups.

        No single failure aborts the batch: every operation gets its own outcome,
        returned in submission order.

        Args:
            operations: Operations with their user, model and priority tags.
            batch_size: Operations submitted together.
            delay_between_batches: Seconds to pause between groups.
            timeout: Per-operation queue timeout in seconds.

        Returns:
            One BatchOutcome per operation.
        """
        validate_batch_options(batch_size, delay_between_batches, timeout)
        outcomes: list[BatchOutcome] = []

        for start in range(0, len(operations), batch_size):
            batch = operations[start:start + batch_size]
            results = await asyncio.gather(
                *(
                    self.submit(
                        op.operation,
                        user_id=op.user_id,
                        model=op.model,
                        priority=op.priority,
                        timeout=timeout,
                    )
                    for op in batch
                ),
                return_exceptions=True,
            )

            for result in results:
                if isinstance(result, BaseException):
                    outcomes.append(
                        BatchOutcome(success=False, error=str(result) or type(result).__name__)
                    )
                else:
                    outcomes.append(BatchOutcome(success=True, result=result))

            if start + batch_size < len(operations) and delay_between_batches > 0:
                await asyncio.sleep(delay_between_batches)

        return outcomes

    # =========================================================================
    # Tuning and stats
    # =========================================================================

    def adjust_concurrency(self, new_limit: int) -> None:
        """
        Change the concurrency ceiling at runtime.

        Raises:
            ValidationError: If new_limit is outside [1, 50].
        """
        validate_concurrency(new_limit)

        previous = self.max_concurrent_requests
        self.max_concurrent_requests = new_limit
        logger.info("Concurrency limit changed from %d to %d", previous, new_limit)
        self.metrics.record_event(
            "concurrency_changed",
            request_id="-",
            user_id="-",
            new_limit=new_limit,
            current_active=len(self._active),
        )

        if new_limit > len(self._active):
            self._notify()

    def get_stats(self) -> ConcurrencyStats:
        """Current queue, active set and outcome counters."""
        model_breakdown: dict[str, int] = {}
        user_breakdown: dict[str, int] = {}
        for request in list(self._active.values()) + self._queue:
            model_breakdown[request.model] = model_breakdown.get(request.model, 0) + 1
            user_breakdown[request.user_id] = user_breakdown.get(request.user_id, 0) + 1

        return ConcurrencyStats(
            active=len(self._active),
            queued=len(self._queue),
            completed=self._completed,
            failed=self._failed,
            avg_processing_time_ms=self._avg_processing_time_ms,
            queue_depth=len(self._queue),
            max_concurrent_requests=self.max_concurrent_requests,
            model_breakdown=model_breakdown,
            user_breakdown=user_breakdown,
        )
