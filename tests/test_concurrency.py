"""Tests for the concurrency controller."""

import asyncio
import time

import pytest

from gatekeeper.concurrency import (
    ConcurrencyController,
    RequestTimeoutError,
    ShutdownError,
)
from gatekeeper.metrics import MetricsCollector
from gatekeeper.models import BatchOperation, Priority
from gatekeeper.validation import ValidationError


async def wait_until(predicate, timeout=1.0):
    """Poll until predicate() is true or fail the test."""
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.005)


def blocking_op(gate: asyncio.Event, result=None):
    async def run():
        await gate.wait()
        return result
    return run


class TestSubmit:
    """Test single submissions."""

    @pytest.mark.asyncio
    async def test_returns_operation_result(self):
        """The caller receives exactly what the operation returned."""
        async with ConcurrencyController(max_concurrent_requests=2) as controller:
            async def op():
                return {"answer": 42}

            result = await controller.submit(op, user_id="u1", model="m1")

        assert result == {"answer": 42}
        assert controller.get_stats().completed == 1

    @pytest.mark.asyncio
    async def test_propagates_original_exception(self):
        """The operation's exception reaches the caller unchanged."""
        error = ValueError("boom")

        async def op():
            raise error

        async with ConcurrencyController(max_concurrent_requests=2) as controller:
            with pytest.raises(ValueError) as excinfo:
                await controller.submit(op, user_id="u1", model="m1")

            assert excinfo.value is error
            stats = controller.get_stats()
            assert stats.failed == 1
            assert stats.completed == 0

    @pytest.mark.asyncio
    async def test_normal_priority_alias(self):
        """'normal' is accepted as the medium tier."""
        async with ConcurrencyController() as controller:
            async def op():
                return "ok"

            assert await controller.submit(op, user_id="u1", model="m1", priority="normal") == "ok"

    @pytest.mark.asyncio
    async def test_unknown_priority_rejected(self):
        """Unknown priority names raise ValidationError."""
        async def scenario():
            async with ConcurrencyController() as controller:
                with pytest.raises(ValidationError):
                    await controller.submit(lambda: asyncio.sleep(0), user_id="u1", model="m1", priority="urgent")
            return controller

        controller = await asyncio.wait_for(scenario(), timeout=1.0)
        assert not controller.is_running
        assert controller.get_stats().failed == 0


class TestScheduling:
    """Test ceiling enforcement and priority ordering."""

    @pytest.mark.asyncio
    async def test_never_exceeds_ceiling(self):
        """At most max_concurrent_requests operations run at once."""
        running = 0
        peak = 0

        async def op():
            nonlocal running, peak
            running += 1
            peak = max(peak, running)
            await asyncio.sleep(0.02)
            running -= 1

        async with ConcurrencyController(max_concurrent_requests=3) as controller:
            await asyncio.gather(*(controller.submit(op, user_id="u1", model="m1") for _ in range(10)))

        assert peak == 3
        assert controller.get_stats().completed == 10

    @pytest.mark.asyncio
    async def test_priority_then_fifo_order(self):
        """Queued work is admitted high first, FIFO within a priority."""
        gate = asyncio.Event()
        order = []

        def named(name):
            async def run():
                order.append(name)
            return run

        async with ConcurrencyController(max_concurrent_requests=1) as controller:
            holder = asyncio.create_task(controller.submit(blocking_op(gate), user_id="u1", model="m1"))
            await wait_until(lambda: controller.get_stats().active == 1)

            tasks = [
                asyncio.create_task(controller.submit(named("low"), user_id="u1", model="m1", priority=Priority.LOW)),
                asyncio.create_task(controller.submit(named("high-1"), user_id="u1", model="m1", priority=Priority.HIGH)),
                asyncio.create_task(controller.submit(named("medium"), user_id="u1", model="m1", priority=Priority.MEDIUM)),
                asyncio.create_task(controller.submit(named("high-2"), user_id="u1", model="m1", priority=Priority.HIGH)),
            ]
            await wait_until(lambda: controller.get_stats().queued == 4)

            gate.set()
            await asyncio.gather(holder, *tasks)

        assert order == ["high-1", "high-2", "medium", "low"]

    @pytest.mark.asyncio
    async def test_stats_breakdowns(self):
        """Stats count active and queued requests by model and user."""
        gate = asyncio.Event()
        async with ConcurrencyController(max_concurrent_requests=1) as controller:
            tasks = [
                asyncio.create_task(controller.submit(blocking_op(gate), user_id="alice", model="m1")),
                asyncio.create_task(controller.submit(blocking_op(gate), user_id="bob", model="m2")),
                asyncio.create_task(controller.submit(blocking_op(gate), user_id="alice", model="m2")),
            ]
            await wait_until(lambda: controller.get_stats().active == 1)

            stats = controller.get_stats()
            assert stats.queued == 2
            assert stats.queue_depth == 2
            assert stats.max_concurrent_requests == 1
            assert stats.model_breakdown == {"m1": 1, "m2": 2}
            assert stats.user_breakdown == {"alice": 2, "bob": 1}

            gate.set()
            await asyncio.gather(*tasks)

        assert controller.get_stats().avg_processing_time_ms >= 0


class TestTimeouts:
    """Test queue timeouts."""

    @pytest.mark.asyncio
    async def test_queued_request_times_out(self):
        """A request still queued at its deadline fails with RequestTimeoutError."""
        gate = asyncio.Event()
        async with ConcurrencyController(max_concurrent_requests=1) as controller:
            holder = asyncio.create_task(controller.submit(blocking_op(gate, "held"), user_id="u1", model="m1"))
            await wait_until(lambda: controller.get_stats().active == 1)

            started = time.perf_counter()
            with pytest.raises(RequestTimeoutError) as excinfo:
                await controller.submit(lambda: asyncio.sleep(0), user_id="u1", model="m1", timeout=0.05)
            elapsed = time.perf_counter() - started

            assert excinfo.value.timeout == 0.05
            assert 0.04 <= elapsed < 0.2
            assert controller.get_stats().failed == 1
            assert controller.get_stats().queued == 0
            assert controller.get_stats().active == 1

            gate.set()
            assert await holder == "held"

    @pytest.mark.asyncio
    async def test_admitted_request_is_not_timed_out(self):
        """The timeout only covers queue wait, not execution."""
        async def slow():
            await asyncio.sleep(0.1)
            return "done"

        async with ConcurrencyController(max_concurrent_requests=1) as controller:
            result = await controller.submit(slow, user_id="u1", model="m1", timeout=0.05)

        assert result == "done"

    @pytest.mark.asyncio
    async def test_timeout_emits_event(self):
        """Timed-out requests are reported to metrics."""
        metrics = MetricsCollector()
        gate = asyncio.Event()
        async with ConcurrencyController(max_concurrent_requests=1, metrics=metrics) as controller:
            holder = asyncio.create_task(controller.submit(blocking_op(gate), user_id="u1", model="m1"))
            await wait_until(lambda: controller.get_stats().active == 1)

            with pytest.raises(RequestTimeoutError):
                await controller.submit(lambda: asyncio.sleep(0), user_id="u1", model="m1", timeout=0.02)

            gate.set()
            await holder

        assert metrics.count("request_timeout") == 1
        assert metrics.count("request_completed") == 1


class TestBatch:
    """Test batch execution."""

    @pytest.mark.asyncio
    async def test_failure_does_not_abort_batch(self):
        """Each operation gets its own outcome, in submission order."""
        def op(i):
            async def run():
                if i == 3:
                    raise RuntimeError("item 3 failed")
                return i * 10
            return run

        operations = [BatchOperation(op(i), user_id="u1", model="m1") for i in range(1, 6)]

        async with ConcurrencyController(max_concurrent_requests=2) as controller:
            outcomes = await controller.execute_batch(operations, batch_size=2, delay_between_batches=0.01)

        assert [o.success for o in outcomes] == [True, True, False, True, True]
        assert [o.result for o in outcomes if o.success] == [10, 20, 40, 50]
        assert outcomes[2].error == "item 3 failed"

        stats = controller.get_stats()
        assert stats.completed == 4
        assert stats.failed == 1

    @pytest.mark.asyncio
    async def test_error_without_message_uses_type_name(self):
        """Exceptions with no message are reported by class name."""
        async def op():
            raise KeyError()

        async with ConcurrencyController() as controller:
            outcomes = await controller.execute_batch([BatchOperation(op, user_id="u1", model="m1")])

        assert outcomes[0].success is False
        assert outcomes[0].error == "KeyError"

    @pytest.mark.asyncio
    async def test_rejects_bad_batch_size(self):
        """Batch size must be positive."""
        async with ConcurrencyController() as controller:
            with pytest.raises(ValidationError):
                await controller.execute_batch([], batch_size=0)


class TestAdjustConcurrency:
    """Test runtime ceiling changes."""

    def test_rejects_out_of_range(self):
        """Limits outside [1, 50] are rejected."""
        controller = ConcurrencyController(max_concurrent_requests=5)
        for bad in (0, 51, -1):
            with pytest.raises(ValidationError):
                controller.adjust_concurrency(bad)
        assert controller.max_concurrent_requests == 5

    def test_rejects_out_of_range_on_construction(self):
        """The initial ceiling is validated too."""
        with pytest.raises(ValidationError):
            ConcurrencyController(max_concurrent_requests=0)

    @pytest.mark.asyncio
    async def test_raising_ceiling_admits_queued_work(self):
        """Raising the ceiling lets queued requests start."""
        gate = asyncio.Event()
        metrics = MetricsCollector()
        async with ConcurrencyController(max_concurrent_requests=1, metrics=metrics) as controller:
            tasks = [
                asyncio.create_task(controller.submit(blocking_op(gate), user_id="u1", model="m1"))
                for _ in range(3)
            ]
            await wait_until(lambda: controller.get_stats().active == 1)
            assert controller.get_stats().queued == 2

            controller.adjust_concurrency(3)
            await wait_until(lambda: controller.get_stats().active == 3)

            gate.set()
            await asyncio.gather(*tasks)

        assert metrics.count("concurrency_changed") == 1


class TestShutdown:
    """Test graceful and forced shutdown."""

    @pytest.mark.asyncio
    async def test_graceful_shutdown_finishes_work(self):
        """Queued and active work completes before shutdown returns."""
        controller = ConcurrencyController(max_concurrent_requests=1)

        async def op():
            await asyncio.sleep(0.01)
            return "ok"

        tasks = [asyncio.create_task(controller.submit(op, user_id="u1", model="m1")) for _ in range(3)]
        await asyncio.sleep(0)
        await controller.shutdown(timeout=1.0)

        assert [t.result() for t in tasks] == ["ok", "ok", "ok"]
        assert controller.get_stats().completed == 3
        assert not controller.is_running

    @pytest.mark.asyncio
    async def test_forced_shutdown_fails_everything(self):
        """On timeout, active and queued requests fail with ShutdownError."""
        metrics = MetricsCollector()
        controller = ConcurrencyController(max_concurrent_requests=2, metrics=metrics)

        async def long_op():
            await asyncio.sleep(10)

        tasks = [asyncio.create_task(controller.submit(long_op, user_id="u1", model="m1")) for _ in range(3)]
        await wait_until(lambda: controller.get_stats().active == 2)

        await controller.shutdown(timeout=0.01)

        results = await asyncio.gather(*tasks, return_exceptions=True)
        assert all(isinstance(r, ShutdownError) for r in results)

        stats = controller.get_stats()
        assert stats.active == 0
        assert stats.queued == 0
        assert stats.failed == 3
        assert metrics.count("shutdown_forced") == 1

    @pytest.mark.asyncio
    async def test_idle_exit_stops_drain_loop(self):
        """Leaving the context with nothing queued stops the loop promptly."""
        controller = ConcurrencyController(tick_interval=10.0)

        async def scenario():
            async with controller:
                assert controller.is_running

        await asyncio.wait_for(scenario(), timeout=1.0)
        assert not controller.is_running

    @pytest.mark.asyncio
    async def test_cancelled_caller_still_counted_once(self):
        """An admitted operation is counted by its own outcome when its caller stops waiting."""
        gate = asyncio.Event()
        async with ConcurrencyController(max_concurrent_requests=1) as controller:
            caller = asyncio.create_task(controller.submit(blocking_op(gate, "late"), user_id="u1", model="m1"))
            await wait_until(lambda: controller.get_stats().active == 1)

            caller.cancel()
            with pytest.raises(asyncio.CancelledError):
                await caller

            gate.set()
            await wait_until(lambda: controller.get_stats().active == 0)

        stats = controller.get_stats()
        assert stats.completed == 1
        assert stats.failed == 0

    @pytest.mark.asyncio
    async def test_submit_after_shutdown_rejected(self):
        """New work is refused once shutdown has begun."""
        controller = ConcurrencyController()
        await controller.shutdown(timeout=0.1)

        with pytest.raises(ShutdownError):
            await controller.submit(lambda: asyncio.sleep(0), user_id="u1", model="m1")
