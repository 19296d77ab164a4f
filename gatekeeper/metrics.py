"""
Metrics and observability for Gatekeeper.

Collects the lifecycle events the concurrency controller emits (queued,
started, completed, failed, timed out, concurrency changed, forced shutdown)
and fans them out to listeners, a JSONL file and structured logging.
"""

import json
import logging
import statistics
from collections import defaultdict, deque
from dataclasses import dataclass, asdict
from datetime import datetime, UTC
from pathlib import Path
from threading import Lock
from typing import Any, Callable, Optional

logger = logging.getLogger(__name__)


@dataclass
class MetricEvent:
    """A single metric event."""
    timestamp: str
    event_type: str  # request_queued, request_started, request_completed, ...
    request_id: str
    user_id: str
    model: Optional[str]
    data: dict[str, Any]


class MetricsCollector:
    """
    Collects and aggregates controller events.

    Provides real-time counters, a processing-time histogram and a bounded
    history of recent events.
    """

    def __init__(
        self,
        metrics_file: Optional[Path] = None,
        enable_logging: bool = False,
        max_events: int = 1000,
    ):
        """
        Initialize metrics collector.

        Args:
            metrics_file: Optional file to write events to (JSONL format). Each
                event is appended synchronously, which blocks the event loop for
                the duration of the write; meant for low-volume or debugging use.
            enable_logging: Whether to attach a stream handler and log every event
            max_events: Number of recent events kept in memory
        """
        self.metrics_file = metrics_file
        self.enable_logging = enable_logging
        self._lock = Lock()

        self.logger = logging.getLogger("gatekeeper.metrics")
        if enable_logging and not self.logger.handlers:
            handler = logging.StreamHandler()
            handler.setFormatter(
                logging.Formatter(
                    "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
                )
            )
            self.logger.addHandler(handler)
            self.logger.setLevel(logging.INFO)

        self._events: deque[MetricEvent] = deque(maxlen=max_events)
        self._counters: dict[str, int] = defaultdict(int)
        self._histograms: dict[str, deque] = defaultdict(lambda: deque(maxlen=max_events))
        self._listeners: list[Callable[[MetricEvent], None]] = []

    def subscribe(self, callback: Callable[[MetricEvent], None]) -> None:
        """Register a callback invoked for every recorded event."""
        with self._lock:
            self._listeners.append(callback)

    def unsubscribe(self, callback: Callable[[MetricEvent], None]) -> bool:
        """Remove a previously registered callback. Returns True if it existed."""
        with self._lock:
            if callback in self._listeners:
                self._listeners.remove(callback)
                return True
            return False

    def record_event(
        self,
        event_type: str,
        request_id: str,
        user_id: str,
        model: Optional[str] = None,
        **data: Any,
    ) -> MetricEvent:
        """
        Record a controller event.

        The metrics file, when set, is appended to before this returns.

        Args:
            event_type: Event name
            request_id: Request identifier
            user_id: User the request is attributed to
            model: Model the request targets
            **data: Additional fields (processing_time_ms is also histogrammed)

        Returns:
            The recorded event
        """
        event = MetricEvent(
            timestamp=datetime.now(UTC).isoformat(),
            event_type=event_type,
            request_id=request_id,
            user_id=user_id,
            model=model,
            data=data,
        )

        with self._lock:
            self._events.append(event)
            self._counters[f"events_{event_type}"] += 1
            if model:
                self._counters[f"{event_type}_by_model_{model}"] += 1
            self._counters[f"{event_type}_by_user_{user_id}"] += 1
            if "processing_time_ms" in data:
                self._histograms["processing_time_ms"].append(data["processing_time_ms"])
            listeners = list(self._listeners)

        if self.metrics_file:
            with open(self.metrics_file, "a") as f:
                f.write(json.dumps(asdict(event), default=str) + "\n")

        if self.enable_logging:
            level = logging.WARNING if event_type in ("request_failed", "shutdown_forced") else logging.INFO
            self.logger.log(
                level,
                "%s: request_id=%s, user_id=%s, model=%s, data=%s",
                event_type.upper(), request_id, user_id, model, data,
            )

        for listener in listeners:
            try:
                listener(event)
            except Exception:
                logger.exception("Metrics listener failed for %s event", event_type)

        return event

    def count(self, event_type: str) -> int:
        """Number of events of a given type recorded so far."""
        return self._counters.get(f"events_{event_type}", 0)

    def recent_events(self, limit: int = 50, event_type: Optional[str] = None) -> list[MetricEvent]:
        """Return the most recent events, newest last."""
        with self._lock:
            events = list(self._events)
        if event_type:
            events = [e for e in events if e.event_type == event_type]
        return events[-limit:]

    def get_stats(self) -> dict:
        """
        Get aggregated statistics.

        Returns:
            Dictionary with counters and processing-time summary
        """
        with self._lock:
            counters = dict(self._counters)
            times = list(self._histograms.get("processing_time_ms", []))
            total_events = len(self._events)

        return {
            "counters": counters,
            "processing_time": {
                "avg_ms": statistics.mean(times) if times else 0,
                "p50_ms": statistics.median(times) if times else 0,
                "p95_ms": (
                    statistics.quantiles(times, n=20)[18]
                    if len(times) >= 20
                    else (max(times) if times else 0)
                ),
            },
            "total_events": total_events,
        }

    def reset(self) -> None:
        """Reset all metrics. Listeners are kept."""
        with self._lock:
            self._events.clear()
            self._counters.clear()
            self._histograms.clear()
