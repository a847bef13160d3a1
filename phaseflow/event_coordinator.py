"""
Event Coordinator - Loop-safe event relay between the engine and the calendar

Both subsystems can originate updates. Naive two-way forwarding would bounce
every change back and forth forever, so the coordinator:
1. Derives a deterministic id for each inbound event (unless already tagged)
2. Drops ids still queued or seen inside the dedup window (counted as skipped)
3. Drops events the current direction does not allow (counted as filtered)
4. Queues the rest and flushes them in debounced batches
5. Retries failed deliveries up to max_retries, then drops and records them

Engine-side events are delivered to the calendar sink and calendar-side
events to the engine sink.

IMPORTANT:
- Enqueue and debounce reset happen under one lock
- Only one flush runs at a time
- An id stays tracked from enqueue until delivery or dead letter
"""

import asyncio
import copy
import inspect
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Set, Union

from .config import ConflictStrategy, CoordinatorConfig, SyncDirection
from .dedup_tracker import EventDeduplicationTracker, compute_event_id
from .errors import EventProcessingError

logger = logging.getLogger("event_coordinator")

MAX_DEAD_LETTERS = 100


class EventSource(str, Enum):
    ENGINE = "engine"
    CALENDAR = "calendar"


@dataclass
class QueuedEvent:
    event_id: str
    event_type: str
    source: EventSource
    payload: Dict[str, Any]
    retry_count: int = 0
    timestamp: float = field(default_factory=time.time)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "event_id": self.event_id,
            "event_type": self.event_type,
            "source": self.source.value,
            "payload": self.payload,
            "retry_count": self.retry_count,
            "timestamp": self.timestamp,
        }


Sink = Callable[[QueuedEvent], Any]


# -----------------------------------------------------------------------------
# Conflict Resolution
# -----------------------------------------------------------------------------

def _timestamp(data: Dict[str, Any]) -> Optional[float]:
    value = data.get("updated_at")
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.timestamp()
    if isinstance(value, (int, float)):
        return float(value)
    try:
        return datetime.fromisoformat(str(value)).timestamp()
    except ValueError:
        return None


def _is_newer(candidate: Dict[str, Any], other: Dict[str, Any]) -> bool:
    mine, theirs = _timestamp(candidate), _timestamp(other)
    if mine is None:
        return False
    return theirs is None or mine > theirs


def _merge(base: Dict[str, Any], other: Dict[str, Any], prefer_other: bool) -> Dict[str, Any]:
    result = dict(base)
    for key, value in other.items():
        if key not in result:
            result[key] = value
        elif isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _merge(result[key], value, prefer_other)
        elif prefer_other:
            result[key] = value
    return result


def resolve_conflict(
    engine_data: Dict[str, Any],
    calendar_data: Dict[str, Any],
    strategy: Union[ConflictStrategy, str],
) -> Dict[str, Any]:
    """
    Reconcile two views of the same entity.

    latest_wins and merge compare the records' updated_at values; the
    engine view wins ties and records without a timestamp.
    """
    strategy = ConflictStrategy(strategy)
    engine_data = copy.deepcopy(engine_data)
    calendar_data = copy.deepcopy(calendar_data)

    if strategy == ConflictStrategy.ENGINE_WINS:
        return engine_data
    if strategy == ConflictStrategy.CALENDAR_WINS:
        return calendar_data

    calendar_newer = _is_newer(calendar_data, engine_data)
    if strategy == ConflictStrategy.LATEST_WINS:
        return calendar_data if calendar_newer else engine_data
    return _merge(engine_data, calendar_data, prefer_other=calendar_newer)


# -----------------------------------------------------------------------------
# Coordinator
# -----------------------------------------------------------------------------

class EventCoordinator:
    """
    Debounced, deduplicated relay between two event sources.
    """

    def __init__(
        self,
        config: Optional[CoordinatorConfig] = None,
        engine_sink: Optional[Sink] = None,
        calendar_sink: Optional[Sink] = None,
        tracker: Optional[EventDeduplicationTracker] = None,
    ):
        self._config = config or CoordinatorConfig()
        self._engine_sink = engine_sink
        self._calendar_sink = calendar_sink
        self._tracker = tracker or EventDeduplicationTracker(self._config.dedup_window_seconds)

        self._queue: List[QueuedEvent] = []
        self._in_flight: Set[str] = set()
        self._queue_lock = asyncio.Lock()
        self._flush_lock = asyncio.Lock()
        self._flush_handle: Optional[asyncio.TimerHandle] = None
        self._tasks: Set[asyncio.Task] = set()
        self._closed = False

        self._dead_letters: List[QueuedEvent] = []
        self._stats: Dict[str, int] = {
            "processed": 0,
            "skipped": 0,
            "filtered": 0,
            "errors": 0,
            "retried": 0,
            "flushes": 0,
        }

    @property
    def config(self) -> CoordinatorConfig:
        return self._config

    @property
    def tracker(self) -> EventDeduplicationTracker:
        return self._tracker

    def connect(self, engine_sink: Optional[Sink] = None, calendar_sink: Optional[Sink] = None) -> None:
        if engine_sink is not None:
            self._engine_sink = engine_sink
        if calendar_sink is not None:
            self._calendar_sink = calendar_sink

    def update_config(self, **changes: Any) -> CoordinatorConfig:
        """Apply validated runtime changes; takes effect on the next event."""
        self._config = CoordinatorConfig(**{**self._config.model_dump(), **changes})
        self._tracker.window_seconds = self._config.dedup_window_seconds
        logger.info(f"Coordinator config updated: {changes}")
        return self._config

    # -------------------------------------------------------------------------
    # Inbound
    # -------------------------------------------------------------------------

    async def handle_engine_event(self, event: Dict[str, Any]) -> bool:
        return await self._handle(EventSource.ENGINE, event)

    async def handle_calendar_event(self, event: Dict[str, Any]) -> bool:
        return await self._handle(EventSource.CALENDAR, event)

    def _direction_allows(self, source: EventSource) -> bool:
        direction = self._config.direction
        if direction == SyncDirection.ENGINE_TO_CALENDAR:
            return source == EventSource.ENGINE
        if direction == SyncDirection.CALENDAR_TO_ENGINE:
            return source == EventSource.CALENDAR
        return True

    async def _handle(self, source: EventSource, event: Dict[str, Any]) -> bool:
        """Returns True when the event was queued."""
        if self._closed or not self._config.enabled or not self._direction_allows(source):
            self._stats["filtered"] += 1
            logger.debug(f"Filtered {source.value} event {event.get('type')}")
            return False

        event_type = event.get("type", "unknown")
        payload = event.get("payload", {})
        event_id = event.get("event_id") or compute_event_id(source.value, event_type, payload)

        if event_id in self._in_flight or not self._tracker.should_process(event_id):
            self._stats["skipped"] += 1
            logger.info(f"Skipped duplicate {source.value} event {event_type} ({event_id})")
            return False

        queued = QueuedEvent(
            event_id=event_id,
            event_type=event_type,
            source=source,
            payload=payload,
        )
        self._in_flight.add(event_id)
        async with self._queue_lock:
            self._queue.append(queued)
            self._schedule_flush_locked()
        return True

    # -------------------------------------------------------------------------
    # Flushing
    # -------------------------------------------------------------------------

    def _schedule_flush_locked(self) -> None:
        """Restart the debounce timer. Caller holds the queue lock."""
        if self._flush_handle is not None:
            self._flush_handle.cancel()
        loop = asyncio.get_running_loop()
        self._flush_handle = loop.call_later(
            self._config.debounce_delay_ms / 1000.0, self._start_flush
        )

    def _start_flush(self) -> None:
        self._flush_handle = None
        task = asyncio.ensure_future(self.flush())
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def flush(self) -> int:
        """Process one batch. Returns the number of events taken from the queue."""
        async with self._flush_lock:
            async with self._queue_lock:
                batch = self._queue[:self._config.batch_size]
                del self._queue[:len(batch)]

            if not batch:
                return 0

            self._stats["flushes"] += 1
            logger.debug(f"Flushing {len(batch)} event(s)")
            for queued in batch:
                await self._process(queued)

            async with self._queue_lock:
                if self._queue and not self._closed:
                    self._schedule_flush_locked()
            return len(batch)

    async def drain(self) -> int:
        """Flush until the queue is empty, ignoring the debounce timer."""
        total = 0
        while True:
            async with self._queue_lock:
                if self._flush_handle is not None:
                    self._flush_handle.cancel()
                    self._flush_handle = None
                if not self._queue:
                    return total
            total += await self.flush()

    async def _process(self, queued: QueuedEvent) -> None:
        sink = self._calendar_sink if queued.source == EventSource.ENGINE else self._engine_sink
        try:
            if sink is None:
                raise EventProcessingError(queued.event_id, f"no sink for {queued.source.value} events")
            result = sink(queued)
            if inspect.isawaitable(result):
                await result
        except Exception as e:
            queued.retry_count += 1
            if queued.retry_count <= self._config.max_retries:
                self._stats["retried"] += 1
                logger.warning(
                    f"Event {queued.event_id} failed (attempt {queued.retry_count}), retrying: {e}"
                )
                async with self._queue_lock:
                    self._queue.append(queued)
            else:
                self._stats["errors"] += 1
                error = EventProcessingError(queued.event_id, str(e), queued.retry_count)
                logger.error(f"{error.message}; dropped after {self._config.max_retries} retries")
                self._dead_letters.append(queued)
                del self._dead_letters[:-MAX_DEAD_LETTERS]
                self._in_flight.discard(queued.event_id)
            return

        self._stats["processed"] += 1
        self._tracker.mark_processed(queued.event_id)
        self._in_flight.discard(queued.event_id)

    # -------------------------------------------------------------------------
    # Lifecycle / Stats
    # -------------------------------------------------------------------------

    async def close(self, drain: bool = True) -> None:
        """Stop accepting events; optionally deliver what is already queued."""
        if drain:
            await self.drain()
        self._closed = True
        async with self._queue_lock:
            if self._flush_handle is not None:
                self._flush_handle.cancel()
                self._flush_handle = None
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)

    def get_dead_letters(self) -> List[Dict[str, Any]]:
        return [q.to_dict() for q in self._dead_letters]

    def get_stats(self) -> Dict[str, Any]:
        stats: Dict[str, Any] = dict(self._stats)
        stats["queue_size"] = len(self._queue)
        stats["active_trackers"] = self._tracker.active_count()
        stats["enabled"] = self._config.enabled
        stats["direction"] = self._config.direction.value
        return stats

    def reset(self) -> None:
        self._queue.clear()
        self._in_flight.clear()
        self._tracker.reset()
        self._dead_letters.clear()
        for key in self._stats:
            self._stats[key] = 0
