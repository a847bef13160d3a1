"""
Event deduplication tracker.

Remembers event ids for a short loop-prevention window. An event whose id is
seen again inside the window is a downstream echo of work already in flight
and must not be processed a second time.
"""

import hashlib
import json
import logging
import time
from typing import Any, Callable, Dict, Optional

from .config import DEFAULT_DEDUP_WINDOW_SECONDS

logger = logging.getLogger("dedup_tracker")


def compute_event_id(source: str, event_type: str, payload: Dict[str, Any]) -> str:
    """Deterministic id over the canonical JSON of source, type and payload."""
    canonical = json.dumps(
        {"source": source, "type": event_type, "payload": payload},
        sort_keys=True,
        default=str,
    )
    return f"evt-{hashlib.sha256(canonical.encode()).hexdigest()[:24]}"


class EventDeduplicationTracker:

    def __init__(
        self,
        window_seconds: float = DEFAULT_DEDUP_WINDOW_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._window = window_seconds
        self._clock = clock
        self._expires: Dict[str, float] = {}
        self._seen_counts: Dict[str, int] = {}

    @property
    def window_seconds(self) -> float:
        return self._window

    @window_seconds.setter
    def window_seconds(self, value: float) -> None:
        self._window = value

    def should_process(self, event_id: str) -> bool:
        """
        True on the first sighting of an id inside the window.

        Every later sighting returns False until the window lapses.
        """
        self.purge_expired()
        if event_id in self._expires:
            self._seen_counts[event_id] = self._seen_counts.get(event_id, 1) + 1
            logger.debug(f"Duplicate event {event_id} (seen {self._seen_counts[event_id]} times)")
            return False

        self._expires[event_id] = self._clock() + self._window
        self._seen_counts[event_id] = 1
        return True

    def mark_processed(self, event_id: str) -> None:
        """Restart the window from now so late echoes are still suppressed."""
        self._expires[event_id] = self._clock() + self._window

    def seen_count(self, event_id: str) -> int:
        return self._seen_counts.get(event_id, 0) if event_id in self._expires else 0

    def purge_expired(self, now: Optional[float] = None) -> int:
        now = self._clock() if now is None else now
        expired = [eid for eid, expires in self._expires.items() if expires <= now]
        for eid in expired:
            del self._expires[eid]
            self._seen_counts.pop(eid, None)
        return len(expired)

    def active_count(self) -> int:
        self.purge_expired()
        return len(self._expires)

    def reset(self) -> None:
        self._expires.clear()
        self._seen_counts.clear()
