"""In-memory event store."""
import threading
from datetime import datetime, timezone
import structlog
from .event_models import EventIn, StoredEvent

log = structlog.get_logger()


class EventStore:
    """
    Append-only, in-memory event store.

    The store is the only place ids and receipt timestamps are assigned.
    A single lock guards the sequence counter and the backing list, so
    callers never coordinate locking themselves. Events are never evicted.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._seq = 0
        self._events: list[StoredEvent] = []
        self._last_received_at: datetime | None = None

    def add(self, candidate: EventIn) -> StoredEvent:
        """
        Store a client event.

        Args:
            candidate: Validated client event without id or timestamp

        Returns:
            The stored event with its assigned id and UTC receipt time
        """
        with self._lock:
            self._seq += 1
            received_at = datetime.now(timezone.utc)
            # Keep receipt times ordered even if the wall clock steps back
            if self._last_received_at is not None and received_at < self._last_received_at:
                received_at = self._last_received_at
            self._last_received_at = received_at
            stored = StoredEvent(
                id=self._seq,
                type=candidate.type,
                payload=candidate.payload,
                received_at=received_at,
            )
            self._events.append(stored)

        log.info("event.stored", id=stored.id, type=stored.type)
        return stored

    def list(self, limit: int) -> list[StoredEvent]:
        """
        List the most recent events, newest first.

        Args:
            limit: Maximum number of events; zero, negative, or larger than
                the stored count returns everything

        Returns:
            A new list, safe to hand out without holding the lock
        """
        with self._lock:
            if limit <= 0 or limit > len(self._events):
                limit = len(self._events)
            return self._events[len(self._events) - limit:][::-1]

    def __len__(self) -> int:
        with self._lock:
            return len(self._events)
