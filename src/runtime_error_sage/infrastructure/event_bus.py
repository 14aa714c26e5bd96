"""Event bus infrastructure for the runtime error analysis pipeline.

:class:`EventBus` is a thread-safe synchronous pub-sub bus.  Handlers
subscribe to an event class and receive every event of that class *or any
subclass*, so subscribing to :class:`DomainEvent` observes the whole
pipeline.  A failing handler is logged and never breaks the publisher.

:class:`EventStore` is a bounded journal of published events that answers
per-run questions: everything that happened for one correlation id or one
remediation execution.  The CLI prints that trail with ``--events``.
"""

from __future__ import annotations

import logging
import threading
from collections import defaultdict, deque
from collections.abc import Callable, Sequence

from runtime_error_sage.domain.events import DomainEvent

logger = logging.getLogger(__name__)

Handler = Callable[[DomainEvent], None]


# ===================================================================== #
#  Event Bus                                                             #
# ===================================================================== #

class EventBus:
    """Thread-safe synchronous pub-sub for domain events.

    Handlers run on the publishing thread.  Handlers of more general event
    classes run first (``DomainEvent`` subscribers before ``PatternSaved``
    subscribers), and within one class in registration order.

    Usage::

        bus = EventBus()
        bus.subscribe(RemediationCompleted, on_done)
        bus.publish(RemediationCompleted(...))
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._handlers: dict[type[DomainEvent], list[Handler]] = defaultdict(list)

    # -- subscription -------------------------------------------------------

    def subscribe(self, event_type: type[DomainEvent], handler: Handler) -> None:
        """Register *handler* for *event_type* and its subclasses."""
        with self._lock:
            self._handlers[event_type].append(handler)

    def subscribe_all(self, handler: Handler) -> None:
        """Register *handler* to receive every published event."""
        self.subscribe(DomainEvent, handler)

    def unsubscribe(self, event_type: type[DomainEvent], handler: Handler) -> bool:
        """Remove *handler* from *event_type*. Returns ``True`` if found."""
        with self._lock:
            handlers = self._handlers.get(event_type, [])
            try:
                handlers.remove(handler)
            except ValueError:
                return False
            if not handlers:
                del self._handlers[event_type]
            return True

    def unsubscribe_all(self, handler: Handler) -> bool:
        return self.unsubscribe(DomainEvent, handler)

    # -- publishing ---------------------------------------------------------

    def publish(self, event: DomainEvent) -> None:
        """Deliver *event* to the handlers of its class and of every base class."""
        classes = [c for c in reversed(type(event).__mro__) if issubclass(c, DomainEvent)]
        with self._lock:
            snapshot = [(c, list(self._handlers.get(c, ()))) for c in classes]

        for event_class, handlers in snapshot:
            for handler in handlers:
                try:
                    handler(event)
                except Exception:
                    logger.exception(
                        "Error in %s handler %r for %s",
                        event_class.__name__,
                        handler,
                        type(event).__name__,
                    )

    # -- introspection ------------------------------------------------------

    def handler_count(self, event_type: type[DomainEvent] | None = None) -> int:
        """Handlers registered for *event_type* exactly, or in total."""
        with self._lock:
            if event_type is not None:
                return len(self._handlers.get(event_type, []))
            return sum(len(hs) for hs in self._handlers.values())


# ===================================================================== #
#  Event Store                                                           #
# ===================================================================== #

class EventStore:
    """Bounded, thread-safe journal of domain events.

    Parameters
    ----------
    max_size:
        Events kept; the oldest are dropped first.
    """

    def __init__(self, max_size: int = 10_000) -> None:
        if max_size < 1:
            raise ValueError(f"max_size must be >= 1, got {max_size}")
        self._events: deque[DomainEvent] = deque(maxlen=max_size)
        self._lock = threading.Lock()
        self._bus: EventBus | None = None

    def attach(self, bus: EventBus) -> EventStore:
        """Record every event published on *bus* from now on."""
        bus.subscribe_all(self.append)
        self._bus = bus
        return self

    def detach(self) -> None:
        if self._bus is not None:
            self._bus.unsubscribe_all(self.append)
            self._bus = None

    def append(self, event: DomainEvent) -> None:
        with self._lock:
            self._events.append(event)

    def query(
        self,
        event_type: type[DomainEvent] | None = None,
        since: float | None = None,
        limit: int = 0,
        correlation_id: str | None = None,
        execution_id: str | None = None,
    ) -> Sequence[DomainEvent]:
        """Events matching every given filter, oldest first.

        *correlation_id* and *execution_id* only match events that carry
        that field; store-level events (pattern writes, connection changes)
        have neither.  *limit* keeps the most recent matches.
        """
        with self._lock:
            result: list[DomainEvent] = list(self._events)

        if event_type is not None:
            result = [e for e in result if isinstance(e, event_type)]
        if since is not None:
            result = [e for e in result if e.timestamp >= since]
        if correlation_id is not None:
            result = [e for e in result if getattr(e, "correlation_id", None) == correlation_id]
        if execution_id is not None:
            result = [e for e in result if getattr(e, "execution_id", None) == execution_id]
        if limit > 0:
            result = result[-limit:]
        return result

    def trail(self, correlation_id: str) -> Sequence[DomainEvent]:
        """What the pipeline did for one error: analysis, actions, rollback."""
        return self.query(correlation_id=correlation_id)

    def __len__(self) -> int:
        with self._lock:
            return len(self._events)
