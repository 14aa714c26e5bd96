"""Tests for EventBus and EventStore."""

from __future__ import annotations

import pytest

from runtime_error_sage.domain.enums import RemediationStatus, RollbackStatus
from runtime_error_sage.domain.events import (
    ActionStatusChanged,
    AnalysisCompleted,
    DomainEvent,
    PatternDeleted,
    PatternSaved,
    RemediationCompleted,
    RollbackCompleted,
)
from runtime_error_sage.infrastructure.event_bus import EventBus, EventStore


class _BulkPatternSaved(PatternSaved):
    pass


class TestEventBus:
    """Test synchronous EventBus subscribe, publish, unsubscribe."""

    def test_subscribe_and_publish(self) -> None:
        bus = EventBus()
        received: list[DomainEvent] = []
        bus.subscribe(PatternSaved, received.append)

        event = PatternSaved(source_id="test", service_name="s", pattern_id="p")
        bus.publish(event)
        assert received == [event]

    def test_typed_subscription_filters_events(self) -> None:
        bus = EventBus()
        saved: list[DomainEvent] = []
        bus.subscribe(PatternSaved, saved.append)
        bus.publish(PatternDeleted(service_name="s", pattern_id="p"))
        assert saved == []

    def test_subclass_reaches_base_subscribers(self) -> None:
        bus = EventBus()
        saved: list[DomainEvent] = []
        bulk: list[DomainEvent] = []
        bus.subscribe(PatternSaved, saved.append)
        bus.subscribe(_BulkPatternSaved, bulk.append)

        bus.publish(_BulkPatternSaved(pattern_id="p"))
        bus.publish(PatternSaved(pattern_id="q"))
        assert [e.pattern_id for e in saved] == ["p", "q"]
        assert [e.pattern_id for e in bulk] == ["p"]

    def test_general_handlers_run_first(self) -> None:
        bus = EventBus()
        order: list[str] = []
        bus.subscribe(_BulkPatternSaved, lambda e: order.append("bulk"))
        bus.subscribe(PatternSaved, lambda e: order.append("saved"))
        bus.subscribe_all(lambda e: order.append("global"))
        bus.publish(_BulkPatternSaved())
        assert order == ["global", "saved", "bulk"]

    def test_failing_handler_does_not_break_others(self) -> None:
        bus = EventBus()
        received: list[DomainEvent] = []

        def boom(event: DomainEvent) -> None:
            raise RuntimeError("boom")

        bus.subscribe(PatternSaved, boom)
        bus.subscribe(PatternSaved, received.append)
        bus.publish(PatternSaved())
        assert len(received) == 1

    def test_unsubscribe(self) -> None:
        bus = EventBus()
        handler = lambda e: None  # noqa: E731
        bus.subscribe(PatternSaved, handler)
        bus.subscribe_all(handler)
        assert bus.handler_count() == 2
        assert bus.handler_count(DomainEvent) == 1
        assert bus.unsubscribe(PatternSaved, handler)
        assert not bus.unsubscribe(PatternSaved, handler)
        assert bus.unsubscribe_all(handler)
        assert bus.handler_count() == 0


def _run_events(cid: str, eid: str) -> list[DomainEvent]:
    return [
        AnalysisCompleted(correlation_id=cid, category="DatabaseTimeout", timestamp=1.0),
        ActionStatusChanged(execution_id=eid, correlation_id=cid, action_id="a1",
                            previous=RemediationStatus.PENDING, current=RemediationStatus.RUNNING,
                            timestamp=2.0),
        RemediationCompleted(execution_id=eid, correlation_id=cid,
                             status=RemediationStatus.FAILED, timestamp=3.0),
        RollbackCompleted(execution_id=eid, correlation_id=cid,
                          status=RollbackStatus.FULLY_ROLLED_BACK, timestamp=4.0),
    ]


class TestEventStore:

    def test_append_and_query(self) -> None:
        store = EventStore()
        store.append(PatternSaved(timestamp=1.0))
        store.append(PatternDeleted(timestamp=2.0))
        store.append(PatternSaved(timestamp=3.0))
        assert len(store) == 3
        assert len(store.query(PatternSaved)) == 2
        assert [e.timestamp for e in store.query(since=2.0)] == [2.0, 3.0]
        assert [e.timestamp for e in store.query(limit=1)] == [3.0]

    def test_max_size_evicts_oldest(self) -> None:
        store = EventStore(max_size=2)
        for t in (1.0, 2.0, 3.0):
            store.append(PatternSaved(timestamp=t))
        assert [e.timestamp for e in store.query()] == [2.0, 3.0]

    def test_rejects_unbounded_size(self) -> None:
        with pytest.raises(ValueError, match="max_size"):
            EventStore(max_size=0)

    def test_trail_follows_one_error(self) -> None:
        store = EventStore()
        for event in _run_events("corr-1", "ex-1") + _run_events("corr-2", "ex-2"):
            store.append(event)
        store.append(PatternSaved(timestamp=5.0))

        trail = store.trail("corr-1")
        assert [type(e).__name__ for e in trail] == [
            "AnalysisCompleted", "ActionStatusChanged", "RemediationCompleted", "RollbackCompleted",
        ]
        assert {e.correlation_id for e in trail} == {"corr-1"}

    def test_query_by_execution(self) -> None:
        store = EventStore()
        for event in _run_events("corr-1", "ex-1") + _run_events("corr-2", "ex-2"):
            store.append(event)
        by_execution = store.query(execution_id="ex-2")
        assert len(by_execution) == 3
        assert not any(isinstance(e, AnalysisCompleted) for e in by_execution)
        assert store.query(ActionStatusChanged, execution_id="ex-2")[0].correlation_id == "corr-2"

    def test_attach_and_detach(self) -> None:
        bus = EventBus()
        store = EventStore().attach(bus)
        bus.publish(PatternSaved())
        bus.publish(PatternDeleted())
        assert len(store) == 2

        store.detach()
        bus.publish(PatternSaved())
        assert len(store) == 2
        assert bus.handler_count() == 0
