"""Tests for PatternStore persistence, indexes and connection handling."""

from __future__ import annotations

import threading
import time
from dataclasses import replace

import pytest

from runtime_error_sage.domain.entities import ErrorPattern
from runtime_error_sage.domain.enums import ConnectionState
from runtime_error_sage.domain.events import PatternDeleted, PatternSaved, StoreStateChanged
from runtime_error_sage.domain.exceptions import OperationCancelledError, StoreConnectivityError
from runtime_error_sage.infrastructure.backends import InMemoryPatternBackend
from runtime_error_sage.infrastructure.cancellation import CancellationToken
from runtime_error_sage.infrastructure.event_bus import EventBus, EventStore
from runtime_error_sage.infrastructure.pattern_store import PatternStore
from tests.conftest import FAST_STORE
from tests.helpers.fakes import FlakyBackend


def _make_pattern(
    pattern_id: str = "p1",
    service: str = "orders",
    error_type: str = "TimeoutError",
    **kwargs,
) -> ErrorPattern:
    return ErrorPattern(
        service_name=service, error_type=error_type, pattern_id=pattern_id, **kwargs
    )


class _SlowPingBackend(FlakyBackend):
    """Backend whose pings hang until ``release`` once ``armed``."""

    def __init__(self) -> None:
        super().__init__()
        self.armed = False
        self.pinging = threading.Event()
        self.release = threading.Event()

    def ping(self) -> bool:
        if self.armed:
            self.pinging.set()
            self.release.wait(5.0)
        return super().ping()


def _start_reconnect(timeout: float) -> tuple[PatternStore, _SlowPingBackend, threading.Thread]:
    """Store left RECONNECTING by a failed write whose recovery ping hangs."""
    backend = _SlowPingBackend()
    store = PatternStore(backend, replace(FAST_STORE, operation_timeout=timeout))
    store.connect()
    store.save_pattern(_make_pattern("p0"))

    backend.armed = True
    backend.fail_next = 1
    writer = threading.Thread(target=store.save_pattern, args=(_make_pattern("p1"),))
    writer.start()
    assert backend.pinging.wait(2.0)
    assert store.state == ConnectionState.RECONNECTING
    return store, backend, writer


def _transitions(events: EventStore) -> list[tuple[ConnectionState, ConnectionState]]:
    return [(e.previous, e.current) for e in events.query(StoreStateChanged)]


# ===================================================================== #
#  CRUD and indexes                                                      #
# ===================================================================== #

class TestPersistence:

    def test_save_and_get(self, store: PatternStore) -> None:
        store.save_pattern(_make_pattern(category="DatabaseTimeout"))
        loaded = store.get_pattern("p1", "orders")
        assert loaded is not None
        assert loaded.category == "DatabaseTimeout"

    def test_get_without_service_uses_id_index(self, store: PatternStore) -> None:
        store.save_pattern(_make_pattern())
        assert store.get_pattern("p1") is not None
        assert store.get_pattern("missing") is None

    def test_save_is_idempotent(self, store: PatternStore) -> None:
        pattern = _make_pattern()
        store.save_pattern(pattern)
        store.save_pattern(pattern)
        assert store.get_pattern_count() == 1

    def test_update_requires_existing(self, store: PatternStore) -> None:
        with pytest.raises(KeyError):
            store.update_pattern(_make_pattern())

    def test_update_rewrites_indexes(self, store: PatternStore) -> None:
        pattern = _make_pattern(tags=("db",))
        store.save_pattern(pattern)
        pattern.tags = ("network",)
        store.update_pattern(pattern)
        assert store.get_patterns_by_tag("db") == []
        assert [p.pattern_id for p in store.get_patterns_by_tag("network")] == ["p1"]

    def test_delete(self, store: PatternStore) -> None:
        store.save_pattern(_make_pattern(tags=("db",)))
        assert store.delete_pattern("p1", "orders")
        assert not store.delete_pattern("p1", "orders")
        assert store.get_pattern("p1", "orders") is None
        assert store.get_patterns_by_tag("db") == []

    def test_delete_resolves_service(self, store: PatternStore) -> None:
        store.save_pattern(_make_pattern())
        assert store.delete_pattern("p1")

    def test_queries(self, store: PatternStore) -> None:
        first = _make_pattern("p1", tags=("db",), category="DatabaseTimeout")
        first.record_outcome("restart_service", True)
        store.save_pattern(first)
        store.save_pattern(_make_pattern("p2", error_type="KeyError", tags=("DB",)))
        store.save_pattern(_make_pattern("p3", service="billing"))

        assert {p.pattern_id for p in store.get_patterns_by_service("orders")} == {"p1", "p2"}
        assert {p.pattern_id for p in store.get_patterns_by_tag("db")} == {"p1", "p2"}
        assert [p.pattern_id for p in store.get_patterns_by_category("DatabaseTimeout")] == ["p1"]
        assert {p.pattern_id for p in store.get_patterns_by_error_type("TimeoutError")} == {"p1", "p3"}
        assert [p.pattern_id for p in store.get_patterns_by_action("restart_service")] == ["p1"]
        assert len(store.get_all_patterns()) == 3
        assert store.get_pattern_count("orders") == 2

    def test_service_prefix_does_not_leak(self, store: PatternStore) -> None:
        store.save_pattern(_make_pattern("p1", service="orders"))
        store.save_pattern(_make_pattern("p2", service="orders-v2"))
        assert [p.pattern_id for p in store.get_patterns_by_service("orders")] == ["p1"]

    def test_corrupt_records_are_skipped(self) -> None:
        backend = InMemoryPatternBackend({"pattern:orders:bad": "{not json"})
        store = PatternStore(backend, FAST_STORE)
        store.connect()
        assert store.get_all_patterns() == []

    def test_events(self, store: PatternStore, event_store: EventStore) -> None:
        store.save_pattern(_make_pattern())
        store.delete_pattern("p1", "orders")
        assert len(event_store.query(PatternSaved)) == 1
        deleted = event_store.query(PatternDeleted)
        assert len(deleted) == 1 and not deleted[0].expired


class TestRetention:

    def test_purge_expired(self, store: PatternStore, event_store: EventStore) -> None:
        store.save_pattern(_make_pattern("old", last_updated=0.0, first_seen=0.0))
        store.save_pattern(_make_pattern("fresh", last_updated=1000.0, first_seen=0.0))
        now = FAST_STORE.retention_seconds + 500.0
        assert store.purge_expired(now=now) == 1
        assert store.get_pattern("old", "orders") is None
        assert store.get_pattern("fresh", "orders") is not None
        assert event_store.query(PatternDeleted)[0].expired


# ===================================================================== #
#  Connection state machine                                              #
# ===================================================================== #

class TestConnectionStates:

    def test_connect_publishes_states(self) -> None:
        bus = EventBus()
        events = EventStore()
        bus.subscribe_all(events.append)
        store = PatternStore(InMemoryPatternBackend(), FAST_STORE, event_bus=bus)
        assert store.state == ConnectionState.DISCONNECTED
        store.connect()
        assert store.is_connected
        assert store.validate_connection()
        assert _transitions(events) == [
            (ConnectionState.DISCONNECTED, ConnectionState.CONNECTING),
            (ConnectionState.CONNECTING, ConnectionState.CONNECTED),
        ]

    def test_connect_fails_when_backend_down(self) -> None:
        backend = FlakyBackend()
        backend.down = True
        store = PatternStore(backend, FAST_STORE)
        with pytest.raises(StoreConnectivityError):
            store.connect()
        assert store.state == ConnectionState.DISCONNECTED
        assert backend.pings == FAST_STORE.max_reconnect_attempts

    def test_operations_fail_fast_when_disconnected(self) -> None:
        store = PatternStore(InMemoryPatternBackend(), FAST_STORE)
        with pytest.raises(StoreConnectivityError):
            store.get_pattern("p1", "orders")

    def test_transient_failure_reconnects_and_retries(self) -> None:
        backend = FlakyBackend()
        bus = EventBus()
        events = EventStore()
        store = PatternStore(backend, FAST_STORE, event_bus=bus)
        store.connect()
        bus.subscribe_all(events.append)

        backend.fail_next = 1
        store.save_pattern(_make_pattern())

        assert store.is_connected
        assert store.get_pattern("p1", "orders") is not None
        assert _transitions(events) == [
            (ConnectionState.CONNECTED, ConnectionState.RECONNECTING),
            (ConnectionState.RECONNECTING, ConnectionState.CONNECTED),
        ]

    def test_read_during_reconnect_waits_for_recovery(self) -> None:
        store, backend, writer = _start_reconnect(timeout=3.0)
        results: list[ErrorPattern | None] = []
        reader = threading.Thread(target=lambda: results.append(store.get_pattern("p0", "orders")))
        reader.start()
        time.sleep(0.2)
        assert results == []
        assert store.state == ConnectionState.RECONNECTING

        backend.release.set()
        reader.join(3.0)
        writer.join(3.0)
        assert results[0] is not None and results[0].pattern_id == "p0"
        assert store.is_connected
        assert store.get_pattern("p1", "orders") is not None

    def test_read_during_reconnect_times_out(self) -> None:
        store, backend, writer = _start_reconnect(timeout=0.1)
        try:
            with pytest.raises(StoreConnectivityError, match="Timed out waiting"):
                store.get_pattern("p0", "orders")
            assert store.state == ConnectionState.RECONNECTING
        finally:
            backend.release.set()
            writer.join(3.0)
        assert store.is_connected

    def test_outage_ends_disconnected(self) -> None:
        backend = FlakyBackend()
        bus = EventBus()
        events = EventStore()
        store = PatternStore(backend, FAST_STORE, event_bus=bus)
        store.connect()
        bus.subscribe_all(events.append)

        backend.down = True
        with pytest.raises(StoreConnectivityError):
            store.get_pattern("p1", "orders")
        assert store.state == ConnectionState.DISCONNECTED
        assert _transitions(events)[-1] == (
            ConnectionState.RECONNECTING, ConnectionState.DISCONNECTED,
        )

        pings = backend.pings
        with pytest.raises(StoreConnectivityError, match="disconnected"):
            store.get_pattern("p1", "orders")
        assert backend.pings == pings

    def test_reconnect_after_outage(self) -> None:
        backend = FlakyBackend()
        store = PatternStore(backend, FAST_STORE)
        store.connect()
        backend.down = True
        with pytest.raises(StoreConnectivityError):
            store.get_all_patterns()
        backend.down = False
        store.connect()
        assert store.get_all_patterns() == []

    def test_disconnect(self, store: PatternStore) -> None:
        store.disconnect()
        assert store.state == ConnectionState.DISCONNECTED
        assert not store.validate_connection()

    def test_cancelled_token_rejects_operation(self, store: PatternStore) -> None:
        token = CancellationToken()
        token.cancel()
        with pytest.raises(OperationCancelledError):
            store.get_pattern("p1", "orders", cancel_token=token)
