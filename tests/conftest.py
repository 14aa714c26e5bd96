"""Shared fixtures for the Runtime Error Sage test suite."""

from __future__ import annotations

import time

import pytest

from runtime_error_sage.domain.aggregates import DependencyGraph
from runtime_error_sage.domain.entities import ErrorPattern, tokenize
from runtime_error_sage.domain.enums import ErrorSeverity
from runtime_error_sage.domain.values import DependencyEdge, DependencyNode, ErrorContext
from runtime_error_sage.infrastructure.backends import InMemoryPatternBackend
from runtime_error_sage.infrastructure.config import (
    ExecutorConfig,
    LLMSettings,
    SageConfig,
    StoreConfig,
    ValidatorConfig,
)
from runtime_error_sage.infrastructure.event_bus import EventBus, EventStore
from runtime_error_sage.infrastructure.pattern_store import PatternStore
from tests.helpers.fakes import HandlerLog, make_registry

# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

FAST_STORE = StoreConfig(base_backoff=0.0, max_backoff=0.0, max_reconnect_attempts=2,
                         operation_timeout=0.5)
FAST_EXECUTOR = ExecutorConfig(max_retries=0, base_retry_delay=0.0, max_retry_delay=0.0,
                               action_timeout=5.0, approval_timeout=2.0)


@pytest.fixture
def fast_config() -> SageConfig:
    """Config with the language model off and no retry delays."""
    return SageConfig(
        executor=FAST_EXECUTOR,
        store=FAST_STORE,
        llm=LLMSettings(enabled=False),
        validator=ValidatorConfig(grace_period=0.0),
    )


# ---------------------------------------------------------------------------
# Contexts and graphs
# ---------------------------------------------------------------------------


@pytest.fixture
def sample_context() -> ErrorContext:
    """A timeout in ``orders`` whose dependencies fan out to two stores.

    Topology: api -> orders -> {db, cache}; db -> disk.
    """
    return ErrorContext(
        correlation_id="corr-1",
        service_name="orders",
        error_type="TimeoutError",
        message="Connection to database timed out after 30s",
        operation_name="place_order",
        timestamp=time.time(),
        severity=ErrorSeverity.HIGH,
        error_source="orders",
        tags=("db", "timeout"),
        component_graph={
            "api": ("orders",),
            "orders": ("db", "cache"),
            "db": ("disk",),
        },
    )


@pytest.fixture
def chain_graph() -> DependencyGraph:
    """Sealed chain a -> b -> c with ``a`` as the error source."""
    graph = DependencyGraph(
        nodes=[
            DependencyNode("a", "a", is_error_source=True),
            DependencyNode("b", "b"),
            DependencyNode("c", "c"),
        ],
        edges=[DependencyEdge("a", "b"), DependencyEdge("b", "c")],
    )
    return graph.seal()


@pytest.fixture
def timeout_pattern() -> ErrorPattern:
    """Stored pattern matching ``sample_context`` exactly."""
    return ErrorPattern(
        service_name="orders",
        error_type="TimeoutError",
        pattern_id="db-timeout",
        category="DatabaseTimeout",
        component_id="orders",
        message_tokens=tokenize("Connection to database timed out after 30s"),
        tags=("db", "timeout"),
        severity=0.75,
    )


# ---------------------------------------------------------------------------
# Infrastructure
# ---------------------------------------------------------------------------


@pytest.fixture
def event_bus() -> EventBus:
    return EventBus()


@pytest.fixture
def event_store(event_bus: EventBus) -> EventStore:
    """Store receiving every event published on ``event_bus``."""
    return EventStore().attach(event_bus)


@pytest.fixture
def store(event_bus: EventBus) -> PatternStore:
    """Connected in-memory pattern store."""
    s = PatternStore(InMemoryPatternBackend(), FAST_STORE, event_bus=event_bus)
    s.connect()
    return s


@pytest.fixture
def handler_log() -> HandlerLog:
    return HandlerLog()


@pytest.fixture
def registry(handler_log: HandlerLog):
    return make_registry(handler_log)
