"""Tests for RemediationPlanner."""

from __future__ import annotations

import pytest

from runtime_error_sage.domain.aggregates import DependencyGraph
from runtime_error_sage.domain.entities import ErrorPattern
from runtime_error_sage.domain.enums import ImpactScope, ImpactSeverity
from runtime_error_sage.domain.values import (
    DependencyNode,
    ErrorClassification,
    ErrorContext,
    PotentialErrorSource,
)
from runtime_error_sage.infrastructure.pattern_store import PatternStore
from runtime_error_sage.services.planning import RemediationPlanner
from tests.helpers.fakes import FlakyBackend
from tests.conftest import FAST_STORE


def _make_context(**overrides) -> ErrorContext:
    fields = dict(
        correlation_id="corr-1",
        service_name="orders",
        error_type="TimeoutError",
        error_source="orders",
    )
    fields.update(overrides)
    return ErrorContext(**fields)


def _make_graph(*ids: str) -> DependencyGraph:
    return DependencyGraph(nodes=[DependencyNode(i, i) for i in ids]).seal()


def _make_classification(pattern_id: str | None = "db-timeout", **metadata) -> ErrorClassification:
    metadata.setdefault("service_name", "orders")
    return ErrorClassification(
        category="DatabaseTimeout", confidence=0.95, pattern_id=pattern_id, metadata=metadata
    )


def _make_source(node_id: str, confidence: float = 0.8) -> PotentialErrorSource:
    return PotentialErrorSource(node_id, confidence, ImpactSeverity.HIGH, ImpactScope.SERVICE)


class TestCandidateActions:
    def test_pattern_history_ranks_actions(self, registry) -> None:
        pattern = ErrorPattern(service_name="orders", error_type="TimeoutError", pattern_id="p1")
        pattern.remediation_actions.append("scale_up")
        for _ in range(3):
            pattern.record_outcome("clear_cache", True)
        pattern.record_outcome("clear_cache", False)
        pattern.record_outcome("restart_service", False)

        planner = RemediationPlanner(registry)
        names = planner.candidate_actions(_make_context(), pattern=pattern)

        # 75% success, untried prior of 50%, 0%
        assert names == ["clear_cache", "scale_up", "restart_service"]

    def test_classification_suggestions_without_pattern(self, registry) -> None:
        planner = RemediationPlanner(registry)
        cls = _make_classification(suggested_actions=["scale_up", "clear_cache"])
        assert planner.candidate_actions(_make_context(), cls) == ["scale_up", "clear_cache"]

    def test_llm_then_strategies(self, registry) -> None:
        planner = RemediationPlanner(
            registry,
            strategies={"TimeoutError": ["restart_service"], "DatabaseTimeout": ["scale_up"]},
        )
        names = planner.candidate_actions(
            _make_context(), _make_classification(None), llm_actions=["clear_cache"]
        )
        assert names == ["clear_cache", "restart_service", "scale_up"]

    def test_strategy_lookup_is_case_insensitive(self, registry) -> None:
        planner = RemediationPlanner(registry, strategies={"timeouterror": ["restart_service"]})
        assert planner.candidate_actions(_make_context()) == ["restart_service"]

    def test_category_hint_strategy(self, registry) -> None:
        planner = RemediationPlanner(registry, strategies={"Capacity": ["scale_up"]})
        context = _make_context(additional_context={"category": "Capacity"})
        assert planner.candidate_actions(context) == ["scale_up"]

    def test_unregistered_and_duplicates_dropped(self, registry) -> None:
        planner = RemediationPlanner(registry)
        names = planner.candidate_actions(
            _make_context(), llm_actions=["reboot_universe", "clear_cache", "clear_cache"]
        )
        assert names == ["clear_cache"]

    def test_max_actions(self, registry) -> None:
        planner = RemediationPlanner(registry, max_actions=2)
        names = planner.candidate_actions(
            _make_context(), llm_actions=["restart_service", "clear_cache", "scale_up"]
        )
        assert names == ["restart_service", "clear_cache"]

    def test_invalid_max_actions(self, registry) -> None:
        with pytest.raises(ValueError, match="max_actions"):
            RemediationPlanner(registry, max_actions=0)


class TestTarget:
    def test_first_source_in_graph(self) -> None:
        graph = _make_graph("orders", "db")
        sources = [_make_source("ghost"), _make_source("db")]
        assert RemediationPlanner.target_for(_make_context(), graph, sources) == "db"

    def test_falls_back_to_source_component(self) -> None:
        graph = _make_graph("orders")
        assert RemediationPlanner.target_for(_make_context(), graph) == "orders"
        context = _make_context(error_source="")
        assert RemediationPlanner.target_for(context, graph) == "orders"


class TestPlan:
    def test_chain_of_actions(self, registry) -> None:
        planner = RemediationPlanner(registry)
        plan = planner.plan(
            _make_context(),
            _make_graph("orders", "db"),
            sources=[_make_source("db")],
            llm_actions=["restart_service", "clear_cache"],
        )

        assert plan.correlation_id == "corr-1"
        assert plan.strategy == "llm"
        assert plan.action_ids == ("01-restart_service", "02-clear_cache")
        first, second = plan.actions
        assert first.target_component == second.target_component == "db"
        assert first.depends_on == ()
        assert second.depends_on == ("01-restart_service",)
        assert first.inverse_name == "stop_service"
        assert first.reversible
        assert first.expected_effect == "Run restart_service."
        assert first.parameters["error_type"] == "TimeoutError"

    def test_handler_without_inverse_is_irreversible(self, registry) -> None:
        planner = RemediationPlanner(registry)
        plan = planner.plan(_make_context(), _make_graph("orders"), llm_actions=["stop_service"])
        assert not plan.actions[0].reversible
        assert plan.actions[0].inverse_name is None

    def test_empty_plan(self, registry) -> None:
        planner = RemediationPlanner(registry)
        plan = planner.plan(_make_context(), _make_graph("orders"))
        assert len(plan) == 0
        assert plan.strategy == "none"

    def test_default_strategy(self, registry) -> None:
        planner = RemediationPlanner(registry, strategies={"TimeoutError": ["scale_up"]})
        plan = planner.plan(_make_context(), _make_graph("orders"))
        assert plan.strategy == "default"
        assert [a.name for a in plan.actions] == ["scale_up"]

    def test_matched_pattern_from_store(self, registry, store: PatternStore) -> None:
        pattern = ErrorPattern(service_name="orders", error_type="TimeoutError", pattern_id="db-timeout")
        pattern.record_outcome("clear_cache", True)
        store.save_pattern(pattern)

        planner = RemediationPlanner(registry, store=store)
        plan = planner.plan(_make_context(), _make_graph("orders"), _make_classification())

        assert plan.strategy == "pattern"
        assert [a.name for a in plan.actions] == ["clear_cache"]

    def test_store_outage_falls_back(self, registry) -> None:
        backend = FlakyBackend()
        store = PatternStore(backend, FAST_STORE)
        store.connect()
        backend.down = True

        planner = RemediationPlanner(registry, store=store)
        cls = _make_classification(suggested_actions=["scale_up"])
        plan = planner.plan(_make_context(), _make_graph("orders"), cls)

        assert plan.strategy == "default"
        assert [a.name for a in plan.actions] == ["scale_up"]
