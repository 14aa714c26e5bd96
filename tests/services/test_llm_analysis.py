"""Tests for LLMErrorAnalyzer and parse_analysis."""

from __future__ import annotations

import pytest

from runtime_error_sage.domain.enums import ImpactScope, ImpactSeverity
from runtime_error_sage.domain.exceptions import OperationCancelledError
from runtime_error_sage.domain.values import (
    ErrorClassification,
    ErrorContext,
    ImpactAnalysisResult,
    ImpactResult,
)
from runtime_error_sage.infrastructure.cancellation import CancellationToken
from runtime_error_sage.infrastructure.llm import LLMConnectionError
from runtime_error_sage.infrastructure.llm.chat_model import ChatModelClient
from runtime_error_sage.services.llm_analysis import (
    ErrorAnalysisOutput,
    LLMErrorAnalyzer,
    parse_analysis,
)
from tests.helpers.mock_llm import MockChatModel, StaticLLMClient

_ACTIONS = ["restart_service", "clear_cache", "scale_up"]


def _make_output(**overrides) -> ErrorAnalysisOutput:
    fields = dict(
        root_cause="connection pool exhausted",
        category="DatabaseTimeout",
        confidence=0.8,
        suggested_actions=["restart_service"],
        explanation="The pool is saturated.",
    )
    fields.update(overrides)
    return ErrorAnalysisOutput(**fields)


class TestParseAnalysis:
    def test_json_document(self) -> None:
        result = parse_analysis(_make_output().model_dump_json())
        assert result.root_cause == "connection pool exhausted"
        assert result.suggested_actions == ["restart_service"]
        assert result.is_structured

    def test_json_inside_prose(self) -> None:
        text = 'Here you go:\n```json\n{"category": "Timeout", "confidence": 0.4}\n```'
        result = parse_analysis(text)
        assert result.category == "Timeout"
        assert result.confidence == pytest.approx(0.4)

    def test_free_text(self) -> None:
        result = parse_analysis("  The database is down.  ")
        assert result.explanation == "The database is down."
        assert not result.is_structured

    def test_invalid_document_kept_as_text(self) -> None:
        text = '{"confidence": 7}'
        result = parse_analysis(text)
        assert result.explanation == text
        assert result.confidence == 0.0


class TestPrompt:
    def test_includes_context(self, sample_context: ErrorContext) -> None:
        analyzer = LLMErrorAnalyzer(StaticLLMClient(), available_actions=_ACTIONS)
        impact = ImpactAnalysisResult(
            correlation_id="corr-1",
            source_node_ids=("orders",),
            impacts=(ImpactResult("api", ImpactSeverity.HIGH, ImpactScope.SERVICE, 1, 0.6),),
        )
        cls = ErrorClassification(category="DatabaseTimeout", confidence=0.92)

        prompt = analyzer.build_prompt(sample_context, impact, cls)

        assert "TimeoutError" in prompt
        assert "Connection to database timed out" in prompt
        assert "db, timeout" in prompt
        assert "- api: high (service, distance 1)" in prompt
        assert "DatabaseTimeout (confidence 0.92)" in prompt
        assert "- clear_cache" in prompt

    def test_placeholders(self) -> None:
        analyzer = LLMErrorAnalyzer(StaticLLMClient())
        context = ErrorContext("corr-1", "orders", "KeyError")
        prompt = analyzer.build_prompt(context, None, ErrorClassification.unknown())
        assert "No matching pattern" in prompt
        assert "**Message**: N/A" in prompt


class TestAnalyze:
    def test_disabled(self, sample_context: ErrorContext) -> None:
        analyzer = LLMErrorAnalyzer(None)
        assert not analyzer.enabled
        assert analyzer.analyze(sample_context) is None

    def test_structured_answer(self, sample_context: ErrorContext) -> None:
        client = StaticLLMClient([_make_output()])
        analyzer = LLMErrorAnalyzer(client, available_actions=_ACTIONS)

        result = analyzer.analyze(sample_context)

        assert result is not None
        assert result.category == "DatabaseTimeout"
        assert client.call_count == 1

    def test_unknown_actions_filtered(self, sample_context: ErrorContext) -> None:
        client = StaticLLMClient([_make_output(suggested_actions=["reboot_universe", "scale_up"])])
        analyzer = LLMErrorAnalyzer(client, available_actions=_ACTIONS)
        result = analyzer.analyze(sample_context)
        assert result.suggested_actions == ["scale_up"]

    def test_free_text_answer(self, sample_context: ErrorContext) -> None:
        analyzer = LLMErrorAnalyzer(StaticLLMClient(["Probably the database."]))
        result = analyzer.analyze(sample_context)
        assert result.explanation == "Probably the database."

    def test_client_error_degrades(self, sample_context: ErrorContext) -> None:
        client = StaticLLMClient([LLMConnectionError("refused")])
        analyzer = LLMErrorAnalyzer(client)
        assert analyzer.analyze(sample_context) is None

    def test_timeout_degrades(self, sample_context: ErrorContext) -> None:
        client = StaticLLMClient(["late"], delay=0.2)
        analyzer = LLMErrorAnalyzer(client, timeout=0.05)
        assert analyzer.analyze(sample_context) is None

    def test_empty_answer(self, sample_context: ErrorContext) -> None:
        analyzer = LLMErrorAnalyzer(StaticLLMClient(["   "]))
        assert analyzer.analyze(sample_context) is None

    def test_cancelled(self, sample_context: ErrorContext) -> None:
        client = StaticLLMClient(["ok"])
        token = CancellationToken()
        token.cancel()
        with pytest.raises(OperationCancelledError):
            LLMErrorAnalyzer(client).analyze(sample_context, cancel_token=token)
        assert client.call_count == 0

    def test_through_chat_model(self, sample_context: ErrorContext) -> None:
        model = MockChatModel(responses=[_make_output(category="PoolExhausted")])
        analyzer = LLMErrorAnalyzer(ChatModelClient(model), timeout=5.0)
        result = analyzer.analyze(sample_context)
        assert result.category == "PoolExhausted"
