"""Language-model analysis of runtime errors.

The model is asked for a JSON document matching :class:`ErrorAnalysisOutput`.
Any failure (timeout, transport, empty answer) is a degraded signal, never a
fatal one: :meth:`LLMErrorAnalyzer.analyze` logs a warning and returns
``None`` so the pipeline proceeds with pattern-only classification.  Answers
that are not valid JSON are kept as free-text explanations.
"""

from __future__ import annotations

import logging
from typing import Any

from langchain_core.prompts import PromptTemplate
from pydantic import BaseModel, Field, ValidationError

from runtime_error_sage.domain.values import (
    ErrorClassification,
    ErrorContext,
    ImpactAnalysisResult,
)
from runtime_error_sage.infrastructure.cancellation import CancellationToken, ensure_token
from runtime_error_sage.infrastructure.llm import LLMClient, LLMError

logger = logging.getLogger(__name__)


# -- Structured output schema ------------------------------------------------


class ErrorAnalysisOutput(BaseModel):
    """What the model is asked to return."""

    root_cause: str = Field(default="", description="Most likely root cause")
    category: str = Field(default="", description="Short error category")
    confidence: float = Field(default=0.0, ge=0, le=1, description="Confidence [0, 1]")
    suggested_actions: list[str] = Field(
        default_factory=list, description="Remediation action names, best first"
    )
    explanation: str = Field(default="", description="Reasoning in a few sentences")

    @property
    def is_structured(self) -> bool:
        return bool(self.root_cause or self.category or self.suggested_actions)


# -- Prompt ------------------------------------------------------------------

_ANALYSIS_PROMPT = PromptTemplate.from_template(
    "A runtime error occurred.\n\n"
    "## Error\n"
    "**Type**: {error_type}\n"
    "**Message**: {message}\n"
    "**Service**: {service_name}\n"
    "**Operation**: {operation_name}\n"
    "**Source component**: {source}\n"
    "**Tags**: {tags}\n\n"
    "## Stack trace\n{stack_trace}\n\n"
    "## Impacted components\n{impacts}\n\n"
    "## Pattern classification\n{classification}\n\n"
    "## Available remediation actions\n{actions}\n\n"
    "Respond with a single JSON object with the keys "
    '"root_cause", "category", "confidence" (0-1), '
    '"suggested_actions" (names from the list above, best first) and "explanation".'
)


def _impacts_text(impact: ImpactAnalysisResult | None, limit: int = 10) -> str:
    if impact is None or not impact.impacts:
        return "N/A"
    return "\n".join(
        f"- {r.node_id}: {r.severity.value} ({r.scope.value}, distance {r.distance})"
        for r in impact.impacts[:limit]
    )


def _extract_json(text: str) -> str | None:
    start, end = text.find("{"), text.rfind("}")
    if start < 0 or end <= start:
        return None
    return text[start:end + 1]


def parse_analysis(text: str) -> ErrorAnalysisOutput:
    """Parse a model answer; non-JSON answers become a free-text explanation."""
    candidate = _extract_json(text)
    if candidate is not None:
        try:
            return ErrorAnalysisOutput.model_validate_json(candidate)
        except ValidationError as exc:
            logger.debug("parse_analysis: answer is not a valid analysis document: %s", exc)
    return ErrorAnalysisOutput(explanation=text.strip())


# -- LLMErrorAnalyzer -------------------------------------------------------


class LLMErrorAnalyzer:
    """Asks a language model to explain an error and suggest actions.

    Parameters
    ----------
    client:
        The model backend.  ``None`` disables analysis.
    timeout:
        Seconds allowed for one call.
    available_actions:
        Action names the model may suggest (usually the registry's).
    """

    def __init__(
        self,
        client: LLMClient | None,
        timeout: float = 30.0,
        available_actions: list[str] | None = None,
        prompt: PromptTemplate | None = None,
    ) -> None:
        self._client = client
        self._timeout = timeout
        self._actions = list(available_actions or [])
        self._prompt = prompt or _ANALYSIS_PROMPT

    @property
    def enabled(self) -> bool:
        return self._client is not None

    def build_prompt(
        self,
        context: ErrorContext,
        impact: ImpactAnalysisResult | None = None,
        classification: ErrorClassification | None = None,
    ) -> str:
        inputs: dict[str, Any] = {
            "error_type": context.error_type,
            "message": context.message or "N/A",
            "service_name": context.service_name or "N/A",
            "operation_name": context.operation_name or "N/A",
            "source": context.source_component or "N/A",
            "tags": ", ".join(context.tags) if context.tags else "N/A",
            "stack_trace": context.stack_trace or "N/A",
            "impacts": _impacts_text(impact),
            "classification": (
                f"{classification.category} (confidence {classification.confidence:.2f})"
                if classification is not None and not classification.is_unknown
                else "No matching pattern"
            ),
            "actions": "\n".join(f"- {a}" for a in self._actions) if self._actions else "N/A",
        }
        return self._prompt.format(**inputs)

    def analyze(
        self,
        context: ErrorContext,
        impact: ImpactAnalysisResult | None = None,
        classification: ErrorClassification | None = None,
        cancel_token: CancellationToken | None = None,
    ) -> ErrorAnalysisOutput | None:
        """Analyze *context*; ``None`` means the analysis is unavailable."""
        if self._client is None:
            return None
        token = ensure_token(cancel_token)
        token.raise_if_cancelled("language model analysis")
        prompt = self.build_prompt(context, impact, classification)
        try:
            text = self._client.analyze(prompt, self._timeout)
        except LLMError as exc:
            logger.warning(
                "LLMErrorAnalyzer: %s analysis failed for %s (%s): %s",
                self._client.name,
                context.correlation_id,
                type(exc).__name__,
                exc,
            )
            return None
        token.raise_if_cancelled("language model analysis")
        if not text or not text.strip():
            logger.warning(
                "LLMErrorAnalyzer: empty answer from %s for %s",
                self._client.name,
                context.correlation_id,
            )
            return None
        result = parse_analysis(text)
        if self._actions:
            unknown = [a for a in result.suggested_actions if a not in self._actions]
            if unknown:
                logger.debug("LLMErrorAnalyzer: ignoring unknown actions %s", unknown)
                result = result.model_copy(update={
                    "suggested_actions": [a for a in result.suggested_actions if a in self._actions]
                })
        return result
