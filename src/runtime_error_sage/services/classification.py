"""Pattern-based error classification.

:class:`ErrorClassifier` matches an :class:`ErrorContext` against the error
patterns learned so far.  Candidates are fetched from the pattern store by
error type, category hint and tags; each is scored by a weighted similarity
over three components:

* error type -- exact (case-insensitive) match,
* message tokens -- Jaccard overlap,
* tags -- Jaccard overlap.

A component with nothing on either side carries no information and is left
out, the remaining weights being renormalised.  The best candidate wins with
its score as confidence; below ``min_similarity`` the verdict is
``Unknown`` with confidence 0.
"""

from __future__ import annotations

import logging
import math
from collections.abc import Iterable, Mapping

import numpy as np

from runtime_error_sage.domain.aggregates import DependencyGraph
from runtime_error_sage.domain.entities import ErrorPattern, tokenize
from runtime_error_sage.domain.exceptions import ClassificationError, StoreConnectivityError
from runtime_error_sage.domain.values import DependencyNode, ErrorClassification, ErrorContext
from runtime_error_sage.infrastructure.cancellation import CancellationToken
from runtime_error_sage.infrastructure.config import ClassifierConfig
from runtime_error_sage.infrastructure.pattern_store import PatternStore

logger = logging.getLogger(__name__)


def jaccard(a: Iterable[str], b: Iterable[str]) -> float:
    sa, sb = set(a), set(b)
    if not sa and not sb:
        return 0.0
    return len(sa & sb) / len(sa | sb)


class ErrorClassifier:
    """Classifies errors against stored :class:`ErrorPattern` records.

    Parameters
    ----------
    store:
        Pattern store to draw candidates from.  ``None`` always yields
        ``Unknown``.
    config:
        Similarity weights and thresholds.
    """

    def __init__(
        self,
        store: PatternStore | None,
        config: ClassifierConfig | None = None,
    ) -> None:
        self._store = store
        self._config = config or ClassifierConfig()
        self._config.validate()

    # -- candidates ------------------------------------------------------------

    def candidates(
        self,
        context: ErrorContext,
        cancel_token: CancellationToken | None = None,
    ) -> list[ErrorPattern]:
        """Active patterns sharing the error type, category hint or a tag.

        Raises :class:`ClassificationError` when the store cannot be reached.
        """
        if self._store is None:
            return []
        found: dict[tuple[str, str], ErrorPattern] = {}
        try:
            batches = [self._store.get_patterns_by_error_type(context.error_type, cancel_token)]
            if context.category_hint:
                batches.append(self._store.get_patterns_by_category(context.category_hint, cancel_token))
            for tag in dict.fromkeys(context.tags):
                batches.append(self._store.get_patterns_by_tag(tag, cancel_token))
        except StoreConnectivityError as exc:
            raise ClassificationError(
                f"Pattern store unavailable: {exc}",
                error_type=context.error_type,
                details={"state": exc.state, "operation": exc.operation},
            ) from exc
        for batch in batches:
            for pattern in batch:
                if pattern.is_active:
                    found.setdefault(pattern.key, pattern)
        return list(found.values())

    # -- scoring ----------------------------------------------------------------

    def similarity(self, context: ErrorContext, pattern: ErrorPattern) -> float:
        """Weighted similarity of *context* to *pattern* in [0, 1]."""
        cfg = self._config
        weights: list[float] = []
        scores: list[float] = []

        if context.error_type or pattern.error_type:
            weights.append(cfg.type_weight)
            scores.append(float(context.error_type.lower() == pattern.error_type.lower()))

        tokens = tokenize(context.message)
        if tokens or pattern.message_tokens:
            weights.append(cfg.message_weight)
            scores.append(jaccard(tokens, pattern.message_tokens))

        tags = {t.lower() for t in context.tags}
        pattern_tags = {t.lower() for t in pattern.tags}
        if tags or pattern_tags:
            weights.append(cfg.tag_weight)
            scores.append(jaccard(tags, pattern_tags))

        w = np.asarray(weights, dtype=float)
        if w.size == 0 or w.sum() <= 0:
            return 0.0
        return float(np.clip(np.dot(w, np.asarray(scores)) / w.sum(), 0.0, 1.0))

    def best_match(
        self,
        context: ErrorContext,
        patterns: Iterable[ErrorPattern],
    ) -> tuple[ErrorPattern | None, float]:
        """Highest-scoring pattern; ties go to the more frequently seen one."""
        best: ErrorPattern | None = None
        best_score = 0.0
        for pattern in patterns:
            score = self.similarity(context, pattern)
            if best is None or (score, pattern.occurrence_count) > (best_score, best.occurrence_count):
                best, best_score = pattern, score
        return best, best_score

    def classify(
        self,
        context: ErrorContext,
        cancel_token: CancellationToken | None = None,
    ) -> ErrorClassification:
        """Classify *context*.  Never raises for store outages."""
        try:
            candidates = self.candidates(context, cancel_token)
        except ClassificationError as exc:
            logger.warning(
                "ErrorClassifier: %s for %s; classifying as Unknown",
                exc,
                context.correlation_id,
            )
            return ErrorClassification.unknown(degraded=True, reason=str(exc))

        best, score = self.best_match(context, candidates)
        if best is None or score < self._config.min_similarity:
            logger.debug(
                "ErrorClassifier: no match for %s (%d candidates, best %.3f)",
                context.error_type,
                len(candidates),
                score,
            )
            return ErrorClassification.unknown(candidates=len(candidates), best_score=score)

        return ErrorClassification(
            category=best.category or best.error_type,
            confidence=round(score, 6),
            severity=best.severity,
            pattern_id=best.pattern_id,
            metadata={
                "service_name": best.service_name,
                "candidates": len(candidates),
                "suggested_actions": list(best.remediation_actions),
            },
        )

    # -- error probability ------------------------------------------------------

    def calculate_error_probability(
        self,
        node: DependencyNode,
        patterns: Iterable[ErrorPattern] = (),
        health: float | None = None,
    ) -> float:
        """Probability in [0, 1] that *node* is failing.

        Blends historical failure frequency ``1 - exp(-failures / scale)``
        (failures counted from the patterns recorded against the node's
        component) with current ill-health ``1 - health``.
        """
        cfg = self._config
        failures = sum(p.occurrence_count for p in patterns if p.component_id == node.component_id)
        h = node.health_score if health is None else health
        historical = 1.0 - math.exp(-failures / cfg.failure_scale)
        probability = cfg.history_weight * historical + (1.0 - cfg.history_weight) * (1.0 - h)
        return float(min(1.0, max(0.0, probability)))

    def error_probabilities(
        self,
        graph: DependencyGraph,
        patterns: Iterable[ErrorPattern] = (),
        health: Mapping[str, float] | None = None,
    ) -> dict[str, float]:
        """:meth:`calculate_error_probability` for every node of *graph*."""
        patterns = list(patterns)
        return {
            node.node_id: self.calculate_error_probability(
                node, patterns, (health or {}).get(node.node_id)
            )
            for node in graph
        }
