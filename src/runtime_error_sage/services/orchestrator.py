"""Top-level analysis-and-remediation pipeline.

:class:`Orchestrator` sequences one run per error::

    validate context -> build graph -> (impact || classification || LLM)
        -> root-cause candidates -> record pattern
        -> plan -> assess risk -> validate plan -> execute (rollback on failure)
        -> record outcomes

Every failure is returned as a structured :class:`AnalysisResult` or
:class:`RemediationResult` carrying a :class:`PipelineError`; only
programming errors (e.g. :class:`InvalidTransitionError`) propagate.

At most one run per correlation id is in flight: a second request for the
same id joins the first and receives the very same result object.

:func:`build_orchestrator` wires the concrete components from a
:class:`SageConfig`.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from typing import Any, TypeVar

from runtime_error_sage.domain.entities import ErrorPattern, RemediationExecution, tokenize
from runtime_error_sage.domain.enums import ErrorKind, RemediationStatus
from runtime_error_sage.domain.events import AnalysisCompleted
from runtime_error_sage.domain.exceptions import (
    ClassificationError,
    ExecutionError,
    GraphConstructionError,
    OperationCancelledError,
    RollbackError,
    StoreConnectivityError,
    ValidationFailure,
)
from runtime_error_sage.domain.results import (
    AnalysisResult,
    ContextValidationResult,
    PipelineError,
    RemediationResult,
)
from runtime_error_sage.domain.values import (
    ErrorClassification,
    ErrorContext,
    PotentialErrorSource,
)
from runtime_error_sage.infrastructure.backends import InMemoryPatternBackend, PatternBackend
from runtime_error_sage.infrastructure.cancellation import CancellationToken, ensure_token
from runtime_error_sage.infrastructure.config import PipelineConfig, SageConfig
from runtime_error_sage.infrastructure.event_bus import EventBus
from runtime_error_sage.infrastructure.llm import LLMClient
from runtime_error_sage.infrastructure.pattern_store import PatternStore
from runtime_error_sage.infrastructure.registry import ActionHandlerRegistry
from runtime_error_sage.measurement.health import MetricsCollector
from runtime_error_sage.services.classification import ErrorClassifier
from runtime_error_sage.services.execution import RemediationExecutor
from runtime_error_sage.services.graph_analysis import GraphAnalyzer
from runtime_error_sage.services.graph_builder import GraphBuilder, TopologyProvider
from runtime_error_sage.services.llm_analysis import ErrorAnalysisOutput, LLMErrorAnalyzer
from runtime_error_sage.services.planning import RemediationPlanner
from runtime_error_sage.services.protocols import (
    ApprovalGate,
    ErrorClassifying,
    GraphAnalyzing,
    GraphBuilding,
    PatternStoring,
    RemediationExecuting,
    RemediationValidating,
    RiskAssessing,
)
from runtime_error_sage.services.risk_assessment import RiskAssessmentService
from runtime_error_sage.services.rollback import RollbackManager
from runtime_error_sage.services.validation import RemediationValidator

logger = logging.getLogger(__name__)

_T = TypeVar("_T")

# Confidence discount for a category that only the language model supplied.
LLM_CONFIDENCE_FACTOR = 0.8

_ERROR_KINDS: tuple[tuple[type[Exception], ErrorKind], ...] = (
    (GraphConstructionError, ErrorKind.GRAPH_CONSTRUCTION),
    (ClassificationError, ErrorKind.CLASSIFICATION),
    (ExecutionError, ErrorKind.EXECUTION),
    (RollbackError, ErrorKind.ROLLBACK),
    (StoreConnectivityError, ErrorKind.STORE_CONNECTIVITY),
    (OperationCancelledError, ErrorKind.CANCELLED),
)


def pipeline_error(exc: Exception) -> PipelineError:
    """Map a pipeline exception onto a :class:`PipelineError`."""
    if isinstance(exc, ValidationFailure):
        kind = ErrorKind.APPROVAL_REQUIRED if exc.requires_approval else ErrorKind.VALIDATION
        return PipelineError(kind, str(exc), {"issues": list(exc.issues)})
    for exc_type, kind in _ERROR_KINDS:
        if isinstance(exc, exc_type):
            return PipelineError(kind, str(exc), dict(getattr(exc, "details", {}) or {}))
    raise TypeError(f"{type(exc).__name__} is not a pipeline error") from exc


_HANDLED = (
    GraphConstructionError,
    ClassificationError,
    ValidationFailure,
    ExecutionError,
    RollbackError,
    StoreConnectivityError,
    OperationCancelledError,
)


class Orchestrator:
    """Runs the analysis-and-remediation pipeline.

    Parameters
    ----------
    graph_builder, graph_analyzer, classifier, risk_service, validator,
    executor, planner:
        Pipeline components.
    store:
        Pattern store written back to after each run.  ``None`` disables
        learning.
    llm_analyzer:
        Optional language-model analysis.
    metrics:
        Error history for related-error search; observations are recorded
        here after each analysis.
    event_bus:
        Receives :class:`AnalysisCompleted`.
    config:
        Worker count, join timeout and persistence switch.
    approval_gate:
        Default gate for plans that require approval.
    """

    def __init__(
        self,
        graph_builder: GraphBuilding,
        graph_analyzer: GraphAnalyzing,
        classifier: ErrorClassifying,
        risk_service: RiskAssessing,
        validator: RemediationValidating,
        executor: RemediationExecuting,
        planner: RemediationPlanner,
        store: PatternStoring | None = None,
        llm_analyzer: LLMErrorAnalyzer | None = None,
        metrics: MetricsCollector | None = None,
        event_bus: EventBus | None = None,
        config: PipelineConfig | None = None,
        approval_gate: ApprovalGate | None = None,
    ) -> None:
        self._builder = graph_builder
        self._analyzer = graph_analyzer
        self._classifier = classifier
        self._risk = risk_service
        self._validator = validator
        self._executor = executor
        self._planner = planner
        self._store = store
        self._llm = llm_analyzer
        self._metrics = metrics
        self._bus = event_bus
        self._config = config or PipelineConfig()
        self._config.validate()
        self._approval_gate = approval_gate
        self._pool = ThreadPoolExecutor(
            max_workers=self._config.max_workers, thread_name_prefix="pipeline"
        )
        self._inflight_lock = threading.Lock()
        self._inflight: dict[tuple[str, str], Future[Any]] = {}

    @property
    def executor(self) -> RemediationExecuting:
        return self._executor

    @property
    def store(self) -> PatternStoring | None:
        return self._store

    # ------------------------------------------------------------------ #
    #  Inbound contract                                                   #
    # ------------------------------------------------------------------ #

    def validate_context(self, context: ErrorContext) -> ContextValidationResult:
        return self._validator.validate_context(context)

    def analyze_error(
        self,
        context: ErrorContext,
        cancel_token: CancellationToken | None = None,
    ) -> AnalysisResult:
        """Analyze *context*: graph, impact, classification, root cause."""
        return self._single_flight(
            ("analyze", context.correlation_id),
            lambda: self._analyze(context, ensure_token(cancel_token)),
            lambda msg: AnalysisResult(
                correlation_id=context.correlation_id,
                context=context,
                error=PipelineError(ErrorKind.CANCELLED, msg),
            ),
        )

    def remediate_error(
        self,
        context: ErrorContext,
        approval_gate: ApprovalGate | None = None,
        cancel_token: CancellationToken | None = None,
    ) -> RemediationResult:
        """Analyze *context*, then plan, assess, validate and execute a fix."""
        return self._single_flight(
            ("remediate", context.correlation_id),
            lambda: self._remediate(context, approval_gate, ensure_token(cancel_token)),
            lambda msg: RemediationResult(
                correlation_id=context.correlation_id,
                error=PipelineError(ErrorKind.CANCELLED, msg),
            ),
        )

    def _single_flight(
        self,
        key: tuple[str, str],
        run: Callable[[], _T],
        on_timeout: Callable[[str], _T],
    ) -> _T:
        with self._inflight_lock:
            future = self._inflight.get(key)
            owner = future is None
            if owner:
                future = Future()
                self._inflight[key] = future

        if not owner:
            logger.info("Orchestrator: joining in-flight %s run for %s", key[0], key[1])
            try:
                return future.result(timeout=self._config.run_timeout)
            except FutureTimeout:
                return on_timeout(
                    f"Timed out after {self._config.run_timeout}s waiting for the in-flight run"
                )

        try:
            result = run()
        except BaseException as exc:
            future.set_exception(exc)
            raise
        else:
            future.set_result(result)
            return result
        finally:
            with self._inflight_lock:
                self._inflight.pop(key, None)

    # ------------------------------------------------------------------ #
    #  Analysis                                                            #
    # ------------------------------------------------------------------ #

    def _analyze(self, context: ErrorContext, token: CancellationToken) -> AnalysisResult:
        cid = context.correlation_id
        check = self._validator.validate_context(context)
        if not check.is_valid:
            return AnalysisResult(
                correlation_id=cid,
                context=context,
                error=PipelineError(
                    ErrorKind.INVALID_CONTEXT,
                    "; ".join(i.message for i in check.errors),
                    {"codes": [i.code for i in check.errors]},
                ),
            )

        try:
            graph = self._builder.build(context, token)
            history = self._metrics.recent_errors() if self._metrics is not None else None
            impact_f = self._pool.submit(self._analyzer.analyze_impact, context, graph, history)
            class_f = self._pool.submit(self._classifier.classify, context, token)
            llm_f = (
                self._pool.submit(self._llm.analyze, context, None, None, token)
                if self._llm is not None and self._llm.enabled else None
            )
            impact = impact_f.result()
            classification = class_f.result()
            llm = llm_f.result() if llm_f is not None else None
            token.raise_if_cancelled("analysis")

            probabilities = self._classifier.error_probabilities(
                graph, self._service_patterns(context, token)
            )
            sources = self._analyzer.find_potential_sources(context, graph, probabilities)
            graph_analysis = self._analyzer.analyze_graph(graph, probabilities)
        except _HANDLED as exc:
            logger.warning("Orchestrator: analysis of %s failed: %s", cid, exc)
            return AnalysisResult(correlation_id=cid, context=context, error=pipeline_error(exc))

        classification = self._merge_llm(classification, llm)
        suggested = self._planner.candidate_actions(
            context, classification, llm.suggested_actions if llm is not None else ()
        )
        degraded = bool(classification.metadata.get("degraded")) or (
            llm_f is not None and llm is None
        )
        llm_text = None
        if llm is not None:
            llm_text = llm.explanation or llm.root_cause or None
            if llm_text:
                context = context.with_analysis(llm_text)

        try:
            pattern_id = self._record_pattern(context, classification, sources, suggested, token)
        except OperationCancelledError as exc:
            logger.warning("Orchestrator: analysis of %s cancelled while recording: %s", cid, exc)
            return AnalysisResult(correlation_id=cid, context=context, error=pipeline_error(exc))
        if self._metrics is not None:
            self._metrics.record_error(
                context.source_component,
                context.error_type,
                correlation_id=cid,
                tags=context.tags,
                timestamp=context.timestamp,
            )

        result = AnalysisResult(
            correlation_id=cid,
            context=context,
            graph=graph,
            impact=impact,
            classification=classification,
            potential_sources=sources,
            graph_analysis=graph_analysis,
            llm_analysis=llm_text,
            suggested_actions=tuple(suggested),
            pattern_id=pattern_id,
            degraded=degraded,
        )
        logger.info(
            "Orchestrator: %s classified as %s (%.2f), %d impacted, root cause %s%s",
            cid,
            classification.category,
            classification.confidence,
            len(impact.impacts),
            result.root_cause.node_id if result.root_cause else "-",
            " [degraded]" if degraded else "",
        )
        if self._bus is not None:
            self._bus.publish(AnalysisCompleted(
                source_id="orchestrator",
                correlation_id=cid,
                category=classification.category,
                confidence=classification.confidence,
                impacted_nodes=len(impact.impacts),
                degraded=degraded,
            ))
        return result

    @staticmethod
    def _merge_llm(
        classification: ErrorClassification,
        llm: ErrorAnalysisOutput | None,
    ) -> ErrorClassification:
        """Fall back to the model's category when no pattern matched."""
        if llm is None or not classification.is_unknown or not llm.category:
            return classification
        return ErrorClassification(
            category=llm.category,
            confidence=round(llm.confidence * LLM_CONFIDENCE_FACTOR, 6),
            metadata={
                **classification.metadata,
                "source": "llm",
                "root_cause": llm.root_cause,
                "suggested_actions": list(llm.suggested_actions),
            },
        )

    def _service_patterns(
        self, context: ErrorContext, token: CancellationToken
    ) -> list[ErrorPattern]:
        if self._store is None or not context.service_name:
            return []
        try:
            return self._store.get_patterns_by_service(context.service_name, token)
        except StoreConnectivityError as exc:
            logger.warning("Orchestrator: no pattern history for %s: %s", context.service_name, exc)
            return []

    def _record_pattern(
        self,
        context: ErrorContext,
        classification: ErrorClassification,
        sources: tuple[PotentialErrorSource, ...],
        suggested: list[str],
        token: CancellationToken,
    ) -> str | None:
        """Count the observation on the matched pattern or learn a new one."""
        if self._store is None or not self._config.persist_outcomes:
            return classification.pattern_id
        try:
            pattern = None
            if classification.pattern_id:
                pattern = self._store.get_pattern(
                    classification.pattern_id,
                    classification.metadata.get("service_name") or None,
                    token,
                )
            if pattern is not None:
                pattern.record_occurrence(context.timestamp)
                for name in suggested:
                    if name not in pattern.remediation_actions:
                        pattern.remediation_actions.append(name)
            else:
                if not context.service_name:
                    return None
                pattern = ErrorPattern(
                    service_name=context.service_name,
                    error_type=context.error_type,
                    category="" if classification.is_unknown else classification.category,
                    operation_name=context.operation_name,
                    component_id=sources[0].node_id if sources else context.source_component,
                    message_tokens=tokenize(context.message),
                    tags=context.tags,
                    severity=context.severity.score,
                    first_seen=context.timestamp,
                    last_updated=context.timestamp,
                    remediation_actions=list(suggested),
                )
            self._store.save_pattern(pattern, token)
            return pattern.pattern_id
        except StoreConnectivityError as exc:
            logger.warning(
                "Orchestrator: pattern for %s not recorded, store unavailable: %s",
                context.correlation_id,
                exc,
            )
            return classification.pattern_id

    # ------------------------------------------------------------------ #
    #  Remediation                                                         #
    # ------------------------------------------------------------------ #

    def _remediate(
        self,
        context: ErrorContext,
        approval_gate: ApprovalGate | None,
        token: CancellationToken,
    ) -> RemediationResult:
        cid = context.correlation_id
        analysis = self.analyze_error(context, token)
        if not analysis.ok or analysis.graph is None:
            return RemediationResult(correlation_id=cid, analysis=analysis, error=analysis.error)

        graph = analysis.graph
        try:
            plan = self._planner.plan(
                analysis.context,
                graph,
                analysis.classification,
                analysis.potential_sources,
                llm_actions=analysis.suggested_actions,
                cancel_token=token,
            )
        except _HANDLED as exc:
            return RemediationResult(correlation_id=cid, analysis=analysis, error=pipeline_error(exc))
        if not plan.actions:
            return RemediationResult(
                correlation_id=cid,
                analysis=analysis,
                plan=plan,
                error=PipelineError(
                    ErrorKind.VALIDATION,
                    f"No registered remediation action for {context.error_type}",
                ),
            )

        try:
            assessments = self._risk.assess_plan(plan, graph, token)
        except _HANDLED as exc:
            return RemediationResult(
                correlation_id=cid, analysis=analysis, plan=plan, error=pipeline_error(exc)
            )
        validation = self._validator.validate_plan(plan, graph, assessments)
        partial = dict(
            correlation_id=cid, analysis=analysis, plan=plan,
            assessments=assessments, validation=validation,
        )
        if not validation.is_valid:
            return RemediationResult(**partial, error=PipelineError(
                ErrorKind.VALIDATION,
                validation.summary(),
                {"codes": [i.code for i in validation.errors]},
            ))

        gate = approval_gate or self._approval_gate
        if validation.requires_approval and gate is None:
            return RemediationResult(**partial, error=PipelineError(
                ErrorKind.APPROVAL_REQUIRED, validation.approval_reason or "Approval required"
            ))

        try:
            execution = self._executor.execute(plan, validation, gate, token)
        except _HANDLED as exc:
            return RemediationResult(**partial, error=pipeline_error(exc))

        self._record_outcomes(analysis, execution, token)
        return RemediationResult(
            **partial, execution=execution, error=self._execution_error(execution)
        )

    def _execution_error(self, execution: RemediationExecution) -> PipelineError | None:
        details: dict[str, Any] = {"execution_id": execution.execution_id}
        if execution.rollback is not None:
            details["rollback"] = execution.rollback.status.value
        if execution.status == RemediationStatus.COMPLETED:
            return None
        if execution.status == RemediationStatus.FAILED:
            failed = execution.failed_action
            if failed is not None:
                details["action_id"] = failed.action_id
            return PipelineError(ErrorKind.EXECUTION, execution.error or "Remediation failed", details)
        if self._executor.was_denied(execution.execution_id):
            return PipelineError(ErrorKind.APPROVAL_REQUIRED, "Approval denied", details)
        return PipelineError(ErrorKind.CANCELLED, execution.error or "Remediation cancelled", details)

    def _record_outcomes(
        self,
        analysis: AnalysisResult,
        execution: RemediationExecution,
        token: CancellationToken,
    ) -> None:
        """Write per-action success or failure back onto the pattern."""
        if self._store is None or not self._config.persist_outcomes or not analysis.pattern_id:
            return
        service = analysis.context.service_name
        if analysis.classification is not None:
            service = analysis.classification.metadata.get("service_name") or service
        outcomes = [
            (ae.action_name, ae.status == RemediationStatus.COMPLETED)
            for ae in execution.action_executions
            if ae.status in (RemediationStatus.COMPLETED, RemediationStatus.FAILED)
        ]
        if not outcomes:
            return
        try:
            pattern = self._store.get_pattern(analysis.pattern_id, service or None, token)
            if pattern is None:
                return
            for name, success in outcomes:
                pattern.record_outcome(name, success)
            self._store.save_pattern(pattern, token)
        except (StoreConnectivityError, OperationCancelledError) as exc:
            logger.warning(
                "Orchestrator: outcomes of %s not recorded: %s", execution.execution_id, exc
            )

    def close(self) -> None:
        self._pool.shutdown(wait=False)
        close = getattr(self._executor, "close", None)
        if close is not None:
            close()


# ===================================================================== #
#  Wiring                                                                #
# ===================================================================== #

def build_orchestrator(
    config: SageConfig | None = None,
    registry: ActionHandlerRegistry | None = None,
    backend: PatternBackend | None = None,
    llm_client: LLMClient | None = None,
    topology: TopologyProvider | None = None,
    metrics: MetricsCollector | None = None,
    event_bus: EventBus | None = None,
    approval_gate: ApprovalGate | None = None,
    connect: bool = True,
) -> Orchestrator:
    """Wire a complete :class:`Orchestrator` from *config*.

    Without a *backend* patterns live in memory.  When *llm_client* is not
    given and ``config.llm.enabled`` is set, an OpenAI-compatible client for
    ``config.llm.base_url`` is created.  A store that cannot connect is
    logged and left DISCONNECTED: reads then degrade and writes are dropped.
    """
    config = config or SageConfig()
    config.validate()
    registry = registry or ActionHandlerRegistry()
    metrics = metrics or MetricsCollector(config.metrics)

    store = PatternStore(
        backend if backend is not None else InMemoryPatternBackend(),
        config.store,
        event_bus=event_bus,
    )
    if connect:
        try:
            store.connect()
        except StoreConnectivityError as exc:
            logger.warning("build_orchestrator: pattern store unavailable: %s", exc)

    if llm_client is None and config.llm.enabled:
        from runtime_error_sage.infrastructure.llm.openapi import OpenAICompatibleClient

        llm_client = OpenAICompatibleClient(
            base_url=config.llm.base_url,
            model=config.llm.model,
            api_key=config.llm.api_key or None,
            temperature=config.llm.temperature,
            max_tokens=config.llm.max_tokens,
        )
    llm_analyzer = (
        LLMErrorAnalyzer(llm_client, config.llm.timeout, registry.list_actions())
        if llm_client is not None else None
    )

    validator = RemediationValidator(config.validator, metrics, registry)
    rollback = RollbackManager(registry, event_bus, config.executor.action_timeout)
    return Orchestrator(
        graph_builder=GraphBuilder(config.graph, metrics, topology, event_bus),
        graph_analyzer=GraphAnalyzer(config.graph, metrics),
        classifier=ErrorClassifier(store, config.classifier),
        risk_service=RiskAssessmentService(store, config.risk, registry, event_bus),
        validator=validator,
        executor=RemediationExecutor(
            registry, rollback, validator, metrics, config.executor, event_bus
        ),
        planner=RemediationPlanner(registry, store, config.pipeline.strategies),
        store=store,
        llm_analyzer=llm_analyzer,
        metrics=metrics,
        event_bus=event_bus,
        config=config.pipeline,
        approval_gate=approval_gate,
    )
