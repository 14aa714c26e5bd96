"""Rich-based console rendering of pipeline results.

:class:`ConsoleRenderer` prints analysis results, remediation results and
stored patterns as ``rich`` tables.  Output goes to any text stream, which
keeps the CLI testable with ``io.StringIO``.
"""

from __future__ import annotations

import sys
from collections.abc import Sequence
from typing import Any

from rich.console import Console
from rich.markup import escape
from rich.table import Table

from runtime_error_sage.domain.entities import ErrorPattern
from runtime_error_sage.domain.enums import ImpactSeverity, RemediationStatus, RiskLevel
from runtime_error_sage.domain.events import DomainEvent
from runtime_error_sage.domain.results import (
    AnalysisResult,
    ContextValidationResult,
    RemediationResult,
)

_SEVERITY_COLOURS = {
    ImpactSeverity.LOW: "green",
    ImpactSeverity.MEDIUM: "yellow",
    ImpactSeverity.HIGH: "orange3",
    ImpactSeverity.CRITICAL: "red",
}

_RISK_COLOURS = {
    RiskLevel.NONE: "dim",
    RiskLevel.LOW: "green",
    RiskLevel.MEDIUM: "yellow",
    RiskLevel.HIGH: "orange3",
    RiskLevel.CRITICAL: "red",
}

_STATUS_COLOURS = {
    RemediationStatus.COMPLETED: "green",
    RemediationStatus.FAILED: "red",
    RemediationStatus.CANCELLED: "orange3",
    RemediationStatus.SKIPPED: "dim",
}


def _coloured(text: str, colour: str) -> str:
    return f"[{colour}]{escape(text)}[/{colour}]"


class ConsoleRenderer:
    """Console presentation of pipeline results.

    Parameters
    ----------
    file:
        Output stream.  Defaults to ``sys.stdout``.
    width:
        Fixed console width; ``None`` lets ``rich`` detect it.
    """

    def __init__(self, file: Any = None, width: int | None = None) -> None:
        self._file = file or sys.stdout
        self._console = Console(file=self._file, width=width, highlight=False)

    @property
    def console(self) -> Console:
        return self._console

    # -- analysis ----------------------------------------------------------

    def print_analysis(self, result: AnalysisResult) -> None:
        c = self._console
        c.print()
        c.print(f"[bold]Analysis[/bold] {result.correlation_id}")
        if result.error is not None:
            c.print(_coloured(f"  {result.error.kind.value}: {result.error.message}", "red"))
            c.print()
            return

        cls = result.classification
        if cls is not None:
            c.print(
                f"  category: [bold]{cls.category}[/bold]  "
                f"confidence: {cls.confidence:.2f}"
                + (f"  pattern: {cls.pattern_id}" if cls.pattern_id else "")
            )
        if result.root_cause is not None:
            rc = result.root_cause
            c.print(f"  root cause: [bold]{rc.node_id}[/bold] ({rc.confidence:.2f})")
        if result.degraded:
            c.print(_coloured("  language model unavailable; pattern-only classification", "yellow"))
        if result.llm_analysis:
            c.print(f"  [dim]analysis:[/dim] {escape(result.llm_analysis)}")

        if result.impact is not None and result.impact.impacts:
            table = Table(title="Impact", show_header=True, header_style="bold cyan")
            table.add_column("Component", style="bold")
            table.add_column("Severity", justify="center")
            table.add_column("Scope", justify="center")
            table.add_column("Distance", justify="right")
            table.add_column("Score", justify="right")
            for r in result.impact.impacts:
                colour = _SEVERITY_COLOURS[r.severity]
                table.add_row(
                    r.node_id,
                    _coloured(r.severity.value, colour),
                    r.scope.value,
                    str(r.distance),
                    f"{r.score:.3f}",
                )
            c.print(table)

        if result.suggested_actions:
            c.print(f"  suggested actions: {', '.join(result.suggested_actions)}")
        c.print()

    # -- remediation -------------------------------------------------------

    def print_remediation(self, result: RemediationResult) -> None:
        c = self._console
        if result.analysis is not None:
            self.print_analysis(result.analysis)

        if result.assessments and result.plan is not None:
            table = Table(title="Plan", show_header=True, header_style="bold cyan")
            table.add_column("Action", style="bold")
            table.add_column("Target")
            table.add_column("Risk", justify="center")
            table.add_column("Blast radius", justify="right")
            table.add_column("Status", justify="center")
            by_id = {a.action_id: a for a in result.assessments}
            for action in result.plan.actions:
                assessment = by_id.get(action.action_id)
                risk = "-" if assessment is None else _coloured(
                    assessment.risk_level.value, _RISK_COLOURS[assessment.risk_level]
                )
                blast = "-" if assessment is None else f"{assessment.blast_radius:.0%}"
                status = "-"
                if result.execution is not None:
                    st = result.execution.get(action.action_id).status
                    status = _coloured(st.value, _STATUS_COLOURS.get(st, "white"))
                table.add_row(action.name, action.target_component, risk, blast, status)
            c.print(table)

        if result.execution is not None:
            ex = result.execution
            c.print(
                f"  execution {ex.execution_id}: "
                + _coloured(ex.status.value, _STATUS_COLOURS.get(ex.status, "white"))
                + f" ({ex.metrics.completed_steps}/{ex.metrics.total_steps} completed, "
                f"{ex.metrics.total_retries} retries)"
            )
            if ex.rollback is not None:
                c.print(f"  rollback: {ex.rollback.status.value}")
                for err in ex.rollback.errors:
                    c.print(_coloured(f"    {err}", "red"))
        if result.error is not None and (result.analysis is None or result.analysis.ok):
            c.print(_coloured(f"  {result.error.kind.value}: {result.error.message}", "red"))
        c.print()

    # -- event trail -------------------------------------------------------

    def print_events(self, events: Sequence[DomainEvent]) -> None:
        if not events:
            self._console.print("[dim]no events[/dim]")
            return
        start = events[0].timestamp
        table = Table(title="Event trail", show_header=True, header_style="bold cyan")
        table.add_column("+s", justify="right")
        table.add_column("Event", style="bold")
        table.add_column("Details")
        for event in events:
            details = {
                k: getattr(v, "value", v)
                for k, v in vars(event).items()
                if k not in ("timestamp", "source_id", "correlation_id") and v not in ("", None)
            }
            table.add_row(
                f"{event.timestamp - start:.3f}",
                type(event).__name__,
                escape(" ".join(f"{k}={v}" for k, v in details.items())),
            )
        self._console.print(table)

    # -- validation --------------------------------------------------------

    def print_validation(self, result: ContextValidationResult) -> None:
        c = self._console
        c.print(_coloured("valid", "green") if result.is_valid else _coloured("invalid", "red"))
        for issue in result.issues:
            c.print(escape(f"  [{issue.severity.value}] {issue.code}: {issue.message}"))

    # -- patterns ----------------------------------------------------------

    def print_patterns(self, patterns: Sequence[ErrorPattern]) -> None:
        if not patterns:
            self._console.print("[dim]no patterns[/dim]")
            return
        table = Table(title="Error patterns", show_header=True, header_style="bold cyan")
        table.add_column("Service", style="bold")
        table.add_column("Pattern")
        table.add_column("Error type")
        table.add_column("Category")
        table.add_column("Seen", justify="right")
        table.add_column("Actions")
        for p in sorted(patterns, key=lambda p: (p.service_name, -p.occurrence_count, p.pattern_id)):
            table.add_row(
                p.service_name,
                p.pattern_id,
                p.error_type,
                p.category or "-",
                str(p.occurrence_count),
                ", ".join(p.known_actions) or "-",
            )
        self._console.print(table)

    def print_pattern(self, pattern: ErrorPattern) -> None:
        c = self._console
        c.print(f"[bold]{pattern.service_name}:{pattern.pattern_id}[/bold]")
        c.print(f"  error type: {pattern.error_type}")
        c.print(f"  category: {pattern.category or '-'}")
        c.print(f"  component: {pattern.component_id or '-'}")
        c.print(f"  tags: {', '.join(pattern.tags) or '-'}")
        c.print(f"  occurrences: {pattern.occurrence_count}")
        c.print(f"  active: {pattern.is_active}")
        for name in pattern.known_actions:
            rate = pattern.success_rate(name)
            c.print(
                f"  action {name}: "
                + ("untried" if rate is None else f"{rate:.0%} of {pattern.outcome_count(name)}")
            )
