"""Command-line interface for Runtime Error Sage.

Provides subcommands for analyzing and remediating a captured error
context, checking a context for sanity, and inspecting the pattern store.

Entry point
-----------
The ``main()`` function is registered as a console script in
``pyproject.toml``::

    [project.scripts]
    runtime-error-sage = "runtime_error_sage.cli:main"

Usage examples::

    runtime-error-sage analyze --context error.json --store patterns.json
    runtime-error-sage remediate --context error.json --handlers ops.handlers:registry --approve
    runtime-error-sage validate --context error.json
    runtime-error-sage --store redis://localhost:6379/0 patterns list --service orders
    runtime-error-sage info

``--store`` takes either a ``redis://`` URL or the path of a JSON file in
which patterns are kept between invocations (created on first write).
"""

from __future__ import annotations

import argparse
import importlib
import logging
import sys
from pathlib import Path
from typing import Any


def _build_parser() -> argparse.ArgumentParser:
    """Build the top-level argument parser with subcommands."""
    parser = argparse.ArgumentParser(
        prog="runtime-error-sage",
        description=(
            "Runtime Error Sage -- analyze runtime errors against their "
            "dependency topology and run risk-gated remediation."
        ),
    )
    parser.add_argument(
        "--version",
        action="store_true",
        default=False,
        help="Show version and exit.",
    )
    parser.add_argument(
        "--config",
        type=str,
        default=None,
        help="Path to a JSON configuration document.",
    )
    parser.add_argument(
        "--store",
        type=str,
        default=None,
        help="Pattern store: a redis:// URL or a JSON file path. (default: in-memory)",
    )
    parser.add_argument(
        "--no-llm",
        action="store_true",
        default=False,
        help="Disable language-model analysis.",
    )
    parser.add_argument(
        "-v", "--verbose",
        action="count",
        default=0,
        help="Increase log verbosity (-v info, -vv debug).",
    )

    subparsers = parser.add_subparsers(dest="command", help="Available subcommands")

    # -- analyze -----------------------------------------------------------
    analyze_parser = subparsers.add_parser(
        "analyze",
        help="Analyze an error context.",
        description="Build the dependency graph, classify the error and locate its root cause.",
    )
    _add_context_args(analyze_parser)

    # -- remediate ---------------------------------------------------------
    remediate_parser = subparsers.add_parser(
        "remediate",
        help="Analyze and remediate an error context.",
        description="Plan, assess, validate and execute a remediation for an error context.",
    )
    _add_context_args(remediate_parser)
    remediate_parser.add_argument(
        "--handlers",
        type=str,
        default=None,
        help=(
            "Action handlers as 'module:attribute', naming either an "
            "ActionHandlerRegistry or a callable that registers handlers on one."
        ),
    )
    remediate_parser.add_argument(
        "--approve",
        action="store_true",
        default=False,
        help="Approve plans that require approval.",
    )

    # -- validate ----------------------------------------------------------
    validate_parser = subparsers.add_parser(
        "validate",
        help="Check an error context for sanity.",
        description="Validate an error context without analyzing it.",
    )
    validate_parser.add_argument(
        "--context", type=str, required=True, help="Error context JSON file or text."
    )

    # -- patterns ----------------------------------------------------------
    patterns_parser = subparsers.add_parser(
        "patterns",
        help="Inspect and maintain stored error patterns.",
        description="List, show, delete or purge stored error patterns.",
    )
    patterns_sub = patterns_parser.add_subparsers(dest="patterns_command")
    list_parser = patterns_sub.add_parser("list", help="List patterns.")
    list_parser.add_argument("--service", type=str, default=None, help="Only this service.")
    list_parser.add_argument("--tag", type=str, default=None, help="Only patterns with this tag.")
    show_parser = patterns_sub.add_parser("show", help="Show one pattern.")
    show_parser.add_argument("pattern_id", type=str)
    show_parser.add_argument("--service", type=str, default=None)
    delete_parser = patterns_sub.add_parser("delete", help="Delete one pattern.")
    delete_parser.add_argument("pattern_id", type=str)
    delete_parser.add_argument("--service", type=str, default=None)
    patterns_sub.add_parser("purge", help="Delete patterns past the retention period.")

    # -- info --------------------------------------------------------------
    subparsers.add_parser(
        "info",
        help="Show version, configuration and dependency status.",
        description="Display version, effective configuration and optional dependency status.",
    )

    return parser


def _add_context_args(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--context", type=str, required=True, help="Error context JSON file or text."
    )
    parser.add_argument(
        "--format",
        type=str,
        default="table",
        choices=["table", "json"],
        help="Output format. (default: table)",
    )
    parser.add_argument(
        "--output",
        type=str,
        default=None,
        help="Also write the JSON result to this file.",
    )
    parser.add_argument(
        "--events",
        action="store_true",
        default=False,
        help="Include the event trail of this run in the output.",
    )


# =========================================================================
# Wiring helpers
# =========================================================================

def _load_config(args: argparse.Namespace) -> Any:
    from dataclasses import replace

    from runtime_error_sage.infrastructure.config import SageConfig, load_sage_config

    if args.config is not None:
        config = load_sage_config(Path(args.config).read_text(encoding="utf-8"))
    else:
        config = SageConfig()
    if args.no_llm:
        config = replace(config, llm=replace(config.llm, enabled=False))
    return config


def _open_backend(spec: str | None) -> Any:
    from runtime_error_sage.infrastructure.backends import InMemoryPatternBackend

    if spec is None:
        return InMemoryPatternBackend()
    if spec.startswith(("redis://", "rediss://", "unix://")):
        from runtime_error_sage.infrastructure.redis_backend import RedisPatternBackend

        return RedisPatternBackend(url=spec)
    return InMemoryPatternBackend.load(spec)


def _save_backend(spec: str | None, backend: Any) -> None:
    from runtime_error_sage.infrastructure.backends import InMemoryPatternBackend

    if spec is not None and isinstance(backend, InMemoryPatternBackend):
        backend.save(spec)


def _load_registry(spec: str | None) -> Any:
    from runtime_error_sage.infrastructure.registry import ActionHandlerRegistry

    registry = ActionHandlerRegistry()
    if spec is None:
        return registry
    module_name, _, attr = spec.partition(":")
    if not module_name or not attr:
        raise ValueError(f"--handlers must look like 'module:attribute', got {spec!r}")
    target = getattr(importlib.import_module(module_name), attr)
    if isinstance(target, ActionHandlerRegistry):
        return target
    if callable(target):
        target(registry)
        return registry
    raise ValueError(f"{spec} is neither an ActionHandlerRegistry nor a callable")


def _open_store(args: argparse.Namespace) -> tuple[Any, Any]:
    from runtime_error_sage.infrastructure.pattern_store import PatternStore

    config = _load_config(args)
    backend = _open_backend(args.store)
    store = PatternStore(backend, config.store)
    store.connect()
    return store, backend


def _event_journal(args: argparse.Namespace) -> tuple[Any, Any]:
    """Bus for the orchestrator and, with ``--events``, a journal attached to it."""
    from runtime_error_sage.infrastructure.event_bus import EventBus, EventStore

    bus = EventBus()
    return bus, (EventStore().attach(bus) if args.events else None)


def _emit(
    args: argparse.Namespace,
    data: dict[str, Any],
    render: Any,
    journal: Any = None,
) -> None:
    from runtime_error_sage.infrastructure.serialization import events_to_list, to_json
    from runtime_error_sage.presentation.console import ConsoleRenderer

    trail = journal.trail(data["correlation_id"]) if journal is not None else None
    if trail is not None:
        data = {**data, "events": events_to_list(trail)}
    if args.format == "json":
        print(to_json(data))
    else:
        render()
        if trail is not None:
            ConsoleRenderer().print_events(trail)
    if args.output is not None:
        Path(args.output).write_text(to_json(data), encoding="utf-8")


# =========================================================================
# Subcommand handlers
# =========================================================================

def _cmd_analyze(args: argparse.Namespace) -> int:
    """Handle the ``analyze`` subcommand."""
    from runtime_error_sage.infrastructure.serialization import analysis_to_dict, load_context
    from runtime_error_sage.presentation.console import ConsoleRenderer
    from runtime_error_sage.services.orchestrator import build_orchestrator

    context = load_context(args.context)
    backend = _open_backend(args.store)
    bus, journal = _event_journal(args)
    orchestrator = build_orchestrator(_load_config(args), backend=backend, event_bus=bus)
    try:
        result = orchestrator.analyze_error(context)
    finally:
        orchestrator.close()
    _save_backend(args.store, backend)

    _emit(
        args,
        analysis_to_dict(result),
        lambda: ConsoleRenderer().print_analysis(result),
        journal,
    )
    return 0 if result.ok else 2


def _cmd_remediate(args: argparse.Namespace) -> int:
    """Handle the ``remediate`` subcommand."""
    from runtime_error_sage.infrastructure.serialization import load_context, remediation_to_dict
    from runtime_error_sage.presentation.console import ConsoleRenderer
    from runtime_error_sage.services.orchestrator import build_orchestrator

    context = load_context(args.context)
    registry = _load_registry(args.handlers)
    backend = _open_backend(args.store)
    gate = (lambda plan, validation, token: True) if args.approve else None
    bus, journal = _event_journal(args)
    orchestrator = build_orchestrator(
        _load_config(args),
        registry=registry,
        backend=backend,
        event_bus=bus,
        approval_gate=gate,
    )
    try:
        result = orchestrator.remediate_error(context)
    finally:
        orchestrator.close()
    _save_backend(args.store, backend)

    _emit(
        args,
        remediation_to_dict(result),
        lambda: ConsoleRenderer().print_remediation(result),
        journal,
    )
    return 0 if result.ok else 2


def _cmd_validate(args: argparse.Namespace) -> int:
    """Handle the ``validate`` subcommand."""
    from runtime_error_sage.infrastructure.serialization import load_context
    from runtime_error_sage.presentation.console import ConsoleRenderer
    from runtime_error_sage.services.validation import RemediationValidator

    config = _load_config(args)
    result = RemediationValidator(config.validator).validate_context(load_context(args.context))
    ConsoleRenderer().print_validation(result)
    return 0 if result.is_valid else 2


def _cmd_patterns(args: argparse.Namespace) -> int:
    """Handle the ``patterns`` subcommand."""
    from runtime_error_sage.presentation.console import ConsoleRenderer

    if args.patterns_command is None:
        print("Error: choose one of list, show, delete, purge", file=sys.stderr)
        return 1

    store, backend = _open_store(args)
    renderer = ConsoleRenderer()
    try:
        if args.patterns_command == "list":
            if args.service:
                patterns = store.get_patterns_by_service(args.service)
            elif args.tag:
                patterns = store.get_patterns_by_tag(args.tag)
            else:
                patterns = store.get_all_patterns()
            if args.service and args.tag:
                patterns = [p for p in patterns if args.tag.lower() in {t.lower() for t in p.tags}]
            renderer.print_patterns(patterns)
            return 0

        if args.patterns_command == "show":
            pattern = store.get_pattern(args.pattern_id, args.service)
            if pattern is None:
                print(f"Error: pattern not found: {args.pattern_id}", file=sys.stderr)
                return 1
            renderer.print_pattern(pattern)
            return 0

        if args.patterns_command == "delete":
            if not store.delete_pattern(args.pattern_id, args.service):
                print(f"Error: pattern not found: {args.pattern_id}", file=sys.stderr)
                return 1
            print(f"Deleted {args.pattern_id}")
        else:
            removed = store.purge_expired()
            print(f"Purged {removed} expired pattern(s)")
        _save_backend(args.store, backend)
        return 0
    finally:
        store.disconnect()


def _cmd_info(args: argparse.Namespace) -> int:
    """Handle the ``info`` subcommand."""
    from runtime_error_sage import __version__
    from runtime_error_sage.infrastructure.serialization import to_json

    print(f"Runtime Error Sage v{__version__}")
    print()

    optional_deps = {
        "numpy": "Numerical computation (required)",
        "pydantic": "Language-model output schemas (required)",
        "langchain_core": "Chat-model adapter and prompt templates (required)",
        "httpx": "OpenAI-compatible HTTP client (required)",
        "rich": "Console rendering (required)",
        "redis": "Redis pattern backend",
    }

    print("Dependencies:")
    for pkg, desc in optional_deps.items():
        try:
            mod = importlib.import_module(pkg)
            version = getattr(mod, "__version__", "unknown")
            print(f"  [installed] {pkg} {version} -- {desc}")
        except ImportError:
            print(f"  [missing]   {pkg} -- {desc}")
    print()

    print("Configuration:")
    print(to_json(_load_config(args).to_dict()))
    return 0


# =========================================================================
# Main entry point
# =========================================================================

def main(argv: list[str] | None = None) -> None:
    """CLI entry point.

    Parameters
    ----------
    argv:
        Command-line arguments.  Defaults to ``sys.argv[1:]``.
    """
    parser = _build_parser()
    args = parser.parse_args(argv)

    if args.version:
        from runtime_error_sage import __version__
        print(f"runtime-error-sage {__version__}")
        sys.exit(0)

    if args.command is None:
        parser.print_help()
        sys.exit(0)

    logging.basicConfig(
        level={0: logging.WARNING, 1: logging.INFO}.get(args.verbose, logging.DEBUG),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    handlers: dict[str, Any] = {
        "analyze": _cmd_analyze,
        "remediate": _cmd_remediate,
        "validate": _cmd_validate,
        "patterns": _cmd_patterns,
        "info": _cmd_info,
    }

    handler = handlers.get(args.command)
    if handler is None:
        parser.print_help()
        sys.exit(1)

    try:
        exit_code = handler(args)
    except KeyboardInterrupt:
        print("\nInterrupted.", file=sys.stderr)
        exit_code = 130
    except Exception as exc:
        print(f"Error: {exc}", file=sys.stderr)
        exit_code = 1

    sys.exit(exit_code)
