"""Presentation layer: console rendering of pipeline results."""

from runtime_error_sage.presentation.console import ConsoleRenderer

__all__ = ["ConsoleRenderer"]
