"""Public testing utilities for Runtime Error Sage.

Provides mock language models for writing self-contained examples and
tests without a model endpoint.
"""

from runtime_error_sage.testing.mock_llm import MockChatModel, StaticLLMClient

__all__ = ["MockChatModel", "StaticLLMClient"]
