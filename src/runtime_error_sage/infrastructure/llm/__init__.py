"""Language-model integration layer.

The pipeline needs exactly one thing from a language model: turn a prompt
describing a failure into free text, within a deadline.  Every backend
implements :class:`LLMClient` and signals failures with :class:`LLMError`
subclasses, which the analysis service turns into a degraded result.

Public API
----------
LLMClient
    Abstract base class every concrete client implements.
LLMError
    Base exception for all LLM-related failures.
OpenAICompatibleClient
    ``httpx`` client for OpenAI-style ``/chat/completions`` endpoints
    (LM Studio, Ollama, vLLM, ...).
ChatModelClient
    Adapter over any LangChain ``BaseChatModel``.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod

logger = logging.getLogger(__name__)


# =========================================================================== #
#  Exceptions                                                                  #
# =========================================================================== #

class LLMError(Exception):
    """Base exception for LLM client errors."""


class LLMConnectionError(LLMError):
    """Raised when the model endpoint cannot be reached."""


class LLMTimeoutError(LLMError):
    """Raised when an analysis call exceeds its deadline."""


class LLMRateLimitError(LLMError):
    """Raised when the endpoint keeps returning rate-limit errors."""


class LLMResponseError(LLMError):
    """Raised when the endpoint returns an unparseable or invalid response."""


# =========================================================================== #
#  Abstract client                                                             #
# =========================================================================== #

class LLMClient(ABC):
    """Prompt in, text out.

    Usage::

        client = OpenAICompatibleClient(base_url="http://localhost:1234/v1")
        text = client.analyze("Explain this NullReferenceException ...", timeout=10)
    """

    @property
    @abstractmethod
    def name(self) -> str:
        """Human-readable backend identifier."""
        ...

    @abstractmethod
    def analyze(self, prompt: str, timeout: float) -> str:
        """Return the model's answer to *prompt*.

        Raises
        ------
        LLMTimeoutError
            When no answer arrived within *timeout* seconds.
        LLMError
            On any other backend failure.
        """
        ...

    def close(self) -> None:
        """Release network resources.  The default does nothing."""


__all__ = [
    "LLMError",
    "LLMConnectionError",
    "LLMTimeoutError",
    "LLMRateLimitError",
    "LLMResponseError",
    "LLMClient",
    "OpenAICompatibleClient",
    "ChatModelClient",
]


def __getattr__(name: str):  # noqa: N807
    """Lazy-load concrete clients on attribute access."""
    _lazy_map = {
        "OpenAICompatibleClient": "runtime_error_sage.infrastructure.llm.openapi",
        "ChatModelClient": "runtime_error_sage.infrastructure.llm.chat_model",
    }

    if name in _lazy_map:
        import importlib
        module = importlib.import_module(_lazy_map[name])
        return getattr(module, name)

    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
