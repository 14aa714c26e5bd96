"""Mock language models for testing and examples.

Provides a ``MockChatModel`` that answers with pre-configured responses and
a ``StaticLLMClient`` that plugs straight into :class:`LLMErrorAnalyzer`,
so that the analysis pipeline can be exercised without an endpoint.
"""

from __future__ import annotations

import threading
import time
from collections.abc import Sequence
from typing import Any

from langchain_core.callbacks import CallbackManagerForLLMRun
from langchain_core.language_models import BaseChatModel
from langchain_core.messages import AIMessage, BaseMessage
from langchain_core.outputs import ChatGeneration, ChatResult
from pydantic import BaseModel, ConfigDict

from runtime_error_sage.infrastructure.llm import LLMClient, LLMTimeoutError


def _as_text(resp: Any) -> str:
    return resp.model_dump_json() if isinstance(resp, BaseModel) else str(resp)


class MockChatModel(BaseChatModel):
    """A mock chat model that replays responses.

    Usage::

        model = MockChatModel(responses=[ErrorAnalysisOutput(...), "plain text"])
        client = ChatModelClient(model)
        # Each call returns the next response in order, cycling at the end.
    """

    model_config = ConfigDict(arbitrary_types_allowed=True)

    responses: list[Any] = []
    delay: float = 0.0
    _call_index: int = 0

    @property
    def _llm_type(self) -> str:
        return "mock-chat"

    def _generate(
        self,
        messages: list[BaseMessage],
        stop: list[str] | None = None,
        run_manager: CallbackManagerForLLMRun | None = None,
        **kwargs: Any,
    ) -> ChatResult:
        if self.delay:
            time.sleep(self.delay)
        idx = self._call_index % len(self.responses) if self.responses else 0
        resp = self.responses[idx] if self.responses else ""
        self._call_index += 1
        return ChatResult(
            generations=[ChatGeneration(message=AIMessage(content=_as_text(resp)))]
        )


class StaticLLMClient(LLMClient):
    """An :class:`LLMClient` that replays responses and records prompts.

    Each response may be a string, a Pydantic model (sent as JSON) or an
    exception instance, which is raised instead of answering.  A response
    list is cycled once exhausted.

    Parameters
    ----------
    responses:
        Answers in call order.
    delay:
        Seconds to wait before answering.  When it exceeds the call's
        timeout, :class:`LLMTimeoutError` is raised.
    """

    def __init__(self, responses: Sequence[Any] = ("",), delay: float = 0.0) -> None:
        self._responses = list(responses) or [""]
        self._delay = delay
        self._lock = threading.Lock()
        self.prompts: list[str] = []

    @property
    def name(self) -> str:
        return "static"

    @property
    def call_count(self) -> int:
        with self._lock:
            return len(self.prompts)

    def analyze(self, prompt: str, timeout: float) -> str:
        with self._lock:
            resp = self._responses[len(self.prompts) % len(self._responses)]
            self.prompts.append(prompt)
        if self._delay:
            if self._delay > timeout:
                time.sleep(timeout)
                raise LLMTimeoutError(f"static client gave no answer within {timeout}s")
            time.sleep(self._delay)
        if isinstance(resp, BaseException):
            raise resp
        return _as_text(resp)
