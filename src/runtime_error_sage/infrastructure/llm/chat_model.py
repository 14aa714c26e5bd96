"""Adapter from a LangChain ``BaseChatModel`` to :class:`LLMClient`.

Lets any LangChain chat model (hosted or local, or the mock model used in
tests) drive error analysis.  The prompt is rendered through a
``ChatPromptTemplate`` and the call runs on a worker thread so that the
deadline can be enforced even when the model itself has no timeout.

Example
-------
::

    from langchain_openai import ChatOpenAI
    client = ChatModelClient(ChatOpenAI(base_url="http://localhost:1234/v1"))
    text = client.analyze(prompt, timeout=20)
"""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from typing import Any

from langchain_core.language_models import BaseChatModel
from langchain_core.prompts import ChatPromptTemplate

from runtime_error_sage.infrastructure.llm import LLMClient, LLMError, LLMTimeoutError
from runtime_error_sage.infrastructure.llm.openapi import SYSTEM_PROMPT

logger = logging.getLogger(__name__)

_PROMPT = ChatPromptTemplate.from_messages([
    ("system", "{system}"),
    ("human", "{prompt}"),
])


class ChatModelClient(LLMClient):
    """Runs prompts through a LangChain chat model with a deadline.

    Parameters
    ----------
    model:
        Any ``BaseChatModel``.
    system_prompt:
        System message sent with each prompt.
    max_workers:
        Threads available for concurrent calls.
    """

    def __init__(
        self,
        model: BaseChatModel,
        system_prompt: str = SYSTEM_PROMPT,
        max_workers: int = 2,
    ) -> None:
        self._model = model
        self._system_prompt = system_prompt
        self._chain = _PROMPT | model
        self._pool = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="llm")

    @property
    def name(self) -> str:
        return f"langchain-{getattr(self._model, '_llm_type', 'chat')}"

    def analyze(self, prompt: str, timeout: float) -> str:
        future = self._pool.submit(
            self._chain.invoke, {"system": self._system_prompt, "prompt": prompt}
        )
        try:
            message = future.result(timeout=timeout)
        except FutureTimeout:
            future.cancel()
            raise LLMTimeoutError(f"{self.name} gave no answer within {timeout}s") from None
        except Exception as exc:
            raise LLMError(f"{self.name} failed: {exc}") from exc
        return _content_text(message)

    def close(self) -> None:
        self._pool.shutdown(wait=False, cancel_futures=True)


def _content_text(message: Any) -> str:
    content = getattr(message, "content", message)
    if isinstance(content, list):
        # multi-part content: keep the text parts
        parts = [p.get("text", "") if isinstance(p, dict) else str(p) for p in content]
        content = "".join(parts)
    return str(content)
