"""OpenAI-compatible HTTP client for error analysis.

Uses ``httpx`` to POST to any endpoint implementing the OpenAI chat
completions format.  The default targets LM Studio on
``http://localhost:1234/v1``; Ollama, vLLM and hosted gateways work the same.
"""

from __future__ import annotations

import json
import logging
import time
from typing import Any

import httpx

from runtime_error_sage.infrastructure.llm import (
    LLMClient,
    LLMConnectionError,
    LLMError,
    LLMRateLimitError,
    LLMResponseError,
    LLMTimeoutError,
)

logger = logging.getLogger(__name__)

SYSTEM_PROMPT = (
    "You are an expert in diagnosing runtime errors in distributed services. "
    "Answer concisely and only with the requested format."
)


class OpenAICompatibleClient(LLMClient):
    """:class:`LLMClient` for ``{base_url}/chat/completions``.

    Parameters
    ----------
    base_url:
        Base URL of the API (e.g. ``"http://localhost:1234/v1"``).
    model:
        Model identifier sent with each request.
    api_key:
        Optional bearer token.
    temperature / max_tokens:
        Sampling parameters.
    max_retries:
        Retries on HTTP 429 before giving up.
    base_retry_delay:
        Base delay for exponential backoff on 429.
    system_prompt:
        System message prepended to every request.
    http_client:
        Pre-built ``httpx.Client`` (tests pass one with a ``MockTransport``).
    """

    def __init__(
        self,
        base_url: str = "http://localhost:1234/v1",
        model: str = "local-model",
        api_key: str | None = None,
        temperature: float = 0.2,
        max_tokens: int = 1024,
        max_retries: int = 2,
        base_retry_delay: float = 1.0,
        system_prompt: str = SYSTEM_PROMPT,
        http_client: httpx.Client | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._model = model
        self._temperature = temperature
        self._max_tokens = max_tokens
        self._max_retries = max_retries
        self._base_retry_delay = base_retry_delay
        self._system_prompt = system_prompt

        headers: dict[str, str] = {"Content-Type": "application/json"}
        if api_key:
            headers["Authorization"] = f"Bearer {api_key}"
        self._client = http_client if http_client is not None else httpx.Client(headers=headers)

    @property
    def name(self) -> str:
        return "openapi"

    @property
    def endpoint_url(self) -> str:
        return f"{self._base_url}/chat/completions"

    def analyze(self, prompt: str, timeout: float) -> str:
        """POST *prompt* and return the first choice's content."""
        payload = self._build_payload(prompt)
        deadline = time.monotonic() + timeout
        last_error: Exception | None = None

        for attempt in range(self._max_retries + 1):
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise LLMTimeoutError(f"No answer from {self.endpoint_url} within {timeout}s")
            try:
                response = self._client.post(
                    self.endpoint_url,
                    json=payload,
                    timeout=httpx.Timeout(remaining),
                )
            except httpx.TimeoutException as exc:
                raise LLMTimeoutError(
                    f"Request to {self.endpoint_url} timed out: {exc}"
                ) from exc
            except httpx.TransportError as exc:
                raise LLMConnectionError(
                    f"Failed to connect to {self.endpoint_url}: {exc}"
                ) from exc

            if response.status_code == 429:
                last_error = LLMRateLimitError(f"Rate limited (HTTP 429): {response.text}")
                delay = min(self._base_retry_delay * (2 ** attempt), max(0.0, remaining))
                logger.warning(
                    "OpenAICompatibleClient: rate limited (attempt %d/%d), retrying in %.1fs",
                    attempt + 1,
                    self._max_retries + 1,
                    delay,
                )
                if attempt < self._max_retries:
                    time.sleep(delay)
                continue

            if response.status_code >= 500:
                raise LLMConnectionError(
                    f"Server error (HTTP {response.status_code}): {response.text}"
                )
            if response.status_code >= 400:
                raise LLMResponseError(
                    f"Client error (HTTP {response.status_code}): {response.text}"
                )

            try:
                data = response.json()
            except json.JSONDecodeError as exc:
                raise LLMResponseError(
                    f"Invalid JSON response from {self.endpoint_url}: {exc}"
                ) from exc
            return self._parse_response(data)

        raise LLMRateLimitError(
            f"Rate limit exceeded after {self._max_retries + 1} attempts: {last_error}"
        )

    def close(self) -> None:
        self._client.close()

    # -- internal helpers -----------------------------------------------------

    def _build_payload(self, prompt: str) -> dict[str, Any]:
        messages: list[dict[str, str]] = []
        if self._system_prompt:
            messages.append({"role": "system", "content": self._system_prompt})
        messages.append({"role": "user", "content": prompt})
        return {
            "model": self._model,
            "messages": messages,
            "max_tokens": self._max_tokens,
            "temperature": self._temperature,
        }

    def _parse_response(self, data: Any) -> str:
        if not isinstance(data, dict):
            raise LLMResponseError(f"Unexpected response body: {data!r}")
        choices = data.get("choices") or []
        if not choices:
            raise LLMResponseError(f"Response contains no choices: {data}")
        try:
            text = choices[0].get("message", {}).get("content", "") or ""
        except AttributeError as exc:
            raise LLMError(f"Failed to parse response: {exc}") from exc
        if not text.strip():
            raise LLMResponseError("Response content is empty")
        return text

    def __repr__(self) -> str:
        return f"OpenAICompatibleClient(base_url={self._base_url!r}, model={self._model!r})"
