"""OpenAI-compatible transport implementing `GenerationProvider`.

Architectural role:
    Executes chat-completions requests against the configured endpoint and
    normalizes single-shot and streamed responses into `GenerationResult` and
    `StreamChunk` values.

Retry behavior:
    Single-shot calls retry status codes `429,500,502,503,504` and transport
    errors with exponential backoff up to `retry_attempts`. Streams are never
    retried: they are not restartable, the caller must request a new one.

Streaming:
    Server-sent `data:` lines are parsed into deltas. `[DONE]` or a
    `finish_reason` yields the terminal `finished=True` chunk. Closing the
    iterator early closes the HTTP response, which aborts generation upstream.

Failure handling model:
    Transport and HTTP errors are raised as `GenerationFailure` with sanitized,
    provider-labeled messages. Deadlines are the caller's concern.
"""

import asyncio
import json
import logging
from typing import Any, AsyncIterator

import httpx

from companion.config import ProviderSettings
from companion.errors import GenerationFailure
from companion.llm.service import (
    GenerationResult,
    Sentiment,
    StreamChunk,
    sentiment_via_generation,
)
from companion.prompting.prompt_builder import PromptSpec


logger = logging.getLogger(__name__)

RETRY_STATUS_CODES = (429, 500, 502, 503, 504)


def _sanitized_http_error(provider_name: str, status_code: int | None = None) -> str:
    label = str(provider_name or "provider").upper()
    if status_code:
        return f"{label} HTTP ERROR ({status_code})"
    return f"{label} HTTP ERROR"


def _extract_delta(data: dict[str, Any]) -> str | None:
    """Pull the text delta out of the common streaming response shapes."""
    if "choices" in data and data["choices"]:
        choice = data["choices"][0]

        if "delta" in choice and choice["delta"].get("content"):
            return choice["delta"]["content"]

        if "message" in choice and choice["message"].get("content"):
            return choice["message"]["content"]

        if choice.get("text"):
            return choice["text"]

    elif "message" in data and data["message"].get("content"):
        return data["message"]["content"]

    return None


def _finish_reason(data: dict[str, Any]) -> str | None:
    if "choices" in data and data["choices"]:
        return data["choices"][0].get("finish_reason")
    return None


class OpenAICompatibleProvider:
    """Generation provider for any OpenAI-compatible chat-completions endpoint."""

    def __init__(self, settings: ProviderSettings, transport: httpx.AsyncBaseTransport | None = None) -> None:
        self.settings = settings
        self.url = settings.url
        self.transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self.settings.timeout_seconds, transport=self.transport)

    def _headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.settings.api_key:
            headers["Authorization"] = f"Bearer {self.settings.api_key}"
        return headers

    def _payload(self, prompt: PromptSpec, max_tokens: int | None, temperature: float, stream: bool) -> dict:
        payload = {
            "model": self.settings.model_name,
            "messages": prompt.to_messages(),
            "temperature": temperature,
            "stream": stream,
        }
        if max_tokens:
            payload["max_tokens"] = max_tokens
        if stream:
            payload["stream_options"] = {"include_usage": True}
        return payload

    def _backoff(self, attempt: int) -> float:
        return self.settings.backoff_seconds * (2 ** attempt)

    async def _post_with_retry(self, payload: dict) -> dict:
        attempts = max(1, self.settings.retry_attempts)

        for attempt in range(attempts):
            try:
                async with self._client() as client:
                    response = await client.post(self.url, headers=self._headers(), json=payload)

                if response.status_code in RETRY_STATUS_CODES and attempt < attempts - 1:
                    await asyncio.sleep(self._backoff(attempt))
                    continue

                response.raise_for_status()
                return response.json()

            except httpx.HTTPStatusError as exc:
                raise GenerationFailure(
                    _sanitized_http_error(self.settings.provider, exc.response.status_code)
                ) from exc

            except httpx.RequestError as exc:
                if attempt < attempts - 1:
                    await asyncio.sleep(self._backoff(attempt))
                    continue
                raise GenerationFailure(_sanitized_http_error(self.settings.provider)) from exc

            except ValueError as exc:
                raise GenerationFailure("Provider returned invalid JSON") from exc

        raise GenerationFailure(_sanitized_http_error(self.settings.provider))

    async def generate(self, prompt: PromptSpec, max_tokens: int, temperature: float) -> GenerationResult:
        data = await self._post_with_retry(self._payload(prompt, max_tokens, temperature, stream=False))
        try:
            text = data["choices"][0]["message"]["content"]
        except (KeyError, IndexError, TypeError) as exc:
            raise GenerationFailure("Provider response has no message content") from exc

        usage = data.get("usage") or {}
        return GenerationResult(text=(text or "").strip(), tokens_used=int(usage.get("total_tokens", 0)))

    async def stream_generate(self, prompt: PromptSpec, temperature: float) -> AsyncIterator[StreamChunk]:
        payload = self._payload(prompt, prompt.max_tokens, temperature, stream=True)
        tokens_used = 0
        done = False

        try:
            async with self._client() as client:
                async with client.stream("POST", self.url, headers=self._headers(), json=payload) as response:
                    response.raise_for_status()

                    async for line in response.aiter_lines():
                        if not line:
                            continue

                        if line.startswith("data: "):
                            line = line[6:]

                        if line.strip() == "[DONE]":
                            done = True
                            break

                        try:
                            data = json.loads(line)
                        except ValueError:
                            continue

                        usage = data.get("usage") or {}
                        tokens_used = int(usage.get("total_tokens", tokens_used) or tokens_used)

                        delta = _extract_delta(data)
                        if delta:
                            yield StreamChunk(content=delta)

                        if _finish_reason(data):
                            done = True

        except httpx.HTTPStatusError as exc:
            raise GenerationFailure(
                _sanitized_http_error(self.settings.provider, exc.response.status_code)
            ) from exc
        except httpx.RequestError as exc:
            raise GenerationFailure(_sanitized_http_error(self.settings.provider)) from exc

        if not done:
            raise GenerationFailure("Provider stream closed before completion")

        yield StreamChunk(content="", finished=True, tokens_used=tokens_used)

    async def analyze_sentiment(self, text: str) -> Sentiment:
        return await sentiment_via_generation(self, text)
