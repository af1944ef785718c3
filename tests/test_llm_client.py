"""
OpenAI-compatible transport and model-output parsing helpers.
"""

import json

import httpx
import pytest

from companion.config import ProviderSettings
from companion.errors import GenerationFailure
from companion.llm.client import OpenAICompatibleProvider
from companion.llm.service import NEUTRAL_SENTIMENT, parse_sentiment, parse_suggestions
from companion.prompting.prompt_builder import PromptSpec


PROMPT = PromptSpec(system="You are Nova, the user's personal companion.", messages=({"role": "user", "content": "hi"},))


def make_provider(handler, **overrides):
    settings = ProviderSettings(provider="openai", api_key="sk-test", retry_attempts=2, backoff_seconds=0.0, **overrides)
    return OpenAICompatibleProvider(settings, transport=httpx.MockTransport(handler))


def sse(*payloads):
    lines = []
    for payload in payloads:
        data = payload if isinstance(payload, str) else json.dumps(payload)
        lines.append(f"data: {data}\n\n")
    return "".join(lines).encode("utf-8")


def delta(text, finish_reason=None):
    return {"choices": [{"delta": {"content": text}, "finish_reason": finish_reason}]}


@pytest.mark.asyncio
async def test_generate_returns_text_and_usage():
    seen = []

    def handler(request):
        seen.append(request)
        return httpx.Response(
            200,
            json={"choices": [{"message": {"content": " Hello! "}}], "usage": {"total_tokens": 7}},
        )

    result = await make_provider(handler).generate(PROMPT, 50, 0.5)

    assert result.text == "Hello!"
    assert result.tokens_used == 7
    body = json.loads(seen[0].content)
    assert body["messages"][0]["role"] == "system"
    assert body["max_tokens"] == 50
    assert seen[0].headers["Authorization"] == "Bearer sk-test"


@pytest.mark.asyncio
async def test_generate_retries_transient_status():
    calls = []

    def handler(request):
        calls.append(request)
        if len(calls) == 1:
            return httpx.Response(503)
        return httpx.Response(200, json={"choices": [{"message": {"content": "ok"}}]})

    result = await make_provider(handler).generate(PROMPT, 50, 0.5)

    assert result.text == "ok"
    assert len(calls) == 2


@pytest.mark.asyncio
async def test_generate_client_error_is_sanitized():
    def handler(request):
        return httpx.Response(401, json={"error": "bad key sk-test"})

    with pytest.raises(GenerationFailure) as info:
        await make_provider(handler).generate(PROMPT, 50, 0.5)

    assert info.value.message == "OPENAI HTTP ERROR (401)"


@pytest.mark.asyncio
async def test_generate_transport_error_after_retries():
    def handler(request):
        raise httpx.ConnectError("refused", request=request)

    with pytest.raises(GenerationFailure):
        await make_provider(handler).generate(PROMPT, 50, 0.5)


@pytest.mark.asyncio
async def test_stream_yields_deltas_then_finished_chunk():
    def handler(request):
        assert json.loads(request.content)["stream"] is True
        body = sse(delta("Hel"), delta("lo", "stop"), {"choices": [], "usage": {"total_tokens": 9}}, "[DONE]")
        return httpx.Response(200, content=body, headers={"content-type": "text/event-stream"})

    chunks = [c async for c in make_provider(handler).stream_generate(PROMPT, 0.5)]

    assert [c.content for c in chunks] == ["Hel", "lo", ""]
    assert chunks[-1].finished is True
    assert chunks[-1].tokens_used == 9


@pytest.mark.asyncio
async def test_stream_closed_early_is_a_failure():
    def handler(request):
        return httpx.Response(200, content=sse(delta("Hel")), headers={"content-type": "text/event-stream"})

    with pytest.raises(GenerationFailure):
        _ = [c async for c in make_provider(handler).stream_generate(PROMPT, 0.5)]


def test_sentiment_parsing_accepts_fenced_json_and_clamps():
    raw = '```json\n{"sentiment": "Negative", "intensity": 3, "emotions": ["Sad", "tired", "", "lonely", "extra"]}\n```'

    sentiment = parse_sentiment(raw)

    assert sentiment.sentiment == "negative"
    assert sentiment.intensity == 1.0
    assert sentiment.emotions == ("sad", "tired", "lonely")


@pytest.mark.parametrize("raw", ["", "not json", "[1, 2]", '{"sentiment": "ecstatic"}'])
def test_sentiment_parsing_falls_back_to_neutral(raw):
    assert parse_sentiment(raw).sentiment == NEUTRAL_SENTIMENT.sentiment


def test_suggestions_strip_numbering_and_duplicates():
    raw = "1. Tell me more\n- Tell me more\n2) What about you?\n\n* Why?"

    assert parse_suggestions(raw, 3) == ["Tell me more", "What about you?", "Why?"]
