import asyncio
import json

import httpx
import pytest

from llm_router.chat_completions_provider import ChatCompletionsProvider
from llm_router.config import ApiKeys, ProviderSettings
from llm_router.errors import ErrorKind, ProviderError
from llm_router.gemini_provider import GeminiProvider
from llm_router.mock_provider import MockProvider
from llm_router.schemas import LLMOptions, LLMRequest


def groq_settings(**overrides) -> ProviderSettings:
    values = {
        "name": "groq",
        "kind": "chat_completions",
        "api_keys": ApiKeys(primary="gsk-test"),
        "base_url": "https://api.groq.test/openai/v1",
        "models": {"low": "llama-small", "medium": "llama-large"},
        "max_tokens": 1000,
    }
    values.update(overrides)
    return ProviderSettings(**values)


def gemini_settings() -> ProviderSettings:
    return ProviderSettings(
        name="gemini",
        kind="gemini",
        api_keys=ApiKeys(primary="g-test"),
        base_url="https://gemini.test/v1beta",
        models={"medium": "gemini-1.5-flash"},
    )


def _client(handler) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


def _invoke(provider, request, **kwargs):
    return asyncio.run(provider.invoke(request, 1000, **kwargs))


def test_chat_completions_success_parses_usage():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = str(request.url)
        seen["auth"] = request.headers["Authorization"]
        seen["body"] = json.loads(request.content)
        return httpx.Response(
            200,
            json={
                "model": "llama-small",
                "choices": [{"message": {"role": "assistant", "content": "Day 1: Louvre"}}],
                "usage": {"prompt_tokens": 12, "completion_tokens": 30},
            },
        )

    provider = ChatCompletionsProvider(groq_settings(), client=_client(handler))
    request = LLMRequest(query="Plan Paris", options=LLMOptions(max_tokens=5000, temperature=0.2, stop_sequences=["END"]))
    result = _invoke(provider, request, api_key="gsk-rotated", model="llama-small")

    assert result.content == "Day 1: Louvre"
    assert result.total_tokens == 42
    assert seen["url"] == "https://api.groq.test/openai/v1/chat/completions"
    assert seen["auth"] == "Bearer gsk-rotated"
    assert seen["body"]["model"] == "llama-small"
    assert seen["body"]["max_tokens"] == 1000
    assert seen["body"]["stop"] == ["END"]
    assert seen["body"]["messages"][-1] == {"role": "user", "content": "Plan Paris"}


def test_chat_completions_estimates_missing_usage():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"choices": [{"message": {"content": "ok ok ok ok"}}]})

    provider = ChatCompletionsProvider(groq_settings(), client=_client(handler))
    result = _invoke(provider, LLMRequest(query="abcdefgh"))
    assert result.input_tokens == 2
    assert result.output_tokens == 3
    assert result.model == "llama-large"


@pytest.mark.parametrize(
    "status, kind",
    [
        (429, ErrorKind.RATE_LIMIT),
        (401, ErrorKind.AUTH_FAILURE),
        (403, ErrorKind.AUTH_FAILURE),
        (400, ErrorKind.INVALID_REQUEST),
        (500, ErrorKind.SERVER_ERROR),
        (503, ErrorKind.SERVER_ERROR),
    ],
)
def test_chat_completions_maps_http_errors(status, kind):
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(status, json={"error": {"message": "nope"}})

    provider = ChatCompletionsProvider(groq_settings(), client=_client(handler))
    with pytest.raises(ProviderError) as exc_info:
        _invoke(provider, LLMRequest(query="hi"))
    assert exc_info.value.kind == kind
    assert exc_info.value.status_code == status
    assert exc_info.value.provider == "groq"


def test_chat_completions_maps_timeouts():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ReadTimeout("slow", request=request)

    provider = ChatCompletionsProvider(groq_settings(), client=_client(handler))
    with pytest.raises(ProviderError) as exc_info:
        _invoke(provider, LLMRequest(query="hi"))
    assert exc_info.value.kind == ErrorKind.TIMEOUT


def test_chat_completions_maps_connection_errors():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("refused", request=request)

    provider = ChatCompletionsProvider(groq_settings(), client=_client(handler))
    with pytest.raises(ProviderError) as exc_info:
        _invoke(provider, LLMRequest(query="hi"))
    assert exc_info.value.kind == ErrorKind.SERVER_ERROR


def test_chat_completions_malformed_payload_is_unknown():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"choices": []})

    provider = ChatCompletionsProvider(groq_settings(), client=_client(handler))
    with pytest.raises(ProviderError) as exc_info:
        _invoke(provider, LLMRequest(query="hi"))
    assert exc_info.value.kind == ErrorKind.UNKNOWN


def test_chat_completions_without_key_is_unavailable():
    provider = ChatCompletionsProvider(groq_settings(api_keys=ApiKeys()))
    assert provider.is_available() is False
    with pytest.raises(ProviderError) as exc_info:
        _invoke(provider, LLMRequest(query="hi"))
    assert exc_info.value.kind == ErrorKind.AUTH_FAILURE


def test_disabled_provider_is_unavailable():
    assert ChatCompletionsProvider(groq_settings(enabled=False)).is_available() is False
    assert ChatCompletionsProvider(groq_settings()).get_capacity() == 10


def test_gemini_success():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = str(request.url)
        seen["key"] = request.headers["x-goog-api-key"]
        seen["body"] = json.loads(request.content)
        return httpx.Response(
            200,
            json={
                "candidates": [{"content": {"parts": [{"text": "Bonjour "}, {"text": "Paris"}]}, "finishReason": "STOP"}],
                "usageMetadata": {"promptTokenCount": 5, "candidatesTokenCount": 7},
                "modelVersion": "gemini-1.5-flash-002",
            },
        )

    provider = GeminiProvider(gemini_settings(), client=_client(handler))
    request = LLMRequest(query="Paris?", options=LLMOptions(top_k=40, max_tokens=256))
    result = _invoke(provider, request)

    assert result.content == "Bonjour Paris"
    assert result.total_tokens == 12
    assert result.model == "gemini-1.5-flash-002"
    assert seen["url"] == "https://gemini.test/v1beta/models/gemini-1.5-flash:generateContent"
    assert seen["key"] == "g-test"
    assert seen["body"]["generationConfig"] == {"topK": 40, "maxOutputTokens": 256}


def test_gemini_safety_block_is_invalid_request():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"candidates": [{"finishReason": "SAFETY"}]})

    provider = GeminiProvider(gemini_settings(), client=_client(handler))
    with pytest.raises(ProviderError) as exc_info:
        _invoke(provider, LLMRequest(query="hi"))
    assert exc_info.value.kind == ErrorKind.INVALID_REQUEST


def test_gemini_rate_limit():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(429)

    provider = GeminiProvider(gemini_settings(), client=_client(handler))
    with pytest.raises(ProviderError) as exc_info:
        _invoke(provider, LLMRequest(query="hi"))
    assert exc_info.value.kind == ErrorKind.RATE_LIMIT


def test_mock_provider_returns_result():
    provider = MockProvider("groq", delay_ms=0)
    result = _invoke(provider, LLMRequest(query="hi"), model="llama-small")

    assert result.model == "llama-small"
    assert result.content == "mock response from groq"
    assert result.total_tokens == result.input_tokens + result.output_tokens


def test_mock_provider_failure_is_server_error():
    provider = MockProvider("groq", delay_ms=0, fail_rate=1.0)
    with pytest.raises(ProviderError) as exc_info:
        _invoke(provider, LLMRequest(query="hi"))
    assert exc_info.value.kind == ErrorKind.SERVER_ERROR


def _collect(provider, request, **kwargs):
    async def run():
        return [chunk async for chunk in provider.stream(request, 1000, **kwargs)]

    return asyncio.run(run())


def _sse_body(*events) -> bytes:
    return "".join(f"data: {event}\n\n" for event in events).encode()


def test_gemini_prompt_block_is_invalid_request():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"promptFeedback": {"blockReason": "SAFETY"}})

    provider = GeminiProvider(gemini_settings(), client=_client(handler))
    with pytest.raises(ProviderError) as exc_info:
        _invoke(provider, LLMRequest(query="hi"))
    assert exc_info.value.kind == ErrorKind.INVALID_REQUEST
    assert "SAFETY" in str(exc_info.value)


def test_chat_completions_stream_parses_sse_deltas():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["body"] = json.loads(request.content)
        body = _sse_body(
            json.dumps({"model": "llama-small", "choices": [{"delta": {"role": "assistant"}}]}),
            json.dumps({"model": "llama-small", "choices": [{"delta": {"content": "Day 1: "}}]}),
            json.dumps({"model": "llama-small", "choices": [{"delta": {"content": "Louvre"}}]}),
            json.dumps(
                {
                    "choices": [{"delta": {}, "finish_reason": "stop"}],
                    "x_groq": {"usage": {"prompt_tokens": 12, "completion_tokens": 4}},
                }
            ),
            "[DONE]",
        )
        return httpx.Response(200, content=body, headers={"content-type": "text/event-stream"})

    provider = ChatCompletionsProvider(groq_settings(), client=_client(handler))
    chunks = _collect(provider, LLMRequest(query="Plan Paris"), model="llama-small")

    assert seen["body"]["stream"] is True
    assert "".join(chunk.content for chunk in chunks) == "Day 1: Louvre"
    assert chunks[-1].done is True
    assert (chunks[-1].input_tokens, chunks[-1].output_tokens) == (12, 4)
    assert provider.get_capacity() == 10


def test_chat_completions_stream_maps_http_errors():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(429, json={"error": "slow down"})

    provider = ChatCompletionsProvider(groq_settings(), client=_client(handler))
    with pytest.raises(ProviderError) as exc_info:
        _collect(provider, LLMRequest(query="hi"))
    assert exc_info.value.kind == ErrorKind.RATE_LIMIT


def test_gemini_stream_uses_sse_endpoint():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = str(request.url)
        body = _sse_body(
            json.dumps({"candidates": [{"content": {"parts": [{"text": "Bonjour "}]}}]}),
            json.dumps(
                {
                    "candidates": [{"content": {"parts": [{"text": "Paris"}]}, "finishReason": "STOP"}],
                    "usageMetadata": {"promptTokenCount": 5, "candidatesTokenCount": 7},
                }
            ),
        )
        return httpx.Response(200, content=body, headers={"content-type": "text/event-stream"})

    provider = GeminiProvider(gemini_settings(), client=_client(handler))
    chunks = _collect(provider, LLMRequest(query="Paris?"))

    assert seen["url"] == "https://gemini.test/v1beta/models/gemini-1.5-flash:streamGenerateContent?alt=sse"
    assert [chunk.content for chunk in chunks] == ["Bonjour ", "Paris", ""]
    assert chunks[-1].output_tokens == 7


def test_gemini_stream_prompt_block_is_invalid_request():
    def handler(request: httpx.Request) -> httpx.Response:
        body = _sse_body(json.dumps({"promptFeedback": {"blockReason": "OTHER"}}))
        return httpx.Response(200, content=body, headers={"content-type": "text/event-stream"})

    provider = GeminiProvider(gemini_settings(), client=_client(handler))
    with pytest.raises(ProviderError) as exc_info:
        _collect(provider, LLMRequest(query="hi"))
    assert exc_info.value.kind == ErrorKind.INVALID_REQUEST


def test_mock_provider_streams_words():
    chunks = _collect(MockProvider("groq", delay_ms=0), LLMRequest(query="hi"))

    assert "".join(chunk.content for chunk in chunks) == "mock response from groq"
    assert chunks[-1].done is True
    assert chunks[-1].output_tokens > 0
