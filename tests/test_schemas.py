import pytest
from pydantic import ValidationError

from llm_router.schemas import ErrorInfo, ErrorResponse, LLMOptions, LLMRequest, TokenUsage


def test_llm_request_requires_query():
    with pytest.raises(ValidationError):
        LLMRequest(query="")


def test_llm_request_rejects_whitespace_query():
    with pytest.raises(ValidationError):
        LLMRequest(query="   \n\t ")


def test_llm_request_rejects_overlong_query():
    with pytest.raises(ValidationError):
        LLMRequest(query="a" * 8001)


def test_llm_request_accepts_camel_case_fields():
    request = LLMRequest.model_validate(
        {
            "query": "Plan a trip",
            "options": {"maxTokens": 500, "stopSequences": ["END"]},
            "metadata": {"complexityHint": "high", "userPreference": "speed", "debug": True},
        }
    )
    assert request.options.max_tokens == 500
    assert request.metadata.complexity_hint == "high"
    assert request.metadata.user_preference == "speed"


def test_llm_options_bounds():
    with pytest.raises(ValidationError):
        LLMOptions(max_tokens=0)
    with pytest.raises(ValidationError):
        LLMOptions(temperature=2.5)
    with pytest.raises(ValidationError):
        LLMOptions(stop_sequences=["a", "b", "c", "d", "e"])
    with pytest.raises(ValidationError):
        LLMOptions(stop_sequences=["x" * 101])


def test_unknown_complexity_hint_rejected():
    with pytest.raises(ValidationError):
        LLMRequest.model_validate({"query": "hi", "metadata": {"complexityHint": "extreme"}})


def test_error_response_serializes_camel_case():
    body = ErrorResponse(
        error=ErrorInfo(code="INVALID_REQUEST", message="bad", timestamp="2026-01-01T00:00:00Z", request_id="r1")
    ).model_dump(by_alias=True, exclude_none=True)

    assert body["success"] is False
    assert body["error"]["requestId"] == "r1"
    assert "provider" not in body["error"]


def test_token_usage_dumps_aliases():
    usage = TokenUsage(input_tokens=1, output_tokens=2, total_tokens=3, estimated_cost_usd=0.1)
    assert usage.model_dump(by_alias=True) == {
        "inputTokens": 1,
        "outputTokens": 2,
        "totalTokens": 3,
        "estimatedCostUsd": 0.1,
    }
