import httpx

from llm_router.config import ProviderSettings
from llm_router.errors import ErrorKind, ProviderError
from llm_router.provider import (
    ProviderAdapter,
    ProviderResult,
    StreamChunk,
    estimate_tokens,
    open_stream,
    sse_events,
    to_provider_error,
)
from llm_router.schemas import LLMRequest


class GeminiProvider(ProviderAdapter):
    def __init__(self, settings: ProviderSettings, client: httpx.AsyncClient | None = None) -> None:
        self.name = settings.name
        self.settings = settings
        self.base_url = (settings.base_url or "").rstrip("/")
        self._client = client
        self._in_flight = 0

    def is_available(self) -> bool:
        return self.settings.enabled and bool(self.settings.api_keys.configured())

    def get_capacity(self) -> int:
        return max(self.settings.max_concurrent_requests - self._in_flight, 0)

    def build_payload(self, request: LLMRequest) -> dict:
        payload: dict = {"contents": [{"role": "user", "parts": [{"text": request.query}]}]}
        options = request.options
        if options is None:
            return payload
        generation = {}
        if options.temperature is not None:
            generation["temperature"] = options.temperature
        if options.top_p is not None:
            generation["topP"] = options.top_p
        if options.top_k is not None:
            generation["topK"] = options.top_k
        if options.max_tokens is not None:
            generation["maxOutputTokens"] = min(options.max_tokens, self.settings.max_tokens)
        if options.stop_sequences:
            generation["stopSequences"] = options.stop_sequences
        if generation:
            payload["generationConfig"] = generation
        return payload

    def _extract(self, data: dict) -> tuple[str, str | None]:
        """Return (text, finishReason) of the first candidate."""
        block_reason = (data.get("promptFeedback") or {}).get("blockReason")
        if block_reason:
            raise ProviderError(ErrorKind.INVALID_REQUEST, self.name, f"gemini blocked the prompt: {block_reason}")
        candidate = data["candidates"][0]
        parts = (candidate.get("content") or {}).get("parts") or []
        return "".join(part.get("text", "") for part in parts), candidate.get("finishReason")

    def _prepare(self, api_key: str | None, model: str | None) -> tuple[str, dict]:
        model_name = model or self.settings.model_for("medium") or ""
        key = api_key or self.settings.api_keys.primary
        if not key:
            raise ProviderError(ErrorKind.AUTH_FAILURE, self.name, f"{self.name} has no API key")
        return model_name, {"x-goog-api-key": key}

    async def invoke(
        self,
        request: LLMRequest,
        timeout_ms: int,
        *,
        api_key: str | None = None,
        model: str | None = None,
    ) -> ProviderResult:
        model_name, headers = self._prepare(api_key, model)
        url = f"{self.base_url}/models/{model_name}:generateContent"
        payload = self.build_payload(request)

        self._in_flight += 1
        try:
            if self._client is not None:
                resp = await self._client.post(url, json=payload, headers=headers, timeout=timeout_ms / 1000)
            else:
                async with httpx.AsyncClient(timeout=timeout_ms / 1000) as client:
                    resp = await client.post(url, json=payload, headers=headers)
            resp.raise_for_status()
            data = resp.json()
            content, finish_reason = self._extract(data)
        except Exception as exc:
            raise to_provider_error(self.name, exc) from exc
        finally:
            self._in_flight -= 1

        if not content and finish_reason == "SAFETY":
            raise ProviderError(ErrorKind.INVALID_REQUEST, self.name, "gemini blocked the prompt")

        usage = data.get("usageMetadata") or {}
        input_tokens = int(usage.get("promptTokenCount") or 0)
        output_tokens = int(usage.get("candidatesTokenCount") or 0)
        if input_tokens + output_tokens == 0:
            input_tokens = estimate_tokens(request.query)
            output_tokens = estimate_tokens(content)
        return ProviderResult(
            content=content,
            model=data.get("modelVersion", model_name),
            input_tokens=input_tokens,
            output_tokens=output_tokens,
        )

    async def stream(
        self,
        request: LLMRequest,
        timeout_ms: int,
        *,
        api_key: str | None = None,
        model: str | None = None,
    ):
        model_name, headers = self._prepare(api_key, model)
        url = f"{self.base_url}/models/{model_name}:streamGenerateContent?alt=sse"
        payload = self.build_payload(request)

        self._in_flight += 1
        try:
            async with open_stream(self._client, url, payload, headers, timeout_ms) as resp:
                usage = {}
                produced = False
                async for data in sse_events(resp):
                    usage = data.get("usageMetadata") or usage
                    if not data.get("candidates") and not data.get("promptFeedback"):
                        continue
                    content, finish_reason = self._extract(data)
                    if content:
                        produced = True
                        yield StreamChunk(content=content, model=data.get("modelVersion"))
                    elif finish_reason == "SAFETY" and not produced:
                        raise ProviderError(ErrorKind.INVALID_REQUEST, self.name, "gemini blocked the prompt")
                if usage:
                    yield StreamChunk(
                        content="",
                        done=True,
                        input_tokens=int(usage.get("promptTokenCount") or 0),
                        output_tokens=int(usage.get("candidatesTokenCount") or 0),
                    )
        except Exception as exc:
            raise to_provider_error(self.name, exc) from exc
        finally:
            self._in_flight -= 1
