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

SYSTEM_PROMPT = "You are a travel planning assistant. Answer concisely and accurately."


class ChatCompletionsProvider(ProviderAdapter):
    """OpenAI-compatible `/chat/completions` backend (Groq, Cerebras)."""

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

    def build_payload(self, request: LLMRequest, model: str, stream: bool = False) -> dict:
        options = request.options
        payload = {
            "model": model,
            "messages": [
                {"role": "system", "content": SYSTEM_PROMPT},
                {"role": "user", "content": request.query},
            ],
            "stream": stream,
        }
        if options is None:
            return payload
        if options.max_tokens is not None:
            payload["max_tokens"] = min(options.max_tokens, self.settings.max_tokens)
        if options.temperature is not None:
            payload["temperature"] = options.temperature
        if options.top_p is not None:
            payload["top_p"] = options.top_p
        if options.stop_sequences:
            payload["stop"] = options.stop_sequences
        if options.presence_penalty is not None:
            payload["presence_penalty"] = options.presence_penalty
        if options.frequency_penalty is not None:
            payload["frequency_penalty"] = options.frequency_penalty
        return payload

    async def invoke(
        self,
        request: LLMRequest,
        timeout_ms: int,
        *,
        api_key: str | None = None,
        model: str | None = None,
    ) -> ProviderResult:
        model_name = model or self.settings.model_for("medium") or ""
        key = api_key or self.settings.api_keys.primary
        if not key:
            raise ProviderError(ErrorKind.AUTH_FAILURE, self.name, f"{self.name} has no API key")
        payload = self.build_payload(request, model_name)
        headers = {"Authorization": f"Bearer {key}"}

        self._in_flight += 1
        try:
            data = await self._post(f"{self.base_url}/chat/completions", payload, headers, timeout_ms)
            content = data["choices"][0]["message"]["content"] or ""
            usage = data.get("usage") or {}
        except Exception as exc:
            raise to_provider_error(self.name, exc) from exc
        finally:
            self._in_flight -= 1

        input_tokens = int(usage.get("prompt_tokens") or 0)
        output_tokens = int(usage.get("completion_tokens") or 0)
        if input_tokens + output_tokens == 0:
            input_tokens = estimate_tokens(request.query)
            output_tokens = estimate_tokens(content)
        return ProviderResult(
            content=content,
            model=data.get("model", model_name),
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
        model_name = model or self.settings.model_for("medium") or ""
        key = api_key or self.settings.api_keys.primary
        if not key:
            raise ProviderError(ErrorKind.AUTH_FAILURE, self.name, f"{self.name} has no API key")
        payload = self.build_payload(request, model_name, stream=True)
        headers = {"Authorization": f"Bearer {key}"}

        self._in_flight += 1
        try:
            url = f"{self.base_url}/chat/completions"
            async with open_stream(self._client, url, payload, headers, timeout_ms) as resp:
                async for event in sse_events(resp):
                    choices = event.get("choices") or []
                    delta = (choices[0].get("delta") or {}) if choices else {}
                    if delta.get("content"):
                        yield StreamChunk(content=delta["content"], model=event.get("model"))
                    # Groq nests the final usage under x_groq.
                    usage = event.get("usage") or (event.get("x_groq") or {}).get("usage")
                    if usage:
                        yield StreamChunk(
                            content="",
                            done=True,
                            model=event.get("model"),
                            input_tokens=int(usage.get("prompt_tokens") or 0),
                            output_tokens=int(usage.get("completion_tokens") or 0),
                        )
        except Exception as exc:
            raise to_provider_error(self.name, exc) from exc
        finally:
            self._in_flight -= 1

    async def _post(self, url: str, payload: dict, headers: dict, timeout_ms: int) -> dict:
        timeout = timeout_ms / 1000
        if self._client is not None:
            resp = await self._client.post(url, json=payload, headers=headers, timeout=timeout)
            resp.raise_for_status()
            return resp.json()
        async with httpx.AsyncClient(timeout=timeout) as client:
            resp = await client.post(url, json=payload, headers=headers)
            resp.raise_for_status()
            return resp.json()

