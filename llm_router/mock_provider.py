import asyncio
import random

from llm_router.errors import ErrorKind, ProviderError
from llm_router.provider import ProviderAdapter, ProviderResult, StreamChunk, estimate_tokens
from llm_router.schemas import LLMRequest


class MockProvider(ProviderAdapter):
    def __init__(self, name: str, delay_ms: int = 200, fail_rate: float = 0.0, capacity: int = 10) -> None:
        self.name = name
        self.delay_ms = delay_ms
        self.fail_rate = fail_rate
        self.capacity = capacity

    def is_available(self) -> bool:
        return True

    def get_capacity(self) -> int:
        return self.capacity

    async def invoke(
        self,
        request: LLMRequest,
        timeout_ms: int,
        *,
        api_key: str | None = None,
        model: str | None = None,
    ) -> ProviderResult:
        if self.fail_rate > 0 and random.random() < self.fail_rate:
            raise ProviderError(ErrorKind.SERVER_ERROR, self.name, "mock provider failure")
        await asyncio.sleep(self.delay_ms / 1000)
        content = f"mock response from {self.name}"
        return ProviderResult(
            content=content,
            model=model or f"mock-{self.name}",
            input_tokens=estimate_tokens(request.query),
            output_tokens=estimate_tokens(content),
        )

    async def stream(
        self,
        request: LLMRequest,
        timeout_ms: int,
        *,
        api_key: str | None = None,
        model: str | None = None,
    ):
        if self.fail_rate > 0 and random.random() < self.fail_rate:
            raise ProviderError(ErrorKind.SERVER_ERROR, self.name, "mock provider failure")
        words = f"mock response from {self.name}".split(" ")
        for index, word in enumerate(words):
            await asyncio.sleep(self.delay_ms / 1000 / len(words))
            yield StreamChunk(content=word if index == len(words) - 1 else f"{word} ", model=model)
        yield StreamChunk(
            content="",
            done=True,
            model=model or f"mock-{self.name}",
            input_tokens=estimate_tokens(request.query),
            output_tokens=estimate_tokens(" ".join(words)),
        )
