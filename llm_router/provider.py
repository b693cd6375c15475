from __future__ import annotations

import json
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import AsyncIterator

import httpx

from llm_router.errors import ErrorKind, ProviderError
from llm_router.schemas import LLMRequest


@dataclass(frozen=True)
class ProviderResult:
    content: str
    model: str
    input_tokens: int
    output_tokens: int

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens


@dataclass(frozen=True)
class StreamChunk:
    content: str
    done: bool = False
    model: str | None = None
    input_tokens: int | None = None
    output_tokens: int | None = None


class ProviderAdapter(ABC):
    name: str

    @abstractmethod
    async def invoke(
        self,
        request: LLMRequest,
        timeout_ms: int,
        *,
        api_key: str | None = None,
        model: str | None = None,
    ) -> ProviderResult:
        raise NotImplementedError

    @abstractmethod
    def stream(
        self,
        request: LLMRequest,
        timeout_ms: int,
        *,
        api_key: str | None = None,
        model: str | None = None,
    ) -> AsyncIterator[StreamChunk]:
        raise NotImplementedError

    @abstractmethod
    def is_available(self) -> bool:
        raise NotImplementedError

    @abstractmethod
    def get_capacity(self) -> int:
        raise NotImplementedError


def classify_status(status_code: int) -> ErrorKind:
    if status_code == 429:
        return ErrorKind.RATE_LIMIT
    if status_code in (401, 403):
        return ErrorKind.AUTH_FAILURE
    if status_code >= 500:
        return ErrorKind.SERVER_ERROR
    if 400 <= status_code < 500:
        return ErrorKind.INVALID_REQUEST
    return ErrorKind.UNKNOWN


def to_provider_error(provider: str, exc: Exception) -> ProviderError:
    """Map an httpx (or other) exception onto the router's error kinds."""
    if isinstance(exc, ProviderError):
        return exc
    if isinstance(exc, httpx.TimeoutException):
        return ProviderError(ErrorKind.TIMEOUT, provider, f"{provider} timed out: {exc}")
    if isinstance(exc, httpx.HTTPStatusError):
        status = exc.response.status_code
        return ProviderError(
            classify_status(status),
            provider,
            f"{provider} returned HTTP {status}",
            status_code=status,
        )
    if isinstance(exc, httpx.TransportError):
        return ProviderError(ErrorKind.SERVER_ERROR, provider, f"{provider} transport error: {exc}")
    if isinstance(exc, (KeyError, IndexError, TypeError, ValueError)):
        return ProviderError(ErrorKind.UNKNOWN, provider, f"{provider} returned a malformed payload")
    return ProviderError(ErrorKind.UNKNOWN, provider, str(exc) or exc.__class__.__name__)


def estimate_tokens(text: str) -> int:
    return max(1, (len(text) + 3) // 4)


@asynccontextmanager
async def open_stream(
    client: httpx.AsyncClient | None,
    url: str,
    payload: dict,
    headers: dict,
    timeout_ms: int,
):
    """POST and hold the response open for line-by-line reading."""
    timeout = timeout_ms / 1000
    if client is not None:
        async with client.stream("POST", url, json=payload, headers=headers, timeout=timeout) as resp:
            resp.raise_for_status()
            yield resp
        return
    async with httpx.AsyncClient(timeout=timeout) as owned:
        async with owned.stream("POST", url, json=payload, headers=headers) as resp:
            resp.raise_for_status()
            yield resp


async def sse_events(resp: httpx.Response) -> AsyncIterator[dict]:
    """Decode `data:` lines of a server-sent event stream until `[DONE]`."""
    async for line in resp.aiter_lines():
        if not line.startswith("data:"):
            continue
        data = line[len("data:"):].strip()
        if data == "[DONE]":
            break
        if data:
            yield json.loads(data)
