"""Request routing: classify, select a provider chain, call it with failover.

A request moves through CLASSIFYING -> SELECTING -> RATE_CHECK -> INVOKING and
ends in SUCCESS or EXHAUSTED. Each provider in the chain is invoked at most
once; a failed or skipped provider advances the chain after a linear backoff.
Global rate and cost denials end the request immediately.

Streamed requests fail over the same way until a provider yields its first
chunk. After that the stream is committed to that provider and a mid-stream
failure ends the request.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
import uuid
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, AsyncIterator, Awaitable, Callable

from llm_router.chat_completions_provider import ChatCompletionsProvider
from llm_router.complexity import ClassificationHints, ComplexityClassifier
from llm_router.config import RouterSettings
from llm_router.errors import ErrorCode, ErrorKind, ProviderError, RoutingError, utc_now_iso
from llm_router.events import EventSink, RoutingEvent, default_sinks
from llm_router.gemini_provider import GeminiProvider
from llm_router.health import ProviderHealthRegistry
from llm_router.keys import ApiKeyRecord, KeyRing
from llm_router.mock_provider import MockProvider
from llm_router.pricing import cost_usd, pricing_map
from llm_router.provider import ProviderAdapter, StreamChunk, estimate_tokens, to_provider_error
from llm_router.rate_limit import RateDecision, RateLimiter, Reservation
from llm_router.reliability import BackoffPolicy
from llm_router.routing import ProviderSelector, Selection
from llm_router.schemas import (
    AttemptRecord,
    ComplexityAnalysis,
    DebugInformation,
    LLMRequest,
    LLMRequestMetadata,
    LLMResponse,
    LLMResponseMetadata,
    ProviderSelectionDebug,
    RoutingDecision,
    TimingDebug,
    TokenUsage,
)
from llm_router.store import CounterStore, CounterStoreError, MemoryCounterStore, RedisCounterStore

logger = logging.getLogger("llm-router")

MAX_QUERY_CHARS = 8000
DEFAULT_OUTPUT_TOKENS = 512

Sleeper = Callable[[float], Awaitable[None]]
ProviderCall = Callable[[ProviderAdapter, LLMRequest, int, str | None, str | None], Awaitable[Any]]


def _elapsed_ms(start: float) -> int:
    return int((time.perf_counter() - start) * 1000)


def _log(level: int, payload: dict) -> None:
    logger.log(level, json.dumps(payload, separators=(",", ":")))


@dataclass
class _Winner:
    name: str
    index: int
    analysis: ComplexityAnalysis
    selection: Selection
    attempts: list[AttemptRecord]
    reservation: Reservation
    ring: KeyRing | None
    key: ApiKeyRecord | None
    attempt_start: float
    latency_ms: int
    routing_ms: int
    provider_ms: int
    value: Any


@dataclass
class RoutedStream:
    """Text chunks of a streamed answer; `usage` is set once the stream ends."""

    metadata: LLMResponseMetadata
    chunks: AsyncIterator[str] | None = None
    usage: TokenUsage | None = None

    def __aiter__(self) -> AsyncIterator[str]:
        return self.chunks

    async def aclose(self) -> None:
        await self.chunks.aclose()


class RoutingEngine:
    def __init__(
        self,
        settings: RouterSettings,
        adapters: dict[str, ProviderAdapter],
        *,
        classifier: ComplexityClassifier | None = None,
        registry: ProviderHealthRegistry | None = None,
        limiter: RateLimiter | None = None,
        selector: ProviderSelector | None = None,
        key_rings: dict[str, KeyRing] | None = None,
        sinks: list[EventSink] | None = None,
        store: CounterStore | None = None,
        sleep: Sleeper = asyncio.sleep,
    ) -> None:
        self.settings = settings
        self.adapters = adapters
        self.prices = pricing_map(settings.providers)
        if classifier is None:
            classifier = ComplexityClassifier(settings.low_threshold, settings.high_threshold)
        self.classifier = classifier
        if registry is None:
            registry = ProviderHealthRegistry(
                list(settings.providers),
                window_size=settings.health_window_size,
                failure_threshold=settings.health_failure_threshold,
                recovery_timeout_s=settings.health_recovery_timeout_s,
            )
        self.registry = registry
        if limiter is None:
            limiter = RateLimiter(
                store or MemoryCounterStore(),
                settings.rate_limiting,
                {name: cfg.rate_limits for name, cfg in settings.providers.items()},
                settings.cost_optimization,
            )
        self.limiter = limiter
        self.selector = selector or ProviderSelector(settings, self.prices)
        if key_rings is None:
            key_rings = {
                name: KeyRing(name, cfg.api_keys, cfg.key_rotation) for name, cfg in settings.providers.items()
            }
        self.key_rings = key_rings
        self.sinks = list(sinks) if sinks is not None else default_sinks()
        self.backoff = BackoffPolicy(settings.backoff_base_ms, settings.backoff_max_ms)
        self._sleep = sleep

    @staticmethod
    def _request_id(request: LLMRequest, request_id: str | None) -> tuple[LLMRequestMetadata, str]:
        metadata = request.metadata or LLMRequestMetadata()
        return metadata, metadata.request_id or request_id or str(uuid.uuid4())

    async def route(self, request: LLMRequest, request_id: str | None = None) -> LLMResponse:
        metadata, request_id = self._request_id(request, request_id)
        started = time.perf_counter()
        async with self._terminal(request_id, started):
            winner = await self._run_chain(request, metadata, request_id, started, self._invoke)
            result = winner.value
            cost, total_ms = await self._succeed(
                winner, request_id, started, winner.latency_ms, result.input_tokens, result.output_tokens
            )

        analysis, selection = winner.analysis, winner.selection
        debug = DebugInformation(
            complexity_analysis=analysis,
            provider_selection=ProviderSelectionDebug(
                candidates=list(selection.candidates),
                selected=winner.name,
                reasoning=selection.reasoning,
            ),
            fallback_chain=list(selection.chain),
            attempts=winner.attempts,
            timing=TimingDebug(routing_ms=winner.routing_ms, provider_ms=winner.provider_ms, total_ms=total_ms),
        )
        return LLMResponse(
            response=result.content,
            metadata=self._response_metadata(winner, request_id, total_ms),
            usage=TokenUsage(
                input_tokens=result.input_tokens,
                output_tokens=result.output_tokens,
                total_tokens=result.total_tokens,
                estimated_cost_usd=cost,
            ),
            debug=debug if metadata.debug else None,
        )

    async def stream(self, request: LLMRequest, request_id: str | None = None) -> RoutedStream:
        """Route a request and return once a provider has produced its first chunk."""
        metadata, request_id = self._request_id(request, request_id)
        started = time.perf_counter()
        async with self._terminal(request_id, started):
            winner = await self._run_chain(request, metadata, request_id, started, self._open_stream)

        chunks, first = winner.value
        routed = RoutedStream(metadata=self._response_metadata(winner, request_id, _elapsed_ms(started)))
        routed.chunks = self._relay(routed, winner, request, request_id, started, chunks, first)
        return routed

    @asynccontextmanager
    async def _terminal(self, request_id: str, started: float):
        try:
            yield
        except CounterStoreError as exc:
            _log(logging.ERROR, {"message": "rate_store_unavailable", "request_id": request_id, "error": str(exc)})
            error = RoutingError(
                ErrorCode.RATE_LIMIT_UNAVAILABLE,
                "Rate limit store unavailable",
                details={"reason": str(exc)},
                request_id=request_id,
            )
            self._emit_failure(error, request_id, started)
            raise error from exc
        except RoutingError as exc:
            if exc.request_id is None:
                exc.request_id = request_id
            self._emit_failure(exc, request_id, started)
            raise

    def _emit_failure(self, exc: RoutingError, request_id: str, started: float) -> None:
        details = exc.details or {}
        self._emit(
            RoutingEvent(
                "completed",
                request_id,
                exc.provider,
                {
                    "status": "error",
                    "error_code": exc.code.value,
                    "complexity": details.get("complexity"),
                    "attempted_chain": details.get("attemptedChain", []),
                    "fallback_occurred": False,
                    "latency_ms": _elapsed_ms(started),
                },
            )
        )

    @staticmethod
    async def _invoke(adapter, request, timeout_ms, api_key, model):
        return await adapter.invoke(request, timeout_ms, api_key=api_key, model=model)

    @staticmethod
    async def _open_stream(adapter, request, timeout_ms, api_key, model):
        chunks = adapter.stream(request, timeout_ms, api_key=api_key, model=model)
        try:
            first = await chunks.__anext__()
        except StopAsyncIteration:
            first = None
        return chunks, first

    async def _run_chain(
        self,
        request: LLMRequest,
        metadata: LLMRequestMetadata,
        request_id: str,
        started: float,
        call: ProviderCall,
    ) -> _Winner:
        self._validate(request, request_id)

        analysis = self.classifier.classify(request.query, self._hints(request, metadata))
        self._emit(
            RoutingEvent(
                "classified",
                request_id,
                data={
                    "complexity": analysis.level,
                    "score": analysis.score,
                    "patterns": list(analysis.detected_patterns),
                },
            )
        )

        await self.refresh_capacity()
        selection = self.selector.select(analysis, metadata.user_preference, self.registry.get_snapshot())
        self._emit(
            RoutingEvent(
                "selected",
                request_id,
                data={"chain": list(selection.chain), "reasoning": selection.reasoning},
            )
        )
        routing_ms = _elapsed_ms(started)

        if not selection.chain:
            self._emit(RoutingEvent("exhausted", request_id, data={"attempted_chain": []}))
            raise RoutingError(
                ErrorCode.PROVIDER_UNAVAILABLE,
                f"No available providers for {analysis.level} complexity requests",
                details={"complexity": analysis.level, "attemptedChain": [], "lastError": None},
                request_id=request_id,
                decision=self._decision(selection, analysis, None),
            )

        attempts: list[AttemptRecord] = []
        invoked = 0
        provider_ms = 0
        previous: tuple[str, str] | None = None
        last_message = ""
        last_provider = None

        for index, name in enumerate(selection.chain):
            if previous is not None:
                self._emit(
                    RoutingEvent(
                        "fallback",
                        request_id,
                        name,
                        {"from_provider": previous[0], "reason": previous[1]},
                    )
                )

            adapter = self.adapters.get(name)
            ring = self.key_rings.get(name)
            key: ApiKeyRecord | None = None
            skip_reason = None
            if adapter is None or not adapter.is_available():
                skip_reason = f"{name} reported itself unavailable"
            elif ring is not None and ring.has_keys:
                key = ring.acquire()
                if key is None:
                    skip_reason = f"{name} has no usable API key"
            if skip_reason is not None:
                attempts.append(
                    AttemptRecord(
                        provider=name,
                        attempt_number=len(attempts) + 1,
                        success=False,
                        error_kind=ErrorCode.PROVIDER_UNAVAILABLE.value,
                        message=skip_reason,
                        skipped=True,
                    )
                )
                self._emit(RoutingEvent("skipped", request_id, name, {"reason": skip_reason}))
                previous = (name, "unavailable")
                last_message = skip_reason
                continue

            output_budget = self._output_budget(request, name)
            estimated_cost = cost_usd(name, analysis.token_estimate, output_budget, self.prices)
            decision = await self.limiter.check_and_reserve(
                name,
                analysis.token_estimate + output_budget,
                estimated_cost,
            )
            if not decision.allowed:
                self._emit(
                    RoutingEvent(
                        "rate_limited",
                        request_id,
                        name,
                        {
                            "scope": decision.scope,
                            "reason": decision.reason,
                            "retry_after_ms": decision.retry_after_ms,
                        },
                    )
                )
                if decision.scope == "global":
                    attempted = [attempt.provider for attempt in attempts]
                    raise self._global_denial(decision, analysis, selection, attempted, request_id)
                message = f"{name} rate limit reached"
                attempts.append(
                    AttemptRecord(
                        provider=name,
                        attempt_number=len(attempts) + 1,
                        success=False,
                        error_kind=ErrorKind.RATE_LIMIT.value,
                        message=message,
                        skipped=True,
                    )
                )
                previous = (name, "rate_limit")
                last_message = message
                continue

            reservation = decision.reservation
            invoked += 1
            timeout_ms = self.settings.providers[name].timeout_ms
            self._emit(
                RoutingEvent(
                    "attempt",
                    request_id,
                    name,
                    {"attempt": invoked, "key_id": key.key_id if key else None},
                )
            )
            attempt_start = time.perf_counter()
            try:
                value = await asyncio.wait_for(
                    call(
                        adapter,
                        request,
                        timeout_ms,
                        key.value if key else None,
                        self.settings.providers[name].model_for(analysis.level),
                    ),
                    timeout=timeout_ms / 1000,
                )
            except asyncio.CancelledError:
                await asyncio.shield(self._release(reservation))
                raise
            except Exception as exc:
                latency_ms = _elapsed_ms(attempt_start)
                provider_ms += latency_ms
                error = self._normalize(name, exc, timeout_ms)
                await self._release(reservation)
                self._record_failure(name, ring, key, error, latency_ms)
                attempts.append(
                    AttemptRecord(
                        provider=name,
                        attempt_number=len(attempts) + 1,
                        success=False,
                        latency_ms=latency_ms,
                        error_kind=error.kind.value,
                        message=str(error),
                    )
                )
                self._emit(
                    RoutingEvent(
                        "failed",
                        request_id,
                        name,
                        {"error_kind": error.kind.value, "message": str(error), "latency_ms": latency_ms},
                    )
                )
                previous = (name, error.kind.value.lower())
                last_message = str(error)
                last_provider = name
                if index < len(selection.chain) - 1:
                    await self._sleep(self.backoff.delay_ms(invoked) / 1000)
                continue

            latency_ms = _elapsed_ms(attempt_start)
            return _Winner(
                name=name,
                index=index,
                analysis=analysis,
                selection=selection,
                attempts=attempts,
                reservation=reservation,
                ring=ring,
                key=key,
                attempt_start=attempt_start,
                latency_ms=latency_ms,
                routing_ms=routing_ms,
                provider_ms=provider_ms + latency_ms,
                value=value,
            )

        attempted = [attempt.provider for attempt in attempts]
        self._emit(
            RoutingEvent(
                "exhausted",
                request_id,
                last_provider,
                {"attempted_chain": attempted, "last_error": last_message},
            )
        )
        raise RoutingError(
            ErrorCode.PROVIDER_UNAVAILABLE,
            f"All providers failed. Last error: {last_message}",
            details={
                "complexity": analysis.level,
                "attemptedChain": attempted,
                "lastError": last_message,
                "attempts": [attempt.model_dump(by_alias=True) for attempt in attempts],
            },
            provider=last_provider,
            request_id=request_id,
            decision=self._decision(selection, analysis, None),
        )

    async def _succeed(
        self,
        winner: _Winner,
        request_id: str,
        started: float,
        latency_ms: int,
        input_tokens: int,
        output_tokens: int,
    ) -> tuple[float, int]:
        name = winner.name
        total_tokens = input_tokens + output_tokens
        actual_cost = cost_usd(name, input_tokens, output_tokens, self.prices)
        await self._commit(winner.reservation, total_tokens, actual_cost)
        self.registry.record_outcome(name, True, latency_ms)
        if winner.ring is not None and winner.key is not None:
            winner.ring.record_success(winner.key.key_id, total_tokens, latency_ms)
            self.registry.set_active_key(name, winner.ring.active_key_id)
        winner.attempts.append(
            AttemptRecord(
                provider=name,
                attempt_number=len(winner.attempts) + 1,
                success=True,
                latency_ms=latency_ms,
            )
        )

        fallback_occurred = winner.index > 0
        total_ms = _elapsed_ms(started)
        self._emit(
            RoutingEvent(
                "succeeded",
                request_id,
                name,
                {
                    "complexity": winner.analysis.level,
                    "latency_ms": latency_ms,
                    "total_tokens": total_tokens,
                    "cost_usd": actual_cost,
                    "fallback_occurred": fallback_occurred,
                },
            )
        )
        self._emit(
            RoutingEvent(
                "completed",
                request_id,
                name,
                {
                    "status": "success",
                    "complexity": winner.analysis.level,
                    "attempted_chain": [attempt.provider for attempt in winner.attempts],
                    "fallback_occurred": fallback_occurred,
                    "latency_ms": total_ms,
                    "input_tokens": input_tokens,
                    "output_tokens": output_tokens,
                    "cost_usd": actual_cost,
                },
            )
        )
        return actual_cost, total_ms

    async def _relay(
        self,
        routed: RoutedStream,
        winner: _Winner,
        request: LLMRequest,
        request_id: str,
        started: float,
        chunks: AsyncIterator[StreamChunk],
        first: StreamChunk | None,
    ):
        name = winner.name
        timeout_ms = self.settings.providers[name].timeout_ms
        parts: list[str] = []
        usage: StreamChunk | None = None
        try:
            chunk = first
            while chunk is not None:
                if chunk.content:
                    parts.append(chunk.content)
                    yield chunk.content
                if chunk.output_tokens is not None:
                    usage = chunk
                try:
                    chunk = await asyncio.wait_for(chunks.__anext__(), timeout=timeout_ms / 1000)
                except StopAsyncIteration:
                    chunk = None
        except Exception as exc:
            await chunks.aclose()
            error = self._normalize(name, exc, timeout_ms)
            raise await self._interrupted(winner, request, request_id, started, parts, error) from exc
        except BaseException:
            # Consumer disconnected or was cancelled; bill what was streamed.
            await chunks.aclose()
            input_tokens, output_tokens = self._stream_tokens(request, parts, usage)
            cost = cost_usd(name, input_tokens, output_tokens, self.prices)
            await asyncio.shield(self._commit(winner.reservation, input_tokens + output_tokens, cost))
            self._emit(
                RoutingEvent(
                    "completed",
                    request_id,
                    name,
                    {
                        "status": "cancelled",
                        "complexity": winner.analysis.level,
                        "attempted_chain": [attempt.provider for attempt in winner.attempts] + [name],
                        "fallback_occurred": winner.index > 0,
                        "latency_ms": _elapsed_ms(started),
                        "input_tokens": input_tokens,
                        "output_tokens": output_tokens,
                        "cost_usd": cost,
                    },
                )
            )
            raise

        input_tokens, output_tokens = self._stream_tokens(request, parts, usage)
        cost, _ = await self._succeed(
            winner, request_id, started, _elapsed_ms(winner.attempt_start), input_tokens, output_tokens
        )
        routed.usage = TokenUsage(
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            total_tokens=input_tokens + output_tokens,
            estimated_cost_usd=cost,
        )

    async def _interrupted(
        self,
        winner: _Winner,
        request: LLMRequest,
        request_id: str,
        started: float,
        parts: list[str],
        error: ProviderError,
    ) -> RoutingError:
        name = winner.name
        latency_ms = _elapsed_ms(winner.attempt_start)
        input_tokens, output_tokens = self._stream_tokens(request, parts, None)
        cost = cost_usd(name, input_tokens, output_tokens, self.prices)
        await self._commit(winner.reservation, input_tokens + output_tokens, cost)
        self._record_failure(name, winner.ring, winner.key, error, latency_ms)
        winner.attempts.append(
            AttemptRecord(
                provider=name,
                attempt_number=len(winner.attempts) + 1,
                success=False,
                latency_ms=latency_ms,
                error_kind=error.kind.value,
                message=str(error),
            )
        )
        self._emit(
            RoutingEvent(
                "failed",
                request_id,
                name,
                {"error_kind": error.kind.value, "message": str(error), "latency_ms": latency_ms},
            )
        )
        exc = RoutingError(
            ErrorCode.PROVIDER_ERROR,
            f"{name} stream interrupted: {error}",
            details={
                "complexity": winner.analysis.level,
                "attemptedChain": [attempt.provider for attempt in winner.attempts],
                "lastError": str(error),
            },
            provider=name,
            request_id=request_id,
        )
        self._emit_failure(exc, request_id, started)
        return exc

    @staticmethod
    def _stream_tokens(request: LLMRequest, parts: list[str], usage: StreamChunk | None) -> tuple[int, int]:
        if usage is not None and (usage.input_tokens or usage.output_tokens):
            return usage.input_tokens or 0, usage.output_tokens or 0
        return estimate_tokens(request.query), estimate_tokens("".join(parts)) if parts else 0

    def _response_metadata(self, winner: _Winner, request_id: str, latency_ms: int) -> LLMResponseMetadata:
        fallback_occurred = winner.index > 0
        return LLMResponseMetadata(
            provider_used=winner.name,
            complexity_detected=winner.analysis.level,
            routing_decision=self._decision(winner.selection, winner.analysis, winner.name),
            latency_ms=latency_ms,
            request_id=request_id,
            timestamp=utc_now_iso(),
            fallback_occurred=fallback_occurred,
            original_provider_failed=winner.selection.chain[0] if fallback_occurred else None,
        )

    async def _release(self, reservation: Reservation) -> None:
        try:
            await self.limiter.release(reservation)
        except CounterStoreError as exc:
            _log(
                logging.WARNING,
                {"message": "reservation_release_failed", "provider": reservation.provider, "error": str(exc)},
            )

    async def _commit(self, reservation: Reservation, tokens: int, cost: float) -> None:
        try:
            await self.limiter.commit(reservation, tokens, cost)
        except CounterStoreError as exc:
            _log(
                logging.WARNING,
                {"message": "usage_commit_failed", "provider": reservation.provider, "error": str(exc)},
            )

    async def refresh_capacity(self) -> None:
        """Re-admit recovered providers and copy rate headroom into their quota."""
        for name in self.registry.release_recovered():
            _log(logging.INFO, {"message": "provider_half_open", "provider": name})
        for name in self.settings.enabled_providers():
            remaining = await self.limiter.remaining_requests(name)
            adapter = self.adapters.get(name)
            if adapter is not None:
                remaining = min(remaining, adapter.get_capacity())
            self.registry.update_quota(name, remaining)
            ring = self.key_rings.get(name)
            if ring is not None and ring.has_keys:
                self.registry.set_active_key(name, ring.active_key_id)

    def reset_health(self) -> None:
        self.registry.reset()
        for ring in self.key_rings.values():
            ring.reset()

    async def close(self) -> None:
        await self.limiter.store.close()

    def _validate(self, request: LLMRequest, request_id: str) -> None:
        query = request.query if isinstance(request.query, str) else ""
        if not query.strip():
            self._emit(RoutingEvent("rejected", request_id, data={"reason": "empty_query"}))
            raise RoutingError(
                ErrorCode.INVALID_REQUEST,
                "query must be a non-empty string",
                details={"field": "query"},
                request_id=request_id,
            )
        if len(query) > MAX_QUERY_CHARS:
            self._emit(RoutingEvent("rejected", request_id, data={"reason": "query_too_long"}))
            raise RoutingError(
                ErrorCode.INVALID_REQUEST,
                f"query exceeds {MAX_QUERY_CHARS} characters",
                details={"field": "query", "length": len(query)},
                request_id=request_id,
            )

    @staticmethod
    def _hints(request: LLMRequest, metadata: LLMRequestMetadata) -> ClassificationHints:
        context = dict(metadata.context or {})
        context["session_id"] = metadata.session_id
        context["user_preference"] = metadata.user_preference
        if request.options is not None:
            context["max_tokens"] = request.options.max_tokens
            context["temperature"] = request.options.temperature
            context["stop_sequences"] = request.options.stop_sequences
        return ClassificationHints(complexity_hint=metadata.complexity_hint, context=context)

    def _output_budget(self, request: LLMRequest, provider: str) -> int:
        ceiling = self.settings.providers[provider].max_tokens
        if request.options is not None and request.options.max_tokens:
            return min(request.options.max_tokens, ceiling)
        return min(DEFAULT_OUTPUT_TOKENS, ceiling)

    @staticmethod
    def _normalize(provider: str, exc: Exception, timeout_ms: int) -> ProviderError:
        if isinstance(exc, asyncio.TimeoutError):
            return ProviderError(ErrorKind.TIMEOUT, provider, f"{provider} timed out after {timeout_ms}ms")
        return to_provider_error(provider, exc)

    def _record_failure(
        self,
        name: str,
        ring: KeyRing | None,
        key: ApiKeyRecord | None,
        error: ProviderError,
        latency_ms: int,
    ) -> None:
        force_unavailable = False
        if ring is not None and key is not None:
            usable = ring.record_failure(key.key_id, error.kind)
            force_unavailable = error.kind == ErrorKind.AUTH_FAILURE and not usable
            self.registry.set_active_key(name, ring.active_key_id)
        elif error.kind == ErrorKind.AUTH_FAILURE:
            force_unavailable = True
        self.registry.record_outcome(
            name,
            False,
            latency_ms,
            error.kind,
            force_unavailable=force_unavailable,
        )

    def _global_denial(
        self,
        decision: RateDecision,
        analysis: ComplexityAnalysis,
        selection: Selection,
        attempted: list[str],
        request_id: str,
    ) -> RoutingError:
        if decision.reason == "cost_limit":
            code = ErrorCode.COST_LIMIT_EXCEEDED
            message = "Daily cost budget would be exceeded"
        else:
            code = ErrorCode.RATE_LIMIT_EXCEEDED
            message = "Global request rate limit exceeded"
        self._emit(RoutingEvent("rejected", request_id, data={"reason": decision.reason, "scope": "global"}))
        return RoutingError(
            code,
            message,
            details={"complexity": analysis.level, "attemptedChain": attempted, "scope": "global"},
            retry_after_ms=decision.retry_after_ms,
            request_id=request_id,
            decision=self._decision(selection, analysis, None),
        )

    @staticmethod
    def _decision(selection: Selection, analysis: ComplexityAnalysis, selected: str | None) -> RoutingDecision:
        reasoning = selection.reasoning
        if selected is not None and selected != selection.chain[0]:
            reasoning = f"{reasoning}; fell back to {selected} after {selection.chain[0]} failed"
        if selected is None:
            selected = selection.chain[0] if selection.chain else "none"
        return RoutingDecision(
            selected_provider=selected,
            reasoning=reasoning,
            candidate_providers=list(selection.candidates),
            complexity_score=analysis.score,
            fallback_chain=list(selection.chain),
        )

    def _emit(self, event: RoutingEvent) -> None:
        for sink in self.sinks:
            try:
                sink.emit(event)
            except Exception as exc:
                payload = {
                    "message": "event_sink_failed",
                    "sink": type(sink).__name__,
                    "stage": event.stage,
                    "error": str(exc),
                }
                logger.warning(json.dumps(payload, separators=(",", ":")))


def build_adapters(settings: RouterSettings) -> dict[str, ProviderAdapter]:
    adapters: dict[str, ProviderAdapter] = {}
    for name, cfg in settings.providers.items():
        if settings.provider_mode == "mock" or cfg.kind == "mock":
            adapters[name] = MockProvider(
                name,
                delay_ms=settings.mock_delay_ms,
                fail_rate=settings.mock_fail_rates.get(name, 0.0),
                capacity=cfg.max_concurrent_requests,
            )
        elif cfg.kind == "gemini":
            adapters[name] = GeminiProvider(cfg)
        else:
            adapters[name] = ChatCompletionsProvider(cfg)
    return adapters


def build_store(settings: RouterSettings) -> CounterStore:
    if settings.rate_store == "redis":
        return RedisCounterStore.from_url(settings.redis_url, timeout_ms=settings.store_timeout_ms)
    return MemoryCounterStore()


def build_engine(settings: RouterSettings, sinks: list[EventSink] | None = None) -> RoutingEngine:
    if settings.provider_mode == "live":
        for name in settings.enabled_providers():
            if not settings.providers[name].api_keys.configured():
                logger.warning(json.dumps({"message": "provider_settings_missing_key", "provider": name}))
    return RoutingEngine(
        settings,
        build_adapters(settings),
        sinks=sinks,
        store=build_store(settings),
    )
