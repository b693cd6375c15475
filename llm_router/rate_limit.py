"""Request/token rate windows and the daily cost guard.

Windows are fixed wall-clock buckets (minute, hour, UTC day). A counter is
incremented first and rolled back when it lands over its ceiling, so a denied
call is never counted and a burst straddling a bucket edge can see up to two
windows' worth of traffic.

If the counter store fails part way through a reservation, the increments that
already landed are undone before the error propagates.
"""

from __future__ import annotations

import json
import logging
import math
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone

from llm_router.config import CostOptimizationConfig, ProviderRateLimits, RateLimitingConfig
from llm_router.store import CounterStore, CounterStoreError

logger = logging.getLogger("llm-router")

MINUTE = 60
HOUR = 3600
DAY = 86400


@dataclass
class Reservation:
    provider: str
    estimated_tokens: int
    estimated_cost_usd: float
    day: str
    token_key: str
    cost_key: str | None
    entries: list[tuple[str, float]] = field(default_factory=list)
    state: str = "held"


@dataclass(frozen=True)
class RateDecision:
    allowed: bool
    reason: str | None = None
    scope: str | None = None
    retry_after_ms: int | None = None
    reservation: Reservation | None = None


@dataclass(frozen=True)
class ProviderUsage:
    requests_per_minute: int
    current_rpm: int
    tokens_per_minute: int
    current_tpm: int
    cost_today_usd: float
    tokens_today: int
    next_window_reset: float


@dataclass(frozen=True)
class GlobalWindow:
    limit: int
    remaining: int
    reset_epoch: int


class RateLimiter:
    def __init__(
        self,
        store: CounterStore,
        global_limits: RateLimitingConfig,
        provider_limits: dict[str, ProviderRateLimits],
        cost: CostOptimizationConfig,
        clock=time.time,
    ) -> None:
        self.store = store
        self.global_limits = global_limits
        self.provider_limits = provider_limits
        self.cost = cost
        self._clock = clock

    def _limits(self, provider: str) -> ProviderRateLimits:
        return self.provider_limits.get(provider) or ProviderRateLimits()

    def _day(self, now: float) -> str:
        return datetime.fromtimestamp(now, tz=timezone.utc).strftime("%Y-%m-%d")

    @staticmethod
    def _ms_until(now: float, window_s: int) -> int:
        return max(int(math.ceil(((now // window_s) + 1) * window_s - now) * 1000), 1)

    async def _rollback(self, entries: list[tuple[str, float]]) -> None:
        # Pops as it goes so a retried rollback never decrements a key twice.
        while entries:
            key, amount = entries[-1]
            await self.store.decr(key, amount)
            entries.pop()

    async def check_and_reserve(
        self,
        provider: str,
        estimated_tokens: int,
        estimated_cost_usd: float = 0.0,
    ) -> RateDecision:
        entries: list[tuple[str, float]] = []
        try:
            return await self._reserve(provider, estimated_tokens, estimated_cost_usd, entries)
        except CounterStoreError:
            if entries:
                try:
                    await self._rollback(entries)
                except CounterStoreError as exc:
                    payload = {
                        "message": "rate_rollback_failed",
                        "provider": provider,
                        "keys": [key for key, _ in entries],
                        "error": str(exc),
                    }
                    logger.warning(json.dumps(payload, separators=(",", ":")))
            raise

    async def _reserve(
        self,
        provider: str,
        estimated_tokens: int,
        estimated_cost_usd: float,
        entries: list[tuple[str, float]],
    ) -> RateDecision:
        now = self._clock()
        minute = int(now // MINUTE)
        hour = int(now // HOUR)
        day = self._day(now)

        global_checks = (
            (f"rl:global:req:m:{minute}", self.global_limits.requests_per_minute, MINUTE),
            (f"rl:global:req:h:{hour}", self.global_limits.requests_per_hour, HOUR),
        )
        for key, ceiling, window in global_checks:
            value = await self.store.incr(key, 1, window * 2)
            entries.append((key, 1))
            if value > ceiling:
                await self._rollback(entries)
                return RateDecision(
                    allowed=False,
                    reason="rate_limit",
                    scope="global",
                    retry_after_ms=self._ms_until(now, window),
                )

        cost_key = None
        if self.cost.enabled:
            cost_key = f"cost:{day}"
            value = await self.store.incr(cost_key, estimated_cost_usd, DAY * 2)
            entries.append((cost_key, estimated_cost_usd))
            if value > self.cost.daily_budget_usd:
                await self._rollback(entries)
                return RateDecision(
                    allowed=False,
                    reason="cost_limit",
                    scope="global",
                    retry_after_ms=self._ms_until(now, DAY),
                )

        limits = self._limits(provider)
        token_key = f"rl:{provider}:tok:m:{minute}"
        provider_checks = (
            (f"rl:{provider}:req:m:{minute}", 1, limits.requests_per_minute),
            (token_key, estimated_tokens, limits.tokens_per_minute),
        )
        for key, amount, ceiling in provider_checks:
            value = await self.store.incr(key, amount, MINUTE * 2)
            entries.append((key, amount))
            if value > ceiling:
                await self._rollback(entries)
                return RateDecision(
                    allowed=False,
                    reason="rate_limit",
                    scope="provider",
                    retry_after_ms=self._ms_until(now, MINUTE),
                )

        return RateDecision(
            allowed=True,
            reservation=Reservation(
                provider=provider,
                estimated_tokens=estimated_tokens,
                estimated_cost_usd=estimated_cost_usd,
                day=day,
                token_key=token_key,
                cost_key=cost_key,
                entries=list(entries),
            ),
        )

    async def release(self, reservation: Reservation) -> bool:
        """Return a held reservation's budget; a second call is a no-op."""
        if reservation.state != "held":
            return False
        reservation.state = "released"
        await self._rollback(reservation.entries)
        return True

    async def commit(self, reservation: Reservation, actual_tokens: int, actual_cost_usd: float) -> bool:
        if reservation.state != "held":
            return False
        reservation.state = "committed"
        limits = self._limits(reservation.provider)

        await self._reconcile(
            reservation.token_key,
            actual_tokens - reservation.estimated_tokens,
            limits.tokens_per_minute,
            MINUTE * 2,
        )
        if reservation.cost_key is not None:
            await self._reconcile(
                reservation.cost_key,
                actual_cost_usd - reservation.estimated_cost_usd,
                self.cost.daily_budget_usd,
                DAY * 2,
            )
        await self.store.incr(f"cost:{reservation.day}:{reservation.provider}", actual_cost_usd, DAY * 2)
        await self.store.incr(f"tok:{reservation.day}:{reservation.provider}", actual_tokens, DAY * 2)
        return True

    async def _reconcile(self, key: str, delta: float, ceiling: float, ttl_s: int) -> None:
        if delta < 0:
            await self.store.decr(key, -delta)
        elif delta > 0:
            headroom = ceiling - await self.store.get(key)
            if headroom > 0:
                await self.store.incr(key, min(delta, headroom), ttl_s)

    async def remaining_requests(self, provider: str) -> int:
        now = self._clock()
        minute = int(now // MINUTE)
        limits = self._limits(provider)
        used_requests = await self.store.get(f"rl:{provider}:req:m:{minute}")
        used_tokens = await self.store.get(f"rl:{provider}:tok:m:{minute}")
        if used_tokens >= limits.tokens_per_minute:
            return 0
        return max(int(limits.requests_per_minute - used_requests), 0)

    async def has_capacity(self, provider: str) -> bool:
        return await self.remaining_requests(provider) > 0

    async def daily_cost(self) -> float:
        return await self.store.get(f"cost:{self._day(self._clock())}")

    async def provider_usage(self, provider: str) -> ProviderUsage:
        now = self._clock()
        minute = int(now // MINUTE)
        day = self._day(now)
        limits = self._limits(provider)
        return ProviderUsage(
            requests_per_minute=limits.requests_per_minute,
            current_rpm=int(await self.store.get(f"rl:{provider}:req:m:{minute}")),
            tokens_per_minute=limits.tokens_per_minute,
            current_tpm=int(await self.store.get(f"rl:{provider}:tok:m:{minute}")),
            cost_today_usd=await self.store.get(f"cost:{day}:{provider}"),
            tokens_today=int(await self.store.get(f"tok:{day}:{provider}")),
            next_window_reset=(minute + 1) * MINUTE,
        )

    async def global_window(self) -> GlobalWindow:
        now = self._clock()
        minute = int(now // MINUTE)
        used = await self.store.get(f"rl:global:req:m:{minute}")
        limit = self.global_limits.requests_per_minute
        return GlobalWindow(
            limit=limit,
            remaining=max(int(limit - used), 0),
            reset_epoch=(minute + 1) * MINUTE,
        )
