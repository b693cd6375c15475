from __future__ import annotations

import asyncio
import time
from abc import ABC, abstractmethod

from redis.asyncio import Redis
from redis.exceptions import RedisError

SWEEP_INTERVAL_S = 30


class CounterStoreError(RuntimeError):
    """The counter backend could not be reached in time."""


class CounterStore(ABC):
    """Expiring numeric counters backing rate windows and the cost ledger."""

    @abstractmethod
    async def incr(self, key: str, amount: float, ttl_s: int) -> float:
        raise NotImplementedError

    @abstractmethod
    async def decr(self, key: str, amount: float) -> float:
        raise NotImplementedError

    @abstractmethod
    async def get(self, key: str) -> float:
        raise NotImplementedError

    async def close(self) -> None:
        return None


class MemoryCounterStore(CounterStore):
    def __init__(self, clock=time.time, sweep_interval_s: float = SWEEP_INTERVAL_S) -> None:
        self._clock = clock
        self._values: dict[str, tuple[float, float]] = {}
        self._sweep_interval_s = sweep_interval_s
        self._next_sweep = clock() + sweep_interval_s

    def _sweep(self) -> None:
        now = self._clock()
        if now < self._next_sweep:
            return
        self._next_sweep = now + self._sweep_interval_s
        for key in [key for key, (_, expires_at) in self._values.items() if expires_at <= now]:
            del self._values[key]

    def _live(self, key: str) -> tuple[float, float] | None:
        entry = self._values.get(key)
        if entry is None:
            return None
        if entry[1] <= self._clock():
            del self._values[key]
            return None
        return entry

    async def incr(self, key: str, amount: float, ttl_s: int) -> float:
        self._sweep()
        entry = self._live(key)
        if entry is None:
            entry = (0.0, self._clock() + ttl_s)
        value = entry[0] + amount
        self._values[key] = (value, entry[1])
        return value

    async def decr(self, key: str, amount: float) -> float:
        entry = self._live(key)
        if entry is None:
            return 0.0
        value = max(entry[0] - amount, 0.0)
        self._values[key] = (value, entry[1])
        return value

    async def get(self, key: str) -> float:
        entry = self._live(key)
        return entry[0] if entry else 0.0


class RedisCounterStore(CounterStore):
    """Shared counters; every call is bounded by `timeout_ms`.

    Backend failures and timeouts surface as ``CounterStoreError``.
    """

    def __init__(self, client: Redis, timeout_ms: int = 250) -> None:
        self._client = client
        self._timeout_s = timeout_ms / 1000

    @classmethod
    def from_url(cls, url: str, timeout_ms: int = 250) -> "RedisCounterStore":
        return cls(Redis.from_url(url, decode_responses=True), timeout_ms=timeout_ms)

    async def _bounded(self, awaitable):
        try:
            return await asyncio.wait_for(awaitable, timeout=self._timeout_s)
        except asyncio.TimeoutError as exc:
            raise CounterStoreError(f"redis call exceeded {int(self._timeout_s * 1000)}ms") from exc
        except RedisError as exc:
            raise CounterStoreError(f"redis unavailable: {exc}") from exc

    async def incr(self, key: str, amount: float, ttl_s: int) -> float:
        # NX keeps the window's original expiry on every later increment.
        pipe = self._client.pipeline(transaction=True)
        pipe.set(key, 0, ex=ttl_s, nx=True)
        pipe.incrbyfloat(key, amount)
        _, value = await self._bounded(pipe.execute())
        return float(value)

    async def decr(self, key: str, amount: float) -> float:
        if not await self._bounded(self._client.exists(key)):
            return 0.0
        value = float(await self._bounded(self._client.incrbyfloat(key, -amount)))
        if value < 0:
            await self._bounded(self._client.set(key, 0, keepttl=True))
            return 0.0
        return value

    async def get(self, key: str) -> float:
        raw = await self._bounded(self._client.get(key))
        return float(raw) if raw is not None else 0.0

    async def close(self) -> None:
        await self._client.close()
