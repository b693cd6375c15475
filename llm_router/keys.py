"""Per-provider API key rotation.

Each provider carries up to three keys (primary, secondary, tertiary). Exactly
one is active at a time; the active key changes when it is flagged after an
auth failure, runs out of quota for its window, or keeps failing.
"""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass, field, replace

from llm_router.config import ApiKeys, KeyRotationSettings
from llm_router.errors import ErrorKind


@dataclass
class ApiKeyRecord:
    key_id: str
    type: str
    quota_limit: int
    quota_reset_time: float
    value: str = field(default="", repr=False)
    quota_used: int = 0
    error_count: int = 0
    consecutive_errors: int = 0
    success_count: int = 0
    request_count: int = 0
    avg_latency_ms: float = 0.0
    flagged: bool = False

    @property
    def success_rate(self) -> float:
        if self.request_count == 0:
            return 1.0
        return self.success_count / self.request_count

    @property
    def usable(self) -> bool:
        return not self.flagged and self.quota_used < self.quota_limit


class KeyRing:
    def __init__(
        self,
        provider: str,
        keys: ApiKeys,
        rotation: KeyRotationSettings | None = None,
        clock=time.time,
    ) -> None:
        self.provider = provider
        self.rotation = rotation or KeyRotationSettings()
        self._clock = clock
        self._lock = threading.Lock()
        now = clock()
        configured = keys.configured()
        if not self.rotation.enabled:
            configured = configured[:1]
        self._keys = [
            ApiKeyRecord(
                key_id=f"{provider}-{key_type}",
                type=key_type,
                value=value,
                quota_limit=self.rotation.quota_limit,
                quota_reset_time=now + self.rotation.quota_window_s,
            )
            for key_type, value in configured
        ]
        self._active = 0

    @property
    def has_keys(self) -> bool:
        return bool(self._keys)

    @property
    def active_key_id(self) -> str | None:
        with self._lock:
            if not self._keys or not self._keys[self._active].usable:
                return None
            return self._keys[self._active].key_id

    def snapshot(self) -> list[tuple[ApiKeyRecord, bool]]:
        """Copies of every key with its active flag."""
        with self._lock:
            self._refresh_quotas()
            return [(replace(key), index == self._active) for index, key in enumerate(self._keys)]

    def acquire(self) -> ApiKeyRecord | None:
        with self._lock:
            self._refresh_quotas()
            if not self._keys:
                return None
            if not self._keys[self._active].usable and not self._rotate():
                return None
            return replace(self._keys[self._active])

    def record_success(self, key_id: str, tokens: int, latency_ms: float) -> None:
        with self._lock:
            key = self._find(key_id)
            if key is None:
                return
            key.request_count += 1
            key.success_count += 1
            key.consecutive_errors = 0
            key.quota_used = min(key.quota_used + max(int(tokens), 0), key.quota_limit)
            if key.success_count == 1:
                key.avg_latency_ms = float(latency_ms)
            else:
                key.avg_latency_ms += (latency_ms - key.avg_latency_ms) / key.success_count

    def record_failure(self, key_id: str, kind: ErrorKind) -> bool:
        """Record a failed call; returns whether the provider still has a usable key."""
        with self._lock:
            key = self._find(key_id)
            if key is None:
                return self._any_usable()
            key.request_count += 1
            key.error_count += 1
            key.consecutive_errors += 1
            if kind == ErrorKind.AUTH_FAILURE:
                key.flagged = True
            if key.flagged or key.consecutive_errors >= self.rotation.failover_threshold:
                key.consecutive_errors = 0
                if self._keys[self._active] is key:
                    self._rotate()
            return self._any_usable()

    def rotate(self) -> bool:
        with self._lock:
            return self._rotate()

    def reset(self) -> None:
        with self._lock:
            for key in self._keys:
                key.flagged = False
                key.consecutive_errors = 0
            self._active = 0

    def _find(self, key_id: str) -> ApiKeyRecord | None:
        for key in self._keys:
            if key.key_id == key_id:
                return key
        return None

    def _any_usable(self) -> bool:
        return any(key.usable for key in self._keys)

    def _refresh_quotas(self) -> None:
        now = self._clock()
        for key in self._keys:
            if now >= key.quota_reset_time:
                key.quota_used = 0
                key.quota_reset_time = now + self.rotation.quota_window_s

    def _rotate(self) -> bool:
        if not self._keys:
            return False
        candidates = [index for index, key in enumerate(self._keys) if key.usable and index != self._active]
        if not candidates:
            return self._keys[self._active].usable

        strategy = self.rotation.strategy
        if strategy == "quota-based":
            self._active = min(
                candidates,
                key=lambda i: (self._keys[i].quota_used / self._keys[i].quota_limit, i),
            )
        elif strategy == "performance-based":
            self._active = min(
                candidates,
                key=lambda i: (-self._keys[i].success_rate, self._keys[i].avg_latency_ms, i),
            )
        else:
            size = len(self._keys)
            self._active = min(candidates, key=lambda i: (i - self._active) % size)
        return True
