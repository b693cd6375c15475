from __future__ import annotations

import threading
import time
from collections import deque
from dataclasses import dataclass, replace
from types import MappingProxyType
from typing import Mapping

from llm_router.errors import ErrorKind, utc_now_iso

LATENCY_ALPHA = 0.3


@dataclass(frozen=True)
class ProviderHealthRecord:
    available: bool = True
    quota: int = 1
    latency_ms: float = 0.0
    error_rate: float = 0.0
    last_checked: str = ""
    active_key_id: str | None = None
    consecutive_failures: int = 0
    total_requests: int = 0
    successful_requests: int = 0
    failed_requests: int = 0
    last_error_kind: str | None = None
    retry_at: float | None = None


class _ProviderState:
    __slots__ = ("lock", "record", "outcomes")

    def __init__(self, window_size: int) -> None:
        self.lock = threading.Lock()
        self.record = ProviderHealthRecord(last_checked=utc_now_iso())
        self.outcomes: deque[bool] = deque(maxlen=window_size)


class ProviderHealthRegistry:
    """Rolling per-provider health.

    Records are immutable and swapped under a per-provider lock, so a snapshot
    never observes a half-applied outcome and never aliases internal state.

    An unavailable provider is re-admitted once ``recovery_timeout_s`` has
    passed (see ``release_recovered``). It keeps its failure streak, so a single
    further failure trips it again while a success clears it.
    """

    def __init__(
        self,
        providers: list[str] | None = None,
        window_size: int = 50,
        failure_threshold: int = 3,
        recovery_timeout_s: float = 60.0,
        clock=time.time,
    ) -> None:
        self._window_size = window_size
        self.failure_threshold = failure_threshold
        self.recovery_timeout_s = recovery_timeout_s
        self._clock = clock
        self._states: dict[str, _ProviderState] = {}
        self._states_lock = threading.Lock()
        for name in providers or []:
            self._state(name)

    def _state(self, provider: str) -> _ProviderState:
        state = self._states.get(provider)
        if state is None:
            with self._states_lock:
                state = self._states.setdefault(provider, _ProviderState(self._window_size))
        return state

    def get_snapshot(self) -> Mapping[str, ProviderHealthRecord]:
        return MappingProxyType({name: state.record for name, state in list(self._states.items())})

    def get(self, provider: str) -> ProviderHealthRecord:
        return self._state(provider).record

    def record_outcome(
        self,
        provider: str,
        success: bool,
        latency_ms: float,
        error_kind: ErrorKind | None = None,
        force_unavailable: bool = False,
    ) -> ProviderHealthRecord:
        state = self._state(provider)
        with state.lock:
            current = state.record
            state.outcomes.append(success)
            failures = sum(1 for ok in state.outcomes if not ok)
            error_rate = failures / len(state.outcomes)
            if current.total_requests == 0:
                latency = float(latency_ms)
            else:
                latency = LATENCY_ALPHA * latency_ms + (1 - LATENCY_ALPHA) * current.latency_ms

            if success:
                updated = replace(
                    current,
                    available=True,
                    latency_ms=latency,
                    error_rate=error_rate,
                    last_checked=utc_now_iso(),
                    consecutive_failures=0,
                    total_requests=current.total_requests + 1,
                    successful_requests=current.successful_requests + 1,
                    retry_at=None,
                )
            else:
                consecutive = current.consecutive_failures + 1
                available = current.available
                retry_at = current.retry_at
                if force_unavailable or consecutive >= self.failure_threshold:
                    available = False
                    retry_at = self._clock() + self.recovery_timeout_s
                updated = replace(
                    current,
                    available=available,
                    retry_at=retry_at,
                    latency_ms=latency,
                    error_rate=error_rate,
                    last_checked=utc_now_iso(),
                    consecutive_failures=consecutive,
                    total_requests=current.total_requests + 1,
                    failed_requests=current.failed_requests + 1,
                    last_error_kind=error_kind.value if error_kind else ErrorKind.UNKNOWN.value,
                )
            state.record = updated
            return updated

    def has_capacity(self, provider: str) -> bool:
        return self._state(provider).record.quota > 0

    def is_available(self, provider: str) -> bool:
        return self._state(provider).record.available

    def update_quota(self, provider: str, remaining: int) -> None:
        state = self._state(provider)
        with state.lock:
            state.record = replace(state.record, quota=max(int(remaining), 0))

    def set_active_key(self, provider: str, key_id: str | None) -> None:
        state = self._state(provider)
        with state.lock:
            if state.record.active_key_id != key_id:
                state.record = replace(state.record, active_key_id=key_id)

    def mark_available(self, provider: str) -> None:
        """Re-arm a provider after an external health check succeeded."""
        state = self._state(provider)
        with state.lock:
            state.record = replace(
                state.record,
                available=True,
                consecutive_failures=0,
                last_checked=utc_now_iso(),
                retry_at=None,
            )

    def release_recovered(self) -> list[str]:
        """Half-open every unavailable provider whose recovery timeout elapsed."""
        now = self._clock()
        released = []
        for name, state in list(self._states.items()):
            with state.lock:
                record = state.record
                if record.available or record.retry_at is None or record.retry_at > now:
                    continue
                state.record = replace(record, available=True, retry_at=None, last_checked=utc_now_iso())
            released.append(name)
        return released

    def reset(self) -> None:
        with self._states_lock:
            for state in self._states.values():
                with state.lock:
                    state.outcomes.clear()
                    state.record = ProviderHealthRecord(
                        last_checked=utc_now_iso(),
                        quota=state.record.quota,
                        active_key_id=state.record.active_key_id,
                    )
