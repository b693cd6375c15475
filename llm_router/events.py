from __future__ import annotations

import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any

from llm_router import metrics
from llm_router.errors import utc_now_iso

logger = logging.getLogger("llm-router")


@dataclass(frozen=True)
class RoutingEvent:
    """One state transition of a routed request.

    stage is one of: classified, selected, skipped, rate_limited, attempt,
    failed, fallback, succeeded, rejected, exhausted, completed.
    """

    stage: str
    request_id: str
    provider: str | None = None
    data: dict[str, Any] = field(default_factory=dict)
    timestamp: str = field(default_factory=utc_now_iso)

    def to_dict(self) -> dict[str, Any]:
        payload = {"stage": self.stage, "request_id": self.request_id, "timestamp": self.timestamp}
        if self.provider is not None:
            payload["provider"] = self.provider
        payload.update(self.data)
        return payload


class EventSink(ABC):
    @abstractmethod
    def emit(self, event: RoutingEvent) -> None:
        raise NotImplementedError


class LogEventSink(EventSink):
    def emit(self, event: RoutingEvent) -> None:
        payload = {"message": "routing_event", **event.to_dict()}
        logger.info(json.dumps(payload, separators=(",", ":"), default=str))


class MetricsEventSink(EventSink):
    def emit(self, event: RoutingEvent) -> None:
        data = event.data
        if event.stage == "succeeded":
            metrics.ROUTED_REQUESTS_TOTAL.labels(event.provider, data.get("complexity", "unknown")).inc()
            metrics.TOKENS_TOTAL.labels(event.provider).inc(data.get("total_tokens", 0))
            metrics.COST_TOTAL.labels(event.provider).inc(data.get("cost_usd", 0.0))
            metrics.PROVIDER_ATTEMPT_DURATION.labels(event.provider).observe(data.get("latency_ms", 0) / 1000)
        elif event.stage == "failed":
            metrics.PROVIDER_ERRORS_TOTAL.labels(event.provider, data.get("error_kind", "UNKNOWN")).inc()
            metrics.PROVIDER_ATTEMPT_DURATION.labels(event.provider).observe(data.get("latency_ms", 0) / 1000)
        elif event.stage == "fallback":
            metrics.FALLBACK_TOTAL.labels(
                data.get("from_provider", "none"),
                event.provider,
                data.get("reason", "unknown"),
            ).inc()
        elif event.stage == "rate_limited":
            metrics.RATE_LIMITED_TOTAL.labels(data.get("scope", "provider"), data.get("reason", "rate_limit")).inc()


def default_sinks() -> list[EventSink]:
    return [LogEventSink(), MetricsEventSink()]
