from __future__ import annotations

from typing import TYPE_CHECKING

from llm_router.errors import utc_now_iso
from llm_router.health import ProviderHealthRecord
from llm_router.schemas import (
    KeyStatusInfo,
    ProviderMetricsInfo,
    ProviderRateLimitInfo,
    ProviderRoutingInfo,
    ProviderStatusInfo,
    ProviderStatusResponse,
)

if TYPE_CHECKING:
    from llm_router.engine import RoutingEngine


async def build_provider_status(engine: "RoutingEngine") -> ProviderStatusResponse:
    snapshot = engine.registry.get_snapshot()
    providers = []
    for name, cfg in engine.settings.providers.items():
        record = snapshot.get(name) or ProviderHealthRecord()
        usage = await engine.limiter.provider_usage(name)
        has_capacity = usage.current_rpm < usage.requests_per_minute and usage.current_tpm < usage.tokens_per_minute

        keys = []
        ring = engine.key_rings.get(name)
        if ring is not None:
            for key, active in ring.snapshot():
                keys.append(
                    KeyStatusInfo(
                        key_id=key.key_id,
                        type=key.type,
                        is_active=active,
                        quota_used=key.quota_used,
                        quota_limit=key.quota_limit,
                        quota_reset_time=key.quota_reset_time,
                        error_count=key.error_count,
                        success_rate=round(key.success_rate, 4),
                        avg_latency_ms=round(key.avg_latency_ms, 2),
                        flagged=key.flagged,
                    )
                )

        providers.append(
            ProviderStatusInfo(
                name=name,
                is_available=cfg.enabled and record.available,
                has_capacity=has_capacity,
                complexity=cfg.routing.preferred_complexity,
                routing=ProviderRoutingInfo(
                    weight=cfg.routing.weight,
                    priority=cfg.routing.priority,
                    preferred_complexity=cfg.routing.preferred_complexity,
                ),
                metrics=ProviderMetricsInfo(
                    total_requests=record.total_requests,
                    successful_requests=record.successful_requests,
                    failed_requests=record.failed_requests,
                    avg_latency_ms=round(record.latency_ms, 2),
                    error_rate=round(record.error_rate, 4),
                    total_cost_usd=round(usage.cost_today_usd, 6),
                    tokens_used=usage.tokens_today,
                ),
                rate_limits=ProviderRateLimitInfo(
                    requests_per_minute=usage.requests_per_minute,
                    current_rpm=usage.current_rpm,
                    tokens_per_minute=usage.tokens_per_minute,
                    current_tpm=usage.current_tpm,
                ),
                keys=keys,
                active_key_id=record.active_key_id,
                last_health_check=record.last_checked,
                next_quota_reset=usage.next_window_reset,
            )
        )

    return ProviderStatusResponse(
        timestamp=utc_now_iso(),
        healthy=any(p.is_available and p.has_capacity for p in providers),
        providers=providers,
    )
