from __future__ import annotations

from dataclasses import dataclass
from typing import Mapping

from llm_router.config import RouterSettings
from llm_router.health import ProviderHealthRecord
from llm_router.pricing import cost_usd, price_per_1k, pricing_map
from llm_router.schemas import COMPLEXITY_LEVELS, ComplexityAnalysis, ProviderCandidate

LATENCY_CEILING_MS = 10000.0


@dataclass(frozen=True)
class Selection:
    chain: tuple[str, ...]
    candidates: tuple[ProviderCandidate, ...]
    reasoning: str


class ProviderSelector:
    """Orders providers for one request from a fixed per-complexity table.

    The chain keeps only providers that are configured, available and have
    capacity. A preference re-ranks within that set; ties fall back to lower
    latency, then lower error rate, then table order, so an identical
    snapshot always yields an identical chain.
    """

    def __init__(self, settings: RouterSettings, prices: dict | None = None) -> None:
        self.settings = settings
        self.prices = prices if prices is not None else pricing_map(settings.providers)

    def base_order(self, level: str) -> list[str]:
        enabled = self.settings.enabled_providers()
        order = [name for name in self.settings.base_chains.get(level, []) if name in enabled]
        order.extend(name for name in enabled if name not in order)
        return order

    def select_chain(
        self,
        level: str,
        preference: str | None,
        snapshot: Mapping[str, ProviderHealthRecord],
    ) -> list[str]:
        base = self.base_order(level)
        eligible = [name for name in base if self._eligible(snapshot.get(name))]
        return sorted(eligible, key=lambda name: self._rank_key(name, base, preference, snapshot))

    def select(
        self,
        analysis: ComplexityAnalysis,
        preference: str | None,
        snapshot: Mapping[str, ProviderHealthRecord],
    ) -> Selection:
        chain = self.select_chain(analysis.level, preference, snapshot)
        candidates = tuple(
            self._candidate(name, analysis, snapshot.get(name) or ProviderHealthRecord())
            for name in self.base_order(analysis.level)
        )
        return Selection(
            chain=tuple(chain),
            candidates=candidates,
            reasoning=self._reasoning(analysis.level, preference, chain, candidates),
        )

    @staticmethod
    def _eligible(record: ProviderHealthRecord | None) -> bool:
        if record is None:
            return True
        return record.available and record.quota > 0

    def _rank_key(
        self,
        name: str,
        base: list[str],
        preference: str | None,
        snapshot: Mapping[str, ProviderHealthRecord],
    ) -> tuple:
        record = snapshot.get(name) or ProviderHealthRecord()
        position = base.index(name)
        if preference == "speed":
            primary: float = record.latency_ms
        elif preference == "cost":
            primary = price_per_1k(name, self.prices)
        elif preference == "quality":
            quality = self.base_order("high")
            primary = quality.index(name)
        else:
            primary = position
        return (primary, record.latency_ms, record.error_rate, position)

    def _candidate(
        self,
        name: str,
        analysis: ComplexityAnalysis,
        record: ProviderHealthRecord,
    ) -> ProviderCandidate:
        routing = self.settings.providers[name].routing
        distance = abs(
            COMPLEXITY_LEVELS.index(routing.preferred_complexity) - COMPLEXITY_LEVELS.index(analysis.level)
        )
        score = {0: 0.4, 1: 0.2}.get(distance, 0.0)
        score += 0.3 * (1 - record.error_rate)
        score += 0.2 * (1 - min(record.latency_ms / LATENCY_CEILING_MS, 1.0))
        score += 0.1 * min(routing.weight, 1.0)
        has_capacity = record.quota > 0
        if not record.available:
            score = 0.0
        elif not has_capacity:
            score *= 0.3
        return ProviderCandidate(
            name=name,
            score=round(min(max(score, 0.0), 1.0), 4),
            available=record.available,
            has_capacity=has_capacity,
            estimated_latency=record.latency_ms,
            estimated_cost=cost_usd(name, analysis.token_estimate, analysis.token_estimate, self.prices),
        )

    @staticmethod
    def _reasoning(
        level: str,
        preference: str | None,
        chain: list[str],
        candidates: tuple[ProviderCandidate, ...],
    ) -> str:
        filtered = [
            f"{c.name} ({'unavailable' if not c.available else 'no capacity'})"
            for c in candidates
            if not c.available or not c.has_capacity
        ]
        suffix = f"; filtered: {', '.join(filtered)}" if filtered else ""
        if not chain:
            return f"No available providers for {level} complexity{suffix}"
        pref = f", {preference} preference" if preference else ""
        return f"Selected {chain[0]} for {level} complexity{pref}; chain: {' -> '.join(chain)}{suffix}"
