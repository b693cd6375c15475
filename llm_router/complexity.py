"""Heuristic query complexity classification.

Scores a query on a handful of independent weighted factors, sums them into a
bounded score in [0, 1] and maps the score onto low / medium / high with two
thresholds. A caller-supplied complexity hint wins outright.
"""

from __future__ import annotations

import math
import re
from dataclasses import dataclass, field
from typing import Any

from llm_router.schemas import COMPLEXITY_LEVELS, ComplexityAnalysis, ComplexityFactor

FACTOR_WEIGHTS = {
    "query_length": 0.2,
    "multi_step": 0.25,
    "analytical": 0.2,
    "travel_domain": 0.2,
    "output_format": 0.1,
    "context_depth": 0.05,
}

EXTREMELY_LONG_CHARS = 6000

SEQUENCE_RE = re.compile(
    r"\b(first|second|third|then|next|after|afterwards|before|finally|lastly|step|steps|day \d+)\b",
    re.IGNORECASE,
)
ENUMERATION_RE = re.compile(r"(?m)^\s*(?:\d+[.)]|[-*•])\s+")
ANALYTICAL_RE = re.compile(
    r"\b(analy[sz]e|analysis|compare|comparison|contrast|evaluate|assess|optimi[sz]e|"
    r"prioriti[sz]e|weigh|versus|vs\.?|trade-?offs?|pros and cons)\b",
    re.IGNORECASE,
)
MULTI_DESTINATION_RE = re.compile(
    r"\b(multi[- ]?city|multi[- ]?destination|multiple (?:cities|destinations|countries)|"
    r"destinations|cities|countries|stops|road ?trip)\b",
    re.IGNORECASE,
)
GROUP_RE = re.compile(
    r"\b(group|groups|family|families|kids|children|toddlers|seniors|elderly|travell?ers|"
    r"couples|friends|wheelchair|accessib\w*)\b",
    re.IGNORECASE,
)
BUDGET_RE = re.compile(
    r"(\bbudget\b|\bunder \$?\d+|\$\s?\d+|\b\d+\s?(?:usd|eur|dollars|euros)\b|\bafford\w*|\bcheap\w*)",
    re.IGNORECASE,
)
ITINERARY_RE = re.compile(r"\bitinerar(?:y|ies)\b", re.IGNORECASE)
TRAVEL_RE = re.compile(r"\b(travel|trip|vacation|holiday|getaway|weekend)\b", re.IGNORECASE)
STRUCTURED_RE = re.compile(r"\b(json|format|structure[d]?|schema)\b", re.IGNORECASE)
LIST_RE = re.compile(r"\b(table|list|bullets?)\b", re.IGNORECASE)
DETAIL_RE = re.compile(r"\b(detailed|comprehensive|complete|in-depth|thorough)\b", re.IGNORECASE)
SECTION_RE = re.compile(r"\b(sections?|parts?|chapters?)\b", re.IGNORECASE)


@dataclass(frozen=True)
class ClassificationHints:
    complexity_hint: str | None = None
    context: dict[str, Any] = field(default_factory=dict)


class ComplexityClassifier:
    def __init__(
        self,
        low_threshold: float = 0.3,
        high_threshold: float = 0.7,
        weights: dict[str, float] | None = None,
    ) -> None:
        self.low_threshold = low_threshold
        self.high_threshold = high_threshold
        self.weights = dict(weights or FACTOR_WEIGHTS)

    def classify(self, query: str, hints: ClassificationHints | None = None) -> ComplexityAnalysis:
        hints = hints or ClassificationHints()
        token_estimate = math.ceil(len(query) / 4)

        if hints.complexity_hint is not None:
            if hints.complexity_hint not in COMPLEXITY_LEVELS:
                raise ValueError(f"unknown complexity hint {hints.complexity_hint!r}")
            level = hints.complexity_hint
            return ComplexityAnalysis(
                level=level,
                score=self._nominal_score(level),
                detected_patterns=("complexity_hint",),
                reasoning=f"Complexity level: {level} (caller hint; heuristic scoring skipped)",
                token_estimate=token_estimate,
            )

        if not query.strip():
            return ComplexityAnalysis(
                level="low",
                score=0.0,
                reasoning="Complexity level: low (empty query; conservative default)",
                token_estimate=token_estimate,
            )

        if len(query) > EXTREMELY_LONG_CHARS:
            return ComplexityAnalysis(
                level="high",
                score=1.0,
                detected_patterns=("extremely_long_query",),
                reasoning=(
                    f"Complexity level: high (query of {len(query)} characters exceeds "
                    f"{EXTREMELY_LONG_CHARS}; conservative default)"
                ),
                token_estimate=token_estimate,
            )

        factors = [
            self._query_length(query),
            self._multi_step(query),
            self._analytical(query),
            self._travel_domain(query),
            self._output_format(query),
            self._context_depth(hints.context),
        ]
        total_weight = sum(f.weight for f in factors)
        score = sum(f.value * f.weight for f in factors) / total_weight if total_weight else 0.0
        score = round(min(max(score, 0.0), 1.0), 4)
        level = self.level_for(score)

        return ComplexityAnalysis(
            level=level,
            score=score,
            detected_patterns=tuple(self._patterns(query, factors)),
            reasoning=self._reasoning(factors, level, score),
            token_estimate=token_estimate,
            factors=tuple(factors),
        )

    def level_for(self, score: float) -> str:
        if score >= self.high_threshold:
            return "high"
        if score >= self.low_threshold:
            return "medium"
        return "low"

    def _nominal_score(self, level: str) -> float:
        if level == "high":
            return self.high_threshold
        if level == "medium":
            return self.low_threshold
        return 0.0

    def _factor(self, kind: str, value: float, description: str) -> ComplexityFactor:
        return ComplexityFactor(
            type=kind,
            weight=self.weights.get(kind, 0.0),
            value=round(min(max(value, 0.0), 1.0), 4),
            description=description,
        )

    def _query_length(self, query: str) -> ComplexityFactor:
        length = len(query)
        words = len(query.split())
        if length < 100:
            value = 0.1
        elif length < 300:
            value = 0.3
        elif length < 800:
            value = 0.6
        else:
            value = 0.9
        return self._factor("query_length", value, f"Query has {words} words ({length} characters)")

    def _multi_step(self, query: str) -> ComplexityFactor:
        count = len(SEQUENCE_RE.findall(query)) + len(ENUMERATION_RE.findall(query))
        return self._factor("multi_step", count * 0.25, f"Found {count} sequencing indicators")

    def _analytical(self, query: str) -> ComplexityFactor:
        count = len(ANALYTICAL_RE.findall(query))
        return self._factor("analytical", count * 0.35, f"Found {count} analytical or comparative terms")

    def _travel_domain(self, query: str) -> ComplexityFactor:
        markers = [
            name
            for name, pattern in (
                ("multi_destination", MULTI_DESTINATION_RE),
                ("group_travel", GROUP_RE),
                ("budget_constraint", BUDGET_RE),
            )
            if pattern.search(query)
        ]
        value = 0.3 * len(markers)
        if ITINERARY_RE.search(query):
            value += 0.1
        described = ", ".join(markers) if markers else "none"
        return self._factor("travel_domain", value, f"Travel complexity markers: {described}")

    def _output_format(self, query: str) -> ComplexityFactor:
        value = 0.0
        if STRUCTURED_RE.search(query):
            value += 0.3
        if LIST_RE.search(query):
            value += 0.2
        if DETAIL_RE.search(query):
            value += 0.3
        if SECTION_RE.search(query):
            value += 0.2
        return self._factor("output_format", value, f"Output format complexity {min(value, 1.0):.2f}")

    def _context_depth(self, context: dict[str, Any]) -> ComplexityFactor:
        points = 0.0
        if context.get("session_id"):
            points += 1
        if context.get("user_preference"):
            points += 1
        if (context.get("max_tokens") or 0) > 2000:
            points += 1
        temperature = context.get("temperature")
        if temperature is not None and temperature != 0.7:
            points += 0.5
        if context.get("stop_sequences"):
            points += 0.5
        if len(context.get("groups") or ()) > 1:
            points += 1
        if len(context.get("inclusions") or ()) > 3:
            points += 1
        return self._factor("context_depth", points * 0.25, f"Context complexity from {points:g} factors")

    def _patterns(self, query: str, factors: list[ComplexityFactor]) -> list[str]:
        by_type = {f.type: f for f in factors}
        patterns = []
        if TRAVEL_RE.search(query):
            patterns.append("travel_planning")
        if ITINERARY_RE.search(query):
            patterns.append("itinerary_generation")
        if MULTI_DESTINATION_RE.search(query):
            patterns.append("multi_destination")
        if GROUP_RE.search(query):
            patterns.append("group_travel")
        if BUDGET_RE.search(query):
            patterns.append("budget_constraint")
        if by_type["multi_step"].value >= 0.5:
            patterns.append("multi_step_reasoning")
        if by_type["analytical"].value >= 0.35:
            patterns.append("comparative_analysis")
        if by_type["output_format"].value >= 0.5:
            patterns.append("structured_output")
        if sum(1 for f in factors if f.value > 0.7) > 2:
            patterns.append("high_complexity_multi_factor")
        return patterns

    def _reasoning(self, factors: list[ComplexityFactor], level: str, score: float) -> str:
        top = sorted(factors, key=lambda f: f.value * f.weight, reverse=True)[:3]
        described = ", ".join(f.description for f in top)
        return f"Complexity level: {level} (score: {score:.3f}). Key factors: {described}"
