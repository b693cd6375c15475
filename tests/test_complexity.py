import pytest

from llm_router.complexity import ClassificationHints, ComplexityClassifier

COMPLEX_QUERY = (
    "First, compare and analyze the pros and cons of visiting multiple cities in Italy versus France "
    "for a family with kids on a budget under $3000. Then create a detailed day-by-day itinerary in "
    "JSON format with sections for each destination, and finally list alternatives."
)


def test_simple_trip_is_low():
    analysis = ComplexityClassifier().classify("Plan a 3-day weekend trip to Paris")
    assert analysis.level == "low"
    assert analysis.score < 0.3
    assert "travel_planning" in analysis.detected_patterns


def test_comparative_family_budget_query_is_medium():
    analysis = ComplexityClassifier().classify(
        "Compare the pros and cons of Rome versus Florence for a family trip on a budget."
    )
    assert analysis.level == "medium"
    assert "comparative_analysis" in analysis.detected_patterns
    assert "budget_constraint" in analysis.detected_patterns


def test_multi_step_analytical_itinerary_is_high():
    analysis = ComplexityClassifier().classify(COMPLEX_QUERY)
    assert analysis.level == "high"
    assert analysis.score >= 0.7
    for pattern in ("multi_destination", "group_travel", "itinerary_generation", "structured_output"):
        assert pattern in analysis.detected_patterns


def test_classification_is_deterministic():
    classifier = ComplexityClassifier()
    hints = ClassificationHints(context={"session_id": "s1", "groups": ["a", "b"]})
    first = classifier.classify(COMPLEX_QUERY, hints)
    second = classifier.classify(COMPLEX_QUERY, hints)
    assert (first.level, first.score) == (second.level, second.score)
    assert first == second


@pytest.mark.parametrize("hint", ["low", "medium", "high"])
@pytest.mark.parametrize("query", ["hi", COMPLEX_QUERY, "x" * 7000, ""])
def test_complexity_hint_wins(hint, query):
    analysis = ComplexityClassifier().classify(query, ClassificationHints(complexity_hint=hint))
    assert analysis.level == hint
    assert analysis.detected_patterns == ("complexity_hint",)
    assert "hint" in analysis.reasoning


def test_unknown_hint_raises():
    with pytest.raises(ValueError):
        ComplexityClassifier().classify("hi", ClassificationHints(complexity_hint="extreme"))


def test_empty_query_is_low():
    analysis = ComplexityClassifier().classify("   ")
    assert analysis.level == "low"
    assert analysis.score == 0.0
    assert "empty" in analysis.reasoning


def test_extremely_long_query_is_high():
    analysis = ComplexityClassifier().classify("word " * 1500)
    assert analysis.level == "high"
    assert analysis.score == 1.0
    assert "extremely_long_query" in analysis.detected_patterns


def test_factors_are_reported_with_weights():
    analysis = ComplexityClassifier().classify("Compare hotels in Rome")
    types = [factor.type for factor in analysis.factors]
    assert types == ["query_length", "multi_step", "analytical", "travel_domain", "output_format", "context_depth"]
    assert sum(factor.weight for factor in analysis.factors) == pytest.approx(1.0)
    assert all(0.0 <= factor.value <= 1.0 for factor in analysis.factors)


def test_context_raises_score():
    classifier = ComplexityClassifier()
    query = "Suggest a weekend trip to Lisbon"
    plain = classifier.classify(query)
    rich = classifier.classify(
        query,
        ClassificationHints(
            context={
                "session_id": "abc",
                "user_preference": "quality",
                "max_tokens": 4000,
                "groups": ["adults", "kids"],
            }
        ),
    )
    assert rich.score > plain.score


def test_token_estimate_is_quarter_of_length():
    assert ComplexityClassifier().classify("a" * 41).token_estimate == 11


def test_thresholds_are_configurable():
    classifier = ComplexityClassifier(low_threshold=0.01, high_threshold=0.02)
    assert classifier.classify("Plan a 3-day weekend trip to Paris").level == "high"
    assert classifier.level_for(0.015) == "medium"
