from llm_router.complexity import ComplexityClassifier
from llm_router.config import ProviderCosts, RouterSettings, default_providers
from llm_router.health import ProviderHealthRecord
from llm_router.routing import ProviderSelector


def make_settings(**provider_updates) -> RouterSettings:
    providers = default_providers()
    for name, update in provider_updates.items():
        providers[name] = providers[name].model_copy(update=update)
    return RouterSettings(providers=providers)


def fresh_snapshot(**records):
    snapshot = {name: ProviderHealthRecord() for name in ("groq", "gemini", "cerebras")}
    snapshot.update(records)
    return snapshot


def test_base_chain_per_complexity():
    selector = ProviderSelector(make_settings())
    snapshot = fresh_snapshot()

    assert selector.select_chain("low", None, snapshot) == ["groq", "gemini", "cerebras"]
    assert selector.select_chain("medium", None, snapshot) == ["gemini", "groq", "cerebras"]
    assert selector.select_chain("high", None, snapshot) == ["cerebras", "gemini", "groq"]


def test_chain_is_deterministic_for_a_snapshot():
    selector = ProviderSelector(make_settings())
    snapshot = fresh_snapshot(groq=ProviderHealthRecord(latency_ms=300, error_rate=0.2))
    for level in ("low", "medium", "high"):
        chains = {tuple(selector.select_chain(level, None, snapshot)) for _ in range(5)}
        assert len(chains) == 1


def test_unavailable_and_exhausted_providers_are_filtered():
    selector = ProviderSelector(make_settings())
    snapshot = fresh_snapshot(
        groq=ProviderHealthRecord(available=False),
        cerebras=ProviderHealthRecord(quota=0),
    )
    assert selector.select_chain("low", None, snapshot) == ["gemini"]


def test_speed_preference_promotes_fastest():
    selector = ProviderSelector(make_settings())
    snapshot = fresh_snapshot(
        groq=ProviderHealthRecord(latency_ms=900),
        gemini=ProviderHealthRecord(latency_ms=100),
        cerebras=ProviderHealthRecord(latency_ms=500),
    )
    assert selector.select_chain("low", "speed", snapshot) == ["gemini", "cerebras", "groq"]


def test_speed_ties_break_on_error_rate():
    selector = ProviderSelector(make_settings())
    snapshot = fresh_snapshot(
        groq=ProviderHealthRecord(latency_ms=100, error_rate=0.5),
        gemini=ProviderHealthRecord(latency_ms=100, error_rate=0.0),
        cerebras=ProviderHealthRecord(latency_ms=100, error_rate=0.5),
    )
    assert selector.select_chain("low", "speed", snapshot) == ["gemini", "groq", "cerebras"]


def test_cost_preference_orders_by_price():
    settings = make_settings(
        groq={"costs": ProviderCosts(input_per_1k=0.002, output_per_1k=0.002)},
        gemini={"costs": ProviderCosts(input_per_1k=0.0001, output_per_1k=0.0001)},
        cerebras={"costs": ProviderCosts(input_per_1k=0.001, output_per_1k=0.001)},
    )
    selector = ProviderSelector(settings)
    assert selector.select_chain("high", "cost", fresh_snapshot()) == ["gemini", "cerebras", "groq"]


def test_quality_preference_uses_high_complexity_order():
    selector = ProviderSelector(make_settings())
    assert selector.select_chain("low", "quality", fresh_snapshot()) == ["cerebras", "gemini", "groq"]


def test_disabled_provider_is_not_configured():
    selector = ProviderSelector(make_settings(cerebras={"enabled": False}))
    analysis = ComplexityClassifier().classify("hello")
    selection = selector.select(analysis, None, fresh_snapshot())

    assert "cerebras" not in selection.chain
    assert [c.name for c in selection.candidates] == ["groq", "gemini"]


def test_empty_chain_when_nothing_is_available():
    selector = ProviderSelector(make_settings())
    snapshot = {name: ProviderHealthRecord(available=False) for name in ("groq", "gemini", "cerebras")}
    analysis = ComplexityClassifier().classify("hello")
    selection = selector.select(analysis, None, snapshot)

    assert selection.chain == ()
    assert selection.reasoning.startswith("No available providers")
    assert all(candidate.score == 0.0 for candidate in selection.candidates)


def test_candidates_cover_every_configured_provider():
    selector = ProviderSelector(make_settings())
    analysis = ComplexityClassifier().classify("Plan a 3-day weekend trip to Paris")
    snapshot = fresh_snapshot(cerebras=ProviderHealthRecord(quota=0))
    selection = selector.select(analysis, None, snapshot)

    by_name = {candidate.name: candidate for candidate in selection.candidates}
    assert set(by_name) == {"groq", "gemini", "cerebras"}
    assert all(0.0 <= candidate.score <= 1.0 for candidate in selection.candidates)
    assert by_name["groq"].score > by_name["gemini"].score > by_name["cerebras"].score
    assert by_name["cerebras"].has_capacity is False
    assert "cerebras (no capacity)" in selection.reasoning


def test_missing_snapshot_entry_is_treated_as_healthy():
    selector = ProviderSelector(make_settings())
    assert selector.select_chain("medium", None, {}) == ["gemini", "groq", "cerebras"]
