import asyncio

from llm_router.config import ApiKeys, ProviderRateLimits, RouterSettings, default_providers
from llm_router.engine import RoutingEngine
from llm_router.errors import ErrorKind
from llm_router.mock_provider import MockProvider
from llm_router.status import build_provider_status


def make_engine(**provider_updates) -> RoutingEngine:
    providers = default_providers()
    for name, update in provider_updates.items():
        providers[name] = providers[name].model_copy(update=update)
    settings = RouterSettings(providers=providers)
    adapters = {name: MockProvider(name, delay_ms=0) for name in providers}
    return RoutingEngine(settings, adapters, sinks=[])


def test_status_reports_every_provider():
    engine = make_engine()
    status = asyncio.run(build_provider_status(engine))

    assert status.healthy is True
    assert [p.name for p in status.providers] == ["groq", "gemini", "cerebras"]
    groq = status.providers[0]
    assert groq.complexity == "low"
    assert groq.routing.priority == 1
    assert groq.rate_limits.requests_per_minute == 30
    assert groq.keys == []


def test_status_lists_keys_and_active_key():
    engine = make_engine(groq={"api_keys": ApiKeys(primary="k1", secondary="k2")})
    engine.key_rings["groq"].record_failure("groq-primary", ErrorKind.AUTH_FAILURE)
    asyncio.run(engine.refresh_capacity())
    status = asyncio.run(build_provider_status(engine))

    groq = status.providers[0]
    assert [key.key_id for key in groq.keys] == ["groq-primary", "groq-secondary"]
    assert groq.keys[0].flagged is True
    assert [key.is_active for key in groq.keys] == [False, True]
    assert groq.active_key_id == "groq-secondary"


def test_status_reflects_exhausted_window():
    engine = make_engine(groq={"rate_limits": ProviderRateLimits(requests_per_minute=1)})

    async def run():
        await engine.limiter.check_and_reserve("groq", 10)
        return await build_provider_status(engine)

    status = asyncio.run(run())
    groq = status.providers[0]
    assert groq.has_capacity is False
    assert groq.rate_limits.current_rpm == 1
    assert status.healthy is True


def test_unhealthy_when_nothing_is_available():
    engine = make_engine()
    for name in ("groq", "gemini", "cerebras"):
        engine.registry.record_outcome(name, False, 0, ErrorKind.SERVER_ERROR, force_unavailable=True)

    status = asyncio.run(build_provider_status(engine))
    assert status.healthy is False
    assert all(p.metrics.failed_requests == 1 for p in status.providers)
