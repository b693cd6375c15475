from llm_router.config import ProviderSettings

ZERO_PRICE = {"input": 0.0, "output": 0.0, "request": 0.0}


def pricing_map(providers: dict[str, ProviderSettings]) -> dict:
    return {
        name: {
            "input": cfg.costs.input_per_1k,
            "output": cfg.costs.output_per_1k,
            "request": cfg.costs.request_cost,
        }
        for name, cfg in providers.items()
    }


def cost_usd(
    provider: str,
    input_tokens: int,
    output_tokens: int,
    prices: dict,
) -> float:
    pricing = prices.get(provider, ZERO_PRICE)
    return (
        (input_tokens / 1000) * pricing["input"]
        + (output_tokens / 1000) * pricing["output"]
        + pricing["request"]
    )


def price_per_1k(provider: str, prices: dict) -> float:
    pricing = prices.get(provider, ZERO_PRICE)
    return pricing["input"] + pricing["output"]
