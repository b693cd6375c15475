from __future__ import annotations

import os
from typing import Literal

from pydantic import BaseModel, Field, model_validator

from llm_router.schemas import ComplexityLevel

KeyStrategy = Literal["round-robin", "quota-based", "performance-based"]


class ProviderRateLimits(BaseModel):
    requests_per_minute: int = Field(default=60, gt=0)
    tokens_per_minute: int = Field(default=60000, gt=0)


class ProviderCosts(BaseModel):
    input_per_1k: float = Field(default=0.0, ge=0)
    output_per_1k: float = Field(default=0.0, ge=0)
    request_cost: float = Field(default=0.0, ge=0)


class ProviderRouting(BaseModel):
    weight: float = Field(default=1.0, ge=0)
    priority: int = 1
    preferred_complexity: ComplexityLevel = "medium"


class KeyRotationSettings(BaseModel):
    enabled: bool = True
    strategy: KeyStrategy = "round-robin"
    failover_threshold: int = Field(default=3, gt=0)
    quota_limit: int = Field(default=1_000_000, gt=0)
    quota_window_s: int = Field(default=86400, gt=0)


class ApiKeys(BaseModel):
    primary: str | None = None
    secondary: str | None = None
    tertiary: str | None = None

    def configured(self) -> list[tuple[str, str]]:
        return [
            (key_type, value)
            for key_type, value in (
                ("primary", self.primary),
                ("secondary", self.secondary),
                ("tertiary", self.tertiary),
            )
            if value
        ]


class ProviderSettings(BaseModel):
    name: str
    kind: Literal["chat_completions", "gemini", "mock"] = "chat_completions"
    enabled: bool = True
    api_keys: ApiKeys = Field(default_factory=ApiKeys)
    base_url: str | None = None
    models: dict[str, str] = Field(default_factory=dict)
    max_tokens: int = Field(default=8192, gt=0)
    timeout_ms: int = Field(default=30000, gt=0)
    retry_attempts: int = Field(default=2, ge=0)
    max_concurrent_requests: int = Field(default=10, gt=0)
    rate_limits: ProviderRateLimits = Field(default_factory=ProviderRateLimits)
    costs: ProviderCosts = Field(default_factory=ProviderCosts)
    routing: ProviderRouting = Field(default_factory=ProviderRouting)
    key_rotation: KeyRotationSettings = Field(default_factory=KeyRotationSettings)

    def model_for(self, level: str) -> str | None:
        return self.models.get(level) or self.models.get("medium")


class RateLimitingConfig(BaseModel):
    requests_per_minute: int = Field(default=120, gt=0)
    requests_per_hour: int = Field(default=3000, gt=0)


class CostOptimizationConfig(BaseModel):
    enabled: bool = True
    daily_budget_usd: float = Field(default=10.0, gt=0)


class RouterSettings(BaseModel):
    providers: dict[str, ProviderSettings]
    base_chains: dict[str, list[str]] = Field(
        default_factory=lambda: {
            "low": ["groq", "gemini", "cerebras"],
            "medium": ["gemini", "groq", "cerebras"],
            "high": ["cerebras", "gemini", "groq"],
        }
    )
    low_threshold: float = Field(default=0.3, ge=0, le=1)
    high_threshold: float = Field(default=0.7, ge=0, le=1)
    backoff_base_ms: int = Field(default=1000, ge=0)
    backoff_max_ms: int = Field(default=5000, ge=0)
    health_failure_threshold: int = Field(default=3, gt=0)
    health_window_size: int = Field(default=50, gt=0)
    health_recovery_timeout_s: float = Field(default=60.0, gt=0)
    rate_limiting: RateLimitingConfig = Field(default_factory=RateLimitingConfig)
    cost_optimization: CostOptimizationConfig = Field(default_factory=CostOptimizationConfig)
    provider_mode: Literal["mock", "live"] = "mock"
    rate_store: Literal["memory", "redis"] = "memory"
    redis_url: str = "redis://localhost:6379/0"
    store_timeout_ms: int = Field(default=250, gt=0)
    route_log_enabled: bool = False
    mock_delay_ms: int = Field(default=200, ge=0)
    mock_fail_rates: dict[str, float] = Field(default_factory=dict)

    @model_validator(mode="after")
    def _check_tables(self) -> "RouterSettings":
        if self.low_threshold > self.high_threshold:
            raise ValueError("low_threshold must not exceed high_threshold")
        for level, chain in self.base_chains.items():
            unknown = [name for name in chain if name not in self.providers]
            if unknown:
                raise ValueError(f"base chain {level!r} names unknown providers: {unknown}")
        return self

    def enabled_providers(self) -> list[str]:
        return [name for name, cfg in self.providers.items() if cfg.enabled]


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def _env_keys(prefix: str) -> ApiKeys:
    return ApiKeys(
        primary=os.getenv(f"{prefix}_API_KEY"),
        secondary=os.getenv(f"{prefix}_API_KEY_2"),
        tertiary=os.getenv(f"{prefix}_API_KEY_3"),
    )


def default_providers() -> dict[str, ProviderSettings]:
    return {
        "groq": ProviderSettings(
            name="groq",
            kind="chat_completions",
            enabled=_env_bool("GROQ_ENABLED", True),
            api_keys=_env_keys("GROQ"),
            base_url=os.getenv("GROQ_BASE_URL", "https://api.groq.com/openai/v1"),
            models={
                "low": os.getenv("GROQ_MODEL_LOW", "llama-3.1-8b-instant"),
                "medium": os.getenv("GROQ_MODEL", "llama-3.3-70b-versatile"),
                "high": os.getenv("GROQ_MODEL", "llama-3.3-70b-versatile"),
            },
            timeout_ms=10000,
            retry_attempts=3,
            max_concurrent_requests=20,
            rate_limits=ProviderRateLimits(requests_per_minute=30, tokens_per_minute=30000),
            costs=ProviderCosts(input_per_1k=0.0003, output_per_1k=0.0003),
            routing=ProviderRouting(weight=1.0, priority=1, preferred_complexity="low"),
        ),
        "gemini": ProviderSettings(
            name="gemini",
            kind="gemini",
            enabled=_env_bool("GEMINI_ENABLED", True),
            api_keys=_env_keys("GEMINI"),
            base_url=os.getenv(
                "GEMINI_BASE_URL", "https://generativelanguage.googleapis.com/v1beta"
            ),
            models={
                "low": os.getenv("GEMINI_MODEL", "gemini-1.5-flash"),
                "medium": os.getenv("GEMINI_MODEL", "gemini-1.5-flash"),
                "high": os.getenv("GEMINI_MODEL_HIGH", "gemini-1.5-pro"),
            },
            timeout_ms=20000,
            retry_attempts=2,
            max_concurrent_requests=10,
            rate_limits=ProviderRateLimits(requests_per_minute=60, tokens_per_minute=100000),
            costs=ProviderCosts(input_per_1k=0.0005, output_per_1k=0.0005),
            routing=ProviderRouting(weight=1.0, priority=2, preferred_complexity="medium"),
        ),
        "cerebras": ProviderSettings(
            name="cerebras",
            kind="chat_completions",
            enabled=_env_bool("CEREBRAS_ENABLED", True),
            api_keys=_env_keys("CEREBRAS"),
            base_url=os.getenv("CEREBRAS_BASE_URL", "https://api.cerebras.ai/v1"),
            models={
                "low": os.getenv("CEREBRAS_MODEL_LOW", "llama3.1-8b"),
                "medium": os.getenv("CEREBRAS_MODEL", "llama3.1-70b"),
                "high": os.getenv("CEREBRAS_MODEL", "llama3.1-70b"),
            },
            timeout_ms=30000,
            retry_attempts=2,
            max_concurrent_requests=10,
            rate_limits=ProviderRateLimits(requests_per_minute=30, tokens_per_minute=60000),
            costs=ProviderCosts(input_per_1k=0.001, output_per_1k=0.001),
            routing=ProviderRouting(weight=1.0, priority=3, preferred_complexity="high"),
        ),
    }


def load_settings() -> RouterSettings:
    providers = default_providers()
    return RouterSettings(
        providers=providers,
        backoff_base_ms=int(os.getenv("BACKOFF_BASE_MS", "1000")),
        backoff_max_ms=int(os.getenv("BACKOFF_MAX_MS", "5000")),
        health_failure_threshold=int(os.getenv("HEALTH_FAILURE_THRESHOLD", "3")),
        health_window_size=int(os.getenv("HEALTH_WINDOW_SIZE", "50")),
        health_recovery_timeout_s=float(os.getenv("HEALTH_RECOVERY_TIMEOUT_S", "60")),
        rate_limiting=RateLimitingConfig(
            requests_per_minute=int(os.getenv("GLOBAL_REQUESTS_PER_MINUTE", "120")),
            requests_per_hour=int(os.getenv("GLOBAL_REQUESTS_PER_HOUR", "3000")),
        ),
        cost_optimization=CostOptimizationConfig(
            enabled=_env_bool("COST_TRACKING_ENABLED", True),
            daily_budget_usd=float(os.getenv("DAILY_BUDGET_USD", "10")),
        ),
        provider_mode=os.getenv("PROVIDER_MODE", "mock"),
        rate_store=os.getenv("RATE_STORE", "memory"),
        redis_url=os.getenv("REDIS_URL", "redis://localhost:6379/0"),
        store_timeout_ms=int(os.getenv("STORE_TIMEOUT_MS", "250")),
        route_log_enabled=_env_bool("ROUTE_LOG_ENABLED", False),
        mock_delay_ms=int(os.getenv("MOCK_DELAY_MS", "200")),
        mock_fail_rates={name: float(os.getenv(f"{name.upper()}_FAIL_RATE", "0")) for name in providers},
    )
