from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

ComplexityLevel = Literal["low", "medium", "high"]
UserPreference = Literal["speed", "quality", "cost"]

COMPLEXITY_LEVELS: tuple[str, ...] = ("low", "medium", "high")


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class LLMOptions(CamelModel):
    max_tokens: int | None = Field(default=None, ge=1, le=8192)
    temperature: float | None = Field(default=None, ge=0.0, le=2.0)
    top_p: float | None = Field(default=None, ge=0.0, le=1.0)
    top_k: int | None = Field(default=None, ge=1, le=100)
    stream: bool = False
    stop_sequences: list[str] | None = Field(default=None, max_length=4)
    presence_penalty: float | None = Field(default=None, ge=-2.0, le=2.0)
    frequency_penalty: float | None = Field(default=None, ge=-2.0, le=2.0)

    @field_validator("stop_sequences")
    @classmethod
    def _short_stop_sequences(cls, value: list[str] | None) -> list[str] | None:
        if value and any(len(item) > 100 for item in value):
            raise ValueError("stop sequences are limited to 100 characters")
        return value


class LLMRequestMetadata(CamelModel):
    session_id: str | None = None
    user_id: str | None = Field(default=None, max_length=100)
    complexity_hint: ComplexityLevel | None = None
    user_preference: UserPreference | None = None
    track_costs: bool = False
    debug: bool = False
    request_id: str | None = Field(default=None, max_length=100)
    timestamp: str | None = None
    context: dict[str, Any] | None = None


class LLMRequest(CamelModel):
    query: str = Field(min_length=1, max_length=8000)
    options: LLMOptions | None = None
    metadata: LLMRequestMetadata | None = None

    @field_validator("query")
    @classmethod
    def _not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("query cannot be only whitespace")
        return value


class ComplexityFactor(CamelModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    type: str
    weight: float
    value: float
    description: str


class ComplexityAnalysis(CamelModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    level: ComplexityLevel
    score: float = Field(ge=0.0, le=1.0)
    detected_patterns: tuple[str, ...] = ()
    reasoning: str
    token_estimate: int = Field(ge=0)
    factors: tuple[ComplexityFactor, ...] = ()


class ProviderCandidate(CamelModel):
    name: str
    score: float = Field(ge=0.0, le=1.0)
    available: bool
    has_capacity: bool
    estimated_latency: float = Field(ge=0.0)
    estimated_cost: float = Field(ge=0.0)


class RoutingDecision(CamelModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    selected_provider: str
    reasoning: str
    candidate_providers: list[ProviderCandidate]
    complexity_score: float
    fallback_chain: list[str]


class TokenUsage(CamelModel):
    input_tokens: int = Field(ge=0)
    output_tokens: int = Field(ge=0)
    total_tokens: int = Field(ge=0)
    estimated_cost_usd: float = Field(ge=0.0)


class LLMResponseMetadata(CamelModel):
    provider_used: str
    complexity_detected: ComplexityLevel
    routing_decision: RoutingDecision
    latency_ms: int
    request_id: str
    timestamp: str
    fallback_occurred: bool | None = None
    original_provider_failed: str | None = None


class ProviderSelectionDebug(CamelModel):
    candidates: list[ProviderCandidate]
    selected: str
    reasoning: str


class AttemptRecord(CamelModel):
    provider: str
    attempt_number: int
    success: bool
    latency_ms: int = 0
    error_kind: str | None = None
    message: str | None = None
    skipped: bool = False


class TimingDebug(CamelModel):
    routing_ms: int
    provider_ms: int
    total_ms: int


class DebugInformation(CamelModel):
    complexity_analysis: ComplexityAnalysis
    provider_selection: ProviderSelectionDebug
    fallback_chain: list[str]
    attempts: list[AttemptRecord]
    timing: TimingDebug


class LLMResponse(CamelModel):
    response: str
    metadata: LLMResponseMetadata
    usage: TokenUsage | None = None
    debug: DebugInformation | None = None


class ErrorInfo(CamelModel):
    code: str
    message: str
    details: dict[str, Any] | None = None
    timestamp: str
    request_id: str | None = None
    provider: str | None = None


class ErrorResponse(CamelModel):
    success: Literal[False] = False
    error: ErrorInfo


class KeyStatusInfo(CamelModel):
    key_id: str
    type: str
    is_active: bool
    quota_used: int
    quota_limit: int
    quota_reset_time: float
    error_count: int
    success_rate: float
    avg_latency_ms: float
    flagged: bool


class ProviderMetricsInfo(CamelModel):
    total_requests: int
    successful_requests: int
    failed_requests: int
    avg_latency_ms: float
    error_rate: float
    total_cost_usd: float
    tokens_used: int


class ProviderRateLimitInfo(CamelModel):
    requests_per_minute: int
    current_rpm: int
    tokens_per_minute: int
    current_tpm: int


class ProviderRoutingInfo(CamelModel):
    weight: float
    priority: int
    preferred_complexity: ComplexityLevel


class ProviderStatusInfo(CamelModel):
    name: str
    is_available: bool
    has_capacity: bool
    complexity: ComplexityLevel
    routing: ProviderRoutingInfo
    metrics: ProviderMetricsInfo
    rate_limits: ProviderRateLimitInfo
    keys: list[KeyStatusInfo]
    active_key_id: str | None = None
    last_health_check: str
    next_quota_reset: float


class ProviderStatusResponse(CamelModel):
    timestamp: str
    healthy: bool
    providers: list[ProviderStatusInfo]
