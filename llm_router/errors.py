from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any


class ErrorKind(str, Enum):
    TIMEOUT = "TIMEOUT"
    RATE_LIMIT = "RATE_LIMIT"
    AUTH_FAILURE = "AUTH_FAILURE"
    SERVER_ERROR = "SERVER_ERROR"
    INVALID_REQUEST = "INVALID_REQUEST"
    UNKNOWN = "UNKNOWN"


class ErrorCode(str, Enum):
    INVALID_REQUEST = "INVALID_REQUEST"
    TIMEOUT = "TIMEOUT"
    RATE_LIMIT = "RATE_LIMIT"
    RATE_LIMIT_EXCEEDED = "RATE_LIMIT_EXCEEDED"
    COST_LIMIT_EXCEEDED = "COST_LIMIT_EXCEEDED"
    RATE_LIMIT_UNAVAILABLE = "RATE_LIMIT_UNAVAILABLE"
    PROVIDER_UNAVAILABLE = "PROVIDER_UNAVAILABLE"
    PROVIDER_ERROR = "PROVIDER_ERROR"
    SERVER_ERROR = "SERVER_ERROR"
    AUTH_FAILURE = "AUTH_FAILURE"
    INTERNAL_ERROR = "INTERNAL_ERROR"


HTTP_STATUS = {
    ErrorCode.INVALID_REQUEST: 400,
    ErrorCode.RATE_LIMIT_EXCEEDED: 429,
    ErrorCode.COST_LIMIT_EXCEEDED: 429,
    ErrorCode.PROVIDER_UNAVAILABLE: 503,
    ErrorCode.RATE_LIMIT_UNAVAILABLE: 503,
}


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


class ProviderError(RuntimeError):
    """Failure of a single provider call, normalized by its adapter."""

    def __init__(
        self,
        kind: ErrorKind,
        provider: str,
        message: str,
        status_code: int | None = None,
    ) -> None:
        super().__init__(message)
        self.kind = kind
        self.provider = provider
        self.status_code = status_code


class RoutingError(RuntimeError):
    """Terminal outcome of a routed request, surfaced to the caller."""

    def __init__(
        self,
        code: ErrorCode,
        message: str,
        details: dict[str, Any] | None = None,
        provider: str | None = None,
        retry_after_ms: int | None = None,
        request_id: str | None = None,
        decision: Any = None,
    ) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        self.details = details
        self.provider = provider
        self.retry_after_ms = retry_after_ms
        self.request_id = request_id
        self.decision = decision
        self.timestamp = utc_now_iso()

    @property
    def status_code(self) -> int:
        return HTTP_STATUS.get(self.code, 500)
