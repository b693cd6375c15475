import json
import logging
import math
import sys
import time
import uuid

from fastapi import Depends, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, StreamingResponse
from fastapi.responses import Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

logger = logging.getLogger("llm-router")
logger.setLevel(logging.INFO)
_handler = logging.StreamHandler(sys.stdout)
_handler.setFormatter(logging.Formatter("%(message)s"))
logger.addHandler(_handler)
logger.propagate = False

from llm_router.config import load_settings
from llm_router.db.session import make_session_factory
from llm_router.engine import RoutedStream, RoutingEngine, build_engine
from llm_router.errors import ErrorCode, RoutingError, utc_now_iso
from llm_router.events import default_sinks
from llm_router.metrics import REQUEST_LATENCY, REQUESTS_TOTAL
from llm_router.otel import get_tracer, setup_tracing
from llm_router.schemas import ErrorInfo, ErrorResponse, LLMRequest, LLMResponse, ProviderStatusResponse
from llm_router.status import build_provider_status
from llm_router.store import CounterStoreError
from llm_router.usage import RouteLogSink

app = FastAPI(title="llm-router")
setup_tracing(app)


def _create_engine() -> RoutingEngine:
    settings = load_settings()
    sinks = default_sinks()
    if settings.route_log_enabled:
        sinks.append(RouteLogSink(make_session_factory()))
    logger.info(
        json.dumps(
            {
                "message": "engine_started",
                "provider_mode": settings.provider_mode,
                "rate_store": settings.rate_store,
                "providers": settings.enabled_providers(),
            },
            separators=(",", ":"),
        )
    )
    return build_engine(settings, sinks=sinks)


def _ensure_engine(target: FastAPI) -> RoutingEngine:
    engine = getattr(target.state, "engine", None)
    if engine is None:
        engine = _create_engine()
        target.state.engine = engine
    return engine


def get_engine(request: Request) -> RoutingEngine:
    return _ensure_engine(request.app)


def _error_body(
    code: str,
    message: str,
    request_id: str | None,
    details: dict | None = None,
    provider: str | None = None,
    timestamp: str | None = None,
) -> dict:
    body = ErrorResponse(
        error=ErrorInfo(
            code=code,
            message=message,
            details=details,
            timestamp=timestamp or utc_now_iso(),
            request_id=request_id,
            provider=provider,
        )
    )
    return body.model_dump(by_alias=True, exclude_none=True)


def _error_response(
    status_code: int,
    code: str,
    message: str,
    request_id: str | None,
    details: dict | None = None,
    provider: str | None = None,
    timestamp: str | None = None,
    headers: dict | None = None,
) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=_error_body(code, message, request_id, details, provider, timestamp),
        headers=headers,
    )


@app.on_event("startup")
async def start_engine():
    _ensure_engine(app)


@app.on_event("shutdown")
async def close_engine():
    engine = getattr(app.state, "engine", None)
    if engine is not None:
        await engine.close()


@app.exception_handler(RoutingError)
async def handle_routing_error(request: Request, exc: RoutingError):
    headers = None
    if exc.retry_after_ms is not None:
        headers = {"Retry-After": str(max(1, math.ceil(exc.retry_after_ms / 1000)))}
    return _error_response(
        exc.status_code,
        exc.code.value,
        exc.message,
        exc.request_id or getattr(request.state, "request_id", None),
        details=exc.details,
        provider=exc.provider,
        timestamp=exc.timestamp,
        headers=headers,
    )


@app.exception_handler(RequestValidationError)
async def handle_validation_error(request: Request, exc: RequestValidationError):
    errors = [
        {
            "field": ".".join(str(part) for part in err.get("loc", ()) if part != "body"),
            "message": err.get("msg", ""),
            "type": err.get("type", ""),
        }
        for err in exc.errors()
    ]
    return _error_response(
        400,
        ErrorCode.INVALID_REQUEST.value,
        "Request validation failed",
        getattr(request.state, "request_id", None),
        details={"errors": errors},
    )


@app.get("/health")
def health():
    return {"status": "ok"}


@app.get("/metrics")
def metrics():
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)


def _sse(event: str, data: dict) -> str:
    return f"event: {event}\ndata: {json.dumps(data, separators=(',', ':'))}\n\n"


async def _stream_events(routed: RoutedStream):
    yield _sse("metadata", routed.metadata.model_dump(by_alias=True, exclude_none=True))
    try:
        async for text in routed:
            yield _sse("chunk", {"text": text})
    except RoutingError as exc:
        body = _error_body(exc.code.value, exc.message, exc.request_id, exc.details, exc.provider, exc.timestamp)
        yield _sse("error", body)
        return
    usage = routed.usage.model_dump(by_alias=True) if routed.usage is not None else None
    yield _sse("done", {"usage": usage})


@app.post("/v1/llm/route", response_model=LLMResponse, response_model_exclude_none=True)
async def route_request(payload: LLMRequest, request: Request, engine: RoutingEngine = Depends(get_engine)):
    streamed = payload.options is not None and bool(payload.options.stream)
    with get_tracer().start_as_current_span("llm.route") as span:
        span.set_attribute("llm.stream", streamed)
        try:
            if streamed:
                result = await engine.stream(payload, request_id=getattr(request.state, "request_id", None))
            else:
                result = await engine.route(payload, request_id=getattr(request.state, "request_id", None))
        except RoutingError as exc:
            span.set_attribute("llm.error_code", exc.code.value)
            if payload.metadata is not None and payload.metadata.debug and exc.decision is not None:
                exc.details = {**(exc.details or {}), "routingDecision": exc.decision.model_dump(by_alias=True)}
            raise
        span.set_attribute("llm.provider", result.metadata.provider_used)
        span.set_attribute("llm.complexity", result.metadata.complexity_detected)
        span.set_attribute("llm.fallback", bool(result.metadata.fallback_occurred))
    if streamed:
        return StreamingResponse(_stream_events(result), media_type="text/event-stream")
    return result


@app.get("/v1/providers/status", response_model=ProviderStatusResponse)
async def provider_status(engine: RoutingEngine = Depends(get_engine)):
    return await build_provider_status(engine)


@app.post("/v1/providers/health/reset")
async def reset_provider_health(engine: RoutingEngine = Depends(get_engine)):
    engine.reset_health()
    return {"status": "ok"}


async def _set_rate_limit_headers(target: FastAPI, response: Response) -> None:
    engine = _ensure_engine(target)
    try:
        window = await engine.limiter.global_window()
    except CounterStoreError as exc:
        logger.warning(json.dumps({"message": "rate_headers_unavailable", "error": str(exc)}, separators=(",", ":")))
        return
    response.headers["x-ratelimit-limit"] = str(window.limit)
    response.headers["x-ratelimit-remaining"] = str(window.remaining)
    response.headers["x-ratelimit-reset"] = str(window.reset_epoch)


@app.middleware("http")
async def log_requests(request: Request, call_next):
    request_id = request.headers.get("X-Request-Id") or str(uuid.uuid4())
    request.state.request_id = request_id
    start = time.perf_counter()
    try:
        response = await call_next(request)
    except Exception as exc:
        logger.error(
            json.dumps(
                {"message": "unhandled_error", "request_id": request_id, "error": repr(exc)},
                separators=(",", ":"),
            )
        )
        response = _error_response(500, ErrorCode.INTERNAL_ERROR.value, "Internal server error", request_id)
    elapsed_seconds = time.perf_counter() - start
    payload = {
        "message": "request",
        "request_id": request_id,
        "method": request.method,
        "path": request.url.path,
        "status_code": response.status_code,
        "duration_ms": round(elapsed_seconds * 1000, 2),
    }
    logger.info(json.dumps(payload, separators=(",", ":")))

    response.headers["X-Request-Id"] = request_id
    await _set_rate_limit_headers(request.app, response)

    REQUESTS_TOTAL.labels(request.method, request.url.path, str(response.status_code)).inc()
    REQUEST_LATENCY.labels(request.method, request.url.path).observe(elapsed_seconds)
    return response
