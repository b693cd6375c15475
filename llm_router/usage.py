from __future__ import annotations

import json
import logging
from typing import Callable

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from llm_router.db.models import RouteLog
from llm_router.events import EventSink, RoutingEvent

logger = logging.getLogger("llm-router")


class RouteLogSink(EventSink):
    """Persists one `route_log` row per finished request."""

    def __init__(self, session_factory: Callable[[], Session]) -> None:
        self.session_factory = session_factory

    def emit(self, event: RoutingEvent) -> None:
        if event.stage != "completed":
            return
        data = event.data
        row = RouteLog(
            request_id=event.request_id,
            status=data.get("status", "error"),
            provider_used=event.provider if data.get("status") == "success" else None,
            complexity=data.get("complexity"),
            fallback_occurred=bool(data.get("fallback_occurred")),
            attempted_chain=",".join(data.get("attempted_chain") or []),
            error_code=data.get("error_code"),
            latency_ms=data.get("latency_ms"),
            input_tokens=data.get("input_tokens"),
            output_tokens=data.get("output_tokens"),
            cost_usd=data.get("cost_usd"),
        )
        db = self.session_factory()
        try:
            db.add(row)
            db.commit()
        except SQLAlchemyError as exc:
            db.rollback()
            logger.warning(
                json.dumps(
                    {"message": "route_log_write_failed", "request_id": event.request_id, "error": str(exc)},
                    separators=(",", ":"),
                )
            )
        finally:
            db.close()
