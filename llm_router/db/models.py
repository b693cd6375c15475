import uuid

from sqlalchemy import Boolean, DateTime, Float, Index, Integer, String, Text, Uuid, func
from sqlalchemy.orm import Mapped, mapped_column

from llm_router.db.base import Base


class RouteLog(Base):
    __tablename__ = "route_log"
    __table_args__ = (
        Index("ix_route_log_created_at", "created_at"),
        Index("ix_route_log_provider_used", "provider_used"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    request_id: Mapped[str] = mapped_column(String(100), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False)
    provider_used: Mapped[str | None] = mapped_column(String(50), nullable=True)
    complexity: Mapped[str | None] = mapped_column(String(10), nullable=True)
    fallback_occurred: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    attempted_chain: Mapped[str] = mapped_column(Text, nullable=False, default="")
    error_code: Mapped[str | None] = mapped_column(String(50), nullable=True)
    latency_ms: Mapped[int | None] = mapped_column(Integer, nullable=True)
    input_tokens: Mapped[int | None] = mapped_column(Integer, nullable=True)
    output_tokens: Mapped[int | None] = mapped_column(Integer, nullable=True)
    cost_usd: Mapped[float | None] = mapped_column(Float, nullable=True)
    created_at: Mapped[DateTime] = mapped_column(DateTime(timezone=True), server_default=func.now())
