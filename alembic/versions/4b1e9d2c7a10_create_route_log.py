"""create route log

Revision ID: 4b1e9d2c7a10
Revises:
Create Date: 2026-10-18
"""

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = "4b1e9d2c7a10"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "route_log",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("request_id", sa.String(length=100), nullable=False),
        sa.Column("status", sa.String(length=20), nullable=False),
        sa.Column("provider_used", sa.String(length=50), nullable=True),
        sa.Column("complexity", sa.String(length=10), nullable=True),
        sa.Column("fallback_occurred", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("attempted_chain", sa.Text(), nullable=False, server_default=""),
        sa.Column("error_code", sa.String(length=50), nullable=True),
        sa.Column("latency_ms", sa.Integer(), nullable=True),
        sa.Column("input_tokens", sa.Integer(), nullable=True),
        sa.Column("output_tokens", sa.Integer(), nullable=True),
        sa.Column("cost_usd", sa.Float(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_route_log_created_at", "route_log", ["created_at"])
    op.create_index("ix_route_log_provider_used", "route_log", ["provider_used"])


def downgrade() -> None:
    op.drop_index("ix_route_log_provider_used", table_name="route_log")
    op.drop_index("ix_route_log_created_at", table_name="route_log")
    op.drop_table("route_log")
