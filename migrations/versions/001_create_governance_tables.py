"""Create governance tables: usage ledger, per-org policy, adaptation runs.

ai_usage_ledger is append-only and every read filters on org_id or
(provider, model). ai_policy holds one row per org. ai_adaptation_runs is the
audit trail written by the nightly adaptation loop.

Revision ID: 001_governance_tables
Revises:
Create Date: 2026-10-18

Rollback: alembic downgrade -1
"""

from __future__ import annotations

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

revision = "001_governance_tables"
down_revision = None
branch_labels = None
depends_on = None

reversible_type = "full"  # DDL fully reversible via downgrade()
rollback_artifact = "alembic downgrade -1"

_JSONB_EMPTY_LIST = sa.text("'[]'::jsonb")
_JSONB_EMPTY_OBJECT = sa.text("'{}'::jsonb")


def upgrade() -> None:
    op.create_table(
        "ai_usage_ledger",
        sa.Column(
            "id",
            sa.Uuid,
            primary_key=True,
            server_default=sa.text("gen_random_uuid()"),
        ),
        sa.Column("org_id", sa.Uuid, nullable=False),
        sa.Column("user_id", sa.Uuid, nullable=True),
        sa.Column("provider", sa.String(64), nullable=False),
        sa.Column("model", sa.String(128), nullable=False),
        sa.Column("task_category", sa.String(64), nullable=True),
        sa.Column("agent_type", sa.String(64), nullable=True),
        sa.Column("input_tokens", sa.Integer, nullable=False, server_default=sa.text("0")),
        sa.Column("output_tokens", sa.Integer, nullable=False, server_default=sa.text("0")),
        sa.Column(
            "estimated_cost",
            sa.Numeric(precision=12, scale=6),
            sa.CheckConstraint("estimated_cost >= 0", name="ck_ai_usage_ledger_cost"),
            nullable=False,
        ),
        sa.Column("latency_ms", sa.Float, nullable=True),
        sa.Column("success", sa.Boolean, nullable=False),
        sa.Column("error_message", sa.Text, nullable=True),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        ),
    )
    op.create_index(
        "ix_ai_usage_ledger_org_created",
        "ai_usage_ledger",
        ["org_id", "created_at"],
    )
    op.create_index(
        "ix_ai_usage_ledger_provider_model_created",
        "ai_usage_ledger",
        ["provider", "model", "created_at"],
    )

    op.create_table(
        "ai_policy",
        sa.Column("org_id", sa.Uuid, primary_key=True),
        sa.Column("max_request_cost", sa.Numeric(precision=12, scale=6), nullable=False),
        sa.Column("max_daily_cost", sa.Numeric(precision=12, scale=6), nullable=False),
        sa.Column(
            "allowed_providers",
            postgresql.ARRAY(sa.String(64)),
            nullable=False,
            server_default=sa.text("'{}'"),
        ),
        sa.Column("min_alpha", sa.Float, nullable=False),
        sa.Column("max_alpha", sa.Float, nullable=False),
        sa.Column("task_overrides", postgresql.JSONB, nullable=False, server_default=_JSONB_EMPTY_OBJECT),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        ),
        sa.CheckConstraint(
            "max_request_cost > 0 AND max_daily_cost > 0",
            name="ck_ai_policy_caps",
        ),
    )

    op.create_table(
        "ai_adaptation_runs",
        sa.Column(
            "id",
            sa.Uuid,
            primary_key=True,
            server_default=sa.text("gen_random_uuid()"),
        ),
        sa.Column("org_id", sa.Uuid, nullable=False),
        sa.Column(
            "alpha_adjustments",
            postgresql.JSONB,
            nullable=False,
            server_default=_JSONB_EMPTY_LIST,
        ),
        sa.Column("disablements", postgresql.JSONB, nullable=False, server_default=_JSONB_EMPTY_LIST),
        sa.Column("enablements", postgresql.JSONB, nullable=False, server_default=_JSONB_EMPTY_LIST),
        sa.Column(
            "recommendations",
            postgresql.JSONB,
            nullable=False,
            server_default=_JSONB_EMPTY_LIST,
        ),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        ),
    )
    op.create_index(
        "ix_ai_adaptation_runs_org_created",
        "ai_adaptation_runs",
        ["org_id", "created_at"],
    )

def downgrade() -> None:
    op.drop_index("ix_ai_adaptation_runs_org_created", table_name="ai_adaptation_runs")
    op.drop_table("ai_adaptation_runs")
    op.drop_table("ai_policy")
    op.drop_index("ix_ai_usage_ledger_provider_model_created", table_name="ai_usage_ledger")
    op.drop_index("ix_ai_usage_ledger_org_created", table_name="ai_usage_ledger")
    op.drop_table("ai_usage_ledger")
