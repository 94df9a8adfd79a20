"""SQLAlchemy ORM models for the governance engine.

Maps to migration DDL in migrations/versions/:
  001_create_governance_tables.py -> UsageLedgerModel, PolicyModel, AdaptationRunModel

These models live in the Infrastructure layer and implement
persistence for Port interfaces. Brain/Tool layers
MUST NOT import this module directly.
"""

from __future__ import annotations

import uuid as _uuid  # noqa: TC003 -- SQLAlchemy resolves Mapped[] annotations at runtime
from datetime import datetime  # noqa: TC003
from decimal import Decimal  # noqa: TC003
from typing import Any

import sqlalchemy as sa
from sqlalchemy.dialects import postgresql
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

_UUID = postgresql.UUID(as_uuid=True)
_NOW = sa.text("now()")
_GEN_UUID = sa.text("gen_random_uuid()")
_COST = sa.Numeric(precision=12, scale=6)


class Base(DeclarativeBase):
    """Declarative base for all governance ORM models."""


class UsageLedgerModel(Base):
    """One row per completed or failed LLM call attempt. Append-only.

    See: 001_create_governance_tables migration
    """

    __tablename__ = "ai_usage_ledger"

    id: Mapped[_uuid.UUID] = mapped_column(
        _UUID,
        primary_key=True,
        server_default=_GEN_UUID,
    )
    org_id: Mapped[_uuid.UUID] = mapped_column(_UUID, nullable=False)
    user_id: Mapped[_uuid.UUID | None] = mapped_column(_UUID, nullable=True)
    provider: Mapped[str] = mapped_column(sa.String(64), nullable=False)
    model: Mapped[str] = mapped_column(sa.String(128), nullable=False)
    task_category: Mapped[str | None] = mapped_column(sa.String(64), nullable=True)
    agent_type: Mapped[str | None] = mapped_column(sa.String(64), nullable=True)
    input_tokens: Mapped[int] = mapped_column(
        sa.Integer(),
        nullable=False,
        server_default=sa.text("0"),
    )
    output_tokens: Mapped[int] = mapped_column(
        sa.Integer(),
        nullable=False,
        server_default=sa.text("0"),
    )
    estimated_cost: Mapped[Decimal] = mapped_column(_COST, nullable=False)
    latency_ms: Mapped[float | None] = mapped_column(sa.Float(), nullable=True)
    success: Mapped[bool] = mapped_column(sa.Boolean(), nullable=False)
    error_message: Mapped[str | None] = mapped_column(sa.Text(), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True),
        nullable=False,
        server_default=_NOW,
    )

    __table_args__ = (
        sa.CheckConstraint("estimated_cost >= 0", name="ck_ai_usage_ledger_cost"),
        sa.Index("ix_ai_usage_ledger_org_created", "org_id", "created_at"),
        sa.Index(
            "ix_ai_usage_ledger_provider_model_created",
            "provider",
            "model",
            "created_at",
        ),
    )


class PolicyModel(Base):
    """Per-organization admission policy (one row per org).

    See: 001_create_governance_tables migration
    """

    __tablename__ = "ai_policy"

    org_id: Mapped[_uuid.UUID] = mapped_column(_UUID, primary_key=True)
    max_request_cost: Mapped[Decimal] = mapped_column(_COST, nullable=False)
    max_daily_cost: Mapped[Decimal] = mapped_column(_COST, nullable=False)
    allowed_providers: Mapped[list[str]] = mapped_column(
        postgresql.ARRAY(sa.String(64)),
        nullable=False,
        server_default=sa.text("'{}'"),
    )
    min_alpha: Mapped[float] = mapped_column(sa.Float(), nullable=False)
    max_alpha: Mapped[float] = mapped_column(sa.Float(), nullable=False)
    task_overrides: Mapped[dict[str, Any]] = mapped_column(
        postgresql.JSONB(),
        nullable=False,
        server_default=sa.text("'{}'::jsonb"),
    )
    updated_at: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True),
        nullable=False,
        server_default=_NOW,
    )

    __table_args__ = (
        sa.CheckConstraint(
            "max_request_cost > 0 AND max_daily_cost > 0",
            name="ck_ai_policy_caps",
        ),
    )


class AdaptationRunModel(Base):
    """Audit record of one adaptation run for one organization.

    See: 001_create_governance_tables migration
    """

    __tablename__ = "ai_adaptation_runs"

    id: Mapped[_uuid.UUID] = mapped_column(
        _UUID,
        primary_key=True,
        server_default=_GEN_UUID,
    )
    org_id: Mapped[_uuid.UUID] = mapped_column(_UUID, nullable=False)
    alpha_adjustments: Mapped[list[dict[str, Any]]] = mapped_column(
        postgresql.JSONB(),
        nullable=False,
        server_default=sa.text("'[]'::jsonb"),
    )
    disablements: Mapped[list[dict[str, Any]]] = mapped_column(
        postgresql.JSONB(),
        nullable=False,
        server_default=sa.text("'[]'::jsonb"),
    )
    enablements: Mapped[list[dict[str, Any]]] = mapped_column(
        postgresql.JSONB(),
        nullable=False,
        server_default=sa.text("'[]'::jsonb"),
    )
    recommendations: Mapped[list[str]] = mapped_column(
        postgresql.JSONB(),
        nullable=False,
        server_default=sa.text("'[]'::jsonb"),
    )
    created_at: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True),
        nullable=False,
        server_default=_NOW,
    )

    __table_args__ = (sa.Index("ix_ai_adaptation_runs_org_created", "org_id", "created_at"),)
