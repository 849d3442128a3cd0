"""Strategy configuration, score, backtest and order model definitions."""

from __future__ import annotations

import logging
import uuid
from datetime import datetime
from decimal import Decimal
from typing import Any

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    PrimaryKeyConstraint,
    Text,
    desc,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB, UUID
from sqlalchemy.orm import Mapped, mapped_column

from backend.db.base import Base
from backend.db.enums import (
    BacktestStatus,
    OrderStatus,
    ShadowStatus,
    StrategyStatus,
    backtest_status_enum,
    order_status_enum,
    shadow_status_enum,
    strategy_status_enum,
)

logger = logging.getLogger(__name__)


class StrategyConfig(Base):
    """Tradable strategy definition and its lifecycle/heartbeat state."""

    __tablename__ = "strategy_config"
    __table_args__ = (
        PrimaryKeyConstraint("strategy_config_id", name="pk_strategy_config"),
        CheckConstraint("length(btrim(name)) > 0", name="ck_strategy_config_name_not_blank"),
        CheckConstraint("heartbeat_failures >= 0", name="ck_strategy_config_heartbeat_failures_nonneg"),
        Index("idx_strategy_config_status", "status"),
    )

    strategy_config_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    algorithm_name: Mapped[str] = mapped_column(Text, nullable=False)
    parameters: Mapped[dict[str, Any]] = mapped_column(JSONB, nullable=False, server_default=text("'{}'::jsonb"))
    status: Mapped[StrategyStatus] = mapped_column(strategy_status_enum, nullable=False)
    shadow_status: Mapped[ShadowStatus] = mapped_column(shadow_status_enum, nullable=False)
    last_heartbeat_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    heartbeat_failures: Mapped[int] = mapped_column(Integer, nullable=False, server_default=text("0"))
    last_error: Mapped[str | None] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=text("now()"))
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=text("now()"))


class StrategyScore(Base):
    """Immutable scoring snapshot; the latest row by calculated_at is authoritative."""

    __tablename__ = "strategy_score"
    __table_args__ = (
        PrimaryKeyConstraint("strategy_score_id", name="pk_strategy_score"),
        CheckConstraint(
            "overall_score >= 0 AND overall_score <= 100",
            name="ck_strategy_score_overall_range",
        ),
        CheckConstraint(
            "percentile IS NULL OR (percentile >= 0 AND percentile <= 100)",
            name="ck_strategy_score_percentile_range",
        ),
        Index(
            "idx_strategy_score_config_calculated_desc",
            "strategy_config_id",
            desc("calculated_at"),
        ),
    )

    strategy_score_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True)
    strategy_config_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey(
            "strategy_config.strategy_config_id",
            name="fk_strategy_score_strategy_config",
            onupdate="RESTRICT",
            ondelete="RESTRICT",
        ),
        nullable=False,
    )
    overall_score: Mapped[Decimal] = mapped_column(Numeric(6, 2), nullable=False)
    component_scores: Mapped[dict[str, Any]] = mapped_column(JSONB, nullable=False)
    percentile: Mapped[Decimal | None] = mapped_column(Numeric(6, 2))
    grade: Mapped[str] = mapped_column(Text, nullable=False)
    promotion_eligible: Mapped[bool] = mapped_column(Boolean, nullable=False)
    warnings: Mapped[list[str]] = mapped_column(JSONB, nullable=False, server_default=text("'[]'::jsonb"))
    calculated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class BacktestRun(Base):
    """Completed backtest results consumed by the promotion gates."""

    __tablename__ = "backtest_run"
    __table_args__ = (
        PrimaryKeyConstraint("backtest_run_id", name="pk_backtest_run"),
        CheckConstraint(
            "completed_at IS NULL OR completed_at >= created_at",
            name="ck_backtest_run_completed_after_created",
        ),
        Index(
            "idx_backtest_run_config_created_desc",
            "strategy_config_id",
            desc("created_at"),
        ),
    )

    backtest_run_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True)
    strategy_config_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey(
            "strategy_config.strategy_config_id",
            name="fk_backtest_run_strategy_config",
            onupdate="RESTRICT",
            ondelete="RESTRICT",
        ),
        nullable=False,
    )
    status: Mapped[BacktestStatus] = mapped_column(backtest_status_enum, nullable=False)
    results: Mapped[dict[str, Any]] = mapped_column(JSONB, nullable=False, server_default=text("'{}'::jsonb"))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))


class StrategyOrder(Base):
    """Exchange order attributed to a strategy; only filled algorithmic rows feed Kelly sizing."""

    __tablename__ = "strategy_order"
    __table_args__ = (
        PrimaryKeyConstraint("order_id", name="pk_strategy_order"),
        CheckConstraint("cost IS NULL OR cost >= 0", name="ck_strategy_order_cost_nonneg"),
        CheckConstraint(
            "status <> 'FILLED' OR filled_at IS NOT NULL",
            name="ck_strategy_order_filled_has_ts",
        ),
        Index(
            "idx_strategy_order_config_algo_status",
            "strategy_config_id",
            "is_algorithmic_trade",
            "status",
        ),
    )

    order_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True)
    strategy_config_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey(
            "strategy_config.strategy_config_id",
            name="fk_strategy_order_strategy_config",
            onupdate="RESTRICT",
            ondelete="RESTRICT",
        ),
    )
    status: Mapped[OrderStatus] = mapped_column(order_status_enum, nullable=False)
    is_algorithmic_trade: Mapped[bool] = mapped_column(Boolean, nullable=False, server_default=text("FALSE"))
    gain_loss: Mapped[Decimal | None] = mapped_column(Numeric(38, 18))
    cost: Mapped[Decimal | None] = mapped_column(Numeric(38, 18))
    filled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
