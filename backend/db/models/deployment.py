"""Live deployment and daily performance metric model definitions."""

from __future__ import annotations

import logging
import uuid
from datetime import date, datetime
from decimal import Decimal
from typing import Any

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Date,
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
from backend.db.enums import DeploymentStatus, deployment_status_enum

logger = logging.getLogger(__name__)


class Deployment(Base):
    """Capital deployment of one strategy into live trading, with its risk limits."""

    __tablename__ = "deployment"
    __table_args__ = (
        PrimaryKeyConstraint("deployment_id", name="pk_deployment"),
        CheckConstraint(
            "allocation_percent >= 0 AND allocation_percent <= 100",
            name="ck_deployment_allocation_range",
        ),
        CheckConstraint(
            "max_drawdown_limit > 0 AND max_drawdown_limit <= 1",
            name="ck_deployment_max_drawdown_limit_range",
        ),
        CheckConstraint(
            "daily_loss_limit > 0 AND daily_loss_limit <= 1",
            name="ck_deployment_daily_loss_limit_range",
        ),
        CheckConstraint(
            "position_size_limit > 0 AND position_size_limit <= 1",
            name="ck_deployment_position_size_limit_range",
        ),
        CheckConstraint(
            "status NOT IN ('demoted', 'terminated') OR terminated_at IS NOT NULL",
            name="ck_deployment_terminal_has_ts",
        ),
        CheckConstraint(
            "winning_trades + losing_trades <= total_trades",
            name="ck_deployment_trade_counts",
        ),
        Index(
            "uq_deployment_one_active_per_strategy",
            "strategy_config_id",
            unique=True,
            postgresql_where=text("status = 'active'"),
        ),
        Index("idx_deployment_status_created", "status", "created_at"),
    )

    deployment_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True)
    strategy_config_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey(
            "strategy_config.strategy_config_id",
            name="fk_deployment_strategy_config",
            onupdate="RESTRICT",
            ondelete="RESTRICT",
        ),
        nullable=False,
    )
    status: Mapped[DeploymentStatus] = mapped_column(deployment_status_enum, nullable=False)
    allocation_percent: Mapped[Decimal] = mapped_column(Numeric(8, 4), nullable=False)
    initial_allocation_percent: Mapped[Decimal] = mapped_column(Numeric(8, 4), nullable=False)
    deployed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    terminated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    termination_reason: Mapped[str | None] = mapped_column(Text)
    max_drawdown_limit: Mapped[Decimal] = mapped_column(Numeric(8, 6), nullable=False)
    daily_loss_limit: Mapped[Decimal] = mapped_column(Numeric(8, 6), nullable=False)
    position_size_limit: Mapped[Decimal] = mapped_column(Numeric(8, 6), nullable=False)
    max_leverage: Mapped[Decimal] = mapped_column(Numeric(8, 4), nullable=False, server_default=text("1"))
    realized_pnl: Mapped[Decimal] = mapped_column(Numeric(38, 18), nullable=False, server_default=text("0"))
    unrealized_pnl: Mapped[Decimal] = mapped_column(Numeric(38, 18), nullable=False, server_default=text("0"))
    current_drawdown: Mapped[Decimal] = mapped_column(Numeric(12, 10), nullable=False, server_default=text("0"))
    max_drawdown_observed: Mapped[Decimal] = mapped_column(Numeric(12, 10), nullable=False, server_default=text("0"))
    total_trades: Mapped[int] = mapped_column(Integer, nullable=False, server_default=text("0"))
    winning_trades: Mapped[int] = mapped_column(Integer, nullable=False, server_default=text("0"))
    losing_trades: Mapped[int] = mapped_column(Integer, nullable=False, server_default=text("0"))
    live_sharpe_ratio: Mapped[Decimal | None] = mapped_column(Numeric(20, 10))
    drift_alert_count: Mapped[int] = mapped_column(Integer, nullable=False, server_default=text("0"))
    last_drift_detected_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    drift_metrics: Mapped[dict[str, Any] | None] = mapped_column(JSONB)
    approved_by: Mapped[str | None] = mapped_column(Text)
    approved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    promotion_reason: Mapped[str | None] = mapped_column(Text)
    metadata_json: Mapped[dict[str, Any]] = mapped_column(
        "metadata",
        JSONB,
        nullable=False,
        server_default=text("'{}'::jsonb"),
    )
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=text("now()"))
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=text("now()"))


class PerformanceMetric(Base):
    """Daily live performance snapshot; one row per deployment and date."""

    __tablename__ = "performance_metric"
    __table_args__ = (
        PrimaryKeyConstraint("deployment_id", "metric_date", name="pk_performance_metric"),
        CheckConstraint("trades_count >= 0", name="ck_performance_metric_trades_nonneg"),
        CheckConstraint(
            "cumulative_trades_count >= trades_count",
            name="ck_performance_metric_cumulative_trades",
        ),
        CheckConstraint("volatility IS NULL OR volatility >= 0", name="ck_performance_metric_volatility_nonneg"),
        Index(
            "idx_performance_metric_deployment_date_desc",
            "deployment_id",
            desc("metric_date"),
        ),
    )

    deployment_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey(
            "deployment.deployment_id",
            name="fk_performance_metric_deployment",
            onupdate="RESTRICT",
            ondelete="RESTRICT",
        ),
        primary_key=True,
    )
    metric_date: Mapped[date] = mapped_column(Date, primary_key=True)
    snapshot_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    daily_pnl: Mapped[Decimal] = mapped_column(Numeric(38, 18), nullable=False)
    daily_return: Mapped[Decimal] = mapped_column(Numeric(20, 10), nullable=False)
    cumulative_pnl: Mapped[Decimal] = mapped_column(Numeric(38, 18), nullable=False, server_default=text("0"))
    cumulative_return: Mapped[Decimal] = mapped_column(Numeric(20, 10), nullable=False, server_default=text("0"))
    drawdown: Mapped[Decimal] = mapped_column(Numeric(12, 10), nullable=False, server_default=text("0"))
    max_drawdown: Mapped[Decimal] = mapped_column(Numeric(12, 10), nullable=False, server_default=text("0"))
    volatility: Mapped[Decimal | None] = mapped_column(Numeric(20, 10))
    sharpe_ratio: Mapped[Decimal | None] = mapped_column(Numeric(20, 10))
    trades_count: Mapped[int] = mapped_column(Integer, nullable=False, server_default=text("0"))
    cumulative_trades_count: Mapped[int] = mapped_column(Integer, nullable=False, server_default=text("0"))
    winning_trades: Mapped[int] = mapped_column(Integer, nullable=False, server_default=text("0"))
    losing_trades: Mapped[int] = mapped_column(Integer, nullable=False, server_default=text("0"))
    drift_detected: Mapped[bool] = mapped_column(Boolean, nullable=False, server_default=text("FALSE"))
    drift_details: Mapped[dict[str, Any] | None] = mapped_column(JSONB)
    market_regime: Mapped[str | None] = mapped_column(Text)
    metadata_json: Mapped[dict[str, Any] | None] = mapped_column("metadata", JSONB)
