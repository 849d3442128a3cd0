"""Market regime history and daily close price model definitions."""

from __future__ import annotations

import logging
import uuid
from datetime import date, datetime
from decimal import Decimal
from typing import Any

from sqlalchemy import (
    CheckConstraint,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Numeric,
    PrimaryKeyConstraint,
    Text,
    desc,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB, UUID
from sqlalchemy.orm import Mapped, mapped_column

from backend.db.base import Base
from backend.db.enums import MarketRegimeType, market_regime_enum

logger = logging.getLogger(__name__)


class MarketRegime(Base):
    """Volatility regime interval for one asset; the open interval has NULL effective_until."""

    __tablename__ = "market_regime"
    __table_args__ = (
        PrimaryKeyConstraint("market_regime_id", name="pk_market_regime"),
        CheckConstraint("asset = upper(asset)", name="ck_market_regime_asset_upper"),
        CheckConstraint("volatility >= 0", name="ck_market_regime_volatility_nonneg"),
        CheckConstraint(
            "percentile >= 0 AND percentile <= 100",
            name="ck_market_regime_percentile_range",
        ),
        CheckConstraint(
            "effective_until IS NULL OR effective_until >= detected_at",
            name="ck_market_regime_effective_after_detected",
        ),
        Index(
            "uq_market_regime_one_open_per_asset",
            "asset",
            unique=True,
            postgresql_where=text("effective_until IS NULL"),
        ),
        Index("idx_market_regime_asset_detected_desc", "asset", desc("detected_at")),
    )

    market_regime_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True)
    asset: Mapped[str] = mapped_column(Text, nullable=False)
    regime: Mapped[MarketRegimeType] = mapped_column(market_regime_enum, nullable=False)
    volatility: Mapped[Decimal] = mapped_column(Numeric(20, 10), nullable=False)
    percentile: Mapped[Decimal] = mapped_column(Numeric(6, 2), nullable=False)
    detected_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    effective_until: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    previous_regime_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey(
            "market_regime.market_regime_id",
            name="fk_market_regime_previous",
            onupdate="RESTRICT",
            ondelete="RESTRICT",
        ),
    )
    metadata_json: Mapped[dict[str, Any] | None] = mapped_column("metadata", JSONB)


class MarketPriceDaily(Base):
    """Daily close per symbol feeding volatility and the 200-day trend filter."""

    __tablename__ = "market_price_daily"
    __table_args__ = (
        PrimaryKeyConstraint("symbol", "price_date", name="pk_market_price_daily"),
        CheckConstraint("symbol = upper(symbol)", name="ck_market_price_daily_symbol_upper"),
        CheckConstraint("close_price > 0", name="ck_market_price_daily_close_pos"),
    )

    symbol: Mapped[str] = mapped_column(Text, primary_key=True)
    price_date: Mapped[date] = mapped_column(Date, primary_key=True)
    close_price: Mapped[Decimal] = mapped_column(Numeric(38, 18), nullable=False)
