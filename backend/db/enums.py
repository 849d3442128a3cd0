"""PostgreSQL native enum contracts for the strategy lifecycle schema."""

from __future__ import annotations

import enum
import logging

from sqlalchemy.dialects.postgresql import ENUM as PGEnum

logger = logging.getLogger(__name__)


class StrategyStatus(str, enum.Enum):
    """Lifecycle status of a strategy configuration."""

    DRAFT = "draft"
    TESTING = "testing"
    LIVE = "live"
    DEPRECATED = "deprecated"


class ShadowStatus(str, enum.Enum):
    """Shadow-trading status of a strategy configuration."""

    TESTING = "testing"
    SHADOW = "shadow"
    LIVE = "live"
    RETIRED = "retired"


class DeploymentStatus(str, enum.Enum):
    """Live deployment status. DEMOTED and TERMINATED are terminal."""

    PENDING_APPROVAL = "pending_approval"
    ACTIVE = "active"
    PAUSED = "paused"
    DEMOTED = "demoted"
    TERMINATED = "terminated"


class BacktestStatus(str, enum.Enum):
    """Backtest run status."""

    PENDING = "PENDING"
    RUNNING = "RUNNING"
    PAUSED = "PAUSED"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"


class OrderStatus(str, enum.Enum):
    """Exchange order status."""

    NEW = "NEW"
    PARTIALLY_FILLED = "PARTIALLY_FILLED"
    FILLED = "FILLED"
    PENDING_CANCEL = "PENDING_CANCEL"
    CANCELED = "CANCELED"
    EXPIRED = "EXPIRED"
    REJECTED = "REJECTED"


class MarketRegimeType(str, enum.Enum):
    """Volatility regime bucketed by historical percentile."""

    LOW_VOLATILITY = "low_volatility"
    NORMAL = "normal"
    HIGH_VOLATILITY = "high_volatility"
    EXTREME = "extreme"


class CompositeRegimeType(str, enum.Enum):
    """Volatility regime combined with the BTC 200-day trend filter."""

    BULL = "bull"
    NEUTRAL = "neutral"
    BEAR = "bear"
    EXTREME = "extreme"


class AuditEventType(str, enum.Enum):
    """Audit trail event types written by the lifecycle engine."""

    STRATEGY_PROMOTED = "STRATEGY_PROMOTED"
    STRATEGY_DEMOTED = "STRATEGY_DEMOTED"
    GATE_EVALUATION = "GATE_EVALUATION"
    DEPLOYMENT_ACTIVATED = "DEPLOYMENT_ACTIVATED"
    DEPLOYMENT_PAUSED = "DEPLOYMENT_PAUSED"
    DEPLOYMENT_RESUMED = "DEPLOYMENT_RESUMED"
    DEPLOYMENT_TERMINATED = "DEPLOYMENT_TERMINATED"
    ALLOCATION_ADJUSTED = "ALLOCATION_ADJUSTED"
    RISK_EVALUATION = "RISK_EVALUATION"
    MANUAL_INTERVENTION = "MANUAL_INTERVENTION"
    REGIME_SCALED_ALLOCATION = "REGIME_SCALED_ALLOCATION"


strategy_status_enum = PGEnum(
    StrategyStatus, name="strategy_status_enum", values_callable=lambda members: [m.value for m in members]
)
shadow_status_enum = PGEnum(
    ShadowStatus, name="shadow_status_enum", values_callable=lambda members: [m.value for m in members]
)
deployment_status_enum = PGEnum(
    DeploymentStatus, name="deployment_status_enum", values_callable=lambda members: [m.value for m in members]
)
backtest_status_enum = PGEnum(BacktestStatus, name="backtest_status_enum")
order_status_enum = PGEnum(OrderStatus, name="order_status_enum")
market_regime_enum = PGEnum(
    MarketRegimeType, name="market_regime_enum", values_callable=lambda members: [m.value for m in members]
)
audit_event_type_enum = PGEnum(AuditEventType, name="audit_event_type_enum")
