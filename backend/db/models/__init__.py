"""Model module imports for SQLAlchemy metadata registration."""

from __future__ import annotations

import logging

from backend.db.models.audit import AuditLog
from backend.db.models.deployment import Deployment, PerformanceMetric
from backend.db.models.market import MarketPriceDaily, MarketRegime
from backend.db.models.strategy import BacktestRun, StrategyConfig, StrategyOrder, StrategyScore

logger = logging.getLogger(__name__)

__all__ = [
    "AuditLog",
    "BacktestRun",
    "Deployment",
    "MarketPriceDaily",
    "MarketRegime",
    "PerformanceMetric",
    "StrategyConfig",
    "StrategyOrder",
    "StrategyScore",
]
