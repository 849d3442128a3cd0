"""Strategy lifecycle engine: promotion, risk monitoring, regimes and capital allocation."""

from strategy_engine.allocation import CapitalAllocationService, RegimeContext
from strategy_engine.audit import AuditEntry, AuditService
from strategy_engine.deployment import (
    DeploymentError,
    DeploymentNotFoundError,
    DeploymentService,
    DeploymentStateError,
)
from strategy_engine.engine_config import EngineConfig, load_engine_config
from strategy_engine.promotion import PromotionError, PromotionGateEvaluation, PromotionGateService
from strategy_engine.regime import (
    CompositeRegimeService,
    MarketRegimeService,
    RegimeGateDecision,
    RegimeGateService,
    VolatilityCalculator,
)
from strategy_engine.repository import EngineRepository
from strategy_engine.risk import RiskEvaluation, RiskManagementService
from strategy_engine.scheduler import SchedulerStatus, StrategyLifecycleScheduler

__all__ = [
    "AuditEntry",
    "AuditService",
    "CapitalAllocationService",
    "CompositeRegimeService",
    "DeploymentError",
    "DeploymentNotFoundError",
    "DeploymentService",
    "DeploymentStateError",
    "EngineConfig",
    "EngineRepository",
    "MarketRegimeService",
    "PromotionError",
    "PromotionGateEvaluation",
    "PromotionGateService",
    "RegimeContext",
    "RegimeGateDecision",
    "RegimeGateService",
    "RiskEvaluation",
    "RiskManagementService",
    "SchedulerStatus",
    "StrategyLifecycleScheduler",
    "VolatilityCalculator",
    "load_engine_config",
]
