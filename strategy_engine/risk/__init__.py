"""Risk checks and the monitoring service that demotes failing deployments."""

from strategy_engine.risk.checks import (
    ConsecutiveLossesCheck,
    DailyLossLimitCheck,
    DrawdownBreachCheck,
    RiskCheck,
    RiskCheckResult,
    SharpeDegradationCheck,
    VolatilitySpikeCheck,
    default_checks,
    trailing_loss_streak,
)
from strategy_engine.risk.service import RiskEvaluation, RiskManagementService

__all__ = [
    "ConsecutiveLossesCheck",
    "DailyLossLimitCheck",
    "DrawdownBreachCheck",
    "RiskCheck",
    "RiskCheckResult",
    "RiskEvaluation",
    "RiskManagementService",
    "SharpeDegradationCheck",
    "VolatilitySpikeCheck",
    "default_checks",
    "trailing_loss_streak",
]
