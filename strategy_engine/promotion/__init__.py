"""Promotion gate pipeline deciding whether a backtested strategy may go live."""

from strategy_engine.promotion.gates import (
    CorrelationLimitGate,
    MaximumDrawdownGate,
    MinimumScoreGate,
    MinimumTradesGate,
    PortfolioCapacityGate,
    PositiveReturnsGate,
    PromotionGate,
    PromotionGateContext,
    PromotionGateResult,
    VolatilityCapGate,
    WFAConsistencyGate,
    default_gates,
)
from strategy_engine.promotion.service import (
    PromotionError,
    PromotionGateEvaluation,
    PromotionGateService,
    summarize_gate_results,
)

__all__ = [
    "CorrelationLimitGate",
    "MaximumDrawdownGate",
    "MinimumScoreGate",
    "MinimumTradesGate",
    "PortfolioCapacityGate",
    "PositiveReturnsGate",
    "PromotionError",
    "PromotionGate",
    "PromotionGateContext",
    "PromotionGateEvaluation",
    "PromotionGateResult",
    "PromotionGateService",
    "VolatilityCapGate",
    "WFAConsistencyGate",
    "default_gates",
    "summarize_gate_results",
]
