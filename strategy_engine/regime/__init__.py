"""Market regime detection, composite classification and the regime gate."""

from strategy_engine.regime.classifier import (
    DEFAULT_REGIME_MULTIPLIERS,
    RISK_REGIME_MULTIPLIER_MATRIX,
    classify_composite_regime,
    get_regime_multiplier,
)
from strategy_engine.regime.composite import CompositeRegimeService, CompositeSnapshot, OverrideState
from strategy_engine.regime.gate import RegimeGateDecision, RegimeGateService
from strategy_engine.regime.market_regime import (
    MarketRegimeService,
    RegimeChangeDetector,
    RegimeChangeImpact,
    RegimeStats,
)
from strategy_engine.regime.volatility import (
    DEFAULT_VOLATILITY_CONFIG,
    VolatilityCalculator,
    VolatilityConfig,
    determine_volatility_regime,
)

__all__ = [
    "CompositeRegimeService",
    "CompositeSnapshot",
    "DEFAULT_REGIME_MULTIPLIERS",
    "DEFAULT_VOLATILITY_CONFIG",
    "MarketRegimeService",
    "OverrideState",
    "RISK_REGIME_MULTIPLIER_MATRIX",
    "RegimeChangeDetector",
    "RegimeChangeImpact",
    "RegimeGateDecision",
    "RegimeGateService",
    "RegimeStats",
    "VolatilityCalculator",
    "VolatilityConfig",
    "classify_composite_regime",
    "determine_volatility_regime",
    "get_regime_multiplier",
]
