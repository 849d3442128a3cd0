"""Pure composite-regime classification and regime-aware position sizing."""

from __future__ import annotations

from typing import Mapping

from backend.db.enums import CompositeRegimeType, MarketRegimeType

_MIN_RISK_LEVEL = 1
_MAX_RISK_LEVEL = 5

# Capital multiplier per (user risk level, composite regime). BULL never scales down;
# EXTREME halts allocation for conservative and moderate profiles.
RISK_REGIME_MULTIPLIER_MATRIX: Mapping[int, Mapping[CompositeRegimeType, float]] = {
    1: {
        CompositeRegimeType.BULL: 1.0,
        CompositeRegimeType.NEUTRAL: 0.4,
        CompositeRegimeType.BEAR: 0.05,
        CompositeRegimeType.EXTREME: 0.0,
    },
    2: {
        CompositeRegimeType.BULL: 1.0,
        CompositeRegimeType.NEUTRAL: 0.45,
        CompositeRegimeType.BEAR: 0.075,
        CompositeRegimeType.EXTREME: 0.0,
    },
    3: {
        CompositeRegimeType.BULL: 1.0,
        CompositeRegimeType.NEUTRAL: 0.5,
        CompositeRegimeType.BEAR: 0.1,
        CompositeRegimeType.EXTREME: 0.0,
    },
    4: {
        CompositeRegimeType.BULL: 1.0,
        CompositeRegimeType.NEUTRAL: 0.6,
        CompositeRegimeType.BEAR: 0.15,
        CompositeRegimeType.EXTREME: 0.05,
    },
    5: {
        CompositeRegimeType.BULL: 1.0,
        CompositeRegimeType.NEUTRAL: 0.7,
        CompositeRegimeType.BEAR: 0.2,
        CompositeRegimeType.EXTREME: 0.1,
    },
}

DEFAULT_REGIME_MULTIPLIERS: Mapping[CompositeRegimeType, float] = RISK_REGIME_MULTIPLIER_MATRIX[3]


def classify_composite_regime(volatility_regime: MarketRegimeType, trend_above_sma: bool) -> CompositeRegimeType:
    """Combine volatility regime with the 200-day trend filter.

    Below the SMA every regime is BEAR except EXTREME volatility, which stays EXTREME.
    Above the SMA high or extreme volatility downgrades BULL to NEUTRAL.
    """
    if not trend_above_sma:
        if volatility_regime == MarketRegimeType.EXTREME:
            return CompositeRegimeType.EXTREME
        return CompositeRegimeType.BEAR
    if volatility_regime in (MarketRegimeType.HIGH_VOLATILITY, MarketRegimeType.EXTREME):
        return CompositeRegimeType.NEUTRAL
    return CompositeRegimeType.BULL


def get_regime_multiplier(risk_level: int, regime: CompositeRegimeType | str) -> float:
    """Look up the capital multiplier, falling back to the moderate profile."""
    row = RISK_REGIME_MULTIPLIER_MATRIX.get(risk_level) if _MIN_RISK_LEVEL <= risk_level <= _MAX_RISK_LEVEL else None
    if row is None:
        row = DEFAULT_REGIME_MULTIPLIERS
    try:
        key = CompositeRegimeType(regime)
    except ValueError:
        return DEFAULT_REGIME_MULTIPLIERS[CompositeRegimeType.NEUTRAL]
    return row[key]
