"""Realized volatility estimators and historical percentile ranking."""

from __future__ import annotations

from dataclasses import dataclass
import math
from typing import Literal, Sequence

from backend.db.enums import MarketRegimeType
from strategy_engine import metrics

VolatilityMethod = Literal["standard", "exponential", "parkinson"]

EWMA_LAMBDA = 0.94
GARCH_OMEGA = 0.000001
GARCH_ALPHA = 0.1
GARCH_BETA = 0.85
GARCH_MIN_RETURNS = 10

# Lower percentile bound of each bucket, checked highest first.
REGIME_PERCENTILE_FLOORS: tuple[tuple[MarketRegimeType, float], ...] = (
    (MarketRegimeType.EXTREME, 90.0),
    (MarketRegimeType.HIGH_VOLATILITY, 75.0),
    (MarketRegimeType.NORMAL, 25.0),
)


@dataclass(frozen=True)
class VolatilityConfig:
    """Rolling-window settings for daily close series."""

    rolling_days: int = 30
    lookback_days: int = 365
    annualization_factor: int = 365
    method: VolatilityMethod = "standard"


DEFAULT_VOLATILITY_CONFIG = VolatilityConfig()


def determine_volatility_regime(percentile: float) -> MarketRegimeType:
    """Bucket a 0..100 volatility percentile into a regime."""
    for regime, floor in REGIME_PERCENTILE_FLOORS:
        if percentile >= floor:
            return regime
    return MarketRegimeType.LOW_VOLATILITY


def simple_returns(prices: Sequence[float]) -> list[float]:
    """Close-to-close returns, skipping steps whose previous price is zero."""
    returns: list[float] = []
    for prev, current in zip(prices, prices[1:]):
        if prev != 0:
            returns.append((current - prev) / prev)
    return returns


class VolatilityCalculator:
    """Stateless realized-volatility calculator over daily closes."""

    def calculate_realized_volatility(
        self,
        prices: Sequence[float],
        config: VolatilityConfig = DEFAULT_VOLATILITY_CONFIG,
    ) -> float:
        """Annualized volatility of the most recent ``rolling_days`` returns."""
        if len(prices) < config.rolling_days + 1:
            raise ValueError(f"Insufficient data: need at least {config.rolling_days + 1} prices")

        recent = simple_returns(prices)[-config.rolling_days :]
        if config.method == "exponential":
            volatility = self.exponential_volatility(recent)
        elif config.method == "parkinson":
            volatility = self.parkinson_volatility(prices[-config.rolling_days - 1 :])
        else:
            volatility = self.standard_volatility(recent)
        return volatility * math.sqrt(config.annualization_factor)

    def calculate_percentile(
        self,
        current_volatility: float,
        prices: Sequence[float],
        config: VolatilityConfig = DEFAULT_VOLATILITY_CONFIG,
    ) -> float:
        """Percent of historical rolling-window volatilities strictly below the current one."""
        if len(prices) < config.lookback_days:
            raise ValueError(
                f"Insufficient data: need at least {config.lookback_days} prices for percentile calculation"
            )

        scale = math.sqrt(config.annualization_factor)
        history = [
            self.standard_volatility(simple_returns(prices[idx - config.rolling_days : idx + 1])) * scale
            for idx in range(config.rolling_days, len(prices))
        ]
        if not history:
            return 0.0
        return metrics.rank_percentile(current_volatility, history)

    @staticmethod
    def standard_volatility(returns: Sequence[float]) -> float:
        return metrics.standard_deviation(returns)

    @staticmethod
    def exponential_volatility(returns: Sequence[float], decay: float = EWMA_LAMBDA) -> float:
        """EWMA volatility around the sample mean; newest return weighs most."""
        if len(returns) == 0:
            return 0.0
        avg = metrics.mean(returns)
        n = len(returns)
        weighted = 0.0
        total_weight = 0.0
        for idx, ret in enumerate(returns):
            weight = decay ** (n - 1 - idx)
            weighted += weight * (ret - avg) ** 2
            total_weight += weight
        return math.sqrt(weighted / total_weight)

    @staticmethod
    def parkinson_volatility(prices: Sequence[float]) -> float:
        """Parkinson range estimator using consecutive closes as the high/low pair."""
        if len(prices) < 2:
            return 0.0
        total = 0.0
        for prev, current in zip(prices, prices[1:]):
            high = max(prev, current)
            low = min(prev, current)
            if low > 0:
                total += math.log(high / low) ** 2
        return math.sqrt(total / (4 * math.log(2) * (len(prices) - 1)))

    def calculate_garch_volatility(self, returns: Sequence[float]) -> float:
        """One-step GARCH(1,1) forecast with fixed parameters."""
        if len(returns) < GARCH_MIN_RETURNS:
            return self.standard_volatility(returns)
        variance = self.standard_volatility(returns) ** 2
        for ret in returns:
            variance = GARCH_OMEGA + GARCH_ALPHA * ret**2 + GARCH_BETA * variance
        return math.sqrt(variance)

    def calculate_implied_volatility(self) -> float:
        raise NotImplementedError("Implied volatility requires options market data")
