"""Per-asset volatility regime detection and regime change impact assessment."""

from __future__ import annotations

from dataclasses import dataclass
import logging
from typing import Any, Mapping, Optional, Sequence

from backend.db.enums import DeploymentStatus, MarketRegimeType
from strategy_engine.common import EngineClock, deterministic_uuid
from strategy_engine.regime.volatility import (
    DEFAULT_VOLATILITY_CONFIG,
    VolatilityCalculator,
    VolatilityConfig,
    determine_volatility_regime,
)
from strategy_engine.repository import DeploymentRecord, EngineRepository, MarketRegimeRecord

logger = logging.getLogger(__name__)

DEFAULT_HISTORY_LIMIT = 50

REGIME_LEVELS: Mapping[MarketRegimeType, int] = {
    MarketRegimeType.LOW_VOLATILITY: 1,
    MarketRegimeType.NORMAL: 2,
    MarketRegimeType.HIGH_VOLATILITY: 3,
    MarketRegimeType.EXTREME: 4,
}

REGIME_DISPLAY_NAMES: Mapping[MarketRegimeType, str] = {
    MarketRegimeType.LOW_VOLATILITY: "Low Volatility",
    MarketRegimeType.NORMAL: "Normal",
    MarketRegimeType.HIGH_VOLATILITY: "High Volatility",
    MarketRegimeType.EXTREME: "Extreme Volatility",
}


@dataclass(frozen=True)
class RegimeChangeImpact:
    affected_strategies: tuple[str, ...]
    recommended_actions: tuple[str, ...]
    severity: str
    description: str

    def as_dict(self) -> dict[str, Any]:
        return {
            "affectedStrategies": list(self.affected_strategies),
            "recommendedActions": list(self.recommended_actions),
            "severity": self.severity,
            "description": self.description,
        }


@dataclass(frozen=True)
class RegimeStats:
    regime_counts: Mapping[MarketRegimeType, int]
    avg_volatility: float
    regime_transitions: int


def regime_change_severity(from_regime: MarketRegimeType, to_regime: MarketRegimeType) -> str:
    level_diff = abs(REGIME_LEVELS[to_regime] - REGIME_LEVELS[from_regime])
    if level_diff >= 3:
        return "high"
    if level_diff == 2:
        return "medium"
    return "low"


def _volatility_direction(from_regime: MarketRegimeType, to_regime: MarketRegimeType) -> str:
    if REGIME_LEVELS[to_regime] > REGIME_LEVELS[from_regime]:
        return "increased significantly"
    if REGIME_LEVELS[to_regime] < REGIME_LEVELS[from_regime]:
        return "decreased significantly"
    return "remained stable"


def describe_regime_change(from_regime: MarketRegimeType, to_regime: MarketRegimeType, severity: str) -> str:
    label = {"high": "CRITICAL", "medium": "SIGNIFICANT"}.get(severity, "MINOR")
    return (
        f"{label} regime change: {REGIME_DISPLAY_NAMES[from_regime]} → {REGIME_DISPLAY_NAMES[to_regime]}. "
        f"Market volatility has {_volatility_direction(from_regime, to_regime)}."
    )


def should_flag_strategy(parameters: Mapping[str, Any], new_regime: MarketRegimeType) -> bool:
    """Heuristic vulnerability of a strategy type to the incoming regime."""
    strategy_type = parameters.get("strategyType")
    if strategy_type == "mean-reversion" and new_regime == MarketRegimeType.HIGH_VOLATILITY:
        return True
    if strategy_type == "momentum" and new_regime == MarketRegimeType.NORMAL:
        return True
    return new_regime == MarketRegimeType.EXTREME


def regime_change_recommendations(
    from_regime: MarketRegimeType,
    to_regime: MarketRegimeType,
    affected_count: int,
) -> list[str]:
    recommendations: list[str] = []
    if to_regime == MarketRegimeType.EXTREME:
        recommendations.extend(
            [
                "Reduce overall position sizes by 50%",
                "Tighten stop losses across all strategies",
                "Consider pausing mean-reversion strategies",
                "Increase monitoring frequency to every 15 minutes",
            ]
        )
    elif to_regime == MarketRegimeType.HIGH_VOLATILITY:
        recommendations.extend(
            [
                "Reduce position sizes by 25%",
                "Review and adjust stop losses",
                "Monitor drawdown limits closely",
            ]
        )
    elif from_regime in (MarketRegimeType.HIGH_VOLATILITY, MarketRegimeType.EXTREME) and to_regime in (
        MarketRegimeType.NORMAL,
        MarketRegimeType.LOW_VOLATILITY,
    ):
        recommendations.extend(
            [
                "Gradually restore position sizes",
                "Consider activating mean-reversion strategies",
                "Resume standard monitoring schedule",
            ]
        )

    if affected_count > 0:
        recommendations.append(f"Review {affected_count} flagged strategies for regime suitability")
    return recommendations


class RegimeChangeDetector:
    """Assesses which live strategies a regime transition puts at risk."""

    def __init__(self, repository: EngineRepository) -> None:
        self._repository = repository

    def find_affected_strategies(self, new_regime: MarketRegimeType) -> list[DeploymentRecord]:
        deployments = self._repository.list_deployments_by_status(DeploymentStatus.ACTIVE)
        return [d for d in deployments if should_flag_strategy(d.strategy_parameters, new_regime)]

    def detect_impact(
        self,
        from_regime: MarketRegimeType,
        to_regime: MarketRegimeType,
        asset: str,
    ) -> RegimeChangeImpact:
        severity = regime_change_severity(from_regime, to_regime)
        affected = self.find_affected_strategies(to_regime)
        logger.debug("Regime change on %s flags %d strategies", asset, len(affected))
        return RegimeChangeImpact(
            affected_strategies=tuple(d.strategy_config_id for d in affected),
            recommended_actions=tuple(regime_change_recommendations(from_regime, to_regime, len(affected))),
            severity=severity,
            description=describe_regime_change(from_regime, to_regime, severity),
        )


class MarketRegimeService:
    """Detects and persists the current volatility regime per asset."""

    def __init__(
        self,
        repository: EngineRepository,
        *,
        calculator: VolatilityCalculator | None = None,
        detector: RegimeChangeDetector | None = None,
        clock: EngineClock | None = None,
    ) -> None:
        self._repository = repository
        self._calculator = calculator or VolatilityCalculator()
        self._detector = detector or RegimeChangeDetector(repository)
        self._clock = clock or EngineClock()

    def detect_regime(
        self,
        asset: str,
        prices: Sequence[float],
        config: VolatilityConfig = DEFAULT_VOLATILITY_CONFIG,
    ) -> MarketRegimeRecord:
        """Classify the latest window and persist it when the regime changed or none exists."""
        volatility = self._calculator.calculate_realized_volatility(prices, config)
        percentile = self._calculator.calculate_percentile(volatility, prices, config)
        regime = determine_volatility_regime(percentile)

        current = self.get_current_regime(asset)
        if current is not None and current.regime == regime:
            return current

        now = self._clock.now_utc()
        record = MarketRegimeRecord(
            market_regime_id=str(deterministic_uuid("market_regime", asset, regime.value, now)),
            asset=asset,
            regime=regime,
            volatility=volatility,
            percentile=percentile,
            detected_at=now,
            previous_regime_id=None if current is None else current.market_regime_id,
            metadata={
                "calculationMethod": f"{config.rolling_days}-day-rolling-{config.method}",
                "lookbackDays": config.lookback_days,
                "dataPoints": len(prices),
            },
        )

        if current is not None:
            self._repository.close_regime(current.market_regime_id, now)
        self._repository.insert_regime(record)
        logger.info("New regime detected for %s: %s (%.1fth percentile)", asset, regime.value, percentile)

        if current is not None:
            impact = self._detector.detect_impact(current.regime, regime, asset)
            logger.warning(
                "Regime change detected for %s: %s -> %s (Severity: %s)",
                asset,
                current.regime.value,
                regime.value,
                impact.severity,
            )
            if impact.affected_strategies:
                logger.warning("%d strategies affected by regime change", len(impact.affected_strategies))
        return record

    def get_current_regime(self, asset: str) -> Optional[MarketRegimeRecord]:
        return self._repository.get_current_regime(asset)

    def get_regime_history(self, asset: str, limit: int = DEFAULT_HISTORY_LIMIT) -> tuple[MarketRegimeRecord, ...]:
        return self._repository.list_regime_history(asset, limit)

    def get_regime_stats(self, asset: str, limit: int = 1000) -> RegimeStats:
        regimes = self._repository.list_regime_history(asset, limit)
        counts = {regime: 0 for regime in MarketRegimeType}
        for record in regimes:
            counts[record.regime] += 1
        avg = sum(record.volatility for record in regimes) / len(regimes) if regimes else 0.0
        return RegimeStats(
            regime_counts=counts,
            avg_volatility=avg,
            regime_transitions=max(len(regimes) - 1, 0),
        )

    def is_high_volatility_regime(self, asset: str) -> bool:
        current = self.get_current_regime(asset)
        if current is None:
            return False
        return current.regime in (MarketRegimeType.HIGH_VOLATILITY, MarketRegimeType.EXTREME)
