"""Promotion gates a backtested strategy must clear before it may deploy live."""

from __future__ import annotations

from dataclasses import dataclass, field
import logging
from typing import Any, Mapping, Optional, Sequence

from backend.db.enums import MarketRegimeType
from strategy_engine import metrics
from strategy_engine.common import to_float
from strategy_engine.repository import (
    BacktestRunRecord,
    DeploymentRecord,
    StrategyConfigRecord,
    StrategyScoreRecord,
)

logger = logging.getLogger(__name__)

MIN_OVERALL_SCORE = 70.0
MIN_TOTAL_TRADES = 30
MAX_DRAWDOWN = 0.40
MAX_WFA_DEGRADATION_PCT = 30.0
MAX_CORRELATION = 0.7
MIN_CORRELATION_OVERLAP = 10
MAX_ANNUALIZED_VOLATILITY = 1.5
MAX_ACTIVE_DEPLOYMENTS = 35

SEVERITY_CRITICAL = "critical"
SEVERITY_WARNING = "warning"
SEVERITY_INFO = "info"


@dataclass(frozen=True)
class PromotionGateContext:
    """Portfolio state shared by every gate of one evaluation."""

    existing_deployments: tuple[DeploymentRecord, ...] = ()
    total_allocation: float = 0.0
    current_market_regime: Optional[MarketRegimeType] = None
    deployment_returns: Mapping[str, Sequence[float]] = field(default_factory=dict)


@dataclass(frozen=True)
class PromotionGateResult:
    gate_name: str
    passed: bool
    actual_value: Any
    required_value: Any
    message: str
    severity: str = SEVERITY_INFO

    def as_dict(self) -> dict[str, Any]:
        return {
            "gateName": self.gate_name,
            "passed": self.passed,
            "actualValue": self.actual_value,
            "requiredValue": self.required_value,
            "message": self.message,
            "severity": self.severity,
        }


def _pct(value: float) -> str:
    return f"{value * 100:.2f}%"


class PromotionGate:
    """Common gate contract; failures carry ``critical`` or ``warning`` severity."""

    name: str = ""
    description: str = ""
    priority: int = 0
    is_critical: bool = True

    def evaluate(
        self,
        strategy_config: StrategyConfigRecord,
        score: StrategyScoreRecord,
        backtest: BacktestRunRecord,
        context: PromotionGateContext,
    ) -> PromotionGateResult:
        raise NotImplementedError

    def _result(self, passed: bool, actual_value: Any, required_value: Any, message: str) -> PromotionGateResult:
        if passed:
            severity = SEVERITY_INFO
        else:
            severity = SEVERITY_CRITICAL if self.is_critical else SEVERITY_WARNING
        return PromotionGateResult(
            gate_name=self.name,
            passed=passed,
            actual_value=actual_value,
            required_value=required_value,
            message=message,
            severity=severity,
        )


class MinimumScoreGate(PromotionGate):
    name = "minimum-score"
    description = "Overall strategy score must be at least 70"
    priority = 1

    def evaluate(
        self,
        strategy_config: StrategyConfigRecord,
        score: StrategyScoreRecord,
        backtest: BacktestRunRecord,
        context: PromotionGateContext,
    ) -> PromotionGateResult:
        value = score.overall_score
        passed = value >= MIN_OVERALL_SCORE
        message = (
            f"Strategy score {value:.1f} meets minimum requirement"
            if passed
            else f"Strategy score {value:.1f} is below minimum {MIN_OVERALL_SCORE:.0f}"
        )
        return self._result(passed, round(value, 2), f">= {MIN_OVERALL_SCORE:.0f}", message)


class MinimumTradesGate(PromotionGate):
    name = "minimum-trades"
    description = "Backtest must contain at least 30 trades"
    priority = 2

    def evaluate(
        self,
        strategy_config: StrategyConfigRecord,
        score: StrategyScoreRecord,
        backtest: BacktestRunRecord,
        context: PromotionGateContext,
    ) -> PromotionGateResult:
        trades = int(to_float(backtest.results.get("totalTrades")))
        passed = trades >= MIN_TOTAL_TRADES
        message = (
            f"Backtest executed {trades} trades"
            if passed
            else f"Only {trades} trades in backtest, at least {MIN_TOTAL_TRADES} required for statistical significance"
        )
        return self._result(passed, trades, f">= {MIN_TOTAL_TRADES}", message)


class MaximumDrawdownGate(PromotionGate):
    """A backtest without ``maxDrawdown`` fails this gate with critical severity."""

    name = "maximum-drawdown"
    description = "Backtest maximum drawdown must stay below 40%"
    priority = 3

    def evaluate(
        self,
        strategy_config: StrategyConfigRecord,
        score: StrategyScoreRecord,
        backtest: BacktestRunRecord,
        context: PromotionGateContext,
    ) -> PromotionGateResult:
        raw = backtest.results.get("maxDrawdown")
        if raw is None:
            return self._result(False, "N/A", f"< {MAX_DRAWDOWN * 100:.0f}%", "Maximum drawdown data not available")
        drawdown = abs(to_float(raw))
        passed = drawdown < MAX_DRAWDOWN
        message = (
            f"Maximum drawdown {_pct(drawdown)} within limit"
            if passed
            else f"Maximum drawdown {_pct(drawdown)} exceeds {MAX_DRAWDOWN * 100:.0f}% limit"
        )
        return self._result(passed, _pct(drawdown), f"< {MAX_DRAWDOWN * 100:.0f}%", message)


def walk_forward_degradation(results: Mapping[str, Any]) -> float | None:
    """Percent degradation from training to test performance, if derivable."""
    if results.get("wfaDegradation") is not None:
        return to_float(results["wfaDegradation"])

    windows = results.get("wfaWindows") or ()
    degradations = [to_float(w["degradation"]) for w in windows if w.get("degradation") is not None]
    if degradations:
        return sum(degradations) / len(degradations)

    train = results.get("trainScore")
    test = results.get("testScore")
    if train is None or test is None or to_float(train) == 0:
        return None
    train_value = to_float(train)
    return (train_value - to_float(test)) / abs(train_value) * 100


class WFAConsistencyGate(PromotionGate):
    """Fails critically when no walk-forward figure can be derived from the backtest results."""

    name = "wfa-consistency"
    description = "Walk-forward out-of-sample degradation must stay below 30%"
    priority = 4

    def evaluate(
        self,
        strategy_config: StrategyConfigRecord,
        score: StrategyScoreRecord,
        backtest: BacktestRunRecord,
        context: PromotionGateContext,
    ) -> PromotionGateResult:
        required = f"< {MAX_WFA_DEGRADATION_PCT:.0f}%"
        degradation = walk_forward_degradation(backtest.results)
        if degradation is None:
            return self._result(False, "N/A", required, "Walk-forward analysis results not available")
        passed = degradation < MAX_WFA_DEGRADATION_PCT
        message = (
            f"Walk-forward degradation {degradation:.2f}% is consistent"
            if passed
            else f"Walk-forward degradation {degradation:.2f}% indicates overfitting"
        )
        return self._result(passed, f"{degradation:.2f}%", required, message)


class PositiveReturnsGate(PromotionGate):
    name = "positive-returns"
    description = "Backtest total return must be positive"
    priority = 5

    def evaluate(
        self,
        strategy_config: StrategyConfigRecord,
        score: StrategyScoreRecord,
        backtest: BacktestRunRecord,
        context: PromotionGateContext,
    ) -> PromotionGateResult:
        total_return = to_float(backtest.results.get("totalReturn"))
        passed = total_return > 0
        message = (
            f"Backtest total return {_pct(total_return)} is positive"
            if passed
            else f"Backtest total return {_pct(total_return)} is not positive"
        )
        return self._result(passed, _pct(total_return), "> 0%", message)


class CorrelationLimitGate(PromotionGate):
    name = "correlation-limit"
    description = "Correlation with existing live deployments must stay below 0.7"
    priority = 6
    is_critical = False

    def evaluate(
        self,
        strategy_config: StrategyConfigRecord,
        score: StrategyScoreRecord,
        backtest: BacktestRunRecord,
        context: PromotionGateContext,
    ) -> PromotionGateResult:
        required = f"< {MAX_CORRELATION}"
        if not context.existing_deployments:
            return self._result(True, "N/A", required, "No existing deployments, correlation check skipped")

        candidate = [to_float(value) for value in backtest.results.get("dailyReturns") or ()]
        correlations: dict[str, float] = {}
        for deployment in context.existing_deployments:
            series = list(context.deployment_returns.get(deployment.deployment_id, ()))
            overlap = min(len(candidate), len(series))
            if overlap < MIN_CORRELATION_OVERLAP:
                continue
            correlations[deployment.deployment_id] = metrics.pearson_correlation(
                candidate[-overlap:], series[-overlap:]
            )

        if not correlations:
            return self._result(True, "N/A", required, "Insufficient return data for correlation analysis")

        worst_id = max(correlations, key=lambda key: correlations[key])
        worst = correlations[worst_id]
        passed = worst < MAX_CORRELATION
        message = (
            f"Maximum correlation {worst:.2f} with existing deployments is acceptable"
            if passed
            else f"Correlation {worst:.2f} with deployment {worst_id} exceeds {MAX_CORRELATION}"
        )
        return self._result(passed, round(worst, 4), required, message)


class VolatilityCapGate(PromotionGate):
    name = "volatility-cap"
    description = "Annualized backtest volatility must stay below 150%"
    priority = 7
    is_critical = False

    def evaluate(
        self,
        strategy_config: StrategyConfigRecord,
        score: StrategyScoreRecord,
        backtest: BacktestRunRecord,
        context: PromotionGateContext,
    ) -> PromotionGateResult:
        required = f"< {MAX_ANNUALIZED_VOLATILITY * 100:.0f}%"
        raw = backtest.results.get("volatility")
        if raw is None:
            return self._result(True, "N/A", required, "Volatility data not available")
        volatility = to_float(raw)
        passed = volatility < MAX_ANNUALIZED_VOLATILITY
        message = (
            f"Annualized volatility {_pct(volatility)} within cap"
            if passed
            else f"Annualized volatility {_pct(volatility)} exceeds {MAX_ANNUALIZED_VOLATILITY * 100:.0f}% cap"
        )
        return self._result(passed, _pct(volatility), required, message)


class PortfolioCapacityGate(PromotionGate):
    name = "portfolio-capacity"
    description = "Fewer than 35 deployments may be active"
    priority = 8

    def evaluate(
        self,
        strategy_config: StrategyConfigRecord,
        score: StrategyScoreRecord,
        backtest: BacktestRunRecord,
        context: PromotionGateContext,
    ) -> PromotionGateResult:
        active = len(context.existing_deployments)
        passed = active < MAX_ACTIVE_DEPLOYMENTS
        message = (
            f"{active} active deployments, capacity available"
            if passed
            else f"Portfolio at capacity with {active} active deployments (max {MAX_ACTIVE_DEPLOYMENTS})"
        )
        return self._result(passed, active, f"< {MAX_ACTIVE_DEPLOYMENTS}", message)


def default_gates() -> tuple[PromotionGate, ...]:
    gates: list[PromotionGate] = [
        MinimumScoreGate(),
        MinimumTradesGate(),
        MaximumDrawdownGate(),
        WFAConsistencyGate(),
        PositiveReturnsGate(),
        CorrelationLimitGate(),
        VolatilityCapGate(),
        PortfolioCapacityGate(),
    ]
    return tuple(sorted(gates, key=lambda gate: gate.priority))
