"""Risk checks evaluated against live deployments.

Every check reads the deployment, its latest daily metric and up to 30 days of
history (oldest first) and returns one ``RiskCheckResult``. Only a failed
result with ``critical`` severity on a check flagged ``auto_demote`` stops a
deployment; other failures are warnings for operators.
"""

from __future__ import annotations

from dataclasses import dataclass, field
import logging
from typing import Any, Mapping, Optional, Sequence

from strategy_engine.common import to_float
from strategy_engine.repository import DeploymentRecord, PerformanceMetricRecord

logger = logging.getLogger(__name__)

SEVERITY_LOW = "low"
SEVERITY_MEDIUM = "medium"
SEVERITY_HIGH = "high"
SEVERITY_CRITICAL = "critical"

DRAWDOWN_CRITICAL_MULTIPLIER = 1.5
DRAWDOWN_WATCH_RATIO = 0.8
DAILY_LOSS_WATCH_RATIO = 0.75
CONSECUTIVE_LOSS_MIN_HISTORY = 10
CONSECUTIVE_LOSS_WATCH = 7
CONSECUTIVE_LOSS_WARNING = 10
CONSECUTIVE_LOSS_CRITICAL = 15
DEFAULT_EXPECTED_VOLATILITY = 0.5
VOLATILITY_WATCH_MULTIPLIER = 1.5
VOLATILITY_WARNING_MULTIPLIER = 2.0
VOLATILITY_CRITICAL_MULTIPLIER = 3.0
SHARPE_WATCH_DEGRADATION_PCT = 25.0
SHARPE_WARNING_DEGRADATION_PCT = 50.0
SHARPE_CRITICAL_DEGRADATION_PCT = 100.0


@dataclass(frozen=True)
class RiskCheckResult:
    check_name: str
    passed: bool
    actual_value: Any
    threshold: Any
    severity: str
    message: str
    recommended_action: Optional[str] = None
    metadata: Mapping[str, Any] = field(default_factory=dict)

    def as_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "checkName": self.check_name,
            "passed": self.passed,
            "actualValue": self.actual_value,
            "threshold": self.threshold,
            "severity": self.severity,
            "message": self.message,
        }
        if self.recommended_action is not None:
            payload["recommendedAction"] = self.recommended_action
        if self.metadata:
            payload["metadata"] = dict(self.metadata)
        return payload


def _pct(value: float) -> str:
    return f"{value * 100:.2f}%"


class RiskCheck:
    """Common check contract."""

    name: str = ""
    description: str = ""
    priority: int = 0
    auto_demote: bool = False

    def evaluate(
        self,
        deployment: DeploymentRecord,
        latest_metric: Optional[PerformanceMetricRecord],
        historical_metrics: Sequence[PerformanceMetricRecord] = (),
    ) -> RiskCheckResult:
        raise NotImplementedError

    def _result(
        self,
        *,
        passed: bool,
        actual_value: Any,
        threshold: Any,
        severity: str,
        message: str,
        recommended_action: Optional[str] = None,
        metadata: Mapping[str, Any] | None = None,
    ) -> RiskCheckResult:
        return RiskCheckResult(
            check_name=self.name,
            passed=passed,
            actual_value=actual_value,
            threshold=threshold,
            severity=severity,
            message=message,
            recommended_action=recommended_action,
            metadata=dict(metadata or {}),
        )


class DrawdownBreachCheck(RiskCheck):
    name = "drawdown-breach"
    description = "Current drawdown against the deployment limit; 1.5x the limit demotes"
    priority = 1
    auto_demote = True

    def evaluate(
        self,
        deployment: DeploymentRecord,
        latest_metric: Optional[PerformanceMetricRecord],
        historical_metrics: Sequence[PerformanceMetricRecord] = (),
    ) -> RiskCheckResult:
        limit = deployment.max_drawdown_limit
        drawdown = abs(latest_metric.drawdown if latest_metric is not None else deployment.current_drawdown)
        critical_level = limit * DRAWDOWN_CRITICAL_MULTIPLIER
        threshold = f"{_pct(limit)} (critical at {_pct(critical_level)})"
        metadata = {
            "maxDrawdownLimit": limit,
            "criticalMultiplier": DRAWDOWN_CRITICAL_MULTIPLIER,
            "maxDrawdownObserved": deployment.max_drawdown_observed,
        }

        if drawdown >= critical_level:
            return self._result(
                passed=False,
                actual_value=_pct(drawdown),
                threshold=threshold,
                severity=SEVERITY_CRITICAL,
                message=f"CRITICAL: drawdown {_pct(drawdown)} exceeds {_pct(critical_level)}",
                recommended_action="Demote deployment immediately and review strategy risk parameters",
                metadata=metadata,
            )
        if drawdown >= limit:
            return self._result(
                passed=False,
                actual_value=_pct(drawdown),
                threshold=threshold,
                severity=SEVERITY_HIGH,
                message=f"Drawdown {_pct(drawdown)} breached limit {_pct(limit)}",
                recommended_action="Reduce allocation or pause deployment",
                metadata=metadata,
            )
        if drawdown >= limit * DRAWDOWN_WATCH_RATIO:
            return self._result(
                passed=True,
                actual_value=_pct(drawdown),
                threshold=threshold,
                severity=SEVERITY_MEDIUM,
                message=f"Drawdown {_pct(drawdown)} approaching limit {_pct(limit)}",
                metadata=metadata,
            )
        return self._result(
            passed=True,
            actual_value=_pct(drawdown),
            threshold=threshold,
            severity=SEVERITY_LOW,
            message=f"Drawdown {_pct(drawdown)} within limit",
            metadata=metadata,
        )


class DailyLossLimitCheck(RiskCheck):
    name = "daily-loss-limit"
    description = "Single-day loss against the deployment daily loss limit"
    priority = 2
    auto_demote = True

    def evaluate(
        self,
        deployment: DeploymentRecord,
        latest_metric: Optional[PerformanceMetricRecord],
        historical_metrics: Sequence[PerformanceMetricRecord] = (),
    ) -> RiskCheckResult:
        limit = deployment.daily_loss_limit
        threshold = _pct(limit)
        if latest_metric is None:
            return self._result(
                passed=True,
                actual_value="N/A",
                threshold=threshold,
                severity=SEVERITY_LOW,
                message="Daily performance data not available",
            )

        loss = -latest_metric.daily_return
        metadata = {"dailyLossLimit": limit, "dailyPnl": latest_metric.daily_pnl}
        if loss >= limit:
            return self._result(
                passed=False,
                actual_value=_pct(loss),
                threshold=threshold,
                severity=SEVERITY_CRITICAL,
                message=f"CRITICAL: daily loss {_pct(loss)} exceeds limit {threshold}",
                recommended_action="Halt trading for the day and demote deployment",
                metadata=metadata,
            )
        if loss >= limit * DAILY_LOSS_WATCH_RATIO:
            return self._result(
                passed=True,
                actual_value=_pct(loss),
                threshold=threshold,
                severity=SEVERITY_MEDIUM,
                message=f"Daily loss {_pct(loss)} approaching limit {threshold}",
                metadata=metadata,
            )
        return self._result(
            passed=True,
            actual_value=_pct(max(loss, 0.0)),
            threshold=threshold,
            severity=SEVERITY_LOW,
            message="Daily loss within limit",
            metadata=metadata,
        )


def trailing_loss_streak(history: Sequence[PerformanceMetricRecord]) -> int:
    """Losing days counted from the newest metric back to the first non-loss day."""
    streak = 0
    for metric in reversed(history):
        if metric.daily_pnl < 0:
            streak += 1
        else:
            break
    return streak


class ConsecutiveLossesCheck(RiskCheck):
    name = "consecutive-losses"
    description = "Consecutive losing days: warning at 10, critical with auto-demotion at 15"
    priority = 3
    auto_demote = True

    def evaluate(
        self,
        deployment: DeploymentRecord,
        latest_metric: Optional[PerformanceMetricRecord],
        historical_metrics: Sequence[PerformanceMetricRecord] | None = (),
    ) -> RiskCheckResult:
        threshold = (
            f"{CONSECUTIVE_LOSS_WARNING} days (warning), {CONSECUTIVE_LOSS_CRITICAL} days (critical)"
        )
        history = list(historical_metrics or ())
        if len(history) < CONSECUTIVE_LOSS_MIN_HISTORY:
            return self._result(
                passed=True,
                actual_value=f"{len(history)} days of data",
                threshold=threshold,
                severity=SEVERITY_LOW,
                message="Insufficient historical data for consecutive loss analysis",
            )

        streak = trailing_loss_streak(history)
        metadata = {
            "warningThreshold": CONSECUTIVE_LOSS_WARNING,
            "criticalThreshold": CONSECUTIVE_LOSS_CRITICAL,
            "consecutiveLosses": streak,
            "totalDaysReviewed": len(history),
        }
        actual = f"{streak} days"

        if streak >= CONSECUTIVE_LOSS_CRITICAL:
            return self._result(
                passed=False,
                actual_value=actual,
                threshold=threshold,
                severity=SEVERITY_CRITICAL,
                message=f"CRITICAL: {streak} consecutive losing days",
                recommended_action="Demote deployment; strategy edge appears to have disappeared",
                metadata=metadata,
            )
        if streak >= CONSECUTIVE_LOSS_WARNING:
            return self._result(
                passed=False,
                actual_value=actual,
                threshold=threshold,
                severity=SEVERITY_HIGH,
                message=f"WARNING: {streak} consecutive losing days",
                recommended_action="Review strategy performance and consider reducing allocation",
                metadata=metadata,
            )
        if streak >= CONSECUTIVE_LOSS_WATCH:
            return self._result(
                passed=True,
                actual_value=actual,
                threshold=threshold,
                severity=SEVERITY_MEDIUM,
                message=f"{streak} consecutive losing days, monitoring",
                metadata=metadata,
            )
        return self._result(
            passed=True,
            actual_value=actual,
            threshold=threshold,
            severity=SEVERITY_LOW,
            message=f"{streak} consecutive losing days, within normal range",
            metadata=metadata,
        )


class VolatilitySpikeCheck(RiskCheck):
    name = "volatility-spike"
    description = "Live volatility against backtest volatility: warning at 2x, critical with auto-demotion at 3x"
    priority = 4
    auto_demote = True

    def evaluate(
        self,
        deployment: DeploymentRecord,
        latest_metric: Optional[PerformanceMetricRecord],
        historical_metrics: Sequence[PerformanceMetricRecord] = (),
    ) -> RiskCheckResult:
        expected = to_float(deployment.metadata.get("backtestVolatility"), DEFAULT_EXPECTED_VOLATILITY)
        warning_level = expected * VOLATILITY_WARNING_MULTIPLIER
        critical_level = expected * VOLATILITY_CRITICAL_MULTIPLIER
        threshold = f"{_pct(warning_level)} (warning), {_pct(critical_level)} (critical)"

        if latest_metric is None or latest_metric.volatility is None:
            return self._result(
                passed=True,
                actual_value="N/A",
                threshold=threshold,
                severity=SEVERITY_LOW,
                message="Volatility data not available",
            )

        volatility = latest_metric.volatility
        ratio = volatility / expected if expected > 0 else 0.0
        actual = _pct(volatility)
        metadata = {
            "warningMultiplier": VOLATILITY_WARNING_MULTIPLIER,
            "criticalMultiplier": VOLATILITY_CRITICAL_MULTIPLIER,
            "expectedVolatility": _pct(expected),
            "volatilityRatio": round(ratio, 4),
            "sharpeRatio": latest_metric.sharpe_ratio,
        }

        if ratio >= VOLATILITY_CRITICAL_MULTIPLIER:
            return self._result(
                passed=False,
                actual_value=actual,
                threshold=threshold,
                severity=SEVERITY_CRITICAL,
                message=f"CRITICAL: volatility {actual} is {ratio:.1f}x expected {_pct(expected)}",
                recommended_action="Demote deployment; market conditions differ materially from backtest",
                metadata=metadata,
            )
        if ratio >= VOLATILITY_WARNING_MULTIPLIER:
            return self._result(
                passed=False,
                actual_value=actual,
                threshold=threshold,
                severity=SEVERITY_HIGH,
                message=f"WARNING: volatility {actual} is {ratio:.1f}x expected {_pct(expected)}",
                recommended_action="Reduce position sizes until volatility normalizes",
                metadata=metadata,
            )
        if ratio > VOLATILITY_WATCH_MULTIPLIER:
            return self._result(
                passed=True,
                actual_value=actual,
                threshold=threshold,
                severity=SEVERITY_MEDIUM,
                message=f"Volatility {actual} elevated versus expected {_pct(expected)}",
                metadata=metadata,
            )
        return self._result(
            passed=True,
            actual_value=actual,
            threshold=threshold,
            severity=SEVERITY_LOW,
            message=f"Volatility {actual} within expected range",
            metadata=metadata,
        )


class SharpeDegradationCheck(RiskCheck):
    name = "sharpe-degradation"
    description = "Live Sharpe ratio degradation of 50% or more versus backtest"
    priority = 5
    auto_demote = False

    def evaluate(
        self,
        deployment: DeploymentRecord,
        latest_metric: Optional[PerformanceMetricRecord],
        historical_metrics: Sequence[PerformanceMetricRecord] = (),
    ) -> RiskCheckResult:
        threshold = f"{SHARPE_WARNING_DEGRADATION_PCT:.0f}% degradation"
        raw_expected = deployment.metadata.get("backtestSharpe")
        live = latest_metric.sharpe_ratio if latest_metric is not None else None
        if live is None:
            live = deployment.live_sharpe_ratio
        if raw_expected is None or to_float(raw_expected) <= 0 or live is None:
            return self._result(
                passed=True,
                actual_value="N/A",
                threshold=threshold,
                severity=SEVERITY_LOW,
                message="Sharpe ratio data not available for comparison",
            )

        expected = to_float(raw_expected)
        degradation = (expected - live) / expected * 100
        metadata = {"expectedSharpe": expected, "liveSharpe": live, "degradationPercent": round(degradation, 2)}
        actual = f"{degradation:.2f}%"

        if degradation >= SHARPE_WARNING_DEGRADATION_PCT:
            severity = SEVERITY_CRITICAL if degradation >= SHARPE_CRITICAL_DEGRADATION_PCT else SEVERITY_HIGH
            return self._result(
                passed=False,
                actual_value=actual,
                threshold=threshold,
                severity=severity,
                message=f"Live Sharpe {live:.2f} degraded {actual} from backtest {expected:.2f}",
                recommended_action="Review for strategy drift and re-run walk-forward validation",
                metadata=metadata,
            )
        if degradation >= SHARPE_WATCH_DEGRADATION_PCT:
            return self._result(
                passed=True,
                actual_value=actual,
                threshold=threshold,
                severity=SEVERITY_MEDIUM,
                message=f"Live Sharpe {live:.2f} trailing backtest {expected:.2f}",
                metadata=metadata,
            )
        return self._result(
            passed=True,
            actual_value=actual,
            threshold=threshold,
            severity=SEVERITY_LOW,
            message=f"Live Sharpe {live:.2f} consistent with backtest {expected:.2f}",
            metadata=metadata,
        )


def default_checks() -> tuple[RiskCheck, ...]:
    checks: list[RiskCheck] = [
        DrawdownBreachCheck(),
        DailyLossLimitCheck(),
        ConsecutiveLossesCheck(),
        VolatilitySpikeCheck(),
        SharpeDegradationCheck(),
    ]
    return tuple(sorted(checks, key=lambda check: check.priority))
