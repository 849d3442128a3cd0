from __future__ import annotations

import pytest

from strategy_engine.risk.checks import (
    ConsecutiveLossesCheck,
    DailyLossLimitCheck,
    DrawdownBreachCheck,
    SharpeDegradationCheck,
    VolatilitySpikeCheck,
    default_checks,
    trailing_loss_streak,
)
from tests.engine.utils import loss_history, make_deployment, make_metric


def test_default_checks_order_and_demotion_flags() -> None:
    checks = default_checks()
    assert [check.name for check in checks] == [
        "drawdown-breach",
        "daily-loss-limit",
        "consecutive-losses",
        "volatility-spike",
        "sharpe-degradation",
    ]
    assert [check.auto_demote for check in checks] == [True, True, True, True, False]


@pytest.mark.parametrize(
    ("drawdown", "passed", "severity"),
    [
        (-0.31, False, "critical"),
        (0.2, False, "high"),
        (0.17, True, "medium"),
        (0.1, True, "low"),
    ],
)
def test_drawdown_breach_levels(drawdown: float, passed: bool, severity: str) -> None:
    result = DrawdownBreachCheck().evaluate(make_deployment(), make_metric(drawdown=drawdown))
    assert result.passed is passed
    assert result.severity == severity
    assert result.threshold == "20.00% (critical at 30.00%)"


def test_drawdown_falls_back_to_deployment_state() -> None:
    deployment = make_deployment(current_drawdown=0.35)
    result = DrawdownBreachCheck().evaluate(deployment, None)
    assert result.severity == "critical"
    assert result.message == "CRITICAL: drawdown 35.00% exceeds 30.00%"
    assert result.recommended_action is not None


@pytest.mark.parametrize(
    ("daily_return", "passed", "severity", "actual"),
    [
        (-0.05, False, "critical", "5.00%"),
        (-0.04, True, "medium", "4.00%"),
        (0.01, True, "low", "0.00%"),
    ],
)
def test_daily_loss_limit_levels(daily_return: float, passed: bool, severity: str, actual: str) -> None:
    result = DailyLossLimitCheck().evaluate(make_deployment(), make_metric(daily_return=daily_return))
    assert result.passed is passed
    assert result.severity == severity
    assert result.actual_value == actual


def test_daily_loss_without_metric_passes() -> None:
    result = DailyLossLimitCheck().evaluate(make_deployment(), None)
    assert result.passed is True
    assert result.actual_value == "N/A"


def test_trailing_loss_streak_counts_from_newest() -> None:
    history = [
        make_metric(daily_pnl=-1.0),
        make_metric(daily_pnl=2.0),
        make_metric(daily_pnl=-1.0),
        make_metric(daily_pnl=-3.0),
    ]
    assert trailing_loss_streak(history) == 2
    assert trailing_loss_streak([]) == 0
    assert trailing_loss_streak([make_metric(daily_pnl=0.0)]) == 0


@pytest.mark.parametrize(
    ("losing_tail", "passed", "severity"),
    [
        (15, False, "critical"),
        (10, False, "high"),
        (7, True, "medium"),
        (3, True, "low"),
    ],
)
def test_consecutive_losses_levels(losing_tail: int, passed: bool, severity: str) -> None:
    history = loss_history("d1", 20, losing_tail)
    result = ConsecutiveLossesCheck().evaluate(make_deployment(), history[-1], history)
    assert result.passed is passed
    assert result.severity == severity
    assert result.actual_value == f"{losing_tail} days"
    assert result.metadata["totalDaysReviewed"] == 20


def test_consecutive_losses_needs_history() -> None:
    history = loss_history("d1", 9, 9)
    result = ConsecutiveLossesCheck().evaluate(make_deployment(), history[-1], history)
    assert result.passed is True
    assert result.actual_value == "9 days of data"
    assert ConsecutiveLossesCheck().evaluate(make_deployment(), None, None).passed is True


@pytest.mark.parametrize(
    ("volatility", "passed", "severity"),
    [
        (0.61, False, "critical"),
        (0.40, False, "high"),
        (0.39, True, "medium"),
        (0.25, True, "low"),
    ],
)
def test_volatility_spike_levels(volatility: float, passed: bool, severity: str) -> None:
    deployment = make_deployment(metadata={"backtestVolatility": 0.2})
    result = VolatilitySpikeCheck().evaluate(deployment, make_metric(volatility=volatility))
    assert result.passed is passed
    assert result.severity == severity


def test_volatility_spike_defaults_and_missing_data() -> None:
    check = VolatilitySpikeCheck()
    assert check.evaluate(make_deployment(), make_metric()).actual_value == "N/A"
    result = check.evaluate(make_deployment(), make_metric(volatility=0.6))
    assert result.metadata["expectedVolatility"] == "50.00%"
    assert result.metadata["volatilityRatio"] == pytest.approx(1.2)
    assert result.severity == "low"


@pytest.mark.parametrize(
    ("live", "passed", "severity"),
    [
        (-0.1, False, "critical"),
        (0.9, False, "high"),
        (1.4, True, "medium"),
        (1.8, True, "low"),
    ],
)
def test_sharpe_degradation_levels(live: float, passed: bool, severity: str) -> None:
    deployment = make_deployment(metadata={"backtestSharpe": 2.0})
    result = SharpeDegradationCheck().evaluate(deployment, make_metric(sharpe_ratio=live))
    assert result.passed is passed
    assert result.severity == severity


def test_sharpe_degradation_uses_deployment_sharpe_and_skips_without_baseline() -> None:
    check = SharpeDegradationCheck()
    deployment = make_deployment(metadata={"backtestSharpe": 2.0}, live_sharpe_ratio=1.0)
    result = check.evaluate(deployment, None)
    assert result.actual_value == "50.00%"
    assert result.passed is False

    assert check.evaluate(make_deployment(), make_metric(sharpe_ratio=1.0)).actual_value == "N/A"
    no_baseline = check.evaluate(make_deployment(metadata={"backtestSharpe": 0}), make_metric(sharpe_ratio=1.0))
    assert no_baseline.message == "Sharpe ratio data not available for comparison"


def test_result_serialization_omits_empty_fields() -> None:
    payload = DailyLossLimitCheck().evaluate(make_deployment(), None).as_dict()
    assert "recommendedAction" not in payload
    assert "metadata" not in payload
    critical = DailyLossLimitCheck().evaluate(make_deployment(), make_metric(daily_return=-0.2)).as_dict()
    assert critical["checkName"] == "daily-loss-limit"
    assert critical["recommendedAction"] == "Halt trading for the day and demote deployment"
