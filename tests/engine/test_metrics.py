from __future__ import annotations

import builtins
import math

import pytest

from strategy_engine import metrics


def test_central_tendency_and_dispersion() -> None:
    values = [1.0, 2.0, 3.0, 4.0]
    assert metrics.mean(values) == pytest.approx(2.5)
    assert metrics.variance(values) == pytest.approx(1.25)
    assert metrics.variance(values, sample=True) == pytest.approx(5.0 / 3.0)
    assert metrics.standard_deviation(values) == pytest.approx(math.sqrt(1.25))
    assert metrics.median([3.0, 1.0, 2.0]) == pytest.approx(2.0)

    assert metrics.mean([]) == 0.0
    assert metrics.variance([1.0], sample=True) == 0.0
    assert metrics.median([]) == 0.0


def test_percentiles_and_ranks() -> None:
    assert metrics.percentile([1.0, 2.0, 3.0, 4.0, 5.0], 50) == pytest.approx(3.0)
    with pytest.raises(ValueError, match="between 0 and 100"):
        metrics.percentile([1.0], 101)
    assert metrics.rank_percentile(3.0, [1.0, 2.0, 3.0, 4.0]) == pytest.approx(50.0)
    assert metrics.rank_percentile(1.0, []) == 0.0
    assert metrics.z_score(5.0, [5.0, 5.0]) == 0.0


def test_return_helpers() -> None:
    assert metrics.cumulative_return([0.1, -0.1]) == pytest.approx(-0.01)
    assert metrics.annualize_return(0.0, 0) == 0.0
    assert metrics.annualize_return(0.21, 2, periods_per_year=1) == pytest.approx(0.1)
    assert metrics.sharpe_ratio([0.01, 0.01, 0.01]) == 0.0
    assert metrics.sortino_ratio([0.05, 0.04]) == math.inf
    assert metrics.sortino_ratio([]) == 0.0
    assert metrics.downside_deviation([0.01, 0.02]) == 0.0
    assert metrics.calmar_ratio(0.3, 15.0) == pytest.approx(2.0)
    assert metrics.calmar_ratio(0.3, 0.0) == 0.0


def test_correlations_and_beta() -> None:
    assert metrics.pearson_correlation([1.0, 2.0, 3.0], [2.0, 4.0, 6.0]) == pytest.approx(1.0)
    assert metrics.pearson_correlation([1.0, 2.0, 3.0], [3.0, 2.0, 1.0]) == pytest.approx(-1.0)
    assert metrics.pearson_correlation([1.0, 1.0], [1.0, 2.0]) == 0.0
    assert metrics.spearman_correlation([1.0, 2.0, 3.0], [10.0, 100.0, 1000.0]) == pytest.approx(1.0)
    with pytest.raises(ValueError, match="same length"):
        metrics.pearson_correlation([1.0, 2.0], [1.0])

    benchmark = [0.01, -0.02, 0.03, 0.0]
    strategy = [2 * value for value in benchmark]
    assert metrics.beta(strategy, benchmark) == pytest.approx(2.0)
    assert metrics.alpha(0.12, 0.1, 1.0, risk_free_rate=0.02) == pytest.approx(0.02)

    matrix = metrics.correlation_matrix([[1.0, 2.0, 3.0], [3.0, 2.0, 1.0]])
    assert matrix[0][0] == 1.0 and matrix[1][1] == 1.0
    assert matrix[0][1] == pytest.approx(-1.0)
    assert matrix[1][0] == matrix[0][1]


def test_drawdown_helpers() -> None:
    result = metrics.max_drawdown([100.0, 120.0, 90.0, 130.0, 110.0])
    assert result.max_drawdown == pytest.approx(30.0)
    assert result.max_drawdown_pct == pytest.approx(25.0)
    assert (result.peak_index, result.trough_index) == (1, 2)
    assert result.current_drawdown == pytest.approx(20.0)

    assert metrics.drawdown_series([1.0, 2.0, 1.0]) == pytest.approx([0.0, 0.0, 0.5])
    assert metrics.equity_curve([0.1, -0.5], start=100.0) == pytest.approx([100.0, 110.0, 55.0])
    assert metrics.max_drawdown_from_returns([0.1, -0.5]).max_drawdown_pct == pytest.approx(50.0)
    assert metrics.max_drawdown([]).max_drawdown == 0.0


def test_numpy_missing_raises_runtime_error(monkeypatch: pytest.MonkeyPatch) -> None:
    original_import = builtins.__import__

    def _patched(name, *args, **kwargs):  # type: ignore[no-untyped-def]
        if name == "numpy":
            raise ImportError("numpy")
        return original_import(name, *args, **kwargs)

    monkeypatch.setattr(builtins, "__import__", _patched)
    with pytest.raises(RuntimeError, match="numpy is required"):
        metrics.mean([1.0, 2.0])


@pytest.mark.parametrize("factor", [0.5, 2.0, 10.0])
def test_beta_scaling_relations(factor: float) -> None:
    benchmark = [0.012, -0.018, 0.025, 0.004, -0.007, 0.015]
    strategy = [0.02, -0.01, 0.03, -0.002, -0.012, 0.018]
    base = metrics.beta(strategy, benchmark)

    scaled_benchmark = [factor * value for value in benchmark]
    scaled_strategy = [factor * value for value in strategy]
    assert metrics.beta(scaled_strategy, scaled_benchmark) == pytest.approx(base)
    assert metrics.beta(strategy, scaled_benchmark) == pytest.approx(base / factor)
    assert metrics.beta(scaled_benchmark, scaled_benchmark) == pytest.approx(1.0)
    assert metrics.beta(strategy, [value + 0.01 for value in benchmark]) == pytest.approx(base)
    assert metrics.pearson_correlation(strategy, scaled_benchmark) == pytest.approx(
        metrics.pearson_correlation(strategy, benchmark)
    )
