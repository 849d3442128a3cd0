"""Statistical primitives shared by the allocation, promotion and risk engines.

All helpers accept plain float sequences and return plain floats so results can
be persisted or compared without numpy scalar leakage. Empty inputs return 0
rather than raising; only structurally invalid inputs (mismatched series,
percentile outside 0..100) raise ``ValueError``.
"""

from __future__ import annotations

from dataclasses import dataclass
import math
from typing import Any, Sequence


DEFAULT_RISK_FREE_RATE = 0.02
DEFAULT_PERIODS_PER_YEAR = 252


def _numpy() -> Any:
    try:
        import numpy as np
    except ImportError as exc:
        raise RuntimeError("numpy is required for strategy engine statistics") from exc
    return np


def _as_array(values: Sequence[float]) -> Any:
    np = _numpy()
    return np.asarray(list(values), dtype=float)


def _require_same_length(left: Sequence[float], right: Sequence[float]) -> None:
    if len(left) != len(right):
        raise ValueError("Return series must have the same length")


def mean(values: Sequence[float]) -> float:
    if len(values) == 0:
        return 0.0
    return float(_numpy().mean(_as_array(values)))


def variance(values: Sequence[float], *, sample: bool = False) -> float:
    """Population variance by default; ``sample=True`` applies Bessel's correction."""
    n = len(values)
    if n == 0 or (sample and n < 2):
        return 0.0
    return float(_numpy().var(_as_array(values), ddof=1 if sample else 0))


def standard_deviation(values: Sequence[float], *, sample: bool = False) -> float:
    return math.sqrt(variance(values, sample=sample))


def median(values: Sequence[float]) -> float:
    if len(values) == 0:
        return 0.0
    return float(_numpy().median(_as_array(values)))


def percentile(values: Sequence[float], pct: float) -> float:
    """Linear-interpolated percentile over sorted values."""
    if len(values) == 0:
        return 0.0
    if pct < 0 or pct > 100:
        raise ValueError("Percentile must be between 0 and 100")
    return float(_numpy().percentile(_as_array(values), pct))


def rank_percentile(value: float, values: Sequence[float]) -> float:
    """Share of ``values`` strictly below ``value``, in percent."""
    if len(values) == 0:
        return 0.0
    below = sum(1 for item in values if item < value)
    return below / len(values) * 100.0


def z_score(value: float, values: Sequence[float]) -> float:
    std = standard_deviation(values)
    if std == 0:
        return 0.0
    return (value - mean(values)) / std


def cumulative_return(returns: Sequence[float]) -> float:
    if len(returns) == 0:
        return 0.0
    return float(_numpy().prod(1.0 + _as_array(returns)) - 1.0)


def annualize_return(total_return: float, periods: int, periods_per_year: int = DEFAULT_PERIODS_PER_YEAR) -> float:
    if periods == 0:
        return 0.0
    return math.pow(1.0 + total_return, periods_per_year / periods) - 1.0


def annualize_volatility(returns: Sequence[float], periods_per_year: int = DEFAULT_PERIODS_PER_YEAR) -> float:
    return standard_deviation(returns) * math.sqrt(periods_per_year)


def downside_deviation(returns: Sequence[float], mar: float = 0.0) -> float:
    """Root of mean squared shortfall below ``mar`` over the full series length."""
    if len(returns) == 0:
        return 0.0
    np = _numpy()
    arr = _as_array(returns)
    shortfall = np.minimum(arr - mar, 0.0)
    if not np.any(shortfall < 0):
        return 0.0
    return float(math.sqrt(float(np.sum(shortfall**2)) / len(arr)))


def sharpe_ratio(
    returns: Sequence[float],
    risk_free_rate: float = DEFAULT_RISK_FREE_RATE,
    periods_per_year: int = DEFAULT_PERIODS_PER_YEAR,
) -> float:
    """Annualized Sharpe ratio of periodic returns against an annual risk-free rate."""
    if len(returns) == 0:
        return 0.0
    excess = _as_array(returns) - risk_free_rate / periods_per_year
    std = float(_numpy().std(excess))
    if std == 0:
        return 0.0
    return float(excess.mean()) / std * math.sqrt(periods_per_year)


def sortino_ratio(
    returns: Sequence[float],
    risk_free_rate: float = DEFAULT_RISK_FREE_RATE,
    periods_per_year: int = DEFAULT_PERIODS_PER_YEAR,
) -> float:
    """Annualized Sortino ratio; ``inf`` when no period falls below the risk-free rate."""
    if len(returns) == 0:
        return 0.0
    period_rf = risk_free_rate / periods_per_year
    arr = _as_array(returns)
    if not bool((arr < period_rf).any()):
        return math.inf
    downside = downside_deviation(returns, mar=period_rf)
    if downside == 0:
        return 0.0
    return float((arr - period_rf).mean()) / downside * math.sqrt(periods_per_year)


def covariance(left: Sequence[float], right: Sequence[float]) -> float:
    """Population covariance."""
    if len(left) == 0 or len(right) == 0:
        return 0.0
    _require_same_length(left, right)
    a = _as_array(left)
    b = _as_array(right)
    return float(((a - a.mean()) * (b - b.mean())).mean())


def pearson_correlation(left: Sequence[float], right: Sequence[float]) -> float:
    if len(left) == 0 or len(right) == 0:
        return 0.0
    _require_same_length(left, right)
    np = _numpy()
    a = _as_array(left) - mean(left)
    b = _as_array(right) - mean(right)
    denominator = math.sqrt(float(np.sum(a * a)) * float(np.sum(b * b)))
    if denominator == 0:
        return 0.0
    return float(np.sum(a * b)) / denominator


def _ranks(values: Sequence[float]) -> list[float]:
    order = sorted(range(len(values)), key=lambda idx: values[idx])
    ranks = [0.0] * len(values)
    for rank, idx in enumerate(order, start=1):
        ranks[idx] = float(rank)
    return ranks


def spearman_correlation(left: Sequence[float], right: Sequence[float]) -> float:
    if len(left) == 0 or len(right) == 0:
        return 0.0
    _require_same_length(left, right)
    return pearson_correlation(_ranks(left), _ranks(right))


def beta(strategy_returns: Sequence[float], benchmark_returns: Sequence[float]) -> float:
    if len(strategy_returns) == 0 or len(benchmark_returns) == 0:
        return 0.0
    _require_same_length(strategy_returns, benchmark_returns)
    benchmark_variance = variance(benchmark_returns)
    if benchmark_variance == 0:
        return 0.0
    return covariance(strategy_returns, benchmark_returns) / benchmark_variance


def alpha(
    strategy_return: float,
    benchmark_return: float,
    beta_value: float,
    risk_free_rate: float = DEFAULT_RISK_FREE_RATE,
) -> float:
    """Jensen's alpha."""
    return strategy_return - (risk_free_rate + beta_value * (benchmark_return - risk_free_rate))


def correlation_matrix(series: Sequence[Sequence[float]]) -> list[list[float]]:
    """Symmetric Pearson matrix with a unit diagonal."""
    n = len(series)
    matrix = [[0.0] * n for _ in range(n)]
    for i in range(n):
        matrix[i][i] = 1.0
        for j in range(i + 1, n):
            value = pearson_correlation(series[i], series[j])
            matrix[i][j] = value
            matrix[j][i] = value
    return matrix


@dataclass(frozen=True)
class DrawdownResult:
    """Peak-to-trough summary over an equity curve."""

    max_drawdown: float
    max_drawdown_pct: float
    current_drawdown: float
    peak_index: int
    trough_index: int


def equity_curve(returns: Sequence[float], start: float = 1.0) -> list[float]:
    curve = [start]
    for ret in returns:
        curve.append(curve[-1] * (1.0 + ret))
    return curve


def drawdown_series(curve: Sequence[float]) -> list[float]:
    """Fractional drawdown from running peak at every point (0 at new highs)."""
    if len(curve) == 0:
        return []
    np = _numpy()
    arr = _as_array(curve)
    peaks = np.maximum.accumulate(arr)
    with np.errstate(divide="ignore", invalid="ignore"):
        drawdowns = np.where(peaks != 0, (peaks - arr) / peaks, 0.0)
    return [float(value) for value in drawdowns]


def max_drawdown(curve: Sequence[float]) -> DrawdownResult:
    if len(curve) == 0:
        return DrawdownResult(0.0, 0.0, 0.0, 0, 0)
    peak = curve[0]
    peak_index = 0
    worst = 0.0
    worst_pct = 0.0
    worst_peak_index = 0
    trough_index = 0
    for idx, value in enumerate(curve):
        if value > peak:
            peak = value
            peak_index = idx
        drop = peak - value
        if drop > worst:
            worst = drop
            worst_pct = drop / peak * 100.0 if peak != 0 else 0.0
            worst_peak_index = peak_index
            trough_index = idx
    return DrawdownResult(
        max_drawdown=worst,
        max_drawdown_pct=worst_pct,
        current_drawdown=peak - curve[-1],
        peak_index=worst_peak_index,
        trough_index=trough_index,
    )


def max_drawdown_from_returns(returns: Sequence[float]) -> DrawdownResult:
    return max_drawdown(equity_curve(returns))


def calmar_ratio(annualized_return: float, max_drawdown_pct: float) -> float:
    if max_drawdown_pct == 0:
        return 0.0
    return annualized_return / (max_drawdown_pct / 100.0)
