"""Strategy engine test utilities."""

from __future__ import annotations

from contextlib import contextmanager
from dataclasses import replace
from datetime import date, datetime, timedelta, timezone
from typing import Any, Iterator, Mapping, Optional, Sequence

from backend.db.enums import DeploymentStatus, MarketRegimeType, StrategyStatus
from strategy_engine.repository import (
    BacktestRunRecord,
    DeploymentRecord,
    MarketRegimeRecord,
    OrderOutcome,
    PerformanceMetricRecord,
    StrategyConfigRecord,
    StrategyScoreRecord,
)

NOW = datetime(2026, 3, 2, 2, 0, tzinfo=timezone.utc)


class FakeDB:
    """Small in-memory DB double keyed by SQL fragments."""

    def __init__(self) -> None:
        self.executed: list[tuple[str, dict[str, Any]]] = []
        self.one_responses: dict[str, Mapping[str, Any] | None] = {}
        self.all_responses: dict[str, Sequence[Mapping[str, Any]]] = {}
        self.savepoints: list[str] = []

    def set_one(self, marker: str, value: Mapping[str, Any] | None) -> None:
        self.one_responses[marker] = value

    def set_all(self, marker: str, value: Sequence[Mapping[str, Any]]) -> None:
        self.all_responses[marker] = value

    def fetch_one(self, sql: str, params: Mapping[str, Any]) -> Optional[Mapping[str, Any]]:
        for marker, value in self.one_responses.items():
            if marker in sql:
                return value
        rows = self.fetch_all(sql, params)
        return rows[0] if rows else None

    def fetch_all(self, sql: str, params: Mapping[str, Any]) -> Sequence[Mapping[str, Any]]:
        for marker, value in self.all_responses.items():
            if marker in sql:
                return list(value)
        return []

    def execute(self, sql: str, params: Mapping[str, Any]) -> None:
        self.executed.append((sql, dict(params)))

    @contextmanager
    def savepoint(self) -> Iterator[None]:
        self.savepoints.append("open")
        try:
            yield
        except Exception:
            self.savepoints[-1] = "rolled_back"
            raise
        self.savepoints[-1] = "released"


class FixedClock:
    def __init__(self, now_ts: datetime = NOW) -> None:
        self.now_ts = now_ts

    def now_utc(self) -> datetime:
        return self.now_ts

    def advance(self, **kwargs: float) -> None:
        self.now_ts = self.now_ts + timedelta(**kwargs)


class RecordingAudit:
    """Captures ``AuditService.record`` calls without touching storage."""

    def __init__(self) -> None:
        self.events: list[dict[str, Any]] = []

    def record(self, event_type: Any, entity_type: str, entity_id: str, **kwargs: Any) -> None:
        self.events.append(
            {"event_type": event_type, "entity_type": entity_type, "entity_id": entity_id, **kwargs}
        )

    def of_type(self, event_type: Any) -> list[dict[str, Any]]:
        return [event for event in self.events if event["event_type"] == event_type]


class FakeRepository:
    """In-memory stand-in for ``EngineRepository``."""

    def __init__(self) -> None:
        self.strategies: dict[str, StrategyConfigRecord] = {}
        self.scores: dict[str, list[StrategyScoreRecord]] = {}
        self.backtests: dict[str, BacktestRunRecord] = {}
        self.orders: list[OrderOutcome] = []
        self.deployments: dict[str, DeploymentRecord] = {}
        self.metrics: dict[str, list[PerformanceMetricRecord]] = {}
        self.regimes: list[MarketRegimeRecord] = []
        self.closes: dict[str, list[float]] = {}
        self.status_updates: list[tuple[str, StrategyStatus]] = []
        self.fail_insert_deployment = False

    # Strategy configs and scores

    def get_strategy_config(self, strategy_config_id: str) -> Optional[StrategyConfigRecord]:
        return self.strategies.get(strategy_config_id)

    def list_strategy_configs_by_status(self, status: StrategyStatus) -> tuple[StrategyConfigRecord, ...]:
        return tuple(s for s in self.strategies.values() if s.status == status)

    def update_strategy_status(self, strategy_config_id: str, status: StrategyStatus, now_utc: datetime) -> None:
        self.status_updates.append((strategy_config_id, status))
        if strategy_config_id in self.strategies:
            self.strategies[strategy_config_id] = replace(self.strategies[strategy_config_id], status=status)

    def get_latest_score(self, strategy_config_id: str) -> Optional[StrategyScoreRecord]:
        scores = sorted(self.scores.get(strategy_config_id, ()), key=lambda s: s.calculated_at, reverse=True)
        return scores[0] if scores else None

    def list_scores_latest_first(self, strategy_config_ids: Sequence[str]) -> tuple[StrategyScoreRecord, ...]:
        rows = [score for sid in strategy_config_ids for score in self.scores.get(sid, ())]
        return tuple(sorted(rows, key=lambda s: s.calculated_at, reverse=True))

    def get_latest_backtest(self, strategy_config_id: str) -> Optional[BacktestRunRecord]:
        return self.backtests.get(strategy_config_id)

    def list_filled_algorithmic_orders(self, strategy_config_ids: Sequence[str]) -> tuple[OrderOutcome, ...]:
        return tuple(o for o in self.orders if o.strategy_config_id in strategy_config_ids)

    # Deployments

    def get_deployment(self, deployment_id: str) -> Optional[DeploymentRecord]:
        return self.deployments.get(deployment_id)

    def list_deployments_by_strategy(self, strategy_config_id: str) -> tuple[DeploymentRecord, ...]:
        return tuple(d for d in self.deployments.values() if d.strategy_config_id == strategy_config_id)

    def list_deployments_by_status(self, status: DeploymentStatus) -> tuple[DeploymentRecord, ...]:
        return tuple(d for d in self.deployments.values() if d.status == status)

    def find_active_deployment_for_strategy(self, strategy_config_id: str) -> Optional[DeploymentRecord]:
        return next(
            (d for d in self.list_deployments_by_strategy(strategy_config_id) if d.status == DeploymentStatus.ACTIVE),
            None,
        )

    def count_active_deployments(self) -> int:
        return len(self.list_deployments_by_status(DeploymentStatus.ACTIVE))

    def sum_active_allocation(self) -> float:
        return sum(d.allocation_percent for d in self.list_deployments_by_status(DeploymentStatus.ACTIVE))

    def insert_deployment(self, record: DeploymentRecord) -> None:
        if self.fail_insert_deployment:
            raise RuntimeError("insert failed")
        self.deployments[record.deployment_id] = record

    def update_deployment(self, record: DeploymentRecord) -> None:
        self.deployments[record.deployment_id] = record

    # Performance metrics

    def get_latest_metric(self, deployment_id: str) -> Optional[PerformanceMetricRecord]:
        rows = self.metrics.get(deployment_id, [])
        return max(rows, key=lambda m: m.metric_date) if rows else None

    def list_metrics(
        self,
        deployment_id: str,
        *,
        start_date: date | None = None,
        end_date: date | None = None,
    ) -> tuple[PerformanceMetricRecord, ...]:
        rows = sorted(self.metrics.get(deployment_id, []), key=lambda m: m.metric_date)
        return tuple(
            m
            for m in rows
            if (start_date is None or m.metric_date >= start_date) and (end_date is None or m.metric_date <= end_date)
        )

    def list_daily_returns(self, deployment_ids: Sequence[str], start_date: date) -> tuple[Mapping[str, Any], ...]:
        return tuple(
            {"deployment_id": m.deployment_id, "metric_date": m.metric_date, "daily_return": m.daily_return}
            for deployment_id in deployment_ids
            for m in self.list_metrics(deployment_id, start_date=start_date)
        )

    def upsert_metric(self, record: PerformanceMetricRecord) -> None:
        rows = [m for m in self.metrics.get(record.deployment_id, []) if m.metric_date != record.metric_date]
        rows.append(record)
        self.metrics[record.deployment_id] = rows

    # Market regimes and prices

    def get_current_regime(self, asset: str) -> Optional[MarketRegimeRecord]:
        open_rows = [r for r in self.regimes if r.asset == asset and r.effective_until is None]
        return max(open_rows, key=lambda r: r.detected_at) if open_rows else None

    def list_regime_history(self, asset: str, limit: int) -> tuple[MarketRegimeRecord, ...]:
        rows = sorted((r for r in self.regimes if r.asset == asset), key=lambda r: r.detected_at, reverse=True)
        return tuple(rows[:limit])

    def insert_regime(self, record: MarketRegimeRecord) -> None:
        self.regimes.append(record)

    def close_regime(self, market_regime_id: str, effective_until: datetime) -> None:
        self.regimes = [
            replace(r, effective_until=effective_until) if r.market_regime_id == market_regime_id else r
            for r in self.regimes
        ]

    def get_daily_closes(self, symbol: str, start_date: date) -> list[float]:
        return list(self.closes.get(symbol, []))


def make_strategy(
    strategy_config_id: str = "s1",
    *,
    status: StrategyStatus = StrategyStatus.TESTING,
    parameters: Mapping[str, Any] | None = None,
) -> StrategyConfigRecord:
    return StrategyConfigRecord(
        strategy_config_id=strategy_config_id,
        name=f"Strategy {strategy_config_id}",
        algorithm_name="sma-crossover",
        parameters=dict(parameters or {}),
        status=status,
    )


def make_score(
    strategy_config_id: str = "s1",
    *,
    overall_score: float = 85.0,
    promotion_eligible: bool = True,
    sharpe_value: float | None = 0.2,
    calculated_at: datetime = NOW - timedelta(hours=1),
) -> StrategyScoreRecord:
    components: dict[str, Any] = {}
    if sharpe_value is not None:
        components["sharpeRatio"] = {"value": sharpe_value, "weight": 0.25}
    return StrategyScoreRecord(
        strategy_score_id=f"score-{strategy_config_id}-{calculated_at.isoformat()}",
        strategy_config_id=strategy_config_id,
        overall_score=overall_score,
        component_scores=components,
        grade="A",
        promotion_eligible=promotion_eligible,
        calculated_at=calculated_at,
    )


def make_backtest(strategy_config_id: str = "s1", **results: Any) -> BacktestRunRecord:
    payload: dict[str, Any] = {
        "totalTrades": 45,
        "maxDrawdown": -0.18,
        "wfaDegradation": 12.0,
        "totalReturn": 0.35,
        "volatility": 0.6,
    }
    payload.update(results)
    return BacktestRunRecord(
        backtest_run_id=f"bt-{strategy_config_id}",
        strategy_config_id=strategy_config_id,
        status="COMPLETED",
        results=payload,
        created_at=NOW - timedelta(days=1),
        completed_at=NOW - timedelta(hours=20),
    )


def make_deployment(
    deployment_id: str = "d1",
    strategy_config_id: str = "s1",
    *,
    status: DeploymentStatus = DeploymentStatus.ACTIVE,
    allocation_percent: float = 5.0,
    max_drawdown_limit: float = 0.2,
    daily_loss_limit: float = 0.05,
    metadata: Mapping[str, Any] | None = None,
    **overrides: Any,
) -> DeploymentRecord:
    values: dict[str, Any] = dict(
        deployment_id=deployment_id,
        strategy_config_id=strategy_config_id,
        status=status,
        allocation_percent=allocation_percent,
        initial_allocation_percent=allocation_percent,
        max_drawdown_limit=max_drawdown_limit,
        daily_loss_limit=daily_loss_limit,
        position_size_limit=0.1,
        deployed_at=NOW - timedelta(days=20) if status != DeploymentStatus.PENDING_APPROVAL else None,
        metadata=dict(metadata or {}),
        created_at=NOW - timedelta(days=21),
        updated_at=NOW - timedelta(days=21),
    )
    values.update(overrides)
    return DeploymentRecord(**values)


def make_metric(
    deployment_id: str = "d1",
    *,
    metric_date: date = NOW.date(),
    daily_pnl: float = 10.0,
    daily_return: float = 0.001,
    **overrides: Any,
) -> PerformanceMetricRecord:
    return PerformanceMetricRecord(
        deployment_id=deployment_id,
        metric_date=metric_date,
        daily_pnl=daily_pnl,
        daily_return=daily_return,
        **overrides,
    )


def loss_history(deployment_id: str, days: int, losing_tail: int) -> list[PerformanceMetricRecord]:
    """``days`` metrics oldest first whose newest ``losing_tail`` entries are losses."""
    start = NOW.date() - timedelta(days=days - 1)
    history: list[PerformanceMetricRecord] = []
    for idx in range(days):
        losing = idx >= days - losing_tail
        history.append(
            make_metric(
                deployment_id,
                metric_date=start + timedelta(days=idx),
                daily_pnl=-5.0 if losing else 5.0,
                daily_return=-0.001 if losing else 0.001,
            )
        )
    return history


def make_regime(
    asset: str = "BTC",
    regime: MarketRegimeType = MarketRegimeType.NORMAL,
    *,
    market_regime_id: str = "r1",
    detected_at: datetime = NOW - timedelta(days=3),
    volatility: float = 0.5,
) -> MarketRegimeRecord:
    return MarketRegimeRecord(
        market_regime_id=market_regime_id,
        asset=asset,
        regime=regime,
        volatility=volatility,
        percentile=50.0,
        detected_at=detected_at,
    )
