"""SQL readers and writers for strategy lifecycle tables.

Every engine service talks to storage through ``EngineRepository`` so the SQL
lives in one place and services can be exercised against an in-memory DB double.
Rows are converted into frozen records; numeric columns come back as floats.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
import logging
from typing import Any, Mapping, Optional, Sequence

from backend.db.enums import DeploymentStatus, MarketRegimeType, StrategyStatus
from strategy_engine.common import EngineDatabase, canonical_json, load_json, parse_utc, to_float

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StrategyConfigRecord:
    strategy_config_id: str
    name: str
    algorithm_name: str
    parameters: Mapping[str, Any] = field(default_factory=dict)
    status: StrategyStatus = StrategyStatus.DRAFT


@dataclass(frozen=True)
class StrategyScoreRecord:
    strategy_score_id: str
    strategy_config_id: str
    overall_score: float
    component_scores: Mapping[str, Any]
    grade: str
    promotion_eligible: bool
    calculated_at: datetime
    percentile: float | None = None
    warnings: tuple[str, ...] = ()


@dataclass(frozen=True)
class BacktestRunRecord:
    backtest_run_id: str
    strategy_config_id: str
    status: str
    results: Mapping[str, Any]
    created_at: datetime
    completed_at: datetime | None = None


@dataclass(frozen=True)
class OrderOutcome:
    """Filled algorithmic order with its realized gain/loss."""

    strategy_config_id: str
    gain_loss: float | None
    cost: float | None


@dataclass(frozen=True)
class DeploymentRecord:
    deployment_id: str
    strategy_config_id: str
    status: DeploymentStatus
    allocation_percent: float
    initial_allocation_percent: float
    max_drawdown_limit: float
    daily_loss_limit: float
    position_size_limit: float
    max_leverage: float = 1.0
    deployed_at: datetime | None = None
    terminated_at: datetime | None = None
    termination_reason: str | None = None
    realized_pnl: float = 0.0
    unrealized_pnl: float = 0.0
    current_drawdown: float = 0.0
    max_drawdown_observed: float = 0.0
    total_trades: int = 0
    winning_trades: int = 0
    losing_trades: int = 0
    live_sharpe_ratio: float | None = None
    drift_alert_count: int = 0
    last_drift_detected_at: datetime | None = None
    drift_metrics: Mapping[str, Any] | None = None
    approved_by: str | None = None
    approved_at: datetime | None = None
    promotion_reason: str | None = None
    metadata: Mapping[str, Any] = field(default_factory=dict)
    created_at: datetime | None = None
    updated_at: datetime | None = None
    strategy_name: str | None = None
    strategy_parameters: Mapping[str, Any] = field(default_factory=dict)

    @property
    def is_active(self) -> bool:
        return self.status == DeploymentStatus.ACTIVE

    @property
    def is_terminal(self) -> bool:
        return self.status in (DeploymentStatus.DEMOTED, DeploymentStatus.TERMINATED)

    def days_live(self, now_utc: datetime) -> int:
        if self.deployed_at is None:
            return 0
        return max((now_utc - self.deployed_at).days, 0)


@dataclass(frozen=True)
class PerformanceMetricRecord:
    deployment_id: str
    metric_date: date
    daily_pnl: float
    daily_return: float
    cumulative_pnl: float = 0.0
    cumulative_return: float = 0.0
    drawdown: float = 0.0
    max_drawdown: float = 0.0
    volatility: float | None = None
    sharpe_ratio: float | None = None
    trades_count: int = 0
    cumulative_trades_count: int = 0
    winning_trades: int = 0
    losing_trades: int = 0
    drift_detected: bool = False
    drift_details: Mapping[str, Any] | None = None
    market_regime: str | None = None
    metadata: Mapping[str, Any] | None = None
    snapshot_at: datetime | None = None


@dataclass(frozen=True)
class MarketRegimeRecord:
    market_regime_id: str
    asset: str
    regime: MarketRegimeType
    volatility: float
    percentile: float
    detected_at: datetime
    effective_until: datetime | None = None
    previous_regime_id: str | None = None
    metadata: Mapping[str, Any] | None = None


_DEPLOYMENT_COLUMNS = """
    d.deployment_id, d.strategy_config_id, d.status, d.allocation_percent,
    d.initial_allocation_percent, d.max_drawdown_limit, d.daily_loss_limit,
    d.position_size_limit, d.max_leverage, d.deployed_at, d.terminated_at,
    d.termination_reason, d.realized_pnl, d.unrealized_pnl, d.current_drawdown,
    d.max_drawdown_observed, d.total_trades, d.winning_trades, d.losing_trades,
    d.live_sharpe_ratio, d.drift_alert_count, d.last_drift_detected_at,
    d.drift_metrics, d.approved_by, d.approved_at, d.promotion_reason,
    d.metadata, d.created_at, d.updated_at,
    sc.name AS strategy_name, sc.parameters AS strategy_parameters
"""

_DEPLOYMENT_FROM = """
    FROM deployment d
    LEFT JOIN strategy_config sc
      ON sc.strategy_config_id = d.strategy_config_id
"""


def _optional_float(value: Any) -> float | None:
    return None if value is None else float(value)


def _json_param(value: Any) -> str | None:
    return None if value is None else canonical_json(value)


def _to_date(value: Any) -> date:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    return date.fromisoformat(str(value))


class EngineRepository:
    """Query surface over the lifecycle schema."""

    def __init__(self, db: EngineDatabase) -> None:
        self._db = db

    # Strategy configs and scores

    def get_strategy_config(self, strategy_config_id: str) -> Optional[StrategyConfigRecord]:
        row = self._db.fetch_one(
            """
            SELECT strategy_config_id, name, algorithm_name, parameters, status
            FROM strategy_config
            WHERE strategy_config_id = :strategy_config_id
            """,
            {"strategy_config_id": strategy_config_id},
        )
        return None if row is None else self._to_strategy_config(row)

    def list_strategy_configs_by_status(self, status: StrategyStatus) -> tuple[StrategyConfigRecord, ...]:
        rows = self._db.fetch_all(
            """
            SELECT strategy_config_id, name, algorithm_name, parameters, status
            FROM strategy_config
            WHERE status = :status
            ORDER BY created_at ASC, strategy_config_id ASC
            """,
            {"status": StrategyStatus(status).value},
        )
        return tuple(self._to_strategy_config(row) for row in rows)

    def update_strategy_status(self, strategy_config_id: str, status: StrategyStatus, now_utc: datetime) -> None:
        self._db.execute(
            """
            UPDATE strategy_config
            SET status = :status, updated_at = :updated_at
            WHERE strategy_config_id = :strategy_config_id
            """,
            {"strategy_config_id": strategy_config_id, "status": StrategyStatus(status).value, "updated_at": now_utc},
        )

    def get_latest_score(self, strategy_config_id: str) -> Optional[StrategyScoreRecord]:
        row = self._db.fetch_one(
            """
            SELECT strategy_score_id, strategy_config_id, overall_score, component_scores,
                   percentile, grade, promotion_eligible, warnings, calculated_at
            FROM strategy_score
            WHERE strategy_config_id = :strategy_config_id
            ORDER BY calculated_at DESC
            LIMIT 1
            """,
            {"strategy_config_id": strategy_config_id},
        )
        return None if row is None else self._to_score(row)

    def list_scores_latest_first(self, strategy_config_ids: Sequence[str]) -> tuple[StrategyScoreRecord, ...]:
        """All scores for the given strategies ordered newest first."""
        if not strategy_config_ids:
            return ()
        rows = self._db.fetch_all(
            """
            SELECT strategy_score_id, strategy_config_id, overall_score, component_scores,
                   percentile, grade, promotion_eligible, warnings, calculated_at
            FROM strategy_score
            WHERE strategy_config_id = ANY(CAST(:strategy_config_ids AS UUID[]))
            ORDER BY calculated_at DESC
            """,
            {"strategy_config_ids": list(strategy_config_ids)},
        )
        return tuple(self._to_score(row) for row in rows)

    def get_latest_backtest(self, strategy_config_id: str) -> Optional[BacktestRunRecord]:
        row = self._db.fetch_one(
            """
            SELECT backtest_run_id, strategy_config_id, status, results, created_at, completed_at
            FROM backtest_run
            WHERE strategy_config_id = :strategy_config_id
              AND status = 'COMPLETED'
            ORDER BY created_at DESC
            LIMIT 1
            """,
            {"strategy_config_id": strategy_config_id},
        )
        if row is None:
            return None
        created_at = parse_utc(row["created_at"])
        if created_at is None:
            raise RuntimeError(f"backtest_run {row['backtest_run_id']} has no created_at")
        return BacktestRunRecord(
            backtest_run_id=str(row["backtest_run_id"]),
            strategy_config_id=str(row["strategy_config_id"]),
            status=str(row["status"]),
            results=load_json(row.get("results")) or {},
            created_at=created_at,
            completed_at=parse_utc(row.get("completed_at")),
        )

    def list_filled_algorithmic_orders(self, strategy_config_ids: Sequence[str]) -> tuple[OrderOutcome, ...]:
        if not strategy_config_ids:
            return ()
        rows = self._db.fetch_all(
            """
            SELECT strategy_config_id, gain_loss, cost
            FROM strategy_order
            WHERE strategy_config_id = ANY(CAST(:strategy_config_ids AS UUID[]))
              AND is_algorithmic_trade = TRUE
              AND status = 'FILLED'
            """,
            {"strategy_config_ids": list(strategy_config_ids)},
        )
        return tuple(
            OrderOutcome(
                strategy_config_id=str(row["strategy_config_id"]),
                gain_loss=_optional_float(row.get("gain_loss")),
                cost=_optional_float(row.get("cost")),
            )
            for row in rows
        )

    # Deployments

    def get_deployment(self, deployment_id: str) -> Optional[DeploymentRecord]:
        row = self._db.fetch_one(
            f"SELECT {_DEPLOYMENT_COLUMNS} {_DEPLOYMENT_FROM} WHERE d.deployment_id = :deployment_id",
            {"deployment_id": deployment_id},
        )
        return None if row is None else self._to_deployment(row)

    def list_deployments_by_strategy(self, strategy_config_id: str) -> tuple[DeploymentRecord, ...]:
        rows = self._db.fetch_all(
            f"""
            SELECT {_DEPLOYMENT_COLUMNS} {_DEPLOYMENT_FROM}
            WHERE d.strategy_config_id = :strategy_config_id
            ORDER BY d.created_at DESC
            """,
            {"strategy_config_id": strategy_config_id},
        )
        return tuple(self._to_deployment(row) for row in rows)

    def list_deployments_by_status(self, status: DeploymentStatus) -> tuple[DeploymentRecord, ...]:
        rows = self._db.fetch_all(
            f"""
            SELECT {_DEPLOYMENT_COLUMNS} {_DEPLOYMENT_FROM}
            WHERE d.status = :status
            ORDER BY d.created_at ASC, d.deployment_id ASC
            """,
            {"status": DeploymentStatus(status).value},
        )
        return tuple(self._to_deployment(row) for row in rows)

    def find_active_deployment_for_strategy(self, strategy_config_id: str) -> Optional[DeploymentRecord]:
        row = self._db.fetch_one(
            f"""
            SELECT {_DEPLOYMENT_COLUMNS} {_DEPLOYMENT_FROM}
            WHERE d.strategy_config_id = :strategy_config_id
              AND d.status = 'active'
            LIMIT 1
            """,
            {"strategy_config_id": strategy_config_id},
        )
        return None if row is None else self._to_deployment(row)

    def count_active_deployments(self) -> int:
        row = self._db.fetch_one("SELECT COUNT(*) AS n FROM deployment WHERE status = 'active'", {})
        return 0 if row is None else int(row["n"])

    def sum_active_allocation(self) -> float:
        row = self._db.fetch_one(
            "SELECT COALESCE(SUM(allocation_percent), 0) AS total FROM deployment WHERE status = 'active'",
            {},
        )
        return 0.0 if row is None else to_float(row["total"])

    def insert_deployment(self, record: DeploymentRecord) -> None:
        self._db.execute(
            """
            INSERT INTO deployment (
                deployment_id, strategy_config_id, status, allocation_percent,
                initial_allocation_percent, max_drawdown_limit, daily_loss_limit,
                position_size_limit, max_leverage, approved_by, approved_at,
                promotion_reason, metadata, created_at, updated_at
            ) VALUES (
                :deployment_id, :strategy_config_id, :status, :allocation_percent,
                :initial_allocation_percent, :max_drawdown_limit, :daily_loss_limit,
                :position_size_limit, :max_leverage, :approved_by, :approved_at,
                :promotion_reason, CAST(:metadata AS JSONB), :created_at, :updated_at
            )
            """,
            {
                "deployment_id": record.deployment_id,
                "strategy_config_id": record.strategy_config_id,
                "status": record.status.value,
                "allocation_percent": record.allocation_percent,
                "initial_allocation_percent": record.initial_allocation_percent,
                "max_drawdown_limit": record.max_drawdown_limit,
                "daily_loss_limit": record.daily_loss_limit,
                "position_size_limit": record.position_size_limit,
                "max_leverage": record.max_leverage,
                "approved_by": record.approved_by,
                "approved_at": record.approved_at,
                "promotion_reason": record.promotion_reason,
                "metadata": canonical_json(dict(record.metadata)),
                "created_at": record.created_at,
                "updated_at": record.updated_at,
            },
        )

    def update_deployment(self, record: DeploymentRecord) -> None:
        """Write back every mutable deployment column."""
        self._db.execute(
            """
            UPDATE deployment
            SET status = :status,
                allocation_percent = :allocation_percent,
                deployed_at = :deployed_at,
                terminated_at = :terminated_at,
                termination_reason = :termination_reason,
                realized_pnl = :realized_pnl,
                unrealized_pnl = :unrealized_pnl,
                current_drawdown = :current_drawdown,
                max_drawdown_observed = :max_drawdown_observed,
                total_trades = :total_trades,
                winning_trades = :winning_trades,
                losing_trades = :losing_trades,
                live_sharpe_ratio = :live_sharpe_ratio,
                drift_alert_count = :drift_alert_count,
                last_drift_detected_at = :last_drift_detected_at,
                drift_metrics = CAST(:drift_metrics AS JSONB),
                metadata = CAST(:metadata AS JSONB),
                updated_at = :updated_at
            WHERE deployment_id = :deployment_id
            """,
            {
                "deployment_id": record.deployment_id,
                "status": record.status.value,
                "allocation_percent": record.allocation_percent,
                "deployed_at": record.deployed_at,
                "terminated_at": record.terminated_at,
                "termination_reason": record.termination_reason,
                "realized_pnl": record.realized_pnl,
                "unrealized_pnl": record.unrealized_pnl,
                "current_drawdown": record.current_drawdown,
                "max_drawdown_observed": record.max_drawdown_observed,
                "total_trades": record.total_trades,
                "winning_trades": record.winning_trades,
                "losing_trades": record.losing_trades,
                "live_sharpe_ratio": record.live_sharpe_ratio,
                "drift_alert_count": record.drift_alert_count,
                "last_drift_detected_at": record.last_drift_detected_at,
                "drift_metrics": _json_param(record.drift_metrics),
                "metadata": canonical_json(dict(record.metadata)),
                "updated_at": record.updated_at,
            },
        )

    # Performance metrics

    def get_latest_metric(self, deployment_id: str) -> Optional[PerformanceMetricRecord]:
        row = self._db.fetch_one(
            """
            SELECT *
            FROM performance_metric
            WHERE deployment_id = :deployment_id
            ORDER BY metric_date DESC
            LIMIT 1
            """,
            {"deployment_id": deployment_id},
        )
        return None if row is None else self._to_metric(row)

    def list_metrics(
        self,
        deployment_id: str,
        *,
        start_date: date | None = None,
        end_date: date | None = None,
    ) -> tuple[PerformanceMetricRecord, ...]:
        """Metrics for one deployment in ascending date order."""
        rows = self._db.fetch_all(
            """
            SELECT *
            FROM performance_metric
            WHERE deployment_id = :deployment_id
              AND (CAST(:start_date AS DATE) IS NULL OR metric_date >= CAST(:start_date AS DATE))
              AND (CAST(:end_date AS DATE) IS NULL OR metric_date <= CAST(:end_date AS DATE))
            ORDER BY metric_date ASC
            """,
            {"deployment_id": deployment_id, "start_date": start_date, "end_date": end_date},
        )
        return tuple(self._to_metric(row) for row in rows)

    def list_daily_returns(self, deployment_ids: Sequence[str], start_date: date) -> tuple[Mapping[str, Any], ...]:
        """(deployment_id, metric_date, daily_return) rows for correlation checks."""
        if not deployment_ids:
            return ()
        rows = self._db.fetch_all(
            """
            SELECT deployment_id, metric_date, daily_return
            FROM performance_metric
            WHERE deployment_id = ANY(CAST(:deployment_ids AS UUID[]))
              AND metric_date >= :start_date
            ORDER BY metric_date ASC
            """,
            {"deployment_ids": list(deployment_ids), "start_date": start_date},
        )
        return tuple(
            {
                "deployment_id": str(row["deployment_id"]),
                "metric_date": _to_date(row["metric_date"]),
                "daily_return": to_float(row["daily_return"]),
            }
            for row in rows
        )

    def upsert_metric(self, record: PerformanceMetricRecord) -> None:
        self._db.execute(
            """
            INSERT INTO performance_metric (
                deployment_id, metric_date, snapshot_at, daily_pnl, daily_return,
                cumulative_pnl, cumulative_return, drawdown, max_drawdown, volatility,
                sharpe_ratio, trades_count, cumulative_trades_count, winning_trades,
                losing_trades, drift_detected, drift_details, market_regime, metadata
            ) VALUES (
                :deployment_id, :metric_date, :snapshot_at, :daily_pnl, :daily_return,
                :cumulative_pnl, :cumulative_return, :drawdown, :max_drawdown, :volatility,
                :sharpe_ratio, :trades_count, :cumulative_trades_count, :winning_trades,
                :losing_trades, :drift_detected, CAST(:drift_details AS JSONB), :market_regime,
                CAST(:metadata AS JSONB)
            )
            ON CONFLICT (deployment_id, metric_date) DO UPDATE SET
                snapshot_at = EXCLUDED.snapshot_at,
                daily_pnl = EXCLUDED.daily_pnl,
                daily_return = EXCLUDED.daily_return,
                cumulative_pnl = EXCLUDED.cumulative_pnl,
                cumulative_return = EXCLUDED.cumulative_return,
                drawdown = EXCLUDED.drawdown,
                max_drawdown = EXCLUDED.max_drawdown,
                volatility = EXCLUDED.volatility,
                sharpe_ratio = EXCLUDED.sharpe_ratio,
                trades_count = EXCLUDED.trades_count,
                cumulative_trades_count = EXCLUDED.cumulative_trades_count,
                winning_trades = EXCLUDED.winning_trades,
                losing_trades = EXCLUDED.losing_trades,
                drift_detected = EXCLUDED.drift_detected,
                drift_details = EXCLUDED.drift_details,
                market_regime = EXCLUDED.market_regime,
                metadata = EXCLUDED.metadata
            """,
            {
                "deployment_id": record.deployment_id,
                "metric_date": record.metric_date,
                "snapshot_at": record.snapshot_at,
                "daily_pnl": record.daily_pnl,
                "daily_return": record.daily_return,
                "cumulative_pnl": record.cumulative_pnl,
                "cumulative_return": record.cumulative_return,
                "drawdown": record.drawdown,
                "max_drawdown": record.max_drawdown,
                "volatility": record.volatility,
                "sharpe_ratio": record.sharpe_ratio,
                "trades_count": record.trades_count,
                "cumulative_trades_count": record.cumulative_trades_count,
                "winning_trades": record.winning_trades,
                "losing_trades": record.losing_trades,
                "drift_detected": record.drift_detected,
                "drift_details": _json_param(record.drift_details),
                "market_regime": record.market_regime,
                "metadata": _json_param(record.metadata),
            },
        )

    # Market regimes and prices

    def get_current_regime(self, asset: str) -> Optional[MarketRegimeRecord]:
        row = self._db.fetch_one(
            """
            SELECT market_regime_id, asset, regime, volatility, percentile, detected_at,
                   effective_until, previous_regime_id, metadata
            FROM market_regime
            WHERE asset = :asset
              AND effective_until IS NULL
            ORDER BY detected_at DESC
            LIMIT 1
            """,
            {"asset": asset},
        )
        return None if row is None else self._to_regime(row)

    def list_regime_history(self, asset: str, limit: int) -> tuple[MarketRegimeRecord, ...]:
        rows = self._db.fetch_all(
            """
            SELECT market_regime_id, asset, regime, volatility, percentile, detected_at,
                   effective_until, previous_regime_id, metadata
            FROM market_regime
            WHERE asset = :asset
            ORDER BY detected_at DESC
            LIMIT :limit
            """,
            {"asset": asset, "limit": limit},
        )
        return tuple(self._to_regime(row) for row in rows)

    def insert_regime(self, record: MarketRegimeRecord) -> None:
        self._db.execute(
            """
            INSERT INTO market_regime (
                market_regime_id, asset, regime, volatility, percentile, detected_at,
                effective_until, previous_regime_id, metadata
            ) VALUES (
                :market_regime_id, :asset, :regime, :volatility, :percentile, :detected_at,
                :effective_until, :previous_regime_id, CAST(:metadata AS JSONB)
            )
            """,
            {
                "market_regime_id": record.market_regime_id,
                "asset": record.asset,
                "regime": record.regime.value,
                "volatility": record.volatility,
                "percentile": record.percentile,
                "detected_at": record.detected_at,
                "effective_until": record.effective_until,
                "previous_regime_id": record.previous_regime_id,
                "metadata": _json_param(record.metadata),
            },
        )

    def close_regime(self, market_regime_id: str, effective_until: datetime) -> None:
        self._db.execute(
            """
            UPDATE market_regime
            SET effective_until = :effective_until
            WHERE market_regime_id = :market_regime_id
            """,
            {"market_regime_id": market_regime_id, "effective_until": effective_until},
        )

    def get_daily_closes(self, symbol: str, start_date: date) -> list[float]:
        """Daily close prices oldest first."""
        rows = self._db.fetch_all(
            """
            SELECT price_date, close_price
            FROM market_price_daily
            WHERE symbol = :symbol
              AND price_date >= :start_date
            ORDER BY price_date ASC
            """,
            {"symbol": symbol, "start_date": start_date},
        )
        return [to_float(row["close_price"]) for row in rows]

    # Row conversion

    @staticmethod
    def _to_strategy_config(row: Mapping[str, Any]) -> StrategyConfigRecord:
        return StrategyConfigRecord(
            strategy_config_id=str(row["strategy_config_id"]),
            name=str(row["name"]),
            algorithm_name=str(row.get("algorithm_name") or ""),
            parameters=load_json(row.get("parameters")) or {},
            status=StrategyStatus(row["status"]),
        )

    @staticmethod
    def _to_score(row: Mapping[str, Any]) -> StrategyScoreRecord:
        calculated_at = parse_utc(row["calculated_at"])
        if calculated_at is None:
            raise RuntimeError(f"strategy_score {row['strategy_score_id']} has no calculated_at")
        return StrategyScoreRecord(
            strategy_score_id=str(row["strategy_score_id"]),
            strategy_config_id=str(row["strategy_config_id"]),
            overall_score=to_float(row["overall_score"]),
            component_scores=load_json(row.get("component_scores")) or {},
            grade=str(row.get("grade") or ""),
            promotion_eligible=bool(row.get("promotion_eligible")),
            calculated_at=calculated_at,
            percentile=_optional_float(row.get("percentile")),
            warnings=tuple(load_json(row.get("warnings")) or ()),
        )

    @staticmethod
    def _to_deployment(row: Mapping[str, Any]) -> DeploymentRecord:
        return DeploymentRecord(
            deployment_id=str(row["deployment_id"]),
            strategy_config_id=str(row["strategy_config_id"]),
            status=DeploymentStatus(row["status"]),
            allocation_percent=to_float(row["allocation_percent"]),
            initial_allocation_percent=to_float(row.get("initial_allocation_percent")),
            max_drawdown_limit=to_float(row["max_drawdown_limit"]),
            daily_loss_limit=to_float(row["daily_loss_limit"]),
            position_size_limit=to_float(row["position_size_limit"]),
            max_leverage=to_float(row.get("max_leverage"), 1.0),
            deployed_at=parse_utc(row.get("deployed_at")),
            terminated_at=parse_utc(row.get("terminated_at")),
            termination_reason=row.get("termination_reason"),
            realized_pnl=to_float(row.get("realized_pnl")),
            unrealized_pnl=to_float(row.get("unrealized_pnl")),
            current_drawdown=to_float(row.get("current_drawdown")),
            max_drawdown_observed=to_float(row.get("max_drawdown_observed")),
            total_trades=int(row.get("total_trades") or 0),
            winning_trades=int(row.get("winning_trades") or 0),
            losing_trades=int(row.get("losing_trades") or 0),
            live_sharpe_ratio=_optional_float(row.get("live_sharpe_ratio")),
            drift_alert_count=int(row.get("drift_alert_count") or 0),
            last_drift_detected_at=parse_utc(row.get("last_drift_detected_at")),
            drift_metrics=load_json(row.get("drift_metrics")),
            approved_by=row.get("approved_by"),
            approved_at=parse_utc(row.get("approved_at")),
            promotion_reason=row.get("promotion_reason"),
            metadata=load_json(row.get("metadata")) or {},
            created_at=parse_utc(row.get("created_at")),
            updated_at=parse_utc(row.get("updated_at")),
            strategy_name=row.get("strategy_name"),
            strategy_parameters=load_json(row.get("strategy_parameters")) or {},
        )

    @staticmethod
    def _to_metric(row: Mapping[str, Any]) -> PerformanceMetricRecord:
        return PerformanceMetricRecord(
            deployment_id=str(row["deployment_id"]),
            metric_date=_to_date(row["metric_date"]),
            daily_pnl=to_float(row.get("daily_pnl")),
            daily_return=to_float(row.get("daily_return")),
            cumulative_pnl=to_float(row.get("cumulative_pnl")),
            cumulative_return=to_float(row.get("cumulative_return")),
            drawdown=to_float(row.get("drawdown")),
            max_drawdown=to_float(row.get("max_drawdown")),
            volatility=_optional_float(row.get("volatility")),
            sharpe_ratio=_optional_float(row.get("sharpe_ratio")),
            trades_count=int(row.get("trades_count") or 0),
            cumulative_trades_count=int(row.get("cumulative_trades_count") or 0),
            winning_trades=int(row.get("winning_trades") or 0),
            losing_trades=int(row.get("losing_trades") or 0),
            drift_detected=bool(row.get("drift_detected")),
            drift_details=load_json(row.get("drift_details")),
            market_regime=row.get("market_regime"),
            metadata=load_json(row.get("metadata")),
            snapshot_at=parse_utc(row.get("snapshot_at")),
        )

    @staticmethod
    def _to_regime(row: Mapping[str, Any]) -> MarketRegimeRecord:
        detected_at = parse_utc(row["detected_at"])
        if detected_at is None:
            raise RuntimeError(f"market_regime {row['market_regime_id']} has no detected_at")
        return MarketRegimeRecord(
            market_regime_id=str(row["market_regime_id"]),
            asset=str(row["asset"]),
            regime=MarketRegimeType(row["regime"]),
            volatility=to_float(row["volatility"]),
            percentile=to_float(row["percentile"]),
            detected_at=detected_at,
            effective_until=parse_utc(row.get("effective_until")),
            previous_regime_id=None if row.get("previous_regime_id") is None else str(row["previous_regime_id"]),
            metadata=load_json(row.get("metadata")),
        )
