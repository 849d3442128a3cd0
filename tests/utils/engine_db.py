"""Engine DB adapter, schema installer and fixture loaders for integration tests."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
import importlib.util
import json
from pathlib import Path
import re
from typing import Any, Mapping, Optional, Sequence
from uuid import NAMESPACE_URL, UUID, uuid5

from psycopg import Connection, Transaction
from psycopg.rows import dict_row


_NAMED_PARAM_RE = re.compile(r"(?<!:):([a-zA-Z_][a-zA-Z0-9_]*)")

MIGRATION_PATH = (
    Path(__file__).resolve().parents[2] / "backend" / "db" / "migrations" / "versions" / "0001_initial_schema.py"
)


def _convert_named_params(sql: str) -> str:
    """Convert :named params to psycopg %(named)s format."""
    return _NAMED_PARAM_RE.sub(r"%(\1)s", sql)


class PsycopgEngineTestDB:
    """Adapter implementing the engine read/write protocol on psycopg."""

    def __init__(self, conn: Connection[Any]) -> None:
        self.conn = conn

    def fetch_one(self, sql: str, params: Mapping[str, Any]) -> Optional[Mapping[str, Any]]:
        rows = self.fetch_all(sql, params)
        return rows[0] if rows else None

    def fetch_all(self, sql: str, params: Mapping[str, Any]) -> Sequence[Mapping[str, Any]]:
        converted = _convert_named_params(sql)
        with self.conn.cursor(row_factory=dict_row) as cur:
            cur.execute(converted, dict(params))
            return [dict(row) for row in cur.fetchall()]

    def execute(self, sql: str, params: Mapping[str, Any]) -> None:
        converted = _convert_named_params(sql)
        with self.conn.cursor() as cur:
            cur.execute(converted, dict(params))

    def savepoint(self) -> Transaction:
        return self.conn.transaction()


def deterministic_uuid(seed: str) -> UUID:
    """Generate deterministic UUID for test fixtures."""
    return uuid5(NAMESPACE_URL, f"engine-test::{seed}")


def install_schema(conn: Connection[Any], schema_name: str) -> None:
    """
    Create ``schema_name`` and apply the initial migration DDL inside it.

    Runs in the caller's open transaction so a rollback discards the schema.
    """
    spec = importlib.util.spec_from_file_location("engine_test_migration_0001", MIGRATION_PATH)
    if spec is None or spec.loader is None:
        raise RuntimeError(f"Unable to load migration module from {MIGRATION_PATH}")
    migration = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(migration)

    with conn.cursor() as cur:
        cur.execute(f'CREATE SCHEMA "{schema_name}"')
        cur.execute(f'SET search_path TO "{schema_name}"')
        for group in (migration.ENUM_DDL, migration.TABLE_DDL, migration.INDEX_DDL, migration.APPEND_ONLY_DDL):
            for statement in group:
                cur.execute(statement)


@dataclass(frozen=True)
class StrategyFixture:
    strategy_config_id: str
    strategy_score_id: str
    backtest_run_id: str


def insert_strategy_fixture(
    db: PsycopgEngineTestDB,
    *,
    seed: str,
    status: str = "testing",
    overall_score: float = 85.0,
    promotion_eligible: bool = True,
    sharpe_value: float = 0.2,
    calculated_at: datetime = datetime(2026, 3, 1, 0, 0, tzinfo=timezone.utc),
    backtest_results: Mapping[str, Any] | None = None,
) -> StrategyFixture:
    """Insert one strategy config with a score and a completed backtest."""
    strategy_config_id = str(deterministic_uuid(f"strategy-{seed}"))
    strategy_score_id = str(deterministic_uuid(f"score-{seed}"))
    backtest_run_id = str(deterministic_uuid(f"backtest-{seed}"))
    results = dict(
        backtest_results
        or {
            "totalTrades": 45,
            "maxDrawdown": -0.18,
            "wfaDegradation": 12.0,
            "totalReturn": 0.35,
            "volatility": 0.6,
        }
    )

    db.execute(
        """
        INSERT INTO strategy_config (strategy_config_id, name, algorithm_name, parameters, status, shadow_status)
        VALUES (:strategy_config_id, :name, 'sma-crossover', CAST(:parameters AS JSONB), :status, 'testing')
        """,
        {
            "strategy_config_id": strategy_config_id,
            "name": f"Strategy {seed}",
            "parameters": json.dumps({"maxLeverage": 1}),
            "status": status,
        },
    )
    db.execute(
        """
        INSERT INTO strategy_score (
            strategy_score_id, strategy_config_id, overall_score, component_scores,
            grade, promotion_eligible, warnings, calculated_at
        ) VALUES (
            :strategy_score_id, :strategy_config_id, :overall_score, CAST(:component_scores AS JSONB),
            'A', :promotion_eligible, CAST('[]' AS JSONB), :calculated_at
        )
        """,
        {
            "strategy_score_id": strategy_score_id,
            "strategy_config_id": strategy_config_id,
            "overall_score": overall_score,
            "component_scores": json.dumps({"sharpeRatio": {"value": sharpe_value, "weight": 0.25}}),
            "promotion_eligible": promotion_eligible,
            "calculated_at": calculated_at,
        },
    )
    db.execute(
        """
        INSERT INTO backtest_run (backtest_run_id, strategy_config_id, status, results, created_at, completed_at)
        VALUES (:backtest_run_id, :strategy_config_id, 'COMPLETED', CAST(:results AS JSONB), :created_at, :completed_at)
        """,
        {
            "backtest_run_id": backtest_run_id,
            "strategy_config_id": strategy_config_id,
            "results": json.dumps(results),
            "created_at": calculated_at - timedelta(days=1),
            "completed_at": calculated_at - timedelta(hours=20),
        },
    )
    return StrategyFixture(
        strategy_config_id=strategy_config_id,
        strategy_score_id=strategy_score_id,
        backtest_run_id=backtest_run_id,
    )


def insert_daily_closes(
    db: PsycopgEngineTestDB,
    *,
    symbol: str,
    closes: Sequence[float],
    end_date: date,
) -> None:
    """Insert consecutive daily closes ending at ``end_date``."""
    start = end_date - timedelta(days=len(closes) - 1)
    for offset, close in enumerate(closes):
        db.execute(
            """
            INSERT INTO market_price_daily (symbol, price_date, close_price)
            VALUES (:symbol, :price_date, :close_price)
            """,
            {"symbol": symbol, "price_date": start + timedelta(days=offset), "close_price": close},
        )
