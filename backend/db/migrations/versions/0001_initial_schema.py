"""Initial schema for the strategy lifecycle and capital allocation engine."""

from __future__ import annotations

import logging
from collections.abc import Sequence

from alembic import op

logger = logging.getLogger(__name__)

# revision identifiers, used by Alembic.
revision: str = "0001_initial_schema"
down_revision: str | None = None
branch_labels: Sequence[str] | None = None
depends_on: Sequence[str] | None = None


ENUM_DDL: tuple[str, ...] = (
    "CREATE TYPE strategy_status_enum AS ENUM ('draft', 'testing', 'live', 'deprecated');",
    "CREATE TYPE shadow_status_enum AS ENUM ('testing', 'shadow', 'live', 'retired');",
    "CREATE TYPE deployment_status_enum AS ENUM ('pending_approval', 'active', 'paused', 'demoted', 'terminated');",
    "CREATE TYPE backtest_status_enum AS ENUM ('PENDING', 'RUNNING', 'PAUSED', 'COMPLETED', 'FAILED', 'CANCELLED');",
    (
        "CREATE TYPE order_status_enum AS ENUM "
        "('NEW', 'PARTIALLY_FILLED', 'FILLED', 'PENDING_CANCEL', 'CANCELED', 'EXPIRED', 'REJECTED');"
    ),
    "CREATE TYPE market_regime_enum AS ENUM ('low_volatility', 'normal', 'high_volatility', 'extreme');",
    """
    CREATE TYPE audit_event_type_enum AS ENUM (
        'STRATEGY_PROMOTED',
        'STRATEGY_DEMOTED',
        'GATE_EVALUATION',
        'DEPLOYMENT_ACTIVATED',
        'DEPLOYMENT_PAUSED',
        'DEPLOYMENT_RESUMED',
        'DEPLOYMENT_TERMINATED',
        'ALLOCATION_ADJUSTED',
        'RISK_EVALUATION',
        'MANUAL_INTERVENTION',
        'REGIME_SCALED_ALLOCATION'
    );
    """,
)

TABLE_DDL: tuple[str, ...] = (
    """
    CREATE TABLE strategy_config (
        strategy_config_id UUID NOT NULL,
        name TEXT NOT NULL,
        algorithm_name TEXT NOT NULL,
        parameters JSONB NOT NULL DEFAULT '{}'::jsonb,
        status strategy_status_enum NOT NULL,
        shadow_status shadow_status_enum NOT NULL,
        last_heartbeat_at TIMESTAMPTZ,
        heartbeat_failures INTEGER NOT NULL DEFAULT 0,
        last_error TEXT,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        CONSTRAINT pk_strategy_config PRIMARY KEY (strategy_config_id),
        CONSTRAINT ck_strategy_config_name_not_blank CHECK (length(btrim(name)) > 0),
        CONSTRAINT ck_strategy_config_heartbeat_failures_nonneg CHECK (heartbeat_failures >= 0)
    );
    """,
    """
    CREATE TABLE strategy_score (
        strategy_score_id UUID NOT NULL,
        strategy_config_id UUID NOT NULL,
        overall_score NUMERIC(6,2) NOT NULL,
        component_scores JSONB NOT NULL,
        percentile NUMERIC(6,2),
        grade TEXT NOT NULL,
        promotion_eligible BOOLEAN NOT NULL,
        warnings JSONB NOT NULL DEFAULT '[]'::jsonb,
        calculated_at TIMESTAMPTZ NOT NULL,
        CONSTRAINT pk_strategy_score PRIMARY KEY (strategy_score_id),
        CONSTRAINT fk_strategy_score_strategy_config FOREIGN KEY (strategy_config_id)
            REFERENCES strategy_config (strategy_config_id) ON UPDATE RESTRICT ON DELETE RESTRICT,
        CONSTRAINT ck_strategy_score_overall_range CHECK (overall_score >= 0 AND overall_score <= 100),
        CONSTRAINT ck_strategy_score_percentile_range CHECK (
            percentile IS NULL OR (percentile >= 0 AND percentile <= 100)
        )
    );
    """,
    """
    CREATE TABLE backtest_run (
        backtest_run_id UUID NOT NULL,
        strategy_config_id UUID NOT NULL,
        status backtest_status_enum NOT NULL,
        results JSONB NOT NULL DEFAULT '{}'::jsonb,
        created_at TIMESTAMPTZ NOT NULL,
        completed_at TIMESTAMPTZ,
        CONSTRAINT pk_backtest_run PRIMARY KEY (backtest_run_id),
        CONSTRAINT fk_backtest_run_strategy_config FOREIGN KEY (strategy_config_id)
            REFERENCES strategy_config (strategy_config_id) ON UPDATE RESTRICT ON DELETE RESTRICT,
        CONSTRAINT ck_backtest_run_completed_after_created CHECK (
            completed_at IS NULL OR completed_at >= created_at
        )
    );
    """,
    """
    CREATE TABLE strategy_order (
        order_id UUID NOT NULL,
        strategy_config_id UUID,
        status order_status_enum NOT NULL,
        is_algorithmic_trade BOOLEAN NOT NULL DEFAULT FALSE,
        gain_loss NUMERIC(38,18),
        cost NUMERIC(38,18),
        filled_at TIMESTAMPTZ,
        CONSTRAINT pk_strategy_order PRIMARY KEY (order_id),
        CONSTRAINT fk_strategy_order_strategy_config FOREIGN KEY (strategy_config_id)
            REFERENCES strategy_config (strategy_config_id) ON UPDATE RESTRICT ON DELETE RESTRICT,
        CONSTRAINT ck_strategy_order_cost_nonneg CHECK (cost IS NULL OR cost >= 0),
        CONSTRAINT ck_strategy_order_filled_has_ts CHECK (status <> 'FILLED' OR filled_at IS NOT NULL)
    );
    """,
    """
    CREATE TABLE deployment (
        deployment_id UUID NOT NULL,
        strategy_config_id UUID NOT NULL,
        status deployment_status_enum NOT NULL,
        allocation_percent NUMERIC(8,4) NOT NULL,
        initial_allocation_percent NUMERIC(8,4) NOT NULL,
        deployed_at TIMESTAMPTZ,
        terminated_at TIMESTAMPTZ,
        termination_reason TEXT,
        max_drawdown_limit NUMERIC(8,6) NOT NULL,
        daily_loss_limit NUMERIC(8,6) NOT NULL,
        position_size_limit NUMERIC(8,6) NOT NULL,
        max_leverage NUMERIC(8,4) NOT NULL DEFAULT 1,
        realized_pnl NUMERIC(38,18) NOT NULL DEFAULT 0,
        unrealized_pnl NUMERIC(38,18) NOT NULL DEFAULT 0,
        current_drawdown NUMERIC(12,10) NOT NULL DEFAULT 0,
        max_drawdown_observed NUMERIC(12,10) NOT NULL DEFAULT 0,
        total_trades INTEGER NOT NULL DEFAULT 0,
        winning_trades INTEGER NOT NULL DEFAULT 0,
        losing_trades INTEGER NOT NULL DEFAULT 0,
        live_sharpe_ratio NUMERIC(20,10),
        drift_alert_count INTEGER NOT NULL DEFAULT 0,
        last_drift_detected_at TIMESTAMPTZ,
        drift_metrics JSONB,
        approved_by TEXT,
        approved_at TIMESTAMPTZ,
        promotion_reason TEXT,
        metadata JSONB NOT NULL DEFAULT '{}'::jsonb,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        CONSTRAINT pk_deployment PRIMARY KEY (deployment_id),
        CONSTRAINT fk_deployment_strategy_config FOREIGN KEY (strategy_config_id)
            REFERENCES strategy_config (strategy_config_id) ON UPDATE RESTRICT ON DELETE RESTRICT,
        CONSTRAINT ck_deployment_allocation_range CHECK (allocation_percent >= 0 AND allocation_percent <= 100),
        CONSTRAINT ck_deployment_max_drawdown_limit_range CHECK (max_drawdown_limit > 0 AND max_drawdown_limit <= 1),
        CONSTRAINT ck_deployment_daily_loss_limit_range CHECK (daily_loss_limit > 0 AND daily_loss_limit <= 1),
        CONSTRAINT ck_deployment_position_size_limit_range CHECK (
            position_size_limit > 0 AND position_size_limit <= 1
        ),
        CONSTRAINT ck_deployment_terminal_has_ts CHECK (
            status NOT IN ('demoted', 'terminated') OR terminated_at IS NOT NULL
        ),
        CONSTRAINT ck_deployment_trade_counts CHECK (winning_trades + losing_trades <= total_trades)
    );
    """,
    """
    CREATE TABLE performance_metric (
        deployment_id UUID NOT NULL,
        metric_date DATE NOT NULL,
        snapshot_at TIMESTAMPTZ NOT NULL,
        daily_pnl NUMERIC(38,18) NOT NULL,
        daily_return NUMERIC(20,10) NOT NULL,
        cumulative_pnl NUMERIC(38,18) NOT NULL DEFAULT 0,
        cumulative_return NUMERIC(20,10) NOT NULL DEFAULT 0,
        drawdown NUMERIC(12,10) NOT NULL DEFAULT 0,
        max_drawdown NUMERIC(12,10) NOT NULL DEFAULT 0,
        volatility NUMERIC(20,10),
        sharpe_ratio NUMERIC(20,10),
        trades_count INTEGER NOT NULL DEFAULT 0,
        cumulative_trades_count INTEGER NOT NULL DEFAULT 0,
        winning_trades INTEGER NOT NULL DEFAULT 0,
        losing_trades INTEGER NOT NULL DEFAULT 0,
        drift_detected BOOLEAN NOT NULL DEFAULT FALSE,
        drift_details JSONB,
        market_regime TEXT,
        metadata JSONB,
        CONSTRAINT pk_performance_metric PRIMARY KEY (deployment_id, metric_date),
        CONSTRAINT fk_performance_metric_deployment FOREIGN KEY (deployment_id)
            REFERENCES deployment (deployment_id) ON UPDATE RESTRICT ON DELETE RESTRICT,
        CONSTRAINT ck_performance_metric_trades_nonneg CHECK (trades_count >= 0),
        CONSTRAINT ck_performance_metric_cumulative_trades CHECK (cumulative_trades_count >= trades_count),
        CONSTRAINT ck_performance_metric_volatility_nonneg CHECK (volatility IS NULL OR volatility >= 0)
    );
    """,
    """
    CREATE TABLE market_regime (
        market_regime_id UUID NOT NULL,
        asset TEXT NOT NULL,
        regime market_regime_enum NOT NULL,
        volatility NUMERIC(20,10) NOT NULL,
        percentile NUMERIC(6,2) NOT NULL,
        detected_at TIMESTAMPTZ NOT NULL,
        effective_until TIMESTAMPTZ,
        previous_regime_id UUID,
        metadata JSONB,
        CONSTRAINT pk_market_regime PRIMARY KEY (market_regime_id),
        CONSTRAINT fk_market_regime_previous FOREIGN KEY (previous_regime_id)
            REFERENCES market_regime (market_regime_id) ON UPDATE RESTRICT ON DELETE RESTRICT,
        CONSTRAINT ck_market_regime_asset_upper CHECK (asset = upper(asset)),
        CONSTRAINT ck_market_regime_volatility_nonneg CHECK (volatility >= 0),
        CONSTRAINT ck_market_regime_percentile_range CHECK (percentile >= 0 AND percentile <= 100),
        CONSTRAINT ck_market_regime_effective_after_detected CHECK (
            effective_until IS NULL OR effective_until >= detected_at
        )
    );
    """,
    """
    CREATE TABLE market_price_daily (
        symbol TEXT NOT NULL,
        price_date DATE NOT NULL,
        close_price NUMERIC(38,18) NOT NULL,
        CONSTRAINT pk_market_price_daily PRIMARY KEY (symbol, price_date),
        CONSTRAINT ck_market_price_daily_symbol_upper CHECK (symbol = upper(symbol)),
        CONSTRAINT ck_market_price_daily_close_pos CHECK (close_price > 0)
    );
    """,
    """
    CREATE TABLE audit_log (
        audit_log_id UUID NOT NULL,
        audit_log_seq BIGINT GENERATED ALWAYS AS IDENTITY,
        event_type audit_event_type_enum NOT NULL,
        entity_type TEXT NOT NULL,
        entity_id TEXT NOT NULL,
        user_id TEXT,
        event_ts_utc TIMESTAMPTZ NOT NULL,
        before_state JSONB,
        after_state JSONB,
        metadata JSONB,
        correlation_id TEXT NOT NULL,
        integrity CHAR(64) NOT NULL,
        chain_hash CHAR(64) NOT NULL,
        CONSTRAINT pk_audit_log PRIMARY KEY (audit_log_id),
        CONSTRAINT uq_audit_log_seq UNIQUE (audit_log_seq),
        CONSTRAINT uq_audit_log_chain_hash UNIQUE (chain_hash),
        CONSTRAINT ck_audit_log_entity_type_not_blank CHECK (length(btrim(entity_type)) > 0),
        CONSTRAINT ck_audit_log_entity_id_not_blank CHECK (length(btrim(entity_id)) > 0),
        CONSTRAINT ck_audit_log_integrity_hex CHECK (integrity ~ '^[0-9a-f]{64}$'),
        CONSTRAINT ck_audit_log_chain_hash_hex CHECK (chain_hash ~ '^[0-9a-f]{64}$')
    );
    """,
)

INDEX_DDL: tuple[str, ...] = (
    "CREATE INDEX idx_strategy_config_status ON strategy_config (status);",
    (
        "CREATE INDEX idx_strategy_score_config_calculated_desc "
        "ON strategy_score (strategy_config_id, calculated_at DESC);"
    ),
    "CREATE INDEX idx_backtest_run_config_created_desc ON backtest_run (strategy_config_id, created_at DESC);",
    (
        "CREATE INDEX idx_strategy_order_config_algo_status "
        "ON strategy_order (strategy_config_id, is_algorithmic_trade, status);"
    ),
    (
        "CREATE UNIQUE INDEX uq_deployment_one_active_per_strategy "
        "ON deployment (strategy_config_id) WHERE status = 'active';"
    ),
    "CREATE INDEX idx_deployment_status_created ON deployment (status, created_at);",
    (
        "CREATE INDEX idx_performance_metric_deployment_date_desc "
        "ON performance_metric (deployment_id, metric_date DESC);"
    ),
    (
        "CREATE UNIQUE INDEX uq_market_regime_one_open_per_asset "
        "ON market_regime (asset) WHERE effective_until IS NULL;"
    ),
    "CREATE INDEX idx_market_regime_asset_detected_desc ON market_regime (asset, detected_at DESC);",
    "CREATE INDEX idx_audit_log_entity ON audit_log (entity_type, entity_id, event_ts_utc DESC);",
    "CREATE INDEX idx_audit_log_event_type_ts ON audit_log (event_type, event_ts_utc DESC);",
    "CREATE INDEX idx_audit_log_correlation ON audit_log (correlation_id);",
)

APPEND_ONLY_DDL: tuple[str, ...] = (
    """
    CREATE OR REPLACE FUNCTION fn_enforce_append_only()
    RETURNS TRIGGER
    LANGUAGE plpgsql
    AS $$
    BEGIN
        RAISE EXCEPTION 'append-only violation on table %, operation % is not allowed', TG_TABLE_NAME, TG_OP;
    END;
    $$;
    """,
    """
    CREATE TRIGGER trg_audit_log_append_only
    BEFORE UPDATE OR DELETE ON audit_log
    FOR EACH ROW EXECUTE FUNCTION fn_enforce_append_only();
    """,
    """
    CREATE TRIGGER trg_strategy_score_append_only
    BEFORE UPDATE OR DELETE ON strategy_score
    FOR EACH ROW EXECUTE FUNCTION fn_enforce_append_only();
    """,
    """
    CREATE TRIGGER trg_market_price_daily_append_only
    BEFORE UPDATE OR DELETE ON market_price_daily
    FOR EACH ROW EXECUTE FUNCTION fn_enforce_append_only();
    """,
)


def _execute_all(statements: Sequence[str]) -> None:
    """Execute an ordered sequence of SQL statements."""

    for statement in statements:
        try:
            op.execute(statement)
        except Exception:
            logger.exception("Migration statement failed.")
            raise


def upgrade() -> None:
    """Apply the initial schema migration."""

    logger.info("Starting initial schema migration upgrade.")
    _execute_all(ENUM_DDL)
    _execute_all(TABLE_DDL)
    _execute_all(INDEX_DDL)
    _execute_all(APPEND_ONLY_DDL)
    logger.info("Completed initial schema migration upgrade.")


def downgrade() -> None:
    """Revert the initial schema migration."""

    logger.info("Starting initial schema migration downgrade.")
    _execute_all(
        (
            "DROP TRIGGER IF EXISTS trg_market_price_daily_append_only ON market_price_daily;",
            "DROP TRIGGER IF EXISTS trg_strategy_score_append_only ON strategy_score;",
            "DROP TRIGGER IF EXISTS trg_audit_log_append_only ON audit_log;",
            "DROP FUNCTION IF EXISTS fn_enforce_append_only();",
            "DROP TABLE IF EXISTS audit_log;",
            "DROP TABLE IF EXISTS market_price_daily;",
            "DROP TABLE IF EXISTS market_regime;",
            "DROP TABLE IF EXISTS performance_metric;",
            "DROP TABLE IF EXISTS deployment;",
            "DROP TABLE IF EXISTS strategy_order;",
            "DROP TABLE IF EXISTS backtest_run;",
            "DROP TABLE IF EXISTS strategy_score;",
            "DROP TABLE IF EXISTS strategy_config;",
            "DROP TYPE IF EXISTS audit_event_type_enum;",
            "DROP TYPE IF EXISTS market_regime_enum;",
            "DROP TYPE IF EXISTS order_status_enum;",
            "DROP TYPE IF EXISTS backtest_status_enum;",
            "DROP TYPE IF EXISTS deployment_status_enum;",
            "DROP TYPE IF EXISTS shadow_status_enum;",
            "DROP TYPE IF EXISTS strategy_status_enum;",
        )
    )
    logger.info("Completed initial schema migration downgrade.")
