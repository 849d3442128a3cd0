#!/usr/bin/env python3
"""Strategy lifecycle engine CLI: scheduler daemon, regime controls and deployment actions."""

from __future__ import annotations

import argparse
from dataclasses import asdict, dataclass
import json
import logging
import os
from pathlib import Path
import re
import sys
from typing import Any, Mapping, Optional, Sequence

import psycopg
from psycopg.rows import dict_row

ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

from backend.db.enums import StrategyStatus
from strategy_engine.allocation import CapitalAllocationService, RegimeContext
from strategy_engine.audit import AuditService
from strategy_engine.cache import cache_from_url
from strategy_engine.deployment import DeploymentService
from strategy_engine.engine_config import EngineConfig, load_engine_config
from strategy_engine.promotion import PromotionGateService
from strategy_engine.regime.composite import CompositeRegimeService
from strategy_engine.regime.market_regime import MarketRegimeService
from strategy_engine.repository import EngineRepository
from strategy_engine.risk import RiskManagementService
from strategy_engine.scheduler import StrategyLifecycleScheduler

logger = logging.getLogger(__name__)

_NAMED_PARAM_RE = re.compile(r"(?<!:):([a-zA-Z_][a-zA-Z0-9_]*)")


def _convert_named_params(sql: str) -> str:
    return _NAMED_PARAM_RE.sub(r"%(\1)s", sql)


class PsycopgEngineDB:
    """Minimal DB adapter for strategy engine services."""

    def __init__(self, conn: psycopg.Connection[Any]) -> None:
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

    def savepoint(self) -> psycopg.Transaction:
        # SAVEPOINT inside an open transaction, its own BEGIN/COMMIT under autocommit.
        return self.conn.transaction()


@dataclass(frozen=True)
class EngineServices:
    repository: EngineRepository
    audit: AuditService
    deployments: DeploymentService
    promotion: PromotionGateService
    risk: RiskManagementService
    allocation: CapitalAllocationService
    market_regimes: MarketRegimeService
    composite: CompositeRegimeService
    scheduler: StrategyLifecycleScheduler


def _resolve_connection(args: argparse.Namespace) -> psycopg.Connection[Any]:
    # The daemon runs indefinitely, so each statement commits on its own there.
    autocommit = getattr(args, "command", None) == "daemon"
    if args.dsn:
        return psycopg.connect(args.dsn, autocommit=autocommit)

    host = args.host or os.getenv("DB_HOST") or os.getenv("TEST_DB_HOST")
    port = args.port or os.getenv("DB_PORT") or os.getenv("TEST_DB_PORT")
    dbname = args.dbname or os.getenv("DB_NAME") or os.getenv("TEST_DB_NAME")
    user = args.user or os.getenv("DB_USER") or os.getenv("TEST_DB_USER")
    password = args.password or os.getenv("DB_PASSWORD") or os.getenv("TEST_DB_PASSWORD")

    missing = [
        key
        for key, value in (("host", host), ("port", port), ("dbname", dbname), ("user", user), ("password", password))
        if not value
    ]
    if missing:
        raise SystemExit(
            "Missing DB connection args. Provide --dsn or set --host/--port/--dbname/--user/--password "
            f"(missing: {', '.join(missing)})."
        )

    return psycopg.connect(host=host, port=port, dbname=dbname, user=user, password=password, autocommit=autocommit)


def _build_services(config: EngineConfig, db: PsycopgEngineDB) -> EngineServices:
    repository = EngineRepository(db)
    audit = AuditService(db)
    cache = cache_from_url(config.redis_url)
    deployments = DeploymentService(repository, audit)
    promotion = PromotionGateService(repository, audit)
    risk = RiskManagementService(deployments, audit)
    market_regimes = MarketRegimeService(repository)
    composite = CompositeRegimeService(repository, audit, cache, trend_symbol=config.trend_symbol)
    scheduler = StrategyLifecycleScheduler(
        repository=repository,
        config=config,
        market_regimes=market_regimes,
        composite=composite,
        promotion=promotion,
        deployments=deployments,
        risk=risk,
    )
    return EngineServices(
        repository=repository,
        audit=audit,
        deployments=deployments,
        promotion=promotion,
        risk=risk,
        allocation=CapitalAllocationService(repository, audit),
        market_regimes=market_regimes,
        composite=composite,
        scheduler=scheduler,
    )


def _emit(payload: Any) -> None:
    print(json.dumps(payload, sort_keys=True, default=str))


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Strategy lifecycle engine CLI")
    parser.add_argument("--dsn", help="PostgreSQL DSN (optional)")
    parser.add_argument("--host", help="DB host")
    parser.add_argument("--port", help="DB port")
    parser.add_argument("--dbname", help="DB name")
    parser.add_argument("--user", help="DB user")
    parser.add_argument("--password", help="DB password")

    subparsers = parser.add_subparsers(dest="command", required=True)

    daemon_cmd = subparsers.add_parser("daemon", help="Start scheduler loop")
    daemon_cmd.add_argument("--max-cycles", type=int, default=None)

    subparsers.add_parser("run-once", help="Run one full scheduler iteration")
    subparsers.add_parser("refresh-regime", help="Detect regimes and refresh the composite regime")
    subparsers.add_parser("regime-status", help="Print composite regime and scheduler status")

    override_on = subparsers.add_parser("override-enable", help="Enable the regime gate override")
    override_on.add_argument("--user-id", required=True)
    override_on.add_argument("--reason", required=True)
    override_on.add_argument("--no-force-allow", dest="force_allow", action="store_false")

    override_off = subparsers.add_parser("override-disable", help="Disable the regime gate override")
    override_off.add_argument("--user-id", required=True)
    override_off.add_argument("--reason", required=True)

    gates = subparsers.add_parser("evaluate-gates", help="Evaluate promotion gates for a strategy")
    gates.add_argument("strategy_config_id")
    gates.add_argument("--user-id", default=None)

    risks = subparsers.add_parser("evaluate-risks", help="Evaluate risk checks for one or all active deployments")
    risks.add_argument("deployment_id", nargs="?", default=None)

    allocate = subparsers.add_parser("allocate", help="Compute Kelly capital allocation")
    allocate.add_argument("--capital", type=float, required=True)
    allocate.add_argument("--strategy-id", dest="strategy_ids", action="append", default=[])
    allocate.add_argument("--risk-level", type=int, default=None)

    activate = subparsers.add_parser("activate", help="Activate a pending deployment")
    activate.add_argument("deployment_id")
    activate.add_argument("--user-id", default=None)

    pause = subparsers.add_parser("pause", help="Pause an active deployment")
    pause.add_argument("deployment_id")
    pause.add_argument("--reason", required=True)
    pause.add_argument("--user-id", default=None)

    resume = subparsers.add_parser("resume", help="Resume a paused deployment")
    resume.add_argument("deployment_id")
    resume.add_argument("--user-id", default=None)

    terminate = subparsers.add_parser("terminate", help="Terminate a deployment")
    terminate.add_argument("deployment_id")
    terminate.add_argument("--reason", required=True)
    terminate.add_argument("--user-id", default=None)

    return parser


def _run_allocate(services: EngineServices, args: argparse.Namespace) -> None:
    if args.strategy_ids:
        strategies = [
            config
            for config in (services.repository.get_strategy_config(sid) for sid in args.strategy_ids)
            if config is not None
        ]
    else:
        strategies = list(services.repository.list_strategy_configs_by_status(StrategyStatus.LIVE))

    validation = services.allocation.validate_capital_allocation(args.capital, strategies)
    if not validation.valid:
        _emit({"valid": False, "reason": validation.reason})
        return

    regime_context = None
    if args.risk_level is not None:
        services.composite.on_init()
        regime_context = RegimeContext(
            composite_regime=services.composite.get_composite_regime(),
            risk_level=args.risk_level,
        )
    details = services.allocation.get_allocation_details(args.capital, strategies, regime_context)
    _emit({"valid": True, "allocations": [asdict(item) for item in details]})


def _dispatch(services: EngineServices, args: argparse.Namespace) -> None:
    command = args.command
    if command == "daemon":
        services.scheduler.daemon_loop(max_cycles=args.max_cycles)
    elif command == "run-once":
        services.composite.on_init()
        services.scheduler.run_once()
    elif command == "refresh-regime":
        services.composite.on_init()
        services.scheduler.run_regime_detection()
        _emit(services.composite.get_status())
    elif command == "regime-status":
        services.composite.on_init()
        _emit({**services.composite.get_status(), "scheduler": asdict(services.scheduler.get_status())})
    elif command == "override-enable":
        services.composite.enable_override(args.user_id, args.force_allow, args.reason)
        _emit(services.composite.get_status()["override"])
    elif command == "override-disable":
        services.composite.disable_override(args.user_id, args.reason)
        _emit(services.composite.get_status()["override"])
    elif command == "evaluate-gates":
        _emit(services.promotion.evaluate_gates(args.strategy_config_id, user_id=args.user_id).as_dict())
    elif command == "evaluate-risks":
        if args.deployment_id:
            _emit(services.risk.evaluate_risks(args.deployment_id).as_dict())
        else:
            _emit([evaluation.as_dict() for evaluation in services.risk.evaluate_all_deployments()])
    elif command == "allocate":
        _run_allocate(services, args)
    elif command == "activate":
        _emit(asdict(services.deployments.activate_deployment(args.deployment_id, user_id=args.user_id)))
    elif command == "pause":
        _emit(asdict(services.deployments.pause_deployment(args.deployment_id, args.reason, user_id=args.user_id)))
    elif command == "resume":
        _emit(asdict(services.deployments.resume_deployment(args.deployment_id, user_id=args.user_id)))
    elif command == "terminate":
        _emit(asdict(services.deployments.terminate_deployment(args.deployment_id, args.reason, user_id=args.user_id)))
    else:
        raise SystemExit(f"Unknown command: {command}")


def main() -> int:
    parser = _build_parser()
    args = parser.parse_args()

    config = load_engine_config()
    logging.basicConfig(
        level=config.log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    conn = _resolve_connection(args)
    db = PsycopgEngineDB(conn)
    try:
        services = _build_services(config, db)
        _dispatch(services, args)
        conn.commit()
        return 0
    except Exception:
        conn.rollback()
        raise
    finally:
        conn.close()


if __name__ == "__main__":
    raise SystemExit(main())
