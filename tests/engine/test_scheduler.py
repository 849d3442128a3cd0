from __future__ import annotations

from datetime import timedelta
import json
import logging
from pathlib import Path

import pytest

from backend.db.enums import CompositeRegimeType, DeploymentStatus, MarketRegimeType, StrategyStatus
from strategy_engine import scheduler as scheduler_module
from strategy_engine.cache import InMemoryTTLCache
from strategy_engine.common import utc_iso
from strategy_engine.deployment import DeploymentService
from strategy_engine.engine_config import EngineConfig
from strategy_engine.promotion import PromotionGateService
from strategy_engine.regime.composite import CompositeRegimeService
from strategy_engine.regime.market_regime import MarketRegimeService
from strategy_engine.regime.volatility import VolatilityConfig
from strategy_engine.risk import RiskManagementService
from strategy_engine.scheduler import LOCK_FILE_NAME, StrategyLifecycleScheduler
from tests.engine.utils import (
    NOW,
    FakeRepository,
    FixedClock,
    RecordingAudit,
    make_backtest,
    make_deployment,
    make_metric,
    make_score,
    make_strategy,
)


def _prices(returns: list[float]) -> list[float]:
    prices = [100.0]
    for ret in returns:
        prices.append(prices[-1] * (1 + ret))
    return prices


def _config(lock_dir: Path, **overrides: object) -> EngineConfig:
    values: dict[str, object] = dict(
        redis_url="redis://localhost:6379/0",
        monitored_assets=("BTC", "ETH"),
        trend_symbol="BTC",
        regime_refresh_seconds=3600,
        risk_check_seconds=3600,
        promotion_hour_utc=2,
        enable_auto_promotion=True,
        auto_promotion_allocation_pct=1.0,
        activation_review_hours=24,
        lock_dir=lock_dir,
        daemon_lock_stale_seconds=900,
        daemon_failure_backoff_seconds=120,
        daemon_max_consecutive_failures=3,
        log_level="INFO",
    )
    values.update(overrides)
    return EngineConfig(**values)  # type: ignore[arg-type]


def _scheduler(
    repo: FakeRepository,
    lock_dir: Path,
    *,
    clock: FixedClock | None = None,
    **config_overrides: object,
) -> StrategyLifecycleScheduler:
    clock = clock or FixedClock()
    audit = RecordingAudit()
    deployments = DeploymentService(repo, audit, clock=clock)  # type: ignore[arg-type]
    return StrategyLifecycleScheduler(
        repository=repo,  # type: ignore[arg-type]
        config=_config(lock_dir, **config_overrides),
        market_regimes=MarketRegimeService(repo, clock=clock),  # type: ignore[arg-type]
        composite=CompositeRegimeService(
            repo,  # type: ignore[arg-type]
            audit,  # type: ignore[arg-type]
            InMemoryTTLCache(clock),  # type: ignore[arg-type]
            clock=clock,  # type: ignore[arg-type]
        ),
        promotion=PromotionGateService(repo, audit, clock=clock),  # type: ignore[arg-type]
        deployments=deployments,
        risk=RiskManagementService(deployments, audit, clock=clock),  # type: ignore[arg-type]
        volatility_config=VolatilityConfig(rolling_days=5, lookback_days=20, annualization_factor=365),
        clock=clock,  # type: ignore[arg-type]
    )


def _promotable_repo() -> FakeRepository:
    repo = FakeRepository()
    repo.closes["BTC"] = _prices([0.001, -0.001] * 12 + [0.1, -0.1] * 3)
    repo.strategies["s1"] = make_strategy("s1")
    repo.scores["s1"] = [make_score("s1")]
    repo.backtests["s1"] = make_backtest("s1")
    return repo


def test_lock_acquire_release_and_nesting(tmp_path: Path) -> None:
    scheduler = _scheduler(FakeRepository(), tmp_path)
    lock_path = tmp_path / LOCK_FILE_NAME

    scheduler.acquire_exclusive_lock()
    payload = json.loads(lock_path.read_text(encoding="utf-8"))
    assert payload["acquired_at_utc"] == "2026-03-02T02:00:00Z"

    scheduler.acquire_exclusive_lock()
    scheduler.release_exclusive_lock()
    assert lock_path.exists()
    scheduler.release_exclusive_lock()
    assert not lock_path.exists()
    scheduler.release_exclusive_lock()


def test_lock_held_by_another_owner_is_rejected(tmp_path: Path) -> None:
    lock_path = tmp_path / LOCK_FILE_NAME
    lock_path.write_text(
        json.dumps({"owner": "other", "heartbeat_at_utc": utc_iso(NOW - timedelta(minutes=5))}),
        encoding="utf-8",
    )
    with pytest.raises(RuntimeError, match="already held by owner=other"):
        _scheduler(FakeRepository(), tmp_path).acquire_exclusive_lock()
    assert json.loads(lock_path.read_text(encoding="utf-8"))["owner"] == "other"


@pytest.mark.parametrize(
    "content",
    [
        json.dumps({"owner": "other", "heartbeat_at_utc": utc_iso(NOW - timedelta(hours=2))}),
        "not json",
        json.dumps(["list"]),
    ],
)
def test_stale_or_corrupt_lock_is_replaced(tmp_path: Path, content: str, caplog: pytest.LogCaptureFixture) -> None:
    lock_path = tmp_path / LOCK_FILE_NAME
    lock_path.write_text(content, encoding="utf-8")
    scheduler = _scheduler(FakeRepository(), tmp_path)

    with caplog.at_level(logging.WARNING):
        scheduler.acquire_exclusive_lock()
    assert "Removing stale scheduler lock" in caplog.text
    assert json.loads(lock_path.read_text(encoding="utf-8"))["owner"] != "other"
    scheduler.release_exclusive_lock()


def test_run_once_detects_regimes_and_promotes(tmp_path: Path, caplog: pytest.LogCaptureFixture) -> None:
    repo = _promotable_repo()
    clock = FixedClock()
    scheduler = _scheduler(repo, tmp_path, clock=clock)

    with caplog.at_level(logging.INFO):
        scheduler.run_once()

    assert "Skipping regime detection for ETH" in caplog.text
    assert "Regime detection complete: 1/2 assets" in caplog.text
    assert [r.asset for r in repo.regimes] == ["BTC"]
    assert repo.regimes[0].regime == MarketRegimeType.EXTREME
    assert not (tmp_path / LOCK_FILE_NAME).exists()

    (deployment,) = repo.deployments.values()
    assert deployment.status == DeploymentStatus.PENDING_APPROVAL
    assert deployment.approved_by == "system"
    assert deployment.allocation_percent == 1.0
    assert deployment.promotion_reason == "Automatic promotion: All 8 gates passed. Strategy approved for promotion."

    status = scheduler.get_status()
    assert status.composite_regime == CompositeRegimeType.NEUTRAL.value
    assert status.pending_deployments == 1
    assert status.active_deployments == 0
    assert status.last_promotion_date == "2026-03-02"
    assert status.last_regime_refresh_at == "2026-03-02T02:00:00Z"

    assert scheduler.run_pending_activations() == ()
    clock.advance(hours=24)
    assert scheduler.run_pending_activations() == (deployment.deployment_id,)
    assert repo.deployments[deployment.deployment_id].status == DeploymentStatus.ACTIVE
    assert repo.strategies["s1"].status == StrategyStatus.LIVE


def test_promotion_pass_skips_pending_and_collects_rejections(tmp_path: Path) -> None:
    repo = _promotable_repo()
    repo.deployments["pending"] = make_deployment("pending", "s1", status=DeploymentStatus.PENDING_APPROVAL)
    repo.strategies["weak"] = make_strategy("weak")
    repo.scores["weak"] = [make_score("weak", overall_score=40.0)]
    repo.backtests["weak"] = make_backtest("weak")
    repo.strategies["untested"] = make_strategy("untested")

    result = _scheduler(repo, tmp_path).run_promotion_evaluation()
    assert result.evaluated == 3
    assert result.promoted == ()
    assert set(result.rejected) == {"weak", "untested"}


def test_manual_pending_deployments_are_not_auto_activated(tmp_path: Path) -> None:
    repo = FakeRepository()
    repo.deployments["manual"] = make_deployment(
        "manual",
        "s1",
        status=DeploymentStatus.PENDING_APPROVAL,
        approved_by="ops",
        approved_at=NOW - timedelta(days=3),
    )
    assert _scheduler(repo, tmp_path).run_pending_activations() == ()


def test_risk_monitoring_counts_demotions(tmp_path: Path) -> None:
    repo = FakeRepository()
    repo.strategies["s1"] = make_strategy("s1", status=StrategyStatus.LIVE)
    repo.deployments["d1"] = make_deployment("d1", "s1")
    repo.metrics["d1"] = [make_metric("d1", daily_return=-0.08)]
    scheduler = _scheduler(repo, tmp_path)

    assert scheduler.run_risk_monitoring() == 1
    assert repo.deployments["d1"].status == DeploymentStatus.DEMOTED
    assert scheduler.get_status().last_risk_check_at == "2026-03-02T02:00:00Z"


def test_daemon_loop_respects_intervals_and_max_cycles(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    repo = _promotable_repo()
    scheduler = _scheduler(repo, tmp_path, enable_auto_promotion=False)
    sleeps: list[float] = []
    monkeypatch.setattr(scheduler_module.time, "sleep", lambda seconds: sleeps.append(seconds))

    scheduler.daemon_loop(max_cycles=2)

    assert sleeps == [3600]
    assert len(repo.regimes) == 1
    assert repo.deployments == {}
    assert not (tmp_path / LOCK_FILE_NAME).exists()


def test_daemon_loop_stops_after_consecutive_failures(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    class _BrokenRepository(FakeRepository):
        def list_deployments_by_status(self, status):  # type: ignore[no-untyped-def]
            raise ConnectionError("database unavailable")

    scheduler = _scheduler(_BrokenRepository(), tmp_path, daemon_max_consecutive_failures=2)
    sleeps: list[float] = []
    monkeypatch.setattr(scheduler_module.time, "sleep", lambda seconds: sleeps.append(seconds))

    with pytest.raises(RuntimeError, match=r"exceeded max consecutive failures \(2\)"):
        scheduler.daemon_loop()
    assert sleeps == [120]
    assert not (tmp_path / LOCK_FILE_NAME).exists()


def _breached_repo(repo: FakeRepository) -> FakeRepository:
    repo.strategies["s1"] = make_strategy("s1", status=StrategyStatus.LIVE)
    repo.deployments["d1"] = make_deployment("d1", "s1", max_drawdown_limit=0.2)
    repo.metrics["d1"] = [make_metric("d1", drawdown=0.5)]
    return repo


def test_market_data_outage_does_not_block_risk_monitoring(
    tmp_path: Path, caplog: pytest.LogCaptureFixture
) -> None:
    class _NoMarketDataRepository(FakeRepository):
        def get_daily_closes(self, symbol, start_date):  # type: ignore[no-untyped-def]
            raise ConnectionError("market data down")

    repo = _breached_repo(_NoMarketDataRepository())
    scheduler = _scheduler(repo, tmp_path, enable_auto_promotion=False)

    with caplog.at_level(logging.ERROR):
        scheduler.run_once()

    assert repo.deployments["d1"].status == DeploymentStatus.DEMOTED
    assert "Regime detection failed for BTC: market data down" in caplog.text
    assert "Composite regime refresh failed, keeping previous regime" in caplog.text
    assert scheduler.get_status().composite_regime == CompositeRegimeType.NEUTRAL.value
    assert scheduler.get_status().last_risk_check_at == "2026-03-02T02:00:00Z"


def test_failed_job_does_not_skip_later_jobs(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    repo = _breached_repo(FakeRepository())
    scheduler = _scheduler(repo, tmp_path, enable_auto_promotion=False)

    def _explode() -> int:
        raise ConnectionError("regime store offline")

    monkeypatch.setattr(scheduler, "run_regime_detection", _explode)

    with pytest.raises(RuntimeError, match="Scheduler jobs failed: regime-detection") as excinfo:
        scheduler.run_once()
    assert isinstance(excinfo.value.__cause__, ConnectionError)
    assert repo.deployments["d1"].status == DeploymentStatus.DEMOTED
    assert not (tmp_path / LOCK_FILE_NAME).exists()
