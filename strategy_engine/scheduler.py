"""Single-process scheduler driving regime detection, risk monitoring and promotion."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, timedelta
import json
import logging
import os
import socket
import time
from typing import Any, Callable, Mapping

from backend.db.enums import DeploymentStatus, StrategyStatus
from strategy_engine.common import EngineClock, ensure_dir, parse_utc, stable_hash, utc_iso
from strategy_engine.deployment import DeploymentError, DeploymentService
from strategy_engine.engine_config import EngineConfig
from strategy_engine.promotion import PromotionError, PromotionGateService
from strategy_engine.regime.composite import CompositeRegimeService
from strategy_engine.regime.market_regime import MarketRegimeService
from strategy_engine.regime.volatility import DEFAULT_VOLATILITY_CONFIG, VolatilityConfig
from strategy_engine.repository import EngineRepository
from strategy_engine.risk import RiskManagementService

logger = logging.getLogger(__name__)

LOCK_FILE_NAME = ".strategy_engine_daemon.lock"
SYSTEM_USER = "system"


@dataclass(frozen=True)
class SchedulerStatus:
    """User-facing scheduler status payload."""

    composite_regime: str
    override_active: bool
    active_deployments: int
    pending_deployments: int
    total_allocation: float
    last_regime_refresh_at: str | None
    last_risk_check_at: str | None
    last_promotion_date: str | None


@dataclass(frozen=True)
class PromotionCycleResult:
    evaluated: int
    promoted: tuple[str, ...]
    rejected: tuple[str, ...]


class StrategyLifecycleScheduler:
    """Hourly regime and risk cycles plus a daily promotion pass under one exclusive lock."""

    def __init__(
        self,
        *,
        repository: EngineRepository,
        config: EngineConfig,
        market_regimes: MarketRegimeService,
        composite: CompositeRegimeService,
        promotion: PromotionGateService,
        deployments: DeploymentService,
        risk: RiskManagementService,
        volatility_config: VolatilityConfig = DEFAULT_VOLATILITY_CONFIG,
        clock: EngineClock | None = None,
    ) -> None:
        self._repository = repository
        self._config = config
        self._market_regimes = market_regimes
        self._composite = composite
        self._promotion = promotion
        self._deployments = deployments
        self._risk = risk
        self._volatility_config = volatility_config
        self._clock = clock or EngineClock()

        self._last_regime_refresh: datetime | None = None
        self._last_risk_check: datetime | None = None
        self._last_promotion_date: date | None = None

        self._lock_file_path = self._config.lock_dir / LOCK_FILE_NAME
        self._lock_depth = 0
        self._lock_owner = stable_hash(
            (
                "strategy_engine_daemon_lock_owner",
                socket.gethostname(),
                os.getpid(),
                id(self),
            )
        )

    # Exclusive lock

    def _read_lock_payload(self) -> Mapping[str, Any] | None:
        if not self._lock_file_path.exists():
            return None
        try:
            payload = json.loads(self._lock_file_path.read_text(encoding="utf-8"))
        except (OSError, ValueError):
            return None
        if not isinstance(payload, dict):
            return None
        return payload

    def _write_lock_payload(self, payload: Mapping[str, Any]) -> None:
        ensure_dir(self._lock_file_path.parent)
        temp_path = self._lock_file_path.with_suffix(".tmp")
        temp_path.write_text(json.dumps(dict(payload), sort_keys=True), encoding="utf-8")
        os.replace(temp_path, self._lock_file_path)

    def _lock_payload_is_stale(self, payload: Mapping[str, Any], now_utc: datetime) -> bool:
        heartbeat = parse_utc(payload.get("heartbeat_at_utc")) or parse_utc(payload.get("acquired_at_utc"))
        if heartbeat is None:
            return True
        age_seconds = (now_utc - heartbeat).total_seconds()
        return age_seconds > float(self._config.daemon_lock_stale_seconds)

    def acquire_exclusive_lock(self) -> None:
        """Acquire process lock to prevent concurrent scheduler instances."""
        if self._lock_depth > 0:
            self._lock_depth += 1
            self._refresh_lock_heartbeat()
            return

        now_utc = self._clock.now_utc()
        payload = {
            "owner": self._lock_owner,
            "pid": os.getpid(),
            "host": socket.gethostname(),
            "acquired_at_utc": utc_iso(now_utc),
            "heartbeat_at_utc": utc_iso(now_utc),
        }
        ensure_dir(self._lock_file_path.parent)

        for _ in range(3):
            try:
                fd = os.open(self._lock_file_path, os.O_CREAT | os.O_EXCL | os.O_WRONLY)
            except FileExistsError:
                existing = self._read_lock_payload()
                if existing is None or self._lock_payload_is_stale(existing, now_utc):
                    logger.warning("Removing stale scheduler lock at %s", self._lock_file_path)
                    try:
                        os.remove(self._lock_file_path)
                    except FileNotFoundError:
                        pass
                    continue
                owner = str(existing.get("owner", "unknown"))
                raise RuntimeError(f"Strategy engine daemon lock is already held by owner={owner}")
            else:
                with os.fdopen(fd, "w", encoding="utf-8") as handle:
                    json.dump(payload, handle, sort_keys=True)
                self._lock_depth = 1
                logger.info("Scheduler lock acquired at %s", self._lock_file_path)
                return

        raise RuntimeError("Failed to acquire strategy engine daemon lock after stale-lock retries")

    def _refresh_lock_heartbeat(self) -> None:
        if self._lock_depth <= 0:
            return
        payload = self._read_lock_payload()
        if payload is None:
            raise RuntimeError("Strategy engine daemon lock file disappeared while lock is held")
        if str(payload.get("owner")) != self._lock_owner:
            raise RuntimeError("Strategy engine daemon lock ownership changed unexpectedly")
        updated = dict(payload)
        updated["heartbeat_at_utc"] = utc_iso(self._clock.now_utc())
        self._write_lock_payload(updated)

    def release_exclusive_lock(self) -> None:
        """Release process lock, supporting nested acquisition depth."""
        if self._lock_depth <= 0:
            return
        if self._lock_depth > 1:
            self._lock_depth -= 1
            return

        payload = self._read_lock_payload()
        try:
            if payload is not None and str(payload.get("owner")) == self._lock_owner:
                os.remove(self._lock_file_path)
        except FileNotFoundError:
            pass
        finally:
            self._lock_depth = 0
            logger.info("Scheduler lock released at %s", self._lock_file_path)

    # Jobs

    def run_regime_detection(self) -> int:
        """Detect the volatility regime per monitored asset, then refresh the composite regime."""
        now_utc = self._clock.now_utc()
        window_days = self._volatility_config.lookback_days + self._volatility_config.rolling_days + 1
        start_date = (now_utc - timedelta(days=window_days)).date()
        detected = 0
        for asset in self._config.monitored_assets:
            try:
                prices = self._repository.get_daily_closes(asset, start_date)
                self._market_regimes.detect_regime(asset, prices, self._volatility_config)
                detected += 1
            except ValueError as exc:
                logger.warning("Skipping regime detection for %s: %s", asset, exc)
            except Exception as exc:
                logger.error("Regime detection failed for %s: %s", asset, exc)

        try:
            self._composite.refresh()
        except Exception as exc:
            logger.error("Composite regime refresh failed, keeping previous regime: %s", exc)
        self._last_regime_refresh = now_utc
        logger.info("Regime detection complete: %d/%d assets", detected, len(self._config.monitored_assets))
        return detected

    def run_risk_monitoring(self) -> int:
        evaluations = self._risk.evaluate_all_deployments()
        self._last_risk_check = self._clock.now_utc()
        return sum(1 for evaluation in evaluations if evaluation.should_demote)

    def run_promotion_evaluation(self) -> PromotionCycleResult:
        """Evaluate every ``testing`` strategy and open a small deployment for those that pass."""
        candidates = self._repository.list_strategy_configs_by_status(StrategyStatus.TESTING)
        logger.info("Evaluating %d testing strategies for promotion", len(candidates))

        promoted: list[str] = []
        rejected: list[str] = []
        for strategy in candidates:
            strategy_id = strategy.strategy_config_id
            pending = [
                d for d in self._deployments.find_by_strategy(strategy_id) if d.status == DeploymentStatus.PENDING_APPROVAL
            ]
            if pending:
                logger.debug("Strategy %s already has a pending deployment", strategy_id)
                continue
            try:
                evaluation = self._promotion.evaluate_gates(strategy_id, user_id=SYSTEM_USER)
                if not evaluation.can_promote:
                    rejected.append(strategy_id)
                    continue
                if not self._deployments.has_portfolio_capacity():
                    logger.warning("Portfolio at capacity, stopping promotion pass")
                    break
                deployment = self._deployments.create_deployment(
                    strategy_id,
                    self._config.auto_promotion_allocation_pct,
                    f"Automatic promotion: {evaluation.summary}",
                    approved_by=SYSTEM_USER,
                )
                promoted.append(deployment.deployment_id)
            except (PromotionError, DeploymentError) as exc:
                logger.warning("Promotion skipped for strategy %s: %s", strategy_id, exc)
                rejected.append(strategy_id)

        self._last_promotion_date = self._clock.now_utc().date()
        logger.info(
            "Promotion pass complete: %d evaluated, %d promoted, %d rejected",
            len(candidates),
            len(promoted),
            len(rejected),
        )
        return PromotionCycleResult(evaluated=len(candidates), promoted=tuple(promoted), rejected=tuple(rejected))

    def run_pending_activations(self) -> tuple[str, ...]:
        """Activate system-approved deployments whose review period has elapsed."""
        now_utc = self._clock.now_utc()
        review = timedelta(hours=self._config.activation_review_hours)
        activated: list[str] = []
        for deployment in self._repository.list_deployments_by_status(DeploymentStatus.PENDING_APPROVAL):
            if deployment.approved_by != SYSTEM_USER or deployment.approved_at is None:
                continue
            if now_utc - deployment.approved_at < review:
                continue
            try:
                self._deployments.activate_deployment(deployment.deployment_id, user_id=SYSTEM_USER)
                activated.append(deployment.deployment_id)
            except DeploymentError as exc:
                logger.warning("Activation skipped for deployment %s: %s", deployment.deployment_id, exc)
        return tuple(activated)

    # Loop

    def _is_due(self, last_run: datetime | None, interval_seconds: int, now_utc: datetime) -> bool:
        return last_run is None or (now_utc - last_run).total_seconds() >= interval_seconds

    def _due_jobs(self, now_utc: datetime, force: bool) -> list[tuple[str, Callable[[], object]]]:
        jobs: list[tuple[str, Callable[[], object]]] = []
        if force or self._is_due(self._last_regime_refresh, self._config.regime_refresh_seconds, now_utc):
            jobs.append(("regime-detection", self.run_regime_detection))
        if force or self._is_due(self._last_risk_check, self._config.risk_check_seconds, now_utc):
            jobs.append(("risk-monitoring", self.run_risk_monitoring))

        if not self._config.enable_auto_promotion:
            return jobs
        if now_utc.hour == self._config.promotion_hour_utc:
            if self._last_promotion_date == now_utc.date():
                logger.debug("Promotion pass already ran for %s", now_utc.date().isoformat())
            else:
                jobs.append(("promotion-evaluation", self.run_promotion_evaluation))
        jobs.append(("pending-activations", self.run_pending_activations))
        return jobs

    def _run_once_cycle(self, *, force: bool = False) -> None:
        """Run every due job; one job failing never skips the others."""
        failures: list[tuple[str, Exception]] = []
        for job_name, job in self._due_jobs(self._clock.now_utc(), force):
            try:
                job()
            except Exception as exc:
                logger.exception("Scheduler job %s failed", job_name)
                failures.append((job_name, exc))

        if failures:
            names = ", ".join(name for name, _ in failures)
            raise RuntimeError(f"Scheduler jobs failed: {names}") from failures[0][1]

    def run_once(self) -> None:
        """Execute one full scheduler iteration regardless of job intervals."""
        self.acquire_exclusive_lock()
        try:
            self._run_once_cycle(force=True)
            self._refresh_lock_heartbeat()
        finally:
            self.release_exclusive_lock()

    def daemon_loop(self, *, max_cycles: int | None = None) -> None:
        """Run the scheduler until interrupted or max_cycles reached."""
        self.acquire_exclusive_lock()
        logger.info("Scheduler started (max_cycles=%s)", max_cycles if max_cycles is not None else "infinite")
        self._composite.on_init()
        sleep_seconds = min(self._config.regime_refresh_seconds, self._config.risk_check_seconds)
        cycles = 0
        consecutive_failures = 0
        try:
            while True:
                try:
                    self._run_once_cycle()
                    self._refresh_lock_heartbeat()
                    consecutive_failures = 0
                except Exception as exc:
                    consecutive_failures += 1
                    logger.exception("Scheduler cycle failed (failure_count=%d)", consecutive_failures)
                    if consecutive_failures >= self._config.daemon_max_consecutive_failures:
                        raise RuntimeError(
                            "Strategy engine daemon exceeded max consecutive failures "
                            f"({self._config.daemon_max_consecutive_failures})"
                        ) from exc
                    time.sleep(self._config.daemon_failure_backoff_seconds)
                    continue

                cycles += 1
                if max_cycles is not None and cycles >= max_cycles:
                    return
                time.sleep(sleep_seconds)
        finally:
            logger.info("Scheduler stopped (completed_cycles=%d)", cycles)
            self.release_exclusive_lock()

    def get_status(self) -> SchedulerStatus:
        active = self._deployments.get_active_deployments()
        pending = self._repository.list_deployments_by_status(DeploymentStatus.PENDING_APPROVAL)
        return SchedulerStatus(
            composite_regime=self._composite.get_composite_regime().value,
            override_active=self._composite.is_override_active(),
            active_deployments=len(active),
            pending_deployments=len(pending),
            total_allocation=self._deployments.get_total_allocation(),
            last_regime_refresh_at=None if self._last_regime_refresh is None else utc_iso(self._last_regime_refresh),
            last_risk_check_at=None if self._last_risk_check is None else utc_iso(self._last_risk_check),
            last_promotion_date=None if self._last_promotion_date is None else self._last_promotion_date.isoformat(),
        )
