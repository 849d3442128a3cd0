"""Deployment lifecycle: creation under risk limits, state transitions and live metrics.

Status flow is ``pending_approval -> active <-> paused``; ``demoted`` and
``terminated`` are terminal. Activation marks the strategy ``live``; demotion
and termination mark it ``deprecated``. Every transition is audited through the
fire-and-forget sink so audit trouble never blocks a transition.
"""

from __future__ import annotations

from dataclasses import replace
from datetime import date
import logging
from typing import Any, Mapping, Optional

from backend.db.enums import AuditEventType, DeploymentStatus, StrategyStatus
from strategy_engine.audit import AuditService
from strategy_engine.common import EngineClock, deterministic_uuid, to_float, utc_iso
from strategy_engine.repository import DeploymentRecord, EngineRepository, PerformanceMetricRecord

logger = logging.getLogger(__name__)

MAX_ACTIVE_DEPLOYMENTS = 35
DEFAULT_MAX_DRAWDOWN_LIMIT = 0.4
DRAWDOWN_LIMIT_SAFETY_MARGIN = 1.5
DEFAULT_DAILY_LOSS_LIMIT = 0.05
DEFAULT_POSITION_SIZE_LIMIT = 0.1
AT_RISK_DRAWDOWN_RATIO = 0.8


class DeploymentError(RuntimeError):
    """Unexpected failure while changing a deployment."""


class DeploymentNotFoundError(LookupError, DeploymentError):
    """Raised when a deployment or strategy config does not exist."""


class DeploymentStateError(ValueError, DeploymentError):
    """Raised when a request is invalid for the current deployment state."""


def _deployment_state(record: DeploymentRecord) -> dict[str, Any]:
    return {
        "status": record.status.value,
        "allocationPercent": record.allocation_percent,
        "maxDrawdownLimit": record.max_drawdown_limit,
        "dailyLossLimit": record.daily_loss_limit,
        "positionSizeLimit": record.position_size_limit,
        "deployedAt": None if record.deployed_at is None else utc_iso(record.deployed_at),
        "terminatedAt": None if record.terminated_at is None else utc_iso(record.terminated_at),
        "terminationReason": record.termination_reason,
        "currentDrawdown": record.current_drawdown,
    }


class DeploymentService:
    """State machine over ``deployment`` rows backed by ``EngineRepository``."""

    def __init__(
        self,
        repository: EngineRepository,
        audit: AuditService,
        *,
        clock: EngineClock | None = None,
    ) -> None:
        self._repository = repository
        self._audit = audit
        self._clock = clock or EngineClock()

    def create_deployment(
        self,
        strategy_config_id: str,
        allocation_percent: float,
        promotion_reason: str,
        approved_by: str | None = None,
    ) -> DeploymentRecord:
        strategy_config = self._repository.get_strategy_config(strategy_config_id)
        if strategy_config is None:
            raise DeploymentNotFoundError(f"StrategyConfig {strategy_config_id} not found")

        latest_score = self._repository.get_latest_score(strategy_config_id)
        if latest_score is None or not latest_score.promotion_eligible:
            raise DeploymentStateError("Strategy is not eligible for deployment")

        sharpe_component = latest_score.component_scores.get("sharpeRatio")
        if not sharpe_component:
            raise DeploymentStateError("Strategy score data is incomplete - missing Sharpe ratio component")

        self._ensure_can_go_active(strategy_config_id)

        sharpe_value = to_float(sharpe_component.get("value"), DEFAULT_MAX_DRAWDOWN_LIMIT)
        max_drawdown_limit = min(sharpe_value * DRAWDOWN_LIMIT_SAFETY_MARGIN, DEFAULT_MAX_DRAWDOWN_LIMIT)
        now = self._clock.now_utc()
        record = DeploymentRecord(
            deployment_id=str(deterministic_uuid("deployment", strategy_config_id, now)),
            strategy_config_id=strategy_config_id,
            status=DeploymentStatus.PENDING_APPROVAL,
            allocation_percent=allocation_percent,
            initial_allocation_percent=allocation_percent,
            max_drawdown_limit=max_drawdown_limit,
            daily_loss_limit=DEFAULT_DAILY_LOSS_LIMIT,
            position_size_limit=DEFAULT_POSITION_SIZE_LIMIT,
            max_leverage=to_float(strategy_config.parameters.get("maxLeverage"), 1.0),
            approved_by=approved_by,
            approved_at=now if approved_by else None,
            promotion_reason=promotion_reason,
            metadata={
                "backtestScore": latest_score.overall_score,
                "backtestGrade": latest_score.grade,
                "backtestSharpeComponent": sharpe_value,
            },
            created_at=now,
            updated_at=now,
            strategy_name=strategy_config.name,
            strategy_parameters=strategy_config.parameters,
        )

        try:
            self._repository.insert_deployment(record)
        except Exception as exc:
            logger.error("Failed to create deployment for strategy %s: %s", strategy_config_id, exc)
            raise DeploymentError("Failed to create deployment due to an internal error") from exc

        self._audit.record(
            AuditEventType.STRATEGY_PROMOTED,
            "Deployment",
            record.deployment_id,
            user_id=approved_by,
            after_state={
                "strategyConfigId": strategy_config_id,
                "allocationPercent": allocation_percent,
                "status": record.status.value,
                "maxDrawdownLimit": max_drawdown_limit,
                "promotionReason": promotion_reason,
            },
            metadata={
                "strategyName": strategy_config.name,
                "algorithmName": strategy_config.algorithm_name,
                "score": latest_score.overall_score,
                "grade": latest_score.grade,
            },
        )
        logger.info(
            "Created deployment %s for strategy %s with %s%% allocation",
            record.deployment_id,
            strategy_config.name,
            allocation_percent,
        )
        return record

    def _ensure_can_go_active(self, strategy_config_id: str) -> None:
        if self._repository.find_active_deployment_for_strategy(strategy_config_id) is not None:
            raise DeploymentStateError("Strategy already has an active deployment")

        if self._repository.count_active_deployments() >= MAX_ACTIVE_DEPLOYMENTS:
            raise DeploymentStateError(f"Maximum active deployments ({MAX_ACTIVE_DEPLOYMENTS}) reached")

    @staticmethod
    def _ensure_can_close(deployment: DeploymentRecord, action: str) -> None:
        if deployment.is_terminal:
            raise DeploymentStateError(
                f"Cannot {action} deployment {deployment.deployment_id}: already {deployment.status.value}"
            )
        if deployment.status not in (DeploymentStatus.ACTIVE, DeploymentStatus.PAUSED):
            raise DeploymentStateError(f"Only active or paused deployments can be {action}d")

    def _save(self, record: DeploymentRecord, action: str) -> None:
        try:
            self._repository.update_deployment(record)
        except Exception as exc:
            logger.error("Failed to %s deployment %s: %s", action, record.deployment_id, exc)
            raise DeploymentError(f"Failed to {action} deployment due to an internal error") from exc

    def activate_deployment(self, deployment_id: str, user_id: str | None = None) -> DeploymentRecord:
        deployment = self.find_one(deployment_id)
        if deployment.status != DeploymentStatus.PENDING_APPROVAL:
            raise DeploymentStateError("Deployment must be in pending_approval status to activate")
        self._ensure_can_go_active(deployment.strategy_config_id)

        now = self._clock.now_utc()
        activated = replace(deployment, status=DeploymentStatus.ACTIVE, deployed_at=now, updated_at=now)
        self._save(activated, "activate")
        self._repository.update_strategy_status(deployment.strategy_config_id, StrategyStatus.LIVE, now)

        self._audit.record(
            AuditEventType.DEPLOYMENT_ACTIVATED,
            "Deployment",
            deployment_id,
            user_id=user_id,
            before_state=_deployment_state(deployment),
            after_state=_deployment_state(activated),
            metadata={"deployedAt": utc_iso(now)},
        )
        logger.info("Activated deployment %s", deployment_id)
        return activated

    def pause_deployment(self, deployment_id: str, reason: str, user_id: str | None = None) -> DeploymentRecord:
        deployment = self.find_one(deployment_id)
        if not deployment.is_active:
            raise DeploymentStateError("Only active deployments can be paused")

        now = self._clock.now_utc()
        paused = replace(
            deployment,
            status=DeploymentStatus.PAUSED,
            metadata={**deployment.metadata, "pausedAt": utc_iso(now), "pauseReason": reason},
            updated_at=now,
        )
        self._save(paused, "pause")

        self._audit.record(
            AuditEventType.DEPLOYMENT_PAUSED,
            "Deployment",
            deployment_id,
            user_id=user_id,
            before_state=_deployment_state(deployment),
            after_state=_deployment_state(paused),
            metadata={"reason": reason},
        )
        logger.warning("Paused deployment %s: %s", deployment_id, reason)
        return paused

    def resume_deployment(self, deployment_id: str, user_id: str | None = None) -> DeploymentRecord:
        deployment = self.find_one(deployment_id)
        if deployment.status != DeploymentStatus.PAUSED:
            raise DeploymentStateError("Only paused deployments can be resumed")
        self._ensure_can_go_active(deployment.strategy_config_id)

        now = self._clock.now_utc()
        resumed = replace(
            deployment,
            status=DeploymentStatus.ACTIVE,
            metadata={**deployment.metadata, "resumedAt": utc_iso(now)},
            updated_at=now,
        )
        self._save(resumed, "resume")

        self._audit.record(
            AuditEventType.DEPLOYMENT_RESUMED,
            "Deployment",
            deployment_id,
            user_id=user_id,
            before_state=_deployment_state(deployment),
            after_state=_deployment_state(resumed),
        )
        logger.info("Resumed deployment %s", deployment_id)
        return resumed

    def demote_deployment(
        self,
        deployment_id: str,
        reason: str,
        metadata: Mapping[str, Any] | None = None,
    ) -> DeploymentRecord:
        deployment = self.find_one(deployment_id)
        self._ensure_can_close(deployment, "demote")

        now = self._clock.now_utc()
        demoted = replace(
            deployment,
            status=DeploymentStatus.DEMOTED,
            terminated_at=now,
            termination_reason=reason,
            metadata={**deployment.metadata, "demotionMetadata": dict(metadata or {})},
            updated_at=now,
        )
        self._save(demoted, "demote")
        self._repository.update_strategy_status(deployment.strategy_config_id, StrategyStatus.DEPRECATED, now)

        self._audit.record(
            AuditEventType.STRATEGY_DEMOTED,
            "Deployment",
            deployment_id,
            before_state=_deployment_state(deployment),
            after_state=_deployment_state(demoted),
            metadata={"reason": reason, **dict(metadata or {})},
        )
        logger.error("Demoted deployment %s: %s", deployment_id, reason)
        return demoted

    def terminate_deployment(self, deployment_id: str, reason: str, user_id: str | None = None) -> DeploymentRecord:
        deployment = self.find_one(deployment_id)
        self._ensure_can_close(deployment, "terminate")

        now = self._clock.now_utc()
        terminated = replace(
            deployment,
            status=DeploymentStatus.TERMINATED,
            terminated_at=now,
            termination_reason=reason,
            updated_at=now,
        )
        self._save(terminated, "terminate")
        self._repository.update_strategy_status(deployment.strategy_config_id, StrategyStatus.DEPRECATED, now)

        self._audit.record(
            AuditEventType.DEPLOYMENT_TERMINATED,
            "Deployment",
            deployment_id,
            user_id=user_id,
            before_state=_deployment_state(deployment),
            after_state=_deployment_state(terminated),
            metadata={"reason": reason},
        )
        logger.warning("Terminated deployment %s: %s", deployment_id, reason)
        return terminated

    def update_allocation(
        self,
        deployment_id: str,
        new_allocation_percent: float,
        reason: str,
        user_id: str | None = None,
    ) -> DeploymentRecord:
        deployment = self.find_one(deployment_id)
        if not deployment.is_active:
            raise DeploymentStateError("Only active deployments can have allocation updated")

        now = self._clock.now_utc()
        previous = deployment.allocation_percent
        updated = replace(
            deployment,
            allocation_percent=new_allocation_percent,
            metadata={
                **deployment.metadata,
                "lastAllocationChange": {
                    "from": previous,
                    "to": new_allocation_percent,
                    "at": utc_iso(now),
                    "reason": reason,
                },
            },
            updated_at=now,
        )
        self._save(updated, "update allocation for")

        self._audit.record(
            AuditEventType.ALLOCATION_ADJUSTED,
            "Deployment",
            deployment_id,
            user_id=user_id,
            before_state={"allocationPercent": previous},
            after_state={"allocationPercent": new_allocation_percent},
            metadata={"reason": reason},
        )
        logger.info(
            "Updated allocation for deployment %s: %s%% -> %s%%",
            deployment_id,
            previous,
            new_allocation_percent,
        )
        return updated

    def record_performance_metric(self, metric: PerformanceMetricRecord) -> PerformanceMetricRecord:
        """Upsert one daily snapshot and roll its figures into the deployment aggregates."""
        deployment = self.find_one(metric.deployment_id)
        now = self._clock.now_utc()
        saved = replace(metric, snapshot_at=now)
        try:
            self._repository.upsert_metric(saved)
        except Exception as exc:
            logger.error("Failed to record performance metric for deployment %s: %s", metric.deployment_id, exc)
            raise DeploymentError("Failed to record performance metric due to an internal error") from exc

        try:
            self._update_deployment_stats(deployment, saved)
        except Exception as exc:
            logger.error("Failed to update deployment stats for %s: %s", metric.deployment_id, exc)
        return saved

    def _update_deployment_stats(self, deployment: DeploymentRecord, metric: PerformanceMetricRecord) -> None:
        changes: dict[str, Any] = {
            "realized_pnl": metric.cumulative_pnl,
            "current_drawdown": metric.drawdown,
            "max_drawdown_observed": max(deployment.max_drawdown_observed, metric.max_drawdown),
            "total_trades": metric.cumulative_trades_count,
            "updated_at": metric.snapshot_at,
        }
        if metric.sharpe_ratio is not None:
            changes["live_sharpe_ratio"] = metric.sharpe_ratio
        if metric.drift_detected:
            changes["drift_alert_count"] = deployment.drift_alert_count + 1
            changes["last_drift_detected_at"] = metric.snapshot_at
            changes["drift_metrics"] = metric.drift_details
        self._repository.update_deployment(replace(deployment, **changes))

    # Queries

    def find_one(self, deployment_id: str) -> DeploymentRecord:
        deployment = self._repository.get_deployment(deployment_id)
        if deployment is None:
            raise DeploymentNotFoundError(f"Deployment {deployment_id} not found")
        return deployment

    def find_by_strategy(self, strategy_config_id: str) -> tuple[DeploymentRecord, ...]:
        return self._repository.list_deployments_by_strategy(strategy_config_id)

    def get_active_deployments(self) -> tuple[DeploymentRecord, ...]:
        return self._repository.list_deployments_by_status(DeploymentStatus.ACTIVE)

    def get_performance_metrics(
        self,
        deployment_id: str,
        *,
        start_date: date | None = None,
        end_date: date | None = None,
    ) -> tuple[PerformanceMetricRecord, ...]:
        return self._repository.list_metrics(deployment_id, start_date=start_date, end_date=end_date)

    def get_latest_performance_metric(self, deployment_id: str) -> Optional[PerformanceMetricRecord]:
        return self._repository.get_latest_metric(deployment_id)

    def has_portfolio_capacity(self) -> bool:
        return self._repository.count_active_deployments() < MAX_ACTIVE_DEPLOYMENTS

    def get_total_allocation(self) -> float:
        return self._repository.sum_active_allocation()

    def get_deployments_at_risk(self) -> tuple[DeploymentRecord, ...]:
        """Active deployments whose drawdown reached 80% of their limit."""
        return tuple(
            deployment
            for deployment in self.get_active_deployments()
            if abs(deployment.current_drawdown) >= deployment.max_drawdown_limit * AT_RISK_DRAWDOWN_RATIO
        )
