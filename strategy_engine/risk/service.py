"""Continuous risk evaluation of live deployments with automatic demotion."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
import logging
from typing import Any, Optional

from backend.db.enums import AuditEventType
from strategy_engine.audit import AuditService
from strategy_engine.common import EngineClock, utc_iso
from strategy_engine.deployment import DeploymentService
from strategy_engine.risk.checks import SEVERITY_CRITICAL, RiskCheck, RiskCheckResult, default_checks

logger = logging.getLogger(__name__)

HISTORY_LOOKBACK_DAYS = 30


@dataclass(frozen=True)
class RiskEvaluation:
    deployment_id: str
    evaluated_at: datetime
    has_critical_risk: bool
    should_demote: bool
    check_results: tuple[RiskCheckResult, ...]
    total_checks: int
    checks_passed: int
    checks_failed: int
    failed_checks: tuple[str, ...]
    summary: str
    recommended_actions: tuple[str, ...]

    def as_dict(self) -> dict[str, Any]:
        return {
            "deploymentId": self.deployment_id,
            "evaluatedAt": utc_iso(self.evaluated_at),
            "hasCriticalRisk": self.has_critical_risk,
            "shouldDemote": self.should_demote,
            "checkResults": [result.as_dict() for result in self.check_results],
            "totalChecks": self.total_checks,
            "checksPassed": self.checks_passed,
            "checksFailed": self.checks_failed,
            "failedChecks": list(self.failed_checks),
            "summary": self.summary,
            "recommendedActions": list(self.recommended_actions),
        }


class RiskManagementService:
    """Runs every risk check against a deployment; one check failing never aborts the rest."""

    def __init__(
        self,
        deployments: DeploymentService,
        audit: AuditService,
        *,
        checks: Optional[tuple[RiskCheck, ...]] = None,
        clock: EngineClock | None = None,
    ) -> None:
        self._deployments = deployments
        self._audit = audit
        self._clock = clock or EngineClock()
        self._checks = tuple(sorted(checks, key=lambda check: check.priority)) if checks is not None else default_checks()

    def _summarize(
        self,
        deployment_id: str,
        now: datetime,
        results: tuple[RiskCheckResult, ...],
    ) -> RiskEvaluation:
        auto_demote_names = {check.name for check in self._checks if check.auto_demote}
        failed = [result for result in results if not result.passed]
        critical = [result for result in failed if result.severity == SEVERITY_CRITICAL]
        should_demote = any(result.check_name in auto_demote_names for result in critical)

        total = len(results)
        if not failed:
            summary = f"All {total} risk checks passed. No risk detected."
        elif critical:
            summary = f"{len(critical)} critical risk(s) detected. Immediate action required."
        else:
            summary = f"{len(failed)} warning(s) detected. Monitor closely."

        return RiskEvaluation(
            deployment_id=deployment_id,
            evaluated_at=now,
            has_critical_risk=bool(critical),
            should_demote=should_demote,
            check_results=results,
            total_checks=total,
            checks_passed=total - len(failed),
            checks_failed=len(failed),
            failed_checks=tuple(result.check_name for result in failed),
            summary=summary,
            recommended_actions=tuple(
                result.recommended_action for result in failed if result.recommended_action
            ),
        )

    def evaluate_risks(self, deployment_id: str, user_id: str | None = None) -> RiskEvaluation:
        now = self._clock.now_utc()
        deployment = self._deployments.find_one(deployment_id)

        if not deployment.is_active:
            logger.warning("Deployment %s is not active (status: %s)", deployment_id, deployment.status.value)
            return RiskEvaluation(
                deployment_id=deployment_id,
                evaluated_at=now,
                has_critical_risk=False,
                should_demote=False,
                check_results=(),
                total_checks=0,
                checks_passed=0,
                checks_failed=0,
                failed_checks=(),
                summary="Deployment is not active",
                recommended_actions=(),
            )

        latest_metric = self._deployments.get_latest_performance_metric(deployment_id)
        history = self._deployments.get_performance_metrics(
            deployment_id,
            start_date=(now - timedelta(days=HISTORY_LOOKBACK_DAYS)).date(),
        )

        results: list[RiskCheckResult] = []
        for check in self._checks:
            try:
                result = check.evaluate(deployment, latest_metric, history)
                logger.debug("Risk check %s: %s - %s", check.name, "PASS" if result.passed else "FAIL", result.message)
            except Exception as exc:
                logger.error("Error evaluating risk check %s: %s", check.name, exc)
                result = RiskCheckResult(
                    check_name=check.name,
                    passed=False,
                    actual_value="ERROR",
                    threshold="N/A",
                    severity=SEVERITY_CRITICAL,
                    message=f"Check evaluation failed: {exc}",
                )
            results.append(result)

        evaluation = self._summarize(deployment_id, now, tuple(results))
        self._audit.record(
            AuditEventType.RISK_EVALUATION,
            "Deployment",
            deployment_id,
            user_id=user_id or "system",
            after_state={
                "hasCriticalRisk": evaluation.has_critical_risk,
                "shouldDemote": evaluation.should_demote,
                "checksFailed": evaluation.checks_failed,
                "failedChecks": list(evaluation.failed_checks),
            },
            metadata={
                "checkResults": [result.as_dict() for result in evaluation.check_results],
                "latestMetricDate": None if latest_metric is None else latest_metric.metric_date.isoformat(),
                "daysLive": deployment.days_live(now),
            },
        )

        if evaluation.should_demote:
            self._auto_demote(deployment_id, evaluation)
        elif evaluation.has_critical_risk:
            logger.warning("Deployment %s has critical risk without auto-demotion: %s", deployment_id, evaluation.summary)
        else:
            logger.info("Risk evaluation for %s: %s", deployment_id, evaluation.summary)
        return evaluation

    def _auto_demote(self, deployment_id: str, evaluation: RiskEvaluation) -> None:
        auto_demote_names = {check.name for check in self._checks if check.auto_demote}
        critical_checks = [
            result.check_name
            for result in evaluation.check_results
            if not result.passed and result.severity == SEVERITY_CRITICAL and result.check_name in auto_demote_names
        ]
        reason = f"Automatic demotion due to critical risk: {', '.join(critical_checks)}"
        logger.error("AUTO-DEMOTING deployment %s: %s", deployment_id, reason)
        self._deployments.demote_deployment(
            deployment_id,
            reason,
            metadata={
                "riskEvaluation": evaluation.summary,
                "autoDemotion": True,
                "criticalChecks": critical_checks,
                "evaluatedAt": utc_iso(evaluation.evaluated_at),
            },
        )

    def evaluate_all_deployments(self) -> tuple[RiskEvaluation, ...]:
        deployments = self._deployments.get_active_deployments()
        logger.info("Evaluating risks for %d active deployments", len(deployments))

        evaluations: list[RiskEvaluation] = []
        for deployment in deployments:
            try:
                evaluations.append(self.evaluate_risks(deployment.deployment_id))
            except Exception as exc:
                logger.error("Failed to evaluate risks for deployment %s: %s", deployment.deployment_id, exc)

        at_risk = sum(1 for evaluation in evaluations if evaluation.has_critical_risk)
        demoted = sum(1 for evaluation in evaluations if evaluation.should_demote)
        logger.info(
            "Risk evaluation complete: %d deployments at risk, %d marked for demotion",
            at_risk,
            demoted,
        )
        return tuple(evaluations)

    def get_checks(self) -> tuple[RiskCheck, ...]:
        return self._checks

    def get_check(self, name: str) -> Optional[RiskCheck]:
        return next((check for check in self._checks if check.name == name), None)

    def get_critical_checks(self) -> tuple[RiskCheck, ...]:
        """Checks whose critical failures demote automatically."""
        return tuple(check for check in self._checks if check.auto_demote)
