"""Orchestrates the promotion gates for one strategy and audits the verdict."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import timedelta
import logging
from typing import Optional

from backend.db.enums import AuditEventType, DeploymentStatus
from strategy_engine.audit import AuditService
from strategy_engine.common import EngineClock
from strategy_engine.promotion.gates import (
    SEVERITY_CRITICAL,
    SEVERITY_WARNING,
    PromotionGate,
    PromotionGateContext,
    PromotionGateResult,
    default_gates,
)
from strategy_engine.repository import EngineRepository

logger = logging.getLogger(__name__)

REGIME_REFERENCE_ASSET = "BTC"
CORRELATION_LOOKBACK_DAYS = 90


class PromotionError(RuntimeError):
    """Raised when a strategy cannot be evaluated for promotion."""


@dataclass(frozen=True)
class PromotionGateEvaluation:
    can_promote: bool
    gate_results: tuple[PromotionGateResult, ...]
    total_gates: int
    gates_passed: int
    gates_failed: int
    failed_gates: tuple[str, ...]
    summary: str
    warnings: tuple[str, ...]

    def as_dict(self) -> dict[str, object]:
        return {
            "canPromote": self.can_promote,
            "gateResults": [result.as_dict() for result in self.gate_results],
            "totalGates": self.total_gates,
            "gatesPassed": self.gates_passed,
            "gatesFailed": self.gates_failed,
            "failedGates": list(self.failed_gates),
            "summary": self.summary,
            "warnings": list(self.warnings),
        }


def summarize_gate_results(results: tuple[PromotionGateResult, ...]) -> PromotionGateEvaluation:
    """Promotion is blocked only by failed gates of critical severity."""
    total = len(results)
    passed = sum(1 for result in results if result.passed)
    failed = total - passed
    failed_gates = tuple(result.gate_name for result in results if not result.passed)
    critical_failures = [r for r in results if not r.passed and r.severity == SEVERITY_CRITICAL]
    warnings = tuple(r.message for r in results if not r.passed and r.severity == SEVERITY_WARNING)
    can_promote = not critical_failures

    if can_promote and failed == 0:
        summary = f"All {total} gates passed. Strategy approved for promotion."
    elif can_promote and warnings:
        summary = f"{passed}/{total} gates passed with {len(warnings)} warnings. Strategy approved with caution."
    else:
        summary = f"{len(critical_failures)} critical gates failed. Strategy rejected for promotion."

    return PromotionGateEvaluation(
        can_promote=can_promote,
        gate_results=results,
        total_gates=total,
        gates_passed=passed,
        gates_failed=failed,
        failed_gates=failed_gates,
        summary=summary,
        warnings=warnings,
    )


class PromotionGateService:
    """Runs every registered gate in priority order; one gate failing never aborts the rest."""

    def __init__(
        self,
        repository: EngineRepository,
        audit: AuditService,
        *,
        gates: Optional[tuple[PromotionGate, ...]] = None,
        clock: EngineClock | None = None,
    ) -> None:
        self._repository = repository
        self._audit = audit
        self._clock = clock or EngineClock()
        self._gates = tuple(sorted(gates, key=lambda gate: gate.priority)) if gates is not None else default_gates()

    def _build_context(self) -> PromotionGateContext:
        deployments = self._repository.list_deployments_by_status(DeploymentStatus.ACTIVE)
        total_allocation = sum(d.allocation_percent for d in deployments)

        current_regime = None
        try:
            regime = self._repository.get_current_regime(REGIME_REFERENCE_ASSET)
            current_regime = None if regime is None else regime.regime
        except Exception as exc:
            logger.warning("Failed to fetch market regime: %s", exc)

        returns: dict[str, list[float]] = {}
        if deployments:
            start_date = (self._clock.now_utc() - timedelta(days=CORRELATION_LOOKBACK_DAYS)).date()
            rows = self._repository.list_daily_returns([d.deployment_id for d in deployments], start_date)
            for row in rows:
                returns.setdefault(row["deployment_id"], []).append(row["daily_return"])

        return PromotionGateContext(
            existing_deployments=deployments,
            total_allocation=total_allocation,
            current_market_regime=current_regime,
            deployment_returns=returns,
        )

    def evaluate_gates(self, strategy_config_id: str, user_id: str | None = None) -> PromotionGateEvaluation:
        logger.info("Evaluating promotion gates for strategy %s", strategy_config_id)

        strategy_config = self._repository.get_strategy_config(strategy_config_id)
        if strategy_config is None:
            raise PromotionError(f"Strategy config {strategy_config_id} not found")
        score = self._repository.get_latest_score(strategy_config_id)
        backtest = self._repository.get_latest_backtest(strategy_config_id)
        if score is None or backtest is None:
            raise PromotionError("Strategy must have backtest results and score before promotion")
        context = self._build_context()

        results: list[PromotionGateResult] = []
        for gate in self._gates:
            try:
                result = gate.evaluate(strategy_config, score, backtest, context)
                logger.debug("Gate %s: %s - %s", gate.name, "PASS" if result.passed else "FAIL", result.message)
            except Exception as exc:
                logger.error("Error evaluating gate %s: %s", gate.name, exc)
                result = PromotionGateResult(
                    gate_name=gate.name,
                    passed=False,
                    actual_value="ERROR",
                    required_value="N/A",
                    message=f"Gate evaluation failed: {exc}",
                    severity=SEVERITY_CRITICAL,
                )
            results.append(result)

        evaluation = summarize_gate_results(tuple(results))
        self._audit.record(
            AuditEventType.GATE_EVALUATION,
            "StrategyConfig",
            strategy_config_id,
            user_id=user_id or "system",
            after_state={
                "canPromote": evaluation.can_promote,
                "gatesPassed": evaluation.gates_passed,
                "gatesFailed": evaluation.gates_failed,
                "failedGates": list(evaluation.failed_gates),
            },
            metadata={
                "gateResults": [result.as_dict() for result in evaluation.gate_results],
                "score": score.overall_score,
                "grade": score.grade,
            },
        )
        logger.info(
            "Gate evaluation for %s: %s (%d/%d passed)",
            strategy_config_id,
            "APPROVED" if evaluation.can_promote else "REJECTED",
            evaluation.gates_passed,
            evaluation.total_gates,
        )
        return evaluation

    def get_gates(self) -> tuple[PromotionGate, ...]:
        return self._gates

    def get_gate(self, name: str) -> Optional[PromotionGate]:
        return next((gate for gate in self._gates if gate.name == name), None)

    def get_critical_gates(self) -> tuple[PromotionGate, ...]:
        return tuple(gate for gate in self._gates if gate.is_critical)

    def get_warning_gates(self) -> tuple[PromotionGate, ...]:
        return tuple(gate for gate in self._gates if not gate.is_critical)
