"""Kelly-criterion capital allocation across live strategies.

Strategies with at least ``MIN_TRADES_FOR_KELLY`` resolved algorithmic trades are
sized with quarter-Kelly from their realized win rate and payoff ratio. Thinner
histories fall back to the latest strategy score mapped onto an even-money
Kelly equivalent. Fractions are then normalized into capital with a dynamic
per-strategy cap whose excess is redistributed across the uncapped pool.
"""

from __future__ import annotations

from dataclasses import dataclass
import logging
from typing import Sequence

from backend.db.enums import AuditEventType, CompositeRegimeType
from strategy_engine.audit import AuditService
from strategy_engine.regime.classifier import get_regime_multiplier
from strategy_engine.repository import EngineRepository, OrderOutcome, StrategyConfigRecord

logger = logging.getLogger(__name__)

MIN_ALLOCATION_PER_STRATEGY = 50.0
MAX_ALLOCATION_PERCENTAGE = 0.15
MIN_SCORE_THRESHOLD = 50.0
KELLY_MULTIPLIER = 0.25
MIN_TRADES_FOR_KELLY = 30


@dataclass(frozen=True)
class RegimeContext:
    composite_regime: CompositeRegimeType
    risk_level: int


@dataclass(frozen=True)
class CapitalAllocation:
    strategy_config_id: str
    allocated_capital: float
    percentage: float
    score: float


@dataclass(frozen=True)
class AllocationValidation:
    valid: bool
    reason: str | None = None


def max_allocation_per_strategy(capital: float, eligible_count: int) -> float:
    """Dynamic cap max(15%, 1/eligible) so few strategies do not leave capital idle."""
    return capital * max(MAX_ALLOCATION_PERCENTAGE, 1 / eligible_count)


def kelly_fraction(outcomes: Sequence[OrderOutcome]) -> float | None:
    """Quarter-Kelly fraction, or None when too few resolved trades exist."""
    resolved = [o.gain_loss for o in outcomes if o.gain_loss is not None and o.gain_loss != 0]
    if len(resolved) < MIN_TRADES_FOR_KELLY:
        return None

    wins = [value for value in resolved if value > 0]
    losses = [abs(value) for value in resolved if value < 0]
    if not losses:
        return KELLY_MULTIPLIER

    p = len(wins) / len(resolved)
    avg_win = sum(wins) / len(wins) if wins else 0.0
    avg_loss = sum(losses) / len(losses)
    b = avg_win / avg_loss
    if b <= 0:
        return 0.0
    f = (b * p - (1 - p)) / b
    return max(f * KELLY_MULTIPLIER, 0.0)


def score_kelly_equivalent(score: float) -> float:
    """Even-money Kelly equivalent of a 0..100 score; zero below the score threshold."""
    if score < MIN_SCORE_THRESHOLD:
        return 0.0
    return max((2 * score / 100 - 1) * KELLY_MULTIPLIER, 0.0)


def distribute_capped(fractions: dict[str, float], capital: float) -> dict[str, float]:
    """Proportional split of ``capital`` with iterative cap redistribution.

    Each round computes shares against one pool total; any share above the cap
    is locked at the cap and its capital leaves the pool immediately. The first
    round without a capped strategy distributes what remains and stops. Rounds
    are bounded by the number of fractions.
    """
    cap = max_allocation_per_strategy(capital, len(fractions))
    remaining = dict(fractions)
    locked: dict[str, float] = {}
    remaining_capital = capital

    for _ in range(len(fractions)):
        pool_total = sum(remaining.values())
        if pool_total == 0:
            break

        capped_this_round = False
        for strategy_id, fraction in list(remaining.items()):
            amount = (fraction / pool_total) * remaining_capital
            if amount > cap:
                locked[strategy_id] = cap
                remaining_capital -= cap
                del remaining[strategy_id]
                capped_this_round = True

        if not capped_this_round:
            for strategy_id, fraction in remaining.items():
                locked[strategy_id] = (fraction / pool_total) * remaining_capital
            break

    return locked


class CapitalAllocationService:
    """Sizes user capital across strategies; reads orders and scores in bulk."""

    def __init__(self, repository: EngineRepository, audit: AuditService) -> None:
        self._repository = repository
        self._audit = audit

    def _latest_scores(self, strategy_ids: Sequence[str]) -> dict[str, float]:
        scores: dict[str, float] = {}
        for record in self._repository.list_scores_latest_first(strategy_ids):
            scores.setdefault(record.strategy_config_id, record.overall_score)
        return scores

    def _audit_regime_allocation(
        self,
        regime_context: RegimeContext,
        *,
        multiplier: float,
        user_capital: float,
        effective_capital: float,
        strategies_allocated: int,
        total_allocated: float,
    ) -> None:
        self._audit.record(
            AuditEventType.REGIME_SCALED_ALLOCATION,
            "capital-allocation",
            "system",
            after_state={
                "compositeRegime": CompositeRegimeType(regime_context.composite_regime).value,
                "riskLevel": regime_context.risk_level,
                "regimeMultiplier": multiplier,
                "userCapital": user_capital,
                "effectiveCapital": effective_capital,
                "strategiesAllocated": strategies_allocated,
                "totalAllocated": total_allocated,
            },
        )

    def allocate_capital_by_kelly(
        self,
        user_capital: float,
        strategies: Sequence[StrategyConfigRecord],
        regime_context: RegimeContext | None = None,
    ) -> dict[str, float]:
        """Map strategy id to allocated capital; strategies left out get nothing."""
        if not strategies or user_capital <= 0:
            logger.warning("No strategies or capital provided for Kelly allocation")
            return {}

        multiplier = (
            get_regime_multiplier(regime_context.risk_level, regime_context.composite_regime)
            if regime_context is not None
            else 1.0
        )
        effective_capital = user_capital * multiplier

        if effective_capital <= 0:
            logger.warning(
                "Regime multiplier %s (%s) reduced capital to $0, skipping allocation",
                multiplier,
                None if regime_context is None else CompositeRegimeType(regime_context.composite_regime).value,
            )
            if regime_context is not None:
                self._audit_regime_allocation(
                    regime_context,
                    multiplier=multiplier,
                    user_capital=user_capital,
                    effective_capital=0,
                    strategies_allocated=0,
                    total_allocated=0,
                )
            return {}

        if regime_context is not None and multiplier != 1.0:
            logger.info(
                "Regime scaling: %s (risk %s) -> %sx multiplier, effective capital $%.2f (from $%.2f)",
                CompositeRegimeType(regime_context.composite_regime).value,
                regime_context.risk_level,
                multiplier,
                effective_capital,
                user_capital,
            )

        strategy_ids = [s.strategy_config_id for s in strategies]
        orders_by_strategy: dict[str, list[OrderOutcome]] = {}
        for order in self._repository.list_filled_algorithmic_orders(strategy_ids):
            orders_by_strategy.setdefault(order.strategy_config_id, []).append(order)

        fractions: dict[str, float] = {}
        fallback_ids: list[str] = []
        for strategy_id in strategy_ids:
            fraction = kelly_fraction(orders_by_strategy.get(strategy_id, ()))
            if fraction is None:
                logger.debug(
                    "Strategy %s has fewer than %d resolved trades, falling back to score-based",
                    strategy_id,
                    MIN_TRADES_FOR_KELLY,
                )
                fallback_ids.append(strategy_id)
                continue
            fractions[strategy_id] = fraction

        if fallback_ids:
            scores = self._latest_scores(fallback_ids)
            for strategy_id in fallback_ids:
                equivalent = score_kelly_equivalent(scores.get(strategy_id, 0.0))
                if equivalent > 0:
                    fractions[strategy_id] = equivalent

        if sum(fractions.values()) == 0:
            logger.warning("All strategies have zero Kelly fraction, cannot allocate")
            return {}

        allocation: dict[str, float] = {}
        for strategy_id, amount in distribute_capped(fractions, effective_capital).items():
            if amount < MIN_ALLOCATION_PER_STRATEGY:
                logger.debug("Strategy %s Kelly allocation $%.2f below minimum, excluding", strategy_id, amount)
                continue
            allocation[strategy_id] = amount

        total_allocated = sum(allocation.values())
        logger.info(
            "Kelly allocated $%.2f across %d strategies (%d eligible, %d score-fallback, %d total)",
            total_allocated,
            len(allocation),
            len(fractions),
            len(fallback_ids),
            len(strategies),
        )

        if regime_context is not None:
            self._audit_regime_allocation(
                regime_context,
                multiplier=multiplier,
                user_capital=user_capital,
                effective_capital=effective_capital,
                strategies_allocated=len(allocation),
                total_allocated=total_allocated,
            )
        return allocation

    def get_allocation_details(
        self,
        user_capital: float,
        strategies: Sequence[StrategyConfigRecord],
        regime_context: RegimeContext | None = None,
    ) -> list[CapitalAllocation]:
        """Allocation breakdown with percentages and scores, largest first."""
        allocation = self.allocate_capital_by_kelly(user_capital, strategies, regime_context)
        scores = self._latest_scores([s.strategy_config_id for s in strategies])
        details = [
            CapitalAllocation(
                strategy_config_id=strategy_id,
                allocated_capital=amount,
                percentage=(amount / user_capital) * 100,
                score=scores.get(strategy_id, 0.0),
            )
            for strategy_id, amount in allocation.items()
        ]
        return sorted(details, key=lambda item: item.allocated_capital, reverse=True)

    @staticmethod
    def calculate_minimum_capital_required(strategy_count: int) -> float:
        return strategy_count * MIN_ALLOCATION_PER_STRATEGY

    def validate_capital_allocation(
        self,
        user_capital: float,
        strategies: Sequence[StrategyConfigRecord],
    ) -> AllocationValidation:
        if user_capital <= 0:
            return AllocationValidation(valid=False, reason="Capital must be greater than 0")
        if not strategies:
            return AllocationValidation(valid=False, reason="No strategies available for allocation")

        min_required = self.calculate_minimum_capital_required(len(strategies))
        if user_capital < min_required:
            return AllocationValidation(
                valid=False,
                reason=(
                    f"Minimum capital required: ${min_required:g} "
                    f"({len(strategies)} strategies × ${MIN_ALLOCATION_PER_STRATEGY:g})"
                ),
            )
        return AllocationValidation(valid=True)
