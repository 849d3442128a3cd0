"""Regime gate blocking new long entries in bearish composite regimes.

Exits are never blocked: SELL signals and protective orders (stop-loss and
take-profit) always pass so risk can be reduced in any regime.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
import logging
from typing import Any, Mapping, Sequence, TypeVar

from backend.db.enums import CompositeRegimeType, MarketRegimeType
from strategy_engine.common import EngineClock
from strategy_engine.regime.classifier import classify_composite_regime

logger = logging.getLogger(__name__)

BLOCKED_BUY_REGIMES: frozenset[CompositeRegimeType] = frozenset(
    {CompositeRegimeType.BEAR, CompositeRegimeType.EXTREME}
)
PROTECTIVE_SIGNAL_TYPES: frozenset[str] = frozenset({"STOP_LOSS", "TAKE_PROFIT"})

SignalT = TypeVar("SignalT", bound=Mapping[str, Any])


@dataclass(frozen=True)
class RegimeGateDecision:
    allowed: bool
    signal_action: str
    composite_regime: CompositeRegimeType
    volatility_regime: MarketRegimeType
    trend_above_sma: bool
    reason: str
    timestamp: datetime


def is_buy_blocked(composite_regime: CompositeRegimeType) -> bool:
    return CompositeRegimeType(composite_regime) in BLOCKED_BUY_REGIMES


class RegimeGateService:
    def __init__(self, clock: EngineClock | None = None) -> None:
        self._clock = clock or EngineClock()

    def filter_live_signal(
        self,
        action: str,
        composite_regime: CompositeRegimeType,
        override_active: bool,
        volatility_regime: MarketRegimeType,
        trend_above_sma: bool,
    ) -> RegimeGateDecision:
        regime = CompositeRegimeType(composite_regime)
        is_buy = action.strip().upper() == "BUY"

        if override_active:
            allowed, reason = True, f"Regime gate override active, {action} allowed in {regime.value} regime"
        elif is_buy and is_buy_blocked(regime):
            allowed, reason = False, f"BUY blocked: composite regime is {regime.value}"
        else:
            allowed, reason = True, f"{action.upper()} allowed in {regime.value} regime"

        if not allowed:
            logger.info("Regime gate: %s", reason)
        return RegimeGateDecision(
            allowed=allowed,
            signal_action=action,
            composite_regime=regime,
            volatility_regime=volatility_regime,
            trend_above_sma=trend_above_sma,
            reason=reason,
            timestamp=self._clock.now_utc(),
        )

    @staticmethod
    def filter_backtest_signals(signals: Sequence[SignalT], composite_regime: CompositeRegimeType) -> list[SignalT]:
        """Return a new list without BUY entries in blocked regimes; input is untouched."""
        if not is_buy_blocked(composite_regime):
            return list(signals)
        kept: list[SignalT] = []
        for signal in signals:
            if str(signal.get("originalType") or "").upper() in PROTECTIVE_SIGNAL_TYPES:
                kept.append(signal)
            elif str(signal.get("action") or "").upper() != "BUY":
                kept.append(signal)
        return kept

    @staticmethod
    def classify_composite(volatility_regime: MarketRegimeType, trend_above_sma: bool) -> CompositeRegimeType:
        return classify_composite_regime(volatility_regime, trend_above_sma)
