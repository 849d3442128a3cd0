"""Process-wide composite regime: BTC volatility regime plus the 200-day trend filter.

The latest classification is held as one immutable snapshot that ``refresh``
replaces wholesale, so readers on the hot path never see a half-written
state. The manual override survives restarts through the TTL cache.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
import logging
from typing import Any, Optional

from backend.db.enums import AuditEventType, CompositeRegimeType, MarketRegimeType
from strategy_engine import metrics
from strategy_engine.audit import AuditService
from strategy_engine.cache import TTLCache
from strategy_engine.common import EngineClock, parse_utc, utc_iso
from strategy_engine.regime.classifier import classify_composite_regime
from strategy_engine.repository import EngineRepository

logger = logging.getLogger(__name__)

SMA_PERIOD = 200
PRICE_HISTORY_DAYS = 365
OVERRIDE_CACHE_KEY = "regime:override"
OVERRIDE_TTL_MS = 24 * 60 * 60 * 1000
VOLATILITY_REFERENCE_ASSET = "BTC"


@dataclass(frozen=True)
class CompositeSnapshot:
    regime: CompositeRegimeType
    volatility_regime: MarketRegimeType
    trend_above_sma: bool
    btc_price: float
    sma200_value: float
    updated_at: datetime


@dataclass(frozen=True)
class OverrideState:
    force_allow: bool
    user_id: str
    reason: str
    enabled_at: datetime

    def to_cache(self) -> dict[str, Any]:
        return {
            "active": True,
            "forceAllow": self.force_allow,
            "userId": self.user_id,
            "reason": self.reason,
            "enabledAt": utc_iso(self.enabled_at),
        }

    @classmethod
    def from_cache(cls, payload: Any) -> Optional["OverrideState"]:
        if not isinstance(payload, dict) or not payload.get("active"):
            return None
        return cls(
            force_allow=bool(payload.get("forceAllow")),
            user_id=str(payload.get("userId") or ""),
            reason=str(payload.get("reason") or ""),
            enabled_at=parse_utc(payload.get("enabledAt")) or datetime.min.replace(tzinfo=timezone.utc),
        )


class CompositeRegimeService:
    def __init__(
        self,
        repository: EngineRepository,
        audit: AuditService,
        cache: TTLCache,
        *,
        trend_symbol: str = "BTC",
        clock: EngineClock | None = None,
    ) -> None:
        self._repository = repository
        self._audit = audit
        self._cache = cache
        self._trend_symbol = trend_symbol
        self._clock = clock or EngineClock()
        self._snapshot: Optional[CompositeSnapshot] = None
        self._override: Optional[OverrideState] = None

    def on_init(self) -> None:
        """Restore a persisted override, then attempt a first refresh."""
        try:
            saved = OverrideState.from_cache(self._cache.get(OVERRIDE_CACHE_KEY))
            if saved is not None:
                self._override = saved
                logger.info("Restored regime override from cache (user=%s)", saved.user_id)
        except Exception as exc:
            logger.warning("Failed to restore override from cache: %s", exc)

        try:
            self.refresh()
        except Exception as exc:
            logger.warning("Initial composite regime refresh failed, will retry on next cycle: %s", exc)

    def get_composite_regime(self) -> CompositeRegimeType:
        snapshot = self._snapshot
        return CompositeRegimeType.NEUTRAL if snapshot is None else snapshot.regime

    def get_volatility_regime(self) -> MarketRegimeType:
        snapshot = self._snapshot
        return MarketRegimeType.NORMAL if snapshot is None else snapshot.volatility_regime

    def get_trend_above_sma(self) -> bool:
        snapshot = self._snapshot
        return True if snapshot is None else snapshot.trend_above_sma

    def is_override_active(self) -> bool:
        return self._override is not None

    def refresh(self) -> CompositeRegimeType:
        """Recompute the composite regime; keeps the previous value on thin price history."""
        now = self._clock.now_utc()
        try:
            closes = self._repository.get_daily_closes(
                self._trend_symbol, (now - timedelta(days=PRICE_HISTORY_DAYS)).date()
            )
            if len(closes) < SMA_PERIOD:
                logger.warning(
                    "Only %d %s price points available (need %d), keeping previous regime",
                    len(closes),
                    self._trend_symbol,
                    SMA_PERIOD,
                )
                return self.get_composite_regime()

            sma200 = metrics.mean(closes[-SMA_PERIOD:])
            price = closes[-1]
            trend_above_sma = price > sma200

            current = self._repository.get_current_regime(VOLATILITY_REFERENCE_ASSET)
            volatility_regime = MarketRegimeType.NORMAL if current is None else current.regime
        except Exception as exc:
            logger.error("Failed to refresh composite regime: %s", exc)
            raise

        composite = self.classify(volatility_regime, trend_above_sma)
        previous = self._snapshot
        self._snapshot = CompositeSnapshot(
            regime=composite,
            volatility_regime=volatility_regime,
            trend_above_sma=trend_above_sma,
            btc_price=price,
            sma200_value=sma200,
            updated_at=now,
        )

        if previous is not None and previous.regime != composite:
            logger.warning("Composite regime changed: %s -> %s", previous.regime.value, composite.value)
        else:
            logger.info(
                "Composite regime: %s (%s $%.0f vs SMA200 $%.0f, vol=%s)",
                composite.value,
                self._trend_symbol,
                price,
                sma200,
                volatility_regime.value,
            )
        return composite

    @staticmethod
    def classify(volatility_regime: MarketRegimeType, trend_above_sma: bool) -> CompositeRegimeType:
        return classify_composite_regime(volatility_regime, trend_above_sma)

    def enable_override(self, user_id: str, force_allow: bool, reason: str) -> None:
        override = OverrideState(
            force_allow=force_allow,
            user_id=user_id,
            reason=reason,
            enabled_at=self._clock.now_utc(),
        )
        self._override = override
        self._cache.set(OVERRIDE_CACHE_KEY, override.to_cache(), OVERRIDE_TTL_MS)

        self._audit.record(
            AuditEventType.MANUAL_INTERVENTION,
            "CompositeRegime",
            "override",
            user_id=user_id,
            after_state={"forceAllow": force_allow, "reason": reason},
            metadata={"action": "enable_regime_override"},
        )
        logger.warning(
            "Regime gate override ENABLED by %s: forceAllow=%s, reason=%r", user_id, force_allow, reason
        )

    def disable_override(self, user_id: str, reason: str) -> None:
        previous = self._override
        self._override = None
        self._cache.delete(OVERRIDE_CACHE_KEY)

        self._audit.record(
            AuditEventType.MANUAL_INTERVENTION,
            "CompositeRegime",
            "override",
            user_id=user_id,
            before_state=None if previous is None else {"forceAllow": previous.force_allow, "reason": previous.reason},
            after_state={"active": False, "reason": reason},
            metadata={"action": "disable_regime_override"},
        )
        logger.warning("Regime gate override DISABLED by %s: reason=%r", user_id, reason)

    def get_status(self) -> dict[str, Any]:
        snapshot = self._snapshot
        override = self._override
        return {
            "compositeRegime": self.get_composite_regime().value,
            "volatilityRegime": None if snapshot is None else snapshot.volatility_regime.value,
            "trendAboveSma": None if snapshot is None else snapshot.trend_above_sma,
            "btcPrice": None if snapshot is None else snapshot.btc_price,
            "sma200Value": None if snapshot is None else snapshot.sma200_value,
            "updatedAt": None if snapshot is None else utc_iso(snapshot.updated_at),
            "override": {"active": False} if override is None else override.to_cache(),
        }
