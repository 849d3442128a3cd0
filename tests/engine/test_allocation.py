from __future__ import annotations

import pytest

from backend.db.enums import AuditEventType, CompositeRegimeType, StrategyStatus
from strategy_engine.allocation import (
    CapitalAllocationService,
    RegimeContext,
    distribute_capped,
    kelly_fraction,
    max_allocation_per_strategy,
    score_kelly_equivalent,
)
from strategy_engine.repository import OrderOutcome
from tests.engine.utils import FakeRepository, RecordingAudit, make_score, make_strategy


def _orders(strategy_id: str, wins: int, losses: int, *, win: float = 2.0, loss: float = -1.0) -> list[OrderOutcome]:
    return [OrderOutcome(strategy_id, win, 100.0) for _ in range(wins)] + [
        OrderOutcome(strategy_id, loss, 100.0) for _ in range(losses)
    ]


def _service(repo: FakeRepository, audit: RecordingAudit | None = None) -> CapitalAllocationService:
    return CapitalAllocationService(repo, audit or RecordingAudit())  # type: ignore[arg-type]


def _live(*ids: str) -> list:
    return [make_strategy(sid, status=StrategyStatus.LIVE) for sid in ids]


def test_kelly_fraction_from_trade_history() -> None:
    assert kelly_fraction(_orders("s1", 20, 10)) == pytest.approx(0.125)
    assert kelly_fraction(_orders("s1", 30, 0)) == pytest.approx(0.25)
    assert kelly_fraction(_orders("s1", 10, 20)) == 0.0
    # Break-even and unresolved fills do not count toward the minimum.
    thin = _orders("s1", 20, 9) + [OrderOutcome("s1", 0.0, 1.0), OrderOutcome("s1", None, 1.0)]
    assert kelly_fraction(thin) is None


def test_score_equivalent_and_cap() -> None:
    assert score_kelly_equivalent(49.9) == 0.0
    assert score_kelly_equivalent(50.0) == 0.0
    assert score_kelly_equivalent(80.0) == pytest.approx(0.15)
    assert max_allocation_per_strategy(1000.0, 10) == pytest.approx(150.0)
    assert max_allocation_per_strategy(1000.0, 2) == pytest.approx(500.0)


def test_distribute_capped_redistributes_excess() -> None:
    fractions = {"a": 0.9, **{f"s{idx}": 0.01 for idx in range(9)}}
    amounts = distribute_capped(fractions, 1000.0)
    assert amounts["a"] == pytest.approx(150.0)
    for idx in range(9):
        assert amounts[f"s{idx}"] == pytest.approx(850.0 / 9)
    assert sum(amounts.values()) == pytest.approx(1000.0)
    assert distribute_capped({"a": 0.0}, 1000.0) == {}


def test_single_strategy_receives_full_capital() -> None:
    repo = FakeRepository()
    repo.scores["s1"] = [make_score("s1", overall_score=85.0)]
    assert _service(repo).allocate_capital_by_kelly(1000.0, _live("s1")) == {"s1": pytest.approx(1000.0)}


def test_kelly_and_score_fallback_mix() -> None:
    repo = FakeRepository()
    repo.orders = _orders("s1", 20, 10)
    repo.scores["s2"] = [make_score("s2", overall_score=40.0)]
    repo.scores["s3"] = [make_score("s3", overall_score=80.0)]

    allocation = _service(repo).allocate_capital_by_kelly(1000.0, _live("s1", "s2", "s3"))
    assert set(allocation) == {"s1", "s3"}
    # s3 overflows the 50% cap and its excess flows back to s1.
    assert allocation["s1"] == pytest.approx(500.0)
    assert allocation["s3"] == pytest.approx(500.0)


def test_small_allocations_are_excluded() -> None:
    repo = FakeRepository()
    ids = [f"s{idx}" for idx in range(10)]
    for sid in ids[:9]:
        repo.scores[sid] = [make_score(sid, overall_score=90.0)]
    repo.scores["s9"] = [make_score("s9", overall_score=52.0)]

    allocation = _service(repo).allocate_capital_by_kelly(1000.0, _live(*ids))
    assert "s9" not in allocation
    assert len(allocation) == 9
    assert all(amount >= 50.0 for amount in allocation.values())


def test_empty_inputs_and_zero_fractions_allocate_nothing() -> None:
    repo = FakeRepository()
    service = _service(repo)
    assert service.allocate_capital_by_kelly(1000.0, []) == {}
    assert service.allocate_capital_by_kelly(0.0, _live("s1")) == {}
    repo.scores["s1"] = [make_score("s1", overall_score=30.0)]
    assert service.allocate_capital_by_kelly(1000.0, _live("s1")) == {}


def test_extreme_regime_allocates_nothing_and_audits() -> None:
    repo = FakeRepository()
    repo.scores["s1"] = [make_score("s1")]
    audit = RecordingAudit()
    context = RegimeContext(CompositeRegimeType.EXTREME, 3)

    assert _service(repo, audit).allocate_capital_by_kelly(1000.0, _live("s1"), context) == {}
    (event,) = audit.of_type(AuditEventType.REGIME_SCALED_ALLOCATION)
    assert event["entity_type"] == "capital-allocation"
    assert event["entity_id"] == "system"
    assert event["after_state"]["effectiveCapital"] == 0
    assert event["after_state"]["strategiesAllocated"] == 0
    assert event["after_state"]["compositeRegime"] == "extreme"


def test_regime_multiplier_scales_capital() -> None:
    repo = FakeRepository()
    repo.scores["s1"] = [make_score("s1")]
    audit = RecordingAudit()
    context = RegimeContext(CompositeRegimeType.NEUTRAL, 3)

    allocation = _service(repo, audit).allocate_capital_by_kelly(2000.0, _live("s1"), context)
    assert allocation == {"s1": pytest.approx(1000.0)}
    (event,) = audit.of_type(AuditEventType.REGIME_SCALED_ALLOCATION)
    assert event["after_state"]["regimeMultiplier"] == pytest.approx(0.5)
    assert event["after_state"]["userCapital"] == 2000.0
    assert event["after_state"]["totalAllocated"] == pytest.approx(1000.0)

    # Without a regime context nothing is audited.
    quiet = RecordingAudit()
    _service(repo, quiet).allocate_capital_by_kelly(2000.0, _live("s1"))
    assert quiet.events == []


def test_allocation_details_sorted_with_percentages() -> None:
    repo = FakeRepository()
    ids = [f"s{idx}" for idx in range(10)]
    for idx, sid in enumerate(ids):
        repo.scores[sid] = [make_score(sid, overall_score=80.0 + idx)]

    details = _service(repo).get_allocation_details(1000.0, _live(*ids))
    assert [d.strategy_config_id for d in details] == list(reversed(ids))
    assert details[0].score == 89.0
    assert details[0].percentage == pytest.approx(details[0].allocated_capital / 10.0)
    assert sum(d.percentage for d in details) == pytest.approx(100.0)


def test_validate_capital_allocation() -> None:
    service = _service(FakeRepository())
    assert service.validate_capital_allocation(0.0, _live("s1")).reason == "Capital must be greater than 0"
    assert service.validate_capital_allocation(100.0, []).reason == "No strategies available for allocation"
    low = service.validate_capital_allocation(100.0, _live("a", "b", "c"))
    assert low.valid is False
    assert low.reason == "Minimum capital required: $150 (3 strategies × $50)"
    assert service.validate_capital_allocation(150.0, _live("a", "b", "c")).valid is True
    assert CapitalAllocationService.calculate_minimum_capital_required(4) == 200.0
