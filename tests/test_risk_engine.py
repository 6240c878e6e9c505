"""Reglas de salida: stop loss, take profits y stop escalonado."""

import pytest
from hypothesis import given, settings
from hypothesis import strategies as st

from config import TakeProfitConfig
from models import Position, PositionStatus
from risk_engine import STOP_LOSS_REASON, RiskEngine, SellSignal, take_profit_reason


def _risk() -> RiskEngine:
    return RiskEngine(
        stop_loss_percent=50.0,
        take_profits=[
            TakeProfitConfig(percentage=300.0, sell_percentage=25.0),
            TakeProfitConfig(percentage=100.0, sell_percentage=50.0),
            TakeProfitConfig(percentage=900.0, sell_percentage=100.0),
        ],
        ratchet_multipliers=(1.0, 2.0, 5.0),
    )


def _position(risk: RiskEngine, entry: float = 1e-6, price: float = 1e-6) -> Position:
    return Position(
        id="p1",
        token_address="mint",
        symbol="TOK",
        entry_price=entry,
        quantity=1_000.0,
        remaining_quantity=1_000.0,
        invested_amount=entry * 1_000.0,
        stop_loss_price=risk.initial_stop_loss(entry),
        take_profit_levels=risk.build_take_profit_levels(entry),
        current_price=price,
    )


class TestLevels:
    def test_levels_are_sorted_by_target(self):
        risk = _risk()
        levels = risk.build_take_profit_levels(1.0)
        assert [lvl.target_price for lvl in levels] == [2.0, 4.0, 10.0]
        assert [lvl.sell_percentage for lvl in levels] == [50.0, 25.0, 100.0]

    def test_initial_stop(self):
        assert _risk().initial_stop_loss(2.0) == pytest.approx(1.0)


class TestEvaluate:
    def test_nothing_between_stop_and_first_target(self):
        risk = _risk()
        assert risk.evaluate(_position(risk, price=1.5e-6)) is None

    def test_stop_loss(self):
        risk = _risk()
        signal = risk.evaluate(_position(risk, price=5e-7))
        assert signal.reason == STOP_LOSS_REASON
        assert signal.percentage == 100.0
        assert not signal.is_take_profit

    def test_only_first_untriggered_level_fires(self):
        risk = _risk()
        pos = _position(risk, price=5e-6)

        signal = risk.evaluate(pos)

        assert signal.level_index == 0
        assert signal.reason == take_profit_reason(0) == "take profit 1"
        assert pos.take_profit_levels[0].triggered
        assert pos.take_profit_levels[0].triggered_price == 5e-6
        assert not pos.take_profit_levels[1].triggered

        again = risk.evaluate(pos)
        assert again.level_index == 1

    def test_skips_inactive_and_unpriced(self):
        risk = _risk()
        pending = _position(risk, price=5e-7)
        pending.status = PositionStatus.PENDING_SELL
        assert risk.evaluate(pending) is None
        assert risk.evaluate(_position(risk, price=0.0)) is None


class TestSellResult:
    def test_rejected_take_profit_is_rearmed(self):
        risk = _risk()
        pos = _position(risk, price=2.5e-6)
        signal = risk.evaluate(pos)

        risk.on_sell_result(pos, signal, accepted=False)

        level = pos.take_profit_levels[0]
        assert not level.triggered
        assert level.triggered_at is None
        assert pos.stop_loss_price == pytest.approx(5e-7)

    def test_accepted_take_profit_ratchets_stop(self):
        risk = _risk()
        pos = _position(risk, price=2.5e-6)
        signal = risk.evaluate(pos)

        risk.on_sell_result(pos, signal, accepted=True)

        assert pos.stop_loss_price == pytest.approx(1e-6)

    def test_stop_loss_result_changes_nothing(self):
        risk = _risk()
        pos = _position(risk)
        risk.on_sell_result(pos, SellSignal(100.0, STOP_LOSS_REASON), accepted=False)
        assert pos.stop_loss_price == pytest.approx(5e-7)

    def test_level_without_multiplier_keeps_stop(self):
        risk = RiskEngine(50.0, [TakeProfitConfig(100.0, 50.0)], ratchet_multipliers=())
        pos = _position(risk)
        assert risk.ratchet_stop(pos, 0) == pytest.approx(5e-7)

    @settings(max_examples=50, deadline=None)
    @given(order=st.lists(st.integers(min_value=0, max_value=2), min_size=1, max_size=8))
    def test_stop_never_moves_down(self, order):
        risk = _risk()
        pos = _position(risk)
        previous = pos.stop_loss_price
        for idx in order:
            current = risk.ratchet_stop(pos, idx)
            assert current >= previous
            previous = current
