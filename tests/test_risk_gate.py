from datetime import datetime, timezone

import pytest

from core.exceptions import RiskGateDenied
from models.alert import AlertSignal
from models.bot import BotConfig
from models.trade import Trade
from modules.risk_gate import (
    DAILY_LOSS_LIMIT_EXCEEDED,
    POSITION_SIZE_EXCEEDED,
    RiskGate,
    start_of_utc_day,
)

NOW = datetime(2024, 3, 1, 15, 30, tzinfo=timezone.utc)


@pytest.fixture
def gate(store, audit):
    return RiskGate(store, audit)


def _book(store, trade_id, pnl, created_at):
    store.create_trade(
        Trade(
            id=trade_id, bot_id="bot-1", user_id="user-1", symbol=f"SYM{trade_id}", side="Buy",
            order_type="Market", quantity=1, price=10, order_id=trade_id, status="Filled",
            state="closed", realized_pnl=pnl, created_at=created_at,
        )
    )


def test_start_of_utc_day():
    assert start_of_utc_day(NOW) == datetime(2024, 3, 1, tzinfo=timezone.utc)


def test_no_limits_allows(gate):
    bot = BotConfig(id="bot-1", user_id="user-1", symbol="BTCUSDT")
    assert gate.check(bot, AlertSignal(), now=NOW).allowed


def test_daily_loss_over_limit_is_denied(gate, store):
    bot = BotConfig(id="bot-1", user_id="user-1", symbol="BTCUSDT", daily_loss_limit=100)
    _book(store, "a", -150, "2024-03-01T09:00:00+00:00")
    _book(store, "b", 30, "2024-03-01T10:00:00+00:00")

    with pytest.raises(RiskGateDenied) as info:
        gate.check(bot, AlertSignal(), now=NOW)

    assert info.value.reason == DAILY_LOSS_LIMIT_EXCEEDED
    assert info.value.details == {"daily_loss": 120, "limit": 100}


def test_yesterdays_losses_do_not_count(gate, store):
    bot = BotConfig(id="bot-1", user_id="user-1", symbol="BTCUSDT", daily_loss_limit=100)
    _book(store, "a", -500, "2024-02-29T23:59:00+00:00")
    _book(store, "b", -40, "2024-03-01T01:00:00+00:00")

    decision = gate.check(bot, AlertSignal(), now=NOW)

    assert decision.allowed
    assert decision.daily_pnl == pytest.approx(-40)


def test_position_notional_over_cap_is_denied(gate):
    bot = BotConfig(id="bot-1", user_id="user-1", symbol="BTCUSDT", max_position_size=1000, default_quantity=0.1)

    with pytest.raises(RiskGateDenied) as info:
        gate.check(bot, AlertSignal(price=50000), now=NOW)
    assert info.value.reason == POSITION_SIZE_EXCEEDED


def test_position_cap_left_to_sizer_when_sizing_enabled(gate):
    bot = BotConfig(
        id="bot-1", user_id="user-1", symbol="BTCUSDT", max_position_size=1000,
        default_quantity=0.1, position_sizing_enabled=True,
    )
    assert gate.check(bot, AlertSignal(price=50000), now=NOW).allowed


def test_denial_is_audited(gate, store):
    bot = BotConfig(id="bot-1", user_id="user-1", symbol="BTCUSDT", max_position_size=10, default_quantity=1)

    with pytest.raises(RiskGateDenied):
        gate.check(bot, AlertSignal(price=50), now=NOW)

    logs = store.list_logs("bot-1")
    assert logs[-1]["level"] == "warning"
    assert POSITION_SIZE_EXCEEDED in logs[-1]["message"]
