from unittest.mock import MagicMock

import pytest

from core.exceptions import ExchangeApiError
from models.bot import BotConfig
from models.trade import STATE_CLOSED, Trade
from modules.reconciliation import (
    FAILED,
    NOT_FOUND,
    SIMULATED,
    SKIPPED,
    UPDATED,
    ReconciliationWorker,
)

# ------------------------- Fixtures ------------------------- #

EXCHANGE_RECORD = {
    "orderId": "close-1",
    "closedPnl": "43.1",
    "avgEntryPrice": "50000",
    "avgExitPrice": "50480",
    "openFee": "2.75",
    "closeFee": "2.77",
}


@pytest.fixture
def exchange():
    return MagicMock()


@pytest.fixture
def factory_calls():
    return []


@pytest.fixture
def worker(store, audit, settings, exchange, factory_calls):
    def client_factory(credential, testnet):
        factory_calls.append((credential, testnet))
        return exchange

    return ReconciliationWorker(
        store,
        client_factory,
        lambda bot: "credential",
        audit=audit,
        settings=settings,
    )


def _closed_trade(store, bot_id, **overrides):
    data = dict(
        id="t-1", bot_id=bot_id, user_id="user-1", symbol="BTCUSDT", side="Buy",
        order_type="Market", quantity=0.1, price=50000, order_id="open-1",
        close_order_id="close-1", status="Filled", state=STATE_CLOSED,
        realized_pnl=44.95, pnl_source="estimated", fees=5.05, exit_price=50500,
        created_at="2024-03-01T10:00:00+00:00", closed_at="2024-03-01T11:00:00+00:00",
    )
    data.update(overrides)
    return store.create_trade(Trade(**data))


@pytest.fixture
def live_bot_with_pnl(store):
    bot = BotConfig(id="bot-1", user_id="user-1", symbol="BTCUSDT", profit_loss=44.95)
    store.upsert_bot(bot)
    return bot

# ------------------------- Tests ------------------------- #

def test_exchange_record_replaces_estimate(worker, store, exchange, live_bot_with_pnl):
    _closed_trade(store, live_bot_with_pnl.id)
    exchange.get_closed_pnl.return_value = [{"orderId": "someone-else", "closedPnl": "1"}, EXCHANGE_RECORD]

    outcome = worker.reconcile("t-1")

    assert outcome.status == UPDATED
    trade = store.get_trade("t-1")
    assert trade.realized_pnl == pytest.approx(43.1)
    assert trade.pnl_source == "exchange"
    assert trade.avg_exit_price == pytest.approx(50480)
    assert trade.fees == pytest.approx(5.52)
    assert trade.details["closed_pnl"]["orderId"] == "close-1"
    assert trade.trade_metrics["net_pnl"] == pytest.approx(43.1)
    # bot total moves by the difference only
    assert store.get_bot("bot-1").profit_loss == pytest.approx(43.1)


def test_reconcile_is_idempotent(worker, store, exchange, live_bot_with_pnl):
    _closed_trade(store, live_bot_with_pnl.id)
    exchange.get_closed_pnl.return_value = [EXCHANGE_RECORD]

    worker.reconcile("t-1")
    second = worker.reconcile("t-1")

    assert second.status == SKIPPED
    assert exchange.get_closed_pnl.call_count == 1
    assert store.get_bot("bot-1").profit_loss == pytest.approx(43.1)


def test_falls_back_to_open_order_id(worker, store, exchange, live_bot_with_pnl):
    _closed_trade(store, live_bot_with_pnl.id, close_order_id=None)
    exchange.get_closed_pnl.return_value = [{**EXCHANGE_RECORD, "orderId": "open-1"}]

    assert worker.reconcile("t-1").status == UPDATED


def test_no_matching_record(worker, store, exchange, live_bot_with_pnl):
    _closed_trade(store, live_bot_with_pnl.id)
    exchange.get_closed_pnl.return_value = []

    outcome = worker.reconcile("t-1")

    assert outcome.status == NOT_FOUND
    trade = store.get_trade("t-1")
    assert trade.realized_pnl == pytest.approx(44.95)
    assert trade.pnl_source == "estimated"


def test_open_trade_is_skipped(worker, store, exchange, live_bot_with_pnl):
    _closed_trade(store, live_bot_with_pnl.id, state="open")

    assert worker.reconcile("t-1").status == SKIPPED
    exchange.get_closed_pnl.assert_not_called()


def test_test_mode_recomputes_locally(worker, store, exchange, factory_calls):
    store.upsert_bot(BotConfig(id="bot-t", user_id="user-1", symbol="BTCUSDT", test_mode=True, profit_loss=10))
    _closed_trade(store, "bot-t", realized_pnl=10, pnl_source="simulated")

    outcome = worker.reconcile("t-1")

    assert outcome.status == SIMULATED
    assert outcome.realized_pnl == pytest.approx(44.95)
    assert factory_calls == []
    assert store.get_bot("bot-t").profit_loss == pytest.approx(44.95)


def test_test_mode_keeps_pnl_supplied_by_alert(worker, store, exchange, factory_calls):
    store.upsert_bot(BotConfig(id="bot-t", user_id="user-1", symbol="BTCUSDT", test_mode=True, profit_loss=12.5))
    _closed_trade(store, "bot-t", realized_pnl=12.5, pnl_source="simulated", details={"pnl_supplied": True})

    outcome = worker.reconcile("t-1")

    assert outcome.status == SIMULATED
    assert outcome.realized_pnl == pytest.approx(12.5)
    assert store.get_trade("t-1").realized_pnl == pytest.approx(12.5)
    assert store.get_bot("bot-t").profit_loss == pytest.approx(12.5)
    assert factory_calls == []


def test_test_mode_recompute_marks_source(worker, store):
    store.upsert_bot(BotConfig(id="bot-t", user_id="user-1", symbol="BTCUSDT", test_mode=True))
    _closed_trade(store, "bot-t", pnl_source=None)

    worker.reconcile("t-1")

    assert store.get_trade("t-1").pnl_source == "simulated"


def test_exchange_error_propagates_and_sweep_reports_it(worker, store, exchange, live_bot_with_pnl):
    _closed_trade(store, live_bot_with_pnl.id)
    exchange.get_closed_pnl.side_effect = ExchangeApiError("timeout")

    with pytest.raises(ExchangeApiError):
        worker.reconcile("t-1")

    outcomes = worker.sweep()
    assert [o.status for o in outcomes] == [FAILED]


def test_sweep_only_picks_unreconciled_live_trades(worker, store, exchange, live_bot_with_pnl):
    _closed_trade(store, live_bot_with_pnl.id)
    _closed_trade(store, live_bot_with_pnl.id, id="t-2", symbol="ETHUSDT", pnl_source="exchange")
    exchange.get_closed_pnl.return_value = [EXCHANGE_RECORD]

    outcomes = worker.sweep()

    assert [(o.trade_id, o.status) for o in outcomes] == [("t-1", UPDATED)]
    assert worker.sweep() == []
