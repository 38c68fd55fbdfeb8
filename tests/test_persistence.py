import pytest

from core.exceptions import NotFoundError, PositionConflictError
from models.bot import BotConfig, ExchangeCredential, select_credential
from models.trade import Trade


def _trade(**overrides):
    data = dict(
        id="t-1", bot_id="bot-1", user_id="user-1", symbol="BTCUSDT", side="Buy",
        order_type="Market", quantity=0.1, price=50000, order_id="o-1", status="Filled",
    )
    data.update(overrides)
    return Trade(**data)


def test_bot_roundtrip_and_missing(store):
    store.upsert_bot(BotConfig(id="bot-1", user_id="user-1", symbol="BTCUSDT", test_mode=True))

    bot = store.get_bot("bot-1")
    assert bot.test_mode is True
    assert bot.trade_count == 0
    with pytest.raises(NotFoundError):
        store.get_bot("nope")


def test_counters_are_incremented_in_place(store):
    store.upsert_bot(BotConfig(id="bot-1", user_id="user-1", symbol="BTCUSDT"))

    store.increment_bot_stats("bot-1", trade_count_delta=1, pnl_delta=12.5, last_trade_at="2024-03-01T00:00:00")
    store.increment_bot_stats("bot-1", trade_count_delta=1, pnl_delta=-2.5)

    bot = store.get_bot("bot-1")
    assert bot.trade_count == 2
    assert bot.profit_loss == pytest.approx(10.0)
    assert bot.last_trade_at == "2024-03-01T00:00:00"


def test_only_one_open_trade_per_bot_and_symbol(store):
    store.create_trade(_trade())

    with pytest.raises(PositionConflictError):
        store.create_trade(_trade(id="t-2", order_id="o-2"))

    store.create_trade(_trade(id="t-3", symbol="ETHUSDT"))
    store.update_trade("t-1", state="closed")
    store.create_trade(_trade(id="t-4"))


def test_update_trade_encodes_json_columns(store):
    store.create_trade(_trade())

    store.update_trade("t-1", details={"closed_pnl": {"closedPnl": "1.5"}}, trade_metrics={"r_multiple": 0.15})

    trade = store.get_trade("t-1")
    assert trade.details["closed_pnl"]["closedPnl"] == "1.5"
    assert trade.trade_metrics == {"r_multiple": 0.15}


def test_update_trade_rejects_unknown_column(store):
    store.create_trade(_trade())
    with pytest.raises(ValueError):
        store.update_trade("t-1", colour="red")
    with pytest.raises(NotFoundError):
        store.update_trade("missing", state="closed")


def test_dedup_lookup(store):
    store.create_trade(_trade(dedup_key="abc"))

    assert store.find_trade_by_dedup_key("abc").id == "t-1"
    assert store.find_trade_by_dedup_key("zzz") is None


def test_deleted_reservation_frees_bot_symbol_and_dedup_key(store):
    store.create_trade(_trade(price=None, order_id=None, status="Pending", dedup_key="abc"))
    with pytest.raises(PositionConflictError):
        store.create_trade(_trade(id="t-2", symbol="ETHUSDT", dedup_key="abc"))

    store.delete_trade("t-1")

    with pytest.raises(NotFoundError):
        store.get_trade("t-1")
    store.create_trade(_trade(id="t-3", dedup_key="abc"))


def test_credentials_selection(store):
    bot = BotConfig(id="bot-1", user_id="user-1", symbol="BTCUSDT")
    store.add_credential(ExchangeCredential(id="old", user_id="user-1", api_key="a", api_secret="x", created_at="2023-01-01"))
    store.add_credential(ExchangeCredential(id="dflt", user_id="user-1", api_key="b", api_secret="y", is_default=True, created_at="2023-06-01"))
    store.add_credential(ExchangeCredential(id="mine", user_id="user-1", api_key="c", api_secret="z", bot_id="bot-1", created_at="2024-01-01"))

    creds = store.list_credentials("user-1")
    assert select_credential(creds, bot).id == "mine"
    bot.api_key_id = "old"
    assert select_credential(creds, bot).id == "old"
    other = BotConfig(id="bot-2", user_id="user-1", symbol="BTCUSDT")
    assert select_credential(creds, other).id == "dflt"
    with pytest.raises(NotFoundError):
        select_credential(creds, BotConfig(id="b", user_id="stranger", symbol="BTCUSDT"))


def test_logs_are_filtered_by_bot(store):
    store.append_log("info", "hello", {"a": 1}, bot_id="bot-1", trade_id="t-1")
    store.append_log("error", "other", bot_id="bot-2")

    logs = store.list_logs("bot-1")
    assert len(logs) == 1
    assert logs[0]["details"] == {"a": 1}
    assert logs[0]["trade_id"] == "t-1"
