from datetime import datetime, timezone
from unittest.mock import MagicMock

import pytest

from models.bot import BotConfig, ExchangeCredential
from models.instrument import InstrumentRule
from models.trade import OrderResult
from module.persistence.sqlite import SQLitePersistence
from modules.audit_log import AuditLog
from modules.trade_engine import EngineSettings
from utils.event_bus import BUS

FIXED_NOW = datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def fixed_now():
    return FIXED_NOW


@pytest.fixture
def store():
    db = SQLitePersistence(":memory:")
    yield db
    db.close()


@pytest.fixture
def audit(store):
    return AuditLog(store)


@pytest.fixture
def settings():
    return EngineSettings()


@pytest.fixture
def live_bot(store):
    bot = BotConfig(id="bot-1", user_id="user-1", symbol="BTCUSDT", default_quantity=0.1)
    store.upsert_bot(bot)
    store.add_credential(ExchangeCredential(id="key-1", user_id="user-1", api_key="k", api_secret="s", is_default=True))
    return bot


@pytest.fixture
def test_bot(store):
    bot = BotConfig(id="bot-t", user_id="user-1", symbol="BTCUSDT", default_quantity=0.1, test_mode=True)
    store.upsert_bot(bot)
    store.add_credential(ExchangeCredential(id="key-1", user_id="user-1", api_key="k", api_secret="s", is_default=True))
    return bot


@pytest.fixture
def client():
    """Exchange client double: BTCUSDT rule, 50000 last price, fills at the requested price."""
    mock = MagicMock()
    mock.get_instrument_rule.return_value = InstrumentRule("BTCUSDT", 0.001, 0.001, 3)
    mock.get_last_price.return_value = 50000.0

    def execute(order):
        n = mock.execute_order.call_count
        return OrderResult(
            order_id=f"ord-{n}",
            symbol=order.symbol,
            side=order.side,
            order_type=order.order_type,
            qty=order.quantity,
            price=order.price or 50000.0,
            status="Filled",
        )

    mock.execute_order.side_effect = execute
    return mock


@pytest.fixture(autouse=True)
def clean_event_bus():
    yield
    BUS.unsubscribe_all()
