import json
from unittest.mock import MagicMock

import pytest
import requests

from core.exceptions import ExchangeApiError
from models.trade import OrderRequest
from modules.bybit_client import BybitClient, fmt_num
from utils.signing import generate_signature

# ------------------------- Fixtures ------------------------- #

def _response(payload, status=200):
    resp = MagicMock()
    resp.status_code = status
    resp.text = json.dumps(payload)
    resp.json.return_value = payload
    return resp


def _ok(result):
    return _response({"retCode": 0, "retMsg": "OK", "result": result})


@pytest.fixture
def session():
    return MagicMock()


@pytest.fixture
def client(session):
    return BybitClient("test_api_key", "test_secret_key", testnet=True, session=session)

# ------------------------- Tests ------------------------- #

def test_testnet_base_url(client):
    assert client.base_url == "https://api-testnet.bybit.com"


def test_private_post_is_signed_over_body(client, session):
    session.request.return_value = _ok({"orderId": "abc"})

    client._private_post("/v5/order/create", {"symbol": "BTCUSDT", "qty": "0.1"})

    method, url = session.request.call_args.args
    kwargs = session.request.call_args.kwargs
    headers = kwargs["headers"]
    assert method == "POST"
    assert url.endswith("/v5/order/create")
    assert kwargs["data"] == '{"symbol":"BTCUSDT","qty":"0.1"}'
    expected = generate_signature(
        headers["X-BAPI-TIMESTAMP"], "test_api_key", 5000, kwargs["data"], "test_secret_key"
    )
    assert headers["X-BAPI-SIGN"] == expected


def test_private_get_signs_sorted_query(client, session):
    session.request.return_value = _ok({"list": []})

    client._private_get("/v5/order/realtime", {"symbol": "BTCUSDT", "category": "linear"})

    _, url = session.request.call_args.args
    headers = session.request.call_args.kwargs["headers"]
    assert url.endswith("/v5/order/realtime?category=linear&symbol=BTCUSDT")
    expected = generate_signature(
        headers["X-BAPI-TIMESTAMP"], "test_api_key", 5000, "category=linear&symbol=BTCUSDT", "test_secret_key"
    )
    assert headers["X-BAPI-SIGN"] == expected


def test_public_get_has_no_auth_headers(client, session):
    session.request.return_value = _ok({"list": [{"lastPrice": "50123.5"}]})

    assert client.get_last_price("BTCUSDT") == 50123.5
    assert session.request.call_args.kwargs["headers"] == {}


def test_ret_code_error_is_raised(client, session):
    session.request.return_value = _response({"retCode": 10001, "retMsg": "params error"})

    with pytest.raises(ExchangeApiError) as info:
        client._private_post("/v5/order/create", {})
    assert info.value.code == 10001
    assert "params error" in str(info.value)


def test_http_error_is_raised(client, session):
    session.request.return_value = _response({"oops": True}, status=503)

    with pytest.raises(ExchangeApiError) as info:
        client.get_last_price("BTCUSDT")
    assert info.value.status == 503


def test_transport_error_is_wrapped(client, session):
    session.request.side_effect = requests.ConnectionError("boom")

    with pytest.raises(ExchangeApiError):
        client.get_last_price("BTCUSDT")


def test_instrument_rule_adapter(client, session):
    session.request.return_value = _ok(
        {"list": [{"symbol": "BTCUSDT", "lotSizeFilter": {"minOrderQty": "0.001", "qtyStep": "0.001"}}]}
    )

    rule = client.get_instrument_rule("BTCUSDT")

    assert rule.min_qty == 0.001
    assert rule.qty_step == 0.001
    assert rule.decimals == 3


def test_execute_market_order_reads_fill(client, session):
    session.request.side_effect = [
        _ok({"orderId": "ord-1"}),
        _ok({"list": [{"orderId": "ord-1", "avgPrice": "50010", "orderStatus": "Filled"}]}),
    ]

    result = client.execute_order(
        OrderRequest(symbol="BTCUSDT", side="Buy", order_type="Market", quantity=0.093, price=50000, stop_loss=49000)
    )

    body = json.loads(session.request.call_args_list[0].kwargs["data"])
    assert body == {
        "category": "linear",
        "symbol": "BTCUSDT",
        "side": "Buy",
        "orderType": "Market",
        "qty": "0.093",
        "stopLoss": "49000",
    }
    assert result.order_id == "ord-1"
    assert result.price == 50010
    assert result.status == "Filled"


def test_execute_order_survives_failed_fill_lookup(client, session):
    session.request.side_effect = [
        _ok({"orderId": "ord-2"}),
        _response({"retCode": 110001, "retMsg": "order not exists"}),
    ]

    result = client.execute_order(
        OrderRequest(symbol="BTCUSDT", side="Sell", order_type="Limit", quantity=0.1, price=51000, reduce_only=True)
    )

    body = json.loads(session.request.call_args_list[0].kwargs["data"])
    assert body["price"] == "51000"
    assert body["reduceOnly"] is True
    assert result.price == 51000
    assert result.status == "Created"


def test_unfilled_market_order_reports_no_price(client, session):
    session.request.side_effect = [
        _ok({"orderId": "ord-3"}),
        _ok({"list": [{"orderId": "ord-3", "avgPrice": "", "orderStatus": "New"}]}),
    ]

    result = client.execute_order(
        OrderRequest(symbol="BTCUSDT", side="Sell", order_type="Market", quantity=0.1, reduce_only=True)
    )

    assert result.price is None
    assert result.status == "New"


def test_closed_pnl_follows_cursor_until_match(client, session):
    session.request.side_effect = [
        _ok({"list": [{"orderId": "x1", "closedPnl": "1"}], "nextPageCursor": "page2"}),
        _ok({"list": [{"orderId": "wanted", "closedPnl": "-3.5"}], "nextPageCursor": "page3"}),
    ]

    record = client.find_closed_pnl("BTCUSDT", "wanted")

    assert record["closedPnl"] == "-3.5"
    assert session.request.call_count == 2
    assert "cursor=page2" in session.request.call_args_list[1].args[1]


def test_closed_pnl_respects_max_pages(client, session):
    session.request.return_value = _ok({"list": [{"orderId": "other"}], "nextPageCursor": "more"})

    assert client.find_closed_pnl("BTCUSDT", "missing", max_pages=3) is None
    assert session.request.call_count == 3


def test_fmt_num():
    assert fmt_num(0.093) == "0.093"
    assert fmt_num(50000.0) == "50000"
    assert fmt_num(1e-5) == "0.00001"
