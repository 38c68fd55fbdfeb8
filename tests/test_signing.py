# -------------------------------------------------------------------
#  🧪  tests/test_signing.py – unit tests for the Bybit v5 signing
#       helpers.
# -------------------------------------------------------------------
"""pytest-style tests.  Run with `pytest -q tests/test_signing.py`."""

import hashlib
import hmac
import json

from utils.signing import (
    build_json_body,
    build_query_string,
    generate_signature,
    signed_headers,
)


def test_generate_signature_against_manual():
    ts, key, window, secret = 1700000000000, "testkey", 5000, "testsecret"
    payload = "category=linear&symbol=BTCUSDT"

    # ---- manual reference implementation (independent) ----
    prehash = f"{ts}{key}{window}{payload}"
    expected = hmac.new(secret.encode(), prehash.encode(), hashlib.sha256).hexdigest()

    assert generate_signature(ts, key, window, payload, secret) == expected


def test_query_string_is_sorted_and_drops_none():
    qs = build_query_string({"symbol": "BTCUSDT", "category": "linear", "cursor": None, "limit": 50})
    assert qs == "category=linear&limit=50&symbol=BTCUSDT"


def test_json_body_is_compact():
    body = build_json_body({"symbol": "BTCUSDT", "qty": "0.1", "price": None})
    assert body == '{"symbol":"BTCUSDT","qty":"0.1"}'
    assert json.loads(body) == {"symbol": "BTCUSDT", "qty": "0.1"}


def test_signed_headers_carry_all_bapi_fields():
    headers = signed_headers("A", "B", "x=1", recv_window=7000, timestamp=123)

    assert headers["X-BAPI-API-KEY"] == "A"
    assert headers["X-BAPI-TIMESTAMP"] == "123"
    assert headers["X-BAPI-RECV-WINDOW"] == "7000"
    assert headers["X-BAPI-SIGN"] == generate_signature(123, "A", 7000, "x=1", "B")


def test_signature_changes_with_payload():
    a = generate_signature(1, "k", 5000, "a=1", "s")
    b = generate_signature(1, "k", 5000, "a=2", "s")
    assert a != b
    assert len(a) == 64
