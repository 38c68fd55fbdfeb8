# -------------------------------------------------------------------
#  🔐  utils/signing.py  – helpers to authenticate Bybit v5 REST calls.
# -------------------------------------------------------------------
"""Implements the HMAC-SHA256 flow from the Bybit v5 docs:
   1. Serialize the request payload (sorted query string for GET,
      compact JSON body for POST).
   2. prehash = timestamp + api_key + recv_window + payload
   3. HmacSHA256(secret, prehash) → hex digest (lower-case).
   4. Send key / timestamp / recv-window / sign as X-BAPI-* headers."""
from __future__ import annotations
import hashlib, hmac, json, time
from typing import Any, Dict, Mapping
from urllib.parse import urlencode

DEFAULT_RECV_WINDOW = 5000
__all__ = [
    "stamp",
    "build_query_string",
    "build_json_body",
    "generate_signature",
    "signed_headers",
]


def stamp() -> int:
    """Server-accepted millisecond timestamp."""
    return int(time.time() * 1000)


def build_query_string(params: Mapping[str, Any]) -> str:
    """Alphabetically ordered ``k=v&k=v`` string; ``None`` values are dropped.

    The exact string returned here must be both signed and sent on the wire.
    """
    cleaned = {k: v for k, v in params.items() if v is not None}
    return urlencode(sorted((k, str(v)) for k, v in cleaned.items()))


def build_json_body(body: Mapping[str, Any]) -> str:
    cleaned = {k: v for k, v in body.items() if v is not None}
    return json.dumps(cleaned, separators=(",", ":"))


def generate_signature(
    timestamp: int | str,
    api_key: str,
    recv_window: int | str,
    payload: str,
    secret_key: str,
) -> str:
    """Return the ``X-BAPI-SIGN`` value for one request."""
    prehash = f"{timestamp}{api_key}{recv_window}{payload}"
    return hmac.new(secret_key.encode(), prehash.encode(), hashlib.sha256).hexdigest()


def signed_headers(
    api_key: str,
    secret_key: str,
    payload: str,
    *,
    recv_window: int = DEFAULT_RECV_WINDOW,
    timestamp: int | None = None,
) -> Dict[str, str]:
    ts = str(timestamp if timestamp is not None else stamp())
    return {
        "X-BAPI-API-KEY": api_key,
        "X-BAPI-TIMESTAMP": ts,
        "X-BAPI-RECV-WINDOW": str(recv_window),
        "X-BAPI-SIGN": generate_signature(ts, api_key, recv_window, payload, secret_key),
        "Content-Type": "application/json",
    }
