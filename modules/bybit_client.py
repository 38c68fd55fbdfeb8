# modules/bybit_client.py
"""
bybit_client.py
---------------
Signed REST client for the Bybit v5 linear (USDT perpetual) API.

Only the calls the alert pipeline needs are wrapped: instrument info, last
price, order placement / lookup and the closed-PnL history.  Every call has a
bounded timeout and is attempted exactly once; any non-200 status or
``retCode != 0`` is raised as ExchangeApiError and the caller decides whether
that is fatal.
"""
from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

import requests

from core.exceptions import ExchangeApiError
from models.instrument import InstrumentRule
from models.trade import OrderRequest, OrderResult
from modules.instrument import instrument_rule_from_info
from utils import signing

MAINNET_URL = "https://api.bybit.com"
TESTNET_URL = "https://api-testnet.bybit.com"
CATEGORY = "linear"


def fmt_num(value: float) -> str:
    """Plain decimal string without float noise or exponent ("0.093", "50000")."""
    return ("%.10f" % float(value)).rstrip("0").rstrip(".")


class BybitClient:
    def __init__(
        self,
        api_key: str,
        api_secret: str,
        *,
        testnet: bool = False,
        base_url: Optional[str] = None,
        recv_window: int = signing.DEFAULT_RECV_WINDOW,
        timeout: float = 10,
        session: Optional[requests.Session] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.api_key = api_key
        self.api_secret = api_secret
        self.testnet = testnet
        self.base_url = base_url or (TESTNET_URL if testnet else MAINNET_URL)
        self.recv_window = recv_window
        self.timeout = timeout
        self.session = session or requests.Session()
        self.logger = logger or logging.getLogger(self.__class__.__name__)

    # ------------------------------------------------------------------ #
    # transport
    # ------------------------------------------------------------------ #
    def _request(
        self,
        method: str,
        path: str,
        *,
        params: Optional[Dict[str, Any]] = None,
        body: Optional[Dict[str, Any]] = None,
        signed: bool = True,
    ) -> Dict[str, Any]:
        url = f"{self.base_url}{path}"
        data = None
        if method == "GET":
            payload = signing.build_query_string(params or {})
            if payload:
                url = f"{url}?{payload}"
        else:
            payload = signing.build_json_body(body or {})
            data = payload

        headers = (
            signing.signed_headers(self.api_key, self.api_secret, payload, recv_window=self.recv_window)
            if signed
            else {}
        )

        try:
            resp = self.session.request(method, url, headers=headers, data=data, timeout=self.timeout)
        except requests.RequestException as exc:
            raise ExchangeApiError(f"{method} {path} failed: {exc}") from exc

        if resp.status_code != 200:
            raise ExchangeApiError(f"HTTP error: {resp.text}", status=resp.status_code)

        try:
            reply = resp.json()
        except ValueError as exc:
            raise ExchangeApiError(f"{path} returned non-JSON body", status=resp.status_code) from exc

        ret_code = reply.get("retCode")
        if str(ret_code) != "0":
            raise ExchangeApiError(
                reply.get("retMsg") or "unknown exchange error",
                status=resp.status_code,
                code=int(ret_code) if ret_code is not None else None,
            )

        self.logger.debug("BYBIT %s %s -> retCode=%s", method, path, ret_code)
        return reply

    def _private_get(self, path: str, params: Dict[str, Any]) -> Dict[str, Any]:
        return self._request("GET", path, params=params)

    def _private_post(self, path: str, body: Dict[str, Any]) -> Dict[str, Any]:
        return self._request("POST", path, body=body)

    def _public_get(self, path: str, params: Dict[str, Any]) -> Dict[str, Any]:
        return self._request("GET", path, params=params, signed=False)

    # ------------------------------------------------------------------ #
    # market data
    # ------------------------------------------------------------------ #
    def get_instrument_rule(self, symbol: str) -> InstrumentRule:
        reply = self._public_get(
            "/v5/market/instruments-info", {"category": CATEGORY, "symbol": symbol}
        )
        items = (reply.get("result") or {}).get("list") or []
        if not items:
            raise ExchangeApiError(f"instrument {symbol} not found")
        return instrument_rule_from_info(symbol, items[0])

    def get_last_price(self, symbol: str) -> float:
        reply = self._public_get("/v5/market/tickers", {"category": CATEGORY, "symbol": symbol})
        items = (reply.get("result") or {}).get("list") or []
        if not items or not items[0].get("lastPrice"):
            raise ExchangeApiError(f"no ticker for {symbol}")
        return float(items[0]["lastPrice"])

    # ------------------------------------------------------------------ #
    # orders
    # ------------------------------------------------------------------ #
    def execute_order(self, order: OrderRequest) -> OrderResult:
        """Place one order on ``/v5/order/create`` and look up its fill."""
        body: Dict[str, Any] = {
            "category": CATEGORY,
            "symbol": order.symbol,
            "side": order.side,
            "orderType": order.order_type,
            "qty": fmt_num(order.quantity),
        }
        if order.order_type == "Limit" and order.price:
            body["price"] = fmt_num(order.price)
        if order.stop_loss:
            body["stopLoss"] = fmt_num(order.stop_loss)
        if order.take_profit:
            body["takeProfit"] = fmt_num(order.take_profit)
        if order.reduce_only:
            body["reduceOnly"] = True

        reply = self._private_post("/v5/order/create", body)
        order_id = str((reply.get("result") or {}).get("orderId") or "")
        if not order_id:
            raise ExchangeApiError(f"order accepted without orderId: {reply}")

        # an unfilled market order has no price yet; None, never 0
        fill_price: Optional[float] = order.price or None
        status = "Created"
        try:
            info = self.get_order(order.symbol, order_id)
            if info:
                avg = float(info.get("avgPrice") or 0)
                if avg > 0:
                    fill_price = avg
                status = info.get("orderStatus") or status
        except ExchangeApiError as exc:
            self.logger.warning("Fill lookup for %s failed, using requested price: %s", order_id, exc)

        return OrderResult(
            order_id=order_id,
            symbol=order.symbol,
            side=order.side,
            order_type=order.order_type,
            qty=order.quantity,
            price=fill_price,
            status=status,
            raw=reply,
        )

    def get_order(self, symbol: str, order_id: str) -> Dict[str, Any]:
        reply = self._private_get(
            "/v5/order/realtime", {"category": CATEGORY, "symbol": symbol, "orderId": order_id}
        )
        items = (reply.get("result") or {}).get("list") or []
        return items[0] if items else {}

    # ------------------------------------------------------------------ #
    # closed PnL
    # ------------------------------------------------------------------ #
    def get_closed_pnl(
        self,
        symbol: str,
        *,
        order_id: Optional[str] = None,
        limit: int = 50,
        max_pages: int = 5,
    ) -> List[Dict[str, Any]]:
        """Walk ``/v5/position/closed-pnl`` pages (newest first).

        Stops early once ``order_id`` shows up, so callers looking for one
        record rarely need more than the first page.
        """
        records: List[Dict[str, Any]] = []
        cursor: Optional[str] = None
        for _ in range(max_pages):
            params: Dict[str, Any] = {"category": CATEGORY, "symbol": symbol, "limit": limit}
            if cursor:
                params["cursor"] = cursor
            reply = self._private_get("/v5/position/closed-pnl", params)
            result = reply.get("result") or {}
            page = result.get("list") or []
            records.extend(page)
            if order_id and any(r.get("orderId") == order_id for r in page):
                break
            cursor = result.get("nextPageCursor")
            if not cursor or not page:
                break
        return records

    def find_closed_pnl(self, symbol: str, order_id: str, *, limit: int = 50, max_pages: int = 5) -> Optional[Dict[str, Any]]:
        for record in self.get_closed_pnl(symbol, order_id=order_id, limit=limit, max_pages=max_pages):
            if record.get("orderId") == order_id:
                return record
        return None
