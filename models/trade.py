# --------------------------------------------------------------------
# models/trade.py
# Unit of lifecycle state. Reserved just before an open order is placed, mutated in
# place on close / reconciliation; deleted only when the open order fails.
# --------------------------------------------------------------------
from __future__ import annotations
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, Literal, Optional

TradeState = Literal["open", "closed"]
PnlSource = Literal["estimated", "simulated", "exchange"]

STATE_OPEN = "open"
STATE_CLOSED = "closed"

# row reserved, exchange order not confirmed yet
STATUS_PENDING = "Pending"


@dataclass
class Trade:
    id: str
    bot_id: str
    user_id: str
    symbol: str
    side: str
    order_type: str
    quantity: float
    price: Optional[float]                # entry / fill price, None while unknown
    order_id: Optional[str]
    status: str
    state: TradeState = STATE_OPEN
    close_order_id: Optional[str] = None
    stop_loss: Optional[float] = None
    take_profit: Optional[float] = None
    realized_pnl: Optional[float] = None
    pnl_source: Optional[PnlSource] = None
    fees: float = 0.0
    close_reason: Optional[str] = None
    exit_price: Optional[float] = None
    avg_entry_price: Optional[float] = None
    avg_exit_price: Optional[float] = None
    details: Optional[Dict[str, Any]] = None
    trade_metrics: Optional[Dict[str, Any]] = None
    dedup_key: Optional[str] = None
    created_at: str = ""
    updated_at: str = ""
    closed_at: Optional[str] = None

    @property
    def is_open(self) -> bool:
        return self.state == STATE_OPEN

    @property
    def has_exchange_exits(self) -> bool:
        """True when the exchange holds a stop-loss or take-profit for this trade."""
        return bool(self.stop_loss) or bool(self.take_profit)

    @property
    def pnl_is_authoritative(self) -> bool:
        return self.pnl_source == "exchange"

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class OrderRequest:
    symbol: str
    side: str
    order_type: str
    quantity: float
    price: Optional[float] = None
    stop_loss: Optional[float] = None
    take_profit: Optional[float] = None
    reduce_only: bool = False


@dataclass
class OrderResult:
    order_id: Optional[str]
    symbol: str
    side: str
    order_type: str
    qty: float
    price: Optional[float]  # None until the exchange reports a fill
    status: str
    raw: Dict[str, Any] = field(default_factory=dict, repr=False)
