# --------------------------------------------------------------------
# models/bot.py
# Bot configuration record and the exchange credential bound to it. Both are
# owned by the (external) dashboard; the pipeline only reads them, except for
# the post-trade counters on BotConfig.
# --------------------------------------------------------------------
from __future__ import annotations
from dataclasses import dataclass, field
from typing import Iterable, Optional

from core.exceptions import NotFoundError


@dataclass
class BotConfig:
    id: str
    user_id: str
    symbol: str
    name: str = ""
    default_side: str = "Buy"
    default_order_type: str = "Market"
    default_quantity: Optional[float] = None
    default_stop_loss: Optional[float] = None     # percent of entry
    default_take_profit: Optional[float] = None   # percent of entry
    risk_per_trade: Optional[float] = None        # currency units
    daily_loss_limit: Optional[float] = None
    max_position_size: Optional[float] = None     # notional
    position_sizing_enabled: bool = False
    market_fee_percentage: Optional[float] = None
    limit_fee_percentage: Optional[float] = None
    test_mode: bool = False
    api_key_id: Optional[str] = None
    profit_loss: float = 0.0
    trade_count: int = 0
    last_trade_at: Optional[str] = None

    @property
    def has_risk_limits(self) -> bool:
        return bool(self.daily_loss_limit) or bool(self.max_position_size)


@dataclass
class ExchangeCredential:
    id: str
    user_id: str
    api_key: str
    api_secret: str = field(repr=False)
    bot_id: Optional[str] = None
    is_default: bool = False
    exchange: str = "bybit"
    created_at: str = ""


def select_credential(candidates: Iterable[ExchangeCredential], bot: BotConfig) -> ExchangeCredential:
    """Bot-specific key first, then the user's default key, then the oldest key."""
    keys = [c for c in candidates if c.user_id == bot.user_id and c.exchange == "bybit"]
    if not keys:
        raise NotFoundError(f"API credentials not found for user {bot.user_id}")

    if bot.api_key_id:
        for c in keys:
            if c.id == bot.api_key_id:
                return c
    for c in keys:
        if c.bot_id == bot.id:
            return c
    for c in keys:
        if c.is_default:
            return c
    return sorted(keys, key=lambda c: c.created_at)[0]
