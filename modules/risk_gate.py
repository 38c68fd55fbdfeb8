"""
risk_gate.py
------------
Pre-trade limits for one bot: daily realised loss and maximum position
notional.  Evaluated before any exchange call; a denial raises RiskGateDenied
and nothing is placed or recorded.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Iterable, Optional

from core.exceptions import RiskGateDenied
from models.alert import AlertSignal
from models.bot import BotConfig

logger = logging.getLogger(__name__)

DAILY_LOSS_LIMIT_EXCEEDED = "DailyLossLimitExceeded"
POSITION_SIZE_EXCEEDED = "PositionSizeExceeded"


@dataclass(frozen=True)
class RiskDecision:
    allowed: bool
    reason: Optional[str] = None
    daily_pnl: float = 0.0
    estimated_notional: Optional[float] = None


def start_of_utc_day(now: Optional[datetime] = None) -> datetime:
    now = now or datetime.now(timezone.utc)
    return now.astimezone(timezone.utc).replace(hour=0, minute=0, second=0, microsecond=0)


def daily_realized_pnl(pnls: Iterable[Optional[float]]) -> float:
    return sum(p or 0.0 for p in pnls)


class RiskGate:
    """Evaluates a bot's limits against today's trades and the proposed order."""

    def __init__(self, store, audit=None):
        self.store = store
        self.audit = audit

    def check(self, bot: BotConfig, alert: AlertSignal, *, now: Optional[datetime] = None) -> RiskDecision:
        """Raise RiskGateDenied or return the allow decision."""
        if not bot.has_risk_limits:
            return RiskDecision(allowed=True)

        daily_pnl = 0.0
        if bot.daily_loss_limit and bot.daily_loss_limit > 0:
            since = start_of_utc_day(now).isoformat()
            trades = self.store.list_trades_since(bot.id, since)
            daily_pnl = daily_realized_pnl(t.realized_pnl for t in trades)
            if daily_pnl < 0 and abs(daily_pnl) >= bot.daily_loss_limit:
                self._deny(
                    DAILY_LOSS_LIMIT_EXCEEDED,
                    {"daily_loss": abs(daily_pnl), "limit": bot.daily_loss_limit},
                    bot,
                )
            logger.debug("Daily P/L check passed: %s / limit %s", daily_pnl, bot.daily_loss_limit)

        notional = None
        # with sizing on, the sizer caps the quantity to max_position_size itself
        if bot.max_position_size and bot.max_position_size > 0 and not bot.position_sizing_enabled:
            qty = alert.quantity or bot.default_quantity
            if qty and alert.price:
                notional = qty * alert.price
                if notional > bot.max_position_size:
                    self._deny(
                        POSITION_SIZE_EXCEEDED,
                        {"estimated_notional": notional, "limit": bot.max_position_size},
                        bot,
                    )

        return RiskDecision(allowed=True, daily_pnl=daily_pnl, estimated_notional=notional)

    def _deny(self, reason: str, details: dict, bot: BotConfig) -> None:
        if self.audit is not None:
            self.audit.warning(f"Trade rejected: {reason}", details, bot_id=bot.id, user_id=bot.user_id)
        raise RiskGateDenied(reason, details)
