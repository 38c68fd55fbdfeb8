"""
simulation.py
-------------
Test-mode stand-in for the exchange.  Orders are "filled" locally and the
open-trade PnL is a random placeholder so the dashboard has something to
show; none of this feeds the real PnL path.
"""

from __future__ import annotations

import random
import time
from typing import Callable, Optional

from models.trade import OrderRequest, OrderResult

SIMULATED_FEE_RATE = 0.001      # 0.1% of notional
SIMULATED_CLOSE_MOVE = 0.01     # close 1% above entry when no price is given


class SimulatedExecution:
    def __init__(
        self,
        rng: Optional[random.Random] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.rng = rng or random.Random()
        self.clock = clock

    def _ms(self) -> int:
        return int(self.clock() * 1000)

    def open_order(self, order: OrderRequest) -> OrderResult:
        return OrderResult(
            order_id=f"test-{self._ms()}",
            symbol=order.symbol,
            side=order.side,
            order_type=order.order_type,
            qty=order.quantity,
            price=order.price or None,
            status="TEST_ORDER",
        )

    def close_order(self, order: OrderRequest, entry_price: Optional[float]) -> OrderResult:
        return OrderResult(
            order_id=f"close-test-{self._ms()}",
            symbol=order.symbol,
            side=order.side,
            order_type=order.order_type,
            qty=order.quantity,
            price=order.price or (entry_price * (1 + SIMULATED_CLOSE_MOVE) if entry_price else None),
            status="TEST_CLOSE",
        )

    def random_open_pnl(self, side: str, price: float, quantity: float) -> tuple[float, float]:
        """(pnl, fees) for a fresh test trade: a -2%..+2% move minus 0.1% fees."""
        change_pct = self.rng.uniform(-2.0, 2.0)
        notional = (price or 0.0) * quantity
        pnl = notional * (change_pct / 100) if side == "Buy" else notional * (-change_pct / 100)
        fees = notional * SIMULATED_FEE_RATE
        return pnl - fees, fees
