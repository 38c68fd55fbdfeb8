# --------------------------------------------------------------------
# models/trade_metrics.py
# Snapshot of risk/reward and execution quality attached to a closed trade.
# --------------------------------------------------------------------
from __future__ import annotations
from dataclasses import asdict, dataclass
from typing import Literal, Optional

Outcome = Literal["win", "loss", "breakeven"]


@dataclass(frozen=True)
class TradeMetrics:
    symbol: str
    side: str
    r_multiple: float
    planned_rr: Optional[float]
    entry_slippage: Optional[float]
    entry_slippage_pct: Optional[float]
    total_fees: float
    gross_pnl: float
    net_pnl: float
    duration_seconds: float
    outcome: Outcome

    def to_dict(self) -> dict:
        return asdict(self)
