"""
trade_metrics.py
----------------
Risk/reward and execution-quality metrics for a closed trade.  Pure function,
no I/O.  Missing prices or fees count as zero and leave the dependent metric
as ``None``; missing PnL, risk or timestamps raise MetricsInputError.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional, Union

from core.exceptions import MetricsInputError
from models.trade_metrics import TradeMetrics

Timestamp = Union[datetime, str, int, float]

BREAKEVEN_EPS = 1e-9


def to_datetime(value: Timestamp) -> datetime:
    """Accept datetimes, ISO strings and epoch seconds or milliseconds."""
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, str):
        parsed = datetime.fromisoformat(value)
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
    ts = float(value)
    if ts > 10**12:
        ts /= 1000
    return datetime.fromtimestamp(ts, tz=timezone.utc)


def classify_outcome(pnl: float) -> str:
    if pnl > BREAKEVEN_EPS:
        return "win"
    if pnl < -BREAKEVEN_EPS:
        return "loss"
    return "breakeven"


def calculate_trade_metrics(
    *,
    symbol: str,
    side: str,
    planned_entry: Optional[float],
    actual_entry: Optional[float],
    take_profit: Optional[float],
    stop_loss: Optional[float],
    max_risk: Optional[float],
    finished_dollar: Optional[float],
    open_fee: Optional[float] = 0.0,
    close_fee: Optional[float] = 0.0,
    open_time: Optional[Timestamp] = None,
    close_time: Optional[Timestamp] = None,
) -> TradeMetrics:
    if finished_dollar is None:
        raise MetricsInputError("realized PnL is required")
    if max_risk is None or max_risk <= 0:
        raise MetricsInputError("max risk must be a positive number")
    if open_time is None or close_time is None:
        raise MetricsInputError("open and close time are required")

    duration = (to_datetime(close_time) - to_datetime(open_time)).total_seconds()
    if duration < 0:
        raise MetricsInputError("close time is before open time")

    planned_entry = planned_entry or 0.0
    actual_entry = actual_entry or 0.0
    take_profit = take_profit or 0.0
    stop_loss = stop_loss or 0.0

    planned_rr = None
    if planned_entry and take_profit and stop_loss:
        risk = abs(planned_entry - stop_loss)
        if risk > 0:
            planned_rr = abs(take_profit - planned_entry) / risk

    slippage = slippage_pct = None
    if planned_entry and actual_entry:
        slippage = actual_entry - planned_entry
        # positive = adverse: a Buy paid more, a Sell received less
        direction = 1 if side == "Buy" else -1
        slippage_pct = slippage / planned_entry * 100 * direction

    total_fees = (open_fee or 0.0) + (close_fee or 0.0)
    return TradeMetrics(
        symbol=symbol,
        side=side,
        r_multiple=finished_dollar / max_risk,
        planned_rr=planned_rr,
        entry_slippage=slippage,
        entry_slippage_pct=slippage_pct,
        total_fees=total_fees,
        gross_pnl=finished_dollar + total_fees,
        net_pnl=finished_dollar,
        duration_seconds=duration,
        outcome=classify_outcome(finished_dollar),
    )
