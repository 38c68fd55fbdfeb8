"""
position_sizer.py
-----------------
Risk-based position sizing.  Pure functions, no I/O.

The quantity returned is always rounded *down* onto the exchange step grid so
the realised risk never exceeds the budget because of rounding.
"""

from __future__ import annotations

import logging
import math
from typing import Optional

from core.exceptions import InvalidStopLossError, ValidationError
from models.instrument import InstrumentRule

logger = logging.getLogger(__name__)

# tolerance for float noise when dividing by the step (0.3 / 0.1 == 2.9999...)
_STEP_EPS = 1e-9


def round_down_to_step(quantity: float, step: float) -> float:
    if step <= 0:
        return quantity
    return math.floor(quantity / step + _STEP_EPS) * step


def calculate_position_size(
    *,
    entry_price: float,
    stop_loss: float,
    risk_amount: float,
    side: str,
    fee_percentage: Optional[float] = 0.0,
    min_qty: float = 0.0,
    qty_step: float = 0.0,
    max_position_size: Optional[float] = 0.0,
    decimals: int = 8,
) -> float:
    """Size a position so that hitting ``stop_loss`` loses about ``risk_amount``.

    ``fee_percentage`` is in the exchange's percent units (0.075 means 0.075%)
    and is charged on both entry and the assumed exit at ``stop_loss``.

    Raises ValidationError for non-positive prices/risk or an unknown side and
    InvalidStopLossError when the stop is on the wrong side of the entry.
    """
    if not entry_price or entry_price <= 0:
        raise ValidationError("Entry price must be a positive number")
    if not stop_loss or stop_loss <= 0:
        raise ValidationError("Stop loss must be a positive number")
    if not risk_amount or risk_amount <= 0:
        raise ValidationError("Risk amount must be a positive number")
    if side not in ("Buy", "Sell"):
        raise ValidationError(f'Side must be "Buy" or "Sell", got {side!r}')

    if side == "Buy":
        if stop_loss >= entry_price:
            raise InvalidStopLossError("Stop loss must be below entry price for Buy orders")
        risk_per_unit = entry_price - stop_loss
    else:
        if stop_loss <= entry_price:
            raise InvalidStopLossError("Stop loss must be above entry price for Sell orders")
        risk_per_unit = stop_loss - entry_price

    fee = (fee_percentage or 0.0) / 100
    # entry fee on entry_price plus exit fee on the stop, per unit of entry
    total_fee_rate_factor = (entry_price * fee + stop_loss * fee) / entry_price

    quantity = risk_amount / (risk_per_unit + entry_price * total_fee_rate_factor)
    logger.debug(
        "Raw position: risk_per_unit=%s fee_factor=%s qty=%s",
        risk_per_unit, total_fee_rate_factor, quantity,
    )

    if quantity < min_qty:
        logger.debug("Quantity %s below minimum %s, using minimum", quantity, min_qty)
        quantity = min_qty

    quantity = round_down_to_step(quantity, qty_step)

    max_position_size = max_position_size or 0.0
    if max_position_size > 0 and quantity * entry_price > max_position_size:
        quantity = round_down_to_step(max_position_size / entry_price, qty_step)
        logger.debug("Reduced quantity to respect max position size %s: %s", max_position_size, quantity)
        if quantity < min_qty:
            raise ValidationError(
                f"max_position_size {max_position_size} is below the exchange minimum "
                f"({min_qty} @ {entry_price})"
            )

    quantity = round(quantity, decimals)
    # rounding to `decimals` must not push the notional over the cap
    if max_position_size > 0 and quantity * entry_price > max_position_size and qty_step > 0:
        quantity = round(quantity - qty_step, decimals)

    actual_risk = quantity * risk_per_unit + quantity * entry_price * fee + quantity * stop_loss * fee
    logger.debug("Final quantity %s, actual risk %.2f (target %s)", quantity, actual_risk, risk_amount)
    return max(quantity, 0.0)


def adjust_quantity(raw_qty: float, rule: InstrumentRule) -> float:
    """Plain min/step rounding used when risk sizing is off or lacks prices."""
    raw_qty = raw_qty or 0.0
    if raw_qty < rule.min_qty:
        qty = rule.min_qty
    else:
        qty = round_down_to_step(raw_qty, rule.qty_step)
    if qty < rule.min_qty:
        qty = rule.min_qty
    return round(qty, rule.decimals)


def cap_to_notional(quantity: float, price: float, max_notional: float, rule: InstrumentRule) -> float:
    """Shrink ``quantity`` so ``quantity * price`` stays within ``max_notional``."""
    if not max_notional or max_notional <= 0 or not price or price <= 0:
        return quantity
    if quantity * price <= max_notional:
        return quantity
    capped = round(round_down_to_step(max_notional / price, rule.qty_step), rule.decimals)
    if capped * price > max_notional and rule.qty_step > 0:
        capped = round(capped - rule.qty_step, rule.decimals)
    return capped
