"""
instrument.py
-------------
Adapter that turns the exchange's instrument-info payload into a single
normalized InstrumentRule.  Linear contracts report ``minOrderQty``/``qtyStep``
while spot-style payloads use ``minTrdAmt``/``stepSize``; nothing past this
module should care which one it got.
"""

from __future__ import annotations

import math
from typing import Any, Dict

from core.exceptions import ExchangeApiError
from models.instrument import InstrumentRule


def decimals_from_step(step: str) -> int:
    """Number of fractional digits in the step-size string ("0.001" -> 3)."""
    step = step.strip()
    if "e" in step.lower():
        # scientific notation, e.g. "1e-05"
        return max(0, -int(math.floor(math.log10(float(step)))))
    if "." not in step:
        return 0
    return len(step.split(".", 1)[1])


def instrument_rule_from_info(symbol: str, instrument: Dict[str, Any]) -> InstrumentRule:
    lot = instrument.get("lotSizeFilter") or {}
    min_str = lot.get("minOrderQty") if lot.get("minOrderQty") is not None else lot.get("minTrdAmt")
    step_str = lot.get("qtyStep") if lot.get("qtyStep") is not None else lot.get("stepSize")
    if min_str is None or step_str is None:
        raise ExchangeApiError(f"lot size filter incomplete for {symbol}: {lot}")

    step_str = str(step_str)
    return InstrumentRule(
        symbol=symbol,
        min_qty=float(min_str),
        qty_step=float(step_str),
        decimals=decimals_from_step(step_str),
    )


def default_instrument_rule(symbol: str, min_qty: float, qty_step: float) -> InstrumentRule:
    return InstrumentRule(
        symbol=symbol,
        min_qty=min_qty,
        qty_step=qty_step,
        decimals=decimals_from_step(("%.12f" % qty_step).rstrip("0").rstrip(".")),
    )
