from __future__ import annotations
from dataclasses import dataclass


@dataclass(frozen=True)
class InstrumentRule:
    """Normalized lot-size constraints for one symbol."""
    symbol: str
    min_qty: float
    qty_step: float
    decimals: int
