from __future__ import annotations
import json
from typing import Literal, Optional
from pydantic import BaseModel, ConfigDict, Field, field_validator

Side = Literal["Buy", "Sell"]
OrderType = Literal["Market", "Limit"]
AlertState = Literal["open", "close"]

_SIDE_ALIASES = {"buy": "Buy", "long": "Buy", "sell": "Sell", "short": "Sell"}


class AlertSignal(BaseModel):
    """Inbound webhook payload. Missing fields fall back to the bot defaults."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    symbol: Optional[str] = None
    side: Optional[Side] = None
    order_type: Optional[OrderType] = Field(None, alias="orderType")
    quantity: Optional[float] = Field(None, gt=0)
    price: Optional[float] = Field(None, gt=0)
    stop_loss: Optional[float] = Field(None, alias="stopLoss", gt=0)
    take_profit: Optional[float] = Field(None, alias="takeProfit", gt=0)
    state: AlertState = "open"
    realized_pnl: Optional[float] = None
    close_reason: Optional[str] = None

    @field_validator("symbol")
    @classmethod
    def normalize_symbol(cls, v):
        if v is None:
            return v
        v = v.strip().upper()
        return v or None

    @field_validator("side", mode="before")
    @classmethod
    def normalize_side(cls, v):
        if v is None or v == "":
            return None
        side = _SIDE_ALIASES.get(str(v).strip().lower())
        if side is None:
            raise ValueError(f"side must be Buy or Sell, got {v!r}")
        return side

    @field_validator("order_type", mode="before")
    @classmethod
    def normalize_order_type(cls, v):
        if v is None or v == "":
            return None
        return str(v).strip().capitalize()

    @field_validator("state", mode="before")
    @classmethod
    def normalize_state(cls, v):
        if v is None or v == "":
            return "open"
        return str(v).strip().lower()

    # price fields sent as "" by chart templates mean "not set"
    @field_validator("quantity", "price", "stop_loss", "take_profit", "realized_pnl", mode="before")
    @classmethod
    def blank_to_none(cls, v):
        if isinstance(v, str) and not v.strip():
            return None
        return v

    @property
    def is_close(self) -> bool:
        return self.state == "close"

    def canonical_json(self) -> str:
        """Stable serialization used to derive the dedup key."""
        return json.dumps(self.model_dump(by_alias=True, exclude_none=True), sort_keys=True)
