"""
trade_engine.py
---------------
Trade lifecycle state machine per (bot, symbol).

* open  : risk gate -> instrument rule -> quantity -> reserve Trade -> order
          -> Trade(state=open) with order id and fill
* close : locate the open Trade -> flatten it ourselves when the exchange holds
          no SL/TP -> realised PnL + metrics -> Trade(state=closed)

A Trade only ever moves open -> closed.  Its row is reserved (status Pending)
before the open order is sent and removed again if that order fails.  Exchange
calls are made at most once per alert and never retried here.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional

from core.exceptions import (
    ExchangeApiError,
    MetricsInputError,
    NotFoundError,
    PositionConflictError,
    ValidationError,
)
from models.alert import AlertSignal
from models.bot import BotConfig
from models.instrument import InstrumentRule
from models.trade import STATE_CLOSED, STATUS_PENDING, OrderRequest, OrderResult, Trade
from modules.audit_log import AuditLog
from modules.instrument import default_instrument_rule
from modules.position_sizer import adjust_quantity, calculate_position_size, cap_to_notional
from modules.risk_gate import RiskGate
from modules.simulation import SimulatedExecution
from modules.trade_metrics import calculate_trade_metrics

logger = logging.getLogger(__name__)


@dataclass
class EngineSettings:
    market_fee_percentage: float = 0.055
    limit_fee_percentage: float = 0.02
    close_fee_rate: float = 0.001
    default_min_qty: float = 0.001
    default_qty_step: float = 0.001
    default_max_risk: float = 10.0


@dataclass
class AlertOutcome:
    action: str                       # "opened" | "closed" | "duplicate"
    trade_id: str
    order_id: Optional[str] = None
    status: Optional[str] = None
    test_mode: bool = False
    quantity: Optional[float] = None
    realized_pnl: Optional[float] = None
    fees: float = 0.0
    close_reason: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def opposite_side(side: str) -> str:
    return "Sell" if side == "Buy" else "Buy"


def estimate_close_pnl(side: str, entry: float, exit_price: float, quantity: float, fee_rate: float) -> tuple[float, float]:
    """(net pnl, fee) for a close at ``exit_price`` with the fee on the exit notional."""
    gross = (exit_price - entry) * quantity
    if side == "Sell":
        gross = -gross
    fee = exit_price * quantity * fee_rate
    return gross - fee, fee


def price_from_percent(reference: float, pct: float, side: str, *, below: bool) -> float:
    """``pct`` percent away from ``reference``; ``below`` is from a Buy's view."""
    sign = -1 if below else 1
    if side == "Sell":
        sign = -sign
    return reference * (1 + sign * pct / 100)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class TradeEngine:
    def __init__(
        self,
        store,
        client,
        *,
        audit: Optional[AuditLog] = None,
        settings: Optional[EngineSettings] = None,
        simulator: Optional[SimulatedExecution] = None,
        risk_gate: Optional[RiskGate] = None,
        schedule_reconciliation: Optional[Callable[[str], None]] = None,
        clock: Callable[[], datetime] = _utc_now,
        id_factory: Callable[[], str] = lambda: uuid.uuid4().hex,
    ):
        self.store = store
        self.client = client
        self.audit = audit or AuditLog(store)
        self.settings = settings or EngineSettings()
        self.simulator = simulator or SimulatedExecution()
        self.risk_gate = risk_gate or RiskGate(store, self.audit)
        self.schedule_reconciliation = schedule_reconciliation
        self.clock = clock
        self.id_factory = id_factory

    # ------------------------------------------------------------------ #
    def process_alert(self, bot: BotConfig, alert: AlertSignal, *, dedup_key: Optional[str] = None) -> AlertOutcome:
        if alert.is_close:
            return self.close_trade(bot, alert)
        return self.open_trade(bot, alert, dedup_key=dedup_key)

    # ------------------------------------------------------------------ #
    # OPEN
    # ------------------------------------------------------------------ #
    def open_trade(self, bot: BotConfig, alert: AlertSignal, *, dedup_key: Optional[str] = None) -> AlertOutcome:
        audit = self.audit.bind(bot_id=bot.id, user_id=bot.user_id)
        symbol = self._symbol(bot, alert)
        side = alert.side or bot.default_side or "Buy"
        order_type = alert.order_type or bot.default_order_type or "Market"
        audit.info("Processing OPEN trade signal", {"symbol": symbol, "side": side})

        if dedup_key:
            seen = self.store.find_trade_by_dedup_key(dedup_key)
            if seen is not None:
                return self._duplicate(bot, seen, dedup_key, audit)

        existing = self.store.find_open_trade(bot.id, symbol)
        if existing is not None:
            audit.warning("Open trade already exists", {"symbol": symbol}, trade_id=existing.id)
            raise PositionConflictError(f"trade {existing.id} is still open for {bot.id}/{symbol}")

        decision = self.risk_gate.check(bot, alert, now=self.clock())
        audit.info("Risk checks passed", asdict(decision))

        rule = self._instrument_rule(bot, symbol, audit)
        ref_price = alert.price or self._last_price(bot, alert, symbol, audit)
        quantity = self._quantity(bot, alert, side, order_type, rule, ref_price, audit)

        stop_loss = alert.stop_loss
        if stop_loss is None and bot.default_stop_loss and ref_price:
            stop_loss = price_from_percent(ref_price, bot.default_stop_loss, side, below=True)
        take_profit = alert.take_profit
        if take_profit is None and bot.default_take_profit and ref_price:
            take_profit = price_from_percent(ref_price, bot.default_take_profit, side, below=False)

        order = OrderRequest(
            symbol=symbol,
            side=side,
            order_type=order_type,
            quantity=quantity,
            price=alert.price,
            stop_loss=stop_loss,
            take_profit=take_profit,
        )
        audit.info("Order parameters prepared", asdict(order))

        # the row is reserved before the order goes out: the unique indexes on
        # (bot, symbol, open) and dedup_key turn a concurrent duplicate away here
        now = self.clock().isoformat()
        trade = Trade(
            id=self.id_factory(),
            bot_id=bot.id,
            user_id=bot.user_id,
            symbol=symbol,
            side=side,
            order_type=order_type,
            quantity=quantity,
            price=None,
            order_id=None,
            status=STATUS_PENDING,
            stop_loss=stop_loss,
            take_profit=take_profit,
            details={"requested_price": alert.price, "reference_price": ref_price},
            dedup_key=dedup_key,
            created_at=now,
            updated_at=now,
        )
        try:
            self.store.create_trade(trade)
        except PositionConflictError:
            seen = self.store.find_trade_by_dedup_key(dedup_key) if dedup_key else None
            if seen is not None:
                return self._duplicate(bot, seen, dedup_key, audit)
            audit.warning("Open trade already exists", {"symbol": symbol})
            raise

        try:
            result = self._submit(bot, order, audit, simulated=lambda: self.simulator.open_order(order), trade_id=trade.id)
        except Exception:
            self.store.delete_trade(trade.id)
            raise

        entry_price = self._fill_price(result, audit, trade_id=trade.id)
        realized_pnl, fees, pnl_source = None, 0.0, None
        if bot.test_mode:
            realized_pnl, fees = self.simulator.random_open_pnl(side, entry_price or ref_price or 0.0, result.qty)
            pnl_source = "simulated"

        try:
            self.store.update_trade(
                trade.id,
                quantity=result.qty,
                price=entry_price,
                order_id=result.order_id,
                status=result.status,
                realized_pnl=realized_pnl,
                pnl_source=pnl_source,
                fees=fees,
                updated_at=self.clock().isoformat(),
            )
        except Exception as exc:
            audit.error(
                "Failed to save trade to database",
                {"error": str(exc), "order_id": result.order_id},
                trade_id=trade.id,
            )
            raise

        self._bump_bot(bot, audit, trade_count_delta=1, pnl_delta=realized_pnl or 0.0, last_trade_at=now)
        audit.info(
            "Trade processing completed successfully",
            {"order_id": result.order_id, "status": result.status},
            trade_id=trade.id,
        )
        return AlertOutcome(
            action="opened",
            trade_id=trade.id,
            order_id=result.order_id,
            status=result.status,
            test_mode=bot.test_mode,
            quantity=result.qty,
            realized_pnl=realized_pnl,
            fees=fees,
        )

    def _duplicate(self, bot: BotConfig, seen: Trade, dedup_key: str, audit: AuditLog) -> AlertOutcome:
        audit.warning("Duplicate alert ignored", {"dedup_key": dedup_key}, trade_id=seen.id)
        return AlertOutcome(
            action="duplicate",
            trade_id=seen.id,
            order_id=seen.order_id,
            status=seen.status,
            test_mode=bot.test_mode,
            quantity=seen.quantity,
        )

    # ------------------------------------------------------------------ #
    # CLOSE
    # ------------------------------------------------------------------ #
    def close_trade(self, bot: BotConfig, alert: AlertSignal) -> AlertOutcome:
        audit = self.audit.bind(bot_id=bot.id, user_id=bot.user_id)
        symbol = self._symbol(bot, alert)
        audit.info("Processing CLOSE trade signal", {"symbol": symbol})

        trade = self.store.find_open_trade(bot.id, symbol)
        if trade is None:
            audit.error("No matching open trade found to close", {"symbol": symbol})
            raise NotFoundError(f"no open trade for {bot.id}/{symbol}")
        if trade.status == STATUS_PENDING:
            audit.warning("Open order is still being placed", {"symbol": symbol}, trade_id=trade.id)
            raise PositionConflictError(f"trade {trade.id} has no confirmed order yet")

        previous_pnl = trade.realized_pnl or 0.0
        realized_pnl = alert.realized_pnl
        fees = trade.fees or 0.0
        details = dict(trade.details or {})
        if realized_pnl is not None:
            details["pnl_supplied"] = True
        close_result: Optional[OrderResult] = None

        if not trade.has_exchange_exits:
            # nothing on the exchange will close this position: flatten it
            order = OrderRequest(
                symbol=symbol,
                side=opposite_side(trade.side),
                order_type="Market",
                quantity=trade.quantity,
                price=alert.price,
                reduce_only=True,
            )
            close_result = self._submit(
                bot,
                order,
                audit,
                simulated=lambda: self.simulator.close_order(order, trade.price),
                trade_id=trade.id,
            )
            exit_price = self._fill_price(close_result, audit, trade_id=trade.id)
            close_reason = alert.close_reason or "signal"
        else:
            exit_price = alert.price
            close_reason = alert.close_reason or self._infer_close_reason(trade, exit_price, realized_pnl)

        if realized_pnl is None and exit_price and trade.price:
            realized_pnl, close_fee = estimate_close_pnl(
                trade.side, trade.price, exit_price, trade.quantity, self.settings.close_fee_rate
            )
            fees += close_fee

        if close_result is not None:
            audit.info(
                "Close order executed",
                {"order_id": close_result.order_id, "price": exit_price, "pnl": realized_pnl},
                trade_id=trade.id,
            )
        else:
            audit.info(
                f"Trade closed by {close_reason}",
                {"reason": close_reason, "pnl": realized_pnl},
                trade_id=trade.id,
            )

        if realized_pnl is None:
            # no price to estimate from; a simulated figure stays, a live one
            # is left for reconciliation
            audit.warning("Realized PnL not estimated, no exit price known", {"exit_price": exit_price}, trade_id=trade.id)
            realized_pnl = trade.realized_pnl
            pnl_source = trade.pnl_source
        else:
            pnl_source = "simulated" if bot.test_mode else "estimated"

        now = self.clock()
        metrics = self._metrics(bot, trade, realized_pnl, fees, now, audit)

        try:
            self.store.update_trade(
                trade.id,
                state=STATE_CLOSED,
                close_reason=close_reason,
                realized_pnl=realized_pnl,
                pnl_source=pnl_source,
                exit_price=exit_price,
                fees=fees,
                close_order_id=close_result.order_id if close_result else None,
                details=details,
                trade_metrics=metrics,
                closed_at=now.isoformat(),
                updated_at=now.isoformat(),
            )
        except Exception as exc:
            audit.error("Failed to update trade record", {"error": str(exc)}, trade_id=trade.id)
            raise

        if realized_pnl is not None and realized_pnl != previous_pnl:
            self._bump_bot(bot, audit, pnl_delta=realized_pnl - previous_pnl)

        if not bot.test_mode and self.schedule_reconciliation is not None:
            try:
                self.schedule_reconciliation(trade.id)
            except Exception as exc:
                audit.error("Failed to schedule PnL reconciliation", {"error": str(exc)}, trade_id=trade.id)

        return AlertOutcome(
            action="closed",
            trade_id=trade.id,
            order_id=close_result.order_id if close_result else trade.order_id,
            status=close_result.status if close_result else trade.status,
            test_mode=bot.test_mode,
            quantity=trade.quantity,
            realized_pnl=realized_pnl,
            fees=fees,
            close_reason=close_reason,
        )

    # ------------------------------------------------------------------ #
    # helpers
    # ------------------------------------------------------------------ #
    @staticmethod
    def _symbol(bot: BotConfig, alert: AlertSignal) -> str:
        symbol = (alert.symbol or bot.symbol or "").upper()
        if not symbol:
            raise ValidationError("alert has no symbol and the bot has no default")
        return symbol

    @staticmethod
    def _infer_close_reason(trade: Trade, exit_price: Optional[float], pnl: Optional[float]) -> str:
        if trade.stop_loss and exit_price:
            hit_stop = exit_price <= trade.stop_loss if trade.side == "Buy" else exit_price >= trade.stop_loss
            return "stop_loss" if hit_stop else "take_profit"
        if trade.stop_loss and pnl is not None and pnl < 0:
            return "stop_loss"
        return "take_profit"

    def _instrument_rule(self, bot: BotConfig, symbol: str, audit: AuditLog) -> InstrumentRule:
        try:
            return self.client.get_instrument_rule(symbol)
        except ExchangeApiError as exc:
            if not bot.test_mode:
                audit.error("Failed to fetch instrument info", {"error": str(exc), "symbol": symbol})
                raise
            audit.warning(
                "Instrument info unavailable, using default rule for test trade",
                {"error": str(exc), "symbol": symbol},
            )
            return default_instrument_rule(symbol, self.settings.default_min_qty, self.settings.default_qty_step)

    def _last_price(self, bot: BotConfig, alert: AlertSignal, symbol: str, audit: AuditLog) -> Optional[float]:
        wants_price = (
            (bot.position_sizing_enabled and (alert.stop_loss or bot.default_stop_loss))
            or bot.default_stop_loss
            or bot.default_take_profit
            or bot.max_position_size
        )
        if not wants_price:
            return None
        try:
            return self.client.get_last_price(symbol)
        except ExchangeApiError as exc:
            audit.warning("Could not fetch current market price", {"error": str(exc), "symbol": symbol})
            return None

    def _fill_price(self, result: OrderResult, audit: AuditLog, *, trade_id: Optional[str] = None) -> Optional[float]:
        """Fill price of ``result``, else the last traded price, else None.

        An order that is not filled yet reports no price; 0 is never used as one.
        """
        if result.price and result.price > 0:
            return result.price
        try:
            price = self.client.get_last_price(result.symbol)
        except ExchangeApiError as exc:
            audit.warning(
                "No fill price and no market price for order",
                {"order_id": result.order_id, "error": str(exc)},
                trade_id=trade_id,
            )
            return None
        audit.warning(
            "No fill price reported, using last market price",
            {"order_id": result.order_id, "price": price},
            trade_id=trade_id,
        )
        return price if price and price > 0 else None

    def _quantity(
        self,
        bot: BotConfig,
        alert: AlertSignal,
        side: str,
        order_type: str,
        rule: InstrumentRule,
        ref_price: Optional[float],
        audit: AuditLog,
    ) -> float:
        quantity = None
        if bot.position_sizing_enabled and (alert.stop_loss or bot.default_stop_loss):
            stop = alert.stop_loss
            if stop is None and ref_price:
                stop = price_from_percent(ref_price, bot.default_stop_loss, side, below=True)
            if ref_price and stop:
                fee_pct = self._fee_percentage(bot, order_type)
                quantity = calculate_position_size(
                    entry_price=ref_price,
                    stop_loss=stop,
                    risk_amount=bot.risk_per_trade,
                    side=side,
                    fee_percentage=fee_pct,
                    min_qty=rule.min_qty,
                    qty_step=rule.qty_step,
                    max_position_size=bot.max_position_size or 0.0,
                    decimals=rule.decimals,
                )
                audit.info(
                    "Position size calculated based on risk parameters",
                    {
                        "entry_price": ref_price,
                        "stop_loss": stop,
                        "risk_amount": bot.risk_per_trade,
                        "side": side,
                        "fee_percentage": fee_pct,
                        "min_qty": rule.min_qty,
                        "qty_step": rule.qty_step,
                        "max_position_size": bot.max_position_size,
                        "quantity": quantity,
                    },
                )
            else:
                audit.info("Missing price data for position sizing, using default quantity adjustment")

        if quantity is None:
            quantity = adjust_quantity(alert.quantity or bot.default_quantity or 0.0, rule)

        if quantity < rule.min_qty:
            quantity = round(rule.min_qty, rule.decimals)

        if bot.max_position_size and ref_price:
            capped = cap_to_notional(quantity, ref_price, bot.max_position_size, rule)
            if capped != quantity:
                audit.warning(
                    "Position size reduced to respect maximum allowed",
                    {"original_quantity": quantity, "limit": bot.max_position_size, "adjusted_quantity": capped},
                )
                if capped < rule.min_qty:
                    raise ValidationError(
                        f"max_position_size {bot.max_position_size} is below the exchange minimum for {rule.symbol}"
                    )
            quantity = capped

        if quantity <= 0:
            raise ValidationError("order quantity resolved to zero")
        return quantity

    def _fee_percentage(self, bot: BotConfig, order_type: str) -> float:
        if order_type == "Limit":
            fee = bot.limit_fee_percentage
            return fee if fee is not None else self.settings.limit_fee_percentage
        fee = bot.market_fee_percentage
        return fee if fee is not None else self.settings.market_fee_percentage

    def _submit(
        self,
        bot: BotConfig,
        order: OrderRequest,
        audit: AuditLog,
        *,
        simulated: Callable[[], OrderResult],
        trade_id: Optional[str] = None,
    ) -> OrderResult:
        if bot.test_mode:
            result = simulated()
            audit.info("Simulated order executed", asdict(result), trade_id=trade_id)
            return result
        try:
            result = self.client.execute_order(order)
        except ExchangeApiError as exc:
            audit.error(
                "Failed to execute order",
                {"error": str(exc), "order_params": asdict(order)},
                trade_id=trade_id,
            )
            raise
        audit.info(
            "Order executed successfully",
            {"order_id": result.order_id, "price": result.price, "status": result.status},
            trade_id=trade_id,
        )
        return result

    def _metrics(
        self,
        bot: BotConfig,
        trade: Trade,
        realized_pnl: Optional[float],
        fees: float,
        now: datetime,
        audit: AuditLog,
    ) -> Optional[Dict[str, Any]]:
        planned = (trade.details or {}).get("requested_price") or trade.price
        try:
            metrics = calculate_trade_metrics(
                symbol=trade.symbol,
                side=trade.side,
                planned_entry=planned,
                actual_entry=trade.avg_entry_price or trade.price,
                take_profit=trade.take_profit,
                stop_loss=trade.stop_loss,
                max_risk=bot.risk_per_trade or self.settings.default_max_risk,
                finished_dollar=realized_pnl,
                open_fee=fees / 2,
                close_fee=fees / 2,
                open_time=trade.created_at,
                close_time=now,
            )
        except MetricsInputError as exc:
            audit.error("Failed to calculate trade metrics", {"error": str(exc)}, trade_id=trade.id)
            return None
        audit.info("Trade metrics calculated", metrics.to_dict(), trade_id=trade.id)
        return metrics.to_dict()

    def _bump_bot(self, bot: BotConfig, audit: AuditLog, **deltas) -> None:
        # the trade row is already written; a failed counter update is not fatal
        try:
            self.store.increment_bot_stats(bot.id, **deltas)
        except Exception as exc:
            audit.error("Failed to update bot statistics", {"error": str(exc), **deltas})
