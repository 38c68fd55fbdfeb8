"""
reconciliation.py
-----------------
Replaces the estimated PnL of a closed trade with the exchange's closed-PnL
record, matched by order id.  Safe to run repeatedly: once a trade carries an
exchange figure it is skipped.  Test-mode trades never reach the exchange:
their estimate is recomputed locally unless the close alert supplied the PnL.
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from core.exceptions import AlertBotError, MetricsInputError
from models.bot import BotConfig, ExchangeCredential
from models.trade import Trade
from modules.audit_log import AuditLog
from modules.trade_engine import EngineSettings, estimate_close_pnl
from modules.trade_metrics import calculate_trade_metrics

logger = logging.getLogger(__name__)

UPDATED = "updated"
SKIPPED = "skipped"
NOT_FOUND = "not_found"
SIMULATED = "simulated"
FAILED = "failed"


@dataclass
class ReconcileOutcome:
    trade_id: str
    status: str
    message: str = ""
    realized_pnl: Optional[float] = None
    avg_entry_price: Optional[float] = None
    avg_exit_price: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def _float(value: Any) -> Optional[float]:
    if value in (None, ""):
        return None
    return float(value)


class ReconciliationWorker:
    def __init__(
        self,
        store,
        client_factory: Callable[[ExchangeCredential, bool], Any],
        credential_provider: Callable[[BotConfig], ExchangeCredential],
        *,
        audit: Optional[AuditLog] = None,
        settings: Optional[EngineSettings] = None,
        closed_pnl_limit: int = 50,
        closed_pnl_max_pages: int = 5,
    ):
        self.store = store
        self.client_factory = client_factory
        self.credential_provider = credential_provider
        self.audit = audit or AuditLog(store)
        self.settings = settings or EngineSettings()
        self.closed_pnl_limit = closed_pnl_limit
        self.closed_pnl_max_pages = closed_pnl_max_pages

    # ------------------------------------------------------------------ #
    def reconcile(self, trade_id: str) -> ReconcileOutcome:
        """Raises NotFoundError for an unknown trade and ExchangeApiError on
        transport failures; everything else is reported in the outcome."""
        trade = self.store.get_trade(trade_id)
        bot = self.store.get_bot(trade.bot_id)
        audit = self.audit.bind(bot_id=bot.id, user_id=bot.user_id)

        if trade.is_open:
            return ReconcileOutcome(trade_id, SKIPPED, "trade is still open", trade.realized_pnl)

        if bot.test_mode:
            return self._recompute_simulated(trade, bot, audit)

        if trade.pnl_is_authoritative:
            audit.info(
                "Trade already has PnL data, skipping update",
                {"realized_pnl": trade.realized_pnl},
                trade_id=trade.id,
            )
            return ReconcileOutcome(trade_id, SKIPPED, "already reconciled", trade.realized_pnl)

        credential = self.credential_provider(bot)
        client = self.client_factory(credential, bot.test_mode)
        wanted = [oid for oid in (trade.close_order_id, trade.order_id) if oid]
        try:
            records = client.get_closed_pnl(
                trade.symbol,
                order_id=wanted[0] if wanted else None,
                limit=self.closed_pnl_limit,
                max_pages=self.closed_pnl_max_pages,
            )
        except AlertBotError as exc:
            audit.error("Failed to fetch closed PnL from Bybit API", {"error": str(exc)}, trade_id=trade.id)
            raise

        match = next((r for oid in wanted for r in records if r.get("orderId") == oid), None)
        if match is None:
            audit.warning(
                "No matching closed PnL found in Bybit API response",
                {"order_ids": wanted, "records": len(records)},
                trade_id=trade.id,
            )
            return ReconcileOutcome(trade_id, NOT_FOUND, "no matching closed PnL record", trade.realized_pnl)

        return self._apply(trade, bot, match, audit)

    def sweep(self, limit: int = 100) -> List[ReconcileOutcome]:
        """Retry path for trades whose reconciliation failed or found nothing."""
        outcomes = []
        for trade in self.store.list_unreconciled_trades(limit):
            try:
                outcomes.append(self.reconcile(trade.id))
            except AlertBotError as exc:
                logger.warning("Reconciliation of %s failed: %s", trade.id, exc)
                outcomes.append(ReconcileOutcome(trade.id, FAILED, str(exc), trade.realized_pnl))
        return outcomes

    # ------------------------------------------------------------------ #
    def _apply(self, trade: Trade, bot: BotConfig, record: Dict[str, Any], audit: AuditLog) -> ReconcileOutcome:
        realized = float(record["closedPnl"])
        avg_entry = _float(record.get("avgEntryPrice"))
        avg_exit = _float(record.get("avgExitPrice"))

        open_fee = _float(record.get("openFee"))
        close_fee = _float(record.get("closeFee"))
        fees = (open_fee or 0.0) + (close_fee or 0.0) if open_fee is not None or close_fee is not None else trade.fees

        changes: Dict[str, Any] = {
            "realized_pnl": realized,
            "pnl_source": "exchange",
            "avg_entry_price": avg_entry,
            "avg_exit_price": avg_exit,
            "fees": fees,
            "details": {**(trade.details or {}), "closed_pnl": record},
        }
        metrics = self._metrics(trade, bot, realized, avg_entry, fees, open_fee, close_fee)
        if metrics is not None:
            changes["trade_metrics"] = metrics

        try:
            self.store.update_trade(trade.id, **changes)
        except Exception as exc:
            audit.error("Failed to update trade with PnL data", {"error": str(exc)}, trade_id=trade.id)
            raise

        delta = realized - (trade.realized_pnl or 0.0)
        if delta:
            try:
                self.store.increment_bot_stats(bot.id, pnl_delta=delta)
            except Exception as exc:
                audit.error(
                    "Failed to update bot profit/loss",
                    {"error": str(exc), "pnl_delta": delta},
                    trade_id=trade.id,
                )

        audit.info(
            "Successfully updated trade with PnL data from Bybit API",
            {"realized_pnl": realized, "avg_entry_price": avg_entry, "avg_exit_price": avg_exit},
            trade_id=trade.id,
        )
        return ReconcileOutcome(trade.id, UPDATED, "", realized, avg_entry, avg_exit)

    def _recompute_simulated(self, trade: Trade, bot: BotConfig, audit: AuditLog) -> ReconcileOutcome:
        if (trade.details or {}).get("pnl_supplied") or not trade.exit_price or not trade.price:
            audit.info("Using simulated PnL data for test trade", {"realized_pnl": trade.realized_pnl}, trade_id=trade.id)
            return ReconcileOutcome(trade.id, SIMULATED, "kept recorded PnL", trade.realized_pnl)

        realized, _ = estimate_close_pnl(
            trade.side, trade.price, trade.exit_price, trade.quantity, self.settings.close_fee_rate
        )
        delta = realized - (trade.realized_pnl or 0.0)
        if delta or trade.pnl_source != "simulated":
            self.store.update_trade(trade.id, realized_pnl=realized, pnl_source="simulated")
        if delta:
            try:
                self.store.increment_bot_stats(bot.id, pnl_delta=delta)
            except Exception as exc:
                audit.error("Failed to update bot profit/loss", {"error": str(exc)}, trade_id=trade.id)
        audit.info("Recomputed simulated PnL for test trade", {"realized_pnl": realized}, trade_id=trade.id)
        return ReconcileOutcome(trade.id, SIMULATED, "", realized)

    def _metrics(self, trade, bot, realized, avg_entry, fees, open_fee, close_fee) -> Optional[Dict[str, Any]]:
        try:
            metrics = calculate_trade_metrics(
                symbol=trade.symbol,
                side=trade.side,
                planned_entry=(trade.details or {}).get("requested_price") or trade.price,
                actual_entry=avg_entry or trade.price,
                take_profit=trade.take_profit,
                stop_loss=trade.stop_loss,
                max_risk=bot.risk_per_trade or self.settings.default_max_risk,
                finished_dollar=realized,
                open_fee=open_fee if open_fee is not None else fees / 2,
                close_fee=close_fee if close_fee is not None else fees / 2,
                open_time=trade.created_at,
                close_time=trade.closed_at or datetime.now(timezone.utc),
            )
        except MetricsInputError as exc:
            logger.warning("Metrics not refreshed for %s: %s", trade.id, exc)
            return None
        return metrics.to_dict()
