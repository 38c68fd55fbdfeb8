"""
core/initialization.py
----------------------
Loads configuration from .env and wires all runtime components with simple
dependency-injection (DI) overrides.
"""

from __future__ import annotations

import asyncio
import logging
import os
from typing import Dict, Optional

from dotenv import load_dotenv

from core.exceptions import AlertBotError
from models.bot import BotConfig, ExchangeCredential, select_credential
from module.persistence.sqlite import SQLitePersistence
from modules.audit_log import AuditLog
from modules.bybit_client import MAINNET_URL, TESTNET_URL, BybitClient
from modules.reconciliation import ReconciliationWorker
from modules.trade_engine import EngineSettings
from utils.config_manager import ConfigManager
from utils.event_bus import subscribe
from utils.logger import configure_logging, setup_logger

TRADE_CLOSED = "trade_closed"


def load_configuration(env_path: str = "config.env") -> Dict:
    """
    Load settings from an .env-style file and return a structured config dict.
    """
    log = logging.getLogger(__name__)
    load_dotenv(dotenv_path=env_path)

    conf: Dict[str, object] = {
        "BYBIT_API": {
            "mainnet_url": os.getenv("BYBIT_MAINNET_URL", MAINNET_URL),
            "testnet_url": os.getenv("BYBIT_TESTNET_URL", TESTNET_URL),
            "recv_window": int(os.getenv("BYBIT_RECV_WINDOW", "5000")),
            "timeout": float(os.getenv("BYBIT_HTTP_TIMEOUT", "10")),
            "closed_pnl_limit": int(os.getenv("BYBIT_CLOSED_PNL_LIMIT", "50")),
            "closed_pnl_max_pages": int(os.getenv("BYBIT_CLOSED_PNL_MAX_PAGES", "5")),
        },
        "FEES": {
            "market_fee_percentage": float(os.getenv("MARKET_FEE_PERCENTAGE", "0.055")),
            "limit_fee_percentage": float(os.getenv("LIMIT_FEE_PERCENTAGE", "0.02")),
            "close_fee_rate": float(os.getenv("CLOSE_FEE_RATE", "0.001")),
        },
        "DEFAULT_INSTRUMENT": {
            "min_qty": float(os.getenv("DEFAULT_MIN_QTY", "0.001")),
            "qty_step": float(os.getenv("DEFAULT_QTY_STEP", "0.001")),
        },
        "DATABASE": {
            "path": os.getenv("DATABASE_PATH", "data/alertbot.db"),
        },
        "WEBHOOK": {
            "host": os.getenv("WEBHOOK_HOST", "0.0.0.0"),
            "port": int(os.getenv("WEBHOOK_PORT", "8080")),
        },
        "DEDUP_WINDOW_SECONDS": int(os.getenv("DEDUP_WINDOW_SECONDS", "60")),
        "DEFAULT_MAX_RISK": float(os.getenv("DEFAULT_MAX_RISK", "10")),
        "LOGGING": {
            "level": os.getenv("LOG_LEVEL", "INFO"),
            "file": os.getenv("LOG_FILE", "logs/alertbot.log"),
            "max_mb": int(os.getenv("LOG_MAX_MB", "5")),
            "backups": int(os.getenv("LOG_BACKUPS", "5")),
        },
    }

    log.debug("Parsed BYBIT_API: %s", conf["BYBIT_API"])
    log.debug("Parsed FEES: %s", conf["FEES"])
    return conf


def build_engine_settings(config: ConfigManager) -> EngineSettings:
    inst = config.get_default_instrument()
    return EngineSettings(
        market_fee_percentage=config.get_market_fee_percentage(),
        limit_fee_percentage=config.get_limit_fee_percentage(),
        close_fee_rate=config.get_close_fee_rate(),
        default_min_qty=inst["min_qty"],
        default_qty_step=inst["qty_step"],
        default_max_risk=config.get_default_max_risk(),
    )


def initialize_components(
    config: Dict,
    overrides: Optional[Dict[str, object]] = None,
) -> Dict[str, object]:
    """
    Construct and wire together all runtime components (supports DI via overrides).

    Keys you can override:
    {"logger", "store", "client_factory", "credential_provider", "settings",
     "subscribe_reconciliation"}
    """
    overrides = overrides or {}
    config = ConfigManager(config)

    # 1) Logging section first, so loggers created at import time follow it
    if config.get("LOGGING"):
        configure_logging(config.get_logging())
    logger = overrides.get("logger") or setup_logger("AlertBot")

    # 2) Persistence + audit side channel
    store = overrides.get("store") or SQLitePersistence(config.get_db_path())
    audit = AuditLog(store, setup_logger("AlertBot.audit"))

    # 3) Exchange client factory, one client per alert invocation
    client_factory = overrides.get("client_factory")
    if client_factory is None:
        def client_factory(credential: ExchangeCredential, testnet: bool) -> BybitClient:
            return BybitClient(
                credential.api_key,
                credential.api_secret,
                testnet=testnet,
                base_url=config.get_base_url(testnet),
                recv_window=config.get_recv_window(),
                timeout=config.get_http_timeout(),
                logger=logger,
            )

    # 4) Credentials
    credential_provider = overrides.get("credential_provider")
    if credential_provider is None:
        def credential_provider(bot: BotConfig) -> ExchangeCredential:
            return select_credential(store.list_credentials(bot.user_id), bot)

    settings = overrides.get("settings") or build_engine_settings(config)

    # 5) Reconciliation worker, fed by the event bus
    limit, max_pages = config.get_closed_pnl_paging()
    worker = ReconciliationWorker(
        store,
        client_factory,
        credential_provider,
        audit=audit,
        settings=settings,
        closed_pnl_limit=limit,
        closed_pnl_max_pages=max_pages,
    )
    if overrides.get("subscribe_reconciliation", True):
        subscribe(TRADE_CLOSED, make_reconciliation_handler(worker, logger))

    logger.info("✅ Store initialized: %s", store.__class__.__name__)
    logger.info("✅ Reconciliation worker subscribed to %s", TRADE_CLOSED)

    return {
        "config": config,
        "logger": logger,
        "store": store,
        "audit": audit,
        "client_factory": client_factory,
        "credential_provider": credential_provider,
        "settings": settings,
        "reconciliation_worker": worker,
    }


def make_reconciliation_handler(worker: ReconciliationWorker, logger: logging.Logger):
    """Event-bus handler that reconciles one closed trade off the event loop."""

    async def _on_trade_closed(trade_id: str) -> None:
        try:
            outcome = await asyncio.to_thread(worker.reconcile, trade_id)
        except AlertBotError as exc:
            # a later sweep picks it up again
            logger.warning("PnL reconciliation for %s failed: %s", trade_id, exc)
            return
        logger.info("PnL reconciliation for %s: %s", trade_id, outcome.status)

    return _on_trade_closed
