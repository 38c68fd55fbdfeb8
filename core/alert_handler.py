from __future__ import annotations
import asyncio
import hashlib
import json
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional, Union

from pydantic import ValidationError as PydanticValidationError

from core.exceptions import AlertBotError, ValidationError
from models.alert import AlertSignal
from modules.trade_engine import AlertOutcome, TradeEngine
from utils.event_bus import publish
from utils.logger import setup_logger

logger = setup_logger(__name__)

Payload = Union[str, bytes, Dict[str, Any]]


def parse_alert(payload: Payload) -> AlertSignal:
    """JSON text or dict -> AlertSignal; any problem is a ValidationError."""
    if isinstance(payload, (str, bytes)):
        try:
            payload = json.loads(payload)
        except json.JSONDecodeError as exc:
            raise ValidationError(f"Invalid JSON payload: {exc}") from exc
    if not isinstance(payload, dict):
        raise ValidationError("Alert payload must be a JSON object")
    try:
        return AlertSignal.model_validate(payload)
    except PydanticValidationError as exc:
        raise ValidationError(f"Alert validation failed: {exc}") from exc


def make_dedup_key(bot_id: str, alert: AlertSignal, window_seconds: int, now: Optional[datetime] = None) -> str:
    """Same bot + same alert content inside one time bucket -> same key."""
    now = now or datetime.now(timezone.utc)
    bucket = int(now.timestamp()) // max(window_seconds, 1)
    raw = f"{bot_id}|{alert.canonical_json()}|{bucket}"
    return hashlib.sha256(raw.encode()).hexdigest()


def process_alert(
    payload: Payload,
    *,
    bot_id: str,
    components: Dict[str, Any],
    schedule_reconciliation: Optional[Callable[[str], None]] = None,
) -> AlertOutcome:
    """Blocking part of the pipeline: bot lookup, credentials, engine call."""
    store = components["store"]
    audit = components["audit"]

    bot = store.get_bot(bot_id)
    audit = audit.bind(bot_id=bot.id, user_id=bot.user_id)

    try:
        alert = parse_alert(payload)
    except ValidationError as exc:
        audit.error("Failed to parse alert payload", {"error": str(exc)})
        raise
    audit.info("Alert payload parsed successfully", {"payload": alert.model_dump(by_alias=True)})

    try:
        credential = components["credential_provider"](bot)
    except AlertBotError as exc:
        audit.error("API credentials not found", {"error": str(exc)})
        raise
    client = components["client_factory"](credential, bot.test_mode)

    engine = TradeEngine(
        store,
        client,
        audit=audit,
        settings=components["settings"],
        schedule_reconciliation=schedule_reconciliation,
    )
    dedup_key = None
    if not alert.is_close:
        window = components["config"].get_dedup_window() if "config" in components else 60
        dedup_key = make_dedup_key(bot.id, alert, window)
    return engine.process_alert(bot, alert, dedup_key=dedup_key)


async def handle_alert(
    payload: Payload,
    *,
    bot_id: str,
    components: Dict[str, Any],
    publish_fn: Callable[[str, object], None] = publish,
) -> AlertOutcome:
    """Run one alert through the pipeline without blocking the event loop.

    Real closes are handed to the reconciliation worker via the event bus.
    """
    loop = asyncio.get_running_loop()

    def schedule(trade_id: str) -> None:
        loop.call_soon_threadsafe(publish_fn, "trade_closed", trade_id)

    outcome = await asyncio.to_thread(
        process_alert,
        payload,
        bot_id=bot_id,
        components=components,
        schedule_reconciliation=schedule,
    )
    logger.info("🚀 Alert for bot %s -> %s (trade %s)", bot_id, outcome.action, outcome.trade_id)
    return outcome
