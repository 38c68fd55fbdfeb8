"""
audit_log.py
------------
Best-effort side channel: every decision point is mirrored to the Python
logger and appended to the persistence ``logs`` table with correlation ids.
A failing audit write is logged and swallowed; it never fails a trade.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

_LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warning": logging.WARNING,
    "error": logging.ERROR,
}

_SECRET_KEYS = {"api_key", "api_secret", "apiKey", "apiSecret"}


def redact(details: Dict[str, Any]) -> Dict[str, Any]:
    return {k: ("[REDACTED]" if k in _SECRET_KEYS else v) for k, v in details.items()}


class AuditLog:
    def __init__(
        self,
        store=None,
        logger: Optional[logging.Logger] = None,
        *,
        bot_id: Optional[str] = None,
        user_id: Optional[str] = None,
    ):
        self.store = store
        self.logger = logger or logging.getLogger("audit")
        self.bot_id = bot_id
        self.user_id = user_id

    def bind(self, *, bot_id: Optional[str] = None, user_id: Optional[str] = None) -> "AuditLog":
        """Copy with default correlation ids for one alert invocation."""
        return AuditLog(
            self.store,
            self.logger,
            bot_id=bot_id or self.bot_id,
            user_id=user_id or self.user_id,
        )

    def record(
        self,
        level: str,
        message: str,
        details: Optional[Dict[str, Any]] = None,
        *,
        trade_id: Optional[str] = None,
        bot_id: Optional[str] = None,
        user_id: Optional[str] = None,
    ) -> None:
        details = redact(details or {})
        self.logger.log(_LEVELS.get(level, logging.INFO), "%s | %s", message, details)
        if self.store is None:
            return
        try:
            self.store.append_log(
                level,
                message,
                details,
                trade_id=trade_id,
                bot_id=bot_id or self.bot_id,
                user_id=user_id or self.user_id,
            )
        except Exception:
            self.logger.exception("Audit write failed for %r", message)

    def info(self, message: str, details: Optional[Dict[str, Any]] = None, **ids) -> None:
        self.record("info", message, details, **ids)

    def warning(self, message: str, details: Optional[Dict[str, Any]] = None, **ids) -> None:
        self.record("warning", message, details, **ids)

    def error(self, message: str, details: Optional[Dict[str, Any]] = None, **ids) -> None:
        self.record("error", message, details, **ids)
