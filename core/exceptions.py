"""
core/exceptions.py
------------------
Error taxonomy for the alert-to-order pipeline.  Everything raised on purpose
derives from AlertBotError so callers can tell business rejections from bugs.
"""
from __future__ import annotations

from typing import Any, Dict, Optional


class AlertBotError(Exception):
    pass


class ConfigError(AlertBotError):
    pass


class ValidationError(AlertBotError):
    """Bad input parameters. Never retried."""


class InvalidStopLossError(ValidationError):
    """Stop-loss on the wrong side of the entry price."""


class MetricsInputError(ValidationError):
    pass


class NotFoundError(AlertBotError):
    pass


class PositionConflictError(AlertBotError):
    """An open trade already exists for the (bot, symbol) pair."""


class RiskGateDenied(AlertBotError):
    """Explicit business rejection by the risk gate (not a system fault)."""

    def __init__(self, reason: str, details: Optional[Dict[str, Any]] = None):
        self.reason = reason
        self.details = details or {}
        super().__init__(f"{reason}: {self.details}")


class ExchangeApiError(AlertBotError):
    """HTTP or exchange-level (retCode != 0) failure."""

    def __init__(
        self,
        message: str,
        *,
        status: Optional[int] = None,
        code: Optional[int] = None,
    ):
        self.status = status
        self.code = code
        self.message = message
        super().__init__(f"status={status} code={code}: {message}")
