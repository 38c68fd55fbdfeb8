# utils/logger.py
"""
Named loggers for the alert bot: console output plus one size-rotated log file.

Until ``configure_logging`` is called the LOG_* environment variables apply.
``configure_logging`` takes the LOGGING section of the loaded config and
re-points every logger created through ``setup_logger`` (most of them are
created at import time, before the config is read).
"""
from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from logging.handlers import RotatingFileHandler
from typing import Any, Dict, Mapping, Optional

FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
DATEFMT = "%Y-%m-%d %H:%M:%S"
NOISY_LOGGERS = ("urllib3", "aiohttp.access", "asyncio")


@dataclass(frozen=True)
class LogSettings:
    level: str = "INFO"
    file: Optional[str] = "logs/alertbot.log"
    max_mb: int = 5
    backups: int = 5

    @classmethod
    def from_env(cls) -> "LogSettings":
        return cls.from_mapping(
            {
                "level": os.getenv("LOG_LEVEL"),
                "file": os.getenv("LOG_FILE"),
                "max_mb": os.getenv("LOG_MAX_MB"),
                "backups": os.getenv("LOG_BACKUPS"),
            }
        )

    @classmethod
    def from_mapping(cls, section: Mapping[str, Any]) -> "LogSettings":
        """Missing keys keep the class defaults; an empty ``file`` disables the file."""
        base = cls()
        file = section.get("file")
        return cls(
            level=str(section.get("level") or base.level).upper(),
            file=base.file if file is None else (file or None),
            max_mb=int(section.get("max_mb") or base.max_mb),
            backups=int(section.get("backups") if section.get("backups") is not None else base.backups),
        )

    @property
    def numeric_level(self) -> int:
        return getattr(logging, self.level, logging.INFO)


_settings = LogSettings.from_env()
_file_handler: Optional[logging.Handler] = None
_console_handler: Optional[logging.Handler] = None
# name -> wants console output
_managed: Dict[str, bool] = {}


def _build_handlers(settings: LogSettings) -> None:
    """One shared file handler, so rotation never races between loggers."""
    global _file_handler, _console_handler
    formatter = logging.Formatter(fmt=FORMAT, datefmt=DATEFMT)

    for old in (_file_handler, _console_handler):
        if old is not None:
            old.close()

    _file_handler = None
    if settings.file:
        os.makedirs(os.path.dirname(settings.file) or ".", exist_ok=True)
        _file_handler = RotatingFileHandler(
            settings.file,
            maxBytes=settings.max_mb * 1024 * 1024,
            backupCount=settings.backups,
            encoding="utf-8",
        )
        _file_handler.setFormatter(formatter)
        _file_handler.setLevel(settings.numeric_level)

    _console_handler = logging.StreamHandler()
    _console_handler.setFormatter(formatter)
    _console_handler.setLevel(settings.numeric_level)


def _attach(logger: logging.Logger, to_console: bool) -> None:
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
    logger.setLevel(_settings.numeric_level)
    if _file_handler is not None:
        logger.addHandler(_file_handler)
    if to_console:
        logger.addHandler(_console_handler)
    # handlers live on each managed logger; no second copy via the parent
    logger.propagate = False


def setup_logger(name: str, to_console: bool = True) -> logging.Logger:
    """
    Create/get a logger wired to the shared console and file handlers.
    Re-using the same name returns the same configured logger.
    """
    logger = logging.getLogger(name)
    if name in _managed:
        return logger
    if _console_handler is None:
        _build_handlers(_settings)
    _managed[name] = to_console
    _attach(logger, to_console)

    for noisy in NOISY_LOGGERS:
        logging.getLogger(noisy).setLevel(logging.WARNING)
    return logger


def configure_logging(section: Optional[Mapping[str, Any]] = None) -> LogSettings:
    """Apply the LOGGING config section to every logger made by ``setup_logger``."""
    global _settings
    _settings = LogSettings.from_mapping(section or {})
    _build_handlers(_settings)
    for name, to_console in _managed.items():
        _attach(logging.getLogger(name), to_console)
    return _settings
