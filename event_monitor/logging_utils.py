from __future__ import annotations

import json
import logging
import re
from datetime import datetime
from zoneinfo import ZoneInfo

LOGGER_NAME = "event_monitor"
LOG_FORMAT = "[%(asctime)s] [%(levelname)s] %(name)s %(message)s"
LOG_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


class TimezoneFormatter(logging.Formatter):
    """Renders asctime in a fixed IANA timezone instead of server local time."""

    def __init__(self, fmt: str, datefmt: str, *, tz_name: str = "Asia/Shanghai") -> None:
        super().__init__(fmt=fmt, datefmt=datefmt)
        self.tz = ZoneInfo(tz_name)

    def formatTime(self, record: logging.LogRecord, datefmt: str | None = None) -> str:
        dt = datetime.fromtimestamp(record.created, tz=self.tz)
        if datefmt:
            return dt.strftime(datefmt)
        return dt.isoformat()


def _build_formatter(timezone: str) -> TimezoneFormatter:
    return TimezoneFormatter(fmt=LOG_FORMAT, datefmt=LOG_DATE_FORMAT, tz_name=timezone)


def setup_logging(log_level: str = "INFO", timezone: str = "Asia/Shanghai") -> logging.Logger:
    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(getattr(logging, log_level.upper(), logging.INFO))
    logger.propagate = False

    if logger.handlers:
        for handler in logger.handlers:
            if isinstance(handler.formatter, TimezoneFormatter):
                handler.setFormatter(_build_formatter(timezone))
        return logger

    handler = logging.StreamHandler()
    handler.setFormatter(_build_formatter(timezone))
    logger.addHandler(handler)
    return logger


def log_event(event: str, **fields: object) -> str:
    payload = {"event": event, **fields}
    return json.dumps(payload, ensure_ascii=False, sort_keys=True, default=str)


def redact_sensitive_text(value: object) -> str:
    text = str(value)
    patterns = (
        # Telegram Bot API paths embed the token: /bot123456:AAE.../sendMessage
        (r"(/bot)(\d+:[A-Za-z0-9_-]+)", r"\1***"),
        (r"(?i)(token=)([^&\s]+)", r"\1***"),
        (r"(?i)(telegram_bot_token\s*[=:]\s*)([^\s,}]+)", r"\1***"),
    )
    for pattern, replacement in patterns:
        text = re.sub(pattern, replacement, text)
    return text
