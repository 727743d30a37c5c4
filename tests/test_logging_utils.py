from __future__ import annotations

import json
import logging
from pathlib import Path

import pytest

from event_monitor.logging_utils import (
    LOGGER_NAME,
    TimezoneFormatter,
    log_event,
    redact_sensitive_text,
    setup_logging,
)
from event_monitor.observability import events
from event_monitor.repositories.checkpoint_cache import JsonCheckpointCache


@pytest.fixture(autouse=True)
def _restore_event_monitor_logger() -> None:
    logger = logging.getLogger(LOGGER_NAME)
    original_handlers = list(logger.handlers)
    original_level = logger.level
    original_propagate = logger.propagate
    yield
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        if handler not in original_handlers:
            handler.close()
    for handler in original_handlers:
        logger.addHandler(handler)
    logger.setLevel(original_level)
    logger.propagate = original_propagate


def _reset_logger() -> logging.Logger:
    logger = logging.getLogger(LOGGER_NAME)
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
    logger.setLevel(logging.NOTSET)
    logger.propagate = True
    return logger


def test_setup_logging_adds_handler_when_empty() -> None:
    logger = _reset_logger()
    configured = setup_logging(log_level="debug", timezone="Asia/Shanghai")

    assert configured is logger
    assert logger.level == logging.DEBUG
    assert len(logger.handlers) == 1
    formatter = logger.handlers[0].formatter
    assert isinstance(formatter, TimezoneFormatter)
    assert formatter.tz.key == "Asia/Shanghai"
    assert logger.propagate is False


def test_setup_logging_updates_existing_timezone_formatter() -> None:
    logger = _reset_logger()
    setup_logging(log_level="info", timezone="Asia/Shanghai")

    configured = setup_logging(log_level="warning", timezone="UTC")

    assert configured is logger
    assert logger.level == logging.WARNING
    formatter = logger.handlers[0].formatter
    assert isinstance(formatter, TimezoneFormatter)
    assert formatter.tz.key == "UTC"


def test_log_event_serializes_fields() -> None:
    payload = log_event("cycle.complete", sequence_number=3, category="红包")
    decoded = json.loads(payload)
    assert decoded == {"event": "cycle.complete", "sequence_number": 3, "category": "红包"}


def test_redact_sensitive_text_masks_bot_token_in_url() -> None:
    text = (
        "POST https://api.telegram.org/bot123456:AAE-secret_value/sendMessage failed; "
        "token=abc123 TELEGRAM_BOT_TOKEN=999:zzz"
    )

    redacted = redact_sensitive_text(text)

    assert "AAE-secret_value" not in redacted
    assert "abc123" not in redacted
    assert "999:zzz" not in redacted
    assert "/bot***/sendMessage" in redacted
    assert "token=***" in redacted


def test_setup_logging_does_not_break_following_caplog_capture(
    tmp_path: Path,
    caplog: pytest.LogCaptureFixture,
) -> None:
    setup_logging(log_level="info", timezone="UTC")
    cache_file = tmp_path / "cache.json"
    cache_file.write_text("{not json", encoding="utf-8")

    with caplog.at_level(logging.ERROR, logger="test.logging_utils.cache"):
        JsonCheckpointCache(cache_file, logger=logging.getLogger("test.logging_utils.cache"))

    payloads = [json.loads(record.message) for record in caplog.records]
    assert any(payload.get("event") == events.CACHE_INVALID_JSON for payload in payloads)


def test_timezone_formatter_renders_configured_zone() -> None:
    formatter = TimezoneFormatter("%(asctime)s %(message)s", "%Y-%m-%d %H:%M:%S", tz_name="Asia/Shanghai")
    record = logging.LogRecord("x", logging.INFO, __file__, 1, "hello", None, None)
    # 2026-03-02 02:00:00 UTC
    record.created = 1772416800.0

    assert formatter.format(record) == "2026-03-02 10:00:00 hello"
