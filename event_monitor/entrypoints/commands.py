from __future__ import annotations

import json
import logging
import sqlite3
import sys
from collections.abc import Callable
from dataclasses import asdict
from datetime import timedelta
from typing import TextIO

from event_monitor.domain.models import Category
from event_monitor.entrypoints.runtime_builder import ServiceRuntime
from event_monitor.logging_utils import log_event, redact_sensitive_text, setup_logging
from event_monitor.observability import events
from event_monitor.services.fanout import FanOutConfigError
from event_monitor.settings import Settings, SettingsError

MANUAL_POLL_WINDOW = timedelta(hours=1)


def _load_runtime(
    *,
    settings_from_env: Callable[..., Settings],
    setup_logging_fn: Callable[..., logging.Logger],
    build_runtime_fn: Callable[[Settings], ServiceRuntime],
) -> ServiceRuntime | None:
    bootstrap_logger = setup_logging_fn()
    try:
        settings = settings_from_env()
        return build_runtime_fn(settings)
    except (SettingsError, FanOutConfigError, OSError, sqlite3.Error) as exc:
        bootstrap_logger.critical(
            log_event(events.STARTUP_INVALID_CONFIG, error=redact_sensitive_text(exc))
        )
        return None


def _close_transport(runtime: ServiceRuntime) -> None:
    close_fn = getattr(runtime.transport, "close", None)
    if callable(close_fn):
        close_fn()


def _print_json(payload: dict[str, object], stream: TextIO | None) -> None:
    out = stream or sys.stdout
    out.write(json.dumps(payload, ensure_ascii=False, indent=2, default=str))
    out.write("\n")


def run_service(
    *,
    settings_from_env: Callable[..., Settings] = Settings.from_env,
    setup_logging_fn: Callable[..., logging.Logger] = setup_logging,
    build_runtime_fn: Callable[[Settings], ServiceRuntime],
    log_startup_fn: Callable[[ServiceRuntime], None],
    run_loop_fn: Callable[[ServiceRuntime], int],
) -> int:
    runtime = _load_runtime(
        settings_from_env=settings_from_env,
        setup_logging_fn=setup_logging_fn,
        build_runtime_fn=build_runtime_fn,
    )
    if runtime is None:
        return 1
    log_startup_fn(runtime)
    return run_loop_fn(runtime)


def run_broadcast(
    *,
    settings_from_env: Callable[..., Settings] = Settings.from_env,
    setup_logging_fn: Callable[..., logging.Logger] = setup_logging,
    build_runtime_fn: Callable[[Settings], ServiceRuntime],
    stream: TextIO | None = None,
) -> int:
    runtime = _load_runtime(
        settings_from_env=settings_from_env,
        setup_logging_fn=setup_logging_fn,
        build_runtime_fn=build_runtime_fn,
    )
    if runtime is None:
        return 1

    try:
        result = runtime.broadcast_job.run()
    except Exception as exc:
        runtime.logger.error(
            log_event(events.BROADCAST_FAILED, error=redact_sensitive_text(exc)),
            exc_info=True,
        )
        _print_json({"success": False, "error": redact_sensitive_text(exc)}, stream)
        return 1
    finally:
        _close_transport(runtime)

    report = result.to_report()
    report["success"] = True
    if result.informational:
        report["message"] = "no eligible advertisements"
    _print_json(report, stream)
    return 0


def run_check(
    *,
    settings_from_env: Callable[..., Settings] = Settings.from_env,
    setup_logging_fn: Callable[..., logging.Logger] = setup_logging,
    build_runtime_fn: Callable[[Settings], ServiceRuntime],
    stream: TextIO | None = None,
) -> int:
    runtime = _load_runtime(
        settings_from_env=settings_from_env,
        setup_logging_fn=setup_logging_fn,
        build_runtime_fn=build_runtime_fn,
    )
    if runtime is None:
        return 1

    try:
        status = runtime.preflight.check()
    finally:
        _close_transport(runtime)

    _print_json(
        {
            "ok": status.ok,
            "feature_enabled": status.feature_enabled,
            "transport_ok": status.transport_ok,
            "data_store_ok": status.data_store_ok,
            "cache_ok": status.cache_ok,
            "failed_checks": status.failed_checks(),
        },
        stream,
    )
    return 0 if status.ok else 1


def run_manual_poll(
    category: Category,
    *,
    settings_from_env: Callable[..., Settings] = Settings.from_env,
    setup_logging_fn: Callable[..., logging.Logger] = setup_logging,
    build_runtime_fn: Callable[[Settings], ServiceRuntime],
    stream: TextIO | None = None,
) -> int:
    runtime = _load_runtime(
        settings_from_env=settings_from_env,
        setup_logging_fn=setup_logging_fn,
        build_runtime_fn=build_runtime_fn,
    )
    if runtime is None:
        return 1

    try:
        now = runtime.source.now()
        since = now - MANUAL_POLL_WINDOW
        stats = runtime.processor.run_category(category, since=since, now=now)
    except Exception as exc:
        runtime.logger.error(
            log_event(
                events.CYCLE_ITERATION_FAILED,
                category=category.value,
                error=redact_sensitive_text(exc),
            ),
            exc_info=True,
        )
        _print_json(
            {"success": False, "category": category.value, "error": redact_sensitive_text(exc)},
            stream,
        )
        return 1
    finally:
        _close_transport(runtime)

    payload: dict[str, object] = {"success": True, "category": category.value, **asdict(stats)}
    runtime.logger.info(log_event(events.MANUAL_POLL_COMPLETE, **payload))
    _print_json(payload, stream)
    return 0
