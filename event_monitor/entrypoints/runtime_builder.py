from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass

from event_monitor.logging_utils import log_event, setup_logging
from event_monitor.observability import events
from event_monitor.repositories.checkpoint_cache import JsonCheckpointCache
from event_monitor.repositories.sqlite_source import SqliteEventSource
from event_monitor.services.dispatcher import Dispatcher
from event_monitor.services.fanout import FanOutAggregator
from event_monitor.services.telegram import RecordingTransport, TelegramTransport, Transport
from event_monitor.settings import Settings
from event_monitor.usecases.broadcast import BulkBroadcastJob
from event_monitor.usecases.monitor_cycle import MonitorCycleUseCase
from event_monitor.usecases.preflight import PreflightChecker


@dataclass(frozen=True)
class ServiceRuntime:
    settings: Settings
    logger: logging.Logger
    cache: JsonCheckpointCache
    source: SqliteEventSource
    transport: Transport
    fanout: FanOutAggregator
    preflight: PreflightChecker
    processor: MonitorCycleUseCase
    broadcast_job: BulkBroadcastJob


def build_transport(
    *,
    settings: Settings,
    logger: logging.Logger,
    telegram_transport_factory: Callable[..., Transport] = TelegramTransport,
    recording_transport_factory: Callable[..., Transport] = RecordingTransport,
) -> Transport:
    if settings.dry_run:
        return recording_transport_factory(logger=logger.getChild("transport"))
    return telegram_transport_factory(
        settings.telegram_bot_token,
        api_base_url=settings.telegram_api_base_url,
        timeout_sec=settings.transport_timeout_sec,
        send_rate_limit_per_sec=settings.transport_send_rate_limit_per_sec,
        logger=logger.getChild("transport"),
    )


def build_runtime(
    settings: Settings,
    *,
    setup_logging_fn: Callable[..., logging.Logger] = setup_logging,
    build_transport_fn: Callable[..., Transport] = build_transport,
    cache_factory: Callable[..., JsonCheckpointCache] = JsonCheckpointCache,
    source_factory: Callable[..., SqliteEventSource] = SqliteEventSource,
) -> ServiceRuntime:
    logger = setup_logging_fn(settings.log_level, settings.timezone)
    cache = cache_factory(
        file_path=settings.checkpoint_cache_file,
        logger=logger.getChild("cache"),
    )
    source = source_factory(
        settings.monitor_db_file,
        cache,
        timezone=settings.timezone,
        categories=settings.enabled_categories,
        check_interval_sec=settings.check_interval_sec,
        check_overlap_sec=settings.check_overlap_sec,
        checkpoint_ttl_sec=settings.checkpoint_ttl_sec,
        logger=logger.getChild("source"),
    )
    transport = build_transport_fn(settings=settings, logger=logger)
    dispatcher = Dispatcher(transport, logger=logger.getChild("dispatcher"))
    fanout = FanOutAggregator(
        dispatcher,
        max_concurrency=settings.dispatch_max_concurrency,
        per_task_timeout_sec=settings.dispatch_task_timeout_sec,
        logger=logger.getChild("fanout"),
    )
    preflight = PreflightChecker(
        feature_enabled=settings.monitor_enabled,
        transport=transport,
        data_store=source,
        cache=cache,
        logger=logger.getChild("preflight"),
    )
    return ServiceRuntime(
        settings=settings,
        logger=logger,
        cache=cache,
        source=source,
        transport=transport,
        fanout=fanout,
        preflight=preflight,
        processor=MonitorCycleUseCase(source, fanout, logger=logger.getChild("cycle")),
        broadcast_job=BulkBroadcastJob(source, fanout, logger=logger.getChild("broadcast")),
    )


def log_startup(runtime: ServiceRuntime) -> None:
    settings = runtime.settings
    runtime.logger.info(
        log_event(
            events.STARTUP_READY,
            monitor_db_file=str(settings.monitor_db_file),
            checkpoint_cache_file=str(settings.checkpoint_cache_file),
            categories=[category.value for category in settings.enabled_categories],
            check_interval_sec=settings.check_interval_sec,
            check_overlap_sec=settings.check_overlap_sec,
            dispatch_max_concurrency=settings.dispatch_max_concurrency,
            dispatch_task_timeout_sec=settings.dispatch_task_timeout_sec,
            transport_send_rate_limit_per_sec=settings.transport_send_rate_limit_per_sec,
            startup_notice_enabled=settings.startup_notice_enabled,
            dry_run=settings.dry_run,
            run_once=settings.run_once,
        )
    )
