from __future__ import annotations

import logging
from collections.abc import Callable
from typing import Protocol

from event_monitor.domain.models import HealthStatus
from event_monitor.logging_utils import log_event, redact_sensitive_text
from event_monitor.observability import events
from event_monitor.services.telegram import Transport


class DataStore(Protocol):
    def ping(self) -> bool: ...


class ProbeCache(Protocol):
    def is_available(self) -> bool: ...


class PreflightChecker:
    """Runs the four readiness probes before the monitor enters its loop.

    A probe that raises is reported as ``False`` for its field; ``check()``
    itself never raises. Every probe is read-only, so repeated checks leave
    the transport, the data store and the cache unchanged.
    """

    def __init__(
        self,
        *,
        feature_enabled: bool,
        transport: Transport,
        data_store: DataStore,
        cache: ProbeCache,
        logger: logging.Logger | None = None,
    ) -> None:
        self.feature_enabled = feature_enabled
        self.transport = transport
        self.data_store = data_store
        self.cache = cache
        self.logger = logger or logging.getLogger("event_monitor.preflight")

    def check(self) -> HealthStatus:
        status = HealthStatus(
            feature_enabled=bool(self.feature_enabled),
            transport_ok=self._run_probe("transport", self.transport.probe),
            data_store_ok=self._run_probe("data_store", self.data_store.ping),
            cache_ok=self._run_probe("cache", self.cache.is_available),
        )
        if status.ok:
            self.logger.info(log_event(events.PREFLIGHT_COMPLETE, **_status_fields(status)))
        else:
            self.logger.error(
                log_event(
                    events.PREFLIGHT_FAILED,
                    failed_checks=status.failed_checks(),
                    **_status_fields(status),
                )
            )
        return status

    def _run_probe(self, name: str, probe: Callable[[], bool]) -> bool:
        try:
            return bool(probe())
        except Exception as exc:
            self.logger.warning(
                log_event(
                    events.PREFLIGHT_PROBE_FAILED,
                    probe=name,
                    error=redact_sensitive_text(exc) or exc.__class__.__name__,
                )
            )
            return False


def _status_fields(status: HealthStatus) -> dict[str, bool]:
    return {
        "feature_enabled": status.feature_enabled,
        "transport_ok": status.transport_ok,
        "data_store_ok": status.data_store_ok,
        "cache_ok": status.cache_ok,
    }
