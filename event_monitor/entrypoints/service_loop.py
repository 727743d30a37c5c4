from __future__ import annotations

import signal
import threading
from collections.abc import Callable
from datetime import datetime
from enum import Enum
from types import FrameType
from zoneinfo import ZoneInfo

from event_monitor.domain.models import CheckCycle, MonitorSummary
from event_monitor.entrypoints.runtime_builder import ServiceRuntime
from event_monitor.logging_utils import log_event, redact_sensitive_text
from event_monitor.observability import events

MIN_EXCEPTION_BACKOFF_SEC = 1
MAX_EXCEPTION_BACKOFF_SEC = 30
SHUTDOWN_SIGNALS = (signal.SIGTERM, signal.SIGINT)


class LoopState(str, Enum):
    INITIALIZING = "initializing"
    PREFLIGHTING = "preflighting"
    RUNNING = "running"
    SHUTTING_DOWN = "shutting_down"
    STOPPED = "stopped"


_ALLOWED_TRANSITIONS: dict[LoopState, frozenset[LoopState]] = {
    LoopState.INITIALIZING: frozenset({LoopState.PREFLIGHTING, LoopState.STOPPED}),
    LoopState.PREFLIGHTING: frozenset(
        {LoopState.RUNNING, LoopState.SHUTTING_DOWN, LoopState.STOPPED}
    ),
    LoopState.RUNNING: frozenset({LoopState.SHUTTING_DOWN}),
    LoopState.SHUTTING_DOWN: frozenset({LoopState.STOPPED}),
    LoopState.STOPPED: frozenset(),
}


class InvalidTransitionError(RuntimeError):
    """Raised when the loop is asked to move between two unconnected states."""


def _is_fatal_cycle_exception(exc: Exception) -> bool:
    return isinstance(exc, MemoryError)


def _backoff_sec(interval_sec: int) -> int:
    return max(min(interval_sec, MAX_EXCEPTION_BACKOFF_SEC), MIN_EXCEPTION_BACKOFF_SEC)


def apply_resource_limits(runtime: ServiceRuntime) -> None:
    """Lift the soft CPU-time limit to the hard limit so the daemon is never cut off."""
    try:
        import resource
    except ImportError:
        return

    try:
        _, hard = resource.getrlimit(resource.RLIMIT_CPU)
        resource.setrlimit(resource.RLIMIT_CPU, (hard, hard))
    except (OSError, ValueError) as exc:
        runtime.logger.warning(
            log_event(events.STARTUP_RESOURCE_LIMIT_FAILED, error=str(exc))
        )


def _maybe_close_resource(runtime: ServiceRuntime, resource_name: str) -> None:
    resource = getattr(runtime, resource_name, None)
    close_fn = getattr(resource, "close", None)
    if not callable(close_fn):
        return
    try:
        close_fn()
    except Exception:
        # Closing runtime resources is best-effort; shutdown path must not fail here.
        return


def close_runtime_resources(runtime: ServiceRuntime) -> None:
    _maybe_close_resource(runtime, "transport")


class MonitorLoop:
    """Preflight, announce, then poll and dispatch until asked to stop.

    The shutdown request is a ``threading.Event``: signal handlers only set it,
    and the loop observes it at the top of each cycle and during the sleep
    between cycles. A cycle that has started always runs to completion.
    """

    def __init__(
        self,
        runtime: ServiceRuntime,
        *,
        sleep_fn: Callable[[float], object] | None = None,
        now_fn: Callable[[], datetime] | None = None,
        apply_resource_limits_fn: Callable[[ServiceRuntime], None] = apply_resource_limits,
    ) -> None:
        self.runtime = runtime
        self.logger = runtime.logger
        self._shutdown = threading.Event()
        self._sleep = sleep_fn or self._shutdown.wait
        tz = ZoneInfo(runtime.settings.timezone)
        self._now = now_fn or (lambda: datetime.now(tz))
        self._apply_resource_limits = apply_resource_limits_fn
        self.state = LoopState.INITIALIZING
        self.sequence_number = 0
        self.summary = MonitorSummary()

    @property
    def shutdown_requested(self) -> bool:
        return self._shutdown.is_set()

    def request_shutdown(self, reason: str = "requested") -> None:
        if self._shutdown.is_set():
            return
        self._shutdown.set()
        self.logger.info(
            log_event(events.SHUTDOWN_REQUESTED, reason=reason, state=self.state.value)
        )

    def transition(self, target: LoopState) -> None:
        if target not in _ALLOWED_TRANSITIONS[self.state]:
            raise InvalidTransitionError(f"{self.state.value} -> {target.value}")
        previous, self.state = self.state, target
        self.logger.info(
            log_event(events.LOOP_STATE_CHANGED, previous=previous.value, state=target.value)
        )

    def run(self) -> int:
        settings = self.runtime.settings
        self._apply_resource_limits(self.runtime)
        self.transition(LoopState.PREFLIGHTING)
        status = self.runtime.preflight.check()
        if not status.ok:
            self.transition(LoopState.STOPPED)
            return 1

        if self.shutdown_requested:
            return self._stop(0)

        self.transition(LoopState.RUNNING)
        if settings.startup_notice_enabled:
            self._announce_startup()

        while not self.shutdown_requested:
            try:
                cycle = self.run_cycle()
            except Exception as exc:
                self.logger.critical(
                    log_event(events.CYCLE_FATAL_ERROR, error=redact_sensitive_text(exc)),
                    exc_info=True,
                )
                return self._stop(1)

            if settings.run_once:
                self.logger.info(
                    log_event(events.SHUTDOWN_RUN_ONCE_COMPLETE, error=cycle.error)
                )
                return self._stop(0 if cycle.error is None else 1)

            if cycle.error is not None:
                backoff_sec = _backoff_sec(settings.check_interval_sec)
                self.logger.info(
                    log_event(
                        events.CYCLE_BACKOFF,
                        sequence_number=cycle.sequence_number,
                        backoff_sec=backoff_sec,
                    )
                )
                self._sleep(float(backoff_sec))
            elif settings.check_interval_sec > 0:
                self._sleep(float(settings.check_interval_sec))

        return self._stop(0)

    def run_cycle(self) -> CheckCycle:
        self.sequence_number += 1
        cycle = CheckCycle(sequence_number=self.sequence_number, started_at=self._now())
        self.logger.debug(
            log_event(events.CYCLE_START, sequence_number=cycle.sequence_number)
        )
        try:
            stats = self.runtime.processor.run_once(cycle.started_at)
            cycle.events_detected = stats.events_detected
            cycle.processed_count = stats.processed_count
            cycle.sent_count = stats.sent_count
            cycle.failed_count = stats.failed_count
            cycle.failed_categories = tuple(stats.failed_categories)
        except Exception as exc:
            if _is_fatal_cycle_exception(exc):
                raise
            cycle.error = redact_sensitive_text(exc) or exc.__class__.__name__
            self.logger.error(
                log_event(
                    events.CYCLE_ITERATION_FAILED,
                    sequence_number=cycle.sequence_number,
                    error=cycle.error,
                ),
                exc_info=True,
            )

        elapsed = self._now() - cycle.started_at
        cycle.duration_ms = max(int(elapsed.total_seconds() * 1000), 0)
        self.summary = MonitorSummary(
            total_processed=self.summary.total_processed + cycle.processed_count,
            total_sent=self.summary.total_sent + cycle.sent_count,
            total_failed=self.summary.total_failed + cycle.failed_count,
        )
        self.logger.info(log_event(events.CYCLE_COMPLETE, **cycle.to_log_fields()))
        return cycle

    def _announce_startup(self) -> None:
        settings = self.runtime.settings
        try:
            self.runtime.processor.announce_startup(
                settings.enabled_categories,
                settings.check_interval_sec,
            )
        except Exception as exc:
            self.logger.error(
                log_event(events.STARTUP_NOTICE_FAILED, error=redact_sensitive_text(exc))
            )

    def _stop(self, exit_code: int) -> int:
        if self.state != LoopState.SHUTTING_DOWN:
            self.transition(LoopState.SHUTTING_DOWN)
        self.transition(LoopState.STOPPED)
        self.logger.info(
            log_event(
                events.SHUTDOWN_COMPLETE,
                exit_code=exit_code,
                cycles=self.sequence_number,
                total_processed=self.summary.total_processed,
                total_sent=self.summary.total_sent,
                total_failed=self.summary.total_failed,
            )
        )
        return exit_code


def _install_shutdown_signal_handlers(*, loop: MonitorLoop) -> Callable[[], None]:
    previous_handlers: dict[signal.Signals, object] = {}

    def _handle(signum: int, frame: FrameType | None) -> None:
        loop.request_shutdown(reason=signal.Signals(signum).name.lower())

    for sig in SHUTDOWN_SIGNALS:
        previous_handlers[sig] = signal.getsignal(sig)
        signal.signal(sig, _handle)

    def _restore() -> None:
        for sig, previous in previous_handlers.items():
            signal.signal(sig, previous)  # type: ignore[arg-type]

    return _restore


def run_loop(
    runtime: ServiceRuntime,
    *,
    sleep_fn: Callable[[float], object] | None = None,
    now_fn: Callable[[], datetime] | None = None,
    apply_resource_limits_fn: Callable[[ServiceRuntime], None] = apply_resource_limits,
) -> int:
    loop = MonitorLoop(
        runtime,
        sleep_fn=sleep_fn,
        now_fn=now_fn,
        apply_resource_limits_fn=apply_resource_limits_fn,
    )
    restore_signal_handlers: Callable[[], None] = lambda: None
    try:
        restore_signal_handlers = _install_shutdown_signal_handlers(loop=loop)
    except ValueError:
        # signal.signal only works from the main thread.
        pass
    try:
        return loop.run()
    except KeyboardInterrupt:
        loop.request_shutdown(reason="keyboard_interrupt")
        return 0
    except Exception as exc:  # pragma: no cover
        runtime.logger.critical(
            log_event(events.SHUTDOWN_UNEXPECTED_ERROR, error=redact_sensitive_text(exc)),
            exc_info=True,
        )
        return 1
    finally:
        restore_signal_handlers()
        close_runtime_resources(runtime)
