from __future__ import annotations

import logging
import threading
from collections.abc import Sequence
from concurrent.futures import ThreadPoolExecutor
from typing import Protocol

from event_monitor.domain.models import DispatchOutcome, DispatchTask, FanOutSummary
from event_monitor.logging_utils import log_event, redact_sensitive_text
from event_monitor.observability import events


class FanOutConfigError(ValueError):
    """Raised when the aggregator is configured with unusable limits."""


class TaskSender(Protocol):
    def send(self, task: DispatchTask) -> DispatchOutcome: ...


class FanOutAggregator:
    def __init__(
        self,
        dispatcher: TaskSender,
        *,
        max_concurrency: int = 1,
        per_task_timeout_sec: float | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        if max_concurrency < 1:
            raise FanOutConfigError(f"max_concurrency must be >= 1. Received: {max_concurrency}")
        if per_task_timeout_sec is not None and per_task_timeout_sec <= 0:
            raise FanOutConfigError(
                f"per_task_timeout_sec must be > 0 when set. Received: {per_task_timeout_sec}"
            )
        self.dispatcher = dispatcher
        self.max_concurrency = max_concurrency
        self.per_task_timeout_sec = per_task_timeout_sec
        self.logger = logger or logging.getLogger("event_monitor.fanout")

    def run(
        self,
        tasks: Sequence[DispatchTask],
    ) -> tuple[list[DispatchOutcome], FanOutSummary]:
        pending = list(tasks)
        if not pending:
            return [], FanOutSummary()

        if self.max_concurrency <= 1 or len(pending) == 1:
            outcomes = [self._execute(task) for task in pending]
        else:
            outcomes = self._run_parallel(pending)

        summary = FanOutSummary.from_outcomes(outcomes)
        self.logger.info(
            log_event(
                events.FANOUT_COMPLETE,
                total=summary.total,
                success=summary.success,
                failed=summary.failed,
                success_rate=summary.success_rate,
            )
        )
        return outcomes, summary

    def _run_parallel(self, tasks: list[DispatchTask]) -> list[DispatchOutcome]:
        max_workers = min(self.max_concurrency, len(tasks))
        self.logger.info(
            log_event(events.FANOUT_PARALLEL, workers=max_workers, task_count=len(tasks))
        )
        with ThreadPoolExecutor(
            max_workers=max_workers,
            thread_name_prefix="dispatch",
        ) as executor:
            futures = [executor.submit(self._execute, task) for task in tasks]
            # Collected in submission order, not completion order.
            return [future.result() for future in futures]

    def _execute(self, task: DispatchTask) -> DispatchOutcome:
        if self.per_task_timeout_sec is None:
            return self._send(task)

        result: list[DispatchOutcome] = []
        worker = threading.Thread(
            target=lambda: result.append(self._send(task)),
            name="dispatch-guarded",
            daemon=True,
        )
        worker.start()
        worker.join(self.per_task_timeout_sec)
        if worker.is_alive() or not result:
            self.logger.warning(
                log_event(
                    events.DISPATCH_TIMEOUT,
                    recipient_id=task.recipient_id,
                    category=task.category.value,
                    source_id=task.source_id,
                    timeout_sec=self.per_task_timeout_sec,
                )
            )
            return DispatchOutcome(
                task=task,
                success=False,
                error_detail=f"timeout after {self.per_task_timeout_sec}s",
            )
        return result[0]

    def _send(self, task: DispatchTask) -> DispatchOutcome:
        try:
            return self.dispatcher.send(task)
        except Exception as exc:
            return DispatchOutcome(
                task=task,
                success=False,
                error_detail=redact_sensitive_text(exc) or exc.__class__.__name__,
            )
