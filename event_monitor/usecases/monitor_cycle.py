from __future__ import annotations

import logging
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from datetime import datetime
from typing import Protocol

from event_monitor.domain.message_builder import build_startup_message
from event_monitor.domain.models import (
    Advertisement,
    Category,
    DispatchOutcome,
    DispatchTask,
    Event,
    FanOutSummary,
    PollResult,
)
from event_monitor.logging_utils import log_event, redact_sensitive_text
from event_monitor.observability import events
from event_monitor.services.fanout import FanOutAggregator


class EventSource(Protocol):
    def now(self) -> datetime: ...

    def poll_new_events(self, now: datetime | None = None) -> PollResult: ...

    def commit_checkpoint(self, result: PollResult) -> None: ...

    def poll_category(self, category: Category, *, since: datetime, now: datetime) -> list[Event]: ...

    def list_broadcast_groups(self) -> list[str]: ...

    def record_advertisement_sent(
        self,
        ad: Advertisement,
        *,
        success: int,
        failed: int,
        now: datetime | None = None,
    ) -> None: ...


@dataclass
class CycleStats:
    events_detected: int = 0
    processed_count: int = 0
    sent_count: int = 0
    failed_count: int = 0
    group_count: int = 0
    failed_categories: list[str] = field(default_factory=list)


class MonitorCycleUseCase:
    def __init__(
        self,
        source: EventSource,
        fanout: FanOutAggregator,
        logger: logging.Logger | None = None,
    ) -> None:
        self.source = source
        self.fanout = fanout
        self.logger = logger or logging.getLogger("event_monitor.cycle")

    def run_once(self, now: datetime | None = None) -> CycleStats:
        current = now or self.source.now()
        polled = self.source.poll_new_events(current)
        stats = self.dispatch_events(polled.events, now=current)
        stats.failed_categories = sorted(polled.errors)
        # A cycle that raises before this point leaves every checkpoint untouched.
        self.source.commit_checkpoint(polled)
        return stats

    def run_category(self, category: Category, *, since: datetime, now: datetime) -> CycleStats:
        detected = self.source.poll_category(category, since=since, now=now)
        return self.dispatch_events(detected, now=now)

    def dispatch_events(self, detected: Sequence[Event], *, now: datetime) -> CycleStats:
        stats = CycleStats(events_detected=len(detected))
        if not detected:
            return stats

        groups: list[str] = []
        if any(event.target_chat_id is None for event in detected):
            groups = self.source.list_broadcast_groups()
            stats.group_count = len(groups)
            if not groups:
                self.logger.warning(
                    log_event(events.CYCLE_NO_GROUPS, events_detected=len(detected))
                )

        tasks = build_tasks(detected, groups)
        outcomes, summary = self.fanout.run(tasks)
        stats.processed_count = len(outcomes)
        stats.sent_count = summary.success
        stats.failed_count = summary.failed

        self._record_advertisements(detected, outcomes, now=now)
        return stats

    def announce_startup(
        self,
        categories: Iterable[Category],
        interval_sec: int,
    ) -> FanOutSummary | None:
        groups = self.source.list_broadcast_groups()
        message = build_startup_message(categories, interval_sec)
        if not groups:
            self.logger.info(
                log_event(events.STARTUP_NOTICE_NO_GROUPS, text=message.text)
            )
            return None

        tasks = [
            DispatchTask(recipient_id=group, payload=message, category=Category.SYSTEM)
            for group in groups
        ]
        _, summary = self.fanout.run(tasks)
        event_name = events.STARTUP_NOTICE_SENT if summary.failed == 0 else events.STARTUP_NOTICE_FAILED
        self.logger.info(
            log_event(
                event_name,
                groups=len(groups),
                success=summary.success,
                failed=summary.failed,
            )
        )
        return summary

    def _record_advertisements(
        self,
        detected: Sequence[Event],
        outcomes: Sequence[DispatchOutcome],
        *,
        now: datetime,
    ) -> None:
        ads = {
            event.source_id: event.advertisement
            for event in detected
            if event.category == Category.ADVERTISEMENT and event.advertisement is not None
        }
        if not ads:
            return

        counts: dict[int, list[int]] = {}
        for outcome in outcomes:
            if outcome.task.category != Category.ADVERTISEMENT:
                continue
            bucket = counts.setdefault(outcome.task.source_id, [0, 0])
            bucket[0 if outcome.success else 1] += 1

        for ad_id, (success, failed) in counts.items():
            ad = ads.get(ad_id)
            if ad is None:
                continue
            try:
                self.source.record_advertisement_sent(ad, success=success, failed=failed, now=now)
            except Exception as exc:
                self.logger.error(
                    log_event(
                        events.ADVERTISEMENT_RECORD_FAILED,
                        ad_id=ad_id,
                        error=redact_sensitive_text(exc),
                    )
                )


def build_tasks(detected: Iterable[Event], groups: Sequence[str]) -> list[DispatchTask]:
    """One task per (event, recipient); pinned events go only to their own chat."""
    tasks: list[DispatchTask] = []
    for event in detected:
        recipients = [event.target_chat_id] if event.target_chat_id is not None else groups
        tasks.extend(
            DispatchTask(
                recipient_id=recipient,
                payload=event.message,
                category=event.category,
                source_id=event.source_id,
            )
            for recipient in recipients
        )
    return tasks
