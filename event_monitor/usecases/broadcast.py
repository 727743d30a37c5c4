from __future__ import annotations

import logging
import time
from collections.abc import Callable
from datetime import datetime
from typing import Protocol

from event_monitor.domain.message_builder import build_advertisement_message
from event_monitor.domain.models import (
    AdBreakdown,
    Advertisement,
    BroadcastResult,
    BroadcastSummary,
    Category,
    DispatchTask,
    Member,
)
from event_monitor.logging_utils import log_event, redact_sensitive_text
from event_monitor.observability import events
from event_monitor.services.fanout import FanOutAggregator


class BroadcastSource(Protocol):
    def now(self) -> datetime: ...

    def list_eligible_broadcast_entities(self, now: datetime | None = None) -> list[Advertisement]: ...

    def list_all_members(self) -> list[Member]: ...

    def record_member_broadcast(
        self,
        ad: Advertisement,
        *,
        success: int,
        failed: int,
        now: datetime | None = None,
    ) -> None: ...


class BulkBroadcastJob:
    """Sends every eligible all-member advertisement to each active member once.

    ``total_members`` in the summary counts distinct members touched across all
    advertisements, not the per-ad sum. A failing advertisement is recorded in
    ``errors`` and the job moves on to the next one.
    """

    def __init__(
        self,
        source: BroadcastSource,
        fanout: FanOutAggregator,
        logger: logging.Logger | None = None,
        *,
        monotonic_fn: Callable[[], float] = time.monotonic,
    ) -> None:
        self.source = source
        self.fanout = fanout
        self.logger = logger or logging.getLogger("event_monitor.broadcast")
        self._monotonic = monotonic_fn

    def run(self, now: datetime | None = None) -> BroadcastResult:
        started = self._monotonic()
        current = now or self.source.now()
        entities = self.source.list_eligible_broadcast_entities(current)
        if not entities:
            self.logger.info(log_event(events.BROADCAST_NO_ENTITIES))
            return BroadcastResult(
                summary=BroadcastSummary(),
                execution_time_sec=self._elapsed(started),
            )

        self.logger.info(log_event(events.BROADCAST_START, ads=len(entities)))
        breakdown: list[AdBreakdown] = []
        errors: list[str] = []
        members_touched: set[int] = set()

        for ad in entities:
            try:
                members = self.source.list_all_members()
                if not members:
                    breakdown.append(AdBreakdown(ad.id, 0, 0, 0))
                    errors.append(f"ad {ad.id}: no active members")
                    self.logger.warning(log_event(events.BROADCAST_NO_MEMBERS, ad_id=ad.id))
                    continue

                message = build_advertisement_message(ad)
                tasks = [
                    DispatchTask(
                        recipient_id=str(member.telegram_id),
                        payload=message,
                        category=Category.ADVERTISEMENT,
                        source_id=ad.id,
                    )
                    for member in members
                ]
                _, summary = self.fanout.run(tasks)
                members_touched.update(member.id for member in members)
                entry = AdBreakdown(
                    ad_id=ad.id,
                    total_sent=summary.total,
                    success_count=summary.success,
                    failed_count=summary.failed,
                )
                breakdown.append(entry)
                self.source.record_member_broadcast(
                    ad,
                    success=entry.success_count,
                    failed=entry.failed_count,
                    now=current,
                )
                self.logger.info(
                    log_event(
                        events.BROADCAST_ENTITY_COMPLETE,
                        ad_id=ad.id,
                        total_sent=entry.total_sent,
                        success_count=entry.success_count,
                        failed_count=entry.failed_count,
                        success_rate=entry.success_rate,
                    )
                )
            except Exception as exc:
                detail = redact_sensitive_text(exc) or exc.__class__.__name__
                errors.append(f"ad {ad.id}: {detail}")
                self.logger.error(
                    log_event(events.BROADCAST_ENTITY_FAILED, ad_id=ad.id, error=detail),
                    exc_info=True,
                )

        success = sum(entry.success_count for entry in breakdown)
        failed = sum(entry.failed_count for entry in breakdown)
        result = BroadcastResult(
            summary=BroadcastSummary(
                ads_processed=len(entities),
                total_members=len(members_touched),
                total_messages=success + failed,
                success_count=success,
                failed_count=failed,
                per_ad_breakdown=tuple(breakdown),
            ),
            errors=errors,
            execution_time_sec=self._elapsed(started),
        )
        self.logger.info(
            log_event(
                events.BROADCAST_COMPLETE,
                ads_processed=result.summary.ads_processed,
                total_members=result.summary.total_members,
                total_messages=result.summary.total_messages,
                success_count=result.summary.success_count,
                failed_count=result.summary.failed_count,
                success_rate=result.summary.success_rate,
                error_count=len(errors),
                execution_time=result.execution_time_sec,
            )
        )
        return result

    def _elapsed(self, started: float) -> float:
        return round(self._monotonic() - started, 3)
