from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from enum import Enum


class Category(str, Enum):
    SYSTEM = "system"
    RECHARGE = "recharge"
    WITHDRAW = "withdraw"
    REDPACKET = "redpacket"
    ADVERTISEMENT = "advertisement"


MONITORED_CATEGORIES: tuple[Category, ...] = (
    Category.RECHARGE,
    Category.WITHDRAW,
    Category.REDPACKET,
    Category.ADVERTISEMENT,
)


def success_rate(success: int, total: int) -> float:
    if total <= 0:
        return 0.0
    return round(success / total * 100.0, 1)


@dataclass(frozen=True)
class Message:
    text: str
    image_url: str | None = None


@dataclass(frozen=True)
class Event:
    """A newly detected business record ready to be announced.

    ``target_chat_id`` pins the event to a single chat; ``None`` means the
    event is announced to every active broadcast group.
    """

    category: Category
    source_id: int
    message: Message
    target_chat_id: str | None = None
    advertisement: Advertisement | None = None


@dataclass(frozen=True)
class PollResult:
    """Events found by one poll and the checkpoint to commit once they are dispatched.

    Only ``polled`` categories may advance; ``errors`` maps each failed
    category value to its error text.
    """

    events: tuple[Event, ...]
    checkpoint: datetime
    polled: tuple[Category, ...] = ()
    errors: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class DispatchTask:
    recipient_id: str
    payload: Message
    category: Category
    source_id: int = 0


@dataclass(frozen=True)
class DispatchOutcome:
    task: DispatchTask
    success: bool
    error_detail: str | None = None


@dataclass(frozen=True)
class FanOutSummary:
    success: int = 0
    failed: int = 0

    @property
    def total(self) -> int:
        return self.success + self.failed

    @property
    def success_rate(self) -> float:
        return success_rate(self.success, self.total)

    @classmethod
    def from_outcomes(cls, outcomes: list[DispatchOutcome]) -> FanOutSummary:
        success = sum(1 for outcome in outcomes if outcome.success)
        return cls(success=success, failed=len(outcomes) - success)


@dataclass(frozen=True)
class HealthStatus:
    feature_enabled: bool
    transport_ok: bool
    data_store_ok: bool
    cache_ok: bool

    @property
    def ok(self) -> bool:
        return self.feature_enabled and self.transport_ok and self.data_store_ok and self.cache_ok

    def failed_checks(self) -> list[str]:
        checks = {
            "feature_enabled": self.feature_enabled,
            "transport_ok": self.transport_ok,
            "data_store_ok": self.data_store_ok,
            "cache_ok": self.cache_ok,
        }
        return [name for name, passed in checks.items() if not passed]


@dataclass
class CheckCycle:
    sequence_number: int
    started_at: datetime
    duration_ms: int = 0
    events_detected: int = 0
    processed_count: int = 0
    sent_count: int = 0
    failed_count: int = 0
    failed_categories: tuple[str, ...] = ()
    error: str | None = None

    def to_log_fields(self) -> dict[str, object]:
        return {
            "sequence_number": self.sequence_number,
            "started_at": self.started_at.isoformat(),
            "duration_ms": self.duration_ms,
            "events_detected": self.events_detected,
            "processed_count": self.processed_count,
            "sent_count": self.sent_count,
            "failed_count": self.failed_count,
            "failed_categories": list(self.failed_categories),
            "error": self.error,
        }


@dataclass(frozen=True)
class MonitorSummary:
    total_processed: int = 0
    total_sent: int = 0
    total_failed: int = 0


@dataclass(frozen=True)
class Advertisement:
    id: int
    title: str
    content: str
    send_mode: int
    status: int = 1
    image_url: str | None = None
    is_all_member: bool = False
    is_sent: bool = False
    send_time: datetime | None = None
    daily_times: tuple[str, ...] = ()
    interval_minutes: int | None = None
    start_date: date | None = None
    end_date: date | None = None
    last_sent_time: datetime | None = None
    last_member_sent_time: datetime | None = None


@dataclass(frozen=True)
class Member:
    id: int
    telegram_id: int
    username: str | None = None


@dataclass(frozen=True)
class AdBreakdown:
    ad_id: int
    total_sent: int
    success_count: int
    failed_count: int

    @property
    def success_rate(self) -> float:
        return success_rate(self.success_count, self.total_sent)


@dataclass(frozen=True)
class BroadcastSummary:
    ads_processed: int = 0
    total_members: int = 0
    total_messages: int = 0
    success_count: int = 0
    failed_count: int = 0
    per_ad_breakdown: tuple[AdBreakdown, ...] = ()

    @property
    def success_rate(self) -> float:
        return success_rate(self.success_count, self.total_messages)


@dataclass(frozen=True)
class BroadcastResult:
    summary: BroadcastSummary
    errors: list[str] = field(default_factory=list)
    execution_time_sec: float = 0.0

    @property
    def informational(self) -> bool:
        return self.summary.ads_processed == 0

    def to_report(self) -> dict[str, object]:
        summary = self.summary
        return {
            "summary": {
                "ads_processed": summary.ads_processed,
                "total_members": summary.total_members,
                "total_messages": summary.total_messages,
                "success_count": summary.success_count,
                "failed_count": summary.failed_count,
                "success_rate": summary.success_rate,
            },
            "advertisements": [
                {
                    "id": entry.ad_id,
                    "total_sent": entry.total_sent,
                    "success_count": entry.success_count,
                    "failed_count": entry.failed_count,
                    "success_rate": entry.success_rate,
                }
                for entry in summary.per_ad_breakdown
            ],
            "errors": list(self.errors),
            "execution_time": self.execution_time_sec,
        }
