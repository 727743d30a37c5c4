from __future__ import annotations

from datetime import date, datetime, timedelta

from event_monitor.domain.models import Advertisement

SEND_MODE_ONCE = 1
SEND_MODE_DAILY = 2
SEND_MODE_INTERVAL = 3


def is_within_validity(ad: Advertisement, today: date) -> bool:
    if ad.start_date is not None and ad.start_date > today:
        return False
    if ad.end_date is not None and ad.end_date < today:
        return False
    return True


def is_due(
    ad: Advertisement,
    *,
    now: datetime,
    last_sent: datetime | None,
    already_sent_once: bool,
) -> bool:
    """Return whether ``ad`` should be sent at ``now``.

    ``last_sent`` and ``already_sent_once`` are passed in so the same rules serve
    group announcements (``last_sent_time``/``is_sent``) and the all-member
    broadcast (``last_member_sent_time``).
    """
    if ad.status != 1 or not is_within_validity(ad, now.date()):
        return False

    if ad.send_mode == SEND_MODE_ONCE:
        return (
            not already_sent_once
            and ad.send_time is not None
            and ad.send_time <= now
        )

    if ad.send_mode == SEND_MODE_DAILY:
        if now.strftime("%H:%M") in ad.daily_times:
            # At most once per scheduled minute.
            return last_sent is None or last_sent.replace(second=0, microsecond=0) != now.replace(
                second=0, microsecond=0
            )
        # First run of the day sends immediately.
        return last_sent is None or last_sent.date() < now.date()

    if ad.send_mode == SEND_MODE_INTERVAL:
        if last_sent is None:
            return True
        if not ad.interval_minutes:
            return False
        elapsed_minutes = (now - last_sent).total_seconds() / 60
        return elapsed_minutes >= ad.interval_minutes

    return False


def next_send_time(ad: Advertisement, now: datetime) -> datetime | None:
    if ad.send_mode == SEND_MODE_DAILY:
        if not ad.daily_times:
            return None
        current_hm = now.strftime("%H:%M")
        remaining = sorted(slot for slot in ad.daily_times if slot > current_hm)
        if remaining:
            return _at_time(now.date(), remaining[0], reference=now)
        return _at_time(now.date() + timedelta(days=1), min(ad.daily_times), reference=now)

    if ad.send_mode == SEND_MODE_INTERVAL and ad.interval_minutes:
        return now.replace(microsecond=0) + timedelta(minutes=ad.interval_minutes)

    return None


def parse_daily_times(raw: str | None) -> tuple[str, ...]:
    if not raw:
        return ()
    slots: list[str] = []
    for item in raw.split(","):
        text = item.strip()
        if not text:
            continue
        try:
            parsed = datetime.strptime(text, "%H:%M")
        except ValueError:
            continue
        slots.append(parsed.strftime("%H:%M"))
    return tuple(slots)


def _at_time(day: date, hm: str, *, reference: datetime) -> datetime:
    hour, minute = (int(part) for part in hm.split(":"))
    return datetime(day.year, day.month, day.day, hour, minute, tzinfo=reference.tzinfo)
