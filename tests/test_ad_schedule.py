from __future__ import annotations

from dataclasses import replace
from datetime import date, timedelta

from event_monitor.domain.ad_schedule import (
    SEND_MODE_DAILY,
    SEND_MODE_INTERVAL,
    SEND_MODE_ONCE,
    is_due,
    is_within_validity,
    next_send_time,
    parse_daily_times,
)
from event_monitor.domain.models import Advertisement
from tests.main_test_harness import fixed_now

NOW = fixed_now(2026, 3, 2, 10, 0)


def _ad(**overrides: object) -> Advertisement:
    base = Advertisement(id=1, title="Promo", content="Body", send_mode=SEND_MODE_ONCE)
    return replace(base, **overrides)


def test_validity_window_bounds_are_inclusive_and_optional() -> None:
    today = date(2026, 3, 2)

    assert is_within_validity(_ad(), today) is True
    assert is_within_validity(_ad(start_date=today, end_date=today), today) is True
    assert is_within_validity(_ad(start_date=date(2026, 3, 3)), today) is False
    assert is_within_validity(_ad(end_date=date(2026, 3, 1)), today) is False


def test_once_mode_due_only_after_send_time_and_before_first_send() -> None:
    ad = _ad(send_time=NOW - timedelta(minutes=1))

    assert is_due(ad, now=NOW, last_sent=None, already_sent_once=False) is True
    assert is_due(ad, now=NOW, last_sent=None, already_sent_once=True) is False
    assert is_due(_ad(send_time=NOW + timedelta(minutes=1)), now=NOW, last_sent=None, already_sent_once=False) is False
    assert is_due(_ad(send_time=None), now=NOW, last_sent=None, already_sent_once=False) is False


def test_inactive_or_expired_ads_are_never_due() -> None:
    ad = _ad(send_time=NOW - timedelta(hours=1))

    assert is_due(replace(ad, status=2), now=NOW, last_sent=None, already_sent_once=False) is False
    assert (
        is_due(replace(ad, end_date=date(2026, 3, 1)), now=NOW, last_sent=None, already_sent_once=False)
        is False
    )


def test_daily_mode_first_send_of_day_and_scheduled_slot() -> None:
    ad = _ad(send_mode=SEND_MODE_DAILY, daily_times=("10:00", "18:30"))

    assert is_due(ad, now=NOW, last_sent=None, already_sent_once=False) is True
    sent_earlier_today = NOW - timedelta(hours=2)
    assert is_due(ad, now=NOW, last_sent=sent_earlier_today, already_sent_once=True) is True
    assert is_due(ad, now=NOW + timedelta(seconds=30), last_sent=NOW, already_sent_once=True) is False
    off_slot = NOW + timedelta(minutes=5)
    assert is_due(ad, now=off_slot, last_sent=NOW, already_sent_once=True) is False
    yesterday = NOW - timedelta(days=1)
    assert is_due(ad, now=off_slot, last_sent=yesterday, already_sent_once=True) is True


def test_interval_mode_waits_for_interval() -> None:
    ad = _ad(send_mode=SEND_MODE_INTERVAL, interval_minutes=30)

    assert is_due(ad, now=NOW, last_sent=None, already_sent_once=False) is True
    assert is_due(ad, now=NOW, last_sent=NOW - timedelta(minutes=29), already_sent_once=True) is False
    assert is_due(ad, now=NOW, last_sent=NOW - timedelta(minutes=30), already_sent_once=True) is True
    no_interval = replace(ad, interval_minutes=None)
    assert is_due(no_interval, now=NOW, last_sent=NOW - timedelta(days=1), already_sent_once=True) is False


def test_next_send_time_per_mode() -> None:
    daily = _ad(send_mode=SEND_MODE_DAILY, daily_times=("09:00", "18:30"))
    assert next_send_time(daily, NOW) == fixed_now(2026, 3, 2, 18, 30)
    assert next_send_time(daily, fixed_now(2026, 3, 2, 19, 0)) == fixed_now(2026, 3, 3, 9, 0)

    interval = _ad(send_mode=SEND_MODE_INTERVAL, interval_minutes=45)
    assert next_send_time(interval, NOW) == NOW + timedelta(minutes=45)

    assert next_send_time(_ad(), NOW) is None


def test_parse_daily_times_skips_invalid_slots() -> None:
    assert parse_daily_times("9:05, 18:30,,25:00,abc") == ("09:05", "18:30")
    assert parse_daily_times(None) == ()
