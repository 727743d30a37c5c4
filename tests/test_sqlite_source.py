from __future__ import annotations

import json
import sqlite3
from datetime import timedelta
from pathlib import Path

import pytest

from event_monitor.domain.ad_schedule import SEND_MODE_INTERVAL, SEND_MODE_ONCE
from event_monitor.domain.models import Category
from event_monitor.observability import events
from event_monitor.repositories.checkpoint_cache import JsonCheckpointCache
from event_monitor.repositories.sqlite_source import (
    SQLITE_BUSY_TIMEOUT_MS,
    DataSourceError,
    SqliteEventSource,
    checkpoint_key,
    format_timestamp,
)
from tests.main_test_harness import TEST_TIMEZONE, capture_logger, fixed_now

NOW = fixed_now(2026, 3, 2, 10, 0)


def _source(tmp_path: Path, **kwargs: object) -> SqliteEventSource:
    cache = JsonCheckpointCache(tmp_path / "cache.json")
    kwargs.setdefault("now_fn", lambda: NOW)
    return SqliteEventSource(tmp_path / "monitor.db", cache, timezone=TEST_TIMEZONE, **kwargs)


def _ts(minutes_ago: float) -> str:
    return format_timestamp(NOW - timedelta(minutes=minutes_ago))


def _insert(source: SqliteEventSource, table: str, **values: object) -> None:
    columns = ", ".join(values)
    placeholders = ", ".join("?" for _ in values)
    with source._connect() as conn:
        conn.execute(f"INSERT INTO {table} ({columns}) VALUES ({placeholders})", tuple(values.values()))


def test_source_creates_schema_and_pings(tmp_path: Path) -> None:
    source = _source(tmp_path)

    assert source.ping() is True
    with source._connect() as conn:
        tables = {
            row["name"]
            for row in conn.execute("SELECT name FROM sqlite_master WHERE type = 'table'")
        }
        busy_timeout = conn.execute("PRAGMA busy_timeout").fetchone()[0]
    assert {
        "recharges",
        "withdrawals",
        "red_packets",
        "advertisements",
        "members",
        "broadcast_groups",
    } <= tables
    assert busy_timeout == SQLITE_BUSY_TIMEOUT_MS


def test_first_poll_looks_back_interval_plus_overlap_and_advances_checkpoint(
    tmp_path: Path,
) -> None:
    logger, handler = capture_logger("test.sqlite_source.first_run")
    source = _source(tmp_path, check_interval_sec=30, check_overlap_sec=30, logger=logger)
    _insert(source, "recharges", id=1, user_id=10, amount="5.00", status=1, create_time=_ts(0.5))
    _insert(source, "recharges", id=2, user_id=11, amount="9.00", status=1, create_time=_ts(5))
    _insert(source, "withdrawals", id=3, user_id=12, amount="1.00", status=0, create_time=_ts(0.2))

    result = source.poll_new_events(NOW)

    assert [(event.category, event.source_id) for event in result.events] == [
        (Category.RECHARGE, 1),
        (Category.WITHDRAW, 3),
    ]
    assert all(event.target_chat_id is None for event in result.events)
    assert result.errors == {}
    assert source.cache.get(checkpoint_key(Category.RECHARGE)) is None

    source.commit_checkpoint(result)

    for category in result.polled:
        assert source.cache.get(checkpoint_key(category)) == format_timestamp(NOW)
    payloads = [json.loads(message) for message in handler.messages]
    assert payloads[0]["event"] == events.CHECKPOINT_FIRST_RUN


def test_poll_returns_rows_strictly_after_checkpoint_in_creation_order(tmp_path: Path) -> None:
    source = _source(tmp_path)
    source.cache.set(checkpoint_key(Category.RECHARGE), _ts(10))
    _insert(source, "recharges", id=5, user_id=1, amount="1", status=1, create_time=_ts(2))
    _insert(source, "recharges", id=4, user_id=1, amount="1", status=1, create_time=_ts(8))
    _insert(source, "recharges", id=3, user_id=1, amount="1", status=1, create_time=_ts(10))

    detected = source.poll_new_events(NOW).events

    assert [event.source_id for event in detected] == [4, 5]


def test_red_packet_events_target_their_own_chat(tmp_path: Path) -> None:
    source = _source(tmp_path)
    _insert(source, "red_packets", id=8, sender_id=2, chat_id="-100777", amount="8.88", created_at=_ts(0.1))

    detected = source.poll_new_events(NOW).events

    assert len(detected) == 1
    assert detected[0].category == Category.REDPACKET
    assert detected[0].target_chat_id == "-100777"


def test_disabled_categories_are_skipped(tmp_path: Path) -> None:
    source = _source(tmp_path, categories=[Category.WITHDRAW])
    _insert(source, "recharges", id=1, user_id=1, amount="1", status=1, create_time=_ts(0.1))
    _insert(source, "withdrawals", id=2, user_id=1, amount="1", status=1, create_time=_ts(0.1))

    detected = source.poll_new_events(NOW).events

    assert [event.category for event in detected] == [Category.WITHDRAW]


def test_due_advertisements_are_polled_and_recorded(tmp_path: Path) -> None:
    source = _source(tmp_path)
    _insert(
        source,
        "advertisements",
        id=11,
        title="Sale",
        content="Everything 50% off",
        image_url="https://img.example/sale.png",
        send_mode=SEND_MODE_ONCE,
        send_time=_ts(1),
        created_at=_ts(60),
    )
    _insert(
        source,
        "advertisements",
        id=12,
        title="Later",
        content="Not yet",
        send_mode=SEND_MODE_ONCE,
        send_time=format_timestamp(NOW + timedelta(hours=1)),
        created_at=_ts(50),
    )

    detected = source.poll_new_events(NOW).events

    assert [event.source_id for event in detected] == [11]
    ad = detected[0].advertisement
    assert ad is not None
    assert detected[0].message.image_url == "https://img.example/sale.png"

    source.record_advertisement_sent(ad, success=3, failed=1, now=NOW)

    with source._connect() as conn:
        row = conn.execute("SELECT * FROM advertisements WHERE id = 11").fetchone()
    assert row["is_sent"] == 1
    assert row["status"] == 2
    assert row["success_count"] == 3
    assert row["failed_count"] == 1
    assert row["total_sent_count"] == 1
    assert row["last_sent_time"] == format_timestamp(NOW)
    assert source.poll_category(Category.ADVERTISEMENT, since=NOW, now=NOW) == []


def test_member_broadcast_entities_use_member_timestamps(tmp_path: Path) -> None:
    source = _source(tmp_path)
    _insert(
        source,
        "advertisements",
        id=21,
        title="Weekly",
        content="Hello members",
        send_mode=SEND_MODE_INTERVAL,
        interval_minutes=60,
        is_all_member=1,
        last_sent_time=_ts(1),
        created_at=_ts(100),
    )
    _insert(
        source,
        "advertisements",
        id=22,
        title="Groups only",
        content="Not for members",
        send_mode=SEND_MODE_INTERVAL,
        interval_minutes=60,
        is_all_member=0,
        created_at=_ts(90),
    )

    entities = source.list_eligible_broadcast_entities(NOW)

    assert [ad.id for ad in entities] == [21]

    source.record_member_broadcast(entities[0], success=2, failed=0, now=NOW)

    assert source.list_eligible_broadcast_entities(NOW + timedelta(minutes=59)) == []
    assert [ad.id for ad in source.list_eligible_broadcast_entities(NOW + timedelta(minutes=60))] == [21]
    with source._connect() as conn:
        row = conn.execute("SELECT * FROM advertisements WHERE id = 21").fetchone()
    assert row["last_member_sent_time"] == format_timestamp(NOW)
    assert row["next_member_send_time"] == format_timestamp(NOW + timedelta(minutes=60))
    assert row["is_sent"] == 0


def test_members_and_groups_are_filtered_and_ordered(tmp_path: Path) -> None:
    source = _source(tmp_path)
    _insert(source, "members", id=3, telegram_id=300, username="c", status=1)
    _insert(source, "members", id=1, telegram_id=100, username="a", status=1)
    _insert(source, "members", id=2, telegram_id=200, username="b", status=0)
    _insert(source, "members", id=4, telegram_id=0, username="d", status=1)
    _insert(source, "broadcast_groups", id=1, crowd_id="-1001", title="main", is_active=1)
    _insert(source, "broadcast_groups", id=2, crowd_id="-1002", title="old", is_active=0)

    members = source.list_all_members()

    assert [(member.id, member.telegram_id) for member in members] == [(1, 100), (3, 300)]
    assert source.list_broadcast_groups() == ["-1001"]


def test_query_errors_become_data_source_errors(tmp_path: Path) -> None:
    source = _source(tmp_path)
    with source._connect() as conn:
        conn.execute("DROP TABLE members")

    with pytest.raises(DataSourceError):
        source.list_all_members()


def test_broken_category_is_skipped_and_keeps_its_checkpoint(tmp_path: Path) -> None:
    logger, handler = capture_logger("test.sqlite_source.broken_category")
    source = _source(tmp_path, logger=logger)
    for category in (Category.RECHARGE, Category.WITHDRAW):
        source.cache.set(checkpoint_key(category), _ts(10))
    with source._connect() as conn:
        conn.execute("DROP TABLE withdrawals")
        conn.execute("CREATE TABLE withdrawals (id INTEGER PRIMARY KEY, amount TEXT)")
    _insert(source, "recharges", id=1, user_id=1, amount="5", status=1, create_time=_ts(1))

    for _ in range(2):
        result = source.poll_new_events(NOW)
        assert [(event.category, event.source_id) for event in result.events] == [
            (Category.RECHARGE, 1)
        ]
    assert Category.WITHDRAW not in result.polled
    assert "no such column" in result.errors["withdraw"]

    source.commit_checkpoint(result)

    assert source.cache.get(checkpoint_key(Category.RECHARGE)) == format_timestamp(NOW)
    assert source.cache.get(checkpoint_key(Category.WITHDRAW)) == _ts(10)
    payloads = [json.loads(message) for message in handler.messages]
    failures = [p for p in payloads if p["event"] == events.CATEGORY_POLL_FAILED]
    assert [p["category"] for p in failures] == ["withdraw", "withdraw"]


def test_poll_raises_when_every_category_fails(tmp_path: Path) -> None:
    source = _source(tmp_path, categories=[Category.RECHARGE, Category.WITHDRAW])
    source.cache.set(checkpoint_key(Category.RECHARGE), _ts(10))
    with source._connect() as conn:
        conn.execute("DROP TABLE recharges")
        conn.execute("DROP TABLE withdrawals")

    with pytest.raises(DataSourceError, match="all category polls failed"):
        source.poll_new_events(NOW)

    assert source.cache.get(checkpoint_key(Category.RECHARGE)) == _ts(10)


def test_ping_raises_on_unreadable_database(tmp_path: Path) -> None:
    source = _source(tmp_path)
    source.file_path = tmp_path / "missing_dir" / "monitor.db"

    with pytest.raises(sqlite3.Error):
        source.ping()
