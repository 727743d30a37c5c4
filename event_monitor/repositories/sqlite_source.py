from __future__ import annotations

import logging
import sqlite3
from collections.abc import Callable, Iterable
from datetime import date, datetime, timedelta
from pathlib import Path
from zoneinfo import ZoneInfo

from event_monitor.domain.ad_schedule import (
    SEND_MODE_ONCE,
    is_due,
    next_send_time,
    parse_daily_times,
)
from event_monitor.domain.message_builder import build_advertisement_message, build_record_message
from event_monitor.domain.models import (
    MONITORED_CATEGORIES,
    Advertisement,
    Category,
    Event,
    Member,
    PollResult,
)
from event_monitor.logging_utils import log_event, redact_sensitive_text
from event_monitor.observability import events
from event_monitor.repositories.checkpoint_cache import JsonCheckpointCache

SQLITE_BUSY_TIMEOUT_MS = 30_000
TIMESTAMP_FORMAT = "%Y-%m-%d %H:%M:%S"
LAST_CHECK_KEY = "monitor_last_check_time"

_RECORD_QUERIES: dict[Category, tuple[str, str]] = {
    Category.RECHARGE: ("recharges", "create_time"),
    Category.WITHDRAW: ("withdrawals", "create_time"),
    Category.REDPACKET: ("red_packets", "created_at"),
}

SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS recharges (
      id INTEGER PRIMARY KEY,
      user_id INTEGER NOT NULL,
      amount TEXT NOT NULL,
      status INTEGER NOT NULL DEFAULT 0,
      create_time TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS withdrawals (
      id INTEGER PRIMARY KEY,
      user_id INTEGER NOT NULL,
      amount TEXT NOT NULL,
      status INTEGER NOT NULL DEFAULT 0,
      create_time TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS red_packets (
      id INTEGER PRIMARY KEY,
      sender_id INTEGER NOT NULL,
      chat_id TEXT NOT NULL,
      amount TEXT NOT NULL,
      created_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS advertisements (
      id INTEGER PRIMARY KEY,
      title TEXT NOT NULL DEFAULT '',
      content TEXT NOT NULL DEFAULT '',
      image_url TEXT,
      status INTEGER NOT NULL DEFAULT 1,
      send_mode INTEGER NOT NULL DEFAULT 1,
      is_all_member INTEGER NOT NULL DEFAULT 0,
      is_sent INTEGER NOT NULL DEFAULT 0,
      send_time TEXT,
      daily_times TEXT,
      interval_minutes INTEGER,
      start_date TEXT,
      end_date TEXT,
      last_sent_time TEXT,
      next_send_time TEXT,
      last_member_sent_time TEXT,
      next_member_send_time TEXT,
      total_sent_count INTEGER NOT NULL DEFAULT 0,
      success_count INTEGER NOT NULL DEFAULT 0,
      failed_count INTEGER NOT NULL DEFAULT 0,
      created_at TEXT NOT NULL DEFAULT ''
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS members (
      id INTEGER PRIMARY KEY,
      telegram_id INTEGER,
      username TEXT,
      status INTEGER NOT NULL DEFAULT 1
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS broadcast_groups (
      id INTEGER PRIMARY KEY,
      crowd_id TEXT NOT NULL,
      title TEXT NOT NULL DEFAULT '',
      is_active INTEGER NOT NULL DEFAULT 1
    )
    """,
)


class DataSourceError(RuntimeError):
    """Raised when the business database cannot be read or updated."""

    def __init__(self, message: str, *, code: str = "query_failed") -> None:
        super().__init__(message)
        self.code = code


def format_timestamp(value: datetime) -> str:
    return value.strftime(TIMESTAMP_FORMAT)


def checkpoint_key(category: Category) -> str:
    return f"{LAST_CHECK_KEY}:{category.value}"


def _parse_timestamp(value: object, tz: ZoneInfo) -> datetime | None:
    if not isinstance(value, str) or not value.strip():
        return None
    try:
        parsed = datetime.strptime(value.strip(), TIMESTAMP_FORMAT)
    except ValueError:
        return None
    return parsed.replace(tzinfo=tz)


def _parse_date(value: object) -> date | None:
    if not isinstance(value, str) or not value.strip():
        return None
    try:
        return date.fromisoformat(value.strip()[:10])
    except ValueError:
        return None


class SqliteEventSource:
    def __init__(
        self,
        file_path: Path,
        cache: JsonCheckpointCache,
        *,
        timezone: str = "Asia/Shanghai",
        categories: Iterable[Category] = MONITORED_CATEGORIES,
        check_interval_sec: int = 30,
        check_overlap_sec: int = 30,
        checkpoint_ttl_sec: int = 86400,
        now_fn: Callable[[], datetime] | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self.file_path = Path(file_path)
        self.cache = cache
        self.tz = ZoneInfo(timezone)
        self.categories = [category for category in categories if category in MONITORED_CATEGORIES]
        self.check_interval_sec = check_interval_sec
        self.check_overlap_sec = check_overlap_sec
        self.checkpoint_ttl_sec = checkpoint_ttl_sec
        self._now_fn = now_fn or (lambda: datetime.now(self.tz))
        self.logger = logger or logging.getLogger("event_monitor.source")
        self.file_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_schema()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.file_path)
        conn.row_factory = sqlite3.Row
        conn.execute(f"PRAGMA busy_timeout = {SQLITE_BUSY_TIMEOUT_MS}")
        return conn

    def _init_schema(self) -> None:
        with self._connect() as conn:
            for statement in SCHEMA_STATEMENTS:
                conn.execute(statement)

    def now(self) -> datetime:
        return self._now_fn()

    def ping(self) -> bool:
        with self._connect() as conn:
            row = conn.execute("SELECT 1").fetchone()
        return row is not None and row[0] == 1

    def poll_new_events(self, now: datetime | None = None) -> PollResult:
        """Poll every enabled category since its own checkpoint.

        A failing category is logged and skipped so the others keep flowing.
        Nothing is committed here: call ``commit_checkpoint`` once the events
        have been dispatched. Raises ``DataSourceError`` only when every
        category failed.
        """
        current = now or self.now()
        detected: list[Event] = []
        polled: list[Category] = []
        errors: dict[str, str] = {}
        for category in self.categories:
            since = self._load_checkpoint(category, current)
            try:
                found = self.poll_category(category, since=since, now=current)
            except DataSourceError as exc:
                errors[category.value] = redact_sensitive_text(exc)
                self.logger.warning(
                    log_event(
                        events.CATEGORY_POLL_FAILED,
                        category=category.value,
                        since=format_timestamp(since),
                        code=exc.code,
                        error=errors[category.value],
                    )
                )
                continue
            self.logger.info(
                log_event(
                    events.CATEGORY_POLL_COMPLETE,
                    category=category.value,
                    since=format_timestamp(since),
                    found=len(found),
                )
            )
            polled.append(category)
            detected.extend(found)

        if errors and not polled:
            raise DataSourceError(
                "all category polls failed: "
                + "; ".join(f"{name}: {error}" for name, error in errors.items())
            )
        return PollResult(
            events=tuple(detected),
            checkpoint=current,
            polled=tuple(polled),
            errors=errors,
        )

    def commit_checkpoint(self, result: PollResult) -> None:
        for category in result.polled:
            self._store_checkpoint(category, result.checkpoint)

    def poll_category(self, category: Category, *, since: datetime, now: datetime) -> list[Event]:
        if category == Category.ADVERTISEMENT:
            return [
                Event(
                    category=Category.ADVERTISEMENT,
                    source_id=ad.id,
                    message=build_advertisement_message(ad),
                    advertisement=ad,
                )
                for ad in self._due_advertisements(now, member_broadcast=False)
            ]
        if category not in _RECORD_QUERIES:
            raise DataSourceError(f"unsupported category: {category.value}", code="bad_category")

        table, time_field = _RECORD_QUERIES[category]
        try:
            with self._connect() as conn:
                rows = conn.execute(
                    f"SELECT * FROM {table} WHERE {time_field} > ? ORDER BY {time_field} ASC, id ASC",
                    (format_timestamp(since),),
                ).fetchall()
        except sqlite3.Error as exc:
            raise DataSourceError(f"{table} query failed: {exc}") from exc

        detected: list[Event] = []
        for row in rows:
            record = dict(row)
            target_chat_id = None
            if category == Category.REDPACKET:
                target_chat_id = str(record.get("chat_id") or "")
            detected.append(
                Event(
                    category=category,
                    source_id=int(record["id"]),
                    message=build_record_message(category, record),
                    target_chat_id=target_chat_id,
                )
            )
        return detected

    def list_broadcast_groups(self) -> list[str]:
        try:
            with self._connect() as conn:
                rows = conn.execute(
                    "SELECT crowd_id FROM broadcast_groups WHERE is_active = 1 ORDER BY id ASC"
                ).fetchall()
        except sqlite3.Error as exc:
            raise DataSourceError(f"broadcast_groups query failed: {exc}") from exc
        return [str(row["crowd_id"]) for row in rows if str(row["crowd_id"]).strip()]

    def list_eligible_broadcast_entities(self, now: datetime | None = None) -> list[Advertisement]:
        return self._due_advertisements(now or self.now(), member_broadcast=True)

    def list_all_members(self) -> list[Member]:
        try:
            with self._connect() as conn:
                rows = conn.execute(
                    """
                    SELECT id, telegram_id, username FROM members
                    WHERE status = 1 AND telegram_id IS NOT NULL AND telegram_id > 0
                    ORDER BY id ASC
                    """
                ).fetchall()
        except sqlite3.Error as exc:
            raise DataSourceError(f"members query failed: {exc}") from exc
        return [
            Member(id=int(row["id"]), telegram_id=int(row["telegram_id"]), username=row["username"])
            for row in rows
        ]

    def record_advertisement_sent(
        self,
        ad: Advertisement,
        *,
        success: int,
        failed: int,
        now: datetime | None = None,
    ) -> None:
        current = now or self.now()
        next_time = next_send_time(ad, current)
        is_once = ad.send_mode == SEND_MODE_ONCE
        self._execute_update(
            """
            UPDATE advertisements
            SET total_sent_count = total_sent_count + 1,
                success_count = success_count + ?,
                failed_count = failed_count + ?,
                last_sent_time = ?,
                next_send_time = COALESCE(?, next_send_time),
                is_sent = CASE WHEN ? THEN 1 ELSE is_sent END,
                status = CASE WHEN ? THEN 2 ELSE status END
            WHERE id = ?
            """,
            (
                success,
                failed,
                format_timestamp(current),
                format_timestamp(next_time) if next_time else None,
                int(is_once),
                int(is_once),
                ad.id,
            ),
        )

    def record_member_broadcast(
        self,
        ad: Advertisement,
        *,
        success: int,
        failed: int,
        now: datetime | None = None,
    ) -> None:
        current = now or self.now()
        next_time = next_send_time(ad, current)
        self._execute_update(
            """
            UPDATE advertisements
            SET total_sent_count = total_sent_count + 1,
                success_count = success_count + ?,
                failed_count = failed_count + ?,
                last_member_sent_time = ?,
                next_member_send_time = COALESCE(?, next_member_send_time)
            WHERE id = ?
            """,
            (
                success,
                failed,
                format_timestamp(current),
                format_timestamp(next_time) if next_time else None,
                ad.id,
            ),
        )

    def _execute_update(self, sql: str, params: tuple[object, ...]) -> None:
        try:
            with self._connect() as conn:
                conn.execute(sql, params)
        except sqlite3.Error as exc:
            raise DataSourceError(f"advertisement update failed: {exc}", code="update_failed") from exc

    def _due_advertisements(self, now: datetime, *, member_broadcast: bool) -> list[Advertisement]:
        sql = "SELECT * FROM advertisements WHERE status = 1"
        if member_broadcast:
            sql += " AND is_all_member = 1"
        sql += " ORDER BY created_at ASC, id ASC"
        try:
            with self._connect() as conn:
                rows = conn.execute(sql).fetchall()
        except sqlite3.Error as exc:
            raise DataSourceError(f"advertisements query failed: {exc}") from exc

        due: list[Advertisement] = []
        for row in rows:
            ad = self._row_to_advertisement(row)
            if member_broadcast:
                last_sent = ad.last_member_sent_time
                sent_once = ad.last_member_sent_time is not None
            else:
                last_sent = ad.last_sent_time
                sent_once = ad.is_sent
            if is_due(ad, now=now, last_sent=last_sent, already_sent_once=sent_once):
                due.append(ad)
        return due

    def _row_to_advertisement(self, row: sqlite3.Row) -> Advertisement:
        return Advertisement(
            id=int(row["id"]),
            title=row["title"] or "",
            content=row["content"] or "",
            send_mode=int(row["send_mode"]),
            status=int(row["status"]),
            image_url=row["image_url"] or None,
            is_all_member=bool(row["is_all_member"]),
            is_sent=bool(row["is_sent"]),
            send_time=_parse_timestamp(row["send_time"], self.tz),
            daily_times=parse_daily_times(row["daily_times"]),
            interval_minutes=row["interval_minutes"],
            start_date=_parse_date(row["start_date"]),
            end_date=_parse_date(row["end_date"]),
            last_sent_time=_parse_timestamp(row["last_sent_time"], self.tz),
            last_member_sent_time=_parse_timestamp(row["last_member_sent_time"], self.tz),
        )

    def _load_checkpoint(self, category: Category, now: datetime) -> datetime:
        stored = _parse_timestamp(self.cache.get(checkpoint_key(category)), self.tz)
        if stored is not None:
            return stored
        first_since = now - timedelta(seconds=self.check_interval_sec + self.check_overlap_sec)
        self.logger.info(
            log_event(
                events.CHECKPOINT_FIRST_RUN,
                category=category.value,
                since=format_timestamp(first_since),
            )
        )
        return first_since

    def _store_checkpoint(self, category: Category, now: datetime) -> None:
        value = format_timestamp(now)
        self.cache.set(checkpoint_key(category), value, ttl_sec=self.checkpoint_ttl_sec)
        self.logger.debug(
            log_event(events.CHECKPOINT_ADVANCED, category=category.value, checkpoint=value)
        )
