from __future__ import annotations

import json
import logging
from pathlib import Path

from event_monitor.observability import events
from event_monitor.repositories.checkpoint_cache import CACHE_SCHEMA_VERSION, JsonCheckpointCache
from tests.main_test_harness import capture_logger


class _Clock:
    def __init__(self, now: float = 1_000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


def test_cache_round_trips_and_persists(tmp_path: Path) -> None:
    cache_file = tmp_path / "nested" / "cache.json"
    cache = JsonCheckpointCache(cache_file)

    cache.set("monitor_last_check_time", "2026-03-02 10:00:00", ttl_sec=60)

    assert cache.get("monitor_last_check_time") == "2026-03-02 10:00:00"
    raw = json.loads(cache_file.read_text(encoding="utf-8"))
    assert raw["version"] == CACHE_SCHEMA_VERSION
    assert raw["entries"]["monitor_last_check_time"]["value"] == "2026-03-02 10:00:00"

    reopened = JsonCheckpointCache(cache_file)
    assert reopened.get("monitor_last_check_time") == "2026-03-02 10:00:00"


def test_cache_expires_entries_after_ttl(tmp_path: Path) -> None:
    clock = _Clock()
    cache = JsonCheckpointCache(tmp_path / "cache.json", clock=clock)
    cache.set("key", "value", ttl_sec=10)

    clock.now += 9
    assert cache.get("key") == "value"

    clock.now += 1
    assert cache.get("key") is None


def test_cache_without_ttl_never_expires(tmp_path: Path) -> None:
    clock = _Clock()
    cache = JsonCheckpointCache(tmp_path / "cache.json", clock=clock)
    cache.set("key", "value")

    clock.now += 10**9

    assert cache.get("key") == "value"


def test_cache_availability_check_is_read_only(tmp_path: Path) -> None:
    clock = _Clock()
    cache_file = tmp_path / "cache.json"
    cache = JsonCheckpointCache(cache_file, clock=clock)

    assert cache.is_available() is True
    assert not cache_file.exists()

    cache.set("key", "value", ttl_sec=1)
    clock.now += 5
    before = cache_file.read_text(encoding="utf-8")

    assert cache.is_available() is True
    assert cache_file.read_text(encoding="utf-8") == before


def test_cache_is_unavailable_when_file_is_corrupted_underneath(tmp_path: Path) -> None:
    cache_file = tmp_path / "cache.json"
    cache = JsonCheckpointCache(cache_file)
    cache.set("key", "value")

    cache_file.write_text("{broken", encoding="utf-8")

    assert cache.is_available() is False


def test_cache_backs_up_corrupted_file(tmp_path: Path) -> None:
    cache_file = tmp_path / "cache.json"
    cache_file.write_text("{broken", encoding="utf-8")
    logger, handler = capture_logger("test.cache.corrupted", logging.ERROR)

    cache = JsonCheckpointCache(cache_file, logger=logger)

    assert cache.get("anything") is None
    assert not cache_file.exists()
    backups = list(tmp_path.glob("cache.json.broken-*"))
    assert len(backups) == 1
    payloads = [json.loads(message) for message in handler.messages]
    assert payloads[0]["event"] == events.CACHE_INVALID_JSON
    assert payloads[0]["backup"] == str(backups[0])
