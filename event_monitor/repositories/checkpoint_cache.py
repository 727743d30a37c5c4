from __future__ import annotations

import json
import logging
import os
import threading
import time
from collections.abc import Callable
from datetime import UTC, datetime
from pathlib import Path

from event_monitor.logging_utils import log_event
from event_monitor.observability import events

CACHE_SCHEMA_VERSION = 1


class JsonCheckpointCache:
    """Small file-backed key/value cache with per-entry expiry.

    Holds the per-category last-check checkpoints.
    """

    def __init__(
        self,
        file_path: Path,
        logger: logging.Logger | None = None,
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.file_path = Path(file_path)
        self.logger = logger or logging.getLogger("event_monitor.cache")
        self._clock = clock
        self._lock = threading.Lock()
        self._entries: dict[str, dict[str, object]] = {}
        self._load()

    def get(self, key: str) -> str | None:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            expires_at = entry.get("expires_at")
            if isinstance(expires_at, (int, float)) and expires_at <= self._clock():
                del self._entries[key]
                self._persist()
                return None
            value = entry.get("value")
            return value if isinstance(value, str) else None

    def set(self, key: str, value: str, ttl_sec: int | None = None) -> None:
        expires_at = self._clock() + ttl_sec if ttl_sec else None
        with self._lock:
            self._entries[key] = {"value": value, "expires_at": expires_at}
            self._persist()

    def is_available(self) -> bool:
        """Read-only health check: the file parses and the cache can be written.

        Never mutates the cache.
        """
        if self.file_path.exists():
            try:
                with self.file_path.open("r", encoding="utf-8") as file:
                    json.load(file)
            except json.JSONDecodeError:
                return False
            return os.access(self.file_path, os.W_OK)
        return os.access(self.file_path.parent, os.W_OK)

    def _load(self) -> None:
        self.file_path.parent.mkdir(parents=True, exist_ok=True)
        if not self.file_path.exists():
            return

        try:
            with self.file_path.open("r", encoding="utf-8") as file:
                raw = json.load(file)
        except json.JSONDecodeError as exc:
            backup_path = self._backup_corrupted_file()
            self.logger.error(
                log_event(
                    events.CACHE_INVALID_JSON,
                    file=str(self.file_path),
                    backup=str(backup_path) if backup_path is not None else None,
                    error=str(exc),
                )
            )
            return
        except OSError as exc:
            self.logger.error(
                log_event(events.CACHE_READ_FAILED, file=str(self.file_path), error=str(exc))
            )
            return

        entries = raw.get("entries") if isinstance(raw, dict) else None
        if not isinstance(entries, dict):
            return
        for key, entry in entries.items():
            if isinstance(key, str) and isinstance(entry, dict) and "value" in entry:
                self._entries[key] = dict(entry)

    def _backup_corrupted_file(self) -> Path | None:
        timestamp = datetime.now(UTC).strftime("%Y%m%dT%H%M%SZ")
        backup_path = self.file_path.with_name(f"{self.file_path.name}.broken-{timestamp}")
        try:
            self.file_path.replace(backup_path)
            return backup_path
        except OSError:
            return None

    def _persist(self) -> None:
        self.file_path.parent.mkdir(parents=True, exist_ok=True)
        temp_path = self.file_path.with_suffix(self.file_path.suffix + ".tmp")
        payload = {"version": CACHE_SCHEMA_VERSION, "entries": self._entries}
        try:
            with temp_path.open("w", encoding="utf-8") as file:
                json.dump(payload, file, ensure_ascii=False, indent=2, sort_keys=True)
            temp_path.replace(self.file_path)
        except OSError as exc:
            self.logger.error(
                log_event(
                    events.CACHE_PERSIST_FAILED,
                    file=str(self.file_path),
                    temp_file=str(temp_path),
                    error=str(exc),
                )
            )
            raise
