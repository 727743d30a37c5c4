from __future__ import annotations

import os
import re
from dataclasses import dataclass
from pathlib import Path
from urllib.parse import urlparse
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from event_monitor.domain.models import MONITORED_CATEGORIES, Category

DEFAULT_TELEGRAM_API_BASE_URL = "https://api.telegram.org"
DEFAULT_MONITOR_DB_FILE = "./data/monitor.db"
DEFAULT_CHECKPOINT_CACHE_FILE = "./data/monitor_cache.json"
RE_TELEGRAM_BOT_TOKEN = re.compile(r"^\d+:[A-Za-z0-9_-]+$")


class SettingsError(ValueError):
    """Raised when required environment settings are missing or malformed."""


def _strip_optional_quotes(value: str) -> str:
    if len(value) >= 2 and value[0] == value[-1] and value[0] in {"'", '"'}:
        return value[1:-1]
    return value


def _load_dotenv_if_exists(env_file: Path) -> None:
    if not env_file.exists() or not env_file.is_file():
        return

    for raw_line in env_file.read_text(encoding="utf-8").splitlines():
        line = raw_line.strip()
        if not line or line.startswith("#"):
            continue
        if line.startswith("export "):
            line = line[len("export "):].strip()
        if "=" not in line:
            continue

        key, value = line.split("=", 1)
        key = key.strip()
        if not key:
            continue
        value = _strip_optional_quotes(value.strip())
        os.environ.setdefault(key, value)


def _parse_int_env(name: str, default: int, minimum: int = 0) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        value = int(raw)
    except ValueError as exc:
        raise SettingsError(f"{name} must be an integer. Received: {raw}") from exc
    if value < minimum:
        raise SettingsError(f"{name} must be >= {minimum}. Received: {value}")
    return value


def _parse_float_env(
    name: str,
    default: float,
    *,
    minimum: float | None = None,
) -> float:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        value = float(raw)
    except ValueError as exc:
        raise SettingsError(f"{name} must be a float. Received: {raw}") from exc
    if minimum is not None and value < minimum:
        raise SettingsError(f"{name} must be >= {minimum}. Received: {value}")
    return value


def _parse_optional_positive_float_env(name: str) -> float | None:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return None
    try:
        value = float(raw)
    except ValueError as exc:
        raise SettingsError(f"{name} must be a float. Received: {raw}") from exc
    if value <= 0:
        raise SettingsError(f"{name} must be > 0 when provided. Received: {value}")
    return value


def _parse_bool_env(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    normalized = raw.strip().lower()
    if normalized in {"1", "true", "yes", "y", "on"}:
        return True
    if normalized in {"0", "false", "no", "n", "off"}:
        return False
    raise SettingsError(
        f"{name} must be a boolean value "
        f"(true/false, 1/0, yes/no). Received: {raw}"
    )


def _parse_str_env(name: str, default: str) -> str:
    raw = os.getenv(name, "").strip()
    return raw if raw else default


def _parse_timezone_env(name: str, default: str) -> str:
    value = _parse_str_env(name, default)
    try:
        ZoneInfo(value)
    except (ZoneInfoNotFoundError, KeyError, ValueError):
        raise SettingsError(f"{name} is not a valid IANA timezone name. Received: {value}")
    return value


def _validate_bot_token(token: str) -> None:
    if not RE_TELEGRAM_BOT_TOKEN.match(token):
        raise SettingsError("TELEGRAM_BOT_TOKEN must look like '<bot id>:<secret>'.")


def _validate_api_base_url(url: str) -> None:
    parsed = urlparse(url)
    if parsed.scheme != "https" or not parsed.netloc:
        raise SettingsError("TELEGRAM_API_BASE_URL must be a valid https URL with host.")


@dataclass(frozen=True)
class _TransportConfig:
    telegram_bot_token: str
    telegram_api_base_url: str
    transport_timeout_sec: int
    transport_send_rate_limit_per_sec: float


@dataclass(frozen=True)
class _StorageConfig:
    monitor_db_file: Path
    checkpoint_cache_file: Path
    checkpoint_ttl_sec: int


@dataclass(frozen=True)
class _DispatchConfig:
    dispatch_max_concurrency: int
    dispatch_task_timeout_sec: float | None


@dataclass(frozen=True)
class _MonitorConfig:
    monitor_enabled: bool
    check_interval_sec: int
    check_overlap_sec: int
    notify_recharge_enabled: bool
    notify_withdraw_enabled: bool
    notify_redpacket_enabled: bool
    notify_advertisement_enabled: bool
    startup_notice_enabled: bool
    timezone: str
    log_level: str
    dry_run: bool
    run_once: bool


def _parse_transport_config() -> _TransportConfig:
    token = os.getenv("TELEGRAM_BOT_TOKEN", "").strip()
    if not token:
        raise SettingsError("TELEGRAM_BOT_TOKEN is required.")
    _validate_bot_token(token)

    base_url = _parse_str_env("TELEGRAM_API_BASE_URL", DEFAULT_TELEGRAM_API_BASE_URL).rstrip("/")
    _validate_api_base_url(base_url)
    return _TransportConfig(
        telegram_bot_token=token,
        telegram_api_base_url=base_url,
        transport_timeout_sec=_parse_int_env("TRANSPORT_TIMEOUT_SEC", 10, minimum=1),
        transport_send_rate_limit_per_sec=_parse_float_env(
            "TRANSPORT_SEND_RATE_LIMIT_PER_SEC",
            20.0,
            minimum=0.0,
        ),
    )


def _parse_storage_config() -> _StorageConfig:
    return _StorageConfig(
        monitor_db_file=Path(_parse_str_env("MONITOR_DB_FILE", DEFAULT_MONITOR_DB_FILE)),
        checkpoint_cache_file=Path(
            _parse_str_env("CHECKPOINT_CACHE_FILE", DEFAULT_CHECKPOINT_CACHE_FILE)
        ),
        checkpoint_ttl_sec=_parse_int_env("CHECKPOINT_TTL_SEC", 86400, minimum=1),
    )


def _parse_dispatch_config() -> _DispatchConfig:
    return _DispatchConfig(
        dispatch_max_concurrency=_parse_int_env("DISPATCH_MAX_CONCURRENCY", 1, minimum=1),
        dispatch_task_timeout_sec=_parse_optional_positive_float_env("DISPATCH_TASK_TIMEOUT_SEC"),
    )


def _parse_monitor_config() -> _MonitorConfig:
    return _MonitorConfig(
        monitor_enabled=_parse_bool_env("MONITOR_ENABLED", default=True),
        check_interval_sec=_parse_int_env("CHECK_INTERVAL_SEC", 30, minimum=0),
        check_overlap_sec=_parse_int_env("CHECK_OVERLAP_SEC", 30, minimum=0),
        notify_recharge_enabled=_parse_bool_env("NOTIFY_RECHARGE_ENABLED", default=True),
        notify_withdraw_enabled=_parse_bool_env("NOTIFY_WITHDRAW_ENABLED", default=True),
        notify_redpacket_enabled=_parse_bool_env("NOTIFY_REDPACKET_ENABLED", default=True),
        notify_advertisement_enabled=_parse_bool_env(
            "NOTIFY_ADVERTISEMENT_ENABLED",
            default=True,
        ),
        startup_notice_enabled=_parse_bool_env("STARTUP_NOTICE_ENABLED", default=True),
        timezone=_parse_timezone_env("TIMEZONE", "Asia/Shanghai"),
        log_level=_parse_str_env("LOG_LEVEL", "INFO").upper(),
        dry_run=_parse_bool_env("DRY_RUN", default=False),
        run_once=_parse_bool_env("RUN_ONCE", default=False),
    )


@dataclass(frozen=True)
class Settings:
    telegram_bot_token: str
    telegram_api_base_url: str = DEFAULT_TELEGRAM_API_BASE_URL
    transport_timeout_sec: int = 10
    transport_send_rate_limit_per_sec: float = 20.0
    monitor_db_file: Path = Path(DEFAULT_MONITOR_DB_FILE)
    checkpoint_cache_file: Path = Path(DEFAULT_CHECKPOINT_CACHE_FILE)
    checkpoint_ttl_sec: int = 86400
    dispatch_max_concurrency: int = 1
    dispatch_task_timeout_sec: float | None = None
    monitor_enabled: bool = True
    check_interval_sec: int = 30
    check_overlap_sec: int = 30
    notify_recharge_enabled: bool = True
    notify_withdraw_enabled: bool = True
    notify_redpacket_enabled: bool = True
    notify_advertisement_enabled: bool = True
    startup_notice_enabled: bool = True
    timezone: str = "Asia/Shanghai"
    log_level: str = "INFO"
    dry_run: bool = False
    run_once: bool = False

    @property
    def enabled_categories(self) -> list[Category]:
        switches = {
            Category.RECHARGE: self.notify_recharge_enabled,
            Category.WITHDRAW: self.notify_withdraw_enabled,
            Category.REDPACKET: self.notify_redpacket_enabled,
            Category.ADVERTISEMENT: self.notify_advertisement_enabled,
        }
        return [category for category in MONITORED_CATEGORIES if switches[category]]

    @classmethod
    def from_env(cls, env_file: str | Path | None = ".env") -> Settings:
        if env_file:
            _load_dotenv_if_exists(Path(env_file))

        transport = _parse_transport_config()
        storage = _parse_storage_config()
        dispatch = _parse_dispatch_config()
        monitor = _parse_monitor_config()

        return cls(
            telegram_bot_token=transport.telegram_bot_token,
            telegram_api_base_url=transport.telegram_api_base_url,
            transport_timeout_sec=transport.transport_timeout_sec,
            transport_send_rate_limit_per_sec=transport.transport_send_rate_limit_per_sec,
            monitor_db_file=storage.monitor_db_file,
            checkpoint_cache_file=storage.checkpoint_cache_file,
            checkpoint_ttl_sec=storage.checkpoint_ttl_sec,
            dispatch_max_concurrency=dispatch.dispatch_max_concurrency,
            dispatch_task_timeout_sec=dispatch.dispatch_task_timeout_sec,
            monitor_enabled=monitor.monitor_enabled,
            check_interval_sec=monitor.check_interval_sec,
            check_overlap_sec=monitor.check_overlap_sec,
            notify_recharge_enabled=monitor.notify_recharge_enabled,
            notify_withdraw_enabled=monitor.notify_withdraw_enabled,
            notify_redpacket_enabled=monitor.notify_redpacket_enabled,
            notify_advertisement_enabled=monitor.notify_advertisement_enabled,
            startup_notice_enabled=monitor.startup_notice_enabled,
            timezone=monitor.timezone,
            log_level=monitor.log_level,
            dry_run=monitor.dry_run,
            run_once=monitor.run_once,
        )
