from __future__ import annotations

import logging
import threading
import time
from typing import Protocol

import requests

from event_monitor.domain.models import Message
from event_monitor.logging_utils import log_event
from event_monitor.observability import events

TRANSPORT_ERROR_TIMEOUT = "timeout"
TRANSPORT_ERROR_CONNECTION = "connection"
TRANSPORT_ERROR_HTTP_STATUS = "http_status"
TRANSPORT_ERROR_API = "api_error"
TRANSPORT_ERROR_REQUEST = "request_error"
TRANSPORT_ERROR_INVALID_RECIPIENT = "invalid_recipient"


class TransportError(RuntimeError):
    """Raised when a single delivery attempt fails."""

    def __init__(
        self,
        message: str,
        *,
        code: str = TRANSPORT_ERROR_REQUEST,
        status_code: int | None = None,
        description: str | None = None,
    ) -> None:
        super().__init__(message)
        self.code = code
        self.status_code = status_code
        self.description = description


class Transport(Protocol):
    def deliver(self, recipient_id: str, message: Message) -> None: ...

    def probe(self) -> bool: ...

    def close(self) -> None: ...


class TelegramTransport:
    def __init__(
        self,
        bot_token: str,
        *,
        api_base_url: str = "https://api.telegram.org",
        timeout_sec: int = 10,
        send_rate_limit_per_sec: float = 20.0,
        session: requests.Session | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self.bot_token = bot_token
        self.api_base_url = api_base_url.rstrip("/")
        self.timeout_sec = timeout_sec
        self.send_rate_limit_per_sec = max(0.0, send_rate_limit_per_sec)
        self.session = session or requests.Session()
        self.logger = logger or logging.getLogger("event_monitor.transport")
        self._next_send_allowed_monotonic = 0.0
        self._lock = threading.Lock()

    def close(self) -> None:
        self.session.close()

    def _method_url(self, method: str) -> str:
        return f"{self.api_base_url}/bot{self.bot_token}/{method}"

    def _acquire_send_slot(self) -> None:
        if self.send_rate_limit_per_sec <= 0:
            return

        min_interval_sec = 1.0 / self.send_rate_limit_per_sec
        with self._lock:
            now = time.monotonic()
            slot_time = max(now, self._next_send_allowed_monotonic)
            self._next_send_allowed_monotonic = slot_time + min_interval_sec
            wait_sec = slot_time - now

        if wait_sec > 0:
            time.sleep(wait_sec)

    def _call(self, method: str, payload: dict[str, object]) -> dict[str, object]:
        try:
            response = self.session.post(
                self._method_url(method),
                json=payload,
                timeout=self.timeout_sec,
            )
        except requests.Timeout as exc:
            raise TransportError(f"{method} timed out", code=TRANSPORT_ERROR_TIMEOUT) from exc
        except requests.ConnectionError as exc:
            raise TransportError(
                f"{method} connection failed",
                code=TRANSPORT_ERROR_CONNECTION,
            ) from exc
        except requests.RequestException as exc:
            raise TransportError(f"{method} request failed: {exc}") from exc

        try:
            body = response.json()
        except ValueError:
            body = None

        description = body.get("description") if isinstance(body, dict) else None
        if response.status_code >= 400:
            raise TransportError(
                f"{method} failed with HTTP {response.status_code}: {description or 'no description'}",
                code=TRANSPORT_ERROR_HTTP_STATUS,
                status_code=response.status_code,
                description=description if isinstance(description, str) else None,
            )
        if not isinstance(body, dict) or body.get("ok") is not True:
            raise TransportError(
                f"{method} rejected: {description or 'response missing ok=true'}",
                code=TRANSPORT_ERROR_API,
                status_code=response.status_code,
                description=description if isinstance(description, str) else None,
            )
        return body

    def deliver(self, recipient_id: str, message: Message) -> None:
        chat_id = str(recipient_id).strip()
        if not chat_id or chat_id == "0":
            raise TransportError(
                f"invalid recipient id: {recipient_id!r}",
                code=TRANSPORT_ERROR_INVALID_RECIPIENT,
            )

        self._acquire_send_slot()
        if message.image_url:
            self._call(
                "sendPhoto",
                {"chat_id": chat_id, "photo": message.image_url, "caption": message.text},
            )
        else:
            self._call(
                "sendMessage",
                {"chat_id": chat_id, "text": message.text, "disable_web_page_preview": True},
            )
        self.logger.debug(
            log_event(events.TRANSPORT_DELIVERED, chat_id=chat_id, photo=bool(message.image_url))
        )

    def probe(self) -> bool:
        self._call("getMe", {})
        return True


class RecordingTransport:
    """Dry-run transport: logs every delivery instead of sending it."""

    def __init__(self, logger: logging.Logger | None = None) -> None:
        self.logger = logger or logging.getLogger("event_monitor.transport.dry_run")
        self.delivered: list[tuple[str, Message]] = []
        self._lock = threading.Lock()

    def deliver(self, recipient_id: str, message: Message) -> None:
        with self._lock:
            self.delivered.append((str(recipient_id), message))
        self.logger.info(
            log_event(
                events.DISPATCH_DRY_RUN,
                recipient_id=str(recipient_id),
                text_length=len(message.text),
                has_image=bool(message.image_url),
            )
        )

    def probe(self) -> bool:
        return True

    def close(self) -> None:
        return None
