from __future__ import annotations

import logging

from event_monitor.domain.models import DispatchOutcome, DispatchTask
from event_monitor.logging_utils import log_event, redact_sensitive_text
from event_monitor.observability import events
from event_monitor.services.telegram import Transport


class Dispatcher:
    """Sends one task through the shared transport and reports the outcome.

    Exactly one delivery attempt per call. Any exception raised by the transport
    is folded into a failed outcome, so callers only ever see ``DispatchOutcome``.
    """

    def __init__(self, transport: Transport, logger: logging.Logger | None = None) -> None:
        self.transport = transport
        self.logger = logger or logging.getLogger("event_monitor.dispatcher")

    def send(self, task: DispatchTask) -> DispatchOutcome:
        try:
            self.transport.deliver(task.recipient_id, task.payload)
        except Exception as exc:
            detail = redact_sensitive_text(exc) or exc.__class__.__name__
            self.logger.warning(
                log_event(
                    events.DISPATCH_FAILED,
                    recipient_id=task.recipient_id,
                    category=task.category.value,
                    source_id=task.source_id,
                    error=detail,
                )
            )
            return DispatchOutcome(task=task, success=False, error_detail=detail)

        self.logger.debug(
            log_event(
                events.DISPATCH_SENT,
                recipient_id=task.recipient_id,
                category=task.category.value,
                source_id=task.source_id,
            )
        )
        return DispatchOutcome(task=task, success=True)
