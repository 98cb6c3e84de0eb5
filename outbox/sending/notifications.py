"""User-facing failure notifications."""
from __future__ import annotations

import logging
from typing import Protocol

logger = logging.getLogger(__name__)


class Notifier(Protocol):
    def notify_message_delivery_failed(self, message_id: int) -> None:
        ...


class LoggingNotifier:
    """Surfaces delivery failures in the log."""

    def notify_message_delivery_failed(self, message_id: int) -> None:
        logger.warning("Delivery of message %s failed", message_id)
