"""Applies a delivery outcome to local state."""
from __future__ import annotations

import logging
import time
from typing import Callable, Optional

from outbox.messages.models import (
    OutgoingMessage,
    Recipient,
    SyncMessageId,
    UnidentifiedAccessMode,
)
from outbox.messages.store import SQLiteMessageStore
from outbox.sending.delivery import DeliveryOutcome, OutcomeKind
from outbox.sending.exceptions import RetryLaterError
from outbox.sending.expiration import ExpiringMessageManager
from outbox.sending.notifications import Notifier

logger = logging.getLogger(__name__)


def next_unidentified_access_mode(
    current: UnidentifiedAccessMode,
    unidentified: bool,
    has_profile_key: bool,
) -> Optional[UnidentifiedAccessMode]:
    """Mode learned from a successful send, or None to leave it alone."""
    if unidentified and current is UnidentifiedAccessMode.UNKNOWN:
        if has_profile_key:
            return UnidentifiedAccessMode.ENABLED
        return UnidentifiedAccessMode.UNRESTRICTED
    if not unidentified and current is not UnidentifiedAccessMode.DISABLED:
        return UnidentifiedAccessMode.DISABLED
    return None


class OutcomeReconciler:
    def __init__(
        self,
        store: SQLiteMessageStore,
        notifier: Notifier,
        expiration: ExpiringMessageManager,
        *,
        unidentified_delivery_enabled: bool = True,
        clock: Callable[[], int] | None = None,
    ) -> None:
        self.store = store
        self.notifier = notifier
        self.expiration = expiration
        self.unidentified_delivery_enabled = unidentified_delivery_enabled
        self.clock = clock or (lambda: int(time.time() * 1000))

    def apply(
        self,
        outcome: DeliveryOutcome,
        *,
        message: OutgoingMessage,
        message_id: int,
        recipient: Recipient,
    ) -> None:
        if outcome.kind is OutcomeKind.SENT:
            self._on_sent(outcome, message, message_id, recipient)
        elif outcome.kind is OutcomeKind.RETRY_LATER:
            raise RetryLaterError(outcome.description or "transient delivery failure") from outcome.cause
        elif message_id < 0:
            logger.warning("Sync-only send failed (%s): %s", outcome.kind.value, outcome.description)
        elif outcome.kind is OutcomeKind.INSECURE_FALLBACK:
            logger.warning("Message %s needs insecure fallback", message_id)
            if self.store.mark_as_pending_insecure_fallback(message_id):
                self.notifier.notify_message_delivery_failed(message_id)
        elif outcome.kind is OutcomeKind.UNTRUSTED_IDENTITY:
            logger.warning("Message %s hit an identity mismatch for %s", message_id, outcome.identity_address)
            self.store.add_mismatched_identity(
                message_id,
                outcome.identity_address or recipient.address,
                outcome.identity_key,
            )
            if self.store.mark_as_sent_failed(message_id):
                self.notifier.notify_message_delivery_failed(message_id)
        elif outcome.kind is OutcomeKind.TRANSPORT_ERROR:
            logger.warning("Message %s was rejected: %s", message_id, outcome.description)
            self.store.set_error_message(message_id, outcome.description or "delivery error")
            if self.store.mark_as_sent_failed(message_id):
                self.notifier.notify_message_delivery_failed(message_id)
        elif outcome.kind is OutcomeKind.UNDELIVERABLE:
            logger.warning("Message %s is undeliverable: %s", message_id, outcome.description)
            if self.store.mark_as_sent_failed(message_id):
                self.notifier.notify_message_delivery_failed(message_id)
        else:  # pragma: no cover - closed enum
            raise ValueError(f"Unhandled outcome: {outcome.kind}")

    def _on_sent(
        self,
        outcome: DeliveryOutcome,
        message: OutgoingMessage,
        message_id: int,
        recipient: Recipient,
    ) -> None:
        if message_id >= 0:
            self.store.mark_as_sent(message_id, secure=True)
            self.store.mark_attachments_uploaded(message_id, message.attachments)
            self.store.mark_unidentified(message_id, outcome.unidentified)

        if recipient.is_local_number:
            sync_id = SyncMessageId(recipient.address, message.sent_timestamp_ms)
            now = self.clock()
            self.store.increment_delivery_receipt_count(sync_id, now)
            self.store.increment_read_receipt_count(sync_id, now)

        if self.unidentified_delivery_enabled:
            current = recipient.unidentified_access_mode
            learned = next_unidentified_access_mode(
                current,
                outcome.unidentified,
                recipient.profile_key is not None,
            )
            if learned is not None:
                logger.info(
                    "Marking %s as %s following a %s send",
                    recipient.address,
                    learned.value,
                    "sealed" if outcome.unidentified else "identified",
                )
                self.store.set_unidentified_access_mode(recipient.address, learned, expected=current)

        if message_id > 0 and message.expires_in_ms > 0 and not message.expiration_update:
            self.store.mark_expire_started(message_id)
            self.expiration.schedule_deletion(message_id, message.expires_in_ms)

        logger.info("Sent message %s (unidentified=%s)", message_id, outcome.unidentified)
