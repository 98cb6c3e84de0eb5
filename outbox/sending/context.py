"""Collaborators handed to send-pipeline jobs."""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional

from outbox.messages.models import Address
from outbox.messages.store import SQLiteMessageStore
from outbox.sending.delivery import DeliveryNegotiator
from outbox.sending.expiration import ExpiringMessageManager
from outbox.sending.notifications import Notifier
from outbox.sending.reconciler import OutcomeReconciler
from outbox.sending.transport import Transport


@dataclass
class SendContext:
    store: SQLiteMessageStore
    transport: Transport
    notifier: Notifier
    expiration: ExpiringMessageManager
    local_address: Optional[Address] = None
    unidentified_delivery_enabled: bool = True
    _negotiator: Optional[DeliveryNegotiator] = field(default=None, init=False, repr=False)
    _reconciler: Optional[OutcomeReconciler] = field(default=None, init=False, repr=False)

    @property
    def negotiator(self) -> DeliveryNegotiator:
        if self._negotiator is None:
            self._negotiator = DeliveryNegotiator(self.store, self.transport, self.local_address)
        return self._negotiator

    @property
    def reconciler(self) -> OutcomeReconciler:
        if self._reconciler is None:
            self._reconciler = OutcomeReconciler(
                self.store,
                self.notifier,
                self.expiration,
                unidentified_delivery_enabled=self.unidentified_delivery_enabled,
            )
        return self._reconciler

    def fail_message(self, message_id: int) -> None:
        if self.store.mark_as_sent_failed(message_id):
            self.notifier.notify_message_delivery_failed(message_id)
