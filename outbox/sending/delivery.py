"""Delivery negotiation: sealed vs identified sends and the note-to-self path."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from outbox.messages.models import Address, OutgoingMessage, Recipient
from outbox.messages.store import SQLiteMessageStore
from outbox.sending.envelope import build_envelope, build_self_send_sync_message
from outbox.sending.exceptions import (
    InsecureFallbackRequiredError,
    TransportReportedError,
    UndeliverableMessageError,
    UntrustedIdentityError,
)
from outbox.sending.transport import DeliveryTarget, Transport

logger = logging.getLogger(__name__)


class OutcomeKind(str, Enum):
    SENT = "sent"
    INSECURE_FALLBACK = "insecure_fallback"
    UNDELIVERABLE = "undeliverable"
    UNTRUSTED_IDENTITY = "untrusted_identity"
    TRANSPORT_ERROR = "transport_error"
    RETRY_LATER = "retry_later"


@dataclass(frozen=True)
class DeliveryOutcome:
    kind: OutcomeKind
    unidentified: bool = False
    description: Optional[str] = None
    identity_address: Optional[Address] = None
    identity_key: Optional[str] = None
    cause: Optional[BaseException] = None

    @classmethod
    def sent(cls, unidentified: bool) -> "DeliveryOutcome":
        return cls(OutcomeKind.SENT, unidentified=unidentified)

    @classmethod
    def failure(cls, kind: OutcomeKind, cause: BaseException, **kwargs) -> "DeliveryOutcome":
        return cls(kind, description=str(cause), cause=cause, **kwargs)


class DeliveryNegotiator:
    def __init__(
        self,
        store: SQLiteMessageStore,
        transport: Transport,
        local_address: Optional[Address],
    ) -> None:
        self.store = store
        self.transport = transport
        self.local_address = local_address

    def is_note_to_self(self, target: DeliveryTarget) -> bool:
        if self.local_address is None:
            return False
        return target.address == self.local_address

    def deliver(self, message: OutgoingMessage, destination: Address, message_id: int) -> DeliveryOutcome:
        try:
            recipient = self.store.get_recipient(destination)
            target = self.transport.resolve_address(recipient.address)
            envelope = build_envelope(message, profile_key=self._local_profile_key())

            if self.is_note_to_self(target):
                access = self.transport.get_access_for_sync(self._local_recipient())
                sync_message = build_self_send_sync_message(
                    envelope,
                    target.address,
                    unidentified=access is not None,
                )
                self.transport.send_sync_message(sync_message, access)
                return DeliveryOutcome.sent(unidentified=access is not None)

            access = self.transport.get_access_for(recipient)
            result = self.transport.send_message(message_id, target, access, envelope)
            if result.error is not None:
                raise TransportReportedError(result.error)
            return DeliveryOutcome.sent(unidentified=result.unidentified)
        except InsecureFallbackRequiredError as exc:
            logger.warning("[delivery] %s is not reachable securely: %s", destination, exc)
            return DeliveryOutcome.failure(OutcomeKind.INSECURE_FALLBACK, exc)
        except (FileNotFoundError, UndeliverableMessageError) as exc:
            logger.warning("[delivery] Message %s is undeliverable: %s", message_id, exc)
            return DeliveryOutcome.failure(OutcomeKind.UNDELIVERABLE, exc)
        except UntrustedIdentityError as exc:
            logger.warning("[delivery] Untrusted identity for %s", exc.address)
            return DeliveryOutcome.failure(
                OutcomeKind.UNTRUSTED_IDENTITY,
                exc,
                identity_address=Address.from_serialized(exc.address),
                identity_key=exc.identity_key,
            )
        except TransportReportedError as exc:
            logger.warning("[delivery] Relay reported an error for %s: %s", destination, exc.description)
            return DeliveryOutcome.failure(OutcomeKind.TRANSPORT_ERROR, exc)
        except OSError as exc:
            logger.warning("[delivery] Transient transport failure for %s: %s", destination, exc)
            return DeliveryOutcome.failure(OutcomeKind.RETRY_LATER, exc)

    def _local_recipient(self) -> Recipient:
        return self.store.get_recipient(self.local_address)

    def _local_profile_key(self) -> Optional[bytes]:
        if self.local_address is None:
            return None
        return self._local_recipient().profile_key
