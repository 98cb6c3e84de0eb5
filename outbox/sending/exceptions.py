"""Error taxonomy for the send pipeline."""
from __future__ import annotations

from typing import Optional


class OutboxError(Exception):
    """Base error for the outbox pipeline."""


class NoSuchMessageError(OutboxError):
    """The referenced outgoing message does not exist."""

    def __init__(self, message_id: int) -> None:
        super().__init__(f"no such message: {message_id}")
        self.message_id = message_id


class AttachmentStoreError(OutboxError):
    """An attachment row could not be read from the message store."""


class RetryLaterError(OutboxError):
    """Transient failure; the job asks to be run again later."""


class UndeliverableMessageError(OutboxError):
    """The message can never be delivered as composed."""


class InsecureFallbackRequiredError(OutboxError):
    """The recipient cannot be reached on the secure path."""


class UntrustedIdentityError(OutboxError):
    """The recipient's identity key changed since it was last trusted."""

    def __init__(self, address: str, identity_key: Optional[str] = None) -> None:
        super().__init__(f"untrusted identity for {address}")
        self.address = address
        self.identity_key = identity_key


class TransportReportedError(OutboxError):
    """Delivery error reported by the recipient side or the relay."""

    def __init__(self, description: str) -> None:
        super().__init__(description)
        self.description = description


class UnregisteredUserError(InsecureFallbackRequiredError):
    """The transport has no registration for the destination."""

    def __init__(self, address: str) -> None:
        super().__init__(f"unregistered user: {address}")
        self.address = address


class TransportIOError(OSError):
    """Network or relay I/O failure while talking to the transport."""
