"""Attachment resolution and the upload jobs a send depends on."""
from __future__ import annotations

import logging
from typing import Any, Dict, List

from outbox.jobs.job import Job, JobParameters
from outbox.messages.models import Address, Attachment, OutgoingMessage, TransferState
from outbox.messages.store import SQLiteMessageStore
from outbox.sending.exceptions import (
    AttachmentStoreError,
    RetryLaterError,
    UndeliverableMessageError,
)

logger = logging.getLogger(__name__)


def resolve_attachments(message: OutgoingMessage) -> List[Attachment]:
    """Every attachment that must be uploaded before ``message`` can go out.

    Order: message attachments, link preview thumbnails, shared-contact
    avatars. An attachment reused under several roles is listed once.
    """
    candidates: List[Attachment] = list(message.attachments)
    candidates.extend(
        preview.thumbnail for preview in message.link_previews if preview.thumbnail is not None
    )
    candidates.extend(
        contact.avatar for contact in message.shared_contacts if contact.avatar is not None
    )

    resolved: List[Attachment] = []
    seen: set[int] = set()
    for attachment in candidates:
        if attachment.attachment_id is None:
            raise AttachmentStoreError(
                f"Attachment of message {message.message_id} was never persisted"
            )
        if attachment.attachment_id in seen:
            continue
        seen.add(attachment.attachment_id)
        resolved.append(attachment)
    return resolved


def get_attachment_upload_jobs(
    store: SQLiteMessageStore,
    message_id: int,
    destination: Address,
) -> List["AttachmentUploadJob"]:
    message = store.get_outgoing_message(message_id)
    return [
        AttachmentUploadJob(attachment.attachment_id, destination)
        for attachment in resolve_attachments(message)
    ]


class AttachmentUploadJob(Job):
    factory_key = "attachment_upload"

    def __init__(
        self,
        attachment_id: int,
        destination: Address,
        parameters: JobParameters | None = None,
    ) -> None:
        super().__init__(parameters or JobParameters(max_attempts=10))
        self.attachment_id = attachment_id
        self.destination = destination

    @classmethod
    def create(cls, parameters: JobParameters, data: Dict[str, Any]) -> "AttachmentUploadJob":
        return cls(
            int(data["attachment_id"]),
            Address.from_serialized(data["destination"]),
            parameters,
        )

    def serialize(self) -> Dict[str, Any]:
        return {
            "attachment_id": self.attachment_id,
            "destination": self.destination.serialize(),
        }

    def run(self, context: Any) -> None:
        store = context.store
        attachment = store.get_attachment(self.attachment_id)
        if attachment.transfer_state is TransferState.DONE and attachment.remote_pointer is not None:
            logger.info("[upload] Attachment %s already uploaded", self.attachment_id)
            return
        store.set_transfer_state(self.attachment_id, TransferState.STARTED)
        try:
            pointer = context.transport.upload_attachment(attachment, self.destination)
        except FileNotFoundError as exc:
            store.set_transfer_state(self.attachment_id, TransferState.FAILED)
            raise UndeliverableMessageError(
                f"Payload of attachment {self.attachment_id} is missing"
            ) from exc
        except OSError as exc:
            raise RetryLaterError(f"Upload of attachment {self.attachment_id} failed: {exc}") from exc
        store.set_attachment_pointer(self.attachment_id, pointer)
        logger.info("[upload] Uploaded attachment %s for %s", self.attachment_id, self.destination)

    def on_canceled(self, context: Any) -> None:
        context.store.set_transfer_state(self.attachment_id, TransferState.FAILED)
