"""Construction of the outbound data message from a stored record."""
from __future__ import annotations

import base64
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from outbox.messages.models import Address, Attachment, AttachmentPointer, OutgoingMessage
from outbox.sending.exceptions import UndeliverableMessageError


@dataclass
class EnvelopeQuote:
    quote_id: int
    author: str
    text: Optional[str]
    attachments: List[Dict[str, Optional[str]]] = field(default_factory=list)


@dataclass
class EnvelopeSticker:
    pack_id: str
    pack_key: str
    sticker_id: int
    pointer: AttachmentPointer


@dataclass
class EnvelopeContact:
    name: str
    phone_numbers: List[str]
    emails: List[str]
    organization: Optional[str] = None
    avatar: Optional[AttachmentPointer] = None


@dataclass
class EnvelopePreview:
    url: str
    title: Optional[str] = None
    image: Optional[AttachmentPointer] = None


@dataclass
class Envelope:
    """Wire-level data message. Built whole or not at all."""

    timestamp_ms: int
    body: Optional[str] = None
    attachments: List[AttachmentPointer] = field(default_factory=list)
    expire_timer: int = 0
    profile_key: Optional[bytes] = None
    quote: Optional[EnvelopeQuote] = None
    sticker: Optional[EnvelopeSticker] = None
    shared_contacts: List[EnvelopeContact] = field(default_factory=list)
    previews: List[EnvelopePreview] = field(default_factory=list)
    expiration_update: bool = False

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "timestamp": self.timestamp_ms,
            "body": self.body,
            "attachments": [pointer.to_dict() for pointer in self.attachments],
            "expire_timer": self.expire_timer,
            "expiration_update": self.expiration_update,
            "shared_contacts": [
                {
                    "name": contact.name,
                    "phone_numbers": contact.phone_numbers,
                    "emails": contact.emails,
                    "organization": contact.organization,
                    "avatar": contact.avatar.to_dict() if contact.avatar else None,
                }
                for contact in self.shared_contacts
            ],
            "previews": [
                {
                    "url": preview.url,
                    "title": preview.title,
                    "image": preview.image.to_dict() if preview.image else None,
                }
                for preview in self.previews
            ],
        }
        if self.profile_key is not None:
            payload["profile_key"] = base64.b64encode(self.profile_key).decode("ascii")
        if self.quote is not None:
            payload["quote"] = {
                "id": self.quote.quote_id,
                "author": self.quote.author,
                "text": self.quote.text,
                "attachments": self.quote.attachments,
            }
        if self.sticker is not None:
            payload["sticker"] = {
                "pack_id": self.sticker.pack_id,
                "pack_key": self.sticker.pack_key,
                "sticker_id": self.sticker.sticker_id,
                "data": self.sticker.pointer.to_dict(),
            }
        return payload


@dataclass
class SentTranscript:
    destination: str
    timestamp_ms: int
    envelope: Envelope
    expiration_start_ms: int = 0
    unidentified_status: Dict[str, bool] = field(default_factory=dict)


@dataclass
class SyncMessage:
    """Copy of an outgoing message addressed to the sender's own devices."""

    sent: SentTranscript

    def to_dict(self) -> Dict[str, Any]:
        return {
            "sent": {
                "destination": self.sent.destination,
                "timestamp": self.sent.timestamp_ms,
                "expiration_start": self.sent.expiration_start_ms,
                "unidentified_status": dict(self.sent.unidentified_status),
                "message": self.sent.envelope.to_dict(),
            }
        }


def _pointer_for(attachment: Attachment) -> AttachmentPointer:
    pointer = attachment.remote_pointer
    if pointer is None:
        raise UndeliverableMessageError(
            f"Attachment {attachment.attachment_id} has no uploaded pointer"
        )
    if attachment.caption and not pointer.caption:
        pointer = AttachmentPointer(**{**pointer.to_dict(), "caption": attachment.caption})
    return pointer


def build_envelope(message: OutgoingMessage, *, profile_key: Optional[bytes] = None) -> Envelope:
    """Map an outgoing record onto an envelope.

    Stickers travel in their own field and are left out of ``attachments``.
    ``expire_timer`` is whole seconds, truncated.
    """
    attachments = [_pointer_for(item) for item in message.attachments if not item.is_sticker]

    quote = None
    if message.quote is not None:
        quote = EnvelopeQuote(
            quote_id=message.quote.quote_id,
            author=message.quote.author.serialize(),
            text=message.quote.text,
            attachments=[
                {"content_type": item.content_type, "file_name": item.file_name}
                for item in message.quote.attachments
            ],
        )

    sticker = None
    if message.sticker is not None:
        sticker = EnvelopeSticker(
            pack_id=message.sticker.pack_id,
            pack_key=message.sticker.pack_key,
            sticker_id=message.sticker.sticker_id,
            pointer=_pointer_for(message.sticker.attachment),
        )

    contacts = [
        EnvelopeContact(
            name=contact.name,
            phone_numbers=list(contact.phone_numbers),
            emails=list(contact.emails),
            organization=contact.organization,
            avatar=_pointer_for(contact.avatar) if contact.avatar is not None else None,
        )
        for contact in message.shared_contacts
    ]

    previews = [
        EnvelopePreview(
            url=preview.url,
            title=preview.title,
            image=_pointer_for(preview.thumbnail) if preview.thumbnail is not None else None,
        )
        for preview in message.link_previews
    ]

    return Envelope(
        timestamp_ms=message.sent_timestamp_ms,
        body=message.body,
        attachments=attachments,
        expire_timer=int(message.expires_in_ms // 1000),
        profile_key=profile_key,
        quote=quote,
        sticker=sticker,
        shared_contacts=contacts,
        previews=previews,
        expiration_update=message.expiration_update,
    )


def build_self_send_sync_message(
    envelope: Envelope,
    local_address: Address,
    *,
    unidentified: bool,
) -> SyncMessage:
    transcript = SentTranscript(
        destination=local_address.serialize(),
        timestamp_ms=envelope.timestamp_ms,
        envelope=envelope,
        unidentified_status={local_address.serialize(): unidentified},
    )
    return SyncMessage(sent=transcript)
