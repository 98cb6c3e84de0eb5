"""Dataclasses describing outgoing messages, attachments and recipients."""
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional


class AttachmentKind(str, Enum):
    BODY = "body"
    STICKER = "sticker"
    LINK_PREVIEW_THUMBNAIL = "link_preview_thumbnail"
    SHARED_CONTACT_AVATAR = "shared_contact_avatar"


class TransferState(str, Enum):
    PENDING = "pending"
    STARTED = "started"
    DONE = "done"
    FAILED = "failed"


class MessageStatus(str, Enum):
    PENDING = "pending"
    SENDING = "sending"
    SENT = "sent"
    SENT_FAILED = "sent_failed"
    PENDING_INSECURE_FALLBACK = "pending_insecure_fallback"


class UnidentifiedAccessMode(str, Enum):
    UNKNOWN = "unknown"
    ENABLED = "enabled"
    DISABLED = "disabled"
    UNRESTRICTED = "unrestricted"


@dataclass(frozen=True)
class Address:
    value: str

    @classmethod
    def from_serialized(cls, serialized: str) -> "Address":
        if not serialized or not serialized.strip():
            raise ValueError("address must be a non-empty string")
        return cls(serialized.strip())

    def serialize(self) -> str:
        return self.value

    def __str__(self) -> str:
        return self.value


@dataclass
class AttachmentPointer:
    """Reference to an uploaded attachment on the remote side."""

    remote_id: str
    content_type: str
    key: Optional[str] = None
    size: Optional[int] = None
    digest: Optional[str] = None
    file_name: Optional[str] = None
    caption: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "remote_id": self.remote_id,
            "content_type": self.content_type,
            "key": self.key,
            "size": self.size,
            "digest": self.digest,
            "file_name": self.file_name,
            "caption": self.caption,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "AttachmentPointer":
        return cls(
            remote_id=str(data["remote_id"]),
            content_type=data.get("content_type") or "application/octet-stream",
            key=data.get("key"),
            size=data.get("size"),
            digest=data.get("digest"),
            file_name=data.get("file_name"),
            caption=data.get("caption"),
        )


@dataclass
class Attachment:
    attachment_id: Optional[int] = None
    kind: AttachmentKind = AttachmentKind.BODY
    content_type: str = "application/octet-stream"
    file_name: Optional[str] = None
    size: Optional[int] = None
    data_path: Optional[str] = None
    caption: Optional[str] = None
    transfer_state: TransferState = TransferState.PENDING
    remote_pointer: Optional[AttachmentPointer] = None

    @property
    def is_sticker(self) -> bool:
        return self.kind is AttachmentKind.STICKER


@dataclass
class Quote:
    quote_id: int
    author: Address
    text: Optional[str] = None
    attachments: List[Attachment] = field(default_factory=list)


@dataclass
class Sticker:
    pack_id: str
    pack_key: str
    sticker_id: int
    attachment: Attachment


@dataclass
class SharedContact:
    name: str
    phone_numbers: List[str] = field(default_factory=list)
    emails: List[str] = field(default_factory=list)
    organization: Optional[str] = None
    avatar: Optional[Attachment] = None


@dataclass
class LinkPreview:
    url: str
    title: Optional[str] = None
    thumbnail: Optional[Attachment] = None


@dataclass
class OutgoingMessage:
    recipient: Address
    body: Optional[str] = None
    message_id: Optional[int] = None
    attachments: List[Attachment] = field(default_factory=list)
    quote: Optional[Quote] = None
    sticker: Optional[Sticker] = None
    shared_contacts: List[SharedContact] = field(default_factory=list)
    link_previews: List[LinkPreview] = field(default_factory=list)
    expires_in_ms: int = 0
    expiration_update: bool = False
    sent_timestamp_ms: int = 0
    status: MessageStatus = MessageStatus.PENDING


@dataclass
class Recipient:
    address: Address
    profile_key: Optional[bytes] = None
    unidentified_access_mode: UnidentifiedAccessMode = UnidentifiedAccessMode.UNKNOWN
    is_local_number: bool = False


@dataclass(frozen=True)
class SyncMessageId:
    address: Address
    timestamp_ms: int
