from __future__ import annotations

from pathlib import Path
from typing import Callable, Iterable, List, Optional, Tuple

import pytest

from outbox.jobs.job import JobManager
from outbox.messages.models import (
    Address,
    Attachment,
    AttachmentKind,
    AttachmentPointer,
    OutgoingMessage,
)
from outbox.messages.store import SQLiteMessageStore
from outbox.sending.context import SendContext
from outbox.sending.expiration import ExpiringMessageManager
from outbox.sending.push_media_send import register_jobs
from outbox.sending.transport import DeliveryTarget, SendMessageResult

LOCAL_ADDRESS = "+15550000000"
REMOTE_ADDRESS = "+15551112222"


class FakeTransport:
    def __init__(self) -> None:
        self.sent: List[tuple] = []
        self.sync_sent: List[tuple] = []
        self.uploads: List[int] = []
        self.access = None
        self.sync_access = None
        self.result_unidentified = False
        self.result_error: Optional[str] = None
        self.sync_result_error: Optional[str] = None
        self.send_error: Optional[Exception] = None
        self.upload_error: Optional[Exception] = None

    def resolve_address(self, address: Address) -> DeliveryTarget:
        return DeliveryTarget(address=address, transport_address=address.serialize())

    def get_access_for(self, recipient):
        return self.access

    def get_access_for_sync(self, local_recipient):
        return self.sync_access

    def send_message(self, message_id, target, access, envelope) -> SendMessageResult:
        self.sent.append((message_id, target, access, envelope))
        if self.send_error is not None:
            raise self.send_error
        return SendMessageResult(
            address=target.address,
            unidentified=self.result_unidentified,
            error=self.result_error,
        )

    def send_sync_message(self, sync_message, access) -> SendMessageResult:
        self.sync_sent.append((sync_message, access))
        if self.send_error is not None:
            raise self.send_error
        return SendMessageResult(
            address=Address(LOCAL_ADDRESS),
            unidentified=False,
            error=self.sync_result_error,
        )

    def upload_attachment(self, attachment: Attachment, destination: Address) -> AttachmentPointer:
        self.uploads.append(attachment.attachment_id)
        if self.upload_error is not None:
            raise self.upload_error
        return AttachmentPointer(
            remote_id=f"remote-{attachment.attachment_id}",
            content_type=attachment.content_type,
            file_name=attachment.file_name,
        )


class RecordingNotifier:
    def __init__(self) -> None:
        self.failed: List[int] = []

    def notify_message_delivery_failed(self, message_id: int) -> None:
        self.failed.append(message_id)


@pytest.fixture
def db_path(tmp_path: Path) -> Path:
    return tmp_path / "outbox.db"


@pytest.fixture
def store(db_path: Path) -> SQLiteMessageStore:
    return SQLiteMessageStore(db_path, local_address=LOCAL_ADDRESS)


@pytest.fixture
def transport() -> FakeTransport:
    return FakeTransport()


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def send_runtime(
    db_path: Path,
    store: SQLiteMessageStore,
    transport: FakeTransport,
    notifier: RecordingNotifier,
) -> Tuple[SendContext, JobManager]:
    """Context and job manager sharing the test database."""
    manager = JobManager(str(db_path))
    manager.context = SendContext(
        store=store,
        transport=transport,
        notifier=notifier,
        expiration=ExpiringMessageManager(manager),
        local_address=Address(LOCAL_ADDRESS),
    )
    register_jobs(manager)
    return manager.context, manager


@pytest.fixture
def make_attachment(tmp_path: Path) -> Callable[..., Attachment]:
    def _factory(
        name: str = "photo.jpg",
        kind: AttachmentKind = AttachmentKind.BODY,
        content_type: str = "image/jpeg",
        data: bytes = b"\xff\xd8 jpeg bytes",
        uploaded: bool = False,
        attachment_id: int | None = None,
    ) -> Attachment:
        path = tmp_path / name
        path.write_bytes(data)
        return Attachment(
            attachment_id=attachment_id,
            kind=kind,
            content_type=content_type,
            file_name=name,
            size=len(data),
            data_path=str(path),
            remote_pointer=(
                AttachmentPointer(remote_id=f"remote-{name}", content_type=content_type)
                if uploaded
                else None
            ),
        )

    return _factory


@pytest.fixture
def make_message() -> Callable[..., OutgoingMessage]:
    def _factory(
        message_id: int | None = None,
        recipient: str = REMOTE_ADDRESS,
        body: str = "hello",
        attachments: Iterable[Attachment] | None = None,
        expires_in_ms: int = 0,
        expiration_update: bool = False,
        **kwargs,
    ) -> OutgoingMessage:
        return OutgoingMessage(
            message_id=message_id,
            recipient=Address(recipient),
            body=body,
            attachments=list(attachments or []),
            expires_in_ms=expires_in_ms,
            expiration_update=expiration_update,
            sent_timestamp_ms=1_700_000_000_000,
            **kwargs,
        )

    return _factory
