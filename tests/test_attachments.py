from __future__ import annotations

from types import SimpleNamespace

import pytest

from outbox.messages.models import (
    Address,
    Attachment,
    AttachmentKind,
    LinkPreview,
    SharedContact,
    TransferState,
)
from outbox.sending.attachments import (
    AttachmentUploadJob,
    get_attachment_upload_jobs,
    resolve_attachments,
)
from outbox.sending.exceptions import (
    AttachmentStoreError,
    NoSuchMessageError,
    RetryLaterError,
    TransportIOError,
    UndeliverableMessageError,
)

from conftest import REMOTE_ADDRESS


def test_resolve_orders_body_previews_then_avatars(make_message):
    body = Attachment(attachment_id=1)
    thumb = Attachment(attachment_id=2, kind=AttachmentKind.LINK_PREVIEW_THUMBNAIL)
    avatar = Attachment(attachment_id=3, kind=AttachmentKind.SHARED_CONTACT_AVATAR)
    message = make_message(
        message_id=5,
        attachments=[body],
        link_previews=[LinkPreview(url="https://example.org", thumbnail=thumb)],
        shared_contacts=[SharedContact(name="Ada", avatar=avatar)],
    )

    assert [item.attachment_id for item in resolve_attachments(message)] == [1, 2, 3]


def test_resolve_lists_shared_attachment_once(store, make_message, make_attachment):
    shared = make_attachment("shared.jpg")
    message_id = store.save_outgoing_message(
        make_message(
            attachments=[shared],
            link_previews=[LinkPreview(url="https://example.org", thumbnail=shared)],
        )
    )

    message = store.get_outgoing_message(message_id)

    assert message.link_previews[0].thumbnail.attachment_id == shared.attachment_id
    assert [item.attachment_id for item in resolve_attachments(message)] == [shared.attachment_id]


def test_resolve_rejects_unpersisted_attachment(make_message):
    message = make_message(message_id=5, attachments=[Attachment()])
    with pytest.raises(AttachmentStoreError):
        resolve_attachments(message)


def test_message_without_media_needs_no_uploads(store, make_message):
    message_id = store.save_outgoing_message(make_message(message_id=42))
    assert get_attachment_upload_jobs(store, message_id, Address(REMOTE_ADDRESS)) == []


def test_upload_jobs_for_each_attachment(store, make_message, make_attachment):
    first = make_attachment("a.jpg")
    second = make_attachment("b.jpg")
    message_id = store.save_outgoing_message(make_message(attachments=[first, second]))

    jobs = get_attachment_upload_jobs(store, message_id, Address(REMOTE_ADDRESS))

    assert [job.attachment_id for job in jobs] == [first.attachment_id, second.attachment_id]
    assert all(job.destination == Address(REMOTE_ADDRESS) for job in jobs)
    assert jobs[0].parameters.max_attempts == 10


def test_upload_jobs_for_missing_message(store):
    with pytest.raises(NoSuchMessageError):
        get_attachment_upload_jobs(store, 404, Address(REMOTE_ADDRESS))


def _context(store, transport):
    return SimpleNamespace(store=store, transport=transport)


def test_upload_job_stores_pointer(store, transport, make_message, make_attachment):
    attachment = make_attachment()
    store.save_outgoing_message(make_message(attachments=[attachment]))
    job = AttachmentUploadJob(attachment.attachment_id, Address(REMOTE_ADDRESS))

    job.run(_context(store, transport))
    # Already uploaded; a second run is a no-op.
    job.run(_context(store, transport))

    assert transport.uploads == [attachment.attachment_id]
    stored = store.get_attachment(attachment.attachment_id)
    assert stored.transfer_state is TransferState.DONE
    assert stored.remote_pointer.remote_id == f"remote-{attachment.attachment_id}"


def test_upload_job_missing_payload_is_undeliverable(store, transport, make_message, make_attachment):
    attachment = make_attachment()
    store.save_outgoing_message(make_message(attachments=[attachment]))
    transport.upload_error = FileNotFoundError(attachment.data_path)

    with pytest.raises(UndeliverableMessageError):
        AttachmentUploadJob(attachment.attachment_id, Address(REMOTE_ADDRESS)).run(_context(store, transport))
    assert store.get_attachment(attachment.attachment_id).transfer_state is TransferState.FAILED


def test_upload_job_io_failure_retries_later(store, transport, make_message, make_attachment):
    attachment = make_attachment()
    store.save_outgoing_message(make_message(attachments=[attachment]))
    transport.upload_error = TransportIOError("connection reset")

    with pytest.raises(RetryLaterError):
        AttachmentUploadJob(attachment.attachment_id, Address(REMOTE_ADDRESS)).run(_context(store, transport))
    assert store.get_attachment(attachment.attachment_id).transfer_state is TransferState.STARTED


def test_upload_job_serializes_round_trip():
    job = AttachmentUploadJob(12, Address(REMOTE_ADDRESS))
    restored = AttachmentUploadJob.create(job.parameters, job.serialize())
    assert restored.attachment_id == 12
    assert restored.destination == Address(REMOTE_ADDRESS)
    assert restored.parameters.max_attempts == 10
