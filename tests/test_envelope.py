from __future__ import annotations

import pytest

from outbox.messages.models import (
    Address,
    Attachment,
    AttachmentKind,
    AttachmentPointer,
    LinkPreview,
    Sticker,
)
from outbox.sending.envelope import build_envelope, build_self_send_sync_message
from outbox.sending.exceptions import UndeliverableMessageError

from conftest import LOCAL_ADDRESS


def _uploaded(attachment_id: int, kind: AttachmentKind = AttachmentKind.BODY) -> Attachment:
    return Attachment(
        attachment_id=attachment_id,
        kind=kind,
        content_type="image/png",
        remote_pointer=AttachmentPointer(remote_id=f"r{attachment_id}", content_type="image/png"),
    )


@pytest.mark.parametrize(
    ("expires_in_ms", "expected"),
    [(0, 0), (999, 0), (2999, 2), (3000, 3)],
)
def test_expire_timer_truncates_to_seconds(make_message, expires_in_ms, expected):
    envelope = build_envelope(make_message(expires_in_ms=expires_in_ms))
    assert envelope.expire_timer == expected


def test_sticker_travels_outside_attachments(make_message):
    sticker_image = _uploaded(2, AttachmentKind.STICKER)
    message = make_message(
        attachments=[_uploaded(1), sticker_image],
        sticker=Sticker(pack_id="pack", pack_key="key", sticker_id=4, attachment=sticker_image),
    )

    envelope = build_envelope(message)

    assert [pointer.remote_id for pointer in envelope.attachments] == ["r1"]
    assert envelope.sticker.pointer.remote_id == "r2"
    assert envelope.to_dict()["sticker"]["sticker_id"] == 4


def test_missing_pointer_is_undeliverable(make_message):
    message = make_message(attachments=[Attachment(attachment_id=1)])
    with pytest.raises(UndeliverableMessageError):
        build_envelope(message)


def test_preview_without_uploaded_thumbnail_is_undeliverable(make_message):
    message = make_message(
        link_previews=[LinkPreview(url="https://example.org", thumbnail=Attachment(attachment_id=3))]
    )
    with pytest.raises(UndeliverableMessageError):
        build_envelope(message)


def test_caption_is_carried_on_pointer(make_message):
    attachment = _uploaded(1)
    attachment.caption = "sunset"
    envelope = build_envelope(make_message(attachments=[attachment]))
    assert envelope.attachments[0].caption == "sunset"


def test_profile_key_and_timestamp(make_message):
    envelope = build_envelope(make_message(body="hi"), profile_key=b"\x01\x02")
    payload = envelope.to_dict()
    assert payload["timestamp"] == 1_700_000_000_000
    assert payload["body"] == "hi"
    assert payload["profile_key"] == "AQI="


def test_self_send_sync_message(make_message):
    envelope = build_envelope(make_message(recipient=LOCAL_ADDRESS))
    sync = build_self_send_sync_message(envelope, Address(LOCAL_ADDRESS), unidentified=True)

    payload = sync.to_dict()["sent"]
    assert payload["destination"] == LOCAL_ADDRESS
    assert payload["timestamp"] == envelope.timestamp_ms
    assert payload["unidentified_status"] == {LOCAL_ADDRESS: True}
    assert payload["message"] == envelope.to_dict()
