from __future__ import annotations

import argparse

import pytest

from cli import enqueue_message
from outbox.config import AppConfig
from outbox.jobs import queue as task_queue
from outbox.messages.models import Address, MessageStatus
from outbox.messages.store import SQLiteMessageStore
from outbox.sending import push_media_send
from outbox.sending.transport import HttpTransport
from outbox.workers import processing

from conftest import LOCAL_ADDRESS, REMOTE_ADDRESS, FakeTransport, RecordingNotifier


def _config(db_path, **kwargs) -> AppConfig:
    return AppConfig(database_path=db_path, local_address=LOCAL_ADDRESS, **kwargs)


def test_build_job_manager_wires_context(db_path):
    manager = processing.build_job_manager(_config(db_path, transport_url="https://relay.test"))

    assert manager.queue_target == str(db_path)
    assert manager.task_types == ["attachment_upload", "expire_message", "push_media_send"]
    context = manager.context
    assert isinstance(context.transport, HttpTransport)
    assert context.transport.base_url == "https://relay.test"
    assert context.local_address == Address(LOCAL_ADDRESS)
    assert context.expiration.manager is manager


def test_build_job_manager_requires_local_address(db_path):
    with pytest.raises(SystemExit):
        processing.build_job_manager(AppConfig(database_path=db_path))


def test_build_job_manager_honours_redis_queue(db_path):
    manager = processing.build_job_manager(
        _config(db_path, task_queue_url="redis://localhost:6379/0"),
        transport=FakeTransport(),
    )
    assert manager.queue_target == "redis://localhost:6379/0"


def test_run_once_processes_single_task(monkeypatch, db_path, make_message):
    monkeypatch.delenv("OUTBOX_TASK_QUEUE", raising=False)
    transport = FakeTransport()
    notifier = RecordingNotifier()
    store = SQLiteMessageStore(db_path, local_address=LOCAL_ADDRESS)
    store.save_outgoing_message(make_message(message_id=42))

    real_build = processing.build_job_manager

    def _build(config):
        return real_build(config, transport=transport, notifier=notifier)

    monkeypatch.setattr(processing, "build_job_manager", _build)
    manager = _build(_config(db_path))
    push_media_send.enqueue(manager.context, manager, 42, Address(REMOTE_ADDRESS))

    args = argparse.Namespace(
        database=str(db_path),
        log_level=None,
        transport_url=None,
        local_address=LOCAL_ADDRESS,
        task_types=None,
        poll_interval=0.0,
        run_once=True,
    )
    processing.run(args)

    assert store.is_sent(42)
    assert len(transport.sent) == 1


def test_parse_fan_out():
    jobs = enqueue_message.parse_fan_out(7, ["+15553334444=8", "+15550000000=-1"])

    assert [(job.template_message_id, job.message_id, job.destination) for job in jobs] == [
        (7, 8, Address("+15553334444")),
        (7, -1, Address("+15550000000")),
    ]


@pytest.mark.parametrize("entry", ["+1555", "=8", "+1555=abc"])
def test_parse_fan_out_rejects_malformed_entries(entry):
    with pytest.raises(SystemExit):
        enqueue_message.parse_fan_out(7, [entry])


def test_enqueue_message_main(monkeypatch, db_path, make_message, make_attachment):
    monkeypatch.setenv("OUTBOX_LOCAL_ADDRESS", LOCAL_ADDRESS)
    monkeypatch.delenv("OUTBOX_TASK_QUEUE", raising=False)
    store = SQLiteMessageStore(db_path, local_address=LOCAL_ADDRESS)
    store.save_outgoing_message(make_message(message_id=43, attachments=[make_attachment()]))
    store.save_outgoing_message(make_message(message_id=44, recipient="+15553334444"))

    enqueue_message.main(["43", "--send", "+15553334444=44", "--database", str(db_path)])

    assert store.get_status(43) is MessageStatus.SENDING
    assert store.get_status(44) is MessageStatus.SENDING
    upload = task_queue.fetch_and_lock_task(str(db_path))
    assert upload.task_type == "attachment_upload"
    # Both sends wait on the upload.
    assert task_queue.fetch_and_lock_task(str(db_path)) is None


def test_enqueue_message_main_missing_message(monkeypatch, db_path):
    monkeypatch.setenv("OUTBOX_LOCAL_ADDRESS", LOCAL_ADDRESS)
    monkeypatch.delenv("OUTBOX_TASK_QUEUE", raising=False)

    enqueue_message.main(["999", "--database", str(db_path)])

    assert task_queue.fetch_and_lock_task(str(db_path)) is None
