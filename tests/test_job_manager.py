from __future__ import annotations

from outbox.jobs import queue as task_queue
from outbox.jobs.job import Job, JobManager, JobParameters
from outbox.messages.models import Address, MessageStatus, TransferState
from outbox.sending import push_media_send
from outbox.sending.exceptions import TransportIOError
from outbox.sending.expiration import ExpireMessageJob
from outbox.sending.push_media_send import PushMediaSendJob

from conftest import REMOTE_ADDRESS


class RecordingJob(Job):
    factory_key = "recording"

    def __init__(self, name, parameters=None, error=None, retry=False):
        super().__init__(parameters)
        self.name = name
        self.error = error
        self.retry = retry

    @classmethod
    def create(cls, parameters, data):
        return cls(data["name"], parameters, error=data.get("error"), retry=data.get("retry", False))

    def serialize(self):
        return {"name": self.name, "error": self.error, "retry": self.retry}

    def run(self, context):
        context.append(("run", self.name))
        if self.error:
            raise ValueError(self.error)

    def on_added(self, context):
        context.append(("added", self.name))

    def on_should_retry(self, exception):
        return self.retry

    def on_canceled(self, context):
        context.append(("canceled", self.name))


def _recording_manager(tmp_path):
    events = []
    manager = JobManager(str(tmp_path / "jobs.db"), events)
    manager.register_factory(RecordingJob.factory_key, RecordingJob.create)
    return manager, events


def test_chain_runs_stages_in_order(tmp_path):
    manager, events = _recording_manager(tmp_path)
    manager.start_chain([RecordingJob("a"), RecordingJob("b")]).then([RecordingJob("c")]).enqueue()

    while manager.run_next():
        pass

    runs = [name for kind, name in events if kind == "run"]
    assert sorted(runs[:2]) == ["a", "b"]
    assert runs[2] == "c"
    assert [name for kind, name in events if kind == "added"] == ["a", "b", "c"]


def test_permanent_failure_cancels_dependents(tmp_path):
    manager, events = _recording_manager(tmp_path)
    manager.start_chain([RecordingJob("a", error="boom")]).then([RecordingJob("b")]).enqueue()

    assert manager.run_next() is not None
    assert manager.run_next() is None

    assert ("run", "b") not in events
    assert [name for kind, name in events if kind == "canceled"] == ["a", "b"]


def test_should_retry_reschedules(tmp_path):
    manager, events = _recording_manager(tmp_path)
    task_id = manager.add(RecordingJob("flaky", error="boom", retry=True))

    manager.run_next()

    task = task_queue.get_task(manager.queue_target, task_id)
    assert task.attempts == 1
    assert "boom" in task.last_error
    assert ("canceled", "flaky") not in events


def test_exhausted_retries_cancel(tmp_path):
    manager, events = _recording_manager(tmp_path)
    manager.add(RecordingJob("flaky", JobParameters(max_attempts=1), error="boom", retry=True))

    manager.run_next()

    assert ("canceled", "flaky") in events


def test_undecodable_task_is_canceled(tmp_path):
    manager, events = _recording_manager(tmp_path)
    task_id = task_queue.enqueue_task(manager.queue_target, "recording", {"data": {}})

    assert manager.run_next().task_id == task_id
    assert events == []
    assert manager.run_next() is None
    assert task_queue.get_task(manager.queue_target, task_id).last_error.startswith("KeyError")


def test_delay_ms_postpones_job(tmp_path):
    manager, events = _recording_manager(tmp_path)
    manager.add(RecordingJob("later"), delay_ms=60_000)
    assert manager.run_next() is None


def test_media_send_end_to_end(send_runtime, store, transport, notifier, make_message, make_attachment):
    context, manager = send_runtime
    attachment = make_attachment()
    store.save_outgoing_message(make_message(message_id=43, attachments=[attachment]))

    upload_id, send_id = push_media_send.enqueue(context, manager, 43, Address(REMOTE_ADDRESS))
    assert store.get_status(43) is MessageStatus.SENDING

    # The send waits for the upload.
    assert manager.run_next(task_types=[PushMediaSendJob.factory_key]) is None
    assert manager.run_next().task_id == upload_id
    assert manager.run_next().task_id == send_id
    assert manager.run_next() is None

    assert transport.uploads == [attachment.attachment_id]
    envelope = transport.sent[0][3]
    assert envelope.attachments[0].remote_id == f"remote-{attachment.attachment_id}"
    assert store.is_sent(43)
    assert store.get_attachment(attachment.attachment_id).transfer_state is TransferState.DONE
    assert notifier.failed == []


def test_transient_send_failure_is_rescheduled(send_runtime, store, transport, notifier, make_message):
    context, manager = send_runtime
    store.save_outgoing_message(make_message(message_id=42))
    (send_id,) = push_media_send.enqueue(context, manager, 42, Address(REMOTE_ADDRESS))
    transport.send_error = TransportIOError("connection reset")

    manager.run_next()

    task = task_queue.get_task(manager.queue_target, send_id)
    assert task.attempts == 1
    assert "RetryLaterError" in task.last_error
    assert store.get_status(42) is MessageStatus.SENDING
    assert notifier.failed == []
    assert manager.run_next() is None


def test_send_fails_after_retries_are_exhausted(send_runtime, store, transport, notifier, make_message):
    _, manager = send_runtime
    store.save_outgoing_message(make_message(message_id=42))
    manager.add(
        PushMediaSendJob(
            42,
            42,
            Address(REMOTE_ADDRESS),
            JobParameters(queue_key=REMOTE_ADDRESS, max_attempts=1),
        )
    )
    transport.send_error = TransportIOError("connection reset")

    manager.run_next()

    assert store.get_status(42) is MessageStatus.SENT_FAILED
    assert notifier.failed == [42]


def test_missing_upload_payload_fails_send(send_runtime, store, transport, notifier, make_message, make_attachment):
    context, manager = send_runtime
    attachment = make_attachment()
    store.save_outgoing_message(make_message(message_id=43, attachments=[attachment]))
    push_media_send.enqueue(context, manager, 43, Address(REMOTE_ADDRESS))
    transport.upload_error = FileNotFoundError(attachment.data_path)

    manager.run_next()

    assert manager.run_next() is None
    assert transport.sent == []
    assert store.get_status(43) is MessageStatus.SENT_FAILED
    assert store.get_attachment(attachment.attachment_id).transfer_state is TransferState.FAILED
    assert notifier.failed == [43]


def test_expiring_message_is_deleted_by_delayed_job(send_runtime, store, make_message):
    context, manager = send_runtime
    store.save_outgoing_message(make_message(message_id=42, expires_in_ms=30_000))
    push_media_send.enqueue(context, manager, 42, Address(REMOTE_ADDRESS))

    manager.run_next()

    assert store.is_sent(42)
    # The deletion job is scheduled in the future.
    assert manager.run_next() is None
    ExpireMessageJob(42).run(context)
    assert store.delete_message(42) is False


def test_bookkeeping_error_after_delivery_keeps_message_sent(
    monkeypatch, send_runtime, store, transport, notifier, make_message
):
    context, manager = send_runtime
    store.save_outgoing_message(make_message(message_id=42, expires_in_ms=5_000))
    push_media_send.enqueue(context, manager, 42, Address(REMOTE_ADDRESS))

    def _broken_schedule(message_id, expires_in_ms):
        raise RuntimeError("queue unavailable")

    monkeypatch.setattr(context.expiration, "schedule_deletion", _broken_schedule)

    manager.run_next()

    assert len(transport.sent) == 1
    assert store.get_status(42) is MessageStatus.SENT
    assert notifier.failed == []
