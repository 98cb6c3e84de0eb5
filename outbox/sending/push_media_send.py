"""Job that delivers one outgoing media message to one destination."""
from __future__ import annotations

import logging
from typing import Any, Dict, Iterable, List, Optional

from outbox.jobs.job import Job, JobManager, JobParameters
from outbox.messages.models import Address
from outbox.sending.attachments import AttachmentUploadJob, get_attachment_upload_jobs
from outbox.sending.context import SendContext
from outbox.sending.exceptions import AttachmentStoreError, NoSuchMessageError
from outbox.sending.expiration import ExpireMessageJob

logger = logging.getLogger(__name__)

KEY_TEMPLATE_MESSAGE_ID = "template_message_id"
KEY_MESSAGE_ID = "message_id"
KEY_DESTINATION = "destination"


class PushMediaSendJob(Job):
    """Sends the content of ``template_message_id`` to ``destination``.

    ``message_id`` is the per-recipient row whose status this job owns; a
    negative id marks a sync-only send with no row of its own.
    """

    factory_key = "push_media_send"

    def __init__(
        self,
        template_message_id: int,
        message_id: int,
        destination: Address,
        parameters: JobParameters | None = None,
    ) -> None:
        super().__init__(parameters or self.construct_parameters(destination))
        self.template_message_id = template_message_id
        self.message_id = message_id
        self.destination = destination

    @staticmethod
    def construct_parameters(destination: Address) -> JobParameters:
        return JobParameters(queue_key=destination.serialize(), max_attempts=5)

    @classmethod
    def create(cls, parameters: JobParameters, data: Dict[str, Any]) -> "PushMediaSendJob":
        return cls(
            int(data[KEY_TEMPLATE_MESSAGE_ID]),
            int(data[KEY_MESSAGE_ID]),
            Address.from_serialized(data[KEY_DESTINATION]),
            parameters,
        )

    def serialize(self) -> Dict[str, Any]:
        return {
            KEY_TEMPLATE_MESSAGE_ID: self.template_message_id,
            KEY_MESSAGE_ID: self.message_id,
            KEY_DESTINATION: self.destination.serialize(),
        }

    def on_added(self, context: SendContext) -> None:
        if self.message_id >= 0:
            context.store.mark_as_sending(self.message_id)

    def run(self, context: SendContext) -> None:
        store = context.store
        if self.message_id >= 0 and store.is_sent(self.message_id):
            logger.warning("Message %s was already sent. Ignoring.", self.message_id)
            return

        message = store.get_outgoing_message(self.template_message_id)

        logger.info("Sending message: %s", self.message_id)
        recipient = store.get_recipient(self.destination)
        outcome = context.negotiator.deliver(message, self.destination, self.message_id)
        context.reconciler.apply(
            outcome,
            message=message,
            message_id=self.message_id,
            recipient=recipient,
        )

    def on_should_retry(self, exception: Exception) -> bool:
        # Retries are requested explicitly through RetryLaterError.
        return False

    def on_canceled(self, context: SendContext) -> None:
        if self.message_id < 0:
            return
        if context.store.is_sent(self.message_id):
            logger.warning("Message %s was delivered before its job was canceled", self.message_id)
            return
        context.fail_message(self.message_id)


def enqueue(
    context: SendContext,
    manager: JobManager,
    message_id: int,
    destination: Address,
    *,
    template_message_id: Optional[int] = None,
) -> List[str]:
    template = message_id if template_message_id is None else template_message_id
    return enqueue_jobs(context, manager, [PushMediaSendJob(template, message_id, destination)])


def enqueue_jobs(
    context: SendContext,
    manager: JobManager,
    jobs: Iterable[PushMediaSendJob],
) -> List[str]:
    """Enqueue sends sharing one template behind a single upload chain.

    Returns the queued task ids; nothing is queued when the template cannot
    be resolved, in which case every message in the batch is failed.
    """
    jobs = list(jobs)
    if not jobs:
        return []
    first = jobs[0]
    template_id = first.template_message_id
    try:
        upload_jobs = get_attachment_upload_jobs(context.store, template_id, first.destination)
    except (NoSuchMessageError, AttachmentStoreError) as exc:
        logger.warning("Failed to enqueue message %s: %s", template_id, exc)
        for job in jobs:
            if job.message_id >= 0:
                context.fail_message(job.message_id)
        return []

    if not upload_jobs:
        return [manager.add(job) for job in jobs]
    logger.info(
        "Message %s waits on %s attachment upload(s) for %s send(s)",
        template_id,
        len(upload_jobs),
        len(jobs),
    )
    return manager.start_chain(upload_jobs).then(jobs).enqueue()


def register_jobs(manager: JobManager) -> None:
    manager.register_factory(PushMediaSendJob.factory_key, PushMediaSendJob.create)
    manager.register_factory(AttachmentUploadJob.factory_key, AttachmentUploadJob.create)
    manager.register_factory(ExpireMessageJob.factory_key, ExpireMessageJob.create)
