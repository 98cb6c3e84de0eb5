"""Disappearing-message timers backed by delayed jobs."""
from __future__ import annotations

import logging
from typing import Any, Dict

from outbox.jobs.job import Job, JobManager, JobParameters

logger = logging.getLogger(__name__)


class ExpireMessageJob(Job):
    factory_key = "expire_message"

    def __init__(self, message_id: int, parameters: JobParameters | None = None) -> None:
        super().__init__(parameters)
        self.message_id = message_id

    @classmethod
    def create(cls, parameters: JobParameters, data: Dict[str, Any]) -> "ExpireMessageJob":
        return cls(int(data["message_id"]), parameters)

    def serialize(self) -> Dict[str, Any]:
        return {"message_id": self.message_id}

    def run(self, context: Any) -> None:
        deleted = context.store.delete_message(self.message_id)
        if deleted:
            logger.info("[expiration] Deleted expired message %s", self.message_id)
        else:
            logger.info("[expiration] Message %s already gone", self.message_id)


class ExpiringMessageManager:
    def __init__(self, manager: JobManager) -> None:
        self.manager = manager

    def schedule_deletion(self, message_id: int, expires_in_ms: int) -> str:
        logger.info("[expiration] Message %s expires in %sms", message_id, expires_in_ms)
        return self.manager.add(ExpireMessageJob(message_id), delay_ms=expires_in_ms)
