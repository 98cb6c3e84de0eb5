"""Job abstraction and the manager that runs jobs off the task queue."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence

from outbox.jobs import queue as task_queue
from outbox.sending.exceptions import RetryLaterError

logger = logging.getLogger(__name__)

MAX_BACKOFF_EXPONENT = 6


@dataclass
class JobParameters:
    """Scheduling metadata attached to a job instance."""

    queue_key: Optional[str] = None
    max_attempts: int = 5
    retry_delay_seconds: int = 30

    def to_dict(self) -> Dict[str, Any]:
        return {
            "queue_key": self.queue_key,
            "max_attempts": self.max_attempts,
            "retry_delay_seconds": self.retry_delay_seconds,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any] | None) -> "JobParameters":
        data = data or {}
        return cls(
            queue_key=data.get("queue_key"),
            max_attempts=int(data.get("max_attempts", 5)),
            retry_delay_seconds=int(data.get("retry_delay_seconds", 30)),
        )


class Job:
    """Unit of work persisted on the task queue.

    Subclasses set ``factory_key`` and implement ``serialize`` and ``run``.
    Collaborators are handed to the lifecycle hooks through ``context``;
    jobs never look them up globally.
    """

    factory_key: str = ""

    def __init__(self, parameters: JobParameters | None = None) -> None:
        self.parameters = parameters or JobParameters()
        self.task_id: Optional[str] = None

    def serialize(self) -> Dict[str, Any]:
        raise NotImplementedError

    def run(self, context: Any) -> None:
        raise NotImplementedError

    def on_added(self, context: Any) -> None:
        """Called once the job has been written to the queue."""

    def on_should_retry(self, exception: Exception) -> bool:
        return False

    def on_canceled(self, context: Any) -> None:
        """Called when the job will never run (again)."""


JobFactory = Callable[[JobParameters, Dict[str, Any]], Job]


class Chain:
    """Ordered stages of jobs; every job of a stage waits for the whole previous stage."""

    def __init__(self, manager: "JobManager", jobs: Iterable[Job]) -> None:
        self._manager = manager
        self._stages: List[List[Job]] = [list(jobs)]

    def then(self, jobs: Iterable[Job]) -> "Chain":
        self._stages.append(list(jobs))
        return self

    @property
    def stages(self) -> List[List[Job]]:
        return [list(stage) for stage in self._stages]

    def enqueue(self) -> List[str]:
        task_ids: List[str] = []
        previous: List[str] = []
        for stage in self._stages:
            current = [self._manager.add(job, depends_on=previous) for job in stage]
            task_ids.extend(current)
            previous = current
        return task_ids


class JobManager:
    def __init__(
        self,
        queue_target: str,
        context: Any = None,
        *,
        lock_timeout_seconds: int = 300,
    ) -> None:
        self.queue_target = str(queue_target)
        self.context = context
        self.lock_timeout_seconds = lock_timeout_seconds
        self._factories: Dict[str, JobFactory] = {}

    def register_factory(self, factory_key: str, factory: JobFactory) -> None:
        self._factories[factory_key] = factory

    @property
    def task_types(self) -> List[str]:
        return sorted(self._factories)

    def add(
        self,
        job: Job,
        *,
        depends_on: Sequence[str] = (),
        available_at: Optional[datetime] = None,
        delay_ms: Optional[int] = None,
    ) -> str:
        if delay_ms is not None:
            available_at = datetime.now(timezone.utc) + timedelta(milliseconds=delay_ms)
        task_id = task_queue.enqueue_task(
            self.queue_target,
            job.factory_key,
            {"data": job.serialize(), "parameters": job.parameters.to_dict()},
            available_at=available_at,
            depends_on=depends_on,
            queue_key=job.parameters.queue_key,
        )
        job.task_id = task_id
        logger.debug("[jobs] Added %s as %s (depends on %s)", job.factory_key, task_id, list(depends_on))
        job.on_added(self.context)
        return task_id

    def start_chain(self, jobs: Iterable[Job]) -> Chain:
        return Chain(self, jobs)

    def instantiate(self, task: task_queue.Task) -> Job:
        factory = self._factories.get(task.task_type)
        if factory is None:
            raise ValueError(f"Unsupported task type: {task.task_type}")
        job = factory(
            JobParameters.from_dict(task.payload.get("parameters")),
            task.payload.get("data", {}),
        )
        job.task_id = task.task_id
        return job

    def run_next(self, task_types: Optional[Sequence[str]] = None) -> Optional[task_queue.Task]:
        """Run at most one ready job. Returns the task that was picked, if any."""
        task = task_queue.fetch_and_lock_task(
            self.queue_target,
            task_types=task_types or self.task_types or None,
            lock_timeout_seconds=self.lock_timeout_seconds,
        )
        if task is None:
            return None
        logger.info(
            "Picked task %s (%s) with payload %s",
            task.task_id,
            task.task_type,
            task.payload,
            extra={"task_id": task.task_id},
        )
        try:
            job = self.instantiate(task)
        except (KeyError, TypeError, ValueError) as exc:
            logger.error("Task %s could not be deserialized: %s", task.task_id, exc)
            self._handle_canceled(task_queue.cancel_task(self.queue_target, task.task_id, reason=repr(exc)))
            return task

        try:
            job.run(self.context)
        except RetryLaterError as exc:
            logger.warning("Task %s asked to retry later: %s", task.task_id, exc)
            self._reschedule(task, job, exc)
        except Exception as exc:
            if job.on_should_retry(exc):
                logger.warning("Task %s failed, retrying: %s", task.task_id, exc)
                self._reschedule(task, job, exc)
            else:
                logger.exception("Task %s failed permanently: %s", task.task_id, exc)
                self._handle_canceled(
                    task_queue.cancel_task(self.queue_target, task.task_id, reason=repr(exc))
                )
        else:
            task_queue.complete_task(self.queue_target, task.task_id)
            logger.info("Completed task %s (%s)", task.task_id, task.task_type)
        return task

    def cancel(self, task_id: str) -> List[task_queue.Task]:
        canceled = task_queue.cancel_task(self.queue_target, task_id)
        self._handle_canceled(canceled)
        return canceled

    def _reschedule(self, task: task_queue.Task, job: Job, exc: Exception) -> None:
        delay = job.parameters.retry_delay_seconds * (2 ** min(task.attempts, MAX_BACKOFF_EXPONENT))
        exhausted = task_queue.fail_task(
            self.queue_target,
            task.task_id,
            error=repr(exc),
            retry_delay_seconds=delay,
            max_attempts=job.parameters.max_attempts,
        )
        if exhausted:
            logger.warning(
                "Task %s exhausted %s attempt(s); canceling",
                task.task_id,
                job.parameters.max_attempts,
            )
            self._handle_canceled(exhausted)
        else:
            logger.info("Rescheduled task %s in %ss", task.task_id, delay)

    def _handle_canceled(self, tasks: Iterable[task_queue.Task]) -> None:
        for canceled in tasks:
            try:
                job = self.instantiate(canceled)
            except (KeyError, TypeError, ValueError) as exc:
                logger.error("Canceled task %s could not be deserialized: %s", canceled.task_id, exc)
                continue
            logger.info("Canceled task %s (%s)", canceled.task_id, canceled.task_type)
            job.on_canceled(self.context)
