"""
Post-commit notification queues.

The orchestrator hands a NotificationJob to a queue only after the
transaction that changed the order has committed. The in-process queue
drains jobs with asyncio worker tasks; the Celery queue publishes them to
a worker process.
"""

import asyncio
from typing import Any, List, Optional, Protocol, Union

from orderflow.core.logging import get_logger
from orderflow.services.notifications.dispatcher import (
    BulkNotificationJob,
    NotificationDispatcher,
    NotificationJob,
)

logger = get_logger(__name__)

QueuedJob = Union[NotificationJob, BulkNotificationJob]


class NotificationQueue(Protocol):
    async def enqueue(self, job: QueuedJob) -> None:
        ...

    async def start(self) -> None:
        ...

    async def stop(self) -> None:
        ...


class InProcessNotificationQueue:
    """asyncio.Queue drained by a fixed number of worker tasks."""

    def __init__(self, dispatcher: NotificationDispatcher, workers: int = 2):
        if workers < 1:
            raise ValueError("workers must be at least 1")
        self.dispatcher = dispatcher
        self.worker_count = workers
        self._queue: asyncio.Queue[QueuedJob] = asyncio.Queue()
        self._workers: List[asyncio.Task] = []

    @property
    def running(self) -> bool:
        return bool(self._workers)

    async def start(self) -> None:
        if self._workers:
            return
        self._workers = [
            asyncio.create_task(self._worker(index), name=f"notification-worker-{index}")
            for index in range(self.worker_count)
        ]
        logger.info("Notification queue started", workers=self.worker_count)

    async def enqueue(self, job: QueuedJob) -> None:
        self._queue.put_nowait(job)
        logger.debug(
            "Notification queued",
            channel_ids=list(job.channel_ids),
            notification_type=job.notification_type.value,
            pending=self._queue.qsize(),
        )

    async def join(self) -> None:
        """Wait until every queued job has been dispatched."""
        await self._queue.join()

    async def stop(self, drain: bool = True) -> None:
        if drain and self._workers:
            await self.join()
        for worker in self._workers:
            worker.cancel()
        await asyncio.gather(*self._workers, return_exceptions=True)
        self._workers = []
        logger.info("Notification queue stopped", dropped=self._queue.qsize())

    async def _worker(self, index: int) -> None:
        while True:
            job = await self._queue.get()
            try:
                if isinstance(job, BulkNotificationJob):
                    await self.dispatcher.dispatch_bulk(job)
                else:
                    await self.dispatcher.dispatch(job)
            except Exception as e:
                logger.error(
                    "Notification worker failed to dispatch job",
                    worker=index,
                    channel_ids=list(job.channel_ids),
                    notification_type=job.notification_type.value,
                    error=str(e),
                    exc_info=True,
                )
            finally:
                self._queue.task_done()


class CeleryNotificationQueue:
    """Publishes jobs to the notification Celery tasks."""

    def __init__(self, task: Optional[Any] = None, bulk_task: Optional[Any] = None):
        if task is None or bulk_task is None:
            from orderflow.services.notifications.tasks import (
                dispatch_bulk_notification_task,
                dispatch_order_notification_task,
            )

            task = task or dispatch_order_notification_task
            bulk_task = bulk_task or dispatch_bulk_notification_task
        self.task = task
        self.bulk_task = bulk_task

    async def start(self) -> None:
        return None

    async def stop(self) -> None:
        return None

    async def enqueue(self, job: QueuedJob) -> None:
        task = self.bulk_task if isinstance(job, BulkNotificationJob) else self.task
        try:
            result = await asyncio.to_thread(task.apply_async, kwargs={"job": job.to_dict()})
        except Exception as e:
            # The order change is already committed; a lost message is logged, not raised.
            logger.error(
                "Failed to publish notification job",
                channel_ids=list(job.channel_ids),
                notification_type=job.notification_type.value,
                error=str(e),
                exc_info=True,
            )
            return
        logger.debug(
            "Notification job published",
            task_id=getattr(result, "id", None),
            notification_type=job.notification_type.value,
        )
