"""
Celery tasks for background notification delivery.

Used when APP_NOTIFICATION_BACKEND=celery. The task rebuilds a dispatcher
from settings inside the worker and runs one job to completion.
"""

import asyncio
from typing import Any

from celery import Celery, Task, shared_task

from orderflow.core.config import get_settings
from orderflow.core.logging import get_logger
from orderflow.services.notifications.dispatcher import (
    BulkNotificationJob,
    NotificationDispatcher,
    NotificationJob,
)
from orderflow.services.notifications.transport import TelegramTransport

logger = get_logger(__name__)
settings = get_settings()

celery_app = Celery("orderflow", broker=settings.celery_broker_url)
celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    task_acks_late=True,
)


class NotificationTask(Task):
    """
    Base task class for notification tasks.

    Retries are handled by the dispatcher's RetryPolicy; the task level
    only logs the outcome.
    """

    def on_failure(
        self,
        exc: Exception,
        task_id: str,
        args: tuple,
        kwargs: dict,
        einfo: Any,
    ) -> None:
        logger.error(
            "Notification task failed",
            task_id=task_id,
            exception=str(exc),
            kwargs=kwargs,
            exc_info=einfo,
        )

    def on_retry(
        self,
        exc: Exception,
        task_id: str,
        args: tuple,
        kwargs: dict,
        einfo: Any,
    ) -> None:
        logger.warning(
            "Notification task retrying",
            task_id=task_id,
            exception=str(exc),
            retry_count=self.request.retries,
        )

    def on_success(
        self,
        retval: Any,
        task_id: str,
        args: tuple,
        kwargs: dict,
    ) -> None:
        logger.info(
            "Notification task completed",
            task_id=task_id,
            result=retval,
        )


def _transport() -> TelegramTransport:
    return TelegramTransport(
        token=settings.telegram_bot_token,
        api_base=settings.telegram_api_base,
        timeout=settings.notification_attempt_timeout,
    )


async def _dispatch(job: NotificationJob) -> dict[str, Any]:
    transport = _transport()
    try:
        dispatcher = NotificationDispatcher.from_settings(transport, settings)
        result = await dispatcher.dispatch(job)
    finally:
        await transport.aclose()
    return {
        "success": result.success,
        "channel_id": result.channel_id,
        "attempts": result.attempts,
        "error": result.error,
        "message_id": result.message_id,
    }


@shared_task(
    bind=True,
    base=NotificationTask,
    name="notifications.dispatch_order_notification",
    time_limit=120,
    soft_time_limit=90,
)
def dispatch_order_notification_task(self: Task, job: dict[str, Any]) -> dict[str, Any]:
    """
    Deliver one order status notification.

    Args:
        self: Task instance
        job: Serialized NotificationJob

    Returns:
        Delivery outcome summary
    """
    notification_job = NotificationJob.from_dict(job)
    logger.info(
        "Processing notification task",
        task_id=self.request.id,
        channel_id=notification_job.channel_id,
        notification_type=notification_job.notification_type.value,
    )
    return asyncio.run(_dispatch(notification_job))


async def _dispatch_bulk(job: BulkNotificationJob) -> dict[str, Any]:
    transport = _transport()
    try:
        dispatcher = NotificationDispatcher.from_settings(transport, settings)
        bulk = await dispatcher.dispatch_bulk(job)
    finally:
        await transport.aclose()
    return {
        "success": bulk.success,
        "failed": bulk.failed,
        "failed_channels": [r.channel_id for r in bulk.results if not r.success],
    }


@shared_task(
    bind=True,
    base=NotificationTask,
    name="notifications.dispatch_bulk_notification",
    time_limit=300,
    soft_time_limit=240,
)
def dispatch_bulk_notification_task(self: Task, job: dict[str, Any]) -> dict[str, Any]:
    """Deliver one notification to every channel of a serialized BulkNotificationJob."""
    bulk_job = BulkNotificationJob.from_dict(job)
    logger.info(
        "Processing bulk notification task",
        task_id=self.request.id,
        channels=len(bulk_job.channel_ids),
        notification_type=bulk_job.notification_type.value,
    )
    return asyncio.run(_dispatch_bulk(bulk_job))
