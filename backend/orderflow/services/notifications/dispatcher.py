"""
Notification dispatcher for order status changes.

Renders the message for a notification type and delivers it through a
MessagingTransport with bounded retries. Delivery failures are logged and
reported in the returned DeliveryResult; they never propagate to the
caller, since a status change must not fail because a chat is unreachable.
"""

import asyncio
import time
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Tuple

from orderflow.core.config import Settings
from orderflow.core.logging import get_logger
from orderflow.database.models.order import Order
from orderflow.services.notifications.templates import TemplateEngine, TemplateEngineError
from orderflow.services.notifications.transport import (
    DeliveryResult,
    MessagingTransport,
    PermanentDeliveryError,
    TransientDeliveryError,
)
from orderflow.services.orders.enums import NotificationType

logger = get_logger(__name__)

SleepFunc = Callable[[float], Awaitable[None]]


@dataclass
class RetryPolicy:
    """
    Retry schedule for one notification.

    Attempt numbers start at 1. The delay before attempt n+1 is
    min(base * factor ** (n - 1), cap), raised to the transport's
    retry_after hint when one is given but never above cap. Setting
    cancel_event stops any pending retry.
    """

    max_attempts: int = 3
    base: float = 1.0
    factor: float = 2.0
    cap: float = 10.0
    attempt_timeout: float = 5.0
    cancel_event: asyncio.Event = field(default_factory=asyncio.Event)

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")

    def delay_for(self, attempt: int, retry_after: Optional[float] = None) -> float:
        if attempt < 1:
            raise ValueError("attempt numbers start at 1")
        delay = min(self.base * self.factor ** (attempt - 1), self.cap)
        if retry_after is not None and retry_after > delay:
            delay = min(retry_after, self.cap)
        return delay

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set()

    def cancel(self) -> None:
        self.cancel_event.set()

    @classmethod
    def from_settings(cls, settings: Settings) -> "RetryPolicy":
        return cls(
            max_attempts=settings.notification_max_attempts,
            base=settings.notification_backoff_base,
            factor=settings.notification_backoff_factor,
            cap=settings.notification_backoff_cap,
            attempt_timeout=settings.notification_attempt_timeout,
        )


@dataclass(frozen=True)
class NotificationJob:
    """A notification waiting to be dispatched after commit."""

    channel_id: str
    notification_type: NotificationType
    order_context: Dict[str, Any]

    @property
    def channel_ids(self) -> Tuple[str, ...]:
        return (self.channel_id,)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "channel_id": self.channel_id,
            "notification_type": self.notification_type.value,
            "order_context": self.order_context,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "NotificationJob":
        return cls(
            channel_id=str(data["channel_id"]),
            notification_type=NotificationType(data["notification_type"]),
            order_context=dict(data.get("order_context") or {}),
        )


@dataclass(frozen=True)
class BulkNotificationJob:
    """The same notification for several channels, such as a store's admins."""

    channel_ids: Tuple[str, ...]
    notification_type: NotificationType
    order_context: Dict[str, Any]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "channel_ids": list(self.channel_ids),
            "notification_type": self.notification_type.value,
            "order_context": self.order_context,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "BulkNotificationJob":
        return cls(
            channel_ids=tuple(str(c) for c in data["channel_ids"]),
            notification_type=NotificationType(data["notification_type"]),
            order_context=dict(data.get("order_context") or {}),
        )


@dataclass
class BulkDeliveryResult:
    success: int = 0
    failed: int = 0
    results: List[DeliveryResult] = field(default_factory=list)


class RateLimiter:
    """Enforces a minimum interval between consecutive sends."""

    def __init__(self, min_interval: float, sleep: SleepFunc = asyncio.sleep):
        self.min_interval = min_interval
        self._sleep = sleep
        self._lock = asyncio.Lock()
        self._last: Optional[float] = None

    async def wait(self) -> None:
        if self.min_interval <= 0:
            return
        async with self._lock:
            now = time.monotonic()
            if self._last is not None:
                remaining = self.min_interval - (now - self._last)
                if remaining > 0:
                    await self._sleep(remaining)
            self._last = time.monotonic()


def build_order_context(order: Order, extra: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """Template context for an order, safe to serialize into a job."""
    total = order.total_amount
    context: Dict[str, Any] = {
        "order_id": str(order.id),
        "order_number": order.order_number,
        "store_name": order.store_name,
        "total_amount": str(total.quantize(Decimal("0.01"))) if isinstance(total, Decimal) else str(total),
        "currency": order.currency,
        "status": order.status.value,
    }
    if order.rejection_reason:
        context["reason"] = order.rejection_reason
    if order.cancellation_reason:
        context["reason"] = order.cancellation_reason
    if order.tracking_number:
        context["tracking_number"] = order.tracking_number
    if order.carrier:
        context["carrier"] = order.carrier
    if order.delivery_notes:
        context["notes"] = order.delivery_notes
    for key, value in (extra or {}).items():
        if value is not None:
            context[key] = value
    return context


class NotificationDispatcher:
    """
    Sends order notifications to customers and store admins.

    Each attempt is bounded by the policy's attempt timeout; a timeout is
    treated like any other transient failure.
    """

    def __init__(
        self,
        transport: MessagingTransport,
        template_engine: Optional[TemplateEngine] = None,
        policy: Optional[RetryPolicy] = None,
        bulk_concurrency: int = 5,
        bulk_interval: float = 0.1,
        sleep: SleepFunc = asyncio.sleep,
    ):
        if bulk_concurrency < 1:
            raise ValueError("bulk_concurrency must be at least 1")
        self.transport = transport
        self.template_engine = template_engine or TemplateEngine()
        self.policy = policy or RetryPolicy()
        self.bulk_concurrency = bulk_concurrency
        self.bulk_interval = bulk_interval
        self._sleep = sleep

    @classmethod
    def from_settings(
        cls,
        transport: MessagingTransport,
        settings: Settings,
        template_engine: Optional[TemplateEngine] = None,
    ) -> "NotificationDispatcher":
        return cls(
            transport=transport,
            template_engine=template_engine,
            policy=RetryPolicy.from_settings(settings),
            bulk_concurrency=settings.notification_bulk_concurrency,
            bulk_interval=settings.notification_bulk_interval,
        )

    async def dispatch(self, job: NotificationJob) -> DeliveryResult:
        return await self.notify(job.channel_id, job.notification_type, job.order_context)

    async def dispatch_bulk(self, job: BulkNotificationJob) -> "BulkDeliveryResult":
        return await self.notify_bulk(job.channel_ids, job.notification_type, job.order_context)

    async def notify(
        self,
        channel_id: str,
        notification_type: NotificationType,
        order_context: Dict[str, Any],
        policy: Optional[RetryPolicy] = None,
    ) -> DeliveryResult:
        """
        Render and deliver one notification.

        Args:
            channel_id: Recipient chat id
            notification_type: Which message to send
            order_context: Template context, see build_order_context()
            policy: Overrides the dispatcher's retry policy

        Returns:
            DeliveryResult describing the final outcome
        """
        policy = policy or self.policy
        channel_id = str(channel_id)

        try:
            message = self.template_engine.render(notification_type, order_context)
        except TemplateEngineError as e:
            logger.error(
                "Notification rendering failed",
                channel_id=channel_id,
                notification_type=notification_type.value,
                error=str(e),
            )
            return DeliveryResult(
                success=False, channel_id=channel_id, error=str(e), permanent=True
            )

        options = {"order_id": order_context.get("order_id")}
        last_error: Optional[str] = None
        retry_after: Optional[float] = None
        attempt = 0

        while attempt < policy.max_attempts:
            if policy.cancelled:
                return self._cancelled(channel_id, attempt, last_error, notification_type)

            attempt += 1
            retry_after = None
            try:
                result = await asyncio.wait_for(
                    self.transport.send(channel_id, message, options),
                    timeout=policy.attempt_timeout,
                )
                result.attempts = attempt
                logger.info(
                    "Notification delivered",
                    channel_id=channel_id,
                    notification_type=notification_type.value,
                    order_number=order_context.get("order_number"),
                    attempts=attempt,
                )
                return result
            except PermanentDeliveryError as e:
                logger.error(
                    "Notification permanently rejected",
                    channel_id=channel_id,
                    notification_type=notification_type.value,
                    attempts=attempt,
                    error=e.message,
                )
                return DeliveryResult(
                    success=False,
                    channel_id=channel_id,
                    attempts=attempt,
                    error=e.message,
                    permanent=True,
                )
            except asyncio.TimeoutError:
                last_error = f"Delivery attempt timed out after {policy.attempt_timeout}s"
            except TransientDeliveryError as e:
                last_error = e.message
                retry_after = e.retry_after
            except Exception as e:
                # Unknown transport errors are not retried
                logger.error(
                    "Notification transport failed unexpectedly",
                    channel_id=channel_id,
                    notification_type=notification_type.value,
                    attempts=attempt,
                    error=str(e),
                    error_type=type(e).__name__,
                    exc_info=True,
                )
                return DeliveryResult(
                    success=False,
                    channel_id=channel_id,
                    attempts=attempt,
                    error=str(e) or type(e).__name__,
                    permanent=True,
                )

            logger.warning(
                "Notification attempt failed",
                channel_id=channel_id,
                notification_type=notification_type.value,
                attempt=attempt,
                max_attempts=policy.max_attempts,
                error=last_error,
            )

            if attempt < policy.max_attempts:
                if await self._wait_before_retry(policy, attempt, retry_after):
                    return self._cancelled(channel_id, attempt, last_error, notification_type)

        logger.error(
            "Notification delivery failed permanently",
            channel_id=channel_id,
            notification_type=notification_type.value,
            order_number=order_context.get("order_number"),
            attempts=attempt,
            error=last_error,
        )
        return DeliveryResult(
            success=False,
            channel_id=channel_id,
            attempts=attempt,
            error=last_error,
            permanent=True,
        )

    async def notify_bulk(
        self,
        channel_ids: Iterable[str],
        notification_type: NotificationType,
        order_context: Dict[str, Any],
    ) -> BulkDeliveryResult:
        """
        Send the same notification to many channels.

        Sends run concurrently up to bulk_concurrency and are spaced by at
        least bulk_interval seconds. A failed channel does not stop the rest.
        """
        semaphore = asyncio.Semaphore(self.bulk_concurrency)
        limiter = RateLimiter(self.bulk_interval, sleep=self._sleep)
        channels = [str(c) for c in channel_ids]

        async def send_one(channel_id: str) -> DeliveryResult:
            async with semaphore:
                await limiter.wait()
                return await self.notify(channel_id, notification_type, order_context)

        outcomes = await asyncio.gather(
            *(send_one(c) for c in channels), return_exceptions=True
        )

        bulk = BulkDeliveryResult()
        for channel_id, outcome in zip(channels, outcomes):
            if isinstance(outcome, BaseException):
                logger.error(
                    "Bulk notification send failed",
                    channel_id=channel_id,
                    notification_type=notification_type.value,
                    error=str(outcome),
                    error_type=type(outcome).__name__,
                )
                outcome = DeliveryResult(
                    success=False,
                    channel_id=channel_id,
                    error=str(outcome) or type(outcome).__name__,
                    permanent=True,
                )
            bulk.results.append(outcome)
            if outcome.success:
                bulk.success += 1
            else:
                bulk.failed += 1

        logger.info(
            "Bulk notification finished",
            notification_type=notification_type.value,
            success=bulk.success,
            failed=bulk.failed,
        )
        return bulk

    async def _wait_before_retry(
        self, policy: RetryPolicy, attempt: int, retry_after: Optional[float] = None
    ) -> bool:
        """Sleep out the backoff. Returns True if the policy was cancelled meanwhile."""
        delay = policy.delay_for(attempt, retry_after)
        sleeper = asyncio.ensure_future(self._sleep(delay))
        cancelled = asyncio.ensure_future(policy.cancel_event.wait())
        try:
            await asyncio.wait({sleeper, cancelled}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for waiter in (sleeper, cancelled):
                waiter.cancel()
            await asyncio.gather(sleeper, cancelled, return_exceptions=True)
        return policy.cancelled

    def _cancelled(
        self,
        channel_id: str,
        attempts: int,
        error: Optional[str],
        notification_type: NotificationType,
    ) -> DeliveryResult:
        logger.info(
            "Notification retries cancelled",
            channel_id=channel_id,
            notification_type=notification_type.value,
            attempts=attempts,
        )
        return DeliveryResult(
            success=False,
            channel_id=channel_id,
            attempts=attempts,
            error=error,
            cancelled=True,
        )
