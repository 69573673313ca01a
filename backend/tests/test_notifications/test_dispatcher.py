"""
Tests for NotificationDispatcher retry behaviour and the post-commit queues.
"""

import asyncio
from decimal import Decimal
from types import SimpleNamespace
from unittest.mock import MagicMock
from uuid import uuid4

import pytest

from orderflow.services.notifications.dispatcher import (
    BulkNotificationJob,
    NotificationDispatcher,
    NotificationJob,
    RateLimiter,
    RetryPolicy,
    build_order_context,
)
from orderflow.services.notifications.queue import (
    CeleryNotificationQueue,
    InProcessNotificationQueue,
)
from orderflow.services.notifications.transport import DeliveryResult, TransientDeliveryError
from orderflow.services.orders.enums import NotificationType, OrderStatus

CONTEXT = {
    "order_id": "8c1f0f8e-5d1a-4c3b-9a57-000000000001",
    "order_number": "0326-00001",
    "store_name": "Corner Shop",
    "total_amount": "20.00",
    "currency": "USD",
}


class RecordingSleep:
    def __init__(self):
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


class ExplodingTransport:
    """Raises a non-delivery error for one channel and delivers the rest."""

    def __init__(self, bad_channel: str):
        self.bad_channel = bad_channel
        self.calls: list[str] = []

    async def send(self, channel_id, message, options=None) -> DeliveryResult:
        self.calls.append(channel_id)
        if channel_id == self.bad_channel:
            raise RuntimeError("boom")
        return DeliveryResult(success=True, channel_id=channel_id)


class HangingTransport:
    """Never answers; every attempt hits the attempt timeout."""

    def __init__(self):
        self.calls = 0

    async def send(self, channel_id, message, options=None) -> DeliveryResult:
        self.calls += 1
        await asyncio.sleep(10)
        return DeliveryResult(success=True, channel_id=channel_id)


def make_dispatcher(transport, sleep=None, **policy) -> NotificationDispatcher:
    policy.setdefault("attempt_timeout", 1.0)
    return NotificationDispatcher(
        transport,
        policy=RetryPolicy(**policy),
        bulk_interval=0.0,
        sleep=sleep or RecordingSleep(),
    )


# ============================================================================
# RetryPolicy Tests
# ============================================================================


class TestRetryPolicy:
    def test_exponential_delays_are_capped(self):
        policy = RetryPolicy(base=1.0, factor=2.0, cap=5.0)
        assert [policy.delay_for(n) for n in range(1, 6)] == [1.0, 2.0, 4.0, 5.0, 5.0]

    def test_retry_after_raises_delay_up_to_cap(self):
        policy = RetryPolicy(base=1.0, factor=2.0, cap=5.0)
        assert policy.delay_for(1, retry_after=3.0) == 3.0
        assert policy.delay_for(1, retry_after=30.0) == 5.0
        assert policy.delay_for(2, retry_after=0.5) == 2.0

    def test_invalid_values(self):
        with pytest.raises(ValueError):
            RetryPolicy(max_attempts=0)
        with pytest.raises(ValueError):
            RetryPolicy().delay_for(0)

    def test_cancel(self):
        policy = RetryPolicy()
        assert not policy.cancelled
        policy.cancel()
        assert policy.cancelled


# ============================================================================
# Dispatcher Tests
# ============================================================================


class TestNotify:
    """Test delivery outcomes for a single notification."""

    @pytest.mark.asyncio
    async def test_delivers_rendered_message(self, transport):
        dispatcher = make_dispatcher(transport)

        result = await dispatcher.notify("42", NotificationType.PAYMENT_CONFIRMED, CONTEXT)

        assert result.success
        assert result.attempts == 1
        assert transport.sent[0]["channel_id"] == "42"
        assert "0326-00001" in transport.sent[0]["message"]
        assert transport.sent[0]["options"] == {"order_id": CONTEXT["order_id"]}

    @pytest.mark.asyncio
    async def test_transient_failures_are_retried_with_backoff(self, make_transport, transient_error):
        transport = make_transport(failures=[transient_error(), transient_error(), None])
        sleep = RecordingSleep()
        dispatcher = make_dispatcher(transport, sleep=sleep, max_attempts=3, base=1.0, factor=2.0)

        result = await dispatcher.notify("42", NotificationType.ORDER_SHIPPED, CONTEXT)

        assert result.success
        assert result.attempts == 3
        assert sleep.delays == [1.0, 2.0]

    @pytest.mark.asyncio
    async def test_rate_limit_hint_sets_backoff(self, make_transport):
        transport = make_transport(
            failures=[TransientDeliveryError("Telegram rate limit exceeded", retry_after=4.0), None]
        )
        sleep = RecordingSleep()
        dispatcher = make_dispatcher(transport, sleep=sleep, base=1.0, cap=10.0)

        result = await dispatcher.notify("42", NotificationType.ORDER_SHIPPED, CONTEXT)

        assert result.success
        assert sleep.delays == [4.0]

    @pytest.mark.asyncio
    async def test_unexpected_transport_error_is_reported_not_raised(self, make_transport):
        transport = make_transport(failures=[AttributeError("'list' object has no attribute 'get'")])
        sleep = RecordingSleep()
        dispatcher = make_dispatcher(transport, sleep=sleep, max_attempts=3)

        result = await dispatcher.notify("42", NotificationType.ORDER_SHIPPED, CONTEXT)

        assert not result.success
        assert result.permanent
        assert result.attempts == 1
        assert "no attribute" in result.error
        assert sleep.delays == []

    @pytest.mark.asyncio
    async def test_gives_up_after_max_attempts(self, make_transport, transient_error):
        transport = make_transport(failures=[transient_error()] * 3)
        dispatcher = make_dispatcher(transport, max_attempts=3)

        result = await dispatcher.notify("42", NotificationType.ORDER_SHIPPED, CONTEXT)

        assert not result.success
        assert result.permanent
        assert result.attempts == 3
        assert transport.calls == 3
        assert result.error == "Bot API unavailable"

    @pytest.mark.asyncio
    async def test_permanent_failure_is_not_retried(self, make_transport, permanent_error):
        transport = make_transport(failures=[permanent_error()])
        sleep = RecordingSleep()
        dispatcher = make_dispatcher(transport, sleep=sleep, max_attempts=3)

        result = await dispatcher.notify("42", NotificationType.ORDER_SHIPPED, CONTEXT)

        assert not result.success
        assert result.permanent
        assert result.attempts == 1
        assert sleep.delays == []

    @pytest.mark.asyncio
    async def test_attempt_timeout_counts_as_transient(self):
        transport = HangingTransport()
        dispatcher = make_dispatcher(transport, max_attempts=2, attempt_timeout=0.05)

        result = await dispatcher.notify("42", NotificationType.ORDER_SHIPPED, CONTEXT)

        assert not result.success
        assert transport.calls == 2
        assert "timed out" in result.error

    @pytest.mark.asyncio
    async def test_cancel_stops_pending_retries(self, make_transport, transient_error):
        transport = make_transport(failures=[transient_error()] * 5)
        policy = RetryPolicy(max_attempts=5, base=0.0)

        async def cancelling_sleep(delay):
            policy.cancel()

        dispatcher = NotificationDispatcher(transport, policy=policy, sleep=cancelling_sleep)

        result = await dispatcher.notify("42", NotificationType.ORDER_SHIPPED, CONTEXT)

        assert result.cancelled
        assert not result.success
        assert transport.calls == 1

    @pytest.mark.asyncio
    async def test_cancel_event_interrupts_real_backoff(self, make_transport, transient_error):
        transport = make_transport(failures=[transient_error()] * 2)
        policy = RetryPolicy(max_attempts=2, base=30.0, cap=30.0)
        dispatcher = NotificationDispatcher(transport, policy=policy)

        task = asyncio.create_task(
            dispatcher.notify("42", NotificationType.ORDER_SHIPPED, CONTEXT)
        )
        await asyncio.sleep(0.05)
        policy.cancel()
        result = await asyncio.wait_for(task, timeout=2.0)

        assert result.cancelled
        assert transport.calls == 1

    @pytest.mark.asyncio
    async def test_render_failure_is_reported_not_raised(self, transport):
        dispatcher = make_dispatcher(transport)

        result = await dispatcher.notify("42", NotificationType.ORDER_SHIPPED, {"order_number": "x"})

        assert not result.success
        assert result.permanent
        assert transport.calls == 0


class TestNotifyBulk:
    @pytest.mark.asyncio
    async def test_unexpected_transport_error_counts_as_failed(self):
        transport = ExplodingTransport(bad_channel="2")
        dispatcher = make_dispatcher(transport, max_attempts=3)

        bulk = await dispatcher.notify_bulk(["1", "2", "3"], NotificationType.ORDER_SHIPPED, CONTEXT)

        assert bulk.success == 2
        assert bulk.failed == 1
        failed = [r for r in bulk.results if not r.success]
        assert failed[0].channel_id == "2"
        assert failed[0].error == "boom"
        assert transport.calls.count("2") == 1

    @pytest.mark.asyncio
    async def test_error_escaping_a_send_counts_as_failed(self, transport, monkeypatch):
        dispatcher = make_dispatcher(transport)
        original = dispatcher.notify

        async def notify(channel_id, *args, **kwargs):
            if channel_id == "2":
                raise RuntimeError("renderer crashed")
            return await original(channel_id, *args, **kwargs)

        monkeypatch.setattr(dispatcher, "notify", notify)

        bulk = await dispatcher.notify_bulk(["1", "2", "3"], NotificationType.ORDER_SHIPPED, CONTEXT)

        assert (bulk.success, bulk.failed) == (2, 1)
        assert [r.channel_id for r in bulk.results] == ["1", "2", "3"]
        assert bulk.results[1].error == "renderer crashed"

    @pytest.mark.asyncio
    async def test_dispatch_bulk_job(self, transport):
        dispatcher = make_dispatcher(transport)
        job = BulkNotificationJob(("7", "8"), NotificationType.ORDER_CREATED, dict(CONTEXT))

        bulk = await dispatcher.dispatch_bulk(job)

        assert bulk.success == 2
        assert sorted(s["channel_id"] for s in transport.sent) == ["7", "8"]

    @pytest.mark.asyncio
    async def test_one_failure_does_not_stop_the_rest(self, make_transport, permanent_error):
        transport = make_transport(failures=[None, permanent_error(), None])
        dispatcher = make_dispatcher(transport, max_attempts=1)

        bulk = await dispatcher.notify_bulk(["1", "2", "3"], NotificationType.ORDER_SHIPPED, CONTEXT)

        assert bulk.success == 2
        assert bulk.failed == 1
        assert len(bulk.results) == 3

    @pytest.mark.asyncio
    async def test_rate_limiter_spaces_sends(self):
        sleep = RecordingSleep()
        limiter = RateLimiter(min_interval=10.0, sleep=sleep)

        await limiter.wait()
        await limiter.wait()

        assert len(sleep.delays) == 1
        assert 0 < sleep.delays[0] <= 10.0


# ============================================================================
# Job and Context Tests
# ============================================================================


class TestJobs:
    def test_job_round_trips_through_dict(self):
        job = NotificationJob("42", NotificationType.ORDER_DELIVERED, dict(CONTEXT))
        assert NotificationJob.from_dict(job.to_dict()) == job

    def test_bulk_job_from_dict(self):
        job = BulkNotificationJob.from_dict(
            {"channel_ids": [1, "2"], "notification_type": "order_created", "order_context": CONTEXT}
        )

        assert job.channel_ids == ("1", "2")
        assert job.notification_type is NotificationType.ORDER_CREATED

    def test_build_order_context(self):
        order = SimpleNamespace(
            id=uuid4(),
            order_number="0326-00009",
            store_name="Corner Shop",
            total_amount=Decimal("7.5"),
            currency="EUR",
            status=OrderStatus.CANCELLED,
            rejection_reason=None,
            cancellation_reason="Changed mind",
            tracking_number=None,
            carrier=None,
            delivery_notes=None,
        )

        context = build_order_context(order, extra={"ignored": None, "source": "admin"})

        assert context["total_amount"] == "7.50"
        assert context["status"] == "CANCELLED"
        assert context["reason"] == "Changed mind"
        assert context["source"] == "admin"
        assert "ignored" not in context
        assert "tracking_number" not in context


# ============================================================================
# Queue Tests
# ============================================================================


class TestInProcessQueue:
    @pytest.mark.asyncio
    async def test_jobs_are_dispatched_by_workers(self, transport):
        queue = InProcessNotificationQueue(make_dispatcher(transport), workers=2)
        await queue.start()
        try:
            for chat in ("1", "2", "3"):
                await queue.enqueue(NotificationJob(chat, NotificationType.ORDER_SHIPPED, CONTEXT))
            await queue.join()
        finally:
            await queue.stop()

        assert sorted(s["channel_id"] for s in transport.sent) == ["1", "2", "3"]
        assert not queue.running

    @pytest.mark.asyncio
    async def test_bulk_jobs_fan_out(self, transport):
        queue = InProcessNotificationQueue(make_dispatcher(transport), workers=1)
        await queue.start()
        try:
            await queue.enqueue(
                BulkNotificationJob(("a1", "a2"), NotificationType.PAYMENT_PROOF_UPLOADED, CONTEXT)
            )
            await queue.join()
        finally:
            await queue.stop()

        assert sorted(s["channel_id"] for s in transport.sent) == ["a1", "a2"]

    @pytest.mark.asyncio
    async def test_worker_survives_dispatcher_error(self, transport):
        dispatcher = make_dispatcher(transport)
        calls = []

        async def flaky_dispatch(job):
            calls.append(job.channel_id)
            if job.channel_id == "boom":
                raise RuntimeError("unexpected")
            return await NotificationDispatcher.dispatch(dispatcher, job)

        dispatcher.dispatch = flaky_dispatch
        queue = InProcessNotificationQueue(dispatcher, workers=1)
        await queue.start()
        try:
            await queue.enqueue(NotificationJob("boom", NotificationType.ORDER_SHIPPED, CONTEXT))
            await queue.enqueue(NotificationJob("ok", NotificationType.ORDER_SHIPPED, CONTEXT))
            await queue.join()
        finally:
            await queue.stop()

        assert calls == ["boom", "ok"]
        assert [s["channel_id"] for s in transport.sent] == ["ok"]


class TestCeleryQueue:
    @pytest.mark.asyncio
    async def test_enqueue_publishes_serialized_job(self):
        task = MagicMock()
        queue = CeleryNotificationQueue(task=task, bulk_task=MagicMock())
        job = NotificationJob("42", NotificationType.PAYMENT_CONFIRMED, dict(CONTEXT))

        await queue.enqueue(job)

        task.apply_async.assert_called_once_with(kwargs={"job": job.to_dict()})

    @pytest.mark.asyncio
    async def test_bulk_job_goes_to_bulk_task(self):
        task, bulk_task = MagicMock(), MagicMock()
        queue = CeleryNotificationQueue(task=task, bulk_task=bulk_task)
        job = BulkNotificationJob(("a1", "a2"), NotificationType.ORDER_CREATED, dict(CONTEXT))

        await queue.enqueue(job)

        bulk_task.apply_async.assert_called_once_with(kwargs={"job": job.to_dict()})
        task.apply_async.assert_not_called()

    @pytest.mark.asyncio
    async def test_publish_failure_is_logged_not_raised(self):
        task = MagicMock()
        task.apply_async.side_effect = ConnectionError("broker down")
        queue = CeleryNotificationQueue(task=task, bulk_task=MagicMock())

        await queue.enqueue(NotificationJob("42", NotificationType.ORDER_SHIPPED, dict(CONTEXT)))

        task.apply_async.assert_called_once()
