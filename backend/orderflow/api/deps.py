"""
FastAPI dependencies and service wiring.

The orchestrator and its collaborators are built once per application in
the lifespan (see build_services) and stored on app.state; request
handlers receive them through get_orchestrator().
"""

from dataclasses import dataclass
from typing import Annotated, Optional

from fastapi import Depends, Header, HTTPException, Request, status
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from orderflow.cache.redis_client import RedisClient, close_redis_client, get_redis_client
from orderflow.core.config import Settings
from orderflow.core.logging import get_logger
from orderflow.services.notifications.dispatcher import NotificationDispatcher
from orderflow.services.notifications.queue import (
    CeleryNotificationQueue,
    InProcessNotificationQueue,
    NotificationQueue,
)
from orderflow.services.notifications.transport import (
    DisabledTransport,
    MessagingTransport,
    TelegramTransport,
)
from orderflow.services.orders.locks import InMemoryLockManager, LockManager, RedisLockManager
from orderflow.services.orders.orchestrator import OrderLifecycleOrchestrator
from orderflow.services.payments.validator import SignatureFileValidator
from orderflow.services.payments.verification import VerificationScorer

logger = get_logger(__name__)


@dataclass
class Services:
    """Long-lived collaborators owned by the application."""

    orchestrator: OrderLifecycleOrchestrator
    lock_manager: LockManager
    notification_queue: NotificationQueue
    transport: Optional[MessagingTransport] = None
    redis_client: Optional[RedisClient] = None

    async def start(self) -> None:
        await self.lock_manager.start()
        await self.notification_queue.start()

    async def stop(self) -> None:
        await self.orchestrator.shutdown()
        await self.notification_queue.stop()
        await self.lock_manager.stop()
        if self.transport is not None and hasattr(self.transport, "aclose"):
            await self.transport.aclose()
        if self.redis_client is not None:
            await close_redis_client()


def build_transport(settings: Settings) -> MessagingTransport:
    if not settings.telegram_bot_token:
        logger.warning("No Telegram bot token configured, customer notifications are disabled")
        return DisabledTransport()
    return TelegramTransport(
        token=settings.telegram_bot_token,
        api_base=settings.telegram_api_base,
        timeout=settings.notification_attempt_timeout,
    )


async def build_services(
    settings: Settings,
    session_factory: async_sessionmaker[AsyncSession],
    transport: Optional[MessagingTransport] = None,
) -> Services:
    """
    Build the orchestrator and its collaborators from settings.

    Args:
        settings: Application settings
        session_factory: Session factory for the application database
        transport: Messaging transport override for the in-process queue

    Returns:
        Services, not yet started
    """
    redis_client: Optional[RedisClient] = None
    if settings.lock_backend == "redis":
        redis_client = await get_redis_client()
        lock_manager: LockManager = RedisLockManager(
            redis_client,
            acquire_timeout=settings.lock_timeout_seconds,
        )
    else:
        lock_manager = InMemoryLockManager(
            acquire_timeout=settings.lock_timeout_seconds,
            sweep_interval=settings.lock_sweep_interval_seconds,
        )

    queue: NotificationQueue
    if settings.notification_backend == "celery":
        queue = CeleryNotificationQueue()
    else:
        transport = transport or build_transport(settings)
        dispatcher = NotificationDispatcher.from_settings(transport, settings)
        queue = InProcessNotificationQueue(dispatcher, workers=settings.notification_workers)

    scorer = VerificationScorer(
        threshold=settings.auto_verify_threshold,
        budget_seconds=settings.verification_budget_seconds,
        recency_days=settings.verification_recency_days,
    )
    orchestrator = OrderLifecycleOrchestrator(
        session_factory=session_factory,
        lock_manager=lock_manager,
        scorer=scorer,
        notification_queue=queue,
        proof_storage_dir=settings.proof_storage_dir,
        validator=SignatureFileValidator(max_size_bytes=settings.max_proof_size_bytes),
        expected_recipient=settings.expected_recipient,
        admin_channels=settings.store_admin_channels,
    )

    logger.info(
        "Order services built",
        lock_backend=settings.lock_backend,
        notification_backend=settings.notification_backend,
    )
    return Services(
        orchestrator=orchestrator,
        lock_manager=lock_manager,
        notification_queue=queue,
        transport=transport,
        redis_client=redis_client,
    )


def get_orchestrator(request: Request) -> OrderLifecycleOrchestrator:
    services: Optional[Services] = getattr(request.app.state, "services", None)
    if services is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Order services are not initialized",
        )
    return services.orchestrator


async def get_actor(
    x_actor: Annotated[Optional[str], Header(max_length=128)] = None,
) -> str:
    """
    Identify who performs an administrative action.

    Raises:
        HTTPException: 401 if the X-Actor header is missing
    """
    if x_actor is None or not x_actor.strip():
        logger.warning("Request rejected: missing X-Actor header")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="X-Actor header is required",
        )
    return x_actor.strip()


async def get_optional_actor(
    x_actor: Annotated[Optional[str], Header(max_length=128)] = None,
) -> Optional[str]:
    if x_actor is None or not x_actor.strip():
        return None
    return x_actor.strip()


Orchestrator = Annotated[OrderLifecycleOrchestrator, Depends(get_orchestrator)]
Actor = Annotated[str, Depends(get_actor)]
OptionalActor = Annotated[Optional[str], Depends(get_optional_actor)]
