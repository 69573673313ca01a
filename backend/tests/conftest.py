"""
Pytest configuration and shared test fixtures.

Provides a throwaway SQLite database per test, an orchestrator wired to
in-process locks and a recording messaging transport, and helpers for
seeding stock and building payment proof payloads.
"""

from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, AsyncGenerator, Awaitable, Callable, Optional

import pytest
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

import orderflow.database.models  # noqa: F401  (registers tables)
from orderflow.database.base import Base
from orderflow.services.inventory.ledger import StockLedger
from orderflow.services.notifications.dispatcher import NotificationDispatcher, RetryPolicy
from orderflow.services.notifications.queue import InProcessNotificationQueue
from orderflow.services.notifications.transport import (
    DeliveryResult,
    PermanentDeliveryError,
    TransientDeliveryError,
)
from orderflow.services.orders.locks import InMemoryLockManager
from orderflow.services.orders.orchestrator import (
    CustomerInfo,
    OrderItemInput,
    OrderLifecycleOrchestrator,
)
from orderflow.services.payments.validator import SignatureFileValidator
from orderflow.services.payments.verification import VerificationScorer

PNG_HEADER = b"\x89PNG\r\n\x1a\n"


# ============================================================================
# Test doubles
# ============================================================================


class RecordingTransport:
    """
    Messaging transport that records sends instead of calling an API.

    `failures` is consumed one entry per send: None delivers, an exception
    instance is raised.
    """

    def __init__(self, failures: Optional[list[Optional[Exception]]] = None):
        self.sent: list[dict[str, Any]] = []
        self.calls = 0
        self.failures = list(failures or [])
        self.closed = False

    async def send(
        self, channel_id: str, message: str, options: Optional[dict[str, Any]] = None
    ) -> DeliveryResult:
        self.calls += 1
        if self.failures:
            failure = self.failures.pop(0)
            if failure is not None:
                raise failure
        self.sent.append({"channel_id": channel_id, "message": message, "options": options or {}})
        return DeliveryResult(success=True, channel_id=channel_id, message_id=str(self.calls))

    async def aclose(self) -> None:
        self.closed = True


async def no_sleep(delay: float) -> None:
    return None


# ============================================================================
# Database fixtures
# ============================================================================


@pytest.fixture
async def engine(tmp_path) -> AsyncGenerator[AsyncEngine, None]:
    """File backed SQLite engine so concurrent sessions are isolated."""
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'orderflow.db'}",
        connect_args={"timeout": 15},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        bind=engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


@pytest.fixture
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    async with session_factory() as session:
        yield session


@pytest.fixture
def seed_stock(session_factory) -> Callable[..., Awaitable[None]]:
    """Set available stock for an item in its own committed transaction."""

    async def _seed(product_id: str, quantity: int, variant_id: Optional[str] = None) -> None:
        async with session_factory() as session:
            await StockLedger(session).set_available(product_id, quantity, variant_id)
            await session.commit()

    return _seed


@pytest.fixture
def stock_of(session_factory) -> Callable[..., Awaitable[int]]:
    async def _available(product_id: str, variant_id: Optional[str] = None) -> int:
        async with session_factory() as session:
            return await StockLedger(session).get_available(product_id, variant_id)

    return _available


# ============================================================================
# Service fixtures
# ============================================================================


@pytest.fixture
def transport() -> RecordingTransport:
    return RecordingTransport()


@pytest.fixture
def make_transport() -> Callable[..., RecordingTransport]:
    return RecordingTransport


@pytest.fixture
async def notification_queue(transport) -> AsyncGenerator[InProcessNotificationQueue, None]:
    dispatcher = NotificationDispatcher(
        transport,
        policy=RetryPolicy(max_attempts=3, base=0.0, attempt_timeout=1.0),
        bulk_interval=0.0,
        sleep=no_sleep,
    )
    queue = InProcessNotificationQueue(dispatcher, workers=1)
    await queue.start()
    yield queue
    await queue.stop(drain=False)


@pytest.fixture
def lock_manager() -> InMemoryLockManager:
    return InMemoryLockManager(acquire_timeout=5.0)


@pytest.fixture
def scorer() -> VerificationScorer:
    return VerificationScorer(threshold=0.85, budget_seconds=5.0)


@pytest.fixture
async def orchestrator(
    session_factory, lock_manager, scorer, notification_queue, tmp_path
) -> AsyncGenerator[OrderLifecycleOrchestrator, None]:
    orchestrator = OrderLifecycleOrchestrator(
        session_factory=session_factory,
        lock_manager=lock_manager,
        scorer=scorer,
        notification_queue=notification_queue,
        proof_storage_dir=str(tmp_path / "proofs"),
        validator=SignatureFileValidator(max_size_bytes=1024 * 1024),
    )
    yield orchestrator
    await orchestrator.shutdown()


@pytest.fixture
def place_order(orchestrator, seed_stock):
    """
    Seed stock and place a two-unit order for 20.00 USD.

    Returns a coroutine function accepting overrides for the order.
    """

    async def _place(
        product_id: str = "sku-1",
        quantity: int = 2,
        unit_price: Decimal = Decimal("10.00"),
        stock: Optional[int] = 10,
        chat_id: Optional[str] = "100500",
        **kwargs: Any,
    ):
        if stock is not None:
            await seed_stock(product_id, stock)
        return await orchestrator.create_order(
            store_id=kwargs.pop("store_id", "store-1"),
            store_name=kwargs.pop("store_name", "Corner Shop"),
            items=[OrderItemInput(product_id=product_id, quantity=quantity, unit_price=unit_price)],
            customer_info=CustomerInfo(customer_id="customer-1", chat_id=chat_id),
            **kwargs,
        )

    return _place


# ============================================================================
# Payload fixtures
# ============================================================================


@pytest.fixture
def receipt_pdf() -> Callable[..., bytes]:
    """Minimal uncompressed PDF whose text reads like a bank receipt."""

    def _build(amount: str = "20.00", currency: str = "USD", paid_on: Optional[str] = None) -> bytes:
        paid_on = paid_on or datetime.now(timezone.utc).date().isoformat()
        return (
            b"%PDF-1.4\n"
            + f"BT (Amount: {amount} {currency}) Tj ET\n".encode("latin-1")
            + f"BT (Date: {paid_on}) Tj ET\n".encode("latin-1")
            + b"%%EOF\n"
        )

    return _build


@pytest.fixture
def png_payload() -> bytes:
    """A PNG signature followed by binary noise; carries no readable text."""
    return PNG_HEADER + bytes(range(256)) * 4


@pytest.fixture
def transient_error() -> Callable[[], TransientDeliveryError]:
    return lambda: TransientDeliveryError("Bot API unavailable")


@pytest.fixture
def permanent_error() -> Callable[[], PermanentDeliveryError]:
    return lambda: PermanentDeliveryError("Chat not found")
