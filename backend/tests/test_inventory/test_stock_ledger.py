"""
Tests for StockLedger reserve/release semantics.
"""

from uuid import uuid4

import pytest
from sqlalchemy import select

from orderflow.database.models.inventory import ReservationStatus, StockMovement, StockReservation
from orderflow.services.inventory.ledger import (
    InsufficientStockError,
    StockLedger,
    StockLine,
    merge_lines,
)


@pytest.fixture
async def ledger(db_session) -> StockLedger:
    ledger = StockLedger(db_session)
    await ledger.set_available("sku-a", 5)
    await ledger.set_available("sku-b", 2)
    await ledger.set_available("sku-b", 4, variant_id="large")
    await db_session.commit()
    return ledger


# ============================================================================
# merge_lines Tests
# ============================================================================


class TestMergeLines:
    def test_sums_duplicate_items(self):
        merged = merge_lines(
            [
                StockLine("sku-b", 1),
                StockLine("sku-a", 2),
                StockLine("sku-b", 3),
                StockLine("sku-b", 1, variant_id="large"),
            ]
        )

        assert merged == [
            StockLine("sku-a", 2),
            StockLine("sku-b", 4),
            StockLine("sku-b", 1, variant_id="large"),
        ]

    def test_rejects_non_positive_quantity(self):
        with pytest.raises(ValueError):
            merge_lines([StockLine("sku-a", 0)])


# ============================================================================
# Reserve / Release Tests
# ============================================================================


class TestReserve:
    """Test all-or-nothing reservation."""

    @pytest.mark.asyncio
    async def test_reserve_decrements_each_item(self, ledger, db_session):
        order_id = uuid4()
        await ledger.reserve(
            order_id,
            [StockLine("sku-a", 2), StockLine("sku-b", 1, variant_id="large")],
        )
        await db_session.commit()

        assert await ledger.get_available("sku-a") == 3
        assert await ledger.get_available("sku-b", "large") == 3
        assert await ledger.get_available("sku-b") == 2

        reservation = await db_session.scalar(
            select(StockReservation).where(StockReservation.order_id == order_id)
        )
        assert reservation.status is ReservationStatus.RESERVED
        assert len(reservation.items) == 2

    @pytest.mark.asyncio
    async def test_exact_remaining_stock_can_be_reserved(self, ledger):
        await ledger.reserve(uuid4(), [StockLine("sku-a", 5)])
        assert await ledger.get_available("sku-a") == 0

    @pytest.mark.asyncio
    async def test_insufficient_stock_leaves_counters_unchanged(self, ledger, db_session):
        with pytest.raises(InsufficientStockError) as exc_info:
            await ledger.reserve(
                uuid4(),
                [StockLine("sku-a", 2), StockLine("sku-b", 3)],
            )

        error = exc_info.value
        assert error.product_id == "sku-b"
        assert error.requested == 3
        assert error.available == 2
        assert error.code == "insufficient_stock"

        assert await ledger.get_available("sku-a") == 5
        assert await ledger.get_available("sku-b") == 2

    @pytest.mark.asyncio
    async def test_duplicate_lines_checked_against_total(self, ledger):
        with pytest.raises(InsufficientStockError) as exc_info:
            await ledger.reserve(uuid4(), [StockLine("sku-b", 1), StockLine("sku-b", 2)])

        assert exc_info.value.requested == 3
        assert await ledger.get_available("sku-b") == 2

    @pytest.mark.asyncio
    async def test_missing_stock_record_counts_as_zero(self, ledger):
        assert await ledger.get_available("sku-unknown") == 0

        with pytest.raises(InsufficientStockError) as exc_info:
            await ledger.reserve(uuid4(), [StockLine("sku-unknown", 1)])
        assert exc_info.value.available == 0

    @pytest.mark.asyncio
    async def test_variant_stock_is_separate_from_product(self, ledger):
        with pytest.raises(InsufficientStockError) as exc_info:
            await ledger.reserve(uuid4(), [StockLine("sku-b", 5, variant_id="large")])

        assert exc_info.value.variant_id == "large"
        assert await ledger.get_available("sku-b") == 2


class TestRelease:
    """Test at-most-once release."""

    @pytest.mark.asyncio
    async def test_release_returns_reserved_quantities(self, ledger, db_session):
        order_id = uuid4()
        await ledger.reserve(order_id, [StockLine("sku-a", 4)])
        await db_session.commit()

        assert await ledger.release(order_id) is True
        await db_session.commit()

        assert await ledger.get_available("sku-a") == 5
        reservation = await db_session.scalar(
            select(StockReservation)
            .where(StockReservation.order_id == order_id)
            .execution_options(populate_existing=True)
        )
        assert reservation.status is ReservationStatus.RELEASED
        assert reservation.released_at is not None

    @pytest.mark.asyncio
    async def test_second_release_is_noop(self, ledger, db_session):
        order_id = uuid4()
        await ledger.reserve(order_id, [StockLine("sku-a", 1)])

        assert await ledger.release(order_id) is True
        assert await ledger.release(order_id) is False
        assert await ledger.get_available("sku-a") == 5

    @pytest.mark.asyncio
    async def test_release_without_reservation(self, ledger):
        assert await ledger.release(uuid4()) is False

    @pytest.mark.asyncio
    async def test_movements_record_every_delta(self, ledger, db_session):
        order_id = uuid4()
        await ledger.reserve(order_id, [StockLine("sku-a", 2)])
        await ledger.release(order_id)

        result = await db_session.execute(
            select(StockMovement)
            .where(StockMovement.order_id == order_id)
            .order_by(StockMovement.created_at)
        )
        movements = [(m.reason, m.delta) for m in result.scalars().all()]
        assert movements == [("reserve", -2), ("release", 2)]


class TestSetAvailable:
    @pytest.mark.asyncio
    async def test_overwrites_existing_counter(self, ledger):
        await ledger.set_available("sku-a", 9)
        assert await ledger.get_available("sku-a") == 9

    @pytest.mark.asyncio
    async def test_negative_quantity_rejected(self, ledger):
        with pytest.raises(ValueError):
            await ledger.set_available("sku-a", -1)
