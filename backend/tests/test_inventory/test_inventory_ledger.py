"""
Test suite for the inventory ledger.

Covers reservation and release against real stock rows, the derived
warehouse totals, and concurrent reservations racing for the same row.
"""

import asyncio

import pytest
from sqlalchemy import select

from conftest import World, stock_quantity
from cylinderhub.core.exceptions import InsufficientStock, ResourceNotFound
from cylinderhub.database.models import CylinderSize, Warehouse
from cylinderhub.services.inventory.ledger import InventoryLedger


# ============================================================================
# Reservation
# ============================================================================


class TestReserve:
    """Test suite for InventoryLedger.reserve."""

    async def test_reserve_decrements_quantity(self, session, world: World):
        ledger = InventoryLedger(session)

        remaining = await ledger.reserve(world.warehouse.id, CylinderSize.KG_15, 3)
        await session.commit()

        assert remaining == 2
        assert await stock_quantity(session, world.warehouse.id) == 2

    async def test_reserve_updates_warehouse_totals(self, session, world: World):
        ledger = InventoryLedger(session)

        await ledger.reserve(world.warehouse.id, CylinderSize.KG_15, 2)
        await session.commit()

        row = (
            await session.execute(
                select(Warehouse.total_inventory, Warehouse.issued_cylinders).where(
                    Warehouse.id == world.warehouse.id
                )
            )
        ).one()
        assert row.total_inventory == 3
        assert row.issued_cylinders == 2

    async def test_reserve_exact_quantity_empties_row(self, session, world: World):
        ledger = InventoryLedger(session)

        remaining = await ledger.reserve(world.warehouse.id, CylinderSize.KG_15, 5)

        assert remaining == 0

    async def test_reserve_more_than_available_is_rejected(self, session, world: World):
        ledger = InventoryLedger(session)

        with pytest.raises(InsufficientStock) as exc_info:
            await ledger.reserve(world.warehouse.id, CylinderSize.KG_15, 6)

        assert exc_info.value.context["available"] == 5
        assert exc_info.value.context["requested"] == 6
        assert await stock_quantity(session, world.warehouse.id) == 5

    async def test_reserve_unstocked_size_is_rejected(self, session, world: World):
        ledger = InventoryLedger(session)

        with pytest.raises(InsufficientStock) as exc_info:
            await ledger.reserve(world.warehouse.id, CylinderSize.KG_6, 1)

        assert exc_info.value.context["available"] == 0

    @pytest.mark.parametrize("quantity", [0, -1])
    async def test_reserve_non_positive_quantity(self, session, world: World, quantity):
        ledger = InventoryLedger(session)

        with pytest.raises(ValueError):
            await ledger.reserve(world.warehouse.id, CylinderSize.KG_15, quantity)

    async def test_rolled_back_reservation_restores_stock(self, session, world: World):
        ledger = InventoryLedger(session)

        await ledger.reserve(world.warehouse.id, CylinderSize.KG_15, 4)
        await session.rollback()

        assert await stock_quantity(session, world.warehouse.id) == 5


# ============================================================================
# Release
# ============================================================================


class TestRelease:
    """Test suite for InventoryLedger.release."""

    async def test_release_restores_quantity(self, session, world: World):
        ledger = InventoryLedger(session)
        await ledger.reserve(world.warehouse.id, CylinderSize.KG_15, 3)

        remaining = await ledger.release(world.warehouse.id, CylinderSize.KG_15, 3)
        await session.commit()

        assert remaining == 5
        issued = await session.scalar(
            select(Warehouse.issued_cylinders).where(Warehouse.id == world.warehouse.id)
        )
        assert issued == 0

    async def test_release_never_drives_issued_negative(self, session, world: World):
        ledger = InventoryLedger(session)

        await ledger.release(world.warehouse.id, CylinderSize.KG_15, 1)
        await session.commit()

        issued = await session.scalar(
            select(Warehouse.issued_cylinders).where(Warehouse.id == world.warehouse.id)
        )
        assert issued == 0
        assert await stock_quantity(session, world.warehouse.id) == 6

    async def test_release_unknown_size(self, session, world: World):
        ledger = InventoryLedger(session)

        with pytest.raises(ResourceNotFound):
            await ledger.release(world.warehouse.id, CylinderSize.KG_4_5, 1)


# ============================================================================
# Concurrency
# ============================================================================


class TestConcurrentReservations:
    """Concurrent reservations must never oversell a stock row."""

    async def test_two_reservations_of_three_from_five(self, session_factory, world: World):
        async def reserve_three():
            async with session_factory() as session:
                ledger = InventoryLedger(session)
                try:
                    await ledger.reserve(world.warehouse.id, CylinderSize.KG_15, 3)
                except InsufficientStock:
                    await session.rollback()
                    return False
                await session.commit()
                return True

        results = await asyncio.gather(reserve_three(), reserve_three())

        assert sorted(results) == [False, True]
        async with session_factory() as session:
            assert await stock_quantity(session, world.warehouse.id) == 2

    async def test_many_single_reservations_grant_exactly_available(
        self, session_factory, world: World
    ):
        async def reserve_one():
            async with session_factory() as session:
                try:
                    await InventoryLedger(session).reserve(
                        world.warehouse.id, CylinderSize.KG_15, 1
                    )
                except InsufficientStock:
                    await session.rollback()
                    return False
                await session.commit()
                return True

        results = await asyncio.gather(*(reserve_one() for _ in range(8)))

        assert results.count(True) == 5
        assert results.count(False) == 3
        async with session_factory() as session:
            assert await stock_quantity(session, world.warehouse.id) == 0
