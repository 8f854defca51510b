"""
Inventory ledger: atomic stock reservation per warehouse and cylinder size.

Reservations are single conditional UPDATE statements
(``quantity = quantity - :qty WHERE quantity >= :qty``), so the check and the
decrement cannot be split by a concurrent writer and a stock row can never
go negative. The ledger never commits: callers run it inside the same
transaction as the order write that owns the reservation.
"""

import uuid

from sqlalchemy import case, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from cylinderhub.core.exceptions import InsufficientStock, ResourceNotFound
from cylinderhub.core.logging import get_logger
from cylinderhub.database.models import CylinderSize, Warehouse, WarehouseStock

logger = get_logger(__name__)


class InventoryLedger:
    """Reserve and release stock inside the caller's transaction."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def reserve(
        self,
        warehouse_id: uuid.UUID,
        size: CylinderSize,
        quantity: int,
    ) -> int:
        """
        Take ``quantity`` units of ``size`` out of a warehouse.

        Args:
            warehouse_id: Warehouse to draw from
            size: Cylinder size
            quantity: Units to reserve, must be positive

        Returns:
            Remaining quantity of the stock row

        Raises:
            InsufficientStock: If the row holds fewer than ``quantity`` units
            ValueError: If quantity is not positive
        """
        if quantity <= 0:
            raise ValueError("Reservation quantity must be positive")

        result = await self.session.execute(
            update(WarehouseStock)
            .where(
                WarehouseStock.warehouse_id == warehouse_id,
                WarehouseStock.size == size,
                WarehouseStock.quantity >= quantity,
            )
            .values(quantity=WarehouseStock.quantity - quantity)
            .execution_options(synchronize_session=False)
        )

        if result.rowcount != 1:
            available = await self.available(warehouse_id, size)
            logger.warning(
                "Stock reservation rejected",
                warehouse_id=str(warehouse_id),
                size=size.value,
                requested=quantity,
                available=available,
            )
            raise InsufficientStock(
                f"Only {available} x {size.value} available, {quantity} requested",
                warehouse_id=str(warehouse_id),
                size=size.value,
                requested=quantity,
                available=available,
            )

        await self._recompute_totals(warehouse_id, issued_delta=quantity)
        remaining = await self.available(warehouse_id, size)

        logger.info(
            "Stock reserved",
            warehouse_id=str(warehouse_id),
            size=size.value,
            quantity=quantity,
            remaining=remaining,
        )
        return remaining

    async def release(
        self,
        warehouse_id: uuid.UUID,
        size: CylinderSize,
        quantity: int,
    ) -> int:
        """
        Put ``quantity`` units of ``size`` back into a warehouse.

        Used when an order holding a reservation is cancelled and when a
        returned cylinder comes back into stock.

        Raises:
            ResourceNotFound: If the warehouse has no row for ``size``
        """
        if quantity <= 0:
            raise ValueError("Release quantity must be positive")

        result = await self.session.execute(
            update(WarehouseStock)
            .where(
                WarehouseStock.warehouse_id == warehouse_id,
                WarehouseStock.size == size,
            )
            .values(quantity=WarehouseStock.quantity + quantity)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise ResourceNotFound(
                f"Warehouse does not stock {size.value}",
                warehouse_id=str(warehouse_id),
                size=size.value,
            )

        await self._recompute_totals(warehouse_id, issued_delta=-quantity)
        remaining = await self.available(warehouse_id, size)

        logger.info(
            "Stock released",
            warehouse_id=str(warehouse_id),
            size=size.value,
            quantity=quantity,
            remaining=remaining,
        )
        return remaining

    async def available(self, warehouse_id: uuid.UUID, size: CylinderSize) -> int:
        result = await self.session.execute(
            select(WarehouseStock.quantity).where(
                WarehouseStock.warehouse_id == warehouse_id,
                WarehouseStock.size == size,
            )
        )
        return result.scalar_one_or_none() or 0

    async def _recompute_totals(self, warehouse_id: uuid.UUID, issued_delta: int) -> None:
        total = (
            select(func.coalesce(func.sum(WarehouseStock.quantity), 0))
            .where(WarehouseStock.warehouse_id == warehouse_id)
            .scalar_subquery()
        )
        issued_after = Warehouse.issued_cylinders + issued_delta
        issued = case((issued_after < 0, 0), else_=issued_after)

        await self.session.execute(
            update(Warehouse)
            .where(Warehouse.id == warehouse_id)
            .values(total_inventory=total, issued_cylinders=issued)
            .execution_options(synchronize_session=False)
        )
