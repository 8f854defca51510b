"""
Order data access.

Lookups used by the order service. Writes go through the session directly
so they stay in the caller's transaction.
"""

import secrets
import uuid
from typing import Iterable, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from cylinderhub.core.exceptions import OrderNotFound, ResourceNotFound
from cylinderhub.core.logging import get_logger
from cylinderhub.database.models import (
    Cylinder,
    Order,
    OrderRating,
    Party,
    PartyRole,
    Warehouse,
)

logger = get_logger(__name__)

ORDER_NUMBER_DIGITS = 5
ORDER_NUMBER_ATTEMPTS = 10


class OrderRepository:
    """Repository for order and related lookups."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get_order(self, order_id: uuid.UUID) -> Order:
        """
        Raises:
            OrderNotFound: If the order does not exist
        """
        order = await self.session.scalar(select(Order).where(Order.id == order_id))
        if order is None:
            raise OrderNotFound(f"Order {order_id} not found", order_id=str(order_id))
        return order

    async def next_order_number(self) -> str:
        """Random zero-padded order number not used by any order."""
        for _ in range(ORDER_NUMBER_ATTEMPTS):
            candidate = f"{secrets.randbelow(10 ** ORDER_NUMBER_DIGITS):0{ORDER_NUMBER_DIGITS}d}"
            taken = await self.session.scalar(
                select(Order.id).where(Order.order_number == candidate)
            )
            if taken is None:
                return candidate
        # Keyspace nearly exhausted; fall back to a longer number.
        return f"{secrets.randbelow(10 ** 10):010d}"

    async def get_warehouse(self, warehouse_id: uuid.UUID) -> Warehouse:
        warehouse = await self.session.get(Warehouse, warehouse_id)
        if warehouse is None or not warehouse.is_active:
            raise ResourceNotFound(
                f"Warehouse {warehouse_id} not found",
                warehouse_id=str(warehouse_id),
            )
        return warehouse

    async def get_party(self, party_id: uuid.UUID, role: Optional[PartyRole] = None) -> Party:
        party = await self.session.get(Party, party_id)
        if party is None or not party.is_active or (role is not None and party.role != role):
            raise ResourceNotFound(
                f"{role.value.capitalize() if role else 'Party'} {party_id} not found",
                party_id=str(party_id),
            )
        return party

    async def get_cylinder(self, cylinder_id: uuid.UUID) -> Cylinder:
        cylinder = await self.session.get(Cylinder, cylinder_id)
        if cylinder is None:
            raise ResourceNotFound(
                f"Cylinder {cylinder_id} not found",
                cylinder_id=str(cylinder_id),
            )
        return cylinder

    async def get_cylinders_by_serial(self, serials: Iterable[str]) -> dict[str, Cylinder]:
        serials = list(serials)
        if not serials:
            return {}
        result = await self.session.execute(
            select(Cylinder).where(Cylinder.serial_number.in_(serials))
        )
        return {c.serial_number: c for c in result.scalars()}

    async def rating_exists(self, order_id: uuid.UUID) -> bool:
        found = await self.session.scalar(
            select(OrderRating.id).where(OrderRating.order_id == order_id)
        )
        return found is not None
