"""
Database models package initialization.

Models are imported here so they are registered with the Base metadata for
Alembic and for relationship resolution by name.
"""

from cylinderhub.database.base import Base, BaseModel
from cylinderhub.database.models.cylinder import (
    Cylinder,
    CylinderLocation,
    CylinderStatus,
    OrderRating,
)
from cylinderhub.database.models.inventory import CylinderSize, Warehouse, WarehouseStock
from cylinderhub.database.models.ledger import (
    DriverEarning,
    EarningStatus,
    EntryStatus,
    LiabilityType,
    PaymentTimelineEntry,
    TimelineEntryType,
)
from cylinderhub.database.models.order import (
    Order,
    OrderStatus,
    OrderStatusHistory,
    OrderType,
    PaymentMethod,
)
from cylinderhub.database.models.party import DriverStatus, Party, PartyRole

__all__ = [
    "Base",
    "BaseModel",
    "Cylinder",
    "CylinderLocation",
    "CylinderSize",
    "CylinderStatus",
    "DriverEarning",
    "DriverStatus",
    "EarningStatus",
    "EntryStatus",
    "LiabilityType",
    "Order",
    "OrderRating",
    "OrderStatus",
    "OrderStatusHistory",
    "OrderType",
    "Party",
    "PartyRole",
    "PaymentMethod",
    "PaymentTimelineEntry",
    "TimelineEntryType",
    "Warehouse",
    "WarehouseStock",
]
