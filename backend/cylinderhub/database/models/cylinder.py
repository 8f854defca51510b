"""
Physical cylinder and order rating models.

Cylinder status follows the orders that move the unit; nothing updates a
cylinder outside an order transition.
"""

import enum
import uuid
from decimal import Decimal
from typing import Optional

from sqlalchemy import (
    CheckConstraint,
    Float,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Text,
    Uuid,
)
from sqlalchemy.orm import Mapped, mapped_column

from cylinderhub.database.base import BaseModel, enum_type
from cylinderhub.database.models.inventory import CylinderSize


class CylinderStatus(str, enum.Enum):
    ACTIVE = "active"
    EMPTY = "empty"
    IN_REFILL = "in_refill"
    RETURNED = "returned"
    REFILL_RETURN = "refill_return"


class CylinderLocation(str, enum.Enum):
    """Who physically holds the cylinder."""

    WAREHOUSE = "warehouse"
    DRIVER = "driver"
    BUYER = "buyer"


class Cylinder(BaseModel):
    """A physical gas cylinder, identified by serial number and QR code."""

    __tablename__ = "cylinders"

    serial_number: Mapped[str] = mapped_column(
        String(100),
        nullable=False,
        unique=True,
        index=True,
    )

    qr_code: Mapped[str] = mapped_column(
        String(64),
        nullable=False,
        unique=True,
        comment="Label code printed on the cylinder",
    )

    size: Mapped[CylinderSize] = mapped_column(
        enum_type(CylinderSize, "cylinder_unit_size"),
        nullable=False,
    )

    status: Mapped[CylinderStatus] = mapped_column(
        enum_type(CylinderStatus, "cylinder_status"),
        nullable=False,
        default=CylinderStatus.ACTIVE,
    )

    location: Mapped[CylinderLocation] = mapped_column(
        enum_type(CylinderLocation, "cylinder_location"),
        nullable=False,
        default=CylinderLocation.WAREHOUSE,
    )

    buyer_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("parties.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
        comment="Current owner; at most one buyer",
    )

    seller_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("parties.id", ondelete="RESTRICT"),
        nullable=False,
    )

    warehouse_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("warehouses.id", ondelete="RESTRICT"),
        nullable=False,
    )

    order_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("orders.id", ondelete="RESTRICT"),
        nullable=False,
        index=True,
        comment="Order currently moving this cylinder",
    )

    origin_order_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("orders.id", ondelete="RESTRICT"),
        nullable=False,
        comment="Order that first delivered this cylinder",
    )

    security_fee: Mapped[Decimal] = mapped_column(
        Numeric(12, 2),
        nullable=False,
        default=Decimal("0"),
        comment="Refundable deposit held for this unit",
    )

    tare_weight: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    gross_weight: Mapped[Optional[float]] = mapped_column(Float, nullable=True)


class OrderRating(BaseModel):
    """Buyer rating left when returning a cylinder."""

    __tablename__ = "order_ratings"

    order_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("orders.id", ondelete="RESTRICT"),
        nullable=False,
        unique=True,
    )

    buyer_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("parties.id", ondelete="RESTRICT"),
        nullable=False,
    )

    rating: Mapped[int] = mapped_column(Integer, nullable=False)
    comment: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    __table_args__ = (
        CheckConstraint("rating BETWEEN 1 AND 5", name="ck_order_ratings_range"),
    )
