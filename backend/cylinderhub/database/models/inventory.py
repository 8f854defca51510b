"""
Warehouse stock models.

A warehouse belongs to a seller and holds one stock row per cylinder size.
Sizes are a closed enumeration, so every warehouse has at most four rows and
every quantity is guarded by a CHECK constraint at the database level.
"""

import enum
import uuid
from decimal import Decimal
from typing import Any, Optional

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Float,
    ForeignKey,
    Integer,
    Numeric,
    String,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from cylinderhub.database.base import BaseModel, enum_type


class CylinderSize(str, enum.Enum):
    """Cylinder sizes stocked by sellers."""

    KG_15 = "15kg"
    KG_11_8 = "11.8kg"
    KG_6 = "6kg"
    KG_4_5 = "4.5kg"

    @classmethod
    def from_string(cls, value: str) -> "CylinderSize":
        """
        Convert a size label to CylinderSize.

        Raises:
            ValueError: If value is not a known size
        """
        normalized = value.strip().lower().replace(" ", "")
        try:
            return cls(normalized)
        except ValueError:
            valid_values = ", ".join(s.value for s in cls)
            raise ValueError(
                f"Invalid cylinder size: {value}. Valid values are: {valid_values}"
            )

    @property
    def weight_kg(self) -> Decimal:
        """Gas weight in kilograms."""
        return Decimal(self.value[:-2])


class Warehouse(BaseModel):
    """
    A seller's stocking location.

    ``total_inventory`` is recomputed from the stock rows on every write
    made through the inventory ledger and is never authoritative.
    """

    __tablename__ = "warehouses"

    seller_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("parties.id", ondelete="RESTRICT"),
        nullable=False,
        index=True,
        comment="Owning seller",
    )

    label: Mapped[str] = mapped_column(
        String(200),
        nullable=False,
        comment="Warehouse display label",
    )

    city: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    latitude: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    longitude: Mapped[Optional[float]] = mapped_column(Float, nullable=True)

    price_per_kg: Mapped[Decimal] = mapped_column(
        Numeric(10, 2),
        nullable=False,
        default=Decimal("0"),
        comment="Gas price per kilogram",
    )

    issued_cylinders: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=0,
        comment="Units currently reserved against orders",
    )

    total_inventory: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=0,
        comment="Sum of stock quantities, recomputed on write",
    )

    add_ons: Mapped[list[Any]] = mapped_column(
        JSON,
        nullable=False,
        default=list,
        comment="Add-on catalog as [{title, price}]",
    )

    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    stock: Mapped[list["WarehouseStock"]] = relationship(
        "WarehouseStock",
        back_populates="warehouse",
        cascade="all, delete-orphan",
        lazy="selectin",
    )

    __table_args__ = (
        CheckConstraint("issued_cylinders >= 0", name="ck_warehouses_issued_non_negative"),
    )

    def stock_for(self, size: CylinderSize) -> Optional["WarehouseStock"]:
        for row in self.stock:
            if row.size == size:
                return row
        return None

    def add_on_price(self, title: str) -> Optional[Decimal]:
        for add_on in self.add_ons or []:
            if add_on.get("title") == title:
                return Decimal(str(add_on.get("price", 0)))
        return None


class WarehouseStock(BaseModel):
    """Quantity and per-unit price of one cylinder size in one warehouse."""

    __tablename__ = "warehouse_stock"

    warehouse_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("warehouses.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    size: Mapped[CylinderSize] = mapped_column(
        enum_type(CylinderSize, "cylinder_size"),
        nullable=False,
    )

    quantity: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=0,
        comment="Filled units available",
    )

    price: Mapped[Decimal] = mapped_column(
        Numeric(10, 2),
        nullable=False,
        default=Decimal("0"),
        comment="Per-cylinder price, charged as the security deposit",
    )

    warehouse: Mapped["Warehouse"] = relationship("Warehouse", back_populates="stock")

    __table_args__ = (
        UniqueConstraint("warehouse_id", "size", name="uq_warehouse_stock_size"),
        CheckConstraint("quantity >= 0", name="ck_warehouse_stock_quantity_non_negative"),
    )
