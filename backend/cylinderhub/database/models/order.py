"""
Order aggregate and status history models.

The order row carries a ``version`` column used by SQLAlchemy as a
compare-and-swap token: every UPDATE is issued with ``WHERE version = :seen``
so a concurrent writer that read the same state fails with StaleDataError
instead of overwriting. Pricing components are stored; subtotal and grand
total are always derived from them.
"""

import enum
import uuid
from datetime import datetime
from decimal import Decimal
from typing import Any, Optional

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    Uuid,
    event,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from cylinderhub.database.base import Base, BaseModel, enum_type, utcnow
from cylinderhub.database.models.inventory import CylinderSize


class OrderType(str, enum.Enum):
    NEW = "new"
    REFILL = "refill"
    RETURN = "return"
    SUPPLIER_CHANGE = "supplier_change"


class OrderStatus(str, enum.Enum):
    """Order lifecycle states."""

    PENDING = "pending"
    ASSIGNED = "assigned"
    ACCEPTED = "accepted"
    QR_GENERATED = "qrgenerated"
    PICKUP_READY = "pickup_ready"
    IN_TRANSIT = "in_transit"
    DELIVERED = "delivered"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    REFILL_REQUESTED = "refill_requested"
    REFILL_PICKUP = "refill_pickup"
    REFILL_IN_STORE = "refill_in_store"
    RETURN_REQUESTED = "return_requested"
    RETURN_PICKUP = "return_pickup"
    RETURNED = "returned"

    @classmethod
    def from_string(cls, value: str) -> "OrderStatus":
        try:
            return cls(value.lower())
        except ValueError:
            valid_values = ", ".join(s.value for s in cls)
            raise ValueError(
                f"Invalid order status: {value}. Valid values are: {valid_values}"
            )

    def is_terminal(self) -> bool:
        return self in {
            OrderStatus.COMPLETED,
            OrderStatus.CANCELLED,
            OrderStatus.RETURNED,
        }

    @property
    def display_name(self) -> str:
        return self.value.replace("_", " ").title()


class PaymentMethod(str, enum.Enum):
    JAZZCASH = "jazzcash"
    EASYPAISA = "easypaisa"
    CARD = "card"
    COD = "cod"


class Order(BaseModel):
    """
    Cylinder order aggregate root.

    Mutated only through the order state machine; never deleted.
    """

    __tablename__ = "orders"

    order_number: Mapped[str] = mapped_column(
        String(16),
        nullable=False,
        unique=True,
        index=True,
        comment="Human-readable order number",
    )

    buyer_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("parties.id", ondelete="RESTRICT"),
        nullable=False,
        index=True,
    )

    seller_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("parties.id", ondelete="RESTRICT"),
        nullable=False,
        index=True,
    )

    driver_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("parties.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )

    warehouse_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("warehouses.id", ondelete="RESTRICT"),
        nullable=False,
        index=True,
    )

    source_cylinder_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid(as_uuid=True),
        nullable=True,
        comment="Buyer cylinder being refilled or returned",
    )

    order_type: Mapped[OrderType] = mapped_column(
        enum_type(OrderType, "order_type"),
        nullable=False,
        default=OrderType.NEW,
    )

    cylinder_size: Mapped[CylinderSize] = mapped_column(
        enum_type(CylinderSize, "order_cylinder_size"),
        nullable=False,
    )

    quantity: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    status: Mapped[OrderStatus] = mapped_column(
        enum_type(OrderStatus, "order_status"),
        nullable=False,
        default=OrderStatus.PENDING,
        index=True,
    )

    qr_code: Mapped[Optional[str]] = mapped_column(
        String(64),
        nullable=True,
        unique=True,
        comment="Opaque token for the current handoff leg",
    )

    is_urgent: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    payment_method: Mapped[PaymentMethod] = mapped_column(
        enum_type(PaymentMethod, "payment_method"),
        nullable=False,
        default=PaymentMethod.COD,
    )

    transaction_id: Mapped[Optional[str]] = mapped_column(
        String(100),
        nullable=True,
        comment="Payment authorization reference",
    )

    inventory_reserved: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        default=False,
        comment="Stock is currently held for this order",
    )

    delivery_address: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    delivery_lat: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    delivery_lng: Mapped[Optional[float]] = mapped_column(Float, nullable=True)

    cylinder_price: Mapped[Decimal] = mapped_column(
        Numeric(12, 2), nullable=False, default=Decimal("0")
    )
    security_charges: Mapped[Decimal] = mapped_column(
        Numeric(12, 2), nullable=False, default=Decimal("0")
    )
    delivery_charges: Mapped[Decimal] = mapped_column(
        Numeric(12, 2), nullable=False, default=Decimal("0")
    )
    urgent_delivery_fee: Mapped[Decimal] = mapped_column(
        Numeric(12, 2), nullable=False, default=Decimal("0")
    )
    add_ons_total: Mapped[Decimal] = mapped_column(
        Numeric(12, 2), nullable=False, default=Decimal("0")
    )

    add_ons: Mapped[list[Any]] = mapped_column(
        JSON,
        nullable=False,
        default=list,
        comment="Selected add-ons as [{title, price, quantity}]",
    )

    version: Mapped[int] = mapped_column(Integer, nullable=False)

    status_history: Mapped[list["OrderStatusHistory"]] = relationship(
        "OrderStatusHistory",
        back_populates="order",
        order_by="OrderStatusHistory.sequence",
        lazy="selectin",
    )

    timeline_entries: Mapped[list["PaymentTimelineEntry"]] = relationship(  # noqa: F821
        "PaymentTimelineEntry",
        back_populates="order",
        order_by="PaymentTimelineEntry.sequence",
        lazy="selectin",
    )

    driver_earnings: Mapped[list["DriverEarning"]] = relationship(  # noqa: F821
        "DriverEarning",
        back_populates="order",
        order_by="DriverEarning.created_at",
        lazy="selectin",
    )

    __mapper_args__ = {"version_id_col": version}

    __table_args__ = (
        CheckConstraint("quantity > 0", name="ck_orders_quantity_positive"),
        Index("ix_orders_status_type", "status", "order_type"),
    )

    @property
    def subtotal(self) -> Decimal:
        """Cylinder price times quantity plus add-ons."""
        return self.cylinder_price * self.quantity + self.add_ons_total

    @property
    def grand_total(self) -> Decimal:
        return (
            self.subtotal
            + self.security_charges
            + self.delivery_charges
            + self.urgent_delivery_fee
        )

    @property
    def pickup_point(self) -> Optional[tuple[float, float]]:
        if self.delivery_lat is None or self.delivery_lng is None:
            return None
        return (self.delivery_lat, self.delivery_lng)


class OrderStatusHistory(Base):
    """
    Append-only audit log of order transitions.

    Rows are inserted once and never updated.
    """

    __tablename__ = "order_status_history"

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )

    order_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("orders.id", ondelete="RESTRICT"),
        nullable=False,
        index=True,
    )

    sequence: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        comment="Position of the entry within the order history",
    )

    from_status: Mapped[Optional[OrderStatus]] = mapped_column(
        enum_type(OrderStatus, "history_from_status"),
        nullable=True,
    )

    status: Mapped[OrderStatus] = mapped_column(
        enum_type(OrderStatus, "history_status"),
        nullable=False,
    )

    event: Mapped[str] = mapped_column(String(50), nullable=False)

    actor_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid(as_uuid=True),
        nullable=True,
        comment="Party who triggered the transition",
    )

    note: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
    )

    order: Mapped["Order"] = relationship("Order", back_populates="status_history")


@event.listens_for(OrderStatusHistory, "before_update")
def _reject_history_update(mapper, connection, target):
    raise ValueError("Order status history is append-only")


@event.listens_for(OrderStatusHistory, "before_delete")
def _reject_history_delete(mapper, connection, target):
    raise ValueError("Order status history is append-only")
