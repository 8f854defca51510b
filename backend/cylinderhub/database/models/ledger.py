"""
Payment timeline and driver earning models.

Timeline entries form a per-order sub-ledger of monetary obligations. An
entry is immutable once written except for its settlement fields; the
``before_update`` hook below enforces that at flush time.
"""

import enum
import uuid
from datetime import datetime
from decimal import Decimal
from typing import Optional

from sqlalchemy import (
    DateTime,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Text,
    Uuid,
    event,
    inspect,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from cylinderhub.database.base import BaseModel, enum_type
from cylinderhub.database.models.order import PaymentMethod


class TimelineEntryType(str, enum.Enum):
    SALE = "sale"
    DELIVERY_FEE = "delivery_fee"
    REFUND = "refund"
    PICKUP_FEE = "pickup_fee"
    OTHER = "other"


class LiabilityType(str, enum.Enum):
    REVENUE = "revenue"
    LIABILITY = "liability"
    REFUNDABLE = "refundable"


class EntryStatus(str, enum.Enum):
    PENDING = "pending"
    COMPLETED = "completed"


class EarningStatus(str, enum.Enum):
    PENDING = "pending"
    PAID = "paid"


SECURITY_DEPOSIT_CAUSE = "Security Deposits"

# Columns that may change after an entry is written.
MUTABLE_ENTRY_FIELDS = frozenset(
    {"status", "reference_id", "processed_by", "processed_at", "processing_notes", "updated_at"}
)


class PaymentTimelineEntry(BaseModel):
    """
    One monetary obligation on an order.

    ``timeline_id`` is the stable identity shared with the external mirror.
    """

    __tablename__ = "payment_timeline_entries"

    timeline_id: Mapped[str] = mapped_column(
        String(64),
        nullable=False,
        unique=True,
        index=True,
        comment="Reconciliation key shared with the external mirror",
    )

    order_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("orders.id", ondelete="RESTRICT"),
        nullable=False,
        index=True,
    )

    sequence: Mapped[int] = mapped_column(Integer, nullable=False)

    entry_type: Mapped[TimelineEntryType] = mapped_column(
        enum_type(TimelineEntryType, "timeline_entry_type"),
        nullable=False,
    )

    cause: Mapped[str] = mapped_column(
        String(200),
        nullable=False,
        comment="Free-text reason for the obligation",
    )

    amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)

    liability_type: Mapped[LiabilityType] = mapped_column(
        enum_type(LiabilityType, "liability_type"),
        nullable=False,
        default=LiabilityType.REVENUE,
    )

    payment_method: Mapped[PaymentMethod] = mapped_column(
        enum_type(PaymentMethod, "entry_payment_method"),
        nullable=False,
    )

    status: Mapped[EntryStatus] = mapped_column(
        enum_type(EntryStatus, "entry_status"),
        nullable=False,
        default=EntryStatus.PENDING,
        index=True,
    )

    driver_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid(as_uuid=True),
        nullable=True,
    )

    reference_id: Mapped[Optional[str]] = mapped_column(
        String(100),
        nullable=True,
        comment="External payment reference recorded at clearing",
    )

    processed_by: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)

    processed_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )

    processing_notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    order: Mapped["Order"] = relationship(  # noqa: F821
        "Order", back_populates="timeline_entries"
    )

    @property
    def is_pending(self) -> bool:
        return self.status == EntryStatus.PENDING

    @property
    def is_security_deposit(self) -> bool:
        return self.cause == SECURITY_DEPOSIT_CAUSE


@event.listens_for(PaymentTimelineEntry, "before_update")
def _guard_entry_immutability(mapper, connection, target):
    state = inspect(target)
    for attr in state.attrs:
        if attr.key in MUTABLE_ENTRY_FIELDS or attr.key == "order":
            continue
        if attr.history.has_changes():
            raise ValueError(
                f"Payment timeline entry field '{attr.key}' is immutable"
            )


class DriverEarning(BaseModel):
    """
    Compensation owed to a driver for one order leg.

    Mirrors the order's delivery or pickup fee entry, referenced by
    ``timeline_id``. A refill pays the fee once per leg: the collection
    and the redelivery each earn it.
    """

    __tablename__ = "driver_earnings"

    order_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("orders.id", ondelete="RESTRICT"),
        nullable=False,
        index=True,
    )

    driver_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("parties.id", ondelete="RESTRICT"),
        nullable=False,
        index=True,
    )

    timeline_id: Mapped[Optional[str]] = mapped_column(
        String(64),
        nullable=True,
        index=True,
        comment="Fee entry this earning settles against",
    )

    leg: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=1,
        comment="Handoff leg the earning covers, counted from 1",
    )

    amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)

    status: Mapped[EarningStatus] = mapped_column(
        enum_type(EarningStatus, "earning_status"),
        nullable=False,
        default=EarningStatus.PENDING,
    )

    paid_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )

    order: Mapped["Order"] = relationship(  # noqa: F821
        "Order", back_populates="driver_earnings"
    )
