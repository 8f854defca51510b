"""
Order Pydantic schemas for API request/response validation.

Covers buyer order placement, refill and return requests, driver handoff
actions, seller and admin dispatch, and the order detail response with
pricing, status history, projected payment timeline and driver earnings.
"""

from datetime import datetime
from decimal import Decimal
from typing import Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from cylinderhub.database.models import (
    CylinderSize,
    EarningStatus,
    EntryStatus,
    LiabilityType,
    OrderStatus,
    OrderType,
    PaymentMethod,
    TimelineEntryType,
)
from cylinderhub.services.ledger.projection import is_entry_visible


class AddOnSelection(BaseModel):
    """One add-on line picked from the warehouse catalog."""

    model_config = ConfigDict(str_strip_whitespace=True)

    title: str = Field(..., min_length=1, max_length=100, description="Catalog title")
    quantity: int = Field(default=1, ge=1, le=20, description="Units of the add-on")


class LocationMixin(BaseModel):
    latitude: Optional[float] = Field(None, ge=-90, le=90, description="Latitude")
    longitude: Optional[float] = Field(None, ge=-180, le=180, description="Longitude")

    @model_validator(mode="after")
    def validate_coordinates_pair(self) -> "LocationMixin":
        if (self.latitude is None) != (self.longitude is None):
            raise ValueError("latitude and longitude must be given together")
        return self


class OrderCreateRequest(LocationMixin):
    """Buyer request to order new cylinders."""

    model_config = ConfigDict(str_strip_whitespace=True)

    warehouse_id: UUID = Field(..., description="Warehouse to order from")
    cylinder_size: CylinderSize = Field(..., description="Cylinder size label")
    quantity: int = Field(default=1, ge=1, le=50, description="Number of cylinders")
    is_urgent: bool = Field(default=False, description="Urgent delivery")
    add_ons: list[AddOnSelection] = Field(default_factory=list, max_length=20)
    payment_method: PaymentMethod = Field(..., description="Payment method")
    delivery_address: Optional[str] = Field(None, max_length=500)

    @field_validator("add_ons")
    @classmethod
    def validate_unique_add_ons(cls, v: list[AddOnSelection]) -> list[AddOnSelection]:
        titles = [a.title.lower() for a in v]
        if len(titles) != len(set(titles)):
            raise ValueError("Add-ons must not repeat")
        return v


class RefillRequest(LocationMixin):
    """Buyer request to refill a cylinder they own."""

    cylinder_id: UUID = Field(..., description="Cylinder to refill")
    payment_method: PaymentMethod = Field(default=PaymentMethod.COD)


class ReturnAndRateRequest(LocationMixin):
    """Buyer request to return a cylinder and rate the order it came with."""

    model_config = ConfigDict(str_strip_whitespace=True)

    cylinder_id: UUID = Field(..., description="Cylinder to return")
    rating: int = Field(..., ge=1, le=5, description="Rating from 1 to 5")
    comment: Optional[str] = Field(None, max_length=1000)


class CylinderVerification(BaseModel):
    """A physical cylinder the driver checked at pickup."""

    model_config = ConfigDict(str_strip_whitespace=True)

    serial_number: str = Field(..., min_length=1, max_length=64)
    tare_weight: Optional[float] = Field(None, gt=0)
    gross_weight: Optional[float] = Field(None, gt=0)


class AcceptOrderRequest(BaseModel):
    cylinders: list[CylinderVerification] = Field(..., min_length=1, max_length=50)


class ScanQRRequest(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    qr_code: str = Field(..., min_length=1, max_length=255, description="Scanned token")


class AssignDriverRequest(BaseModel):
    driver_id: UUID = Field(..., description="Driver to assign")


class CancelOrderRequest(BaseModel):
    reason: Optional[str] = Field(None, max_length=500)


class StatusHistoryResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    sequence: int
    from_status: Optional[OrderStatus]
    status: OrderStatus
    event: str
    actor_id: Optional[UUID]
    note: Optional[str]
    created_at: datetime


class TimelineEntryResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    timeline_id: str
    entry_type: TimelineEntryType
    cause: str
    amount: Decimal
    liability_type: LiabilityType
    payment_method: PaymentMethod
    status: EntryStatus
    driver_id: Optional[UUID]
    reference_id: Optional[str]
    processed_by: Optional[str]
    processed_at: Optional[datetime]
    processing_notes: Optional[str]
    created_at: datetime


class DriverEarningResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    driver_id: UUID
    timeline_id: str
    leg: int
    amount: Decimal
    status: EarningStatus
    paid_at: Optional[datetime]


class OrderPricingResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    cylinder_price: Decimal
    quantity: int
    security_charges: Decimal
    delivery_charges: Decimal
    urgent_delivery_fee: Decimal
    add_ons_total: Decimal
    subtotal: Decimal
    grand_total: Decimal


class OrderResponse(BaseModel):
    """Order detail with projected ledger."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    order_number: str
    order_type: OrderType
    status: OrderStatus
    cylinder_size: CylinderSize
    quantity: int
    buyer_id: UUID
    seller_id: UUID
    driver_id: Optional[UUID]
    warehouse_id: UUID
    is_urgent: bool
    payment_method: PaymentMethod
    transaction_id: Optional[str]
    delivery_address: Optional[str]
    pricing: OrderPricingResponse
    add_ons: list[dict]
    status_history: list[StatusHistoryResponse]
    payment_timeline: list[TimelineEntryResponse]
    driver_earnings: list[DriverEarningResponse]
    created_at: datetime
    updated_at: datetime


class QRCodeResponse(BaseModel):
    order_id: UUID
    order_number: str
    status: OrderStatus
    qr_code: str
    qr_code_data_url: str = Field(..., description="PNG rendering of qr_code as a data URL")


class OrderCreatedResponse(BaseModel):
    order: OrderResponse
    driver_assigned: bool = Field(..., description="Whether dispatch found a driver")


def build_order_response(order) -> OrderResponse:
    """Serialize an order, exposing only the visible part of its timeline."""
    return OrderResponse(
        id=order.id,
        order_number=order.order_number,
        order_type=order.order_type,
        status=order.status,
        cylinder_size=order.cylinder_size,
        quantity=order.quantity,
        buyer_id=order.buyer_id,
        seller_id=order.seller_id,
        driver_id=order.driver_id,
        warehouse_id=order.warehouse_id,
        is_urgent=order.is_urgent,
        payment_method=order.payment_method,
        transaction_id=order.transaction_id,
        delivery_address=order.delivery_address,
        pricing=OrderPricingResponse.model_validate(order),
        add_ons=list(order.add_ons or []),
        status_history=[
            StatusHistoryResponse.model_validate(h) for h in order.status_history
        ],
        payment_timeline=[
            TimelineEntryResponse.model_validate(e)
            for e in order.timeline_entries
            if is_entry_visible(e, order)
        ],
        driver_earnings=[
            DriverEarningResponse.model_validate(e) for e in order.driver_earnings
        ],
        created_at=order.created_at,
        updated_at=order.updated_at,
    )
