"""
Party model for buyers, sellers, drivers and administrators.

Registration, login and profile management live in the external auth
service; this table mirrors the attributes the fulfillment core reads:
role, contact details for ledger rows, driver availability and the
driver's declared service zone.
"""

import enum
from decimal import Decimal
from typing import Any, Optional

from sqlalchemy import JSON, Boolean, Float, Index, Numeric, String
from sqlalchemy.orm import Mapped, mapped_column

from cylinderhub.database.base import BaseModel, enum_type


class PartyRole(str, enum.Enum):
    """Role enumeration for role-based access control."""

    BUYER = "buyer"
    SELLER = "seller"
    DRIVER = "driver"
    ADMIN = "admin"

    @classmethod
    def from_string(cls, value: str) -> "PartyRole":
        try:
            return cls(value.lower())
        except ValueError:
            raise ValueError(f"Invalid role: {value}")


class DriverStatus(str, enum.Enum):
    """Driver availability for dispatch."""

    AVAILABLE = "available"
    BUSY = "busy"
    OFFLINE = "offline"


class Party(BaseModel):
    """
    A participant in the fulfillment flow.

    Attributes:
        role: Buyer, seller, driver or admin
        full_name: Display name used in ledger rows
        phone: Contact phone used in ledger rows
        business_name: Seller trading name shown in ledger rows
        latitude / longitude: Default location (buyer address or driver base)
        driver_status: Availability, drivers only
        auto_assign_orders: Driver opted in to automatic dispatch
        zone_center_lat / zone_center_lng / zone_radius_km: Circular zone
        zone_polygon: Polygon ring as GeoJSON ``[lng, lat]`` pairs
    """

    __tablename__ = "parties"

    role: Mapped[PartyRole] = mapped_column(
        enum_type(PartyRole, "party_role"),
        nullable=False,
        index=True,
        comment="Party role",
    )

    full_name: Mapped[str] = mapped_column(
        String(200),
        nullable=False,
        comment="Display name",
    )

    phone: Mapped[Optional[str]] = mapped_column(
        String(32),
        nullable=True,
        comment="Contact phone number",
    )

    business_name: Mapped[Optional[str]] = mapped_column(
        String(200),
        nullable=True,
        comment="Seller trading name",
    )

    is_active: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        default=True,
        comment="Account active flag",
    )

    latitude: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    longitude: Mapped[Optional[float]] = mapped_column(Float, nullable=True)

    driver_status: Mapped[Optional[DriverStatus]] = mapped_column(
        enum_type(DriverStatus, "driver_status"),
        nullable=True,
        comment="Driver availability",
    )

    auto_assign_orders: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        default=False,
        comment="Driver accepts automatic dispatch",
    )

    zone_center_lat: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    zone_center_lng: Mapped[Optional[float]] = mapped_column(Float, nullable=True)

    zone_radius_km: Mapped[Optional[Decimal]] = mapped_column(
        Numeric(8, 3),
        nullable=True,
        comment="Radius of a circular service zone",
    )

    zone_polygon: Mapped[Optional[list[Any]]] = mapped_column(
        JSON,
        nullable=True,
        comment="Service zone polygon ring as [lng, lat] pairs",
    )

    __table_args__ = (
        Index("ix_parties_dispatch", "role", "driver_status", "auto_assign_orders"),
    )

    @property
    def display_name(self) -> str:
        """Name shown for the party in ledger rows."""
        return self.business_name or self.full_name

    @property
    def has_zone(self) -> bool:
        return bool(self.zone_polygon) or (
            self.zone_center_lat is not None and self.zone_center_lng is not None
        )
