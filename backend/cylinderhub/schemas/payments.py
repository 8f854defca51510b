"""
Payment ledger Pydantic schemas for admin clearing and mirror reconciliation.
"""

from datetime import datetime
from decimal import Decimal
from typing import Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator

from cylinderhub.database.models import (
    EntryStatus,
    LiabilityType,
    PaymentMethod,
    TimelineEntryType,
)


class ClearEntryRequest(BaseModel):
    """Admin request to mark a ledger entry paid."""

    model_config = ConfigDict(str_strip_whitespace=True)

    reference_id: Optional[str] = Field(
        None,
        max_length=100,
        description="External payment reference, e.g. bank transfer id",
    )
    notes: Optional[str] = Field(None, max_length=500, description="Processing notes")


class LedgerEntryResponse(BaseModel):
    """A ledger entry as listed for finance."""

    model_config = ConfigDict(from_attributes=True)

    timeline_id: str
    order_id: UUID
    order_number: str
    entry_type: TimelineEntryType
    cause: str
    amount: Decimal
    liability_type: LiabilityType
    payment_method: PaymentMethod
    status: EntryStatus
    person: str
    person_type: str
    reference_id: Optional[str]
    processed_by: Optional[str]
    processed_at: Optional[datetime]
    created_at: datetime


class LedgerEntryListResponse(BaseModel):
    items: list[LedgerEntryResponse]
    total: int
    pending_total: Decimal
    completed_total: Decimal


class MirrorSyncResponse(BaseModel):
    """Outcome of pulling the mirror and rebuilding it."""

    rows_pulled: int
    entries_cleared: list[str]
    pending_rows: int
    completed_rows: int


class MirrorRebuildResponse(BaseModel):
    pending_rows: int
    completed_rows: int


class MirrorWebhookRequest(BaseModel):
    """Single-row change pushed by the sheet's edit trigger."""

    model_config = ConfigDict(populate_by_name=True, str_strip_whitespace=True)

    system_id: str = Field(..., alias="systemId", min_length=1, max_length=64)
    status: str = Field(..., min_length=1, max_length=32)
    reference_id: Optional[str] = Field(None, alias="referenceId", max_length=100)

    @field_validator("status")
    @classmethod
    def normalize_status(cls, v: str) -> str:
        return v.lower()


class MirrorWebhookResponse(BaseModel):
    timeline_id: str
    status: EntryStatus
    changed: bool
