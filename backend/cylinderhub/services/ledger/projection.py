"""
Read-side projection of the payment timeline.

``is_entry_visible`` is the one place that decides whether an entry shows
up in reporting views (mirror rows, admin listings, order detail). Storage
is never filtered.
"""

import uuid
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Mapping, Optional

from cylinderhub.database.models import (
    EntryStatus,
    Order,
    OrderType,
    Party,
    PaymentTimelineEntry,
    TimelineEntryType,
)

LEDGER_HEADERS: tuple[str, ...] = (
    "Date",
    "Order ID",
    "Person",
    "Person Type",
    "Phone",
    "Tx Type",
    "Liability",
    "Details",
    "Amount",
    "Status",
    "Reference ID",
    "System ID",
)

DATE_FORMAT = "%Y-%m-%d %H:%M"


def is_entry_visible(entry: PaymentTimelineEntry, order: Order) -> bool:
    """
    Whether an entry is exposed to reporting views.

    Security deposits and delivery fees are held back unless the order is
    a return.
    """
    held_back = entry.is_security_deposit or entry.entry_type == TimelineEntryType.DELIVERY_FEE
    return not held_back or order.order_type == OrderType.RETURN


@dataclass(frozen=True)
class PersonInfo:
    name: str
    person_type: str
    phone: str = ""


UNKNOWN_PERSON = PersonInfo(name="Unknown", person_type="other")


def resolve_person(
    entry: PaymentTimelineEntry,
    order: Order,
    parties: Mapping[uuid.UUID, Party],
) -> PersonInfo:
    """
    Counterparty shown on a ledger row.

    Fees are owed to the driver, sales to the seller and refunds to the buyer.
    """
    if entry.entry_type in (TimelineEntryType.DELIVERY_FEE, TimelineEntryType.PICKUP_FEE):
        party_id, person_type = entry.driver_id or order.driver_id, "driver"
    elif entry.entry_type == TimelineEntryType.SALE:
        party_id, person_type = order.seller_id, "seller"
    elif entry.entry_type == TimelineEntryType.REFUND:
        party_id, person_type = order.buyer_id, "buyer"
    else:
        return UNKNOWN_PERSON

    party = parties.get(party_id) if party_id is not None else None
    if party is None:
        return PersonInfo(name="Unknown", person_type=person_type)
    return PersonInfo(
        name=party.display_name,
        person_type=person_type,
        phone=party.phone or "",
    )


@dataclass(frozen=True)
class MirrorRow:
    """One ledger entry as laid out in the external sheet."""

    date: str
    order_number: str
    person: str
    person_type: str
    phone: str
    tx_type: str
    liability: str
    details: str
    amount: str
    status: str
    reference_id: str
    timeline_id: str

    def to_values(self) -> list[str]:
        return [
            self.date,
            self.order_number,
            self.person,
            self.person_type,
            self.phone,
            self.tx_type,
            self.liability,
            self.details,
            self.amount,
            self.status,
            self.reference_id,
            self.timeline_id,
        ]

    @classmethod
    def from_values(cls, values: list[str]) -> "MirrorRow":
        padded = [str(v) if v is not None else "" for v in values]
        padded += [""] * (len(LEDGER_HEADERS) - len(padded))
        return cls(*padded[: len(LEDGER_HEADERS)])

    @property
    def is_completed(self) -> bool:
        return self.status.strip().lower() == EntryStatus.COMPLETED.value


def _format_amount(amount: Decimal) -> str:
    return f"{amount:.2f}"


def _format_date(value: Optional[datetime]) -> str:
    return value.strftime(DATE_FORMAT) if value is not None else ""


def build_mirror_row(
    entry: PaymentTimelineEntry,
    order: Order,
    person: PersonInfo,
) -> MirrorRow:
    return MirrorRow(
        date=_format_date(entry.created_at),
        order_number=order.order_number,
        person=person.name,
        person_type=person.person_type,
        phone=person.phone,
        tx_type=entry.entry_type.value,
        liability=entry.liability_type.value,
        details=entry.processing_notes or entry.cause,
        amount=_format_amount(entry.amount),
        status=entry.status.value,
        reference_id=entry.reference_id or "",
        timeline_id=entry.timeline_id,
    )
