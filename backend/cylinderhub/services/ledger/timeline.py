"""
Payment timeline ledger.

Entries are appended with a fresh ``timeline_id`` and never deleted.
Clearing is a conditional UPDATE on ``status = 'pending'``, so two
concurrent clears of the same entry cannot both succeed.
"""

import uuid
from decimal import Decimal
from typing import Iterable, Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from cylinderhub.core.exceptions import AlreadyCleared, EntryNotFound
from cylinderhub.core.logging import get_logger
from cylinderhub.database.base import utcnow
from cylinderhub.database.models import (
    DriverEarning,
    EarningStatus,
    EntryStatus,
    LiabilityType,
    Order,
    Party,
    PaymentTimelineEntry,
    TimelineEntryType,
)
from cylinderhub.services.ledger.projection import (
    MirrorRow,
    build_mirror_row,
    is_entry_visible,
    resolve_person,
)

logger = get_logger(__name__)

FEE_ENTRY_TYPES = frozenset({TimelineEntryType.DELIVERY_FEE, TimelineEntryType.PICKUP_FEE})
# Entry types that add up to the order's grand total; refunds are owed back.
CHARGE_ENTRY_TYPES = frozenset(
    {
        TimelineEntryType.SALE,
        TimelineEntryType.DELIVERY_FEE,
        TimelineEntryType.PICKUP_FEE,
        TimelineEntryType.OTHER,
    }
)


def new_timeline_id() -> str:
    return uuid.uuid4().hex


class PaymentTimelineLedger:
    """
    Append and clear per-order ledger entries.

    Entries written or cleared through this instance are remembered in
    ``touched`` so the caller can push them to the mirror after commit.
    """

    def __init__(self, session: AsyncSession):
        self.session = session
        self.touched: dict[str, PaymentTimelineEntry] = {}

    def append_entry(
        self,
        order: Order,
        entry_type: TimelineEntryType,
        cause: str,
        amount: Decimal,
        liability_type: LiabilityType = LiabilityType.REVENUE,
        driver_id: Optional[uuid.UUID] = None,
    ) -> PaymentTimelineEntry:
        """Append a pending entry to the order's timeline."""
        entry = PaymentTimelineEntry(
            timeline_id=new_timeline_id(),
            sequence=len(order.timeline_entries) + 1,
            entry_type=entry_type,
            cause=cause,
            amount=amount,
            liability_type=liability_type,
            payment_method=order.payment_method,
            status=EntryStatus.PENDING,
            driver_id=driver_id,
            created_at=utcnow(),
        )
        order.timeline_entries.append(entry)
        self.touched[entry.timeline_id] = entry

        logger.info(
            "Ledger entry appended",
            order_number=order.order_number,
            timeline_id=entry.timeline_id,
            entry_type=entry_type.value,
            cause=cause,
            amount=str(amount),
        )
        return entry

    async def get_entry(self, timeline_id: str) -> PaymentTimelineEntry:
        entry = await self.session.scalar(
            select(PaymentTimelineEntry).where(PaymentTimelineEntry.timeline_id == timeline_id)
        )
        if entry is None:
            raise EntryNotFound(
                f"Ledger entry {timeline_id} not found",
                timeline_id=timeline_id,
            )
        return entry

    async def clear(
        self,
        timeline_id: str,
        processed_by: str,
        reference_id: Optional[str] = None,
        notes: Optional[str] = None,
    ) -> PaymentTimelineEntry:
        """
        Mark a pending entry completed.

        Raises:
            EntryNotFound: If no entry has this timeline id
            AlreadyCleared: If the entry is not pending
        """
        entry = await self.get_entry(timeline_id)

        values = {
            "status": EntryStatus.COMPLETED,
            "processed_by": processed_by,
            "processed_at": utcnow(),
        }
        if reference_id:
            values["reference_id"] = reference_id
        if notes:
            values["processing_notes"] = notes

        result = await self.session.execute(
            update(PaymentTimelineEntry)
            .where(
                PaymentTimelineEntry.timeline_id == timeline_id,
                PaymentTimelineEntry.status == EntryStatus.PENDING,
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            logger.warning("Ledger entry already cleared", timeline_id=timeline_id)
            raise AlreadyCleared(
                f"Ledger entry {timeline_id} is not pending",
                timeline_id=timeline_id,
            )

        await self.session.refresh(entry)
        if entry.entry_type in FEE_ENTRY_TYPES:
            await self._settle_earnings(entry)

        self.touched[entry.timeline_id] = entry
        logger.info(
            "Ledger entry cleared",
            timeline_id=timeline_id,
            processed_by=processed_by,
            reference_id=entry.reference_id,
        )
        return entry

    async def _settle_earnings(self, entry: PaymentTimelineEntry) -> None:
        result = await self.session.execute(
            update(DriverEarning)
            .where(
                DriverEarning.timeline_id == entry.timeline_id,
                DriverEarning.status == EarningStatus.PENDING,
            )
            .values(status=EarningStatus.PAID, paid_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        if result.rowcount:
            logger.info(
                "Driver earning settled",
                timeline_id=entry.timeline_id,
                earnings=result.rowcount,
            )

    def add_earning(
        self,
        order: Order,
        driver_id: uuid.UUID,
        fee_entry: PaymentTimelineEntry,
        leg: int = 1,
    ) -> Optional[DriverEarning]:
        """
        Record the driver's share of a fee entry for one handoff leg.

        One earning per fee entry and leg: assigning the same leg again does
        not add another.
        """
        if any(
            e.timeline_id == fee_entry.timeline_id and e.leg == leg
            for e in order.driver_earnings
        ):
            return None

        earning = DriverEarning(
            driver_id=driver_id,
            timeline_id=fee_entry.timeline_id,
            leg=leg,
            amount=fee_entry.amount,
            status=EarningStatus.PENDING,
        )
        order.driver_earnings.append(earning)
        logger.info(
            "Driver earning recorded",
            order_number=order.order_number,
            driver_id=str(driver_id),
            amount=str(fee_entry.amount),
            leg=leg,
        )
        return earning

    @staticmethod
    def fee_entry(order: Order) -> Optional[PaymentTimelineEntry]:
        for entry in order.timeline_entries:
            if entry.entry_type in FEE_ENTRY_TYPES:
                return entry
        return None

    @staticmethod
    def charged_total(order: Order) -> Decimal:
        """Sum of pending and completed charge entries on an order."""
        return sum(
            (e.amount for e in order.timeline_entries if e.entry_type in CHARGE_ENTRY_TYPES),
            Decimal("0"),
        )

    async def mirror_rows(
        self,
        entries: Optional[Iterable[PaymentTimelineEntry]] = None,
    ) -> list[MirrorRow]:
        """
        Project entries to mirror rows, resolving counterparties.

        With no argument, projects the whole ledger.
        """
        await self.session.flush()
        if entries is None:
            result = await self.session.execute(
                select(PaymentTimelineEntry).order_by(
                    PaymentTimelineEntry.created_at, PaymentTimelineEntry.sequence
                )
            )
            entries = list(result.scalars())
        else:
            entries = list(entries)
        if not entries:
            return []

        order_ids = {e.order_id for e in entries}
        orders = {}
        if order_ids:
            result = await self.session.execute(select(Order).where(Order.id.in_(order_ids)))
            orders = {o.id: o for o in result.scalars()}

        party_ids = set()
        for order in orders.values():
            party_ids.update(p for p in (order.buyer_id, order.seller_id, order.driver_id) if p)
        party_ids.update(e.driver_id for e in entries if e.driver_id)
        parties = {}
        if party_ids:
            result = await self.session.execute(select(Party).where(Party.id.in_(party_ids)))
            parties = {p.id: p for p in result.scalars()}

        rows = []
        for entry in entries:
            order = orders.get(entry.order_id)
            if order is None or not is_entry_visible(entry, order):
                continue
            rows.append(build_mirror_row(entry, order, resolve_person(entry, order, parties)))
        return rows
