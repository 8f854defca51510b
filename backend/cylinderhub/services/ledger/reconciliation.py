"""
Finance operations on the payment ledger and its external mirror.

The ledger is authoritative. From the mirror only a ``completed`` status
(with its reference id) is taken back, and only for an entry that is still
pending. Amounts, types and causes edited in the sheet are overwritten by
the next rebuild.

Callers serialize ``sync`` and ``rebuild`` with ``MirrorSyncLock``.
"""

from dataclasses import dataclass
from decimal import Decimal
from typing import Mapping, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from cylinderhub.core.exceptions import AlreadyCleared
from cylinderhub.core.logging import get_logger, log_performance
from cylinderhub.database.models import EntryStatus, Order, Party, PaymentTimelineEntry
from cylinderhub.services.base import TransactionalService
from cylinderhub.services.events.publisher import EventPublisher
from cylinderhub.services.ledger.projection import (
    PersonInfo,
    is_entry_visible,
    resolve_person,
)
from cylinderhub.services.mirror.service import ExternalLedgerMirror, MirrorReport

logger = get_logger(__name__)

MIRROR_SYNC_ACTOR = "mirror-sync"
MIRROR_WEBHOOK_ACTOR = "mirror-webhook"


@dataclass(frozen=True)
class LedgerListing:
    entry: PaymentTimelineEntry
    order: Order
    person: PersonInfo


@dataclass(frozen=True)
class SyncResult:
    rows_pulled: int
    entries_cleared: list[str]
    pending_rows: int
    completed_rows: int


class PaymentLedgerService(TransactionalService):
    """Admin clearing, listing and mirror reconciliation."""

    def __init__(
        self,
        session: AsyncSession,
        mirror: ExternalLedgerMirror,
        publisher: Optional[EventPublisher] = None,
    ):
        super().__init__(session, mirror, publisher)

    async def clear_entry(
        self,
        timeline_id: str,
        processed_by: str,
        reference_id: Optional[str] = None,
        notes: Optional[str] = None,
    ) -> PaymentTimelineEntry:
        """
        Mark one entry completed.

        Raises:
            EntryNotFound: If no entry has this timeline id
            AlreadyCleared: If the entry is already completed
        """
        entry = await self.ledger.clear(
            timeline_id,
            processed_by=processed_by,
            reference_id=reference_id,
            notes=notes,
        )
        self.emit(
            "payment.cleared",
            {
                "timeline_id": entry.timeline_id,
                "order_id": str(entry.order_id),
                "amount": str(entry.amount),
                "reference_id": entry.reference_id,
            },
            audiences=["admin"],
        )
        return entry

    async def list_entries(
        self,
        status: Optional[EntryStatus] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> tuple[list[LedgerListing], int, Decimal, Decimal]:
        """
        Visible ledger entries, newest first.

        Returns:
            Page of listings, total visible count, pending and completed sums
        """
        stmt = (
            select(PaymentTimelineEntry, Order)
            .join(Order, PaymentTimelineEntry.order_id == Order.id)
            .order_by(PaymentTimelineEntry.created_at.desc(), PaymentTimelineEntry.sequence)
        )
        if status is not None:
            stmt = stmt.where(PaymentTimelineEntry.status == status)

        result = await self.session.execute(stmt)
        visible = [(e, o) for e, o in result.all() if is_entry_visible(e, o)]

        pending_total = sum(
            (e.amount for e, _ in visible if e.status == EntryStatus.PENDING), Decimal("0")
        )
        completed_total = sum(
            (e.amount for e, _ in visible if e.status == EntryStatus.COMPLETED), Decimal("0")
        )

        page = visible[offset : offset + limit]
        parties = await self._parties_for(page)
        listings = [
            LedgerListing(entry=e, order=o, person=resolve_person(e, o, parties))
            for e, o in page
        ]
        return listings, len(visible), pending_total, completed_total

    async def get_listing(self, timeline_id: str) -> LedgerListing:
        """
        One entry with its order and counterparty, whether visible or not.

        Raises:
            EntryNotFound: If no entry has this timeline id
        """
        entry = await self.ledger.get_entry(timeline_id)
        order = await self.session.get(Order, entry.order_id)
        parties = await self._parties_for([(entry, order)])
        person = resolve_person(entry, order, parties)
        return LedgerListing(entry=entry, order=order, person=person)

    async def _parties_for(self, pairs) -> dict:
        party_ids = set()
        for entry, order in pairs:
            party_ids.update(
                p for p in (order.buyer_id, order.seller_id, order.driver_id, entry.driver_id) if p
            )
        if not party_ids:
            return {}
        rows = await self.session.execute(select(Party).where(Party.id.in_(party_ids)))
        return {p.id: p for p in rows.scalars()}

    async def apply_reports(self, reports: Mapping[str, MirrorReport]) -> list[str]:
        """
        Clear pending entries the sheet reports as completed.

        Unknown System IDs and attempts to reopen a completed entry are
        ignored.
        """
        if not reports:
            return []

        result = await self.session.execute(
            select(PaymentTimelineEntry).where(
                PaymentTimelineEntry.timeline_id.in_(list(reports)),
                PaymentTimelineEntry.status == EntryStatus.PENDING,
            )
        )
        pending = {e.timeline_id: e for e in result.scalars()}

        cleared = []
        for timeline_id, report in reports.items():
            if not report.is_completed or timeline_id not in pending:
                continue
            try:
                await self.clear_entry(
                    timeline_id,
                    processed_by=MIRROR_SYNC_ACTOR,
                    reference_id=report.reference_id,
                )
            except AlreadyCleared:
                continue
            cleared.append(timeline_id)

        unknown = set(reports) - set(pending)
        if unknown:
            logger.debug("Mirror rows without a pending ledger entry", count=len(unknown))
        return cleared

    async def rebuild(self) -> dict[str, int]:
        """Regenerate both mirror views from the ledger."""
        rows = await self.ledger.mirror_rows()
        with log_performance(logger, "mirror_rebuild", rows=len(rows)):
            return await self.mirror.rebuild(rows)

    async def sync(self) -> SyncResult:
        """
        Pull the mirror, apply completions, commit, then rebuild.

        Raises:
            MirrorSyncFailure: If the mirror cannot be read or written. Clears
                applied before a failed rebuild stay committed.
        """
        reports = await self.mirror.pull()
        cleared = await self.apply_reports(reports)
        await self.commit(push_mirror=False)

        counts = await self.rebuild()
        logger.info(
            "Mirror sync complete",
            rows_pulled=len(reports),
            entries_cleared=len(cleared),
            **counts,
        )
        return SyncResult(
            rows_pulled=len(reports),
            entries_cleared=cleared,
            pending_rows=counts["pending"],
            completed_rows=counts["completed"],
        )

    async def apply_webhook(
        self,
        timeline_id: str,
        status: str,
        reference_id: Optional[str] = None,
    ) -> tuple[PaymentTimelineEntry, bool]:
        """
        Reconcile a single edited sheet row.

        The ledger's version of the row is pushed back either way.

        Raises:
            EntryNotFound: If the System ID is not in the ledger
        """
        entry = await self.ledger.get_entry(timeline_id)
        report = MirrorReport(timeline_id=timeline_id, status=status, reference_id=reference_id)

        changed = False
        if report.is_completed and entry.is_pending:
            try:
                entry = await self.clear_entry(
                    timeline_id,
                    processed_by=MIRROR_WEBHOOK_ACTOR,
                    reference_id=reference_id,
                )
                changed = True
            except AlreadyCleared:
                entry = await self.ledger.get_entry(timeline_id)
                await self.session.refresh(entry)
        elif not report.is_completed and not entry.is_pending:
            logger.info(
                "Mirror tried to reopen a completed entry, ledger wins",
                timeline_id=timeline_id,
            )

        self.ledger.touched[entry.timeline_id] = entry
        return entry, changed


async def run_mirror_sync(
    session_factory: async_sessionmaker[AsyncSession],
    mirror: ExternalLedgerMirror,
    publisher: Optional[EventPublisher] = None,
) -> SyncResult:
    """One reconciliation pass in its own session, for the heartbeat."""
    async with session_factory() as session:
        service = PaymentLedgerService(session, mirror, publisher)
        try:
            return await service.sync()
        except Exception:
            await service.rollback()
            raise
