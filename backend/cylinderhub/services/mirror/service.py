"""
External ledger mirror: push, pull and rebuild over a storage port.

Pushes are scheduled as background tasks after the owning transaction has
committed and are never awaited on the request path. A failed push is only
logged; the next reconciliation pass rebuilds the sheet from the ledger.
"""

import asyncio
from dataclasses import dataclass
from typing import Iterable, Optional, Sequence

from cylinderhub.core.exceptions import MirrorSyncFailure
from cylinderhub.core.logging import get_logger
from cylinderhub.services.ledger.projection import MirrorRow
from cylinderhub.services.mirror.port import LedgerMirrorPort, MirrorView

logger = get_logger(__name__)


@dataclass(frozen=True)
class MirrorReport:
    """What the sheet currently says about one ledger entry."""

    timeline_id: str
    status: str
    reference_id: Optional[str]

    @property
    def is_completed(self) -> bool:
        return MirrorView.for_status(self.status) == MirrorView.COMPLETED


class ExternalLedgerMirror:
    """Keeps the pending and completed sheet views in step with the ledger."""

    def __init__(self, port: LedgerMirrorPort):
        self.port = port
        self._tasks: set[asyncio.Task] = set()

    async def push_entry(self, row: MirrorRow) -> None:
        """
        Write ``row`` into the view matching its status.

        The row is removed from the other view first, so an entry is never
        listed in both.
        """
        target = MirrorView.for_status(row.status)
        moved = await self.port.delete_row(target.other, row.timeline_id)
        await self.port.upsert_row(target, row)
        logger.debug(
            "Mirror row pushed",
            timeline_id=row.timeline_id,
            view=target.value,
            moved=moved,
        )

    async def push_rows(self, rows: Iterable[MirrorRow]) -> int:
        """Push rows one by one, logging failures. Returns rows pushed."""
        pushed = 0
        for row in rows:
            try:
                await self.push_entry(row)
                pushed += 1
            except MirrorSyncFailure as e:
                logger.warning(
                    "Mirror push failed, will heal on next sync",
                    timeline_id=row.timeline_id,
                    error=e.message,
                )
            except Exception as e:
                logger.error(
                    "Unexpected mirror push error",
                    timeline_id=row.timeline_id,
                    error=str(e),
                    error_type=type(e).__name__,
                    exc_info=True,
                )
        return pushed

    def schedule_push(self, rows: Sequence[MirrorRow]) -> Optional[asyncio.Task]:
        """Push rows in the background and return the task."""
        if not rows:
            return None
        task = asyncio.create_task(self.push_rows(list(rows)))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def drain(self) -> None:
        """Wait for scheduled pushes. Used at shutdown and in tests."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    @property
    def pending_pushes(self) -> int:
        return len(self._tasks)

    async def pull(self) -> dict[str, MirrorReport]:
        """
        Read both views and report status and reference per System ID.

        When a System ID appears in both views the completed row wins.

        Raises:
            MirrorSyncFailure: If the store cannot be read
        """
        reports: dict[str, MirrorReport] = {}
        for view in (MirrorView.PENDING, MirrorView.COMPLETED):
            for row in await self.port.read_rows(view):
                timeline_id = row.timeline_id.strip()
                if not timeline_id:
                    continue
                existing = reports.get(timeline_id)
                if existing is not None and existing.is_completed:
                    continue
                status = row.status.strip().lower()
                if view == MirrorView.COMPLETED and not status:
                    status = MirrorView.COMPLETED.value
                reports[timeline_id] = MirrorReport(
                    timeline_id=timeline_id,
                    status=status,
                    reference_id=row.reference_id.strip() or None,
                )
        logger.info("Mirror pulled", rows=len(reports))
        return reports

    async def rebuild(self, rows: Sequence[MirrorRow]) -> dict[str, int]:
        """
        Overwrite both views with ``rows``, split by status.

        Raises:
            MirrorSyncFailure: If the store cannot be written
        """
        partitions: dict[MirrorView, list[MirrorRow]] = {view: [] for view in MirrorView}
        for row in rows:
            partitions[MirrorView.for_status(row.status)].append(row)

        for view, view_rows in partitions.items():
            await self.port.replace_view(view, view_rows)

        counts = {view.value: len(view_rows) for view, view_rows in partitions.items()}
        logger.info("Mirror rebuilt", **counts)
        return counts
