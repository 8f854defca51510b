"""In-process mirror adapter for development and tests."""

import asyncio
from dataclasses import replace
from typing import Sequence

from cylinderhub.services.ledger.projection import MirrorRow
from cylinderhub.services.mirror.port import LedgerMirrorPort, MirrorView


class InMemoryMirror(LedgerMirrorPort):
    """
    Keeps both views as ordered lists.

    ``edit_row`` lets tests play the part of a finance user changing a cell.
    """

    def __init__(self):
        self._views: dict[MirrorView, list[MirrorRow]] = {view: [] for view in MirrorView}
        self._lock = asyncio.Lock()

    async def upsert_row(self, view: MirrorView, row: MirrorRow) -> None:
        async with self._lock:
            rows = self._views[view]
            for index, existing in enumerate(rows):
                if existing.timeline_id == row.timeline_id:
                    rows[index] = row
                    return
            rows.append(row)

    async def delete_row(self, view: MirrorView, timeline_id: str) -> bool:
        async with self._lock:
            rows = self._views[view]
            kept = [r for r in rows if r.timeline_id != timeline_id]
            self._views[view] = kept
            return len(kept) != len(rows)

    async def read_rows(self, view: MirrorView) -> list[MirrorRow]:
        async with self._lock:
            return list(self._views[view])

    async def replace_view(self, view: MirrorView, rows: Sequence[MirrorRow]) -> None:
        async with self._lock:
            self._views[view] = list(rows)

    def edit_row(self, view: MirrorView, timeline_id: str, **changes: str) -> None:
        rows = self._views[view]
        for index, row in enumerate(rows):
            if row.timeline_id == timeline_id:
                rows[index] = replace(row, **changes)
                return
        raise KeyError(timeline_id)
