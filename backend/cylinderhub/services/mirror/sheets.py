"""
Google Sheets adapter for the external ledger mirror.

gspread is synchronous, so every call runs in a worker thread. Any API or
transport failure is reported as MirrorSyncFailure; the ledger never
depends on the sheet being reachable.
"""

import asyncio
from typing import Any, Callable, Optional, Sequence

import gspread
from google.auth.exceptions import GoogleAuthError

from cylinderhub.core.exceptions import MirrorSyncFailure
from cylinderhub.core.logging import get_logger
from cylinderhub.services.ledger.projection import LEDGER_HEADERS, MirrorRow
from cylinderhub.services.mirror.port import LedgerMirrorPort, MirrorView

logger = get_logger(__name__)

SYSTEM_ID_COLUMN = len(LEDGER_HEADERS)


def _last_column() -> str:
    return chr(ord("A") + len(LEDGER_HEADERS) - 1)


class GoogleSheetsMirror(LedgerMirrorPort):
    """
    Stores each view in its own worksheet of one spreadsheet.

    Row 1 of every worksheet holds ``LEDGER_HEADERS``; data starts on row 2.
    Rows are located by the System ID column.
    """

    def __init__(
        self,
        spreadsheet_id: str,
        credentials_file: Optional[str] = None,
        pending_worksheet: str = "Live Ledger",
        completed_worksheet: str = "Completed History",
        client: Optional[gspread.Client] = None,
    ):
        self.spreadsheet_id = spreadsheet_id
        self.credentials_file = credentials_file
        self.worksheet_titles = {
            MirrorView.PENDING: pending_worksheet,
            MirrorView.COMPLETED: completed_worksheet,
        }
        self._client = client
        self._spreadsheet: Optional[gspread.Spreadsheet] = None
        self._worksheets: dict[MirrorView, gspread.Worksheet] = {}

    def _open(self) -> gspread.Spreadsheet:
        if self._spreadsheet is None:
            if self._client is None:
                if self.credentials_file:
                    self._client = gspread.service_account(filename=self.credentials_file)
                else:
                    self._client = gspread.service_account()
            self._spreadsheet = self._client.open_by_key(self.spreadsheet_id)
        return self._spreadsheet

    def _worksheet(self, view: MirrorView) -> gspread.Worksheet:
        worksheet = self._worksheets.get(view)
        if worksheet is not None:
            return worksheet

        spreadsheet = self._open()
        title = self.worksheet_titles[view]
        try:
            worksheet = spreadsheet.worksheet(title)
        except gspread.WorksheetNotFound:
            worksheet = spreadsheet.add_worksheet(
                title=title, rows=1000, cols=len(LEDGER_HEADERS)
            )
            logger.info("Mirror worksheet created", worksheet=title)

        header = worksheet.row_values(1)
        if header[: len(LEDGER_HEADERS)] != list(LEDGER_HEADERS):
            worksheet.update(
                [list(LEDGER_HEADERS)],
                f"A1:{_last_column()}1",
                value_input_option="RAW",
            )
        self._worksheets[view] = worksheet
        return worksheet

    async def _call(self, operation: str, func: Callable[..., Any], *args: Any) -> Any:
        try:
            return await asyncio.to_thread(func, *args)
        except (gspread.exceptions.GSpreadException, GoogleAuthError, OSError) as e:
            logger.error(
                "Mirror sheet operation failed",
                operation=operation,
                spreadsheet_id=self.spreadsheet_id,
                error=str(e),
                error_type=type(e).__name__,
            )
            raise MirrorSyncFailure(
                f"Google Sheets {operation} failed: {e}",
                operation=operation,
            ) from e

    def _find_row_index(self, worksheet: gspread.Worksheet, timeline_id: str) -> Optional[int]:
        ids = worksheet.col_values(SYSTEM_ID_COLUMN)
        for index, value in enumerate(ids[1:], start=2):
            if value == timeline_id:
                return index
        return None

    def _upsert(self, view: MirrorView, row: MirrorRow) -> None:
        worksheet = self._worksheet(view)
        index = self._find_row_index(worksheet, row.timeline_id)
        if index is None:
            worksheet.append_row(row.to_values(), value_input_option="RAW")
        else:
            worksheet.update(
                [row.to_values()],
                f"A{index}:{_last_column()}{index}",
                value_input_option="RAW",
            )

    def _delete(self, view: MirrorView, timeline_id: str) -> bool:
        worksheet = self._worksheet(view)
        index = self._find_row_index(worksheet, timeline_id)
        if index is None:
            return False
        worksheet.delete_rows(index)
        return True

    def _read(self, view: MirrorView) -> list[MirrorRow]:
        values = self._worksheet(view).get_all_values()
        return [MirrorRow.from_values(v) for v in values[1:] if any(cell for cell in v)]

    def _replace(self, view: MirrorView, rows: Sequence[MirrorRow]) -> None:
        worksheet = self._worksheet(view)
        worksheet.clear()
        worksheet.update(
            [list(LEDGER_HEADERS)] + [r.to_values() for r in rows],
            "A1",
            value_input_option="RAW",
        )

    async def upsert_row(self, view: MirrorView, row: MirrorRow) -> None:
        await self._call("upsert", self._upsert, view, row)

    async def delete_row(self, view: MirrorView, timeline_id: str) -> bool:
        return await self._call("delete", self._delete, view, timeline_id)

    async def read_rows(self, view: MirrorView) -> list[MirrorRow]:
        return await self._call("read", self._read, view)

    async def replace_view(self, view: MirrorView, rows: Sequence[MirrorRow]) -> None:
        await self._call("replace", self._replace, view, rows)
