"""
Test suite for the Google Sheets mirror adapter.

The gspread client is replaced by a fake worksheet so no network access
is needed.
"""

from unittest.mock import MagicMock

import gspread
import pytest

from cylinderhub.core.exceptions import MirrorSyncFailure
from cylinderhub.services.ledger.projection import LEDGER_HEADERS, MirrorRow
from cylinderhub.services.mirror.port import MirrorView
from cylinderhub.services.mirror.sheets import GoogleSheetsMirror


class FakeWorksheet:
    """Grid of string cells mimicking the subset of gspread.Worksheet in use."""

    def __init__(self, rows=None):
        self.rows = [list(r) for r in (rows or [])]

    def row_values(self, index):
        return list(self.rows[index - 1]) if index <= len(self.rows) else []

    def col_values(self, column):
        return [r[column - 1] if len(r) >= column else "" for r in self.rows]

    def get_all_values(self):
        return [list(r) for r in self.rows]

    def append_row(self, values, value_input_option=None):
        self.rows.append(list(values))

    def delete_rows(self, index):
        del self.rows[index - 1]

    def clear(self):
        self.rows = []

    def update(self, values, range_name, value_input_option=None):
        start = range_name.split(":")[0]
        first_row = int("".join(ch for ch in start if ch.isdigit()))
        for offset, values_row in enumerate(values):
            index = first_row - 1 + offset
            while len(self.rows) <= index:
                self.rows.append([])
            self.rows[index] = list(values_row)


def make_row(timeline_id: str, status: str = "pending") -> MirrorRow:
    values = ["2024-03-05 14:30", "48213", "Bilal Gas Co", "seller", "", "sale",
              "revenue", "Gas & Addons", "3750.00", status, "", timeline_id]
    return MirrorRow.from_values(values)


@pytest.fixture
def worksheets():
    return {
        "Live Ledger": FakeWorksheet([list(LEDGER_HEADERS)]),
        "Completed History": FakeWorksheet([list(LEDGER_HEADERS)]),
    }


@pytest.fixture
def client(worksheets):
    spreadsheet = MagicMock()

    def worksheet(title):
        if title not in worksheets:
            raise gspread.WorksheetNotFound(title)
        return worksheets[title]

    def add_worksheet(title, rows, cols):
        worksheets[title] = FakeWorksheet()
        return worksheets[title]

    spreadsheet.worksheet.side_effect = worksheet
    spreadsheet.add_worksheet.side_effect = add_worksheet
    client = MagicMock()
    client.open_by_key.return_value = spreadsheet
    return client


@pytest.fixture
def sheets(client) -> GoogleSheetsMirror:
    return GoogleSheetsMirror("sheet-123", client=client)


class TestGoogleSheetsMirror:
    async def test_upsert_appends_then_updates(self, sheets, worksheets):
        await sheets.upsert_row(MirrorView.PENDING, make_row("t1"))
        await sheets.upsert_row(MirrorView.PENDING, make_row("t2"))
        await sheets.upsert_row(MirrorView.PENDING, make_row("t1", status="pending "))

        rows = worksheets["Live Ledger"].rows
        assert [r[-1] for r in rows[1:]] == ["t1", "t2"]
        assert rows[1][9] == "pending "

    async def test_delete_by_system_id(self, sheets, worksheets):
        await sheets.upsert_row(MirrorView.PENDING, make_row("t1"))
        await sheets.upsert_row(MirrorView.PENDING, make_row("t2"))

        assert await sheets.delete_row(MirrorView.PENDING, "t1") is True
        assert await sheets.delete_row(MirrorView.PENDING, "t1") is False
        assert [r[-1] for r in worksheets["Live Ledger"].rows[1:]] == ["t2"]

    async def test_read_skips_header_and_blank_rows(self, sheets, worksheets):
        worksheets["Completed History"].rows += [[""] * 12, make_row("t9").to_values()]

        rows = await sheets.read_rows(MirrorView.COMPLETED)

        assert [r.timeline_id for r in rows] == ["t9"]

    async def test_replace_rewrites_header_and_rows(self, sheets, worksheets):
        worksheets["Live Ledger"].rows.append(make_row("old").to_values())

        await sheets.replace_view(MirrorView.PENDING, [make_row("t1"), make_row("t2")])

        rows = worksheets["Live Ledger"].rows
        assert rows[0] == list(LEDGER_HEADERS)
        assert [r[-1] for r in rows[1:]] == ["t1", "t2"]

    async def test_missing_worksheet_is_created_with_header(self, client, worksheets):
        del worksheets["Completed History"]
        sheets = GoogleSheetsMirror("sheet-123", client=client)

        await sheets.read_rows(MirrorView.COMPLETED)

        assert worksheets["Completed History"].rows == [list(LEDGER_HEADERS)]

    async def test_api_errors_become_sync_failures(self, client):
        client.open_by_key.side_effect = gspread.exceptions.GSpreadException("quota exceeded")
        sheets = GoogleSheetsMirror("sheet-123", client=client)

        with pytest.raises(MirrorSyncFailure) as exc_info:
            await sheets.read_rows(MirrorView.PENDING)

        assert exc_info.value.context["operation"] == "read"
