from __future__ import annotations

import json
import re

import gspread
import pytest

from fieldsync.core.errors import EntityNotFoundError, ValidationError
from fieldsync.domain.ports import SERVER_TIMESTAMP, ArrayUnion, WriteOp
from fieldsync.domain.sheets_errors import SheetsUnavailableError
from fieldsync.infrastructure.sheets_remote_store import HEADER, SheetsRemoteStore, worksheet_title

_RANGE = re.compile(r"A(\d+):C\d+")


class FakeWorksheet:
    def __init__(self, title: str) -> None:
        self.title = title
        self.rows: list[list[str]] = []
        self.reads = 0

    def get_all_values(self) -> list[list[str]]:
        self.reads += 1
        return [list(row) for row in self.rows]

    def append_row(self, row, value_input_option=None) -> None:
        self.rows.append(list(row))

    def append_rows(self, rows, value_input_option=None) -> None:
        self.rows.extend(list(row) for row in rows)

    def batch_update(self, updates, value_input_option=None) -> None:
        for update in updates:
            row_number = int(_RANGE.match(update["range"]).group(1))
            self.rows[row_number - 1] = list(update["values"][0])

    def delete_rows(self, index: int) -> None:
        del self.rows[index - 1]


class FakeSpreadsheet:
    def __init__(self) -> None:
        self.sheets: dict[str, FakeWorksheet] = {}
        self.failure: Exception | None = None

    def worksheet(self, title: str) -> FakeWorksheet:
        if self.failure is not None:
            raise self.failure
        if title not in self.sheets:
            raise gspread.exceptions.WorksheetNotFound(title)
        return self.sheets[title]

    def add_worksheet(self, title: str, rows: int, cols: int) -> FakeWorksheet:
        sheet = FakeWorksheet(title)
        self.sheets[title] = sheet
        return sheet


class _Response:
    status_code = 503
    text = "[503] backendError"


PATH = "companies/acme/selfInspections"


@pytest.fixture
def spreadsheet() -> FakeSpreadsheet:
    return FakeSpreadsheet()


@pytest.fixture
def store(spreadsheet: FakeSpreadsheet) -> SheetsRemoteStore:
    return SheetsRemoteStore(spreadsheet, max_batch_size=3, server_time=lambda: "2025-03-10T09:00:00+00:00")


def test_worksheet_title_flattens_collection_path() -> None:
    assert worksheet_title("/companies/acme/areas/") == "companies.acme.areas"
    assert len(worksheet_title("x/" * 80)) == 100


def test_set_creates_sheet_and_resolves_server_timestamp(store, spreadsheet) -> None:
    store.set(PATH, "insp-1", {"title": "Cocina", "updatedAt": SERVER_TIMESTAMP})

    sheet = spreadsheet.sheets["companies.acme.selfInspections"]
    assert sheet.rows[0] == HEADER
    assert sheet.rows[1][0] == "insp-1"
    assert json.loads(sheet.rows[1][1]) == {"title": "Cocina", "updatedAt": "2025-03-10T09:00:00+00:00"}
    assert store.get(PATH, "insp-1")["title"] == "Cocina"
    assert store.get(PATH, "missing") is None


def test_update_merges_fields_and_array_union(store) -> None:
    store.set(PATH, "insp-1", {"title": "Cocina", "issues": [{"id": "i-1"}]})

    store.update(PATH, "insp-1", {"issues": ArrayUnion(({"id": "i-1"}, {"id": "i-2"})), "status": "open"})

    document = store.get(PATH, "insp-1")
    assert document["title"] == "Cocina"
    assert document["status"] == "open"
    assert [issue["id"] for issue in document["issues"]] == ["i-1", "i-2"]


def test_update_of_missing_document_writes_nothing(store, spreadsheet) -> None:
    store.set(PATH, "insp-1", {"v": 1})

    with pytest.raises(EntityNotFoundError):
        store.batch_commit(
            [
                WriteOp(kind="set", collection_path=PATH, doc_id="insp-2", data={"v": 2}),
                WriteOp(kind="update", collection_path=PATH, doc_id="ghost", data={"v": 3}),
            ]
        )

    assert [row[0] for row in spreadsheet.sheets["companies.acme.selfInspections"].rows[1:]] == ["insp-1"]


def test_batch_commit_rejects_oversized_batch(store) -> None:
    ops = [WriteOp(kind="set", collection_path=PATH, doc_id=f"d{index}", data={}) for index in range(4)]

    with pytest.raises(ValidationError):
        store.batch_commit(ops)


def test_delete_and_query(store) -> None:
    for index in range(3):
        store.set(PATH, f"d{index}", {"areaItemId": "item-1" if index else "item-2"})

    store.delete(PATH, "d1")
    store.delete(PATH, "never-existed")

    assert sorted(doc["areaItemId"] for doc in store.query(PATH)) == ["item-1", "item-2"]
    assert len(store.query(PATH, lambda doc: doc["areaItemId"] == "item-1")) == 1


def test_reads_are_cached_until_next_write(store, spreadsheet) -> None:
    store.set(PATH, "d1", {})
    sheet = spreadsheet.sheets["companies.acme.selfInspections"]
    store.get(PATH, "d1")
    reads = sheet.reads

    store.get(PATH, "d1")
    store.query(PATH)

    assert sheet.reads == reads


def test_corrupt_rows_are_skipped(store, spreadsheet) -> None:
    store.set(PATH, "d1", {"ok": True})
    spreadsheet.sheets["companies.acme.selfInspections"].rows.append(["d2", "{no json", ""])
    store.enable_network()

    assert [doc for doc in store.query(PATH)] == [{"ok": True}]


def test_disabled_network_fails_fast(store) -> None:
    store.disable_network()

    with pytest.raises(SheetsUnavailableError):
        store.get(PATH, "d1")

    store.enable_network()
    assert store.get(PATH, "d1") is None


def test_gspread_errors_are_mapped(store, spreadsheet) -> None:
    spreadsheet.failure = gspread.exceptions.APIError(_Response())

    with pytest.raises(SheetsUnavailableError):
        store.query(PATH)
