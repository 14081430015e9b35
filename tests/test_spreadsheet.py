"""Tests for the spreadsheet adapter."""

from __future__ import annotations

import base64
import io
from typing import Iterator

import pytest
from conftest import text_of
from openpyxl import Workbook

from mcp_adapters.adapters import spreadsheet
from mcp_adapters.adapters.spreadsheet import (
    HANDLERS,
    RESOURCES,
    InMemoryWorkbookStore,
    parse_delimited,
    resolve_column,
)
from mcp_adapters.base import dispatch, read_route
from mcp_adapters.errors import ValidationError

PRODUCTS = [
    ["Product", "Category", "Price", "Stock"],
    ["Widget", "Tools", 9.5, 10],
    ["Gadget", "Toys", 20, 4],
    ["Doohickey", "Tools", 4.25, 0],
    ["Gizmo", "Toys", 15, 7],
]


def workbook_b64(rows: list[list[object]], title: str = "Products") -> str:
    book = Workbook()
    sheet = book.active
    sheet.title = title
    for row in rows:
        sheet.append(row)
    book.create_sheet("Notes").append(["remember the widgets"])
    buffer = io.BytesIO()
    book.save(buffer)
    return base64.b64encode(buffer.getvalue()).decode("ascii")


@pytest.fixture(autouse=True)
def store() -> Iterator[InMemoryWorkbookStore]:
    fresh = InMemoryWorkbookStore()
    previous = spreadsheet.get_store()
    spreadsheet.set_store(fresh)
    yield fresh
    spreadsheet.set_store(previous)


async def call(name: str, **arguments: object) -> str:
    return text_of(await dispatch(HANDLERS, name, arguments))


@pytest.fixture
def loaded(store: InMemoryWorkbookStore) -> str:
    HANDLERS["loadExcelFile"]({"fileName": "inventory.xlsx", "base64Content": workbook_b64(PRODUCTS)})
    return "inventory.xlsx"


def sheet_args(**extra: object) -> dict[str, object]:
    return {"fileName": "inventory.xlsx", "sheetName": "Products", **extra}


class TestHelpers:
    def test_resolve_column(self) -> None:
        headers = ["Product", "Price"]
        assert resolve_column(headers, "Price") == "Price"
        assert resolve_column(headers, "B") == "Price"
        assert resolve_column(headers, "b") == "Price"
        with pytest.raises(ValidationError, match="Columns: Product, Price"):
            resolve_column(headers, "C")

    def test_parse_csv(self) -> None:
        assert parse_delimited('name,qty\n"Smith, J",3\n\n') == [["name", "qty"], ["Smith, J", 3]]

    def test_parse_tsv(self) -> None:
        assert parse_delimited("a\tb\n1.5\t") == [["a", "b"], [1.5, None]]

    def test_parse_empty(self) -> None:
        with pytest.raises(ValidationError):
            parse_delimited("\n\n")


class TestLoading:
    @pytest.mark.asyncio
    async def test_load_and_list(self, loaded: str) -> None:
        assert await call("listExcelFiles") == "Loaded Excel files: inventory.xlsx"

    @pytest.mark.asyncio
    async def test_load_reports_sheets(self) -> None:
        text = await call("loadExcelFile", fileName="a.xlsx", base64Content=workbook_b64(PRODUCTS))
        assert text == 'Excel file "a.xlsx" loaded successfully. Available sheets: Products, Notes'

    @pytest.mark.asyncio
    async def test_list_empty(self) -> None:
        assert await call("listExcelFiles") == "No Excel files loaded."

    @pytest.mark.asyncio
    async def test_invalid_base64(self) -> None:
        with pytest.raises(ValidationError, match="base64"):
            await call("loadExcelFile", fileName="a.xlsx", base64Content="***")

    @pytest.mark.asyncio
    async def test_not_a_workbook(self) -> None:
        content = base64.b64encode(b"plain text, not a zip").decode()
        with pytest.raises(ValidationError, match="Could not read"):
            await call("loadExcelFile", fileName="a.xlsx", base64Content=content)

    @pytest.mark.asyncio
    async def test_unload(self, loaded: str) -> None:
        await call("unloadExcelFile", fileName=loaded)
        assert await call("listExcelFiles") == "No Excel files loaded."
        with pytest.raises(ValidationError):
            await call("unloadExcelFile", fileName=loaded)

    @pytest.mark.asyncio
    async def test_unknown_file_and_sheet(self, loaded: str) -> None:
        with pytest.raises(ValidationError, match="not found"):
            await call("exportAsCsv", fileName="other.xlsx", sheetName="Products")
        with pytest.raises(ValidationError, match="Sheets: Products, Notes"):
            await call("exportAsCsv", fileName=loaded, sheetName="Missing")


class TestQueries:
    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "column,operator,value,expected",
        [
            ("Category", "equals", "Tools", ["Widget", "Doohickey"]),
            ("Product", "contains", "dg", ["Gadget"]),
            ("C", "greater", "10", ["Gadget", "Gizmo"]),
            ("Price", "less", "5", ["Doohickey"]),
            ("Stock", "equals", "10", ["Widget"]),
            ("Category", "not", "Tools", ["Gadget", "Gizmo"]),
        ],
    )
    async def test_filter(self, loaded: str, column: str, operator: str, value: str, expected: list[str]) -> None:
        text = await call("filterExcelData", **sheet_args(column=column, operator=operator, value=value))
        rows = text.split("\n\n", 1)[1].splitlines()[1:]
        assert [r.split("\t")[0] for r in rows] == expected

    @pytest.mark.asyncio
    async def test_filter_no_rows(self, loaded: str) -> None:
        text = await call("filterExcelData", **sheet_args(column="Product", operator="equals", value="Nothing"))
        assert text.endswith("No data found.")

    @pytest.mark.asyncio
    async def test_filter_bad_operator(self, loaded: str) -> None:
        with pytest.raises(ValidationError, match="operator"):
            await call("filterExcelData", **sheet_args(column="Price", operator="between", value="1"))

    @pytest.mark.asyncio
    async def test_sort_numeric_desc(self, loaded: str) -> None:
        text = await call("sortExcelData", **sheet_args(column="Price", order="desc"))
        rows = text.split("\n\n", 1)[1].splitlines()[1:]
        assert [r.split("\t")[0] for r in rows] == ["Gadget", "Gizmo", "Widget", "Doohickey"]

    @pytest.mark.asyncio
    async def test_sort_text_asc(self, loaded: str) -> None:
        text = await call("sortExcelData", **sheet_args(column="A"))
        rows = text.split("\n\n", 1)[1].splitlines()[1:]
        assert [r.split("\t")[0] for r in rows] == ["Doohickey", "Gadget", "Gizmo", "Widget"]

    @pytest.mark.asyncio
    async def test_stats(self, loaded: str) -> None:
        text = await call("calculateStats", **sheet_args(column="Stock"))
        assert "Count: 4" in text
        assert "Sum: 21.00" in text
        assert "Mean: 5.25" in text
        assert "Median: 5.50" in text
        assert "Min: 0.00" in text
        assert "Max: 10.00" in text
        assert "Standard Deviation: 3.70" in text

    @pytest.mark.asyncio
    async def test_stats_non_numeric(self, loaded: str) -> None:
        with pytest.raises(ValidationError, match="no numeric values"):
            await call("calculateStats", **sheet_args(column="Category"))

    @pytest.mark.asyncio
    async def test_export_csv(self, loaded: str) -> None:
        text = await call("exportAsCsv", **sheet_args())
        csv_body = text.split("\n\n", 1)[1]
        assert csv_body.splitlines()[:2] == ["Product,Category,Price,Stock", "Widget,Tools,9.5,10"]

    @pytest.mark.asyncio
    async def test_lookup(self, loaded: str) -> None:
        text = await call("lookupValue", **sheet_args(lookupColumn="Product", lookupValue="Gizmo", returnColumn="Price"))
        assert text == "Lookup result: 15"

    @pytest.mark.asyncio
    async def test_lookup_multiple_and_missing(self, loaded: str) -> None:
        text = await call("lookupValue", **sheet_args(lookupColumn="Category", lookupValue="Toys", returnColumn="A"))
        assert text.startswith("Lookup result: Gadget")
        assert "other values: Gizmo" in text
        missing = await call("lookupValue", **sheet_args(lookupColumn="Product", lookupValue="Nope", returnColumn="Price"))
        assert missing.startswith('No match found for value "Nope"')

    @pytest.mark.asyncio
    async def test_extract_range(self, loaded: str) -> None:
        text = await call("extractRange", **sheet_args(range="a2:b3"))
        assert text.endswith("Widget\tTools\nGadget\tToys")

    @pytest.mark.asyncio
    async def test_extract_bad_range(self, loaded: str) -> None:
        with pytest.raises(ValidationError):
            await call("extractRange", **sheet_args(range="not a range"))

    @pytest.mark.asyncio
    async def test_search(self, loaded: str) -> None:
        text = await call("searchExcelFile", fileName=loaded, searchText="widget")
        assert "Sheet: Products, Cell: A2, Value: Widget" in text
        assert "Sheet: Notes, Cell: A1, Value: remember the widgets" in text
        strict = await call("searchExcelFile", fileName=loaded, searchText="widget", caseSensitive=True)
        assert "Cell: A2" not in strict


class TestBuilding:
    @pytest.mark.asyncio
    async def test_create_then_query(self) -> None:
        text = await call("createExcelFile", fileName="new.xlsx", sheetName="Data", data="name,score\nann,3\nbob,5")
        assert "created successfully" in text
        stats = await call("calculateStats", fileName="new.xlsx", sheetName="Data", column="score")
        assert "Mean: 4.00" in stats

    @pytest.mark.asyncio
    async def test_add_sheet(self, loaded: str) -> None:
        await call("addSheet", fileName=loaded, sheetName="Extra", data="a\tb\n1\t2")
        assert "Extra" in spreadsheet.get_store().get(loaded).sheetnames
        with pytest.raises(ValidationError, match="already exists"):
            await call("addSheet", fileName=loaded, sheetName="Extra", data="a")


class TestResources:
    @pytest.mark.asyncio
    async def test_info(self, loaded: str) -> None:
        text, mime = await read_route(RESOURCES, "excel://inventory.xlsx/info")
        assert "Sheet: Products\nRows: 5\nColumns: 4" in text
        assert mime == "text/plain"

    @pytest.mark.asyncio
    async def test_sheets(self, loaded: str) -> None:
        text, _mime = await read_route(RESOURCES, "excel://inventory.xlsx/sheets")
        assert text == 'Sheets in "inventory.xlsx":\nProducts\nNotes'

    @pytest.mark.asyncio
    async def test_sheet_contents(self, loaded: str) -> None:
        text, _mime = await read_route(RESOURCES, "excel://inventory.xlsx/sheet/Products")
        assert text.splitlines()[2] == "Gadget\tToys\t20\t4"

    @pytest.mark.asyncio
    async def test_unknown_file_is_text(self) -> None:
        text, _mime = await read_route(RESOURCES, "excel://nothing.xlsx/sheets")
        assert text.startswith("Error reading excel://nothing.xlsx/sheets")
