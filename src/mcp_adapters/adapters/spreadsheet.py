"""Spreadsheet adapter: load, query and build Excel workbooks in memory.

Workbooks are parsed and built with openpyxl and kept in a
:class:`WorkbookStore` under the caller's file name.  The first row of a
sheet is its header row; columns may be addressed by header name or by
letter (``A``, ``AB``).
"""

from __future__ import annotations

import base64
import binascii
import csv
import io
import logging
import re
import statistics
import threading
import zipfile
from typing import Any, Protocol

from mcp.server import Server
from mcp.types import TextContent, Tool
from openpyxl import Workbook, load_workbook
from openpyxl.utils import column_index_from_string, get_column_letter
from openpyxl.utils.cell import range_boundaries
from openpyxl.utils.exceptions import InvalidFileException
from openpyxl.worksheet.worksheet import Worksheet

from ..base import (
    ResourceRoute,
    ToolHandler,
    build_server,
    configure_logging,
    require_args,
    run_stdio,
    text_response,
)
from ..errors import ValidationError

logger = logging.getLogger(__name__)

OPERATORS = ("equals", "contains", "greater", "less", "not")
_LETTERS_RE = re.compile(r"^[A-Z]{1,3}$", re.IGNORECASE)

# ---------------------------------------------------------------------------
# Store
# ---------------------------------------------------------------------------


class WorkbookStore(Protocol):
    def get(self, name: str) -> Workbook: ...

    def put(self, name: str, workbook: Workbook) -> None: ...

    def delete(self, name: str) -> None: ...

    def names(self) -> list[str]: ...


class InMemoryWorkbookStore:
    """Process-local workbook store; lost when the server exits."""

    def __init__(self) -> None:
        self._books: dict[str, Workbook] = {}
        self._lock = threading.Lock()

    def get(self, name: str) -> Workbook:
        with self._lock:
            if name not in self._books:
                raise ValidationError(f'Excel file "{name}" not found. Load it with loadExcelFile first.')
            return self._books[name]

    def put(self, name: str, workbook: Workbook) -> None:
        with self._lock:
            self._books[name] = workbook

    def delete(self, name: str) -> None:
        with self._lock:
            if self._books.pop(name, None) is None:
                raise ValidationError(f'Excel file "{name}" not found.')

    def names(self) -> list[str]:
        with self._lock:
            return list(self._books)


_store: WorkbookStore = InMemoryWorkbookStore()


def get_store() -> WorkbookStore:
    return _store


def set_store(store: WorkbookStore) -> None:
    global _store
    _store = store


# ---------------------------------------------------------------------------
# Sheet helpers
# ---------------------------------------------------------------------------


def get_sheet(workbook: Workbook, file_name: str, sheet_name: str) -> Worksheet:
    if sheet_name not in workbook.sheetnames:
        raise ValidationError(
            f'Sheet "{sheet_name}" not found in file "{file_name}". '
            f"Sheets: {', '.join(workbook.sheetnames)}"
        )
    return workbook[sheet_name]


def display(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def to_number(value: Any) -> float | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def sheet_rows(sheet: Worksheet) -> list[list[Any]]:
    rows = [list(r) for r in sheet.iter_rows(values_only=True)]
    while rows and all(v is None for v in rows[-1]):
        rows.pop()
    return rows


def records(sheet: Worksheet) -> tuple[list[str], list[dict[str, Any]]]:
    """Header names and one dict per non-empty data row."""
    rows = sheet_rows(sheet)
    if not rows:
        return [], []
    headers = [display(h) or get_column_letter(i) for i, h in enumerate(rows[0], start=1)]
    data = [
        dict(zip(headers, row)) for row in rows[1:] if any(v is not None for v in row)
    ]
    return headers, data


def resolve_column(headers: list[str], column: str) -> str:
    """Header name for *column*, given as a header or a column letter."""
    if column in headers:
        return column
    if _LETTERS_RE.match(column):
        index = column_index_from_string(column.upper())
        if index <= len(headers):
            return headers[index - 1]
    raise ValidationError(f'Column "{column}" not found. Columns: {", ".join(headers)}')


def format_table(headers: list[str], data: list[dict[str, Any]]) -> str:
    if not data:
        return "No data found."
    lines = ["\t".join(headers)]
    lines += ["\t".join(display(row.get(h)) for h in headers) for row in data]
    return "\n".join(lines)


def format_rows(rows: list[list[Any]] | list[tuple[Any, ...]]) -> str:
    return "\n".join("\t".join(display(v) for v in row) for row in rows)


def _coerce(cell: str) -> Any:
    text = cell.strip()
    if text == "":
        return None
    for kind in (int, float):
        try:
            return kind(text)
        except ValueError:
            continue
    return text


def parse_delimited(data: str) -> list[list[Any]]:
    """Parse CSV or TSV text; tab wins when the first line contains one."""
    lines = [line for line in data.splitlines() if line.strip()]
    if not lines:
        raise ValidationError("data is empty")
    delimiter = "\t" if "\t" in lines[0] else ","
    return [[_coerce(c) for c in row] for row in csv.reader(lines, delimiter=delimiter)]


def build_sheet(sheet: Worksheet, rows: list[list[Any]]) -> None:
    for row in rows:
        sheet.append(row)


def matches(value: Any, operator: str, target: str) -> bool:
    if operator == "equals":
        return display(value) == target
    if operator == "not":
        return display(value) != target
    if operator == "contains":
        return target in display(value)
    left, right = to_number(value), to_number(target)
    if left is None or right is None:
        return False
    return left > right if operator == "greater" else left < right


def _sort_key(value: Any) -> tuple[int, Any]:
    number = to_number(value)
    if number is not None:
        return (0, number)
    if value is None:
        return (2, "")
    return (1, str(value).lower())


def column_stats(values: list[float]) -> dict[str, float]:
    return {
        "count": len(values),
        "sum": sum(values),
        "mean": statistics.fmean(values),
        "median": statistics.median(values),
        "min": min(values),
        "max": max(values),
        "std": statistics.pstdev(values),
    }


# ---------------------------------------------------------------------------
# Tool definitions
# ---------------------------------------------------------------------------

_FILE = {"type": "string", "description": "Name the workbook was loaded or created under"}
_SHEET = {"type": "string", "description": "Sheet name"}
_COLUMN = {"type": "string", "description": "Header name or column letter, e.g. 'Price' or 'C'"}
_DATA = {"type": "string", "description": "Rows as CSV or tab-separated text; first row is the header"}


def _sheet_schema(*extra: str, **props: Any) -> dict[str, Any]:
    return {
        "type": "object",
        "properties": {"fileName": _FILE, "sheetName": _SHEET, **props},
        "required": ["fileName", "sheetName", *extra],
    }


def _build_tools() -> list[Tool]:
    return [
        Tool(
            name="loadExcelFile",
            description="Load an .xlsx workbook from base64 content under a name.",
            inputSchema={
                "type": "object",
                "properties": {"fileName": _FILE, "base64Content": {"type": "string"}},
                "required": ["fileName", "base64Content"],
            },
        ),
        Tool(
            name="listExcelFiles",
            description="List loaded workbooks.",
            inputSchema={"type": "object", "properties": {}},
        ),
        Tool(
            name="unloadExcelFile",
            description="Remove a workbook from memory.",
            inputSchema={
                "type": "object",
                "properties": {"fileName": _FILE},
                "required": ["fileName"],
            },
        ),
        Tool(
            name="filterExcelData",
            description="Rows of a sheet whose column matches a value.",
            inputSchema=_sheet_schema(
                "column",
                "value",
                "operator",
                column=_COLUMN,
                value={"type": "string"},
                operator={"type": "string", "enum": list(OPERATORS)},
            ),
        ),
        Tool(
            name="sortExcelData",
            description="Rows of a sheet sorted by a column; numbers sort numerically.",
            inputSchema=_sheet_schema(
                "column",
                column=_COLUMN,
                order={"type": "string", "enum": ["asc", "desc"], "default": "asc"},
            ),
        ),
        Tool(
            name="calculateStats",
            description="Count, sum, mean, median, min, max and standard deviation of a numeric column.",
            inputSchema=_sheet_schema("column", column=_COLUMN),
        ),
        Tool(
            name="exportAsCsv",
            description="A sheet as CSV text.",
            inputSchema=_sheet_schema(),
        ),
        Tool(
            name="createExcelFile",
            description="Create a workbook with one sheet from CSV or TSV text.",
            inputSchema=_sheet_schema("data", data=_DATA),
        ),
        Tool(
            name="addSheet",
            description="Add a sheet built from CSV or TSV text to a loaded workbook.",
            inputSchema=_sheet_schema("data", data=_DATA),
        ),
        Tool(
            name="lookupValue",
            description="VLOOKUP: find rows whose lookup column equals a value and return another column.",
            inputSchema=_sheet_schema(
                "lookupColumn",
                "lookupValue",
                "returnColumn",
                lookupColumn=_COLUMN,
                lookupValue={"type": "string"},
                returnColumn=_COLUMN,
            ),
        ),
        Tool(
            name="extractRange",
            description="Cell values of a range such as A1:C10.",
            inputSchema=_sheet_schema("range", range={"type": "string"}),
        ),
        Tool(
            name="searchExcelFile",
            description="Find cells containing text across all sheets of a workbook.",
            inputSchema={
                "type": "object",
                "properties": {
                    "fileName": _FILE,
                    "searchText": {"type": "string"},
                    "caseSensitive": {"type": "boolean", "default": False},
                },
                "required": ["fileName", "searchText"],
            },
        ),
    ]


TOOLS = _build_tools()

# ---------------------------------------------------------------------------
# Individual tool handlers
# ---------------------------------------------------------------------------


def _sheet_records(args: dict[str, Any]) -> tuple[list[str], list[dict[str, Any]]]:
    require_args(args, "fileName", "sheetName")
    workbook = get_store().get(args["fileName"])
    return records(get_sheet(workbook, args["fileName"], args["sheetName"]))


def _where(args: dict[str, Any]) -> str:
    return f'"{args["fileName"]}" - "{args["sheetName"]}"'


def _handle_load(args: dict[str, Any]) -> list[TextContent]:
    require_args(args, "fileName", "base64Content")
    try:
        raw = base64.b64decode(args["base64Content"], validate=True)
    except (binascii.Error, ValueError) as e:
        raise ValidationError(f"base64Content is not valid base64: {e}") from e
    try:
        workbook = load_workbook(io.BytesIO(raw), data_only=True)
    except (InvalidFileException, zipfile.BadZipFile, KeyError, OSError) as e:
        raise ValidationError(f'Could not read "{args["fileName"]}" as an Excel workbook: {e}') from e
    get_store().put(args["fileName"], workbook)
    logger.info("Loaded workbook %s (%d sheets)", args["fileName"], len(workbook.sheetnames))
    return text_response(
        f'Excel file "{args["fileName"]}" loaded successfully. '
        f"Available sheets: {', '.join(workbook.sheetnames)}"
    )


def _handle_list(args: dict[str, Any]) -> list[TextContent]:
    names = get_store().names()
    if not names:
        return text_response("No Excel files loaded.")
    return text_response(f"Loaded Excel files: {', '.join(names)}")


def _handle_unload(args: dict[str, Any]) -> list[TextContent]:
    require_args(args, "fileName")
    get_store().delete(args["fileName"])
    return text_response(f'Excel file "{args["fileName"]}" removed.')


def _handle_filter(args: dict[str, Any]) -> list[TextContent]:
    require_args(args, "column", "operator")
    operator = args["operator"]
    if operator not in OPERATORS:
        raise ValidationError(f"operator must be one of {', '.join(OPERATORS)}")
    value = str(args.get("value", ""))
    headers, data = _sheet_records(args)
    column = resolve_column(headers, args["column"])
    hits = [row for row in data if matches(row.get(column), operator, value)]
    return text_response(
        f'Filtered results for {_where(args)} where {column} {operator} "{value}" '
        f"({len(hits)} rows):\n\n{format_table(headers, hits)}"
    )


def _handle_sort(args: dict[str, Any]) -> list[TextContent]:
    require_args(args, "column")
    order = args.get("order") or "asc"
    if order not in ("asc", "desc"):
        raise ValidationError("order must be 'asc' or 'desc'")
    headers, data = _sheet_records(args)
    column = resolve_column(headers, args["column"])
    ordered = sorted(data, key=lambda row: _sort_key(row.get(column)), reverse=order == "desc")
    label = "ascending" if order == "asc" else "descending"
    return text_response(
        f"Sorted results for {_where(args)} by {column} ({label}):\n\n{format_table(headers, ordered)}"
    )


def _handle_stats(args: dict[str, Any]) -> list[TextContent]:
    require_args(args, "column")
    headers, data = _sheet_records(args)
    column = resolve_column(headers, args["column"])
    values = [n for n in (to_number(row.get(column)) for row in data) if n is not None]
    if not values:
        raise ValidationError(f'Column "{column}" has no numeric values.')
    stats = column_stats(values)
    return text_response(
        f'Statistics for column "{column}" in {_where(args)}:\n\n'
        f"Count: {stats['count']}\n"
        f"Sum: {stats['sum']:.2f}\n"
        f"Mean: {stats['mean']:.2f}\n"
        f"Median: {stats['median']:.2f}\n"
        f"Min: {stats['min']:.2f}\n"
        f"Max: {stats['max']:.2f}\n"
        f"Standard Deviation: {stats['std']:.2f}"
    )


def _handle_export(args: dict[str, Any]) -> list[TextContent]:
    require_args(args, "fileName", "sheetName")
    sheet = get_sheet(get_store().get(args["fileName"]), args["fileName"], args["sheetName"])
    buffer = io.StringIO()
    writer = csv.writer(buffer, lineterminator="\n")
    for row in sheet_rows(sheet):
        writer.writerow(display(v) for v in row)
    return text_response(f"CSV export of {_where(args)}:\n\n{buffer.getvalue()}")


def _handle_create(args: dict[str, Any]) -> list[TextContent]:
    require_args(args, "fileName", "sheetName", "data")
    rows = parse_delimited(args["data"])
    workbook = Workbook()
    sheet = workbook.active
    sheet.title = args["sheetName"]
    build_sheet(sheet, rows)
    get_store().put(args["fileName"], workbook)
    return text_response(
        f'Excel file "{args["fileName"]}" created successfully with sheet "{args["sheetName"]}" '
        f"({len(rows)} rows)."
    )


def _handle_add_sheet(args: dict[str, Any]) -> list[TextContent]:
    require_args(args, "fileName", "sheetName", "data")
    workbook = get_store().get(args["fileName"])
    if args["sheetName"] in workbook.sheetnames:
        raise ValidationError(f'Sheet "{args["sheetName"]}" already exists in "{args["fileName"]}".')
    rows = parse_delimited(args["data"])
    build_sheet(workbook.create_sheet(args["sheetName"]), rows)
    return text_response(f'Sheet "{args["sheetName"]}" added to "{args["fileName"]}" successfully.')


def _handle_lookup(args: dict[str, Any]) -> list[TextContent]:
    require_args(args, "lookupColumn", "returnColumn")
    needle = str(args.get("lookupValue", ""))
    headers, data = _sheet_records(args)
    key = resolve_column(headers, args["lookupColumn"])
    wanted = resolve_column(headers, args["returnColumn"])
    found = [row.get(wanted) for row in data if display(row.get(key)) == needle]
    if not found:
        return text_response(f'No match found for value "{needle}" in column "{key}".')
    text = f"Lookup result: {display(found[0])}"
    if len(found) > 1:
        text += f"\n({len(found)} matching rows; other values: {', '.join(display(v) for v in found[1:])})"
    return text_response(text)


def _handle_range(args: dict[str, Any]) -> list[TextContent]:
    require_args(args, "fileName", "sheetName", "range")
    sheet = get_sheet(get_store().get(args["fileName"]), args["fileName"], args["sheetName"])
    cell_range = str(args["range"]).upper()
    try:
        min_col, min_row, max_col, max_row = range_boundaries(cell_range)
    except ValueError as e:
        raise ValidationError(f"Invalid range {args['range']!r}: {e}") from e
    if None in (min_col, min_row, max_col, max_row):
        raise ValidationError(f"Range {args['range']!r} must have both corners, e.g. A1:C10")
    rows = sheet.iter_rows(
        min_row=min_row, max_row=max_row, min_col=min_col, max_col=max_col, values_only=True
    )
    return text_response(f"Data from range {cell_range} in {_where(args)}:\n\n{format_rows(list(rows))}")


def _handle_search(args: dict[str, Any]) -> list[TextContent]:
    require_args(args, "fileName", "searchText")
    workbook = get_store().get(args["fileName"])
    case_sensitive = bool(args.get("caseSensitive", False))
    needle = args["searchText"] if case_sensitive else args["searchText"].lower()
    hits: list[str] = []
    for sheet in workbook.worksheets:
        for row in sheet.iter_rows():
            for cell in row:
                if cell.value is None:
                    continue
                value = display(cell.value)
                haystack = value if case_sensitive else value.lower()
                if needle in haystack:
                    hits.append(f"Sheet: {sheet.title}, Cell: {cell.coordinate}, Value: {value}")
    if not hits:
        return text_response(f'No matches found for "{args["searchText"]}" in file "{args["fileName"]}".')
    return text_response(f'Search results for "{args["searchText"]}" in "{args["fileName"]}":\n\n' + "\n".join(hits))


HANDLERS: dict[str, ToolHandler] = {
    "loadExcelFile": _handle_load,
    "listExcelFiles": _handle_list,
    "unloadExcelFile": _handle_unload,
    "filterExcelData": _handle_filter,
    "sortExcelData": _handle_sort,
    "calculateStats": _handle_stats,
    "exportAsCsv": _handle_export,
    "createExcelFile": _handle_create,
    "addSheet": _handle_add_sheet,
    "lookupValue": _handle_lookup,
    "extractRange": _handle_range,
    "searchExcelFile": _handle_search,
}

# ---------------------------------------------------------------------------
# Resources
# ---------------------------------------------------------------------------


def _read_info(params: dict[str, str]) -> str:
    name = params["fileName"]
    workbook = get_store().get(name)
    parts = [f"Excel file: {name}\nSheets: {len(workbook.sheetnames)}"]
    for sheet in workbook.worksheets:
        parts.append(f"Sheet: {sheet.title}\nRows: {sheet.max_row}\nColumns: {sheet.max_column}")
    return "\n\n".join(parts)


def _read_sheets(params: dict[str, str]) -> str:
    name = params["fileName"]
    return f'Sheets in "{name}":\n' + "\n".join(get_store().get(name).sheetnames)


def _read_sheet(params: dict[str, str]) -> str:
    name = params["fileName"]
    sheet = get_sheet(get_store().get(name), name, params["sheetName"])
    return format_rows(sheet_rows(sheet))


RESOURCES = [
    ResourceRoute("excel://{fileName}/info", "excel-info", _read_info, "Sheet sizes of a workbook", "text/plain"),
    ResourceRoute("excel://{fileName}/sheets", "excel-sheets", _read_sheets, "Sheet names", "text/plain"),
    ResourceRoute(
        "excel://{fileName}/sheet/{sheetName}", "excel-sheet", _read_sheet,
        "Sheet contents as tab-separated text", "text/tab-separated-values",
    ),
]


def create_mcp_server(name: str = "excel-processor") -> Server:
    return build_server(name, TOOLS, HANDLERS, RESOURCES)


def main_stdio() -> None:
    configure_logging()
    run_stdio(create_mcp_server())


if __name__ == "__main__":
    main_stdio()
