"""
Forward-only spreadsheet readers.

``.xlsx`` files are opened with openpyxl in read-only mode so rows are parsed
lazily from the underlying XML. ``.xls`` files are read with xlrd, which
parses the whole first sheet when it is opened; only the conversion of cells
is done row by row. Either way callers see the same ``SheetRow`` stream of
plain scalar cell values, with formula cells resolved to their cached results.
Corrupt content raises SpreadsheetReadException, never a parser error.
"""
import logging
import os
import zipfile
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Iterator, List
from xml.etree.ElementTree import ParseError

import pandas as pd
import xlrd
from openpyxl import load_workbook
from openpyxl.cell.rich_text import CellRichText
from openpyxl.utils.exceptions import InvalidFileException

from candidate_intake.core.exceptions import SpreadsheetReadException, UnsupportedFileTypeException

logger = logging.getLogger(__name__)

SUPPORTED_EXTENSIONS = (".xlsx", ".xls")

_OPEN_ERRORS = (
    InvalidFileException,
    zipfile.BadZipFile,
    xlrd.XLRDError,
    KeyError,
    OSError,
    ValueError,
    EOFError,
    ParseError,
    SyntaxError,  # lxml XMLSyntaxError
)


@dataclass
class SheetRow:
    """One physical data row: 1-based sheet row number plus positional cell values."""
    row_number: int
    values: List[Any]


def unwrap_cell_value(value: Any) -> Any:
    """
    Reduce a rich or formatted cell representation to a plain scalar.

    - rich text is flattened to its concatenated text
    - formula payloads carrying a cached result yield the result, never the formula
    - NaN/NaT become None
    """
    if value is None:
        return None
    if isinstance(value, CellRichText):
        return str(value)
    if isinstance(value, dict):
        if "result" in value:
            return unwrap_cell_value(value["result"])
        if "richText" in value or "rich_text" in value:
            runs = value.get("richText", value.get("rich_text")) or []
            return "".join(str(unwrap_cell_value(run) or "") for run in runs)
        if "text" in value:
            return value["text"]
        return value
    if isinstance(value, (list, tuple)) and value and all(
        hasattr(run, "text") or (isinstance(run, dict) and "text" in run) for run in value
    ):
        return "".join(str(unwrap_cell_value(run) or "") for run in value)
    if not isinstance(value, (str, int, float, bool, datetime)):
        if hasattr(value, "result"):
            return unwrap_cell_value(value.result)
        if hasattr(value, "text"):
            return value.text
    if pd.api.types.is_scalar(value) and not isinstance(value, str) and pd.isna(value):
        return None
    return value


def _extension(path: str) -> str:
    ext = os.path.splitext(str(path))[1].lower()
    if ext not in SUPPORTED_EXTENSIONS:
        raise UnsupportedFileTypeException(os.path.basename(str(path)), list(SUPPORTED_EXTENSIONS))
    return ext


def _is_blank(values: List[Any]) -> bool:
    return all(v is None or (isinstance(v, str) and not v.strip()) for v in values)


def _iter_xlsx(path: str) -> Iterator[List[Any]]:
    try:
        workbook = load_workbook(path, read_only=True, data_only=True)
    except _OPEN_ERRORS as e:
        raise SpreadsheetReadException(f"Could not open Excel file: {e}") from e

    try:
        if not workbook.worksheets:
            return
        worksheet = workbook.worksheets[0]
        try:
            for row in worksheet.iter_rows(values_only=True):
                yield [unwrap_cell_value(value) for value in row]
        except _OPEN_ERRORS as e:
            raise SpreadsheetReadException(f"Excel file is corrupt or truncated: {e}") from e
    finally:
        workbook.close()


def _xls_cell_value(cell: Any, datemode: int) -> Any:
    if cell.ctype in (xlrd.XL_CELL_EMPTY, xlrd.XL_CELL_BLANK, xlrd.XL_CELL_ERROR):
        return None
    if cell.ctype == xlrd.XL_CELL_DATE:
        try:
            return xlrd.xldate.xldate_as_datetime(cell.value, datemode)
        except (xlrd.xldate.XLDateError, ValueError, OverflowError):
            return cell.value
    if cell.ctype == xlrd.XL_CELL_BOOLEAN:
        return bool(cell.value)
    return unwrap_cell_value(cell.value)


def _iter_xls(path: str) -> Iterator[List[Any]]:
    try:
        book = xlrd.open_workbook(path, on_demand=True)
    except _OPEN_ERRORS as e:
        raise SpreadsheetReadException(f"Could not open Excel file: {e}") from e

    try:
        if book.nsheets == 0:
            return
        try:
            sheet = book.sheet_by_index(0)
        except _OPEN_ERRORS as e:
            raise SpreadsheetReadException(f"Excel file is corrupt or truncated: {e}") from e
        for row_index in range(sheet.nrows):
            yield [_xls_cell_value(cell, book.datemode) for cell in sheet.row(row_index)]
    finally:
        book.release_resources()


def iter_sheet_rows(path: str) -> Iterator[List[Any]]:
    """Yield every physical row of the first worksheet (header included) as cell values."""
    ext = _extension(path)
    if not os.path.isfile(path):
        raise SpreadsheetReadException(f"Spreadsheet not found at '{path}'")
    if ext == ".xlsx":
        return _iter_xlsx(path)
    return _iter_xls(path)


def read_excel_header_row(path: str) -> List[str]:
    """Return the first row as trimmed strings, keeping positions ("" for blank cells)."""
    rows = iter_sheet_rows(path)
    try:
        first = next(rows, None)
    finally:
        rows.close()
    if first is None:
        return []
    headers = ["" if value is None else str(value).strip() for value in first]
    while headers and not headers[-1]:
        headers.pop()
    return headers


def read_excel_headers(path: str) -> List[str]:
    """Return the non-empty header names from the first row."""
    return [header for header in read_excel_header_row(path) if header]


def stream_excel_rows(path: str) -> Iterator[SheetRow]:
    """
    Lazily yield data rows after the header row.

    Entirely blank rows are skipped. The iterator is single-pass; re-open the
    file to read it again.
    """
    for row_number, values in enumerate(iter_sheet_rows(path), start=1):
        if row_number == 1:
            continue
        if _is_blank(values):
            continue
        yield SheetRow(row_number=row_number, values=values)

