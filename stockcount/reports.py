"""Spreadsheet exports for counted stock."""
from __future__ import annotations

import re
from datetime import datetime
from io import BytesIO
from typing import Any, Collection, Dict, Iterable, List, Mapping, Optional, Sequence

import xlwt

from .ingest import DEFAULT_HEADERS
from .models import Category, Entry

EXPORT_TITLE = "Inventory Export"

SUMMARY_COLUMNS = (
    "#",
    "Product Name",
    "Item Number",
    "Category",
    "Floor Count",
    "Storage Count",
    "Total Count",
    "Changed",
)
CATEGORY_COLUMNS = (
    "#",
    "Product Name",
    "Item Number",
    "Floor Count",
    "Storage Count",
    "Total Count",
    "Changed",
)

_SUMMARY_WIDTHS = (5, 25, 20, 15, 12, 15, 12, 10)
_CATEGORY_WIDTHS = (5, 25, 20, 12, 15, 12, 10)
_SHEET_NAME_NOISE = re.compile(r"[\\/?*\[\]:]")
_SHEET_NAME_LIMIT = 31

_TITLE_STYLE = xlwt.easyxf("font: bold on, height 280; align: horiz left, vert center")
_LABEL_STYLE = xlwt.easyxf("font: bold on")
_HEADER_STYLE = xlwt.easyxf(
    "font: bold on; align: horiz center, vert center;"
    "borders: left thin, right thin, top thin, bottom thin"
)
_TEXT_STYLE = xlwt.easyxf(
    "align: horiz left, vert center;"
    "borders: left thin, right thin, top thin, bottom thin"
)
_NUMBER_STYLE = xlwt.easyxf(
    "align: horiz center, vert center;"
    "borders: left thin, right thin, top thin, bottom thin"
)
_TOTAL_STYLE = xlwt.easyxf(
    "font: bold on; align: horiz center, vert center;"
    "borders: left thin, right thin, top medium, bottom thin"
)


def sanitize_sheet_name(name: str, existing: Collection[str] = ()) -> str:
    """Make ``name`` a legal worksheet name that is not already in ``existing``."""

    cleaned = _SHEET_NAME_NOISE.sub("", name).strip().strip("'")[:_SHEET_NAME_LIMIT]
    if not cleaned:
        cleaned = "Sheet"
    taken = {sheet.lower() for sheet in existing}
    candidate = cleaned
    counter = 1
    while candidate.lower() in taken:
        candidate = f"{cleaned[:28]}_{counter}"
        counter += 1
    return candidate


def _changed_flag(entry: Entry, changed_keys: Collection[str]) -> str:
    return "YES" if entry.key in changed_keys else "NO"


def _write_metadata(sheet: Any, start_row: int, metadata: Sequence[tuple]) -> int:
    row_index = start_row
    for label, value in metadata:
        sheet.write(row_index, 0, label, _LABEL_STYLE)
        sheet.write(row_index, 1, "" if value is None else value)
        row_index += 1
    return row_index


def _set_widths(sheet: Any, widths: Sequence[int]) -> None:
    for index, width in enumerate(widths):
        sheet.col(index).width = 256 * width


def _write_category_sheet(
    sheet: Any,
    *,
    title: str,
    category_name: str,
    entries: Sequence[Entry],
    changed_keys: Collection[str],
    exported_label: str,
    exported_by: str,
    totals_label: str,
) -> None:
    _set_widths(sheet, _CATEGORY_WIDTHS)
    sheet.write(0, 0, title, _TITLE_STYLE)
    row_index = _write_metadata(
        sheet,
        1,
        [
            ("Export Date:", exported_label),
            ("Exported By:", exported_by),
            ("Category:", category_name),
            ("Total Items:", len(entries)),
        ],
    )
    row_index += 1
    for col_index, column in enumerate(CATEGORY_COLUMNS):
        sheet.write(row_index, col_index, column, _HEADER_STYLE)
    row_index += 1

    for position, entry in enumerate(entries, start=1):
        sheet.write(row_index, 0, position, _NUMBER_STYLE)
        sheet.write(row_index, 1, entry.product_name or "", _TEXT_STYLE)
        sheet.write(row_index, 2, entry.item_number, _TEXT_STYLE)
        sheet.write(row_index, 3, entry.floor_count, _NUMBER_STYLE)
        sheet.write(row_index, 4, entry.storage_count, _NUMBER_STYLE)
        sheet.write(row_index, 5, entry.total_count, _NUMBER_STYLE)
        sheet.write(row_index, 6, _changed_flag(entry, changed_keys), _NUMBER_STYLE)
        row_index += 1

    changed_count = sum(1 for entry in entries if entry.key in changed_keys)
    sheet.write(row_index, 0, "", _TOTAL_STYLE)
    sheet.write(row_index, 1, "", _TOTAL_STYLE)
    sheet.write(row_index, 2, totals_label, _TOTAL_STYLE)
    sheet.write(row_index, 3, sum(entry.floor_count for entry in entries), _TOTAL_STYLE)
    sheet.write(row_index, 4, sum(entry.storage_count for entry in entries), _TOTAL_STYLE)
    sheet.write(row_index, 5, sum(entry.total_count for entry in entries), _TOTAL_STYLE)
    sheet.write(row_index, 6, f"{changed_count} changed", _TOTAL_STYLE)


def inventory_workbook(
    entries: Sequence[Entry],
    categories: Sequence[Category],
    changed: Iterable[Entry] = (),
    *,
    exported_by: str = "",
    exported_at: Optional[datetime] = None,
    title: str = EXPORT_TITLE,
) -> bytes:
    """Build the full export: a summary sheet plus one sheet per category.

    Categories without entries get no sheet. Entries found in ``changed`` are
    flagged ``YES`` in the Changed column.
    """

    if not entries:
        raise ValueError("There are no items to export")
    changed_keys = {entry.key for entry in changed}
    exported_label = (exported_at or datetime.now().astimezone()).strftime("%Y-%m-%d %H:%M")
    exported_by = exported_by or "-"
    names_by_id: Dict[str, str] = {category.id: category.name for category in categories}

    workbook = xlwt.Workbook(encoding="utf-8")
    sheet = workbook.add_sheet("Summary")
    sheet_names: List[str] = ["Summary"]
    _set_widths(sheet, _SUMMARY_WIDTHS)
    sheet.write(0, 0, title, _TITLE_STYLE)
    row_index = _write_metadata(
        sheet,
        1,
        [
            ("Export Date:", exported_label),
            ("Exported By:", exported_by),
            ("Total Items:", len(entries)),
            ("Total Categories:", len(categories)),
            ("Items Changed Since Last Export:", len(changed_keys)),
        ],
    )
    row_index += 1
    for col_index, column in enumerate(SUMMARY_COLUMNS):
        sheet.write(row_index, col_index, column, _HEADER_STYLE)
    row_index += 1

    for position, entry in enumerate(entries, start=1):
        sheet.write(row_index, 0, position, _NUMBER_STYLE)
        sheet.write(row_index, 1, entry.product_name or "", _TEXT_STYLE)
        sheet.write(row_index, 2, entry.item_number, _TEXT_STYLE)
        sheet.write(row_index, 3, names_by_id.get(entry.category, entry.category or "Unknown"), _TEXT_STYLE)
        sheet.write(row_index, 4, entry.floor_count, _NUMBER_STYLE)
        sheet.write(row_index, 5, entry.storage_count, _NUMBER_STYLE)
        sheet.write(row_index, 6, entry.total_count, _NUMBER_STYLE)
        sheet.write(row_index, 7, _changed_flag(entry, changed_keys), _NUMBER_STYLE)
        row_index += 1

    changed_count = sum(1 for entry in entries if entry.key in changed_keys)
    sheet.write(row_index, 0, "", _TOTAL_STYLE)
    sheet.write(row_index, 1, "", _TOTAL_STYLE)
    sheet.write(row_index, 2, "GRAND TOTALS", _TOTAL_STYLE)
    sheet.write(row_index, 3, "", _TOTAL_STYLE)
    sheet.write(row_index, 4, sum(entry.floor_count for entry in entries), _TOTAL_STYLE)
    sheet.write(row_index, 5, sum(entry.storage_count for entry in entries), _TOTAL_STYLE)
    sheet.write(row_index, 6, sum(entry.total_count for entry in entries), _TOTAL_STYLE)
    sheet.write(row_index, 7, f"{changed_count} changed", _TOTAL_STYLE)

    for category in categories:
        category_entries = [entry for entry in entries if entry.category == category.id]
        if not category_entries:
            continue
        sheet_name = sanitize_sheet_name(category.name, sheet_names)
        sheet_names.append(sheet_name)
        _write_category_sheet(
            workbook.add_sheet(sheet_name),
            title=f"{category.name} - {title}",
            category_name=category.name,
            entries=category_entries,
            changed_keys=changed_keys,
            exported_label=exported_label,
            exported_by=exported_by,
            totals_label="CATEGORY TOTALS",
        )

    buffer = BytesIO()
    workbook.save(buffer)
    return buffer.getvalue()


def category_workbook(
    category: Category,
    entries: Sequence[Entry],
    changed: Iterable[Entry] = (),
    *,
    exported_by: str = "",
    exported_at: Optional[datetime] = None,
    title: str = EXPORT_TITLE,
) -> bytes:
    if not entries:
        raise ValueError(f"There are no items in {category.name} to export")
    workbook = xlwt.Workbook(encoding="utf-8")
    _write_category_sheet(
        workbook.add_sheet(sanitize_sheet_name(category.name)),
        title=f"{category.name} - {title}",
        category_name=category.name,
        entries=entries,
        changed_keys={entry.key for entry in changed},
        exported_label=(exported_at or datetime.now().astimezone()).strftime("%Y-%m-%d %H:%M"),
        exported_by=exported_by or "-",
        totals_label="TOTALS",
    )
    buffer = BytesIO()
    workbook.save(buffer)
    return buffer.getvalue()


def rows_to_xls(
    fieldnames: Sequence[str],
    rows: Iterable[Mapping[str, Any]],
    *,
    sheet_name: str = "Sheet1",
) -> bytes:
    workbook = xlwt.Workbook(encoding="utf-8")
    sheet = workbook.add_sheet(sanitize_sheet_name(sheet_name))
    for col_index, field in enumerate(fieldnames):
        sheet.write(0, col_index, field)
    for row_index, row in enumerate(rows, start=1):
        for col_index, field in enumerate(fieldnames):
            value = row.get(field, "")
            sheet.write(row_index, col_index, "" if value is None else value)
    buffer = BytesIO()
    workbook.save(buffer)
    return buffer.getvalue()


def template_workbook() -> bytes:
    """Import template carrying the default headers and one sample row."""

    sample = {
        "ProductName": "Synthetic 5W-30 Quart",
        "ItemNumber": "OIL-5W30-QT",
        "FloorCount": 12,
        "StorageCount": 48,
        "Category": "Oils",
    }
    return rows_to_xls(DEFAULT_HEADERS, [sample], sheet_name="Template")


__all__ = [
    "CATEGORY_COLUMNS",
    "EXPORT_TITLE",
    "SUMMARY_COLUMNS",
    "category_workbook",
    "inventory_workbook",
    "rows_to_xls",
    "sanitize_sheet_name",
    "template_workbook",
]
