"""Spreadsheet ingestion: header roles, category matching and row normalisation."""
from __future__ import annotations

import csv
import logging
import re
from dataclasses import dataclass, field
from io import BytesIO, StringIO
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Optional, Protocol, Sequence, Tuple

import openpyxl
import xlrd

from .models import Entry, new_entry_id

logger = logging.getLogger(__name__)


ROLE_ITEM_NUMBER = "item-number"
ROLE_PRODUCT_NAME = "product-name"
ROLE_FLOOR_COUNT = "floor-count"
ROLE_STORAGE_COUNT = "storage-count"
ROLE_CATEGORY = "category"

# Resolution order matters: a column claimed by an earlier role is not
# offered to later ones.
ROLE_CANDIDATES: Dict[str, Tuple[str, ...]] = {
    ROLE_ITEM_NUMBER: ("itemnumber", "item", "sku", "code", "partnumber"),
    ROLE_PRODUCT_NAME: ("productname", "product", "name", "description"),
    ROLE_FLOOR_COUNT: ("floorcount", "floor"),
    ROLE_STORAGE_COUNT: ("storagecount", "storage", "warehouse", "stock"),
    ROLE_CATEGORY: ("category", "type", "group", "section"),
}

REQUIRED_ROLES: Tuple[str, ...] = (
    ROLE_ITEM_NUMBER,
    ROLE_FLOOR_COUNT,
    ROLE_STORAGE_COUNT,
    ROLE_CATEGORY,
)

DEFAULT_HEADERS: Tuple[str, ...] = (
    "ProductName",
    "ItemNumber",
    "FloorCount",
    "StorageCount",
    "Category",
)

_HEADER_NOISE = re.compile(r"[\s_\-\ufeff]+")
_CATEGORY_NOISE = re.compile(r"[\s_\-]+")
_STRIPPED_WORDS = ("filter", "oil", "air", "cabin")


class CategoryLike(Protocol):
    id: str
    name: str


class TableFormatError(ValueError):
    """Raised when a file cannot be processed at all."""


class MissingColumnsError(TableFormatError):
    """Raised when required column roles cannot be found in the header row."""

    def __init__(self, missing: Sequence[str], headers: Sequence[str] = ()) -> None:
        self.missing = list(missing)
        self.headers = list(headers)
        super().__init__(
            f"Missing required columns: {', '.join(self.missing)}. "
            f"Expected headers: {', '.join(DEFAULT_HEADERS)}"
        )


class RowError(ValueError):
    """A single data row that could not be turned into an entry."""

    def __init__(self, row_index: int, reason: str) -> None:
        self.row_index = row_index
        self.reason = reason
        super().__init__(f"Row {row_index}: {reason}")

    def to_dict(self) -> Dict[str, object]:
        return {"row": self.row_index, "reason": self.reason, "message": str(self)}


@dataclass(frozen=True)
class RoleMap:
    """Column index for each resolved role."""

    item_number: int
    floor_count: int
    storage_count: int
    category: int
    product_name: Optional[int] = None

    @property
    def max_index(self) -> int:
        indices = [self.item_number, self.floor_count, self.storage_count, self.category]
        if self.product_name is not None:
            indices.append(self.product_name)
        return max(indices)

    def as_dict(self) -> Dict[str, Optional[int]]:
        return {
            ROLE_ITEM_NUMBER: self.item_number,
            ROLE_PRODUCT_NAME: self.product_name,
            ROLE_FLOOR_COUNT: self.floor_count,
            ROLE_STORAGE_COUNT: self.storage_count,
            ROLE_CATEGORY: self.category,
        }


@dataclass
class ParseResult:
    entries: List[Entry] = field(default_factory=list)
    errors: List[RowError] = field(default_factory=list)
    headers: List[str] = field(default_factory=list)

    @property
    def processed_count(self) -> int:
        return len(self.entries)

    @property
    def error_count(self) -> int:
        return len(self.errors)

    def error_messages(self, limit: Optional[int] = None) -> List[str]:
        messages = [str(error) for error in self.errors]
        if limit is not None and limit >= 0:
            return messages[:limit]
        return messages


# ----------------------------------------------------------------------
# Header matching
# ----------------------------------------------------------------------
def normalize_header(value: object) -> str:
    if value is None:
        return ""
    return _HEADER_NOISE.sub("", str(value)).lower()


def resolve_headers(headers: Sequence[object]) -> RoleMap:
    """Map a header row to column roles.

    Exact matches against the candidate list are bound first, then each
    unresolved role takes the leftmost unclaimed column that contains one of
    its candidates.
    """

    normalized = [normalize_header(header) for header in headers]
    claimed: Dict[int, str] = {}
    resolved: Dict[str, int] = {}

    for role, candidates in ROLE_CANDIDATES.items():
        for index, header in enumerate(normalized):
            if index in claimed or not header:
                continue
            if header in candidates:
                resolved[role] = index
                claimed[index] = role
                break

    for role, candidates in ROLE_CANDIDATES.items():
        if role in resolved:
            continue
        for index, header in enumerate(normalized):
            if index in claimed or not header:
                continue
            if any(candidate in header for candidate in candidates):
                resolved[role] = index
                claimed[index] = role
                break

    missing = [role for role in REQUIRED_ROLES if role not in resolved]
    if missing:
        raise MissingColumnsError(missing, [str(header) for header in headers])
    return RoleMap(
        item_number=resolved[ROLE_ITEM_NUMBER],
        floor_count=resolved[ROLE_FLOOR_COUNT],
        storage_count=resolved[ROLE_STORAGE_COUNT],
        category=resolved[ROLE_CATEGORY],
        product_name=resolved.get(ROLE_PRODUCT_NAME),
    )


# ----------------------------------------------------------------------
# Category matching
# ----------------------------------------------------------------------
def _squash(value: str) -> str:
    return _CATEGORY_NOISE.sub("", value.lower())


def _variants(value: str) -> List[str]:
    variants = [re.sub(r"s$", "", value), value + "s"]
    variants.extend(value.replace(word, "").strip() for word in _STRIPPED_WORDS)
    return [variant for variant in variants if variant]


def match_category(value: Optional[str], categories: Sequence[CategoryLike]) -> Optional[str]:
    """Resolve free text to a known category id, or ``None``."""

    text = (value or "").strip().lower()
    if not text:
        return None
    known = [(category.id, category.id.lower(), category.name.lower()) for category in categories]

    for category_id, cat_id, _ in known:
        if cat_id == text:
            return category_id

    for category_id, _, cat_name in known:
        if cat_name == text:
            return category_id

    squashed = _squash(text)
    for category_id, cat_id, cat_name in known:
        if (
            _squash(cat_name) == squashed
            or _squash(cat_id) == squashed
            or re.sub(r"\s+", "-", cat_name) == text
            or cat_id.replace("-", " ") == text
        ):
            return category_id

    for category_id, cat_id, cat_name in known:
        if text in cat_name or cat_name in text or text in cat_id or cat_id in text:
            return category_id

    for variant in _variants(text):
        for category_id, cat_id, cat_name in known:
            if (
                variant in cat_name
                or variant in cat_id
                or cat_name in variant
                or cat_id in variant
            ):
                return category_id
    return None


# ----------------------------------------------------------------------
# Row normalisation
# ----------------------------------------------------------------------
def clean_cell(value: object) -> str:
    if value is None:
        return ""
    text = str(value).strip()
    if len(text) >= 1 and text[0] in "\"'":
        text = text[1:]
    if len(text) >= 1 and text[-1] in "\"'":
        text = text[:-1]
    return text.strip()


def parse_count(value: object) -> int:
    """Lenient count parsing: anything that is not a non-negative integer is 0."""

    text = clean_cell(value)
    if not text:
        return 0
    try:
        parsed = int(text)
    except ValueError:
        try:
            as_float = float(text)
        except ValueError:
            return 0
        if not as_float.is_integer():
            return 0
        parsed = int(as_float)
    if parsed < 0:
        return 0
    return parsed


def normalize_row(
    row: Sequence[object],
    roles: RoleMap,
    categories: Sequence[CategoryLike],
    row_index: int,
    *,
    id_factory: Optional[Callable[[], str]] = None,
) -> Entry:
    cells = [clean_cell(value) for value in row]
    if len(cells) <= roles.max_index:
        raise RowError(
            row_index,
            f"insufficient columns (expected {roles.max_index + 1}, got {len(cells)})",
        )

    item_number = cells[roles.item_number]
    if not item_number:
        raise RowError(row_index, "empty item number")

    product_name: Optional[str] = None
    if roles.product_name is not None:
        product_name = cells[roles.product_name] or None

    floor_count = parse_count(cells[roles.floor_count])
    storage_count = parse_count(cells[roles.storage_count])

    category_text = cells[roles.category].strip().lower()
    category_id = match_category(category_text, categories)
    if category_id is None:
        available = ", ".join(f'"{category.name}" ({category.id})' for category in categories)
        raise RowError(
            row_index,
            f'category not recognized: "{category_text}". Available: {available}',
        )

    factory = id_factory or new_entry_id
    return Entry(
        id=factory(),
        item_number=item_number,
        product_name=product_name,
        floor_count=floor_count,
        storage_count=storage_count,
        category=category_id,
    )


def _is_blank(row: Sequence[object]) -> bool:
    return not any(clean_cell(value) for value in row)


def parse_rows(
    rows: Iterable[Sequence[object]],
    categories: Sequence[CategoryLike],
    *,
    id_factory: Optional[Callable[[], str]] = None,
) -> ParseResult:
    """Turn a header row plus data rows into entries and row errors."""

    materialized = [list(row) for row in rows if row is not None]
    if not materialized:
        raise TableFormatError("File is empty")
    non_blank = [row for row in materialized if not _is_blank(row)]
    if not non_blank:
        raise TableFormatError("Missing header row")
    headers = [clean_cell(value) for value in non_blank[0]]
    data_rows = non_blank[1:]
    if not data_rows:
        raise TableFormatError("File must contain headers and at least one data row")

    roles = resolve_headers(headers)
    result = ParseResult(headers=headers)
    for row_index, row in enumerate(data_rows, start=1):
        try:
            entry = normalize_row(row, roles, categories, row_index, id_factory=id_factory)
        except RowError as exc:
            logger.warning("Skipping %s", exc)
            result.errors.append(exc)
            continue
        result.entries.append(entry)
    logger.info(
        "Parsed %d rows: %d entries, %d errors",
        len(data_rows),
        result.processed_count,
        result.error_count,
    )
    return result


# ----------------------------------------------------------------------
# Table readers
# ----------------------------------------------------------------------
def read_csv_rows(text: str) -> List[List[str]]:
    if text.startswith("\ufeff"):
        text = text[1:]
    reader = csv.reader(StringIO(text), skipinitialspace=True)
    return [row for row in reader]


def read_xls_rows(data: bytes) -> List[List[str]]:
    try:
        workbook = xlrd.open_workbook(file_contents=data)
    except Exception as exc:
        raise TableFormatError("Invalid XLS file") from exc
    if workbook.nsheets == 0:
        raise TableFormatError("No sheets found in workbook")
    sheet = workbook.sheet_by_index(0)
    rows: List[List[str]] = []
    for row_index in range(sheet.nrows):
        values: List[str] = []
        for col_index in range(sheet.ncols):
            cell = sheet.cell(row_index, col_index)
            if cell.ctype in (xlrd.XL_CELL_EMPTY, xlrd.XL_CELL_BLANK):
                values.append("")
            elif cell.ctype == xlrd.XL_CELL_NUMBER:
                number = float(cell.value)
                values.append(str(int(number)) if number.is_integer() else str(number))
            else:
                values.append(str(cell.value).strip())
        rows.append(values)
    return rows


def read_xlsx_rows(data: bytes) -> List[List[str]]:
    try:
        workbook = openpyxl.load_workbook(BytesIO(data), data_only=True, read_only=True)
    except Exception as exc:
        raise TableFormatError("Invalid XLSX file") from exc
    try:
        if not workbook.worksheets:
            raise TableFormatError("No sheets found in workbook")
        sheet = workbook.worksheets[0]
        rows: List[List[str]] = []
        for raw in sheet.iter_rows(values_only=True):
            values: List[str] = []
            for value in raw:
                if value is None:
                    values.append("")
                elif isinstance(value, float) and value.is_integer():
                    values.append(str(int(value)))
                else:
                    values.append(str(value).strip())
            rows.append(values)
        return rows
    finally:
        workbook.close()


def read_table(data: bytes | str, filename: str = "") -> List[List[str]]:
    """Read raw rows from uploaded file content, dispatching on extension."""

    if isinstance(data, str):
        return read_csv_rows(data)
    if not data:
        raise TableFormatError("File is empty")
    extension = Path(filename or "").suffix.lower()
    if extension == ".xls":
        return read_xls_rows(data)
    if extension == ".xlsx":
        return read_xlsx_rows(data)
    try:
        text = data.decode("utf-8-sig")
    except UnicodeDecodeError as exc:
        raise TableFormatError("File must be UTF-8 encoded CSV, XLS or XLSX") from exc
    return read_csv_rows(text)


__all__ = [
    "DEFAULT_HEADERS",
    "MissingColumnsError",
    "ParseResult",
    "REQUIRED_ROLES",
    "ROLE_CANDIDATES",
    "RoleMap",
    "RowError",
    "TableFormatError",
    "match_category",
    "normalize_header",
    "normalize_row",
    "parse_count",
    "parse_rows",
    "read_csv_rows",
    "read_table",
    "read_xls_rows",
    "read_xlsx_rows",
    "resolve_headers",
]
