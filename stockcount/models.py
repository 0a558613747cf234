"""Record types shared by the local store, the reports and the service."""
from __future__ import annotations

import re
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Tuple


def _parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _serialize_timestamp(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    return value.astimezone(timezone.utc).isoformat()


def _now() -> datetime:
    return datetime.now(timezone.utc)


def new_entry_id() -> str:
    return f"in_{uuid.uuid4().hex}"


def slugify_identifier(value: str, *, fallback: str) -> str:
    normalized = re.sub(r"[^a-z0-9]+", "-", value.strip().lower())
    normalized = normalized.strip("-")
    if not normalized:
        normalized = fallback
    return normalized


def next_identifier(base: str, existing: Iterable[str]) -> str:
    existing = set(existing)
    if base not in existing:
        return base
    index = 2
    while f"{base}-{index}" in existing:
        index += 1
    return f"{base}-{index}"


def _coerce_count(value: Any) -> int:
    try:
        count = int(value)
    except (TypeError, ValueError):
        return 0
    return count if count >= 0 else 0


@dataclass
class Entry:
    """One counted SKU. ``total_count`` is always derived."""

    id: str
    item_number: str
    category: str
    floor_count: int = 0
    storage_count: int = 0
    product_name: Optional[str] = None

    @property
    def total_count(self) -> int:
        return self.floor_count + self.storage_count

    @property
    def key(self) -> str:
        return self.item_number.lower()

    def copy(self) -> "Entry":
        return replace(self)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "itemNumber": self.item_number,
            "productName": self.product_name,
            "floorCount": self.floor_count,
            "storageCount": self.storage_count,
            "totalCount": self.total_count,
            "category": self.category,
        }

    @classmethod
    def from_record(cls, record: Dict[str, Any]) -> "Entry":
        item_number = str(record.get("itemNumber") or record.get("item_number") or "").strip()
        if not item_number:
            raise ValueError("Entry record is missing an item number")
        product_name = record.get("productName", record.get("product_name"))
        return cls(
            id=str(record.get("id") or new_entry_id()),
            item_number=item_number,
            product_name=None if product_name in (None, "") else str(product_name),
            floor_count=_coerce_count(record.get("floorCount", record.get("floor_count"))),
            storage_count=_coerce_count(
                record.get("storageCount", record.get("storage_count"))
            ),
            category=str(record.get("category") or "").strip(),
        )


@dataclass
class Category:
    """A named bucket of entries."""

    id: str
    name: str
    icon: str = ""
    color: str = ""
    is_locked: bool = False
    is_custom: bool = True
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "icon": self.icon,
            "color": self.color,
            "isLocked": self.is_locked,
            "isCustom": self.is_custom,
            "createdAt": _serialize_timestamp(self.created_at),
            "updatedAt": _serialize_timestamp(self.updated_at),
        }

    @classmethod
    def from_record(cls, record: Dict[str, Any]) -> "Category":
        category_id = str(record.get("id") or "").strip()
        if not category_id:
            raise ValueError("Category record is missing an id")
        name = record.get("name")
        return cls(
            id=category_id,
            name=str(name) if isinstance(name, str) and name else category_id,
            icon=str(record.get("icon") or ""),
            color=str(record.get("color") or ""),
            is_locked=bool(record.get("isLocked", False)),
            is_custom=category_id not in BUILTIN_CATEGORY_IDS,
            created_at=_parse_timestamp(record.get("createdAt")),
            updated_at=_parse_timestamp(record.get("updatedAt")),
        )


@dataclass(frozen=True)
class Snapshot:
    """Entries as they were at the moment of an export."""

    captured_at: datetime
    entries: Tuple[Entry, ...] = ()

    @classmethod
    def capture(cls, entries: Iterable[Entry], *, at: Optional[datetime] = None) -> "Snapshot":
        return cls(captured_at=at or _now(), entries=tuple(entry.copy() for entry in entries))

    def to_record(self) -> Dict[str, Any]:
        return {
            "capturedAt": _serialize_timestamp(self.captured_at),
            "entries": [entry.to_dict() for entry in self.entries],
        }

    @classmethod
    def from_record(cls, record: Dict[str, Any]) -> "Snapshot":
        captured_at = _parse_timestamp(record.get("capturedAt"))
        if captured_at is None:
            raise ValueError("Invalid timestamp in snapshot record")
        entries: List[Entry] = []
        for raw in record.get("entries") or []:
            if not isinstance(raw, dict):
                continue
            try:
                entries.append(Entry.from_record(raw))
            except ValueError:
                continue
        return cls(captured_at=captured_at, entries=tuple(entries))


@dataclass
class UploadLog:
    """Summary of one completed import."""

    timestamp: datetime
    file_name: str
    total_items: int
    new_items: int
    updated_items: int
    skipped_items: int
    category_counts: Dict[str, int] = field(default_factory=dict)

    def to_record(self) -> Dict[str, Any]:
        return {
            "timestamp": _serialize_timestamp(self.timestamp),
            "fileName": self.file_name,
            "totalItems": self.total_items,
            "newItems": self.new_items,
            "updatedItems": self.updated_items,
            "skippedItems": self.skipped_items,
            "categoryCounts": dict(self.category_counts),
        }

    @classmethod
    def from_record(cls, record: Dict[str, Any]) -> "UploadLog":
        timestamp = _parse_timestamp(record.get("timestamp"))
        if timestamp is None:
            raise ValueError("Invalid timestamp in upload log record")
        counts = record.get("categoryCounts")
        return cls(
            timestamp=timestamp,
            file_name=str(record.get("fileName") or ""),
            total_items=_coerce_count(record.get("totalItems")),
            new_items=_coerce_count(record.get("newItems")),
            updated_items=_coerce_count(record.get("updatedItems")),
            skipped_items=_coerce_count(record.get("skippedItems")),
            category_counts=dict(counts) if isinstance(counts, dict) else {},
        )


@dataclass
class ImportSummary:
    file_name: str
    processed: int
    new: int
    updated: int
    errors: List[str]
    error_count: int
    category_counts: Dict[str, int] = field(default_factory=dict)

    @property
    def success(self) -> bool:
        return self.processed > 0

    @property
    def message(self) -> str:
        if self.processed > 0:
            message = (
                f"Successfully processed {self.processed} items "
                f"({self.new} new, {self.updated} updated)"
            )
            if self.error_count:
                message += f" with {self.error_count} errors"
            return message
        if self.error_count:
            return f"No items were processed ({self.error_count} errors)"
        return "No items were processed"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "message": self.message,
            "fileName": self.file_name,
            "processed": self.processed,
            "new": self.new,
            "updated": self.updated,
            "errorCount": self.error_count,
            "errors": list(self.errors),
            "categoryCounts": dict(self.category_counts),
        }


_BUILTIN_CATEGORIES: Tuple[Tuple[str, str, str, str], ...] = (
    ("oils", "Oils", "drop.fill", "#007AFF"),
    ("oil-filters", "Oil Filters", "circle.hexagongrid.fill", "#FF9500"),
    ("air-filters", "Air Filters", "wind", "#5856D6"),
    ("cabin-filters", "Cabin Filters", "car.fill", "#34C759"),
    ("wipers", "Wipers", "drop.triangle.fill", "#FF3B30"),
    ("misc", "Miscellaneous", "ellipsis.circle.fill", "#8E8E93"),
)

BUILTIN_CATEGORY_IDS = frozenset(category_id for category_id, *_ in _BUILTIN_CATEGORIES)


def default_categories() -> List[Category]:
    now = _now()
    return [
        Category(
            id=category_id,
            name=name,
            icon=icon,
            color=color,
            is_locked=True,
            is_custom=False,
            created_at=now,
            updated_at=now,
        )
        for category_id, name, icon, color in _BUILTIN_CATEGORIES
    ]


__all__ = [
    "BUILTIN_CATEGORY_IDS",
    "Category",
    "Entry",
    "ImportSummary",
    "Snapshot",
    "UploadLog",
    "default_categories",
    "new_entry_id",
    "next_identifier",
    "slugify_identifier",
]
