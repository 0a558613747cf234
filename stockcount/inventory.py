"""Count storage for the local app, persisted to a JSON file."""
from __future__ import annotations

import json
import logging
from collections import Counter
from dataclasses import dataclass, field
from pathlib import Path
from threading import RLock
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from .ingest import ParseResult, parse_rows
from .models import (
    BUILTIN_CATEGORY_IDS,
    Category,
    Entry,
    ImportSummary,
    Snapshot,
    UploadLog,
    _now,
    _serialize_timestamp,
    default_categories,
    new_entry_id,
    next_identifier,
    slugify_identifier,
)
from .reconcile import UpsertResult, changed_since_snapshot, reconcile_entries

logger = logging.getLogger(__name__)


class PersistenceError(RuntimeError):
    """Raised when parsed import data could not be written.

    ``parsed`` keeps the already-parsed rows so the write can be retried
    through :meth:`InventoryStore.apply_import`.
    """

    def __init__(self, message: str, parsed: ParseResult) -> None:
        super().__init__(message)
        self.parsed = parsed


@dataclass
class InventoryStore:
    """Entries, categories and the last export snapshot in one JSON file."""

    storage_path: Path
    upload_log_path: Optional[Path] = None
    compare_category: bool = False
    _lock: RLock = field(default_factory=RLock, init=False)

    def __post_init__(self) -> None:
        self.storage_path = Path(self.storage_path)
        if self.upload_log_path is None:
            self.upload_log_path = self.storage_path.with_suffix(".uploads.jsonl")
        else:
            self.upload_log_path = Path(self.upload_log_path)
        with self._lock:
            state = self._load_state_locked()
            self._write_state_unlocked(state)
        self.upload_log_path.parent.mkdir(parents=True, exist_ok=True)

    # ------------------------------------------------------------------
    # Categories
    # ------------------------------------------------------------------
    def list_categories(self) -> List[Category]:
        with self._lock:
            return self._categories(self._load_state_locked())

    def get_category(self, category_id: str) -> Category:
        for category in self.list_categories():
            if category.id == category_id:
                return category
        raise KeyError(f"Category '{category_id}' not found")

    def create_category(
        self,
        name: str,
        *,
        icon: str = "",
        color: str = "",
        is_locked: bool = False,
    ) -> Category:
        candidate = name.strip()
        if not candidate:
            raise ValueError("Category name cannot be empty")
        with self._lock:
            state = self._load_state_locked()
            categories = self._categories(state)
            if any(category.name.lower() == candidate.lower() for category in categories):
                raise ValueError(f"Category '{candidate}' already exists")
            base = slugify_identifier(candidate, fallback="category")
            category_id = next_identifier(base, (category.id for category in categories))
            now = _now()
            category = Category(
                id=category_id,
                name=candidate,
                icon=icon,
                color=color,
                is_locked=is_locked,
                is_custom=True,
                created_at=now,
                updated_at=now,
            )
            categories.append(category)
            state["categories"] = [item.to_dict() for item in categories]
            self._write_state_unlocked(state)
            logger.info("Created category %s (%s)", category.name, category.id)
            return category

    def update_category(
        self,
        category_id: str,
        *,
        name: Optional[str] = None,
        icon: Optional[str] = None,
        color: Optional[str] = None,
    ) -> Category:
        with self._lock:
            state = self._load_state_locked()
            categories = self._categories(state)
            category = self._find_category(categories, category_id)
            if name is not None:
                candidate = name.strip()
                if not candidate:
                    raise ValueError("Category name cannot be empty")
                category.name = candidate
            if icon is not None:
                category.icon = icon
            if color is not None:
                category.color = color
            category.updated_at = _now()
            state["categories"] = [item.to_dict() for item in categories]
            self._write_state_unlocked(state)
            return category

    def toggle_category_lock(self, category_id: str) -> Category:
        with self._lock:
            state = self._load_state_locked()
            categories = self._categories(state)
            category = self._find_category(categories, category_id)
            category.is_locked = not category.is_locked
            category.updated_at = _now()
            state["categories"] = [item.to_dict() for item in categories]
            self._write_state_unlocked(state)
            return category

    def delete_category(self, category_id: str) -> int:
        """Delete a custom category and every entry filed under it.

        Returns the number of entries removed with it.
        """

        with self._lock:
            state = self._load_state_locked()
            categories = self._categories(state)
            category = self._find_category(categories, category_id)
            if not category.is_custom:
                raise ValueError(f"Built-in category '{category.name}' cannot be deleted")
            entries = self._entries(state)
            remaining = [entry for entry in entries if entry.category != category_id]
            removed = len(entries) - len(remaining)
            state["categories"] = [item.to_dict() for item in categories if item.id != category_id]
            state["entries"] = [entry.to_dict() for entry in remaining]
            self._write_state_unlocked(state)
            logger.info(
                "Deleted category %s and %d entries", category_id, removed
            )
            return removed

    # ------------------------------------------------------------------
    # Entries
    # ------------------------------------------------------------------
    def list_entries(self, category: Optional[str] = None) -> List[Entry]:
        with self._lock:
            entries = self._entries(self._load_state_locked())
        if category:
            return [entry for entry in entries if entry.category == category]
        return entries

    def get_entry(self, entry_id: str) -> Entry:
        for entry in self.list_entries():
            if entry.id == entry_id:
                return entry
        raise KeyError(f"Entry '{entry_id}' not found")

    def find_entry(self, item_number: str) -> Optional[Entry]:
        key = item_number.strip().lower()
        for entry in self.list_entries():
            if entry.key == key:
                return entry
        return None

    def add_entry(
        self,
        item_number: str,
        *,
        category: str,
        floor_count: int = 0,
        storage_count: int = 0,
        product_name: Optional[str] = None,
    ) -> Entry:
        """Record counts for an item number, updating it in place if it exists."""

        item_number = item_number.strip()
        if not item_number:
            raise ValueError("Item number cannot be empty")
        self._check_counts(floor_count, storage_count)
        with self._lock:
            state = self._load_state_locked()
            self._require_category(state, category)
            entries = self._entries(state)
            existing = next(
                (entry for entry in entries if entry.key == item_number.lower()), None
            )
            entry = Entry(
                id=existing.id if existing is not None else new_entry_id(),
                item_number=item_number,
                product_name=product_name or None,
                floor_count=floor_count,
                storage_count=storage_count,
                category=category,
            )
            result = reconcile_entries(entries, [entry])
            state["entries"] = [item.to_dict() for item in result.merged]
            self._write_state_unlocked(state)
            return entry

    def update_entry(
        self,
        entry_id: str,
        *,
        item_number: Optional[str] = None,
        product_name: Optional[str] = None,
        floor_count: Optional[int] = None,
        storage_count: Optional[int] = None,
        category: Optional[str] = None,
    ) -> Entry:
        with self._lock:
            state = self._load_state_locked()
            entries = self._entries(state)
            entry = next((item for item in entries if item.id == entry_id), None)
            if entry is None:
                raise KeyError(f"Entry '{entry_id}' not found")
            if item_number is not None:
                candidate = item_number.strip()
                if not candidate:
                    raise ValueError("Item number cannot be empty")
                if any(
                    other.key == candidate.lower() and other.id != entry_id
                    for other in entries
                ):
                    raise ValueError(f"Item number '{candidate}' already exists")
                entry.item_number = candidate
            if product_name is not None:
                entry.product_name = product_name.strip() or None
            if floor_count is not None:
                self._check_counts(floor_count, 0)
                entry.floor_count = floor_count
            if storage_count is not None:
                self._check_counts(0, storage_count)
                entry.storage_count = storage_count
            if category is not None:
                self._require_category(state, category)
                entry.category = category
            state["entries"] = [item.to_dict() for item in entries]
            self._write_state_unlocked(state)
            return entry

    def delete_entry(self, entry_id: str) -> None:
        with self._lock:
            state = self._load_state_locked()
            entries = self._entries(state)
            remaining = [entry for entry in entries if entry.id != entry_id]
            if len(remaining) == len(entries):
                raise KeyError(f"Entry '{entry_id}' not found")
            state["entries"] = [entry.to_dict() for entry in remaining]
            self._write_state_unlocked(state)

    def reset_floor_counts(self) -> int:
        return self._reset_counts(floor=True)

    def reset_storage_counts(self) -> int:
        return self._reset_counts(storage=True)

    def reset_entries(self) -> int:
        with self._lock:
            state = self._load_state_locked()
            removed = len(state["entries"])
            state["entries"] = []
            self._write_state_unlocked(state)
        logger.info("Removed all %d entries", removed)
        return removed

    # ------------------------------------------------------------------
    # Import
    # ------------------------------------------------------------------
    def parse_import(self, rows: Iterable[Sequence[object]]) -> ParseResult:
        return parse_rows(rows, self.list_categories())

    def apply_import(self, parsed: ParseResult, *, file_name: str = "") -> ImportSummary:
        with self._lock:
            state = self._load_state_locked()
            result: UpsertResult = reconcile_entries(self._entries(state), parsed.entries)
            state["entries"] = [entry.to_dict() for entry in result.merged]
            try:
                self._write_state_unlocked(state)
            except OSError as exc:
                logger.error("Failed to save imported data: %s", exc)
                raise PersistenceError(f"Failed to save imported data: {exc}", parsed) from exc
            counts = Counter(entry.category for entry in result.merged)
            category_counts = {
                category.name: counts.get(category.id, 0)
                for category in self._categories(state)
            }
        summary = ImportSummary(
            file_name=file_name,
            processed=parsed.processed_count,
            new=result.new_count,
            updated=result.updated_count,
            errors=parsed.error_messages(),
            error_count=parsed.error_count,
            category_counts=category_counts,
        )
        self._append_upload_log(
            UploadLog(
                timestamp=_now(),
                file_name=file_name,
                total_items=summary.processed,
                new_items=summary.new,
                updated_items=summary.updated,
                skipped_items=summary.error_count,
                category_counts=category_counts,
            )
        )
        logger.info("%s%s", summary.message, f" from {file_name}" if file_name else "")
        return summary

    def import_rows(
        self, rows: Iterable[Sequence[object]], *, file_name: str = ""
    ) -> ImportSummary:
        return self.apply_import(self.parse_import(rows), file_name=file_name)

    def list_upload_logs(self, *, limit: Optional[int] = None) -> List[UploadLog]:
        if self.upload_log_path is None:
            return []
        with self._lock:
            if not self.upload_log_path.exists():
                return []
            raw_lines = self.upload_log_path.read_text(encoding="utf-8").splitlines()
        logs: List[UploadLog] = []
        for line in raw_lines:
            if not line.strip():
                continue
            try:
                payload = json.loads(line)
            except json.JSONDecodeError:
                continue
            if not isinstance(payload, dict):
                continue
            try:
                logs.append(UploadLog.from_record(payload))
            except ValueError:
                continue
        logs.sort(key=lambda log: log.timestamp, reverse=True)
        if limit is not None and limit >= 0:
            return logs[:limit]
        return logs

    # ------------------------------------------------------------------
    # Export tracking
    # ------------------------------------------------------------------
    def mark_export_snapshot(self) -> Snapshot:
        with self._lock:
            state = self._load_state_locked()
            snapshot = Snapshot.capture(self._entries(state))
            state["snapshot"] = snapshot.to_record()
            self._write_state_unlocked(state)
        logger.info(
            "Export snapshot captured with %d entries at %s",
            len(snapshot.entries),
            _serialize_timestamp(snapshot.captured_at),
        )
        return snapshot

    def latest_snapshot(self) -> Optional[Snapshot]:
        with self._lock:
            state = self._load_state_locked()
        raw = state.get("snapshot")
        if not isinstance(raw, dict):
            return None
        try:
            return Snapshot.from_record(raw)
        except ValueError:
            return None

    def changed_entries(self, *, compare_category: Optional[bool] = None) -> List[Entry]:
        snapshot = self.latest_snapshot()
        if compare_category is None:
            compare_category = self.compare_category
        return changed_since_snapshot(
            self.list_entries(),
            snapshot.entries if snapshot is not None else None,
            compare_category=compare_category,
        )

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    @staticmethod
    def _check_counts(floor_count: int, storage_count: int) -> None:
        if floor_count < 0 or storage_count < 0:
            raise ValueError("Counts cannot be negative")

    @staticmethod
    def _find_category(categories: List[Category], category_id: str) -> Category:
        for category in categories:
            if category.id == category_id:
                return category
        raise KeyError(f"Category '{category_id}' not found")

    def _require_category(self, state: Dict[str, Any], category_id: str) -> None:
        if not any(category.id == category_id for category in self._categories(state)):
            raise ValueError(f"Unknown category '{category_id}'")

    def _reset_counts(self, *, floor: bool = False, storage: bool = False) -> int:
        with self._lock:
            state = self._load_state_locked()
            entries = self._entries(state)
            for entry in entries:
                if floor:
                    entry.floor_count = 0
                if storage:
                    entry.storage_count = 0
            state["entries"] = [entry.to_dict() for entry in entries]
            self._write_state_unlocked(state)
        return len(entries)

    @staticmethod
    def _entries(state: Dict[str, Any]) -> List[Entry]:
        return [Entry.from_record(record) for record in state["entries"]]

    @staticmethod
    def _categories(state: Dict[str, Any]) -> List[Category]:
        return [Category.from_record(record) for record in state["categories"]]

    def _initial_state(self) -> Dict[str, Any]:
        return {
            "entries": [],
            "categories": [category.to_dict() for category in default_categories()],
            "snapshot": None,
            "meta": {"last_saved": _serialize_timestamp(_now())},
        }

    def _load_state_locked(self) -> Dict[str, Any]:
        if not self.storage_path.exists():
            state = self._initial_state()
            self._write_state_unlocked(state)
            return state
        raw = self.storage_path.read_text(encoding="utf-8") or "{}"
        try:
            state = json.loads(raw)
        except json.JSONDecodeError:
            logger.warning("Unreadable store at %s, starting from defaults", self.storage_path)
            state = {}
        changed, upgraded = self._upgrade_state(state)
        if changed:
            self._write_state_unlocked(upgraded)
        return upgraded

    def _write_state_unlocked(self, state: Dict[str, Any]) -> None:
        self.storage_path.parent.mkdir(parents=True, exist_ok=True)
        state.setdefault("meta", {})["last_saved"] = _serialize_timestamp(_now())
        temp_path = self.storage_path.with_suffix(".tmp")
        temp_path.write_text(json.dumps(state, indent=2, ensure_ascii=False), encoding="utf-8")
        temp_path.replace(self.storage_path)

    def _append_upload_log(self, log: UploadLog) -> None:
        if self.upload_log_path is None:
            return
        self.upload_log_path.parent.mkdir(parents=True, exist_ok=True)
        with self.upload_log_path.open("a", encoding="utf-8") as handle:
            handle.write(json.dumps(log.to_record(), ensure_ascii=False) + "\n")

    def _upgrade_state(self, state: Any) -> Tuple[bool, Dict[str, Any]]:
        changed = False
        if not isinstance(state, dict):
            state = {}
            changed = True

        categories_raw = state.get("categories")
        categories: List[Category] = []
        if isinstance(categories_raw, list):
            for record in categories_raw:
                if not isinstance(record, dict):
                    changed = True
                    continue
                try:
                    categories.append(Category.from_record(record))
                except ValueError:
                    changed = True
        else:
            categories = default_categories()
            changed = True
        known_ids = {category.id for category in categories}
        for builtin in default_categories():
            if builtin.id not in known_ids:
                categories.append(builtin)
                known_ids.add(builtin.id)
                changed = True

        entries_raw = state.get("entries")
        entries: List[Entry] = []
        if not isinstance(entries_raw, list):
            entries_raw = []
            changed = True
        seen: Dict[str, int] = {}
        for record in entries_raw:
            if not isinstance(record, dict):
                changed = True
                continue
            try:
                entry = Entry.from_record(record)
            except ValueError:
                changed = True
                continue
            if not entry.category:
                entry.category = "misc"
                changed = True
            if entry.category not in known_ids:
                now = _now()
                categories.append(
                    Category(
                        id=entry.category,
                        name=entry.category,
                        is_custom=entry.category not in BUILTIN_CATEGORY_IDS,
                        created_at=now,
                        updated_at=now,
                    )
                )
                known_ids.add(entry.category)
                changed = True
            if entry.key in seen:
                entries[seen[entry.key]] = entry
                changed = True
                continue
            seen[entry.key] = len(entries)
            entries.append(entry)

        snapshot = state.get("snapshot")
        if snapshot is not None and not isinstance(snapshot, dict):
            snapshot = None
            changed = True
        meta = state.get("meta")
        if not isinstance(meta, dict):
            meta = {}
            changed = True

        upgraded = {
            "entries": [entry.to_dict() for entry in entries],
            "categories": [category.to_dict() for category in categories],
            "snapshot": snapshot,
            "meta": meta,
        }
        return changed, upgraded


__all__ = ["ImportSummary", "InventoryStore", "PersistenceError"]
