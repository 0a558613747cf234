"""Change detection against export snapshots and bulk upsert reconciliation."""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Sequence

from .models import Entry

logger = logging.getLogger(__name__)


@dataclass
class UpsertResult:
    merged: List[Entry] = field(default_factory=list)
    new_count: int = 0
    updated_count: int = 0


def _item_key(item_number: str, *, case_sensitive: bool) -> str:
    return item_number if case_sensitive else item_number.lower()


def has_changed(
    current: Entry,
    previous: Optional[Entry],
    *,
    compare_category: bool = False,
) -> bool:
    if previous is None:
        return True
    if current.floor_count != previous.floor_count:
        return True
    if current.storage_count != previous.storage_count:
        return True
    if current.product_name != previous.product_name:
        return True
    if compare_category and current.category != previous.category:
        return True
    return False


def changed_since_snapshot(
    current: Sequence[Entry],
    snapshot: Optional[Iterable[Entry]],
    *,
    case_sensitive: bool = False,
    compare_category: bool = False,
) -> List[Entry]:
    """Return the entries of ``current`` that are new or different since ``snapshot``.

    Without a snapshot every entry counts as changed. Order follows
    ``current``.
    """

    previous_entries = list(snapshot or [])
    if not previous_entries:
        return list(current)

    lookup: Dict[str, Entry] = {}
    for entry in previous_entries:
        lookup.setdefault(_item_key(entry.item_number, case_sensitive=case_sensitive), entry)

    changed = [
        entry
        for entry in current
        if has_changed(
            entry,
            lookup.get(_item_key(entry.item_number, case_sensitive=case_sensitive)),
            compare_category=compare_category,
        )
    ]
    logger.debug("%d of %d entries changed since snapshot", len(changed), len(current))
    return changed


def reconcile_entries(existing: Sequence[Entry], incoming: Iterable[Entry]) -> UpsertResult:
    """Upsert ``incoming`` into ``existing`` keyed by lower-cased item number.

    A match is replaced wholesale at its current position; anything else is
    appended. Later rows in ``incoming`` overwrite earlier ones.
    """

    merged = list(existing)
    positions: Dict[str, int] = {}
    for index, entry in enumerate(merged):
        positions.setdefault(entry.key, index)

    result = UpsertResult(merged=merged)
    for entry in incoming:
        position = positions.get(entry.key)
        if position is None:
            positions[entry.key] = len(merged)
            merged.append(entry)
            result.new_count += 1
        else:
            merged[position] = entry
            result.updated_count += 1
    return result


__all__ = ["UpsertResult", "changed_since_snapshot", "has_changed", "reconcile_entries"]
