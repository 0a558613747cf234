"""Business logic for interacting with the database."""
from __future__ import annotations

import logging
from collections.abc import Iterable, Sequence

from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import NoResultFound, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from stockcount.ingest import ParseResult, parse_rows, read_csv_rows
from stockcount.inventory import PersistenceError
from stockcount.models import (
    Entry,
    ImportSummary,
    default_categories,
    new_entry_id,
    next_identifier,
    slugify_identifier,
)
from stockcount.reconcile import changed_since_snapshot

from . import schemas
from .models import Category, ExportSnapshot, ItemNumber, UploadLog

logger = logging.getLogger(__name__)


# ----------------------------------------------------------------------
# Categories
# ----------------------------------------------------------------------
async def list_categories(session: AsyncSession) -> Sequence[Category]:
    stmt = select(Category).order_by(Category.position, Category.name)
    result = await session.execute(stmt)
    return result.scalars().all()


async def get_category(session: AsyncSession, category_id: str) -> Category:
    category = await session.get(Category, category_id)
    if category is None:
        raise NoResultFound(f"Category {category_id} not found")
    return category


async def _check_category_name(
    session: AsyncSession, name: str, *, exclude_id: str | None = None
) -> None:
    stmt = select(Category.id).where(func.lower(Category.name) == name.lower())
    if exclude_id is not None:
        stmt = stmt.where(Category.id != exclude_id)
    if (await session.execute(stmt)).first() is not None:
        raise ValueError(f"Category '{name}' already exists")


async def create_category(session: AsyncSession, data: schemas.CategoryCreate) -> Category:
    name = data.name.strip()
    if not name:
        raise ValueError("Category name cannot be empty")
    await _check_category_name(session, name)
    existing_ids = (await session.execute(select(Category.id))).scalars().all()
    max_position = (await session.execute(select(func.max(Category.position)))).scalar()
    category = Category(
        id=next_identifier(slugify_identifier(name, fallback="category"), existing_ids),
        name=name,
        icon=data.icon,
        color=data.color,
        is_locked=data.is_locked,
        is_custom=True,
        position=(max_position or 0) + 1,
    )
    session.add(category)
    await session.flush()
    logger.info("Created category %s (%s)", category.name, category.id)
    return category


async def update_category(
    session: AsyncSession, category: Category, data: schemas.CategoryUpdate
) -> Category:
    changes = data.model_dump(exclude_unset=True)
    if changes.get("name") is not None:
        changes["name"] = changes["name"].strip()
        if not changes["name"]:
            raise ValueError("Category name cannot be empty")
        await _check_category_name(session, changes["name"], exclude_id=category.id)
    for field, value in changes.items():
        if value is not None:
            setattr(category, field, value)
    await session.flush()
    return category


async def toggle_category_lock(session: AsyncSession, category: Category) -> Category:
    category.is_locked = not category.is_locked
    await session.flush()
    return category


async def delete_category(session: AsyncSession, category: Category) -> int:
    """Delete a custom category together with its item numbers."""

    if not category.is_custom:
        raise ValueError(f"Built-in category '{category.name}' cannot be deleted")
    result = await session.execute(
        delete(ItemNumber).where(ItemNumber.category == category.id)
    )
    await session.delete(category)
    await session.flush()
    logger.info("Deleted category %s and %d entries", category.id, result.rowcount)
    return result.rowcount


async def seed_categories(session: AsyncSession) -> int:
    """Insert any missing built-in category. Returns how many were added."""

    existing = set((await session.execute(select(Category.id))).scalars().all())
    added = 0
    for position, builtin in enumerate(default_categories()):
        if builtin.id in existing:
            continue
        session.add(
            Category(
                id=builtin.id,
                name=builtin.name,
                icon=builtin.icon,
                color=builtin.color,
                is_locked=builtin.is_locked,
                is_custom=False,
                position=position - len(default_categories()),
            )
        )
        added += 1
    await session.flush()
    return added


async def _require_category(session: AsyncSession, category_id: str) -> None:
    if await session.get(Category, category_id) is None:
        raise ValueError(f"Unknown category '{category_id}'")


# ----------------------------------------------------------------------
# Item numbers
# ----------------------------------------------------------------------
def to_entry(item: ItemNumber) -> Entry:
    return Entry(
        id=item.id,
        item_number=item.item_number,
        product_name=item.product_name,
        floor_count=item.floor_count,
        storage_count=item.storage_count,
        category=item.category,
    )


async def list_entries(
    session: AsyncSession, category: str | None = None
) -> Sequence[ItemNumber]:
    stmt = select(ItemNumber).order_by(ItemNumber.created_at, ItemNumber.item_key)
    if category:
        stmt = stmt.where(ItemNumber.category == category)
    result = await session.execute(stmt)
    return result.scalars().all()


async def get_entry(session: AsyncSession, entry_id: str) -> ItemNumber:
    entry = await session.get(ItemNumber, entry_id)
    if entry is None:
        raise NoResultFound(f"Entry {entry_id} not found")
    return entry


async def find_entry(session: AsyncSession, item_number: str) -> ItemNumber | None:
    stmt = select(ItemNumber).where(ItemNumber.item_key == item_number.strip().lower())
    result = await session.execute(stmt)
    return result.scalar_one_or_none()


async def create_entry(session: AsyncSession, data: schemas.EntryCreate) -> ItemNumber:
    item_number = data.item_number.strip()
    if not item_number:
        raise ValueError("Item number cannot be empty")
    await _require_category(session, data.category)
    if await find_entry(session, item_number) is not None:
        raise ValueError(f"Item number '{item_number}' already exists")
    entry = ItemNumber(
        id=new_entry_id(),
        item_number=item_number,
        item_key=item_number.lower(),
        product_name=data.product_name or None,
        floor_count=data.floor_count,
        storage_count=data.storage_count,
        category=data.category,
    )
    session.add(entry)
    await session.flush()
    return entry


async def update_entry(
    session: AsyncSession, entry: ItemNumber, data: schemas.EntryUpdate
) -> ItemNumber:
    changes = data.model_dump(exclude_unset=True)
    if changes.get("item_number") is not None:
        item_number = changes["item_number"].strip()
        if not item_number:
            raise ValueError("Item number cannot be empty")
        duplicate = await find_entry(session, item_number)
        if duplicate is not None and duplicate.id != entry.id:
            raise ValueError(f"Item number '{item_number}' already exists")
        entry.item_number = item_number
        entry.item_key = item_number.lower()
    if changes.get("category") is not None:
        await _require_category(session, changes["category"])
        entry.category = changes["category"]
    if "product_name" in changes:
        entry.product_name = changes["product_name"] or None
    for field in ("floor_count", "storage_count"):
        if changes.get(field) is not None:
            setattr(entry, field, changes[field])
    await session.flush()
    return entry


async def delete_entry(session: AsyncSession, entry: ItemNumber) -> None:
    await session.delete(entry)
    await session.flush()


async def _upsert_entries(
    session: AsyncSession, incoming: Iterable[Entry]
) -> tuple[int, int]:
    """Upsert by lower-cased item number; later rows win within a batch."""

    incoming = list(incoming)
    keys = {entry.key for entry in incoming}
    existing: dict[str, ItemNumber] = {}
    if keys:
        stmt = select(ItemNumber).where(ItemNumber.item_key.in_(keys))
        existing = {item.item_key: item for item in (await session.execute(stmt)).scalars()}

    new_count = updated_count = 0
    for entry in incoming:
        current = existing.get(entry.key)
        if current is None:
            current = ItemNumber(id=entry.id or new_entry_id(), item_key=entry.key)
            session.add(current)
            existing[entry.key] = current
            new_count += 1
        else:
            updated_count += 1
        current.item_number = entry.item_number
        current.product_name = entry.product_name
        current.floor_count = entry.floor_count
        current.storage_count = entry.storage_count
        current.category = entry.category
    await session.flush()
    return new_count, updated_count


async def bulk_upsert_entries(
    session: AsyncSession, entries: Sequence[schemas.EntryCreate]
) -> tuple[int, int]:
    category_ids = set((await session.execute(select(Category.id))).scalars().all())
    unknown = sorted({entry.category for entry in entries} - category_ids)
    if unknown:
        raise ValueError(f"Unknown categories: {', '.join(unknown)}")
    incoming = []
    for data in entries:
        item_number = data.item_number.strip()
        if not item_number:
            raise ValueError("Item number cannot be empty")
        incoming.append(
            Entry(
                id=new_entry_id(),
                item_number=item_number,
                product_name=data.product_name or None,
                floor_count=data.floor_count,
                storage_count=data.storage_count,
                category=data.category,
            )
        )
    return await _upsert_entries(session, incoming)


async def reset_entries(session: AsyncSession, scope: str) -> int:
    if scope == "floor":
        stmt = update(ItemNumber).values(floor_count=0)
    elif scope == "storage":
        stmt = update(ItemNumber).values(storage_count=0)
    elif scope == "all":
        stmt = delete(ItemNumber)
    else:
        raise ValueError(f"Unknown reset scope '{scope}'")
    result = await session.execute(stmt)
    await session.flush()
    logger.info("Reset %s affected %d entries", scope, result.rowcount)
    return result.rowcount


# ----------------------------------------------------------------------
# Imports
# ----------------------------------------------------------------------
async def _category_counts(session: AsyncSession) -> dict[str, int]:
    stmt = (
        select(Category.name, func.count(ItemNumber.id))
        .outerjoin(ItemNumber, ItemNumber.category == Category.id)
        .group_by(Category.id, Category.name, Category.position)
        .order_by(Category.position)
    )
    return {name: count for name, count in (await session.execute(stmt)).all()}


async def parse_import(session: AsyncSession, text: str) -> ParseResult:
    """Parse CSV text against the stored categories.

    Structural and header errors propagate as ``TableFormatError``.
    """

    categories = await list_categories(session)
    return parse_rows(read_csv_rows(text), categories)


async def apply_import(
    session: AsyncSession,
    parsed: ParseResult,
    *,
    file_name: str = "",
    error_preview: int = 10,
) -> ImportSummary:
    """Upsert parsed rows, log the upload and commit.

    A database failure rolls the session back and raises
    :class:`PersistenceError` carrying ``parsed`` for a retry.
    """

    try:
        new_count, updated_count = await _upsert_entries(session, parsed.entries)
        category_counts = await _category_counts(session)
        session.add(
            UploadLog(
                file_name=file_name,
                total_items=parsed.processed_count,
                new_items=new_count,
                updated_items=updated_count,
                skipped_items=parsed.error_count,
                category_counts=category_counts,
            )
        )
        await session.commit()
    except SQLAlchemyError as exc:
        await session.rollback()
        logger.error("Failed to save imported data: %s", exc)
        raise PersistenceError(f"Failed to save imported data: {exc}", parsed) from exc

    summary = ImportSummary(
        file_name=file_name,
        processed=parsed.processed_count,
        new=new_count,
        updated=updated_count,
        errors=parsed.error_messages(error_preview),
        error_count=parsed.error_count,
        category_counts=category_counts,
    )
    logger.info(summary.message)
    return summary


async def list_upload_logs(
    session: AsyncSession, *, limit: int | None = None
) -> Sequence[UploadLog]:
    stmt = select(UploadLog).order_by(UploadLog.uploaded_at.desc(), UploadLog.id.desc())
    if limit is not None:
        stmt = stmt.limit(limit)
    result = await session.execute(stmt)
    return result.scalars().all()


# ----------------------------------------------------------------------
# Export snapshots
# ----------------------------------------------------------------------
async def create_snapshot(session: AsyncSession) -> ExportSnapshot:
    """Capture the current entries; only the newest snapshot is kept."""

    entries = await list_entries(session)
    snapshot = ExportSnapshot(entries=[to_entry(entry).to_dict() for entry in entries])
    session.add(snapshot)
    await session.flush()
    await session.execute(delete(ExportSnapshot).where(ExportSnapshot.id != snapshot.id))
    logger.info("Export snapshot captured with %d entries", len(entries))
    return snapshot


async def latest_snapshot(session: AsyncSession) -> ExportSnapshot | None:
    stmt = (
        select(ExportSnapshot)
        .order_by(ExportSnapshot.captured_at.desc(), ExportSnapshot.id.desc())
        .limit(1)
    )
    result = await session.execute(stmt)
    return result.scalar_one_or_none()


async def changed_entries(
    session: AsyncSession, *, compare_category: bool = False
) -> tuple[list[ItemNumber], ExportSnapshot | None]:
    items = list(await list_entries(session))
    snapshot = await latest_snapshot(session)
    previous: list[Entry] = []
    if snapshot is not None:
        for record in snapshot.entries or []:
            try:
                previous.append(Entry.from_record(record))
            except ValueError:
                continue
    by_id = {item.id: item for item in items}
    changed = changed_since_snapshot(
        [to_entry(item) for item in items],
        previous,
        compare_category=compare_category,
    )
    return [by_id[entry.id] for entry in changed], snapshot


__all__ = [name for name in globals() if not name.startswith("_")]
