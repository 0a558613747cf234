"""Database tables for categories, counted item numbers, uploads and export snapshots."""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from sqlalchemy import JSON, Boolean, CheckConstraint, DateTime, ForeignKey, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from .database import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TimestampMixin:
    """Mixin providing created/updated timestamp columns."""

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow, nullable=False
    )


class Category(Base, TimestampMixin):
    __tablename__ = "categories"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    name: Mapped[str] = mapped_column(String(128), nullable=False)
    icon: Mapped[str] = mapped_column(String(64), default="", nullable=False)
    color: Mapped[str] = mapped_column(String(16), default="", nullable=False)
    is_locked: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    is_custom: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    position: Mapped[int] = mapped_column(Integer, default=0, nullable=False)


class ItemNumber(Base, TimestampMixin):
    """One counted SKU. ``item_key`` holds the lower-cased item number."""

    __tablename__ = "item_numbers"
    __table_args__ = (
        CheckConstraint("floor_count >= 0", name="ck_item_numbers_floor_count_positive"),
        CheckConstraint("storage_count >= 0", name="ck_item_numbers_storage_count_positive"),
    )

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    item_number: Mapped[str] = mapped_column(String(128), nullable=False)
    item_key: Mapped[str] = mapped_column(String(128), unique=True, index=True, nullable=False)
    product_name: Mapped[str | None] = mapped_column(String(255))
    floor_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    storage_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    category: Mapped[str] = mapped_column(
        "category_id",
        ForeignKey("categories.id", ondelete="CASCADE"),
        index=True,
        nullable=False,
    )

    @property
    def total_count(self) -> int:
        return (self.floor_count or 0) + (self.storage_count or 0)


class UploadLog(Base):
    __tablename__ = "upload_logs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    file_name: Mapped[str] = mapped_column(String(255), default="", nullable=False)
    total_items: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    new_items: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    updated_items: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    skipped_items: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    category_counts: Mapped[dict[str, Any]] = mapped_column(JSON, default=dict, nullable=False)
    uploaded_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, nullable=False
    )


class ExportSnapshot(Base):
    """Item numbers as they stood at an export, stored as JSON records."""

    __tablename__ = "export_snapshots"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    captured_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, nullable=False
    )
    entries: Mapped[list[dict[str, Any]]] = mapped_column(JSON, default=list, nullable=False)

    @property
    def entry_count(self) -> int:
        return len(self.entries or [])


__all__ = [
    "Category",
    "ExportSnapshot",
    "ItemNumber",
    "UploadLog",
]
