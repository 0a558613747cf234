"""Pydantic schemas used by the API."""
from __future__ import annotations

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field


class CategoryBase(BaseModel):
    name: str = Field(..., min_length=1, max_length=128)
    icon: str = ""
    color: str = Field("", description="Hex colour used by clients, e.g. #007AFF.")
    is_locked: bool = False


class CategoryCreate(CategoryBase):
    pass


class CategoryUpdate(BaseModel):
    name: str | None = Field(default=None, min_length=1, max_length=128)
    icon: str | None = None
    color: str | None = None
    is_locked: bool | None = None


class CategoryOut(CategoryBase):
    model_config = ConfigDict(from_attributes=True)

    id: str
    is_custom: bool
    created_at: datetime
    updated_at: datetime


class CategoryDeleted(BaseModel):
    deleted: str
    removed_entries: int


class EntryBase(BaseModel):
    item_number: str = Field(..., min_length=1, max_length=128)
    product_name: str | None = None
    floor_count: int = Field(0, ge=0)
    storage_count: int = Field(0, ge=0)
    category: str = Field(..., description="Identifier of an existing category.")


class EntryCreate(EntryBase):
    pass


class EntryUpdate(BaseModel):
    item_number: str | None = Field(default=None, min_length=1, max_length=128)
    product_name: str | None = None
    floor_count: int | None = Field(default=None, ge=0)
    storage_count: int | None = Field(default=None, ge=0)
    category: str | None = None


class EntryOut(EntryBase):
    model_config = ConfigDict(from_attributes=True)

    id: str
    total_count: int
    created_at: datetime
    updated_at: datetime


class BulkUpsertRequest(BaseModel):
    entries: list[EntryCreate]


class BulkUpsertResult(BaseModel):
    new: int
    updated: int
    total: int


class ResetResult(BaseModel):
    scope: Literal["floor", "storage", "all"]
    affected: int


class ImportRequest(BaseModel):
    text: str = Field(..., description="CSV content with a header row.")
    file_name: str = ""


class ImportResult(BaseModel):
    success: bool
    message: str
    file_name: str
    processed: int
    new: int
    updated: int
    error_count: int
    errors: list[str]
    category_counts: dict[str, int]


class UploadLogOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    file_name: str
    total_items: int
    new_items: int
    updated_items: int
    skipped_items: int
    category_counts: dict[str, int]
    uploaded_at: datetime


class SnapshotOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    captured_at: datetime
    entry_count: int


class ChangedEntries(BaseModel):
    entries: list[EntryOut]
    count: int
    last_export: datetime | None = None


class HealthStatus(BaseModel):
    status: Literal["ok"] = "ok"
    environment: str


__all__ = [
    "BulkUpsertRequest",
    "BulkUpsertResult",
    "CategoryCreate",
    "CategoryDeleted",
    "CategoryOut",
    "CategoryUpdate",
    "ChangedEntries",
    "EntryCreate",
    "EntryOut",
    "EntryUpdate",
    "HealthStatus",
    "ImportRequest",
    "ImportResult",
    "ResetResult",
    "SnapshotOut",
    "UploadLogOut",
]
