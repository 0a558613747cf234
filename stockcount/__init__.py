"""Stock count package."""
from __future__ import annotations

from .inventory import InventoryStore, PersistenceError
from .models import Category, Entry, ImportSummary, Snapshot, UploadLog

__all__ = [
    "create_app",
    "Category",
    "Entry",
    "ImportSummary",
    "InventoryStore",
    "PersistenceError",
    "Snapshot",
    "UploadLog",
]


def create_app(*args, **kwargs):
    from .app import create_app as _create_app

    return _create_app(*args, **kwargs)
