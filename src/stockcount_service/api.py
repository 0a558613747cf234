"""FastAPI router configuration."""
from __future__ import annotations

import logging
from typing import Sequence

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Query, status
from sqlalchemy.exc import NoResultFound
from sqlalchemy.ext.asyncio import AsyncSession

from stockcount.ingest import MissingColumnsError, TableFormatError
from stockcount.inventory import PersistenceError
from stockcount.logger import setup_logger

from . import crud, schemas
from .config import Settings, get_settings
from .database import get_session

router = APIRouter()


def provide_settings() -> Settings:
    """Dependency returning the active :class:`Settings` instance."""

    return get_settings()


def _not_found(exc: NoResultFound) -> HTTPException:
    return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc))


def _bad_request(exc: ValueError) -> HTTPException:
    return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))


@router.get("/health", response_model=schemas.HealthStatus, tags=["system"])
async def health_check(settings: Settings = Depends(provide_settings)) -> schemas.HealthStatus:
    return schemas.HealthStatus(environment=settings.environment)


# ----------------------------------------------------------------------
# Categories
# ----------------------------------------------------------------------
@router.get("/categories", response_model=list[schemas.CategoryOut], tags=["categories"])
async def list_categories(
    session: AsyncSession = Depends(get_session),
) -> Sequence[schemas.CategoryOut]:
    categories = await crud.list_categories(session)
    return [schemas.CategoryOut.model_validate(category) for category in categories]


@router.post(
    "/categories",
    response_model=schemas.CategoryOut,
    status_code=status.HTTP_201_CREATED,
    tags=["categories"],
)
async def create_category(
    payload: schemas.CategoryCreate, session: AsyncSession = Depends(get_session)
) -> schemas.CategoryOut:
    try:
        category = await crud.create_category(session, payload)
    except ValueError as exc:
        raise _bad_request(exc) from exc
    await session.commit()
    await session.refresh(category)
    return schemas.CategoryOut.model_validate(category)


@router.get("/categories/{category_id}", response_model=schemas.CategoryOut, tags=["categories"])
async def get_category(
    category_id: str, session: AsyncSession = Depends(get_session)
) -> schemas.CategoryOut:
    try:
        category = await crud.get_category(session, category_id)
    except NoResultFound as exc:
        raise _not_found(exc) from exc
    return schemas.CategoryOut.model_validate(category)


@router.put("/categories/{category_id}", response_model=schemas.CategoryOut, tags=["categories"])
async def update_category(
    category_id: str,
    payload: schemas.CategoryUpdate,
    session: AsyncSession = Depends(get_session),
) -> schemas.CategoryOut:
    try:
        category = await crud.get_category(session, category_id)
        category = await crud.update_category(session, category, payload)
    except NoResultFound as exc:
        raise _not_found(exc) from exc
    except ValueError as exc:
        raise _bad_request(exc) from exc
    await session.commit()
    await session.refresh(category)
    return schemas.CategoryOut.model_validate(category)


@router.post(
    "/categories/{category_id}/lock", response_model=schemas.CategoryOut, tags=["categories"]
)
async def toggle_category_lock(
    category_id: str, session: AsyncSession = Depends(get_session)
) -> schemas.CategoryOut:
    try:
        category = await crud.get_category(session, category_id)
    except NoResultFound as exc:
        raise _not_found(exc) from exc
    category = await crud.toggle_category_lock(session, category)
    await session.commit()
    await session.refresh(category)
    return schemas.CategoryOut.model_validate(category)


@router.delete(
    "/categories/{category_id}", response_model=schemas.CategoryDeleted, tags=["categories"]
)
async def delete_category(
    category_id: str, session: AsyncSession = Depends(get_session)
) -> schemas.CategoryDeleted:
    try:
        category = await crud.get_category(session, category_id)
        removed = await crud.delete_category(session, category)
    except NoResultFound as exc:
        raise _not_found(exc) from exc
    except ValueError as exc:
        raise _bad_request(exc) from exc
    await session.commit()
    return schemas.CategoryDeleted(deleted=category_id, removed_entries=removed)


# ----------------------------------------------------------------------
# Entries
# ----------------------------------------------------------------------
@router.get("/entries", response_model=list[schemas.EntryOut], tags=["entries"])
async def list_entries(
    category: str | None = None, session: AsyncSession = Depends(get_session)
) -> Sequence[schemas.EntryOut]:
    entries = await crud.list_entries(session, category)
    return [schemas.EntryOut.model_validate(entry) for entry in entries]


@router.post(
    "/entries",
    response_model=schemas.EntryOut,
    status_code=status.HTTP_201_CREATED,
    tags=["entries"],
)
async def create_entry(
    payload: schemas.EntryCreate, session: AsyncSession = Depends(get_session)
) -> schemas.EntryOut:
    try:
        entry = await crud.create_entry(session, payload)
    except ValueError as exc:
        raise _bad_request(exc) from exc
    await session.commit()
    await session.refresh(entry)
    return schemas.EntryOut.model_validate(entry)


@router.post("/entries/bulk", response_model=schemas.BulkUpsertResult, tags=["entries"])
async def bulk_upsert_entries(
    payload: schemas.BulkUpsertRequest, session: AsyncSession = Depends(get_session)
) -> schemas.BulkUpsertResult:
    try:
        new_count, updated_count = await crud.bulk_upsert_entries(session, payload.entries)
    except ValueError as exc:
        raise _bad_request(exc) from exc
    await session.commit()
    return schemas.BulkUpsertResult(
        new=new_count, updated=updated_count, total=new_count + updated_count
    )


@router.post("/entries/reset/{scope}", response_model=schemas.ResetResult, tags=["entries"])
async def reset_entries(
    scope: str, session: AsyncSession = Depends(get_session)
) -> schemas.ResetResult:
    try:
        affected = await crud.reset_entries(session, scope)
    except ValueError as exc:
        raise _bad_request(exc) from exc
    await session.commit()
    return schemas.ResetResult(scope=scope, affected=affected)


@router.get("/entries/changed", response_model=schemas.ChangedEntries, tags=["entries"])
async def changed_entries(
    session: AsyncSession = Depends(get_session),
    settings: Settings = Depends(provide_settings),
) -> schemas.ChangedEntries:
    entries, snapshot = await crud.changed_entries(
        session, compare_category=settings.compare_category_changes
    )
    return schemas.ChangedEntries(
        entries=[schemas.EntryOut.model_validate(entry) for entry in entries],
        count=len(entries),
        last_export=snapshot.captured_at if snapshot is not None else None,
    )


@router.get("/entries/{entry_id}", response_model=schemas.EntryOut, tags=["entries"])
async def get_entry(entry_id: str, session: AsyncSession = Depends(get_session)) -> schemas.EntryOut:
    try:
        entry = await crud.get_entry(session, entry_id)
    except NoResultFound as exc:
        raise _not_found(exc) from exc
    return schemas.EntryOut.model_validate(entry)


@router.put("/entries/{entry_id}", response_model=schemas.EntryOut, tags=["entries"])
async def update_entry(
    entry_id: str,
    payload: schemas.EntryUpdate,
    session: AsyncSession = Depends(get_session),
) -> schemas.EntryOut:
    try:
        entry = await crud.get_entry(session, entry_id)
        entry = await crud.update_entry(session, entry, payload)
    except NoResultFound as exc:
        raise _not_found(exc) from exc
    except ValueError as exc:
        raise _bad_request(exc) from exc
    await session.commit()
    await session.refresh(entry)
    return schemas.EntryOut.model_validate(entry)


@router.delete("/entries/{entry_id}", status_code=status.HTTP_204_NO_CONTENT, tags=["entries"])
async def delete_entry(entry_id: str, session: AsyncSession = Depends(get_session)) -> None:
    try:
        entry = await crud.get_entry(session, entry_id)
    except NoResultFound as exc:
        raise _not_found(exc) from exc
    await crud.delete_entry(session, entry)
    await session.commit()


# ----------------------------------------------------------------------
# Imports and export snapshots
# ----------------------------------------------------------------------
@router.post("/imports", response_model=schemas.ImportResult, tags=["imports"])
async def import_entries(
    payload: schemas.ImportRequest,
    session: AsyncSession = Depends(get_session),
    settings: Settings = Depends(provide_settings),
) -> schemas.ImportResult:
    try:
        parsed = await crud.parse_import(session, payload.text)
    except MissingColumnsError as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"message": str(exc), "missing": exc.missing},
        ) from exc
    except TableFormatError as exc:
        raise _bad_request(exc) from exc
    try:
        summary = await crud.apply_import(
            session,
            parsed,
            file_name=payload.file_name,
            error_preview=settings.import_error_preview,
        )
    except PersistenceError as exc:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={"message": str(exc), "processed": exc.parsed.processed_count},
        ) from exc
    return schemas.ImportResult(
        success=summary.success,
        message=summary.message,
        file_name=summary.file_name,
        processed=summary.processed,
        new=summary.new,
        updated=summary.updated,
        error_count=summary.error_count,
        errors=summary.errors,
        category_counts=summary.category_counts,
    )


@router.get("/uploads", response_model=list[schemas.UploadLogOut], tags=["imports"])
async def list_uploads(
    limit: int | None = Query(default=None, ge=1),
    session: AsyncSession = Depends(get_session),
) -> Sequence[schemas.UploadLogOut]:
    logs = await crud.list_upload_logs(session, limit=limit)
    return [schemas.UploadLogOut.model_validate(log) for log in logs]


@router.post(
    "/snapshots",
    response_model=schemas.SnapshotOut,
    status_code=status.HTTP_201_CREATED,
    tags=["snapshots"],
)
async def create_snapshot(session: AsyncSession = Depends(get_session)) -> schemas.SnapshotOut:
    snapshot = await crud.create_snapshot(session)
    await session.commit()
    await session.refresh(snapshot)
    return schemas.SnapshotOut.model_validate(snapshot)


@router.get("/snapshots/latest", response_model=schemas.SnapshotOut, tags=["snapshots"])
async def latest_snapshot(session: AsyncSession = Depends(get_session)) -> schemas.SnapshotOut:
    snapshot = await crud.latest_snapshot(session)
    if snapshot is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="No export snapshot yet")
    return schemas.SnapshotOut.model_validate(snapshot)


def create_app(settings: Settings | None = None) -> FastAPI:
    settings = settings or get_settings()
    setup_logger(
        "stockcount_service",
        log_level=getattr(logging, settings.log_level.upper(), logging.INFO),
    )
    app = FastAPI(title=settings.app_name)
    app.dependency_overrides[provide_settings] = lambda: settings
    app.include_router(router)
    return app


app = create_app()


__all__ = ["app", "create_app"]
