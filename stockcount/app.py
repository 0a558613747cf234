"""Flask application exposing the stock count store as a JSON API."""
from __future__ import annotations

import logging
import os
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from flask import Flask, Response, jsonify, request

from .ingest import MissingColumnsError, TableFormatError, read_table
from .inventory import InventoryStore, PersistenceError
from .logger import setup_logger
from .reports import category_workbook, inventory_workbook, template_workbook

logger = logging.getLogger(__name__)

_TRUTHY = {"1", "true", "yes", "on"}


def _env_flag(name: str, default: bool = False) -> bool:
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() in _TRUTHY


def create_app(
    storage_path: str | Path = "stockcount_data.json",
    upload_log_path: str | Path | None = None,
) -> Flask:
    storage_path = Path(storage_path)
    app = Flask(__name__)

    app.config.setdefault(
        "DIFF_COMPARE_CATEGORY", _env_flag("STOCKCOUNT_DIFF_COMPARE_CATEGORY")
    )
    app.config.setdefault(
        "IMPORT_ERROR_PREVIEW", int(os.environ.get("STOCKCOUNT_IMPORT_ERROR_PREVIEW", 10))
    )
    app.config.setdefault("EXPORT_USER", os.environ.get("STOCKCOUNT_EXPORT_USER", ""))
    app.config.setdefault("LOG_DIR", os.environ.get("STOCKCOUNT_LOG_DIR") or None)

    setup_logger("stockcount", log_dir=app.config["LOG_DIR"])

    store = InventoryStore(
        storage_path=storage_path,
        upload_log_path=Path(upload_log_path) if upload_log_path is not None else None,
        compare_category=bool(app.config["DIFF_COMPARE_CATEGORY"]),
    )
    app.extensions["stockcount_store"] = store

    def _json_error(message: str, status: int = 400, **extra: Any) -> Any:
        payload: Dict[str, Any] = {"error": message}
        payload.update(extra)
        return jsonify(payload), status

    def _compare_category() -> bool:
        return bool(app.config.get("DIFF_COMPARE_CATEGORY", False))

    # ------------------------------------------------------------------
    # Categories
    # ------------------------------------------------------------------
    @app.get("/api/categories")
    def list_categories() -> Any:
        return jsonify([category.to_dict() for category in store.list_categories()])

    @app.post("/api/categories")
    def create_category() -> Any:
        payload = _get_payload(request)
        name = str(payload.get("name") or "").strip()
        if not name:
            return _json_error("Missing category name")
        try:
            category = store.create_category(
                name,
                icon=str(payload.get("icon") or ""),
                color=str(payload.get("color") or ""),
                is_locked=_parse_bool(payload.get("isLocked")),
            )
        except ValueError as exc:
            return _json_error(str(exc))
        return jsonify(category.to_dict()), 201

    @app.get("/api/categories/<string:category_id>")
    def get_category(category_id: str) -> Any:
        try:
            category = store.get_category(category_id)
        except KeyError as exc:
            return _json_error(exc.args[0], 404)
        return jsonify(category.to_dict())

    @app.put("/api/categories/<string:category_id>")
    def update_category(category_id: str) -> Any:
        payload = _get_payload(request)
        try:
            category = store.update_category(
                category_id,
                name=_optional_text(payload, "name"),
                icon=_optional_text(payload, "icon"),
                color=_optional_text(payload, "color"),
            )
        except KeyError as exc:
            return _json_error(exc.args[0], 404)
        except ValueError as exc:
            return _json_error(str(exc))
        return jsonify(category.to_dict())

    @app.post("/api/categories/<string:category_id>/lock")
    def toggle_category_lock(category_id: str) -> Any:
        try:
            category = store.toggle_category_lock(category_id)
        except KeyError as exc:
            return _json_error(exc.args[0], 404)
        return jsonify(category.to_dict())

    @app.delete("/api/categories/<string:category_id>")
    def delete_category(category_id: str) -> Any:
        try:
            removed = store.delete_category(category_id)
        except KeyError as exc:
            return _json_error(exc.args[0], 404)
        except ValueError as exc:
            return _json_error(str(exc))
        return jsonify({"deleted": category_id, "removedEntries": removed})

    # ------------------------------------------------------------------
    # Entries
    # ------------------------------------------------------------------
    @app.get("/api/entries")
    def list_entries() -> Any:
        category = request.args.get("category") or None
        return jsonify([entry.to_dict() for entry in store.list_entries(category)])

    @app.post("/api/entries")
    def add_entry() -> Any:
        payload = _get_payload(request)
        item_number = str(payload.get("itemNumber") or "").strip()
        if not item_number:
            return _json_error("Missing item number")
        category = str(payload.get("category") or "").strip()
        if not category:
            return _json_error("Missing category")
        try:
            floor_count = _parse_count(payload.get("floorCount"))
            storage_count = _parse_count(payload.get("storageCount"))
            entry = store.add_entry(
                item_number,
                category=category,
                floor_count=floor_count,
                storage_count=storage_count,
                product_name=_optional_text(payload, "productName") or None,
            )
        except ValueError as exc:
            return _json_error(str(exc))
        return jsonify(entry.to_dict()), 201

    @app.get("/api/entries/changed")
    def changed_entries() -> Any:
        changed = store.changed_entries(compare_category=_compare_category())
        snapshot = store.latest_snapshot()
        return jsonify(
            {
                "entries": [entry.to_dict() for entry in changed],
                "count": len(changed),
                "lastExport": snapshot.to_record()["capturedAt"] if snapshot else None,
            }
        )

    @app.get("/api/entries/<string:entry_id>")
    def get_entry(entry_id: str) -> Any:
        try:
            entry = store.get_entry(entry_id)
        except KeyError as exc:
            return _json_error(exc.args[0], 404)
        return jsonify(entry.to_dict())

    @app.put("/api/entries/<string:entry_id>")
    def update_entry(entry_id: str) -> Any:
        payload = _get_payload(request)
        try:
            floor_count = (
                _parse_count(payload["floorCount"]) if "floorCount" in payload else None
            )
            storage_count = (
                _parse_count(payload["storageCount"]) if "storageCount" in payload else None
            )
            entry = store.update_entry(
                entry_id,
                item_number=_optional_text(payload, "itemNumber"),
                product_name=_optional_text(payload, "productName"),
                floor_count=floor_count,
                storage_count=storage_count,
                category=_optional_text(payload, "category"),
            )
        except KeyError as exc:
            return _json_error(exc.args[0], 404)
        except ValueError as exc:
            return _json_error(str(exc))
        return jsonify(entry.to_dict())

    @app.delete("/api/entries/<string:entry_id>")
    def delete_entry(entry_id: str) -> Any:
        try:
            store.delete_entry(entry_id)
        except KeyError as exc:
            return _json_error(exc.args[0], 404)
        return "", 204

    @app.post("/api/resets/<string:scope>")
    def reset(scope: str) -> Any:
        if scope == "floor":
            affected = store.reset_floor_counts()
        elif scope == "storage":
            affected = store.reset_storage_counts()
        elif scope == "entries":
            affected = store.reset_entries()
        else:
            return _json_error(f"Unknown reset scope '{scope}'", 404)
        return jsonify({"scope": scope, "affected": affected})

    # ------------------------------------------------------------------
    # Import / export
    # ------------------------------------------------------------------
    @app.post("/api/import")
    def import_entries() -> Any:
        try:
            rows, file_name = _extract_import_rows(request)
            parsed = store.parse_import(rows)
        except MissingColumnsError as exc:
            return _json_error(str(exc), missing=exc.missing, headers=exc.headers)
        except (TableFormatError, ValueError) as exc:
            return _json_error(str(exc))
        try:
            summary = store.apply_import(parsed, file_name=file_name)
        except PersistenceError as exc:
            return _json_error(str(exc), 503, processed=exc.parsed.processed_count)
        result = summary.to_dict()
        result["errors"] = summary.errors[: int(app.config["IMPORT_ERROR_PREVIEW"])]
        return jsonify(result)

    @app.get("/api/uploads")
    def list_uploads() -> Any:
        limit = _parse_optional_int(request.args.get("limit"))
        return jsonify([log.to_record() for log in store.list_upload_logs(limit=limit)])

    @app.get("/api/export")
    def export_entries() -> Any:
        category_id = request.args.get("category") or None
        mark = _parse_bool(request.args.get("mark"))
        changed = store.changed_entries(compare_category=_compare_category())
        exported_by = str(app.config.get("EXPORT_USER") or "")
        try:
            if category_id:
                category = store.get_category(category_id)
                content = category_workbook(
                    category,
                    store.list_entries(category_id),
                    changed,
                    exported_by=exported_by,
                )
                filename = _timestamped_filename(category.name.lower().replace(" ", "_"))
            else:
                content = inventory_workbook(
                    store.list_entries(),
                    store.list_categories(),
                    changed,
                    exported_by=exported_by,
                )
                filename = _timestamped_filename("inventory_export")
        except KeyError as exc:
            return _json_error(exc.args[0], 404)
        except ValueError as exc:
            return _json_error(str(exc))
        if mark:
            store.mark_export_snapshot()
        return _xls_response(content, filename)

    @app.post("/api/export/snapshot")
    def mark_export_snapshot() -> Any:
        snapshot = store.mark_export_snapshot()
        return jsonify(
            {
                "capturedAt": snapshot.to_record()["capturedAt"],
                "entryCount": len(snapshot.entries),
            }
        ), 201

    @app.get("/api/template")
    def download_template() -> Response:
        return _xls_response(template_workbook(), _timestamped_filename("inventory_template"))

    return app


def _get_payload(req: Any) -> Dict[str, Any]:
    if req.form:
        return req.form.to_dict()
    payload = req.get_json(silent=True)
    return payload if isinstance(payload, dict) else {}


def _parse_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if value is None:
        return False
    return str(value).strip().lower() in _TRUTHY


def _optional_text(payload: Dict[str, Any], key: str) -> Optional[str]:
    value = payload.get(key)
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, (str, int, float)):
        raise ValueError(f"Field '{key}' must be text")
    return str(value)


def _parse_count(value: Any) -> int:
    if value is None or value == "":
        return 0
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ValueError(f"Invalid count '{value}'") from None


def _parse_optional_int(value: Optional[str]) -> Optional[int]:
    if value is None or value.strip() == "":
        return None
    try:
        parsed = int(value)
    except ValueError:
        return None
    return parsed if parsed >= 0 else None


def _xls_response(content: bytes, filename: str) -> Response:
    response = Response(content, mimetype="application/vnd.ms-excel")
    response.headers["Content-Disposition"] = f"attachment; filename={filename}.xls"
    return response


def _timestamped_filename(prefix: str) -> str:
    timestamp = datetime.now().strftime("%Y%m%d-%H%M%S")
    return f"{prefix}_{timestamp}"


def _extract_import_rows(req: Any) -> Tuple[List[List[str]], str]:
    if req.files:
        upload = req.files.get("file")
        if upload is None or upload.filename == "":
            raise ValueError("Missing upload file")
        return _extract_rows_from_filestorage(upload), upload.filename
    payload = req.get_json(silent=True)
    if isinstance(payload, dict) and isinstance(payload.get("text"), str):
        file_name = str(payload.get("fileName") or "")
        return read_table(payload["text"], file_name), file_name
    raise ValueError("Unsupported import payload")


def _extract_rows_from_filestorage(upload: Any) -> List[List[str]]:
    try:
        raw_bytes = upload.read()
    finally:
        upload.close()
    if not raw_bytes:
        raise TableFormatError("File is empty")
    return read_table(raw_bytes, getattr(upload, "filename", "") or "")
