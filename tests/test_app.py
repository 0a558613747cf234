from io import BytesIO
from pathlib import Path

import openpyxl
import xlrd
import xlwt

from stockcount import create_app

HEADERS = ["ProductName", "ItemNumber", "FloorCount", "StorageCount", "Category"]
CSV_TEXT = (
    "ProductName,ItemNumber,FloorCount,StorageCount,Category\n"
    '"Oil, 5W-30",OIL-001,4,10,Oils\n'
    "Blade,WIP-22,2,,wipers\n"
    "Mystery,ZZ-9,1,1,unknown-zone\n"
)


def _create_test_app(tmp_path: Path):
    app = create_app(storage_path=tmp_path / "stock.json")
    app.config.update(TESTING=True)
    return app


def test_category_endpoints(tmp_path: Path) -> None:
    app = _create_test_app(tmp_path)
    client = app.test_client()

    response = client.get("/api/categories")
    assert response.status_code == 200
    assert len(response.get_json()) == 6

    response = client.post("/api/categories", json={"name": "Batteries", "color": "#00FF00"})
    assert response.status_code == 201
    created = response.get_json()
    assert created["id"] == "batteries"
    assert created["isCustom"] is True

    assert client.post("/api/categories", json={}).status_code == 400
    assert client.post("/api/categories", json={"name": "batteries"}).status_code == 400

    response = client.put("/api/categories/batteries", json={"name": "Car Batteries"})
    assert response.get_json()["name"] == "Car Batteries"
    assert client.get("/api/categories/batteries").get_json()["name"] == "Car Batteries"
    assert client.get("/api/categories/unknown").status_code == 404

    response = client.post("/api/categories/batteries/lock")
    assert response.get_json()["isLocked"] is True

    client.post("/api/entries", json={"itemNumber": "BAT-1", "category": "batteries"})
    assert client.delete("/api/categories/oils").status_code == 400
    response = client.delete("/api/categories/batteries")
    assert response.status_code == 200
    assert response.get_json() == {"deleted": "batteries", "removedEntries": 1}
    assert client.delete("/api/categories/batteries").status_code == 404


def test_entry_endpoints(tmp_path: Path) -> None:
    app = _create_test_app(tmp_path)
    client = app.test_client()

    response = client.post(
        "/api/entries",
        json={
            "itemNumber": "OIL-1",
            "productName": "5W-30",
            "floorCount": 2,
            "storageCount": 3,
            "category": "oils",
        },
    )
    assert response.status_code == 201
    entry = response.get_json()
    assert entry["totalCount"] == 5

    assert client.post("/api/entries", json={"category": "oils"}).status_code == 400
    assert client.post("/api/entries", json={"itemNumber": "X"}).status_code == 400
    assert (
        client.post(
            "/api/entries", json={"itemNumber": "X", "category": "oils", "floorCount": "lots"}
        ).status_code
        == 400
    )
    assert (
        client.post(
            "/api/entries", json={"itemNumber": "X", "category": "oils", "floorCount": -1}
        ).status_code
        == 400
    )

    response = client.put(f"/api/entries/{entry['id']}", json={"floorCount": 10})
    assert response.status_code == 200
    assert response.get_json()["totalCount"] == 13
    assert client.put("/api/entries/missing", json={"floorCount": 1}).status_code == 404

    client.post("/api/entries", json={"itemNumber": "WIP-1", "category": "wipers"})
    listed = client.get("/api/entries?category=wipers").get_json()
    assert [item["itemNumber"] for item in listed] == ["WIP-1"]
    assert client.get(f"/api/entries/{entry['id']}").get_json()["floorCount"] == 10

    assert client.delete(f"/api/entries/{entry['id']}").status_code == 204
    assert client.get(f"/api/entries/{entry['id']}").status_code == 404


def test_update_endpoints_validate_field_types(tmp_path: Path) -> None:
    app = _create_test_app(tmp_path)
    client = app.test_client()
    entry = client.post("/api/entries", json={"itemNumber": "OIL-1", "category": "oils"}).get_json()

    response = client.put("/api/categories/oils", json={"name": 5})
    assert response.status_code == 200
    assert response.get_json()["name"] == "5"
    response = client.put("/api/categories/oils", json={"name": {"text": "Oils"}})
    assert response.status_code == 400

    response = client.put(f"/api/entries/{entry['id']}", json={"itemNumber": 7})
    assert response.status_code == 200
    assert response.get_json()["itemNumber"] == "7"
    assert client.put(f"/api/entries/{entry['id']}", json={"itemNumber": [7]}).status_code == 400
    assert client.put(f"/api/entries/{entry['id']}", json={"category": 3}).status_code == 400
    assert client.put(f"/api/entries/{entry['id']}", json=["OIL-1"]).status_code == 200

    response = client.post(
        "/api/entries", json={"itemNumber": "OIL-2", "category": "oils", "productName": 10}
    )
    assert response.status_code == 201
    assert response.get_json()["productName"] == "10"


def test_reset_endpoints(tmp_path: Path) -> None:
    app = _create_test_app(tmp_path)
    client = app.test_client()
    client.post(
        "/api/entries",
        json={"itemNumber": "OIL-1", "category": "oils", "floorCount": 2, "storageCount": 3},
    )

    response = client.post("/api/resets/floor")
    assert response.get_json() == {"scope": "floor", "affected": 1}
    assert client.get("/api/entries").get_json()[0]["totalCount"] == 3

    client.post("/api/resets/storage")
    assert client.get("/api/entries").get_json()[0]["totalCount"] == 0

    assert client.post("/api/resets/everything").status_code == 404
    client.post("/api/resets/entries")
    assert client.get("/api/entries").get_json() == []


def test_import_csv_upload(tmp_path: Path) -> None:
    app = _create_test_app(tmp_path)
    client = app.test_client()

    response = client.post(
        "/api/import",
        data={"file": (BytesIO(CSV_TEXT.encode("utf-8-sig")), "counts.csv")},
        content_type="multipart/form-data",
    )
    assert response.status_code == 200
    payload = response.get_json()
    assert payload["processed"] == 2
    assert payload["new"] == 2
    assert payload["updated"] == 0
    assert payload["errorCount"] == 1
    assert payload["errors"][0].startswith("Row 3:")
    assert payload["message"] == "Successfully processed 2 items (2 new, 0 updated) with 1 errors"

    entries = client.get("/api/entries").get_json()
    assert entries[0]["productName"] == "Oil, 5W-30"
    assert entries[0]["totalCount"] == 14

    uploads = client.get("/api/uploads").get_json()
    assert uploads[0]["fileName"] == "counts.csv"
    assert uploads[0]["skippedItems"] == 1


def test_import_json_text_updates_existing(tmp_path: Path) -> None:
    app = _create_test_app(tmp_path)
    client = app.test_client()
    client.post("/api/entries", json={"itemNumber": "oil-001", "category": "oils"})

    response = client.post("/api/import", json={"text": CSV_TEXT, "fileName": "pasted.csv"})
    payload = response.get_json()
    assert payload["new"] == 1
    assert payload["updated"] == 1
    assert len(client.get("/api/entries").get_json()) == 2


def test_import_error_preview_is_capped(tmp_path: Path) -> None:
    app = _create_test_app(tmp_path)
    app.config.update(IMPORT_ERROR_PREVIEW=2)
    client = app.test_client()
    lines = ["ItemNumber,FloorCount,StorageCount,Category"]
    lines += [f"BAD-{index},1,1,nowhere" for index in range(5)]
    lines.append("GOOD-1,1,1,misc")

    payload = client.post("/api/import", json={"text": "\n".join(lines)}).get_json()
    assert payload["errorCount"] == 5
    assert len(payload["errors"]) == 2
    assert payload["processed"] == 1


def test_import_rejects_bad_files(tmp_path: Path) -> None:
    app = _create_test_app(tmp_path)
    client = app.test_client()

    response = client.post("/api/import", json={"text": "SKU,Name\nA,B\n"})
    assert response.status_code == 400
    assert response.get_json()["missing"] == ["floor-count", "storage-count", "category"]

    response = client.post("/api/import", json={"text": "ItemNumber,FloorCount,StorageCount,Category\n"})
    assert response.status_code == 400
    assert "at least one data row" in response.get_json()["error"]

    response = client.post(
        "/api/import",
        data={"file": (BytesIO(b""), "empty.csv")},
        content_type="multipart/form-data",
    )
    assert response.status_code == 400

    assert client.post("/api/import", json={"rows": []}).status_code == 400


def test_import_spreadsheets(tmp_path: Path) -> None:
    app = _create_test_app(tmp_path)
    client = app.test_client()

    workbook = xlwt.Workbook()
    sheet = workbook.add_sheet("Sheet1")
    for col, value in enumerate(HEADERS):
        sheet.write(0, col, value)
    for col, value in enumerate(["Air", "AF-1", 3, 4, "Air Filters"]):
        sheet.write(1, col, value)
    xls_buffer = BytesIO()
    workbook.save(xls_buffer)
    xls_buffer.seek(0)

    response = client.post(
        "/api/import",
        data={"file": (xls_buffer, "counts.xls")},
        content_type="multipart/form-data",
    )
    assert response.get_json()["new"] == 1

    xlsx = openpyxl.Workbook()
    xlsx.active.append(HEADERS)
    xlsx.active.append(["Cabin", "CF-1", 1, 1, "cabin filter"])
    xlsx_buffer = BytesIO()
    xlsx.save(xlsx_buffer)
    xlsx_buffer.seek(0)

    response = client.post(
        "/api/import",
        data={"file": (xlsx_buffer, "counts.xlsx")},
        content_type="multipart/form-data",
    )
    assert response.get_json()["new"] == 1

    categories = {entry["itemNumber"]: entry["category"] for entry in client.get("/api/entries").get_json()}
    assert categories == {"AF-1": "air-filters", "CF-1": "cabin-filters"}


def test_export_marks_snapshot_and_tracks_changes(tmp_path: Path) -> None:
    app = _create_test_app(tmp_path)
    app.config.update(EXPORT_USER="night-shift")
    client = app.test_client()
    oil = client.post(
        "/api/entries", json={"itemNumber": "OIL-1", "category": "oils", "floorCount": 1}
    ).get_json()
    client.post("/api/entries", json={"itemNumber": "WIP-1", "category": "wipers"})

    changed = client.get("/api/entries/changed").get_json()
    assert changed["count"] == 2
    assert changed["lastExport"] is None

    response = client.get("/api/export?mark=1")
    assert response.status_code == 200
    assert response.mimetype == "application/vnd.ms-excel"
    assert "attachment; filename=inventory_export_" in response.headers["Content-Disposition"]
    book = xlrd.open_workbook(file_contents=response.data)
    assert book.sheet_names() == ["Summary", "Oils", "Wipers"]
    summary = book.sheet_by_name("Summary")
    assert summary.cell_value(2, 1) == "night-shift"
    assert summary.col_values(7)[8:10] == ["YES", "YES"]

    changed = client.get("/api/entries/changed").get_json()
    assert changed["count"] == 0
    assert changed["lastExport"] is not None

    client.put(f"/api/entries/{oil['id']}", json={"storageCount": 5})
    changed = client.get("/api/entries/changed").get_json()
    assert [entry["itemNumber"] for entry in changed["entries"]] == ["OIL-1"]

    response = client.get("/api/export?category=oils")
    book = xlrd.open_workbook(file_contents=response.data)
    assert book.sheet_names() == ["Oils"]
    assert book.sheet_by_index(0).cell_value(7, 6) == "YES"
    assert client.get("/api/export?category=nope").status_code == 404


def test_changed_entries_respect_category_flag(tmp_path: Path) -> None:
    app = _create_test_app(tmp_path)
    client = app.test_client()
    oil = client.post("/api/entries", json={"itemNumber": "OIL-1", "category": "oils"}).get_json()
    assert client.post("/api/export/snapshot").status_code == 201
    client.put(f"/api/entries/{oil['id']}", json={"category": "misc"})

    assert client.get("/api/entries/changed").get_json()["count"] == 0
    app.config.update(DIFF_COMPARE_CATEGORY=True)
    assert client.get("/api/entries/changed").get_json()["count"] == 1


def test_category_flag_from_environment(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.setenv("STOCKCOUNT_DIFF_COMPARE_CATEGORY", "true")
    app = _create_test_app(tmp_path)
    assert app.config["DIFF_COMPARE_CATEGORY"] is True
    assert app.extensions["stockcount_store"].compare_category is True


def test_export_without_entries_is_rejected(tmp_path: Path) -> None:
    app = _create_test_app(tmp_path)
    client = app.test_client()
    response = client.get("/api/export")
    assert response.status_code == 400
    assert response.get_json()["error"] == "There are no items to export"


def test_template_download(tmp_path: Path) -> None:
    app = _create_test_app(tmp_path)
    client = app.test_client()

    response = client.get("/api/template")
    assert response.status_code == 200
    book = xlrd.open_workbook(file_contents=response.data)
    sheet = book.sheet_by_index(0)
    assert sheet.row_values(0) == HEADERS

    imported = client.post(
        "/api/import",
        data={"file": (BytesIO(response.data), "template.xls")},
        content_type="multipart/form-data",
    ).get_json()
    assert imported["processed"] == 1
