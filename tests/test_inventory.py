import json
from pathlib import Path

import pytest

from stockcount.ingest import MissingColumnsError
from stockcount.inventory import InventoryStore, PersistenceError

HEADERS = ["ProductName", "ItemNumber", "FloorCount", "StorageCount", "Category"]


def _rows():
    return [
        HEADERS,
        ["Synthetic 5W-30", "OIL-001", "4", "10", "Oils"],
        ["Wiper Blade 22in", "WIP-22", "2", "", "wipers"],
        ["Mystery", "ZZ-9", "1", "1", "unknown-zone"],
    ]


def test_default_categories(tmp_path: Path) -> None:
    store = InventoryStore(tmp_path / "data.json")

    categories = store.list_categories()
    assert [category.id for category in categories] == [
        "oils",
        "oil-filters",
        "air-filters",
        "cabin-filters",
        "wipers",
        "misc",
    ]
    assert all(category.is_locked for category in categories)
    assert not any(category.is_custom for category in categories)
    assert store.list_entries() == []


def test_category_management(tmp_path: Path) -> None:
    store = InventoryStore(tmp_path / "data.json")

    plugs = store.create_category("Spark Plugs", color="#FFCC00")
    assert plugs.id == "spark-plugs"
    assert plugs.is_custom
    assert not plugs.is_locked

    with pytest.raises(ValueError):
        store.create_category("spark plugs")
    second = store.create_category("Spark-Plugs!")
    assert second.id == "spark-plugs-2"

    renamed = store.update_category("spark-plugs", name="Plugs", icon="bolt")
    assert renamed.name == "Plugs"
    assert store.get_category("spark-plugs").icon == "bolt"

    assert store.toggle_category_lock("spark-plugs").is_locked
    assert not store.toggle_category_lock("spark-plugs").is_locked

    with pytest.raises(KeyError):
        store.get_category("nope")
    with pytest.raises(ValueError):
        store.update_category("spark-plugs", name="  ")


def test_delete_category_rules(tmp_path: Path) -> None:
    store = InventoryStore(tmp_path / "data.json")
    store.create_category("Batteries")
    store.add_entry("BAT-1", category="batteries", floor_count=1)
    store.add_entry("BAT-2", category="batteries", storage_count=2)
    store.add_entry("OIL-1", category="oils", floor_count=3)

    with pytest.raises(ValueError):
        store.delete_category("oils")
    with pytest.raises(KeyError):
        store.delete_category("missing")

    removed = store.delete_category("batteries")
    assert removed == 2
    assert [entry.item_number for entry in store.list_entries()] == ["OIL-1"]
    assert "batteries" not in {category.id for category in store.list_categories()}


def test_add_entry_upserts_by_item_number(tmp_path: Path) -> None:
    store = InventoryStore(tmp_path / "data.json")

    first = store.add_entry("OIL-001", category="oils", floor_count=2, storage_count=3)
    assert first.total_count == 5

    second = store.add_entry("oil-001", category="oils", floor_count=7, product_name="Oil")
    assert second.id == first.id
    entries = store.list_entries()
    assert len(entries) == 1
    assert entries[0].item_number == "oil-001"
    assert entries[0].floor_count == 7
    assert entries[0].storage_count == 0
    assert store.find_entry("OIL-001").product_name == "Oil"
    assert store.find_entry("nothing") is None


def test_add_entry_validation(tmp_path: Path) -> None:
    store = InventoryStore(tmp_path / "data.json")

    with pytest.raises(ValueError):
        store.add_entry("  ", category="oils")
    with pytest.raises(ValueError):
        store.add_entry("OIL-1", category="oils", floor_count=-1)
    with pytest.raises(ValueError):
        store.add_entry("OIL-1", category="tires")


def test_update_and_delete_entry(tmp_path: Path) -> None:
    store = InventoryStore(tmp_path / "data.json")
    oil = store.add_entry("OIL-1", category="oils", floor_count=1, storage_count=1)
    store.add_entry("OIL-2", category="oils")

    updated = store.update_entry(oil.id, floor_count=5, category="misc", product_name="Bulk")
    assert updated.total_count == 6
    assert store.get_entry(oil.id).category == "misc"
    assert store.get_entry(oil.id).to_dict()["totalCount"] == 6

    with pytest.raises(ValueError):
        store.update_entry(oil.id, item_number="oil-2")
    with pytest.raises(ValueError):
        store.update_entry(oil.id, storage_count=-3)
    with pytest.raises(ValueError):
        store.update_entry(oil.id, category="tires")
    with pytest.raises(KeyError):
        store.update_entry("missing", floor_count=1)

    store.delete_entry(oil.id)
    with pytest.raises(KeyError):
        store.get_entry(oil.id)
    with pytest.raises(KeyError):
        store.delete_entry(oil.id)


def test_list_entries_by_category(tmp_path: Path) -> None:
    store = InventoryStore(tmp_path / "data.json")
    store.add_entry("OIL-1", category="oils")
    store.add_entry("WIP-1", category="wipers")

    assert [entry.item_number for entry in store.list_entries("wipers")] == ["WIP-1"]
    assert len(store.list_entries()) == 2


def test_resets(tmp_path: Path) -> None:
    store = InventoryStore(tmp_path / "data.json")
    store.add_entry("OIL-1", category="oils", floor_count=2, storage_count=3)
    store.add_entry("OIL-2", category="oils", floor_count=4, storage_count=5)

    assert store.reset_floor_counts() == 2
    assert [entry.floor_count for entry in store.list_entries()] == [0, 0]
    assert [entry.storage_count for entry in store.list_entries()] == [3, 5]

    assert store.reset_storage_counts() == 2
    assert [entry.total_count for entry in store.list_entries()] == [0, 0]

    assert store.reset_entries() == 2
    assert store.list_entries() == []


def test_import_rows_summary_and_upload_log(tmp_path: Path) -> None:
    store = InventoryStore(tmp_path / "data.json")
    store.add_entry("oil-001", category="oils", floor_count=1)

    summary = store.import_rows(_rows(), file_name="counts.csv")
    assert summary.processed == 2
    assert summary.new == 1
    assert summary.updated == 1
    assert summary.error_count == 1
    assert summary.errors[0].startswith("Row 3: category not recognized")
    assert summary.message == "Successfully processed 2 items (1 new, 1 updated) with 1 errors"
    assert summary.category_counts["Oils"] == 1
    assert summary.category_counts["Wipers"] == 1

    oil = store.find_entry("OIL-001")
    assert oil.item_number == "OIL-001"
    assert oil.product_name == "Synthetic 5W-30"
    assert oil.total_count == 14

    logs = store.list_upload_logs()
    assert len(logs) == 1
    assert logs[0].file_name == "counts.csv"
    assert logs[0].total_items == 2
    assert logs[0].new_items == 1
    assert logs[0].updated_items == 1
    assert logs[0].skipped_items == 1
    assert store.upload_log_path == tmp_path / "data.uploads.jsonl"


def test_import_schema_error_leaves_store_untouched(tmp_path: Path) -> None:
    store = InventoryStore(tmp_path / "data.json")

    with pytest.raises(MissingColumnsError):
        store.import_rows([["SKU", "Name"], ["A-1", "Thing"]])
    assert store.list_entries() == []
    assert store.list_upload_logs() == []


def test_persistence_failure_keeps_parsed_rows(tmp_path: Path, monkeypatch) -> None:
    store = InventoryStore(tmp_path / "data.json")
    parsed = store.parse_import(_rows())

    def failing_write(state):
        raise OSError("disk full")

    monkeypatch.setattr(store, "_write_state_unlocked", failing_write)
    with pytest.raises(PersistenceError) as excinfo:
        store.apply_import(parsed, file_name="counts.csv")
    assert excinfo.value.parsed is parsed
    assert "disk full" in str(excinfo.value)

    monkeypatch.undo()
    summary = store.apply_import(excinfo.value.parsed, file_name="counts.csv")
    assert summary.new == 2
    assert len(store.list_entries()) == 2


def test_export_snapshot_and_changed_entries(tmp_path: Path) -> None:
    store = InventoryStore(tmp_path / "data.json")
    oil = store.add_entry("OIL-1", category="oils", floor_count=1)
    store.add_entry("WIP-1", category="wipers", storage_count=2)

    assert store.latest_snapshot() is None
    assert len(store.changed_entries()) == 2

    snapshot = store.mark_export_snapshot()
    assert len(snapshot.entries) == 2
    assert store.latest_snapshot().captured_at == snapshot.captured_at
    assert store.changed_entries() == []

    store.update_entry(oil.id, floor_count=9)
    store.add_entry("NEW-1", category="misc")
    assert [entry.item_number for entry in store.changed_entries()] == ["OIL-1", "NEW-1"]


def test_category_change_detection_is_configurable(tmp_path: Path) -> None:
    store = InventoryStore(tmp_path / "data.json")
    oil = store.add_entry("OIL-1", category="oils", floor_count=1)
    store.mark_export_snapshot()
    store.update_entry(oil.id, category="misc")

    assert store.changed_entries() == []
    assert [entry.id for entry in store.changed_entries(compare_category=True)] == [oil.id]

    strict = InventoryStore(tmp_path / "data.json", compare_category=True)
    assert [entry.id for entry in strict.changed_entries()] == [oil.id]


def test_state_survives_reload(tmp_path: Path) -> None:
    storage = tmp_path / "data.json"
    store = InventoryStore(storage)
    store.create_category("Batteries")
    store.add_entry("BAT-1", category="batteries", floor_count=3)
    store.mark_export_snapshot()

    reloaded = InventoryStore(storage)
    assert reloaded.find_entry("bat-1").floor_count == 3
    assert reloaded.get_category("batteries").is_custom
    assert reloaded.latest_snapshot() is not None
    assert reloaded.changed_entries() == []


def test_legacy_state_is_upgraded(tmp_path: Path) -> None:
    storage = tmp_path / "data.json"
    storage.write_text(
        json.dumps(
            {
                "entries": [
                    {"itemNumber": "T-1", "floorCount": 2, "category": "tires"},
                    {"item_number": "t-1", "storage_count": 5, "category": "tires"},
                    {"itemNumber": "", "category": "oils"},
                    {"itemNumber": "N-1", "floorCount": "-3"},
                    "garbage",
                ]
            }
        ),
        encoding="utf-8",
    )
    store = InventoryStore(storage)

    entries = store.list_entries()
    assert [entry.item_number for entry in entries] == ["t-1", "N-1"]
    assert entries[0].storage_count == 5
    assert entries[1].category == "misc"
    assert entries[1].floor_count == 0
    tires = store.get_category("tires")
    assert tires.is_custom
    assert len(store.list_categories()) == 7

    saved = json.loads(storage.read_text(encoding="utf-8"))
    assert set(saved) == {"entries", "categories", "snapshot", "meta"}
