import json

import pytest

from database import COLLECTIONS, KeyValueStore, LocalStore, StorageError


def test_initialize_creates_every_collection(store):
    for name in COLLECTIONS:
        assert store.collection_path(name).exists()
    assert store.read_collection("deliveries") == []
    assert [u["id"] for u in store.read_collection("users")] == ["1", "2", "3"]


def test_initialize_twice_keeps_existing_files(store):
    before = {name: store.collection_path(name).read_bytes() for name in COLLECTIONS}
    assert store.initialize()
    after = {name: store.collection_path(name).read_bytes() for name in COLLECTIONS}
    assert before == after


def test_initialize_never_overwrites_changed_data(store):
    store.write_collection("products", [])
    assert store.initialize()
    assert store.read_collection("products") == []


def test_ensure_ready_is_idempotent(tmp_path):
    store = LocalStore(str(tmp_path / "nested" / "data"))
    assert store.ensure_ready()
    assert store.ensure_ready()
    assert store.data_dir.is_dir()


def test_seeded_users_carry_hashes_only(store):
    for user in store.read_collection("users"):
        assert "password" not in user
        assert user["hashed_password"].startswith("$pbkdf2-sha256$")


def test_write_then_read_round_trip(store):
    data = [
        {"product_id": "p9", "name": "Buttermilk", "price": 1.25, "tags": ["sour", "cold"]},
        {"product_id": "p10", "name": "Ghee", "price": 7.0, "meta": {"unit": "500g", "stock": None}},
    ]
    assert store.write_collection("products", data)
    assert store.read_collection("products") == data


def test_write_leaves_no_temp_files(store):
    store.write_collection("orders", [{"order_id": "o1"}])
    leftovers = [p.name for p in store.data_dir.iterdir() if p.name.endswith(".tmp")]
    assert leftovers == []


def test_missing_file_is_reseeded_on_read(store):
    store.collection_path("products").unlink()
    products = store.read_collection("products")
    assert [p["product_id"] for p in products] == ["p1", "p2"]
    assert store.collection_path("products").exists()


def test_corrupt_file_reads_as_empty(store):
    store.collection_path("orders").write_text("[{\"order_id\": \"o1\",", encoding="utf-8")
    assert store.read_collection("orders") == []


def test_corrupt_file_raises_in_strict_mode(store):
    store.collection_path("orders").write_text("{not json", encoding="utf-8")
    with pytest.raises(StorageError):
        store.read_collection("orders", strict=True)


def test_non_array_document_reads_as_empty(store):
    store.collection_path("users").write_text(json.dumps({"id": "1"}), encoding="utf-8")
    assert store.read_collection("users") == []
    with pytest.raises(StorageError):
        store.read_collection("users", strict=True)


def test_empty_file_reads_as_empty_list(store):
    store.collection_path("transactions").write_text("", encoding="utf-8")
    assert store.read_collection("transactions") == []
    assert store.read_collection("transactions", strict=True) == []


def test_repair_sets_corrupt_file_aside(store):
    path = store.collection_path("orders")
    path.write_text("garbage", encoding="utf-8")
    assert store.repair("orders")
    assert path.with_name("orders.json.corrupt").read_text(encoding="utf-8") == "garbage"
    assert [o["order_id"] for o in store.read_collection("orders")] == ["o1"]


def test_write_failure_returns_false(tmp_path):
    blocker = tmp_path / "data"
    blocker.write_text("not a directory", encoding="utf-8")
    store = LocalStore(str(blocker))
    assert store.write_collection("users", []) is False
    assert store.initialize() is False
    assert store.read_collection("users") == []


def test_get_documents_filters_by_equality(store):
    orders = store.get_documents("orders", {"user_id": "1", "status": "pending"})
    assert [o["order_id"] for o in orders] == ["o1"]
    assert store.get_documents("orders", {"user_id": "42"}) == []


def test_status_reports_counts(store):
    store.collection_path("orders").write_text("oops", encoding="utf-8")
    status = store.status()
    assert status["collections"]["users"] == 3
    assert status["collections"]["deliveries"] == 0
    assert status["collections"]["orders"] == "unreadable"


def test_key_value_store(tmp_path):
    kv = KeyValueStore(str(tmp_path / "settings" / "session.json"))
    assert kv.get_item("userId") is None
    assert kv.set_item("userId", "2")
    assert kv.get_item("userId") == "2"
    assert kv.remove_item("userId")
    assert kv.get_item("userId") is None
    # removing an absent key is not an error
    assert kv.remove_item("userId")
