import threading
from datetime import datetime, timedelta, timezone

from repositories import parse_timestamp


# Users

def test_add_user_rejects_duplicate_email_any_case(repos):
    first = repos.users.add({"email": "carol@example.com", "password": "secret1", "name": "Carol"})
    assert first is not None
    assert first["id"] == "4"
    assert repos.users.add({"email": "CAROL@Example.com", "password": "other1", "name": "Imposter"}) is None
    assert len(repos.users.get_all()) == 4


def test_add_user_hashes_password(repos):
    user = repos.users.add({"email": "dan@example.com", "password": "secret1"})
    assert "password" not in user
    stored = repos.users.get_by_id(user["id"])
    assert stored["hashed_password"] != "secret1"


def test_add_user_with_bad_role_is_refused(repos):
    assert repos.users.add({"email": "eve@example.com", "role": "superuser"}) is None


def test_get_by_email_is_case_insensitive(repos):
    assert repos.users.get_by_email("VENDOR1@EXAMPLE.COM")["id"] == "2"
    assert repos.users.get_by_email("nobody@example.com") is None


def test_update_is_shallow(repos):
    assert repos.users.update("2", {"profile_info": {"avatar": "icon.png"}})
    assert repos.users.get_by_id("2")["profile_info"] == {"avatar": "icon.png"}


def test_update_profile_info_merges_nested(repos):
    assert repos.users.update_avatar("2", "icon.png")
    profile = repos.users.get_by_id("2")["profile_info"]
    assert profile == {"business_name": "Bob's Milk", "address": "456 Dairy Rd", "avatar": "icon.png"}


def test_set_approval_status_only_for_vendors(repos):
    assert repos.users.set_approval_status("2", "rejected")
    assert repos.users.get_by_id("2")["approval_status"] == "rejected"
    assert repos.users.set_approval_status("1", "approved") is False
    assert repos.users.set_approval_status("2", "maybe") is False


def test_available_avatars(repos):
    values = [a["value"] for a in repos.users.available_avatars()]
    assert "milk-icon.png" in values


# Products

def test_add_product_generates_prefixed_id(repos):
    product = repos.products.add({"vendor_id": "2", "name": "Toned Milk", "price": 2.19, "product_id": "p1"})
    assert product["product_id"] == "p3"
    assert len(repos.products.get_by_vendor("2")) == 3


def test_add_product_with_negative_price_is_refused(repos):
    assert repos.products.add({"vendor_id": "2", "name": "Free Milk", "price": -1}) is None
    assert len(repos.products.get_all()) == 2


def test_update_preserves_untouched_fields(repos, store):
    before = repos.products.get_by_id("p1")
    assert repos.products.update("p1", {"price": 3.49})
    after = repos.products.get_by_id("p1")
    assert after["price"] == 3.49
    assert {k: v for k, v in after.items() if k != "price"} == {k: v for k, v in before.items() if k != "price"}
    # the other record is untouched too
    assert store.read_collection("products")[1] == repos.products.get_by_id("p2")


def test_update_adds_new_field(repos):
    assert repos.products.update("p2", {"discount": 10})
    product = repos.products.get_by_id("p2")
    assert product["discount"] == 10
    assert product["name"] == "Skimmed Milk"


def test_update_missing_record_returns_false(repos):
    assert repos.products.update("p99", {"price": 1.0}) is False


def test_update_cannot_change_id(repos):
    assert repos.products.update("p1", {"product_id": "p7"})
    assert repos.products.get_by_id("p1") is not None
    assert repos.products.get_by_id("p7") is None


def test_delete_product_does_not_cascade(repos):
    assert repos.products.delete("p1")
    assert repos.products.get_by_id("p1") is None
    assert repos.orders.get_by_id("o1")["products"] == ["p1"]


def test_delete_missing_product_returns_false(repos):
    assert repos.products.delete("p42") is False


def test_get_by_category(repos):
    assert len(repos.products.get_by_category("MILK")) == 2
    assert repos.products.get_by_category("cheese") == []


def test_mutations_refuse_to_overwrite_corrupt_collection(repos, store):
    path = store.collection_path("products")
    path.write_text("{broken", encoding="utf-8")
    assert repos.products.get_all() == []
    assert repos.products.add({"name": "New", "price": 1.0}) is None
    assert repos.products.update("p1", {"price": 1.0}) is False
    assert repos.products.delete("p1") is False
    assert path.read_text(encoding="utf-8") == "{broken"


# Orders

def test_order_lifecycle(repos):
    order = repos.orders.add({"user_id": "1", "vendor_id": "2", "products": ["p1"], "total": 2.99})
    assert order["status"] == "pending"
    assert order["order_id"] == "o2"
    assert order["created_at"]

    assert repos.orders.update_status(order["order_id"], "delivered")
    mine = {o["order_id"]: o for o in repos.orders.get_by_user("1")}
    assert mine["o2"]["status"] == "delivered"
    assert mine["o2"]["updated_at"]


def test_caller_fields_win_over_defaults(repos):
    order = repos.orders.add({"user_id": "1", "vendor_id": "2", "products": ["p2"], "status": "processing"})
    assert order["status"] == "processing"


def test_update_order_status_rejects_unknown_status(repos):
    assert repos.orders.update_status("o1", "shipped") is False
    assert repos.orders.get_by_id("o1")["status"] == "pending"


def test_orders_by_vendor(repos):
    assert [o["order_id"] for o in repos.orders.get_by_vendor("2")] == ["o1"]
    assert repos.orders.get_by_vendor("3") == []


# Subscriptions

def test_subscription_defaults_and_status(repos):
    sub = repos.subscriptions.add({"user_id": "1", "vendor_id": "2", "type": "weekly"})
    assert sub["subscription_id"] == "s2"
    assert sub["status"] == "active"
    assert repos.subscriptions.update_status("s2", "paused")
    assert repos.subscriptions.get_by_id("s2")["status"] == "paused"
    assert len(repos.subscriptions.get_by_user("1")) == 2


def test_vacation_mode(repos):
    assert repos.subscriptions.set_vacation("s1", "2024-01-10", "2024-01-17")
    sub = repos.subscriptions.get_by_id("s1")
    assert sub["vacation_mode"] is True
    assert sub["vacation_start"] == "2024-01-10"
    assert repos.subscriptions.set_vacation("s1", "2024-02-10", "2024-02-01") is False

    assert repos.subscriptions.clear_vacation("s1")
    sub = repos.subscriptions.get_by_id("s1")
    assert sub["vacation_mode"] is False
    assert sub["vacation_end"] is None


def test_vacation_lasts_one_to_ninety_days(repos):
    assert repos.subscriptions.set_vacation("s1", "2024-01-01", "2024-03-31")
    assert repos.subscriptions.set_vacation("s1", "2024-01-01", "2024-04-01") is False
    assert repos.subscriptions.set_vacation("s1", "2024-01-01", "2024-01-01") is False
    assert repos.subscriptions.set_vacation("s1", "soon", "2024-01-05") is False
    assert repos.subscriptions.get_by_id("s1")["vacation_end"] == "2024-03-31"


# Transactions

def test_transactions_are_append_only(repos):
    txn = repos.transactions.add({"user_id": "1", "vendor_id": "2", "amount": 5.0, "date": "1999-01-01"})
    assert txn["transaction_id"] == "t2"
    assert txn["date"] != "1999-01-01"
    assert repos.transactions.update("t2", {"amount": 0}) is False
    assert repos.transactions.get_by_id("t2")["amount"] == 5.0
    assert len(repos.transactions.get_by_user("1")) == 2


# Deliveries

def test_temporary_delivery_id_creates_then_updates(repos):
    assert repos.deliveries.update_status("delivery_s1", "out for delivery")
    deliveries = repos.deliveries.get_by_subscription("s1")
    assert len(deliveries) == 1
    created = deliveries[0]
    assert created["delivery_id"] == "d1"
    assert created["user_id"] == "1"
    assert created["status"] == "out for delivery"
    assert parse_timestamp(created["scheduled_date"]) > datetime.now(timezone.utc)

    assert repos.deliveries.update_status("delivery_s1", "delivered")
    deliveries = repos.deliveries.get_by_subscription("s1")
    assert len(deliveries) == 1
    assert deliveries[0]["status"] == "delivered"


def test_temporary_delivery_id_for_unknown_subscription(repos):
    assert repos.deliveries.update_status("delivery_s99", "delivered") is False
    assert repos.deliveries.get_all() == []


def test_upcoming_deliveries_skip_past_ones(repos):
    now = datetime.now(timezone.utc)
    repos.deliveries.add({"subscription_id": "s1", "scheduled_date": (now - timedelta(days=1)).isoformat()})
    later = repos.deliveries.add({"subscription_id": "s1", "scheduled_date": (now + timedelta(days=3)).isoformat()})
    sooner = repos.deliveries.add({"subscription_id": "s1", "scheduled_date": (now + timedelta(days=1)).isoformat()})
    upcoming = repos.deliveries.get_upcoming("s1", now=now)
    assert [d["delivery_id"] for d in upcoming] == [sooner["delivery_id"], later["delivery_id"]]

    assert repos.deliveries.update_status(sooner["delivery_id"], "skipped")
    assert repos.deliveries.get_by_id(sooner["delivery_id"])["status"] == "skipped"
    assert repos.deliveries.update_status("d99", "skipped") is False


def test_upcoming_ignores_non_text_dates(repos, store):
    later = (datetime.now(timezone.utc) + timedelta(days=2)).isoformat()
    store.write_collection("deliveries", [
        {"delivery_id": "d1", "subscription_id": "s1", "scheduled_date": 1717200000},
        {"delivery_id": "d2", "subscription_id": "s1", "scheduled_date": later},
    ])
    assert [d["delivery_id"] for d in repos.deliveries.get_upcoming("s1")] == ["d2"]
    assert parse_timestamp(1717200000) is None


# Concurrency

def test_raw_read_modify_write_can_lose_updates(store):
    # Known limitation of the unlocked primitives: two interleaved
    # read-modify-write sequences keep only the last writer's insert.
    first = store.read_collection("orders")
    second = store.read_collection("orders")
    first.append({"order_id": "o2", "user_id": "1"})
    second.append({"order_id": "o3", "user_id": "1"})
    assert store.write_collection("orders", first)
    assert store.write_collection("orders", second)
    assert [o["order_id"] for o in store.read_collection("orders")] == ["o1", "o3"]


def test_concurrent_repository_adds_all_persist(repos):
    start = threading.Barrier(8)
    results = []

    def worker(n):
        start.wait()
        results.append(repos.orders.add({"user_id": "1", "vendor_id": "2", "products": ["p1"], "total": n}))

    threads = [threading.Thread(target=worker, args=(n,)) for n in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert all(r is not None for r in results)
    ids = [o["order_id"] for o in repos.orders.get_all()]
    assert len(ids) == 9
    assert len(set(ids)) == 9
