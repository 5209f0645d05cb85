"""
Collection repositories.

One repository per collection. Every operation reads the whole collection,
works on it in memory and, for mutations, writes the whole collection back
while holding that collection's lock.
"""

import logging
import re
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Type

from pydantic import ValidationError

from config import DELIVERY_HOUR
from database import LocalStore, StorageError
from schemas import Record, User, Product, Order, Subscription, Transaction, Delivery
from security import get_password_hash

logger = logging.getLogger(__name__)

MAX_VACATION_DAYS = 90

AVAILABLE_AVATARS = [
    {"label": "Default Avatar", "value": "milk-icon.png"},
    {"label": "App Icon", "value": "icon.png"},
    {"label": "Splash Icon", "value": "splash-icon.png"},
]


# ----- Helpers -----

def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def parse_timestamp(value: Any) -> Optional[datetime]:
    if not value or not isinstance(value, str):
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def next_id(records: List[Dict[str, Any]], id_field: str = "id") -> str:
    """Return max(numeric suffix) + 1 as a string, without any prefix.

    Ids without digits are skipped with a warning rather than poisoning the
    maximum.
    """
    numbers = []
    for record in records or []:
        value = record.get(id_field)
        digits = re.sub(r"\D", "", str(value if value is not None else ""))
        if not digits:
            logger.warning("Skipping malformed %s %r", id_field, value)
            continue
        numbers.append(int(digits))
    if not numbers:
        return "1"
    return str(max(numbers) + 1)


def deep_merge(base: Dict[str, Any], patch: Dict[str, Any]) -> Dict[str, Any]:
    """Merge ``patch`` into a copy of ``base``, recursing into nested dicts."""
    merged = dict(base or {})
    for key, value in (patch or {}).items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


# ----- Base repository -----

class CollectionRepository:
    collection: str = ""
    id_field: str = "id"
    prefix: str = ""
    schema: Type[Record] = Record

    def __init__(self, store: LocalStore):
        self.store = store

    def defaults(self) -> Dict[str, Any]:
        return {}

    def _before_insert(self, record: Dict[str, Any], docs: List[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
        """Hook: adjust a new record, or return None to refuse it."""
        return record

    def _before_update(self, changes: Dict[str, Any]) -> Dict[str, Any]:
        return changes

    def _after_merge(self, merged: Dict[str, Any]) -> Dict[str, Any]:
        return merged

    def _is_valid(self, record: Dict[str, Any]) -> bool:
        try:
            self.schema.model_validate(record)
        except ValidationError as e:
            logger.warning("Rejected %s record %s: %s", self.collection, record.get(self.id_field), e)
            return False
        return True

    def _load_for_write(self) -> Optional[List[Dict[str, Any]]]:
        try:
            return self.store.read_collection(self.collection, strict=True)
        except StorageError:
            logger.error("Refusing to modify unreadable collection %s", self.collection)
            return None

    def get_all(self) -> List[Dict[str, Any]]:
        return self.store.read_collection(self.collection)

    def get_by_id(self, record_id: str) -> Optional[Dict[str, Any]]:
        for doc in self.get_all():
            if doc.get(self.id_field) == record_id:
                return doc
        return None

    def find(self, **filters) -> List[Dict[str, Any]]:
        return self.store.get_documents(self.collection, filters)

    def add(self, data: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        with self.store.locked(self.collection):
            docs = self._load_for_write()
            if docs is None:
                return None
            new_id = f"{self.prefix}{next_id(docs, self.id_field)}"
            record = {self.id_field: new_id, **self.defaults(), **data}
            record[self.id_field] = new_id
            record = self._before_insert(record, docs)
            if record is None or not self._is_valid(record):
                return None
            docs.append(record)
            if not self.store.write_collection(self.collection, docs):
                return None
        logger.info("Added %s %s", self.collection, new_id)
        return record

    def update(self, record_id: str, changes: Dict[str, Any]) -> bool:
        """Shallow-merge ``changes`` over the stored record.

        Nested maps are replaced wholesale; use ``deep_merge`` first to keep
        their untouched keys.
        """
        with self.store.locked(self.collection):
            docs = self._load_for_write()
            if docs is None:
                return False
            index = next((i for i, d in enumerate(docs) if d.get(self.id_field) == record_id), None)
            if index is None:
                logger.info("%s %s not found", self.collection, record_id)
                return False
            merged = self._after_merge({**docs[index], **self._before_update(dict(changes))})
            merged[self.id_field] = record_id
            if not self._is_valid(merged):
                return False
            docs[index] = merged
            return self.store.write_collection(self.collection, docs)


# ----- Users -----

class UserRepository(CollectionRepository):
    collection = "users"
    schema = User

    def get_by_email(self, email: str) -> Optional[Dict[str, Any]]:
        wanted = (email or "").strip().lower()
        for user in self.get_all():
            if str(user.get("email", "")).lower() == wanted:
                return user
        return None

    def _before_insert(self, record, docs):
        record["email"] = str(record.get("email", "")).strip()
        wanted = record["email"].lower()
        if any(str(u.get("email", "")).lower() == wanted for u in docs):
            logger.info("Email %s is already registered", record["email"])
            return None
        if "password" in record:
            record["hashed_password"] = get_password_hash(record.pop("password"))
        return record

    def _before_update(self, changes):
        if "password" in changes:
            changes["hashed_password"] = get_password_hash(changes.pop("password"))
        return changes

    def _after_merge(self, merged):
        if merged.get("hashed_password"):
            merged.pop("password", None)
        return merged

    def update_profile_info(self, user_id: str, patch: Dict[str, Any]) -> bool:
        with self.store.locked(self.collection):
            user = self.get_by_id(user_id)
            if user is None:
                return False
            return self.update(user_id, {"profile_info": deep_merge(user.get("profile_info") or {}, patch)})

    def update_avatar(self, user_id: str, avatar: str) -> bool:
        return self.update_profile_info(user_id, {"avatar": avatar})

    @staticmethod
    def available_avatars() -> List[Dict[str, str]]:
        return [dict(a) for a in AVAILABLE_AVATARS]

    def set_approval_status(self, vendor_id: str, status: str) -> bool:
        with self.store.locked(self.collection):
            vendor = self.get_by_id(vendor_id)
            if vendor is None or vendor.get("role") != "vendor":
                logger.info("User %s is not a vendor", vendor_id)
                return False
            return self.update(vendor_id, {"approval_status": status})

    def get_vendors(self, approval_status: Optional[str] = None) -> List[Dict[str, Any]]:
        vendors = self.find(role="vendor")
        if approval_status is not None:
            vendors = [v for v in vendors if v.get("approval_status") == approval_status]
        return vendors


# ----- Products -----

class ProductRepository(CollectionRepository):
    collection = "products"
    id_field = "product_id"
    prefix = "p"
    schema = Product

    def get_by_vendor(self, vendor_id: str) -> List[Dict[str, Any]]:
        return self.find(vendor_id=vendor_id)

    def get_by_category(self, category: str) -> List[Dict[str, Any]]:
        wanted = (category or "").lower()
        return [p for p in self.get_all() if str(p.get("category", "")).lower() == wanted]

    def delete(self, product_id: str) -> bool:
        """Remove a product. Orders that name it are left untouched."""
        with self.store.locked(self.collection):
            docs = self._load_for_write()
            if docs is None:
                return False
            remaining = [p for p in docs if p.get("product_id") != product_id]
            if len(remaining) == len(docs):
                return False
            if not self.store.write_collection(self.collection, remaining):
                return False
        referencing = [o.get("order_id") for o in self.store.read_collection("orders")
                       if product_id in (o.get("products") or [])]
        if referencing:
            logger.warning("Deleted product %s is still referenced by orders %s", product_id, referencing)
        return True


# ----- Orders -----

class OrderRepository(CollectionRepository):
    collection = "orders"
    id_field = "order_id"
    prefix = "o"
    schema = Order

    def defaults(self):
        return {"created_at": now_iso(), "status": "pending"}

    def get_by_user(self, user_id: str) -> List[Dict[str, Any]]:
        return self.find(user_id=user_id)

    def get_by_vendor(self, vendor_id: str) -> List[Dict[str, Any]]:
        return self.find(vendor_id=vendor_id)

    def update_status(self, order_id: str, status: str) -> bool:
        return self.update(order_id, {"status": status, "updated_at": now_iso()})


# ----- Subscriptions -----

class SubscriptionRepository(CollectionRepository):
    collection = "subscriptions"
    id_field = "subscription_id"
    prefix = "s"
    schema = Subscription

    def defaults(self):
        return {"created_at": now_iso(), "status": "active"}

    def get_by_user(self, user_id: str) -> List[Dict[str, Any]]:
        return self.find(user_id=user_id)

    def get_by_vendor(self, vendor_id: str) -> List[Dict[str, Any]]:
        return self.find(vendor_id=vendor_id)

    def update_status(self, subscription_id: str, status: str) -> bool:
        return self.update(subscription_id, {"status": status, "updated_at": now_iso()})

    def set_vacation(self, subscription_id: str, start: str, end: str) -> bool:
        """Pause deliveries between ``start`` and ``end`` (1 to 90 days)."""
        start_at, end_at = parse_timestamp(start), parse_timestamp(end)
        if start_at is None or end_at is None:
            logger.info("Vacation for %s has an unreadable date", subscription_id)
            return False
        if not timedelta(days=1) <= end_at - start_at <= timedelta(days=MAX_VACATION_DAYS):
            logger.info("Vacation for %s must last 1 to %d days", subscription_id, MAX_VACATION_DAYS)
            return False
        return self.update(subscription_id, {
            "vacation_mode": True,
            "vacation_start": start,
            "vacation_end": end,
            "updated_at": now_iso(),
        })

    def clear_vacation(self, subscription_id: str) -> bool:
        return self.update(subscription_id, {
            "vacation_mode": False,
            "vacation_start": None,
            "vacation_end": None,
            "updated_at": now_iso(),
        })


# ----- Transactions -----

class TransactionRepository(CollectionRepository):
    collection = "transactions"
    id_field = "transaction_id"
    prefix = "t"
    schema = Transaction

    def _before_insert(self, record, docs):
        record["date"] = now_iso()
        return record

    def update(self, record_id, changes):
        logger.warning("Transactions are append-only, refusing to modify %s", record_id)
        return False

    def get_by_user(self, user_id: str) -> List[Dict[str, Any]]:
        return self.find(user_id=user_id)

    def get_by_vendor(self, vendor_id: str) -> List[Dict[str, Any]]:
        return self.find(vendor_id=vendor_id)


# ----- Deliveries -----

TEMP_DELIVERY_PREFIX = "delivery_"


class DeliveryRepository(CollectionRepository):
    collection = "deliveries"
    id_field = "delivery_id"
    prefix = "d"
    schema = Delivery

    def __init__(self, store: LocalStore, subscriptions: Optional[SubscriptionRepository] = None):
        super().__init__(store)
        self.subscriptions = subscriptions or SubscriptionRepository(store)

    def defaults(self):
        return {"created_at": now_iso(), "status": "scheduled"}

    def get_by_subscription(self, subscription_id: str) -> List[Dict[str, Any]]:
        return self.find(subscription_id=subscription_id)

    def get_upcoming(self, subscription_id: str, now: Optional[datetime] = None) -> List[Dict[str, Any]]:
        now = now or datetime.now(timezone.utc)
        upcoming = []
        for delivery in self.get_by_subscription(subscription_id):
            scheduled = parse_timestamp(delivery.get("scheduled_date"))
            if scheduled is not None and scheduled >= now:
                upcoming.append(delivery)
        return sorted(upcoming, key=lambda d: parse_timestamp(d["scheduled_date"]))

    def update_status(self, delivery_id: str, status: str) -> bool:
        """Set a delivery's status.

        ``delivery_<subscription_id>`` addresses the next upcoming delivery of
        that subscription, creating one for tomorrow if none is scheduled.
        """
        if not delivery_id.startswith(TEMP_DELIVERY_PREFIX):
            return self.update(delivery_id, {"status": status, "updated_at": now_iso()})

        subscription_id = delivery_id[len(TEMP_DELIVERY_PREFIX):]
        with self.store.locked(self.collection):
            upcoming = self.get_upcoming(subscription_id)
            if upcoming:
                return self.update(upcoming[0]["delivery_id"], {"status": status, "updated_at": now_iso()})

            subscription = self.subscriptions.get_by_id(subscription_id)
            if subscription is None:
                logger.info("Subscription %s not found", subscription_id)
                return False
            tomorrow = (datetime.now(timezone.utc) + timedelta(days=1)).replace(
                hour=DELIVERY_HOUR, minute=0, second=0, microsecond=0)
            created = self.add({
                "subscription_id": subscription_id,
                "user_id": subscription.get("user_id"),
                "vendor_id": subscription.get("vendor_id"),
                "scheduled_date": tomorrow.isoformat(),
                "status": status,
                "updated_at": now_iso(),
            })
            return created is not None


class Repositories:
    """All repositories over one store."""

    def __init__(self, store: LocalStore):
        self.store = store
        self.users = UserRepository(store)
        self.products = ProductRepository(store)
        self.orders = OrderRepository(store)
        self.subscriptions = SubscriptionRepository(store)
        self.transactions = TransactionRepository(store)
        self.deliveries = DeliveryRepository(store, self.subscriptions)
