"""
Local document store.

Every collection is one JSON array in its own file under DATA_DIR. Reads and
writes always move the whole document; there is no indexing or partial I/O.
Failures are logged and degrade to "no data" (``[]`` / ``False``) so callers
never see a raw I/O exception, unless they explicitly ask for strict reads.
"""

import copy
import json
import logging
import os
import tempfile
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Dict, List, Optional

from config import DATA_DIR, SETTINGS_DIR
from security import get_password_hash

logger = logging.getLogger(__name__)


class StorageError(Exception):
    """Raised by strict reads when a collection cannot be loaded."""


# ----- Seed data -----

SEED_USERS = [
    {"id": "1", "email": "user1@example.com", "password": "pass123", "name": "Alice", "role": "user",
     "phone_number": "5550001", "profile_info": {"avatar": "milk-icon.png", "address": "12 Meadow Lane"}},
    {"id": "2", "email": "vendor1@example.com", "password": "pass123", "name": "Bob", "role": "vendor",
     "approval_status": "approved", "phone_number": "5550002",
     "profile_info": {"business_name": "Bob's Milk", "address": "456 Dairy Rd", "avatar": "milk-icon.png"}},
    {"id": "3", "email": "admin@example.com", "password": "admin123", "name": "Admin", "role": "admin",
     "profile_info": {"avatar": "milk-icon.png"}},
]

SEED_PRODUCTS = [
    {"product_id": "p1", "vendor_id": "2", "name": "Full Cream Milk", "price": 2.99,
     "category": "milk", "unit": "1L", "stock": 50, "image": "milk1.jpg"},
    {"product_id": "p2", "vendor_id": "2", "name": "Skimmed Milk", "price": 2.49,
     "category": "milk", "unit": "1L", "stock": 40, "image": "milk2.jpg"},
]

SEED_ORDERS = [
    {"order_id": "o1", "user_id": "1", "vendor_id": "2", "products": ["p1"], "quantities": [1],
     "status": "pending", "total": 2.99, "created_at": "2023-10-01T12:00:00+00:00"},
]

SEED_SUBSCRIPTIONS = [
    {"subscription_id": "s1", "user_id": "1", "vendor_id": "2", "type": "monthly", "status": "active",
     "start_date": "2023-10-01T00:00:00+00:00", "end_date": "2023-10-31T00:00:00+00:00"},
]

SEED_TRANSACTIONS = [
    {"transaction_id": "t1", "user_id": "1", "vendor_id": "2", "amount": 2.99, "order_id": "o1",
     "type": "order", "date": "2023-10-01T12:00:00+00:00"},
]

SEED_DATA: Dict[str, List[Dict[str, Any]]] = {
    "users": SEED_USERS,
    "products": SEED_PRODUCTS,
    "orders": SEED_ORDERS,
    "subscriptions": SEED_SUBSCRIPTIONS,
    "transactions": SEED_TRANSACTIONS,
    "deliveries": [],
}

COLLECTIONS = tuple(SEED_DATA)


def _seed_documents(name: str) -> List[Dict[str, Any]]:
    docs = copy.deepcopy(SEED_DATA[name])
    if name == "users":
        for user in docs:
            user["hashed_password"] = get_password_hash(user.pop("password"))
    return docs


def _dump_atomic(path: Path, data: Any) -> None:
    """Write JSON next to ``path`` and rename it into place."""
    fd, tmp_name = tempfile.mkstemp(dir=str(path.parent), prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=2, ensure_ascii=False)
        os.replace(tmp_name, path)
    except BaseException:
        if os.path.exists(tmp_name):
            os.remove(tmp_name)
        raise


class LocalStore:
    """Whole-document JSON storage keyed by collection name."""

    def __init__(self, data_dir: Optional[str] = None):
        self.data_dir = Path(data_dir or DATA_DIR)
        self._locks = {name: threading.RLock() for name in COLLECTIONS}

    def collection_path(self, name: str) -> Path:
        return self.data_dir / f"{name}.json"

    @contextmanager
    def locked(self, name: str):
        """Hold the collection lock for a read-modify-write sequence."""
        lock = self._locks.get(name)
        if lock is None:
            lock = self._locks.setdefault(name, threading.RLock())
        with lock:
            yield

    # ----- Bootstrap -----

    def ensure_ready(self) -> bool:
        try:
            if not self.data_dir.exists():
                logger.info("Creating data directory %s", self.data_dir)
            self.data_dir.mkdir(parents=True, exist_ok=True)
            return True
        except OSError:
            logger.exception("Could not create data directory %s", self.data_dir)
            return False

    def _seed_collection(self, name: str) -> bool:
        path = self.collection_path(name)
        with self.locked(name):
            if path.exists():
                return True
            logger.info("Creating %s", path)
            _dump_atomic(path, _seed_documents(name))
            return True

    def initialize(self) -> bool:
        """Write seed documents for every absent collection. Never overwrites."""
        try:
            logger.info("Initializing local data in %s", self.data_dir)
            if not self.ensure_ready():
                return False
            for name in COLLECTIONS:
                self._seed_collection(name)
            logger.info("All data files are initialized.")
            return True
        except Exception:
            logger.exception("Error initializing data")
            return False

    def _self_heal(self, name: str) -> bool:
        logger.warning("Collection %s is missing, re-seeding it", name)
        try:
            return self.ensure_ready() and self._seed_collection(name)
        except Exception:
            logger.exception("Emergency initialization of %s failed", name)
            return False

    # ----- Documents -----

    def read_collection(self, name: str, strict: bool = False) -> List[Dict[str, Any]]:
        """Return the parsed array for ``name``.

        A missing document is re-seeded and read once more. Empty, malformed
        or non-array documents are logged and read as ``[]``; with
        ``strict=True`` every such failure raises ``StorageError`` instead.
        """
        path = self.collection_path(name)
        try:
            if not path.exists():
                self._self_heal(name)
                if not path.exists():
                    raise StorageError(f"{name} is missing even after initialization")
            content = path.read_text(encoding="utf-8")
            if not content.strip():
                logger.debug("%s is empty", name)
                return []
            docs = json.loads(content)
            if not isinstance(docs, list):
                raise StorageError(f"{name} does not hold a JSON array")
        except (OSError, ValueError, StorageError) as e:
            logger.error("Error reading %s: %s", name, e)
            if strict:
                if isinstance(e, StorageError):
                    raise
                raise StorageError(f"Could not read {name}: {e}") from e
            return []
        logger.debug("Read %d records from %s", len(docs), name)
        return docs

    def write_collection(self, name: str, docs: List[Dict[str, Any]]) -> bool:
        try:
            with self.locked(name):
                self.data_dir.mkdir(parents=True, exist_ok=True)
                _dump_atomic(self.collection_path(name), docs)
            return True
        except (OSError, TypeError, ValueError):
            logger.exception("Error writing to %s", name)
            return False

    def repair(self, name: str) -> bool:
        """Move an unreadable document aside and re-seed the collection."""
        path = self.collection_path(name)
        with self.locked(name):
            try:
                self.read_collection(name, strict=True)
                return True
            except StorageError:
                pass
            try:
                if path.exists():
                    aside = path.with_name(path.name + ".corrupt")
                    os.replace(path, aside)
                    logger.warning("Moved unreadable %s to %s", name, aside)
                return self._seed_collection(name)
            except OSError:
                logger.exception("Could not repair %s", name)
                return False

    def get_documents(self, name: str, filter_dict: Optional[Dict[str, Any]] = None) -> List[Dict[str, Any]]:
        """Linear-scan equality filter over a whole collection."""
        docs = self.read_collection(name)
        if not filter_dict:
            return docs
        return [d for d in docs if all(d.get(k) == v for k, v in filter_dict.items())]

    def status(self) -> Dict[str, Any]:
        collections = {}
        for name in COLLECTIONS:
            path = self.collection_path(name)
            if not path.exists():
                collections[name] = None
                continue
            try:
                collections[name] = len(self.read_collection(name, strict=True))
            except StorageError:
                collections[name] = "unreadable"
        return {"data_dir": str(self.data_dir), "collections": collections}


class KeyValueStore:
    """Small settings storage: one flat JSON object in one file."""

    def __init__(self, path: Optional[str] = None):
        self.path = Path(path) if path else Path(SETTINGS_DIR) / "session.json"
        self._lock = threading.Lock()

    def _load(self) -> Dict[str, Any]:
        if not self.path.exists():
            return {}
        try:
            data = json.loads(self.path.read_text(encoding="utf-8") or "{}")
        except (OSError, ValueError):
            logger.exception("Settings file %s is unreadable", self.path)
            return {}
        return data if isinstance(data, dict) else {}

    def get_item(self, key: str) -> Optional[Any]:
        with self._lock:
            return self._load().get(key)

    def set_item(self, key: str, value: Any) -> bool:
        with self._lock:
            data = self._load()
            data[key] = value
            try:
                self.path.parent.mkdir(parents=True, exist_ok=True)
                _dump_atomic(self.path, data)
            except OSError:
                logger.exception("Could not store %s", key)
                return False
            return True

    def remove_item(self, key: str) -> bool:
        with self._lock:
            data = self._load()
            if key not in data:
                return True
            del data[key]
            try:
                _dump_atomic(self.path, data)
            except OSError:
                logger.exception("Could not remove %s", key)
                return False
            return True


_store = None


def get_store() -> LocalStore:
    """Process-wide store rooted at DATA_DIR."""
    global _store
    if _store is None:
        _store = LocalStore()
    return _store
