"""
Persistence contract for the storefront services, plus an in-memory store.

Services only talk to a ``Store``; ``database.MongoStore`` is the production
implementation and ``MemoryStore`` backs local runs without ``DATABASE_URL``
and the test-suite. Documents are plain dicts keyed like MongoDB documents
(``_id`` plus fields). Stores hand out copies, never their own state.
"""
import copy
import threading
import uuid
from contextlib import contextmanager
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional, Protocol, Tuple, TypeVar

T = TypeVar("T")

COLLECTIONS = ("products", "categories", "users", "cart_items", "orders")


def now_utc():
    return datetime.now(timezone.utc)


def new_id() -> str:
    return uuid.uuid4().hex


def stamp(doc: dict) -> dict:
    doc = dict(doc)
    doc.setdefault("_id", new_id())
    ts = now_utc()
    doc.setdefault("created_at", ts)
    doc["updated_at"] = ts
    return doc


class Store(Protocol):
    def run_in_transaction(self, callback: Callable[["Store"], T]) -> T:
        """Run ``callback(tx)`` as one unit of work: everything done through
        ``tx`` commits together or not at all.

        The callback may be invoked more than once when a transient conflict
        forces a retry, so it must not keep state between attempts.
        """
        ...

    # products
    def get_product(self, product_id: str) -> Optional[dict]: ...
    def list_products(self, *, category_id: Optional[str] = None, search: Optional[str] = None,
                      min_price: Optional[Decimal] = None, max_price: Optional[Decimal] = None,
                      in_stock: bool = False, sort_by: str = "created_at", descending: bool = True,
                      skip: int = 0, limit: int = 12) -> Tuple[List[dict], int]: ...
    def insert_product(self, doc: dict) -> dict: ...
    def update_product(self, product_id: str, fields: dict) -> Optional[dict]: ...
    def delete_product(self, product_id: str) -> bool: ...
    def count_products(self, category_id: Optional[str] = None) -> int: ...

    def decrement_stock(self, product_id: str, qty: int) -> bool:
        """Atomically take ``qty`` units if at least that many are in stock."""
        ...

    def increment_stock(self, product_id: str, qty: int) -> bool: ...

    # categories
    def get_category(self, category_id: str) -> Optional[dict]: ...
    def get_category_by_name(self, name: str) -> Optional[dict]: ...
    def list_categories(self) -> List[dict]: ...
    def insert_category(self, doc: dict) -> dict: ...
    def update_category(self, category_id: str, fields: dict) -> Optional[dict]: ...
    def delete_category(self, category_id: str) -> bool: ...

    # users
    def get_user(self, user_id: str) -> Optional[dict]: ...
    def get_user_by_email(self, email: str) -> Optional[dict]: ...
    def list_users(self, *, role: Optional[str] = None, search: Optional[str] = None,
                   skip: int = 0, limit: int = 10) -> Tuple[List[dict], int]: ...
    def insert_user(self, doc: dict) -> dict: ...
    def update_user(self, user_id: str, fields: dict) -> Optional[dict]: ...
    def delete_user(self, user_id: str) -> bool: ...

    # cart
    def list_cart_items(self, user_id: str) -> List[dict]: ...
    def get_cart_item(self, user_id: str, item_id: str) -> Optional[dict]: ...
    def get_cart_item_for_product(self, user_id: str, product_id: str) -> Optional[dict]: ...
    def insert_cart_item(self, doc: dict) -> dict: ...
    def set_cart_quantity(self, item_id: str, quantity: int) -> Optional[dict]: ...
    def delete_cart_item(self, item_id: str) -> bool: ...
    def clear_cart(self, user_id: str) -> int: ...
    def delete_cart_items_for_product(self, product_id: str) -> int: ...

    # orders
    def insert_order(self, doc: dict) -> dict: ...
    def get_order(self, order_id: str, user_id: Optional[str] = None) -> Optional[dict]: ...
    def list_orders(self, *, user_id: Optional[str] = None, status: Optional[str] = None,
                    payment_status: Optional[str] = None, skip: int = 0,
                    limit: int = 20) -> Tuple[List[dict], int]: ...
    def update_order(self, order_id: str, fields: dict) -> Optional[dict]: ...
    def count_orders_by(self, field: str) -> Dict[str, int]: ...
    def sum_order_totals(self, payment_status: str) -> Decimal: ...
    def product_in_orders(self, product_id: str) -> bool: ...


class MemoryStore:
    """Thread-safe dict-backed store.

    One re-entrant lock guards every call. ``transaction()`` holds that lock
    for the whole unit of work, so transactions are serialised and never
    conflict, and restores a deep snapshot when the block raises.
    """

    def __init__(self):
        self._lock = threading.RLock()
        self._data: Dict[str, Dict[str, dict]] = {name: {} for name in COLLECTIONS}

    @contextmanager
    def transaction(self):
        with self._lock:
            snapshot = copy.deepcopy(self._data)
            try:
                yield self
            except BaseException:
                self._data = snapshot
                raise

    def run_in_transaction(self, callback):
        with self.transaction() as tx:
            return callback(tx)

    # ---------------------- helpers ----------------------

    def _get(self, collection: str, doc_id: str) -> Optional[dict]:
        with self._lock:
            doc = self._data[collection].get(doc_id)
            return copy.deepcopy(doc) if doc is not None else None

    def _insert(self, collection: str, doc: dict) -> dict:
        doc = stamp(doc)
        with self._lock:
            self._data[collection][doc["_id"]] = copy.deepcopy(doc)
        return doc

    def _update(self, collection: str, doc_id: str, fields: dict) -> Optional[dict]:
        with self._lock:
            doc = self._data[collection].get(doc_id)
            if doc is None:
                return None
            doc.update(copy.deepcopy(fields))
            doc["updated_at"] = now_utc()
            return copy.deepcopy(doc)

    def _delete(self, collection: str, doc_id: str) -> bool:
        with self._lock:
            return self._data[collection].pop(doc_id, None) is not None

    def _all(self, collection: str) -> List[dict]:
        with self._lock:
            return [copy.deepcopy(d) for d in self._data[collection].values()]

    @staticmethod
    def _page(docs: List[dict], skip: int, limit: int) -> Tuple[List[dict], int]:
        return docs[skip:skip + limit], len(docs)

    # ---------------------- products ----------------------

    def get_product(self, product_id):
        return self._get("products", product_id)

    def list_products(self, *, category_id=None, search=None, min_price=None, max_price=None,
                      in_stock=False, sort_by="created_at", descending=True, skip=0, limit=12):
        docs = self._all("products")
        if category_id:
            docs = [d for d in docs if d.get("category_id") == category_id]
        if search:
            needle = search.lower()
            docs = [d for d in docs
                    if needle in d.get("name", "").lower() or needle in d.get("description", "").lower()]
        if min_price is not None:
            docs = [d for d in docs if d["price"] >= min_price]
        if max_price is not None:
            docs = [d for d in docs if d["price"] <= max_price]
        if in_stock:
            docs = [d for d in docs if d.get("stock", 0) > 0]
        if sort_by == "created_at":
            # insertion order is creation order
            if descending:
                docs.reverse()
        else:
            docs.sort(key=lambda d: d[sort_by], reverse=descending)
        return self._page(docs, skip, limit)

    def insert_product(self, doc):
        return self._insert("products", doc)

    def update_product(self, product_id, fields):
        return self._update("products", product_id, fields)

    def delete_product(self, product_id):
        return self._delete("products", product_id)

    def count_products(self, category_id=None):
        with self._lock:
            return sum(1 for d in self._data["products"].values()
                       if category_id is None or d.get("category_id") == category_id)

    def decrement_stock(self, product_id, qty):
        with self._lock:
            doc = self._data["products"].get(product_id)
            if doc is None or doc["stock"] < qty:
                return False
            doc["stock"] -= qty
            doc["updated_at"] = now_utc()
            return True

    def increment_stock(self, product_id, qty):
        with self._lock:
            doc = self._data["products"].get(product_id)
            if doc is None:
                return False
            doc["stock"] += qty
            doc["updated_at"] = now_utc()
            return True

    # ---------------------- categories ----------------------

    def get_category(self, category_id):
        return self._get("categories", category_id)

    def get_category_by_name(self, name):
        wanted = name.strip().lower()
        for doc in self._all("categories"):
            if doc["name"].lower() == wanted:
                return doc
        return None

    def list_categories(self):
        return sorted(self._all("categories"), key=lambda d: d["name"].lower())

    def insert_category(self, doc):
        return self._insert("categories", doc)

    def update_category(self, category_id, fields):
        return self._update("categories", category_id, fields)

    def delete_category(self, category_id):
        return self._delete("categories", category_id)

    # ---------------------- users ----------------------

    def get_user(self, user_id):
        return self._get("users", user_id)

    def get_user_by_email(self, email):
        wanted = email.lower()
        for doc in self._all("users"):
            if doc["email"] == wanted:
                return doc
        return None

    def list_users(self, *, role=None, search=None, skip=0, limit=10):
        docs = list(reversed(self._all("users")))
        if role:
            docs = [d for d in docs if d["role"] == role]
        if search:
            needle = search.lower()
            docs = [d for d in docs if needle in d["name"].lower() or needle in d["email"]]
        return self._page(docs, skip, limit)

    def insert_user(self, doc):
        return self._insert("users", doc)

    def update_user(self, user_id, fields):
        return self._update("users", user_id, fields)

    def delete_user(self, user_id):
        with self._lock:
            if not self._delete("users", user_id):
                return False
            self.clear_cart(user_id)
            return True

    # ---------------------- cart ----------------------

    def list_cart_items(self, user_id):
        return [d for d in reversed(self._all("cart_items")) if d["user_id"] == user_id]

    def get_cart_item(self, user_id, item_id):
        doc = self._get("cart_items", item_id)
        if doc is None or doc["user_id"] != user_id:
            return None
        return doc

    def get_cart_item_for_product(self, user_id, product_id):
        for doc in self._all("cart_items"):
            if doc["user_id"] == user_id and doc["product_id"] == product_id:
                return doc
        return None

    def insert_cart_item(self, doc):
        return self._insert("cart_items", doc)

    def set_cart_quantity(self, item_id, quantity):
        return self._update("cart_items", item_id, {"quantity": quantity})

    def delete_cart_item(self, item_id):
        return self._delete("cart_items", item_id)

    def clear_cart(self, user_id):
        return self._delete_cart_where(lambda d: d["user_id"] == user_id)

    def delete_cart_items_for_product(self, product_id):
        return self._delete_cart_where(lambda d: d["product_id"] == product_id)

    def _delete_cart_where(self, predicate) -> int:
        with self._lock:
            items = self._data["cart_items"]
            doomed = [k for k, d in items.items() if predicate(d)]
            for k in doomed:
                del items[k]
            return len(doomed)

    # ---------------------- orders ----------------------

    def insert_order(self, doc):
        return self._insert("orders", doc)

    def get_order(self, order_id, user_id=None):
        doc = self._get("orders", order_id)
        if doc is None or (user_id is not None and doc["user_id"] != user_id):
            return None
        return doc

    def list_orders(self, *, user_id=None, status=None, payment_status=None, skip=0, limit=20):
        docs = list(reversed(self._all("orders")))
        if user_id:
            docs = [d for d in docs if d["user_id"] == user_id]
        if status:
            docs = [d for d in docs if d["status"] == status]
        if payment_status:
            docs = [d for d in docs if d["payment_status"] == payment_status]
        return self._page(docs, skip, limit)

    def update_order(self, order_id, fields):
        return self._update("orders", order_id, fields)

    def count_orders_by(self, field):
        counts: Dict[str, int] = {}
        for doc in self._all("orders"):
            key = doc[field]
            counts[key] = counts.get(key, 0) + 1
        return counts

    def sum_order_totals(self, payment_status):
        return sum((d["total_amount"] for d in self._all("orders")
                    if d["payment_status"] == payment_status), Decimal("0"))

    def product_in_orders(self, product_id):
        with self._lock:
            return any(item["product_id"] == product_id
                       for order in self._data["orders"].values()
                       for item in order["items"])


def public(doc: Optional[dict], *hidden: str) -> Optional[dict]:
    """Turn a stored document into an API shape: ``_id`` becomes ``id`` and
    ``hidden`` fields are dropped."""
    if doc is None:
        return None
    out: Dict[str, Any] = {k: v for k, v in doc.items() if k not in hidden}
    if "_id" in out:
        out["id"] = out.pop("_id")
    return out
