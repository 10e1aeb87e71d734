"""
MongoDB access for the storefront.

``connect`` builds the database handle (with a Decimal <-> Decimal128 codec so
prices stay exact) and ``MongoStore`` implements the ``store.Store`` contract
on top of it. Multi-document transactions need a replica set.
"""
import re
import logging
from datetime import timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional, Tuple

from bson.codec_options import CodecOptions, TypeCodec, TypeRegistry
from bson.decimal128 import Decimal128
from pydantic import BaseModel
from pymongo import ASCENDING, DESCENDING, MongoClient, ReturnDocument
from pymongo.collation import Collation
from pymongo.database import Database

from store import now_utc, stamp

logger = logging.getLogger(__name__)

CASE_INSENSITIVE = Collation(locale="en", strength=2)


class DecimalCodec(TypeCodec):
    python_type = Decimal
    bson_type = Decimal128

    def transform_python(self, value):
        return Decimal128(value)

    def transform_bson(self, value):
        return value.to_decimal()


def connect(database_url: str, database_name: str) -> Database:
    client = MongoClient(database_url, tz_aware=True)
    options = CodecOptions(
        type_registry=TypeRegistry([DecimalCodec()]),
        tz_aware=True,
        tzinfo=timezone.utc,
    )
    return client.get_database(database_name, codec_options=options)


def ensure_indexes(db: Database) -> None:
    db["users"].create_index("email", unique=True)
    db["categories"].create_index("name", unique=True, collation=CASE_INSENSITIVE)
    db["cart_items"].create_index([("user_id", ASCENDING), ("product_id", ASCENDING)], unique=True)
    db["products"].create_index("category_id")
    db["orders"].create_index([("user_id", ASCENDING), ("created_at", DESCENDING)])
    db["orders"].create_index("items.product_id")


def create_document(db: Database, collection_name: str, data: Any, session=None) -> dict:
    """Insert a document, stamping ``_id``/``created_at``/``updated_at``."""
    doc = data.model_dump() if isinstance(data, BaseModel) else dict(data)
    doc = stamp(doc)
    db[collection_name].insert_one(doc, session=session)
    return doc


def get_documents(db: Database, collection_name: str, filter_dict: Optional[dict] = None,
                  sort=None, skip: int = 0, limit: Optional[int] = None, session=None) -> List[dict]:
    cursor = db[collection_name].find(filter_dict or {}, session=session)
    if sort:
        cursor = cursor.sort(sort)
    if skip:
        cursor = cursor.skip(skip)
    if limit:
        cursor = cursor.limit(limit)
    return list(cursor)


def _regex(text: str) -> dict:
    return {"$regex": re.escape(text), "$options": "i"}


class MongoStore:
    def __init__(self, db: Database, session=None):
        self.db = db
        self._session = session

    def run_in_transaction(self, callback):
        """Run ``callback`` in a multi-document transaction.

        ``with_transaction`` re-runs the callback on TransientTransactionError
        (e.g. a write conflict with a concurrent checkout) and retries the
        commit on UnknownTransactionCommitResult. Any other error aborts.
        """
        if self._session is not None:
            return callback(self)
        with self.db.client.start_session() as session:
            return session.with_transaction(lambda s: callback(MongoStore(self.db, session=s)))

    # ---------------------- helpers ----------------------

    def _find_one(self, collection: str, filt: dict, **kwargs) -> Optional[dict]:
        return self.db[collection].find_one(filt, session=self._session, **kwargs)

    def _insert(self, collection: str, doc: dict) -> dict:
        return create_document(self.db, collection, doc, session=self._session)

    def _update(self, collection: str, doc_id: str, fields: dict) -> Optional[dict]:
        return self.db[collection].find_one_and_update(
            {"_id": doc_id},
            {"$set": {**fields, "updated_at": now_utc()}},
            return_document=ReturnDocument.AFTER,
            session=self._session,
        )

    def _delete(self, collection: str, doc_id: str) -> bool:
        return self.db[collection].delete_one({"_id": doc_id}, session=self._session).deleted_count == 1

    def _page(self, collection: str, filt: dict, sort, skip: int, limit: int) -> Tuple[List[dict], int]:
        total = self.db[collection].count_documents(filt, session=self._session)
        docs = get_documents(self.db, collection, filt, sort=sort, skip=skip, limit=limit,
                             session=self._session)
        return docs, total

    # ---------------------- products ----------------------

    def get_product(self, product_id):
        return self._find_one("products", {"_id": product_id})

    def list_products(self, *, category_id=None, search=None, min_price=None, max_price=None,
                      in_stock=False, sort_by="created_at", descending=True, skip=0, limit=12):
        filt: Dict[str, Any] = {}
        if category_id:
            filt["category_id"] = category_id
        if search:
            filt["$or"] = [{"name": _regex(search)}, {"description": _regex(search)}]
        price_cond = {}
        if min_price is not None:
            price_cond["$gte"] = min_price
        if max_price is not None:
            price_cond["$lte"] = max_price
        if price_cond:
            filt["price"] = price_cond
        if in_stock:
            filt["stock"] = {"$gt": 0}
        sort = [(sort_by, DESCENDING if descending else ASCENDING), ("_id", ASCENDING)]
        return self._page("products", filt, sort, skip, limit)

    def insert_product(self, doc):
        return self._insert("products", doc)

    def update_product(self, product_id, fields):
        return self._update("products", product_id, fields)

    def delete_product(self, product_id):
        return self._delete("products", product_id)

    def count_products(self, category_id=None):
        filt = {"category_id": category_id} if category_id else {}
        return self.db["products"].count_documents(filt, session=self._session)

    def decrement_stock(self, product_id, qty):
        res = self.db["products"].update_one(
            {"_id": product_id, "stock": {"$gte": qty}},
            {"$inc": {"stock": -qty}, "$set": {"updated_at": now_utc()}},
            session=self._session,
        )
        return res.modified_count == 1

    def increment_stock(self, product_id, qty):
        res = self.db["products"].update_one(
            {"_id": product_id},
            {"$inc": {"stock": qty}, "$set": {"updated_at": now_utc()}},
            session=self._session,
        )
        return res.matched_count == 1

    # ---------------------- categories ----------------------

    def get_category(self, category_id):
        return self._find_one("categories", {"_id": category_id})

    def get_category_by_name(self, name):
        return self._find_one("categories", {"name": name.strip()}, collation=CASE_INSENSITIVE)

    def list_categories(self):
        return list(self.db["categories"].find({}, session=self._session)
                    .collation(CASE_INSENSITIVE).sort("name", ASCENDING))

    def insert_category(self, doc):
        return self._insert("categories", doc)

    def update_category(self, category_id, fields):
        return self._update("categories", category_id, fields)

    def delete_category(self, category_id):
        return self._delete("categories", category_id)

    # ---------------------- users ----------------------

    def get_user(self, user_id):
        return self._find_one("users", {"_id": user_id})

    def get_user_by_email(self, email):
        return self._find_one("users", {"email": email.lower()})

    def list_users(self, *, role=None, search=None, skip=0, limit=10):
        filt: Dict[str, Any] = {}
        if role:
            filt["role"] = role
        if search:
            filt["$or"] = [{"name": _regex(search)}, {"email": _regex(search)}]
        return self._page("users", filt, [("created_at", DESCENDING)], skip, limit)

    def insert_user(self, doc):
        return self._insert("users", doc)

    def update_user(self, user_id, fields):
        return self._update("users", user_id, fields)

    def delete_user(self, user_id):
        if not self._delete("users", user_id):
            return False
        self.clear_cart(user_id)
        return True

    # ---------------------- cart ----------------------

    def list_cart_items(self, user_id):
        return get_documents(self.db, "cart_items", {"user_id": user_id},
                             sort=[("created_at", DESCENDING)], session=self._session)

    def get_cart_item(self, user_id, item_id):
        return self._find_one("cart_items", {"_id": item_id, "user_id": user_id})

    def get_cart_item_for_product(self, user_id, product_id):
        return self._find_one("cart_items", {"user_id": user_id, "product_id": product_id})

    def insert_cart_item(self, doc):
        return self._insert("cart_items", doc)

    def set_cart_quantity(self, item_id, quantity):
        return self._update("cart_items", item_id, {"quantity": quantity})

    def delete_cart_item(self, item_id):
        return self._delete("cart_items", item_id)

    def clear_cart(self, user_id):
        return self.db["cart_items"].delete_many({"user_id": user_id}, session=self._session).deleted_count

    def delete_cart_items_for_product(self, product_id):
        return self.db["cart_items"].delete_many({"product_id": product_id},
                                                 session=self._session).deleted_count

    # ---------------------- orders ----------------------

    def insert_order(self, doc):
        return self._insert("orders", doc)

    def get_order(self, order_id, user_id=None):
        filt = {"_id": order_id}
        if user_id is not None:
            filt["user_id"] = user_id
        return self._find_one("orders", filt)

    def list_orders(self, *, user_id=None, status=None, payment_status=None, skip=0, limit=20):
        filt: Dict[str, Any] = {}
        if user_id:
            filt["user_id"] = user_id
        if status:
            filt["status"] = status
        if payment_status:
            filt["payment_status"] = payment_status
        return self._page("orders", filt, [("created_at", DESCENDING)], skip, limit)

    def update_order(self, order_id, fields):
        return self._update("orders", order_id, fields)

    def count_orders_by(self, field):
        pipeline = [{"$group": {"_id": f"${field}", "count": {"$sum": 1}}}]
        return {row["_id"]: row["count"]
                for row in self.db["orders"].aggregate(pipeline, session=self._session)}

    def sum_order_totals(self, payment_status):
        pipeline = [
            {"$match": {"payment_status": payment_status}},
            {"$group": {"_id": None, "total": {"$sum": "$total_amount"}}},
        ]
        rows = list(self.db["orders"].aggregate(pipeline, session=self._session))
        return rows[0]["total"] if rows else Decimal("0")

    def product_in_orders(self, product_id):
        return self.db["orders"].count_documents({"items.product_id": product_id}, limit=1,
                                                 session=self._session) > 0
