import logging
from decimal import Decimal
from math import ceil
from typing import Optional

from pydantic import ValidationError

from errors import Conflict, InvalidArgument, NotFound
from schemas import Category, Product
from store import Store, public

logger = logging.getLogger(__name__)

PRODUCT_SORT_FIELDS = ("created_at", "name", "price")


def pagination(page: int, limit: int, total: int) -> dict:
    return {"page": page, "limit": limit, "total": total, "total_pages": ceil(total / limit) if limit else 0}


def check_page(page: int, limit: int, max_limit: int = 100) -> None:
    if page < 1:
        raise InvalidArgument("Page must be a positive integer")
    if limit < 1 or limit > max_limit:
        raise InvalidArgument(f"Limit must be between 1 and {max_limit}")


def _validated(model, data: dict):
    try:
        return model(**data)
    except ValidationError as e:
        raise InvalidArgument("Validation failed", e.errors(include_url=False, include_context=False, include_input=False))


class CatalogService:
    def __init__(self, store: Store):
        self.store = store

    # ---------------------- Categories ----------------------

    def list_categories(self) -> list:
        out = []
        for c in self.store.list_categories():
            c = public(c)
            c["product_count"] = self.store.count_products(c["id"])
            out.append(c)
        return out

    def create_category(self, name: str, description: Optional[str] = None) -> dict:
        category = _validated(Category, {"name": name.strip(), "description": description})
        if self.store.get_category_by_name(category.name):
            raise Conflict(f"Category '{category.name}' already exists")
        doc = self.store.insert_category(category.model_dump())
        logger.info("Category created: %s (ID: %s)", doc["name"], doc["_id"])
        return public(doc)

    def update_category(self, category_id: str, fields: dict) -> dict:
        current = self.store.get_category(category_id)
        if not current:
            raise NotFound("Category not found")
        merged = _validated(Category, {**current, **fields})
        clash = self.store.get_category_by_name(merged.name)
        if clash and clash["_id"] != category_id:
            raise Conflict(f"Category '{merged.name}' already exists")
        doc = self.store.update_category(category_id, merged.model_dump(include=set(fields)))
        return public(doc)

    def delete_category(self, category_id: str) -> None:
        if not self.store.get_category(category_id):
            raise NotFound("Category not found")
        count = self.store.count_products(category_id)
        if count:
            raise Conflict(f"Cannot delete category with {count} products")
        self.store.delete_category(category_id)
        logger.info("Category deleted: %s", category_id)

    # ---------------------- Products ----------------------

    def _with_category(self, product: dict) -> dict:
        out = public(product)
        out["category"] = public(self.store.get_category(product["category_id"]))
        return out

    def list_products(self, category_id: Optional[str] = None, search: Optional[str] = None,
                      min_price: Optional[Decimal] = None, max_price: Optional[Decimal] = None,
                      in_stock: bool = False, page: int = 1, limit: int = 12,
                      sort_by: str = "created_at", sort_order: str = "desc") -> dict:
        check_page(page, limit)
        if sort_by not in PRODUCT_SORT_FIELDS:
            raise InvalidArgument(f"Sort field must be one of: {', '.join(PRODUCT_SORT_FIELDS)}")
        if sort_order not in ("asc", "desc"):
            raise InvalidArgument('Sort order must be "asc" or "desc"')
        if min_price is not None and max_price is not None and min_price > max_price:
            raise InvalidArgument("min_price cannot exceed max_price")
        docs, total = self.store.list_products(
            category_id=category_id, search=search, min_price=min_price, max_price=max_price,
            in_stock=in_stock, sort_by=sort_by, descending=sort_order == "desc",
            skip=(page - 1) * limit, limit=limit,
        )
        return {
            "products": [self._with_category(p) for p in docs],
            "pagination": pagination(page, limit, total),
        }

    def get_product(self, product_id: str) -> dict:
        product = self.store.get_product(product_id)
        if not product:
            raise NotFound("Product not found")
        return self._with_category(product)

    def create_product(self, data: dict) -> dict:
        product = _validated(Product, data)
        if not self.store.get_category(product.category_id):
            raise NotFound("Category not found")
        doc = product.model_dump()
        doc["name"] = doc["name"].strip()
        doc["description"] = doc["description"].strip()
        doc = self.store.insert_product(doc)
        logger.info("Product created: %s (ID: %s)", doc["name"], doc["_id"])
        return self._with_category(doc)

    def update_product(self, product_id: str, fields: dict) -> dict:
        current = self.store.get_product(product_id)
        if not current:
            raise NotFound("Product not found")
        merged = _validated(Product, {**current, **fields})
        if merged.category_id != current["category_id"] and not self.store.get_category(merged.category_id):
            raise NotFound("Category not found")
        # write back only the edited fields; stock is moved concurrently by checkouts
        doc = self.store.update_product(product_id, merged.model_dump(include=set(fields)))
        logger.info("Product updated: %s (ID: %s)", doc["name"], product_id)
        return self._with_category(doc)

    def delete_product(self, product_id: str) -> None:
        product = self.store.get_product(product_id)
        if not product:
            raise NotFound("Product not found")
        if self.store.product_in_orders(product_id):
            raise Conflict("Cannot delete a product that appears in orders")

        def delete(tx: Store):
            tx.delete_cart_items_for_product(product_id)
            tx.delete_product(product_id)

        self.store.run_in_transaction(delete)
        logger.info("Product deleted: %s (ID: %s)", product["name"], product_id)

    # ---------------------- Seed Demo Data ----------------------

    def seed(self) -> dict:
        created = {"categories": 0, "products": 0}
        if not self.store.list_categories():
            for name, description in (
                ("Electronics", "Gadgets and devices"),
                ("Fashion", "Clothing and accessories"),
                ("Home", "Furniture and decor"),
            ):
                self.store.insert_category({"name": name, "description": description})
                created["categories"] += 1
        if self.store.count_products() == 0:
            category = self.store.get_category_by_name("Electronics") or self.store.list_categories()[0]
            for i in range(1, 13):
                self.store.insert_product(Product(
                    name=f"Premium Gadget {i}",
                    description="A modern, minimalist gadget with premium build.",
                    price=Decimal("49.99") + i,
                    stock=50,
                    discount=10 if i % 4 == 0 else 0,
                    category_id=category["_id"],
                    images=[f"https://picsum.photos/seed/gadget{i}/600/400"],
                ).model_dump())
                created["products"] += 1
        logger.info("Seeded catalog: %s", created)
        return created
