"""
Cart ledger: per-user (product, quantity) rows and the money derived from them.

The summary computed here is the authoritative cart total. Rounding happens
once, on the aggregated subtotal and discount, never per line.
"""
import logging
from decimal import Decimal
from typing import List, Optional, Tuple

from errors import InsufficientStock, InvalidArgument, NotFound
from schemas import money
from store import Store, public

logger = logging.getLogger(__name__)


def check_quantity(qty) -> int:
    if isinstance(qty, bool) or not isinstance(qty, int) or qty < 1:
        raise InvalidArgument("Quantity must be a positive integer")
    return qty


def product_summary(product: dict) -> dict:
    return {
        "id": product["_id"],
        "name": product["name"],
        "price": product["price"],
        "stock": product["stock"],
        "discount": product.get("discount", 0),
        "images": product.get("images", []),
        "category_id": product.get("category_id"),
    }


def summarize(lines: List[Tuple[dict, dict]]) -> dict:
    """Totals for ``(cart_item, product)`` pairs."""
    subtotal = Decimal("0")
    discount = Decimal("0")
    total_items = 0
    items = []
    for item, product in lines:
        line = product["price"] * item["quantity"]
        subtotal += line
        discount += line * product.get("discount", 0) / 100
        total_items += item["quantity"]
        out = public(item)
        out["product"] = product_summary(product)
        items.append(out)
    subtotal = money(subtotal)
    discount = money(discount)
    return {
        "items": items,
        "total_items": total_items,
        "subtotal": subtotal,
        "discount": discount,
        "total": subtotal - discount,
    }


class CartService:
    def __init__(self, store: Store):
        self.store = store

    def _lines(self, store: Store, user_id: str) -> List[Tuple[dict, Optional[dict]]]:
        return [(item, store.get_product(item["product_id"])) for item in store.list_cart_items(user_id)]

    def get_summary(self, user_id: str) -> dict:
        lines = [(i, p) for i, p in self._lines(self.store, user_id) if p is not None]
        return summarize(lines)

    def item_count(self, user_id: str) -> int:
        return sum(i["quantity"] for i in self.store.list_cart_items(user_id))

    def add_item(self, user_id: str, product_id: str, qty: int = 1) -> dict:
        check_quantity(qty)

        def add(tx: Store):
            product = tx.get_product(product_id)
            if not product:
                raise NotFound("Product not found")
            if product["stock"] < qty:
                raise InsufficientStock(f"Only {product['stock']} items available in stock")

            existing = tx.get_cart_item_for_product(user_id, product_id)
            if existing:
                new_qty = existing["quantity"] + qty
                if new_qty > product["stock"]:
                    raise InsufficientStock(
                        f"Cannot add {qty} more items. "
                        f"Only {product['stock'] - existing['quantity']} more available"
                    )
                return tx.set_cart_quantity(existing["_id"], new_qty), product
            return tx.insert_cart_item({"user_id": user_id, "product_id": product_id, "quantity": qty}), product

        item, product = self.store.run_in_transaction(add)
        logger.info("Item added to cart: %s (qty: %d) for user %s", product["name"], qty, user_id)
        out = public(item)
        out["product"] = product_summary(product)
        return out

    def update_item(self, user_id: str, item_id: str, qty: int) -> dict:
        check_quantity(qty)

        def update(tx: Store):
            item = tx.get_cart_item(user_id, item_id)
            if not item:
                raise NotFound("Cart item not found")
            product = tx.get_product(item["product_id"])
            if not product:
                raise NotFound("Product not found")
            if qty > product["stock"]:
                raise InsufficientStock(f"Only {product['stock']} items available in stock")
            return tx.set_cart_quantity(item_id, qty), product

        item, product = self.store.run_in_transaction(update)
        logger.info("Cart item updated: %s (qty: %d) for user %s", product["name"], qty, user_id)
        out = public(item)
        out["product"] = product_summary(product)
        return out

    def remove_item(self, user_id: str, item_id: str) -> None:
        item = self.store.get_cart_item(user_id, item_id)
        if not item:
            raise NotFound("Cart item not found")
        self.store.delete_cart_item(item_id)
        logger.info("Item removed from cart: %s for user %s", item["product_id"], user_id)

    def clear(self, user_id: str) -> int:
        count = self.store.clear_cart(user_id)
        logger.info("Cart cleared for user %s: %d items removed", user_id, count)
        return count

    def validate(self, user_id: str) -> dict:
        errors = []
        lines = []
        for item, product in self._lines(self.store, user_id):
            if product is None:
                errors.append(f"Product {item['product_id']} is no longer available")
                continue
            if product["stock"] < item["quantity"]:
                errors.append(
                    f"{product['name']}: Only {product['stock']} available, "
                    f"but {item['quantity']} requested"
                )
            lines.append((item, product))
        if not lines and not errors:
            errors.append("Cart is empty")
        return {"valid": not errors, "errors": errors, "cart": summarize(lines)}

    def sync_with_stock(self, user_id: str) -> dict:
        """Drop sold-out lines and clamp the rest to what is in stock."""

        def sync(tx: Store):
            removed: List[str] = []
            adjusted: List[dict] = []
            for item, product in self._lines(tx, user_id):
                if product is None or product["stock"] == 0:
                    tx.delete_cart_item(item["_id"])
                    removed.append(product["name"] if product else item["product_id"])
                elif item["quantity"] > product["stock"]:
                    tx.set_cart_quantity(item["_id"], product["stock"])
                    adjusted.append({"name": product["name"], "quantity": product["stock"]})
            return removed, adjusted

        removed, adjusted = self.store.run_in_transaction(sync)

        if removed or adjusted:
            logger.info("Cart synced for user %s: removed %d, updated %d", user_id, len(removed), len(adjusted))
        return {"removed": removed, "adjusted": adjusted}
