"""
Order lifecycle: checkout from the cart, the status state machine, stock
restore on cancellation, payment status, and admin reporting.

Checkout is the one place several entities change together; everything it
writes (stock, order, cart) goes through a single store transaction.
"""
import logging
from typing import Optional

from auth import require_role
from cart import CartService, summarize
from catalog import check_page, pagination
from errors import (
    CartEmpty,
    CartValidationFailed,
    Forbidden,
    InsufficientStock,
    InvalidArgument,
    InvalidStatusTransition,
    NotFound,
    StoreError,
    TransactionAborted,
)
from payments import PaymentGateway
from schemas import Order, OrderItem, OrderStatus, PaymentStatus, Role, ShippingAddress, money
from store import Store, public

logger = logging.getLogger(__name__)

VALID_TRANSITIONS = {
    OrderStatus.PENDING: {OrderStatus.CONFIRMED, OrderStatus.CANCELLED},
    OrderStatus.CONFIRMED: {OrderStatus.PROCESSING, OrderStatus.CANCELLED},
    OrderStatus.PROCESSING: {OrderStatus.SHIPPED, OrderStatus.CANCELLED},
    OrderStatus.SHIPPED: {OrderStatus.DELIVERED, OrderStatus.RETURNED},
    OrderStatus.DELIVERED: {OrderStatus.RETURNED},
    OrderStatus.CANCELLED: set(),
    OrderStatus.RETURNED: set(),
}

CANCELLABLE = {OrderStatus.PENDING, OrderStatus.CONFIRMED}

PAYMENT_TRANSITIONS = {
    PaymentStatus.PENDING: {PaymentStatus.PAID, PaymentStatus.FAILED},
    PaymentStatus.FAILED: {PaymentStatus.PAID},
    PaymentStatus.PAID: {PaymentStatus.REFUNDED},
    PaymentStatus.REFUNDED: set(),
}


def check_transition(current: OrderStatus, requested: OrderStatus) -> None:
    if requested not in VALID_TRANSITIONS[current]:
        raise InvalidStatusTransition(current.value, requested.value)


def unit_price(product: dict):
    """Current price less the product's discount, rounded for storage."""
    pct = product.get("discount", 0)
    return money(product["price"] * (100 - pct) / 100)


class OrderService:
    def __init__(self, store: Store, cart: Optional[CartService] = None):
        self.store = store
        self.cart = cart or CartService(store)

    def _atomic(self, callback, failure: str, *args):
        """Run ``callback`` in a store transaction. Domain errors pass through
        after rollback; anything else is logged and becomes TransactionAborted."""
        try:
            return self.store.run_in_transaction(callback)
        except StoreError:
            raise
        except Exception:
            logger.exception(failure + ", transaction rolled back", *args)
            raise TransactionAborted()

    # ---------------------- Checkout ----------------------

    def create_order(self, user_id: str, shipping: ShippingAddress, payment_method: str) -> dict:
        self.cart.sync_with_stock(user_id)
        check = self.cart.validate(user_id)
        if not check["cart"]["items"]:
            raise CartEmpty()
        if not check["valid"]:
            raise CartValidationFailed(f"Cart validation failed: {', '.join(check['errors'])}", check["errors"])

        def checkout(tx: Store) -> dict:
            # cart lines are re-read here so the order holds exactly the rows it deletes
            lines = []
            for item in tx.list_cart_items(user_id):
                product = tx.get_product(item["product_id"])
                if product is None or not tx.decrement_stock(product["_id"], item["quantity"]):
                    available = product["stock"] if product else 0
                    name = product["name"] if product else item["product_id"]
                    raise InsufficientStock(f"{name}: Only {available} available, but {item['quantity']} requested")
                lines.append((item, product))
            if not lines:
                raise CartEmpty()

            order = Order(
                user_id=user_id,
                items=[
                    OrderItem(product_id=product["_id"], name=product["name"],
                              quantity=item["quantity"], price=unit_price(product))
                    for item, product in lines
                ],
                total_amount=summarize(lines)["total"],
                shipping_address=shipping,
                payment_method=payment_method,
            )
            doc = tx.insert_order(order.model_dump(mode="python"))
            for item, _ in lines:
                tx.delete_cart_item(item["_id"])
            return doc

        doc = self._atomic(checkout, "Order creation failed for user %s", user_id)
        logger.info("Order created: %s for user %s, total: %s", doc["_id"], user_id, doc["total_amount"])
        return self._out(doc)

    # ---------------------- Queries ----------------------

    def _out(self, order: dict) -> dict:
        out = public(order)
        out["status"] = OrderStatus(out["status"]).value
        out["payment_status"] = PaymentStatus(out["payment_status"]).value
        return out

    def get_order(self, order_id: str, scope_user_id: Optional[str] = None) -> dict:
        order = self.store.get_order(order_id, user_id=scope_user_id)
        if not order:
            raise NotFound("Order not found")
        return self._out(order)

    def list_user_orders(self, user_id: str, page: int = 1, limit: int = 10) -> dict:
        check_page(page, limit)
        docs, total = self.store.list_orders(user_id=user_id, skip=(page - 1) * limit, limit=limit)
        return {"orders": [self._out(o) for o in docs], "pagination": pagination(page, limit, total)}

    def list_all_orders(self, page: int = 1, limit: int = 20, status: Optional[OrderStatus] = None,
                        payment_status: Optional[PaymentStatus] = None) -> dict:
        check_page(page, limit)
        docs, total = self.store.list_orders(
            status=status.value if status else None,
            payment_status=payment_status.value if payment_status else None,
            skip=(page - 1) * limit,
            limit=limit,
        )
        return {"orders": [self._out(o) for o in docs], "pagination": pagination(page, limit, total)}

    def statistics(self) -> dict:
        recent, total = self.store.list_orders(limit=10)
        return {
            "total_orders": total,
            "total_revenue": money(self.store.sum_order_totals(PaymentStatus.PAID.value)),
            "orders_by_status": self.store.count_orders_by("status"),
            "orders_by_payment_status": self.store.count_orders_by("payment_status"),
            "recent_orders": [self._out(o) for o in recent],
        }

    # ---------------------- Status changes ----------------------

    def update_status(self, order_id: str, new_status: OrderStatus, acting_admin: dict) -> dict:
        require_role(acting_admin, Role.ADMIN)

        def move(tx: Store):
            order = tx.get_order(order_id)
            if not order:
                raise NotFound("Order not found")
            current = OrderStatus(order["status"])
            check_transition(current, new_status)
            return current, tx.update_order(order_id, {"status": new_status.value})

        current, doc = self._atomic(move, "Updating status of order %s failed", order_id)
        logger.info("Order %s status updated from %s to %s by admin %s",
                    order_id, current.value, new_status.value, acting_admin["_id"])
        return self._out(doc)

    def cancel_order(self, order_id: str, requesting_user_id: Optional[str] = None) -> dict:
        def cancel(tx: Store):
            order = tx.get_order(order_id)
            if not order:
                raise NotFound("Order not found")
            if requesting_user_id is not None and order["user_id"] != requesting_user_id:
                raise Forbidden("Unauthorized to cancel this order")
            current = OrderStatus(order["status"])
            if current not in CANCELLABLE:
                raise InvalidStatusTransition(current.value, OrderStatus.CANCELLED.value)
            for item in order["items"]:
                tx.increment_stock(item["product_id"], item["quantity"])
            return tx.update_order(order_id, {"status": OrderStatus.CANCELLED.value})

        doc = self._atomic(cancel, "Cancelling order %s failed", order_id)
        logger.info("Order %s cancelled%s", order_id,
                    f" by user {requesting_user_id}" if requesting_user_id else "")
        return self._out(doc)

    # ---------------------- Payments ----------------------

    def attach_payment_intent(self, order_id: str, user_id: str, gateway: PaymentGateway) -> dict:
        order = self.store.get_order(order_id, user_id=user_id)
        if not order:
            raise NotFound("Order not found")
        if order["payment_status"] not in (PaymentStatus.PENDING.value, PaymentStatus.FAILED.value):
            raise InvalidArgument(f"Order payment is already {order['payment_status']}")
        if order["status"] == OrderStatus.CANCELLED.value:
            raise InvalidArgument("Cannot pay for a cancelled order")
        reference = gateway.create_intent(order_id, order["total_amount"])
        doc = self.store.update_order(order_id, {"payment_intent_id": reference})
        return self._out(doc)

    def update_payment_status(self, order_id: str, status: PaymentStatus) -> dict:
        def record(tx: Store):
            order = tx.get_order(order_id)
            if not order:
                raise NotFound("Order not found")
            current = PaymentStatus(order["payment_status"])
            if current == status:
                return order, False
            if status not in PAYMENT_TRANSITIONS[current]:
                raise InvalidStatusTransition(current.value, status.value)
            return tx.update_order(order_id, {"payment_status": status.value}), True

        doc, changed = self._atomic(record, "Recording payment for order %s failed", order_id)
        if changed:
            logger.info("Order %s payment status updated to %s", order_id, status.value)
        return self._out(doc)
