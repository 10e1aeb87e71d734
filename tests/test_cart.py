from decimal import Decimal

import pytest

from cart import CartService, summarize
from errors import InsufficientStock, InvalidArgument, NotFound


@pytest.fixture
def cart(store):
    return CartService(store)


# ============================================================================
# Summary arithmetic
# ============================================================================

class TestSummary:

    def test_empty_cart(self, cart, user):
        summary = cart.get_summary(user["_id"])
        assert summary["items"] == []
        assert summary["total_items"] == 0
        assert summary["subtotal"] == Decimal("0.00")
        assert summary["total"] == Decimal("0.00")

    def test_totals(self, cart, user, make_product):
        a = make_product("A", price="19.99", stock=10, discount=15)
        b = make_product("B", price="5.00", stock=10)
        cart.add_item(user["_id"], a["_id"], 3)
        cart.add_item(user["_id"], b["_id"], 2)

        summary = cart.get_summary(user["_id"])
        assert summary["total_items"] == 5
        assert summary["subtotal"] == Decimal("69.97")
        # 59.97 * 15% = 8.9955
        assert summary["discount"] == Decimal("9.00")
        assert summary["total"] == summary["subtotal"] - summary["discount"]
        assert summary["total"] == Decimal("60.97")

    def test_rounding_applies_to_aggregates_only(self):
        product = {"_id": "p", "name": "P", "price": Decimal("0.05"), "stock": 10, "discount": 10}
        lines = [
            ({"_id": "i1", "product_id": "p", "quantity": 1}, product),
            ({"_id": "i2", "product_id": "p", "quantity": 1}, product),
        ]
        summary = summarize(lines)
        # per-line rounding would give 0.01 + 0.01
        assert summary["discount"] == Decimal("0.01")
        assert summary["total"] == Decimal("0.09")

    def test_items_embed_product(self, cart, user, make_product):
        p = make_product("Lamp", price="12.50")
        cart.add_item(user["_id"], p["_id"], 1)
        item = cart.get_summary(user["_id"])["items"][0]
        assert item["product"]["id"] == p["_id"]
        assert item["product"]["name"] == "Lamp"
        assert "_id" not in item

    def test_item_count(self, cart, user, make_product):
        cart.add_item(user["_id"], make_product("A")["_id"], 2)
        cart.add_item(user["_id"], make_product("B")["_id"], 3)
        assert cart.item_count(user["_id"]) == 5


# ============================================================================
# Mutations
# ============================================================================

class TestAddItem:

    def test_same_product_merges_into_one_line(self, cart, user, make_product):
        p = make_product(stock=10)
        first = cart.add_item(user["_id"], p["_id"], 2)
        second = cart.add_item(user["_id"], p["_id"], 3)
        assert first["id"] == second["id"]
        items = cart.get_summary(user["_id"])["items"]
        assert len(items) == 1
        assert items[0]["quantity"] == 5

    def test_unknown_product(self, cart, user):
        with pytest.raises(NotFound):
            cart.add_item(user["_id"], "missing", 1)

    def test_more_than_stock(self, cart, user, make_product):
        p = make_product(stock=2)
        with pytest.raises(InsufficientStock) as exc:
            cart.add_item(user["_id"], p["_id"], 3)
        assert exc.value.message == "Only 2 items available in stock"

    def test_merge_beyond_stock(self, cart, user, make_product):
        p = make_product(stock=4)
        cart.add_item(user["_id"], p["_id"], 3)
        with pytest.raises(InsufficientStock) as exc:
            cart.add_item(user["_id"], p["_id"], 2)
        assert exc.value.message == "Cannot add 2 more items. Only 1 more available"
        assert cart.item_count(user["_id"]) == 3

    @pytest.mark.parametrize("qty", [0, -1, True, 1.5, "2"])
    def test_bad_quantity(self, cart, user, make_product, qty):
        p = make_product()
        with pytest.raises(InvalidArgument):
            cart.add_item(user["_id"], p["_id"], qty)

    def test_carts_are_per_user(self, cart, make_user, make_product):
        alice, bob = make_user(), make_user()
        p = make_product()
        cart.add_item(alice["_id"], p["_id"], 1)
        assert cart.item_count(bob["_id"]) == 0


class TestUpdateAndRemove:

    def test_update_quantity(self, cart, user, make_product):
        p = make_product(stock=5)
        item = cart.add_item(user["_id"], p["_id"], 1)
        updated = cart.update_item(user["_id"], item["id"], 4)
        assert updated["quantity"] == 4

    def test_update_beyond_stock(self, cart, user, make_product):
        p = make_product(stock=5)
        item = cart.add_item(user["_id"], p["_id"], 1)
        with pytest.raises(InsufficientStock):
            cart.update_item(user["_id"], item["id"], 6)

    def test_update_someone_elses_item(self, cart, make_user, make_product):
        alice, bob = make_user(), make_user()
        item = cart.add_item(alice["_id"], make_product()["_id"], 1)
        with pytest.raises(NotFound):
            cart.update_item(bob["_id"], item["id"], 2)

    def test_remove(self, cart, user, make_product):
        item = cart.add_item(user["_id"], make_product()["_id"], 1)
        cart.remove_item(user["_id"], item["id"])
        assert cart.get_summary(user["_id"])["items"] == []

    def test_remove_missing(self, cart, user):
        with pytest.raises(NotFound):
            cart.remove_item(user["_id"], "nope")

    def test_clear(self, cart, user, make_product):
        cart.add_item(user["_id"], make_product("A")["_id"], 1)
        cart.add_item(user["_id"], make_product("B")["_id"], 1)
        assert cart.clear(user["_id"]) == 2
        assert cart.clear(user["_id"]) == 0


# ============================================================================
# Validation and stock sync
# ============================================================================

class TestValidateAndSync:

    def test_validate_empty(self, cart, user):
        result = cart.validate(user["_id"])
        assert result["valid"] is False
        assert result["errors"] == ["Cart is empty"]

    def test_validate_stock_shortfall(self, cart, store, user, make_product):
        p = make_product("Mug", stock=5)
        cart.add_item(user["_id"], p["_id"], 4)
        store.update_product(p["_id"], {"stock": 2})
        result = cart.validate(user["_id"])
        assert result["valid"] is False
        assert result["errors"] == ["Mug: Only 2 available, but 4 requested"]

    def test_validate_ok(self, cart, user, make_product):
        cart.add_item(user["_id"], make_product()["_id"], 1)
        result = cart.validate(user["_id"])
        assert result["valid"] is True
        assert result["errors"] == []
        assert result["cart"]["total_items"] == 1

    def test_sync_removes_and_clamps(self, cart, store, user, make_product):
        gone = make_product("Gone", stock=5)
        short = make_product("Short", stock=5)
        fine = make_product("Fine", stock=5)
        cart.add_item(user["_id"], gone["_id"], 2)
        cart.add_item(user["_id"], short["_id"], 4)
        cart.add_item(user["_id"], fine["_id"], 1)
        store.update_product(gone["_id"], {"stock": 0})
        store.update_product(short["_id"], {"stock": 3})

        result = cart.sync_with_stock(user["_id"])
        assert result == {"removed": ["Gone"], "adjusted": [{"name": "Short", "quantity": 3}]}
        quantities = {i["product"]["name"]: i["quantity"] for i in cart.get_summary(user["_id"])["items"]}
        assert quantities == {"Short": 3, "Fine": 1}

    def test_sync_drops_deleted_products(self, cart, store, user, make_product):
        p = make_product()
        cart.add_item(user["_id"], p["_id"], 1)
        store.delete_product(p["_id"])
        result = cart.sync_with_stock(user["_id"])
        assert result["removed"] == [p["_id"]]
        assert store.list_cart_items(user["_id"]) == []
