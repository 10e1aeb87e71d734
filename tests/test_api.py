"""
End-to-end checks through the FastAPI app: envelope shape, authentication
and role gating, validation errors, and the cart to paid-order flow.
"""
import pytest

from conftest import PASSWORD

CHECKOUT = {
    "first_name": "Ada",
    "last_name": "Lovelace",
    "email": "ada@example.com",
    "phone": "5551234567",
    "address": "12 Analytical Engine Way",
    "city": "London",
    "postal_code": "N1 9GU",
    "payment_method": "card",
}


@pytest.fixture
def user_headers(user, headers_for):
    return headers_for(user)


@pytest.fixture
def admin_headers(admin, headers_for):
    return headers_for(admin)


# ============================================================================
# Envelope & auth
# ============================================================================

class TestBasics:

    def test_root(self, client):
        assert client.get("/").json() == {"message": "Storefront API running"}

    def test_health_envelope(self, client):
        body = client.get("/health").json()
        assert body["success"] is True
        assert body["data"]["store"] == "MemoryStore"
        assert "timestamp" in body

    def test_register_and_login(self, client):
        r = client.post("/auth/register", json={"email": "web@example.com", "password": PASSWORD, "name": "Web"})
        assert r.status_code == 201
        assert r.json()["data"]["user"]["email"] == "web@example.com"

        r = client.post("/auth/login", json={"email": "web@example.com", "password": PASSWORD})
        assert r.status_code == 200
        tokens = r.json()["data"]["tokens"]

        r = client.get("/auth/me", headers={"Authorization": f"Bearer {tokens['access_token']}"})
        assert r.json()["data"]["name"] == "Web"

        r = client.post("/auth/refresh", json={"refresh_token": tokens["refresh_token"]})
        assert r.status_code == 200
        assert "access_token" in r.json()["data"]

    def test_duplicate_registration(self, client, user):
        r = client.post("/auth/register", json={"email": user["email"], "password": PASSWORD, "name": "Again"})
        assert r.status_code == 409
        assert r.json()["error"]["code"] == "CONFLICT"

    def test_missing_token(self, client):
        r = client.get("/cart")
        assert r.status_code == 401
        body = r.json()
        assert body["success"] is False
        assert body["error"]["code"] == "UNAUTHORIZED"
        assert body["path"] == "/cart"

    def test_garbage_token(self, client):
        r = client.get("/cart", headers={"Authorization": "Bearer nonsense"})
        assert r.status_code == 401

    def test_admin_route_as_user(self, client, user_headers):
        r = client.get("/admin/orders", headers=user_headers)
        assert r.status_code == 403
        assert r.json()["error"]["details"] == {"required": "ADMIN", "current": "USER"}

    def test_validation_error(self, client, user_headers, make_product):
        p = make_product()
        r = client.post("/cart/items", json={"product_id": p["_id"], "quantity": 0}, headers=user_headers)
        assert r.status_code == 400
        error = r.json()["error"]
        assert error["code"] == "INVALID_ARGUMENT"
        assert error["details"][0]["field"] == "quantity"

    def test_not_found(self, client):
        r = client.get("/products/missing")
        assert r.status_code == 404
        assert r.json()["error"] == {"message": "Product not found", "code": "NOT_FOUND"}


# ============================================================================
# Catalog admin
# ============================================================================

class TestCatalogRoutes:

    def test_admin_manages_catalog(self, client, admin_headers):
        r = client.post("/categories", json={"name": "Garden"}, headers=admin_headers)
        assert r.status_code == 201
        category_id = r.json()["data"]["id"]

        product = {"name": "Hose", "price": "19.90", "stock": 4, "category_id": category_id}
        r = client.post("/products", json=product, headers=admin_headers)
        assert r.status_code == 201
        product_id = r.json()["data"]["id"]
        assert r.json()["data"]["price"] == 19.9

        r = client.put(f"/products/{product_id}", json={"discount": 10}, headers=admin_headers)
        assert r.json()["data"]["discount"] == 10

        r = client.get("/products", params={"category_id": category_id})
        assert r.json()["data"]["pagination"]["total"] == 1

        r = client.delete(f"/categories/{category_id}", headers=admin_headers)
        assert r.status_code == 409

    def test_user_cannot_create_products(self, client, user_headers, category):
        product = {"name": "Hose", "price": "19.90", "stock": 4, "category_id": category["_id"]}
        r = client.post("/products", json=product, headers=user_headers)
        assert r.status_code == 403

    def test_seed(self, client, admin_headers):
        r = client.post("/admin/seed", headers=admin_headers)
        assert r.json()["data"] == {"categories": 3, "products": 12}
        assert client.get("/products").json()["data"]["pagination"]["total"] == 12


# ============================================================================
# Cart -> order -> payment
# ============================================================================

class TestShoppingFlow:

    def test_checkout_and_pay(self, client, store, settings, user_headers, admin_headers, make_product):
        p = make_product("Kettle", price="30.00", stock=5, discount=10)

        r = client.post("/cart/items", json={"product_id": p["_id"], "quantity": 2}, headers=user_headers)
        assert r.status_code == 201
        assert client.get("/cart/count", headers=user_headers).json()["data"] == {"count": 2}

        cart = client.get("/cart", headers=user_headers).json()["data"]
        assert cart["subtotal"] == 60.0
        assert cart["discount"] == 6.0
        assert cart["total"] == 54.0

        r = client.post("/orders", json=CHECKOUT, headers=user_headers)
        assert r.status_code == 201
        order = r.json()["data"]
        assert order["total_amount"] == 54.0
        assert order["items"][0]["price"] == 27.0
        assert store.get_product(p["_id"])["stock"] == 3
        assert client.get("/cart/count", headers=user_headers).json()["data"] == {"count": 0}

        r = client.post(f"/orders/{order['id']}/payment-intent", headers=user_headers)
        assert r.json()["data"]["payment_intent_id"].startswith("pi_")

        callback = {"order_id": order["id"], "status": "PAID"}
        r = client.post("/payments/callback", json=callback)
        assert r.status_code == 401
        r = client.post("/payments/callback", json=callback,
                        headers={"X-Payment-Secret": settings.payment_callback_secret})
        assert r.json()["data"]["payment_status"] == "PAID"

        stats = client.get("/admin/orders/stats", headers=admin_headers).json()["data"]
        assert stats["total_revenue"] == 54.0

    def test_empty_cart_checkout(self, client, user_headers):
        r = client.post("/orders", json=CHECKOUT, headers=user_headers)
        assert r.status_code == 400
        assert r.json()["error"]["code"] == "CART_EMPTY"

    def test_bad_shipping_address(self, client, user_headers):
        r = client.post("/orders", json={**CHECKOUT, "phone": "123"}, headers=user_headers)
        assert r.status_code == 400
        assert r.json()["error"]["details"][0]["field"] == "phone"

    def test_status_and_cancel(self, client, store, user, user_headers, admin_headers, make_product, make_user,
                               headers_for):
        p = make_product(stock=5)
        client.post("/cart/items", json={"product_id": p["_id"], "quantity": 1}, headers=user_headers)
        order_id = client.post("/orders", json=CHECKOUT, headers=user_headers).json()["data"]["id"]

        r = client.put(f"/orders/{order_id}/status", json={"status": "SHIPPED"}, headers=admin_headers)
        assert r.status_code == 400
        assert r.json()["error"]["code"] == "INVALID_STATUS_TRANSITION"

        stranger = headers_for(make_user())
        assert client.get(f"/orders/{order_id}", headers=stranger).status_code == 404
        assert client.put(f"/orders/{order_id}/cancel", headers=stranger).status_code == 403
        assert client.get(f"/orders/{order_id}", headers=admin_headers).status_code == 200

        r = client.put(f"/orders/{order_id}/cancel", headers=user_headers)
        assert r.json()["data"]["status"] == "CANCELLED"
        assert store.get_product(p["_id"])["stock"] == 5

    def test_sync_and_validate(self, client, store, user_headers, make_product):
        p = make_product("Scarce", stock=5)
        client.post("/cart/items", json={"product_id": p["_id"], "quantity": 4}, headers=user_headers)
        store.update_product(p["_id"], {"stock": 2})

        body = client.get("/cart/validate", headers=user_headers).json()["data"]
        assert body["valid"] is False

        body = client.post("/cart/sync", headers=user_headers).json()["data"]
        assert body["adjusted"] == [{"name": "Scarce", "quantity": 2}]
        assert client.get("/cart/validate", headers=user_headers).json()["data"]["valid"] is True


# ============================================================================
# User administration
# ============================================================================

class TestUserAdminRoutes:

    def test_promote_and_delete(self, client, user, admin_headers):
        r = client.put(f"/admin/users/{user['_id']}/role", json={"role": "ADMIN"}, headers=admin_headers)
        assert r.json()["data"]["role"] == "ADMIN"
        r = client.delete(f"/admin/users/{user['_id']}", headers=admin_headers)
        assert r.status_code == 200
        assert client.get("/admin/users", headers=admin_headers).json()["data"]["pagination"]["total"] == 1

    def test_bad_role(self, client, user, admin_headers):
        r = client.put(f"/admin/users/{user['_id']}/role", json={"role": "OWNER"}, headers=admin_headers)
        assert r.status_code == 400
