import time
import secrets
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from decimal import Decimal
from typing import List, Optional

from fastapi import APIRouter, Depends, FastAPI, Header, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, EmailStr, Field

from auth import AuthService, bearer_token, require_role
from cart import CartService
from catalog import CatalogService
from config import Settings
from database import MongoStore, connect, ensure_indexes
from errors import InvalidArgument, StoreError, Unauthorized
from orders import OrderService
from payments import MockGateway, PaymentGateway
from schemas import OrderStatus, PaymentMethod, PaymentStatus, Product, Role, ShippingAddress
from store import MemoryStore, Store
from users import UserAdminService

logger = logging.getLogger(__name__)

# ---------------------- Utilities ----------------------

def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def ok(data=None, status_code: int = 200, message: Optional[str] = None) -> JSONResponse:
    body = {"success": True, "data": data, "timestamp": now_iso()}
    if message:
        body["message"] = message
    return JSONResponse(status_code=status_code, content=jsonable_encoder(body))


def fail(request: Request, status_code: int, error: dict) -> JSONResponse:
    body = {"success": False, "error": error, "timestamp": now_iso(), "path": request.url.path}
    return JSONResponse(status_code=status_code, content=jsonable_encoder(body))


def get_store(request: Request) -> Store:
    return request.app.state.store


def get_auth(request: Request) -> AuthService:
    return AuthService(request.app.state.store, request.app.state.settings)


def get_catalog(store: Store = Depends(get_store)) -> CatalogService:
    return CatalogService(store)


def get_cart(store: Store = Depends(get_store)) -> CartService:
    return CartService(store)


def get_orders(store: Store = Depends(get_store)) -> OrderService:
    return OrderService(store)


def current_user(authorization: Optional[str] = Header(None),
                 auth: AuthService = Depends(get_auth)) -> dict:
    return auth.authenticate(bearer_token(authorization))


def admin_user(user: dict = Depends(current_user)) -> dict:
    require_role(user, Role.ADMIN)
    return user


def is_admin(user: dict) -> bool:
    return user["role"] == Role.ADMIN.value

# ---------------------- Models ----------------------

class RegisterBody(BaseModel):
    email: EmailStr
    password: str
    name: str = Field(..., min_length=2, max_length=100)
    address: Optional[str] = None

class LoginBody(BaseModel):
    email: str
    password: str

class RefreshBody(BaseModel):
    refresh_token: str

class ProfileBody(BaseModel):
    name: Optional[str] = None
    address: Optional[str] = None

class PasswordBody(BaseModel):
    current_password: str
    new_password: str

class CategoryBody(BaseModel):
    name: str
    description: Optional[str] = None

class CategoryUpdateBody(BaseModel):
    name: Optional[str] = None
    description: Optional[str] = None

class ProductUpdateBody(BaseModel):
    name: Optional[str] = None
    description: Optional[str] = None
    price: Optional[Decimal] = None
    stock: Optional[int] = None
    discount: Optional[int] = None
    category_id: Optional[str] = None
    images: Optional[List[str]] = None

class AddItemBody(BaseModel):
    product_id: str = Field(..., min_length=1)
    quantity: int = Field(1, ge=1, le=100)

class UpdateItemBody(BaseModel):
    quantity: int = Field(..., ge=1, le=100)

class CheckoutBody(ShippingAddress):
    payment_method: PaymentMethod

class StatusBody(BaseModel):
    status: OrderStatus

class PaymentCallbackBody(BaseModel):
    order_id: str
    status: PaymentStatus

class RoleBody(BaseModel):
    role: Role

router = APIRouter()

# ---------------------- Root & Health ----------------------

@router.get("/")
def read_root():
    return {"message": "Storefront API running"}

@router.get("/health")
def health(request: Request):
    store = request.app.state.store
    return ok({"backend": "running", "store": type(store).__name__})

# ---------------------- Auth ----------------------

@router.post("/auth/register")
def register(body: RegisterBody, auth: AuthService = Depends(get_auth)):
    return ok(auth.register(body.email, body.password, body.name, body.address), 201,
              "User registered successfully")

@router.post("/auth/login")
def login(body: LoginBody, auth: AuthService = Depends(get_auth)):
    return ok(auth.login(body.email, body.password), message="Login successful")

@router.post("/auth/refresh")
def refresh(body: RefreshBody, auth: AuthService = Depends(get_auth)):
    return ok(auth.refresh(body.refresh_token))

@router.get("/auth/me")
def me(user: dict = Depends(current_user), auth: AuthService = Depends(get_auth)):
    return ok(auth.get_profile(user["_id"]))

@router.put("/auth/me")
def update_me(body: ProfileBody, user: dict = Depends(current_user), auth: AuthService = Depends(get_auth)):
    return ok(auth.update_profile(user["_id"], body.name, body.address), message="Profile updated")

@router.put("/auth/password")
def change_password(body: PasswordBody, user: dict = Depends(current_user),
                    auth: AuthService = Depends(get_auth)):
    auth.change_password(user["_id"], body.current_password, body.new_password)
    return ok(message="Password changed successfully")

# ---------------------- Products & Categories ----------------------

@router.get("/categories")
def list_categories(catalog: CatalogService = Depends(get_catalog)):
    return ok(catalog.list_categories())

@router.post("/categories")
def create_category(body: CategoryBody, admin: dict = Depends(admin_user),
                    catalog: CatalogService = Depends(get_catalog)):
    return ok(catalog.create_category(body.name, body.description), 201)

@router.put("/categories/{category_id}")
def update_category(category_id: str, body: CategoryUpdateBody, admin: dict = Depends(admin_user),
                    catalog: CatalogService = Depends(get_catalog)):
    return ok(catalog.update_category(category_id, body.model_dump(exclude_unset=True)))

@router.delete("/categories/{category_id}")
def delete_category(category_id: str, admin: dict = Depends(admin_user),
                    catalog: CatalogService = Depends(get_catalog)):
    catalog.delete_category(category_id)
    return ok(message="Category deleted")

@router.get("/products")
def list_products(category_id: Optional[str] = None, search: Optional[str] = None,
                  min_price: Optional[Decimal] = None, max_price: Optional[Decimal] = None,
                  in_stock: bool = False, page: int = 1, limit: int = 12,
                  sort_by: str = "created_at", sort_order: str = "desc",
                  catalog: CatalogService = Depends(get_catalog)):
    return ok(catalog.list_products(category_id, search, min_price, max_price, in_stock,
                                    page, limit, sort_by, sort_order))

@router.get("/products/{product_id}")
def get_product(product_id: str, catalog: CatalogService = Depends(get_catalog)):
    return ok(catalog.get_product(product_id))

@router.post("/products")
def create_product(body: Product, admin: dict = Depends(admin_user),
                   catalog: CatalogService = Depends(get_catalog)):
    return ok(catalog.create_product(body.model_dump()), 201)

@router.put("/products/{product_id}")
def update_product(product_id: str, body: ProductUpdateBody, admin: dict = Depends(admin_user),
                   catalog: CatalogService = Depends(get_catalog)):
    return ok(catalog.update_product(product_id, body.model_dump(exclude_unset=True)))

@router.delete("/products/{product_id}")
def delete_product(product_id: str, admin: dict = Depends(admin_user),
                   catalog: CatalogService = Depends(get_catalog)):
    catalog.delete_product(product_id)
    return ok(message="Product deleted")

# ---------------------- Cart ----------------------

@router.get("/cart")
def get_cart_summary(user: dict = Depends(current_user), cart: CartService = Depends(get_cart)):
    return ok(cart.get_summary(user["_id"]))

@router.get("/cart/count")
def cart_count(user: dict = Depends(current_user), cart: CartService = Depends(get_cart)):
    return ok({"count": cart.item_count(user["_id"])})

@router.get("/cart/validate")
def validate_cart(user: dict = Depends(current_user), cart: CartService = Depends(get_cart)):
    return ok(cart.validate(user["_id"]))

@router.post("/cart/items")
def add_to_cart(body: AddItemBody, user: dict = Depends(current_user), cart: CartService = Depends(get_cart)):
    return ok(cart.add_item(user["_id"], body.product_id, body.quantity), 201,
              "Item added to cart successfully")

@router.post("/cart/sync")
def sync_cart(user: dict = Depends(current_user), cart: CartService = Depends(get_cart)):
    return ok(cart.sync_with_stock(user["_id"]))

@router.put("/cart/items/{item_id}")
def update_cart_item(item_id: str, body: UpdateItemBody, user: dict = Depends(current_user),
                     cart: CartService = Depends(get_cart)):
    return ok(cart.update_item(user["_id"], item_id, body.quantity))

@router.delete("/cart/items/{item_id}")
def remove_cart_item(item_id: str, user: dict = Depends(current_user), cart: CartService = Depends(get_cart)):
    cart.remove_item(user["_id"], item_id)
    return ok(message="Item removed from cart")

@router.delete("/cart")
def clear_cart(user: dict = Depends(current_user), cart: CartService = Depends(get_cart)):
    return ok({"removed": cart.clear(user["_id"])}, message="Cart cleared")

# ---------------------- Orders ----------------------

@router.post("/orders")
def create_order(body: CheckoutBody, user: dict = Depends(current_user),
                 orders: OrderService = Depends(get_orders)):
    shipping = ShippingAddress(**body.model_dump(exclude={"payment_method"}))
    return ok(orders.create_order(user["_id"], shipping, body.payment_method), 201,
              "Order created successfully")

@router.get("/orders")
def list_orders(page: int = 1, limit: int = 10, user: dict = Depends(current_user),
                orders: OrderService = Depends(get_orders)):
    return ok(orders.list_user_orders(user["_id"], page, limit))

@router.get("/orders/{order_id}")
def get_order(order_id: str, user: dict = Depends(current_user), orders: OrderService = Depends(get_orders)):
    scope = None if is_admin(user) else user["_id"]
    return ok(orders.get_order(order_id, scope))

@router.put("/orders/{order_id}/status")
def update_order_status(order_id: str, body: StatusBody, admin: dict = Depends(admin_user),
                        orders: OrderService = Depends(get_orders)):
    return ok(orders.update_status(order_id, body.status, admin), message="Order status updated")

@router.put("/orders/{order_id}/cancel")
def cancel_order(order_id: str, user: dict = Depends(current_user), orders: OrderService = Depends(get_orders)):
    requester = None if is_admin(user) else user["_id"]
    return ok(orders.cancel_order(order_id, requester), message="Order cancelled")

# ---------------------- Payments ----------------------

@router.post("/orders/{order_id}/payment-intent")
def create_payment_intent(order_id: str, request: Request, user: dict = Depends(current_user),
                          orders: OrderService = Depends(get_orders)):
    return ok(orders.attach_payment_intent(order_id, user["_id"], request.app.state.gateway))

@router.post("/payments/callback")
def payment_callback(body: PaymentCallbackBody, request: Request,
                     x_payment_secret: Optional[str] = Header(None),
                     orders: OrderService = Depends(get_orders)):
    expected = request.app.state.settings.payment_callback_secret
    if not x_payment_secret or not secrets.compare_digest(x_payment_secret, expected):
        raise Unauthorized("Invalid payment callback secret")
    if body.status not in (PaymentStatus.PAID, PaymentStatus.FAILED):
        raise InvalidArgument("Payment callback status must be PAID or FAILED")
    return ok(orders.update_payment_status(body.order_id, body.status))

# ---------------------- Admin ----------------------

@router.get("/admin/orders")
def admin_list_orders(page: int = 1, limit: int = 20, status: Optional[OrderStatus] = None,
                      payment_status: Optional[PaymentStatus] = None, admin: dict = Depends(admin_user),
                      orders: OrderService = Depends(get_orders)):
    return ok(orders.list_all_orders(page, limit, status, payment_status))

@router.get("/admin/orders/stats")
def admin_order_stats(admin: dict = Depends(admin_user), orders: OrderService = Depends(get_orders)):
    return ok(orders.statistics())

@router.get("/admin/users")
def admin_list_users(role: Optional[Role] = None, search: Optional[str] = None, page: int = 1,
                     limit: int = 10, admin: dict = Depends(admin_user), store: Store = Depends(get_store)):
    return ok(UserAdminService(store).list_users(admin, role, search, page, limit))

@router.put("/admin/users/{user_id}/role")
def admin_update_role(user_id: str, body: RoleBody, admin: dict = Depends(admin_user),
                      store: Store = Depends(get_store)):
    return ok(UserAdminService(store).update_role(user_id, body.role, admin), message="User role updated")

@router.delete("/admin/users/{user_id}")
def admin_delete_user(user_id: str, admin: dict = Depends(admin_user), store: Store = Depends(get_store)):
    UserAdminService(store).delete_user(user_id, admin)
    return ok(message="User deleted")

# ---------------------- Seed Demo Data ----------------------

@router.post("/admin/seed")
def seed(admin: dict = Depends(admin_user), catalog: CatalogService = Depends(get_catalog)):
    return ok(catalog.seed())

# ---------------------- Errors ----------------------

async def store_error_handler(request: Request, exc: StoreError):
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.code)
    else:
        logger.info("%s %s -> %s: %s", request.method, request.url.path, exc.code, exc.message)
    return fail(request, exc.status_code, exc.to_dict())

async def validation_error_handler(request: Request, exc: RequestValidationError):
    details = [
        {"field": ".".join(str(p) for p in err["loc"][1:]) or str(err["loc"][0]), "message": err["msg"]}
        for err in exc.errors()
    ]
    logger.warning("Validation failed: %s %s %s", request.method, request.url.path, details)
    return fail(request, 400, {"message": "Validation failed", "code": InvalidArgument.code, "details": details})

async def unhandled_error_handler(request: Request, exc: Exception):
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return fail(request, 500, {"message": "Internal server error", "code": "INTERNAL_ERROR"})

# ---------------------- App ----------------------

def bootstrap(store: Store, settings: Settings) -> None:
    if isinstance(store, MongoStore):
        ensure_indexes(store.db)
    if settings.admin_email and settings.admin_password:
        auth = AuthService(store, settings)
        if not store.get_user_by_email(settings.admin_email.lower()):
            auth.create_admin(settings.admin_email, settings.admin_password, "Administrator")


def create_app(store: Optional[Store] = None, settings: Optional[Settings] = None,
               gateway: Optional[PaymentGateway] = None) -> FastAPI:
    settings = settings or Settings.from_env()
    if store is None:
        if settings.database_url:
            store = MongoStore(connect(settings.database_url, settings.database_name))
        else:
            logger.warning("DATABASE_URL not set, using the in-memory store (data is lost on restart)")
            store = MemoryStore()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        bootstrap(app.state.store, app.state.settings)
        yield

    app = FastAPI(title="Storefront API", version="1.0.0", lifespan=lifespan)
    app.state.store = store
    app.state.settings = settings
    app.state.gateway = gateway or MockGateway()

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        start = time.perf_counter()
        response = await call_next(request)
        logger.info("%s %s -> %d (%.1f ms)", request.method, request.url.path, response.status_code,
                    (time.perf_counter() - start) * 1000)
        return response

    app.add_exception_handler(StoreError, store_error_handler)
    app.add_exception_handler(RequestValidationError, validation_error_handler)
    app.add_exception_handler(Exception, unhandled_error_handler)
    app.include_router(router)
    return app


settings = Settings.from_env()

logging.basicConfig(
    level=settings.log_level,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)

app = create_app(settings=settings)

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=app.state.settings.port)
