from contextlib import asynccontextmanager
from typing import List, Literal, Optional, Tuple

from fastapi import APIRouter, Depends, FastAPI, Header, HTTPException, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import AliasChoices, BaseModel, Field
from pymongo.database import Database
from pymongo.errors import PyMongoError

from app_logger import get_logger, setup_logging
from cart import Cart, CartRepository, CartService
from catalog import CatalogReader
from checkout import CheckoutOrchestrator
from database import connect, ensure_indexes
from errors import (
    MerchantNotFoundError,
    ProductNotFoundError,
    StorefrontError,
    SubtotalMismatchError,
    ValidationError,
)
from gateway import XenditClient
from notifications import NotificationFeed
from reconciliation import PaymentReconciler
from schemas import (
    Actor,
    Audience,
    Buyer,
    CallbackResult,
    CartLine,
    Merchant,
    Notification,
    Order,
    OrderItem,
    PaymentIntent,
    PaymentMethod,
    Product,
    ProductSnapshot,
    Transaction,
)
from settings import Settings
from whatsapp import build_status_link

log = get_logger("api")


class Services:
    """Components built once per process and shared by every request."""

    def __init__(self, settings: Settings, db: Database, gateway: XenditClient):
        self.settings = settings
        self.db = db
        self.gateway = gateway
        self.catalog = CatalogReader(db)
        self.carts = CartService(CartRepository(db), self.catalog)
        self.checkout = CheckoutOrchestrator(db, self.catalog, gateway, settings)
        self.reconciler = PaymentReconciler(db)
        self.notifications = NotificationFeed(db)


def get_services(request: Request) -> Services:
    return request.app.state.services


# Cart models
class CartItemIn(BaseModel):
    product_id: str = Field(..., min_length=1)
    quantity: int = Field(1, ge=1)


class QuantityUpdate(BaseModel):
    quantity: int


class AttachCartRequest(BaseModel):
    items: List[CartLine] = Field(default_factory=list)


class CartOut(BaseModel):
    buyer_id: str
    merchant_id: Optional[str] = None
    items: List[CartLine]
    total_items: int
    total_price: float


def cart_out(buyer_id: str, cart: Cart) -> CartOut:
    return CartOut(
        buyer_id=buyer_id,
        merchant_id=cart.merchant_id,
        items=cart.lines,
        total_items=cart.total_items,
        total_price=cart.total_price,
    )


# Checkout models
class CheckoutItemIn(OrderItem):
    merchant_id: Optional[str] = None
    merchant_name: Optional[str] = None


class CheckoutRequest(BaseModel):
    mode: Literal["gateway", "manual"]
    buyer_id: str = Field(..., min_length=1)
    buyer_name: Optional[str] = Field(None, max_length=100)
    buyer_email: Optional[str] = None
    amount: Optional[float] = None
    subtotal: Optional[float] = None
    reference_id: Optional[str] = Field(None, min_length=1, max_length=64)
    idempotency_key: Optional[str] = Field(None, min_length=1, max_length=64)
    payment_method: Optional[PaymentMethod] = None
    bank_code: Optional[str] = None
    merchant_id: Optional[str] = None
    items: List[CheckoutItemIn] = Field(default_factory=list)
    notes: Optional[str] = Field(None, max_length=500)
    description: Optional[str] = None
    clear_cart: bool = True


class CheckoutResponse(BaseModel):
    mode: str
    order_id: Optional[str] = None
    transaction_id: Optional[str] = None
    subtotal: Optional[float] = None
    payment_display: Optional[PaymentIntent] = None
    whatsapp_url: Optional[str] = None
    message: Optional[str] = None


class ConfirmRequest(BaseModel):
    actor: Actor


class CancelRequest(BaseModel):
    actor: Actor
    reason: Optional[str] = Field(None, max_length=500)


# Webhook models
class CallbackPayload(BaseModel):
    id: str = Field(..., min_length=1)
    reference_id: str = Field(..., min_length=1, validation_alias=AliasChoices("reference_id", "external_id"))
    status: str = Field(..., min_length=1)


router = APIRouter()


@router.get("/")
def root():
    return {"message": "Marketplace Storefront API running"}


@router.get("/health")
def health(services: Services = Depends(get_services)):
    response = {"backend": "running", "database": "unavailable"}
    try:
        services.db.list_collection_names()
        response["database"] = "connected"
    except PyMongoError as e:
        response["database"] = f"error: {str(e)[:80]}"
    return response


# Catalog
@router.get("/stores", response_model=List[Merchant])
def list_stores(category: Optional[str] = None, tag: Optional[List[str]] = Query(None),
                services: Services = Depends(get_services)):
    return services.catalog.list_stores(category=category, tags=tag)


@router.get("/stores/by-slug/{slug}", response_model=Merchant)
def get_store_by_slug(slug: str, services: Services = Depends(get_services)):
    merchant = services.catalog.get_merchant_by_slug(slug)
    if merchant is None:
        raise MerchantNotFoundError(f"Store not found: {slug}")
    return merchant


@router.get("/stores/{merchant_id}", response_model=Merchant)
def get_store(merchant_id: str, services: Services = Depends(get_services)):
    merchant = services.catalog.get_merchant(merchant_id)
    if merchant is None:
        raise MerchantNotFoundError(f"Store not found: {merchant_id}")
    return merchant


@router.get("/stores/{merchant_id}/products", response_model=List[Product])
def list_store_products(merchant_id: str, services: Services = Depends(get_services)):
    return services.catalog.get_products_by_merchant(merchant_id)


@router.get("/products/{product_id}", response_model=Product)
def get_product(product_id: str, services: Services = Depends(get_services)):
    product = services.catalog.get_product(product_id)
    if product is None:
        raise ProductNotFoundError(f"Product not found: {product_id}")
    return product


# Cart
@router.get("/carts/{buyer_id}", response_model=CartOut)
def get_cart(buyer_id: str, services: Services = Depends(get_services)):
    return cart_out(buyer_id, services.carts.get(buyer_id))


@router.post("/carts/{buyer_id}/items", response_model=CartOut)
def add_cart_item(buyer_id: str, item: CartItemIn, services: Services = Depends(get_services)):
    return cart_out(buyer_id, services.carts.add(buyer_id, item.product_id, item.quantity))


@router.patch("/carts/{buyer_id}/items/{product_id}", response_model=CartOut)
def update_cart_item(buyer_id: str, product_id: str, payload: QuantityUpdate,
                     services: Services = Depends(get_services)):
    return cart_out(buyer_id, services.carts.update(buyer_id, product_id, payload.quantity))


@router.delete("/carts/{buyer_id}/items/{product_id}", response_model=CartOut)
def remove_cart_item(buyer_id: str, product_id: str, services: Services = Depends(get_services)):
    return cart_out(buyer_id, services.carts.remove(buyer_id, product_id))


@router.delete("/carts/{buyer_id}")
def clear_cart(buyer_id: str, services: Services = Depends(get_services)):
    services.carts.clear(buyer_id)
    return {"cleared": True}


@router.post("/carts/{buyer_id}/attach", response_model=CartOut)
def attach_cart(buyer_id: str, payload: AttachCartRequest, services: Services = Depends(get_services)):
    return cart_out(buyer_id, services.carts.attach(buyer_id, payload.items))


# Checkout
def _checkout_lines(req: CheckoutRequest, services: Services) -> Tuple[List[CartLine], Optional[str]]:
    """Lines to check out plus the key that guards against a double submit."""
    if not req.items:
        # the stored cart's revision makes concurrent checkouts of one cart collide
        cart = services.carts.document(req.buyer_id)
        key = req.idempotency_key or (f"cart-{cart.revision}" if cart.revision else None)
        return cart.items, key
    lines = [
        CartLine(
            product=ProductSnapshot(
                id=item.product_id,
                name=item.product_name,
                unit_price=item.unit_price,
                merchant_id=item.merchant_id or req.merchant_id or "",
                merchant_name=item.merchant_name or "",
            ),
            quantity=item.quantity,
        )
        for item in req.items
    ]
    return lines, req.idempotency_key


def _gateway_amount(req: CheckoutRequest, tolerance: float) -> float:
    if req.amount is None and req.subtotal is None:
        raise ValidationError("amount is required for gateway checkout")
    if req.amount is not None and req.subtotal is not None and abs(req.amount - req.subtotal) > tolerance:
        raise SubtotalMismatchError(f"amount {req.amount} does not match subtotal {req.subtotal}")
    return req.amount if req.amount is not None else req.subtotal


@router.post("/checkout", response_model=CheckoutResponse)
def checkout(req: CheckoutRequest, services: Services = Depends(get_services)):
    buyer = Buyer(id=req.buyer_id, display_name=req.buyer_name, email=req.buyer_email)

    if req.mode == "manual":
        lines, key = _checkout_lines(req, services)
        result = services.checkout.create_handoff_order(
            buyer, lines, notes=req.notes, subtotal=req.subtotal, idempotency_key=key
        )
        response = CheckoutResponse(
            mode="manual-handoff",
            order_id=result.order_id,
            subtotal=result.subtotal,
            whatsapp_url=result.whatsapp_url,
            message=result.message,
        )
    else:
        if not req.payment_method:
            raise ValidationError("payment_method is required for gateway checkout")
        amount = _gateway_amount(req, services.settings.subtotal_tolerance)
        items = [OrderItem(**item.model_dump(exclude={"merchant_id", "merchant_name"})) for item in req.items]
        result = services.checkout.create_gateway_order(
            amount=amount,
            method=req.payment_method,
            buyer=buyer,
            reference_id=req.reference_id or req.idempotency_key,
            bank_code=req.bank_code,
            items=items,
            description=req.description,
        )
        response = CheckoutResponse(
            mode="gateway",
            transaction_id=result.transaction_id,
            subtotal=amount,
            payment_display=result.payment,
        )

    # only a successful checkout empties the cart
    if req.clear_cart:
        services.carts.clear(req.buyer_id)
    return response


# Orders
@router.get("/buyers/{buyer_id}/orders", response_model=List[Order])
def list_orders(buyer_id: str, services: Services = Depends(get_services)):
    return services.checkout.list_orders(buyer_id)


@router.get("/buyers/{buyer_id}/orders/{order_id}", response_model=Order)
def get_order(buyer_id: str, order_id: str, services: Services = Depends(get_services)):
    return services.checkout.get_order(buyer_id, order_id)


@router.post("/buyers/{buyer_id}/orders/{order_id}/confirm", response_model=Order)
def confirm_order(buyer_id: str, order_id: str, payload: ConfirmRequest,
                  services: Services = Depends(get_services)):
    return services.checkout.confirm_order(buyer_id, order_id, payload.actor)


@router.post("/buyers/{buyer_id}/orders/{order_id}/complete", response_model=Order)
def complete_order(buyer_id: str, order_id: str, payload: ConfirmRequest,
                   services: Services = Depends(get_services)):
    return services.checkout.complete_order(buyer_id, order_id, payload.actor)


@router.post("/buyers/{buyer_id}/orders/{order_id}/cancel", response_model=Order)
def cancel_order(buyer_id: str, order_id: str, payload: CancelRequest,
                 services: Services = Depends(get_services)):
    return services.checkout.cancel_order(buyer_id, order_id, payload.actor, payload.reason)


@router.post("/buyers/{buyer_id}/orders/{order_id}/whatsapp-sent", response_model=Order)
def mark_whatsapp_sent(buyer_id: str, order_id: str, services: Services = Depends(get_services)):
    return services.checkout.mark_whatsapp_sent(buyer_id, order_id)


@router.get("/buyers/{buyer_id}/orders/{order_id}/status-link")
def order_status_link(buyer_id: str, order_id: str, services: Services = Depends(get_services)):
    order = services.checkout.get_order(buyer_id, order_id)
    if not order.merchant_phone:
        raise HTTPException(status_code=404, detail="Order has no merchant contact")
    return {"whatsapp_url": build_status_link(order.merchant_phone, order_id)}


# Transactions
@router.get("/buyers/{buyer_id}/transactions", response_model=List[Transaction])
def list_transactions(buyer_id: str, services: Services = Depends(get_services)):
    return services.checkout.list_transactions(buyer_id)


@router.get("/buyers/{buyer_id}/transactions/stream")
def stream_transactions(buyer_id: str, services: Services = Depends(get_services)):
    def events():
        for txn in services.reconciler.watch_buyer_transactions(buyer_id):
            yield f"data: {txn.model_dump_json()}\n\n"

    return StreamingResponse(events(), media_type="text/event-stream")


@router.get("/transactions/{reference_id}", response_model=Transaction)
def get_transaction(reference_id: str, services: Services = Depends(get_services)):
    txn = services.checkout.get_transaction(reference_id)
    if txn is None:
        raise HTTPException(status_code=404, detail="Transaction not found")
    return txn


@router.post("/admin/transactions/repair-index")
def repair_index(services: Services = Depends(get_services)):
    return {"repaired": services.reconciler.repair_buyer_index()}


# Notifications
@router.get("/notifications", response_model=List[Notification])
def list_notifications(target: Optional[Audience] = None, limit: Optional[int] = Query(None, ge=1, le=100),
                       user_id: Optional[str] = None, services: Services = Depends(get_services)):
    return services.notifications.get_notifications(limit=limit, target=target, user_id=user_id)


@router.post("/users/{user_id}/notifications/{notification_id}/read")
def mark_notification_read(user_id: str, notification_id: str, services: Services = Depends(get_services)):
    services.notifications.mark_as_read(user_id, notification_id)
    return {"read": True}


# Gateway webhook
@router.post("/payments/xendit/callback", response_model=CallbackResult)
def xendit_callback(payload: CallbackPayload, services: Services = Depends(get_services),
                    x_callback_token: Optional[str] = Header(None)):
    expected = services.settings.xendit_callback_token
    if expected and x_callback_token != expected:
        raise HTTPException(status_code=401, detail="Invalid callback token")
    return services.reconciler.apply_gateway_callback(payload.id, payload.reference_id, payload.status)


async def storefront_error_handler(request: Request, exc: StorefrontError):
    if exc.status_code >= 500:
        log.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message})


async def validation_error_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(status_code=400, content={"detail": jsonable_errors(exc)})


async def database_error_handler(request: Request, exc: PyMongoError):
    log.exception("database failure on %s %s", request.method, request.url.path)
    return JSONResponse(status_code=500, content={"detail": "Database error"})


def jsonable_errors(exc: RequestValidationError) -> list:
    return [{"loc": list(e.get("loc", ())), "msg": e.get("msg", "")} for e in exc.errors()]


def create_app(settings: Optional[Settings] = None, db: Optional[Database] = None,
               gateway: Optional[XenditClient] = None) -> FastAPI:
    settings = settings or Settings()
    setup_logging(settings.log_level)
    db = db if db is not None else connect(settings)
    gateway = gateway or XenditClient.from_settings(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        ensure_indexes(db)
        log.info("%s started (database %s)", settings.app_name, db.name)
        yield
        gateway.close()

    app = FastAPI(title=settings.app_name, lifespan=lifespan)
    app.state.services = Services(settings, db, gateway)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_exception_handler(StorefrontError, storefront_error_handler)
    app.add_exception_handler(RequestValidationError, validation_error_handler)
    app.add_exception_handler(PyMongoError, database_error_handler)
    app.include_router(router)
    return app


if __name__ == "__main__":
    import uvicorn

    settings = Settings()
    uvicorn.run(create_app(settings), host="0.0.0.0", port=settings.port)
