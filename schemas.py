"""
Database Schemas for the Marketplace Storefront

Each Pydantic model represents a document shape in MongoDB. Raw documents are
turned into these models through the ``decode_*`` helpers at the bottom of the
module, which are the only place that knows about legacy or renamed fields.
"""

from datetime import datetime, timezone
from typing import Any, Dict, List, Literal, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, computed_field, field_validator, model_validator

CheckoutMode = Literal["gateway", "manual-handoff"]
PaymentMethod = Literal["qris", "virtual-account"]
Actor = Literal["buyer", "merchant"]
Audience = Literal["customer", "merchant", "all"]

TERMINAL_STATUSES = ("completed", "cancelled", "failed", "expired")


# ---------------------------------
# Catalog
# ---------------------------------

class ProductSnapshot(BaseModel):
    """Projection of a catalog item captured into a cart line."""

    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="ignore")

    id: str = Field(..., validation_alias=AliasChoices("id", "productId", "product_id"))
    name: str = Field("", description="Product name")
    unit_price: float = Field(0, ge=0, validation_alias=AliasChoices("unit_price", "unitPrice", "price"))
    currency: str = Field("IDR")
    stock: Optional[int] = Field(None, description="None means stock is not tracked")
    merchant_id: str = Field(
        "", validation_alias=AliasChoices("merchant_id", "merchantId", "store_id", "storeId")
    )
    merchant_name: str = Field("", validation_alias=AliasChoices("merchant_name", "merchantName"))
    image_url: Optional[str] = Field(None, validation_alias=AliasChoices("image_url", "imageUrl", "image"))


class Product(ProductSnapshot):
    """Catalog record as published by the merchant POS."""

    model_config = ConfigDict(frozen=False, populate_by_name=True, extra="ignore")

    description: Optional[str] = None
    category: str = Field("Lainnya", validation_alias=AliasChoices("category", "category_id", "categoryId"))
    tags: List[str] = Field(default_factory=list)
    price_visible: bool = Field(True, validation_alias=AliasChoices("price_visible", "priceVisible"))
    marketplace_visible: bool = Field(
        False, validation_alias=AliasChoices("marketplace_visible", "marketplaceVisible")
    )
    is_active: bool = Field(False, validation_alias=AliasChoices("is_active", "isActive"))
    created_at: Optional[datetime] = Field(None, validation_alias=AliasChoices("created_at", "createdAt"))

    @computed_field  # type: ignore[prop-decorator]
    @property
    def is_available(self) -> bool:
        return self.stock is None or self.stock > 0

    @computed_field  # type: ignore[prop-decorator]
    @property
    def stock_status(self) -> str:
        if self.stock is None:
            return "in_stock"
        if self.stock <= 0:
            return "out_of_stock"
        if self.stock <= 5:
            return "limited"
        return "in_stock"

    def snapshot(self) -> ProductSnapshot:
        return ProductSnapshot(**self.model_dump(include=set(ProductSnapshot.model_fields)))


class Merchant(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str
    name: str = "Unknown Merchant"
    slug: str = ""
    role: Optional[str] = None
    status: Optional[str] = None
    phone_number: Optional[str] = None
    category: Optional[str] = None
    tags: List[str] = Field(default_factory=list)
    address: str = ""
    description: Optional[str] = None
    logo_url: Optional[str] = None
    location: Optional[str] = None
    is_verified: bool = False
    marketplace_opt_in: bool = False

    @model_validator(mode="before")
    @classmethod
    def _flatten_user_document(cls, data: Any) -> Any:
        # POS users keep the storefront in settings.business and the account in profile
        if not isinstance(data, dict) or "settings" not in data and "profile" not in data:
            return data
        profile = data.get("profile") or {}
        business = (data.get("settings") or {}).get("business") or {}
        name = business.get("name") or profile.get("name") or data.get("name") or "Unknown Merchant"
        return {
            "id": data["id"],
            "name": name,
            "slug": profile.get("slug") or name.lower().replace(" ", "-"),
            "role": data.get("role"),
            "status": data.get("status"),
            "phone_number": business.get("phone") or profile.get("phoneNumber") or profile.get("phone_number"),
            "category": business.get("category"),
            "tags": business.get("tags") or [],
            "address": business.get("address") or "",
            "description": business.get("description"),
            "logo_url": business.get("logo") or profile.get("avatarUrl"),
            "location": profile.get("location"),
            "is_verified": bool(profile.get("isVerified", False)),
            "marketplace_opt_in": business.get("marketplaceOptIn") is True,
        }


# ---------------------------------
# Cart
# ---------------------------------

class CartLine(BaseModel):
    product: ProductSnapshot
    quantity: int = Field(..., ge=1)

    @property
    def subtotal(self) -> float:
        return self.product.unit_price * self.quantity


class CartDocument(BaseModel):
    buyer_id: str
    items: List[CartLine] = Field(default_factory=list)
    # changes on every save
    revision: Optional[str] = None
    updated_at: Optional[datetime] = None


# ---------------------------------
# Orders and transactions
# ---------------------------------

class OrderItem(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    product_id: str = Field(..., min_length=1, validation_alias=AliasChoices("product_id", "productId"))
    product_name: str = Field(
        ..., min_length=1, max_length=120, validation_alias=AliasChoices("product_name", "productName", "name")
    )
    quantity: int = Field(..., ge=1)
    unit_price: float = Field(..., ge=0, validation_alias=AliasChoices("unit_price", "unitPrice", "price"))
    subtotal: float = Field(..., ge=0)


class Customer(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    given_names: Optional[str] = Field(None, validation_alias=AliasChoices("given_names", "givenNames"))
    email: Optional[str] = None
    mobile_number: Optional[str] = Field(
        None, validation_alias=AliasChoices("mobile_number", "mobileNumber", "phoneNumber")
    )


class Order(BaseModel):
    """Manual-handoff order, stored per buyer."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    id: str
    buyer_id: str = Field(..., validation_alias=AliasChoices("buyer_id", "userId"))
    checkout_mode: CheckoutMode = "manual-handoff"
    items: List[OrderItem]
    subtotal: float
    total: float
    currency: str = "IDR"
    status: str = "pending"
    buyer_confirmed: bool = Field(False, validation_alias=AliasChoices("buyer_confirmed", "userConfirmed"))
    merchant_confirmed: bool = Field(False, validation_alias=AliasChoices("merchant_confirmed", "merchantConfirmed"))
    merchant_id: Optional[str] = None
    merchant_name: Optional[str] = None
    merchant_phone: Optional[str] = None
    buyer_name: Optional[str] = None
    buyer_email: Optional[str] = None
    notes: Optional[str] = Field(None, max_length=500)
    whatsapp_message: Optional[str] = None
    cancel_reason: Optional[str] = None
    cancelled_by: Optional[str] = None
    created_at: datetime
    updated_at: datetime
    expires_at: Optional[datetime] = None
    buyer_confirmed_at: Optional[datetime] = None
    merchant_confirmed_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    whatsapp_sent_at: Optional[datetime] = None


class Transaction(BaseModel):
    """Gateway-payment transaction; the same shape lives in both indices."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    reference_id: str
    checkout_mode: CheckoutMode = "gateway"
    gateway_payment_id: Optional[str] = Field(
        None, validation_alias=AliasChoices("gateway_payment_id", "paymentId")
    )
    payment_method: PaymentMethod = Field(..., validation_alias=AliasChoices("payment_method", "paymentType"))
    amount: float = 0
    currency: str = "IDR"
    status: str = "pending"
    buyer_id: Optional[str] = Field(None, validation_alias=AliasChoices("buyer_id", "userId"))
    customer: Optional[Customer] = None
    description: Optional[str] = None
    items: List[OrderItem] = Field(default_factory=list)
    qr_string: Optional[str] = Field(None, validation_alias=AliasChoices("qr_string", "qrString"))
    account_number: Optional[str] = Field(None, validation_alias=AliasChoices("account_number", "accountNumber"))
    bank_code: Optional[str] = Field(None, validation_alias=AliasChoices("bank_code", "bankCode"))
    expires_at: Optional[datetime] = None
    created_at: datetime
    updated_at: Optional[datetime] = None

    @model_validator(mode="before")
    @classmethod
    def _legacy_payment_type(cls, data: Any) -> Any:
        if isinstance(data, dict) and data.get("paymentType") == "va":
            data = {**data, "paymentType": "virtual-account"}
        return data


# ---------------------------------
# Gateway
# ---------------------------------

class PaymentIntent(BaseModel):
    """Hosted payment handle returned by the gateway."""

    id: str
    reference_id: str
    method: PaymentMethod
    status: str = "PENDING"
    amount: float
    currency: str = "IDR"
    qr_string: Optional[str] = None
    account_number: Optional[str] = None
    bank_code: Optional[str] = None
    expires_at: Optional[datetime] = None


# ---------------------------------
# Checkout
# ---------------------------------

class Buyer(BaseModel):
    """Identity handed over by the external identity provider."""

    id: str = Field(..., min_length=1)
    display_name: Optional[str] = None
    email: Optional[str] = None


class HandoffCheckout(BaseModel):
    order_id: str
    subtotal: float
    whatsapp_url: str
    message: str


class GatewayCheckout(BaseModel):
    transaction_id: str
    payment: PaymentIntent
    buyer_index_written: bool = True


class CallbackResult(BaseModel):
    reference_id: str
    status: str
    outcome: Literal["applied", "duplicate", "stale"]

    @property
    def applied(self) -> bool:
        return self.outcome == "applied"


# ---------------------------------
# Notifications
# ---------------------------------

class Notification(BaseModel):
    """Promo, banner or order notice published by the back office."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    id: str
    type: str = "promo"
    title: str = ""
    description: Optional[str] = None
    target: Audience = "all"
    banner_url: Optional[str] = Field(None, validation_alias=AliasChoices("banner_url", "bannerUrl"))
    deeplink: Optional[str] = None
    # legacy records hold epoch milliseconds
    expires_at: Optional[datetime] = Field(None, validation_alias=AliasChoices("expires_at", "expiresAt"))
    created_at: Optional[datetime] = Field(None, validation_alias=AliasChoices("created_at", "createdAt"))
    is_read: bool = False

    @field_validator("expires_at", "created_at")
    @classmethod
    def _assume_utc(cls, v: Optional[datetime]) -> Optional[datetime]:
        if v is not None and v.tzinfo is None:
            return v.replace(tzinfo=timezone.utc)
        return v


# ---------------------------------
# Decode helpers (store boundary)
# ---------------------------------

def to_dict(doc: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    if not doc:
        return doc
    d = dict(doc)
    if "_id" in d:
        d["id"] = str(d.pop("_id"))
    return d


def decode_product(doc: Dict[str, Any]) -> Product:
    return Product.model_validate(to_dict(doc))


def decode_merchant(doc: Dict[str, Any]) -> Merchant:
    return Merchant.model_validate(to_dict(doc))


def decode_order(doc: Dict[str, Any]) -> Order:
    return Order.model_validate(to_dict(doc))


def decode_notification(doc: Dict[str, Any]) -> Notification:
    return Notification.model_validate(to_dict(doc))


def decode_transaction(doc: Dict[str, Any]) -> Transaction:
    d = dict(doc)
    oid = d.pop("_id", None)
    # global documents are keyed by reference id, per-buyer ones carry it as a field
    if "reference_id" not in d and isinstance(oid, str):
        d["reference_id"] = oid
    return Transaction.model_validate(d)


def decode_cart(doc: Optional[Dict[str, Any]], buyer_id: str) -> CartDocument:
    if not doc:
        return CartDocument(buyer_id=buyer_id)
    return CartDocument(
        buyer_id=buyer_id,
        items=doc.get("items") or [],
        revision=doc.get("revision"),
        updated_at=doc.get("updated_at"),
    )
