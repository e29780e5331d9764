"""
Order/Checkout Orchestrator.

Two checkout modes share one Order concept:

* ``manual-handoff``: an Order is written under the buyer's keyspace and the
  buyer is handed a WhatsApp deep link carrying the order summary. Buyer and
  merchant confirmations are tracked independently; completion is its own
  explicit action.
* ``gateway``: a hosted QRIS or virtual-account payment is created first, then
  a Transaction is written to the global index and copied to the per-buyer
  index. Status changes afterwards come only from the reconciliation handler.
"""

import warnings
from datetime import timedelta
from typing import Iterable, List, Optional
from uuid import uuid4

from bson.objectid import ObjectId
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError, PyMongoError

from app_logger import get_logger, mask_email, mask_phone
from cart import Cart
from catalog import CatalogReader
from database import (
    BUYER_TRANSACTIONS,
    CHECKOUT_CLAIMS,
    ORDERS,
    TRANSACTIONS,
    create_document,
    get_documents,
    utcnow,
)
from errors import (
    DuplicateCheckoutError,
    MissingMerchantContactError,
    OrderNotFoundError,
    OrderStateError,
    PartialWriteWarning,
    SubtotalMismatchError,
    ValidationError,
)
from gateway import XenditClient
from schemas import (
    TERMINAL_STATUSES,
    Buyer,
    CartLine,
    Customer,
    GatewayCheckout,
    HandoffCheckout,
    Order,
    OrderItem,
    PaymentIntent,
    Transaction,
    decode_order,
    decode_transaction,
)
from settings import Settings
from whatsapp import build_link, build_order_message, normalize_phone

log = get_logger("checkout")

MAX_ITEM_NAME = 120


def line_items(lines: Iterable[CartLine]) -> List[OrderItem]:
    """Copy cart lines into order items so later catalog edits never reach them."""
    return [
        OrderItem(
            product_id=line.product.id,
            # catalog names are free-form; order items need 1..120 chars
            product_name=(line.product.name.strip() or line.product.id)[:MAX_ITEM_NAME],
            quantity=line.quantity,
            unit_price=line.product.unit_price,
            subtotal=line.subtotal,
        )
        for line in lines
    ]


def check_subtotal(items: List[OrderItem], subtotal: float, tolerance: float) -> None:
    calculated = sum(item.subtotal for item in items)
    if abs(calculated - subtotal) > tolerance:
        raise SubtotalMismatchError(
            f"Subtotal {subtotal} does not match the sum of item subtotals {calculated}"
        )


def new_reference_id() -> str:
    return f"order_{uuid4().hex[:16]}"


class CheckoutOrchestrator:
    def __init__(self, db: Database, catalog: CatalogReader, gateway: XenditClient, settings: Settings):
        self.db = db
        self.catalog = catalog
        self.gateway = gateway
        self.settings = settings

    # ---------------- MANUAL HANDOFF ----------------

    def create_handoff_order(
        self,
        buyer: Buyer,
        lines: List[CartLine],
        notes: Optional[str] = None,
        subtotal: Optional[float] = None,
        idempotency_key: Optional[str] = None,
    ) -> HandoffCheckout:
        if not lines:
            raise ValidationError("At least one item is required")
        # re-adding through a Cart enforces the single-merchant rule
        cart = Cart()
        for line in lines:
            cart.add_item(line.product, line.quantity)

        merchant = self.catalog.get_merchant(cart.merchant_id)
        if merchant is None or not merchant.phone_number:
            raise MissingMerchantContactError("Merchant has no WhatsApp number; checkout is unavailable")
        try:
            phone = normalize_phone(merchant.phone_number)
        except ValidationError as e:
            raise MissingMerchantContactError(e.message) from e

        items = line_items(cart.lines)
        computed = cart.total_price
        if subtotal is not None:
            check_subtotal(items, subtotal, self.settings.subtotal_tolerance)

        claim = f"handoff:{buyer.id}:{idempotency_key}" if idempotency_key else None
        if claim:
            self._claim(claim)

        order_id = str(ObjectId())
        message = build_order_message(
            store_name=merchant.name,
            items=items,
            subtotal=computed,
            order_id=order_id,
            buyer_name=buyer.display_name,
            buyer_email=buyer.email,
            notes=notes,
            currency=self.settings.currency,
        )
        now = utcnow()
        order = Order(
            id=order_id,
            buyer_id=buyer.id,
            items=items,
            subtotal=computed,
            total=computed,
            currency=self.settings.currency,
            merchant_id=merchant.id,
            merchant_name=merchant.name,
            merchant_phone=phone,
            buyer_name=buyer.display_name,
            buyer_email=buyer.email,
            notes=notes,
            whatsapp_message=message,
            created_at=now,
            updated_at=now,
            expires_at=now + timedelta(days=self.settings.order_ttl_days),
        )
        try:
            create_document(self.db, ORDERS, {"_id": order_id, **order.model_dump(exclude={"id"})})
        except PyMongoError:
            if claim:
                self._release(claim)
            raise
        log.info("handoff order %s created for buyer %s (%s), merchant %s (%s), subtotal %s",
                 order_id, buyer.id, mask_email(buyer.email), merchant.id, mask_phone(phone), computed)

        return HandoffCheckout(
            order_id=order_id,
            subtotal=computed,
            whatsapp_url=build_link(phone, message),
            message=message,
        )

    def get_order(self, buyer_id: str, order_id: str) -> Order:
        doc = self.db[ORDERS].find_one({"_id": order_id, "buyer_id": buyer_id})
        if not doc:
            raise OrderNotFoundError(f"Order not found: {order_id}")
        return decode_order(doc)

    def list_orders(self, buyer_id: str) -> List[Order]:
        docs = get_documents(self.db, ORDERS, {"buyer_id": buyer_id}, sort=[("created_at", -1)])
        return [decode_order(d) for d in docs]

    def _update_order(self, buyer_id: str, order_id: str, updates: dict) -> Order:
        order = self.get_order(buyer_id, order_id)
        if order.status in TERMINAL_STATUSES:
            raise OrderStateError(f"Order {order_id} is already {order.status}")
        updates["updated_at"] = utcnow()
        self.db[ORDERS].update_one({"_id": order_id, "buyer_id": buyer_id}, {"$set": updates})
        return self.get_order(buyer_id, order_id)

    @staticmethod
    def _confirmation(actor: str) -> dict:
        if actor not in ("buyer", "merchant"):
            raise ValidationError(f"Unknown actor: {actor}")
        return {f"{actor}_confirmed": True, f"{actor}_confirmed_at": utcnow()}

    def confirm_order(self, buyer_id: str, order_id: str, actor: str) -> Order:
        order = self._update_order(buyer_id, order_id, self._confirmation(actor))
        log.info("order %s confirmed by %s", order_id, actor)
        return order

    def complete_order(self, buyer_id: str, order_id: str, actor: str) -> Order:
        updates = self._confirmation(actor)
        updates.update(status="completed", completed_at=utcnow())
        order = self._update_order(buyer_id, order_id, updates)
        log.info("order %s completed by %s", order_id, actor)
        return order

    def cancel_order(self, buyer_id: str, order_id: str, actor: str, reason: Optional[str] = None) -> Order:
        if actor not in ("buyer", "merchant"):
            raise ValidationError(f"Unknown actor: {actor}")
        updates = {"status": "cancelled", "cancelled_at": utcnow(), "cancelled_by": actor}
        if reason:
            updates["cancel_reason"] = reason
        order = self._update_order(buyer_id, order_id, updates)
        log.info("order %s cancelled by %s", order_id, actor)
        return order

    def mark_whatsapp_sent(self, buyer_id: str, order_id: str) -> Order:
        return self._update_order(buyer_id, order_id, {"whatsapp_sent_at": utcnow()})

    # ---------------- GATEWAY ----------------

    def create_gateway_order(
        self,
        amount: float,
        method: str,
        buyer: Optional[Buyer] = None,
        reference_id: Optional[str] = None,
        bank_code: Optional[str] = None,
        items: Optional[List[OrderItem]] = None,
        description: Optional[str] = None,
    ) -> GatewayCheckout:
        if amount is None or amount <= 0:
            raise ValidationError("Amount must be greater than zero")
        if method not in ("qris", "virtual-account"):
            raise ValidationError(f"Invalid payment method: {method}")
        items = list(items or [])
        if items:
            check_subtotal(items, amount, self.settings.subtotal_tolerance)
        reference_id = reference_id or new_reference_id()
        bank_code = bank_code or self.settings.default_bank_code

        self._claim(reference_id)
        try:
            intent = self._create_intent(amount, method, reference_id, bank_code, buyer, description)
        except Exception:
            self._release(reference_id)
            raise

        now = utcnow()
        txn = Transaction(
            reference_id=reference_id,
            gateway_payment_id=intent.id,
            payment_method=method,
            amount=amount,
            currency=self.settings.currency,
            buyer_id=buyer.id if buyer else None,
            customer=Customer(given_names=buyer.display_name, email=buyer.email) if buyer else None,
            description=description,
            items=items,
            qr_string=intent.qr_string,
            account_number=intent.account_number,
            bank_code=intent.bank_code if method == "virtual-account" else None,
            expires_at=intent.expires_at,
            created_at=now,
            updated_at=now,
        )
        doc = txn.model_dump()
        create_document(self.db, TRANSACTIONS, {"_id": reference_id, **doc})
        log.info("gateway transaction %s created (%s, %s %s)", reference_id, method, amount, txn.currency)

        indexed = True
        if txn.buyer_id:
            indexed = self._write_buyer_index(txn.buyer_id, reference_id, doc)

        return GatewayCheckout(transaction_id=reference_id, payment=intent, buyer_index_written=indexed)

    def _create_intent(self, amount: float, method: str, reference_id: str, bank_code: str,
                       buyer: Optional[Buyer], description: Optional[str]) -> PaymentIntent:
        if method == "qris":
            customer = Customer(given_names=buyer.display_name, email=buyer.email) if buyer else None
            return self.gateway.create_qris_intent(amount, reference_id, description, customer)
        payer = buyer.display_name if buyer else None
        return self.gateway.create_virtual_account_intent(amount, reference_id, bank_code, payer)

    def _claim(self, key: str) -> None:
        try:
            self.db[CHECKOUT_CLAIMS].insert_one({"_id": key, "created_at": utcnow()})
        except DuplicateKeyError as e:
            raise DuplicateCheckoutError(f"Checkout already submitted: {key}") from e

    def _release(self, key: str) -> None:
        self.db[CHECKOUT_CLAIMS].delete_one({"_id": key})

    def _write_buyer_index(self, buyer_id: str, reference_id: str, doc: dict) -> bool:
        try:
            self.db[BUYER_TRANSACTIONS].replace_one(
                {"buyer_id": buyer_id, "reference_id": reference_id}, doc, upsert=True
            )
            return True
        except PyMongoError as e:
            log.warning("PartialWriteWarning: buyer index write failed for %s/%s: %s", buyer_id, reference_id, e)
            warnings.warn(PartialWriteWarning(f"buyer index missing {buyer_id}/{reference_id}"), stacklevel=2)
            return False

    def get_transaction(self, reference_id: str) -> Optional[Transaction]:
        doc = self.db[TRANSACTIONS].find_one({"_id": reference_id})
        return decode_transaction(doc) if doc else None

    def list_transactions(self, buyer_id: str) -> List[Transaction]:
        docs = get_documents(self.db, BUYER_TRANSACTIONS, {"buyer_id": buyer_id}, sort=[("created_at", -1)])
        return [decode_transaction(d) for d in docs]
