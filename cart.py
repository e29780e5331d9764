"""
Cart Manager.

A cart holds (product snapshot, quantity) lines from a single merchant. The
buyer's device keeps the primary copy; while a buyer is signed in the cart is
mirrored to the ``carts`` collection and the two copies are merged on attach,
local copy winning on conflict. There is no per-field versioning, so edits
made concurrently on two devices can overwrite each other.
"""

from typing import List, Optional
from uuid import uuid4

from pymongo.database import Database

from app_logger import get_logger
from catalog import CatalogReader
from database import CARTS, utcnow
from errors import (
    CrossMerchantCartError,
    ProductNotFoundError,
    ProductUnavailableError,
    ValidationError,
)
from schemas import CartDocument, CartLine, ProductSnapshot, decode_cart

log = get_logger("cart")


class Cart:
    def __init__(self, lines: Optional[List[CartLine]] = None):
        self._lines: List[CartLine] = list(lines or [])

    @property
    def lines(self) -> List[CartLine]:
        return list(self._lines)

    @property
    def merchant_id(self) -> Optional[str]:
        return self._lines[0].product.merchant_id if self._lines else None

    @property
    def total_items(self) -> int:
        return sum(line.quantity for line in self._lines)

    @property
    def total_price(self) -> float:
        return sum(line.quantity * line.product.unit_price for line in self._lines)

    def __len__(self) -> int:
        return len(self._lines)

    def _index(self, product_id: str) -> int:
        for i, line in enumerate(self._lines):
            if line.product.id == product_id:
                return i
        return -1

    def add_item(self, product: ProductSnapshot, quantity: int = 1) -> None:
        if quantity < 1:
            raise ValidationError("Quantity must be at least 1")
        if self._lines and product.merchant_id != self.merchant_id:
            raise CrossMerchantCartError(
                self._lines[0].product.merchant_name or self.merchant_id,
                product.merchant_name or product.merchant_id,
            )

        i = self._index(product.id)
        if i >= 0:
            existing = self._lines[i]
            self._lines[i] = CartLine(product=existing.product, quantity=existing.quantity + quantity)
        else:
            self._lines.append(CartLine(product=product, quantity=quantity))

    def update_quantity(self, product_id: str, quantity: int) -> None:
        if quantity <= 0:
            self.remove_item(product_id)
            return
        i = self._index(product_id)
        if i >= 0:
            self._lines[i] = CartLine(product=self._lines[i].product, quantity=quantity)

    def remove_item(self, product_id: str) -> None:
        self._lines = [line for line in self._lines if line.product.id != product_id]

    def clear(self) -> None:
        self._lines = []


def merge_carts(local: List[CartLine], remote: List[CartLine]) -> List[CartLine]:
    """Local lines win on conflict; remote-only lines are adopted as-is."""
    merged = list(local)
    seen = {line.product.id for line in local}
    merchant_id = local[0].product.merchant_id if local else None

    for line in remote:
        if line.product.id in seen:
            continue
        if merchant_id is None:
            merchant_id = line.product.merchant_id
        elif line.product.merchant_id != merchant_id:
            log.warning(
                "dropping remote cart line %s from merchant %s (cart belongs to %s)",
                line.product.id, line.product.merchant_id, merchant_id,
            )
            continue
        merged.append(line)
        seen.add(line.product.id)
    return merged


class CartRepository:
    """Remote mirror of a buyer's cart, one document per buyer."""

    def __init__(self, db: Database):
        self.db = db

    def load_document(self, buyer_id: str) -> CartDocument:
        return decode_cart(self.db[CARTS].find_one({"_id": buyer_id}), buyer_id)

    def load(self, buyer_id: str) -> Cart:
        return Cart(self.load_document(buyer_id).items)

    def save(self, buyer_id: str, cart: Cart) -> None:
        self.db[CARTS].replace_one(
            {"_id": buyer_id},
            {
                "_id": buyer_id,
                "items": [line.model_dump() for line in cart.lines],
                "revision": uuid4().hex,
                "updated_at": utcnow(),
            },
            upsert=True,
        )

    def delete(self, buyer_id: str) -> None:
        self.db[CARTS].delete_one({"_id": buyer_id})


class CartService:
    def __init__(self, repository: CartRepository, catalog: CatalogReader):
        self.repository = repository
        self.catalog = catalog

    def get(self, buyer_id: str) -> Cart:
        return self.repository.load(buyer_id)

    def document(self, buyer_id: str) -> CartDocument:
        """Stored cart with its revision token, for checkout."""
        return self.repository.load_document(buyer_id)

    def add(self, buyer_id: str, product_id: str, quantity: int = 1) -> Cart:
        product = self.catalog.get_product(product_id)
        if product is None:
            raise ProductNotFoundError(f"Product not found: {product_id}")
        label = product.name or product_id
        if not (product.marketplace_visible and product.is_active):
            raise ProductUnavailableError(f"{label} is not available in the marketplace")
        if not product.is_available:
            raise ProductUnavailableError(f"{label} is out of stock")
        cart = self.repository.load(buyer_id)
        in_cart = sum(line.quantity for line in cart.lines if line.product.id == product_id)
        if product.stock is not None and in_cart + quantity > product.stock:
            raise ProductUnavailableError(f"Only {product.stock} of {label} left in stock")
        cart.add_item(product.snapshot(), quantity)
        self.repository.save(buyer_id, cart)
        return cart

    def update(self, buyer_id: str, product_id: str, quantity: int) -> Cart:
        cart = self.repository.load(buyer_id)
        cart.update_quantity(product_id, quantity)
        self.repository.save(buyer_id, cart)
        return cart

    def remove(self, buyer_id: str, product_id: str) -> Cart:
        cart = self.repository.load(buyer_id)
        cart.remove_item(product_id)
        self.repository.save(buyer_id, cart)
        return cart

    def clear(self, buyer_id: str) -> None:
        self.repository.delete(buyer_id)

    def attach(self, buyer_id: str, local_lines: List[CartLine]) -> Cart:
        # replaying through add_item folds duplicates and rejects mixed merchants
        local = Cart()
        for line in local_lines:
            local.add_item(line.product, line.quantity)
        remote = self.repository.load(buyer_id)
        merged = Cart(merge_carts(local.lines, remote.lines))
        self.repository.save(buyer_id, merged)
        log.info("attached cart for buyer %s: %d local, %d remote, %d merged",
                 buyer_id, len(local), len(remote), len(merged))
        return merged
