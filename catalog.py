"""Read-only access to merchant-published stores and products."""

from typing import Any, Dict, Iterable, List, Optional

from pydantic import ValidationError as SchemaError
from pymongo.database import Database

from app_logger import get_logger
from database import PRODUCTS, USERS, get_documents
from schemas import Merchant, Product, decode_merchant, decode_product

log = get_logger("catalog")

MERCHANT_ROLES = ("merchant", "admin")


class CatalogReader:
    def __init__(self, db: Database):
        self.db = db

    def get_product(self, product_id: str) -> Optional[Product]:
        doc = self.db[PRODUCTS].find_one({"_id": product_id})
        if not doc:
            return None
        return decode_product(doc)

    def get_products_by_merchant(self, merchant_id: str) -> List[Product]:
        docs = get_documents(
            self.db, PRODUCTS, {"$or": [{"merchant_id": merchant_id}, {"merchantId": merchant_id}]}
        )
        products = [
            p for p in self._decode_all(docs, decode_product, "product")
            if p.marketplace_visible and p.is_active
        ]
        # available first, then by name
        products.sort(key=lambda p: (not p.is_available, p.name.lower()))
        return products

    def get_merchant(self, merchant_id: str) -> Optional[Merchant]:
        doc = self.db[USERS].find_one({"_id": merchant_id})
        if not doc:
            return None
        merchant = decode_merchant(doc)
        if merchant.role not in MERCHANT_ROLES:
            return None
        return merchant

    def get_merchant_by_slug(self, slug: str) -> Optional[Merchant]:
        for merchant in self.list_stores():
            if merchant.slug == slug:
                return merchant
        return None

    def list_stores(self, category: Optional[str] = None, tags: Optional[List[str]] = None) -> List[Merchant]:
        docs = get_documents(self.db, USERS, {"role": {"$in": list(MERCHANT_ROLES)}, "status": "active"})
        stores = []
        for merchant in self._decode_all(docs, decode_merchant, "merchant"):
            if not merchant.marketplace_opt_in:
                continue
            if category and merchant.category != category:
                continue
            if tags and not any(t in merchant.tags for t in tags):
                continue
            stores.append(merchant)
        log.debug("listed %d marketplace stores", len(stores))
        return stores

    @staticmethod
    def _decode_all(docs: Iterable[Dict[str, Any]], decode, kind: str) -> list:
        out = []
        for doc in docs:
            try:
                out.append(decode(doc))
            except SchemaError as e:
                log.warning("skipping malformed %s %s: %s", kind, doc.get("_id"), e.error_count())
        return out
