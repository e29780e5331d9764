"""
MongoDB access for the storefront.

The client is built once by ``main.create_app`` through ``connect`` and the
resulting ``Database`` handle is passed to every component; this module keeps
no connection state of its own.
"""

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from pymongo import ASCENDING, DESCENDING, MongoClient
from pymongo.database import Database

from settings import Settings

# Collection names
USERS = "users"
PRODUCTS = "products"
CARTS = "carts"
ORDERS = "orders"
TRANSACTIONS = "transactions"
BUYER_TRANSACTIONS = "buyer_transactions"
CHECKOUT_CLAIMS = "checkout_claims"
NOTIFICATIONS = "notifications"
NOTIFICATION_READS = "notification_reads"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def connect(settings: Settings) -> Database:
    client: MongoClient = MongoClient(settings.database_url, tz_aware=True)
    return client[settings.database_name]


def ensure_indexes(db: Database) -> None:
    db[PRODUCTS].create_index([("merchant_id", ASCENDING)])
    db[ORDERS].create_index([("buyer_id", ASCENDING), ("created_at", DESCENDING)])
    db[BUYER_TRANSACTIONS].create_index(
        [("buyer_id", ASCENDING), ("reference_id", ASCENDING)], unique=True
    )
    db[BUYER_TRANSACTIONS].create_index([("buyer_id", ASCENDING), ("created_at", DESCENDING)])
    db[NOTIFICATIONS].create_index([("target", ASCENDING)])


def create_document(db: Database, collection_name: str, data: Dict[str, Any]) -> str:
    doc = dict(data)
    now = utcnow()
    doc.setdefault("created_at", now)
    doc.setdefault("updated_at", now)
    result = db[collection_name].insert_one(doc)
    return str(result.inserted_id)


def get_documents(
    db: Database,
    collection_name: str,
    filter_dict: Optional[Dict[str, Any]] = None,
    sort: Optional[List[tuple]] = None,
) -> List[Dict[str, Any]]:
    cursor = db[collection_name].find(filter_dict or {})
    if sort:
        cursor = cursor.sort(sort)
    return list(cursor)
