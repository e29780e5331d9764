"""
Payment Reconciliation Handler.

Applies gateway callbacks to stored transactions. The global record (keyed by
reference id) is authoritative and always written first; the per-buyer copy
receives the same partial merge afterwards and is skipped when missing.

Callbacks are delivered at least once and may arrive out of order, so status
changes only move forward along ``STATUS_RANK``. Terminal statuses are never
overwritten; repeated and backward callbacks are acknowledged without a write.
"""

from typing import Dict, Iterator, Optional

from pymongo.database import Database
from pymongo.errors import PyMongoError

from app_logger import get_logger
from database import BUYER_TRANSACTIONS, TRANSACTIONS, utcnow
from errors import UnknownReferenceError
from schemas import TERMINAL_STATUSES, CallbackResult, Transaction, decode_transaction

log = get_logger("reconciliation")

STATUS_MAP: Dict[str, str] = {
    "PAID": "paid",
    "SUCCEEDED": "paid",
    "SETTLED": "paid",
    "EXPIRED": "expired",
    "INACTIVE": "expired",
    "FAILED": "failed",
    "CANCELLED": "cancelled",
    "VOIDED": "cancelled",
}

STATUS_RANK: Dict[str, int] = {
    "pending": 0,
    "paid": 1,
    "processing": 2,
    "shipped": 3,
    "completed": 4,
    "cancelled": 5,
    "failed": 5,
    "expired": 5,
}

MAX_CAS_ATTEMPTS = 3


def normalize_status(raw_status: str) -> str:
    raw = (raw_status or "").strip()
    return STATUS_MAP.get(raw.upper(), raw.lower())


def should_apply(current: str, new: str) -> bool:
    if current == new or current in TERMINAL_STATUSES:
        return False
    if new in TERMINAL_STATUSES:
        return True
    return STATUS_RANK.get(new, 0) >= STATUS_RANK.get(current, 0)


class PaymentReconciler:
    def __init__(self, db: Database):
        self.db = db

    def apply_gateway_callback(self, gateway_payment_id: str, reference_id: str, raw_status: str) -> CallbackResult:
        status = normalize_status(raw_status)

        for _ in range(MAX_CAS_ATTEMPTS):
            doc = self.db[TRANSACTIONS].find_one({"_id": reference_id})
            if not doc:
                log.warning("callback for unknown reference %s (payment %s)", reference_id, gateway_payment_id)
                raise UnknownReferenceError(reference_id)

            stored = doc.get("status")
            # records written before status was tracked count as pending
            current = stored or "pending"
            if not should_apply(current, status):
                outcome = "duplicate" if current == status else "stale"
                log.info("ignoring %s callback %s -> %s for %s", outcome, current, status, reference_id)
                return CallbackResult(reference_id=reference_id, status=current, outcome=outcome)

            updates = {"status": status, "gateway_payment_id": gateway_payment_id, "updated_at": utcnow()}
            # compare-and-set on the status just read; None also matches a missing field
            res = self.db[TRANSACTIONS].update_one({"_id": reference_id, "status": stored}, {"$set": updates})
            if res.matched_count:
                break
        else:
            doc = self.db[TRANSACTIONS].find_one({"_id": reference_id}) or {}
            log.warning("gave up applying %s to %s after %d attempts", status, reference_id, MAX_CAS_ATTEMPTS)
            return CallbackResult(reference_id=reference_id, status=doc.get("status") or "pending", outcome="stale")

        log.info("transaction %s: %s -> %s", reference_id, current, status)

        buyer_id = doc.get("buyer_id")
        if buyer_id:
            res = self.db[BUYER_TRANSACTIONS].update_one(
                {"buyer_id": buyer_id, "reference_id": reference_id}, {"$set": updates}
            )
            if not res.matched_count:
                log.debug("no buyer index copy for %s/%s; left for repair", buyer_id, reference_id)

        return CallbackResult(reference_id=reference_id, status=status, outcome="applied")

    def repair_buyer_index(self) -> int:
        """Copy global transactions into the per-buyer index where missing or drifted."""
        repaired = 0
        for doc in self.db[TRANSACTIONS].find({"buyer_id": {"$ne": None}}):
            buyer_id, reference_id = doc["buyer_id"], doc["_id"]
            key = {"buyer_id": buyer_id, "reference_id": reference_id}
            copy = self.db[BUYER_TRANSACTIONS].find_one(key)
            if copy is None:
                record = {k: v for k, v in doc.items() if k != "_id"}
                record["reference_id"] = reference_id
                self.db[BUYER_TRANSACTIONS].insert_one(record)
            elif (copy.get("status"), copy.get("gateway_payment_id")) != (doc.get("status"), doc.get("gateway_payment_id")):
                self.db[BUYER_TRANSACTIONS].update_one(key, {"$set": {
                    "status": doc.get("status"),
                    "gateway_payment_id": doc.get("gateway_payment_id"),
                    "updated_at": doc.get("updated_at"),
                }})
            else:
                continue
            repaired += 1
        log.info("buyer index repair touched %d transactions", repaired)
        return repaired

    def watch_buyer_transactions(self, buyer_id: str) -> Iterator[Transaction]:
        """Yield the buyer's transactions as they change (needs a replica set)."""
        pipeline = [{"$match": {"fullDocument.buyer_id": buyer_id}}]
        try:
            with self.db[BUYER_TRANSACTIONS].watch(pipeline, full_document="updateLookup") as stream:
                for change in stream:
                    full: Optional[dict] = change.get("fullDocument")
                    if full:
                        yield decode_transaction(full)
        except PyMongoError as e:
            log.error("transaction stream for %s stopped: %s", buyer_id, e)
            raise
