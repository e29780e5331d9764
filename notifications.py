"""Read-only notification feed: promos, banners and order notices for buyers and merchants."""

from datetime import datetime, timezone
from typing import List, Optional, Set

from pydantic import ValidationError as SchemaError
from pymongo.database import Database

from app_logger import get_logger
from database import NOTIFICATION_READS, NOTIFICATIONS, get_documents, utcnow
from errors import NotificationNotFoundError
from schemas import Notification, decode_notification

log = get_logger("notifications")

EPOCH = datetime.fromtimestamp(0, tz=timezone.utc)


class NotificationFeed:
    def __init__(self, db: Database):
        self.db = db

    def get_notifications(
        self,
        limit: Optional[int] = None,
        target: Optional[str] = None,
        user_id: Optional[str] = None,
    ) -> List[Notification]:
        """Unexpired notifications for ``target`` (plus ones addressed to all), newest first."""
        filter_dict = {}
        if target == "all":
            filter_dict = {"target": "all"}
        elif target:
            filter_dict = {"target": {"$in": [target, "all"]}}

        read = self._read_ids(user_id) if user_id else set()
        now = utcnow()
        feed = []
        for doc in get_documents(self.db, NOTIFICATIONS, filter_dict):
            try:
                notification = decode_notification(doc)
            except SchemaError as e:
                log.warning("skipping malformed notification %s: %s", doc.get("_id"), e.error_count())
                continue
            if notification.expires_at and notification.expires_at <= now:
                continue
            notification.is_read = notification.id in read
            feed.append(notification)

        feed.sort(key=lambda n: n.created_at or EPOCH, reverse=True)
        return feed[:limit] if limit else feed

    def mark_as_read(self, user_id: str, notification_id: str) -> None:
        if not self.db[NOTIFICATIONS].find_one({"_id": notification_id}, {"_id": 1}):
            raise NotificationNotFoundError(f"Notification not found: {notification_id}")
        self.db[NOTIFICATION_READS].update_one(
            {"_id": user_id}, {"$addToSet": {"ids": notification_id}}, upsert=True
        )

    def _read_ids(self, user_id: str) -> Set[str]:
        doc = self.db[NOTIFICATION_READS].find_one({"_id": user_id}) or {}
        return set(doc.get("ids") or [])
