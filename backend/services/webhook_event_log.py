"""Webhook event log - per-vendor delivery record and dedup.

Each verified delivery is recorded in `webhook_events` keyed by
(vendor, event_id). A record already PROCESSED short-circuits the delivery;
a FAILED or stuck PROCESSING record is retried.
"""
import logging
from datetime import datetime, timezone
from typing import Optional

from pymongo.errors import DuplicateKeyError

from database import database
from models import WebhookEventRecord, WebhookEventStatus, WebhookVendor

logger = logging.getLogger(__name__)


class WebhookEventLog:

    async def begin(
        self,
        vendor: WebhookVendor,
        event_id: Optional[str],
        event_type: Optional[str],
    ) -> bool:
        """Record a delivery as PROCESSING. Returns False when it was already handled."""
        if not event_id:
            # Nothing to key on; process without dedup
            return True

        db = database.get_db()
        key = {"vendor": vendor.value, "event_id": event_id}
        existing = await db.webhook_events.find_one(key, {"_id": 0})

        if existing and existing.get("status") == WebhookEventStatus.PROCESSED.value:
            logger.info(f"Event {event_id} already processed - skipping vendor={vendor.value}")
            return False

        if existing:
            await db.webhook_events.update_one(
                key,
                {"$set": {
                    "status": WebhookEventStatus.PROCESSING.value,
                    "event_type": event_type,
                    "error": None,
                    "received_at": datetime.now(timezone.utc),
                }}
            )
            return True

        record = WebhookEventRecord(vendor=vendor, event_id=event_id, event_type=event_type)
        doc = record.model_dump()
        doc["vendor"] = record.vendor.value
        doc["status"] = record.status.value
        try:
            await db.webhook_events.insert_one(doc)
        except DuplicateKeyError:
            logger.info(f"Event {event_id} duplicate insert (race) - skipping vendor={vendor.value}")
            return False
        return True

    async def mark_processed(
        self,
        vendor: WebhookVendor,
        event_id: Optional[str],
        related_user_id: Optional[str] = None,
    ):
        if not event_id:
            return
        db = database.get_db()
        await db.webhook_events.update_one(
            {"vendor": vendor.value, "event_id": event_id},
            {"$set": {
                "status": WebhookEventStatus.PROCESSED.value,
                "processed_at": datetime.now(timezone.utc),
                "related_user_id": related_user_id,
            }}
        )

    async def mark_failed(self, vendor: WebhookVendor, event_id: Optional[str], error: str):
        if not event_id:
            return
        db = database.get_db()
        await db.webhook_events.update_one(
            {"vendor": vendor.value, "event_id": event_id},
            {"$set": {
                "status": WebhookEventStatus.FAILED.value,
                "processed_at": datetime.now(timezone.utc),
                "error": error,
            }}
        )


webhook_event_log = WebhookEventLog()
