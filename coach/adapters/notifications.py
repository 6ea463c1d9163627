"""
Notification Outbox
===================

NotificationSink that writes events to the ``notification_outbox``
collection with status "pending". Delivery to devices is a separate
worker's job; pushing here only has to be durable.
"""
import logging
import uuid

from coach.core.types import NotificationEvent

logger = logging.getLogger(__name__)

STATUS_PENDING = "pending"


class MongoNotificationSink:
    def __init__(self, collection):
        self.collection = collection

    async def push(self, event: NotificationEvent) -> None:
        document = {
            "_id": uuid.uuid4().hex,
            **event.to_dict(),
            "status": STATUS_PENDING,
            "attempts": 0,
        }
        await self.collection.insert(document)
        logger.info(f"📨 Notification queued: {event.kind.value} for user={event.user_id}")
