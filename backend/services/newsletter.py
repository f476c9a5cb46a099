# services/newsletter.py
# ============================================================================
# ECHOBEATS LANDING — NEWSLETTER SUBSCRIPTIONS
# ============================================================================

from typing import Any, List

import structlog

from schemas.orders import Subscriber, SubscribeRequest, parse_request
from storage.order_store import ISubscriberStore

logger = structlog.get_logger(component="newsletter")


class NewsletterService:
    """Signup is idempotent: the same email always maps to one subscriber."""

    def __init__(self, store: ISubscriberStore):
        self.store = store

    async def subscribe(self, payload: Any) -> Subscriber:
        request = parse_request(SubscribeRequest, payload)
        subscriber = await self.store.create_subscriber(request.email)
        logger.info("subscriber_saved", subscriber_id=subscriber.id)
        return subscriber

    async def list_subscribers(self) -> List[Subscriber]:
        return await self.store.list_subscribers()
