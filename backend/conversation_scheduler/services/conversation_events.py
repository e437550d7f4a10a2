"""
Conversation events: fan-out of conversation state changes to observers.

Events go to in-process subscribers and, when connected, to a Redis pub/sub
channel consumed by the WebSocket gateway. Publishing is fire-and-forget: a
failed delivery is logged and never propagates to the caller.
"""

import json
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional

import redis.asyncio as aioredis
from redis.asyncio import Redis

from ..core.config import settings

logger = logging.getLogger(__name__)

EventSubscriber = Callable[[Dict[str, Any]], Awaitable[None]]

# Orchestrator bookkeeping that observers do not need to hear about
INTERNAL_FIELDS = frozenset({
    "processing_locked_until",
    "processing_locked_by",
    "needs_processing",
    "last_processed_at",
})


def _isoformat(value) -> Optional[str]:
    return value.isoformat() if value is not None else None


class ConversationEventsService:
    """Publish conversation_updated / conversation_status_changed events"""

    def __init__(self, redis_url: Optional[str] = None, channel: Optional[str] = None):
        self.redis_url = redis_url or settings.REDIS_URL
        self.channel = channel or settings.EVENTS_CHANNEL
        self.redis_client: Optional[Redis] = None
        self._subscribers: List[EventSubscriber] = []

    async def initialize(self) -> bool:
        """Initialize Redis connection"""
        try:
            self.redis_client = aioredis.from_url(
                self.redis_url,
                encoding="utf8",
                decode_responses=True
            )
            await self.redis_client.ping()
            logger.info("Conversation events connected to Redis")
            return True
        except Exception as e:
            logger.warning(f"Failed to connect to Redis for conversation events: {e}")
            logger.warning("Conversation events limited to in-process subscribers")
            self.redis_client = None
            return False

    async def close(self):
        """Close Redis connection"""
        if self.redis_client:
            await self.redis_client.close()
            self.redis_client = None

    def subscribe(self, subscriber: EventSubscriber) -> None:
        self._subscribers.append(subscriber)

    def unsubscribe(self, subscriber: EventSubscriber) -> None:
        if subscriber in self._subscribers:
            self._subscribers.remove(subscriber)

    async def publish_status_changed(
        self,
        conversation,
        changed_fields: Optional[List[str]] = None
    ) -> None:
        """
        Broadcast that a conversation changed.

        Emits ``conversation_updated`` and, when ``status`` is among the
        changed fields, ``conversation_status_changed``. Changes limited to
        internal orchestrator fields are not broadcast.
        """
        if changed_fields is None:
            changed_fields = ["status"]

        if changed_fields and not any(field not in INTERNAL_FIELDS for field in changed_fields):
            return

        events = [{
            "type": "conversation_updated",
            "organizationId": conversation.organization_id,
            "conversationId": conversation.id,
            "payload": {
                "id": conversation.id,
                "title": conversation.title,
                "status": conversation.status,
                "channel": conversation.channel,
                "assigned_user_id": conversation.assigned_user_id,
                "created_at": _isoformat(conversation.created_at),
                "updated_at": _isoformat(conversation.updated_at),
                "changedFields": changed_fields,
            },
        }]

        if "status" in changed_fields:
            events.append({
                "type": "conversation_status_changed",
                "organizationId": conversation.organization_id,
                "conversationId": conversation.id,
                "payload": {
                    "conversationId": conversation.id,
                    "status": conversation.status,
                    "title": conversation.title,
                },
            })

        for event in events:
            await self._deliver(event)

    async def _deliver(self, event: Dict[str, Any]) -> None:
        for subscriber in list(self._subscribers):
            try:
                await subscriber(event)
            except Exception as e:
                logger.error(
                    f"Conversation event subscriber failed for {event['type']}: {e}",
                    extra={"conversation_id": event.get("conversationId")},
                )

        if not self.redis_client:
            logger.debug(f"Redis not connected, skipping {event['type']} broadcast")
            return

        try:
            await self.redis_client.publish(self.channel, json.dumps(event, default=str))
            logger.debug(
                f"Broadcasted {event['type']} for conversation {event['conversationId']}",
                extra={"conversation_id": event["conversationId"]},
            )
        except Exception as e:
            logger.error(
                f"Failed to broadcast {event['type']}: {e}",
                extra={"conversation_id": event.get("conversationId")},
            )


# Global instance
conversation_events_service = ConversationEventsService()
