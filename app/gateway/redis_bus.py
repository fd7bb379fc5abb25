"""LeadZap – Redis Bus Connector.

Fan-out of message status changes to connected CRM clients.
"""

import json
from typing import Any, Callable

import redis.asyncio as redis
import structlog

logger = structlog.get_logger()


class RedisBus:
    """Async Redis Pub/Sub message bus.

    Channels:
        - `crm:message_status` – status transitions of outbound WhatsApp messages
    """

    CHANNEL_MESSAGE_STATUS = "crm:message_status"

    def __init__(self, redis_url: str = "redis://127.0.0.1:6379/0") -> None:
        self._redis_url = redis_url
        self._client: redis.Redis | None = None
        self._pubsub: redis.client.PubSub | None = None

    @property
    def connected(self) -> bool:
        return self._client is not None

    async def connect(self) -> None:
        """Establish connection to Redis."""
        self._client = redis.from_url(
            self._redis_url,
            decode_responses=True,
            retry_on_timeout=True,
        )
        await self._client.ping()
        logger.info("redis.connected", url=self._redis_url)

    async def disconnect(self) -> None:
        """Gracefully close Redis connection."""
        if self._pubsub:
            await self._pubsub.aclose()
        if self._client:
            await self._client.aclose()
            self._client = None
        logger.info("redis.disconnected")

    async def health_check(self) -> bool:
        """Check Redis connectivity."""
        if not self._client:
            return False
        try:
            return await self._client.ping()
        except (redis.ConnectionError, redis.TimeoutError):
            logger.error("redis.health_check_failed")
            return False

    async def publish(self, channel: str, message: str) -> int:
        """Publish a message to a Redis channel.

        Returns:
            Number of subscribers that received the message.
        """
        if not self._client:
            raise RuntimeError("Redis not connected. Call connect() first.")
        count = await self._client.publish(channel, message)
        logger.debug("redis.published", channel=channel, subscribers=count)
        return count

    async def subscribe(
        self,
        channel: str,
        callback: Callable[[str], Any],
    ) -> None:
        """Subscribe to a Redis channel and process messages.

        Args:
            channel: Channel to subscribe to.
            callback: Async function called for each message.
        """
        if not self._client:
            raise RuntimeError("Redis not connected. Call connect() first.")

        self._pubsub = self._client.pubsub()
        await self._pubsub.subscribe(channel)
        logger.info("redis.subscribed", channel=channel)

        async for message in self._pubsub.listen():
            if message["type"] == "message":
                await callback(message["data"])

    async def publish_message_status(
        self,
        *,
        company_id: str,
        message_id: str,
        status: str,
        error: str | None = None,
        provider_message_id: str | None = None,
    ) -> None:
        """Best-effort status notification; a Redis outage never fails a send."""
        if not self._client:
            return
        event = {
            "company_id": company_id,
            "message_id": message_id,
            "status": status,
            "error": error,
            "meta_message_id": provider_message_id,
        }
        try:
            await self.publish(self.CHANNEL_MESSAGE_STATUS, json.dumps(event))
        except (redis.ConnectionError, redis.TimeoutError) as e:
            logger.warning("redis.status_publish_failed", message_id=message_id, error=str(e))
