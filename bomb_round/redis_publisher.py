import json
import logging
from redis.asyncio import Redis
from redis.exceptions import RedisError


class RoundEventPublisher:
    """Publish session status changes on ``round:{session_id}``.

    Notifications are emitted after the change is persisted; a Redis outage
    is logged and never rolls a round back.
    """

    def __init__(self, redis: Redis | None = None):
        self.redis: Redis | None = redis

    @classmethod
    def from_url(cls, redis_url: str | None) -> "RoundEventPublisher":
        if not redis_url:
            return cls(None)
        return cls(Redis.from_url(redis_url, decode_responses=True, health_check_interval=30))

    async def publish(self, session_id: str, status: str, **payload) -> None:
        """Publish one status update

        Args:
            session_id (str): Channel is derived from it
            status (str): New session status
        """
        if self.redis is None:
            return
        channel = f"round:{session_id}"
        message = json.dumps({"sessionId": session_id, "status": status, **payload})
        try:
            await self.redis.publish(channel, message)
        except (RedisError, OSError) as e:
            logging.error(f"Failed to publish round event on {channel}: {e}")

    async def close(self) -> None:
        if self.redis is not None:
            await self.redis.aclose()
