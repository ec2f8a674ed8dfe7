"""Round event publishing over redis pub/sub."""

import importlib
import json
import logging
import unittest
from unittest.mock import AsyncMock, patch

from redis.exceptions import ConnectionError as RedisConnectionError

from bomb_round import redis_publisher
from bomb_round.redis_publisher import RoundEventPublisher


class TestRoundEventPublisher(unittest.IsolatedAsyncioTestCase):
    async def test_publishes_status_on_session_channel(self):
        redis = AsyncMock()
        await RoundEventPublisher(redis).publish("42", "lost", row=3)
        channel, message = redis.publish.await_args.args
        self.assertEqual(channel, "round:42")
        self.assertEqual(json.loads(message), {"sessionId": "42", "status": "lost", "row": 3})

    async def test_outage_is_logged_not_raised(self):
        redis = AsyncMock()
        redis.publish.side_effect = RedisConnectionError("down")
        with self.assertLogs(level="ERROR"):
            await RoundEventPublisher(redis).publish("42", "active")

    async def test_disabled_without_url(self):
        publisher = RoundEventPublisher.from_url(None)
        self.assertIsNone(publisher.redis)
        await publisher.publish("42", "active")
        await publisher.close()

    def test_import_leaves_logging_configuration_to_the_app(self):
        with patch.object(logging, "basicConfig") as basic_config:
            importlib.reload(redis_publisher)
        basic_config.assert_not_called()


if __name__ == "__main__":
    unittest.main()
