import asyncio
import json
from typing import Dict, Optional

import redis

from constants import RELAY_BROKER, REDIS_HOST, REDIS_PORT, REDIS_PASSWORD
from logging_config import get_logger
from redis_keys import REDIS_BOOKING_CHANNEL, REDIS_MEMBERS_KEY

logger = get_logger(__name__)


class LocalBroker:
    """Delivers relay events to the connections held by this process only."""

    def __init__(self):
        self.relay = None

    def bind(self, relay):
        self.relay = relay

    async def publish(self, booking_id: str, message: dict, exclude: Optional[str] = None) -> int:
        return await self.relay.fan_out(booking_id, message, exclude=exclude)

    def room_opened(self, booking_id: str):
        pass

    def room_closed(self, booking_id: str):
        pass

    def add_member(self, booking_id: str, connection_id: str):
        pass

    def remove_member(self, booking_id: str, connection_id: str):
        pass

    def member_count(self, booking_id: str) -> int:
        return len(self.relay.members(booking_id))


class RedisBroker:
    """Shares relay events between server processes over Redis pub/sub.

    Each process only tracks its own WebSocket connections. Events are published
    on the booking's channel, and every process with local members in that room
    runs a listener that fans the event out to them.
    """

    def __init__(self, redis_client=None, pubsub_client=None, poll_timeout: float = 1.0):
        self.relay = None
        self.poll_timeout = poll_timeout
        # Format: {booking_id: task}
        self.listener_tasks: Dict[str, asyncio.Task] = {}
        try:
            self.redis_client = redis_client or redis.Redis(host=REDIS_HOST, port=REDIS_PORT, password=REDIS_PASSWORD, decode_responses=True)
            self.redis_client.ping()
            # Separate connection for pub/sub (required by Redis)
            self.pubsub_client = pubsub_client or redis.Redis(host=REDIS_HOST, port=REDIS_PORT, password=REDIS_PASSWORD, decode_responses=True)
            self.pubsub_client.ping()
            logger.info(f"Redis broker connected to {REDIS_HOST}:{REDIS_PORT}")
        except Exception as e:
            logger.error(f"Failed to connect to Redis at {REDIS_HOST}:{REDIS_PORT}: {e}", exc_info=True)
            raise

    def bind(self, relay):
        self.relay = relay

    def get_channel_name(self, booking_id: str) -> str:
        return REDIS_BOOKING_CHANNEL.format(booking_id=booking_id)

    async def publish(self, booking_id: str, message: dict, exclude: Optional[str] = None) -> int:
        """Publish to the booking channel. Returns the number of subscribed processes."""
        channel = self.get_channel_name(booking_id)
        envelope = json.dumps({"bookingId": booking_id, "exclude": exclude, "message": message})
        subscribers = self.redis_client.publish(channel, envelope)
        logger.debug(f"Published {message.get('kind')} to channel {channel}, {subscribers} subscribers")
        return subscribers

    def add_member(self, booking_id: str, connection_id: str):
        self.redis_client.sadd(REDIS_MEMBERS_KEY.format(booking_id=booking_id), connection_id)

    def remove_member(self, booking_id: str, connection_id: str):
        self.redis_client.srem(REDIS_MEMBERS_KEY.format(booking_id=booking_id), connection_id)

    def member_count(self, booking_id: str) -> int:
        return self.redis_client.scard(REDIS_MEMBERS_KEY.format(booking_id=booking_id))

    def room_opened(self, booking_id: str):
        task = self.listener_tasks.get(booking_id)
        if task is None or task.done():
            # Subscribe before join returns so nothing published after the join is missed
            pubsub = self.subscribe(booking_id)
            task = asyncio.get_running_loop().create_task(self.listen(booking_id, pubsub))
            # Also covers a task cancelled before it ever ran
            task.add_done_callback(lambda _: self._close_pubsub(booking_id, pubsub))
            self.listener_tasks[booking_id] = task
            logger.debug(f"Started Redis listener for room {booking_id}")

    def room_closed(self, booking_id: str):
        task = self.listener_tasks.pop(booking_id, None)
        if task is not None:
            task.cancel()
            logger.debug(f"Cancelled Redis listener for room {booking_id}")

    def subscribe(self, booking_id: str):
        pubsub = self.pubsub_client.pubsub()
        pubsub.subscribe(self.get_channel_name(booking_id))
        return pubsub

    def _close_pubsub(self, booking_id: str, pubsub):
        try:
            pubsub.close()
        except Exception as e:
            logger.error(f"Error closing pub/sub for room {booking_id}: {e}")

    async def dispatch(self, booking_id: str, data: str) -> int:
        """Fan one channel payload out to the local members of the room."""
        try:
            envelope = json.loads(data)
            message = envelope["message"]
        except (json.JSONDecodeError, KeyError, TypeError) as e:
            logger.error(f"Error parsing Redis payload for room {booking_id}: {e}")
            return 0
        return await self.relay.fan_out(booking_id, message, exclude=envelope.get("exclude"))

    async def listen(self, booking_id: str, pubsub=None):
        logger.info(f"Starting Redis listener for room {booking_id}")
        loop = asyncio.get_running_loop()
        owns_pubsub = pubsub is None
        try:
            if owns_pubsub:
                pubsub = self.subscribe(booking_id)

            def get_message():
                try:
                    return pubsub.get_message(timeout=self.poll_timeout, ignore_subscribe_messages=True)
                except Exception as e:
                    logger.error(f"Error in pubsub.get_message() for room {booking_id}: {e}", exc_info=True)
                    return None

            while True:
                message = await loop.run_in_executor(None, get_message)
                if message is None or message.get("type") != "message":
                    continue
                try:
                    await self.dispatch(booking_id, message["data"])
                except Exception as e:
                    logger.error(f"Error delivering Redis message for room {booking_id}: {e}", exc_info=True)
        except asyncio.CancelledError:
            logger.info(f"Redis listener cancelled for room {booking_id}")
        finally:
            if owns_pubsub and pubsub is not None:
                self._close_pubsub(booking_id, pubsub)
            if self.listener_tasks.get(booking_id) is asyncio.current_task():
                del self.listener_tasks[booking_id]


def build_broker(kind: str = RELAY_BROKER):
    if kind == "redis":
        return RedisBroker()
    if kind == "memory":
        return LocalBroker()
    raise ValueError(f"Unknown relay broker {kind!r}, expected 'memory' or 'redis'")
