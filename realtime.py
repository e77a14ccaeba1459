"""
Realtime push to device topics over a pub/sub broker.

A publish joins the topic, sends one message and always releases the channel:

    join (SUBSCRIBED | CHANNEL_ERROR | TIMED_OUT | CLOSED | timer)
      -> send ("ok" | "timed out" | anything else)
      -> unsubscribe + remove, errors ignored

A send that reports "timed out" means nobody is listening yet, which is the
normal state for a device nobody is watching, so it counts as success.
"""
import asyncio
import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Callable, Optional

import redis.asyncio as aioredis
from redis.exceptions import RedisError

logger = logging.getLogger(__name__)

DEFAULT_JOIN_TIMEOUT_MS = 5000

# Join statuses reported by a channel
SUBSCRIBED = "SUBSCRIBED"
CHANNEL_ERROR = "CHANNEL_ERROR"
TIMED_OUT = "TIMED_OUT"
CLOSED = "CLOSED"

# Send results
SEND_OK = "ok"
SEND_TIMED_OUT = "timed out"

# Message types the broker understands natively; anything else is an app event
STRUCTURAL_TYPES = frozenset({"broadcast", "presence", "postgres_changes"})

StatusCallback = Callable[[str, Optional[BaseException]], None]


class RealtimeError(Exception):
    """Base class for realtime publish failures."""


class RealtimeJoinError(RealtimeError):
    pass


class RealtimeSendError(RealtimeError):
    pass


class RealtimeChannel(ABC):
    """One subscription to a topic."""

    topic: str

    @abstractmethod
    def subscribe(self, callback: StatusCallback) -> None:
        """Start joining; report each status change through ``callback``."""

    @abstractmethod
    async def send(self, message: dict) -> str:
        """Send a wire message and return the broker's result string."""

    @abstractmethod
    async def unsubscribe(self) -> None:
        ...


class RealtimeBroker(ABC):
    @abstractmethod
    def channel(self, topic: str) -> RealtimeChannel:
        ...

    @abstractmethod
    async def remove_channel(self, channel: RealtimeChannel) -> None:
        ...


@dataclass(frozen=True)
class BroadcastMessage:
    """Application event carried as a broker broadcast."""
    event: str
    payload: Any = None

    def to_wire(self) -> dict:
        return {"type": "broadcast", "event": self.event, "payload": self.payload}


def normalize_message(message: dict) -> dict:
    """Map an app message onto the broker's wire shape.

    Structural messages pass through untouched. Any other ``type`` becomes a
    broadcast whose event is that type and whose payload is the explicit
    ``payload`` field, else the remaining fields, else None.
    """
    msg_type = message.get("type")
    if msg_type in STRUCTURAL_TYPES:
        return message

    if "payload" in message:
        payload = message["payload"]
    else:
        rest = {k: v for k, v in message.items() if k != "type"}
        payload = rest or None
    return BroadcastMessage(event=msg_type, payload=payload).to_wire()


async def join_channel(channel: RealtimeChannel, timeout_ms: int) -> None:
    """Wait until ``channel`` reports SUBSCRIBED, or raise RealtimeJoinError."""
    loop = asyncio.get_running_loop()
    joined = loop.create_future()
    topic = channel.topic

    def on_status(status: str, err: Optional[BaseException] = None) -> None:
        if joined.done():
            return
        if status == SUBSCRIBED:
            joined.set_result(None)
            return
        if status == CHANNEL_ERROR:
            exc = RealtimeJoinError(f"Realtime channel {topic} returned CHANNEL_ERROR: {err}")
        elif status == TIMED_OUT:
            exc = RealtimeJoinError(f"Realtime channel {topic} subscription timed out")
        elif status == CLOSED:
            exc = RealtimeJoinError(f"Realtime channel {topic} closed before subscribing")
        else:
            return
        exc.__cause__ = err
        joined.set_exception(exc)

    channel.subscribe(on_status)
    try:
        await asyncio.wait_for(joined, timeout_ms / 1000)
    except asyncio.TimeoutError:
        raise RealtimeJoinError(
            f"Realtime channel {topic} timed out while subscribing after {timeout_ms}ms"
        ) from None


async def _release(broker: RealtimeBroker, channel: RealtimeChannel) -> None:
    try:
        await channel.unsubscribe()
    except Exception as e:
        logger.debug(f"Ignoring unsubscribe failure on {channel.topic}: {e}")
    try:
        await broker.remove_channel(channel)
    except Exception as e:
        logger.debug(f"Ignoring channel removal failure on {channel.topic}: {e}")


async def publish(
    broker: RealtimeBroker,
    topic: str,
    message: dict,
    join_timeout_ms: int = DEFAULT_JOIN_TIMEOUT_MS,
) -> None:
    """Join ``topic``, send ``message`` once, and release the channel."""
    channel = broker.channel(topic)
    try:
        await join_channel(channel, join_timeout_ms)
        try:
            result = await channel.send(normalize_message(message))
        except Exception as e:
            raise RealtimeSendError(f"Realtime push to {topic} failed: {e}") from e

        if result == SEND_OK:
            return
        if result == SEND_TIMED_OUT:
            logger.warning(f"Realtime push to {topic} timed out (no subscribers yet?)")
            return
        raise RealtimeSendError(f'Realtime push to {topic} failed with status "{result}"')
    finally:
        await _release(broker, channel)


def device_topic(device_id: str) -> str:
    return f"realtime:device:{device_id}"


class RedisChannel(RealtimeChannel):
    """Redis pub/sub subscription acting as a realtime channel."""

    def __init__(self, client: aioredis.Redis, topic: str):
        self.client = client
        self.topic = topic
        self.pubsub = client.pubsub()
        self._join_task: Optional[asyncio.Task] = None

    def subscribe(self, callback: StatusCallback) -> None:
        self._join_task = asyncio.create_task(self._join(callback))

    async def _join(self, callback: StatusCallback) -> None:
        try:
            await self.pubsub.subscribe(self.topic)
            while True:
                message = await self.pubsub.get_message(timeout=1.0)
                if message is not None and message["type"] == "subscribe":
                    callback(SUBSCRIBED, None)
                    return
        except asyncio.CancelledError:
            callback(CLOSED, None)
            raise
        except RedisError as e:
            callback(CHANNEL_ERROR, e)

    async def send(self, message: dict) -> str:
        receivers = await self.client.publish(self.topic, json.dumps(message, default=str))
        # the count includes this channel's own subscription
        return SEND_OK if receivers > 1 else SEND_TIMED_OUT

    async def unsubscribe(self) -> None:
        if self._join_task is not None and not self._join_task.done():
            self._join_task.cancel()
        await self.pubsub.unsubscribe(self.topic)

    async def close(self) -> None:
        await self.pubsub.aclose()


class RedisBroker(RealtimeBroker):
    def __init__(self, client: aioredis.Redis):
        self.client = client

    def channel(self, topic: str) -> RealtimeChannel:
        return RedisChannel(self.client, topic)

    async def remove_channel(self, channel: RealtimeChannel) -> None:
        if isinstance(channel, RedisChannel):
            await channel.close()
