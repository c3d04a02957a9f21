import asyncio
import logging
from datetime import datetime, timezone
from typing import Awaitable, Callable, Dict, List

import redis.asyncio as redis
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import TimeoutError as RedisTimeoutError

from chatsync.config import get_settings
from chatsync.schemas.profile import Presence
from chatsync.sync.errors import SubscriptionFailure


logger = logging.getLogger(__name__)

OnMessage = Callable[[str], Awaitable[None]]

_STOP = object()
_DROP = object()


class LocalBus:

    def __init__(self) -> None:
        self._subscribers: Dict[str, List["_LocalSub"]] = {}
        self._heartbeats: Dict[str, datetime] = {}
        self._ttl: Dict[str, int] = {}

    async def publish(self, channel: str, message: str) -> None:
        for sub in list(self._subscribers.get(channel, [])):
            sub.queue.put_nowait(message)

    async def subscribe(self, channel: str, on_message: OnMessage) -> "_LocalSub":
        sub = _LocalSub(self, channel, on_message)
        self._subscribers.setdefault(channel, []).append(sub)
        return sub

    def subscriber_count(self, channel: str) -> int:
        return len(self._subscribers.get(channel, []))

    def drop(self, channel: str) -> int:
        """Break every live subscription on `channel`, as a lost connection would."""
        subs = self._subscribers.pop(channel, [])
        for sub in subs:
            sub.queue.put_nowait(_DROP)
        return len(subs)

    async def drain(self) -> None:
        """Wait until every published message has been handled."""
        for subs in list(self._subscribers.values()):
            for sub in list(subs):
                await sub.queue.join()

    def _detach(self, sub: "_LocalSub") -> None:
        subs = self._subscribers.get(sub.channel)
        if subs and sub in subs:
            subs.remove(sub)
            if not subs:
                del self._subscribers[sub.channel]

    async def set_presence(self, user_id: str, ttl_seconds: int = 60) -> None:
        self._heartbeats[user_id] = datetime.now(timezone.utc)
        self._ttl[user_id] = ttl_seconds

    async def get_presence(self, user_id: str) -> Presence:
        last = self._heartbeats.get(user_id)
        if last is None:
            return Presence(user_id=user_id)
        age = (datetime.now(timezone.utc) - last).total_seconds()
        return Presence(user_id=user_id, is_online=age < self._ttl.get(user_id, 60), last_heartbeat=last)

    async def close(self) -> None:
        for channel in list(self._subscribers):
            for sub in list(self._subscribers.get(channel, [])):
                await sub.cancel()


class _LocalSub:

    def __init__(self, bus: LocalBus, channel: str, on_message: OnMessage) -> None:
        self._bus = bus
        self.channel = channel
        self._on_message = on_message
        self.queue: asyncio.Queue = asyncio.Queue()

    async def run(self) -> None:
        while True:
            item = await self.queue.get()
            try:
                if item is _STOP:
                    return
                if item is _DROP:
                    raise SubscriptionFailure(self.channel)
                await self._on_message(item)
            finally:
                self.queue.task_done()

    async def cancel(self) -> None:
        self._bus._detach(self)
        self.queue.put_nowait(_STOP)


class RedisBus:

    def __init__(self, url: str) -> None:
        self._redis = redis.from_url(url)

    async def publish(self, channel: str, message: str) -> None:
        await self._redis.publish(channel, message)

    async def subscribe(self, channel: str, on_message: OnMessage) -> "_RedisSub":
        pubsub = self._redis.pubsub()
        await pubsub.subscribe(channel)
        return _RedisSub(pubsub, channel, on_message)

    async def set_presence(self, user_id: str, ttl_seconds: int = 60) -> None:
        now = datetime.now(timezone.utc)
        await self._redis.set(f"presence:{user_id}", "online", ex=ttl_seconds)
        await self._redis.set(f"presence:{user_id}:last", now.isoformat())

    async def get_presence(self, user_id: str) -> Presence:
        ttl = await self._redis.ttl(f"presence:{user_id}")
        last = await self._redis.get(f"presence:{user_id}:last")
        if isinstance(last, bytes):
            last = last.decode("utf-8")
        return Presence(
            user_id=user_id,
            is_online=bool(ttl and ttl > 0),
            last_heartbeat=datetime.fromisoformat(last) if last else None,
        )

    async def close(self) -> None:
        await self._redis.aclose()


class _RedisSub:

    def __init__(self, pubsub, channel: str, on_message: OnMessage) -> None:
        self._pubsub = pubsub
        self.channel = channel
        self._on_message = on_message
        self._running = True

    async def run(self) -> None:
        while self._running:
            try:
                msg = await self._pubsub.get_message(ignore_subscribe_messages=True, timeout=1.0)
            except (RedisConnectionError, RedisTimeoutError, OSError) as exc:
                if not self._running:
                    return
                raise SubscriptionFailure(self.channel, str(exc)) from exc
            if msg and msg.get("type") == "message":
                data = msg.get("data")
                if isinstance(data, bytes):
                    data = data.decode("utf-8")
                await self._on_message(data)

    async def cancel(self) -> None:
        self._running = False
        try:
            await self._pubsub.unsubscribe(self.channel)
            await self._pubsub.aclose()
        except (RedisConnectionError, OSError):
            logger.debug("Unsubscribe from %s on a dead connection", self.channel)


_bus = None


async def get_bus():
    global _bus
    if _bus is not None:
        return _bus
    url = get_settings().REDIS_URL
    _bus = RedisBus(url) if url else LocalBus()
    logger.info("Realtime bus: %s", type(_bus).__name__)
    return _bus


async def close_bus() -> None:
    global _bus
    if _bus is not None:
        await _bus.close()
    _bus = None
