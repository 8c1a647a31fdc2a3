"""
Raffle snapshot feed

Publish/subscribe channel for the raffle collection. Every subscriber owns a
predicate and a single-slot queue; after a committed change the feed reloads
the collection once and hands each interested subscriber its full filtered
snapshot. Subscribers that fall behind only ever see the newest snapshot.
"""

import asyncio
import json
from typing import Awaitable, Callable, Dict, Iterable, List, Optional
from uuid import uuid4

import redis.asyncio as aioredis
from loguru import logger

from rafflehub.records import RaffleRecord

Predicate = Callable[[RaffleRecord], bool]
Snapshot = List[RaffleRecord]
Loader = Callable[[], Awaitable[Snapshot]]

_CLOSED = object()


def match_all(record: RaffleRecord) -> bool:
    return True


class Subscription:
    """Live sequence of snapshots, iterate with ``async for``"""

    def __init__(self, feed: "RaffleFeed", predicate: Predicate):
        self.feed = feed
        self.predicate = predicate
        self.closed = False
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=1)

    def matches(self, record: Optional[RaffleRecord]) -> bool:
        return record is not None and self.predicate(record)

    def deliver(self, snapshot: Snapshot):
        if self.closed:
            return
        if self._queue.full():
            # Drop the stale snapshot, only the newest one matters
            self._queue.get_nowait()
        self._queue.put_nowait([record for record in snapshot if self.predicate(record)])

    async def get(self) -> Snapshot:
        item = await self._queue.get()
        if item is _CLOSED:
            raise StopAsyncIteration
        return item

    def close(self):
        if self.closed:
            return
        self.closed = True
        self.feed.unsubscribe(self)
        if self._queue.full():
            self._queue.get_nowait()
        self._queue.put_nowait(_CLOSED)

    def __aiter__(self):
        return self

    async def __anext__(self) -> Snapshot:
        return await self.get()

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        self.close()


class RaffleFeed:
    """Fan-out of raffle collection snapshots to live subscribers"""

    def __init__(self, loader: Loader):
        self._loader = loader
        self._subscribers: List[Subscription] = []
        self._known: Dict[str, RaffleRecord] = {}
        self._lock = asyncio.Lock()
        self._bridge: Optional["RedisChangeBridge"] = None

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def attach_bridge(self, bridge: "RedisChangeBridge"):
        self._bridge = bridge

    async def subscribe(self, predicate: Optional[Predicate] = None) -> Subscription:
        """Register a subscriber; it receives the current state right away"""
        subscription = Subscription(self, predicate or match_all)
        self._subscribers.append(subscription)

        async with self._lock:
            snapshot = await self._load()
            if snapshot is not None:
                self._known = {record.id: record for record in snapshot}
                subscription.deliver(snapshot)

        logger.debug(f"Feed subscriber added ({self.subscriber_count} live)")
        return subscription

    def unsubscribe(self, subscription: Subscription):
        if subscription in self._subscribers:
            self._subscribers.remove(subscription)
            logger.debug(f"Feed subscriber removed ({self.subscriber_count} live)")

    async def notify_changed(self, changed_ids: Iterable[str]):
        """Announce committed changes locally and to other workers"""
        changed_ids = list(changed_ids)
        await self.publish(changed_ids)

        if self._bridge:
            try:
                await self._bridge.announce(changed_ids)
            except Exception as e:
                logger.warning(f"Failed to announce raffle change to other workers: {e}")

    async def publish(self, changed_ids: Iterable[str]):
        """Deliver a fresh snapshot to every subscriber the change concerns"""
        changed_ids = list(changed_ids)
        if not self._subscribers:
            return

        async with self._lock:
            snapshot = await self._load()
            if snapshot is None:
                return

            previous = self._known
            current = {record.id: record for record in snapshot}
            self._known = current

            for subscription in list(self._subscribers):
                if any(
                    subscription.matches(previous.get(raffle_id)) or subscription.matches(current.get(raffle_id))
                    for raffle_id in changed_ids
                ):
                    subscription.deliver(snapshot)

    async def _load(self) -> Optional[Snapshot]:
        try:
            return await self._loader()
        except Exception as e:
            logger.warning(f"Failed to load raffle snapshot, subscribers keep last known view: {e}")
            return None


class RedisChangeBridge:
    """
    Relays raffle change notifications between worker processes

    Each worker publishes the ids it changed on a Redis channel and replays
    the ids other workers changed into its local feed.
    """

    def __init__(self, feed: RaffleFeed, redis_url: str, channel: str):
        self.feed = feed
        self.channel = channel
        self.origin = uuid4().hex
        self.redis = aioredis.from_url(redis_url, decode_responses=True)
        self.pubsub = None
        self.task: Optional[asyncio.Task] = None

    async def start(self):
        """Subscribe to the channel and start relaying"""
        self.pubsub = self.redis.pubsub()
        await self.pubsub.subscribe(self.channel)
        self.feed.attach_bridge(self)
        self.task = asyncio.create_task(self._listen_loop())
        logger.info(f"Raffle change bridge listening on {self.channel}")

    async def stop(self):
        if self.task:
            self.task.cancel()
            try:
                await self.task
            except asyncio.CancelledError:
                pass

        if self.pubsub:
            await self.pubsub.unsubscribe(self.channel)
            await self.pubsub.aclose()
        await self.redis.aclose()
        logger.info("Raffle change bridge stopped")

    async def announce(self, changed_ids: List[str]):
        message = json.dumps({"origin": self.origin, "ids": changed_ids})
        await self.redis.publish(self.channel, message)

    async def _listen_loop(self):
        async for message in self.pubsub.listen():
            if message.get("type") != "message":
                continue
            try:
                data = json.loads(message["data"])
            except (TypeError, ValueError) as e:
                logger.warning(f"Ignoring malformed raffle change message: {e}")
                continue

            if data.get("origin") == self.origin:
                continue

            await self.feed.publish(data.get("ids", []))
