from __future__ import annotations

import asyncio
import json
import logging
import os
from typing import Any, Callable, Dict, List, Optional, Protocol, Tuple

import redis
import redis.asyncio as aioredis
from pydantic import ValidationError

from ..domain.message_models import Message, PushEvent, ScopeKey
from ..errors import TransientIOError

LOG = logging.getLogger("canvaschat.subscriptions")

CHANNEL_PREFIX = "canvaschat.messages"

PushHandler = Callable[[PushEvent], None]
# Called at most once when an established subscription stops delivering
ErrorHandler = Callable[[Exception], None]


class Subscription(Protocol):
    async def close(self) -> None: ...


class PushFeed(Protocol):
    async def subscribe(
        self, scope: ScopeKey, handler: PushHandler, on_error: Optional[ErrorHandler] = None
    ) -> Subscription: ...


def channel_for_record(record: Message) -> str:
    return f"{CHANNEL_PREFIX}.{record.scope_type.value}.{record.scope_id or '-'}"


def pattern_for_scope(scope: ScopeKey) -> str:
    if scope.is_aggregate:
        return f"{CHANNEL_PREFIX}.*"
    if scope.scope_id is None:
        return f"{CHANNEL_PREFIX}.{scope.scope_type.value}.*"
    return f"{CHANNEL_PREFIX}.{scope.scope_type.value}.{scope.scope_id}"


class _RedisPublisher:
    def __init__(self, url: str) -> None:
        self._url = url
        self._client = None
        self._connect()

    def _connect(self) -> None:
        try:
            self._client = redis.Redis.from_url(self._url, socket_timeout=0.5)
            self._client.ping()
        except Exception:
            self._client = None

    def publish(self, channel: str, payload: Dict[str, Any]) -> None:
        if not self._client:
            self._connect()
        if not self._client:
            return
        try:
            self._client.publish(channel, json.dumps(payload))
        except Exception:
            self._client = None


_publisher: Optional[_RedisPublisher] = None


def _get_publisher() -> Optional[_RedisPublisher]:
    global _publisher
    if _publisher is not None:
        return _publisher
    url = os.getenv("REDIS_URL")
    if not url:
        return None
    _publisher = _RedisPublisher(url)
    return _publisher


def publish_event(event: PushEvent) -> None:
    """Fan a durable write out to redis subscribers; silent when no REDIS_URL is set."""
    publisher = _get_publisher()
    if not publisher:
        return
    publisher.publish(channel_for_record(event.record), event.model_dump(mode="json"))


class InMemoryPushFeed:
    """Process-local feed; ``deliver_immediately=False`` queues events until ``flush``."""

    def __init__(self, *, deliver_immediately: bool = True, duplicate_delivery: bool = False) -> None:
        self._handlers: List[Tuple[ScopeKey, PushHandler]] = []
        self._error_handlers: Dict[int, ErrorHandler] = {}
        self._queue: List[PushEvent] = []
        self.deliver_immediately = deliver_immediately
        self.duplicate_delivery = duplicate_delivery

    @property
    def subscriber_count(self) -> int:
        return len(self._handlers)

    async def subscribe(
        self, scope: ScopeKey, handler: PushHandler, on_error: Optional[ErrorHandler] = None
    ) -> "_InMemorySubscription":
        pair = (scope, handler)
        self._handlers.append(pair)
        if on_error is not None:
            self._error_handlers[id(pair)] = on_error
        return _InMemorySubscription(self, pair)

    def _unsubscribe(self, pair: Tuple[ScopeKey, PushHandler]) -> None:
        if pair in self._handlers:
            self._handlers.remove(pair)
        self._error_handlers.pop(id(pair), None)

    def disconnect(self, exc: Optional[Exception] = None) -> int:
        """Drop every subscriber as a lost connection would, reporting ``exc`` to each."""
        exc = exc or TransientIOError("push feed disconnected")
        pairs, self._handlers = self._handlers, []
        error_handlers, self._error_handlers = self._error_handlers, {}
        for pair in pairs:
            on_error = error_handlers.get(id(pair))
            if on_error is not None:
                on_error(exc)
        return len(pairs)

    def publish(self, event: PushEvent) -> None:
        if not self.deliver_immediately:
            self._queue.append(event)
            return
        self._deliver(event)

    def _deliver(self, event: PushEvent) -> None:
        times = 2 if self.duplicate_delivery else 1
        for scope, handler in list(self._handlers):
            if not scope.matches(event.record):
                continue
            for _ in range(times):
                handler(event)

    def flush(self, *, reverse: bool = False) -> int:
        pending, self._queue = self._queue, []
        if reverse:
            pending.reverse()
        for event in pending:
            self._deliver(event)
        return len(pending)


class _InMemorySubscription:
    def __init__(self, feed: InMemoryPushFeed, pair: Tuple[ScopeKey, PushHandler]) -> None:
        self._feed = feed
        self._pair = pair

    async def close(self) -> None:
        self._feed._unsubscribe(self._pair)


class RedisPushFeed:
    """Push feed over redis pub/sub (pattern subscriptions per scope)."""

    def __init__(self, url: str) -> None:
        self._url = url
        self._client: Optional[aioredis.Redis] = None

    def _get_client(self) -> aioredis.Redis:
        if self._client is None:
            self._client = aioredis.Redis.from_url(self._url, socket_timeout=5)
        return self._client

    async def subscribe(
        self, scope: ScopeKey, handler: PushHandler, on_error: Optional[ErrorHandler] = None
    ) -> "_RedisSubscription":
        pubsub = self._get_client().pubsub(ignore_subscribe_messages=True)
        pattern = pattern_for_scope(scope)
        try:
            await pubsub.psubscribe(pattern)
        except (redis.exceptions.ConnectionError, redis.exceptions.TimeoutError, OSError) as exc:
            await pubsub.aclose()
            raise TransientIOError(f"redis subscribe failed: {exc}") from exc
        task = asyncio.create_task(self._pump(pubsub, handler, pattern, on_error))
        return _RedisSubscription(pubsub, task, pattern)

    async def _pump(self, pubsub: Any, handler: PushHandler, pattern: str, on_error: Optional[ErrorHandler]) -> None:
        try:
            async for item in pubsub.listen():
                if item.get("type") not in ("message", "pmessage"):
                    continue
                try:
                    event = PushEvent.model_validate(json.loads(item["data"]))
                except (json.JSONDecodeError, ValidationError, TypeError) as exc:
                    LOG.warning("push_payload_invalid", extra={"pattern": pattern, "err": str(exc)})
                    continue
                handler(event)
        except (redis.exceptions.ConnectionError, redis.exceptions.TimeoutError, OSError) as exc:
            LOG.warning("push_feed_lost", extra={"pattern": pattern, "err": str(exc)})
            if on_error is not None:
                on_error(TransientIOError(f"redis feed lost: {exc}"))
        except Exception as exc:
            LOG.exception("push_pump_failed", extra={"pattern": pattern})
            if on_error is not None:
                on_error(exc)


class _RedisSubscription:
    def __init__(self, pubsub: Any, task: "asyncio.Task[None]", pattern: str) -> None:
        self._pubsub = pubsub
        self._task = task
        self._pattern = pattern

    async def close(self) -> None:
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        except Exception as exc:
            LOG.warning("push_pump_failed", extra={"pattern": self._pattern, "err": str(exc)})
        try:
            await self._pubsub.punsubscribe(self._pattern)
        finally:
            await self._pubsub.aclose()


def load_push_feed(url: Optional[str] = None) -> Optional[RedisPushFeed]:
    url = url or os.getenv("REDIS_URL")
    if not url:
        return None
    return RedisPushFeed(url)
