import asyncio
import json
import types

import pytest

from conftest import make_message
from canvaschat.domain.message_models import PushEvent, ScopeKey, ScopeType
from canvaschat.errors import TransientIOError
from canvaschat.infrastructure import events


def _doc_event(message_id="m1", op="insert", scope_id="d1"):
    return PushEvent(op=op, record=make_message(message_id, scope_type=ScopeType.DOCUMENT, scope_id=scope_id))


def test_channel_and_pattern_naming():
    assert events.channel_for_record(make_message("m1")) == "canvaschat.messages.none.-"
    assert events.channel_for_record(_doc_event().record) == "canvaschat.messages.document.d1"
    assert events.pattern_for_scope(ScopeKey.all()) == "canvaschat.messages.*"
    assert events.pattern_for_scope(ScopeKey(ScopeType.NONE)) == "canvaschat.messages.none.*"
    assert events.pattern_for_scope(ScopeKey(ScopeType.PROJECT)) == "canvaschat.messages.project.*"
    assert events.pattern_for_scope(ScopeKey(ScopeType.DOCUMENT, "d1")) == "canvaschat.messages.document.d1"


def test_publish_event_no_url_returns_quietly():
    assert events._get_publisher() is None
    events.publish_event(_doc_event())


class FakeRedisClient:
    attempt = 0
    published = []
    publish_should_fail = False

    def ping(self):
        if FakeRedisClient.attempt == 0:
            FakeRedisClient.attempt += 1
            raise Exception("connect failed")

    def publish(self, channel, payload):
        FakeRedisClient.published.append((channel, payload))
        if FakeRedisClient.publish_should_fail:
            FakeRedisClient.publish_should_fail = False
            raise Exception("publish failed")


def test_redis_publisher_recovers_after_connection_failure(monkeypatch):
    FakeRedisClient.attempt = 0
    FakeRedisClient.published = []
    FakeRedisClient.publish_should_fail = False

    def from_url(url, socket_timeout=0.5):
        return FakeRedisClient()

    monkeypatch.setattr(events, "redis", types.SimpleNamespace(Redis=types.SimpleNamespace(from_url=from_url)))
    monkeypatch.setenv("REDIS_URL", "redis://localhost")

    publisher = events._get_publisher()
    assert publisher is not None

    events.publish_event(_doc_event())
    assert FakeRedisClient.attempt == 1  # first ping failed once
    channel, payload = FakeRedisClient.published[-1]
    assert channel == "canvaschat.messages.document.d1"
    assert json.loads(payload)["op"] == "insert"

    FakeRedisClient.publish_should_fail = True
    events.publish_event(_doc_event("m2"))  # should swallow publish exception
    assert events._get_publisher() is publisher


@pytest.mark.asyncio
async def test_in_memory_feed_filters_by_scope():
    feed = events.InMemoryPushFeed()
    received = []
    sub = await feed.subscribe(ScopeKey(ScopeType.DOCUMENT, "d1"), received.append)
    feed.publish(_doc_event("m1"))
    feed.publish(_doc_event("m2", scope_id="d2"))
    assert [e.record.id for e in received] == ["m1"]
    await sub.close()
    assert feed.subscriber_count == 0
    feed.publish(_doc_event("m3"))
    assert len(received) == 1


@pytest.mark.asyncio
async def test_in_memory_feed_duplicates_and_reorders():
    feed = events.InMemoryPushFeed(deliver_immediately=False, duplicate_delivery=True)
    received = []
    await feed.subscribe(ScopeKey(), received.append)
    feed.publish(_doc_event("m1"))
    feed.publish(_doc_event("m2"))
    assert received == []
    assert feed.flush(reverse=True) == 2
    assert [e.record.id for e in received] == ["m2", "m2", "m1", "m1"]


class FakePubSub:
    def __init__(self, items=(), fail=False):
        self.items = list(items)
        self.fail = fail
        self.patterns = []
        self.unsubscribed = []
        self.closed = False

    async def psubscribe(self, pattern):
        if self.fail:
            raise events.redis.exceptions.ConnectionError("redis down")
        self.patterns.append(pattern)

    async def punsubscribe(self, pattern):
        self.unsubscribed.append(pattern)

    async def aclose(self):
        self.closed = True

    async def listen(self):
        for item in self.items:
            yield item
        await asyncio.Event().wait()


class FakeAsyncRedis:
    def __init__(self, pubsub):
        self._pubsub = pubsub

    def pubsub(self, ignore_subscribe_messages=True):
        return self._pubsub


@pytest.mark.asyncio
async def test_redis_feed_subscribe_failure_is_transient():
    pubsub = FakePubSub(fail=True)
    feed = events.RedisPushFeed("redis://localhost")
    feed._client = FakeAsyncRedis(pubsub)
    with pytest.raises(TransientIOError):
        await feed.subscribe(ScopeKey(), lambda _event: None)
    assert pubsub.closed


@pytest.mark.asyncio
async def test_redis_feed_pumps_valid_events_and_closes():
    good = _doc_event("m1")
    pubsub = FakePubSub(
        items=[
            {"type": "psubscribe", "data": 1},
            {"type": "pmessage", "data": "not json"},
            {"type": "pmessage", "data": json.dumps(good.model_dump(mode="json"))},
        ]
    )
    feed = events.RedisPushFeed("redis://localhost")
    feed._client = FakeAsyncRedis(pubsub)
    received = []
    sub = await feed.subscribe(ScopeKey(ScopeType.DOCUMENT, "d1"), received.append)
    assert pubsub.patterns == ["canvaschat.messages.document.d1"]
    for _ in range(5):
        await asyncio.sleep(0)
    assert [e.record.id for e in received] == ["m1"]
    assert received[0].record == good.record

    await sub.close()
    assert pubsub.unsubscribed == ["canvaschat.messages.document.d1"]
    assert pubsub.closed


def test_load_push_feed_requires_url():
    assert events.load_push_feed() is None
    assert isinstance(events.load_push_feed("redis://localhost:6379/0"), events.RedisPushFeed)


class DroppingPubSub(FakePubSub):
    """Subscribes fine, then loses the connection while listening."""

    async def listen(self):
        for item in self.items:
            yield item
        raise events.redis.exceptions.ConnectionError("connection reset by peer")


class RotatingAsyncRedis:
    def __init__(self, *pubsubs):
        self._pubsubs = list(pubsubs)
        self.handed_out = 0

    def pubsub(self, ignore_subscribe_messages=True):
        pubsub = self._pubsubs[min(self.handed_out, len(self._pubsubs) - 1)]
        self.handed_out += 1
        return pubsub


@pytest.mark.asyncio
async def test_redis_feed_reports_lost_connection():
    pubsub = DroppingPubSub(items=[{"type": "pmessage", "data": json.dumps(_doc_event("m1").model_dump(mode="json"))}])
    feed = events.RedisPushFeed("redis://localhost")
    feed._client = FakeAsyncRedis(pubsub)
    received, errors = [], []
    sub = await feed.subscribe(ScopeKey(), received.append, errors.append)
    for _ in range(5):
        await asyncio.sleep(0)
    assert [e.record.id for e in received] == ["m1"]
    assert len(errors) == 1
    assert isinstance(errors[0], TransientIOError)
    assert sub._task.done() and sub._task.exception() is None

    await sub.close()
    assert pubsub.closed


@pytest.mark.asyncio
async def test_subscription_manager_resubscribes_after_redis_drop(settings, clock):
    from canvaschat.core.state_machine import SubscriptionStatus
    from canvaschat.services.reconciler import IdentityReconciler
    from canvaschat.services.subscription_manager import ContextSubscriptionManager

    dropping = DroppingPubSub()
    healthy = FakePubSub(items=[{"type": "pmessage", "data": json.dumps(_doc_event("m2").model_dump(mode="json"))}])
    feed = events.RedisPushFeed("redis://localhost")
    feed._client = RotatingAsyncRedis(dropping, healthy)
    reconciler = IdentityReconciler(settings=settings, clock=clock)

    async def no_sleep(_seconds):
        return None

    manager = ContextSubscriptionManager(feed, reconciler, settings=settings, sleep=no_sleep)
    await manager.ensure(ScopeKey())
    assert await manager.wait_ready(ScopeKey())
    for _ in range(5):
        await asyncio.sleep(0)
    assert await manager.wait_ready(ScopeKey())
    for _ in range(5):
        await asyncio.sleep(0)

    assert feed._client.handed_out == 2
    assert dropping.closed
    assert manager.status(ScopeKey()) == SubscriptionStatus.SUBSCRIBED
    assert [m.id for m in reconciler.messages] == ["m2"]
    await manager.close()
    assert healthy.closed
