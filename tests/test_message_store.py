import pytest

from canvaschat.domain.message_models import MessageDraft, ScopeKey, ScopeType, SenderRole
from canvaschat.infrastructure import message_store
from canvaschat.infrastructure.events import InMemoryPushFeed


@pytest.fixture
def store():
    return message_store.InMemoryMessageStore()


@pytest.mark.asyncio
async def test_create_assigns_ids_and_monotonic_timestamps(store):
    created = [await store.create(MessageDraft(content=f"note {i}")) for i in range(5)]
    assert len({m.id for m in created}) == 5
    stamps = [m.created_at for m in created]
    assert all(a < b for a, b in zip(stamps, stamps[1:]))
    assert await store.fetch_by_id(created[0].id) == created[0]
    assert await store.fetch_by_id("missing") is None


@pytest.mark.asyncio
async def test_update_marks_edited_and_ignores_unknown_fields(store):
    original = await store.create(MessageDraft(content="v1"))
    updated = await store.update(original.id, {"content": "v2", "id": "hijack"})
    assert updated.id == original.id
    assert updated.content == "v2"
    assert updated.edited
    assert updated.created_at == original.created_at
    with pytest.raises(KeyError):
        await store.update("missing", {"content": "x"})


@pytest.mark.asyncio
async def test_delete_reports_whether_anything_was_removed(store):
    record = await store.create(MessageDraft(content="bye"))
    assert await store.delete(record.id)
    assert not await store.delete(record.id)
    assert await store.fetch_by_id(record.id) is None


@pytest.mark.asyncio
async def test_query_filters_by_scope(store):
    doc = await store.create(MessageDraft(content="a", scope_type=ScopeType.DOCUMENT, scope_id="d1"))
    other = await store.create(MessageDraft(content="b", scope_type=ScopeType.DOCUMENT, scope_id="d2"))
    general = await store.create(MessageDraft(content="c", sender_role=SenderRole.ASSISTANT))
    assert await store.query() == [doc, other, general]
    assert await store.query(ScopeType.DOCUMENT, "d1") == [doc]
    assert await store.query(ScopeType.DOCUMENT) == [doc, other]
    assert await store.query(ScopeType.NONE) == [general]


@pytest.mark.asyncio
async def test_writes_are_echoed_to_attached_feeds(store):
    feed = InMemoryPushFeed()
    store.attach_feed(feed)
    store.attach_feed(feed)
    received = []
    await feed.subscribe(ScopeKey(), received.append)

    record = await store.create(MessageDraft(content="hello"))
    await store.update(record.id, {"content": "hello again"})
    await store.delete(record.id)
    assert [(e.op, e.record.id) for e in received] == [
        ("insert", record.id),
        ("update", record.id),
        ("delete", record.id),
    ]


def test_get_message_store_is_a_singleton():
    first = message_store.get_message_store()
    assert message_store.get_message_store() is first
