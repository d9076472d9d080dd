"""Test suite for the in-memory document store."""

import asyncio

import pytest

from medimate_ai.domain.errors import BackendError
from medimate_ai.repositories.base import SERVER_TIMESTAMP, ArrayUnion


@pytest.mark.asyncio
async def test_create_is_insert_only(store):
    """Creating over an existing key fails instead of overwriting."""
    await store.create_document("usernames/alice", {"uid": "u1"})
    with pytest.raises(BackendError) as exc:
        await store.create_document("usernames/alice", {"uid": "u2"})
    assert exc.value.code == "already-exists"
    assert store.peek("usernames/alice") == {"uid": "u1"}


@pytest.mark.asyncio
async def test_update_missing_document_fails(store):
    with pytest.raises(BackendError) as exc:
        await store.update_document("users/nobody", {"name": "x"})
    assert exc.value.code == "not-found"


@pytest.mark.asyncio
async def test_array_union_appends_and_skips_structural_duplicates(store):
    await store.set_document("chats/c1", {"messages": []})
    await store.append_to_array("chats/c1", "messages", {"role": "user", "content": "hi"})
    await store.append_to_array("chats/c1", "messages", {"role": "user", "content": "hi"})
    await store.update_document("chats/c1", {"messages": ArrayUnion({"role": "assistant", "content": "hello"})})
    assert store.peek("chats/c1")["messages"] == [
        {"role": "user", "content": "hi"},
        {"role": "assistant", "content": "hello"},
    ]


@pytest.mark.asyncio
async def test_set_merge_keeps_other_fields(store):
    await store.set_document("users/u1", {"name": "Alice", "email": "a@example.com"})
    await store.set_document("users/u1", {"last_login": SERVER_TIMESTAMP}, merge=True)
    doc = store.peek("users/u1")
    assert doc["name"] == "Alice"
    assert doc["last_login"] is not None

    await store.set_document("users/u1", {"name": "Bob"})
    assert store.peek("users/u1") == {"name": "Bob"}


@pytest.mark.asyncio
async def test_batch_failure_leaves_nothing_written(store):
    """A fault while staging any operation aborts the whole batch."""
    await store.set_document("usernames/old", {"uid": "u1"})
    await store.set_document("users/u1", {"username": "old"})
    store.inject_fault("create", code="unavailable", path_prefix="usernames/new")

    batch = store.batch()
    batch.delete("usernames/old")
    batch.create("usernames/new", {"uid": "u1"})
    batch.update("users/u1", {"username": "new"})
    with pytest.raises(BackendError):
        await batch.commit()

    assert store.peek("usernames/old") == {"uid": "u1"}
    assert store.peek("usernames/new") is None
    assert store.peek("users/u1") == {"username": "old"}


@pytest.mark.asyncio
async def test_document_subscription_delivers_full_snapshots(store):
    received = []
    subscription = store.subscribe_document("chats/c1", on_snapshot=received.append)
    assert len(received) == 1 and not received[0].exists

    await store.set_document("chats/c1", {"title": "New Chat", "messages": []})
    await store.append_to_array("chats/c1", "messages", {"content": "a"})
    assert [s.data["messages"] for s in received[1:]] == [[], [{"content": "a"}]]
    assert received[-1].data["title"] == "New Chat"
    assert received[-1].model_dump()["path"] == "chats/c1"

    subscription.unsubscribe()
    await store.delete_document("chats/c1")
    assert len(received) == 3
    assert store.subscription_count() == 0


@pytest.mark.asyncio
async def test_query_subscription_orders_descending(store):
    snapshots = []
    store.subscribe_query(
        "users/u1/chats", order_by="created_at", descending=True, on_snapshot=snapshots.append
    )
    for chat_id in ("a", "b", "c"):
        await store.set_document(f"users/u1/chats/{chat_id}", {"created_at": SERVER_TIMESTAMP})
    await store.set_document("users/u2/chats/x", {"created_at": SERVER_TIMESTAMP})

    assert len(snapshots) == 4
    assert [doc.id for doc in snapshots[-1]] == ["c", "b", "a"]


@pytest.mark.asyncio
async def test_subscription_async_iteration(store):
    subscription = store.subscribe_document("chats/c1")
    await store.set_document("chats/c1", {"n": 1})
    subscription.unsubscribe()

    seen = [snapshot.data async for snapshot in subscription]
    assert seen == [{"n": 1}]


@pytest.mark.asyncio
async def test_iterator_sees_each_change_while_reading(store):
    subscription = store.subscribe_document("chats/c1")
    seen = []

    async def read():
        async for snapshot in subscription:
            seen.append(snapshot.data)

    reader = asyncio.create_task(read())
    await asyncio.sleep(0.01)
    for n in (1, 2):
        await store.set_document("chats/c1", {"n": n})
        await asyncio.sleep(0.01)
    subscription.unsubscribe()
    await reader

    assert seen == [None, {"n": 1}, {"n": 2}]


@pytest.mark.asyncio
async def test_callback_subscription_keeps_no_backlog(store):
    pushes = []
    subscription = store.subscribe_document("chats/c1", on_snapshot=pushes.append)

    for n in range(50):
        await store.set_document("chats/c1", {"n": n})

    assert len(pushes) == 51
    assert subscription.pending == 1
    assert subscription.latest.data == {"n": 49}


@pytest.mark.asyncio
async def test_listener_errors_reach_subscribers(store):
    errors = []
    store.subscribe_document("users/u1/chats/c1", on_error=errors.append)
    store.fail_subscriptions("permission-denied", path_prefix="users/u1")
    assert [e.code for e in errors] == ["permission-denied"]
