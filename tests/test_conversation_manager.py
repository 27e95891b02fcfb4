from __future__ import annotations

import asyncio

import httpx
import pytest

from app.monitoring.metrics import chat_operations_total, realtime_subscriptions
from coachflow.chat import (
    ManagerState,
    MessageType,
    NoActiveConversationError,
    NotFoundError,
    NotReadyError,
    OutgoingFile,
    PermissionDeniedError,
    TransientStoreError,
    UploadError,
    derive_conversation_id,
)
from coachflow.realtime import ArrayUnion, Query


@pytest.fixture()
async def alice(make_manager):
    manager = make_manager("1")
    await manager.init()
    yield manager
    await manager.teardown()


@pytest.fixture()
async def bob(make_manager):
    manager = make_manager("2")
    await manager.init()
    yield manager
    await manager.teardown()


def test_conversation_id_is_commutative_and_prefixed():
    assert derive_conversation_id("7", "12") == derive_conversation_id("12", "7") == "dm_12_7"
    assert derive_conversation_id("b", "a") == "dm_a_b"
    with pytest.raises(ValueError):
        derive_conversation_id("3", "3")


@pytest.mark.anyio("asyncio")
async def test_operations_are_refused_before_ready(make_manager):
    manager = make_manager("1")

    assert manager.state is ManagerState.UNAUTHENTICATED
    with pytest.raises(NotReadyError):
        await manager.start_direct_conversation("2")
    with pytest.raises(NotReadyError):
        await manager.send_message(text="hi")
    with pytest.raises(NotReadyError):
        await manager.block_user("2")


@pytest.mark.anyio("asyncio")
async def test_failed_identity_exchange_enters_auth_failed(make_manager):
    transport = httpx.MockTransport(
        lambda request: httpx.Response(500, json={"success": False, "error": "token_generation_failed"})
    )
    manager = make_manager("1", transport=transport)
    states: list[ManagerState] = []
    manager.add_listener(lambda stream: states.append(manager.state) if stream == "state" else None)

    assert await manager.init() is ManagerState.AUTH_FAILED

    assert manager.auth_error == "token_generation_failed"
    assert states == [ManagerState.AUTHENTICATING, ManagerState.AUTH_FAILED]
    with pytest.raises(NotReadyError):
        await manager.start_direct_conversation("2")


@pytest.mark.anyio("asyncio")
async def test_init_creates_profile_once(store, alice, make_manager):
    profile = await store.get("users/1")
    assert profile.get("username") == "user1"
    assert profile.get("role") == "trainee"
    assert profile.get("id") == "1"
    assert profile.get("blocked") == []
    created_at = profile.get("createdAt")

    again = make_manager("1")
    await again.init()
    assert (await store.get("users/1")).get("createdAt") == created_at
    await again.teardown()


@pytest.mark.anyio("asyncio")
async def test_start_conversation_is_idempotent(store, alice, bob):
    first = await alice.start_direct_conversation("2")
    second = await alice.start_direct_conversation(2)
    from_bob = await bob.start_direct_conversation("1")

    assert first == second == from_bob == "dm_1_2"
    snapshot = await store.query(Query("conversations"))
    assert snapshot.ids == ["dm_1_2"]
    conversation = snapshot.documents[0]
    assert conversation.get("createdBy") == "1"
    assert sorted(conversation.get("participants")) == ["1", "2"]
    assert conversation.get("lastMessage") is None
    assert alice.active_conversation_id == "dm_1_2"


@pytest.mark.anyio("asyncio")
async def test_concurrent_starts_converge_on_one_record(store, alice, bob):
    ids = await asyncio.gather(
        alice.start_direct_conversation("2"),
        bob.start_direct_conversation("1"),
    )

    assert ids == ["dm_1_2", "dm_1_2"]
    assert (await store.query(Query("conversations"))).ids == ["dm_1_2"]


@pytest.mark.anyio("asyncio")
async def test_send_message_marks_sender_and_updates_conversation(store, alice):
    conversation_id = await alice.start_direct_conversation("2")

    message_id = await alice.send_message(text="hi")

    message = await store.get(f"conversations/{conversation_id}/messages/{message_id}")
    assert message.get("readBy") == ["1"]
    assert message.get("type") == "text"
    assert message.get("senderId") == "1"
    conversation = await store.get(f"conversations/{conversation_id}")
    assert conversation.get("lastMessage") == "hi"
    assert conversation.get("lastMessageAt") is not None
    assert [item.id for item in alice.messages] == [message_id]
    assert alice.conversations[0].last_message == "hi"


@pytest.mark.anyio("asyncio")
async def test_send_requires_active_conversation_and_content(alice):
    with pytest.raises(NoActiveConversationError):
        await alice.send_message(text="hi")

    await alice.start_direct_conversation("2")
    with pytest.raises(ValueError):
        await alice.send_message(text="   ")
    with pytest.raises(ValueError):
        await alice.send_message(text="x" * 2001)


@pytest.mark.anyio("asyncio")
async def test_direct_message_scenario(store, blobs, alice, bob):
    conversation_id = await alice.start_direct_conversation("2")
    hello_id = await alice.send_message(text="hello")

    hello = await store.get(f"conversations/{conversation_id}/messages/{hello_id}")
    assert hello.get("type") == MessageType.TEXT.value
    assert (await store.get(f"conversations/{conversation_id}")).get("lastMessage") == "hello"

    await bob.set_active_conversation(conversation_id)
    assert await bob.mark_conversation_read() == 1
    hello = await store.get(f"conversations/{conversation_id}/messages/{hello_id}")
    assert set(hello.get("readBy")) == {"1", "2"}

    photo = OutgoingFile(name="progress.png", content=b"\x89PNG", content_type="image/png")
    photo_id = await alice.send_message(files=[photo])

    message = await store.get(f"conversations/{conversation_id}/messages/{photo_id}")
    assert message.get("type") == MessageType.MIXED.value
    attachments = message.get("attachments")
    assert len(attachments) == 1
    assert attachments[0]["name"] == "progress.png"
    assert attachments[0]["size"] == 4
    assert attachments[0]["url"].startswith(f"/media/chat/attachments/{conversation_id}/")
    assert (await store.get(f"conversations/{conversation_id}")).get("lastMessage") == "[Attachment]"
    assert [item.id for item in bob.messages] == [hello_id, photo_id]


@pytest.mark.anyio("asyncio")
async def test_mark_read_is_idempotent_and_keeps_existing_readers(store, alice, bob):
    conversation_id = await alice.start_direct_conversation("2")
    first = await alice.send_message(text="one")
    await alice.send_message(text="two")
    path = f"conversations/{conversation_id}/messages/{first}"
    await store.update(path, {"readBy": ArrayUnion("3")})

    await bob.set_active_conversation(conversation_id)
    assert await bob.mark_conversation_read() == 2
    assert await bob.mark_conversation_read() == 0

    assert (await store.get(path)).get("readBy") == ["1", "3", "2"]
    assert all(message.is_read_by("2") for message in bob.messages)
    assert bob.unread_count() == 0


@pytest.mark.anyio("asyncio")
async def test_mark_read_reports_partial_failure_after_all_batches(store, make_manager, monkeypatch):
    reader = make_manager("2", read_batch_size=2)
    sender = make_manager("1")
    await reader.init()
    await sender.init()
    conversation_id = await sender.start_direct_conversation("2")
    ids = [await sender.send_message(text=str(index)) for index in range(5)]
    await reader.set_active_conversation(conversation_id)

    failing = f"conversations/{conversation_id}/messages/{ids[1]}"
    original_update = store.update

    async def flaky_update(path, changes):
        if path == failing:
            raise TransientStoreError("store unavailable")
        await original_update(path, changes)

    monkeypatch.setattr(store, "update", flaky_update)

    with pytest.raises(TransientStoreError):
        await reader.mark_conversation_read()

    marked = [
        "2" in (await store.get(f"conversations/{conversation_id}/messages/{message_id}")).get("readBy")
        for message_id in ids
    ]
    assert marked == [True, False, True, True, True]
    await reader.teardown()
    await sender.teardown()


@pytest.mark.anyio("asyncio")
async def test_block_prevents_starting_until_unblocked(store, alice):
    assert await alice.block_user("2") is True
    assert await alice.block_user("2") is False
    assert alice.blocked == frozenset({"2"})
    assert (await store.get("users/1")).get("blocked") == ["2"]

    with pytest.raises(PermissionDeniedError):
        await alice.start_direct_conversation("2")
    assert (await store.query(Query("conversations"))).ids == []

    assert await alice.unblock_user("2") is True
    assert await alice.unblock_user("2") is False
    assert (await store.get("users/1")).get("blocked") == []
    assert await alice.start_direct_conversation("2") == "dm_1_2"


@pytest.mark.anyio("asyncio")
async def test_block_is_directional_and_not_retroactive(store, alice, bob):
    conversation_id = await alice.start_direct_conversation("2")
    await alice.block_user("2")

    assert await bob.start_direct_conversation("1") == conversation_id
    await bob.send_message(text="still here")
    assert (await store.get(f"conversations/{conversation_id}")).get("lastMessage") == "still here"


@pytest.mark.anyio("asyncio")
async def test_only_creator_can_delete_conversation(store, alice, bob):
    conversation_id = await alice.start_direct_conversation("2")
    message_id = await alice.send_message(text="keep me")
    await bob.set_active_conversation(conversation_id)

    with pytest.raises(PermissionDeniedError):
        await bob.delete_conversation()
    assert (await store.get(f"conversations/{conversation_id}")).exists
    assert (await store.get(f"conversations/{conversation_id}/messages/{message_id}")).exists

    await alice.delete_conversation()
    assert not (await store.get(f"conversations/{conversation_id}")).exists
    assert (await store.query(Query(f"conversations/{conversation_id}/messages"))).ids == []
    assert alice.active_conversation_id is None
    assert alice.conversations == []

    with pytest.raises(NotFoundError):
        await bob.delete_conversation()


@pytest.mark.anyio("asyncio")
async def test_typing_flags_are_written_per_participant(store, alice, bob):
    conversation_id = await alice.start_direct_conversation("2")
    await bob.set_active_conversation(conversation_id)

    await alice.set_typing(True)
    await bob.set_typing(True)
    await alice.set_typing(False)

    assert (await store.get(f"conversations/{conversation_id}")).get("typing") == {"1": False, "2": True}
    assert bob.typing == {"1": False, "2": True}


@pytest.mark.anyio("asyncio")
async def test_switching_conversation_discards_previous_streams(store, alice):
    first = await alice.start_direct_conversation("2")
    await alice.send_message(text="to bob")
    second = await alice.start_direct_conversation("3")
    assert alice.messages == []

    await store.add(
        f"conversations/{first}/messages",
        {"senderId": "2", "text": "late reply", "readBy": ["2"], "type": "text"},
    )
    await store.update(f"conversations/{first}", {("typing", "2"): True})

    assert alice.active_conversation_id == second
    assert alice.messages == []
    assert alice.typing == {}
    assert realtime_subscriptions.value("messages") >= 1


@pytest.mark.anyio("asyncio")
async def test_send_captures_conversation_at_call_time(store, alice, blobs, monkeypatch):
    first = await alice.start_direct_conversation("2")
    original_upload = blobs.upload

    async def upload_then_switch(path, payload, content_type=None):
        url = await original_upload(path, payload, content_type)
        await alice.start_direct_conversation("3")
        return url

    monkeypatch.setattr(blobs, "upload", upload_then_switch)
    await alice.send_message(text="report", files=[OutgoingFile(name="a.txt", content=b"data")])

    assert (await store.get(f"conversations/{first}")).get("lastMessage") == "report"
    assert (await store.get("conversations/dm_1_3")).get("lastMessage") is None
    assert alice.active_conversation_id == "dm_1_3"


@pytest.mark.anyio("asyncio")
async def test_upload_failure_aborts_send(store, alice, blobs):
    conversation_id = await alice.start_direct_conversation("2")
    small = OutgoingFile(name="ok.txt", content=b"ok")
    huge = OutgoingFile(name="huge.bin", content=b"x" * 4096)
    before = chat_operations_total.value("send_message", "error")

    with pytest.raises(UploadError):
        await alice.send_message(text="files", files=[small, huge])

    assert (await store.query(Query(f"conversations/{conversation_id}/messages"))).ids == []
    assert (await store.get(f"conversations/{conversation_id}")).get("lastMessage") is None
    assert not any(blobs._root.rglob("*ok.txt"))
    assert chat_operations_total.value("send_message", "error") - before == 1


@pytest.mark.anyio("asyncio")
async def test_teardown_closes_streams_and_returns_to_unauthenticated(make_manager):
    manager = make_manager("1")
    await manager.init()
    await manager.start_direct_conversation("2")
    notified: list[str] = []
    manager.add_listener(notified.append)

    await manager.teardown()

    assert manager.state is ManagerState.UNAUTHENTICATED
    assert manager.active_conversation_id is None
    assert manager.conversations == []
    assert manager._streams == {}
    assert "state" in notified
    with pytest.raises(NotReadyError):
        await manager.set_typing(True)


@pytest.mark.anyio("asyncio")
async def test_view_listener_failures_are_contained(alice, caplog):
    remove = alice.add_listener(lambda stream: 1 / 0)

    await alice.start_direct_conversation("2")
    remove()

    assert alice.active_conversation_id == "dm_1_2"
    assert "Chat view listener failed" in caplog.text


@pytest.mark.anyio("asyncio")
async def test_existing_profile_block_list_is_loaded(store, make_manager):
    await store.set("users/1", {"id": "1", "username": "alice", "role": "trainer", "blocked": ["3"]})
    manager = make_manager("1")

    await manager.init()

    assert manager.blocked == frozenset({"3"})
    assert (await store.get("users/1")).get("username") == "alice"
    with pytest.raises(PermissionDeniedError):
        await manager.start_direct_conversation("3")
    await manager.teardown()


@pytest.mark.anyio("asyncio")
async def test_unread_count_and_cached_conversation_lookup(alice, bob):
    conversation_id = await alice.start_direct_conversation("2")
    await alice.send_message(text="first")
    await alice.send_message(text="second")
    await bob.start_direct_conversation("1")

    assert alice.unread_count() == 0
    assert bob.unread_count() == 2

    assert await bob.mark_conversation_read() == 2
    assert bob.unread_count() == 0

    cached = bob.conversation(conversation_id)
    assert cached is not None
    assert cached.other_participant("2") == "1"
    assert cached.last_message == "second"
    assert bob.conversation("dm_2_9") is None


@pytest.mark.anyio("asyncio")
async def test_switch_waiting_on_teardown_opens_no_streams(store, make_manager, monkeypatch):
    manager = make_manager("1")
    await manager.init()
    conversations = manager._streams["conversations"]
    original_close = conversations.close

    async def slow_close() -> None:
        await asyncio.sleep(0.01)
        await original_close()

    monkeypatch.setattr(conversations, "close", slow_close)
    before = realtime_subscriptions.value("messages")

    results = await asyncio.gather(
        manager.teardown(),
        manager.set_active_conversation("dm_1_2"),
        return_exceptions=True,
    )

    assert results[0] is None
    assert isinstance(results[1], NotReadyError)
    assert manager._streams == {}
    assert manager.active_conversation_id is None
    assert realtime_subscriptions.value("messages") == before

    await store.set("conversations/dm_1_2", {"participants": ["1", "2"], "typing": {"1": True}})
    await store.add("conversations/dm_1_2/messages", {"senderId": "2", "text": "late", "readBy": ["2"]})
    assert manager.messages == []
    assert manager.typing == {}
