import asyncio

import pytest

from chatbridge.database.repository import Contact, Message
from chatbridge.sync.normalize import EMPTY_CHAT_PREVIEW, Provenance
from chatbridge.sync.projector import project_conversation, project_message

from .fakes import raw_message


def stored(msg_id, jid="alice", timestamp=1000, from_me=False, sender_name=None, kind="text", content="hi"):
    return Message(
        id=msg_id,
        conversation_id=jid,
        from_me=from_me,
        content=content,
        message_type=kind,
        timestamp=timestamp,
        status="sent" if from_me else "received",
        provenance=Provenance.REAL_TIME.value,
        sender_name=sender_name,
    )


@pytest.mark.asyncio
async def test_conversation_projection_fields(repo):
    await repo.upsert_conversation("alice", "alice-chat", 2)
    await repo.upsert_contact(Contact(jid="alice", name="Alice", phone_number="+1", avatar_base64="QUJD"))
    await repo.update_conversation_avatar("alice", "Q0hBVA==")
    await repo.update_conversation_summary("alice", stored("m1", from_me=True, content="see you"))

    projected = project_conversation(await repo.get_conversation("alice"))

    assert projected == {
        "jid": "alice",
        "name": "Alice",
        "lastMessage": "see you",
        "timestamp": 1000,
        "lastMessageType": "text",
        "lastMessageFrom": "me",
        "unreadCount": 2,
        "avatarBase64": "QUJD",
        "chatAvatarBase64": "Q0hBVA==",
        "phoneNumber": "+1",
        "syncStatus": "unseen",
        "historyComplete": False,
    }


@pytest.mark.asyncio
async def test_conversation_preview_for_media_and_empty(repo):
    await repo.upsert_conversation("media")
    await repo.upsert_conversation("empty")
    await repo.update_conversation_summary("media", stored("m1", jid="media", kind="image", content="[Image]"))

    media = project_conversation(await repo.get_conversation("media"))
    empty = project_conversation(await repo.get_conversation("empty"))

    assert media["lastMessage"] is None
    assert media["lastMessageType"] == "image"
    assert empty["lastMessage"] == EMPTY_CHAT_PREVIEW


def test_message_projection_sender_names():
    contact = Contact(jid="alice", name="Alice", avatar_base64="QUJD")

    own = project_message(stored("m1", from_me=True), contact)
    assert own["senderName"] == "You"
    assert own["senderAvatar"] is None
    assert own["from"] == "me"

    pushed = project_message(stored("m2", sender_name="Ali"), contact)
    assert pushed["senderName"] == "Ali"
    assert pushed["senderAvatar"] == "QUJD"

    assert project_message(stored("m3"), contact)["senderName"] == "Alice"
    assert project_message(stored("m4"), None)["senderName"] == "alice"


@pytest.mark.asyncio
async def test_cache_is_served_only_while_authoritative(coordinator, repo):
    projector = coordinator.projector
    await repo.upsert_conversation("alice", "Alice")
    await projector.publish_from_store()

    # A write that bypasses the projector is invisible while the cache is authoritative.
    await repo.upsert_conversation("bob", "Bob")
    assert [c["jid"] for c in (await projector.get_conversation_list())["chats"]] == ["alice"]

    projector.mark_stale()
    jids = {c["jid"] for c in (await projector.get_conversation_list())["chats"]}
    assert jids == {"alice", "bob"}


@pytest.mark.asyncio
async def test_clear_drops_the_cached_list(coordinator, repo):
    await repo.upsert_conversation("alice")
    await coordinator.projector.publish_from_store()

    coordinator.projector.clear()

    assert coordinator.projector.cached_payload is None


@pytest.mark.asyncio
async def test_empty_store_sets_waiting_flag(coordinator):
    assert await coordinator.projector.get_conversation_list() is None
    assert coordinator.state.consumer_waiting_for_chats


@pytest.mark.asyncio
async def test_flush_pending_requires_authoritative_payload(coordinator, consumer):
    coordinator.state.consumer_waiting_for_chats = True
    assert not await coordinator.projector.flush_pending()

    coordinator.projector.publish({"chats": []})
    assert await coordinator.projector.flush_pending()
    assert consumer.of_type("initial_chats") == [{"chats": []}]


@pytest.mark.asyncio
async def test_message_list_from_store_does_not_backfill(coordinator, repo, upstream):
    upstream.connected = True
    await repo.upsert_conversation("alice")
    await repo.save_message(stored("m1"))

    messages = await coordinator.projector.get_message_list("alice")

    assert [m["id"] for m in messages] == ["m1"]
    assert upstream.backfill_calls == []


@pytest.mark.asyncio
async def test_empty_message_list_is_backfilled(coordinator, repo, upstream, clock):
    upstream.connected = True
    upstream.backfill["alice"] = [
        raw_message("b2", "alice", 200, text="later"),
        raw_message("b1", "alice", 100, text="earlier"),
    ]
    clock.now = 900_000

    messages = await coordinator.projector.get_message_list("alice", limit=10)

    assert [m["id"] for m in messages] == ["b1", "b2"]
    assert {m["provenance"] for m in messages} == {Provenance.PROGRESSIVE_SYNC.value}
    assert (await repo.get_message("alice", "b1")).sync_session == "backfill-900000"
    assert (await repo.get_conversation("alice")).last_message_id == "b2"


@pytest.mark.asyncio
async def test_backfill_timeout_falls_back_to_store(coordinator, upstream):
    upstream.connected = True
    upstream.backfill_delay = 5
    upstream.backfill["alice"] = [raw_message("b1", "alice", 100)]

    messages = await asyncio.wait_for(coordinator.projector.get_message_list("alice"), timeout=2)

    assert messages == []


@pytest.mark.asyncio
async def test_backfill_error_falls_back_to_store(coordinator, upstream):
    upstream.connected = True
    upstream.backfill_error = RuntimeError("peer not found")

    assert await coordinator.projector.get_message_list("alice") == []


@pytest.mark.asyncio
async def test_no_backfill_when_disconnected_or_paging(coordinator, upstream):
    upstream.backfill["alice"] = [raw_message("b1", "alice", 100)]

    assert await coordinator.projector.get_message_list("alice") == []

    upstream.connected = True
    assert await coordinator.projector.get_message_list("alice", offset=50) == []
    assert upstream.backfill_calls == []


@pytest.mark.asyncio
async def test_zero_limit_does_not_backfill(coordinator, upstream):
    upstream.connected = True
    upstream.backfill["alice"] = [raw_message("b1", "alice", 100)]

    assert await coordinator.projector.get_message_list("alice", limit=0) == []
    assert upstream.backfill_calls == []
