import pytest
import pytest_asyncio

from chatbridge.database.repository import Contact
from chatbridge.sync.events import ContactProfile, PresenceState

from .fakes import raw_message


@pytest_asyncio.fixture
async def connected(coordinator, upstream):
    await upstream.connect()
    return coordinator


@pytest.mark.asyncio
async def test_unknown_command(coordinator, consumer):
    await coordinator.router.dispatch({"type": "bogus"})

    assert consumer.sent == [{
        "type": "error",
        "data": {"type": "unknown_command", "message": "Unknown command: bogus"},
    }]


@pytest.mark.asyncio
async def test_non_string_command_type_is_unknown(coordinator, consumer):
    await coordinator.router.dispatch({"type": ["bogus"]})
    await coordinator.router.dispatch({"type": {"nested": 1}})

    errors = consumer.of_type("error")
    assert [e["type"] for e in errors] == ["unknown_command", "unknown_command"]


@pytest.mark.asyncio
async def test_non_object_command(coordinator, consumer):
    await coordinator.router.dispatch(["get_initial_chats"])

    [error] = consumer.of_type("error")
    assert error["type"] == "websocket_error"


@pytest.mark.asyncio
async def test_get_initial_chats_from_store(coordinator, repo, consumer):
    await repo.upsert_conversation("alice", "Alice")

    await coordinator.router.dispatch({"type": "get_initial_chats"})

    [payload] = consumer.of_type("initial_chats")
    assert payload["chats"][0]["name"] == "Alice"


@pytest.mark.asyncio
async def test_get_initial_chats_store_failure(coordinator, consumer, monkeypatch):
    async def broken(limit=50):
        raise RuntimeError("database is locked")

    monkeypatch.setattr(coordinator.repo, "list_conversations", broken)

    await coordinator.router.dispatch({"type": "get_initial_chats"})

    [error] = consumer.of_type("error")
    assert error["type"] == "database_error"
    assert error["details"] == "database is locked"


@pytest.mark.asyncio
async def test_send_message(connected, repo, upstream, consumer):
    await connected.router.dispatch({"type": "send_message", "data": {"to": "alice", "message": "hello"}})

    assert upstream.sent == [("alice", "hello")]
    [sent] = consumer.of_type("message_sent")
    assert sent == {"to": "alice", "message": "hello", "messageId": "sent-1", "timestamp": 5_000_000}

    stored = await repo.get_message("alice", "sent-1")
    assert stored.from_me
    assert stored.status == "sent"
    assert (await repo.get_conversation("alice")).last_message_from == "me"


@pytest.mark.asyncio
async def test_send_message_while_disconnected_stores_failed_row(coordinator, repo, consumer, clock):
    clock.now = 7_000
    await coordinator.router.dispatch({"type": "send_message", "data": {"to": "alice", "message": "hello"}})

    [error] = consumer.of_type("message_error")
    assert error["type"] == "messaging_error"

    failed = await repo.get_message("alice", "failed_7000")
    assert failed.status == "failed"
    assert failed.content == "hello"
    assert consumer.of_type("message_sent") == []


@pytest.mark.asyncio
async def test_send_message_upstream_error(connected, repo, upstream, consumer):
    upstream.send_error = RuntimeError("flood wait")

    await connected.router.dispatch({"type": "send_message", "data": {"to": "alice", "message": "hello"}})

    assert consumer.of_type("message_error")[0]["details"] == "flood wait"
    assert await repo.get_message_count("alice") == 1


@pytest.mark.asyncio
async def test_send_message_validation(connected, repo, upstream, consumer):
    await connected.router.dispatch({"type": "send_message", "data": {"to": "alice"}})

    assert consumer.of_type("message_error")[0]["details"] == "Missing required fields: message"
    assert upstream.sent == []
    assert await repo.get_message_count("alice") == 0


@pytest.mark.asyncio
async def test_get_message_history(coordinator, repo, consumer):
    await coordinator.live.handle_messages([raw_message("m1", "alice", 100), raw_message("m2", "alice", 200)])

    await coordinator.router.dispatch({"type": "get_message_history", "data": {"jid": "alice", "limit": 1}})

    [history] = consumer.of_type("message_history")
    assert history["jid"] == "alice"
    assert [m["id"] for m in history["messages"]] == ["m2"]


@pytest.mark.asyncio
async def test_get_message_history_rejects_bad_paging(coordinator, consumer):
    await coordinator.router.dispatch({"type": "get_message_history", "data": {"jid": "alice", "offset": -1}})

    [error] = consumer.of_type("message_history_error")
    assert "offset" in error["details"]


@pytest.mark.asyncio
async def test_typing_commands_forward_presence(connected, upstream):
    await connected.router.dispatch({"type": "typing_start", "data": {"to": "alice"}})
    await connected.router.dispatch({"type": "typing_stop", "data": {"to": "alice"}})

    assert upstream.presence == [("alice", PresenceState.COMPOSING), ("alice", PresenceState.PAUSED)]


@pytest.mark.asyncio
async def test_typing_while_disconnected_is_only_logged(coordinator, upstream, consumer):
    await coordinator.router.dispatch({"type": "typing_start", "data": {"to": "alice"}})

    assert upstream.presence == []
    assert consumer.sent == []


@pytest.mark.asyncio
async def test_health_check(connected, consumer):
    await connected.router.dispatch({"type": "health_check"})

    [health] = consumer.of_type("health_status")
    assert health["healthy"] is True
    assert health["checks"]["database"] == {"healthy": True}
    assert health["upstream"] == {"connected": True, "status": "open"}
    assert health["backend"]["pid"] > 0


@pytest.mark.asyncio
async def test_sync_contacts(connected, repo, upstream, consumer):
    for i in range(12):
        await repo.upsert_conversation(f"c{i}")
    upstream.contacts = {
        "c0": ContactProfile(jid="c0", name="Zero", phone_number="+10", avatar=b"png-bytes"),
        "c1": RuntimeError("privacy restricted"),
    }

    await connected.router.dispatch({"type": "sync_contacts"})

    assert consumer.of_type("sync_contacts_started") == [{"totalChats": 12}]
    progress = consumer.of_type("sync_contacts_progress")
    assert [p["processed"] for p in progress] == [0, 10]
    assert consumer.of_type("sync_contacts_completed") == [
        {"syncedCount": 1, "errorCount": 1, "totalProcessed": 12}
    ]

    contact = await repo.get_contact("c0")
    assert contact.name == "Zero"
    assert contact.avatar_base64 == "cG5nLWJ5dGVz"
    assert (await repo.get_conversation("c0")).avatar_base64 == "cG5nLWJ5dGVz"


@pytest.mark.asyncio
async def test_sync_contacts_requires_connection(coordinator, consumer):
    await coordinator.router.dispatch({"type": "sync_contacts"})

    [error] = consumer.of_type("sync_contacts_error")
    assert error["type"] == "upstream_error"


@pytest.mark.asyncio
async def test_get_contact_info(coordinator, repo, consumer):
    await coordinator.live.handle_messages([raw_message("m1", "alice", 100)])
    await repo.upsert_contact(Contact(jid="alice", name="Alice", phone_number="+1"))

    await coordinator.router.dispatch({"type": "get_contact_info", "data": {"jid": "alice"}})

    [info] = consumer.of_type("contact_info")
    assert info["jid"] == "alice"
    assert info["contactInfo"]["name"] == "Alice"
    assert info["contactInfo"]["phoneNumber"] == "+1"
    assert info["contactInfo"]["messageCount"] == 1
    assert info["contactInfo"]["lastSeen"] == 100_000


@pytest.mark.asyncio
async def test_get_contact_info_requires_jid(coordinator, consumer):
    await coordinator.router.dispatch({"type": "get_contact_info", "data": {}})

    [error] = consumer.of_type("contact_info_error")
    assert error["jid"] is None
    assert error["error"]["details"] == "Missing required fields: jid"
