import dataclasses

import pytest

from chatbridge.session import BridgeCoordinator
from chatbridge.sync.events import ConnectionStatus, ConnectionUpdate, HistoryDelivery, RawConversation

from .fakes import FakeConsumer, raw_message, wait_for


@pytest.mark.asyncio
async def test_open_on_first_login_announces_download(coordinator, upstream, consumer):
    await coordinator.start()

    assert coordinator.state.upstream_status == ConnectionStatus.OPEN
    assert consumer.types[:3] == ["upstream_ready", "connection_status", "initial_download_started"]
    assert consumer.of_type("connection_status") == [{"status": "open"}]


@pytest.mark.asyncio
async def test_final_delivery_completes_first_login(coordinator, repo, upstream, consumer):
    await upstream.connect()

    await coordinator.on_bulk_history(HistoryDelivery(
        [RawConversation(id="alice", name="Alice", messages=[raw_message("m1", "alice", 100)])],
        is_final_batch=True,
    ))

    assert await repo.get_setting("first_login_complete") is True
    [done] = consumer.of_type("download_complete")
    assert done["chats"] == 1
    [progress] = consumer.of_type("history_sync_progress")
    assert progress["newMessages"] == 1
    assert progress["isFinal"] is True


@pytest.mark.asyncio
async def test_open_with_stored_chats_refreshes_the_list(coordinator, repo, upstream, consumer):
    await repo.upsert_conversation("alice", "Alice")
    await repo.set_setting("first_login_complete", True)

    await upstream.connect()

    assert "initial_download_started" not in consumer.types
    [updated] = consumer.of_type("chats_updated")
    assert updated["chats"][0]["jid"] == "alice"


@pytest.mark.asyncio
async def test_attach_while_open_sends_upstream_ready(coordinator, upstream):
    await upstream.connect()
    late = FakeConsumer()
    await coordinator.attach_consumer(late)

    assert late.types == ["upstream_ready"]


@pytest.mark.asyncio
async def test_detach_clears_waiting_flag(coordinator, consumer):
    coordinator.state.consumer_waiting_for_chats = True
    coordinator.detach_consumer(consumer)

    assert coordinator.state.consumer is None
    assert not coordinator.state.consumer_waiting_for_chats


@pytest.mark.asyncio
async def test_qr_is_forwarded(coordinator, consumer):
    await coordinator.on_qr("tg://login?token=abc")

    assert consumer.of_type("qr") == [{"url": "tg://login?token=abc"}]


@pytest.mark.asyncio
async def test_logout_reconnects_immediately(config, repo, upstream, clock, consumer):
    config = dataclasses.replace(config, reconnect_delay=30.0)
    coordinator = BridgeCoordinator(config, repo, upstream, clock=clock)
    await coordinator.attach_consumer(consumer)
    try:
        await upstream.connect()
        coordinator.state.reconnect_attempts = 3
        await coordinator.projector.publish_from_store()

        await upstream.drop(reason="logged out", logged_out=True)

        assert "session_logout" in consumer.types
        assert upstream.cleared == 1
        assert coordinator.projector.cached_payload is None
        assert {"status": "closed", "reason": "logged out"} in consumer.of_type("connection_status")

        # The reconnect delay is 30s; a fresh connect must happen well before that.
        assert await wait_for(lambda: upstream.connect_calls == 2, timeout=1.0)
        assert coordinator.state.reconnect_attempts == 0
        assert coordinator.state.upstream_status == ConnectionStatus.OPEN
        assert "connection_lost" not in consumer.types
    finally:
        await coordinator.close()


@pytest.mark.asyncio
async def test_transient_close_reconnects_after_delay(coordinator, upstream, consumer):
    await upstream.connect()

    await upstream.drop(reason="stream errored")

    [lost] = consumer.of_type("connection_lost")
    assert lost["attempt"] == 1
    assert lost["maxAttempts"] == 5
    assert lost["reason"] == "stream errored"
    assert upstream.cleared == 0

    assert await wait_for(lambda: upstream.connect_calls == 2)
    assert coordinator.state.reconnect_attempts == 0


@pytest.mark.asyncio
async def test_reconnect_gives_up_after_max_attempts(config, repo, upstream, clock, consumer):
    config = dataclasses.replace(config, max_reconnect_attempts=3)
    coordinator = BridgeCoordinator(config, repo, upstream, clock=clock)
    await coordinator.attach_consumer(consumer)
    upstream.fail_connect_forever = True
    try:
        await coordinator.connect_upstream()

        assert await wait_for(lambda: "connection_failed" in consumer.types)
        assert [lost["attempt"] for lost in consumer.of_type("connection_lost")] == [1, 2, 3]
        assert upstream.connect_calls == 4
        assert coordinator.state.reconnect_attempts == 3
    finally:
        await coordinator.close()


@pytest.mark.asyncio
async def test_connecting_status_is_forwarded(coordinator, consumer):
    await coordinator.on_connection_update(ConnectionUpdate(ConnectionStatus.CONNECTING))

    assert consumer.of_type("connection_status") == [{"status": "connecting"}]


@pytest.mark.asyncio
async def test_close_stops_reconnecting(coordinator, upstream, consumer):
    await upstream.connect()
    await coordinator.close()

    await upstream.drop()

    assert "connection_lost" not in consumer.types
    assert upstream.connect_calls == 1


@pytest.mark.asyncio
async def test_live_and_presence_are_routed(coordinator, repo, consumer):
    await coordinator.on_live_messages([raw_message("m1", "alice", 100)])
    await coordinator.on_presence("alice", "composing")

    assert await repo.get_message("alice", "m1") is not None
    assert consumer.types == ["newMessage", "typing_start"]
