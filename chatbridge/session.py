"""Session coordinator: wires the sync engine to one upstream session and one consumer."""
import asyncio
import logging
from typing import Callable, Coroutine, Optional

from .config import Config
from .database.repository import Repository
from .errors import error_envelope
from .gateway.commands import CommandRouter
from .gateway.outbound import OutboundGateway
from .maintenance import RetentionSweeper
from .state import Consumer, SessionState
from .sync.events import ConnectionStatus, ConnectionUpdate, HistoryDelivery, UpstreamSession
from .sync.live import LiveEventProcessor
from .sync.normalize import now_ms
from .sync.projector import ViewProjector
from .sync.reconciler import HistoryReconciler
from .sync.writer import MessageWriter


logger = logging.getLogger(__name__)

FIRST_LOGIN_SETTING = "first_login_complete"


class BridgeCoordinator:

    def __init__(
        self,
        config: Config,
        repository: Repository,
        upstream: UpstreamSession,
        clock: Callable[[], int] = now_ms,
    ):
        self.config = config
        self.repo = repository
        self.upstream = upstream
        self.state = SessionState()

        self.gateway = OutboundGateway(self.state, config.send_timeout)
        self.writer = MessageWriter(repository, config.store_write_retries)
        self.projector = ViewProjector(
            repository,
            self.state,
            self.gateway,
            self.writer,
            upstream,
            chat_list_limit=config.chat_list_limit,
            backfill_timeout=config.backfill_timeout,
            clock=clock,
        )
        self.reconciler = HistoryReconciler(
            repository, self.projector, self.writer, clock, config.sync_clock_skew_ms
        )
        self.live = LiveEventProcessor(repository, self.projector, self.gateway, self.writer, clock)
        self.router = CommandRouter(
            repository,
            self.state,
            self.gateway,
            self.projector,
            self.live,
            upstream,
            contact_sync_delay=config.contact_sync_delay,
            clock=clock,
        )
        self.sweeper = RetentionSweeper(
            repository, config.retention_ms, config.cleanup_interval_hours * 3600, clock
        )

        self._tasks: set[asyncio.Task] = set()
        self._awaiting_first_download = False
        self._closing = False

        upstream.set_listener(self)

    async def start(self) -> None:
        self._spawn(self.sweeper.run())
        await self.connect_upstream()

    async def close(self) -> None:
        self._closing = True
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        try:
            await self.upstream.disconnect()
        except Exception as e:
            logger.warning("Error disconnecting upstream: %s", e)
        logger.info("Bridge session closed")

    def _spawn(self, coro: Coroutine) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    def _schedule_connect(self, delay: float) -> None:
        async def reconnect():
            if delay:
                await asyncio.sleep(delay)
            await self.connect_upstream()

        self._spawn(reconnect())

    async def connect_upstream(self) -> None:
        if self._closing:
            return
        logger.info("Connecting to upstream chat session")
        try:
            await self.upstream.connect()
        except Exception as e:
            envelope = error_envelope("upstream", e, "connection initialization")
            await self._apply_backoff(envelope["details"])

    async def _apply_backoff(self, reason: Optional[str]) -> None:
        if self._closing:
            return

        max_attempts = self.config.max_reconnect_attempts
        if self.state.reconnect_attempts < max_attempts:
            self.state.reconnect_attempts += 1
            logger.warning(
                "Reconnection attempt %d/%d in %.1fs",
                self.state.reconnect_attempts, max_attempts, self.config.reconnect_delay
            )
            await self.gateway.send("connection_lost", {
                "message": "Connection lost, attempting to reconnect",
                "reason": reason,
                "attempt": self.state.reconnect_attempts,
                "maxAttempts": max_attempts,
            })
            self._schedule_connect(self.config.reconnect_delay)
        else:
            logger.error("Max reconnection attempts reached, giving up")
            await self.gateway.send("connection_failed", {
                "message": "Failed to reconnect after maximum attempts",
                "reason": reason,
                "maxAttempts": max_attempts,
            })

    # Upstream listener

    async def on_connection_update(self, update: ConnectionUpdate) -> None:
        try:
            self.state.upstream_status = update.status
            if update.status == ConnectionStatus.CONNECTING:
                await self.gateway.send("connection_status", {"status": update.status.value})
            elif update.status == ConnectionStatus.OPEN:
                await self._handle_open()
            elif update.status == ConnectionStatus.CLOSED:
                await self._handle_close(update)
        except Exception as e:
            logger.error("Error in connection update handler: %s", e, exc_info=True)

    async def _handle_open(self) -> None:
        logger.info("Upstream connection established")
        self.state.reconnect_attempts = 0
        await self.gateway.send("upstream_ready", {})
        await self.gateway.send("connection_status", {"status": ConnectionStatus.OPEN.value})

        first_login_done = await self.repo.get_setting(FIRST_LOGIN_SETTING, False)
        if not first_login_done and await self.repo.count_conversations() == 0:
            self._awaiting_first_download = True
            logger.info("First login detected, waiting for history download")
            await self.gateway.send("initial_download_started", {
                "message": "Downloading chat history for the first time",
            })
        else:
            await self.projector.refresh_from_store("chats_updated")

    async def _handle_close(self, update: ConnectionUpdate) -> None:
        logger.warning("Upstream connection closed: %s", update.reason)
        self.projector.clear()
        await self.gateway.send("connection_status", {
            "status": ConnectionStatus.CLOSED.value,
            "reason": update.reason,
        })

        if self._closing:
            return

        if update.logged_out:
            logger.warning("Upstream session logged out, clearing credentials")
            await self.gateway.send("session_logout", {
                "message": "Session logged out, scan the QR code to log in again",
            })
            try:
                await self.upstream.clear_credentials()
            except Exception as e:
                logger.error("Error clearing credentials: %s", e)
            self.state.reconnect_attempts = 0
            self._awaiting_first_download = False
            self._schedule_connect(0)
            return

        await self._apply_backoff(update.reason)

    async def on_qr(self, url: str) -> None:
        logger.info("QR code received, waiting for scan")
        await self.gateway.send("qr", {"url": url})

    async def on_bulk_history(self, delivery: HistoryDelivery) -> None:
        try:
            report = await self.reconciler.reconcile(delivery)
            await self.gateway.send("history_sync_progress", {
                "syncSession": report.sync_session,
                "chats": report.conversations,
                "newMessages": report.new_messages,
                "failedMessages": report.failed_messages,
                "isFinal": delivery.is_final_batch,
            })

            if delivery.is_final_batch and self._awaiting_first_download:
                self._awaiting_first_download = False
                await self.repo.set_setting(FIRST_LOGIN_SETTING, True)
                await self.gateway.send("download_complete", {
                    "message": "Chat history downloaded",
                    "chats": await self.repo.count_conversations(),
                })
        except Exception as e:
            logger.error("Error processing history delivery: %s", e, exc_info=True)

    async def on_live_messages(self, messages: list[dict], conversation_hint: Optional[str] = None) -> None:
        await self.live.handle_messages(messages, conversation_hint)

    async def on_presence(self, conversation_id: str, state: str) -> None:
        try:
            await self.live.handle_presence(conversation_id, state)
        except Exception as e:
            logger.error("Error handling presence update: %s", e)

    # Consumer

    async def attach_consumer(self, consumer: Consumer) -> None:
        self.gateway.attach(consumer)
        logger.info("Consumer attached")
        if self.state.upstream_connected:
            await self.gateway.send("upstream_ready", {})

    def detach_consumer(self, consumer: Consumer) -> None:
        self.gateway.detach(consumer)
        logger.info("Consumer detached")
