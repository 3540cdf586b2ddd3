"""Conversation-list and message-list projections.

The conversation list is served from a two-tier cache. The in-memory payload
is authoritative only after a completed reconciliation pass published it and
until the next store write marks it stale; otherwise the store is queried.
Reads made while a batch of writes is in flight are never published.
"""
import asyncio
import logging
from contextlib import contextmanager
from typing import Callable, Optional

from ..database.repository import Contact, Conversation, Message, Repository
from ..gateway.outbound import OutboundGateway
from ..state import SessionState
from .events import UpstreamSession
from .normalize import Provenance, decode_raw_message, format_last_message, now_ms
from .writer import MessageWriter


logger = logging.getLogger(__name__)


def project_conversation(conversation: Conversation) -> dict:
    return {
        "jid": conversation.jid,
        "name": conversation.display_name,
        "lastMessage": format_last_message(
            conversation.last_message_content, conversation.last_message_type
        ),
        "timestamp": conversation.last_message_timestamp,
        "lastMessageType": conversation.last_message_type or "text",
        "lastMessageFrom": conversation.last_message_from,
        "unreadCount": conversation.unread_count,
        "avatarBase64": conversation.contact_avatar_base64,
        "chatAvatarBase64": conversation.avatar_base64,
        "phoneNumber": conversation.contact_phone_number,
        "syncStatus": conversation.sync_status,
        "historyComplete": conversation.history_complete,
    }


def project_message(message: Message, contact: Optional[Contact]) -> dict:
    if message.from_me:
        sender_name = "You"
        sender_avatar = None
    else:
        sender_name = message.sender_name or (contact.name if contact else None) or message.conversation_id
        sender_avatar = contact.avatar_base64 if contact else None

    return {
        "id": message.id,
        "content": message.content,
        "timestamp": message.timestamp,
        "type": message.message_type,
        "from": message.last_message_from,
        "fromMe": message.from_me,
        "status": message.status,
        "senderName": sender_name,
        "senderAvatar": sender_avatar,
        "provenance": message.provenance,
    }


class ViewProjector:

    def __init__(
        self,
        repository: Repository,
        state: SessionState,
        gateway: OutboundGateway,
        writer: MessageWriter,
        upstream: Optional[UpstreamSession] = None,
        chat_list_limit: int = 50,
        backfill_timeout: float = 10.0,
        clock: Callable[[], int] = now_ms,
    ):
        self.repo = repository
        self.state = state
        self.gateway = gateway
        self.writer = writer
        self.upstream = upstream
        self.chat_list_limit = chat_list_limit
        self.backfill_timeout = backfill_timeout
        self.clock = clock
        self._cached: Optional[dict] = None
        self._authoritative = False
        self._writes_in_progress = 0

    @property
    def cached_payload(self) -> Optional[dict]:
        return self._cached if self._authoritative else None

    def publish(self, payload: dict) -> None:
        self._cached = payload
        self._authoritative = True

    def mark_stale(self) -> None:
        self._authoritative = False

    def clear(self) -> None:
        self._cached = None
        self._authoritative = False

    @contextmanager
    def writing(self):
        """Keep the cache stale while a batch of store writes is in flight."""
        self._writes_in_progress += 1
        self.mark_stale()
        try:
            yield
        finally:
            self._writes_in_progress -= 1
            self.mark_stale()

    async def materialize(self) -> dict:
        conversations = await self.repo.list_conversations(self.chat_list_limit)
        return {"chats": [project_conversation(c) for c in conversations]}

    async def publish_from_store(self) -> dict:
        payload = await self.materialize()
        self.publish(payload)
        return payload

    async def get_conversation_list(self) -> Optional[dict]:
        cached = self.cached_payload
        if cached is not None:
            logger.info("Serving cached conversation list")
            return cached

        payload = await self.materialize()
        if payload["chats"]:
            if not self._writes_in_progress:
                self.publish(payload)
            logger.info("Serving conversation list from database (%d chats)", len(payload["chats"]))
            return payload

        logger.info("No conversations stored yet, consumer will be sent the list after the next sync")
        self.state.consumer_waiting_for_chats = True
        return None

    async def flush_pending(self) -> bool:
        payload = self.cached_payload
        if not self.state.consumer_waiting_for_chats or payload is None:
            return False
        sent = await self.gateway.send("initial_chats", payload)
        if sent:
            self.state.consumer_waiting_for_chats = False
            logger.info("Flushed conversation list to waiting consumer")
        return sent

    async def refresh_from_store(self, event_type: str = "chats_updated") -> dict:
        payload = await self.publish_from_store()
        if payload["chats"]:
            await self.gateway.send(event_type, payload)
        await self.flush_pending()
        return payload

    async def get_message_list(self, jid: str, limit: int = 50, offset: int = 0) -> list[dict]:
        messages = await self.repo.get_messages(jid, limit, offset)

        if not messages and offset == 0 and limit > 0 and self.upstream is not None and self.upstream.is_connected:
            saved = await self._backfill(jid, limit)
            if saved:
                messages = await self.repo.get_messages(jid, limit, offset)

        contact = await self.repo.get_contact(jid)
        return [project_message(m, contact) for m in messages]

    async def _backfill(self, jid: str, count: int) -> int:
        try:
            raw_messages = await asyncio.wait_for(
                self.upstream.request_backfill(jid, count),
                timeout=self.backfill_timeout,
            )
        except asyncio.TimeoutError:
            logger.warning("Backfill for %s timed out after %.1fs, using database only", jid, self.backfill_timeout)
            return 0
        except Exception as e:
            logger.warning("Backfill for %s failed, using database only: %s", jid, e)
            return 0

        processed_at = self.clock()
        decoded = [
            m for m in (decode_raw_message(raw, jid, processed_at) for raw in raw_messages)
            if m is not None
        ]
        if not decoded:
            return 0

        await self.repo.upsert_conversation(jid)
        result = await self.writer.persist(
            decoded, Provenance.PROGRESSIVE_SYNC, f"backfill-{processed_at}"
        )
        if result.saved:
            latest = max(result.saved, key=lambda m: m.timestamp)
            await self.repo.update_conversation_summary(jid, latest)
            self.mark_stale()

        logger.info(
            "Backfilled %d messages for %s (%d duplicates, %d failed)",
            len(result.saved), jid, result.duplicates, result.failed
        )
        return len(result.saved)
