"""Walks recent Telegram dialogs and turns them into bulk-history deliveries."""
import logging
from typing import Any, AsyncIterator, Optional

from telethon import TelegramClient as TelethonClient
from telethon.errors import AuthKeyUnregisteredError, SessionRevokedError
from telethon.tl.types import Channel, User
from telethon.tl.types import Message as TelethonMessage
from telethon.utils import get_display_name

from ..sync.events import HistoryDelivery, RawConversation


logger = logging.getLogger(__name__)


def message_content(msg: TelethonMessage) -> dict:
    """Map a telethon message onto the content variants the decoder understands."""
    text = msg.message or ""

    if msg.poll:
        question = msg.poll.poll.question
        return {"pollCreationMessage": {"name": getattr(question, "text", question)}}
    if msg.photo:
        return {"imageMessage": {"caption": text}}
    if msg.sticker:
        return {"stickerMessage": {}}
    if msg.gif or msg.video:
        return {"videoMessage": {"caption": text}}
    if msg.voice or msg.audio:
        return {"audioMessage": {}}
    if msg.document:
        file_name = msg.file.name if msg.file else None
        return {"documentMessage": {"title": text, "fileName": file_name}}
    if msg.geo:
        return {"locationMessage": {}}
    if msg.contact:
        name = f"{msg.contact.first_name or ''} {msg.contact.last_name or ''}".strip()
        return {"contactMessage": {"displayName": name}}
    if text:
        return {"conversation": text}
    return {}


def to_raw_message(msg: TelethonMessage, conversation_id: str, sender_name: Optional[str] = None) -> dict:
    if sender_name is None and msg.sender is not None:
        sender_name = get_display_name(msg.sender) or None

    return {
        "key": {
            "id": str(msg.id),
            "remoteJid": conversation_id,
            "fromMe": bool(msg.out),
        },
        "message": message_content(msg),
        "messageTimestamp": int(msg.date.timestamp()),
        "pushName": sender_name,
    }


def is_chat_dialog(entity: Any) -> bool:
    if isinstance(entity, User):
        return not entity.bot
    if isinstance(entity, Channel):
        return not getattr(entity, "broadcast", False)
    return True


class HistoryFetcher:

    def __init__(
        self,
        client: TelethonClient,
        dialog_limit: int = 100,
        messages_per_chat: int = 50,
        batch_size: int = 20,
    ):
        self.client = client
        self.dialog_limit = dialog_limit
        self.messages_per_chat = messages_per_chat
        self.batch_size = max(1, batch_size)

    async def fetch_recent(self, entity: Any, conversation_id: str, limit: int) -> list[dict]:
        messages = []
        async for msg in self.client.iter_messages(entity, limit=limit):
            if not isinstance(msg, TelethonMessage):
                continue
            messages.append(to_raw_message(msg, conversation_id))
        return messages

    async def deliveries(self) -> AsyncIterator[HistoryDelivery]:
        dialogs = await self.client.get_dialogs(limit=self.dialog_limit)
        dialogs = [d for d in dialogs if is_chat_dialog(d.entity)]
        logger.info("Fetching history for %d dialogs", len(dialogs))

        if not dialogs:
            yield HistoryDelivery(conversations=[], is_final_batch=True)
            return

        for start in range(0, len(dialogs), self.batch_size):
            batch = dialogs[start:start + self.batch_size]
            conversations = []
            for dialog in batch:
                conversation_id = str(dialog.id)
                try:
                    messages = await self.fetch_recent(dialog.entity, conversation_id, self.messages_per_chat)
                except (AuthKeyUnregisteredError, SessionRevokedError):
                    raise
                except Exception as e:
                    logger.warning("Could not fetch history for %s: %s", conversation_id, e)
                    messages = []
                conversations.append(RawConversation(
                    id=conversation_id,
                    name=dialog.name,
                    messages=messages,
                    unread_count=dialog.unread_count,
                ))

            yield HistoryDelivery(
                conversations=conversations,
                is_final_batch=start + self.batch_size >= len(dialogs),
            )
