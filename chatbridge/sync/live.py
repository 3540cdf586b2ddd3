import logging
from typing import Any, Callable, Optional

from ..database.repository import Contact, Message, Repository
from ..gateway.outbound import OutboundGateway
from .normalize import Provenance, decode_raw_message, now_ms, to_stored_message
from .projector import ViewProjector
from .writer import MessageWriter


logger = logging.getLogger(__name__)

PRESENCE_EVENTS = {
    "composing": "typing_start",
    "paused": "typing_stop",
}


class LiveEventProcessor:

    def __init__(
        self,
        repository: Repository,
        projector: ViewProjector,
        gateway: OutboundGateway,
        writer: MessageWriter,
        clock: Callable[[], int] = now_ms,
    ):
        self.repo = repository
        self.projector = projector
        self.gateway = gateway
        self.writer = writer
        self.clock = clock

    async def handle_messages(self, raw_messages: list[dict], conversation_hint: Optional[str] = None) -> int:
        """Persist and announce live messages; returns how many were new."""
        announced = 0
        for raw in raw_messages:
            try:
                if await self._handle_message(raw, conversation_hint):
                    announced += 1
            except Exception as e:
                logger.error("Error handling live message: %s", e, exc_info=True)
        return announced

    async def _handle_message(self, raw: dict, conversation_hint: Optional[str]) -> bool:
        message = decode_raw_message(raw, conversation_hint, self.clock())
        if message is None:
            logger.debug("Skipping live message without a valid key")
            return False

        jid = message.conversation_id
        await self.repo.upsert_conversation(jid)

        if not message.from_me and message.sender_name:
            existing = await self.repo.get_contact(jid)
            if existing is None or not existing.name:
                await self.repo.upsert_contact(Contact(jid=jid, name=message.sender_name))

        record = to_stored_message(message, Provenance.REAL_TIME, Provenance.REAL_TIME.value)
        if not await self.writer.save(record):
            logger.debug("Live message %s in %s already stored", record.id, jid)
            return False

        await self.repo.update_conversation_summary(jid, record)
        self.projector.mark_stale()

        contact = await self.repo.get_contact(jid)
        contact_name = (contact.name if contact else None) or message.sender_name
        await self.gateway.send("newMessage", {
            "id": record.id,
            "content": record.content,
            "timestamp": record.timestamp,
            "type": record.message_type,
            "from": record.last_message_from,
            "fromMe": record.from_me,
            "chatJid": jid,
            "contactName": contact_name,
            "avatarBase64": contact.avatar_base64 if contact else None,
            "senderName": message.sender_name or contact_name,
        })

        logger.info("New message received in %s (%d chars)", jid, len(record.content))
        return True

    async def handle_presence(self, conversation_id: str, state: Any) -> Optional[str]:
        state_name = getattr(state, "value", state)
        event_type = PRESENCE_EVENTS.get(state_name)
        if event_type is None:
            return None
        await self.gateway.send(event_type, {"from": conversation_id})
        return event_type

    async def record_outgoing(
        self,
        to: str,
        message_id: str,
        text: str,
        timestamp: int,
        status: str = "sent",
    ) -> Message:
        record = Message(
            id=message_id,
            conversation_id=to,
            from_me=True,
            content=text,
            message_type="text",
            timestamp=timestamp,
            status=status,
            provenance=Provenance.REAL_TIME.value,
            sync_session=Provenance.REAL_TIME.value,
        )
        await self.repo.upsert_conversation(to)
        await self.writer.save(record)
        if status == "sent":
            await self.repo.update_conversation_summary(to, record)
            self.projector.mark_stale()
        return record
