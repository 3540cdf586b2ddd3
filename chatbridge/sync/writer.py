import logging
from dataclasses import dataclass, field
from typing import Iterable, Optional

import aiosqlite

from ..database.repository import Message, Repository
from .normalize import NormalizedMessage, Provenance, to_stored_message


logger = logging.getLogger(__name__)


@dataclass
class WriteResult:
    saved: list[Message] = field(default_factory=list)
    duplicates: int = 0
    failed: int = 0


class MessageWriter:
    """Idempotent message persistence with per-message retry."""

    def __init__(self, repository: Repository, retries: int = 2):
        self.repo = repository
        self.retries = retries

    async def save(self, message: Message) -> bool:
        attempt = 0
        while True:
            try:
                return await self.repo.save_message(message)
            except aiosqlite.Error as e:
                if attempt >= self.retries:
                    raise
                attempt += 1
                logger.warning(
                    "Retrying write of message %s in %s (%d/%d): %s",
                    message.id, message.conversation_id, attempt, self.retries, e
                )

    async def persist(
        self,
        messages: Iterable[NormalizedMessage],
        provenance: Provenance,
        sync_session: Optional[str] = None,
    ) -> WriteResult:
        result = WriteResult()

        for msg in messages:
            record = to_stored_message(msg, provenance, sync_session)
            try:
                if await self.save(record):
                    result.saved.append(record)
                else:
                    result.duplicates += 1
            except Exception as e:
                result.failed += 1
                logger.error(
                    "Failed to save message %s in %s [%s]: %s",
                    record.id, record.conversation_id, sync_session, e
                )

        return result
