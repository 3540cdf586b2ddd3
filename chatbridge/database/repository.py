import json
import logging
import aiosqlite
from pathlib import Path
from typing import Any, Optional, Union
from dataclasses import dataclass

from .models import SCHEMA, PRAGMAS
from ..errors import StoreError


logger = logging.getLogger(__name__)


@dataclass
class Contact:
    jid: str
    name: Optional[str]
    phone_number: Optional[str] = None
    avatar_base64: Optional[str] = None
    is_blocked: bool = False


@dataclass
class Message:
    id: str
    conversation_id: str
    from_me: bool
    content: str
    message_type: str
    timestamp: int
    status: str
    provenance: str
    sender_name: Optional[str] = None
    sync_session: Optional[str] = None

    @property
    def last_message_from(self) -> str:
        return "me" if self.from_me else self.conversation_id


@dataclass
class SyncCursor:
    jid: str
    history_baseline_timestamp: Optional[int]
    last_sync_timestamp: Optional[int]
    sync_status: str
    history_complete: bool

    @property
    def is_new(self) -> bool:
        return self.history_baseline_timestamp is None


@dataclass
class Conversation:
    jid: str
    name: Optional[str]
    last_message_id: Optional[str] = None
    last_message_content: Optional[str] = None
    last_message_type: Optional[str] = None
    last_message_from: Optional[str] = None
    last_message_timestamp: Optional[int] = None
    unread_count: int = 0
    avatar_base64: Optional[str] = None
    is_archived: bool = False
    history_baseline_timestamp: Optional[int] = None
    last_sync_timestamp: Optional[int] = None
    sync_status: str = "unseen"
    history_complete: bool = False
    contact_name: Optional[str] = None
    contact_avatar_base64: Optional[str] = None
    contact_phone_number: Optional[str] = None

    @property
    def display_name(self) -> str:
        return self.contact_name or self.name or self.jid


_CONVERSATION_SELECT = """
    SELECT c.*,
           cont.name AS contact_name,
           cont.avatar_base64 AS contact_avatar_base64,
           cont.phone_number AS contact_phone_number
    FROM chats c
    LEFT JOIN contacts cont ON c.jid = cont.jid
"""


def _conversation_from_row(row: aiosqlite.Row) -> Conversation:
    return Conversation(
        jid=row["jid"],
        name=row["name"],
        last_message_id=row["last_message_id"],
        last_message_content=row["last_message_content"],
        last_message_type=row["last_message_type"],
        last_message_from=row["last_message_from"],
        last_message_timestamp=row["last_message_timestamp"],
        unread_count=row["unread_count"] or 0,
        avatar_base64=row["avatar_base64"],
        is_archived=bool(row["is_archived"]),
        history_baseline_timestamp=row["history_baseline_timestamp"],
        last_sync_timestamp=row["last_sync_timestamp"],
        sync_status=row["sync_status"] or "unseen",
        history_complete=bool(row["history_complete"]),
        contact_name=row["contact_name"],
        contact_avatar_base64=row["contact_avatar_base64"],
        contact_phone_number=row["contact_phone_number"],
    )


def _message_from_row(row: aiosqlite.Row) -> Message:
    return Message(
        id=row["id"],
        conversation_id=row["chat_jid"],
        from_me=bool(row["from_me"]),
        content=row["content"] or "",
        message_type=row["message_type"] or "text",
        timestamp=row["timestamp"],
        status=row["status"],
        provenance=row["provenance"],
        sender_name=row["sender_name"],
        sync_session=row["sync_session"],
    )


class Repository:

    def __init__(self, db_path: Union[Path, str]):
        self.db_path = db_path
        self._conn: Optional[aiosqlite.Connection] = None

    async def connect(self) -> None:
        try:
            self._conn = await aiosqlite.connect(self.db_path)
            self._conn.row_factory = aiosqlite.Row
            await self._conn.executescript(PRAGMAS)
            await self._conn.executescript(SCHEMA)
            await self._conn.commit()
        except aiosqlite.Error as e:
            raise StoreError("connect", e) from e
        logger.info("Database ready at %s", self.db_path)

    async def close(self) -> None:
        if self._conn:
            await self._conn.close()
            self._conn = None

    async def __aenter__(self) -> "Repository":
        await self.connect()
        return self

    async def __aexit__(self, *args) -> None:
        await self.close()

    async def ping(self) -> bool:
        cursor = await self._conn.execute("SELECT 1")
        row = await cursor.fetchone()
        return row is not None

    # Conversations

    async def upsert_conversation(
        self,
        jid: str,
        name: Optional[str] = None,
        unread_count: Optional[int] = None,
    ) -> None:
        await self._conn.execute(
            """
            INSERT INTO chats (jid, name, unread_count)
            VALUES (?, ?, COALESCE(?, 0))
            ON CONFLICT(jid) DO UPDATE SET
                name = COALESCE(excluded.name, chats.name),
                unread_count = COALESCE(?, chats.unread_count),
                updated_at = strftime('%s', 'now')
            """,
            (jid, name, unread_count, unread_count)
        )
        await self._conn.commit()

    async def update_conversation_summary(self, jid: str, message: Message) -> bool:
        """Point the conversation's preview at ``message`` unless a newer one is stored."""
        cursor = await self._conn.execute(
            """
            UPDATE chats SET
                last_message_id = ?,
                last_message_content = ?,
                last_message_type = ?,
                last_message_from = ?,
                last_message_timestamp = ?,
                updated_at = strftime('%s', 'now')
            WHERE jid = ?
              AND (last_message_timestamp IS NULL OR last_message_timestamp <= ?)
            """,
            (
                message.id,
                message.content,
                message.message_type,
                message.last_message_from,
                message.timestamp,
                jid,
                message.timestamp,
            )
        )
        await self._conn.commit()
        return cursor.rowcount > 0

    async def update_conversation_avatar(self, jid: str, avatar_base64: str) -> bool:
        cursor = await self._conn.execute(
            "UPDATE chats SET avatar_base64 = ?, updated_at = strftime('%s', 'now') WHERE jid = ?",
            (avatar_base64, jid)
        )
        await self._conn.commit()
        return cursor.rowcount > 0

    async def get_conversation(self, jid: str) -> Optional[Conversation]:
        cursor = await self._conn.execute(_CONVERSATION_SELECT + " WHERE c.jid = ?", (jid,))
        row = await cursor.fetchone()
        return _conversation_from_row(row) if row else None

    async def list_conversations(self, limit: int = 50) -> list[Conversation]:
        cursor = await self._conn.execute(
            _CONVERSATION_SELECT
            + """
            WHERE c.is_archived = FALSE
            ORDER BY c.last_message_timestamp IS NULL, c.last_message_timestamp DESC
            LIMIT ?
            """,
            (limit,)
        )
        rows = await cursor.fetchall()
        return [_conversation_from_row(row) for row in rows]

    async def count_conversations(self) -> int:
        cursor = await self._conn.execute("SELECT COUNT(*) AS cnt FROM chats")
        row = await cursor.fetchone()
        return row["cnt"] if row else 0

    # Sync cursors

    async def get_sync_cursor(self, jid: str) -> Optional[SyncCursor]:
        cursor = await self._conn.execute(
            """
            SELECT jid, history_baseline_timestamp, last_sync_timestamp, sync_status, history_complete
            FROM chats WHERE jid = ?
            """,
            (jid,)
        )
        row = await cursor.fetchone()
        if row:
            return SyncCursor(
                jid=row["jid"],
                history_baseline_timestamp=row["history_baseline_timestamp"],
                last_sync_timestamp=row["last_sync_timestamp"],
                sync_status=row["sync_status"] or "unseen",
                history_complete=bool(row["history_complete"]),
            )
        return None

    async def set_history_baseline(self, jid: str, timestamp: int) -> bool:
        """Record the baseline cursor; a baseline that is already set is never moved."""
        cursor = await self._conn.execute(
            """
            UPDATE chats SET history_baseline_timestamp = ?, updated_at = strftime('%s', 'now')
            WHERE jid = ? AND history_baseline_timestamp IS NULL
            """,
            (timestamp, jid)
        )
        await self._conn.commit()
        return cursor.rowcount > 0

    async def advance_sync_cursor(
        self,
        jid: str,
        timestamp: int,
        sync_status: str,
        history_complete: Optional[bool] = None,
    ) -> None:
        # MAX() keeps the cursor monotonic and never below the baseline.
        await self._conn.execute(
            """
            UPDATE chats SET
                last_sync_timestamp = MAX(
                    COALESCE(last_sync_timestamp, 0),
                    ?,
                    COALESCE(history_baseline_timestamp, 0)
                ),
                sync_status = ?,
                history_complete = COALESCE(?, history_complete),
                updated_at = strftime('%s', 'now')
            WHERE jid = ?
            """,
            (timestamp, sync_status, history_complete, jid)
        )
        await self._conn.commit()

    # Messages

    async def save_message(self, message: Message) -> bool:
        """Insert ``message``; returns False when (conversation, id) is already stored."""
        cursor = await self._conn.execute(
            """
            INSERT INTO messages (
                id, chat_jid, from_me, message_type, content, timestamp,
                status, sender_name, provenance, sync_session
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(chat_jid, id) DO NOTHING
            """,
            (
                message.id,
                message.conversation_id,
                message.from_me,
                message.message_type,
                message.content,
                message.timestamp,
                message.status,
                message.sender_name,
                message.provenance,
                message.sync_session,
            )
        )
        await self._conn.commit()
        return cursor.rowcount == 1

    async def get_message(self, jid: str, message_id: str) -> Optional[Message]:
        cursor = await self._conn.execute(
            "SELECT * FROM messages WHERE chat_jid = ? AND id = ?",
            (jid, message_id)
        )
        row = await cursor.fetchone()
        return _message_from_row(row) if row else None

    async def get_messages(self, jid: str, limit: int = 50, offset: int = 0) -> list[Message]:
        """Page through a conversation newest-first, returned in chronological order."""
        cursor = await self._conn.execute(
            """
            SELECT * FROM messages
            WHERE chat_jid = ?
            ORDER BY timestamp DESC, id DESC
            LIMIT ? OFFSET ?
            """,
            (jid, limit, offset)
        )
        rows = await cursor.fetchall()
        messages = [_message_from_row(row) for row in rows]
        messages.reverse()
        return messages

    async def get_message_count(self, jid: str) -> int:
        cursor = await self._conn.execute(
            "SELECT COUNT(*) AS cnt FROM messages WHERE chat_jid = ?",
            (jid,)
        )
        row = await cursor.fetchone()
        return row["cnt"] if row else 0

    # Contacts

    async def upsert_contact(self, contact: Contact) -> None:
        await self._conn.execute(
            """
            INSERT INTO contacts (jid, name, phone_number, avatar_base64, is_blocked, updated_at)
            VALUES (?, ?, ?, ?, ?, strftime('%s', 'now'))
            ON CONFLICT(jid) DO UPDATE SET
                name = COALESCE(excluded.name, contacts.name),
                phone_number = COALESCE(excluded.phone_number, contacts.phone_number),
                avatar_base64 = COALESCE(excluded.avatar_base64, contacts.avatar_base64),
                updated_at = strftime('%s', 'now')
            """,
            (contact.jid, contact.name, contact.phone_number, contact.avatar_base64, contact.is_blocked)
        )
        await self._conn.commit()

    async def get_contact(self, jid: str) -> Optional[Contact]:
        cursor = await self._conn.execute(
            "SELECT jid, name, phone_number, avatar_base64, is_blocked FROM contacts WHERE jid = ?",
            (jid,)
        )
        row = await cursor.fetchone()
        if row:
            return Contact(
                jid=row["jid"],
                name=row["name"],
                phone_number=row["phone_number"],
                avatar_base64=row["avatar_base64"],
                is_blocked=bool(row["is_blocked"])
            )
        return None

    # Settings

    async def set_setting(self, key: str, value: Any) -> None:
        await self._conn.execute(
            """
            INSERT INTO settings (key, value, updated_at)
            VALUES (?, ?, strftime('%s', 'now'))
            ON CONFLICT(key) DO UPDATE SET
                value = excluded.value,
                updated_at = excluded.updated_at
            """,
            (key, json.dumps(value))
        )
        await self._conn.commit()

    async def get_setting(self, key: str, default: Any = None) -> Any:
        cursor = await self._conn.execute("SELECT value FROM settings WHERE key = ?", (key,))
        row = await cursor.fetchone()
        return json.loads(row["value"]) if row else default

    # Retention

    async def cleanup(self, older_than: int) -> int:
        """Delete messages with a timestamp before ``older_than`` (epoch ms) and vacuum."""
        cursor = await self._conn.execute("DELETE FROM messages WHERE timestamp < ?", (older_than,))
        await self._conn.commit()
        deleted = cursor.rowcount
        await self._conn.execute("VACUUM")
        if deleted > 0:
            logger.info("Cleaned up %d old messages", deleted)
        return deleted
