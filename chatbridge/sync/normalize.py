"""Decoding of raw upstream messages into one normalized form.

Upstream messages arrive in two shapes:

* FLAT: ``{"key": {...}, "message": {<content>}, "messageTimestamp": ..., "pushName": ...}``
* HISTORY_WRAPPED: the same record nested one level deeper under ``"message"``,
  as delivered inside bulk-history batches.

The shape is classified once, then exactly one decoder runs. Everything past
this module works on ``NormalizedMessage`` only.
"""
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from ..database.repository import Message


class RawShape(Enum):
    FLAT = "flat"
    HISTORY_WRAPPED = "history_wrapped"


class MessageKind(str, Enum):
    TEXT = "text"
    IMAGE = "image"
    VIDEO = "video"
    AUDIO = "audio"
    DOCUMENT = "document"
    STICKER = "sticker"
    LOCATION = "location"
    CONTACT = "contact"
    REACTION = "reaction"
    POLL = "poll"
    UNKNOWN = "unknown"


class Provenance(str, Enum):
    INITIAL_SYNC = "initial-sync"
    PROGRESSIVE_SYNC = "progressive-sync"
    REAL_TIME = "real-time"


# (content field, kind, text fields tried in order, placeholder)
_CONTENT_VARIANTS = (
    ("conversation", MessageKind.TEXT, (), ""),
    ("extendedTextMessage", MessageKind.TEXT, ("text",), ""),
    ("imageMessage", MessageKind.IMAGE, ("caption",), "[Image]"),
    ("videoMessage", MessageKind.VIDEO, ("caption",), "[Video]"),
    ("audioMessage", MessageKind.AUDIO, (), "[Audio]"),
    ("documentMessage", MessageKind.DOCUMENT, ("title", "fileName"), "[Document]"),
    ("stickerMessage", MessageKind.STICKER, (), "[Sticker]"),
    ("locationMessage", MessageKind.LOCATION, ("name",), "[Location]"),
    ("liveLocationMessage", MessageKind.LOCATION, (), "[Location]"),
    ("contactMessage", MessageKind.CONTACT, ("displayName",), "[Contact]"),
    ("contactsArrayMessage", MessageKind.CONTACT, ("displayName",), "[Contact]"),
    ("reactionMessage", MessageKind.REACTION, (), "[Reaction]"),
    ("pollCreationMessage", MessageKind.POLL, ("name",), "[Poll]"),
    ("pollUpdateMessage", MessageKind.POLL, (), "[Poll]"),
)

UNSUPPORTED_PLACEHOLDER = "[Unsupported Message]"
EMPTY_CHAT_PREVIEW = "No messages yet"

_UINT32_MASK = 0xFFFFFFFF


@dataclass(frozen=True)
class NormalizedMessage:
    id: str
    conversation_id: str
    from_me: bool
    content: str
    kind: MessageKind
    timestamp: int
    sender_name: Optional[str] = None

    @property
    def status(self) -> str:
        return "sent" if self.from_me else "received"

    @property
    def last_message_from(self) -> str:
        return "me" if self.from_me else self.conversation_id


def now_ms() -> int:
    return int(time.time() * 1000)


def normalize_timestamp(value: Any, default: Optional[int] = None) -> int:
    """Convert an upstream timestamp to epoch milliseconds.

    Accepted inputs are epoch seconds (int or float), numeric strings,
    split 64-bit words (``{"low": ..., "high": ...}``, each read as unsigned
    32-bit) and ``datetime`` values (naive ones are taken as UTC). Anything
    else yields ``default``, or the current time when no default is given.
    """
    fallback = default if default is not None else now_ms()

    if value is None or isinstance(value, bool):
        return fallback

    if isinstance(value, dict):
        if "low" not in value:
            return fallback
        try:
            low = int(value["low"]) & _UINT32_MASK
            high = int(value.get("high") or 0) & _UINT32_MASK
        except (TypeError, ValueError):
            return fallback
        return ((high << 32) + low) * 1000

    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return int(round(value.timestamp() * 1000))

    if isinstance(value, int):
        return value * 1000

    if isinstance(value, float):
        return int(round(value * 1000))

    if isinstance(value, str):
        text = value.strip()
        if not text:
            return fallback
        try:
            return int(text) * 1000
        except ValueError:
            pass
        try:
            return int(round(float(text) * 1000))
        except ValueError:
            return fallback

    return fallback


def _content_variant(content: Any):
    if not isinstance(content, dict):
        return None
    for variant in _CONTENT_VARIANTS:
        if content.get(variant[0]) is not None:
            return variant
    return None


def message_kind(content: Any) -> MessageKind:
    variant = _content_variant(content)
    return variant[1] if variant else MessageKind.UNKNOWN


def display_text(content: Any) -> str:
    variant = _content_variant(content)
    if variant is None:
        return UNSUPPORTED_PLACEHOLDER

    field, _, text_fields, placeholder = variant
    body = content[field]
    if isinstance(body, str):
        return body
    if isinstance(body, dict):
        for name in text_fields:
            text = body.get(name)
            if text:
                return str(text)
    return placeholder


def format_last_message(content: Optional[str], kind: Optional[str]) -> Optional[str]:
    """Conversation-list preview: full text for text messages, ``None`` otherwise."""
    if (kind or MessageKind.TEXT.value) == MessageKind.TEXT.value:
        return content or EMPTY_CHAT_PREVIEW
    return None


def classify_shape(raw: Any) -> Optional[RawShape]:
    if not isinstance(raw, dict):
        return None
    inner = raw.get("message")
    if isinstance(inner, dict) and ("message" in inner or "key" in inner):
        return RawShape.HISTORY_WRAPPED
    return RawShape.FLAT


def _build(
    key: Any,
    content: Any,
    timestamp: Any,
    sender_name: Optional[str],
    conversation_id: Optional[str],
    default_timestamp: Optional[int],
) -> Optional[NormalizedMessage]:
    if not isinstance(key, dict) or not key.get("id"):
        return None

    chat_id = conversation_id or key.get("remoteJid")
    if not chat_id:
        return None

    return NormalizedMessage(
        id=str(key["id"]),
        conversation_id=str(chat_id),
        from_me=bool(key.get("fromMe")),
        content=display_text(content),
        kind=message_kind(content),
        timestamp=normalize_timestamp(timestamp, default_timestamp),
        sender_name=sender_name or None,
    )


def _decode_flat(raw: dict, conversation_id, default_timestamp):
    return _build(
        raw.get("key"),
        raw.get("message"),
        raw.get("messageTimestamp"),
        raw.get("pushName"),
        conversation_id,
        default_timestamp,
    )


def _decode_history_wrapped(raw: dict, conversation_id, default_timestamp):
    inner = raw["message"]
    return _build(
        inner.get("key") or raw.get("key"),
        inner.get("message"),
        inner.get("messageTimestamp") or raw.get("messageTimestamp"),
        inner.get("pushName") or raw.get("pushName"),
        conversation_id,
        default_timestamp,
    )


_DECODERS = {
    RawShape.FLAT: _decode_flat,
    RawShape.HISTORY_WRAPPED: _decode_history_wrapped,
}


def decode_raw_message(
    raw: Any,
    conversation_id: Optional[str] = None,
    default_timestamp: Optional[int] = None,
) -> Optional[NormalizedMessage]:
    """Decode one raw upstream message; ``None`` when it has no usable key.

    ``conversation_id`` overrides the key's ``remoteJid`` (bulk deliveries
    carry the conversation id beside the messages).
    """
    shape = classify_shape(raw)
    if shape is None:
        return None
    return _DECODERS[shape](raw, conversation_id, default_timestamp)


def to_stored_message(
    message: NormalizedMessage,
    provenance: Provenance,
    sync_session: Optional[str] = None,
) -> Message:
    return Message(
        id=message.id,
        conversation_id=message.conversation_id,
        from_me=message.from_me,
        content=message.content,
        message_type=message.kind.value,
        timestamp=message.timestamp,
        status=message.status,
        provenance=provenance.value,
        sender_name=message.sender_name,
        sync_session=sync_session,
    )
