"""Contract between the upstream chat session and the sync engine."""
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional, Protocol


class ConnectionStatus(str, Enum):
    CONNECTING = "connecting"
    OPEN = "open"
    CLOSED = "closed"


class PresenceState(str, Enum):
    COMPOSING = "composing"
    PAUSED = "paused"
    AVAILABLE = "available"
    UNAVAILABLE = "unavailable"


@dataclass
class ConnectionUpdate:
    status: ConnectionStatus
    reason: Optional[str] = None
    logged_out: bool = False


@dataclass
class RawConversation:
    id: str
    name: Optional[str] = None
    messages: list[dict] = field(default_factory=list)
    unread_count: int = 0


@dataclass
class HistoryDelivery:
    conversations: list[RawConversation]
    is_final_batch: bool = False


@dataclass
class SentMessage:
    id: str
    timestamp: int


@dataclass
class ContactProfile:
    jid: str
    name: Optional[str] = None
    phone_number: Optional[str] = None
    avatar: Optional[bytes] = None


class UpstreamListener(Protocol):

    async def on_connection_update(self, update: ConnectionUpdate) -> None: ...

    async def on_qr(self, url: str) -> None: ...

    async def on_bulk_history(self, delivery: HistoryDelivery) -> None: ...

    async def on_live_messages(self, messages: list[dict], conversation_hint: Optional[str] = None) -> None: ...

    async def on_presence(self, conversation_id: str, state: str) -> None: ...


class UpstreamSession(ABC):
    """A persistent chat-protocol session.

    Implementations push events into the registered listener and expose the
    few request/response operations the bridge needs.
    """

    def __init__(self):
        self.listener: Optional[UpstreamListener] = None

    def set_listener(self, listener: UpstreamListener) -> None:
        self.listener = listener

    @property
    @abstractmethod
    def is_connected(self) -> bool: ...

    @abstractmethod
    async def connect(self) -> None: ...

    @abstractmethod
    async def disconnect(self) -> None: ...

    @abstractmethod
    async def clear_credentials(self) -> None: ...

    @abstractmethod
    async def request_backfill(self, conversation_id: str, count: int) -> list[dict[str, Any]]: ...

    @abstractmethod
    async def send_text(self, to: str, text: str) -> SentMessage: ...

    @abstractmethod
    async def send_presence(self, to: str, state: PresenceState) -> None: ...

    @abstractmethod
    async def fetch_contact(self, conversation_id: str) -> Optional[ContactProfile]: ...
