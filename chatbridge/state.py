import time
from dataclasses import dataclass, field
from typing import Any, Optional, Protocol

from .sync.events import ConnectionStatus


class Consumer(Protocol):

    async def send_json(self, data: Any) -> None: ...


@dataclass
class SessionState:
    """Mutable state of one bridge session, owned by its coordinator."""

    upstream_status: ConnectionStatus = ConnectionStatus.CLOSED
    consumer: Optional[Consumer] = None
    consumer_waiting_for_chats: bool = False
    reconnect_attempts: int = 0
    started_at: float = field(default_factory=time.time)

    @property
    def upstream_connected(self) -> bool:
        return self.upstream_status == ConnectionStatus.OPEN

    @property
    def uptime_seconds(self) -> float:
        return time.time() - self.started_at
