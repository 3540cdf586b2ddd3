import asyncio
import json
import logging
from typing import Any, Optional

from ..state import Consumer, SessionState


logger = logging.getLogger(__name__)


class OutboundGateway:
    """Best-effort delivery of ``{type, data}`` envelopes to the attached consumer."""

    def __init__(self, state: SessionState, send_timeout: float = 5.0):
        self.state = state
        self.send_timeout = send_timeout

    def attach(self, consumer: Consumer) -> None:
        if self.state.consumer is not None and self.state.consumer is not consumer:
            logger.info("Replacing previously attached consumer")
        self.state.consumer = consumer

    def detach(self, consumer: Consumer) -> None:
        if self.state.consumer is consumer:
            self.state.consumer = None
            self.state.consumer_waiting_for_chats = False

    async def send(self, type: str, data: Optional[dict[str, Any]] = None) -> bool:
        consumer = self.state.consumer
        if consumer is None:
            logger.warning("Cannot send %s: no consumer attached", type)
            return False

        envelope = {"type": type, "data": data if data is not None else {}}
        try:
            # Round-trip through json so non-serializable payloads fail here, not in the transport.
            payload = json.loads(json.dumps(envelope))
            await asyncio.wait_for(consumer.send_json(payload), timeout=self.send_timeout)
        except asyncio.TimeoutError:
            logger.warning("Timed out sending %s to consumer", type)
            return False
        except Exception as e:
            logger.error("Error sending %s to consumer: %s", type, e)
            return False

        logger.debug("Sent %s to consumer", type)
        return True
