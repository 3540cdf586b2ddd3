"""Dispatch of consumer commands.

Every handler converts its own failures into a typed error envelope, so a
bad command never tears down the consumer connection.
"""
import asyncio
import base64
import logging
import os
from typing import Any, Awaitable, Callable, Optional

from ..database.repository import Contact, Repository
from ..errors import CommandValidationError, UpstreamNotConnectedError, error_envelope
from ..state import SessionState
from ..sync.events import PresenceState, UpstreamSession
from ..sync.live import LiveEventProcessor
from ..sync.normalize import now_ms
from ..sync.projector import ViewProjector
from .outbound import OutboundGateway


logger = logging.getLogger(__name__)

CONTACT_SYNC_PROGRESS_EVERY = 10
CONTACT_SYNC_CHAT_LIMIT = 500

Handler = Callable[[dict], Awaitable[None]]


def _require(data: dict, *fields: str) -> None:
    missing = [name for name in fields if not data.get(name)]
    if missing:
        raise CommandValidationError(f"Missing required fields: {', '.join(missing)}")


def _non_negative_int(data: dict, name: str, default: int) -> int:
    value = data.get(name, default)
    if value is None:
        return default
    try:
        number = int(value)
    except (TypeError, ValueError):
        raise CommandValidationError(f"{name} must be an integer")
    if number < 0:
        raise CommandValidationError(f"{name} must not be negative")
    return number


class CommandRouter:

    def __init__(
        self,
        repository: Repository,
        state: SessionState,
        gateway: OutboundGateway,
        projector: ViewProjector,
        live: LiveEventProcessor,
        upstream: Optional[UpstreamSession] = None,
        contact_sync_delay: float = 0.2,
        clock: Callable[[], int] = now_ms,
    ):
        self.repo = repository
        self.state = state
        self.gateway = gateway
        self.projector = projector
        self.live = live
        self.upstream = upstream
        self.contact_sync_delay = contact_sync_delay
        self.clock = clock

        self._handlers: dict[str, Handler] = {
            "get_initial_chats": self.get_initial_chats,
            "send_message": self.send_message,
            "get_message_history": self.get_message_history,
            "typing_start": self.typing_start,
            "typing_stop": self.typing_stop,
            "health_check": self.health_check,
            "sync_contacts": self.sync_contacts,
            "get_contact_info": self.get_contact_info,
        }

    async def dispatch(self, command: Any) -> None:
        if not isinstance(command, dict):
            await self.gateway.send("error", error_envelope(
                "websocket", CommandValidationError("Command must be a JSON object"), "message processing"
            ))
            return

        command_type = command.get("type")
        data = command.get("data")
        if not isinstance(data, dict):
            data = {}

        handler = self._handlers.get(command_type) if isinstance(command_type, str) else None
        if handler is None:
            logger.warning("Unknown command: %s", command_type)
            await self.gateway.send("error", {
                "type": "unknown_command",
                "message": f"Unknown command: {command_type}",
            })
            return

        logger.debug("Handling command %s", command_type)
        try:
            await handler(data)
        except Exception as e:
            await self.gateway.send("error", error_envelope("generic", e, command_type))

    def _ensure_connected(self) -> UpstreamSession:
        if self.upstream is None or not self.state.upstream_connected:
            raise UpstreamNotConnectedError()
        return self.upstream

    async def get_initial_chats(self, data: dict) -> None:
        try:
            payload = await self.projector.get_conversation_list()
        except Exception as e:
            await self.gateway.send("error", error_envelope("database", e, "get initial chats"))
            return
        if payload is not None:
            await self.gateway.send("initial_chats", payload)

    async def send_message(self, data: dict) -> None:
        to = data.get("to")
        text = data.get("message")

        try:
            _require(data, "to", "message")
            upstream = self._ensure_connected()
            sent = await upstream.send_text(to, text)
        except Exception as e:
            await self.gateway.send("message_error", error_envelope("messaging", e, "send message"))
            if to and text:
                await self._store_failed(to, text)
            return

        try:
            await self.live.record_outgoing(to, sent.id, text, sent.timestamp)
        except Exception as e:
            logger.error("Message %s was sent but could not be stored: %s", sent.id, e)

        await self.gateway.send("message_sent", {
            "to": to,
            "message": text,
            "messageId": sent.id,
            "timestamp": sent.timestamp,
        })
        logger.info("Message sent to %s", to)

    async def _store_failed(self, to: str, text: str) -> None:
        timestamp = self.clock()
        try:
            await self.live.record_outgoing(to, f"failed_{timestamp}", text, timestamp, status="failed")
        except Exception as e:
            logger.error("Could not store failed message to %s: %s", to, e)

    async def get_message_history(self, data: dict) -> None:
        try:
            _require(data, "jid")
            jid = data["jid"]
            limit = _non_negative_int(data, "limit", 50)
            offset = _non_negative_int(data, "offset", 0)
            messages = await self.projector.get_message_list(jid, limit, offset)
        except Exception as e:
            await self.gateway.send("message_history_error", error_envelope("database", e, "get message history"))
            return

        await self.gateway.send("message_history", {"jid": jid, "messages": messages})

    async def typing_start(self, data: dict) -> None:
        await self._send_presence(data, PresenceState.COMPOSING)

    async def typing_stop(self, data: dict) -> None:
        await self._send_presence(data, PresenceState.PAUSED)

    async def _send_presence(self, data: dict, presence: PresenceState) -> None:
        try:
            _require(data, "to")
            upstream = self._ensure_connected()
            await upstream.send_presence(data["to"], presence)
        except Exception as e:
            logger.error("Error sending %s presence: %s", presence.value, e)

    async def health_check(self, data: dict) -> None:
        try:
            checks = {}
            try:
                checks["database"] = {"healthy": await self.repo.ping()}
            except Exception as e:
                checks["database"] = {"healthy": False, "details": {"error": str(e)}}
            checks["upstream"] = {
                "healthy": self.state.upstream_connected,
                "details": {"status": self.state.upstream_status.value},
            }

            await self.gateway.send("health_status", {
                "healthy": checks["database"]["healthy"],
                "checks": checks,
                "backend": {
                    "uptime": round(self.state.uptime_seconds, 3),
                    "pid": os.getpid(),
                    "reconnectAttempts": self.state.reconnect_attempts,
                },
                "upstream": {
                    "connected": self.state.upstream_connected,
                    "status": self.state.upstream_status.value,
                },
            })
        except Exception as e:
            await self.gateway.send("health_error", error_envelope("generic", e, "health check"))

    async def sync_contacts(self, data: dict) -> None:
        try:
            upstream = self._ensure_connected()
            conversations = await self.repo.list_conversations(CONTACT_SYNC_CHAT_LIMIT)
            total = len(conversations)
            await self.gateway.send("sync_contacts_started", {"totalChats": total})
            logger.info("Syncing contact info for %d chats", total)

            synced = 0
            errors = 0
            for processed, conversation in enumerate(conversations):
                if processed % CONTACT_SYNC_PROGRESS_EVERY == 0:
                    await self.gateway.send("sync_contacts_progress", {
                        "processed": processed,
                        "synced": synced,
                        "total": total,
                    })

                try:
                    profile = await upstream.fetch_contact(conversation.jid)
                    if profile is not None:
                        avatar = base64.b64encode(profile.avatar).decode("ascii") if profile.avatar else None
                        await self.repo.upsert_contact(Contact(
                            jid=conversation.jid,
                            name=profile.name,
                            phone_number=profile.phone_number,
                            avatar_base64=avatar,
                        ))
                        if avatar:
                            await self.repo.update_conversation_avatar(conversation.jid, avatar)
                        synced += 1
                except Exception as e:
                    errors += 1
                    logger.debug("Could not refresh contact %s: %s", conversation.jid, e)

                if self.contact_sync_delay:
                    await asyncio.sleep(self.contact_sync_delay)

            self.projector.mark_stale()
            await self.gateway.send("sync_contacts_completed", {
                "syncedCount": synced,
                "errorCount": errors,
                "totalProcessed": total,
            })
            logger.info("Contact sync done: %d synced, %d errors", synced, errors)
        except Exception as e:
            await self.gateway.send("sync_contacts_error", error_envelope("upstream", e, "contact sync"))

    async def get_contact_info(self, data: dict) -> None:
        jid = data.get("jid")
        try:
            _require(data, "jid")
            contact = await self.repo.get_contact(jid)
            conversation = await self.repo.get_conversation(jid)
            name = (contact.name if contact else None) or (conversation.display_name if conversation else None) or jid

            await self.gateway.send("contact_info", {
                "jid": jid,
                "contactInfo": {
                    "jid": jid,
                    "name": name,
                    "phoneNumber": contact.phone_number if contact else None,
                    "avatarBase64": contact.avatar_base64 if contact else None,
                    "isBlocked": contact.is_blocked if contact else False,
                    "lastSeen": conversation.last_message_timestamp if conversation else None,
                    "messageCount": await self.repo.get_message_count(jid),
                },
            })
        except Exception as e:
            await self.gateway.send("contact_info_error", {
                "jid": jid,
                "error": error_envelope("database", e, "get contact info"),
            })
