import asyncio
import base64
import logging
from pathlib import Path
from typing import Any, Coroutine, Optional

import qrcode
from telethon import TelegramClient as TelethonClient
from telethon import events
from telethon.errors import AuthKeyUnregisteredError, SessionPasswordNeededError, SessionRevokedError
from telethon.tl.functions.auth import ExportLoginTokenRequest, ImportLoginTokenRequest
from telethon.tl.functions.messages import SetTypingRequest
from telethon.tl.types import SendMessageCancelAction, SendMessageTypingAction, User
from telethon.tl.types.auth import LoginToken, LoginTokenMigrateTo, LoginTokenSuccess
from telethon.utils import get_display_name

from ..errors import BridgeError
from ..sync.events import (
    ConnectionStatus,
    ConnectionUpdate,
    ContactProfile,
    PresenceState,
    SentMessage,
    UpstreamSession,
)
from .history_fetcher import HistoryFetcher, to_raw_message


logger = logging.getLogger(__name__)

QR_TOKEN_TTL = 30.0

LOGGED_OUT_ERRORS = (AuthKeyUnregisteredError, SessionRevokedError)


def render_qr(data: str) -> str:
    qr = qrcode.QRCode(
        version=1,
        error_correction=qrcode.constants.ERROR_CORRECT_L,
        box_size=1,
        border=2,
    )
    qr.add_data(data)
    qr.make(fit=True)
    return "\n".join(
        "".join("██" if cell else "  " for cell in row)
        for row in qr.get_matrix()
    )


class TelegramSession(UpstreamSession):
    """Telegram account session driven through telethon.

    Telethon's own reconnect loop is disabled; a dropped connection is
    reported as ``closed`` and the coordinator decides what to do.
    """

    def __init__(
        self,
        api_id: int,
        api_hash: str,
        session_path: Path,
        password: Optional[str] = None,
        dialog_limit: int = 100,
        messages_per_chat: int = 50,
        batch_size: int = 20,
    ):
        super().__init__()
        self.api_id = api_id
        self.api_hash = api_hash
        self.session_path = session_path
        self.password = password
        self.dialog_limit = dialog_limit
        self.messages_per_chat = messages_per_chat
        self.batch_size = batch_size
        self._client: Optional[TelethonClient] = None
        self._me: Optional[User] = None
        self._fetcher: Optional[HistoryFetcher] = None
        self._tasks: set[asyncio.Task] = set()
        self._connected = False
        self._closing = False

    @property
    def client(self) -> TelethonClient:
        if not self._client:
            raise RuntimeError("Client not connected.")
        return self._client

    @property
    def is_connected(self) -> bool:
        return self._connected and self._client is not None and self._client.is_connected()

    @property
    def session_file(self) -> Path:
        return self.session_path.with_name(self.session_path.name + ".session")

    async def connect(self) -> None:
        self._closing = False
        await self._emit(ConnectionUpdate(ConnectionStatus.CONNECTING))

        self._client = TelethonClient(
            str(self.session_path),
            self.api_id,
            self.api_hash,
            system_version="Windows 10",
            auto_reconnect=False,
        )
        try:
            await self._client.connect()
            if not await self._client.is_user_authorized():
                await self._auth_with_qr_code()
            self._me = await self._client.get_me()
        except LOGGED_OUT_ERRORS as e:
            await self._report_logged_out(e)
            return
        except BaseException:
            await self.disconnect()
            raise

        logger.info("Logged in as %s (@%s)", self._me.first_name, self._me.username)

        self._fetcher = HistoryFetcher(
            self._client, self.dialog_limit, self.messages_per_chat, self.batch_size
        )
        self._client.add_event_handler(self._on_new_message, events.NewMessage())
        self._client.add_event_handler(self._on_user_update, events.UserUpdate())
        self._connected = True

        self._spawn(self._watch_disconnect(self._client))
        await self._emit(ConnectionUpdate(ConnectionStatus.OPEN))
        self._spawn(self._sync_history())

    async def _auth_with_qr_code(self) -> None:
        logger.info("Authorization required: open Telegram > Settings > Devices > Link Desktop Device")

        while True:
            try:
                result = await self._client(ExportLoginTokenRequest(
                    api_id=self.api_id,
                    api_hash=self.api_hash,
                    except_ids=[]
                ))

                if isinstance(result, LoginTokenSuccess):
                    logger.info("QR authentication successful")
                    return

                if isinstance(result, LoginTokenMigrateTo):
                    await self._client._switch_dc(result.dc_id)
                    result = await self._client(ImportLoginTokenRequest(result.token))
                    if isinstance(result, LoginTokenSuccess):
                        logger.info("QR authentication successful")
                        return

                if isinstance(result, LoginToken):
                    token_base64 = base64.urlsafe_b64encode(result.token).decode('utf-8').rstrip('=')
                    qr_url = f"tg://login?token={token_base64}"

                    logger.info("Scan this QR code to log in:\n%s", render_qr(qr_url))
                    if self.listener:
                        await self.listener.on_qr(qr_url)

                    try:
                        await asyncio.wait_for(self._wait_for_qr_login(), timeout=QR_TOKEN_TTL)
                        return
                    except asyncio.TimeoutError:
                        logger.info("QR token expired, generating a new one")
                        continue

            except SessionPasswordNeededError:
                if not self.password:
                    raise BridgeError("Two-factor authentication is enabled, set TG_PASSWORD")
                await self._client.sign_in(password=self.password)
                return

    async def _wait_for_qr_login(self) -> None:
        while not await self._client.is_user_authorized():
            await asyncio.sleep(1)

    async def disconnect(self) -> None:
        self._closing = True
        self._connected = False
        current = asyncio.current_task()
        tasks = [t for t in self._tasks if t is not current]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        if self._client:
            await self._client.disconnect()
            self._client = None
            self._me = None
            self._fetcher = None

    async def clear_credentials(self) -> None:
        await self.disconnect()
        self.session_file.unlink(missing_ok=True)
        logger.info("Removed session file %s", self.session_file)

    async def request_backfill(self, conversation_id: str, count: int) -> list[dict[str, Any]]:
        if not self._fetcher:
            raise RuntimeError("Client not connected.")
        entity = await self.client.get_input_entity(int(conversation_id))
        return await self._fetcher.fetch_recent(entity, conversation_id, count)

    async def send_text(self, to: str, text: str) -> SentMessage:
        msg = await self.client.send_message(int(to), text)
        return SentMessage(id=str(msg.id), timestamp=int(msg.date.timestamp() * 1000))

    async def send_presence(self, to: str, state: PresenceState) -> None:
        if state == PresenceState.COMPOSING:
            action = SendMessageTypingAction()
        else:
            action = SendMessageCancelAction()
        peer = await self.client.get_input_entity(int(to))
        await self.client(SetTypingRequest(peer=peer, action=action))

    async def fetch_contact(self, conversation_id: str) -> Optional[ContactProfile]:
        entity = await self.client.get_entity(int(conversation_id))
        avatar = await self.client.download_profile_photo(entity, file=bytes)
        return ContactProfile(
            jid=conversation_id,
            name=get_display_name(entity) or None,
            phone_number=getattr(entity, "phone", None),
            avatar=avatar or None,
        )

    async def _on_new_message(self, event) -> None:
        conversation_id = str(event.chat_id)
        sender_name = None
        if not event.out:
            sender = await event.get_sender()
            sender_name = get_display_name(sender) if sender else None
        raw = to_raw_message(event.message, conversation_id, sender_name)
        if self.listener:
            await self.listener.on_live_messages([raw], conversation_id)

    async def _on_user_update(self, event) -> None:
        if event.typing:
            state = PresenceState.COMPOSING
        elif event.cancel:
            state = PresenceState.PAUSED
        else:
            return
        if self.listener:
            await self.listener.on_presence(str(event.chat_id), state.value)

    async def _sync_history(self) -> None:
        try:
            async for delivery in self._fetcher.deliveries():
                if self.listener:
                    await self.listener.on_bulk_history(delivery)
        except LOGGED_OUT_ERRORS as e:
            await self._report_logged_out(e)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error("History download failed: %s", e, exc_info=True)

    async def _watch_disconnect(self, client: TelethonClient) -> None:
        try:
            await client.disconnected
            reason = "Connection closed"
        except LOGGED_OUT_ERRORS as e:
            await self._report_logged_out(e)
            return
        except asyncio.CancelledError:
            raise
        except Exception as e:
            reason = str(e) or type(e).__name__

        if self._closing:
            return
        self._connected = False
        await self._emit(ConnectionUpdate(ConnectionStatus.CLOSED, reason=reason))

    async def _report_logged_out(self, error: Exception) -> None:
        logger.warning("Session authorization revoked: %s", error)
        await self.disconnect()
        await self._emit(ConnectionUpdate(ConnectionStatus.CLOSED, reason=str(error), logged_out=True))

    async def _emit(self, update: ConnectionUpdate) -> None:
        if self.listener:
            await self.listener.on_connection_update(update)

    def _spawn(self, coro: Coroutine) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task
