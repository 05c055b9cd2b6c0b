"""Messaging-platform clients used by the responder.

Two clients share one small interface (``MessagingClient``):

- TelethonMessenger: a user account (userbot) over MTProto, used by the
  listener process. Outbound messages typed by the account owner are how
  the operator answers.
- BotApiClient: a Telegram bot over the HTTP Bot API with long polling,
  used by the standalone ``autoresponder bot`` variant.

The responder only needs: send a message, describe a chat (kind and
whether we may write to it), register a peer as a contact, and tell its own
messages apart from the operator's.
"""

import asyncio
import logging
import time
from abc import ABC, abstractmethod
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable

import httpx

from autoresponder.errors import DeliveryError, RecipientUnknownError

logger = logging.getLogger(__name__)


# ── Data Types ──────────────────────────────────────────

class ChatKind(str, Enum):
    PRIVATE = "private"
    GROUP = "group"


@dataclass(frozen=True)
class ChatInfo:
    kind: ChatKind = ChatKind.PRIVATE
    can_write: bool = True


# Used whenever chat metadata cannot be fetched: never drop a private chat.
FALLBACK_CHAT_INFO = ChatInfo(kind=ChatKind.PRIVATE, can_write=True)


@dataclass
class InboundMessage:
    """A message observed in any conversation of the account."""
    chat_id: int
    sender_id: int | None
    text: str
    outgoing: bool = False
    message_id: int | None = None
    sender_name: str = ""
    chat_type: str | None = None  # raw platform chat type, when known
    timestamp: float = field(default_factory=time.time)

    @property
    def is_command(self) -> bool:
        return self.text.startswith("/")


# ── Client Base ─────────────────────────────────────────

class MessagingClient(ABC):
    """What the responder needs from a messaging platform."""

    @abstractmethod
    async def send_message(self, chat_id: int, text: str) -> None:
        """Send text to a chat. Raises DeliveryError on failure."""
        ...

    @abstractmethod
    async def describe_chat(self, chat_id: int) -> ChatInfo:
        """Resolve chat kind and write permission. May raise."""
        ...

    async def add_contact(self, user_id: int) -> bool:
        """Register a peer as a contact. Returns True on success."""
        return False

    def is_own_message(self, chat_id: int, message_id: int | None) -> bool:
        """Whether an outgoing message was sent by this client itself."""
        return False


def chat_kind_from_type(chat_type: str | None) -> ChatKind:
    """Map a Bot API chat type (private/group/supergroup/channel)."""
    if chat_type in ("group", "supergroup", "channel"):
        return ChatKind.GROUP
    return ChatKind.PRIVATE


# ── Telethon (user account) ────────────────────────────

def create_telegram_client(api_id: int, api_hash: str, session: str = "") -> Any:
    """TelegramClient over a StringSession (empty string: fresh login)."""
    from telethon import TelegramClient
    from telethon.sessions import StringSession

    return TelegramClient(
        StringSession(session or None), api_id, api_hash, connection_retries=5,
    )


class TelethonMessenger(MessagingClient):
    """MessagingClient over a connected Telethon TelegramClient.

    Remembers the ids of messages it sent so the NewMessage events Telegram
    echoes back for them are not mistaken for the operator typing.
    """

    UNKNOWN_ENTITY = "Could not find the input entity"

    def __init__(self, client: Any, remember: int = 1000):
        self.client = client
        self._sent: deque[tuple[int, int]] = deque(maxlen=remember)
        self._in_flight: dict[int, int] = {}

    async def send_message(self, chat_id: int, text: str) -> None:
        from telethon.errors import RPCError

        self._in_flight[chat_id] = self._in_flight.get(chat_id, 0) + 1
        try:
            message = await self.client.send_message(chat_id, text)
        except ValueError as e:
            if self.UNKNOWN_ENTITY in str(e):
                raise RecipientUnknownError(chat_id, str(e)) from e
            raise DeliveryError(chat_id, str(e)) from e
        except RPCError as e:
            raise DeliveryError(chat_id, str(e)) from e
        finally:
            remaining = self._in_flight.get(chat_id, 1) - 1
            if remaining:
                self._in_flight[chat_id] = remaining
            else:
                self._in_flight.pop(chat_id, None)

        message_id = getattr(message, "id", None)
        if message_id is not None:
            self._sent.append((chat_id, message_id))

    def is_own_message(self, chat_id: int, message_id: int | None) -> bool:
        if chat_id in self._in_flight:
            return True
        return (chat_id, message_id) in self._sent

    async def describe_chat(self, chat_id: int) -> ChatInfo:
        from telethon.tl.types import Channel, Chat

        entity = await self.client.get_entity(chat_id)
        if not isinstance(entity, (Chat, Channel)):
            return ChatInfo(kind=ChatKind.PRIVATE, can_write=True)

        try:
            perms = await self.client.get_permissions(entity, "me")
            if perms.is_admin:
                can_write = True
            elif isinstance(entity, Channel) and getattr(entity, "broadcast", False):
                can_write = False
            else:
                can_write = not perms.is_banned
        except Exception as e:
            logger.info(
                f"Could not check permissions for {chat_id}, assuming can write ({e})")
            can_write = True
        return ChatInfo(kind=ChatKind.GROUP, can_write=can_write)

    async def add_contact(self, user_id: int) -> bool:
        from telethon import functions

        logger.info(f"Trying to add user {user_id} to contacts...")
        try:
            await self.client(functions.contacts.AddContactRequest(
                id=user_id,
                first_name="User",
                last_name=f"ID{user_id}",
                phone="",
                add_phone_privacy_exception=False,
            ))
        except Exception as e:
            logger.info(f"Could not add user {user_id} to contacts: {e}")
            return False
        logger.info(f"User {user_id} added to contacts")
        return True

    @staticmethod
    def to_inbound(event: Any) -> InboundMessage:
        """Convert a telethon ``events.NewMessage.Event``."""
        return InboundMessage(
            chat_id=event.chat_id,
            sender_id=event.sender_id,
            text=event.raw_text or "",
            outgoing=bool(event.out),
            message_id=event.id,
        )


# ── Telegram Bot API ───────────────────────────────────

UpdateHandler = Callable[[InboundMessage], Awaitable[None]]


class BotApiClient(MessagingClient):
    """Telegram Bot API client (httpx, long polling)."""

    API_BASE = "https://api.telegram.org/bot{token}"

    def __init__(self, bot_token: str, http: httpx.AsyncClient | None = None):
        self.bot_token = bot_token
        self._http = http
        self._chat_types: dict[int, str] = {}

    @property
    def api_url(self) -> str:
        return self.API_BASE.format(token=self.bot_token)

    async def _client(self) -> httpx.AsyncClient:
        if self._http is None or self._http.is_closed:
            self._http = httpx.AsyncClient(timeout=30.0)
        return self._http

    def is_configured(self) -> bool:
        return bool(self.bot_token)

    async def _api_call(self, method: str, data: dict | None = None) -> dict:
        """Make a Bot API call. Never raises; failures come back as ok=False."""
        client = await self._client()
        url = f"{self.api_url}/{method}"
        try:
            if data:
                resp = await client.post(url, json=data)
            else:
                resp = await client.get(url)
            result = resp.json()
            if not result.get("ok"):
                logger.error(f"Telegram API error ({method}): {result}")
            return result
        except Exception as e:
            logger.error(f"Telegram API call failed ({method}): {e}")
            return {"ok": False, "description": str(e)}

    async def get_me(self) -> dict:
        result = await self._api_call("getMe")
        return result.get("result", {})

    async def delete_webhook(self) -> bool:
        """Remove any webhook; getUpdates returns nothing while one is set."""
        result = await self._api_call("deleteWebhook")
        return result.get("ok", False)

    async def send_message(self, chat_id: int, text: str) -> None:
        result = await self._api_call("sendMessage", {
            "chat_id": chat_id,
            "text": text,
        })
        if result.get("ok"):
            return
        description = str(result.get("description", "unknown error"))
        if "chat not found" in description.lower():
            raise RecipientUnknownError(chat_id, description)
        raise DeliveryError(chat_id, description)

    async def describe_chat(self, chat_id: int) -> ChatInfo:
        chat_type = self._chat_types.get(chat_id)
        if chat_type is None:
            result = await self._api_call("getChat", {"chat_id": chat_id})
            if not result.get("ok"):
                raise DeliveryError(chat_id, str(result.get("description", "")))
            chat_type = result.get("result", {}).get("type", "private")
            self._chat_types[chat_id] = chat_type
        return ChatInfo(kind=chat_kind_from_type(chat_type), can_write=True)

    def parse_update(self, update: dict) -> InboundMessage | None:
        """Turn a getUpdates item into an InboundMessage (text messages only)."""
        message = update.get("message")
        if not message:
            return None

        chat = message.get("chat", {})
        sender = message.get("from", {})
        if "id" not in chat:
            return None

        chat_id = int(chat["id"])
        chat_type = chat.get("type", "private")
        self._chat_types[chat_id] = chat_type

        sender_name = " ".join(
            part for part in (sender.get("first_name"), sender.get("last_name")) if part
        )
        return InboundMessage(
            chat_id=chat_id,
            sender_id=int(sender["id"]) if "id" in sender else None,
            text=message.get("text", "") or "",
            message_id=message.get("message_id"),
            sender_name=sender_name,
            chat_type=chat_type,
            timestamp=message.get("date", time.time()),
        )

    async def get_updates(self, offset: int = 0, timeout: int = 25) -> list[dict]:
        """Fetch new updates via long polling."""
        params: dict[str, Any] = {
            "timeout": timeout,
            "allowed_updates": '["message"]',
        }
        if offset:
            params["offset"] = offset

        client = await self._client()
        try:
            resp = await client.get(
                f"{self.api_url}/getUpdates",
                params=params,
                timeout=timeout + 10,
            )
            data = resp.json()
            if data.get("ok"):
                return data.get("result", [])
            logger.error(f"getUpdates error: {data}")
            return []
        except httpx.ReadTimeout:
            return []
        except Exception as e:
            logger.error(f"getUpdates failed: {e}")
            return []

    async def start_polling(
        self,
        handler: UpdateHandler,
        interval: float = 1.0,
        shutdown_event: asyncio.Event | None = None,
    ) -> None:
        """Run the long-polling loop until *shutdown_event* is set."""
        _stop = shutdown_event or asyncio.Event()

        await self.delete_webhook()
        bot_info = await self.get_me()
        logger.info(f"Telegram polling started for @{bot_info.get('username', 'unknown')}")

        offset = 0
        consecutive_errors = 0
        max_backoff = 30
        pending: set[asyncio.Task] = set()

        while not _stop.is_set():
            try:
                updates = await self.get_updates(offset=offset)
                consecutive_errors = 0

                for update in updates:
                    offset = update.get("update_id", 0) + 1
                    msg = self.parse_update(update)
                    if msg is None:
                        continue
                    task = asyncio.create_task(self._safe_handle(handler, msg))
                    pending.add(task)
                    task.add_done_callback(pending.discard)

                await asyncio.sleep(interval)
            except asyncio.CancelledError:
                logger.info("Telegram polling cancelled")
                break
            except Exception as e:
                consecutive_errors += 1
                backoff = min(2 ** consecutive_errors, max_backoff)
                logger.error(f"Polling error (retry in {backoff}s): {e}")
                await asyncio.sleep(backoff)

        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        logger.info("Telegram polling stopped")

    @staticmethod
    async def _safe_handle(handler: UpdateHandler, msg: InboundMessage) -> None:
        try:
            await handler(msg)
        except Exception as e:
            logger.error(f"Error processing message in {msg.chat_id}: {e}")

    async def close(self) -> None:
        if self._http:
            await self._http.aclose()
