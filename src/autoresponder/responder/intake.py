"""Inbound message handling: arm timers, forward, acknowledge."""

import logging

from autoresponder.config import CannedMessages
from autoresponder.messaging import (
    FALLBACK_CHAT_INFO,
    ChatInfo,
    ChatKind,
    InboundMessage,
    MessagingClient,
)
from autoresponder.responder.dispatcher import DelayedResponseDispatcher, SafeSender
from autoresponder.responder.timers import ConversationRegistry

logger = logging.getLogger(__name__)


class MessageIntakeHandler:
    """Entry point for every message event the client observes.

    - Outgoing messages the client sent itself are ignored; any other
      outgoing message is the account owner answering, i.e. an operator reply.
    - A message from the administrator in a tracked chat is an operator reply.
    - Everything else arms the conversation timer, is forwarded to the
      administrator chat (when configured) and, in writable private chats,
      acknowledged right away.
    """

    def __init__(
        self,
        client: MessagingClient,
        registry: ConversationRegistry,
        sender: SafeSender,
        acknowledgement: str,
        admin_chat_id: int | None = None,
    ):
        self.client = client
        self.registry = registry
        self.sender = sender
        self.acknowledgement = acknowledgement
        self.admin_chat_id = admin_chat_id

    async def handle(self, msg: InboundMessage) -> None:
        try:
            await self._handle(msg)
        except Exception as e:
            logger.error(f"Error handling message in {msg.chat_id}: {e}")

    async def _handle(self, msg: InboundMessage) -> None:
        if msg.outgoing:
            if not self.client.is_own_message(msg.chat_id, msg.message_id):
                self.registry.on_operator_reply(msg.chat_id)
            return

        if self._from_admin(msg) and msg.chat_id in self.registry:
            self.registry.on_operator_reply(msg.chat_id)
            return

        info = await self.resolve_chat(msg.chat_id)
        kind = info.kind.value
        logger.info(
            f"New message in {kind} {msg.chat_id} from {msg.sender_id}: {msg.text}")

        self.registry.on_inbound_activity(msg.chat_id, info.kind)

        if self.admin_chat_id is not None and msg.chat_id != self.admin_chat_id:
            await self._forward(msg, info)

        if info.kind == ChatKind.PRIVATE and info.can_write:
            await self.sender.send(msg.chat_id, self.acknowledgement)
        elif not info.can_write:
            logger.info(f"Cannot write to {kind} {msg.chat_id}, skipping confirmation")

    async def resolve_chat(self, chat_id: int) -> ChatInfo:
        """Best-effort chat metadata; falls back to a writable private chat."""
        try:
            return await self.client.describe_chat(chat_id)
        except Exception as e:
            logger.info(
                f"Could not get entity for {chat_id}, assuming private chat "
                f"with write access ({e})")
            return FALLBACK_CHAT_INFO

    def _from_admin(self, msg: InboundMessage) -> bool:
        return (
            self.admin_chat_id is not None
            and msg.sender_id == self.admin_chat_id
        )

    async def _forward(self, msg: InboundMessage, info: ChatInfo) -> None:
        text = f"New message from {info.kind.value} {msg.chat_id}:\n{msg.text}"
        if await self.sender.send(self.admin_chat_id, text):
            logger.info("Message forwarded to admin")
        else:
            logger.error(f"Error forwarding message from {msg.chat_id} to admin")


def create_intake_handler(
    client: MessagingClient,
    window: float,
    messages: CannedMessages | None = None,
    admin_chat_id: int | None = None,
    acknowledgement: str | None = None,
) -> MessageIntakeHandler:
    """Wire client -> intake -> registry -> dispatcher."""
    messages = messages or CannedMessages()
    sender = SafeSender(client)
    dispatcher = DelayedResponseDispatcher(sender, messages)
    registry = ConversationRegistry(dispatcher.fire, window=window)
    return MessageIntakeHandler(
        client,
        registry,
        sender,
        acknowledgement=acknowledgement or messages.acknowledgement,
        admin_chat_id=admin_chat_id,
    )
