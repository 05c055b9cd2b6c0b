"""Delayed auto-response and safe message delivery."""

import logging

from autoresponder.config import CannedMessages
from autoresponder.errors import DeliveryError, RecipientUnknownError
from autoresponder.messaging import MessagingClient
from autoresponder.responder.timers import ConversationState

logger = logging.getLogger(__name__)


class SafeSender:
    """Sends messages without ever raising.

    A one-to-one chat whose peer the client cannot resolve gets one retry
    after registering the peer as a contact.
    """

    def __init__(self, client: MessagingClient):
        self.client = client

    async def send(self, chat_id: int, text: str) -> bool:
        try:
            await self.client.send_message(chat_id, text)
            return True
        except RecipientUnknownError as e:
            logger.error(str(e))
            if chat_id <= 0:
                return False
            return await self._retry_after_contact(chat_id, text)
        except DeliveryError as e:
            logger.error(str(e))
            return False
        except Exception as e:
            logger.error(f"Cannot send message to {chat_id}: {e}")
            return False

    async def _retry_after_contact(self, chat_id: int, text: str) -> bool:
        logger.info(f"Attempting to add user {chat_id} to contacts...")
        if not await self.client.add_contact(chat_id):
            return False
        try:
            await self.client.send_message(chat_id, text)
        except Exception as e:
            logger.error(
                f"Still cannot send message to {chat_id} after adding to contacts: {e}")
            return False
        logger.info(f"Message sent to {chat_id} after adding to contacts")
        return True


class DelayedResponseDispatcher:
    """Sends the canned reply when a conversation's timer fires."""

    def __init__(self, sender: SafeSender, messages: CannedMessages | None = None):
        self.sender = sender
        self.messages = messages or CannedMessages()

    async def fire(self, state: ConversationState) -> bool:
        """Returns True only when an auto-response was delivered."""
        if state.responded_by_operator:
            return False

        kind = state.kind.value
        if await self.sender.send(state.chat_id, self.messages.for_kind(state.kind)):
            logger.info(f"Auto-response sent to {kind} {state.chat_id}")
            return True
        logger.error(f"Auto-response to {kind} {state.chat_id} was not delivered")
        return False
