"""Standalone Bot API variant of the auto-responder.

Runs as a regular Telegram bot (no user session needed). Configured only
through the environment: BOT_TOKEN, ADMIN_CHAT_ID, TEST_GROUP_ID.

Non-command messages go through the same intake handler as the userbot and
are forwarded to the administrator chat. The administrator answers with
``/reply <chat_id> <text>``, which counts as the operator reply.

Built-in commands:
    /start                 - Greeting with the chat type
    /help                  - Show commands
    /myid                  - Show this chat's id and type
    /test                  - Arm the auto-response timer with the test window
    /status                - Timer state of this chat
    /reply <chat_id> <txt> - Reply as manager (admin only)
"""

import asyncio
import logging

from autoresponder.config import BotSettings, Settings
from autoresponder.messaging import BotApiClient, InboundMessage, chat_kind_from_type
from autoresponder.responder import MessageIntakeHandler, create_intake_handler

logger = logging.getLogger(__name__)

HELP_TEXT = """Available commands:
/start - Start the bot
/help - Show this message
/myid - Show your chat ID
/reply <chat_id> <text> - Reply as manager (admin only)
/test - Test auto-response with the short timer
/status - Show chat status"""


class ResponderBot:
    """Command layer on top of the intake handler."""

    def __init__(
        self,
        client: BotApiClient,
        intake: MessageIntakeHandler,
        bot_settings: BotSettings,
        test_window: float = 10.0,
    ):
        self.client = client
        self.intake = intake
        self.bot_settings = bot_settings
        self.test_window = test_window

    @property
    def registry(self):
        return self.intake.registry

    def _is_admin_chat(self, chat_id: int) -> bool:
        admin = self.bot_settings.admin_chat_id
        return admin is not None and chat_id == admin

    async def handle_incoming(self, msg: InboundMessage) -> str | None:
        """Handle one message. Returns the reply for the same chat, if any."""
        text = msg.text.strip()
        if not text.startswith("/"):
            await self.intake.handle(msg)
            return None

        command, _, args = text.partition(" ")
        command = command.split("@", 1)[0].lower()
        args = args.strip()
        chat_type = msg.chat_type or "private"

        if command == "/start":
            return f"Bot started! Chat type: {chat_type}"

        if command == "/help":
            return HELP_TEXT

        if command == "/myid":
            reply = f"Your chat ID: {msg.chat_id}\nChat type: {chat_type}"
            if msg.chat_id == self.bot_settings.test_group_id:
                reply += "\n(test group)"
            return reply

        if command == "/test":
            self.registry.arm(msg.chat_id, chat_kind_from_type(chat_type), self.test_window)
            logger.info(f"Test timer set for {self.test_window:g}s for {chat_type} {msg.chat_id}")
            return f"Testing auto-response after {self.test_window:g} seconds..."

        if command == "/status":
            return f"Status: {self.registry.status(msg.chat_id)}"

        if command == "/reply":
            return await self._reply_as_manager(msg, args)

        return None

    async def _reply_as_manager(self, msg: InboundMessage, args: str) -> str:
        if not self._is_admin_chat(msg.chat_id):
            return "You don't have permission for this command"

        target, _, reply_text = args.partition(" ")
        try:
            target_chat_id = int(target)
        except ValueError:
            return "Usage: /reply <chat_id> <text>"
        if not reply_text.strip():
            return "Usage: /reply <chat_id> <text>"

        if not self.registry.on_operator_reply(target_chat_id):
            return "No active chat for response"

        if not await self.intake.sender.send(target_chat_id, f"Manager: {reply_text.strip()}"):
            return f"Could not deliver the response to chat {target_chat_id}"
        return f"Response sent to chat {target_chat_id}"

    async def process_and_reply(self, msg: InboundMessage) -> None:
        reply = await self.handle_incoming(msg)
        if reply:
            await self.intake.sender.send(msg.chat_id, reply)


def create_bot(settings: Settings, bot_settings: BotSettings) -> ResponderBot:
    client = BotApiClient(bot_settings.bot_token)
    intake = create_intake_handler(
        client,
        settings.response_window_seconds,
        settings.messages,
        admin_chat_id=bot_settings.admin_chat_id,
        acknowledgement=settings.messages.bot_acknowledgement,
    )
    return ResponderBot(client, intake, bot_settings, settings.test_window_seconds)


async def run_bot(bot: ResponderBot, shutdown_event: asyncio.Event | None = None) -> None:
    logger.info(f"Admin Chat ID: {bot.bot_settings.admin_chat_id}")
    logger.info(f"Test Group ID: {bot.bot_settings.test_group_id}")
    try:
        await bot.client.start_polling(bot.process_and_reply, shutdown_event=shutdown_event)
    finally:
        bot.registry.close()
        await bot.registry.drain()
        await bot.client.close()
