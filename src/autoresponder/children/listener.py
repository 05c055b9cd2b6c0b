"""Listener process: the long-running userbot.

Run by the control plane as ``python -m autoresponder listen``. Connects the
saved session, feeds every NewMessage event into the intake handler and
runs until Telegram disconnects or SIGTERM/SIGINT arrives.
"""

import asyncio
import logging
import signal

from autoresponder.config import Settings
from autoresponder.credentials import CredentialStore, apply_env_api
from autoresponder.errors import classify_startup_error
from autoresponder.messaging import TelethonMessenger, create_telegram_client
from autoresponder.responder import create_intake_handler

logger = logging.getLogger(__name__)


def _log_banner(window: float) -> None:
    logger.info("Userbot ready for work!")
    logger.info("How it works:")
    logger.info(f"1. When a message arrives, a {window:g}s timer is set")
    logger.info("2. If you don't respond within this time, the userbot will auto-reply")
    logger.info("3. If you respond manually, the timer is cancelled")
    logger.info("4. All responses are sent from your personal account")
    logger.info("5. Users are added to contacts automatically if needed")


async def run_listener(settings: Settings, store: CredentialStore, test_mode: bool = False) -> int:
    from telethon import events

    record = apply_env_api(store.load())
    if not record.is_authenticated:
        logger.error("No session saved. Authenticate through the web panel or `autoresponder login`.")
        return 1

    window = settings.test_window_seconds if test_mode else settings.response_window_seconds
    if test_mode:
        logger.info(f"Test mode: auto-response timer is {window:g}s")

    try:
        client = create_telegram_client(record.api_id_int, record.api_hash, record.session)
        await client.connect()
        authorized = await client.is_user_authorized()
    except Exception as e:
        logger.error(f"Failed to start userbot: {e}")
        logger.error(classify_startup_error(str(e)).message)
        return 1

    if not authorized:
        logger.error("Saved session is no longer authorized. Authenticate again.")
        await client.disconnect()
        return 1

    messenger = TelethonMessenger(client)
    intake = create_intake_handler(messenger, window, settings.messages)

    async def on_message(event) -> None:
        await intake.handle(TelethonMessenger.to_inbound(event))

    client.add_event_handler(on_message, events.NewMessage())
    _log_banner(window)

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop.set)

    stop_task = asyncio.create_task(stop.wait())
    disconnected = asyncio.ensure_future(client.disconnected)
    try:
        await asyncio.wait({stop_task, disconnected}, return_when=asyncio.FIRST_COMPLETED)
    finally:
        stop_task.cancel()
        intake.registry.close()
        await intake.registry.drain()
        await client.disconnect()

    logger.info("Userbot stopped")
    return 0
