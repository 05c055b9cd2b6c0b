"""Handshake child process.

Run by the control plane as ``python -m autoresponder handshake``. Reads the
phone number from $PHONE_NUMBER, the API credentials from $T_API_ID /
$T_API_HASH (falling back to the credential record), and talks to the parent
with line tokens:

    stdout  WAITING_FOR_CODE   -> parent writes the login code to stdin
    stdout  2FA_NEEDED         -> parent writes the 2FA password to stdin
    stdout  AUTH_SUCCESS       -> session saved to the credential record
    stderr  AUTH_ERROR: <CODE>: <detail>

CODE is derived from the Telethon exception class (FLOOD_WAIT_<seconds>,
PHONE_CODE_INVALID, PASSWORD_HASH_INVALID, ...), so the parent classifies on
stable identifiers rather than on human-readable text.
"""

import asyncio
import logging
import os
import re
import sys
from typing import Any, Awaitable, Callable

from autoresponder.control.handshake import AUTH_SUCCESS, TWO_FA_NEEDED, WAITING_FOR_CODE
from autoresponder.credentials import CredentialStore, apply_env_api
from autoresponder.errors import AUTH_ERROR_MARKER
from autoresponder.messaging import create_telegram_client

logger = logging.getLogger(__name__)

SecretReader = Callable[[], Awaitable[str]]

_CAMEL_BOUNDARY = re.compile(r"(?<=[a-z0-9])(?=[A-Z])")

# Telethon base classes whose names say nothing about the actual failure
_GENERIC_RPC_ERRORS = {
    "RPCError", "BadRequestError", "UnauthorizedError", "ForbiddenError",
    "NotFoundError", "AuthKeyError", "FloodError", "ServerError",
    "TimedOutError", "InvalidDCError",
}


def error_code(exc: BaseException) -> str:
    """Structured code for an exception raised during sign-in."""
    from telethon.errors import FloodWaitError, RPCError

    if isinstance(exc, FloodWaitError):
        return f"FLOOD_WAIT_{exc.seconds}"

    name = type(exc).__name__
    if isinstance(exc, RPCError):
        if name.endswith("Error") and name not in _GENERIC_RPC_ERRORS:
            return _CAMEL_BOUNDARY.sub("_", name[: -len("Error")]).upper()
        if getattr(exc, "message", None):
            return str(exc.message)
    return name


def emit(token: str) -> None:
    print(token, flush=True)


def report_error(exc: BaseException) -> None:
    print(f"{AUTH_ERROR_MARKER} {error_code(exc)}: {exc}", file=sys.stderr, flush=True)


async def read_stdin_line() -> str:
    """Read one line from stdin without blocking the event loop."""
    line = await asyncio.get_running_loop().run_in_executor(None, sys.stdin.readline)
    if not line:
        raise EOFError("stdin closed before a value was provided")
    return line.strip()


async def authorize(
    client: Any,
    phone: str,
    read_code: SecretReader,
    read_password: SecretReader,
) -> bool:
    """Sign *client* in. Returns False if it was already authorized."""
    from telethon.errors import SessionPasswordNeededError

    if await client.is_user_authorized():
        return False

    await client.send_code_request(phone)
    code = await read_code()
    try:
        await client.sign_in(phone=phone, code=code)
    except SessionPasswordNeededError:
        password = await read_password()
        await client.sign_in(password=password)
    return True


async def run_handshake(store: CredentialStore, phone: str) -> int:
    record = apply_env_api(store.load())
    logger.info(f"Send code process started (API ID: {record.api_id})")

    async def read_code() -> str:
        emit(WAITING_FOR_CODE)
        return await read_stdin_line()

    async def read_password() -> str:
        emit(TWO_FA_NEEDED)
        return await read_stdin_line()

    try:
        client = create_telegram_client(record.api_id_int, record.api_hash, record.session)
    except Exception as e:
        report_error(e)
        return 1

    try:
        await client.connect()
        await authorize(client, phone, read_code, read_password)
        store.save_session(client.session.save())
    except Exception as e:
        report_error(e)
        return 1
    finally:
        await client.disconnect()

    emit(AUTH_SUCCESS)
    return 0


def main(store: CredentialStore) -> int:
    phone = os.environ.get("PHONE_NUMBER", "")
    if not phone:
        print(f"{AUTH_ERROR_MARKER} PHONE_NUMBER_INVALID: PHONE_NUMBER is not set",
              file=sys.stderr, flush=True)
        return 1
    return asyncio.run(run_handshake(store, phone))
