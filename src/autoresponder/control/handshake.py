"""Credential handshake: phone number -> login code -> optional 2FA password.

The handshake runs in a short-lived child process (``autoresponder
handshake``) that talks to Telegram and reports progress with line tokens:

    stdout: WAITING_FOR_CODE | 2FA_NEEDED | AUTH_SUCCESS
    stderr: AUTH_ERROR: <CODE>: <detail>

and reads the code (then the password) from stdin. The orchestrator
exposes this as two calls, ``send_code`` and ``authenticate``, with a single
live HandshakeSession in between. Any error, timeout or unexpected exit
kills the child and drops the session; the caller starts over with
``send_code``.
"""

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable

from autoresponder.control.processes import (
    ChildEvent,
    ChildProcess,
    ProcessLifecycleManager,
    StreamName,
)
from autoresponder.credentials import CredentialStore
from autoresponder.errors import (
    AUTH_ERROR_MARKER,
    AuthErrorKind,
    ClassifiedError,
    classify_auth_error,
    classify_send_code_error,
)

logger = logging.getLogger(__name__)

WAITING_FOR_CODE = "WAITING_FOR_CODE"
TWO_FA_NEEDED = "2FA_NEEDED"
AUTH_SUCCESS = "AUTH_SUCCESS"


class HandshakeStage(str, Enum):
    SENDING_CODE = "sending_code"
    AWAITING_CODE = "awaiting_code"
    AWAITING_PASSWORD = "awaiting_password"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class AuthOutcome:
    success: bool
    message: str
    needs_2fa: bool | None = None
    error: AuthErrorKind | None = None

    @classmethod
    def failure(cls, error: ClassifiedError) -> "AuthOutcome":
        return cls(False, error.message, needs_2fa=error.needs_2fa, error=error.kind)

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"success": self.success, "message": self.message}
        if self.needs_2fa is not None:
            data["needs2FA"] = self.needs_2fa
        return data


class HandshakeSession:
    """The one live handshake: its child process, stage and stage timer."""

    def __init__(self, child: ChildProcess):
        self.child = child
        self.stage = HandshakeStage.SENDING_CODE
        self.stage_timer: asyncio.TimerHandle | None = None
        self.busy = asyncio.Lock()

    def enter(
        self,
        stage: HandshakeStage,
        timeout: float | None = None,
        on_timeout: Callable[[], None] | None = None,
    ) -> None:
        """Move to *stage*, replacing the previous stage timer."""
        self.cancel_timer()
        self.stage = stage
        if timeout is not None and on_timeout is not None:
            self.stage_timer = asyncio.get_running_loop().call_later(timeout, on_timeout)

    def cancel_timer(self) -> None:
        if self.stage_timer is not None:
            self.stage_timer.cancel()
            self.stage_timer = None


class HandshakeOrchestrator:
    """Drives one interactive authentication at a time."""

    def __init__(
        self,
        processes: ProcessLifecycleManager,
        store: CredentialStore,
        code_timeout: float = 30.0,
        auth_timeout: float = 60.0,
        code_idle_timeout: float = 300.0,
        exit_timeout: float = 5.0,
    ):
        self.processes = processes
        self.store = store
        self.code_timeout = code_timeout
        self.auth_timeout = auth_timeout
        self.code_idle_timeout = code_idle_timeout
        self.exit_timeout = exit_timeout
        self._session: HandshakeSession | None = None
        self._spawning = False

    @property
    def session(self) -> HandshakeSession | None:
        return self._session

    @property
    def has_pending_session(self) -> bool:
        return self._session is not None and self._session.child.is_alive

    # ── Step 1: request the login code ─────────────────

    async def send_code(self, api_id: Any, api_hash: str, phone_number: str) -> AuthOutcome:
        if self.has_pending_session or self._spawning:
            return AuthOutcome(False, "A code request is already in progress")
        self._session = None

        self.store.update_api(api_id, api_hash)
        env = {
            "T_API_ID": str(api_id),
            "T_API_HASH": api_hash,
            "PHONE_NUMBER": phone_number,
        }
        self._spawning = True
        try:
            child = await self.processes.spawn_handshake_child(env)
        except OSError as e:
            logger.error(f"Send code process error: {e}")
            return AuthOutcome(
                False, f"Process error: {e}", error=AuthErrorKind.PROCESS_CRASHED)
        finally:
            self._spawning = False

        session = HandshakeSession(child)
        self._session = session
        # authenticate() is rejected until the child has asked for the code
        async with session.busy:
            return await self._await_code(session)

    async def _await_code(self, session: HandshakeSession) -> AuthOutcome:
        child = session.child
        deadline = asyncio.get_running_loop().time() + self.code_timeout

        while True:
            event = await self._next_event(child, deadline)
            if event is None:
                self._end(session)
                return AuthOutcome(
                    False, "Timeout sending code to Telegram",
                    error=AuthErrorKind.PROCESS_TIMEOUT)

            if event.stream == StreamName.EXIT:
                self._end(session)
                return AuthOutcome(
                    False, "Failed to send code to Telegram",
                    error=AuthErrorKind.PROCESS_CRASHED)

            logger.info(f"Send code {event.stream.value}: {event.text}")

            if event.stream == StreamName.STDERR:
                if AUTH_ERROR_MARKER in event.text:
                    self._end(session)
                    return AuthOutcome.failure(classify_send_code_error(event.text))
                continue

            if WAITING_FOR_CODE in event.text:
                session.enter(
                    HandshakeStage.AWAITING_CODE,
                    self.code_idle_timeout,
                    lambda: self._expire(session),
                )
                return AuthOutcome(True, "Code sent to Telegram! Check your messages.")

            if AUTH_SUCCESS in event.text:
                logger.info("Authentication completed without a code")
                return await self._complete(session, "Already authorized. Session saved.")

    # ── Step 2: submit code (and password) ─────────────

    async def authenticate(self, phone_code: str, password: str | None = None) -> AuthOutcome:
        session = self._session
        if session is None or not session.child.is_alive:
            self._session = None
            return AuthOutcome(False, "You must send the code first")
        if session.stage == HandshakeStage.SENDING_CODE:
            return AuthOutcome(False, "The code has not been sent yet")
        if session.busy.locked():
            return AuthOutcome(False, "Authentication is already in progress")

        async with session.busy:
            session.cancel_timer()
            child = session.child
            try:
                child.write_line(phone_code)
            except (BrokenPipeError, ConnectionResetError) as e:
                logger.error(f"Cannot write code to handshake process: {e}")
                self._end(session)
                return AuthOutcome(
                    False, "Authentication process is gone. Send the code again.",
                    error=AuthErrorKind.PROCESS_CRASHED)

            # One deadline for the whole step, not reset by the 2FA sub-wait.
            deadline = asyncio.get_running_loop().time() + self.auth_timeout

            while True:
                event = await self._next_event(child, deadline)
                if event is None:
                    self._end(session)
                    return AuthOutcome(
                        False, "Authentication timed out",
                        error=AuthErrorKind.PROCESS_TIMEOUT)

                if event.stream == StreamName.EXIT:
                    self._end(session)
                    return AuthOutcome(
                        False,
                        f"Authentication process exited unexpectedly (code {event.returncode})",
                        error=AuthErrorKind.PROCESS_CRASHED)

                logger.info(f"Auth {event.stream.value}: {event.text}")

                if event.stream == StreamName.STDERR:
                    if AUTH_ERROR_MARKER in event.text:
                        self._end(session)
                        return AuthOutcome.failure(classify_auth_error(event.text))
                    continue

                if TWO_FA_NEEDED in event.text:
                    if not password:
                        self._end(session)
                        return AuthOutcome(
                            False, "2FA password required", needs_2fa=True,
                            error=AuthErrorKind.SECOND_FACTOR_REQUIRED)
                    session.enter(HandshakeStage.AWAITING_PASSWORD)
                    try:
                        child.write_line(password)
                    except (BrokenPipeError, ConnectionResetError) as e:
                        logger.error(f"Cannot write password to handshake process: {e}")
                        self._end(session)
                        return AuthOutcome(
                            False, "Authentication process is gone. Send the code again.",
                            error=AuthErrorKind.PROCESS_CRASHED)
                    continue

                if AUTH_SUCCESS in event.text:
                    return await self._complete(
                        session, "Authentication successful! Session saved.")

    # ── Session teardown ───────────────────────────────

    async def _complete(self, session: HandshakeSession, message: str) -> AuthOutcome:
        """The child reported success: let it exit, then confirm the record."""
        session.enter(HandshakeStage.COMPLETED)
        try:
            await session.child.wait(self.exit_timeout)
        except asyncio.TimeoutError:
            session.child.kill()
        if self._session is session:
            self._session = None

        if not self.store.load().is_authenticated:
            return AuthOutcome(False, "Failed to save session", error=AuthErrorKind.UNKNOWN)
        return AuthOutcome(True, message)

    def _end(self, session: HandshakeSession) -> None:
        """Fail the session: kill the child and forget it."""
        session.enter(HandshakeStage.FAILED)
        session.child.kill()
        if self._session is session:
            self._session = None

    def _expire(self, session: HandshakeSession) -> None:
        if session.busy.locked() or self._session is not session:
            return
        logger.info("Login code was not submitted in time, closing handshake")
        self._end(session)

    def abort(self) -> None:
        """Kill any live handshake (control plane shutdown)."""
        if self._session is not None:
            self._end(self._session)

    @staticmethod
    async def _next_event(child: ChildProcess, deadline: float) -> ChildEvent | None:
        remaining = deadline - asyncio.get_running_loop().time()
        if remaining <= 0:
            return None
        try:
            return await child.next_event(remaining)
        except asyncio.TimeoutError:
            return None
