"""Child process lifecycle for the control plane.

The control plane owns at most one listener process (the long-running
userbot) and hands out handshake processes to the HandshakeOrchestrator.
Both are wrapped in ChildProcess, which multiplexes the child's stdout,
stderr and exit into a single queue of line events.
"""

import asyncio
import logging
import os
import signal
import sys
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any

from autoresponder.credentials import CREDENTIALS_ENV, CredentialStore

logger = logging.getLogger(__name__)


class StreamName(str, Enum):
    STDOUT = "stdout"
    STDERR = "stderr"
    EXIT = "exit"


@dataclass(frozen=True)
class ChildEvent:
    stream: StreamName
    text: str = ""
    returncode: int | None = None


@dataclass(frozen=True)
class ControlResult:
    success: bool
    message: str

    def to_dict(self) -> dict[str, Any]:
        return {"success": self.success, "message": self.message}


class ChildProcess:
    """An asyncio subprocess with line-oriented, multiplexed output.

    Every stdout/stderr line becomes a ChildEvent on ``events``; once both
    streams are closed and the process has exited, a final EXIT event is
    queued. Consumers read with ``next_event``.
    """

    def __init__(self, proc: asyncio.subprocess.Process, name: str):
        self.proc = proc
        self.name = name
        self.events: asyncio.Queue[ChildEvent] = asyncio.Queue()
        self._exited = asyncio.Event()
        self._pump = asyncio.create_task(self._run_pumps())

    @classmethod
    async def spawn(
        cls,
        command: list[str],
        env: dict[str, str],
        name: str,
        cwd: Path | None = None,
    ) -> "ChildProcess":
        proc = await asyncio.create_subprocess_exec(
            *command,
            stdin=asyncio.subprocess.PIPE,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            env=env,
            cwd=str(cwd) if cwd else None,
        )
        logger.info(f"Started {name} process (pid={proc.pid})")
        return cls(proc, name)

    @property
    def pid(self) -> int:
        return self.proc.pid

    @property
    def returncode(self) -> int | None:
        return self.proc.returncode

    @property
    def is_alive(self) -> bool:
        return self.proc.returncode is None and not self._exited.is_set()

    async def next_event(self, timeout: float | None = None) -> ChildEvent:
        """Next line or exit event. Raises asyncio.TimeoutError."""
        if timeout is None:
            return await self.events.get()
        return await asyncio.wait_for(self.events.get(), timeout)

    def write_line(self, text: str) -> None:
        """Write one newline-terminated line to the child's stdin."""
        if self.proc.stdin is None or self.proc.stdin.is_closing():
            raise BrokenPipeError(f"{self.name} stdin is closed")
        self.proc.stdin.write(f"{text}\n".encode())

    def terminate(self) -> None:
        self._signal(signal.SIGTERM)

    def kill(self) -> None:
        self._signal(signal.SIGKILL)

    async def wait(self, timeout: float | None = None) -> int | None:
        """Wait until the process exited and its output was consumed."""
        if timeout is None:
            await self._exited.wait()
        else:
            await asyncio.wait_for(self._exited.wait(), timeout)
        return self.proc.returncode

    def _signal(self, sig: int) -> None:
        if self.proc.returncode is not None:
            return
        try:
            self.proc.send_signal(sig)
        except ProcessLookupError:
            pass

    async def _pump_stream(self, stream: asyncio.StreamReader | None, name: StreamName) -> None:
        if stream is None:
            return
        while True:
            try:
                line = await stream.readline()
            except ValueError as e:
                # line longer than the reader limit; the reader skips past it
                logger.warning(f"{self.name} {name.value}: dropped oversized line ({e})")
                continue
            if not line:
                return
            text = line.decode(errors="replace").rstrip("\r\n")
            await self.events.put(ChildEvent(name, text))

    async def _run_pumps(self) -> None:
        try:
            results = await asyncio.gather(
                self._pump_stream(self.proc.stdout, StreamName.STDOUT),
                self._pump_stream(self.proc.stderr, StreamName.STDERR),
                return_exceptions=True,
            )
            for result in results:
                if isinstance(result, Exception):
                    logger.error(f"{self.name} output reader failed: {result}")
            returncode = await self.proc.wait()
            logger.info(f"{self.name} process exited with code {returncode}")
        finally:
            self._exited.set()
        await self.events.put(ChildEvent(StreamName.EXIT, returncode=returncode))


def child_command(subcommand: str, *args: str) -> list[str]:
    """Command line running one of our own CLI subcommands."""
    return [sys.executable, "-m", "autoresponder", subcommand, *args]


class ProcessLifecycleManager:
    """Starts, supervises and stops the listener; spawns handshake children.

    Only one listener may run at a time. A listener that exits on its own
    (crash or disconnect) clears the tracked handle; it is not restarted.
    """

    def __init__(
        self,
        store: CredentialStore,
        stop_grace_seconds: float = 5.0,
        listener_command: list[str] | None = None,
        handshake_command: list[str] | None = None,
        cwd: Path | None = None,
    ):
        self.store = store
        self.stop_grace_seconds = stop_grace_seconds
        self.listener_command = listener_command
        self.handshake_command = handshake_command or child_command("handshake")
        self.cwd = cwd
        self._listener: ChildProcess | None = None
        self._supervisor: asyncio.Task | None = None

    @property
    def listener(self) -> ChildProcess | None:
        return self._listener

    def is_running(self) -> bool:
        return self._listener is not None and self._listener.is_alive

    def _base_env(self, extra: dict[str, str]) -> dict[str, str]:
        env = dict(os.environ)
        env.update(extra)
        env[CREDENTIALS_ENV] = str(self.store.path.resolve())
        env["PYTHONUNBUFFERED"] = "1"
        return env

    async def start_listener(
        self,
        api_id: Any,
        api_hash: str,
        test_mode: bool = False,
    ) -> ControlResult:
        if self.is_running():
            return ControlResult(False, "Userbot is already running")

        if not self.store.load().is_authenticated:
            return ControlResult(False, "You need to authenticate first")

        command = self.listener_command
        if command is None:
            command = child_command("listen", *(["--test"] if test_mode else []))

        env = self._base_env({"T_API_ID": str(api_id), "T_API_HASH": api_hash})
        try:
            child = await ChildProcess.spawn(command, env, "Userbot", cwd=self.cwd)
        except OSError as e:
            logger.error(f"Error starting userbot: {e}")
            return ControlResult(False, f"Startup error: {e}")

        self._listener = child
        self._supervisor = asyncio.create_task(self._supervise(child))
        return ControlResult(True, "Userbot started successfully")

    async def _supervise(self, child: ChildProcess) -> None:
        """Relay listener output to the log; clear the handle on exit."""
        while True:
            event = await child.next_event()
            if event.stream == StreamName.EXIT:
                break
            logger.info(f"Userbot {event.stream.value}: {event.text}")
        if self._listener is child:
            self._listener = None

    async def stop_listener(self) -> ControlResult:
        if not self.is_running():
            return ControlResult(False, "Userbot is not running")

        child = self._listener
        child.terminate()
        try:
            await child.wait(self.stop_grace_seconds)
        except asyncio.TimeoutError:
            logger.info(
                f"Userbot did not exit within {self.stop_grace_seconds:g}s, killing it")
            child.kill()
            await child.wait()

        if self._supervisor is not None:
            await self._supervisor
            self._supervisor = None
        if self._listener is child:
            self._listener = None
        return ControlResult(True, "Userbot stopped")

    async def spawn_handshake_child(self, env: dict[str, str]) -> ChildProcess:
        """Start a handshake process. Raises OSError if it cannot start."""
        return await ChildProcess.spawn(
            self.handshake_command, self._base_env(env), "Handshake", cwd=self.cwd,
        )

    async def shutdown(self) -> None:
        if self.is_running():
            await self.stop_listener()
