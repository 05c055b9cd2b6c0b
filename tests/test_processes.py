"""Tests for the listener lifecycle, using short-lived Python children."""

import asyncio
import os
import sys
import textwrap

from autoresponder.control import ProcessLifecycleManager
from autoresponder.control.processes import ChildProcess, StreamName, child_command

SLEEPER = "import time; print('listening', flush=True); time.sleep(30)"

STUBBORN = textwrap.dedent("""
    import signal, time
    signal.signal(signal.SIGTERM, signal.SIG_IGN)
    print('ignoring SIGTERM', flush=True)
    time.sleep(30)
""")


def manager(store, script: str = SLEEPER, grace: float = 2.0) -> ProcessLifecycleManager:
    return ProcessLifecycleManager(
        store,
        stop_grace_seconds=grace,
        listener_command=[sys.executable, "-c", script],
    )


async def wait_until(predicate, timeout: float = 5.0) -> bool:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while loop.time() < deadline:
        if predicate():
            return True
        await asyncio.sleep(0.05)
    return predicate()


class TestProcessLifecycle:
    def test_requires_session(self, store):
        result = asyncio.run(manager(store).start_listener("1", "h"))
        assert result.success is False
        assert result.message == "You need to authenticate first"

    def test_start_and_stop(self, authenticated_store):
        processes = manager(authenticated_store)

        async def scenario():
            started = await processes.start_listener("12345", "abcdef")
            running = processes.is_running()
            stopped = await processes.stop_listener()
            return started, running, stopped, processes.is_running()

        started, running, stopped, still_running = asyncio.run(scenario())
        assert started.to_dict() == {"success": True, "message": "Userbot started successfully"}
        assert running is True
        assert stopped.to_dict() == {"success": True, "message": "Userbot stopped"}
        assert still_running is False

    def test_single_listener(self, authenticated_store):
        processes = manager(authenticated_store)

        async def scenario():
            await processes.start_listener("12345", "abcdef")
            second = await processes.start_listener("12345", "abcdef")
            await processes.shutdown()
            return second

        second = asyncio.run(scenario())
        assert second.success is False
        assert second.message == "Userbot is already running"

    def test_stop_when_not_running(self, store):
        result = asyncio.run(manager(store).stop_listener())
        assert result.success is False
        assert result.message == "Userbot is not running"

    def test_force_kill_after_grace(self, authenticated_store):
        processes = manager(authenticated_store, STUBBORN, grace=0.3)

        async def scenario():
            await processes.start_listener("12345", "abcdef")
            child = processes.listener
            # let the child install its SIGTERM handler
            await asyncio.sleep(1.0)
            result = await processes.stop_listener()
            return result, child

        result, child = asyncio.run(scenario())
        assert result.message == "Userbot stopped"
        assert child.returncode is not None
        assert processes.listener is None

    def test_exited_listener_clears_handle(self, authenticated_store):
        processes = manager(authenticated_store, "print('bye')")

        async def scenario():
            await processes.start_listener("12345", "abcdef")
            return await wait_until(lambda: processes.listener is None)

        assert asyncio.run(scenario()) is True
        assert processes.is_running() is False

    def test_child_receives_credentials(self, authenticated_store):
        script = (
            "import os; print(os.environ['T_API_ID'], os.environ['T_API_HASH'], "
            "os.environ['AUTORESPONDER_CREDENTIALS'], flush=True)"
        )

        async def scenario():
            processes = ProcessLifecycleManager(authenticated_store)
            env = processes._base_env({"T_API_ID": "777", "T_API_HASH": "xyz"})
            child = await ChildProcess.spawn([sys.executable, "-c", script], env, "Echo")
            event = await child.next_event(timeout=10)
            await child.wait(10)
            return event

        event = asyncio.run(scenario())
        assert event.stream == StreamName.STDOUT
        api_id, api_hash, path = event.text.split(" ", 2)
        assert (api_id, api_hash) == ("777", "xyz")
        assert path == str(authenticated_store.path.resolve())


class TestChildProcess:
    def test_oversized_line_does_not_stop_reader(self):
        """A line beyond the stream limit is skipped and the exit still arrives."""
        script = "import sys; print('x' * 200000, flush=True); print('after', flush=True)"

        async def scenario():
            child = await ChildProcess.spawn([sys.executable, "-c", script], dict(os.environ), "Chatty")
            texts = []
            while True:
                event = await child.next_event(timeout=10)
                if event.stream == StreamName.EXIT:
                    break
                texts.append(event.text)
            returncode = await child.wait(10)
            return texts, returncode, child.is_alive

        texts, returncode, alive = asyncio.run(scenario())
        assert "after" in texts
        assert returncode == 0
        assert alive is False


def test_child_command_runs_package():
    assert child_command("listen", "--test")[1:] == ["-m", "autoresponder", "listen", "--test"]
