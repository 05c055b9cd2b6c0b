"""Per-conversation response timers.

The registry is the only owner of ConversationState entries. Its mutators
are ``on_inbound_activity`` / ``arm`` (create + arm), ``on_operator_reply``
(cancel) and the timer fire path; each keeps the invariant of at most one
live timer per chat id.

All mutations run synchronously on the event loop thread, so a cancel and a
fire for the same chat can never interleave: a cancelled TimerHandle never
runs, and a timer that already ran can no longer be cancelled.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Awaitable, Callable

from autoresponder.messaging import ChatKind

logger = logging.getLogger(__name__)


class ResponseTimer:
    """One cancellable delayed action."""

    def __init__(self, delay: float, callback: Callable[[], None]):
        self._loop = asyncio.get_running_loop()
        self.delay = delay
        self.deadline = self._loop.time() + delay
        self._callback = callback
        self._handle: asyncio.TimerHandle | None = self._loop.call_later(delay, self._run)
        self.fired = False
        self.cancelled = False

    @property
    def active(self) -> bool:
        return not (self.fired or self.cancelled)

    def remaining(self) -> float:
        return max(0.0, self.deadline - self._loop.time())

    def cancel(self) -> bool:
        """Cancel if still pending. Returns False if it already fired."""
        if not self.active:
            return False
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None
        self.cancelled = True
        return True

    def _run(self) -> None:
        self._handle = None
        self.fired = True
        self._callback()


@dataclass
class ConversationState:
    chat_id: int
    kind: ChatKind = ChatKind.PRIVATE
    responded_by_operator: bool = False
    timer: ResponseTimer | None = None
    expires_at: float = field(default=0.0)
    prune: asyncio.TimerHandle | None = None

    def cancel(self) -> None:
        if self.timer is not None:
            self.timer.cancel()
        if self.prune is not None:
            self.prune.cancel()
            self.prune = None


FireHandler = Callable[[ConversationState], Awaitable[None]]


class ConversationRegistry:
    """Tracks conversations waiting for an operator answer.

    Usage:
        registry = ConversationRegistry(dispatcher.fire, window=120)
        registry.on_inbound_activity(chat_id, ChatKind.PRIVATE)
        registry.on_operator_reply(chat_id)   # before expiry: nothing is sent
    """

    def __init__(self, on_fire: FireHandler, window: float = 120.0):
        self.window = window
        self._on_fire = on_fire
        self._states: dict[int, ConversationState] = {}
        self._dispatching: set[asyncio.Task] = set()

    def __contains__(self, chat_id: int) -> bool:
        return self._live(chat_id) is not None

    def __len__(self) -> int:
        return sum(1 for chat_id in list(self._states) if self._live(chat_id))

    def get(self, chat_id: int) -> ConversationState | None:
        return self._live(chat_id)

    @property
    def pending_count(self) -> int:
        """Conversations with a timer still counting down."""
        return sum(
            1 for s in self._states.values() if s.timer is not None and s.timer.active
        )

    def status(self, chat_id: int) -> str:
        state = self._live(chat_id)
        if state is None:
            return "No active state"
        if state.responded_by_operator:
            return "Active timer: Response given"
        return "Active timer: Waiting for response"

    def on_inbound_activity(self, chat_id: int, kind: ChatKind) -> bool:
        """Arm a timer for a new conversation. Returns True if one was armed.

        Later messages in the same conversation do not re-arm the timer.
        """
        if self._live(chat_id) is not None:
            return False
        self._arm(chat_id, kind, self.window)
        logger.info(f"Timer set for {self.window:g}s for {kind.value} {chat_id}")
        return True

    def arm(
        self,
        chat_id: int,
        kind: ChatKind,
        window: float | None = None,
    ) -> ConversationState:
        """Explicitly (re)arm a conversation, replacing any existing entry."""
        existing = self._states.pop(chat_id, None)
        if existing is not None:
            existing.cancel()
        return self._arm(chat_id, kind, self.window if window is None else window)

    def on_operator_reply(self, chat_id: int) -> bool:
        """Mark the conversation answered and cancel its timer."""
        state = self._live(chat_id)
        if state is None:
            return False
        state.responded_by_operator = True
        if state.timer is not None:
            state.timer.cancel()
        if state.prune is None:
            # forget the answered conversation once its window is over
            state.prune = asyncio.get_running_loop().call_at(
                state.expires_at, self._drop_answered, state)
        logger.info(f"Operator replied in {chat_id}, timer cancelled")
        return True

    def close(self) -> None:
        """Cancel every pending timer and forget all conversations."""
        for state in self._states.values():
            state.cancel()
        self._states.clear()

    async def drain(self) -> None:
        """Wait for in-flight dispatches to finish."""
        if self._dispatching:
            await asyncio.gather(*self._dispatching, return_exceptions=True)

    def _arm(self, chat_id: int, kind: ChatKind, window: float) -> ConversationState:
        state = ConversationState(chat_id=chat_id, kind=kind)
        timer = ResponseTimer(window, lambda: self._on_timer(state))
        state.timer = timer
        state.expires_at = timer.deadline
        self._states[chat_id] = state
        return state

    def _live(self, chat_id: int) -> ConversationState | None:
        """Entry for chat_id, dropping answered entries whose window elapsed."""
        state = self._states.get(chat_id)
        if state is None:
            return None
        if (
            state.responded_by_operator
            and asyncio.get_running_loop().time() >= state.expires_at
        ):
            del self._states[chat_id]
            return None
        return state

    def _drop_answered(self, state: ConversationState) -> None:
        state.prune = None
        if self._states.get(state.chat_id) is state:
            del self._states[state.chat_id]

    def _on_timer(self, state: ConversationState) -> None:
        if self._states.get(state.chat_id) is not state:
            return
        task = asyncio.create_task(self._fire(state))
        self._dispatching.add(task)
        task.add_done_callback(self._dispatching.discard)

    async def _fire(self, state: ConversationState) -> None:
        try:
            await self._on_fire(state)
        except Exception as e:
            logger.error(f"Delayed response for {state.chat_id} failed: {e}")
        finally:
            if self._states.get(state.chat_id) is state:
                del self._states[state.chat_id]
