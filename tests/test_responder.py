"""Tests for the responder: conversation timers, delayed dispatch and intake."""

import asyncio

from autoresponder.messaging import ChatInfo, ChatKind, InboundMessage
from autoresponder.responder import (
    ConversationRegistry,
    ConversationState,
    DelayedResponseDispatcher,
    SafeSender,
    create_intake_handler,
)

WINDOW = 0.05


def inbound(chat_id: int, text: str = "hi", sender_id: int | None = None, **kwargs) -> InboundMessage:
    return InboundMessage(
        chat_id=chat_id,
        sender_id=chat_id if sender_id is None else sender_id,
        text=text,
        **kwargs,
    )


# ── Conversation Registry ─────────────────────────────────────

class TestConversationRegistry:
    """Timer bookkeeping, independent of any messaging client."""

    def test_inbound_arms_once(self):
        """Later messages in the same conversation do not re-arm the timer."""
        fired = []

        async def scenario():
            registry = ConversationRegistry(lambda s: _record(fired, s), window=10)
            first = registry.on_inbound_activity(1, ChatKind.PRIVATE)
            state = registry.get(1)
            second = registry.on_inbound_activity(1, ChatKind.PRIVATE)
            same = registry.get(1) is state
            pending = registry.pending_count
            registry.close()
            return first, second, same, pending

        first, second, same, pending = asyncio.run(scenario())
        assert first is True
        assert second is False
        assert same
        assert pending == 1

    def test_fire_removes_entry(self):
        fired = []

        async def scenario():
            registry = ConversationRegistry(lambda s: _record(fired, s), window=WINDOW)
            registry.on_inbound_activity(7, ChatKind.GROUP)
            await asyncio.sleep(WINDOW * 3)
            await registry.drain()
            return registry

        registry = asyncio.run(scenario())
        assert [s.chat_id for s in fired] == [7]
        assert fired[0].kind == ChatKind.GROUP
        assert len(registry) == 0

    def test_reply_before_expiry_cancels(self):
        fired = []

        async def scenario():
            registry = ConversationRegistry(lambda s: _record(fired, s), window=WINDOW)
            registry.on_inbound_activity(1, ChatKind.PRIVATE)
            replied = registry.on_operator_reply(1)
            status = registry.status(1)
            pending = registry.pending_count
            await asyncio.sleep(WINDOW * 3)
            await registry.drain()
            return replied, status, pending, 1 in registry

        replied, status, pending, still_tracked = asyncio.run(scenario())
        assert replied is True
        assert status == "Active timer: Response given"
        assert pending == 0
        assert fired == []
        # Answered entries are dropped once their window has elapsed.
        assert still_tracked is False

    def test_answered_entry_is_dropped_without_lookup(self):
        """Answered conversations are forgotten when their window ends."""
        async def scenario():
            registry = ConversationRegistry(lambda s: _record([], s), window=WINDOW)
            registry.on_inbound_activity(1, ChatKind.PRIVATE)
            registry.on_operator_reply(1)
            tracked_before = 1 in registry._states
            await asyncio.sleep(WINDOW * 3)
            return tracked_before, dict(registry._states)

        tracked_before, remaining = asyncio.run(scenario())
        assert tracked_before is True
        assert remaining == {}

    def test_rearm_after_reply_keeps_new_entry(self):
        fired = []

        async def scenario():
            registry = ConversationRegistry(lambda s: _record(fired, s), window=WINDOW)
            registry.on_inbound_activity(1, ChatKind.PRIVATE)
            registry.on_operator_reply(1)
            registry.arm(1, ChatKind.PRIVATE, 60)
            await asyncio.sleep(WINDOW * 3)
            state = registry.get(1)
            registry.close()
            return state

        state = asyncio.run(scenario())
        assert state is not None
        assert state.responded_by_operator is False
        assert fired == []

    def test_reply_after_fire_is_noop(self):
        fired = []

        async def scenario():
            registry = ConversationRegistry(lambda s: _record(fired, s), window=WINDOW)
            registry.on_inbound_activity(1, ChatKind.PRIVATE)
            await asyncio.sleep(WINDOW * 3)
            await registry.drain()
            return registry.on_operator_reply(1), registry.status(1)

        replied, status = asyncio.run(scenario())
        assert replied is False
        assert status == "No active state"
        assert len(fired) == 1

    def test_arm_replaces_existing_timer(self):
        fired = []

        async def scenario():
            registry = ConversationRegistry(lambda s: _record(fired, s), window=60)
            registry.on_inbound_activity(1, ChatKind.PRIVATE)
            old = registry.get(1)
            registry.arm(1, ChatKind.PRIVATE, WINDOW)
            await asyncio.sleep(WINDOW * 3)
            await registry.drain()
            return old

        old = asyncio.run(scenario())
        assert old.timer.cancelled
        assert len(fired) == 1
        assert fired[0] is not old

    def test_close_cancels_everything(self):
        fired = []

        async def scenario():
            registry = ConversationRegistry(lambda s: _record(fired, s), window=WINDOW)
            for chat_id in (1, 2, -100):
                registry.on_inbound_activity(chat_id, ChatKind.PRIVATE)
            registry.close()
            await asyncio.sleep(WINDOW * 3)
            return len(registry)

        assert asyncio.run(scenario()) == 0
        assert fired == []

    def test_status_without_state(self):
        async def scenario():
            registry = ConversationRegistry(lambda s: _record([], s))
            return registry.status(42)

        assert asyncio.run(scenario()) == "No active state"


async def _record(fired: list, state: ConversationState) -> None:
    fired.append(state)


# ── Dispatch ──────────────────────────────────────────────────

class TestSafeSender:
    def test_retries_after_adding_contact(self, client):
        client.unknown.add(5)
        ok = asyncio.run(SafeSender(client).send(5, "hello"))
        assert ok is True
        assert client.contacts_added == [5]
        assert client.sent == [(5, "hello")]

    def test_no_contact_retry_for_groups(self, client):
        client.unknown.add(-100)
        ok = asyncio.run(SafeSender(client).send(-100, "hello"))
        assert ok is False
        assert client.contacts_added == []

    def test_delivery_failure_is_swallowed(self, client):
        client.failing.add(9)
        assert asyncio.run(SafeSender(client).send(9, "hello")) is False
        assert client.sent == []


class TestDelayedResponseDispatcher:
    def test_text_depends_only_on_kind(self, client, messages):
        dispatcher = DelayedResponseDispatcher(SafeSender(client), messages)

        async def scenario():
            await dispatcher.fire(ConversationState(chat_id=1, kind=ChatKind.PRIVATE))
            await dispatcher.fire(ConversationState(chat_id=-100, kind=ChatKind.GROUP))
            await dispatcher.fire(ConversationState(chat_id=2, kind=ChatKind.PRIVATE))

        asyncio.run(scenario())
        assert client.sent == [
            (1, messages.private),
            (-100, messages.group),
            (2, messages.private),
        ]

    def test_answered_conversation_is_not_sent(self, client, messages):
        dispatcher = DelayedResponseDispatcher(SafeSender(client), messages)
        state = ConversationState(chat_id=1, responded_by_operator=True)
        assert asyncio.run(dispatcher.fire(state)) is False
        assert client.sent == []

    def test_failed_delivery_reports_false(self, client, messages):
        client.failing.add(3)
        dispatcher = DelayedResponseDispatcher(SafeSender(client), messages)
        assert asyncio.run(dispatcher.fire(ConversationState(chat_id=3))) is False


# ── Intake ────────────────────────────────────────────────────

class TestMessageIntake:
    """End-to-end through create_intake_handler with a fake client."""

    def test_no_reply_sends_auto_response(self, client, messages):
        async def scenario():
            handler = create_intake_handler(client, WINDOW, messages)
            await handler.handle(inbound(1))
            await asyncio.sleep(WINDOW * 3)
            await handler.registry.drain()
            return handler

        handler = asyncio.run(scenario())
        assert client.texts_to(1) == [messages.acknowledgement, messages.private]
        assert 1 not in handler.registry

    def test_operator_reply_prevents_auto_response(self, client, messages):
        async def scenario():
            handler = create_intake_handler(client, WINDOW, messages)
            await handler.handle(inbound(1))
            await handler.handle(inbound(1, "on it", sender_id=99, outgoing=True, message_id=8))
            pending = handler.registry.pending_count
            await asyncio.sleep(WINDOW * 3)
            await handler.registry.drain()
            return pending

        assert asyncio.run(scenario()) == 0
        assert client.texts_to(1) == [messages.acknowledgement]

    def test_own_outgoing_messages_are_ignored(self, client, messages):
        client.own.add((1, 8))

        async def scenario():
            handler = create_intake_handler(client, 60, messages)
            await handler.handle(inbound(1))
            await handler.handle(inbound(1, messages.acknowledgement, outgoing=True, message_id=8))
            state = handler.registry.get(1)
            handler.registry.close()
            return state

        state = asyncio.run(scenario())
        assert state is not None
        assert state.responded_by_operator is False

    def test_lookup_failure_falls_back_to_private(self, client, messages):
        client.lookup_error = RuntimeError("entity not cached")

        async def scenario():
            handler = create_intake_handler(client, 60, messages)
            await handler.handle(inbound(1))
            kind = handler.registry.get(1).kind
            handler.registry.close()
            return kind

        assert asyncio.run(scenario()) == ChatKind.PRIVATE
        assert client.texts_to(1) == [messages.acknowledgement]

    def test_groups_are_tracked_but_not_acknowledged(self, client, messages):
        client.chats[-100] = ChatInfo(kind=ChatKind.GROUP, can_write=True)
        client.chats[-200] = ChatInfo(kind=ChatKind.GROUP, can_write=False)

        async def scenario():
            handler = create_intake_handler(client, 60, messages)
            await handler.handle(inbound(-100, sender_id=5))
            await handler.handle(inbound(-200, sender_id=5))
            tracked = (-100 in handler.registry, -200 in handler.registry)
            handler.registry.close()
            return tracked

        assert asyncio.run(scenario()) == (True, True)
        assert client.sent == []

    def test_forwards_to_admin(self, client, messages):
        async def scenario():
            handler = create_intake_handler(client, 60, messages, admin_chat_id=500)
            await handler.handle(inbound(1, "need help"))
            await handler.handle(inbound(500, "note to self"))
            handler.registry.close()

        asyncio.run(scenario())
        assert client.texts_to(500) == [
            "New message from private 1:\nneed help",
            messages.acknowledgement,
        ]

    def test_admin_message_in_tracked_chat_is_operator_reply(self, client, messages):
        client.chats[-100] = ChatInfo(kind=ChatKind.GROUP)

        async def scenario():
            handler = create_intake_handler(client, 60, messages, admin_chat_id=500)
            await handler.handle(inbound(-100, "question", sender_id=5))
            await handler.handle(inbound(-100, "answer", sender_id=500))
            status = handler.registry.status(-100)
            handler.registry.close()
            return status

        assert asyncio.run(scenario()) == "Active timer: Response given"

    def test_handler_never_raises(self, client, messages):
        async def scenario():
            handler = create_intake_handler(client, 60, messages)

            def broken(*args, **kwargs):
                raise RuntimeError("boom")

            handler.registry.on_inbound_activity = broken
            await handler.handle(inbound(1))

        asyncio.run(scenario())
