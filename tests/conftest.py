"""Shared fakes and fixtures."""

import pytest

from autoresponder.config import CannedMessages
from autoresponder.credentials import CredentialRecord, CredentialStore
from autoresponder.errors import DeliveryError, RecipientUnknownError
from autoresponder.messaging import ChatInfo, MessagingClient


class FakeClient(MessagingClient):
    """In-memory MessagingClient recording everything it is asked to send."""

    def __init__(self, chats: dict[int, ChatInfo] | None = None):
        self.chats = chats or {}
        self.sent: list[tuple[int, str]] = []
        self.unknown: set[int] = set()       # peers not resolvable until added
        self.failing: set[int] = set()       # peers that always reject messages
        self.own: set[tuple[int, int]] = set()
        self.contacts_added: list[int] = []
        self.lookup_error: Exception | None = None

    async def send_message(self, chat_id: int, text: str) -> None:
        if chat_id in self.unknown:
            raise RecipientUnknownError(chat_id, "Could not find the input entity")
        if chat_id in self.failing:
            raise DeliveryError(chat_id, "CHAT_WRITE_FORBIDDEN")
        self.sent.append((chat_id, text))

    async def describe_chat(self, chat_id: int) -> ChatInfo:
        if self.lookup_error is not None:
            raise self.lookup_error
        return self.chats.get(chat_id, ChatInfo())

    async def add_contact(self, user_id: int) -> bool:
        self.contacts_added.append(user_id)
        self.unknown.discard(user_id)
        return True

    def is_own_message(self, chat_id: int, message_id: int | None) -> bool:
        return (chat_id, message_id) in self.own

    def texts_to(self, chat_id: int) -> list[str]:
        return [text for cid, text in self.sent if cid == chat_id]


@pytest.fixture
def client():
    return FakeClient()


@pytest.fixture
def messages():
    return CannedMessages()


@pytest.fixture
def store(tmp_path):
    """Credential store in a temp dir (never touches ./config.json)."""
    return CredentialStore(tmp_path / "config.json")


@pytest.fixture
def authenticated_store(store):
    store.save(CredentialRecord(api_id="12345", api_hash="abcdef", session="1Aabc"))
    return store

