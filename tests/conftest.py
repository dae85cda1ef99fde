"""
Shared fixtures: in-memory provider and store fakes used by the
orchestrator and scheduler tests.
"""

from __future__ import annotations

import dataclasses
from typing import Any, Dict, List, Optional, Tuple

import pytest

from inboxsync.errors import ProviderError
from inboxsync.models import Account, Contact, Conversation, Message, Watermark, WriteResult
from inboxsync.provider import MessagingProvider, ProviderPage

WORKSPACE = "ws-1"
ACCOUNT = "acc-linkedin"


class FakeProvider(MessagingProvider):
    """Serves canned Unipile payloads; raises configured errors per call."""

    def __init__(
        self,
        accounts: Optional[List[Dict[str, Any]]] = None,
        conversations: Optional[Dict[str, List[Dict[str, Any]]]] = None,
        messages: Optional[Dict[str, List[Dict[str, Any]]]] = None,
        attendees: Optional[Dict[str, List[Dict[str, Any]]]] = None,
        page_size: int = 50,
    ) -> None:
        self.accounts = accounts or []
        self.conversations = conversations or {}
        self.messages = messages or {}
        self.attendees = attendees or {}
        self.page_size = page_size
        self.message_errors: Dict[str, Exception] = {}
        self.attendee_errors: Dict[str, Exception] = {}
        self.accounts_error: Optional[Exception] = None
        self.calls: List[Tuple[str, Any]] = []
        self.closed = False

    async def list_accounts(self) -> List[Dict[str, Any]]:
        self.calls.append(("accounts", None))
        if self.accounts_error is not None:
            raise self.accounts_error
        return list(self.accounts)

    async def list_conversations(
        self,
        account_id: str,
        page: Any = None,
        limit: Optional[int] = None,
    ) -> ProviderPage:
        self.calls.append(("conversations", page))
        size = limit or self.page_size
        offset = int(page or 0)
        items = self.conversations.get(account_id, [])[offset:offset + size]
        if not items:
            return ProviderPage(items=[], next_page=None)
        return ProviderPage(items=list(items), next_page=offset + len(items))

    async def list_messages(
        self,
        account_id: str,
        conversation_id: str,
        limit: int,
    ) -> List[Dict[str, Any]]:
        self.calls.append(("messages", conversation_id))
        if conversation_id in self.message_errors:
            raise self.message_errors[conversation_id]
        return list(self.messages.get(conversation_id, []))[:limit]

    async def list_attendees(self, conversation_id: str) -> List[Dict[str, Any]]:
        self.calls.append(("attendees", conversation_id))
        if conversation_id in self.attendee_errors:
            raise self.attendee_errors[conversation_id]
        return list(self.attendees.get(conversation_id, []))

    async def close(self) -> None:
        self.closed = True


class FakeStore:
    """Dict-backed stand-in for ``SyncStore`` honouring the conflict keys."""

    def __init__(self) -> None:
        self.accounts: Dict[Tuple[str, str, str], Account] = {}
        self.conversations: Dict[Tuple[str, str, str], Tuple[int, Conversation]] = {}
        self.messages: Dict[Tuple[int, str], Message] = {}
        self.contacts: Dict[Tuple[str, str, str], Contact] = {}
        self.watermarks: Dict[Tuple[str, str, str], Watermark] = {}
        self.saved_watermarks: List[Tuple[Watermark, bool]] = []
        self._next_id = 1

    async def upsert_account(self, workspace_id: str, account: Account) -> None:
        self.accounts[(workspace_id, account.provider, account.external_id)] = account

    async def upsert_conversation(
        self, workspace_id: str, conversation: Conversation
    ) -> Tuple[int, bool]:
        key = (workspace_id, conversation.provider, conversation.external_id)
        if key in self.conversations:
            conversation_id, _ = self.conversations[key]
            self.conversations[key] = (conversation_id, conversation)
            return conversation_id, False
        conversation_id = self._next_id
        self._next_id += 1
        self.conversations[key] = (conversation_id, conversation)
        return conversation_id, True

    async def get_conversation_id(
        self, workspace_id: str, provider: str, external_id: str
    ) -> Optional[int]:
        entry = self.conversations.get((workspace_id, provider, external_id))
        return entry[0] if entry else None

    async def upsert_messages(
        self, workspace_id: str, conversation_id: int, messages: List[Message]
    ) -> WriteResult:
        result = WriteResult()
        for message in messages:
            key = (conversation_id, message.external_id)
            if key not in self.messages:
                self.messages[key] = message
                result.created += 1
        return result

    async def upsert_contact(self, workspace_id: str, contact: Contact) -> bool:
        key = (workspace_id, contact.provider, contact.external_id)
        created = key not in self.contacts
        self.contacts[key] = contact
        return created

    async def get_watermark(
        self, workspace_id: str, account_id: str, sync_type: str
    ) -> Optional[Watermark]:
        return self.watermarks.get((workspace_id, account_id, sync_type))

    async def save_watermark(self, watermark: Watermark, advance: bool = True) -> None:
        self.saved_watermarks.append((watermark, advance))
        key = (watermark.workspace_id, watermark.account_id, watermark.sync_type)
        previous = self.watermarks.get(key)
        stored = watermark
        if not advance:
            stored = dataclasses.replace(
                watermark,
                last_synced_at=previous.last_synced_at if previous else None,
            )
        self.watermarks[key] = stored


def linkedin_account(account_id: str = ACCOUNT, status: str = "OK") -> Dict[str, Any]:
    return {
        "id": account_id,
        "name": "Sales Seat",
        "type": "LINKEDIN",
        "sources": [{"id": f"{account_id}_MESSAGING", "status": status}],
    }


def chat(chat_id: str, timestamp: str = "2024-05-01T10:00:00.000Z", **extra: Any) -> Dict[str, Any]:
    payload = {
        "id": chat_id,
        "account_id": ACCOUNT,
        "account_type": "LINKEDIN",
        "name": "Jane Doe",
        "attendee_provider_id": f"prov-{chat_id}",
        "timestamp": timestamp,
        "unread_count": 0,
        "archived": 0,
    }
    payload.update(extra)
    return payload


def attendee(provider_id: str, name: str, is_self: bool = False) -> Dict[str, Any]:
    return {
        "id": f"att-{provider_id}",
        "provider_id": provider_id,
        "name": name,
        "is_self": 1 if is_self else 0,
        "profile_url": f"https://www.linkedin.com/in/{provider_id}",
        "specifics": {
            "provider": "LINKEDIN",
            "occupation": "Head of Growth at Acme",
            "network_distance": "DISTANCE_1",
        },
    }


@pytest.fixture
def fake_store() -> FakeStore:
    return FakeStore()


@pytest.fixture
def fake_provider() -> FakeProvider:
    """Two accounts, one conversation with three messages (one without id)."""
    return FakeProvider(
        accounts=[linkedin_account(), linkedin_account("acc-other")],
        conversations={ACCOUNT: [chat("chat-a")]},
        messages={
            "chat-a": [
                {
                    "id": "msg-1",
                    "text": "Hi Jane",
                    "timestamp": "2024-05-01T09:00:00.000Z",
                    "is_sender": 1,
                },
                {
                    "id": "msg-2",
                    "text": "Hello!",
                    "timestamp": "2024-05-01T09:05:00.000Z",
                    "is_sender": 0,
                    "sender_id": "prov-jane",
                },
                {
                    "text": "Let's talk next week",
                    "timestamp": "2024-05-01T09:10:00.000Z",
                    "is_sender": 0,
                },
            ],
        },
        attendees={
            "chat-a": [
                attendee("prov-me", "Me Myself", is_self=True),
                attendee("prov-jane", "Jane Doe"),
            ],
        },
    )


def failing(message: str = "boom") -> ProviderError:
    return ProviderError(message, status_code=400)
