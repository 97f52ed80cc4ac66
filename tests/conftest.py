"""
Pytest configuration and shared fixtures.

Test settings are set as environment variables here, before any relay
imports, and the settings cache is cleared so they take effect.
"""

import os
from datetime import datetime, timedelta, timezone
from typing import List, Optional

import pytest

os.environ.setdefault("LOG_LEVEL", "WARNING")
os.environ.setdefault("WHATSAPP_ACCESS_TOKEN", "test-access-token")
os.environ.setdefault("WHATSAPP_VERIFY_TOKEN", "test-verify-token")
os.environ.pop("OPENAI_API_KEY", None)

# Clear settings cache before any app imports to ensure test env vars are used
from relay.config import get_settings
get_settings.cache_clear()

from relay.models import Direction, Message, MessageStatus, TenantConfig
from relay.replies import ReplyRequest, ReplyResult
from relay.storage import InMemoryMessageStore
from relay.tenants import TenantRegistry


BASE_TIME = datetime(2025, 1, 15, 10, 0, 0, tzinfo=timezone.utc)
PHONE_NUMBER_ID = "106540352242922"


def make_message(
    message_id: str,
    counterparty: str = "15550001111",
    direction: Direction = Direction.INBOUND,
    timestamp: Optional[datetime] = None,
    tenant_id: str = "tenant-1",
    status: Optional[MessageStatus] = None,
    content: str = "Hello",
    content_type: str = "text",
) -> Message:
    """Build a message; status defaults to received/sent by direction."""
    if status is None:
        status = MessageStatus.RECEIVED if direction is Direction.INBOUND else MessageStatus.SENT
    return Message(
        message_id=message_id,
        tenant_id=tenant_id,
        counterparty=counterparty,
        direction=direction,
        content_type=content_type,
        content=content,
        timestamp=timestamp or BASE_TIME,
        status=status,
    )


def text_message(message_id: str, sender: str, body: str, ts: int = 1736935200) -> dict:
    """A WhatsApp Cloud API inbound text message."""
    return {
        "from": sender,
        "id": message_id,
        "timestamp": str(ts),
        "type": "text",
        "text": {"body": body},
    }


def webhook_payload(
    phone_number_id: str = PHONE_NUMBER_ID,
    messages: Optional[List[dict]] = None,
    statuses: Optional[List[dict]] = None,
) -> dict:
    """Wrap messages/statuses in the WhatsApp Cloud API webhook envelope."""
    value = {
        "messaging_product": "whatsapp",
        "metadata": {
            "display_phone_number": "15551234567",
            "phone_number_id": phone_number_id,
        },
    }
    if messages is not None:
        value["messages"] = messages
    if statuses is not None:
        value["statuses"] = statuses
    return {
        "object": "whatsapp_business_account",
        "entry": [{"id": "WABA_ID", "changes": [{"field": "messages", "value": value}]}],
    }


class FakeSender:
    """Records send/mark-read calls; can be told to fail."""

    def __init__(self, fail_send: bool = False, fail_mark_read: bool = False) -> None:
        self.fail_send = fail_send
        self.fail_mark_read = fail_mark_read
        self.sent: List[dict] = []
        self.marked_read: List[str] = []
        self._counter = 0

    async def send_message(self, to, content, content_type="text", phone_number_id=None) -> str:
        if self.fail_send:
            raise RuntimeError("provider unavailable")
        self._counter += 1
        provider_id = f"wamid.out{self._counter}"
        self.sent.append({
            "to": to,
            "content": content,
            "content_type": content_type,
            "phone_number_id": phone_number_id,
            "id": provider_id,
        })
        return provider_id

    async def mark_read(self, message_id, phone_number_id=None) -> bool:
        if self.fail_mark_read:
            raise RuntimeError("provider unavailable")
        self.marked_read.append(message_id)
        return True


class FakeReplies:
    """Reply generator returning a fixed result and recording requests."""

    def __init__(self, should_respond: bool = True, message: str = "Thanks, we'll be in touch!", error: Exception = None):
        self.should_respond = should_respond
        self.message = message
        self.error = error
        self.requests: List[ReplyRequest] = []

    async def generate(self, request: ReplyRequest) -> ReplyResult:
        self.requests.append(request)
        if self.error is not None:
            raise self.error
        return ReplyResult(
            message=self.message,
            should_respond=self.should_respond,
            confidence=0.9,
            intent="greeting",
        )


@pytest.fixture
def store():
    return InMemoryMessageStore()


@pytest.fixture
def tenants():
    return TenantRegistry()


@pytest.fixture
def tenant(tenants):
    return tenants.create(TenantConfig(
        name="Acme Bakery",
        industry="Food",
        email="owner@acme.test",
        phone_number="15551234567",
        phone_number_id=PHONE_NUMBER_ID,
    ))


@pytest.fixture
def sender():
    return FakeSender()


@pytest.fixture
def replies():
    return FakeReplies()


@pytest.fixture
def fixed_clock():
    """A clock pinned to a Wednesday mid-month, in UTC."""
    now = datetime(2025, 1, 15, 12, 0, 0, tzinfo=timezone.utc)
    return lambda: now


@pytest.fixture
def hours_ago(fixed_clock):
    def _hours_ago(hours: float) -> datetime:
        return fixed_clock() - timedelta(hours=hours)
    return _hours_ago
