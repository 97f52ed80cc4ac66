"""
Domain records for the messaging relay.

This module contains the in-memory message and tenant types shared by the
store, the analytics and conversation queries, and the ingestion pipeline.
For Pydantic request/response schemas, see schemas.py.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Optional, Tuple

from pydantic import BaseModel, Field


class Direction(str, Enum):
    INBOUND = "inbound"
    OUTBOUND = "outbound"


class MessageStatus(str, Enum):
    """
    Delivery status of a message.

    Inbound messages start as RECEIVED, outbound ones as SENT. The provider
    then reports DELIVERED and READ (or FAILED for outbound messages).
    """
    RECEIVED = "received"
    SENT = "sent"
    DELIVERED = "delivered"
    READ = "read"
    FAILED = "failed"

    @property
    def rank(self) -> int:
        return _STATUS_RANK[self]

    def can_transition_to(self, new_status: "MessageStatus") -> bool:
        """Return True if moving to new_status is a forward transition."""
        if new_status is MessageStatus.FAILED:
            return self.rank == 0 and self is not MessageStatus.FAILED
        if self is MessageStatus.FAILED:
            return False
        return new_status.rank > self.rank


_STATUS_RANK = {
    MessageStatus.RECEIVED: 0,
    MessageStatus.SENT: 0,
    MessageStatus.FAILED: 0,
    MessageStatus.DELIVERED: 1,
    MessageStatus.READ: 2,
}


@dataclass(frozen=True)
class Message:
    """
    A single chat message owned by one tenant.

    message_id is assigned by the provider and is unique within a tenant.
    timestamp is the event time reported by the provider, not receipt time.
    """
    message_id: str
    tenant_id: str
    counterparty: str
    direction: Direction
    content_type: str
    content: str
    timestamp: datetime
    status: MessageStatus

    @property
    def is_unread_inbound(self) -> bool:
        return self.direction is Direction.INBOUND and self.status is not MessageStatus.READ


class TenantConfig(BaseModel):
    """Configuration of a business using the relay."""
    id: Optional[str] = None
    name: str
    industry: str = ""
    email: str = ""
    phone_number: str = ""
    # Routing key carried by inbound webhook events
    phone_number_id: str
    waba_id: str = ""
    description: Optional[str] = None
    business_hours: Optional[str] = None
    ai_instructions: Optional[str] = None
    auto_reply: bool = True
    response_delay: float = Field(default=0, ge=0, description="Preferred reply delay in seconds; stored with the configuration only")
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


# =============================================================================
# Derived query results
# =============================================================================

@dataclass(frozen=True)
class LastMessage:
    content: str
    timestamp: datetime
    direction: Direction
    content_type: str


@dataclass(frozen=True)
class ConversationSummary:
    counterparty: str
    last_message: LastMessage
    message_count: int
    unread_count: int


@dataclass(frozen=True)
class ConversationPage:
    conversations: Tuple[ConversationSummary, ...]
    total: int
    page: int
    page_size: int
    total_pages: int


@dataclass(frozen=True)
class WindowStats:
    messages: int = 0
    clients: int = 0
    inbound: int = 0
    outbound: int = 0


@dataclass(frozen=True)
class AnalyticsSnapshot:
    total_messages: int
    total_clients: int
    today: WindowStats = field(default_factory=WindowStats)
    week: WindowStats = field(default_factory=WindowStats)
    month: WindowStats = field(default_factory=WindowStats)
