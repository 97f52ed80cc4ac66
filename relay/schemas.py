"""
Pydantic schemas for request/response validation.

This module contains:
- Request models for business configuration and outbound messages
- Response models for API responses
- Converters from domain records to response models
"""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field, field_validator

from relay.models import AnalyticsSnapshot, ConversationPage, TenantConfig, WindowStats


# =============================================================================
# Pydantic Request Models
# =============================================================================

class BusinessConfigRequest(BaseModel):
    """
    Business configuration submitted by the operator.

    phone_number_id is the WhatsApp phone number id that inbound webhook
    events carry; it is how messages are routed to this business.
    """
    name: str = Field(..., min_length=1, description="Business name")
    industry: str = Field(..., min_length=1, description="Industry")
    email: str = Field(..., min_length=3, description="Contact email")
    phone_number: str = Field(..., min_length=1, description="Display phone number")
    phone_number_id: str = Field(..., min_length=1, description="WhatsApp phone number id")
    waba_id: str = Field(default="", description="WhatsApp Business Account id")
    description: Optional[str] = None
    business_hours: Optional[str] = None
    ai_instructions: Optional[str] = None
    auto_reply: bool = True
    response_delay: float = Field(default=0, ge=0, le=300, description="Preferred reply delay in seconds; stored with the configuration only")

    @field_validator("email")
    @classmethod
    def validate_email(cls, v: str) -> str:
        if "@" not in v:
            raise ValueError("email must contain '@'")
        return v

    def to_config(self) -> TenantConfig:
        return TenantConfig(**self.model_dump())


class SendMessageRequest(BaseModel):
    business_id: str = Field(..., min_length=1)
    to: str = Field(..., min_length=1, description="Recipient phone number")
    message: str = Field(..., min_length=1, max_length=4096)
    type: str = Field(default="text")


class BroadcastRequest(BaseModel):
    business_id: str = Field(..., min_length=1)
    recipients: list[str] = Field(..., min_length=1, max_length=100)
    message: str = Field(..., min_length=1, max_length=4096)
    type: str = Field(default="text")


# =============================================================================
# Pydantic Response Models
# =============================================================================

class WebhookResponse(BaseModel):
    """Response model for webhook processing."""
    status: str = Field(default="success", description="Operation status")
    processed: int = Field(default=0, ge=0, description="Inbound messages stored")
    replied: int = Field(default=0, ge=0, description="Messages that received an automated reply")
    failed: int = Field(default=0, ge=0, description="Messages that failed processing")
    skipped: int = Field(default=0, ge=0, description="Events skipped (unknown business)")
    statuses_applied: int = Field(default=0, ge=0, description="Delivery status updates applied")


class ErrorResponse(BaseModel):
    """Response model for error responses."""
    detail: str = Field(..., description="Error description")


class HealthResponse(BaseModel):
    """Response model for health check endpoints."""
    status: str = Field(..., description="Health status")
    reason: Optional[str] = Field(None, description="Reason if not ready")


class BusinessResponse(BaseModel):
    status: str = "success"
    data: TenantConfig
    message: Optional[str] = None


class BusinessListResponse(BaseModel):
    status: str = "success"
    results: list[TenantConfig] = Field(default_factory=list)


class SentMessage(BaseModel):
    message_id: str
    to: str
    timestamp: datetime


class SendMessageResponse(BaseModel):
    status: str = "success"
    data: SentMessage
    message: str = "Message sent successfully"


class BroadcastSuccessItem(BaseModel):
    recipient: str
    message_id: str


class BroadcastFailureItem(BaseModel):
    recipient: str
    error: str


class BroadcastSummary(BaseModel):
    total: int = Field(..., ge=0)
    successful: int = Field(..., ge=0)
    failed: int = Field(..., ge=0)


class BroadcastData(BaseModel):
    successful: list[BroadcastSuccessItem] = Field(default_factory=list)
    failed: list[BroadcastFailureItem] = Field(default_factory=list)
    summary: BroadcastSummary


class BroadcastResponse(BaseModel):
    status: str = "success"
    data: BroadcastData


class WindowStatsResponse(BaseModel):
    messages: int = Field(..., ge=0)
    clients: int = Field(..., ge=0)
    inbound: int = Field(..., ge=0)
    outbound: int = Field(..., ge=0)


class AnalyticsData(BaseModel):
    """
    Usage analytics of one business.

    - today: since local midnight
    - week: rolling last 7 days
    - month: since the first day of the current local month
    """
    total_messages: int = Field(..., ge=0)
    total_clients: int = Field(..., ge=0)
    today_stats: WindowStatsResponse
    week_stats: WindowStatsResponse
    month_stats: WindowStatsResponse


class AnalyticsResponse(BaseModel):
    status: str = "success"
    data: AnalyticsData


class LastMessageResponse(BaseModel):
    content: str
    timestamp: datetime
    direction: str
    type: str


class ConversationSummaryResponse(BaseModel):
    client_phone: str
    last_message: LastMessageResponse
    message_count: int = Field(..., ge=1)
    unread_count: int = Field(..., ge=0)


class PaginationResponse(BaseModel):
    total: int = Field(..., ge=0)
    page: int = Field(..., ge=1)
    limit: int = Field(..., ge=1)
    total_pages: int = Field(..., ge=0)


class ConversationsData(BaseModel):
    conversations: list[ConversationSummaryResponse] = Field(default_factory=list)
    pagination: PaginationResponse


class ConversationsResponse(BaseModel):
    status: str = "success"
    data: ConversationsData


# =============================================================================
# Converters
# =============================================================================

def _window(stats: WindowStats) -> WindowStatsResponse:
    return WindowStatsResponse(
        messages=stats.messages,
        clients=stats.clients,
        inbound=stats.inbound,
        outbound=stats.outbound,
    )


def analytics_response(snapshot: AnalyticsSnapshot) -> AnalyticsResponse:
    return AnalyticsResponse(data=AnalyticsData(
        total_messages=snapshot.total_messages,
        total_clients=snapshot.total_clients,
        today_stats=_window(snapshot.today),
        week_stats=_window(snapshot.week),
        month_stats=_window(snapshot.month),
    ))


def conversations_response(page: ConversationPage) -> ConversationsResponse:
    return ConversationsResponse(data=ConversationsData(
        conversations=[
            ConversationSummaryResponse(
                client_phone=summary.counterparty,
                last_message=LastMessageResponse(
                    content=summary.last_message.content,
                    timestamp=summary.last_message.timestamp,
                    direction=summary.last_message.direction.value,
                    type=summary.last_message.content_type,
                ),
                message_count=summary.message_count,
                unread_count=summary.unread_count,
            )
            for summary in page.conversations
        ],
        pagination=PaginationResponse(
            total=page.total,
            page=page.page,
            limit=page.page_size,
            total_pages=page.total_pages,
        ),
    ))
