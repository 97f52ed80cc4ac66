import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, List, Optional, Sequence

from relay.ingestion import MessageSender, utc_now
from relay.metrics import record_outbound_message
from relay.models import Direction, Message, MessageStatus
from relay.storage import MessageStore
from relay.tenants import TenantRegistry

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class BroadcastSuccess:
    recipient: str
    message_id: str


@dataclass(frozen=True)
class BroadcastFailure:
    recipient: str
    error: str


@dataclass
class BroadcastResult:
    successful: List[BroadcastSuccess] = field(default_factory=list)
    failed: List[BroadcastFailure] = field(default_factory=list)

    @property
    def total(self) -> int:
        return len(self.successful) + len(self.failed)


class OutboundService:
    """Messages sent by a business outside the automated reply flow."""

    def __init__(
        self,
        store: MessageStore,
        tenants: TenantRegistry,
        sender: MessageSender,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store = store
        self.tenants = tenants
        self.sender = sender
        self.clock = clock or utc_now

    async def send(self, tenant_id: str, to: str, content: str, content_type: str = "text") -> Message:
        """
        Send a message from a business and record it in the conversation.

        Raises:
            TenantNotFoundError: if the business does not exist
            WhatsAppError: if the provider rejects the message
        """
        tenant = self.tenants.require(tenant_id)
        try:
            provider_id = await self.sender.send_message(to, content, content_type, tenant.phone_number_id)
        except Exception:
            record_outbound_message("failed")
            raise
        record_outbound_message("sent")

        message = Message(
            message_id=provider_id,
            tenant_id=tenant.id,
            counterparty=to,
            direction=Direction.OUTBOUND,
            content_type=content_type,
            content=content,
            timestamp=self.clock(),
            status=MessageStatus.SENT,
        )
        self.store.append(message)
        logger.info(f"Manual message sent from business {tenant_id} to {to}")
        return message

    async def broadcast(
        self,
        tenant_id: str,
        recipients: Sequence[str],
        content: str,
        content_type: str = "text",
    ) -> BroadcastResult:
        """
        Send the same message to several recipients.

        Each recipient is attempted independently; failures are collected in
        the result instead of being raised.

        Raises:
            TenantNotFoundError: if the business does not exist
        """
        self.tenants.require(tenant_id)
        result = BroadcastResult()
        for recipient in recipients:
            try:
                message = await self.send(tenant_id, recipient, content, content_type)
            except Exception as e:
                logger.warning(f"Broadcast to {recipient} failed: {e}")
                result.failed.append(BroadcastFailure(recipient=recipient, error=str(e)))
            else:
                result.successful.append(BroadcastSuccess(recipient=recipient, message_id=message.message_id))

        logger.info(
            f"Broadcast sent from business {tenant_id} to {len(recipients)} recipients: "
            f"{len(result.successful)} successful, {len(result.failed)} failed"
        )
        return result
