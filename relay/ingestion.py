"""
Webhook ingestion pipeline.

A provider payload is decoded into events. Message events are routed to a
business by the phone number id they were sent to; every inbound message is
then stored, answered (when the reply generator says so) and marked read.
Status events move the delivery status of stored messages forward.

Each event and each message is processed on its own: a failure is logged,
recorded in the IngestionReport and never affects its siblings.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Protocol

from relay.metrics import record_outbound_message
from relay.models import Direction, Message, MessageStatus, TenantConfig
from relay.replies import ReplyGenerator, ReplyRequest
from relay.storage import MessageStore
from relay.tenants import TenantResolver

logger = logging.getLogger(__name__)

DEFAULT_CONTEXT_WINDOW = 10


class EventKind(str, Enum):
    MESSAGES = "messages"
    STATUSES = "statuses"


class Outcome(str, Enum):
    PROCESSED = "processed"
    REPLIED = "replied"
    SKIPPED = "skipped"
    FAILED = "failed"
    STATUS_APPLIED = "status_applied"
    STATUS_IGNORED = "status_ignored"


@dataclass(frozen=True)
class InboundEvent:
    routing_key: Optional[str]
    kind: EventKind
    items: List[Dict[str, Any]]


@dataclass(frozen=True)
class ItemOutcome:
    kind: EventKind
    item_id: Optional[str]
    outcome: Outcome
    detail: Optional[str] = None


@dataclass
class IngestionReport:
    outcomes: List[ItemOutcome] = field(default_factory=list)

    def record(
        self,
        kind: EventKind,
        item_id: Optional[str],
        outcome: Outcome,
        detail: Optional[str] = None,
    ) -> None:
        self.outcomes.append(ItemOutcome(kind, item_id, outcome, detail))

    def count(self, *outcomes: Outcome) -> int:
        return sum(1 for item in self.outcomes if item.outcome in outcomes)


class MessageSender(Protocol):
    async def send_message(
        self,
        to: str,
        content: str,
        content_type: str = "text",
        phone_number_id: Optional[str] = None,
    ) -> str: ...

    async def mark_read(self, message_id: str, phone_number_id: Optional[str] = None) -> bool: ...


# =============================================================================
# Payload decoding
# =============================================================================

def decode_events(payload: Any) -> List[InboundEvent]:
    """
    Split a WhatsApp Cloud API webhook payload into events.

    Anything that does not look like a `messages` change is skipped, so
    unrelated change types and malformed entries produce no events.
    """
    events: List[InboundEvent] = []
    if not isinstance(payload, dict) or not isinstance(payload.get("entry"), list):
        logger.debug("Webhook payload has no entries, nothing to do")
        return events

    for entry in payload["entry"]:
        changes = entry.get("changes") if isinstance(entry, dict) else None
        if not isinstance(changes, list):
            continue
        for change in changes:
            if not isinstance(change, dict) or change.get("field") != "messages":
                continue
            value = change.get("value")
            if not isinstance(value, dict):
                logger.warning("Skipping messages change without a value object")
                continue
            metadata = value.get("metadata")
            routing_key = metadata.get("phone_number_id") if isinstance(metadata, dict) else None
            if routing_key is not None and not isinstance(routing_key, str):
                logger.warning(f"Ignoring non-string phone_number_id: {routing_key!r}")
                routing_key = None

            messages = value.get("messages")
            if isinstance(messages, list) and messages:
                events.append(InboundEvent(routing_key, EventKind.MESSAGES, messages))
            statuses = value.get("statuses")
            if isinstance(statuses, list) and statuses:
                events.append(InboundEvent(routing_key, EventKind.STATUSES, statuses))
    return events


def normalize_content(message: Dict[str, Any]) -> str:
    """Render a provider message as display text."""
    message_type = message.get("type")

    def part(name: str) -> Dict[str, Any]:
        value = message.get(name)
        return value if isinstance(value, dict) else {}

    if message_type == "text":
        return part("text").get("body") or ""
    if message_type == "image":
        return f"[Image: {part('image').get('caption') or 'No caption'}]"
    if message_type == "document":
        return f"[Document: {part('document').get('filename') or 'Unknown file'}]"
    if message_type == "audio":
        return "[Audio message]"
    if message_type == "video":
        return f"[Video: {part('video').get('caption') or 'No caption'}]"
    return f"[{message_type or 'unknown'} message]"


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Convert a provider epoch-seconds timestamp to an aware UTC datetime."""
    try:
        return datetime.fromtimestamp(int(value), tz=timezone.utc)
    except (TypeError, ValueError, OverflowError, OSError):
        return None


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def item_id_of(item: Any) -> Optional[str]:
    """The provider id of a message or status item, if it is a string."""
    value = item.get("id") if isinstance(item, dict) else None
    return value if isinstance(value, str) and value else None


# =============================================================================
# Coordinator
# =============================================================================

class IngestionCoordinator:
    def __init__(
        self,
        store: MessageStore,
        tenants: TenantResolver,
        replies: ReplyGenerator,
        sender: MessageSender,
        context_window: int = DEFAULT_CONTEXT_WINDOW,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store = store
        self.tenants = tenants
        self.replies = replies
        self.sender = sender
        self.context_window = context_window
        self.clock = clock or utc_now

    async def process(self, payload: Any) -> IngestionReport:
        """
        Process one webhook delivery.

        Args:
            payload: Decoded JSON body of the webhook request

        Returns:
            IngestionReport with one outcome per message, status or skipped event
        """
        report = IngestionReport()
        events = decode_events(payload)
        logger.info(f"Webhook payload decoded into {len(events)} event(s)")

        for event in events:
            try:
                if event.kind is EventKind.STATUSES:
                    self._apply_statuses(event, report)
                else:
                    await self._handle_message_event(event, report)
            except Exception as e:
                logger.exception(f"Error handling {event.kind.value} event for {event.routing_key}: {e}")
                report.record(event.kind, event.routing_key, Outcome.FAILED, str(e))

        logger.info(
            f"Webhook processed: {report.count(Outcome.PROCESSED, Outcome.REPLIED)} message(s), "
            f"{report.count(Outcome.FAILED)} failed, {report.count(Outcome.SKIPPED)} skipped"
        )
        return report

    def _apply_statuses(self, event: InboundEvent, report: IngestionReport) -> None:
        for item in event.items:
            item_id = item_id_of(item)
            try:
                status = MessageStatus(item["status"])
            except (TypeError, KeyError, ValueError):
                logger.debug(f"Ignoring unsupported status report: {item!r}")
                report.record(EventKind.STATUSES, item_id, Outcome.STATUS_IGNORED, "unsupported status")
                continue
            if not item_id:
                report.record(EventKind.STATUSES, None, Outcome.STATUS_IGNORED, "missing id")
                continue

            try:
                applied = self.store.update_status(item_id, status, parse_timestamp(item.get("timestamp")))
            except Exception as e:
                logger.exception(f"Error applying status {status.value} to message {item_id}: {e}")
                report.record(EventKind.STATUSES, item_id, Outcome.FAILED, str(e))
                continue
            report.record(
                EventKind.STATUSES,
                item_id,
                Outcome.STATUS_APPLIED if applied else Outcome.STATUS_IGNORED,
                status.value,
            )

    async def _handle_message_event(self, event: InboundEvent, report: IngestionReport) -> None:
        tenant = self.tenants.resolve(event.routing_key) if event.routing_key else None
        if tenant is None:
            logger.warning(f"No business configuration found for phone number ID: {event.routing_key}")
            report.record(EventKind.MESSAGES, event.routing_key, Outcome.SKIPPED, "unknown business")
            return

        for item in event.items:
            item_id = item_id_of(item)
            try:
                outcome = await self.handle_message(item, tenant)
            except Exception as e:
                logger.exception(f"Error handling client message {item_id}: {e}")
                report.record(EventKind.MESSAGES, item_id, Outcome.FAILED, str(e))
            else:
                detail = "duplicate" if outcome is Outcome.SKIPPED else None
                report.record(EventKind.MESSAGES, item_id, outcome, detail)

    async def handle_message(self, item: Dict[str, Any], tenant: TenantConfig) -> Outcome:
        """
        Store an inbound message, reply to it if appropriate and mark it read.

        A message whose id is already retained is a provider redelivery: it is
        not answered again and the outcome is SKIPPED.

        Raises:
            ValueError: if the message has no string id or sender
        """
        if item_id_of(item) is None or not isinstance(item.get("from"), str) or not item["from"]:
            raise ValueError("message is missing id or sender")

        message_id = item["id"]
        counterparty = item["from"]
        content_type = item.get("type")
        if not isinstance(content_type, str) or not content_type:
            content_type = "unknown"
        content = normalize_content(item)
        logger.info(f"Processing message {message_id} from client {counterparty}")

        stored = self.store.append(Message(
            message_id=message_id,
            tenant_id=tenant.id,
            counterparty=counterparty,
            direction=Direction.INBOUND,
            content_type=content_type,
            content=content,
            timestamp=parse_timestamp(item.get("timestamp")) or self.clock(),
            status=MessageStatus.RECEIVED,
        ))
        if not stored:
            logger.info(f"Message {message_id} already received, not replying again")
            return Outcome.SKIPPED

        outcome = Outcome.PROCESSED
        context = self.store.recent_context(tenant.id, counterparty, self.context_window)

        if tenant.auto_reply:
            try:
                reply = await self.replies.generate(ReplyRequest(
                    content=content,
                    content_type=content_type,
                    tenant=tenant,
                    context=context,
                    counterparty=counterparty,
                ))
            except Exception as e:
                logger.error(f"Reply generation failed for message {message_id}: {e}")
            else:
                logger.debug(
                    f"Reply for {message_id}: should_respond={reply.should_respond}, "
                    f"intent={reply.intent}, confidence={reply.confidence}"
                )
                if reply.should_respond and await self._send_reply(tenant, counterparty, reply.message):
                    outcome = Outcome.REPLIED
        else:
            logger.debug(f"Auto reply disabled for business {tenant.id}")

        try:
            await self.sender.mark_read(message_id, tenant.phone_number_id)
        except Exception as e:
            logger.error(f"Failed to mark message {message_id} as read: {e}")

        return outcome

    async def _send_reply(self, tenant: TenantConfig, counterparty: str, text: str) -> bool:
        try:
            provider_id = await self.sender.send_message(
                counterparty, text, "text", tenant.phone_number_id
            )
        except Exception as e:
            logger.error(f"Failed to send AI response to {counterparty}: {e}")
            record_outbound_message("failed")
            return False
        record_outbound_message("sent")

        self.store.append(Message(
            message_id=provider_id,
            tenant_id=tenant.id,
            counterparty=counterparty,
            direction=Direction.OUTBOUND,
            content_type="text",
            content=text,
            timestamp=self.clock(),
            status=MessageStatus.SENT,
        ))
        logger.info(f"AI response sent to {counterparty}")
        return True
