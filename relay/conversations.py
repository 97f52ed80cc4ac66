import logging
import math
from typing import Dict, List, Optional

from relay.models import ConversationPage, ConversationSummary, LastMessage, Message
from relay.storage import MessageStore

logger = logging.getLogger(__name__)


def summarize(counterparty: str, messages: List[Message]) -> ConversationSummary:
    """
    Build the summary of one conversation.

    `messages` must be in append order. The last message is the one with the
    latest timestamp; on equal timestamps the later appended one wins.
    """
    latest = messages[0]
    for message in messages[1:]:
        if message.timestamp >= latest.timestamp:
            latest = message
    return ConversationSummary(
        counterparty=counterparty,
        last_message=LastMessage(
            content=latest.content,
            timestamp=latest.timestamp,
            direction=latest.direction,
            content_type=latest.content_type,
        ),
        message_count=len(messages),
        unread_count=sum(1 for message in messages if message.is_unread_inbound),
    )


class ConversationIndex:
    def __init__(self, store: MessageStore) -> None:
        self.store = store

    def list_conversations(
        self,
        tenant_id: str,
        page: int = 1,
        page_size: int = 20,
        counterparty: Optional[str] = None,
    ) -> ConversationPage:
        """
        List a tenant's conversations, most recently active first.

        Args:
            tenant_id: Tenant identifier
            page: 1-indexed page number
            page_size: Conversations per page
            counterparty: Only include this counterparty (exact match)

        Returns:
            ConversationPage; a page past the end has no conversations but
            still reports total and total_pages.
        """
        if page < 1:
            raise ValueError("page must be >= 1")
        if page_size < 1:
            raise ValueError("page_size must be >= 1")

        messages = self.store.all_for_tenant(tenant_id)
        if counterparty:
            messages = tuple(m for m in messages if m.counterparty == counterparty)

        grouped: Dict[str, List[Message]] = {}
        for message in messages:
            grouped.setdefault(message.counterparty, []).append(message)

        summaries = [summarize(key, group) for key, group in grouped.items()]
        summaries.sort(key=lambda summary: summary.last_message.timestamp, reverse=True)

        total = len(summaries)
        start = (page - 1) * page_size
        page_items = tuple(summaries[start:start + page_size])
        logger.info(
            f"Listed conversations for tenant={tenant_id}: page={page}, "
            f"returned {len(page_items)} of {total}"
        )
        return ConversationPage(
            conversations=page_items,
            total=total,
            page=page,
            page_size=page_size,
            total_pages=math.ceil(total / page_size),
        )
