import logging
import threading
from collections import deque
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Deque, Dict, Iterable, Optional, Protocol, Tuple

from relay.models import Message, MessageStatus

logger = logging.getLogger(__name__)

DEFAULT_CONVERSATION_LIMIT = 100
DEFAULT_TENANT_LIMIT = 1000


class MessageStore(Protocol):
    """
    Storage contract used by the ingestion pipeline and the query components.

    Implementations own every buffer; callers only ever receive immutable
    snapshots.
    """

    def append(self, message: Message) -> bool: ...

    def recent_context(self, tenant_id: str, counterparty: str, limit: int) -> Tuple[Message, ...]: ...

    def update_status(
        self,
        message_id: str,
        status: MessageStatus,
        timestamp: Optional[datetime] = None,
        tenant_id: Optional[str] = None,
    ) -> bool: ...

    def all_for_tenant(self, tenant_id: str) -> Tuple[Message, ...]: ...

    def get(self, tenant_id: str, message_id: str) -> Optional[Message]: ...

    def tenants(self) -> Tuple[str, ...]: ...


@dataclass
class _TenantLog:
    """
    Canonical message records of one tenant plus the two views over them.

    Each record is held once in `messages`. `log` orders ids across all
    counterparties; `conversations` orders ids per counterparty. A record is
    dropped once neither view references it.
    """
    conversation_limit: int
    tenant_limit: int
    messages: Dict[str, Message] = field(default_factory=dict)
    refs: Dict[str, int] = field(default_factory=dict)
    log: Deque[str] = field(default_factory=deque)
    conversations: Dict[str, Deque[str]] = field(default_factory=dict)
    lock: threading.Lock = field(default_factory=threading.Lock)

    def add(self, message: Message) -> None:
        message_id = message.message_id
        self.messages[message_id] = message
        self.refs[message_id] = 2

        self.log.append(message_id)
        while len(self.log) > self.tenant_limit:
            self._release(self.log.popleft())

        conversation = self.conversations.setdefault(message.counterparty, deque())
        conversation.append(message_id)
        while len(conversation) > self.conversation_limit:
            self._release(conversation.popleft())

    def _release(self, message_id: str) -> None:
        remaining = self.refs[message_id] - 1
        if remaining:
            self.refs[message_id] = remaining
            return
        del self.refs[message_id]
        del self.messages[message_id]


class InMemoryMessageStore:
    """
    Bounded in-memory message store.

    Keeps the last `conversation_limit` messages per (tenant, counterparty)
    and the last `tenant_limit` messages per tenant, evicting oldest first.
    Mutations and snapshots of a tenant run under that tenant's lock, so a
    reader never observes a half-applied append or eviction.
    """

    def __init__(
        self,
        conversation_limit: int = DEFAULT_CONVERSATION_LIMIT,
        tenant_limit: int = DEFAULT_TENANT_LIMIT,
    ) -> None:
        if conversation_limit < 1 or tenant_limit < 1:
            raise ValueError("buffer limits must be positive")
        self.conversation_limit = conversation_limit
        self.tenant_limit = tenant_limit
        self._tenants: Dict[str, _TenantLog] = {}
        self._registry_lock = threading.Lock()

    def _tenant(self, tenant_id: str, create: bool = False) -> Optional[_TenantLog]:
        tenant = self._tenants.get(tenant_id)
        if tenant is not None or not create:
            return tenant
        with self._registry_lock:
            tenant = self._tenants.get(tenant_id)
            if tenant is None:
                tenant = _TenantLog(
                    conversation_limit=self.conversation_limit,
                    tenant_limit=self.tenant_limit,
                )
                self._tenants[tenant_id] = tenant
            return tenant

    def append(self, message: Message) -> bool:
        """
        Store a message in the tenant log and its conversation.

        Args:
            message: Message to store

        Returns:
            True if stored, False if a message with the same id is already
            held for the tenant (provider redelivery).
        """
        tenant = self._tenant(message.tenant_id, create=True)
        with tenant.lock:
            if message.message_id in tenant.messages:
                logger.info(f"Duplicate message ignored: tenant={message.tenant_id}, id={message.message_id}")
                return False
            tenant.add(message)
            logger.debug(
                f"Stored {message.direction.value} message {message.message_id} "
                f"for tenant={message.tenant_id}, counterparty={message.counterparty}"
            )
        return True

    def recent_context(self, tenant_id: str, counterparty: str, limit: int) -> Tuple[Message, ...]:
        """
        Return the most recent messages of a conversation, oldest first.

        Args:
            tenant_id: Tenant identifier
            counterparty: External party identifier
            limit: Maximum number of messages to return

        Returns:
            Up to `limit` messages; empty if there is no history.
        """
        if limit <= 0:
            return ()
        tenant = self._tenant(tenant_id)
        if tenant is None:
            return ()
        with tenant.lock:
            conversation = tenant.conversations.get(counterparty)
            if not conversation:
                return ()
            ids = list(conversation)[-limit:]
            return tuple(tenant.messages[message_id] for message_id in ids)

    def update_status(
        self,
        message_id: str,
        status: MessageStatus,
        timestamp: Optional[datetime] = None,
        tenant_id: Optional[str] = None,
    ) -> bool:
        """
        Move a message's delivery status forward.

        Status reports can refer to messages that were already evicted or that
        this process never saw, so an unknown id is not an error.

        Args:
            message_id: Provider message identifier
            status: New status
            timestamp: Event time of the status report (informational)
            tenant_id: Restrict the lookup to one tenant; all tenants otherwise

        Returns:
            True if the status was changed, False otherwise.
        """
        if tenant_id is not None:
            candidates: Iterable[str] = (tenant_id,)
        else:
            candidates = self.tenants()

        for candidate in candidates:
            tenant = self._tenant(candidate)
            if tenant is None:
                continue
            with tenant.lock:
                current = tenant.messages.get(message_id)
                if current is None:
                    continue
                if not current.status.can_transition_to(status):
                    logger.debug(
                        f"Ignoring status {status.value} for {message_id}: already {current.status.value}"
                    )
                    return False
                tenant.messages[message_id] = replace(current, status=status)
            logger.info(f"Message status updated: {message_id} -> {status.value} (at {timestamp})")
            return True

        logger.debug(f"Status update for unknown message: {message_id}")
        return False

    def all_for_tenant(self, tenant_id: str) -> Tuple[Message, ...]:
        """Return a snapshot of the tenant log in append order."""
        tenant = self._tenant(tenant_id)
        if tenant is None:
            return ()
        with tenant.lock:
            return tuple(tenant.messages[message_id] for message_id in tenant.log)

    def conversation(self, tenant_id: str, counterparty: str) -> Tuple[Message, ...]:
        """Return the full retained conversation in append order."""
        return self.recent_context(tenant_id, counterparty, self.conversation_limit)

    def get(self, tenant_id: str, message_id: str) -> Optional[Message]:
        tenant = self._tenant(tenant_id)
        if tenant is None:
            return None
        with tenant.lock:
            return tenant.messages.get(message_id)

    def tenants(self) -> Tuple[str, ...]:
        with self._registry_lock:
            return tuple(self._tenants)
