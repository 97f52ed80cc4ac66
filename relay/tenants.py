"""
Business (tenant) configuration registry.

Maps tenant ids and provider routing keys (phone number ids) to the
business configuration. Kept in memory for the lifetime of the process.
"""

import logging
import threading
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Protocol

from relay.models import TenantConfig

logger = logging.getLogger(__name__)


class TenantNotFoundError(LookupError):
    """Raised when a tenant id does not match any configured business."""

    def __init__(self, tenant_id: str) -> None:
        super().__init__(f"Business not found: {tenant_id}")
        self.tenant_id = tenant_id


class TenantResolver(Protocol):
    def resolve(self, routing_key: str) -> Optional[TenantConfig]: ...


class TenantRegistry:
    def __init__(self) -> None:
        self._by_id: Dict[str, TenantConfig] = {}
        self._by_routing_key: Dict[str, str] = {}
        self._lock = threading.Lock()

    def create(self, config: TenantConfig) -> TenantConfig:
        """Register a new business and assign it an id."""
        now = datetime.now(timezone.utc)
        tenant = config.model_copy(update={
            "id": str(uuid.uuid4()),
            "created_at": now,
            "updated_at": now,
        })
        with self._lock:
            self._by_id[tenant.id] = tenant
            self._by_routing_key[tenant.phone_number_id] = tenant.id
        logger.info(f"Business created: {tenant.name} ({tenant.id})")
        return tenant

    def get(self, tenant_id: str) -> Optional[TenantConfig]:
        with self._lock:
            return self._by_id.get(tenant_id)

    def require(self, tenant_id: str) -> TenantConfig:
        tenant = self.get(tenant_id)
        if tenant is None:
            raise TenantNotFoundError(tenant_id)
        return tenant

    def resolve(self, routing_key: str) -> Optional[TenantConfig]:
        """Find the business that owns a provider phone number id."""
        with self._lock:
            tenant_id = self._by_routing_key.get(routing_key)
            return self._by_id.get(tenant_id) if tenant_id else None

    def update(self, tenant_id: str, changes: Dict[str, Any]) -> TenantConfig:
        """
        Apply changes to an existing business.

        Raises:
            TenantNotFoundError: if tenant_id is unknown
        """
        changes = {key: value for key, value in changes.items() if key not in ("id", "created_at")}
        with self._lock:
            existing = self._by_id.get(tenant_id)
            if existing is None:
                raise TenantNotFoundError(tenant_id)
            updated = existing.model_copy(update={**changes, "updated_at": datetime.now(timezone.utc)})
            if updated.phone_number_id != existing.phone_number_id:
                self._by_routing_key.pop(existing.phone_number_id, None)
            self._by_id[tenant_id] = updated
            self._by_routing_key[updated.phone_number_id] = tenant_id
        logger.info(f"Business updated: {updated.name} ({tenant_id})")
        return updated

    def list(self) -> List[TenantConfig]:
        with self._lock:
            return list(self._by_id.values())
