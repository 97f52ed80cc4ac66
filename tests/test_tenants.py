"""
Tests for the business registry.
"""

import pytest

from relay.models import TenantConfig
from relay.tenants import TenantNotFoundError, TenantRegistry


def config(phone_number_id="106540352242922", name="Acme Bakery"):
    return TenantConfig(name=name, industry="Food", phone_number_id=phone_number_id)


class TestTenantRegistry:
    def test_create_assigns_id_and_timestamps(self, tenants):
        tenant = tenants.create(config())

        assert tenant.id
        assert tenant.created_at is not None
        assert tenant.updated_at == tenant.created_at
        assert tenants.get(tenant.id) == tenant

    def test_resolve_by_phone_number_id(self, tenants):
        tenant = tenants.create(config())

        assert tenants.resolve("106540352242922").id == tenant.id
        assert tenants.resolve("unknown") is None

    def test_update_keeps_identity(self, tenants):
        tenant = tenants.create(config())

        updated = tenants.update(tenant.id, {"name": "Acme Bread Co", "id": "hijack"})

        assert updated.id == tenant.id
        assert updated.name == "Acme Bread Co"
        assert updated.created_at == tenant.created_at
        assert updated.updated_at >= tenant.updated_at

    def test_update_unknown(self, tenants):
        with pytest.raises(TenantNotFoundError):
            tenants.update("nope", {"name": "x"})

    def test_require(self, tenants):
        with pytest.raises(TenantNotFoundError):
            tenants.require("nope")

    def test_list(self):
        registry = TenantRegistry()
        first = registry.create(config("1", "First"))
        second = registry.create(config("2", "Second"))

        assert [t.id for t in registry.list()] == [first.id, second.id]
