"""
Tests for the /business endpoints.

Tests cover:
- Business configuration (create, get, update, list)
- Manual send and broadcast
- Analytics and conversation listing over HTTP
"""

import json
from datetime import datetime, timedelta, timezone

import httpx
import pytest
from fastapi.testclient import TestClient

from conftest import FakeReplies, make_message, text_message, webhook_payload
from relay.config import get_settings
from relay.main import build_services, create_app
from relay.models import Direction


BUSINESS_BODY = {
    "name": "Acme Bakery",
    "industry": "Food",
    "email": "owner@acme.test",
    "phone_number": "+15551234567",
    "phone_number_id": "106540352242922",
    "business_hours": "Mon-Fri 8-18",
}


def provider_handler(request: httpx.Request) -> httpx.Response:
    body = json.loads(request.content)
    if body.get("to") == "bad-number":
        return httpx.Response(400, json={"error": {"message": "Invalid recipient"}})
    return httpx.Response(200, json={"messages": [{"id": f"wamid.to-{body.get('to')}"}]})


@pytest.fixture
def services():
    return build_services(
        get_settings(),
        transport=httpx.MockTransport(provider_handler),
        replies=FakeReplies(should_respond=False),
    )


@pytest.fixture(scope="function")
def client(services):
    with TestClient(create_app(services)) as test_client:
        yield test_client


@pytest.fixture
def business_id(client):
    response = client.post("/business/configure", json=BUSINESS_BODY)
    assert response.status_code == 201
    return response.json()["data"]["id"]


class TestBusinessConfiguration:
    def test_configure_business(self, client):
        response = client.post("/business/configure", json=BUSINESS_BODY)

        assert response.status_code == 201
        data = response.json()
        assert data["status"] == "success"
        assert data["message"] == "Business configured successfully"
        assert data["data"]["id"]
        assert data["data"]["name"] == "Acme Bakery"
        assert data["data"]["auto_reply"] is True
        assert data["data"]["created_at"] is not None

    def test_configure_validation_error(self, client):
        response = client.post("/business/configure", json={**BUSINESS_BODY, "email": "not-an-email"})

        assert response.status_code == 422

    def test_get_business(self, client, business_id):
        response = client.get(f"/business/configure/{business_id}")

        assert response.status_code == 200
        assert response.json()["data"]["phone_number_id"] == "106540352242922"

    def test_get_unknown_business(self, client):
        response = client.get("/business/configure/does-not-exist")

        assert response.status_code == 404
        assert response.json() == {"detail": "Business configuration not found"}

    def test_update_business_reroutes_phone_number(self, client, services, business_id):
        response = client.put(
            f"/business/configure/{business_id}",
            json={**BUSINESS_BODY, "phone_number_id": "200000000000001", "auto_reply": False},
        )

        assert response.status_code == 200
        assert response.json()["data"]["auto_reply"] is False
        assert services.tenants.resolve("200000000000001").id == business_id
        assert services.tenants.resolve("106540352242922") is None

    def test_update_unknown_business(self, client):
        response = client.put("/business/configure/does-not-exist", json=BUSINESS_BODY)

        assert response.status_code == 404

    def test_list_businesses(self, client, business_id):
        response = client.get("/business/all")

        assert response.status_code == 200
        assert [b["id"] for b in response.json()["results"]] == [business_id]


class TestSendMessage:
    def test_send_message_is_recorded(self, client, services, business_id):
        response = client.post("/business/send-message", json={
            "business_id": business_id,
            "to": "15550001111",
            "message": "Your order is ready",
        })

        assert response.status_code == 200
        assert response.json()["data"]["message_id"] == "wamid.to-15550001111"
        stored = services.store.get(business_id, "wamid.to-15550001111")
        assert stored.direction is Direction.OUTBOUND
        assert stored.status.value == "sent"
        assert stored.content == "Your order is ready"

    def test_send_unknown_business(self, client):
        response = client.post("/business/send-message", json={
            "business_id": "nope", "to": "15550001111", "message": "Hi",
        })

        assert response.status_code == 404
        assert response.json() == {"detail": "Business not found"}

    def test_provider_rejection(self, client, services, business_id):
        response = client.post("/business/send-message", json={
            "business_id": business_id, "to": "bad-number", "message": "Hi",
        })

        assert response.status_code == 502
        assert "Invalid recipient" in response.json()["detail"]
        assert services.store.all_for_tenant(business_id) == ()


class TestBroadcast:
    def test_partial_failure_is_reported(self, client, services, business_id):
        response = client.post("/business/broadcast", json={
            "business_id": business_id,
            "recipients": ["15550001111", "bad-number", "15550002222"],
            "message": "We are open on Sunday",
        })

        assert response.status_code == 200
        data = response.json()["data"]
        assert data["summary"] == {"total": 3, "successful": 2, "failed": 1}
        assert [item["recipient"] for item in data["successful"]] == ["15550001111", "15550002222"]
        assert data["failed"][0]["recipient"] == "bad-number"
        assert "Invalid recipient" in data["failed"][0]["error"]
        assert len(services.store.all_for_tenant(business_id)) == 2

    def test_broadcast_unknown_business(self, client):
        response = client.post("/business/broadcast", json={
            "business_id": "nope", "recipients": ["15550001111"], "message": "Hi",
        })

        assert response.status_code == 404

    def test_empty_recipients_rejected(self, client, business_id):
        response = client.post("/business/broadcast", json={
            "business_id": business_id, "recipients": [], "message": "Hi",
        })

        assert response.status_code == 422


class TestAnalyticsEndpoint:
    def test_analytics_counts_recent_messages(self, client, services, business_id):
        now = datetime.now(timezone.utc)
        services.store.append(make_message("in1", counterparty="A", tenant_id=business_id, timestamp=now))
        services.store.append(make_message("out1", counterparty="A", tenant_id=business_id,
                                           direction=Direction.OUTBOUND, timestamp=now))
        services.store.append(make_message("in2", counterparty="B", tenant_id=business_id,
                                           timestamp=now - timedelta(days=60)))

        response = client.get(f"/business/analytics/{business_id}")

        assert response.status_code == 200
        data = response.json()["data"]
        assert data["total_messages"] == 3
        assert data["total_clients"] == 2
        assert data["today_stats"] == {"messages": 2, "clients": 1, "inbound": 1, "outbound": 1}
        assert data["week_stats"]["messages"] == 2
        assert data["month_stats"]["messages"] == 2

    def test_analytics_unknown_business(self, client):
        response = client.get("/business/analytics/nope")

        assert response.status_code == 404


class TestConversationsEndpoint:
    def test_conversations_from_webhook_traffic(self, client, business_id):
        payload = webhook_payload(messages=[
            text_message("wamid.a1", "15550001111", "Hello", ts=1736935200),
            text_message("wamid.b1", "15550002222", "Hi", ts=1736935300),
            text_message("wamid.a2", "15550001111", "Are you open?", ts=1736935400),
        ])
        assert client.post("/webhook", json=payload).status_code == 200

        response = client.get(f"/business/conversations/{business_id}", params={"page": 1, "limit": 10})

        assert response.status_code == 200
        data = response.json()["data"]
        assert data["pagination"] == {"total": 2, "page": 1, "limit": 10, "total_pages": 1}
        first = data["conversations"][0]
        assert first["client_phone"] == "15550001111"
        assert first["message_count"] == 2
        assert first["unread_count"] == 2
        assert first["last_message"]["content"] == "Are you open?"
        assert first["last_message"]["direction"] == "inbound"
        assert first["last_message"]["type"] == "text"

    def test_filter_and_page_past_end(self, client, services, business_id):
        for i in range(3):
            services.store.append(make_message(f"m{i}", counterparty=f"client{i}", tenant_id=business_id))

        filtered = client.get(f"/business/conversations/{business_id}", params={"client_phone": "client1"})
        beyond = client.get(f"/business/conversations/{business_id}", params={"page": 5, "limit": 2})

        assert filtered.json()["data"]["pagination"]["total"] == 1
        assert beyond.json()["data"]["conversations"] == []
        assert beyond.json()["data"]["pagination"] == {"total": 3, "page": 5, "limit": 2, "total_pages": 2}

    @pytest.mark.parametrize("params", [{"page": 0}, {"limit": 0}, {"limit": 101}])
    def test_invalid_paging(self, client, business_id, params):
        response = client.get(f"/business/conversations/{business_id}", params=params)

        assert response.status_code == 422

    def test_conversations_unknown_business(self, client):
        response = client.get("/business/conversations/nope")

        assert response.status_code == 404
