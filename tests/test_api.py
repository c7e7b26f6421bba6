"""
Tests for the /api routes.

Tests cover:
- API key and tenant header checks
- Thread lookup by contact id and by phone fallback
- Manual takeover (first claim kept)
- Webhook token rotation and source deactivation
"""

import pytest

from chat_ingest.models import Conversation
from chat_ingest.storage import SessionLocal


@pytest.fixture
def ingest(client, tenant):
    """Helper posting a chat message for the tenant."""
    def _ingest(context_id, message_id, date, phone="+5511999990000", text="Oi", role="user"):
        body = {
            "contextId": context_id,
            "messageId": message_id,
            "message": text,
            "role": role,
            "contactPhone": phone,
            "date": date,
        }
        response = client.post(tenant.url, json=body)
        assert response.status_code == 200
        return response.json()

    return _ingest


class TestApiAuth:

    def test_missing_api_key(self, client, tenant):
        response = client.get(
            "/api/conversations/thread",
            params={"contact_id": "x"},
            headers={"X-Organization-Id": tenant.organization_id},
        )

        assert response.status_code == 401
        assert response.json() == {"error": "invalid api key"}

    def test_wrong_api_key(self, client, tenant):
        headers = {**tenant.headers, "X-Api-Key": "wrong"}

        response = client.get("/api/conversations/thread", headers=headers)

        assert response.status_code == 401

    def test_missing_organization(self, client, tenant):
        response = client.get("/api/conversations/thread", headers={"X-Api-Key": "test-admin-key"})

        assert response.status_code == 400


class TestThread:

    def test_no_contact_id(self, client, tenant):
        response = client.get("/api/conversations/thread", headers=tenant.headers)

        assert response.status_code == 200
        assert response.json() == {"conversation": None, "messages": []}

    def test_unknown_contact(self, client, tenant):
        response = client.get(
            "/api/conversations/thread", params={"contact_id": "missing"}, headers=tenant.headers
        )

        assert response.json() == {"conversation": None, "messages": []}

    def test_thread_for_linked_contact(self, client, tenant, make_contact, ingest):
        contact = make_contact("+5511999990000")
        ingest("ctx1", "m2", "2025-01-15T10:05:00Z", text="segunda")
        ingest("ctx1", "m1", "2025-01-15T10:00:00Z", text="primeira")
        ingest("ctx1", "m3", "2025-01-15T10:06:00Z", text="resposta", role="assistant")

        response = client.get(
            "/api/conversations/thread", params={"contact_id": contact.id}, headers=tenant.headers
        )

        assert response.status_code == 200
        data = response.json()
        assert data["conversation"]["context_id"] == "ctx1"
        assert data["conversation"]["contact_id"] == contact.id
        assert data["conversation"]["last_message_at"] == "2025-01-15T10:06:00.000Z"
        assert [m["text"] for m in data["messages"]] == ["primeira", "segunda", "resposta"]
        assert [m["role"] for m in data["messages"]] == ["user", "user", "assistant"]

    def test_latest_conversation_returned(self, client, tenant, make_contact, ingest):
        contact = make_contact("+5511999990000")
        ingest("ctx-old", "m1", "2025-01-10T10:00:00Z")
        ingest("ctx-new", "m1", "2025-01-15T10:00:00Z")

        data = client.get(
            "/api/conversations/thread", params={"contact_id": contact.id}, headers=tenant.headers
        ).json()

        assert data["conversation"]["context_id"] == "ctx-new"

    def test_phone_fallback_for_unlinked_conversation(self, client, tenant, make_contact, ingest):
        ingest("ctx1", "m1", "2025-01-15T10:00:00Z")
        # Contact created after ingestion, so the conversation was never linked
        contact = make_contact("+5511999990000")

        data = client.get(
            "/api/conversations/thread", params={"contact_id": contact.id}, headers=tenant.headers
        ).json()

        assert data["conversation"]["context_id"] == "ctx1"
        assert data["conversation"]["contact_id"] is None
        assert len(data["messages"]) == 1

    def test_other_tenant_cannot_read(self, client, tenant, other_tenant, make_contact, ingest):
        contact = make_contact("+5511999990000")
        ingest("ctx1", "m1", "2025-01-15T10:00:00Z")

        data = client.get(
            "/api/conversations/thread", params={"contact_id": contact.id}, headers=other_tenant.headers
        ).json()

        assert data == {"conversation": None, "messages": []}


class TestManualTakeover:

    def test_claim(self, client, tenant, ingest):
        conversation_id = ingest("ctx1", "m1", "2025-01-15T10:00:00Z")["conversation_id"]

        response = client.post(
            f"/api/conversations/{conversation_id}/takeover",
            json={"user_id": "user-1"},
            headers=tenant.headers,
        )

        assert response.status_code == 200
        data = response.json()
        assert data["human_takeover_by"] == "user-1"
        assert data["human_takeover_at"] is not None

    def test_first_claim_kept(self, client, tenant, ingest):
        conversation_id = ingest("ctx1", "m1", "2025-01-15T10:00:00Z")["conversation_id"]
        url = f"/api/conversations/{conversation_id}/takeover"

        first = client.post(url, json={"user_id": "user-1"}, headers=tenant.headers).json()
        second = client.post(url, json={"user_id": "user-2"}, headers=tenant.headers).json()

        assert second["human_takeover_by"] == "user-1"
        assert second["human_takeover_at"] == first["human_takeover_at"]

    def test_claim_after_provider_takeover_keeps_timestamp(self, client, tenant):
        webhook = client.post(
            tenant.url, json={"contextId": "ctx1", "agentId": "a1", "channelId": "c1"}
        ).json()
        with SessionLocal() as db:
            provider_takeover_at = db.get(Conversation, webhook["conversation_id"]).human_takeover_at

        claimed = client.post(
            f"/api/conversations/{webhook['conversation_id']}/takeover",
            json={"user_id": "user-1"},
            headers=tenant.headers,
        ).json()

        assert claimed["human_takeover_by"] == "user-1"
        assert claimed["human_takeover_at"] == provider_takeover_at

    def test_unknown_conversation(self, client, tenant):
        response = client.post(
            "/api/conversations/nope/takeover", json={"user_id": "user-1"}, headers=tenant.headers
        )

        assert response.status_code == 404

    def test_other_tenant_conversation(self, client, tenant, other_tenant, ingest):
        conversation_id = ingest("ctx1", "m1", "2025-01-15T10:00:00Z")["conversation_id"]

        response = client.post(
            f"/api/conversations/{conversation_id}/takeover",
            json={"user_id": "user-1"},
            headers=other_tenant.headers,
        )

        assert response.status_code == 404

    def test_user_id_required(self, client, tenant, ingest):
        conversation_id = ingest("ctx1", "m1", "2025-01-15T10:00:00Z")["conversation_id"]

        response = client.post(
            f"/api/conversations/{conversation_id}/takeover", json={}, headers=tenant.headers
        )

        assert response.status_code == 400
        assert response.json()["error"] == "Invalid request"


class TestWebhookSources:

    def test_rotate_token(self, client, tenant):
        response = client.post(
            f"/api/webhook-sources/{tenant.source_id}/rotate-token", headers=tenant.headers
        )

        assert response.status_code == 200
        data = response.json()
        new_token = data["source"]["token"]
        assert new_token != tenant.token
        assert data["webhook_url"].endswith(f"/functions/v1/gptmaker-in/{new_token}")

        body = {"contextId": "ctx1", "role": "user", "message": "Oi"}
        assert client.post(tenant.url, json=body).status_code == 404
        new_url = tenant.url.rsplit("/", 1)[0] + "/" + new_token
        assert client.post(new_url, json=body).status_code == 200

    def test_rotate_other_tenant_source(self, client, tenant, other_tenant):
        response = client.post(
            f"/api/webhook-sources/{tenant.source_id}/rotate-token", headers=other_tenant.headers
        )

        assert response.status_code == 404

    def test_deactivate_and_reactivate(self, client, tenant):
        body = {"contextId": "ctx1", "role": "user", "message": "Oi"}
        url = f"/api/webhook-sources/{tenant.source_id}"

        response = client.patch(url, json={"active": False}, headers=tenant.headers)
        assert response.status_code == 200
        assert response.json()["active"] is False
        assert client.post(tenant.url, json=body).status_code == 404

        client.patch(url, json={"active": True}, headers=tenant.headers)
        assert client.post(tenant.url, json=body).status_code == 200
