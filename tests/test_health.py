"""
Tests for health probes and the /metrics endpoint.
"""

from chat_ingest.storage import Base, engine


class TestHealth:

    def test_live(self, client):
        response = client.get("/health/live")

        assert response.status_code == 200
        assert response.json() == {"status": "ok", "reason": None}

    def test_ready(self, client):
        response = client.get("/health/ready")

        assert response.status_code == 200
        assert response.json()["status"] == "ready"

    def test_not_ready_without_schema(self, client):
        Base.metadata.drop_all(bind=engine)

        response = client.get("/health/ready")

        assert response.status_code == 503
        assert response.json()["status"] == "not_ready"

    def test_request_id_header(self, client):
        response = client.get("/health/live")

        assert response.headers["X-Request-ID"]


class TestMetrics:

    def test_webhook_outcomes_exposed(self, client, tenant):
        body = {"contextId": "ctx1", "role": "user", "message": "Oi", "messageId": "m1"}
        client.post(tenant.url, json=body)
        client.post(tenant.url, json={"role": "tool"})

        text = client.get("/metrics").text

        assert 'webhook_requests_total{result="created"}' in text
        assert 'webhook_requests_total{result="ignored"}' in text

    def test_token_not_in_metric_labels(self, client, tenant):
        client.post(tenant.url, json={"role": "tool"})

        text = client.get("/metrics").text

        assert tenant.token not in text
        assert "gptmaker-in/{token}" in text
