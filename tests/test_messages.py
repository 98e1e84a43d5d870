"""
Tests for sending alerts and listing message logs.

Tests cover:
- POST /alerts/send success, partial and total failure
- Request validation (422)
- Alert throttling (429)
- POST /sms/test sends without writing logs
- GET /sms/logs pagination and state filter
"""

from sms_pipeline.provider import ProviderError


def send_alert(client, recipients, message="Back in stock", headers=None):
    return client.post(
        "/alerts/send",
        json={"recipients": recipients, "message": message},
        headers=headers or {},
    )


class TestSendAlerts:
    """Test POST /alerts/send."""

    def test_all_sent(self, client, fake_provider):
        response = send_alert(client, ["+14155551234", "+447911123456"])

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "all_sent"
        assert data["total"] == 2
        assert data["success_count"] == 2
        assert data["failed_count"] == 0
        assert [r["recipient"] for r in data["results"]] == ["+14155551234", "+447911123456"]
        assert all(r["provider_message_id"] for r in data["results"])
        assert len(fake_provider.calls) == 2

    def test_partial_failure_reported(self, client, fake_provider):
        fake_provider.failures["+14155551235"] = ProviderError("Carrier rejected")

        response = send_alert(client, ["+14155551234", "invalid-phone", "+14155551235"])

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "partial_failure"
        assert data["success_count"] == 1
        assert data["failed_count"] == 2
        assert data["results"][1] == {
            "recipient": "invalid-phone",
            "success": False,
            "provider_message_id": None,
            "error": "invalid phone number format",
        }
        assert data["results"][2]["error"] == "Carrier rejected"

    def test_provider_not_configured(self, client, fake_provider):
        fake_provider.configured = False

        response = send_alert(client, ["+14155551234"])

        data = response.json()
        assert data["status"] == "all_failed"
        assert data["results"][0]["error"] == "provider not configured"

    def test_empty_recipient_list(self, client, fake_provider):
        response = send_alert(client, [])

        assert response.status_code == 200
        assert response.json() == {
            "status": "empty",
            "total": 0,
            "success_count": 0,
            "failed_count": 0,
            "results": [],
        }
        assert fake_provider.calls == []

    def test_message_too_long_rejected(self, client):
        response = send_alert(client, ["+14155551234"], message="x" * 161)
        assert response.status_code == 422

    def test_empty_message_rejected(self, client):
        response = send_alert(client, ["+14155551234"], message="")
        assert response.status_code == 422

    def test_missing_recipients_rejected(self, client):
        response = client.post("/alerts/send", json={"message": "hi"})
        assert response.status_code == 422


class TestAlertThrottle:
    """Test the alert trigger throttle (5 per window by default)."""

    def test_sixth_send_throttled(self, client):
        for _ in range(5):
            assert send_alert(client, []).status_code == 200

        response = send_alert(client, [])

        assert response.status_code == 429
        assert response.json() == {"detail": "too many requests"}
        assert int(response.headers["retry-after"]) > 0

    def test_rotating_session_header_still_throttled(self, client):
        statuses = [
            send_alert(client, [], headers={"X-Session-Id": f"s{i}"}).status_code
            for i in range(12)
        ]

        assert statuses[:5] == [200] * 5
        assert statuses[5:] == [429] * 7

    def test_test_send_shares_alert_window(self, client):
        for _ in range(5):
            send_alert(client, [])

        response = client.post("/sms/test", json={"to": "+14155551234", "message": "ping"})

        assert response.status_code == 429


class TestTestSend:
    """Test POST /sms/test."""

    def test_send_without_log(self, client, fake_provider):
        response = client.post("/sms/test", json={"to": "+14155551234", "message": "ping"})

        assert response.status_code == 200
        assert response.json()["success"] is True
        assert len(fake_provider.calls) == 1
        assert client.get("/sms/logs").json()["total"] == 0

    def test_invalid_number(self, client, fake_provider):
        response = client.post("/sms/test", json={"to": "12345", "message": "ping"})

        assert response.status_code == 200
        assert response.json()["error"] == "invalid phone number format"
        assert fake_provider.calls == []


class TestSmsLogs:
    """Test GET /sms/logs."""

    def test_empty(self, client):
        response = client.get("/sms/logs")

        assert response.status_code == 200
        assert response.json() == {"data": [], "total": 0, "limit": 50, "offset": 0}

    def test_newest_first_with_fields(self, client):
        send_alert(client, ["+14155551234", "bad-number"])

        data = client.get("/sms/logs").json()

        assert data["total"] == 2
        newest, oldest = data["data"]
        assert newest["recipient"] == "bad-number"
        assert newest["state"] == "FAILED"
        assert newest["error_detail"] == "invalid phone number format"
        assert oldest["recipient"] == "+14155551234"
        assert oldest["state"] == "SENT"
        assert oldest["body"] == "Back in stock"
        assert oldest["provider_message_id"]

    def test_pagination(self, client):
        send_alert(client, ["+14155551230", "+14155551231", "+14155551232"])

        data = client.get("/sms/logs", params={"limit": 2, "offset": 2}).json()

        assert data["total"] == 3
        assert len(data["data"]) == 1
        assert data["data"][0]["recipient"] == "+14155551230"

    def test_filter_by_state(self, client):
        send_alert(client, ["+14155551234", "bad-number", "+14155551235"])

        data = client.get("/sms/logs", params={"state": "SENT"}).json()

        assert data["total"] == 2
        assert {log["state"] for log in data["data"]} == {"SENT"}

    def test_invalid_query_rejected(self, client):
        assert client.get("/sms/logs", params={"limit": 0}).status_code == 422
        assert client.get("/sms/logs", params={"limit": 101}).status_code == 422
        assert client.get("/sms/logs", params={"offset": -1}).status_code == 422
        assert client.get("/sms/logs", params={"state": "LOST"}).status_code == 422
