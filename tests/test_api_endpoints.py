"""
Tests for API Endpoints

Tests the WhatsApp webhook, the reports API, API-key gating and the system routes.
"""

from datetime import datetime, timezone

import pytest
from fastapi.testclient import TestClient

from conftest import PHONES
from folioflow.core.settings import reset_settings
from folioflow.services.project_workflow import ProjectDraft
from main import app

DIRECTOR_FOLIO = (
    "create folio Brake pads\n"
    "Plant: PUE\n"
    "Beneficiary: Refacciones del Centro\n"
    "Amount: $1,500.50\n"
    "Category: Workshop\n"
    "Unit: AT-15"
)


@pytest.fixture()
def client(directory, transport, store):
    with TestClient(app) as test_client:
        yield test_client


def post_message(client, who, body, sid):
    return client.post(
        "/webhooks/whatsapp",
        data={"From": f"whatsapp:{PHONES.get(who, who)}", "Body": body, "MessageSid": sid, "NumMedia": "0"},
    )


@pytest.fixture()
def folio_code(client, directory):
    response = post_message(client, "zp", DIRECTOR_FOLIO, "SM-create-1")
    assert response.status_code == 200
    return directory.query_one("SELECT code FROM folios")["code"]


class TestWhatsAppWebhook:
    """Inbound webhook always answers 200 with TwiML."""

    def test_help_reply(self, client):
        response = post_message(client, "ga", "help", "SM-help")
        assert response.status_code == 200
        assert response.headers["content-type"].startswith("application/xml")
        assert "<Response><Message>" in response.text
        # Reply text is XML-escaped
        assert "&lt;code&gt;" in response.text

    def test_creation_fans_out_after_reply(self, client, transport, folio_code):
        assert folio_code.startswith("F-")
        # APPROVED reaches the plant's GA and GG and the controller, not the director who acted
        assert sorted(transport.recipients) == [
            "whatsapp:+522225550101",
            "whatsapp:+525550000002",
            "whatsapp:+525550000004",
        ]
        assert all(folio_code in body for _, body in transport.sent)

    def test_retry_is_acknowledged_once(self, client, transport, directory):
        first = post_message(client, "zp", DIRECTOR_FOLIO, "SM-retry")
        second = post_message(client, "zp", DIRECTOR_FOLIO, "SM-retry")
        assert first.status_code == second.status_code == 200
        assert "retry detected" in second.text
        assert directory.query_one("SELECT COUNT(*) AS n FROM folios")["n"] == 1
        assert len(transport.sent) == 3

    def test_unregistered_sender(self, client, transport):
        response = post_message(client, "+525599999999", "approve 001", "SM-stranger")
        assert response.status_code == 200
        assert "not registered" in response.text
        assert transport.sent == []

    def test_rejected_command_still_200(self, client, folio_code):
        response = post_message(client, "ga", f"select {folio_code}", "SM-forbidden")
        assert response.status_code == 200
        assert "cannot select" in response.text

    def test_empty_form(self, client):
        response = client.post("/webhooks/whatsapp", data={})
        assert response.status_code == 200
        assert "<Message>" in response.text


class TestReports:
    def test_list_and_filter_folios(self, client, folio_code):
        today = datetime.now(timezone.utc).date().isoformat()
        data = client.get("/reports/folios").json()
        assert data["count"] == 1
        assert data["folios"][0]["code"] == folio_code
        assert data["folios"][0]["status"] == "READY_TO_SCHEDULE"

        assert client.get("/reports/folios", params={"org_unit": "QRO"}).json()["count"] == 0
        assert client.get("/reports/folios", params={"category": "workshop"}).json()["count"] == 1
        assert client.get("/reports/folios", params={"date_from": today, "date_to": today}).json()["count"] == 1
        assert client.get("/reports/folios", params={"date_to": "2000-01-01"}).json()["count"] == 0

    def test_bad_filters(self, client):
        assert client.get("/reports/folios", params={"status": "bogus"}).status_code == 400
        assert client.get("/reports/folios", params={"org_unit": "MTY"}).status_code == 404

    def test_folio_detail(self, client, folio_code):
        data = client.get(f"/reports/folios/{folio_code}").json()
        assert data["folio"]["amount"] == 1500.5
        assert [h["status_at_entry"] for h in data["history"]] == ["GENERATED", "HQ_APPROVED", "READY_TO_SCHEDULE"]

        assert client.get("/reports/folios/F-202001-999").status_code == 404
        assert client.get("/reports/folios/nonsense").status_code == 400

    def test_notification_log(self, client, folio_code):
        data = client.get("/reports/notifications", params={"record_code": folio_code}).json()
        assert data["count"] == 3
        assert {n["outcome"] for n in data["notifications"]} == {"SENT"}

    def test_projects(self, client, projects, actors):
        code = projects.create_project(actors["ga"], ProjectDraft(name="Line 3")).record_code
        post_message(
            client, "ga",
            f"create folio Valves\nBeneficiary: Acme\nAmount: 250\nCategory: Fuel\nProject: {code}",
            "SM-proj-folio",
        )

        listed = client.get("/reports/projects", params={"org_unit": "PUE"}).json()
        assert listed["count"] == 1
        assert listed["projects"][0]["folio_count"] == 1
        assert listed["projects"][0]["total_amount"] == 250.0
        assert client.get("/reports/projects").json()["count"] == 1

        detail = client.get(f"/reports/projects/{code}").json()
        assert detail["project"]["name"] == "Line 3"
        assert len(detail["folios"]) == 1
        assert detail["history"][0]["status_at_entry"] == "EN_COURSE"


class TestApiKey:
    @pytest.fixture()
    def keyed_client(self, monkeypatch, client):
        monkeypatch.setenv("API_KEY", "s3cret")
        reset_settings()
        return client

    def test_missing_key(self, keyed_client):
        assert keyed_client.get("/reports/folios").status_code == 401

    def test_wrong_key(self, keyed_client):
        assert keyed_client.get("/reports/folios", headers={"X-API-Key": "nope"}).status_code == 403

    def test_right_key(self, keyed_client):
        response = keyed_client.get("/reports/folios", headers={"X-API-Key": "s3cret"})
        assert response.status_code == 200

    def test_webhook_needs_no_key(self, keyed_client):
        assert post_message(keyed_client, "ga", "help", "SM-keyless").status_code == 200


class TestSystem:
    def test_health(self, client):
        data = client.get("/health").json()
        assert data["status"] == "ok"
        assert data["transport_configured"] is False

    def test_health_db(self, client):
        assert client.get("/health/db").json() == {"ok": True, "backend": "sqlite"}

    def test_metrics(self, client, folio_code):
        data = client.get("/metrics").json()
        assert data["inbound"]["ok"] == 1
        assert data["transitions"]["folio:create"] == 1
        assert data["notifications"]["SENT"] == 3
        assert data["pending_fanouts"] == 0
