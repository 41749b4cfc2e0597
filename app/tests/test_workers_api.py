"""Tests for cron-triggered worker endpoints.

WHAT: Secret checks and run summaries for the three worker triggers
WHY: The endpoints are public URLs; only the scheduler may run them

REFERENCES:
  - app/routers/workers.py
  - app/deps.py (verify_cron_secret, verify_bearer_secret)
"""

from app.models import ConversionEventTypeEnum, ConversionProviderEnum
from app.services.conversion_service import enqueue_conversion_event

SECRET = "test-cron-secret"


class TestConversionsTrigger:

    def test_requires_secret(self, client):
        assert client.get("/api/workers/conversions").status_code == 401
        assert client.get("/api/workers/conversions", params={"secret": "wrong"}).status_code == 401

    def test_unset_secret_is_unavailable(self, client, settings):
        settings.CRON_SECRET = None
        response = client.get("/api/workers/conversions", params={"secret": SECRET})
        assert response.status_code == 503

    def test_empty_run(self, client):
        response = client.get("/api/workers/conversions", params={"secret": SECRET})

        assert response.status_code == 200
        body = response.json()
        assert body["ok"] is True
        assert body["processed"] == 0
        assert "duration_ms" in body

    def test_processes_pending_event(self, client, test_db_session, test_lead):
        enqueue_conversion_event(
            test_db_session, ConversionEventTypeEnum.lead_created, ConversionProviderEnum.meta_capi, lead_id=test_lead.id
        )
        test_db_session.commit()

        response = client.get("/api/workers/conversions", params={"secret": SECRET})

        assert response.status_code == 200
        assert response.json()["processed"] == 1


class TestGoogleAdsSyncTrigger:

    def test_bearer_required(self, client):
        assert client.post("/api/workers/google-ads-sync").status_code == 401
        response = client.post("/api/workers/google-ads-sync", headers={"Authorization": f"Token {SECRET}"})
        assert response.status_code == 401

    def test_skips_without_credentials(self, client):
        response = client.post("/api/workers/google-ads-sync", headers={"Authorization": f"Bearer {SECRET}"})

        assert response.status_code == 200
        assert response.json() == {"ok": True, "skipped": True, "reason": "not_configured"}

    def test_admin_secret_accepted(self, client, settings):
        settings.ADMIN_SECRET = "admin-secret"
        response = client.post("/api/workers/google-ads-sync", headers={"Authorization": "Bearer admin-secret"})
        assert response.status_code == 200


class TestRemindersTrigger:

    def test_requires_secret(self, client):
        assert client.get("/api/workers/reminders", params={"secret": "nope"}).status_code == 401

    def test_empty_run(self, client):
        response = client.get("/api/workers/reminders", params={"secret": SECRET})

        assert response.status_code == 200
        assert response.json()["processed"] == 0
