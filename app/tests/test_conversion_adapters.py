"""Tests for the Google Ads and Meta CAPI conversion adapters.

WHAT: Request formatting, identifier hashing and failure classification
WHY: The worker retries only what the adapters report as transient; a
     misclassified 400 would be retried forever-ish, a 503 dropped

REFERENCES:
  - app/services/google_conversions_service.py
  - app/services/meta_capi_service.py
  - app/services/conversion_adapters.py
"""

import json
from datetime import datetime, timezone
from decimal import Decimal

import httpx
import pytest

from app.security import sha256_hex
from app.services import google_conversions_service as google_module
from app.services import meta_capi_service as meta_module
from app.services.conversion_adapters import ConversionPayload
from app.services.google_conversions_service import GOOGLE_OAUTH_TOKEN_URL, GoogleAdsConversionsService
from app.services.meta_capi_service import MetaCAPIService

CREATED_AT = datetime(2025, 12, 22, 9, 30, 15, tzinfo=timezone.utc)


def _payload(**overrides) -> ConversionPayload:
    values = dict(
        event_id="evt-1",
        event_type="lead_created",
        dedupe_key="a" * 64,
        created_at=CREATED_AT,
        email=" Sara@Example.com ",
        phone="+971 50 123 4567",
        gclid="Cj0KCQ",
        landing_path="/audit",
    )
    values.update(overrides)
    return ConversionPayload(**values)


@pytest.fixture(autouse=True)
def no_retry_sleep(monkeypatch):
    monkeypatch.setattr(google_module, "RETRY_BASE_DELAY_SECONDS", 0)
    monkeypatch.setattr(meta_module, "RETRY_BASE_DELAY_SECONDS", 0)


# ============================================================================
# Google Ads
# ============================================================================

def _google(handler) -> GoogleAdsConversionsService:
    return GoogleAdsConversionsService(
        customer_id="123-456-7890",
        conversion_action_id="555",
        developer_token="dev-token",
        client_id="client",
        client_secret="secret",
        refresh_token="refresh",
        login_customer_id="999-000-1111",
        transport=httpx.MockTransport(handler),
    )


def _google_handler(upload_status=200, upload_body=None, calls=None):
    def handler(request: httpx.Request) -> httpx.Response:
        if calls is not None:
            calls.append(request)
        if str(request.url) == GOOGLE_OAUTH_TOKEN_URL:
            return httpx.Response(200, json={"access_token": "access"})
        return httpx.Response(upload_status, json=upload_body if upload_body is not None else {"jobId": "42"})
    return handler


class TestGoogleAdsPayload:

    def test_build_conversion(self):
        service = _google(_google_handler())
        conversion = service.build_conversion(_payload(value=Decimal("150.00"), gbraid="ignored"))

        assert conversion["conversion_action"] == "customers/1234567890/conversionActions/555"
        assert conversion["conversion_date_time"] == "2025-12-22 09:30:15+00:00"
        assert conversion["order_id"] == "a" * 64
        assert conversion["gclid"] == "Cj0KCQ"
        assert "gbraid" not in conversion
        assert conversion["conversion_value"] == 150.0
        assert {"hashed_email": sha256_hex("sara@example.com")} in conversion["user_identifiers"]

    def test_falls_back_to_gbraid_then_wbraid(self):
        service = _google(_google_handler())
        assert service.build_conversion(_payload(gclid=None, gbraid="gb"))["gbraid"] == "gb"
        assert service.build_conversion(_payload(gclid=None, wbraid="wb"))["wbraid"] == "wb"


class TestGoogleAdsSend:

    @pytest.mark.asyncio
    async def test_success(self):
        calls = []
        service = _google(_google_handler(calls=calls))

        result = await service.send(_payload())

        assert result.success
        assert result.external_id == "42"
        upload = calls[-1]
        assert upload.url.path.endswith("/customers/1234567890:uploadClickConversions")
        assert upload.headers["developer-token"] == "dev-token"
        assert upload.headers["login-customer-id"] == "9990001111"
        assert upload.headers["authorization"] == "Bearer access"
        body = json.loads(upload.content)
        assert body["conversions"][0]["gclid"] == "Cj0KCQ"

    @pytest.mark.asyncio
    async def test_missing_click_id_is_terminal(self):
        calls = []
        service = _google(_google_handler(calls=calls))

        result = await service.send(_payload(gclid=None))

        assert not result.success and not result.retryable
        assert result.error_code == "missing_click_id"
        assert calls == []

    @pytest.mark.asyncio
    async def test_not_configured_is_terminal(self):
        service = GoogleAdsConversionsService(None, None, None, None, None, None)
        result = await service.send(_payload())
        assert result.error_code == "not_configured"
        assert not result.retryable

    @pytest.mark.asyncio
    async def test_server_error_is_transient_after_retries(self):
        calls = []
        service = _google(_google_handler(upload_status=503, upload_body={}, calls=calls))

        result = await service.send(_payload())

        assert not result.success and result.retryable
        uploads = [c for c in calls if str(c.url) != GOOGLE_OAUTH_TOKEN_URL]
        assert len(uploads) == google_module.MAX_HTTP_ATTEMPTS

    @pytest.mark.asyncio
    async def test_auth_error_is_terminal(self):
        service = _google(_google_handler(upload_status=401, upload_body={"error": {"message": "bad token"}}))
        result = await service.send(_payload())
        assert not result.retryable
        assert result.error_code == "auth_failed"

    @pytest.mark.asyncio
    async def test_partial_failure_is_rejected(self):
        body = {"partialFailureError": {"message": "The click is too old"}}
        service = _google(_google_handler(upload_body=body))
        result = await service.send(_payload())
        assert not result.success and not result.retryable
        assert result.error_code == "rejected"


# ============================================================================
# Meta CAPI
# ============================================================================

def _meta(handler, test_event_code=None) -> MetaCAPIService:
    return MetaCAPIService(
        pixel_id="123456",
        access_token="token",
        site_url="https://audits.example.com/",
        test_event_code=test_event_code,
        transport=httpx.MockTransport(handler),
    )


class TestMetaCAPIPayload:

    def test_build_event(self):
        service = _meta(lambda r: httpx.Response(200, json={}))
        event = service.build_event(_payload(fbclid="IwAR1", value=Decimal("99.5"), event_type="booking_created"))

        timestamp = int(CREATED_AT.timestamp())
        assert event["event_name"] == "Schedule"
        assert event["event_time"] == timestamp
        assert event["event_id"] == "a" * 64
        assert event["action_source"] == "website"
        assert event["event_source_url"] == "https://audits.example.com/audit"
        assert event["user_data"]["em"] == [sha256_hex("sara@example.com")]
        assert event["user_data"]["ph"] == [sha256_hex("971501234567")]
        assert event["user_data"]["fbc"] == f"fb.1.{timestamp}.IwAR1"
        assert event["custom_data"]["value"] == 99.5

    def test_unknown_event_type_defaults_to_lead(self):
        assert MetaCAPIService.event_name_for("reminder_sent") == "Lead"


class TestMetaCAPISend:

    @pytest.mark.asyncio
    async def test_success_with_test_event_code(self):
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(200, json={"events_received": 1, "fbtrace_id": "trace"})

        result = await _meta(handler, test_event_code="TEST123").send(_payload(fbclid="IwAR1"))

        assert result.success
        assert result.external_id == "trace"
        assert seen[0].url.params["access_token"] == "token"
        body = json.loads(seen[0].content)
        assert body["test_event_code"] == "TEST123"
        assert len(body["data"]) == 1

    @pytest.mark.asyncio
    async def test_rate_limited_is_transient(self):
        result = await _meta(lambda r: httpx.Response(429, json={})).send(_payload())
        assert not result.success and result.retryable

    @pytest.mark.asyncio
    async def test_bad_request_is_terminal(self):
        handler = lambda r: httpx.Response(400, json={"error": {"message": "Invalid parameter"}})
        result = await _meta(handler).send(_payload())
        assert not result.retryable
        assert result.error_code == "rejected"
        assert "Invalid parameter" in result.error

    @pytest.mark.asyncio
    async def test_network_error_is_transient(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        result = await _meta(handler).send(_payload())
        assert result.retryable
        assert result.error_code == "provider_unavailable"

    @pytest.mark.asyncio
    async def test_not_configured(self):
        result = await MetaCAPIService(pixel_id=None, access_token=None).send(_payload())
        assert result.error_code == "not_configured"
