"""Google Ads Offline Conversions Service.

WHAT:
    Uploads click conversions (leads, bookings) to Google Ads so campaigns
    optimize toward booked calls instead of form views.

WHY:
    - Closes the loop: ad click -> lead -> booked audit call -> report back
    - Enhanced conversions (hashed email/phone) recover matches when the
      click id alone is not enough

HOW:
    Google Ads REST API (no SDK) so transport failures can be classified:
    1. Exchange the refresh token for an access token
       (POST https://oauth2.googleapis.com/token)
    2. POST https://googleads.googleapis.com/v16/customers/{cid}:uploadClickConversions
       with developer-token header, one conversion keyed by order_id =
       dedupe_key (Google's own dedupe token)
    3. HTTP 429/5xx/timeouts are retryable; partial-failure errors and 4xx
       are terminal

PREREQUISITES:
    1. Conversion Action must exist in the Google Ads account
    2. gclid/gbraid/wbraid must be captured within 90 days of the click
    3. GOOGLE_ADS_* credentials configured

REFERENCES:
    - https://developers.google.com/google-ads/api/docs/conversions/upload-clicks
    - https://developers.google.com/google-ads/api/rest/reference/rest/v16/customers/uploadClickConversions
"""

import logging
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Optional

import httpx

from app.deps import Settings
from app.models import ConversionProviderEnum
from app.security import hash_identifier
from app.services.conversion_adapters import AdapterResult, ConversionPayload
from app.utils.retry import RetryableError, is_retryable_status, with_retry_and_timeout
from app.utils.timezones import ensure_utc

logger = logging.getLogger(__name__)

GOOGLE_ADS_API_VERSION = "v16"
GOOGLE_ADS_BASE_URL = f"https://googleads.googleapis.com/{GOOGLE_ADS_API_VERSION}"
GOOGLE_OAUTH_TOKEN_URL = "https://oauth2.googleapis.com/token"

REQUEST_TIMEOUT_SECONDS = 15.0
MAX_HTTP_ATTEMPTS = 2
RETRY_BASE_DELAY_SECONDS = 1.0


class GoogleAdsConversionError(Exception):
    """Terminal Google Ads error (auth, rejected payload)."""

    def __init__(self, message: str, error_code: str = "provider_error", response: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.error_code = error_code
        self.response = response


class GoogleAdsConversionsService:
    """Adapter uploading click conversions to Google Ads.

    Usage:
        ```python
        service = GoogleAdsConversionsService.from_settings(get_settings())
        result = await service.send(payload)
        if not result.success and result.retryable:
            ...  # worker schedules a retry
        ```
    """

    provider = ConversionProviderEnum.google_ads

    def __init__(
        self,
        customer_id: Optional[str],
        conversion_action_id: Optional[str],
        developer_token: Optional[str],
        client_id: Optional[str],
        client_secret: Optional[str],
        refresh_token: Optional[str],
        login_customer_id: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """Initialize with Google Ads API credentials.

        Args:
            customer_id: Google Ads customer ID (dashes allowed)
            conversion_action_id: Conversion action receiving the uploads
            developer_token: Google Ads API developer token
            client_id / client_secret / refresh_token: OAuth app credentials
            login_customer_id: MCC customer ID if accessing via manager account
            transport: httpx transport override (tests)
        """
        self.customer_id = self._normalize_customer_id(customer_id)
        self.conversion_action_id = conversion_action_id
        self.developer_token = developer_token
        self.client_id = client_id
        self.client_secret = client_secret
        self.refresh_token = refresh_token
        self.login_customer_id = self._normalize_customer_id(login_customer_id) if login_customer_id else None
        self._transport = transport

    @classmethod
    def from_settings(cls, settings: Settings, transport: Optional[httpx.AsyncBaseTransport] = None) -> "GoogleAdsConversionsService":
        return cls(
            customer_id=settings.GOOGLE_ADS_CUSTOMER_ID,
            conversion_action_id=settings.GOOGLE_ADS_CONVERSION_ACTION_ID,
            developer_token=settings.GOOGLE_ADS_DEVELOPER_TOKEN,
            client_id=settings.GOOGLE_ADS_CLIENT_ID,
            client_secret=settings.GOOGLE_ADS_CLIENT_SECRET,
            refresh_token=settings.GOOGLE_ADS_REFRESH_TOKEN,
            login_customer_id=settings.GOOGLE_ADS_LOGIN_CUSTOMER_ID,
            transport=transport,
        )

    @staticmethod
    def _normalize_customer_id(customer_id: Optional[str]) -> str:
        """Google Ads API expects the 10-digit ID without dashes."""
        if not customer_id:
            return ""
        return "".join(ch for ch in customer_id if ch.isdigit())

    @property
    def is_configured(self) -> bool:
        return all([
            self.customer_id,
            self.conversion_action_id,
            self.developer_token,
            self.client_id,
            self.client_secret,
            self.refresh_token,
        ])

    @property
    def upload_url(self) -> str:
        return f"{GOOGLE_ADS_BASE_URL}/customers/{self.customer_id}:uploadClickConversions"

    # -------------------------------------------------------------------------
    # Payload
    # -------------------------------------------------------------------------

    @staticmethod
    def format_conversion_time(value: datetime) -> str:
        """Google Ads format: "yyyy-mm-dd hh:mm:ss+00:00"."""
        return ensure_utc(value).strftime("%Y-%m-%d %H:%M:%S+00:00")

    def build_conversion(self, payload: ConversionPayload) -> Dict[str, Any]:
        """Build one ClickConversion.

        Exactly one click identifier is sent (gclid, else gbraid, else wbraid);
        the API rejects conversions carrying more than one.
        """
        conversion: Dict[str, Any] = {
            "conversion_action": f"customers/{self.customer_id}/conversionActions/{self.conversion_action_id}",
            "conversion_date_time": self.format_conversion_time(payload.created_at),
            "order_id": payload.dedupe_key,
            "currency_code": payload.currency or "USD",
        }

        if payload.gclid:
            conversion["gclid"] = payload.gclid
        elif payload.gbraid:
            conversion["gbraid"] = payload.gbraid
        elif payload.wbraid:
            conversion["wbraid"] = payload.wbraid

        if payload.value is not None:
            conversion["conversion_value"] = float(Decimal(payload.value))

        user_identifiers = []
        hashed_email = hash_identifier(payload.email)
        if hashed_email:
            user_identifiers.append({"hashed_email": hashed_email})
        hashed_phone = hash_identifier(payload.phone)
        if hashed_phone:
            user_identifiers.append({"hashed_phone_number": hashed_phone})
        if user_identifiers:
            conversion["user_identifiers"] = user_identifiers

        return conversion

    # -------------------------------------------------------------------------
    # HTTP
    # -------------------------------------------------------------------------

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=REQUEST_TIMEOUT_SECONDS, transport=self._transport)

    async def _get_access_token(self, client: httpx.AsyncClient) -> str:
        """Exchange the refresh token for a short-lived access token."""
        response = await client.post(
            GOOGLE_OAUTH_TOKEN_URL,
            data={
                "client_id": self.client_id,
                "client_secret": self.client_secret,
                "refresh_token": self.refresh_token,
                "grant_type": "refresh_token",
            },
        )
        if is_retryable_status(response.status_code):
            raise RetryableError(f"OAuth token endpoint returned {response.status_code}", response.status_code)
        if response.status_code != 200:
            raise GoogleAdsConversionError(
                f"OAuth token refresh failed: {response.status_code} {response.text[:200]}",
                error_code="auth_failed",
            )
        token = response.json().get("access_token")
        if not token:
            raise GoogleAdsConversionError("OAuth response missing access_token", error_code="auth_failed")
        return token

    async def _upload_once(self, conversion: Dict[str, Any]) -> Dict[str, Any]:
        async with self._client() as client:
            access_token = await self._get_access_token(client)

            headers = {
                "Authorization": f"Bearer {access_token}",
                "developer-token": self.developer_token or "",
                "Content-Type": "application/json",
            }
            if self.login_customer_id:
                headers["login-customer-id"] = self.login_customer_id

            response = await client.post(
                self.upload_url,
                headers=headers,
                json={"conversions": [conversion], "partial_failure": False},
            )

        body: Dict[str, Any] = {}
        if response.text:
            try:
                body = response.json()
            except ValueError:
                body = {"raw": response.text[:500]}

        if is_retryable_status(response.status_code):
            raise RetryableError(f"Google Ads API returned {response.status_code}", response.status_code)
        if response.status_code != 200:
            message = body.get("error", {}).get("message") if isinstance(body.get("error"), dict) else None
            raise GoogleAdsConversionError(
                f"Google Ads API error {response.status_code}: {message or response.text[:200]}",
                error_code="auth_failed" if response.status_code in (401, 403) else "rejected",
                response=body,
            )

        partial_failure = body.get("partialFailureError") or body.get("partial_failure_error")
        if partial_failure:
            raise GoogleAdsConversionError(
                f"Google Ads rejected conversion: {partial_failure.get('message', partial_failure)}",
                error_code="rejected",
                response=body,
            )
        return body

    async def send(self, payload: ConversionPayload) -> AdapterResult:
        """Upload one conversion; never raises."""
        if not self.is_configured:
            return AdapterResult.terminal("Google Ads credentials not configured", "not_configured")

        if not (payload.gclid or payload.gbraid or payload.wbraid):
            return AdapterResult.terminal("No gclid/gbraid/wbraid found", "missing_click_id")

        conversion = self.build_conversion(payload)
        logger.info(
            f"[GOOGLE_ADS] Uploading {payload.event_type} conversion {payload.event_id}",
            extra={"order_id": payload.dedupe_key, "has_user_identifiers": "user_identifiers" in conversion},
        )

        try:
            body = await with_retry_and_timeout(
                lambda: self._upload_once(conversion),
                attempts=MAX_HTTP_ATTEMPTS,
                base_delay=RETRY_BASE_DELAY_SECONDS,
                timeout=REQUEST_TIMEOUT_SECONDS,
                label="GOOGLE_ADS",
            )
        except GoogleAdsConversionError as e:
            logger.error(f"[GOOGLE_ADS] Upload failed: {e}")
            return AdapterResult.terminal(str(e), e.error_code, response=e.response)
        except (RetryableError, httpx.HTTPError) as e:
            logger.warning(f"[GOOGLE_ADS] Upload failed (retryable): {e}")
            return AdapterResult.transient(str(e) or e.__class__.__name__, "provider_unavailable")

        job_id = body.get("jobId") or body.get("job_id")
        logger.info(f"[GOOGLE_ADS] Conversion uploaded {payload.event_id}", extra={"job_id": job_id})
        return AdapterResult.ok(response=body, external_id=str(job_id) if job_id else None)
