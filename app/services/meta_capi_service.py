"""Meta Conversions API (CAPI) Service.

WHAT:
    Sends server-side lead and booking events to Meta for ad optimization.

WHY:
    - Server-side events survive ad blockers and iOS tracking limits
    - Deduplication with the browser pixel via event_id (= dedupe_key)

HOW:
    Uses Meta's Conversions API endpoint:
    POST https://graph.facebook.com/v18.0/{pixel_id}/events

REFERENCES:
    - https://developers.facebook.com/docs/marketing-api/conversions-api
    - https://developers.facebook.com/docs/marketing-api/conversions-api/parameters/fbp-and-fbc
"""

import logging
from decimal import Decimal
from typing import Any, Dict, List, Optional

import httpx

from app.deps import Settings
from app.models import ConversionProviderEnum
from app.security import hash_identifier, phone_digits
from app.services.conversion_adapters import AdapterResult, ConversionPayload
from app.utils.retry import RetryableError, is_retryable_status, with_retry_and_timeout
from app.utils.timezones import ensure_utc

logger = logging.getLogger(__name__)

META_GRAPH_API_VERSION = "v18.0"
META_GRAPH_BASE_URL = f"https://graph.facebook.com/{META_GRAPH_API_VERSION}"

REQUEST_TIMEOUT_SECONDS = 15.0
MAX_HTTP_ATTEMPTS = 2
RETRY_BASE_DELAY_SECONDS = 1.0

# Internal event type -> Meta standard event
META_EVENT_NAMES: Dict[str, str] = {
    "lead_created": "Lead",
    "booking_created": "Schedule",
    "booking_confirmed": "CompleteRegistration",
    "call_completed": "Contact",
}
DEFAULT_META_EVENT = "Lead"


class MetaCAPIError(Exception):
    """Terminal Meta CAPI error (bad token, rejected event)."""

    def __init__(self, message: str, response: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.response = response


class MetaCAPIService:
    """Adapter sending server-side events to Meta Conversions API.

    Usage:
        ```python
        service = MetaCAPIService(pixel_id="123456", access_token="token",
                                  site_url="https://example.com")
        result = await service.send(payload)
        ```
    """

    provider = ConversionProviderEnum.meta_capi

    def __init__(
        self,
        pixel_id: Optional[str],
        access_token: Optional[str],
        site_url: Optional[str] = None,
        test_event_code: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """Initialize CAPI service with pixel credentials.

        Args:
            pixel_id: Meta Pixel ID (from Meta Business Manager)
            access_token: Conversions API access token
            site_url: Public site origin used to build event_source_url
            test_event_code: Routes events to Test Events in Events Manager
            transport: httpx transport override (tests)
        """
        self.pixel_id = pixel_id
        self.access_token = access_token
        self.site_url = (site_url or "").rstrip("/")
        self.test_event_code = test_event_code
        self.events_url = f"{META_GRAPH_BASE_URL}/{pixel_id}/events"
        self._transport = transport

    @classmethod
    def from_settings(cls, settings: Settings, transport: Optional[httpx.AsyncBaseTransport] = None) -> "MetaCAPIService":
        return cls(
            pixel_id=settings.META_PIXEL_ID,
            access_token=settings.META_CAPI_ACCESS_TOKEN,
            site_url=settings.SITE_URL,
            test_event_code=settings.META_CAPI_TEST_EVENT_CODE,
            transport=transport,
        )

    @property
    def is_configured(self) -> bool:
        return bool(self.pixel_id and self.access_token)

    @staticmethod
    def event_name_for(event_type: str) -> str:
        return META_EVENT_NAMES.get(event_type, DEFAULT_META_EVENT)

    def build_event(self, payload: ConversionPayload) -> Dict[str, Any]:
        """Build a single event payload.

        WHAT: Constructs the event object with user data hashing
        WHY: Meta requires SHA256-hashed PII and the click cookie format
             fb.1.{event_time}.{fbclid}
        """
        event_time = int(ensure_utc(payload.created_at).timestamp())

        user_data: Dict[str, Any] = {}
        hashed_email = hash_identifier(payload.email)
        if hashed_email:
            user_data["em"] = [hashed_email]
        # Meta expects digits only (country code included, no "+")
        hashed_phone = hash_identifier(phone_digits(payload.phone))
        if hashed_phone:
            user_data["ph"] = [hashed_phone]
        if payload.fbclid:
            user_data["fbc"] = f"fb.1.{event_time}.{payload.fbclid}"

        custom_data: Dict[str, Any] = {
            "currency": payload.currency or "USD",
            "content_name": payload.event_type,
        }
        if payload.value is not None:
            custom_data["value"] = float(Decimal(payload.value))

        event: Dict[str, Any] = {
            "event_name": self.event_name_for(payload.event_type),
            "event_time": event_time,
            "event_id": payload.dedupe_key,  # CRITICAL for deduplication with the pixel
            "action_source": "website",
            "user_data": user_data,
            "custom_data": custom_data,
        }

        if self.site_url:
            event["event_source_url"] = f"{self.site_url}{payload.landing_path or '/'}"

        return event

    async def _send_events(self, events: List[Dict[str, Any]]) -> Dict[str, Any]:
        """POST events to the graph API.

        Raises:
            RetryableError: 429/5xx
            MetaCAPIError: Any other non-200 or an error object in the body
        """
        payload: Dict[str, Any] = {"data": events}
        if self.test_event_code:
            payload["test_event_code"] = self.test_event_code

        async with httpx.AsyncClient(timeout=REQUEST_TIMEOUT_SECONDS, transport=self._transport) as client:
            response = await client.post(
                self.events_url,
                params={"access_token": self.access_token},
                json=payload,
            )

        try:
            data = response.json() if response.text else {}
        except ValueError:
            data = {"raw": response.text[:500]}

        if is_retryable_status(response.status_code):
            raise RetryableError(f"Meta CAPI returned {response.status_code}", response.status_code)

        if response.status_code != 200 or data.get("error"):
            error = data.get("error") or {}
            error_message = error.get("message") if isinstance(error, dict) else str(error)
            logger.error(
                f"[META_CAPI] API error: {response.status_code} - {error_message or response.text[:200]}",
                extra={"response": data},
            )
            raise MetaCAPIError(f"Meta CAPI error: {error_message or response.status_code}", response=data)

        return data

    async def send(self, payload: ConversionPayload) -> AdapterResult:
        """Send one conversion event; never raises."""
        if not self.is_configured:
            return AdapterResult.terminal("Meta CAPI credentials not configured", "not_configured")

        event = self.build_event(payload)
        logger.info(
            f"[META_CAPI] Sending {event['event_name']} to pixel {self.pixel_id}",
            extra={"event_id": event["event_id"], "test_mode": bool(self.test_event_code)},
        )

        try:
            result = await with_retry_and_timeout(
                lambda: self._send_events([event]),
                attempts=MAX_HTTP_ATTEMPTS,
                base_delay=RETRY_BASE_DELAY_SECONDS,
                timeout=REQUEST_TIMEOUT_SECONDS,
                label="META_CAPI",
            )
        except MetaCAPIError as e:
            return AdapterResult.terminal(str(e), "rejected", response=e.response)
        except (RetryableError, httpx.HTTPError) as e:
            logger.warning(f"[META_CAPI] Send failed (retryable): {e}")
            return AdapterResult.transient(str(e) or e.__class__.__name__, "provider_unavailable")

        logger.info(
            f"[META_CAPI] Success: {result.get('events_received', 0)} event(s) received",
            extra={"fbtrace_id": result.get("fbtrace_id", "")},
        )
        return AdapterResult.ok(response=result, external_id=result.get("fbtrace_id"))
