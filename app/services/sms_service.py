"""SMS delivery for OTP codes.

WHAT:
    Provider-agnostic send_sms() with one function per provider: mock,
    Twilio, AWS SNS, Infobip. Selected by SMS_PROVIDER.

WHY:
    The OTP endpoint needs one normalized result regardless of provider so
    it can map failures to HTTP statuses:
        invalid_phone -> 400, throttled -> 429, everything else -> 502

ERROR CODES:
    invalid_phone | throttled | auth_failed | provider_down |
    provider_error | network_error | not_configured

REFERENCES:
    - https://www.twilio.com/docs/sms/api
    - https://docs.aws.amazon.com/sns/latest/dg/sms_publish-to-phone.html
    - https://www.infobip.com/docs/api/channels/sms
"""

import asyncio
import logging
import uuid
from dataclasses import dataclass
from typing import Optional

import boto3
import httpx
from botocore.exceptions import BotoCoreError, ClientError

from app.deps import Settings
from app.security import OTP_EXPIRY_MINUTES, mask_phone

logger = logging.getLogger(__name__)

SMS_TIMEOUT_SECONDS = 10.0
DEFAULT_INFOBIP_BASE_URL = "https://api.infobip.com"
DEFAULT_AWS_REGION = "us-east-1"

PROVIDER_ALIASES = {
    "development": "mock",
    "twilio": "twilio_sms",
}

TWILIO_INVALID_PHONE = {21211, 21614}
TWILIO_THROTTLED = {20429, 88888}
TWILIO_AUTH_FAILED = {20003, 20005}

SNS_ERROR_CODES = {
    "InvalidParameter": "invalid_phone",
    "InvalidParameterException": "invalid_phone",
    "Throttling": "throttled",
    "ThrottlingException": "throttled",
    "AuthorizationError": "auth_failed",
    "AuthorizationErrorException": "auth_failed",
    "EndpointDisabled": "provider_down",
    "EndpointDisabledException": "provider_down",
    "ServiceUnavailable": "provider_down",
}


@dataclass
class SMSResult:
    success: bool
    provider: str
    message_id: Optional[str] = None
    error: Optional[str] = None
    error_code: Optional[str] = None


def build_otp_message(otp: str, company_name: str) -> str:
    return (
        f"Your {company_name} verification code is: {otp}. "
        f"Valid for {OTP_EXPIRY_MINUTES} minutes. Do not share this code."
    )


def resolve_provider(name: Optional[str]) -> str:
    name = (name or "mock").strip().lower()
    return PROVIDER_ALIASES.get(name, name)


# =============================================================================
# PROVIDERS
# =============================================================================

async def _send_mock(phone: str, message: str) -> SMSResult:
    logger.info(f"[SMS] Mock SMS to {mask_phone(phone)} (no real SMS sent, {len(message)} chars)")
    return SMSResult(success=True, provider="mock", message_id=f"mock-{uuid.uuid4().hex[:12]}")


def _twilio_error_code(code: Optional[int]) -> str:
    if code in TWILIO_INVALID_PHONE:
        return "invalid_phone"
    if code in TWILIO_THROTTLED:
        return "throttled"
    if code in TWILIO_AUTH_FAILED:
        return "auth_failed"
    if isinstance(code, int) and 30000 <= code < 40000:
        return "provider_down"
    return "provider_error"


async def _send_twilio(
    phone: str,
    message: str,
    settings: Settings,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> SMSResult:
    if not (settings.TWILIO_ACCOUNT_SID and settings.TWILIO_AUTH_TOKEN and settings.TWILIO_PHONE_NUMBER):
        return SMSResult(
            success=False,
            provider="twilio_sms",
            error="Twilio credentials not configured",
            error_code="not_configured",
        )

    url = f"https://api.twilio.com/2010-04-01/Accounts/{settings.TWILIO_ACCOUNT_SID}/Messages.json"
    async with httpx.AsyncClient(timeout=SMS_TIMEOUT_SECONDS, transport=transport) as client:
        response = await client.post(
            url,
            auth=(settings.TWILIO_ACCOUNT_SID, settings.TWILIO_AUTH_TOKEN),
            data={"To": phone, "From": settings.TWILIO_PHONE_NUMBER, "Body": message},
        )

    data = response.json() if response.content else {}
    if response.is_error:
        error_code = _twilio_error_code(data.get("code"))
        if error_code == "provider_error" and response.status_code == 429:
            error_code = "throttled"
        return SMSResult(
            success=False,
            provider="twilio_sms",
            error=data.get("message") or "Twilio API error",
            error_code=error_code,
        )

    return SMSResult(success=True, provider="twilio_sms", message_id=data.get("sid"))


def _publish_sns(phone: str, message: str, settings: Settings) -> str:
    client = boto3.client(
        "sns",
        region_name=settings.AWS_REGION or DEFAULT_AWS_REGION,
        aws_access_key_id=settings.AWS_ACCESS_KEY_ID,
        aws_secret_access_key=settings.AWS_SECRET_ACCESS_KEY,
    )
    response = client.publish(
        PhoneNumber=phone,
        Message=message,
        MessageAttributes={
            "AWS.SNS.SMS.SMSType": {"DataType": "String", "StringValue": "Transactional"},
        },
    )
    return response["MessageId"]


async def _send_aws_sns(phone: str, message: str, settings: Settings) -> SMSResult:
    if not (settings.AWS_ACCESS_KEY_ID and settings.AWS_SECRET_ACCESS_KEY):
        return SMSResult(
            success=False,
            provider="aws_sns",
            error="AWS credentials not configured",
            error_code="not_configured",
        )

    try:
        message_id = await asyncio.wait_for(
            asyncio.to_thread(_publish_sns, phone, message, settings),
            timeout=SMS_TIMEOUT_SECONDS,
        )
    except ClientError as exc:
        code = exc.response.get("Error", {}).get("Code", "")
        return SMSResult(
            success=False,
            provider="aws_sns",
            error=str(exc),
            error_code=SNS_ERROR_CODES.get(code, "provider_error"),
        )
    except BotoCoreError as exc:
        return SMSResult(success=False, provider="aws_sns", error=str(exc), error_code="network_error")

    return SMSResult(success=True, provider="aws_sns", message_id=message_id)


async def _send_infobip(
    phone: str,
    message: str,
    settings: Settings,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> SMSResult:
    if not (settings.INFOBIP_API_KEY and settings.INFOBIP_SENDER):
        return SMSResult(
            success=False,
            provider="infobip",
            error="Infobip credentials not configured",
            error_code="not_configured",
        )

    base_url = (settings.INFOBIP_BASE_URL or DEFAULT_INFOBIP_BASE_URL).rstrip("/")
    async with httpx.AsyncClient(timeout=SMS_TIMEOUT_SECONDS, transport=transport) as client:
        response = await client.post(
            f"{base_url}/sms/2/text/advanced",
            headers={"Authorization": f"App {settings.INFOBIP_API_KEY}", "Accept": "application/json"},
            json={
                "messages": [
                    {
                        "from": settings.INFOBIP_SENDER,
                        "destinations": [{"to": phone}],
                        "text": message,
                    }
                ]
            },
        )

    data = response.json() if response.content else {}
    if response.is_error:
        service_exception = (data.get("requestError") or {}).get("serviceException") or {}
        if service_exception.get("messageId") == "BAD_REQUEST":
            error_code = "invalid_phone"
        elif response.status_code == 429:
            error_code = "throttled"
        elif response.status_code in (401, 403):
            error_code = "auth_failed"
        elif response.status_code >= 500:
            error_code = "provider_down"
        else:
            error_code = "provider_error"
        return SMSResult(
            success=False,
            provider="infobip",
            error=service_exception.get("text") or "Infobip API error",
            error_code=error_code,
        )

    messages = data.get("messages") or [{}]
    return SMSResult(success=True, provider="infobip", message_id=messages[0].get("messageId") or "unknown")


# =============================================================================
# ENTRY POINT
# =============================================================================

async def send_sms(
    phone: str,
    message: str,
    settings: Settings,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> SMSResult:
    """Send one SMS with the configured provider. Never raises."""
    provider = resolve_provider(settings.SMS_PROVIDER)

    try:
        if provider == "mock":
            result = await _send_mock(phone, message)
        elif provider == "twilio_sms":
            result = await _send_twilio(phone, message, settings, transport)
        elif provider == "aws_sns":
            result = await _send_aws_sns(phone, message, settings)
        elif provider == "infobip":
            result = await _send_infobip(phone, message, settings, transport)
        else:
            result = SMSResult(
                success=False,
                provider=provider,
                error=f"Unknown SMS provider: {provider}. Valid options: mock, twilio_sms, aws_sns, infobip",
                error_code="not_configured",
            )
    except (httpx.HTTPError, asyncio.TimeoutError, ValueError) as e:
        result = SMSResult(
            success=False,
            provider=provider,
            error=str(e) or e.__class__.__name__,
            error_code="network_error",
        )

    if result.success:
        logger.info(f"[SMS] Sent via {result.provider} to {mask_phone(phone)}")
    else:
        logger.error(
            f"[SMS] Send failed via {result.provider}: {result.error}",
            extra={"error_code": result.error_code, "phone": mask_phone(phone)},
        )
    return result
