"""Phone OTP Service.

WHAT:
    Sends and verifies 6-digit SMS codes that prove a lead owns the phone
    number on the form. Successful verification stamps
    leads.phone_verified_at, which bookings require when
    ENFORCE_PHONE_VERIFICATION is on.

WHY:
    Codes cost money to send and are short, so both sides are limited:
    - send: 2/min per IP, 3 per 15 min per phone hash
    - verify: max_attempts wrong codes, then the verification is locked

HOW (send):
    1. Format + rate limits (429 with resetIn, suspicious event)
    2. Lead exists (404), phone digits match (403), already verified -> ok
    3. Remove stale pending/expired/failed verifications for the phone
    4. Store bcrypt hash, send SMS; provider failure deletes the row

HOW (verify):
    400 format, 404 unknown, verified -> ok, 410 expired, 429 locked,
    401 wrong code with remainingAttempts.

REFERENCES:
    - app/services/sms_service.py
    - app/services/rate_limiter.py
    - app/routers/otp.py
"""

import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Optional
from uuid import UUID

from sqlalchemy.orm import Session

from app.deps import Settings
from app.models import Lead, PhoneVerification, SeverityEnum, VerificationStatusEnum
from app.security import (
    OTP_EXPIRY_MINUTES,
    generate_otp,
    hash_optional,
    hash_otp,
    mask_phone,
    otp_expiry,
    phone_digits,
    sha256_hex,
    verify_otp,
)
from app.services.lead_service import E164_PATTERN
from app.services.rate_limiter import get_limiter
from app.services.security_events import log_suspicious_event
from app.services.sms_service import SMSResult, build_otp_message, send_sms
from app.utils.timezones import ensure_utc

logger = logging.getLogger(__name__)

OTP_PATTERN = re.compile(r"^\d{6}$")

IP_RATE_LIMIT = 2
IP_WINDOW_SECONDS = 60
PHONE_RATE_LIMIT = 3
PHONE_WINDOW_SECONDS = 15 * 60

SMS_ERROR_STATUS = {
    "throttled": 429,
    "invalid_phone": 400,
}
SMS_ERROR_MESSAGES = {
    "invalid_phone": "Invalid phone number format. Please check and try again.",
    "throttled": "SMS service is temporarily unavailable. Please try again in a few minutes.",
    "not_configured": "SMS service not configured. Please contact support.",
}
DEFAULT_SMS_ERROR = "Failed to send SMS. Please try again."


class OTPError(Exception):
    """OTP request rejected. Carries the HTTP status and extra body fields."""

    def __init__(self, status_code: int, message: str, extra: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.status_code = status_code
        self.message = message
        self.extra = extra or {}


@dataclass
class RequestContext:
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    endpoint: Optional[str] = None


@dataclass
class OTPSendResult:
    already_verified: bool = False
    verification_id: Optional[UUID] = None
    phone_display: Optional[str] = None
    expires_in: int = OTP_EXPIRY_MINUTES * 60
    provider: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        if self.already_verified:
            return {"success": True, "alreadyVerified": True, "message": "Phone number already verified"}
        return {
            "success": True,
            "verificationId": str(self.verification_id),
            "expiresIn": self.expires_in,
            "phoneDisplay": self.phone_display,
        }


@dataclass
class OTPVerifyResult:
    lead_id: Optional[UUID] = None
    already_verified: bool = False
    body: Dict[str, Any] = field(default_factory=dict)


def hash_phone(phone: str) -> str:
    return sha256_hex(phone_digits(phone))


def _parse_uuid(value: Optional[str], message: str) -> UUID:
    try:
        return UUID(str(value))
    except (TypeError, ValueError):
        raise OTPError(400, message)


# =============================================================================
# SEND
# =============================================================================

async def send_phone_otp(
    db: Session,
    lead_id: Optional[str],
    phone: Optional[str],
    settings: Settings,
    context: Optional[RequestContext] = None,
    now: Optional[datetime] = None,
) -> OTPSendResult:
    """Issue a verification code for a lead's phone.

    Raises:
        OTPError: Validation, rate-limit, ownership or provider failure
    """
    context = context or RequestContext()
    now = now or datetime.now(timezone.utc)

    if not lead_id or not phone:
        raise OTPError(400, "Missing leadId or phoneNumber")
    phone = phone.strip()
    if not E164_PATTERN.match(phone):
        raise OTPError(400, "Invalid phone number format. Use E.164 format (e.g., +14155552671)")
    lead_uuid = _parse_uuid(lead_id, "Invalid leadId")

    ip_key = hash_optional(context.ip_address) or "unknown"
    ip_check = get_limiter("otp_ip", IP_RATE_LIMIT, IP_WINDOW_SECONDS).check(ip_key)
    if not ip_check.allowed:
        log_suspicious_event(
            db,
            "otp_rate_limit_ip",
            SeverityEnum.medium,
            context.ip_address,
            context.user_agent,
            context.endpoint,
            {"lead_id": str(lead_uuid), "reset_in": ip_check.reset_in},
        )
        raise OTPError(
            429,
            "Too many requests. Please wait before requesting another code.",
            {"resetIn": ip_check.reset_in},
        )

    phone_hash = hash_phone(phone)
    phone_check = get_limiter("otp_phone", PHONE_RATE_LIMIT, PHONE_WINDOW_SECONDS).check(phone_hash)
    if not phone_check.allowed:
        log_suspicious_event(
            db,
            "otp_rate_limit_phone",
            SeverityEnum.medium,
            context.ip_address,
            context.user_agent,
            context.endpoint,
            {"lead_id": str(lead_uuid), "phone_hash": phone_hash, "reset_in": phone_check.reset_in},
        )
        raise OTPError(
            429,
            "Too many verification attempts for this phone number. Please try again later.",
            {"resetIn": phone_check.reset_in},
        )

    lead = db.get(Lead, lead_uuid)
    if lead is None:
        raise OTPError(404, "Lead not found")

    if phone_digits(lead.phone_e164) != phone_digits(phone):
        log_suspicious_event(
            db,
            "otp_phone_mismatch",
            SeverityEnum.high,
            context.ip_address,
            context.user_agent,
            context.endpoint,
            {"lead_id": str(lead_uuid), "phone_hash": phone_hash},
        )
        raise OTPError(403, "Phone number does not match lead record")

    if lead.phone_verified_at is not None:
        return OTPSendResult(already_verified=True)

    (
        db.query(PhoneVerification)
        .filter(
            PhoneVerification.phone_hash == phone_hash,
            PhoneVerification.status.in_([
                VerificationStatusEnum.pending,
                VerificationStatusEnum.expired,
                VerificationStatusEnum.failed,
            ]),
        )
        .delete(synchronize_session=False)
    )

    otp = generate_otp()
    verification = PhoneVerification(
        lead_id=lead.id,
        phone_e164=phone,
        phone_hash=phone_hash,
        otp_hash=hash_otp(otp),
        status=VerificationStatusEnum.pending,
        attempts=0,
        expires_at=otp_expiry(now),
        ip_hash=hash_optional(context.ip_address),
        created_at=now,
    )
    db.add(verification)
    db.commit()
    db.refresh(verification)

    sms: SMSResult = await send_sms(phone, build_otp_message(otp, settings.COMPANY_NAME), settings)
    if not sms.success:
        db.delete(verification)
        db.commit()
        status_code = SMS_ERROR_STATUS.get(sms.error_code or "", 502)
        raise OTPError(status_code, SMS_ERROR_MESSAGES.get(sms.error_code or "", DEFAULT_SMS_ERROR))

    verification.provider = sms.provider
    verification.provider_message_id = sms.message_id
    db.commit()

    logger.info(
        f"[OTP] Code sent for lead {lead.id}",
        extra={
            "verification_id": str(verification.id),
            "provider": sms.provider,
            "phone": mask_phone(phone),
        },
    )
    return OTPSendResult(
        verification_id=verification.id,
        phone_display=mask_phone(phone),
        provider=sms.provider,
    )


# =============================================================================
# VERIFY
# =============================================================================

def _lock(db: Session, verification: PhoneVerification, context: RequestContext) -> None:
    verification.status = VerificationStatusEnum.failed
    db.commit()
    log_suspicious_event(
        db,
        "otp_max_attempts",
        SeverityEnum.high,
        context.ip_address,
        context.user_agent,
        context.endpoint,
        {
            "verification_id": str(verification.id),
            "lead_id": str(verification.lead_id),
            "attempts": verification.attempts,
        },
    )


def verify_phone_otp(
    db: Session,
    verification_id: Optional[str],
    otp: Optional[str],
    context: Optional[RequestContext] = None,
    now: Optional[datetime] = None,
) -> OTPVerifyResult:
    """Check a submitted code.

    Raises:
        OTPError: 400 format, 404 unknown, 410 expired, 429 locked,
            401 wrong code
    """
    context = context or RequestContext()
    now = now or datetime.now(timezone.utc)

    if not verification_id or not otp:
        raise OTPError(400, "Missing verificationId or otp")
    otp = otp.strip()
    if not OTP_PATTERN.match(otp):
        raise OTPError(400, "Invalid OTP format. Must be 6 digits.")

    try:
        verification_uuid = UUID(str(verification_id))
    except ValueError:
        raise OTPError(404, "Verification record not found")

    verification = db.get(PhoneVerification, verification_uuid)
    if verification is None:
        raise OTPError(404, "Verification record not found")

    if verification.status == VerificationStatusEnum.verified:
        return OTPVerifyResult(
            lead_id=verification.lead_id,
            already_verified=True,
            body={"success": True, "alreadyVerified": True, "message": "Phone already verified"},
        )

    if now > ensure_utc(verification.expires_at):
        verification.status = VerificationStatusEnum.expired
        db.commit()
        raise OTPError(410, "OTP expired", {"expired": True})

    if verification.attempts >= verification.max_attempts:
        _lock(db, verification, context)
        raise OTPError(429, "Maximum verification attempts exceeded", {"locked": True})

    if not verify_otp(otp, verification.otp_hash):
        # Counted in the database so parallel guesses cannot share one attempt
        counted = (
            db.query(PhoneVerification)
            .filter(
                PhoneVerification.id == verification.id,
                PhoneVerification.attempts < PhoneVerification.max_attempts,
            )
            .update(
                {PhoneVerification.attempts: PhoneVerification.attempts + 1},
                synchronize_session=False,
            )
        )
        db.commit()
        db.refresh(verification)
        remaining = verification.max_attempts - verification.attempts
        if counted != 1 or remaining <= 0:
            _lock(db, verification, context)
            raise OTPError(
                429,
                "Invalid code. Maximum attempts exceeded.",
                {"locked": True, "remainingAttempts": 0},
            )

        log_suspicious_event(
            db,
            "otp_invalid_attempt",
            SeverityEnum.low,
            context.ip_address,
            context.user_agent,
            context.endpoint,
            {
                "verification_id": str(verification.id),
                "lead_id": str(verification.lead_id),
                "attempts": verification.attempts,
            },
        )
        raise OTPError(401, "Invalid verification code", {"remainingAttempts": remaining})

    verification.status = VerificationStatusEnum.verified
    verification.verified_at = now
    lead = db.get(Lead, verification.lead_id)
    if lead is not None:
        lead.phone_verified_at = now
    db.commit()

    logger.info(
        f"[OTP] Phone verified for lead {verification.lead_id}",
        extra={"verification_id": str(verification.id), "attempts": verification.attempts + 1},
    )
    return OTPVerifyResult(
        lead_id=verification.lead_id,
        body={"success": True, "verified": True, "leadId": str(verification.lead_id)},
    )
