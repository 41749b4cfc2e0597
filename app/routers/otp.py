"""Phone OTP endpoints.

WHAT:
    - POST /api/otp/send: text a 6-digit code to the lead's phone
    - POST /api/otp/verify: check the code and mark the phone verified

WHY:
    Error bodies carry extra keys (resetIn, remainingAttempts, locked,
    expired) the booking page uses, so OTPError is rendered as a
    JSONResponse instead of an HTTPException.

REFERENCES:
    - app/services/otp_service.py
    - app/services/sms_service.py
"""

import logging

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from app.database import get_db
from app.deps import Settings, get_settings
from app.schemas import OTPSendRequest, OTPVerifyRequest
from app.services.attribution_service import get_client_ip, get_user_agent
from app.services.otp_service import OTPError, RequestContext, send_phone_otp, verify_phone_otp

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/otp", tags=["OTP"])


def _context(request: Request) -> RequestContext:
    return RequestContext(
        ip_address=get_client_ip(request),
        user_agent=get_user_agent(request),
        endpoint=request.url.path,
    )


def _error_response(error: OTPError) -> JSONResponse:
    return JSONResponse(
        status_code=error.status_code,
        content={"ok": False, "error": error.message, **error.extra},
    )


@router.post("/send")
async def send_code(
    payload: OTPSendRequest,
    request: Request,
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
):
    try:
        result = await send_phone_otp(
            db,
            lead_id=payload.leadId,
            phone=payload.phone_e164,
            settings=settings,
            context=_context(request),
        )
    except OTPError as e:
        logger.info(f"[OTP] Send rejected ({e.status_code}): {e.message}")
        return _error_response(e)
    return result.to_dict()


@router.post("/verify")
async def verify_code(
    payload: OTPVerifyRequest,
    request: Request,
    db: Session = Depends(get_db),
):
    try:
        result = verify_phone_otp(
            db,
            verification_id=payload.verificationId,
            otp=payload.otp,
            context=_context(request),
        )
    except OTPError as e:
        logger.info(f"[OTP] Verify rejected ({e.status_code}): {e.message}")
        return _error_response(e)
    return result.body
