"""Health and configuration status.

Reports whether the database answers and which integrations are configured,
never the credential values themselves.
"""

import logging
from typing import Dict

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.database import get_db
from app.deps import Settings, get_settings
from app.services.sms_service import resolve_provider

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Health"])


def _flag(value: bool) -> str:
    return "configured" if value else "not_configured"


def integration_status(settings: Settings) -> Dict[str, str]:
    return {
        "google_ads": _flag(settings.google_ads_configured),
        "meta_capi": _flag(settings.meta_capi_configured),
        "calendar": _flag(settings.calendar_configured),
        "email": _flag(bool(settings.RESEND_API_KEY)),
        "cron": _flag(bool(settings.CRON_SECRET)),
        "redis": _flag(bool(settings.REDIS_URL)),
    }


@router.get("/health")
def health(db: Session = Depends(get_db), settings: Settings = Depends(get_settings)):
    try:
        db.execute(text("SELECT 1"))
        database = "ok"
    except SQLAlchemyError as e:
        logger.error(f"[HEALTH] Database check failed: {e}")
        database = "error"

    body = {
        "status": "ok" if database == "ok" else "degraded",
        "database": database,
        "environment": settings.ENVIRONMENT,
        "sms_provider": resolve_provider(settings.SMS_PROVIDER),
        "phone_verification_enforced": settings.ENFORCE_PHONE_VERIFICATION,
        "integrations": integration_status(settings),
    }
    return JSONResponse(status_code=200 if database == "ok" else 503, content=body)
