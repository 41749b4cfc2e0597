"""Cron-triggered worker endpoints.

WHAT:
    HTTP triggers for the three background loops:
    - GET  /api/workers/conversions?secret=   conversion outbox
    - POST /api/workers/google-ads-sync       Google Ads offline uploads
    - GET  /api/workers/reminders?secret=     1-hour reminder emails

WHY:
    The hosted scheduler can only call URLs. The same service functions also
    run from the arq worker (app/workers/arq_worker.py); overlapping runs are
    safe because every item is claimed with a conditional update.

AUTH:
    ?secret= must equal CRON_SECRET; the Google Ads sync takes
    `Authorization: Bearer <CRON_SECRET|ADMIN_SECRET>`. Unset secret -> 503.
"""

import logging

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.orm import Session

from app.database import get_db
from app.deps import Settings, get_settings, verify_bearer_secret, verify_cron_secret
from app.services.conversion_adapters import build_adapter_registry
from app.services.conversion_worker import process_conversion_events
from app.services.google_ads_sync import sync_google_ads_conversions
from app.services.reminder_service import process_reminder_jobs
from app.telemetry import capture_exception

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/workers", tags=["Workers"])


@router.get("/conversions", dependencies=[Depends(verify_cron_secret)])
async def run_conversions(
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
):
    try:
        result = await process_conversion_events(db, build_adapter_registry(settings))
    except Exception as e:
        db.rollback()
        capture_exception(e, extra={"worker": "conversions"})
        logger.exception(f"[CONVERSIONS] Worker run failed: {e}")
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Conversion worker failed")
    return {"ok": True, **result.to_dict()}


@router.post("/google-ads-sync", dependencies=[Depends(verify_bearer_secret)])
async def run_google_ads_sync(
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
):
    try:
        result = await sync_google_ads_conversions(db, settings=settings)
    except Exception as e:
        db.rollback()
        capture_exception(e, extra={"worker": "google_ads_sync"})
        logger.exception(f"[GOOGLE_ADS] Sync run failed: {e}")
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Google Ads sync failed")
    return {"ok": True, **result.to_dict()}


@router.get("/reminders", dependencies=[Depends(verify_cron_secret)])
async def run_reminders(
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
):
    try:
        result = await process_reminder_jobs(db, settings=settings)
    except Exception as e:
        db.rollback()
        capture_exception(e, extra={"worker": "reminders"})
        logger.exception(f"[REMINDERS] Worker run failed: {e}")
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Reminder worker failed")
    return {"ok": True, **result.to_dict()}
