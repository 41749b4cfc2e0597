"""KPI summary endpoint.

WHAT:
    GET /api/metrics/summary  lead/booking volume, conversion outbox health,
    traffic sources, landing pages and suspicious events

AUTH:
    ?secret= or `Authorization: Bearer`, matching CRON_SECRET or ADMIN_SECRET.
    Neither secret set -> 503.

REFERENCES:
    - app/services/metrics_service.py
"""

import logging

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.orm import Session

from app.database import get_db
from app.deps import verify_admin_secret
from app.services.metrics_service import build_metrics_summary
from app.telemetry import capture_exception

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/metrics", tags=["Metrics"])


@router.get("/summary", dependencies=[Depends(verify_admin_secret)])
def get_metrics_summary(db: Session = Depends(get_db)):
    try:
        return build_metrics_summary(db)
    except Exception as e:
        capture_exception(e, extra={"endpoint": "metrics_summary"})
        logger.exception(f"[METRICS] Summary failed: {e}")
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Failed to fetch metrics")
