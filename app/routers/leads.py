"""Lead form endpoints.

WHAT:
    - POST /api/leads: validate, score and store a lead form submission
    - GET /api/leads/retrieve: exchange a single-use retrieval token for the
      full lead (thank-you page)
    - GET /api/leads/{lead_id}: minimal lead summary (booking page)

WHY:
    Routers handle rate limiting, request parsing and status codes. Business
    rules live in app/services/lead_service.py.

REFERENCES:
    - app/services/lead_service.py
    - app/services/rate_limiter.py
"""

import logging
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.database import get_db
from app.models import SeverityEnum
from app.schemas import LeadCreate, LeadCreateResponse, LeadSummary, LeadSummaryResponse
from app.services.attribution_service import extract_attribution, get_client_ip, get_user_agent
from app.services.lead_service import (
    LeadValidationError,
    consume_retrieval_token,
    create_lead,
    get_lead,
    serialize_lead,
)
from app.services.rate_limiter import get_limiter
from app.services.security_events import log_suspicious_event
from app.security import hash_optional
from app.telemetry import capture_exception

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/leads", tags=["Leads"])

LEAD_RATE_LIMIT = 5
RETRIEVE_RATE_LIMIT = 5
RATE_WINDOW_SECONDS = 60


def _rate_limited(request: Request, db: Session, prefix: str, limit: int) -> JSONResponse | None:
    ip = get_client_ip(request)
    decision = get_limiter(prefix, limit, RATE_WINDOW_SECONDS).check(hash_optional(ip) or "unknown")
    if decision.allowed:
        return None

    log_suspicious_event(
        db,
        f"rate_limit_{prefix}",
        SeverityEnum.medium,
        ip,
        get_user_agent(request),
        request.url.path,
        {"reset_in": decision.reset_in},
    )
    return JSONResponse(
        status_code=status.HTTP_429_TOO_MANY_REQUESTS,
        content={"ok": False, "error": "Too many requests. Please try again later.", "resetIn": decision.reset_in},
        headers={"Retry-After": str(decision.reset_in)},
    )


@router.post("", response_model=LeadCreateResponse)
async def submit_lead(
    payload: LeadCreate,
    request: Request,
    db: Session = Depends(get_db),
):
    """Store a lead form submission.

    Honeypot and timing rejections are also recorded as suspicious events.
    Attribution and conversion tracking failures never fail the request.
    """
    limited = _rate_limited(request, db, "leads", LEAD_RATE_LIMIT)
    if limited is not None:
        return limited

    attribution = extract_attribution(request)
    try:
        result = create_lead(db, payload, attribution=attribution)
    except LeadValidationError as e:
        if e.reason_code:
            log_suspicious_event(
                db,
                e.reason_code,
                SeverityEnum.medium,
                get_client_ip(request),
                get_user_agent(request),
                request.url.path,
                {"form_started_at": payload.form_started_at},
            )
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    except SQLAlchemyError as e:
        db.rollback()
        capture_exception(e, extra={"endpoint": request.url.path})
        logger.error(f"[LEADS] Failed to store lead: {e}")
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Failed to save lead")

    return LeadCreateResponse(
        lead_id=result.lead.id,
        lead_score=result.score.score,
        lead_grade=result.score.grade.value,
        recommended_package=result.score.recommended_package,
        retrieval_token=result.retrieval_token,
    )


@router.get("/retrieve")
async def retrieve_lead(
    request: Request,
    token: str | None = Query(default=None),
    db: Session = Depends(get_db),
):
    """Return the full lead for a single-use retrieval token."""
    limited = _rate_limited(request, db, "lead_retrieve", RETRIEVE_RATE_LIMIT)
    if limited is not None:
        return limited

    if not token:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Missing token")

    lead_id = consume_retrieval_token(db, token)
    if lead_id is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid or expired token")

    lead = get_lead(db, lead_id)
    if lead is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Lead not found")

    return {"ok": True, "lead": serialize_lead(lead)}


@router.get("/{lead_id}", response_model=LeadSummaryResponse)
async def lead_summary(lead_id: str, db: Session = Depends(get_db)):
    try:
        lead_uuid = UUID(lead_id)
    except ValueError:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Lead not found")

    lead = get_lead(db, lead_uuid)
    if lead is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Lead not found")
    return LeadSummaryResponse(lead=LeadSummary.model_validate(lead))
