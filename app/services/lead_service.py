"""Lead Service.

WHAT:
    Validates and stores lead form submissions, issues the single-use
    retrieval token the thank-you page uses, and records attribution plus
    lead_created conversions.

WHY:
    The lead row is the primary operation. Attribution and conversion
    tracking run in savepoints after it and can never fail the submission.

HOW:
    1. validate_lead_submission(): honeypot, form timing, email/E.164
       format, consent, required answers
    2. calculate_lead_score()
    3. Insert lead + RetrievalToken (sha256 only)
    4. save_attribution_event() + enqueue_attributed_conversions()
    5. Commit once

REFERENCES:
    - app/services/lead_scoring.py
    - app/services/attribution_service.py
    - app/routers/leads.py
"""

import logging
import re
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Optional
from uuid import UUID

from sqlalchemy.orm import Session

from app.models import ConversionEventTypeEnum, Lead, LeadStatusEnum, RetrievalToken
from app.schemas import LeadCreate
from app.security import generate_retrieval_token, sha256_hex
from app.services.attribution_service import AttributionData, save_attribution_event
from app.services.conversion_service import enqueue_attributed_conversions
from app.services.lead_scoring import LeadScore, calculate_lead_score

logger = logging.getLogger(__name__)

EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]{2,}$")
E164_PATTERN = re.compile(r"^\+[1-9]\d{1,14}$")

MIN_FORM_FILL_MS = 2_000
MAX_FORM_FILL_MS = 10 * 60 * 1000

REQUIRED_FIELDS = (
    "full_name",
    "phone_e164",
    "goal_primary",
    "monthly_budget_range",
    "timeline",
    "budget_currency",
)

# Never copied into raw_answers
_TRANSPORT_FIELDS = {"website_hp", "form_started_at", "attribution"}


class LeadValidationError(Exception):
    """Rejected lead submission (400).

    reason_code is set for anti-bot rejections that should also be logged
    as suspicious events.
    """

    def __init__(self, message: str, reason_code: Optional[str] = None):
        super().__init__(message)
        self.reason_code = reason_code


@dataclass
class LeadCreateResult:
    lead: Lead
    score: LeadScore
    retrieval_token: str
    conversions_enqueued: int = 0


# =============================================================================
# VALIDATION
# =============================================================================

def _clean(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    text = value.strip()
    return text or None


def validate_lead_submission(data: LeadCreate, now_ms: Optional[int] = None) -> None:
    """Raise LeadValidationError for the first problem found."""
    if data.website_hp:
        raise LeadValidationError("Invalid submission", reason_code="honeypot_triggered")

    if data.form_started_at is not None:
        now_ms = now_ms if now_ms is not None else int(time.time() * 1000)
        elapsed = now_ms - data.form_started_at
        if not MIN_FORM_FILL_MS <= elapsed <= MAX_FORM_FILL_MS:
            raise LeadValidationError("Invalid submission", reason_code="timing_anomaly")

    if not data.email or not EMAIL_PATTERN.match(data.email.strip()):
        raise LeadValidationError("Invalid email format")

    if not data.consent:
        raise LeadValidationError("Consent is required")

    missing = [name for name in REQUIRED_FIELDS if not _clean(getattr(data, name))]
    if missing:
        raise LeadValidationError(f"Missing required fields: {', '.join(missing)}")

    if not E164_PATTERN.match(data.phone_e164.strip()):
        raise LeadValidationError("Invalid phone number format. Expected E.164 (+971501234567)")

    if data.whatsapp_e164 and not E164_PATTERN.match(data.whatsapp_e164.strip()):
        raise LeadValidationError("Invalid WhatsApp number format")


def _raw_answers(data: LeadCreate) -> Dict[str, Any]:
    return {k: v for k, v in data.model_dump(mode="json").items() if k not in _TRANSPORT_FIELDS}


# =============================================================================
# CREATE
# =============================================================================

def create_lead(
    db: Session,
    data: LeadCreate,
    attribution: Optional[AttributionData] = None,
    now: Optional[datetime] = None,
) -> LeadCreateResult:
    """Validate, score and store a lead.

    Raises:
        LeadValidationError: Submission rejected
    """
    now = now or datetime.now(timezone.utc)
    validate_lead_submission(data, now_ms=int(now.timestamp() * 1000))

    score = calculate_lead_score(
        monthly_budget_range=data.monthly_budget_range,
        decision_maker=data.decision_maker,
        response_within_5_min=data.response_within_5_min,
        timeline=data.timeline,
    )

    industry = _clean(data.industry)
    lead = Lead(
        full_name=data.full_name.strip(),
        email=data.email.strip().lower(),
        phone_e164=data.phone_e164.strip(),
        phone_country=data.phone_country,
        phone_calling_code=data.phone_calling_code,
        whatsapp_same_as_phone=data.whatsapp_same_as_phone,
        whatsapp_e164=_clean(data.whatsapp_e164),
        whatsapp_country=_clean(data.whatsapp_country),
        whatsapp_calling_code=_clean(data.whatsapp_calling_code),
        company_name=_clean(data.company_name),
        website_url=_clean(data.website_url),
        industry=industry,
        industry_other=_clean(data.industry_other) if industry == "Other" else None,
        country=data.country,
        city=data.city,
        location_area=data.location_area,
        goal_primary=data.goal_primary,
        budget_currency=data.budget_currency,
        monthly_budget_range=data.monthly_budget_range,
        response_within_5_min=data.response_within_5_min,
        decision_maker=data.decision_maker,
        timeline=data.timeline,
        recommended_package=score.recommended_package,
        lead_score=score.score,
        lead_grade=score.grade,
        status=LeadStatusEnum.new,
        consent=bool(data.consent),
        raw_answers=_raw_answers(data),
        created_at=now,
        updated_at=now,
    )
    db.add(lead)
    db.flush()

    token, token_hash, expires_at = generate_retrieval_token(now)
    db.add(RetrievalToken(lead_id=lead.id, token_hash=token_hash, expires_at=expires_at, created_at=now))

    enqueued = 0
    if attribution is not None:
        if data.attribution:
            attribution = attribution.merged_with(data.attribution)
        save_attribution_event(db, attribution, lead_id=lead.id)
        enqueued = enqueue_attributed_conversions(
            db, attribution, ConversionEventTypeEnum.lead_created, lead_id=lead.id
        ).enqueued

    db.commit()
    db.refresh(lead)

    logger.info(
        f"[LEADS] Created lead {lead.id}",
        extra={"grade": score.grade.value, "score": score.score, "conversions": enqueued},
    )
    return LeadCreateResult(lead=lead, score=score, retrieval_token=token, conversions_enqueued=enqueued)


# =============================================================================
# RETRIEVAL TOKENS
# =============================================================================

def consume_retrieval_token(db: Session, token: str, now: Optional[datetime] = None) -> Optional[UUID]:
    """Atomically mark a token used and return its lead id.

    Returns:
        The lead id, or None when the token is unknown, used or expired
    """
    now = now or datetime.now(timezone.utc)
    token_hash = sha256_hex(token)

    updated = (
        db.query(RetrievalToken)
        .filter(
            RetrievalToken.token_hash == token_hash,
            RetrievalToken.used_at.is_(None),
            RetrievalToken.expires_at > now,
        )
        .update({RetrievalToken.used_at: now}, synchronize_session=False)
    )
    db.commit()

    if updated != 1:
        return None

    row = db.query(RetrievalToken.lead_id).filter(RetrievalToken.token_hash == token_hash).first()
    return row.lead_id if row else None


def get_lead(db: Session, lead_id: UUID) -> Optional[Lead]:
    return db.get(Lead, lead_id)


def serialize_lead(lead: Lead) -> Dict[str, Any]:
    """Full lead view for the thank-you page (token-gated)."""
    return {
        "id": str(lead.id),
        "full_name": lead.full_name,
        "email": lead.email,
        "phone_e164": lead.phone_e164,
        "whatsapp_e164": lead.whatsapp_e164,
        "company_name": lead.company_name,
        "website_url": lead.website_url,
        "industry": lead.industry,
        "country": lead.country,
        "city": lead.city,
        "goal_primary": lead.goal_primary,
        "budget_currency": lead.budget_currency,
        "monthly_budget_range": lead.monthly_budget_range,
        "timeline": lead.timeline,
        "lead_score": lead.lead_score,
        "lead_grade": lead.lead_grade.value if lead.lead_grade else None,
        "recommended_package": lead.recommended_package,
        "phone_verified": lead.phone_verified_at is not None,
        "created_at": lead.created_at.isoformat() if lead.created_at else None,
    }
