"""Attribution capture and storage.

WHAT:
    Extracts UTM parameters, platform click ids (gclid, gbraid, wbraid,
    fbclid), referrer and landing path from an inbound request, and stores
    them as append-only AttributionEvent rows linked to a lead or booking.

WHY:
    The conversion worker needs the click id and landing page of the ad
    click that produced a lead to report the conversion back to Google Ads
    and Meta. Attribution loss is tolerated; losing the lead is not, so
    nothing here ever fails the parent request.

HOW:
    - extract_attribution() never raises; every field is optional except
      landing_path and session_id.
    - IP and user agent are SHA-256 hashed before they leave this module.
    - save_attribution_event() writes inside a SAVEPOINT so a failed insert
      does not poison the caller's transaction.

REFERENCES:
    - app/services/conversion_service.py (consumer of click ids)
    - app/services/conversion_worker.py (enrichment via get_latest_attribution)
"""

import logging
import secrets
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Mapping, Optional
from uuid import UUID

from fastapi import Request
from sqlalchemy import or_
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.models import AttributionEvent
from app.security import hash_optional

logger = logging.getLogger(__name__)

UTM_PARAMS = ("utm_source", "utm_medium", "utm_campaign", "utm_content", "utm_term")
CLICK_ID_PARAMS = ("gclid", "gbraid", "wbraid", "fbclid")
SESSION_MAX_AGE_MS = 24 * 60 * 60 * 1000

# Body/query values longer than this are truncated before storage
MAX_PARAM_LENGTH = 500


# =============================================================================
# DATA CLASSES
# =============================================================================

@dataclass
class AttributionData:
    """Structured attribution for one request."""

    session_id: str
    landing_path: str = "/"
    request_id: Optional[str] = None
    utm_source: Optional[str] = None
    utm_medium: Optional[str] = None
    utm_campaign: Optional[str] = None
    utm_content: Optional[str] = None
    utm_term: Optional[str] = None
    gclid: Optional[str] = None
    gbraid: Optional[str] = None
    wbraid: Optional[str] = None
    fbclid: Optional[str] = None
    referrer: Optional[str] = None
    ip_hash: Optional[str] = None
    ua_hash: Optional[str] = None
    raw_params: Optional[Dict[str, Any]] = None

    @property
    def has_google_click_id(self) -> bool:
        return bool(self.gclid or self.gbraid or self.wbraid)

    @property
    def has_meta_click_id(self) -> bool:
        return bool(self.fbclid)

    def merged_with(self, params: Mapping[str, Any]) -> "AttributionData":
        """Fill missing UTM/click-id fields from browser-forwarded params.

        Request query values win; forwarded values only fill gaps (the lead
        form posts to /api/leads without the original landing query string).
        """
        merged = AttributionData(**{k: getattr(self, k) for k in self.__dataclass_fields__})
        for name in UTM_PARAMS + CLICK_ID_PARAMS:
            if not getattr(merged, name):
                setattr(merged, name, _clean(params.get(name)))
        # The request path is an API route; the browser knows the real landing page
        if params.get("landing_path"):
            merged.landing_path = _clean(params.get("landing_path")) or merged.landing_path
        if params.get("referrer") and not merged.referrer:
            merged.referrer = _clean(params.get("referrer"))
        if params.get("session_id") and is_valid_session_id(str(params.get("session_id"))):
            merged.session_id = str(params.get("session_id"))

        extra = {k: v for k, v in params.items() if v not in (None, "")}
        if extra:
            merged.raw_params = {**(merged.raw_params or {}), **extra}
        return merged


@dataclass
class SaveResult:
    success: bool
    event_id: Optional[UUID] = None
    error: Optional[str] = None


# =============================================================================
# SESSION IDS
# =============================================================================

def generate_session_id(now_ms: Optional[int] = None) -> str:
    """Session id of the form "<epoch_ms>-<32 hex chars>"."""
    now_ms = now_ms if now_ms is not None else int(time.time() * 1000)
    return f"{now_ms}-{secrets.token_hex(16)}"


def is_valid_session_id(session_id: Optional[str], now_ms: Optional[int] = None) -> bool:
    """Two dash-separated parts, numeric timestamp, younger than 24 hours."""
    if not session_id:
        return False
    parts = session_id.split("-")
    if len(parts) != 2 or not parts[0].isdigit() or not parts[1]:
        return False
    now_ms = now_ms if now_ms is not None else int(time.time() * 1000)
    age = now_ms - int(parts[0])
    return 0 <= age < SESSION_MAX_AGE_MS


# =============================================================================
# EXTRACTION
# =============================================================================

def _clean(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    if not text:
        return None
    return text[:MAX_PARAM_LENGTH]


def get_client_ip(request: Request) -> str:
    """First X-Forwarded-For hop, else X-Real-IP, else socket peer, else "unknown"."""
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first
    real_ip = request.headers.get("x-real-ip")
    if real_ip:
        return real_ip.strip()
    if request.client and request.client.host:
        return request.client.host
    return "unknown"


def get_user_agent(request: Request) -> str:
    return request.headers.get("user-agent") or "unknown"


def extract_attribution(request: Request, session_id: Optional[str] = None) -> AttributionData:
    """Extract attribution from a request. Never raises.

    Args:
        request: Inbound FastAPI request
        session_id: Client session id (header X-Session-ID or explicit);
            generated when missing or stale
    """
    try:
        params = request.query_params
        session_id = session_id or request.headers.get("x-session-id")
        if not is_valid_session_id(session_id):
            session_id = generate_session_id()

        raw_params = {key: params.get(key) for key in params.keys()}

        data = AttributionData(
            session_id=session_id,
            landing_path=request.url.path or "/",
            request_id=request.headers.get("x-request-id") or str(uuid.uuid4()),
            referrer=_clean(request.headers.get("referer")),
            ip_hash=hash_optional(get_client_ip(request)),
            ua_hash=hash_optional(get_user_agent(request)),
            raw_params=raw_params or None,
        )
        for name in UTM_PARAMS + CLICK_ID_PARAMS:
            setattr(data, name, _clean(params.get(name)))
        return data

    except Exception as e:
        logger.warning(f"[ATTRIBUTION] Extraction failed, using empty attribution: {e}")
        return AttributionData(session_id=generate_session_id())


# =============================================================================
# STORAGE
# =============================================================================

def save_attribution_event(
    db: Session,
    data: AttributionData,
    lead_id: Optional[UUID] = None,
    booking_id: Optional[UUID] = None,
) -> SaveResult:
    """Insert an AttributionEvent. Reports failure instead of raising.

    The caller owns the outer transaction and commits it.
    """
    event = AttributionEvent(
        session_id=data.session_id,
        request_id=data.request_id,
        utm_source=data.utm_source,
        utm_medium=data.utm_medium,
        utm_campaign=data.utm_campaign,
        utm_content=data.utm_content,
        utm_term=data.utm_term,
        gclid=data.gclid,
        gbraid=data.gbraid,
        wbraid=data.wbraid,
        fbclid=data.fbclid,
        referrer=data.referrer,
        landing_path=data.landing_path or "/",
        ip_hash=data.ip_hash,
        ua_hash=data.ua_hash,
        lead_id=lead_id,
        booking_id=booking_id,
        raw_params=data.raw_params or None,
        created_at=datetime.now(timezone.utc),
    )

    try:
        with db.begin_nested():
            db.add(event)
            db.flush()
    except SQLAlchemyError as e:
        logger.error(
            f"[ATTRIBUTION] Failed to save attribution event: {e}",
            extra={"lead_id": str(lead_id) if lead_id else None,
                   "booking_id": str(booking_id) if booking_id else None},
        )
        return SaveResult(success=False, error=str(e))

    logger.info(
        f"[ATTRIBUTION] Saved attribution event {event.id}",
        extra={
            "utm_source": data.utm_source,
            "has_gclid": data.has_google_click_id,
            "has_fbclid": data.has_meta_click_id,
        },
    )
    return SaveResult(success=True, event_id=event.id)


def get_latest_attribution(
    db: Session,
    lead_id: Optional[UUID] = None,
    booking_id: Optional[UUID] = None,
) -> Optional[AttributionEvent]:
    """Most recent attribution for a booking, falling back to its lead."""
    if booking_id:
        event = (
            db.query(AttributionEvent)
            .filter(AttributionEvent.booking_id == booking_id)
            .order_by(AttributionEvent.created_at.desc())
            .first()
        )
        if event:
            return event
    if lead_id:
        return (
            db.query(AttributionEvent)
            .filter(AttributionEvent.lead_id == lead_id)
            .order_by(AttributionEvent.created_at.desc())
            .first()
        )
    return None


def get_latest_click_attribution(db: Session, lead_id: UUID) -> Optional[AttributionEvent]:
    """Most recent attribution for a lead that carries any ad click id."""
    return (
        db.query(AttributionEvent)
        .filter(
            AttributionEvent.lead_id == lead_id,
            or_(*(getattr(AttributionEvent, name).isnot(None) for name in CLICK_ID_PARAMS)),
        )
        .order_by(AttributionEvent.created_at.desc())
        .first()
    )
