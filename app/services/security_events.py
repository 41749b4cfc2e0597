"""Abuse signal logging.

WHAT: Persists rate-limit hits, honeypot trips and OTP lockouts
WHY: Lets operators spot scripted abuse of the public endpoints
NOTE: Never raises; a failed write is logged and the request continues.
"""

import logging
from typing import Any, Dict, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.models import SeverityEnum, SuspiciousEvent
from app.security import hash_optional

logger = logging.getLogger(__name__)


def log_suspicious_event(
    db: Session,
    event_type: str,
    severity: SeverityEnum = SeverityEnum.low,
    ip_address: Optional[str] = None,
    user_agent: Optional[str] = None,
    endpoint: Optional[str] = None,
    details: Optional[Dict[str, Any]] = None,
) -> Optional[SuspiciousEvent]:
    """Record a suspicious event and commit it.

    Args:
        db: Database session (committed on success, rolled back on failure)
        event_type: Short code, e.g. "rate_limit_ip", "otp_max_attempts"
        severity: low / medium / high
        ip_address: Raw client IP (hashed before storage)
        user_agent: Raw user agent (hashed before storage)
        endpoint: Request path
        details: JSON-safe context (never raw PII)
    """
    event = SuspiciousEvent(
        event_type=event_type,
        severity=severity,
        endpoint=endpoint,
        ip_hash=hash_optional(ip_address),
        ua_hash=hash_optional(user_agent),
        details=details or {},
    )
    try:
        db.add(event)
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"[SECURITY] Failed to log suspicious event {event_type}: {e}")
        return None

    log = logger.warning if severity != SeverityEnum.low else logger.info
    log(
        f"[SECURITY] {event_type} ({severity.value})",
        extra={"endpoint": endpoint, "details": details or {}},
    )
    return event
