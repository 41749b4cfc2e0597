"""Conversion delivery worker.

WHAT:
    Polls pending and retry-eligible ConversionEvent rows, claims each one
    atomically, enriches it with attribution and lead contact data, and
    dispatches it to the provider adapter. Records success, or failure with
    exponential backoff (2, 4 minutes) until MAX_ATTEMPTS is reached.

WHY:
    Runs once a minute from an external scheduler (or the arq cron). Several
    invocations may overlap; the conditional UPDATE in
    claim_conversion_event() guarantees each attempt is made by exactly one
    of them without any lock.

HOW:
    1. fetch_eligible_events(): status=pending, or status=failed with
       retry_after in the past, and attempts < MAX_ATTEMPTS, oldest first
    2. claim_conversion_event(): UPDATE ... WHERE id=? AND status=<seen>
       -> exactly one row updated or skip
    3. build_payload(): latest attribution + lead email/phone
    4. adapter.send() -> record_success() / record_failure()
    5. Stop taking new events once the wall-clock budget is spent

REFERENCES:
    - app/services/conversion_adapters.py (adapter contract)
    - app/services/google_ads_sync.py (Google-only variant with fixed backoff)
    - app/routers/workers.py, app/workers/arq_worker.py (triggers)
"""

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, List, Optional, Sequence

from sqlalchemy import and_, or_
from sqlalchemy.orm import Session

from app.models import (
    Booking,
    ConversionEvent,
    ConversionProviderEnum,
    ConversionStatusEnum,
    Lead,
)
from app.services.attribution_service import (
    CLICK_ID_PARAMS,
    get_latest_attribution,
    get_latest_click_attribution,
)
from app.services.conversion_adapters import AdapterRegistry, AdapterResult, ConversionPayload
from app.telemetry import capture_exception
from app.utils.timezones import ensure_utc

logger = logging.getLogger(__name__)

BATCH_SIZE = 10
MAX_ATTEMPTS = 3
MAX_PROCESSING_SECONDS = 55  # Under a 60s execution cap
STALE_CLAIM_MINUTES = 10


# =============================================================================
# DATA CLASSES
# =============================================================================

@dataclass
class ConversionRunResult:
    """Per-run counters returned to the cron endpoint."""

    processed: int = 0
    success: int = 0
    failed: int = 0
    skipped: int = 0
    errors: List[str] = field(default_factory=list)
    duration_ms: int = 0

    def to_dict(self) -> Dict:
        return {
            "processed": self.processed,
            "success": self.success,
            "failed": self.failed,
            "skipped": self.skipped,
            "errors": self.errors,
            "duration_ms": self.duration_ms,
        }


def exponential_retry_delay(attempts: int) -> timedelta:
    """2^attempts minutes after the attempt numbered `attempts` (1-based)."""
    return timedelta(minutes=2 ** attempts)


# =============================================================================
# QUERY + CLAIM
# =============================================================================

def fetch_eligible_events(
    db: Session,
    now: datetime,
    limit: int = BATCH_SIZE,
    providers: Optional[Sequence[ConversionProviderEnum]] = None,
) -> List[ConversionEvent]:
    """Pending events, plus failed events whose retry_after has passed.

    Failed rows with retry_after NULL are terminal and never selected.
    """
    query = db.query(ConversionEvent).filter(
        or_(
            ConversionEvent.status == ConversionStatusEnum.pending,
            and_(
                ConversionEvent.status == ConversionStatusEnum.failed,
                ConversionEvent.retry_after.isnot(None),
                ConversionEvent.retry_after < now,
            ),
        ),
        ConversionEvent.attempts < MAX_ATTEMPTS,
    )
    if providers:
        query = query.filter(ConversionEvent.provider.in_(list(providers)))
    return query.order_by(ConversionEvent.created_at.asc()).limit(limit).all()


def claim_conversion_event(db: Session, event: ConversionEvent, now: datetime) -> bool:
    """Atomically move `event` to processing.

    The UPDATE is gated on the status this worker saw, so when two workers
    race for the same row exactly one of them updates it.

    Returns:
        True if this worker owns the attempt
    """
    seen_status = event.status
    updated = (
        db.query(ConversionEvent)
        .filter(
            ConversionEvent.id == event.id,
            ConversionEvent.status == seen_status,
            ConversionEvent.attempts < MAX_ATTEMPTS,
        )
        .update(
            {
                ConversionEvent.status: ConversionStatusEnum.processing,
                ConversionEvent.attempts: ConversionEvent.attempts + 1,
                ConversionEvent.last_attempt_at: now,
            },
            synchronize_session=False,
        )
    )
    db.commit()

    if updated != 1:
        logger.info(f"[CONVERSIONS] Event {event.id} already claimed by another worker")
        return False

    db.refresh(event)
    return True


def release_stale_claims(db: Session, now: datetime) -> int:
    """Return events stuck in processing (worker died mid-send) to the retry pool.

    Events that already used their last attempt become permanently failed.
    """
    cutoff = now - timedelta(minutes=STALE_CLAIM_MINUTES)
    stale = (
        db.query(ConversionEvent)
        .filter(
            ConversionEvent.status == ConversionStatusEnum.processing,
            ConversionEvent.last_attempt_at < cutoff,
        )
        .all()
    )
    for event in stale:
        event.status = ConversionStatusEnum.failed
        event.error_message = "Processing timed out"
        event.error_code = "stale_claim"
        event.retry_after = now if event.attempts < MAX_ATTEMPTS else None
    if stale:
        db.commit()
        logger.warning(f"[CONVERSIONS] Released {len(stale)} stale claim(s)")
    return len(stale)


# =============================================================================
# ENRICHMENT
# =============================================================================

def build_payload(db: Session, event: ConversionEvent) -> ConversionPayload:
    """Attach click ids, landing path and lead contact fields."""
    attribution = get_latest_attribution(db, lead_id=event.lead_id, booking_id=event.booking_id)
    if event.lead_id and not (attribution and any(getattr(attribution, name) for name in CLICK_ID_PARAMS)):
        # Entity row without click ids; fall back to the lead's last ad click
        attribution = get_latest_click_attribution(db, event.lead_id) or attribution

    lead: Optional[Lead] = None
    if event.lead_id:
        lead = db.get(Lead, event.lead_id)
    if lead is None and event.booking_id:
        booking = db.get(Booking, event.booking_id)
        lead = booking.lead if booking else None

    return ConversionPayload(
        event_id=str(event.id),
        event_type=event.event_type.value,
        dedupe_key=event.dedupe_key,
        created_at=ensure_utc(event.created_at),
        value=event.conversion_value,
        currency=event.currency or "USD",
        email=lead.email if lead else None,
        phone=lead.phone_e164 if lead else None,
        gclid=attribution.gclid if attribution else None,
        gbraid=attribution.gbraid if attribution else None,
        wbraid=attribution.wbraid if attribution else None,
        fbclid=attribution.fbclid if attribution else None,
        landing_path=attribution.landing_path if attribution else None,
    )


# =============================================================================
# OUTCOMES
# =============================================================================

def record_success(db: Session, event: ConversionEvent, result: AdapterResult, now: datetime) -> None:
    event.status = ConversionStatusEnum.sent
    event.sent_at = now
    event.provider_response = result.response
    event.external_id = result.external_id
    event.error_message = None
    event.error_code = None
    event.retry_after = None
    if event.provider == ConversionProviderEnum.google_ads:
        event.synced_at = now
    db.commit()


def record_failure(
    db: Session,
    event: ConversionEvent,
    result: AdapterResult,
    now: datetime,
    retry_delay: Callable[[int], timedelta] = exponential_retry_delay,
) -> bool:
    """Mark `event` failed and schedule a retry when one is still allowed.

    `event.attempts` already counts the attempt that just failed.

    Returns:
        True if a retry was scheduled
    """
    will_retry = result.retryable and event.attempts < MAX_ATTEMPTS

    event.status = ConversionStatusEnum.failed
    event.error_message = (result.error or "Unknown error")[:1000]
    event.error_code = result.error_code
    event.provider_response = result.response
    event.retry_after = now + retry_delay(event.attempts) if will_retry else None
    db.commit()
    return will_retry


# =============================================================================
# RUN
# =============================================================================

async def process_conversion_events(
    db: Session,
    adapters: AdapterRegistry,
    now: Optional[datetime] = None,
    batch_size: int = BATCH_SIZE,
    providers: Optional[Sequence[ConversionProviderEnum]] = None,
    retry_delay: Callable[[int], timedelta] = exponential_retry_delay,
    max_seconds: float = MAX_PROCESSING_SECONDS,
    clock: Callable[[], float] = time.monotonic,
) -> ConversionRunResult:
    """Process one batch of conversion events.

    Args:
        db: Database session
        adapters: Provider -> adapter registry
        now: Fixed "now" (tests); defaults to the current UTC time per step
        batch_size: Max events selected
        providers: Restrict to these providers
        retry_delay: Backoff after the Nth failed attempt
        max_seconds: Wall-clock budget; remaining events wait for the next run
        clock: Monotonic clock (tests)

    Returns:
        ConversionRunResult counters
    """
    started = clock()
    result = ConversionRunResult()

    def _now() -> datetime:
        return now or datetime.now(timezone.utc)

    release_stale_claims(db, _now())
    events = fetch_eligible_events(db, _now(), limit=batch_size, providers=providers)

    for event in events:
        if clock() - started > max_seconds:
            logger.info("[CONVERSIONS] Time budget spent, leaving remaining events for next run")
            break

        if not claim_conversion_event(db, event, _now()):
            result.skipped += 1
            continue

        result.processed += 1
        adapter = adapters.get(event.provider)

        try:
            if adapter is None:
                outcome = AdapterResult.terminal(f"No adapter for provider {event.provider.value}", "not_configured")
            else:
                payload = build_payload(db, event)
                outcome = await adapter.send(payload)
        except Exception as e:
            db.rollback()
            capture_exception(e, extra={"conversion_event_id": str(event.id)})
            logger.exception(f"[CONVERSIONS] Unexpected error delivering {event.id}: {e}")
            outcome = AdapterResult.transient(str(e), "internal_error")

        if outcome.success:
            record_success(db, event, outcome, _now())
            result.success += 1
            logger.info(
                f"[CONVERSIONS] Sent {event.provider.value}/{event.event_type.value} {event.id}",
                extra={"attempts": event.attempts},
            )
        else:
            retrying = record_failure(db, event, outcome, _now(), retry_delay=retry_delay)
            result.failed += 1
            result.errors.append(f"{event.id}: {outcome.error}")
            logger.warning(
                f"[CONVERSIONS] Failed {event.provider.value}/{event.event_type.value} {event.id}: {outcome.error}",
                extra={"attempts": event.attempts, "retrying": retrying, "error_code": outcome.error_code},
            )

    result.duration_ms = int((clock() - started) * 1000)
    logger.info(
        f"[CONVERSIONS] Run complete: processed={result.processed} success={result.success} "
        f"failed={result.failed} skipped={result.skipped}"
    )
    return result
