"""Conversion event enqueueing.

WHAT:
    Creates pending ConversionEvent rows (an outbox) for business events that
    must be reported to ad platforms.

WHY:
    Delivery happens later in the conversion worker so provider outages never
    block lead capture or booking. Each (entity, event_type, provider) must be
    reported at most once, even when the enqueue is called twice concurrently.

HOW:
    - dedupe_key = sha256("{entity_id}-{event_type}-{provider}") with a unique
      constraint on the column.
    - Existing key -> dedupe_skipped. Insert losing a race (IntegrityError on
      the key) -> also dedupe_skipped. Any other error propagates.
    - No locks, no prior transaction: the constraint is the coordination.

REFERENCES:
    - app/services/conversion_worker.py (delivery)
    - app/services/attribution_service.py (click ids that gate enqueueing)
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from typing import List, Optional, Union
from uuid import UUID

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.models import (
    ConversionEvent,
    ConversionEventTypeEnum,
    ConversionProviderEnum,
    ConversionStatusEnum,
)
from app.security import sha256_hex
from app.services.attribution_service import AttributionData

logger = logging.getLogger(__name__)

DEFAULT_CURRENCY = "USD"


@dataclass
class EnqueueResult:
    success: bool
    event_id: Optional[UUID] = None
    dedupe_skipped: bool = False
    error: Optional[str] = None


@dataclass
class AttributedEnqueueResult:
    """Outcome of enqueueing one event type for every attributed provider."""

    results: List[EnqueueResult] = field(default_factory=list)
    providers: List[ConversionProviderEnum] = field(default_factory=list)

    @property
    def enqueued(self) -> int:
        return sum(1 for r in self.results if r.success and not r.dedupe_skipped)


def _value(enum_or_str: Union[str, ConversionEventTypeEnum, ConversionProviderEnum]) -> str:
    return enum_or_str.value if hasattr(enum_or_str, "value") else str(enum_or_str)


def generate_conversion_dedupe_key(
    entity_id: Union[str, UUID],
    event_type: Union[str, ConversionEventTypeEnum],
    provider: Union[str, ConversionProviderEnum],
) -> str:
    """Deterministic key for one (entity, event type, provider) delivery."""
    return sha256_hex(f"{entity_id}-{_value(event_type)}-{_value(provider)}")


def _find_by_dedupe_key(db: Session, dedupe_key: str) -> Optional[ConversionEvent]:
    return db.query(ConversionEvent).filter(ConversionEvent.dedupe_key == dedupe_key).first()


def enqueue_conversion_event(
    db: Session,
    event_type: ConversionEventTypeEnum,
    provider: ConversionProviderEnum,
    lead_id: Optional[UUID] = None,
    booking_id: Optional[UUID] = None,
    conversion_value: Optional[Decimal] = None,
    currency: Optional[str] = None,
) -> EnqueueResult:
    """Insert a pending conversion event unless one already exists.

    The booking id is the entity when present, otherwise the lead id.
    The caller commits.

    Raises:
        ValueError: Neither lead_id nor booking_id given
        SQLAlchemyError: Database errors other than a dedupe-key race
    """
    entity_id = booking_id or lead_id
    if not entity_id:
        raise ValueError("enqueue_conversion_event requires lead_id or booking_id")

    event_type = ConversionEventTypeEnum(event_type)
    provider = ConversionProviderEnum(provider)
    dedupe_key = generate_conversion_dedupe_key(entity_id, event_type, provider)

    existing = _find_by_dedupe_key(db, dedupe_key)
    if existing:
        logger.info(
            f"[CONVERSIONS] Dedupe skip {provider.value}/{event_type.value}",
            extra={"dedupe_key": dedupe_key, "existing_id": str(existing.id)},
        )
        return EnqueueResult(success=True, event_id=existing.id, dedupe_skipped=True)

    event = ConversionEvent(
        event_type=event_type,
        provider=provider,
        lead_id=lead_id,
        booking_id=booking_id,
        dedupe_key=dedupe_key,
        status=ConversionStatusEnum.pending,
        attempts=0,
        conversion_value=conversion_value,
        currency=currency or DEFAULT_CURRENCY,
        created_at=datetime.now(timezone.utc),
    )

    try:
        with db.begin_nested():
            db.add(event)
            db.flush()
    except IntegrityError:
        # A concurrent enqueue inserted the same key first
        winner = _find_by_dedupe_key(db, dedupe_key)
        if winner is None:
            raise
        logger.info(
            f"[CONVERSIONS] Dedupe skip after insert race {provider.value}/{event_type.value}",
            extra={"dedupe_key": dedupe_key},
        )
        return EnqueueResult(success=True, event_id=winner.id, dedupe_skipped=True)

    logger.info(
        f"[CONVERSIONS] Enqueued {provider.value}/{event_type.value} {event.id}",
        extra={"dedupe_key": dedupe_key},
    )
    return EnqueueResult(success=True, event_id=event.id)


def providers_for_attribution(attribution: Optional[AttributionData]) -> List[ConversionProviderEnum]:
    """Ad platforms that can accept a conversion for this attribution.

    Google Ads needs a gclid/gbraid/wbraid, Meta needs an fbclid. Organic
    traffic gets nothing enqueued.
    """
    if attribution is None:
        return []
    providers = []
    if attribution.has_google_click_id:
        providers.append(ConversionProviderEnum.google_ads)
    if attribution.has_meta_click_id:
        providers.append(ConversionProviderEnum.meta_capi)
    return providers


def enqueue_attributed_conversions(
    db: Session,
    attribution: Optional[AttributionData],
    event_type: ConversionEventTypeEnum,
    lead_id: Optional[UUID] = None,
    booking_id: Optional[UUID] = None,
    conversion_value: Optional[Decimal] = None,
    currency: Optional[str] = None,
) -> AttributedEnqueueResult:
    """Enqueue `event_type` for every provider the attribution qualifies for.

    Failures are logged per provider and never raised: conversion tracking
    must not fail the lead or booking that triggered it.
    """
    outcome = AttributedEnqueueResult(providers=providers_for_attribution(attribution))

    for provider in outcome.providers:
        try:
            result = enqueue_conversion_event(
                db,
                event_type=event_type,
                provider=provider,
                lead_id=lead_id,
                booking_id=booking_id,
                conversion_value=conversion_value,
                currency=currency,
            )
        except Exception as e:
            logger.error(
                f"[CONVERSIONS] Failed to enqueue {provider.value}/{_value(event_type)}: {e}",
                extra={"lead_id": str(lead_id) if lead_id else None,
                       "booking_id": str(booking_id) if booking_id else None},
            )
            result = EnqueueResult(success=False, error=str(e))
        outcome.results.append(result)

    return outcome
