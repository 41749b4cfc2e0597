"""Google Ads offline conversion sync.

WHAT:
    Pushes pending Google Ads conversion events in larger batches than the
    per-minute conversion worker, with a fixed 15 minute retry interval.

WHY:
    Google Ads ingests click conversions asynchronously and rate limits
    uploads per customer; a slower, bigger sweep keeps the request count low
    while the generic worker keeps latency low for Meta.

HOW:
    Same claim/record cycle as conversion_worker, restricted to
    provider=google_ads. Skips the whole run when credentials are absent so
    events stay pending until the account is connected.

REFERENCES:
    - app/services/conversion_worker.py
    - app/services/google_conversions_service.py
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Dict, List, Optional

from sqlalchemy.orm import Session

from app.deps import Settings, get_settings
from app.models import ConversionProviderEnum
from app.services.conversion_adapters import ConversionAdapter
from app.services.conversion_worker import process_conversion_events
from app.services.google_conversions_service import GoogleAdsConversionsService

logger = logging.getLogger(__name__)

SYNC_BATCH_SIZE = 50
SYNC_RETRY_MINUTES = 15


@dataclass
class GoogleAdsSyncResult:
    processed: int = 0
    sent: int = 0
    failed: int = 0
    skipped: int = 0
    errors: List[str] = field(default_factory=list)
    skipped_reason: Optional[str] = None

    def to_dict(self) -> Dict:
        if self.skipped_reason:
            return {"skipped": True, "reason": self.skipped_reason}
        return {
            "processed": self.processed,
            "sent": self.sent,
            "failed": self.failed,
            "skipped": self.skipped,
            "errors": self.errors,
        }


def fixed_retry_delay(_attempts: int) -> timedelta:
    return timedelta(minutes=SYNC_RETRY_MINUTES)


async def sync_google_ads_conversions(
    db: Session,
    adapter: Optional[ConversionAdapter] = None,
    settings: Optional[Settings] = None,
    now: Optional[datetime] = None,
) -> GoogleAdsSyncResult:
    """Upload one batch of Google Ads conversions.

    Args:
        db: Database session
        adapter: Google Ads adapter override (tests); built from settings otherwise
        settings: Settings override
        now: Fixed "now" (tests)
    """
    if adapter is None:
        settings = settings or get_settings()
        if not settings.google_ads_configured:
            logger.info("[GOOGLE_ADS] Sync skipped: credentials not configured")
            return GoogleAdsSyncResult(skipped_reason="not_configured")
        adapter = GoogleAdsConversionsService.from_settings(settings)

    run = await process_conversion_events(
        db,
        adapters={ConversionProviderEnum.google_ads: adapter},
        now=now,
        batch_size=SYNC_BATCH_SIZE,
        providers=[ConversionProviderEnum.google_ads],
        retry_delay=fixed_retry_delay,
    )

    result = GoogleAdsSyncResult(
        processed=run.processed,
        sent=run.success,
        failed=run.failed,
        skipped=run.skipped,
        errors=run.errors,
    )
    logger.info(
        f"[GOOGLE_ADS] Sync complete: processed={result.processed} sent={result.sent} failed={result.failed}"
    )
    return result
