"""Operational KPI summary.

WHAT:
    One read-only snapshot for monitoring: lead and booking volume, conversion
    outbox health, traffic sources, landing pages and abuse signals.

WHY:
    The conversion outbox fails quietly (bad credentials, missing click ids).
    A success rate next to lead volume shows a broken pipeline within a day.

WINDOWS:
    - 24h: leads, bookings, conversion events, suspicious events
    - 7d:  leads, bookings, source/campaign/landing-path breakdowns

REFERENCES:
    - app/routers/metrics.py
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from app.models import (
    AttributionEvent,
    Booking,
    ConversionEvent,
    ConversionProviderEnum,
    ConversionStatusEnum,
    Lead,
    SuspiciousEvent,
)
from app.utils.timezones import isoformat_utc

logger = logging.getLogger(__name__)

TOP_N = 10


def _count_since(db: Session, model, since: datetime) -> int:
    return db.query(func.count(model.id)).filter(model.created_at >= since).scalar() or 0


def _ranked(counts: Dict, key_name: str, limit: Optional[int] = TOP_N) -> List[Dict]:
    rows = [{key_name: key, "count": count} for key, count in counts.items()]
    rows.sort(key=lambda row: row["count"], reverse=True)
    return rows[:limit] if limit else rows


def conversion_stats(db: Session, since: datetime) -> Dict:
    """Conversion events created since `since`, by status and provider."""
    rows = (
        db.query(
            ConversionEvent.status,
            ConversionEvent.provider,
            func.count(ConversionEvent.id).label("count"),
        )
        .filter(ConversionEvent.created_at >= since)
        .group_by(ConversionEvent.status, ConversionEvent.provider)
        .all()
    )

    by_status = {s.value: 0 for s in ConversionStatusEnum}
    by_provider = {p.value: 0 for p in (ConversionProviderEnum.google_ads, ConversionProviderEnum.meta_capi)}
    for row in rows:
        by_status[row.status.value] = by_status.get(row.status.value, 0) + row.count
        by_provider[row.provider.value] = by_provider.get(row.provider.value, 0) + row.count

    total = sum(by_status.values())
    success_rate = f"{by_status['sent'] / total * 100:.2f}" if total else "0.00"
    return {
        "total": total,
        "sent": by_status["sent"],
        "pending": by_status["pending"],
        "processing": by_status["processing"],
        "failed": by_status["failed"],
        "by_provider": by_provider,
        "success_rate": success_rate,
    }


def leads_by_source(db: Session, since: datetime) -> List[Dict]:
    """Lead-linked attribution rows grouped by utm_source (blank -> direct)."""
    rows = (
        db.query(AttributionEvent.utm_source, func.count(AttributionEvent.id).label("count"))
        .filter(AttributionEvent.created_at >= since, AttributionEvent.lead_id.isnot(None))
        .group_by(AttributionEvent.utm_source)
        .all()
    )
    counts: Dict[str, int] = {}
    for row in rows:
        source = row.utm_source or "direct"
        counts[source] = counts.get(source, 0) + row.count
    return _ranked(counts, "source")


def bookings_by_campaign(db: Session, since: datetime) -> List[Dict]:
    rows = (
        db.query(
            AttributionEvent.utm_source,
            AttributionEvent.utm_campaign,
            func.count(AttributionEvent.id).label("count"),
        )
        .filter(AttributionEvent.created_at >= since, AttributionEvent.booking_id.isnot(None))
        .group_by(AttributionEvent.utm_source, AttributionEvent.utm_campaign)
        .all()
    )
    counts: Dict[tuple, int] = {}
    for row in rows:
        key = (row.utm_source or "direct", row.utm_campaign or "none")
        counts[key] = counts.get(key, 0) + row.count
    ranked = sorted(counts.items(), key=lambda item: item[1], reverse=True)[:TOP_N]
    return [{"source": source, "campaign": campaign, "count": count} for (source, campaign), count in ranked]


def top_landing_paths(db: Session, since: datetime) -> List[Dict]:
    rows = (
        db.query(AttributionEvent.landing_path, func.count(AttributionEvent.id).label("count"))
        .filter(AttributionEvent.created_at >= since)
        .group_by(AttributionEvent.landing_path)
        .all()
    )
    counts: Dict[str, int] = {}
    for row in rows:
        path = row.landing_path or "/"
        counts[path] = counts.get(path, 0) + row.count
    return _ranked(counts, "path")


def suspicious_by_reason(db: Session, since: datetime) -> List[Dict]:
    rows = (
        db.query(SuspiciousEvent.event_type, func.count(SuspiciousEvent.id).label("count"))
        .filter(SuspiciousEvent.created_at >= since)
        .group_by(SuspiciousEvent.event_type)
        .all()
    )
    return _ranked({row.event_type: row.count for row in rows}, "reason", limit=None)


def build_metrics_summary(db: Session, now: Optional[datetime] = None) -> Dict:
    """Assemble the KPI snapshot served by GET /api/metrics/summary."""
    now = now or datetime.now(timezone.utc)
    last_24h = now - timedelta(hours=24)
    last_7d = now - timedelta(days=7)

    suspicious = suspicious_by_reason(db, last_24h)
    summary = {
        "timestamp": isoformat_utc(now),
        "period": {"last_24h": isoformat_utc(last_24h), "last_7d": isoformat_utc(last_7d)},
        "leads": {
            "last_24h": _count_since(db, Lead, last_24h),
            "last_7d": _count_since(db, Lead, last_7d),
            "by_source_7d": leads_by_source(db, last_7d),
        },
        "bookings": {
            "last_24h": _count_since(db, Booking, last_24h),
            "last_7d": _count_since(db, Booking, last_7d),
            "by_campaign_7d": bookings_by_campaign(db, last_7d),
        },
        "conversions": {"last_24h": conversion_stats(db, last_24h)},
        "landing_paths": {"top_10_7d": top_landing_paths(db, last_7d)},
        "security": {
            "suspicious_events_24h": sum(row["count"] for row in suspicious),
            "by_reason": suspicious,
        },
    }

    logger.info(
        "[METRICS] Summary built",
        extra={
            "leads_24h": summary["leads"]["last_24h"],
            "conversion_success_rate": summary["conversions"]["last_24h"]["success_rate"],
        },
    )
    return summary
