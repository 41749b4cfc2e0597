"""Tests for the conversion delivery worker.

WHAT: Eligibility, atomic claims, success/failure bookkeeping, stale claims
WHY: Overlapping cron runs must deliver each event at most once per attempt,
     and transient failures must back off and eventually stop

REFERENCES:
  - app/services/conversion_worker.py
  - app/services/conversion_adapters.py
"""

import uuid
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from app.database import Base
from app.models import (
    AttributionEvent,
    ConversionEvent,
    ConversionEventTypeEnum,
    ConversionProviderEnum,
    ConversionStatusEnum,
    Lead,
)
from app.services.conversion_adapters import AdapterResult, InternalConversionAdapter, build_adapter_registry
from app.services.conversion_service import generate_conversion_dedupe_key
from app.services.conversion_worker import (
    MAX_ATTEMPTS,
    build_payload,
    claim_conversion_event,
    exponential_retry_delay,
    fetch_eligible_events,
    process_conversion_events,
    release_stale_claims,
)
from app.utils.timezones import ensure_utc

NOW = datetime(2025, 12, 22, 8, 0, tzinfo=timezone.utc)


class FakeAdapter:
    """Adapter returning queued results and recording payloads."""

    def __init__(self, *results: AdapterResult):
        self.results = list(results) or [AdapterResult.ok(response={"ok": True})]
        self.payloads = []

    async def send(self, payload):
        self.payloads.append(payload)
        if len(self.results) > 1:
            return self.results.pop(0)
        return self.results[0]


def _add_event(db, lead, provider=ConversionProviderEnum.google_ads, **overrides) -> ConversionEvent:
    values = dict(
        event_type=ConversionEventTypeEnum.lead_created,
        provider=provider,
        lead_id=lead.id,
        dedupe_key=generate_conversion_dedupe_key(lead.id, "lead_created", provider),
        status=ConversionStatusEnum.pending,
        attempts=0,
        currency="USD",
        created_at=NOW - timedelta(minutes=5),
    )
    values.update(overrides)
    event = ConversionEvent(**values)
    db.add(event)
    db.commit()
    db.refresh(event)
    return event


def _add_attribution(db, lead, **click_ids):
    db.add(AttributionEvent(
        session_id="1-abc",
        landing_path="/audit",
        lead_id=lead.id,
        created_at=NOW - timedelta(minutes=6),
        **click_ids,
    ))
    db.commit()


class TestRetrySchedule:

    def test_exponential_minutes(self):
        assert exponential_retry_delay(1) == timedelta(minutes=2)
        assert exponential_retry_delay(2) == timedelta(minutes=4)


class TestEligibility:

    def test_pending_and_due_failed_selected(self, test_db_session, make_lead):
        pending = _add_event(test_db_session, make_lead())
        due = _add_event(
            test_db_session, make_lead(email="b@example.com"),
            status=ConversionStatusEnum.failed, attempts=1, retry_after=NOW - timedelta(minutes=1),
        )
        _add_event(
            test_db_session, make_lead(email="c@example.com"),
            status=ConversionStatusEnum.failed, attempts=1, retry_after=NOW + timedelta(minutes=1),
        )
        _add_event(
            test_db_session, make_lead(email="d@example.com"),
            status=ConversionStatusEnum.failed, attempts=1, retry_after=None,
        )
        _add_event(
            test_db_session, make_lead(email="e@example.com"),
            status=ConversionStatusEnum.failed, attempts=MAX_ATTEMPTS, retry_after=NOW - timedelta(minutes=1),
        )
        _add_event(test_db_session, make_lead(email="f@example.com"), status=ConversionStatusEnum.sent)

        ids = {e.id for e in fetch_eligible_events(test_db_session, NOW)}
        assert ids == {pending.id, due.id}

    def test_provider_filter(self, test_db_session, test_lead):
        _add_event(test_db_session, test_lead, provider=ConversionProviderEnum.meta_capi)
        google = _add_event(test_db_session, test_lead, provider=ConversionProviderEnum.google_ads)

        events = fetch_eligible_events(test_db_session, NOW, providers=[ConversionProviderEnum.google_ads])
        assert [e.id for e in events] == [google.id]


class TestClaim:

    def test_claim_increments_attempts(self, test_db_session, test_lead):
        event = _add_event(test_db_session, test_lead)
        assert claim_conversion_event(test_db_session, event, NOW)
        assert event.status == ConversionStatusEnum.processing
        assert event.attempts == 1
        assert ensure_utc(event.last_attempt_at) == NOW

    def test_concurrent_sessions_claim_once(self, tmp_path):
        engine = create_engine(f"sqlite:///{tmp_path / 'claims.db'}", connect_args={"check_same_thread": False})
        Base.metadata.create_all(bind=engine)
        SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)

        with SessionLocal() as setup:
            lead = Lead(
                id=uuid.uuid4(), full_name="Race", email="race@example.com", phone_e164="+971500000000",
                goal_primary="more_leads", budget_currency="AED", monthly_budget_range="1,000-2,000",
                timeline="exploring", consent=True,
            )
            setup.add(lead)
            setup.commit()
            event_id = _add_event(setup, lead).id

        worker_a, worker_b = SessionLocal(), SessionLocal()
        try:
            seen_a = worker_a.get(ConversionEvent, event_id)
            seen_b = worker_b.get(ConversionEvent, event_id)

            won_a = claim_conversion_event(worker_a, seen_a, NOW)
            won_b = claim_conversion_event(worker_b, seen_b, NOW)
        finally:
            worker_a.close()
            worker_b.close()

        assert [won_a, won_b].count(True) == 1
        with SessionLocal() as check:
            assert check.get(ConversionEvent, event_id).attempts == 1
        engine.dispose()


class TestProcessing:

    @pytest.mark.asyncio
    async def test_success_marks_sent(self, test_db_session, test_lead):
        _add_attribution(test_db_session, test_lead, gclid="Cj0KCQ")
        event = _add_event(test_db_session, test_lead)
        adapter = FakeAdapter(AdapterResult.ok(response={"jobId": "1"}, external_id="1"))

        result = await process_conversion_events(
            test_db_session, {ConversionProviderEnum.google_ads: adapter}, now=NOW
        )

        test_db_session.refresh(event)
        assert result.processed == 1 and result.success == 1
        assert event.status == ConversionStatusEnum.sent
        assert event.external_id == "1"
        assert ensure_utc(event.synced_at) == NOW
        payload = adapter.payloads[0]
        assert payload.gclid == "Cj0KCQ"
        assert payload.email == test_lead.email
        assert payload.landing_path == "/audit"

    @pytest.mark.asyncio
    async def test_transient_failure_schedules_retry(self, test_db_session, test_lead):
        event = _add_event(test_db_session, test_lead)
        adapter = FakeAdapter(AdapterResult.transient("503", "provider_unavailable"))

        result = await process_conversion_events(
            test_db_session, {ConversionProviderEnum.google_ads: adapter}, now=NOW
        )

        test_db_session.refresh(event)
        assert result.failed == 1
        assert event.status == ConversionStatusEnum.failed
        assert event.attempts == 1
        assert ensure_utc(event.retry_after) == NOW + timedelta(minutes=2)

    @pytest.mark.asyncio
    async def test_terminal_failure_never_retried(self, test_db_session, test_lead):
        event = _add_event(test_db_session, test_lead)
        adapter = FakeAdapter(AdapterResult.terminal("No gclid/gbraid/wbraid found", "missing_click_id"))

        await process_conversion_events(test_db_session, {ConversionProviderEnum.google_ads: adapter}, now=NOW)

        test_db_session.refresh(event)
        assert event.status == ConversionStatusEnum.failed
        assert event.retry_after is None
        assert event.error_code == "missing_click_id"
        assert fetch_eligible_events(test_db_session, NOW + timedelta(days=1)) == []

    @pytest.mark.asyncio
    async def test_stops_after_max_attempts(self, test_db_session, test_lead):
        event = _add_event(test_db_session, test_lead)
        adapter = FakeAdapter(AdapterResult.transient("timeout", "provider_unavailable"))
        registry = {ConversionProviderEnum.google_ads: adapter}

        now = NOW
        for _ in range(MAX_ATTEMPTS + 2):
            await process_conversion_events(test_db_session, registry, now=now)
            now += timedelta(hours=1)

        test_db_session.refresh(event)
        assert len(adapter.payloads) == MAX_ATTEMPTS
        assert event.attempts == MAX_ATTEMPTS
        assert event.status == ConversionStatusEnum.failed
        assert event.retry_after is None

    @pytest.mark.asyncio
    async def test_missing_adapter_is_terminal(self, test_db_session, test_lead):
        event = _add_event(test_db_session, test_lead, provider=ConversionProviderEnum.meta_capi)

        await process_conversion_events(test_db_session, {}, now=NOW)

        test_db_session.refresh(event)
        assert event.error_code == "not_configured"
        assert event.retry_after is None

    @pytest.mark.asyncio
    async def test_adapter_exception_is_transient(self, test_db_session, test_lead):
        class Exploding:
            async def send(self, payload):
                raise RuntimeError("boom")

        event = _add_event(test_db_session, test_lead)
        await process_conversion_events(test_db_session, {ConversionProviderEnum.google_ads: Exploding()}, now=NOW)

        test_db_session.refresh(event)
        assert event.status == ConversionStatusEnum.failed
        assert event.error_code == "internal_error"
        assert event.retry_after is not None

    @pytest.mark.asyncio
    async def test_time_budget_leaves_events_pending(self, test_db_session, make_lead):
        first = _add_event(test_db_session, make_lead())
        second = _add_event(test_db_session, make_lead(email="two@example.com"))
        ticks = iter([0.0, 0.0, 100.0, 100.0, 100.0])

        result = await process_conversion_events(
            test_db_session,
            {ConversionProviderEnum.google_ads: FakeAdapter()},
            now=NOW,
            max_seconds=55,
            clock=lambda: next(ticks),
        )

        test_db_session.refresh(first)
        test_db_session.refresh(second)
        assert result.processed == 1
        statuses = {first.status, second.status}
        assert statuses == {ConversionStatusEnum.sent, ConversionStatusEnum.pending}

    @pytest.mark.asyncio
    async def test_internal_adapter_records(self, test_db_session, test_lead, settings):
        event = _add_event(test_db_session, test_lead, provider=ConversionProviderEnum.internal)

        registry = build_adapter_registry(settings)
        assert isinstance(registry[ConversionProviderEnum.internal], InternalConversionAdapter)
        await process_conversion_events(test_db_session, registry, now=NOW)

        test_db_session.refresh(event)
        assert event.status == ConversionStatusEnum.sent


class TestStaleClaims:

    def test_stuck_processing_released(self, test_db_session, test_lead):
        event = _add_event(
            test_db_session, test_lead,
            status=ConversionStatusEnum.processing, attempts=1, last_attempt_at=NOW - timedelta(minutes=30),
        )

        assert release_stale_claims(test_db_session, NOW) == 1
        test_db_session.refresh(event)
        assert event.status == ConversionStatusEnum.failed
        assert event.error_code == "stale_claim"
        assert ensure_utc(event.retry_after) == NOW

    def test_recent_processing_kept(self, test_db_session, test_lead):
        _add_event(
            test_db_session, test_lead,
            status=ConversionStatusEnum.processing, attempts=1, last_attempt_at=NOW - timedelta(minutes=1),
        )
        assert release_stale_claims(test_db_session, NOW) == 0


class TestPayload:

    def test_payload_enriched_from_lead_attribution(self, test_db_session, test_lead):
        _add_attribution(test_db_session, test_lead, fbclid="IwAR1")
        event = _add_event(test_db_session, test_lead, provider=ConversionProviderEnum.meta_capi)

        payload = build_payload(test_db_session, event)

        assert payload.fbclid == "IwAR1"
        assert payload.phone == test_lead.phone_e164
        assert payload.dedupe_key == event.dedupe_key
        assert payload.event_type == "lead_created"
