"""Pytest configuration for app integration tests

WHAT: Provides shared fixtures for HTTP endpoint and service-level tests
WHY: Ensures consistent test setup, database isolation, and provider-free settings
REFERENCES:
    - app/main.py: FastAPI application
    - app/database.py: Database configuration
    - app/deps.py: Settings and dependency injection
"""

import pytest
import os
import uuid
from datetime import datetime, timezone
from typing import Generator

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, Session
from sqlalchemy.pool import StaticPool
from fastapi.testclient import TestClient

# Ensure project root is in path
import sys
from pathlib import Path
PROJECT_ROOT = Path(__file__).resolve().parents[2]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

# Set test environment before any app import (app.database reads DATABASE_URL at import)
os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")
os.environ["CRON_SECRET"] = "test-cron-secret"
os.environ["SMS_PROVIDER"] = "mock"
os.environ["REDIS_URL"] = ""
os.environ["SENTRY_DSN"] = ""
os.environ.pop("RESEND_API_KEY", None)


# ============================================================================
# Database Fixtures
# ============================================================================

@pytest.fixture
def test_db_engine():
    """Create in-memory test database engine shared by every connection."""
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    from app.database import Base
    Base.metadata.create_all(bind=engine)

    yield engine

    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def test_db_session(test_db_engine) -> Generator[Session, None, None]:
    """Create test database session."""
    SessionLocal = sessionmaker(
        autocommit=False,
        autoflush=False,
        bind=test_db_engine
    )

    session = SessionLocal()
    yield session
    session.rollback()
    session.close()


# ============================================================================
# Settings & Shared State
# ============================================================================

@pytest.fixture(autouse=True)
def reset_shared_state():
    """Fresh settings cache, rate limiters and Redis state per test."""
    from app.deps import get_settings
    from app.services.rate_limiter import reset_limiters
    from app.state import reset_state

    get_settings.cache_clear()
    reset_limiters()
    reset_state()
    yield
    get_settings.cache_clear()
    reset_limiters()
    reset_state()


@pytest.fixture
def settings():
    """Settings with every external provider unconfigured."""
    from app.deps import Settings

    return Settings(
        _env_file=None,
        CRON_SECRET="test-cron-secret",
        ADMIN_SECRET=None,
        SMS_PROVIDER="mock",
        REDIS_URL=None,
        RESEND_API_KEY=None,
        SITE_URL="https://audits.example.com",
        COMPANY_NAME="Audit Team",
        BUSINESS_TIMEZONE="Asia/Dubai",
        ENFORCE_PHONE_VERIFICATION=False,
    )


# ============================================================================
# Application & Client Fixtures
# ============================================================================

@pytest.fixture
def app(test_db_session, settings):
    """Create FastAPI test application."""
    from app.main import create_app

    test_app = create_app()

    from app.database import get_db
    from app.deps import get_settings

    def override_get_db():
        yield test_db_session

    test_app.dependency_overrides[get_db] = override_get_db
    test_app.dependency_overrides[get_settings] = lambda: settings

    return test_app


@pytest.fixture
def client(app) -> TestClient:
    """Create TestClient for HTTP testing."""
    return TestClient(app)


# ============================================================================
# Model Fixtures
# ============================================================================

@pytest.fixture
def make_lead(test_db_session):
    """Factory inserting a lead with sensible defaults."""
    from app.models import Lead, LeadGradeEnum, LeadStatusEnum

    def _make_lead(**overrides):
        now = datetime.now(timezone.utc)
        values = dict(
            id=uuid.uuid4(),
            full_name="Sara Ahmed",
            email="sara@example.com",
            phone_e164="+971501234567",
            goal_primary="more_leads",
            budget_currency="AED",
            monthly_budget_range="5,000-10,000",
            decision_maker=True,
            response_within_5_min=True,
            timeline="immediate",
            recommended_package="growth",
            lead_score=70,
            lead_grade=LeadGradeEnum.B,
            status=LeadStatusEnum.new,
            consent=True,
            created_at=now,
            updated_at=now,
        )
        values.update(overrides)
        lead = Lead(**values)
        test_db_session.add(lead)
        test_db_session.commit()
        test_db_session.refresh(lead)
        return lead

    return _make_lead


@pytest.fixture
def test_lead(make_lead):
    """Create test lead."""
    return make_lead()
