"""Dependency providers and settings management."""

import hmac
from functools import lru_cache
from typing import Optional

from fastapi import Depends, Header, HTTPException, Query, status
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment or .env."""

    BACKEND_CORS_ORIGINS: str = "http://localhost:3000"
    ENVIRONMENT: str = "development"

    # Public site + business
    SITE_URL: str = "http://localhost:3000"
    COMPANY_NAME: str = "Audit Team"
    BUSINESS_TIMEZONE: str = "Asia/Dubai"
    ENFORCE_PHONE_VERIFICATION: bool = False

    # Worker authentication
    CRON_SECRET: Optional[str] = None
    ADMIN_SECRET: Optional[str] = None

    # Email (Resend)
    RESEND_API_KEY: Optional[str] = None
    EMAIL_FROM: str = "Audit Team <onboarding@resend.dev>"

    # SMS
    SMS_PROVIDER: str = "mock"
    TWILIO_ACCOUNT_SID: Optional[str] = None
    TWILIO_AUTH_TOKEN: Optional[str] = None
    TWILIO_PHONE_NUMBER: Optional[str] = None
    AWS_ACCESS_KEY_ID: Optional[str] = None
    AWS_SECRET_ACCESS_KEY: Optional[str] = None
    AWS_REGION: Optional[str] = None
    INFOBIP_API_KEY: Optional[str] = None
    INFOBIP_BASE_URL: Optional[str] = None
    INFOBIP_SENDER: Optional[str] = None

    # Google Ads offline conversions
    GOOGLE_ADS_CUSTOMER_ID: Optional[str] = None
    GOOGLE_ADS_CONVERSION_ACTION_ID: Optional[str] = None
    GOOGLE_ADS_DEVELOPER_TOKEN: Optional[str] = None
    GOOGLE_ADS_CLIENT_ID: Optional[str] = None
    GOOGLE_ADS_CLIENT_SECRET: Optional[str] = None
    GOOGLE_ADS_REFRESH_TOKEN: Optional[str] = None
    GOOGLE_ADS_LOGIN_CUSTOMER_ID: Optional[str] = None

    # Meta Conversions API
    META_PIXEL_ID: Optional[str] = None
    META_CAPI_ACCESS_TOKEN: Optional[str] = None
    META_CAPI_TEST_EVENT_CODE: Optional[str] = None

    # Google Calendar (best-effort meeting creation)
    GOOGLE_CLIENT_ID: Optional[str] = None
    GOOGLE_CLIENT_SECRET: Optional[str] = None
    GOOGLE_REFRESH_TOKEN: Optional[str] = None
    GOOGLE_CALENDAR_ID: str = "primary"

    # Redis (optional shared rate-limit store, arq broker)
    REDIS_URL: Optional[str] = None

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    @property
    def google_ads_configured(self) -> bool:
        return all([
            self.GOOGLE_ADS_CUSTOMER_ID,
            self.GOOGLE_ADS_CONVERSION_ACTION_ID,
            self.GOOGLE_ADS_DEVELOPER_TOKEN,
            self.GOOGLE_ADS_CLIENT_ID,
            self.GOOGLE_ADS_CLIENT_SECRET,
            self.GOOGLE_ADS_REFRESH_TOKEN,
        ])

    @property
    def meta_capi_configured(self) -> bool:
        return bool(self.META_PIXEL_ID and self.META_CAPI_ACCESS_TOKEN)

    @property
    def calendar_configured(self) -> bool:
        return all([self.GOOGLE_CLIENT_ID, self.GOOGLE_CLIENT_SECRET, self.GOOGLE_REFRESH_TOKEN])


@lru_cache()
def get_settings() -> Settings:
    """Return cached settings instance."""
    return Settings()  # type: ignore[call-arg]


def _secret_matches(provided: Optional[str], expected: Optional[str]) -> bool:
    if not provided or not expected:
        return False
    return hmac.compare_digest(provided.encode("utf-8"), expected.encode("utf-8"))


def verify_cron_secret(
    secret: Optional[str] = Query(default=None),
    settings: Settings = Depends(get_settings),
) -> bool:
    """Verify the ?secret= query parameter sent by the cron scheduler."""
    if not settings.CRON_SECRET:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Worker endpoints not configured",
        )
    if not _secret_matches(secret, settings.CRON_SECRET):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")
    return True


def verify_bearer_secret(
    authorization: Optional[str] = Header(default=None),
    settings: Settings = Depends(get_settings),
) -> bool:
    """Verify `Authorization: Bearer <CRON_SECRET|ADMIN_SECRET>`."""
    if not settings.CRON_SECRET and not settings.ADMIN_SECRET:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Worker endpoints not configured",
        )

    token = None
    if authorization and authorization.startswith("Bearer "):
        token = authorization[len("Bearer "):]

    if _secret_matches(token, settings.CRON_SECRET) or _secret_matches(token, settings.ADMIN_SECRET):
        return True
    raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")


def verify_admin_secret(
    secret: Optional[str] = Query(default=None),
    authorization: Optional[str] = Header(default=None),
    settings: Settings = Depends(get_settings),
) -> bool:
    """Verify ?secret= or `Authorization: Bearer` against CRON_SECRET or ADMIN_SECRET."""
    if not settings.CRON_SECRET and not settings.ADMIN_SECRET:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Admin endpoints not configured",
        )

    candidates = [secret]
    if authorization and authorization.startswith("Bearer "):
        candidates.append(authorization[len("Bearer "):])

    for provided in candidates:
        if _secret_matches(provided, settings.CRON_SECRET) or _secret_matches(provided, settings.ADMIN_SECRET):
            return True
    raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")
