"""Conversion adapter contract and registry.

WHAT:
    Defines the payload every ad-platform adapter receives, the result it
    returns, and the registry the worker uses to pick an adapter by provider.

WHY:
    The conversion worker must not know provider specifics. Each adapter
    formats its own request, hashes identifiers, calls its API and classifies
    failures as retryable (HTTP 5xx, 429, timeouts) or terminal (missing
    click id, bad credentials, rejected payload).

ARCHITECTURE:
    ┌────────────────────┐  payload   ┌────────────────────────────────┐
    │ conversion_worker  │───────────▶│ registry[ConversionProviderEnum]│
    └────────────────────┘            └──────────────┬─────────────────┘
                                                     │
                 ┌───────────────────────────────────┼─────────────────┐
                 ▼                                   ▼                 ▼
    GoogleAdsConversionsService          MetaCAPIService   InternalConversionAdapter
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Optional, Protocol

from app.deps import Settings
from app.models import ConversionProviderEnum

logger = logging.getLogger(__name__)


@dataclass
class ConversionPayload:
    """Everything an adapter may need for one conversion event."""

    event_id: str
    event_type: str
    dedupe_key: str
    created_at: datetime
    value: Optional[Decimal] = None
    currency: str = "USD"
    email: Optional[str] = None
    phone: Optional[str] = None
    gclid: Optional[str] = None
    gbraid: Optional[str] = None
    wbraid: Optional[str] = None
    fbclid: Optional[str] = None
    landing_path: Optional[str] = None


@dataclass
class AdapterResult:
    success: bool
    retryable: bool = False
    response: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    error_code: Optional[str] = None
    external_id: Optional[str] = None

    @classmethod
    def ok(cls, response: Optional[Dict[str, Any]] = None, external_id: Optional[str] = None) -> "AdapterResult":
        return cls(success=True, response=response, external_id=external_id)

    @classmethod
    def terminal(cls, error: str, error_code: str, response: Optional[Dict[str, Any]] = None) -> "AdapterResult":
        return cls(success=False, retryable=False, error=error, error_code=error_code, response=response)

    @classmethod
    def transient(cls, error: str, error_code: str, response: Optional[Dict[str, Any]] = None) -> "AdapterResult":
        return cls(success=False, retryable=True, error=error, error_code=error_code, response=response)


class ConversionAdapter(Protocol):
    """Capability implemented by every provider adapter."""

    provider: ConversionProviderEnum

    async def send(self, payload: ConversionPayload) -> AdapterResult:
        ...


class InternalConversionAdapter:
    """Internal provider: conversions tracked only in our database."""

    provider = ConversionProviderEnum.internal

    async def send(self, payload: ConversionPayload) -> AdapterResult:
        logger.info(f"[CONVERSIONS] Internal conversion recorded: {payload.event_type} {payload.event_id}")
        return AdapterResult.ok(response={"recorded": True, "event_type": payload.event_type})


AdapterRegistry = Dict[ConversionProviderEnum, ConversionAdapter]


def build_adapter_registry(settings: Settings) -> AdapterRegistry:
    """Adapters keyed by provider, configured from settings.

    Unconfigured providers still get an adapter; it reports a terminal
    not_configured failure so the event is marked failed with a reason.
    """
    from app.services.google_conversions_service import GoogleAdsConversionsService
    from app.services.meta_capi_service import MetaCAPIService

    return {
        ConversionProviderEnum.google_ads: GoogleAdsConversionsService.from_settings(settings),
        ConversionProviderEnum.meta_capi: MetaCAPIService.from_settings(settings),
        ConversionProviderEnum.internal: InternalConversionAdapter(),
    }
