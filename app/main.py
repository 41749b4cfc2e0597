"""FastAPI application entrypoint.

Configures logging, error tracking, CORS and the public error shape, and
includes the routers.
"""

import logging

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException
from uvicorn.middleware.proxy_headers import ProxyHeadersMiddleware

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

from .deps import get_settings
from .routers import bookings as bookings_router
from .routers import health as health_router
from .routers import ics as ics_router
from .routers import leads as leads_router
from .routers import metrics as metrics_router
from .routers import otp as otp_router
from .routers import slots as slots_router
from .routers import workers as workers_router
from .telemetry import init_observability

# Import models so Alembic can discover metadata
from . import models  # noqa: F401


def _validation_message(exc: RequestValidationError) -> str:
    errors = exc.errors()
    if not errors:
        return "Invalid request body"
    first = errors[0]
    location = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
    message = first.get("msg", "Invalid value")
    return f"{location}: {message}" if location else message


def create_app() -> FastAPI:
    observability = init_observability()
    logger.info(f"[STARTUP] Observability: {observability}")

    app = FastAPI(
        title="Audit Booking API",
        description="""
        Lead capture and consultation booking for Google Ads audits.

        This API provides endpoints for:
        - Lead form submission with scoring and single-use retrieval tokens
        - Phone verification by SMS one-time code
        - Available slots and booking creation
        - Calendar (.ics) downloads
        - Cron-triggered workers: conversion delivery, Google Ads uploads,
          reminder emails
        - KPI summary for monitoring (secret protected)

        ## Errors

        Every error response has the shape `{"ok": false, "error": "..."}`,
        sometimes with extra keys (`resetIn`, `remainingAttempts`).
        """,
        version="1.0.0",
    )

    # Trust X-Forwarded-* from the load balancer so client IPs are correct
    app.add_middleware(ProxyHeadersMiddleware, trusted_hosts="*")

    settings = get_settings()
    allowed_origins = [origin.strip() for origin in settings.BACKEND_CORS_ORIGINS.split(",") if origin.strip()]
    site_origin = settings.SITE_URL.rstrip("/")
    if site_origin and site_origin not in allowed_origins:
        allowed_origins.append(site_origin)
    logger.info(f"[CORS] Allowed origins: {allowed_origins}")

    app.add_middleware(
        CORSMiddleware,
        allow_origins=allowed_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(request: Request, exc: StarletteHTTPException):
        return JSONResponse(
            status_code=exc.status_code,
            content={"ok": False, "error": exc.detail},
            headers=getattr(exc, "headers", None),
        )

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content={"ok": False, "error": _validation_message(exc)},
        )

    app.include_router(health_router.router)
    app.include_router(leads_router.router)
    app.include_router(slots_router.router)
    app.include_router(bookings_router.router)
    app.include_router(otp_router.router)
    app.include_router(ics_router.router)
    app.include_router(workers_router.router)
    app.include_router(metrics_router.router)

    return app


app = create_app()
