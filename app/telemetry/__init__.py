"""
Telemetry Module
================

Error tracking for the API and background workers.

Components:
- sentry.py: Error tracking (Sentry)

Environment Variables:
- SENTRY_DSN: Sentry project DSN
- ENVIRONMENT: Environment name reported with events

Usage:
    from app.telemetry import init_observability, capture_exception

    init_observability()  # once at startup

    try:
        ...
    except ProviderError as e:
        capture_exception(e, extra={"booking_id": str(booking.id)})
"""

from app.telemetry.sentry import (
    init_sentry,
    capture_exception,
    capture_message,
)


def init_observability() -> dict:
    """
    Initialize all observability tools.

    Returns:
        Dict with status of each tool initialization, e.g. {"sentry": False}
    """
    return {
        "sentry": init_sentry(),
    }


__all__ = [
    "init_observability",
    "init_sentry",
    "capture_exception",
    "capture_message",
]
