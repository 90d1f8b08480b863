"""
Telemetry Module
================

Observability for the ingestion core.

Components:
- sentry.py: Error tracking for the worker and the API

Environment Variables:
- SENTRY_DSN: Sentry project DSN

Usage:
    from adsync.telemetry import init_sentry, capture_exception
"""

from adsync.telemetry.sentry import (
    init_sentry,
    capture_exception,
    capture_message,
)


__all__ = [
    "init_sentry",
    "capture_exception",
    "capture_message",
]
