"""Tornado request handlers for the ingestion service."""

from .heartbeats import HeartbeatsHandler, extract_credential
from .status import StatusHandler

__all__ = [
    "HeartbeatsHandler",
    "StatusHandler",
    "extract_credential",
]
