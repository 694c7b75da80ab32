"""Heartbeat ingestion and coding-session reconstruction."""

__version__ = "1.0.0"

from .config import IngestConfig
from .credential_cache import CredentialCache
from .credentials import CredentialResolver, JwtVerifier, unwrap_credential
from .ingest import BatchIngestor, IngestService
from .records import Heartbeat, parse_heartbeats
from .sessions import CodingSession, SessionReconstructor
from .store import HeartbeatStore
from .summary import SummaryAggregator

__all__ = [
    "IngestConfig",
    "CredentialCache",
    "CredentialResolver",
    "JwtVerifier",
    "unwrap_credential",
    "BatchIngestor",
    "IngestService",
    "Heartbeat",
    "parse_heartbeats",
    "CodingSession",
    "SessionReconstructor",
    "HeartbeatStore",
    "SummaryAggregator",
]
