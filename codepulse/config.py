"""Environment-driven configuration for the ingestion service."""

import logging
import os
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

log = logging.getLogger('codepulse')


class IngestConfig:
    """Pipeline settings read from CODEPULSE_* environment variables.

    Keyword arguments override the environment, which is how tests and
    embedding applications pin individual values.
    """

    DEFAULT_CHUNK_SIZE = 1000
    DEFAULT_SESSION_TIMEOUT = 900
    DEFAULT_MIN_SESSION = 60
    DEFAULT_CACHE_TTL = 3600
    DEFAULT_VERIFIER_TIMEOUT = 5
    DEFAULT_MAX_WORKERS = 4
    DEFAULT_RETENTION_DAYS = 30
    DEFAULT_SWEEP_INTERVAL = 300
    DEFAULT_PORT = 8090
    DEFAULT_DB_URL = 'sqlite:////data/codepulse.sqlite'
    DEFAULT_SUMMARY_TZ = 'UTC'

    def __init__(self, **overrides):
        self.chunk_size = self._get_env_int(
            "CODEPULSE_CHUNK_SIZE", self.DEFAULT_CHUNK_SIZE, 1, 100000)
        self.session_timeout = self._get_env_int(
            "CODEPULSE_SESSION_TIMEOUT", self.DEFAULT_SESSION_TIMEOUT, 60, 86400)
        self.min_session = self._get_env_int(
            "CODEPULSE_MIN_SESSION", self.DEFAULT_MIN_SESSION, 0, 86400)
        self.cache_ttl = self._get_env_int(
            "CODEPULSE_CACHE_TTL", self.DEFAULT_CACHE_TTL, 1, 86400)
        self.verifier_timeout = self._get_env_int(
            "CODEPULSE_VERIFIER_TIMEOUT", self.DEFAULT_VERIFIER_TIMEOUT, 1, 120)
        self.max_workers = self._get_env_int(
            "CODEPULSE_MAX_WORKERS", self.DEFAULT_MAX_WORKERS, 1, 64)
        self.retention_days = self._get_env_int(
            "CODEPULSE_RETENTION_DAYS", self.DEFAULT_RETENTION_DAYS, 1, 3650)
        self.sweep_interval = self._get_env_int(
            "CODEPULSE_SWEEP_INTERVAL", self.DEFAULT_SWEEP_INTERVAL, 10, 86400)
        self.port = self._get_env_int(
            "CODEPULSE_PORT", self.DEFAULT_PORT, 1, 65535)

        self.db_url = os.environ.get('CODEPULSE_DB_URL', self.DEFAULT_DB_URL)
        self.session_secret = os.environ.get('CODEPULSE_SESSION_SECRET')
        self.summary_tz = self._get_env_tz("CODEPULSE_SUMMARY_TZ", self.DEFAULT_SUMMARY_TZ)

        for name, value in overrides.items():
            if not hasattr(self, name):
                raise TypeError(f"Unknown config option: {name}")
            setattr(self, name, value)

    def _get_env_int(self, name, default, min_val, max_val):
        """Get integer from environment with validation."""
        try:
            value = int(os.environ.get(name, default))
            if value < min_val or value > max_val:
                log.info(f"[IngestConfig] {name}={value} out of range ({min_val}-{max_val}), using default {default}")
                return default
            return value
        except (ValueError, TypeError):
            log.info(f"[IngestConfig] {name} invalid, using default {default}")
            return default

    def _get_env_tz(self, name, default):
        value = os.environ.get(name, default)
        try:
            return ZoneInfo(value)
        except (ZoneInfoNotFoundError, ValueError):
            log.info(f"[IngestConfig] {name}={value} unknown timezone, using default {default}")
            return ZoneInfo(default)

    def describe(self):
        return (
            f"chunk_size={self.chunk_size}, timeout={self.session_timeout}s, "
            f"min_session={self.min_session}s, cache_ttl={self.cache_ttl}s, "
            f"verifier_timeout={self.verifier_timeout}s, workers={self.max_workers}, "
            f"summary_tz={self.summary_tz.key}"
        )
